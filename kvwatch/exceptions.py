"""
This module affords all kvwatch exceptions.
"""

# pylint: disable=unnecessary-pass


error_types = {}


def _typed(cls):
    error_types[cls.etype] = cls
    return cls


class KVWatchError(RuntimeError):
    """Superclass of all kvwatch errors.

    Abstract class.
    """

    pass


class ServerError(KVWatchError):
    """Generic server error.

    This class includes errors forwarded to the client.
    """

    pass


class ServerClosedError(ServerError):
    """The server closed our connection."""

    pass


class ServerConnectionError(ServerError):
    """None of the server's addresses could be reached."""

    pass


class ClientError(KVWatchError):
    """Generic client error.

    Abstract class.
    """

    etype: str = None

    pass


@_typed
class ClientAuthError(ClientError):
    """The server refused our credentials."""

    etype = "auth"

    pass


@_typed
class WatchCreateError(ClientError):
    """The server refused to create a watch."""

    etype = "watch"

    pass


class WatchCompactedError(WatchCreateError):
    """The requested start revision has been compacted away."""

    def __init__(self, reason, compact_revision):
        super().__init__(reason, compact_revision)
        self.compact_revision = compact_revision


class CancelledError(ClientError):
    """A client call was cancelled."""

    pass


class ManagerClosedError(ClientError):
    """The watch manager has been disposed of."""

    pass
