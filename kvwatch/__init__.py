"""Top-level package for kvwatch."""
# pylint: disable=W0703,C0103

from importlib.metadata import PackageNotFoundError, version

try:
    _version = version("kvwatch")
    _version_tuple = tuple(int(x) for x in _version.split(".")[:3])
except (PackageNotFoundError, ValueError):  # pragma: no cover
    _version = "0.0.1"
    _version_tuple = (0, 0, 1)

from .exceptions import (  # noqa: E402
    KVWatchError,
    ManagerClosedError,
    ServerConnectionError,
    WatchCompactedError,
    WatchCreateError,
)
from .frames import Event, EventType, KeyRange  # noqa: E402
from .manager import WatchManager, open_watch_manager  # noqa: E402
from .registry import SubscriptionState  # noqa: E402

__all__ = [
    "Event",
    "EventType",
    "KeyRange",
    "KVWatchError",
    "ManagerClosedError",
    "ServerConnectionError",
    "SubscriptionState",
    "WatchCompactedError",
    "WatchCreateError",
    "WatchManager",
    "open_watch_manager",
]
