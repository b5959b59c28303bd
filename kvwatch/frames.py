"""
Watch frames, and the value types they carry.

A frame is a plain dict. Outbound frames carry an ``action`` (``create``,
``cancel`` or ``progress``); inbound frames carry the server's
``watch_id`` plus flags and events, or a stream-level ``error``.
"""

from enum import Enum
from typing import Iterable, List, Optional, Tuple

import attr

from .util import to_bytes

__all__ = [
    "EventType",
    "KeyRange",
    "Event",
    "WatchResponse",
    "prefix_range_end",
    "create_frame",
    "cancel_frame",
    "progress_frame",
    "parse_response",
    "replay_frames",
]

# A range end of a single zero byte means "every key from here on".
ALL_KEYS = b"\0"


class EventType(Enum):
    PUT = "put"
    DELETE = "delete"


def prefix_range_end(prefix) -> bytes:
    """
    Return the range end that selects every key starting with ``prefix``.

    This is the prefix with its last non-0xFF byte incremented and the rest
    dropped. An empty or all-0xFF prefix has no such end; the result is then
    the unrestricted range end.
    """
    b = bytearray(to_bytes(prefix))
    for i in range(len(b) - 1, -1, -1):
        if b[i] < 0xFF:
            b[i] += 1
            return bytes(b[: i + 1])
    return ALL_KEYS


@attr.s(frozen=True, slots=True)
class KeyRange:
    """The keys a subscription is interested in.

    An empty ``range_end`` selects the single key ``key``.
    """

    key: bytes = attr.ib(converter=to_bytes)
    range_end: bytes = attr.ib(default=b"", converter=to_bytes)

    @classmethod
    def single(cls, key):
        return cls(key)

    @classmethod
    def prefix(cls, prefix):
        return cls(prefix, prefix_range_end(prefix))

    @classmethod
    def all(cls):
        return cls(b"", ALL_KEYS)

    @property
    def is_single(self):
        return not self.range_end

    def contains(self, key) -> bool:
        key = to_bytes(key)
        if not self.range_end:
            return key == self.key
        if self.range_end == ALL_KEYS:
            return key >= self.key
        return self.key <= key < self.range_end

    __contains__ = contains


@attr.s(frozen=True, slots=True)
class Event:
    """One change to one key."""

    type: EventType = attr.ib()
    key: bytes = attr.ib()
    value: Optional[bytes] = attr.ib(default=None)
    prev_value: Optional[bytes] = attr.ib(default=None)
    mod_revision: int = attr.ib(default=0)

    @classmethod
    def from_wire(cls, msg):
        return cls(
            type=EventType(msg["type"]),
            key=msg["key"],
            value=msg.get("value"),
            prev_value=msg.get("prev_value"),
            mod_revision=msg.get("mod_revision", 0),
        )


@attr.s(slots=True)
class WatchResponse:
    """One parsed inbound frame."""

    watch_id: int = attr.ib()
    created: bool = attr.ib(default=False)
    canceled: bool = attr.ib(default=False)
    cancel_reason: str = attr.ib(default="")
    compact_revision: int = attr.ib(default=0)
    revision: int = attr.ib(default=0)
    progress: bool = attr.ib(default=False)
    events: List[Event] = attr.ib(factory=list)


def create_frame(
    key_range: KeyRange,
    *,
    start_revision: Optional[int] = None,
    prev_kv: bool = False,
    progress_notify: bool = False,
    filters: Iterable[EventType] = (),
) -> dict:
    """Build a request to create a watch.

    ``filters`` lists the event types the server should *not* send.
    """
    msg = dict(
        action="create",
        key=key_range.key,
        range_end=key_range.range_end,
        prev_kv=prev_kv,
        progress_notify=progress_notify,
        filters=[EventType(f).value for f in filters],
    )
    if start_revision:
        msg["start_revision"] = start_revision
    return msg


def cancel_frame(watch_id: int) -> dict:
    return dict(action="cancel", watch_id=watch_id)


def progress_frame() -> dict:
    return dict(action="progress")


def parse_response(msg) -> WatchResponse:
    """Convert an inbound frame to a :class:`WatchResponse`."""
    return WatchResponse(
        watch_id=msg.get("watch_id", -1),
        created=bool(msg.get("created", False)),
        canceled=bool(msg.get("canceled", False)),
        cancel_reason=msg.get("reason", "") or "",
        compact_revision=msg.get("compact_revision", 0) or 0,
        revision=msg.get("revision", 0) or 0,
        progress=bool(msg.get("progress", False)),
        events=[Event.from_wire(e) for e in msg.get("events", ())],
    )


def resume_revision(sub) -> Optional[int]:
    """The revision a (re)created watch should start at.

    Watches without a start revision simply pick up the current state.
    """
    if not sub.start_revision:
        return None
    if sub.last_revision:
        return max(sub.start_revision, sub.last_revision + 1)
    return sub.start_revision


def replay_frames(subscriptions) -> List[Tuple[int, dict]]:
    """
    Return the creation frames for a snapshot of subscriptions, in order.

    This is used for the first connection as well as for every reconnect.
    """
    return [
        (
            sub.handle,
            create_frame(
                sub.key_range,
                start_revision=resume_revision(sub),
                prev_kv=sub.prev_kv,
                progress_notify=sub.progress_notify,
                filters=sub.filters,
            ),
        )
        for sub in subscriptions
    ]
