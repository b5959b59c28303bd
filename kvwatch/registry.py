"""
The table of live subscriptions.

This is the only state that survives a reconnect. Everything bound to one
physical stream (the server's watch IDs, which creates are still waiting
for their acknowledgment) lives here too, so that both sides are updated
under the same lock.
"""

from collections import deque
from enum import Enum
from threading import Lock
from typing import Dict, List, Optional, Tuple

import attr

from .frames import KeyRange

import logging

logger = logging.getLogger(__name__)

__all__ = ["SubscriptionState", "Subscription", "SubscriptionRegistry"]


def _callbacks(cb) -> tuple:
    if callable(cb):
        return (cb,)
    cb = tuple(cb)
    if not cb or not all(callable(c) for c in cb):
        raise TypeError("Need a callable or a non-empty sequence of them", cb)
    return cb


class SubscriptionState(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"


@attr.s(eq=False)
class Subscription:
    """
    One caller's interest in a key range.

    ``handle`` is assigned by the manager and never changes. ``server_id``
    is only valid on the physical stream numbered ``session``.
    """

    handle: int = attr.ib()
    key_range: KeyRange = attr.ib()
    callbacks: Tuple = attr.ib(converter=_callbacks)
    start_revision: Optional[int] = attr.ib(default=None)
    prev_kv: bool = attr.ib(default=False)
    progress_notify: bool = attr.ib(default=False)
    filters: tuple = attr.ib(default=(), converter=tuple)

    server_id: Optional[int] = attr.ib(default=None, init=False)
    session: int = attr.ib(default=0, init=False)  # where server_id is valid
    state: SubscriptionState = attr.ib(default=SubscriptionState.PENDING, init=False)
    last_revision: int = attr.ib(default=0, init=False)
    sent: bool = attr.ib(default=False, init=False)  # create frame written on this session

    waiter = attr.ib(default=None, init=False)  # ValueEvent, for subscribe_and_wait
    scope = attr.ib(default=None, init=False)  # cancels a cancel_event watcher

    @property
    def active(self):
        return self.state is SubscriptionState.ACTIVE


class SubscriptionRegistry:
    """
    Maps handles to subscriptions, and server watch IDs to handles.

    All methods are atomic with respect to each other.
    """

    def __init__(self):
        self._lock = Lock()
        self._subs: Dict[int, Subscription] = {}
        self._by_server_id: Dict[int, int] = {}
        self._pending = deque()  # handles, in the order their creates were sent

    def __len__(self):
        with self._lock:
            return len(self._subs)

    def __contains__(self, handle):
        with self._lock:
            return handle in self._subs

    def handles(self) -> List[int]:
        with self._lock:
            return sorted(self._subs)

    def add(self, sub: Subscription):
        with self._lock:
            if sub.handle in self._subs:
                raise RuntimeError("Duplicate handle", sub.handle)
            self._subs[sub.handle] = sub

    def get(self, handle) -> Optional[Subscription]:
        with self._lock:
            return self._subs.get(handle)

    def remove(self, handle) -> Optional[Subscription]:
        """Drop a subscription. Unknown handles are ignored."""
        with self._lock:
            sub = self._subs.pop(handle, None)
            if sub is None:
                return None
            if sub.server_id is not None:
                self._by_server_id.pop(sub.server_id, None)
            sub.state = SubscriptionState.CANCELLED
            return sub

    def mark_sent(self, handle) -> bool:
        """
        Record that the create frame for this handle is about to be written.

        Returns False if the handle is gone or has already been sent on
        this session.
        """
        with self._lock:
            sub = self._subs.get(handle)
            if sub is None or sub.sent:
                return False
            sub.sent = True
            self._pending.append(handle)
            return True

    def acknowledge(self, server_id: int, session: int = 0) -> Optional[Subscription]:
        """
        Pair a creation acknowledgment, received on physical stream
        ``session``, with the oldest unacknowledged subscription.

        Returns None if that subscription has been cancelled in the meantime
        (or nothing was pending); the caller should cancel ``server_id``.
        """
        with self._lock:
            if not self._pending:
                return None
            handle = self._pending.popleft()
            sub = self._subs.get(handle)
            if sub is None:
                return None
            sub.server_id = server_id
            sub.session = session
            sub.state = SubscriptionState.ACTIVE
            self._by_server_id[server_id] = handle
            return sub

    def lookup(self, server_id: int) -> Optional[Subscription]:
        with self._lock:
            handle = self._by_server_id.get(server_id)
            if handle is None:
                return None
            return self._subs.get(handle)

    def release(self, server_id: int) -> Optional[Subscription]:
        """
        The server has dropped this watch.

        Returns the subscription if it was still registered, i.e. if the
        server cancelled it on its own.
        """
        with self._lock:
            handle = self._by_server_id.pop(server_id, None)
            if handle is None:
                return None
            sub = self._subs.pop(handle, None)
            if sub is not None:
                sub.state = SubscriptionState.CANCELLED
            return sub

    def reset_session(self) -> List[Subscription]:
        """
        Forget everything tied to the previous physical stream.

        Returns the remaining subscriptions, all reset to pending, in
        handle order.
        """
        with self._lock:
            self._by_server_id.clear()
            self._pending.clear()
            res = []
            for handle in sorted(self._subs):
                sub = self._subs[handle]
                sub.server_id = None
                sub.state = SubscriptionState.PENDING
                sub.sent = False
                res.append(sub)
            return res

    def clear(self) -> List[Subscription]:
        """Remove every subscription, and return them."""
        with self._lock:
            subs = [self._subs[h] for h in sorted(self._subs)]
            self._subs.clear()
            self._by_server_id.clear()
            self._pending.clear()
            for sub in subs:
                sub.state = SubscriptionState.CANCELLED
            return subs
