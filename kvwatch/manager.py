"""
Watch manager.

Main entry point: :func:`open_watch_manager`.
"""

import logging
from contextlib import asynccontextmanager, nullcontext
from typing import Callable, Iterable, List, Optional, Sequence, Union

import anyio

from .default import CFG
from .exceptions import ManagerClosedError
from .frames import EventType, KeyRange, progress_frame
from .registry import Subscription, SubscriptionRegistry, SubscriptionState
from .stream import WatchStream
from .transport import Transport, transport_from_config
from .util import ValueEvent, attrdict, combine_dict, random

logger = logging.getLogger(__name__)

__all__ = ["WatchManager", "open_watch_manager"]


@asynccontextmanager
async def open_watch_manager(transport: Optional[Transport] = None, **cfg):
    """
    This async context manager returns a watch manager.

    The connection is opened when the first subscription is made. All
    subscriptions are cancelled when the context ends.

    Args:
      transport: how to reach the server. Default: TCP, as configured
        in ``conn``.
      cfg: overrides for the ``watch`` section of the default configuration.
    """
    async with anyio.create_task_group() as tg:
        mgr = WatchManager(cfg, transport=transport, tg=tg)
        try:
            yield mgr
        finally:
            with anyio.CancelScope(shield=True):
                await mgr.aclose()
            tg.cancel_scope.cancel()


class WatchManager:
    """
    Hands out subscription handles and keeps the watch stream.

    Use `open_watch_manager` to get one.

    Callbacks are called with the list of events of one notification, in
    the order the server sent them. They may be async. Wherever a callback
    is accepted, a sequence of callbacks may be passed instead; they are
    called in order.
    """

    _stream: WatchStream = None
    _closed = False

    def __init__(self, cfg: dict, transport: Optional[Transport] = None, tg: anyio.abc.TaskGroup = None):
        self._cfg = combine_dict(cfg, CFG["watch"], cls=attrdict)
        if transport is None:
            transport = transport_from_config(self._cfg.conn)
        self.transport = transport
        self._tg = tg
        self.registry = SubscriptionRegistry()
        self._seq = 0
        self._stream_lock = anyio.Lock()
        self._name = "".join(random.choices("abcdefghjkmnopqrstuvwxyz23456789", k=9))
        self.logger = logging.getLogger(f"kvwatch.manager.{self._name}")

    @property
    def name(self):
        return self._name

    @property
    def stream(self) -> Optional[WatchStream]:
        return self._stream

    def __contains__(self, handle):
        return handle in self.registry

    def __len__(self):
        return len(self.registry)

    def state(self, handle) -> Optional[SubscriptionState]:
        """The state of this subscription, or None if it's gone."""
        sub = self.registry.get(handle)
        if sub is None:
            return None
        return sub.state

    async def _ensure_stream(self, timeout=None) -> WatchStream:
        if self._closed:
            raise ManagerClosedError("Watch manager is closed")
        async with self._stream_lock:
            if self._stream is None:
                stream = WatchStream(self.transport, self.registry, self._cfg, logger=self.logger)
                await stream.open(self._tg, timeout=timeout)
                self._stream = stream
            return self._stream

    def _next_handle(self):
        self._seq += 1
        return self._seq

    async def subscribe(
        self,
        key,
        callback: Union[Callable, Sequence[Callable]],
        *,
        range_end=None,
        start_revision: Optional[int] = None,
        prev_kv: bool = False,
        progress_notify: bool = False,
        filters: Iterable[EventType] = (),
        timeout: Optional[float] = None,
        cancel_event: Optional[anyio.Event] = None,
        _waiter: Optional[ValueEvent] = None,
    ) -> int:
        """
        Watch a key or a key range.

        This returns as soon as the request is sent; the handle may be
        used for cancelling right away.

        Args:
          key: the key (str or bytes), or a :class:`KeyRange`.
          callback: called with a list of :class:`Event` objects. May be a
            sequence of callables.
          range_end: watch all keys from ``key`` up to (excluding) this.
          start_revision: also send the changes since this revision.
          prev_kv: include the previous value in each event.
          progress_notify: ask the server for periodic progress messages.
          filters: event types the server should not send.
          timeout: limit for establishing the connection.
          cancel_event: cancel the subscription when this is set.

        Returns: the subscription's handle.
        """
        if isinstance(key, KeyRange):
            if range_end is not None:
                raise ValueError("Use either a KeyRange or range_end")
            key_range = key
        else:
            key_range = KeyRange(key, range_end)

        stream = await self._ensure_stream(timeout=timeout)

        sub = Subscription(
            handle=self._next_handle(),
            key_range=key_range,
            callbacks=callback,
            start_revision=start_revision,
            prev_kv=prev_kv,
            progress_notify=progress_notify,
            filters=filters,
        )
        sub.waiter = _waiter
        self.registry.add(sub)
        if cancel_event is not None:
            sub.scope = await self._tg.start(self._cancel_on, cancel_event, sub.handle)
        self.logger.debug("Watch %d: %r", sub.handle, key_range)
        await stream.create(sub)
        return sub.handle

    async def subscribe_prefix(self, prefix, callback: Callable, **kw) -> int:
        """Watch all keys that start with ``prefix``."""
        return await self.subscribe(KeyRange.prefix(prefix), callback, **kw)

    async def subscribe_many(self, keys: Iterable, callback, *, prefix: bool = False, **kw) -> List[int]:
        """
        Watch several keys (or :class:`KeyRange` objects, or prefixes if
        ``prefix`` is set) with the same callback(s) and options.

        Returns one handle per key, in order. If any of them fails, the ones
        already made are cancelled.
        """
        if not callable(callback):
            callback = tuple(callback)
        handles = []
        try:
            for key in keys:
                if prefix and not isinstance(key, KeyRange):
                    key = KeyRange.prefix(key)
                handles.append(await self.subscribe(key, callback, **kw))
        except BaseException:
            with anyio.CancelScope(shield=True):
                await self.cancel(*handles)
            raise
        return handles

    async def subscribe_and_wait(self, key, callback: Callable, *, timeout: Optional[float] = None, **kw) -> int:
        """
        Watch a key or a key range, and wait until the server has accepted
        the watch.

        Takes the same arguments as :meth:`subscribe`. ``timeout`` limits
        the whole call; on timeout the subscription is cancelled and
        `TimeoutError` is raised.
        """
        waiter = ValueEvent()
        handle = None
        try:
            with anyio.fail_after(timeout) if timeout is not None else nullcontext():
                handle = await self.subscribe(key, callback, _waiter=waiter, **kw)
                return await waiter.get()
        except BaseException:
            if handle is not None:
                with anyio.CancelScope(shield=True):
                    await self.cancel(handle)
            raise

    async def _cancel_on(self, evt, handle, *, task_status=anyio.TASK_STATUS_IGNORED):
        with anyio.CancelScope() as sc:
            task_status.started(sc)
            await evt.wait()
            with anyio.CancelScope(shield=True):
                await self.cancel(handle)

    async def cancel(self, *handles):
        """
        Cancel subscriptions.

        Unknown or already-cancelled handles are ignored.
        """
        for handle in handles:
            sub = self.registry.remove(handle)
            if sub is None:
                continue
            self.logger.debug("Cancel %d", handle)
            self._drop(sub)
            if self._stream is not None:
                await self._stream.cancel(sub)

    def _drop(self, sub):
        if sub.scope is not None:
            sub.scope.cancel()
        if sub.waiter is not None and not sub.waiter.is_set():
            sub.waiter.cancel()

    async def request_progress(self):
        """Ask the server to report its current revision on the stream."""
        if self._stream is not None:
            await self._stream.send(progress_frame())

    async def aclose(self):
        """
        Cancel all subscriptions and close the stream.

        Calling this more than once is harmless.
        """
        if self._closed:
            return
        self._closed = True
        subs = self.registry.clear()
        for sub in subs:
            self._drop(sub)
        async with self._stream_lock:
            stream, self._stream = self._stream, None
        if stream is not None:
            await stream.aclose(subs)
        self.logger.debug("Closed, %d watches dropped", len(subs))
