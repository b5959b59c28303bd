"""
The watch stream.

A :class:`WatchStream` owns at most one physical channel at a time. It
writes create and cancel frames, reads inbound frames in a single
background task and dispatches them to the subscriptions' callbacks.

If the channel breaks, the stream connects again (with backoff) and
re-creates every subscription that is still registered. Handles stay the
same; the server's watch IDs do not.
"""

from enum import Enum
from inspect import iscoroutine

import anyio

from .exceptions import (
    KVWatchError,
    ServerClosedError,
    ServerConnectionError,
    ServerError,
    WatchCompactedError,
    WatchCreateError,
    error_types,
)
from .frames import cancel_frame, parse_response, replay_frames
from .registry import Subscription, SubscriptionRegistry
from .util import Backoff

import logging

logger = logging.getLogger(__name__)

__all__ = ["StreamState", "WatchStream"]

# Anything that means "this channel is dead".
STREAM_ERRORS = (
    anyio.EndOfStream,
    anyio.BrokenResourceError,
    anyio.ClosedResourceError,
    OSError,
    EOFError,
    KVWatchError,
)


class StreamState(Enum):
    IDLE = "idle"
    CONNECTED = "connected"
    BROKEN = "broken"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class WatchStream:
    """
    Multiplexes all subscriptions of a manager onto one channel.

    Args:
      transport: opens channels.
      registry: the subscriptions to serve.
      cfg: the ``watch`` configuration (``conn``, ``retry``,
        ``dispose_timeout``).
      logger: where to log to.
    """

    _channel = None
    _scope = None  # the supervisor
    _session_scope = None  # the current read loop
    _reader_done = None

    def __init__(self, transport, registry: SubscriptionRegistry, cfg, logger=logger):  # pylint: disable=redefined-outer-name
        self.transport = transport
        self.registry = registry
        self.cfg = cfg
        self.logger = logger
        self.state = StreamState.IDLE
        self.session = 0
        self.revision = 0  # highest revision seen on any frame
        self._write_lock = anyio.Lock()
        self._closing = False
        self._connected = anyio.Event()
        self._backoff = Backoff.from_config(cfg.get("retry", {}))

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.state.value} #{self.session}>"

    @property
    def connected(self):
        return self.state is StreamState.CONNECTED

    async def wait_connected(self):
        """Wait until a channel is up and all subscriptions are re-sent."""
        while not self.connected:
            if self.state is StreamState.CLOSED:
                raise ServerClosedError("Stream closed")
            await self._connected.wait()

    async def _connect(self, timeout=None):
        if timeout is None:
            timeout = self.cfg.conn.connect_timeout
        with anyio.fail_after(timeout):
            return await self.transport.connect()

    async def open(self, tg: anyio.abc.TaskGroup, timeout=None):
        """
        Connect for the first time, and start reading.

        Connection errors are raised to the caller.
        """
        if self.state is not StreamState.IDLE:
            raise RuntimeError("Stream already opened", self.state)
        channel = await self._connect(timeout)
        try:
            await self._activate(channel)
        except STREAM_ERRORS as exc:
            await self._discard(channel)
            raise ServerConnectionError("Setup failed", exc) from exc
        await tg.start(self._run, channel)

    # write path

    async def _write(self, msg) -> bool:
        """Write a frame. The write lock must be held."""
        channel = self._channel
        if channel is None:
            return False
        self.logger.debug("Send %s", msg)
        try:
            await channel.send(msg)
        except STREAM_ERRORS as exc:
            self.logger.info("Write failed: %r", exc)
            self._abandon(channel)
            return False
        return True

    async def send(self, msg: dict) -> bool:
        """
        Send a frame on the current channel.

        Returns False if there is no usable channel. This is not an error:
        the frame's effect is either covered by replaying the registry, or
        moot because the server forgot the old stream's watches anyway.
        """
        async with self._write_lock:
            return await self._write(msg)

    async def create(self, sub: Subscription):
        """Send the create frame for a newly registered subscription."""
        async with self._write_lock:
            if self._channel is None:
                return  # the next activation replays it
            ((handle, msg),) = replay_frames([sub])
            if not self.registry.mark_sent(handle):
                return
            await self._write(msg)

    def _is_current(self, sub: Subscription) -> bool:
        """Does this subscription's server ID name a watch on the current channel?

        The write lock must be held.
        """
        return self._channel is not None and sub.server_id is not None and sub.session == self.session

    async def cancel(self, sub: Subscription):
        """Tell the server to drop an already-removed subscription."""
        async with self._write_lock:
            # Not acknowledged: the ack will be answered with a cancel.
            # From an earlier session: the server has forgotten it, and its
            # ID may already name another watch.
            if not self._is_current(sub):
                return
            await self._write(cancel_frame(sub.server_id))

    # session handling

    async def _activate(self, channel):
        """
        Install a new channel and (re)send every registered subscription.

        This is used for the first connection and for every reconnect.
        """
        async with self._write_lock:
            if self._closing:
                raise anyio.ClosedResourceError("Stream is closing")
            self._channel = channel
            self.session += 1
            subs = self.registry.reset_session()
            try:
                for handle, msg in replay_frames(subs):
                    if not self.registry.mark_sent(handle):
                        continue
                    self.logger.debug("Send %s", msg)
                    await channel.send(msg)
            except BaseException:
                self._channel = None
                raise
            self.state = StreamState.CONNECTED
            self._connected.set()
        if subs:
            self.logger.info("Session %d: sent %d watches", self.session, len(subs))

    def _abandon(self, channel):
        """Stop using a channel that failed."""
        if self._channel is not channel:
            return
        self._channel = None
        if self.state is StreamState.CONNECTED:
            self.state = StreamState.BROKEN
        if self._connected.is_set():
            self._connected = anyio.Event()
        if self._session_scope is not None:
            self._session_scope.cancel()

    async def _discard(self, channel):
        with anyio.move_on_after(1, shield=True):
            try:
                await channel.aclose()
            except STREAM_ERRORS:
                pass

    async def _reconnect(self):
        """
        Open a new channel, retrying forever with bounded backoff.
        """
        self.state = StreamState.RECONNECTING
        attempt = 0
        for delay in self._backoff:
            attempt += 1
            await anyio.sleep(delay)
            try:
                channel = await self._connect()
            except (TimeoutError, *STREAM_ERRORS) as exc:
                self.logger.info("Reconnect #%d failed: %r", attempt, exc)
                continue
            try:
                await self._activate(channel)
            except STREAM_ERRORS as exc:
                self.logger.info("Reconnect #%d: replay failed: %r", attempt, exc)
                await self._discard(channel)
                continue
            self._backoff.reset()
            self.logger.warning("Reconnected after %d attempt(s)", attempt)
            return channel

    async def _run(self, channel, *, task_status=anyio.TASK_STATUS_IGNORED):
        """Supervise the read loop: read, and reconnect when that fails."""
        with anyio.CancelScope() as sc:
            self._scope = sc
            self._reader_done = anyio.Event()
            task_status.started()
            try:
                while True:
                    with anyio.CancelScope() as ssc:
                        self._session_scope = ssc
                        try:
                            await self._read_loop(channel)
                        except STREAM_ERRORS as exc:
                            if not self._closing:
                                self.logger.warning("Stream broke: %r", exc)
                    if ssc.cancelled_caught and not self._closing:
                        self.logger.warning("Stream broke while writing")
                    self._session_scope = None
                    self._abandon(channel)
                    await self._discard(channel)
                    if self._closing:
                        break
                    channel = await self._reconnect()
            finally:
                self._reader_done.set()

    # read path

    async def _read_loop(self, channel):
        while True:
            msg = await channel.receive()
            await self._dispatch(msg)

    async def _dispatch(self, msg):
        self.logger.debug("Recv %s", msg)
        if "error" in msg:
            try:
                cls = error_types[msg["etype"]]
            except KeyError:
                cls = ServerError
            raise cls(msg["error"])
        res = parse_response(msg)
        if res.revision > self.revision:
            self.revision = res.revision

        if res.created:
            await self._created(res)
        elif res.canceled:
            sub = self.registry.release(res.watch_id)
            if sub is not None:
                self.logger.warning(
                    "Server cancelled watch %d (handle %d): %s",
                    res.watch_id,
                    sub.handle,
                    res.cancel_reason or "no reason",
                )
        elif res.events:
            await self._notify(res)
        elif res.progress:
            self.logger.debug("Progress: revision %d", res.revision)

    async def _created(self, res):
        sub = self.registry.acknowledge(res.watch_id, self.session)
        if sub is None:
            if not res.canceled:
                self.logger.debug("Orphaned watch %d, cancelling", res.watch_id)
                await self.send(cancel_frame(res.watch_id))
            return
        if res.canceled:
            # the server refused this watch
            self.registry.release(res.watch_id)
            if res.compact_revision:
                exc = WatchCompactedError(res.cancel_reason or "compacted", res.compact_revision)
            else:
                exc = WatchCreateError(res.cancel_reason or "refused")
            self.logger.warning("Watch for handle %d refused: %r", sub.handle, exc)
            if sub.waiter is not None and not sub.waiter.is_set():
                sub.waiter.set_error(exc)
            return
        self.logger.debug("Handle %d is watch %d", sub.handle, res.watch_id)
        if sub.waiter is not None and not sub.waiter.is_set():
            sub.waiter.set(sub.handle)

    async def _notify(self, res):
        sub = self.registry.lookup(res.watch_id)
        if sub is None:
            self.logger.debug("Dropped events for unknown watch %d", res.watch_id)
            return
        for evt in res.events:
            if evt.mod_revision > sub.last_revision:
                sub.last_revision = evt.mod_revision
        for cb in sub.callbacks:
            try:
                r = cb(res.events)
                if iscoroutine(r):
                    await r
            except Exception:  # pylint: disable=broad-except
                self.logger.exception("Callback %r for handle %d failed", cb, sub.handle)

    # shutdown

    async def aclose(self, subs=()):
        """
        Close the stream.

        ``subs`` are the subscriptions that were just removed; their watches
        are cancelled on the server first.
        """
        if self.state is StreamState.CLOSED:
            return
        self._closing = True
        timeout = self.cfg.get("dispose_timeout", 2)
        with anyio.move_on_after(timeout, shield=True):
            async with self._write_lock:
                channel = self._channel
                if channel is not None:
                    for sub in subs:
                        if self._is_current(sub):
                            if not await self._write(cancel_frame(sub.server_id)):
                                break
                    channel = self._channel
                    if channel is not None:
                        try:
                            await channel.send_eof()
                        except STREAM_ERRORS as exc:
                            self.logger.debug("EOF failed: %r", exc)
            if self._reader_done is not None:
                if self._channel is None and self._scope is not None:
                    self._scope.cancel()  # reconnecting: nothing to drain
                await self._reader_done.wait()
        if self._scope is not None:
            self._scope.cancel()
        channel, self._channel = self._channel, None
        if channel is not None:
            await self._discard(channel)
        self.state = StreamState.CLOSED
        self._connected.set()
