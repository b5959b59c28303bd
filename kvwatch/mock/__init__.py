"""
An in-process stand-in for a key-value server's watch endpoint.

:class:`MockServer` keeps a key space with revisions and serves watch
streams on :class:`MemoryChannel` pairs (via :class:`MockTransport`) or on
any anyio byte stream (via :meth:`MockServer.serve_tcp`). Tests can break
all connections (:meth:`MockServer.sever`) or refuse new ones
(:meth:`MockServer.down`).
"""

import logging
import math
from contextlib import asynccontextmanager

import anyio
import attr

from kvwatch.exceptions import ServerConnectionError
from kvwatch.frames import EventType, KeyRange
from kvwatch.manager import open_watch_manager
from kvwatch.registry import SubscriptionState
from kvwatch.transport import Channel, StreamChannel, Transport
from kvwatch.util import NotGiven, to_bytes

logger = logging.getLogger(__name__)

__all__ = ["MemoryChannel", "MockServer", "MockTransport", "Recorder", "stdtest"]

_CLOSED = (anyio.BrokenResourceError, anyio.ClosedResourceError, anyio.EndOfStream)


class MemoryChannel(Channel):
    """One end of an in-memory channel pair."""

    def __init__(self, tx, rx, token=None):
        super().__init__(token=token)
        self._tx = tx
        self._rx = rx

    async def _send(self, msg):
        await self._tx.send(msg)

    async def receive(self):
        return await self._rx.receive()

    async def send_eof(self):
        await self._tx.aclose()

    async def aclose(self):
        await self._tx.aclose()
        await self._rx.aclose()

    @classmethod
    def pair(cls, token=None):
        """Return a connected (client, server) pair."""
        c_tx, s_rx = anyio.create_memory_object_stream(math.inf)
        s_tx, c_rx = anyio.create_memory_object_stream(math.inf)
        return cls(c_tx, c_rx, token=token), cls(s_tx, s_rx)


@attr.s(eq=False)
class _Watch:
    watch_id = attr.ib()
    key_range = attr.ib()
    prev_kv = attr.ib(default=False)
    filters = attr.ib(factory=set)

    def wants(self, evt):
        if evt["type"] in self.filters:
            return False
        return self.key_range.contains(evt["key"])

    def export(self, evt):
        if self.prev_kv or evt.get("prev_value") is None:
            return evt
        evt = dict(evt)
        del evt["prev_value"]
        return evt


class _Session:
    """The server side of one watch stream."""

    scope = None

    def __init__(self, server, channel):
        self.server = server
        self.channel = channel
        self.watches = {}
        self._next_id = 0
        self._tx, self._rx = anyio.create_memory_object_stream(math.inf)

    def push(self, **msg):
        try:
            self._tx.send_nowait(msg)
        except _CLOSED:
            pass

    def close(self):
        self._tx.close()

    async def writer(self):
        async with self._rx:
            async for msg in self._rx:
                try:
                    await self.channel.send(msg)
                except _CLOSED:
                    return

    def notify(self, evt):
        for w in list(self.watches.values()):
            if w.wants(evt):
                self.push(watch_id=w.watch_id, events=[w.export(evt)], revision=evt["mod_revision"])

    def handle(self, msg):
        srv = self.server
        action = msg.get("action")
        if srv.token is not None and msg.get("token") != srv.token:
            if action == "create":
                self.push(watch_id=-1, created=True, canceled=True, reason="permission denied")
            else:
                self.push(error="permission denied", etype="auth")
            return

        if action == "create":
            if srv.deaf:
                return
            start = msg.get("start_revision", 0)
            if start and start <= srv.compacted:
                self.push(
                    watch_id=-1,
                    created=True,
                    canceled=True,
                    compact_revision=srv.compacted,
                    reason="required revision has been compacted",
                )
                return
            w = _Watch(
                self._next_id,
                KeyRange(msg["key"], msg.get("range_end", b"")),
                prev_kv=msg.get("prev_kv", False),
                filters=set(msg.get("filters", ())),
            )
            self._next_id += 1
            self.watches[w.watch_id] = w
            self.push(watch_id=w.watch_id, created=True, revision=srv.revision)
            if start:
                evts = [w.export(e) for e in srv.history if e["mod_revision"] >= start and w.wants(e)]
                if evts:
                    self.push(watch_id=w.watch_id, events=evts, revision=srv.revision)

        elif action == "cancel":
            wid = msg["watch_id"]
            if self.watches.pop(wid, None) is not None:
                self.push(watch_id=wid, canceled=True, revision=srv.revision)

        elif action == "progress":
            self.push(watch_id=-1, progress=True, revision=srv.revision)

        else:
            self.push(error=f"Unknown action: {action!r}", etype="proto")


class MockServer:
    """
    A key space with a watch endpoint.

    Args:
      tg: task group to run sessions in.
      token: if set, every frame must carry this token.
    """

    def __init__(self, tg, token=None):
        self._tg = tg
        self.token = token
        self.store = {}  # key > (value, mod_revision)
        self.revision = 0
        self.history = []
        self.compacted = 0
        self.is_up = True
        self.sessions = []
        self.received = []  # every inbound frame
        self.n_connects = 0
        self.deaf = False  # ignore create requests

    # key space

    def get(self, key):
        res = self.store.get(to_bytes(key))
        return None if res is None else res[0]

    def put(self, key, value) -> int:
        key = to_bytes(key)
        prev = self.store.get(key)
        self.revision += 1
        self.store[key] = (to_bytes(value), self.revision)
        self._emit(
            dict(
                type=EventType.PUT.value,
                key=key,
                value=to_bytes(value),
                prev_value=prev[0] if prev else None,
                mod_revision=self.revision,
            )
        )
        return self.revision

    def delete(self, key) -> int:
        key = to_bytes(key)
        prev = self.store.pop(key, None)
        if prev is None:
            return 0
        self.revision += 1
        self._emit(
            dict(type=EventType.DELETE.value, key=key, prev_value=prev[0], mod_revision=self.revision)
        )
        return self.revision

    def compact(self, revision=None):
        """Forget the history up to (including) this revision."""
        if revision is None:
            revision = self.revision
        self.compacted = revision
        self.history = [e for e in self.history if e["mod_revision"] > revision]

    def drop_watches(self, reason="dropped"):
        """Cancel every watch on the server side."""
        for sess in self.sessions:
            for wid in list(sess.watches):
                del sess.watches[wid]
                sess.push(watch_id=wid, canceled=True, reason=reason, revision=self.revision)

    def _emit(self, evt):
        self.history.append(evt)
        for sess in self.sessions:
            sess.notify(evt)

    # introspection

    @property
    def watch_count(self):
        return sum(len(s.watches) for s in self.sessions)

    def frames(self, action):
        return [m for m in self.received if m.get("action") == action]

    # connections

    def sever(self):
        """Break every open stream."""
        sessions, self.sessions = self.sessions, []
        for sess in sessions:
            sess.close()
            if sess.scope is not None:
                sess.scope.cancel()
        logger.debug("Severed %d sessions", len(sessions))

    def down(self):
        """Break every open stream, and refuse new ones until :meth:`up`."""
        self.is_up = False
        self.sever()

    def up(self):
        self.is_up = True

    def accept(self, token=None) -> MemoryChannel:
        """Open an in-memory stream to this server."""
        self.n_connects += 1
        if not self.is_up:
            raise ServerConnectionError("Server is down")
        client, server = MemoryChannel.pair(token=token)
        self._tg.start_soon(self._serve, server)
        return client

    async def serve_tcp(self, stream):
        """Handler for :meth:`anyio.abc.Listener.serve`."""
        if not self.is_up:
            await stream.aclose()
            return
        await self._serve(StreamChannel(stream))

    async def _serve(self, channel):
        sess = _Session(self, channel)
        self.sessions.append(sess)
        try:
            async with anyio.create_task_group() as tg:
                sess.scope = tg.cancel_scope
                tg.start_soon(sess.writer)
                try:
                    async for msg in channel:
                        self.received.append(msg)
                        sess.handle(msg)
                except _CLOSED:
                    pass
                sess.close()  # the writer drains what's queued, then ends
        finally:
            if sess in self.sessions:
                self.sessions.remove(sess)
            with anyio.CancelScope(shield=True):
                try:
                    await channel.aclose()
                except (*_CLOSED, OSError):
                    pass


class MockTransport(Transport):
    """Connects to a :class:`MockServer`."""

    def __init__(self, server: MockServer, token=None):
        self.server = server
        self.token = token

    async def connect(self):
        await anyio.sleep(0)
        return self.server.accept(token=self.token)


class Recorder:
    """A watch callback that remembers what it got."""

    def __init__(self):
        self.batches = []
        self._changed = anyio.Event()

    def __call__(self, events):
        self.batches.append(list(events))
        self._changed.set()
        self._changed = anyio.Event()

    @property
    def events(self):
        return [e for b in self.batches for e in b]

    async def wait(self, n=1):
        """Wait until at least ``n`` batches have arrived."""
        while len(self.batches) < n:
            await self._changed.wait()


@attr.s
class S:
    tg = attr.ib()
    server = attr.ib()
    manager = attr.ib(default=None)

    async def wait_active(self, *handles):
        for h in handles:
            while self.manager.state(h) is not SubscriptionState.ACTIVE:
                await anyio.sleep(0.01)

    async def wait_reconnected(self, session):
        """Wait until the stream is past ``session`` and fully connected."""
        stream = self.manager.stream
        while stream.session <= session or not stream.connected:
            await anyio.sleep(0.01)


@asynccontextmanager
async def stdtest(token=None, client_token=NotGiven, **cfg):
    """
    Run a mock server plus a watch manager that talks to it.

    Args:
      token: the token the server requires.
      client_token: the token the client sends. Default: ``token``.
      cfg: watch manager configuration.
    """
    if client_token is NotGiven:
        client_token = token
    async with anyio.create_task_group() as tg:
        server = MockServer(tg, token=token)
        st = S(tg, server)
        try:
            async with open_watch_manager(MockTransport(server, token=client_token), **cfg) as mgr:
                st.manager = mgr
                yield st
        finally:
            tg.cancel_scope.cancel()
