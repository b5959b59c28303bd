import anyio
import pytest

from kvwatch import SubscriptionState
from kvwatch.mock import Recorder, stdtest
from kvwatch.stream import StreamState

import logging

logger = logging.getLogger(__name__)


@pytest.mark.trio
async def test_01_sever(autojump_clock):
    async with stdtest() as st:
        mgr, srv = st.manager, st.server
        ra, rb = Recorder(), Recorder()
        ha = await mgr.subscribe_and_wait("a", ra)
        hb = await mgr.subscribe_and_wait("b", rb)
        session = mgr.stream.session

        srv.sever()
        await st.wait_reconnected(session)
        await st.wait_active(ha, hb)
        assert mgr.registry.handles() == [ha, hb]
        assert len(srv.frames("create")) == 4
        assert srv.watch_count == 2

        srv.put("a", "1")
        srv.put("b", "2")
        await ra.wait()
        await rb.wait()
        await anyio.sleep(0.5)
        assert [e.value for e in ra.events] == [b"1"]
        assert [e.value for e in rb.events] == [b"2"]


@pytest.mark.trio
async def test_02_down_up(autojump_clock):
    async with stdtest() as st:
        mgr, srv = st.manager, st.server
        rec = Recorder()
        h = await mgr.subscribe_and_wait("k", rec)
        session = mgr.stream.session
        n = srv.n_connects

        srv.down()
        await anyio.sleep(3)
        assert mgr.stream.state is StreamState.RECONNECTING
        assert not mgr.stream.connected
        assert srv.n_connects - n >= 3
        assert mgr.state(h) is SubscriptionState.ACTIVE  # not re-sent yet

        # without a start revision, changes while disconnected are lost
        srv.put("k", "lost")
        srv.up()
        await st.wait_reconnected(session)
        await st.wait_active(h)
        srv.put("k", "seen")
        await rec.wait()
        await anyio.sleep(0.5)
        assert [e.value for e in rec.events] == [b"seen"]


@pytest.mark.trio
async def test_03_backoff_is_bounded(autojump_clock):
    async with stdtest(retry=dict(initial=1, factor=10, max=2, jitter=0)) as st:
        mgr, srv = st.manager, st.server
        await mgr.subscribe_and_wait("k", Recorder())
        srv.down()
        n = srv.n_connects
        await anyio.sleep(20.5)
        # 1, 2, 2, 2, ...
        assert srv.n_connects - n == 10


@pytest.mark.trio
async def test_04_resume(autojump_clock):
    async with stdtest() as st:
        mgr, srv = st.manager, st.server
        srv.put("k", "a")
        rec = Recorder()
        h = await mgr.subscribe_and_wait("k", rec, start_revision=1)
        await rec.wait(1)
        srv.put("k", "b")
        await rec.wait(2)
        session = mgr.stream.session

        srv.down()
        srv.put("k", "c")
        srv.put("x", "y")
        srv.put("k", "d")
        await anyio.sleep(1)
        srv.up()
        await st.wait_reconnected(session)
        await st.wait_active(h)
        await rec.wait(3)
        srv.put("k", "e")
        await rec.wait(4)
        await anyio.sleep(0.1)

        assert [e.value for e in rec.events] == [b"a", b"b", b"c", b"d", b"e"]
        assert srv.frames("create")[-1]["start_revision"] == 3


@pytest.mark.trio
async def test_05_cancel_while_down(autojump_clock):
    async with stdtest() as st:
        mgr, srv = st.manager, st.server
        ha = await mgr.subscribe_and_wait("a", Recorder())
        hb = await mgr.subscribe_and_wait("b", Recorder())
        session = mgr.stream.session

        srv.down()
        await anyio.sleep(0.5)
        await mgr.cancel(ha)
        srv.up()
        await st.wait_reconnected(session)
        await st.wait_active(hb)
        await anyio.sleep(0.1)

        creates = srv.frames("create")
        assert len(creates) == 3
        assert creates[-1]["key"] == b"b"
        assert srv.watch_count == 1
        assert mgr.registry.handles() == [hb]


@pytest.mark.trio
async def test_06_subscribe_while_down(autojump_clock):
    async with stdtest() as st:
        mgr, srv = st.manager, st.server
        await mgr.subscribe_and_wait("a", Recorder())
        session = mgr.stream.session

        srv.down()
        await anyio.sleep(0.5)
        rec = Recorder()
        h = await mgr.subscribe("b", rec)
        assert mgr.state(h) is SubscriptionState.PENDING
        srv.up()
        await st.wait_reconnected(session)
        await st.wait_active(h)
        srv.put("b", "x")
        await rec.wait()
        await anyio.sleep(0.5)
        assert len(rec.batches) == 1
        assert len(srv.frames("create")) == 3


@pytest.mark.trio
async def test_07_close_while_down(autojump_clock):
    async with stdtest() as st:
        mgr, srv = st.manager, st.server
        await mgr.subscribe_and_wait("a", Recorder())
        stream = mgr.stream
        srv.down()
        await anyio.sleep(1)
        with anyio.fail_after(1):
            await mgr.aclose()
        assert stream.state is StreamState.CLOSED
        n = srv.n_connects
        srv.up()
        await anyio.sleep(10)
        assert srv.n_connects == n


@pytest.mark.trio
async def test_08_cancel_during_replay(autojump_clock):
    async with stdtest() as st:
        mgr, srv = st.manager, st.server
        ra, rb = Recorder(), Recorder()
        ha = await mgr.subscribe_and_wait("a", ra)
        hb = await mgr.subscribe_and_wait("b", rb)
        stream = mgr.stream
        session = stream.session

        # Let the reconnect queue up behind the write lock, then cancel "a"
        # while its old watch ID is about to be reused for "b".
        async with anyio.create_task_group() as tg:
            async with stream._write_lock:
                srv.sever()
                await anyio.sleep(1)
                tg.start_soon(mgr.cancel, ha)
                await anyio.sleep(0.1)
                assert ha not in mgr

        await st.wait_reconnected(session)
        await st.wait_active(hb)
        await anyio.sleep(0.5)
        assert hb in mgr
        assert mgr.registry.get(hb).server_id == 0
        assert srv.frames("cancel") == []
        assert srv.watch_count == 1

        srv.put("a", "1")
        srv.put("b", "2")
        await rb.wait()
        await anyio.sleep(0.5)
        assert [e.value for e in rb.events] == [b"2"]
        assert ra.batches == []


@pytest.mark.trio
async def test_09_cancel_after_reconnect(autojump_clock):
    async with stdtest() as st:
        mgr, srv = st.manager, st.server
        ha = await mgr.subscribe_and_wait("a", Recorder())
        hb = await mgr.subscribe_and_wait("b", Recorder())
        session = mgr.stream.session
        srv.sever()
        await st.wait_reconnected(session)
        await st.wait_active(ha, hb)

        # both watches got new IDs; cancelling uses the new one
        await mgr.cancel(hb)
        await anyio.sleep(0.1)
        assert srv.frames("cancel") == [dict(action="cancel", watch_id=1)]
        assert srv.watch_count == 1
        assert ha in mgr
