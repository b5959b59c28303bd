from contextlib import asynccontextmanager

import anyio
import asyncclick as click
import pytest
from anyio.abc import SocketAttribute

from kvwatch import WatchCreateError, open_watch_manager
from kvwatch.exceptions import ServerConnectionError
from kvwatch.mock import MockServer, Recorder
from kvwatch.transport import TCPTransport

from .run import run

import logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def tcp_server(token=None):
    listener = await anyio.create_tcp_listener(local_host="127.0.0.1")
    async with listener, anyio.create_task_group() as tg:
        server = MockServer(tg, token=token)
        server.port = listener.extra(SocketAttribute.local_port)
        tg.start_soon(listener.serve, server.serve_tcp)
        try:
            yield server
        finally:
            tg.cancel_scope.cancel()


@pytest.mark.trio
async def test_01_tcp():
    async with tcp_server(token="s3cret") as srv:
        rec = Recorder()
        conn = dict(host="127.0.0.1", port=srv.port, token="s3cret")
        with anyio.fail_after(10):
            async with open_watch_manager(conn=conn) as mgr:
                await mgr.subscribe_and_wait("k", rec)
                await mgr.subscribe_prefix("dir/", rec)
                while srv.watch_count < 2:
                    await anyio.sleep(0.01)
                srv.put("k", b"\x00\xff")
                srv.put("dir/x", "y")
                await rec.wait(2)
                assert [e.value for e in rec.events] == [b"\x00\xff", b"y"]

                session = mgr.stream.session
                srv.sever()
                while mgr.stream.session == session or srv.watch_count < 2:
                    await anyio.sleep(0.05)
                srv.put("k", "z")
                await rec.wait(3)
                assert rec.events[-1].value == b"z"


@pytest.mark.trio
async def test_02_tcp_bad_token():
    async with tcp_server(token="s3cret") as srv:
        conn = dict(host="127.0.0.1", port=srv.port, token="nope")
        with anyio.fail_after(10):
            async with open_watch_manager(conn=conn) as mgr:
                with pytest.raises(WatchCreateError):
                    await mgr.subscribe_and_wait("k", Recorder())


@pytest.mark.trio
async def test_03_tcp_failover():
    async with tcp_server() as srv:
        async with await anyio.create_tcp_listener(local_host="127.0.0.1") as dead:
            dead_port = dead.extra(SocketAttribute.local_port)
        t = TCPTransport([("127.0.0.1", dead_port), ("127.0.0.1", srv.port)])
        with anyio.fail_after(10):
            ch = await t.connect()
            await ch.aclose()
            with pytest.raises(ServerConnectionError):
                await TCPTransport([("127.0.0.1", dead_port)]).connect()


@pytest.mark.trio
async def test_04_cli():
    async with tcp_server() as srv:
        out = None

        async def cli():
            nonlocal out
            out = await run("watch", "-h", "127.0.0.1", "-p", str(srv.port), "-n", "2", "-P", "dir/")

        with anyio.fail_after(10):
            async with anyio.create_task_group() as tg:
                tg.start_soon(cli)
                while srv.watch_count < 1:
                    await anyio.sleep(0.01)
                srv.put("dir/a", "v1")
                srv.put("other", "v0")
                srv.put("dir/b", "v2")
        assert "key: dir/a" in out
        assert "value: v1" in out
        assert "value: v2" in out
        assert "other" not in out


@pytest.mark.trio
async def test_05_cli_usage():
    with pytest.raises(click.UsageError):
        await run("--doesnotexist")
