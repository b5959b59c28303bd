# command line interface

import sys
from logging.config import dictConfig

import anyio
import asyncclick as click

from .default import CFG
from .exceptions import ClientError, ServerError
from .frames import KeyRange
from .manager import open_watch_manager
from .util import attrdict, combine_dict, to_attrdict, yload, yprint

import logging

logger = logging.getLogger(__name__)


def cmd():
    try:
        main(standalone_mode=False)
    except click.exceptions.UsageError as exc:
        try:
            s = str(exc)
        except TypeError:
            logger.exception(repr(exc), exc_info=exc)
        else:
            print(s, file=sys.stderr)
    except click.exceptions.Abort:
        print("Aborted.", file=sys.stderr)
    except (ClientError, ServerError) as err:
        print(type(err).__name__ + ":", *err.args, file=sys.stderr)
        sys.exit(1)


@click.group()
@click.option("-v", "--verbose", count=True, help="Enable debugging. Use twice for more verbosity.")
@click.option("-q", "--quiet", count=True, help="Disable debugging. Opposite of '--verbose'.")
@click.option("-c", "--cfg", type=click.File("r"), default=None, help="Configuration file (YAML).")
@click.pass_context
async def main(ctx, verbose, quiet, cfg):
    """Watch keys on a key-value server."""
    ctx.ensure_object(attrdict)
    obj = ctx.obj
    obj.debug = verbose - quiet
    if "stdout" not in obj:
        obj.stdout = sys.stdout

    if cfg:
        logger.debug("Loading %s", cfg)
        obj.cfg = combine_dict(yload(cfg, attr=True) or {}, CFG, cls=attrdict)
        cfg.close()
    else:
        obj.cfg = CFG

    lcfg = to_attrdict(obj.cfg.logging)
    if obj.debug:
        lcfg.setdefault("root", {})["level"] = (
            "DEBUG" if obj.debug > 1 else "INFO" if obj.debug > 0 else "ERROR"
        )
    dictConfig(lcfg)


def event_data(evt):
    """Convert an event to something YAML can print nicely."""

    def s(b):
        if b is None:
            return None
        try:
            return b.decode("utf-8")
        except UnicodeDecodeError:
            return b

    res = dict(type=evt.type.value, key=s(evt.key), revision=evt.mod_revision)
    if evt.value is not None:
        res["value"] = s(evt.value)
    if evt.prev_value is not None:
        res["prev_value"] = s(evt.prev_value)
    return res


@main.command()
@click.option("-h", "--host", default=None, help=f"Host to use. Default: {CFG.watch.conn.host}")
@click.option(
    "-p", "--port", type=int, default=None, help=f"Port to use. Default: {CFG.watch.conn.port}"
)
@click.option("-t", "--token", default=None, help="Bearer token to send.")
@click.option("-P", "--prefix", is_flag=True, help="Watch all keys starting with KEY.")
@click.option("-o", "--old", is_flag=True, help="Include the previous values.")
@click.option("-n", "--count", type=int, default=0, help="Stop after this many notifications.")
@click.option("-r", "--revision", type=int, default=None, help="Start at this revision.")
@click.argument("key", nargs=1)
@click.pass_obj
async def watch(obj, key, host, port, token, prefix, old, count, revision):
    """
    Print changes to KEY as they happen.

    Each event is printed as a YAML list entry.
    """
    conn = attrdict()
    if host is not None:
        conn.host = host
    if port is not None:
        conn.port = port
    if token is not None:
        conn.token = token
    cfg = combine_dict(attrdict(conn=conn), obj.cfg.watch, cls=attrdict)

    key_range = KeyRange.prefix(key) if prefix else KeyRange(key)
    done = anyio.Event()
    seen = 0

    def show(events):
        nonlocal seen
        for evt in events:
            yprint([event_data(evt)], stream=obj.stdout)
        obj.stdout.flush()
        seen += 1
        if count and seen >= count:
            done.set()

    async with open_watch_manager(**cfg) as mgr:
        await mgr.subscribe_and_wait(
            key_range, show, start_revision=revision, prev_kv=old, timeout=cfg.conn.connect_timeout
        )
        logger.debug("Watching %r", key_range)
        await done.wait()
