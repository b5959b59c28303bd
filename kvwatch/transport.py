"""
Physical channels for the watch stream.

A :class:`Transport` opens :class:`Channel` objects; a channel carries
frames (dicts) in both directions. The watch layer does not care how the
connection is made or how the bearer token is obtained.
"""

import socket
from abc import ABC, abstractmethod
from inspect import iscoroutine
from typing import Optional

import anyio

from .codec import packer, stream_unpacker
from .exceptions import ServerConnectionError

import logging

logger = logging.getLogger(__name__)

__all__ = ["Channel", "Transport", "StreamChannel", "TCPTransport", "transport_from_config"]


class Channel(ABC):
    """
    One physical bidirectional stream.

    Args:
      token: a bearer token, or a (possibly async) callable returning one.
        If set, it's added to every outbound frame.
    """

    def __init__(self, token=None):
        self._token = token

    async def _stamp(self, msg: dict) -> dict:
        tok = self._token
        if tok is None:
            return msg
        if callable(tok):
            tok = tok()
            if iscoroutine(tok):
                tok = await tok
        if tok is None:
            return msg
        return dict(msg, token=tok)

    async def send(self, msg: dict):
        """Write one frame."""
        await self._send(await self._stamp(msg))

    @abstractmethod
    async def _send(self, msg: dict):
        """Write a frame, after authorization."""

    @abstractmethod
    async def receive(self) -> dict:
        """Read the next frame. Raises `anyio.EndOfStream` at the end."""

    @abstractmethod
    async def send_eof(self):
        """Close the sending side."""

    @abstractmethod
    async def aclose(self):
        """Close the whole channel."""

    def __aiter__(self):
        return self

    async def __anext__(self):
        try:
            return await self.receive()
        except anyio.EndOfStream:
            raise StopAsyncIteration from None


class Transport(ABC):
    """Something that can open a channel to the server."""

    @abstractmethod
    async def connect(self) -> Channel:
        """Open a new channel. Raise `ServerConnectionError` on failure."""


class StreamChannel(Channel):
    """A channel that packs frames onto an anyio byte stream."""

    def __init__(self, stream: anyio.abc.ByteStream, token=None, buflen: int = 4096):
        super().__init__(token=token)
        self.stream = stream
        self._unpacker = stream_unpacker()
        self._buflen = buflen

    async def _send(self, msg):
        try:
            p = packer(msg)
        except TypeError as e:
            raise ValueError(f"Unable to pack: {msg!r}") from e
        await self.stream.send(p)

    async def receive(self):
        while True:
            for msg in self._unpacker:
                return msg
            buf = await self.stream.receive(self._buflen)
            self._unpacker.feed(buf)

    async def send_eof(self):
        try:
            await self.stream.send_eof()
        except (AttributeError, NotImplementedError):
            await self.stream.aclose()

    async def aclose(self):
        await self.stream.aclose()


class TCPTransport(Transport):
    """
    Connect to one of a set of ``(host, port)`` addresses.

    Every connection attempt starts with the address after the one that
    worked last, so that a server which went away is not tried first.
    """

    def __init__(self, addresses, *, token=None, ssl=None):
        if not addresses:
            raise ValueError("No addresses given")
        self.addresses = [(h, int(p)) for h, p in addresses]
        self.token = token
        self.ssl = ssl or None
        self._next = 0

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.addresses!r}>"

    async def connect(self) -> StreamChannel:
        n = len(self.addresses)
        err = None
        for i in range(n):
            idx = (self._next + i) % n
            host, port = self.addresses[idx]
            try:
                if self.ssl:
                    stream = await anyio.connect_tcp(host, port, ssl_context=self.ssl, tls_standard_compatible=False)
                else:
                    stream = await anyio.connect_tcp(host, port)
            except (OSError, socket.gaierror) as exc:
                logger.debug("Connect to %s:%s failed: %r", host, port, exc)
                err = exc
                continue
            self._next = (idx + 1) % n
            logger.debug("Connected to %s:%s", host, port)
            return StreamChannel(stream, token=self.token)
        raise ServerConnectionError(self.addresses) from err


def transport_from_config(cfg) -> TCPTransport:
    """Build a TCP transport from the ``conn`` section of the config."""
    addresses = list(cfg.get("addresses") or ())
    if not addresses:
        addresses = [(cfg["host"], cfg["port"])]
    ssl = cfg.get("ssl") or None
    if ssl is True:
        import ssl as _ssl

        ssl = _ssl.create_default_context()
    return TCPTransport(addresses, token=cfg.get("token"), ssl=ssl)
