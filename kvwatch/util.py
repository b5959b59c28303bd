"""
This module contains various helper functions and classes.
"""
import os
import sys
from collections.abc import Mapping

import anyio
import attr
import outcome
import ruyaml as yaml

from .exceptions import CancelledError

import logging

logger = logging.getLogger(__name__)

rs = os.environ.get("PYTHONHASHSEED", None)
if rs is None:
    import random
else:  # pragma: no cover
    try:
        import trio._core._run as tcr
    except ImportError:
        import random
    else:
        random = tcr._r

SafeRepresenter = yaml.representer.SafeRepresenter


def yload(stream, multi=False, attr=False):  # pylint: disable=redefined-outer-name
    """
    Load a YAML document.

    Args:
      stream: a file, string or :class:`pathlib.Path`.
      multi: return an iterator over all documents.
      attr: convert mappings to :class:`attrdict`.
    """
    y = yaml.YAML(typ="safe")
    if multi:
        return y.load_all(stream)
    res = y.load(stream)
    if attr:
        res = to_attrdict(res)
    return res


def yprint(data, stream=sys.stdout, compact=False):
    """
    Standard code to write a YAML record.

    :param data: The data to write.
    :param stream: the file to write to, defaults to stdout.
    :param compact: Write single lines if possible. default False.
    """
    if isinstance(data, (int, float)):
        print(data, file=stream)
    elif isinstance(data, (str, bytes)):
        print(repr(data), file=stream)
    else:
        y = yaml.YAML(typ="safe")
        y.default_flow_style = compact
        y.dump(data, stream=stream)


class TimeOnlyFormatter(logging.Formatter):
    default_time_format = "%H:%M:%S"
    default_msec_format = "%s.%03d"


class NotGiven:
    """Placeholder value for 'no data' or 'deleted'."""

    def __new__(cls):
        return cls

    def __getstate__(self):
        raise ValueError("You may not serialize this object")

    def __repr__(self):
        return "‹NotGiven›"

    def __str__(self):
        return "NotGiven"


def combine_dict(*d, cls=dict) -> dict:
    """
    Returns a dict with all keys+values of all dict arguments.
    The first found value wins.

    This recurses if values are dicts.

    Args:
      cls (type): a class to instantiate the result with. Default: dict.
        Often used: :class:`attrdict`.
    """
    res = cls()
    keys = {}
    if len(d) == 1:
        return cls(d[0])
    for kv in d:
        for k, v in kv.items():
            if k not in keys:
                keys[k] = []
            keys[k].append(v)
    for k, v in keys.items():
        if v[0] is NotGiven:
            res.pop(k, None)
        elif len(v) == 1:
            res[k] = v[0]
        elif not isinstance(v[0], Mapping):
            for vv in v[1:]:
                assert vv is NotGiven or not isinstance(vv, Mapping)
            res[k] = v[0]
        else:
            res[k] = combine_dict(*v, cls=cls)
    return res


class attrdict(dict):
    """A dictionary which can be accessed via attributes, for convenience."""

    def __getattr__(self, a):
        if a.startswith("_"):
            return object.__getattribute__(self, a)
        try:
            return self[a]
        except KeyError:
            raise AttributeError(a) from None

    def __setattr__(self, a, b):
        if a.startswith("_"):
            super(attrdict, self).__setattr__(a, b)
        else:
            self[a] = b

    def __delattr__(self, a):
        try:
            del self[a]
        except KeyError:
            raise AttributeError(a) from None


SafeRepresenter.add_representer(attrdict, SafeRepresenter.represent_dict)


def to_attrdict(data):
    """Recursively convert mappings to :class:`attrdict`."""
    if isinstance(data, Mapping):
        return attrdict((k, to_attrdict(v)) for k, v in data.items())
    if isinstance(data, list):
        return [to_attrdict(v) for v in data]
    return data


def to_bytes(data) -> bytes:
    """Keys and values may be passed as strings; the wire wants bytes."""
    if data is None:
        return b""
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


@attr.s
class ValueEvent:
    """A waitable value useful for inter-task synchronization,
    inspired by :class:`threading.Event`.

    An event object manages an internal value, which is initially
    unset, and a task can wait for it to become True.

    Args:
      ``scope``:  A cancelation scope that will be cancelled if/when
                  this ValueEvent is. Used for clean cancel propagation.

    Note that the value can only be read once.
    """

    event = attr.ib(factory=anyio.Event, init=False)
    value = attr.ib(default=None, init=False)
    scope = attr.ib(default=None, init=True)

    def set(self, value):
        """Set the result to return this value, and wake any waiting task."""
        self.value = outcome.Value(value)
        self.event.set()

    def set_error(self, exc):
        """Set the result to raise this exception, and wake any waiting task."""
        self.value = outcome.Error(exc)
        self.event.set()

    def is_set(self):
        """Check whether the event has occurred."""
        return self.value is not None

    def cancel(self):
        """Send a cancelation to the recipient."""
        if self.scope is not None:
            self.scope.cancel()
        self.set_error(CancelledError())

    async def get(self):
        """Block until the value is set.

        If it's already set, then this method returns immediately.

        The value can only be read once.
        """
        await self.event.wait()
        return self.value.unwrap()


@attr.s
class Backoff:
    """
    Exponentially growing, jittered delays for reconnecting.

    The first delay is ``initial``; every further one is multiplied by
    ``factor`` up to ``max``. Each returned delay is spread by ``±jitter``
    (a fraction) and never exceeds ``max``.
    """

    initial = attr.ib(default=0.1)
    factor = attr.ib(default=2)
    max = attr.ib(default=5)  # pylint: disable=redefined-builtin
    jitter = attr.ib(default=0.2)
    _delay = attr.ib(default=None, init=False)

    @classmethod
    def from_config(cls, cfg):
        return cls(
            initial=cfg.get("initial", 0.1),
            factor=cfg.get("factor", 2),
            max=cfg.get("max", 5),
            jitter=cfg.get("jitter", 0.2),
        )

    def reset(self):
        self._delay = None

    def __iter__(self):
        return self

    def __next__(self):
        if self._delay is None:
            self._delay = self.initial
        else:
            self._delay = min(self._delay * self.factor, self.max)
        d = self._delay
        if self.jitter:
            d *= random.uniform(1 - self.jitter, 1 + self.jitter)
        return min(d, self.max)
