"""
This module contains helper functions for packing+unpacking of single messages,
plus an unpacker factory for streams.
"""

from functools import partial

import msgpack

from .util import attrdict

__all__ = ["packer", "unpacker", "stream_unpacker"]

packer = msgpack.Packer(strict_types=False, use_bin_type=True).pack

unpacker = partial(
    msgpack.unpackb, object_pairs_hook=attrdict, raw=False, use_list=False, strict_map_key=False
)

stream_unpacker = partial(
    msgpack.Unpacker, object_pairs_hook=attrdict, raw=False, use_list=False, strict_map_key=False
)
