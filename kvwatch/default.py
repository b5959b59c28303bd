"""
This module contains the default values for kvwatch configuration.
"""

from pathlib import Path

from .util import yload

__all__ = ["CFG"]

# This default configuration will be used to supplement whatever
# configuration you use.
# It is "complete" in the sense that kvwatch will never die
# due to a KeyError caused by a missing config value.

CFG = yload(Path(__file__).parent / "_config.yaml", attr=True)
