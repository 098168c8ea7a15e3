"""
Wall-clock timing helpers for solver diagnostics.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator


@dataclass
class Elapsed:
    seconds: float = 0.0


@contextmanager
def timed() -> Iterator[Elapsed]:
    """
    Measure the wall time of a block.

    Usage::

        with timed() as t:
            work()
        logger.debug("work took %.3e s", t.seconds)
    """
    out = Elapsed()
    t0 = time.perf_counter()
    try:
        yield out
    finally:
        out.seconds = time.perf_counter() - t0
