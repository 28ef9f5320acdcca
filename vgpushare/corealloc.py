"""Compute-unit mask bookkeeping for DCU devices.

A core mask is a string of hexadecimal digits; every digit covers four
compute units and every set bit marks a unit that is in use.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from itertools import takewhile

logger = logging.getLogger(__name__)


def _hex_digit(ch: str) -> int:
    """Value of one hexadecimal digit, or 0 when it is not one."""
    try:
        return int(ch, 16)
    except ValueError:
        return 0


def _digits(mask: str) -> Iterator[str]:
    """The characters of a mask up to the first NUL."""
    return takewhile(lambda ch: ch != "\x00", mask)


def init_core_usage(req: int) -> str:
    """An all-free mask for ``req`` compute units."""
    return "0" * max(0, req // 4)


def add_core_usage(tot: str, c: str) -> str:
    """Merge the used units of ``c`` into ``tot`` digit by digit."""
    merged = []
    for i, ch in enumerate(_digits(tot)):
        if i >= len(c):
            raise ValueError(f"core mask {c!r} is shorter than {tot!r}")
        merged.append(format(_hex_digit(ch) | _hex_digit(c[i]), "x"))
    result = "".join(merged)
    logger.debug("tot=%s c=%s res=%s", tot, c, result)
    return result


def byte_alloc(b: int, req: int) -> tuple[int, int]:
    """Claim up to ``req`` free bits of the nibble ``b``.

    Returns the bits claimed and the number of units still wanted.
    """
    if req == 0:
        return 0, 0
    remains = req
    bits = format(b, "b").rjust(4, "0")
    result = 0
    for bit in bits:
        result *= 2
        if bit == "0" and remains > 0:
            remains -= 1
            result += 1
    return result, remains


def alloc_core_usage(tot: str, req: int) -> str:
    """A mask of ``req`` units taken from the free units of ``tot``."""
    remains = req
    allocated = []
    for ch in _digits(tot):
        alloc, remains = byte_alloc(_hex_digit(ch), remains)
        allocated.append(format(alloc, "x"))
    return "".join(allocated)