from __future__ import annotations

from .errors import BalanceOverflow

RESOLUTION = 112
Q112 = 1 << RESOLUTION
UINT112_MAX = (1 << 112) - 1
UINT32_MODULO = 1 << 32


class Uint112(int):
    """Unsigned integer bounded to 112 bits.

    Conversion from an unbounded balance goes through `checked`, which reports
    overflow instead of truncating.
    """

    __slots__ = ()

    @classmethod
    def checked(cls, value: int) -> "Uint112":
        value = int(value)
        if value < 0 or value > UINT112_MAX:
            raise BalanceOverflow(f"value {value} does not fit in 112 bits")
        return cls(value)


def encode(y: int) -> int:
    """Encode a 112-bit integer as a UQ112x112."""
    return int(Uint112.checked(y)) * Q112


def uqdiv(x: int, y: int) -> int:
    """Divide a UQ112x112 by a 112-bit integer, returning a UQ112x112."""
    if y == 0:
        raise ZeroDivisionError("uqdiv by zero")
    return x // int(y)


def fraction(numerator: int, denominator: int) -> int:
    return uqdiv(encode(numerator), denominator)


def decode(x: int) -> int:
    return x >> RESOLUTION


def to_float(x: int) -> float:
    return x / Q112


def timestamp32(seconds: float) -> int:
    return int(seconds) % UINT32_MODULO


def elapsed32(now32: int, last32: int) -> int:
    # wraps like an unsigned 32-bit subtraction
    return (now32 - last32) % UINT32_MODULO
