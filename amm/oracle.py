from __future__ import annotations
from dataclasses import dataclass
from typing import Tuple

from .errors import InsufficientLiquidity, InvalidToken, PeriodNotElapsed
from .factory import PoolFactory
from .fixed_point import decode, elapsed32, fraction, timestamp32, to_float
from .pool import Pool
from .quoting import pool_for, sort_tokens

DEFAULT_PERIOD = 24 * 60 * 60


@dataclass(frozen=True)
class PriceObservation:
    timestamp: int
    price0_cumulative: int
    price1_cumulative: int

    @classmethod
    def observe(cls, pool: Pool) -> "PriceObservation":
        """Accumulators as they would read if the pool synced right now.

        Saves a `sync` call: the interval since the last update is added using
        the reserves that held over it.
        """
        now32 = timestamp32(pool.env.now())
        price0 = pool.price0_cumulative_last
        price1 = pool.price1_cumulative_last
        reserve0, reserve1, last = pool.get_reserves()
        if last != now32 and reserve0 != 0 and reserve1 != 0:
            elapsed = elapsed32(now32, last)
            price0 += fraction(reserve1, reserve0) * elapsed
            price1 += fraction(reserve0, reserve1) * elapsed
        return cls(now32, price0, price1)


def twap(start: PriceObservation, end: PriceObservation) -> Tuple[int, int]:
    """Average prices between two observations, as UQ112x112."""
    elapsed = elapsed32(end.timestamp, start.timestamp)
    if elapsed == 0:
        raise PeriodNotElapsed("observations share a timestamp")
    return (
        (end.price0_cumulative - start.price0_cumulative) // elapsed,
        (end.price1_cumulative - start.price1_cumulative) // elapsed,
    )


class PairOracle:
    """Fixed-window TWAP for one pair, recomputed once per period."""

    def __init__(self, factory: PoolFactory, token_a: str, token_b: str, period: int = DEFAULT_PERIOD) -> None:
        self.pool = factory.pool(pool_for(factory, token_a, token_b))
        self.token0, self.token1 = sort_tokens(token_a, token_b)
        self.period = int(period)
        reserve0, reserve1, _ = self.pool.get_reserves()
        if reserve0 == 0 or reserve1 == 0:
            raise InsufficientLiquidity("oracle needs a funded pool")
        self.last = PriceObservation.observe(self.pool)
        self.price0_average: int = 0
        self.price1_average: int = 0

    def update(self) -> None:
        current = PriceObservation.observe(self.pool)
        elapsed = elapsed32(current.timestamp, self.last.timestamp)
        if elapsed < self.period:
            raise PeriodNotElapsed(f"{elapsed}s of {self.period}s elapsed")
        self.price0_average, self.price1_average = twap(self.last, current)
        self.last = current

    def consult(self, token: str, amount_in: int) -> int:
        if token == self.token0:
            return decode(self.price0_average * amount_in)
        if token == self.token1:
            return decode(self.price1_average * amount_in)
        raise InvalidToken(f"{token} is not in this pair")

    def average_prices(self) -> Tuple[float, float]:
        return to_float(self.price0_average), to_float(self.price1_average)
