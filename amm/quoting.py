"""Pure pricing functions over pool reserves.

Amounts are integers in token base units. The fee is 0.3% of the input,
expressed as 997/1000, and every division floors; `get_amount_in` adds one
unit so the resulting swap always clears the pool's invariant check.
"""
from __future__ import annotations
from typing import TYPE_CHECKING, Dict, List, Sequence, Tuple

from .core import ZERO_ADDRESS
from .errors import (
    IdenticalAddresses,
    InsufficientAmount,
    InsufficientLiquidity,
    InvalidPath,
    ZeroAddress,
)

if TYPE_CHECKING:
    from .factory import PoolFactory

FEE_NUMERATOR = 997
FEE_DENOMINATOR = 1000


def sort_tokens(token_a: str, token_b: str) -> Tuple[str, str]:
    if token_a == token_b:
        raise IdenticalAddresses(f"{token_a} appears on both sides")
    token0, token1 = (token_a, token_b) if token_a < token_b else (token_b, token_a)
    if token0 == ZERO_ADDRESS:
        raise ZeroAddress()
    return token0, token1


def pool_for(factory: "PoolFactory", token_a: str, token_b: str) -> str:
    return factory.pool_address(token_a, token_b)


def _pool_reserves(factory: "PoolFactory", address: str) -> Tuple[int, int]:
    pool = factory.env.contract_at(address)
    if pool is None:
        raise InvalidPath(f"no pool deployed at {address}")
    reserve0, reserve1, _ = pool.get_reserves()
    return reserve0, reserve1


def get_reserves(factory: "PoolFactory", token_a: str, token_b: str) -> Tuple[int, int]:
    """Reserves of the a/b pool, ordered as (reserve_a, reserve_b)."""
    token0, _ = sort_tokens(token_a, token_b)
    reserve0, reserve1 = _pool_reserves(factory, pool_for(factory, token_a, token_b))
    return (reserve0, reserve1) if token_a == token0 else (reserve1, reserve0)


def quote(amount_a: int, reserve_a: int, reserve_b: int) -> int:
    if amount_a <= 0:
        raise InsufficientAmount()
    if reserve_a <= 0 or reserve_b <= 0:
        raise InsufficientLiquidity()
    return amount_a * reserve_b // reserve_a


def get_amount_out(amount_in: int, reserve_in: int, reserve_out: int) -> int:
    if amount_in <= 0:
        raise InsufficientAmount("amount in must be positive")
    if reserve_in <= 0 or reserve_out <= 0:
        raise InsufficientLiquidity()
    amount_in_with_fee = amount_in * FEE_NUMERATOR
    numerator = amount_in_with_fee * reserve_out
    denominator = reserve_in * FEE_DENOMINATOR + amount_in_with_fee
    return numerator // denominator


def get_amount_in(amount_out: int, reserve_in: int, reserve_out: int) -> int:
    if amount_out <= 0:
        raise InsufficientAmount("amount out must be positive")
    if reserve_in <= 0 or reserve_out <= 0:
        raise InsufficientLiquidity()
    if amount_out >= reserve_out:
        raise InsufficientLiquidity(f"amount out {amount_out} drains reserve {reserve_out}")
    numerator = reserve_in * amount_out * FEE_DENOMINATOR
    denominator = (reserve_out - amount_out) * FEE_NUMERATOR
    return numerator // denominator + 1


def get_amounts_out(factory: "PoolFactory", amount_in: int, path: Sequence[str]) -> List[int]:
    if len(path) < 2:
        raise InvalidPath("path needs at least two tokens")
    amounts = [amount_in]
    # reserves as they will be after each earlier hop executes
    pending: Dict[str, Tuple[int, int]] = {}
    for token_in, token_out in zip(path[:-1], path[1:]):
        token0, _ = sort_tokens(token_in, token_out)
        address = pool_for(factory, token_in, token_out)
        reserve0, reserve1 = pending.get(address) or _pool_reserves(factory, address)
        if token_in == token0:
            amount_out = get_amount_out(amounts[-1], reserve0, reserve1)
            pending[address] = (reserve0 + amounts[-1], reserve1 - amount_out)
        else:
            amount_out = get_amount_out(amounts[-1], reserve1, reserve0)
            pending[address] = (reserve0 - amount_out, reserve1 + amounts[-1])
        amounts.append(amount_out)
    return amounts


def get_amounts_in(factory: "PoolFactory", amount_out: int, path: Sequence[str]) -> List[int]:
    if len(path) < 2:
        raise InvalidPath("path needs at least two tokens")
    hops = [pool_for(factory, a, b) for a, b in zip(path[:-1], path[1:])]
    if len(set(hops)) != len(hops):
        raise InvalidPath("exact-output paths may not revisit a pool")
    amounts = [0] * len(path)
    amounts[-1] = amount_out
    for i in range(len(path) - 1, 0, -1):
        reserve_in, reserve_out = get_reserves(factory, path[i - 1], path[i])
        amounts[i - 1] = get_amount_in(amounts[i], reserve_in, reserve_out)
    return amounts
