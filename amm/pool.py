from __future__ import annotations
from contextlib import contextmanager
from math import isqrt
from typing import Iterator, Optional, Protocol, Tuple, runtime_checkable
import logging

from .core import ZERO_ADDRESS, Environment, Token, safe_transfer, short_address
from .errors import (
    AlreadyInitialized,
    Forbidden,
    InitializationError,
    InsufficientInputAmount,
    InsufficientLiquidity,
    InsufficientLiquidityBurned,
    InsufficientLiquidityMinted,
    InsufficientOutputAmount,
    InvalidK,
    InvalidTo,
    Locked,
)
from .fixed_point import Uint112, elapsed32, fraction, timestamp32

logger = logging.getLogger(__name__)

MINIMUM_LIQUIDITY = 1000
FEE_BASE = 1000
FEE_UNITS = 3  # 0.3% of the input side


@runtime_checkable
class SettlementCallback(Protocol):
    """Recipient of a flash swap.

    Invoked after the optimistic transfer and before the invariant check; it
    must leave the owed input in the pool before returning.
    """

    def on_flash_swap(self, initiator: Optional[str], amount0_out: int, amount1_out: int, data: bytes) -> None:
        ...


class Pool(Token):
    """Constant-product pool for one token pair.

    The pool is also the ERC20-like ledger of its own liquidity shares, so a
    holder redeems by transferring shares to the pool address and calling
    `burn`. Reserves trail balances: tokens sent to the pool are only counted
    on the next `mint`, `swap` or `sync`.
    """

    _state_fields = Token._state_fields + (
        "token0",
        "token1",
        "reserve0",
        "reserve1",
        "block_timestamp_last",
        "price0_cumulative_last",
        "price1_cumulative_last",
        "k_last",
    )

    def __init__(self, env: Environment, factory: str, address: str) -> None:
        super().__init__(env, "AMM-LP", decimals=18, address=address)
        self.factory = factory
        self.token0: Optional[str] = None
        self.token1: Optional[str] = None
        self.reserve0: Uint112 = Uint112(0)
        self.reserve1: Uint112 = Uint112(0)
        self.block_timestamp_last: int = 0
        self.price0_cumulative_last: int = 0
        self.price1_cumulative_last: int = 0
        self.k_last: int = 0
        self.unlocked: bool = True

    def __repr__(self) -> str:
        return f"Pool({short_address(self.address)})"

    def initialize(self, token0: str, token1: str, caller: str) -> None:
        if caller != self.factory:
            raise Forbidden("only the factory may initialize a pool")
        if self.token0 is not None or self.token1 is not None:
            raise AlreadyInitialized()
        self.token0 = token0
        self.token1 = token1

    def get_reserves(self) -> Tuple[int, int, int]:
        return int(self.reserve0), int(self.reserve1), self.block_timestamp_last

    @property
    def tokens(self) -> Tuple[str, str]:
        if self.token0 is None or self.token1 is None:
            raise InitializationError("pool is not initialized")
        return self.token0, self.token1

    def _balances(self) -> Tuple[int, int]:
        token0, token1 = self.tokens
        return (
            self.env.token(token0).balance_of(self.address),
            self.env.token(token1).balance_of(self.address),
        )

    @contextmanager
    def _lock(self) -> Iterator[None]:
        if not self.unlocked:
            raise Locked()
        self.unlocked = False
        try:
            yield
        finally:
            self.unlocked = True

    def _update(self, balance0: int, balance1: int, reserve0: int, reserve1: int) -> None:
        new0 = Uint112.checked(balance0)
        new1 = Uint112.checked(balance1)
        now32 = timestamp32(self.env.now())
        elapsed = elapsed32(now32, self.block_timestamp_last)
        if elapsed > 0 and reserve0 != 0 and reserve1 != 0:
            # accumulated with the reserves that held over the elapsed interval
            self.price0_cumulative_last += fraction(reserve1, reserve0) * elapsed
            self.price1_cumulative_last += fraction(reserve0, reserve1) * elapsed
        self.reserve0 = new0
        self.reserve1 = new1
        self.block_timestamp_last = now32
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "[SYNC] pool=%s reserve0=%d reserve1=%d elapsed=%d",
                short_address(self.address), new0, new1, elapsed,
            )
        self.env.emit("Sync", source=self.address, reserve0=int(new0), reserve1=int(new1))

    def _mint_fee(self, reserve0: int, reserve1: int) -> bool:
        factory = self.env.contract_at(self.factory)
        fee_to = getattr(factory, "fee_to", None)
        fee_on = fee_to is not None
        k_last = self.k_last
        if fee_on:
            if k_last != 0:
                root_k = isqrt(reserve0 * reserve1)
                root_k_last = isqrt(k_last)
                if root_k > root_k_last:
                    numerator = self.total_supply * (root_k - root_k_last)
                    denominator = root_k * 5 + root_k_last
                    liquidity = numerator // denominator
                    if liquidity > 0:
                        self._mint(fee_to, liquidity)
        elif k_last != 0:
            self.k_last = 0
        return fee_on

    def mint(self, to: str, caller: Optional[str] = None) -> int:
        with self.env.atomic():
            reserve0, reserve1, _ = self.get_reserves()
            balance0, balance1 = self._balances()
            amount0 = balance0 - reserve0
            amount1 = balance1 - reserve1
            if amount0 < 0 or amount1 < 0:
                raise InsufficientLiquidityMinted("balance below reserve")

            fee_on = self._mint_fee(reserve0, reserve1)
            total_supply = self.total_supply
            if total_supply == 0:
                liquidity = isqrt(amount0 * amount1) - MINIMUM_LIQUIDITY
                if liquidity > 0:
                    # permanently locked so the share price stays representable
                    self._mint(ZERO_ADDRESS, MINIMUM_LIQUIDITY)
            else:
                liquidity = min(
                    amount0 * total_supply // reserve0,
                    amount1 * total_supply // reserve1,
                )
            if liquidity <= 0:
                raise InsufficientLiquidityMinted()
            self._mint(to, liquidity)

            self._update(balance0, balance1, reserve0, reserve1)
            if fee_on:
                self.k_last = int(self.reserve0) * int(self.reserve1)
            self.env.emit("Mint", source=self.address, actor_id=caller,
                          amount0=amount0, amount1=amount1, liquidity=liquidity, to=to)
            return liquidity

    def burn(self, to: str, caller: Optional[str] = None) -> Tuple[int, int]:
        with self.env.atomic():
            reserve0, reserve1, _ = self.get_reserves()
            token0, token1 = self.tokens
            balance0, balance1 = self._balances()
            liquidity = self.balance_of(self.address)

            fee_on = self._mint_fee(reserve0, reserve1)
            total_supply = self.total_supply
            if total_supply == 0:
                raise InsufficientLiquidityBurned("no liquidity outstanding")
            amount0 = liquidity * balance0 // total_supply
            amount1 = liquidity * balance1 // total_supply
            if amount0 <= 0 or amount1 <= 0:
                raise InsufficientLiquidityBurned()
            self._burn(self.address, liquidity)
            safe_transfer(self.env, token0, self.address, to, amount0)
            safe_transfer(self.env, token1, self.address, to, amount1)

            balance0, balance1 = self._balances()
            self._update(balance0, balance1, reserve0, reserve1)
            if fee_on:
                self.k_last = int(self.reserve0) * int(self.reserve1)
            self.env.emit("Burn", source=self.address, actor_id=caller,
                          amount0=amount0, amount1=amount1, liquidity=liquidity, to=to)
            return amount0, amount1

    def swap(self, amount0_out: int, amount1_out: int, to: str, data: bytes = b"",
             caller: Optional[str] = None) -> None:
        with self._lock(), self.env.atomic():
            if amount0_out < 0 or amount1_out < 0 or (amount0_out == 0 and amount1_out == 0):
                raise InsufficientOutputAmount()
            reserve0, reserve1, _ = self.get_reserves()
            if amount0_out > reserve0 or amount1_out > reserve1:
                raise InsufficientLiquidity()

            token0, token1 = self.tokens
            if to == token0 or to == token1:
                raise InvalidTo()
            # optimistic transfer, settled by the checks below
            if amount0_out > 0:
                safe_transfer(self.env, token0, self.address, to, amount0_out)
            if amount1_out > 0:
                safe_transfer(self.env, token1, self.address, to, amount1_out)
            if data:
                callee = self.env.contract_at(to)
                if not isinstance(callee, SettlementCallback):
                    raise InvalidTo("flash swap recipient has no settlement callback")
                callee.on_flash_swap(caller, amount0_out, amount1_out, data)
            balance0, balance1 = self._balances()

            amount0_in = balance0 - (reserve0 - amount0_out) if balance0 > reserve0 - amount0_out else 0
            amount1_in = balance1 - (reserve1 - amount1_out) if balance1 > reserve1 - amount1_out else 0
            if amount0_in <= 0 and amount1_in <= 0:
                raise InsufficientInputAmount()

            balance0_adjusted = balance0 * FEE_BASE - amount0_in * FEE_UNITS
            balance1_adjusted = balance1 * FEE_BASE - amount1_in * FEE_UNITS
            if balance0_adjusted * balance1_adjusted < reserve0 * reserve1 * FEE_BASE ** 2:
                raise InvalidK()

            self._update(balance0, balance1, reserve0, reserve1)
            self.env.emit("Swap", source=self.address, actor_id=caller,
                          amount0_in=amount0_in, amount1_in=amount1_in,
                          amount0_out=amount0_out, amount1_out=amount1_out, to=to)

    def skim(self, to: str) -> None:
        with self.env.atomic():
            token0, token1 = self.tokens
            balance0, balance1 = self._balances()
            excess0 = balance0 - int(self.reserve0)
            excess1 = balance1 - int(self.reserve1)
            if excess0 > 0:
                safe_transfer(self.env, token0, self.address, to, excess0)
            if excess1 > 0:
                safe_transfer(self.env, token1, self.address, to, excess1)

    def sync(self) -> None:
        with self.env.atomic():
            balance0, balance1 = self._balances()
            reserve0, reserve1, _ = self.get_reserves()
            self._update(balance0, balance1, reserve0, reserve1)
