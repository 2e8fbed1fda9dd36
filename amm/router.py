from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Set, Tuple
from collections import deque
import logging

from . import quoting
from .core import Environment, safe_transfer_from, short_address
from .errors import (
    AMMError,
    ExcessiveInputAmount,
    Expired,
    InsufficientAAmount,
    InsufficientBAmount,
    InsufficientOutputAmount,
    InvalidPath,
)
from .factory import PoolFactory
from .pool import Pool

logger = logging.getLogger(__name__)

@dataclass
class Hop:
    pool_id: str
    asset_in: str
    asset_out: str
    amount_in: int
    amount_out: int

@dataclass
class RoutePlan:
    ok: bool
    reason: str
    path: List[str]
    hops: List[Hop]
    expected_amount_out: int = 0

class Router:
    """
    Stateless front end over the factory's pools. Plans a trade with the
    quoting functions, pulls the input from the caller into the first pool
    and chains the pool swaps so every intermediate output lands directly in
    the next pool.
    """
    def __init__(self, env: Environment, factory: PoolFactory, max_hops: int = 3,
                 address: Optional[str] = None) -> None:
        self.env = env
        self.factory = factory
        self.max_hops = max_hops
        self.address = address or env.new_address("router")
        env.register(self.address, self)

    def _ensure(self, deadline: Optional[int]) -> None:
        if deadline is not None and deadline < self.env.now():
            raise Expired(f"deadline {deadline} passed at {self.env.now()}")

    def _pool(self, token_a: str, token_b: str) -> Pool:
        address = quoting.pool_for(self.factory, token_a, token_b)
        contract = self.env.contract_at(address)
        if not isinstance(contract, Pool):
            raise InvalidPath(f"no pool for {token_a}/{token_b}")
        return contract

    # -----------------------------
    # Liquidity
    # -----------------------------
    def _add_liquidity(self, token_a: str, token_b: str, amount_a_desired: int, amount_b_desired: int,
                       amount_a_min: int, amount_b_min: int) -> Tuple[int, int]:
        if self.factory.get_pool(token_a, token_b) is None:
            self.factory.create_pool(token_a, token_b)
        reserve_a, reserve_b = quoting.get_reserves(self.factory, token_a, token_b)
        if reserve_a == 0 and reserve_b == 0:
            return amount_a_desired, amount_b_desired
        amount_b_optimal = quoting.quote(amount_a_desired, reserve_a, reserve_b)
        if amount_b_optimal <= amount_b_desired:
            if amount_b_optimal < amount_b_min:
                raise InsufficientBAmount(f"optimal {amount_b_optimal} below minimum {amount_b_min}")
            return amount_a_desired, amount_b_optimal
        amount_a_optimal = quoting.quote(amount_b_desired, reserve_b, reserve_a)
        if amount_a_optimal > amount_a_desired or amount_a_optimal < amount_a_min:
            raise InsufficientAAmount(f"optimal {amount_a_optimal} outside [{amount_a_min}, {amount_a_desired}]")
        return amount_a_optimal, amount_b_desired

    def add_liquidity(self, caller: str, token_a: str, token_b: str, amount_a_desired: int, amount_b_desired: int,
                      amount_a_min: int, amount_b_min: int, to: str,
                      deadline: Optional[int] = None) -> Tuple[int, int, int]:
        with self.env.atomic():
            self._ensure(deadline)
            amount_a, amount_b = self._add_liquidity(
                token_a, token_b, amount_a_desired, amount_b_desired, amount_a_min, amount_b_min,
            )
            pool = self._pool(token_a, token_b)
            safe_transfer_from(self.env, token_a, self.address, caller, pool.address, amount_a)
            safe_transfer_from(self.env, token_b, self.address, caller, pool.address, amount_b)
            liquidity = pool.mint(to, caller=self.address)
            return amount_a, amount_b, liquidity

    def remove_liquidity(self, caller: str, token_a: str, token_b: str, liquidity: int,
                         amount_a_min: int, amount_b_min: int, to: str,
                         deadline: Optional[int] = None) -> Tuple[int, int]:
        with self.env.atomic():
            self._ensure(deadline)
            pool = self._pool(token_a, token_b)
            safe_transfer_from(self.env, pool.address, self.address, caller, pool.address, liquidity)
            amount0, amount1 = pool.burn(to, caller=self.address)
            token0, _ = quoting.sort_tokens(token_a, token_b)
            amount_a, amount_b = (amount0, amount1) if token_a == token0 else (amount1, amount0)
            if amount_a < amount_a_min:
                raise InsufficientAAmount(f"received {amount_a} below minimum {amount_a_min}")
            if amount_b < amount_b_min:
                raise InsufficientBAmount(f"received {amount_b} below minimum {amount_b_min}")
            return amount_a, amount_b

    # -----------------------------
    # Swaps
    # -----------------------------
    def _swap(self, amounts: Sequence[int], path: Sequence[str], to: str) -> None:
        last = len(path) - 2
        for i, (token_in, token_out) in enumerate(zip(path[:-1], path[1:])):
            token0, _ = quoting.sort_tokens(token_in, token_out)
            amount_out = amounts[i + 1]
            amount0_out, amount1_out = (0, amount_out) if token_in == token0 else (amount_out, 0)
            recipient = quoting.pool_for(self.factory, token_out, path[i + 2]) if i < last else to
            pool = self._pool(token_in, token_out)
            logger.debug("[HOP] %d/%d pool=%s in=%s out=%s amount_out=%d to=%s",
                         i + 1, last + 1, short_address(pool.address), short_address(token_in),
                         short_address(token_out), amount_out, short_address(recipient))
            pool.swap(amount0_out, amount1_out, recipient, b"", caller=self.address)

    def swap_exact_tokens_for_tokens(self, caller: str, amount_in: int, amount_out_min: int,
                                     path: Sequence[str], to: str,
                                     deadline: Optional[int] = None) -> List[int]:
        with self.env.atomic():
            self._ensure(deadline)
            amounts = quoting.get_amounts_out(self.factory, amount_in, path)
            if amounts[-1] < amount_out_min:
                raise InsufficientOutputAmount(f"quoted {amounts[-1]} below minimum {amount_out_min}")
            first_pool = quoting.pool_for(self.factory, path[0], path[1])
            safe_transfer_from(self.env, path[0], self.address, caller, first_pool, amounts[0])
            self._swap(amounts, path, to)
            return amounts

    def swap_tokens_for_exact_tokens(self, caller: str, amount_out: int, amount_in_max: int,
                                     path: Sequence[str], to: str,
                                     deadline: Optional[int] = None) -> List[int]:
        with self.env.atomic():
            self._ensure(deadline)
            amounts = quoting.get_amounts_in(self.factory, amount_out, path)
            # bound applies to the first-hop input, not the final output
            if amounts[0] > amount_in_max:
                raise ExcessiveInputAmount(f"requires {amounts[0]} above maximum {amount_in_max}")
            first_pool = quoting.pool_for(self.factory, path[0], path[1])
            safe_transfer_from(self.env, path[0], self.address, caller, first_pool, amounts[0])
            self._swap(amounts, path, to)
            return amounts

    def _swap_supporting_fee_on_transfer_tokens(self, path: Sequence[str], to: str) -> None:
        last = len(path) - 2
        for i, (token_in, token_out) in enumerate(zip(path[:-1], path[1:])):
            token0, _ = quoting.sort_tokens(token_in, token_out)
            pool = self._pool(token_in, token_out)
            reserve0, reserve1, _ = pool.get_reserves()
            reserve_in, reserve_out = (reserve0, reserve1) if token_in == token0 else (reserve1, reserve0)
            # what actually arrived, after any transfer fee
            amount_input = self.env.token(token_in).balance_of(pool.address) - reserve_in
            amount_output = quoting.get_amount_out(amount_input, reserve_in, reserve_out)
            amount0_out, amount1_out = (0, amount_output) if token_in == token0 else (amount_output, 0)
            recipient = quoting.pool_for(self.factory, token_out, path[i + 2]) if i < last else to
            pool.swap(amount0_out, amount1_out, recipient, b"", caller=self.address)

    def swap_exact_tokens_for_tokens_supporting_fee_on_transfer_tokens(
        self, caller: str, amount_in: int, amount_out_min: int, path: Sequence[str], to: str,
        deadline: Optional[int] = None,
    ) -> int:
        with self.env.atomic():
            self._ensure(deadline)
            if len(path) < 2:
                raise InvalidPath("path needs at least two tokens")
            first_pool = quoting.pool_for(self.factory, path[0], path[1])
            safe_transfer_from(self.env, path[0], self.address, caller, first_pool, amount_in)
            out_token = self.env.token(path[-1])
            balance_before = out_token.balance_of(to)
            self._swap_supporting_fee_on_transfer_tokens(path, to)
            received = out_token.balance_of(to) - balance_before
            if received < amount_out_min:
                raise InsufficientOutputAmount(f"received {received} below minimum {amount_out_min}")
            return received

    # -----------------------------
    # Read-only helpers
    # -----------------------------
    def quote(self, amount_a: int, reserve_a: int, reserve_b: int) -> int:
        return quoting.quote(amount_a, reserve_a, reserve_b)

    def get_amounts_out(self, amount_in: int, path: Sequence[str]) -> List[int]:
        return quoting.get_amounts_out(self.factory, amount_in, path)

    def get_amounts_in(self, amount_out: int, path: Sequence[str]) -> List[int]:
        return quoting.get_amounts_in(self.factory, amount_out, path)

    def _adjacency(self) -> Dict[str, Set[str]]:
        adjacency: Dict[str, Set[str]] = {}
        for (token0, token1), address in self.factory.pools.items():
            reserve0, reserve1, _ = self.factory.pool(address).get_reserves()
            if reserve0 == 0 or reserve1 == 0:
                continue
            adjacency.setdefault(token0, set()).add(token1)
            adjacency.setdefault(token1, set()).add(token0)
        return adjacency

    def find_route(self, token_in: str, token_out: str, amount_in: int,
                   max_hops: Optional[int] = None) -> RoutePlan:
        """
        BFS over tokens linked by funded pools; every simple path of at most
        `max_hops` hops ending in `token_out` is quoted and the one with the
        largest output wins.
        """
        if token_in == token_out:
            return RoutePlan(ok=False, reason="identical_tokens", path=[token_in], hops=[])
        hop_limit = self.max_hops if max_hops is None else max_hops
        adjacency = self._adjacency()

        best: Optional[RoutePlan] = None
        last_error = "no_path_found"
        q = deque()
        q.append([token_in])
        while q:
            path = q.popleft()
            if len(path) - 1 >= hop_limit:
                continue
            for nxt in sorted(adjacency.get(path[-1], ())):
                if nxt in path:
                    continue
                candidate = path + [nxt]
                if nxt != token_out:
                    q.append(candidate)
                    continue
                try:
                    amounts = quoting.get_amounts_out(self.factory, amount_in, candidate)
                except AMMError as exc:
                    last_error = exc.reason
                    continue
                if amounts[-1] <= 0:
                    continue
                if best is None or amounts[-1] > best.expected_amount_out:
                    best = self._plan(candidate, amounts)

        if best is None:
            return RoutePlan(ok=False, reason=last_error, path=[], hops=[])
        return best

    def _plan(self, path: List[str], amounts: List[int]) -> RoutePlan:
        hops = [
            Hop(
                pool_id=quoting.pool_for(self.factory, a, b),
                asset_in=a,
                asset_out=b,
                amount_in=amounts[i],
                amount_out=amounts[i + 1],
            )
            for i, (a, b) in enumerate(zip(path[:-1], path[1:]))
        ]
        return RoutePlan(ok=True, reason="ok", path=list(path), hops=hops, expected_amount_out=amounts[-1])
