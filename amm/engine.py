from __future__ import annotations
from typing import Dict, List, Optional, Tuple
import logging
import numpy as np
import random

from .config import ScenarioConfig
from .core import MAX_UINT256, Environment, Token, format_balances, safe_transfer, short_address
from .errors import AMMError
from .factory import PoolFactory
from .fixed_point import to_float
from .metrics import MetricsStore
from .oracle import PriceObservation, twap
from .pool import FEE_BASE, FEE_UNITS, Pool
from .router import RoutePlan, Router

logger = logging.getLogger(__name__)

class FlashBorrower:
    """
    Flash-swap counterparty: receives the borrowed side and pays it back,
    plus the pool fee, from its own inventory inside the callback. `repay_bps`
    below 10_000 under-repays on purpose so the pool's invariant check fires.
    """
    def __init__(self, env: Environment) -> None:
        self.env = env
        self.address = env.new_address("flash-borrower")
        self.repay_bps: int = 10_000
        env.register(self.address, self)

    @staticmethod
    def owed(amount_out: int) -> int:
        return amount_out * FEE_BASE // (FEE_BASE - FEE_UNITS) + 1

    def on_flash_swap(self, initiator: Optional[str], amount0_out: int, amount1_out: int, data: bytes) -> None:
        pool = self.env.contract_at(data.decode("utf-8"))
        if not isinstance(pool, Pool):
            raise ValueError("flash swap data must carry the pool address")
        token0, token1 = pool.tokens
        for token, amount_out in ((token0, amount0_out), (token1, amount1_out)):
            if amount_out <= 0:
                continue
            repay = self.owed(amount_out) * self.repay_bps // 10_000
            safe_transfer(self.env, token, self.address, pool.address, repay)

class SimulationEngine:
    def __init__(self, cfg: ScenarioConfig, seed: int = 1) -> None:
        self.cfg = cfg
        self.rng = random.Random(seed)
        np.random.seed(seed)

        self.tick: int = 0
        self.env = Environment(event_log_maxlen=cfg.event_log_maxlen)
        self.log = self.env.log
        self.metrics = MetricsStore()

        self.admin = self.env.new_address("admin")
        self.treasury = self.env.new_address("treasury")
        self.factory = PoolFactory(self.env, fee_to_setter=self.admin)
        if cfg.protocol_fee_enabled:
            self.factory.set_fee_to(self.admin, self.treasury)
        self.router = Router(self.env, self.factory, max_hops=cfg.max_hops)
        self.flash_borrower = FlashBorrower(self.env)
        self.liquidity_provider = self.env.new_address("liquidity-provider")
        self.traders: List[str] = [self.env.new_address(f"trader:{i}") for i in range(cfg.num_traders)]

        self.tokens: Dict[str, Token] = {}
        self.symbols: Dict[str, str] = {}  # address -> symbol
        self.pools: Dict[str, str] = {}  # "A/B" label -> pool address

        self._last_observations: Dict[str, PriceObservation] = {}
        self._reset_tick_counters()
        self._bootstrap()

    def _reset_tick_counters(self) -> None:
        self._swaps_executed_tick = 0
        self._swaps_failed_tick = 0
        self._multi_hop_swaps_tick = 0
        self._routes_failed_tick = 0
        self._flash_swaps_tick = 0
        self._flash_failed_tick = 0
        self._liquidity_adds_tick = 0
        self._liquidity_removes_tick = 0
        self._swap_volume_usd_tick = 0.0
        self._fees_usd_tick = 0.0

    # -----------------------------
    # Setup
    # -----------------------------
    def units(self, symbol: str, usd: float) -> int:
        price = float(self.cfg.reference_prices.get(symbol, 1.0))
        decimals = self.tokens[symbol].decimals if symbol in self.tokens else self.cfg.token_decimals
        return int(usd / max(1e-12, price) * 10 ** decimals)

    def usd(self, symbol: str, amount: int) -> float:
        token = self.tokens[symbol]
        return amount / 10 ** token.decimals * float(self.cfg.reference_prices.get(symbol, 1.0))

    def _bootstrap(self) -> None:
        cfg = self.cfg
        for symbol in cfg.token_symbols:
            token = Token(self.env, symbol, decimals=cfg.token_decimals)
            self.tokens[symbol] = token
            self.symbols[token.address] = symbol
            for trader in self.traders:
                token.mint(trader, self.units(symbol, cfg.trader_initial_usd))
                token.approve(trader, self.router.address, MAX_UINT256)
            token.mint(self.liquidity_provider, self.units(symbol, cfg.lp_initial_usd))
            token.approve(self.liquidity_provider, self.router.address, MAX_UINT256)
            token.mint(self.flash_borrower.address, self.units(symbol, cfg.flash_borrower_initial_usd))

        for a, b in cfg.pool_pairs or []:
            self.add_pool(a, b)

        self.snapshot_metrics(force_network=True, force_pool=True)

    def add_pool(self, symbol_a: str, symbol_b: str) -> str:
        cfg = self.cfg
        token_a = self.tokens[symbol_a]
        token_b = self.tokens[symbol_b]
        half = cfg.initial_liquidity_usd / 2.0
        skew = max(0.5, 1.0 + float(np.random.normal(0.0, cfg.initial_price_noise)))
        amount_a = self.units(symbol_a, half * skew)
        amount_b = self.units(symbol_b, half)
        self.router.add_liquidity(
            self.liquidity_provider, token_a.address, token_b.address,
            amount_a, amount_b, 0, 0, self.liquidity_provider,
        )
        address = self.factory.pool_address(token_a.address, token_b.address)
        pool = self.factory.pool(address)
        pool.approve(self.liquidity_provider, self.router.address, MAX_UINT256)
        label = self.pool_label(pool)
        self.pools[label] = address
        self.env.emit("POOL_SEEDED", source=address, actor_id=self.liquidity_provider,
                      pool_id=label, amount_a=amount_a, amount_b=amount_b)
        return address

    def pool_label(self, pool: Pool) -> str:
        token0, token1 = pool.tokens
        return f"{self.symbols.get(token0, short_address(token0))}/{self.symbols.get(token1, short_address(token1))}"

    def _ensure_balance(self, holder: str, symbol: str, amount: int) -> None:
        token = self.tokens[symbol]
        balance = token.balance_of(holder)
        if balance >= amount:
            return
        topup = int(max(amount - balance, amount * self.cfg.trader_topup_factor))
        token.mint(holder, topup)
        self.env.emit("FAUCET_TOPUP", source=token.address, actor_id=holder, symbol=symbol, amount=topup)

    # -----------------------------
    # Activity
    # -----------------------------
    def step(self, n_ticks: int = 1) -> None:
        cfg = self.cfg
        for _ in range(n_ticks):
            self.tick += 1
            self.env.clock.advance(cfg.seconds_per_tick)
            self._reset_tick_counters()

            for _ in range(max(0, int(cfg.swaps_per_tick))):
                self._random_swap()
            if self.rng.random() < cfg.flash_swap_prob:
                self._random_flash_swap()
            if self.rng.random() < cfg.add_liquidity_prob:
                self._random_add_liquidity()
            if self.rng.random() < cfg.remove_liquidity_prob:
                self._random_remove_liquidity()

            self.snapshot_metrics()

    def _sample_amount_usd(self) -> float:
        usd = float(np.random.exponential(self.cfg.swap_size_mean_usd))
        return max(self.cfg.swap_size_min_usd, usd)

    def _random_swap(self) -> bool:
        cfg = self.cfg
        if not self.traders or len(self.tokens) < 2:
            return False
        trader = self.rng.choice(self.traders)
        symbol_in, symbol_out = self.rng.sample(sorted(self.tokens), 2)
        token_in = self.tokens[symbol_in]
        token_out = self.tokens[symbol_out]
        usd = self._sample_amount_usd()
        amount_in = self.units(symbol_in, usd)
        if amount_in <= 0:
            return False

        self.env.emit("ROUTE_REQUESTED", source=self.router.address, actor_id=trader,
                      token_in=symbol_in, token_out=symbol_out, amount_in=amount_in)
        plan = self.router.find_route(token_in.address, token_out.address, amount_in)
        if not plan.ok:
            self._routes_failed_tick += 1
            self.env.emit("ROUTE_FAILED", source=self.router.address, actor_id=trader, reason=plan.reason)
            return False
        self.env.emit("ROUTE_FOUND", source=self.router.address, actor_id=trader,
                      path=[self.symbols[t] for t in plan.path], expected_amount_out=plan.expected_amount_out)

        amount_in_max = int(amount_in * (1.0 + cfg.slippage_tolerance)) + 1
        self._ensure_balance(trader, symbol_in, amount_in_max)
        deadline = self.env.now() + cfg.deadline_seconds
        exact_output = self.rng.random() < cfg.exact_output_share
        try:
            if exact_output:
                amounts = self.router.swap_tokens_for_exact_tokens(
                    trader, plan.expected_amount_out, amount_in_max, plan.path, trader, deadline,
                )
            else:
                amount_out_min = int(plan.expected_amount_out * (1.0 - cfg.slippage_tolerance))
                amounts = self.router.swap_exact_tokens_for_tokens(
                    trader, amount_in, amount_out_min, plan.path, trader, deadline,
                )
        except AMMError as exc:
            self._swaps_failed_tick += 1
            logger.debug("[SWAP] failed trader=%s path=%s reason=%s",
                         short_address(trader), [self.symbols[t] for t in plan.path], exc.reason)
            self.env.emit("SWAP_FAILED", source=self.router.address, actor_id=trader, reason=exc.reason)
            return False

        self._record_swap(trader, plan, amounts, exact_output)
        return True

    def _record_swap(self, trader: str, plan: RoutePlan, amounts: List[int], exact_output: bool) -> None:
        hops = len(plan.path) - 1
        volume_usd = self.usd(self.symbols[plan.path[0]], amounts[0])
        self._swaps_executed_tick += 1
        if hops > 1:
            self._multi_hop_swaps_tick += 1
        self._swap_volume_usd_tick += volume_usd
        self._fees_usd_tick += volume_usd * hops * FEE_UNITS / FEE_BASE
        self.env.emit(
            "SWAP_EXECUTED", source=self.router.address, actor_id=trader,
            path=[self.symbols[t] for t in plan.path], amounts=list(amounts),
            exact_output=exact_output, volume_usd=volume_usd,
        )

    def _random_pool(self) -> Optional[Pool]:
        if not self.pools:
            return None
        label = self.rng.choice(sorted(self.pools))
        return self.factory.pool(self.pools[label])

    def _random_flash_swap(self) -> bool:
        cfg = self.cfg
        pool = self._random_pool()
        if pool is None:
            return False
        reserve0, reserve1, _ = pool.get_reserves()
        borrow_token0 = self.rng.random() < 0.5
        amount = int((reserve0 if borrow_token0 else reserve1) * cfg.flash_swap_frac)
        if amount <= 0:
            return False
        amount0_out, amount1_out = (amount, 0) if borrow_token0 else (0, amount)
        borrowed = pool.tokens[0] if borrow_token0 else pool.tokens[1]
        self._ensure_balance(self.flash_borrower.address, self.symbols[borrowed], FlashBorrower.owed(amount))

        shortfall = self.rng.random() < cfg.flash_repay_shortfall_prob
        self.flash_borrower.repay_bps = 9_000 if shortfall else 10_000
        try:
            pool.swap(amount0_out, amount1_out, self.flash_borrower.address,
                      data=pool.address.encode("utf-8"), caller=self.flash_borrower.address)
        except AMMError as exc:
            self._flash_failed_tick += 1
            self.env.emit("FLASH_SWAP_FAILED", source=pool.address, actor_id=self.flash_borrower.address,
                          pool_id=self.pool_label(pool), reason=exc.reason, shortfall=shortfall)
            return False
        finally:
            self.flash_borrower.repay_bps = 10_000
        self._flash_swaps_tick += 1
        self.env.emit("FLASH_SWAP_EXECUTED", source=pool.address, actor_id=self.flash_borrower.address,
                      pool_id=self.pool_label(pool), amount0_out=amount0_out, amount1_out=amount1_out)
        return True

    def _random_add_liquidity(self) -> bool:
        cfg = self.cfg
        pool = self._random_pool()
        if pool is None:
            return False
        token0, token1 = pool.tokens
        reserve0, reserve1, _ = pool.get_reserves()
        amount0 = int(reserve0 * cfg.liquidity_move_frac)
        amount1 = int(reserve1 * cfg.liquidity_move_frac)
        if amount0 <= 0 or amount1 <= 0:
            return False
        lp = self.liquidity_provider
        self._ensure_balance(lp, self.symbols[token0], amount0)
        self._ensure_balance(lp, self.symbols[token1], amount1)
        try:
            used0, used1, liquidity = self.router.add_liquidity(
                lp, token0, token1, amount0, amount1,
                int(amount0 * (1.0 - cfg.slippage_tolerance)), int(amount1 * (1.0 - cfg.slippage_tolerance)),
                lp, self.env.now() + cfg.deadline_seconds,
            )
        except AMMError as exc:
            self.env.emit("LIQUIDITY_ADD_FAILED", source=pool.address, actor_id=lp, reason=exc.reason)
            return False
        self._liquidity_adds_tick += 1
        self.env.emit("LIQUIDITY_ADDED", source=pool.address, actor_id=lp, pool_id=self.pool_label(pool),
                      amount0=used0, amount1=used1, liquidity=liquidity)
        return True

    def _random_remove_liquidity(self) -> bool:
        cfg = self.cfg
        pool = self._random_pool()
        if pool is None:
            return False
        lp = self.liquidity_provider
        liquidity = int(pool.balance_of(lp) * cfg.liquidity_move_frac)
        if liquidity <= 0:
            return False
        token0, token1 = pool.tokens
        try:
            amount0, amount1 = self.router.remove_liquidity(
                lp, token0, token1, liquidity, 0, 0, lp, self.env.now() + cfg.deadline_seconds,
            )
        except AMMError as exc:
            self.env.emit("LIQUIDITY_REMOVE_FAILED", source=pool.address, actor_id=lp, reason=exc.reason)
            return False
        self._liquidity_removes_tick += 1
        self.env.emit("LIQUIDITY_REMOVED", source=pool.address, actor_id=lp, pool_id=self.pool_label(pool),
                      amount0=amount0, amount1=amount1, liquidity=liquidity)
        return True

    # -----------------------------
    # Metrics
    # -----------------------------
    def _pool_row(self, label: str, pool: Pool) -> Dict[str, object]:
        token0, token1 = pool.tokens
        sym0, sym1 = self.symbols[token0], self.symbols[token1]
        dec0, dec1 = self.tokens[sym0].decimals, self.tokens[sym1].decimals
        reserve0, reserve1, _ = pool.get_reserves()
        r0 = reserve0 / 10 ** dec0
        r1 = reserve1 / 10 ** dec1

        observation = PriceObservation.observe(pool)
        previous = self._last_observations.get(pool.address)
        twap_price0 = float("nan")
        if previous is not None and previous.timestamp != observation.timestamp:
            price0_avg, _ = twap(previous, observation)
            twap_price0 = to_float(price0_avg) * 10 ** dec0 / 10 ** dec1
        self._last_observations[pool.address] = observation

        if self.cfg.debug_reserves and logger.isEnabledFor(logging.DEBUG):
            logger.debug("[POOL] %s reserves=(%d, %d) lp={ %s }",
                         label, reserve0, reserve1, format_balances(pool.balances))
        return {
            "tick": self.tick,
            "pool_id": label,
            "address": pool.address,
            "token0": sym0,
            "token1": sym1,
            "reserve0": r0,
            "reserve1": r1,
            "spot_price0": r1 / r0 if r0 > 0 else float("nan"),
            "twap_price0": twap_price0,
            "k": r0 * r1,
            "liquidity_supply": pool.total_supply / 10 ** 18,
            "tvl_usd": self.pool_tvl_usd(pool),
        }

    def pool_tvl_usd(self, pool: Pool) -> float:
        token0, token1 = pool.tokens
        reserve0, reserve1, _ = pool.get_reserves()
        return self.usd(self.symbols[token0], reserve0) + self.usd(self.symbols[token1], reserve1)

    def snapshot_metrics(self, force_network: bool = False, force_pool: bool = False) -> None:
        cfg = self.cfg
        metrics_stride = int(cfg.metrics_stride or 0)
        pool_stride = int(cfg.pool_metrics_stride or 0)
        do_network = force_network or (metrics_stride > 0 and self.tick % metrics_stride == 0)
        do_pool = force_pool or (pool_stride > 0 and self.tick % pool_stride == 0)
        if not do_network and not do_pool:
            return

        # pool rows advance the TWAP window, so only build them on pool ticks
        pool_rows = None
        if do_pool:
            pool_rows = [self._pool_row(label, self.factory.pool(address)) for label, address in self.pools.items()]
        network_row = None
        if do_network:
            network_row = {
                "tick": self.tick,
                "timestamp": self.env.now(),
                "num_pools": self.factory.all_pools_length(),
                "tvl_usd": sum(self.pool_tvl_usd(self.factory.pool(address)) for address in self.pools.values()),
                "swaps_executed_tick": self._swaps_executed_tick,
                "swaps_failed_tick": self._swaps_failed_tick,
                "multi_hop_swaps_tick": self._multi_hop_swaps_tick,
                "routes_failed_tick": self._routes_failed_tick,
                "flash_swaps_tick": self._flash_swaps_tick,
                "flash_failed_tick": self._flash_failed_tick,
                "liquidity_adds_tick": self._liquidity_adds_tick,
                "liquidity_removes_tick": self._liquidity_removes_tick,
                "swap_volume_usd_tick": self._swap_volume_usd_tick,
                "fees_usd_tick": self._fees_usd_tick,
                "treasury_shares": sum(
                    self.factory.pool(address).balance_of(self.treasury) for address in self.pools.values()
                ) / 10 ** 18,
            }
        self.metrics.record(network_row, pool_rows)

    def reserves_by_pool(self) -> Dict[str, Tuple[int, int]]:
        out = {}
        for label, address in self.pools.items():
            reserve0, reserve1, _ = self.factory.pool(address).get_reserves()
            out[label] = (reserve0, reserve1)
        return out
