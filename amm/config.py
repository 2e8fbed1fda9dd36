from dataclasses import dataclass, field

@dataclass
class ScenarioConfig:
    # Tokens and pools
    token_symbols: list[str] = field(default_factory=lambda: ["USDC", "WETH", "WBTC", "DAI", "UNI"])
    token_decimals: int = 18
    reference_prices: dict[str, float] = field(default_factory=lambda: {
        "USDC": 1.0,
        "WETH": 2000.0,
        "WBTC": 30000.0,
        "DAI": 1.0,
        "UNI": 5.0,
    })
    hub_symbol: str = "USDC"
    pool_pairs: list[tuple[str, str]] | None = None  # None = hub pairs plus a chain of side pairs
    initial_liquidity_usd: float = 1_000_000.0  # per pool, split evenly
    initial_price_noise: float = 0.02  # relative stdev of the seeded price vs reference

    # Participants
    num_traders: int = 20
    trader_initial_usd: float = 250_000.0  # per token
    lp_initial_usd: float = 20_000_000.0  # per token
    flash_borrower_initial_usd: float = 100_000.0  # per token, covers flash fees

    # Activity
    seconds_per_tick: int = 3600
    swaps_per_tick: int = 10
    swap_size_mean_usd: float = 2_000.0
    swap_size_min_usd: float = 1.0
    exact_output_share: float = 0.2
    slippage_tolerance: float = 0.005
    deadline_seconds: int = 600
    max_hops: int = 3
    trader_topup_factor: float = 5.0  # faucet refill multiple when a trader runs short

    # Flash swaps
    flash_swap_prob: float = 0.1
    flash_swap_frac: float = 0.01  # of the borrowed reserve
    flash_repay_shortfall_prob: float = 0.1  # borrower under-repays, the pool must reject it

    # Liquidity moves
    add_liquidity_prob: float = 0.05
    remove_liquidity_prob: float = 0.03
    liquidity_move_frac: float = 0.05

    # Protocol fee (one sixth of LP fee growth to the treasury)
    protocol_fee_enabled: bool = False

    # Metrics
    metrics_stride: int = 1
    pool_metrics_stride: int = 1
    event_log_maxlen: int | None = 20_000

    # Debug
    debug_reserves: bool = False

    def __post_init__(self) -> None:
        if self.hub_symbol not in self.token_symbols:
            self.token_symbols.insert(0, self.hub_symbol)
        for symbol in self.token_symbols:
            self.reference_prices.setdefault(symbol, 1.0)
        if self.pool_pairs is None:
            pairs = [(self.hub_symbol, s) for s in self.token_symbols if s != self.hub_symbol]
            side = [s for s in self.token_symbols if s != self.hub_symbol]
            pairs.extend(zip(side[:-1], side[1:]))
            self.pool_pairs = pairs
        seen = set()
        unique = []
        for a, b in self.pool_pairs:
            key = frozenset((a, b))
            if a == b or key in seen:
                continue
            seen.add(key)
            unique.append((a, b))
        self.pool_pairs = unique
