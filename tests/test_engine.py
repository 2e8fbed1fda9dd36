import math

import pytest

from amm.config import ScenarioConfig
from amm.engine import FlashBorrower, SimulationEngine
from amm.fixed_point import to_float
from amm.metrics import MetricsStore
from amm.oracle import PriceObservation, twap


def small_config(**overrides):
    params = dict(num_traders=4, swaps_per_tick=6, flash_swap_prob=0.0,
                  add_liquidity_prob=0.0, remove_liquidity_prob=0.0)
    params.update(overrides)
    return ScenarioConfig(**params)


class TestScenarioConfig:
    def test_default_pairs_are_hub_plus_chain(self):
        cfg = ScenarioConfig()
        assert ("USDC", "WETH") in cfg.pool_pairs
        assert ("WETH", "WBTC") in cfg.pool_pairs
        assert len(cfg.pool_pairs) == 2 * (len(cfg.token_symbols) - 1) - 1

    def test_duplicate_and_self_pairs_are_dropped(self):
        cfg = ScenarioConfig(pool_pairs=[("USDC", "DAI"), ("DAI", "USDC"), ("DAI", "DAI")])
        assert cfg.pool_pairs == [("USDC", "DAI")]

    def test_hub_is_added_to_symbols(self):
        cfg = ScenarioConfig(token_symbols=["AAA", "BBB"], hub_symbol="HUB")
        assert cfg.token_symbols[0] == "HUB"
        assert cfg.reference_prices["AAA"] == 1.0


class TestBootstrap:
    def test_every_pair_gets_a_funded_pool(self):
        engine = SimulationEngine(small_config(), seed=3)
        assert len(engine.pools) == len(engine.cfg.pool_pairs)
        assert engine.factory.all_pools_length() == len(engine.pools)
        for reserve0, reserve1 in engine.reserves_by_pool().values():
            assert reserve0 > 0 and reserve1 > 0

    def test_initial_metrics_snapshot(self):
        engine = SimulationEngine(small_config(), seed=3)
        net = engine.metrics.network_df()
        pools = engine.metrics.pool_df()
        assert list(net["tick"]) == [0]
        assert len(pools) == len(engine.pools)
        assert pools["tvl_usd"].gt(0).all()


class TestStep:
    def test_swaps_move_reserves_and_record_metrics(self):
        engine = SimulationEngine(small_config(), seed=5)
        before = engine.reserves_by_pool()
        engine.step(5)
        net = engine.metrics.network_df()
        assert list(net["tick"]) == [0, 1, 2, 3, 4, 5]
        assert net["swaps_executed_tick"].sum() > 0
        assert net["swap_volume_usd_tick"].sum() > 0
        assert engine.reserves_by_pool() != before
        assert engine.log.of_type("SWAP_EXECUTED")

    def test_pool_accounting_stays_consistent(self):
        engine = SimulationEngine(small_config(add_liquidity_prob=0.5, remove_liquidity_prob=0.5), seed=7)
        engine.step(10)
        for address in engine.pools.values():
            pool = engine.factory.pool(address)
            assert sum(pool.balances.values()) == pool.total_supply
            token0, token1 = pool.tokens
            reserve0, reserve1, _ = pool.get_reserves()
            assert engine.env.token(token0).balance_of(address) == reserve0
            assert engine.env.token(token1).balance_of(address) == reserve1

    def test_same_seed_same_market(self):
        first = SimulationEngine(small_config(), seed=11)
        first.step(4)
        first_reserves = first.reserves_by_pool()
        second = SimulationEngine(small_config(), seed=11)
        second.step(4)
        assert second.reserves_by_pool() == first_reserves

    def test_twap_column_filled_after_first_tick(self):
        engine = SimulationEngine(small_config(), seed=5)
        engine.step(2)
        pools = engine.metrics.pool_df()
        latest = pools[pools["tick"] == 2]
        assert latest["twap_price0"].notna().all()
        assert math.isnan(pools[pools["tick"] == 0]["twap_price0"].iloc[0])

    def test_pool_stride_sets_twap_window(self):
        engine = SimulationEngine(small_config(metrics_stride=1, pool_metrics_stride=2), seed=5)
        engine.step(2)
        marks = {label: PriceObservation.observe(engine.factory.pool(address))
                 for label, address in engine.pools.items()}
        engine.step(2)
        net = engine.metrics.network_df()
        pools = engine.metrics.pool_df()
        assert list(net["tick"]) == [0, 1, 2, 3, 4]
        assert sorted(set(pools["tick"])) == [0, 2, 4]
        latest = pools[pools["tick"] == 4].set_index("pool_id")
        for label, address in engine.pools.items():
            pool = engine.factory.pool(address)
            token0, token1 = pool.tokens
            dec0 = engine.env.token(token0).decimals
            dec1 = engine.env.token(token1).decimals
            price0_avg, _ = twap(marks[label], PriceObservation.observe(pool))
            expected = to_float(price0_avg) * 10 ** dec0 / 10 ** dec1
            assert latest.loc[label, "twap_price0"] == pytest.approx(expected)
        assert net[net["tick"] == 4]["tvl_usd"].iloc[0] == pytest.approx(latest["tvl_usd"].sum())
        assert net[net["tick"] == 3]["tvl_usd"].iloc[0] > 0

    def test_pool_pivot_has_one_column_per_pool(self):
        engine = SimulationEngine(small_config(), seed=5)
        engine.step(2)
        pivot = engine.metrics.pool_pivot("reserve0")
        assert sorted(pivot.columns) == sorted(engine.pools)
        assert list(pivot.index) == [0, 1, 2]


class TestFlashSwaps:
    def test_owed_amount_covers_fee(self):
        assert FlashBorrower.owed(100) == 101
        assert FlashBorrower.owed(997) == 1001

    def test_repaid_flash_swaps_execute(self):
        engine = SimulationEngine(small_config(swaps_per_tick=0, flash_swap_prob=1.0,
                                               flash_repay_shortfall_prob=0.0), seed=2)
        engine.step(3)
        net = engine.metrics.network_df()
        assert net["flash_swaps_tick"].sum() == 3
        assert net["flash_failed_tick"].sum() == 0

    def test_under_repaid_flash_swaps_are_rejected(self):
        engine = SimulationEngine(small_config(swaps_per_tick=0, flash_swap_prob=1.0,
                                               flash_repay_shortfall_prob=1.0), seed=2)
        before = engine.reserves_by_pool()
        engine.step(3)
        net = engine.metrics.network_df()
        assert net["flash_failed_tick"].sum() == 3
        assert engine.reserves_by_pool() == before
        assert {e.meta["reason"] for e in engine.log.of_type("FLASH_SWAP_FAILED")} == {"invalid_k"}
        assert engine.flash_borrower.repay_bps == 10_000


class TestProtocolFee:
    def test_treasury_accrues_shares(self):
        engine = SimulationEngine(small_config(protocol_fee_enabled=True, swaps_per_tick=10,
                                               add_liquidity_prob=1.0), seed=4)
        assert engine.factory.fee_to == engine.treasury
        engine.step(20)
        net = engine.metrics.network_df()
        assert net["treasury_shares"].iloc[-1] > 0

    def test_disabled_by_default(self):
        engine = SimulationEngine(small_config(add_liquidity_prob=1.0), seed=4)
        engine.step(5)
        assert engine.factory.fee_to is None
        assert engine.metrics.network_df()["treasury_shares"].iloc[-1] == pytest.approx(0.0)


class TestMetricsStore:
    def test_record_and_last_tick(self):
        store = MetricsStore()
        assert store.last_tick() is None
        store.record({"tick": 0}, [{"tick": 0, "pool_id": "A/B", "k": 1.0}])
        store.record({"tick": 1}, None)
        assert store.last_tick("network") == 1
        assert store.last_tick("pool") == 0
        assert store.pool_history("A/B")["k"].tolist() == [1.0]
        assert store.pool_pivot("missing").empty
