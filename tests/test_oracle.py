import pytest

from amm.errors import InsufficientLiquidity, InvalidToken, PeriodNotElapsed
from amm.fixed_point import Q112
from amm.oracle import PairOracle, PriceObservation, twap

PERIOD = 3600


@pytest.fixture
def pool(tokens, seed_pool, env):
    # token0 is worth 4 token1
    return seed_pool(tokens[0], tokens[1], 2_000, 8_000, env.new_address("lp"))


class TestObservation:
    def test_observe_matches_a_sync(self, env, pool):
        env.clock.advance(120)
        observed = PriceObservation.observe(pool)
        pool.sync()
        assert observed.price0_cumulative == pool.price0_cumulative_last
        assert observed.price1_cumulative == pool.price1_cumulative_last
        assert observed.timestamp == pool.block_timestamp_last

    def test_twap_between_observations(self, env, pool):
        start = PriceObservation.observe(pool)
        env.clock.advance(600)
        end = PriceObservation.observe(pool)
        assert twap(start, end) == (4 * Q112, Q112 // 4)

    def test_twap_needs_elapsed_time(self, pool):
        observation = PriceObservation.observe(pool)
        with pytest.raises(PeriodNotElapsed):
            twap(observation, observation)


class TestPairOracle:
    def test_update_before_period(self, env, factory, tokens, pool):
        oracle = PairOracle(factory, tokens[0].address, tokens[1].address, period=PERIOD)
        env.clock.advance(PERIOD - 1)
        with pytest.raises(PeriodNotElapsed):
            oracle.update()

    def test_consult_after_period(self, env, factory, tokens, pool):
        oracle = PairOracle(factory, tokens[1].address, tokens[0].address, period=PERIOD)
        env.clock.advance(PERIOD)
        oracle.update()
        assert oracle.consult(tokens[0].address, 100) == 400
        assert oracle.consult(tokens[1].address, 100) == 25
        assert oracle.average_prices() == (4.0, 0.25)

    def test_average_is_time_weighted(self, env, factory, tokens, pool):
        oracle = PairOracle(factory, tokens[0].address, tokens[1].address, period=PERIOD)
        env.clock.advance(PERIOD // 2)
        tokens[0].mint(pool.address, 2_000)
        pool.sync()  # price halves to 2
        env.clock.advance(PERIOD // 2)
        oracle.update()
        assert oracle.price0_average == 3 * Q112

    def test_unknown_token(self, env, factory, tokens, pool):
        oracle = PairOracle(factory, tokens[0].address, tokens[1].address, period=PERIOD)
        env.clock.advance(PERIOD)
        oracle.update()
        with pytest.raises(InvalidToken):
            oracle.consult(tokens[2].address, 100)

    def test_requires_funded_pool(self, factory, tokens):
        factory.create_pool(tokens[0].address, tokens[2].address)
        with pytest.raises(InsufficientLiquidity):
            PairOracle(factory, tokens[0].address, tokens[2].address)
