from math import isqrt

import pytest

from amm import quoting
from amm.core import MAX_UINT256, FeeOnTransferToken
from amm.errors import (
    ExcessiveInputAmount,
    Expired,
    InsufficientAAmount,
    InsufficientBAmount,
    InsufficientOutputAmount,
    InvalidK,
    InvalidPath,
    TransferFailed,
)
from amm.pool import MINIMUM_LIQUIDITY

DEEP = 10**9


@pytest.fixture
def lp(env):
    return env.new_address("lp")


@pytest.fixture
def market(router, tokens, funded, lp):
    """Pools A/B (1:2) and B/C (1:1) seeded through the router."""
    a, b, c = tokens
    funded(lp, 10 * DEEP, a, b, c)
    router.add_liquidity(lp, a.address, b.address, DEEP, 2 * DEEP, 0, 0, lp)
    router.add_liquidity(lp, b.address, c.address, DEEP, DEEP, 0, 0, lp)
    return tokens


class TestAddLiquidity:
    def test_first_deposit_creates_pool(self, router, factory, tokens, funded, alice):
        a, b, _ = tokens
        funded(alice, 10**6, a, b)
        amount_a, amount_b, liquidity = router.add_liquidity(
            alice, b.address, a.address, 40_000, 10_000, 0, 0, alice,
        )
        assert (amount_a, amount_b) == (40_000, 10_000)
        assert liquidity == isqrt(40_000 * 10_000) - MINIMUM_LIQUIDITY
        pool = factory.pool(factory.get_pool(a.address, b.address))
        assert pool.balance_of(alice) == liquidity
        assert quoting.get_reserves(factory, b.address, a.address) == (40_000, 10_000)

    def test_later_deposit_keeps_ratio(self, router, market, funded, alice):
        a, b, _ = market
        funded(alice, 10**6, a, b)
        amount_a, amount_b, _ = router.add_liquidity(alice, a.address, b.address, 1_000, 5_000, 0, 0, alice)
        assert (amount_a, amount_b) == (1_000, 2_000)
        amount_a, amount_b, _ = router.add_liquidity(alice, a.address, b.address, 1_000, 1_000, 0, 0, alice)
        assert (amount_a, amount_b) == (500, 1_000)

    def test_minimum_b(self, router, market, funded, alice):
        a, b, _ = market
        funded(alice, 10**6, a, b)
        with pytest.raises(InsufficientBAmount):
            router.add_liquidity(alice, a.address, b.address, 1_000, 5_000, 0, 2_500, alice)
        assert a.balance_of(alice) == 10**6

    def test_minimum_a(self, router, market, funded, alice):
        a, b, _ = market
        funded(alice, 10**6, a, b)
        with pytest.raises(InsufficientAAmount):
            router.add_liquidity(alice, a.address, b.address, 1_000, 1_000, 600, 0, alice)

    def test_expired(self, env, router, market, funded, alice):
        a, b, _ = market
        funded(alice, 10**6, a, b)
        with pytest.raises(Expired):
            router.add_liquidity(alice, a.address, b.address, 1_000, 2_000, 0, 0, alice, deadline=env.now() - 1)
        router.add_liquidity(alice, a.address, b.address, 1_000, 2_000, 0, 0, alice, deadline=env.now())


class TestRemoveLiquidity:
    def test_remove_returns_both_tokens(self, router, factory, market, lp, bob):
        a, b, _ = market
        pool = factory.pool(factory.get_pool(a.address, b.address))
        pool.approve(lp, router.address, MAX_UINT256)
        shares = pool.balance_of(lp) // 2
        supply = pool.total_supply
        amount_a, amount_b = router.remove_liquidity(lp, a.address, b.address, shares, 0, 0, bob)
        assert amount_a == shares * DEEP // supply
        assert amount_b == shares * 2 * DEEP // supply
        assert (a.balance_of(bob), b.balance_of(bob)) == (amount_a, amount_b)

    def test_minimum_rolls_back_share_transfer(self, router, factory, market, lp):
        a, b, _ = market
        pool = factory.pool(factory.get_pool(a.address, b.address))
        pool.approve(lp, router.address, MAX_UINT256)
        shares = pool.balance_of(lp)
        with pytest.raises(InsufficientAAmount):
            router.remove_liquidity(lp, a.address, b.address, shares // 2, DEEP, 0, lp)
        assert pool.balance_of(lp) == shares
        assert pool.get_reserves()[:2] == (DEEP, 2 * DEEP)

    def test_needs_share_approval(self, router, market, lp):
        a, b, _ = market
        with pytest.raises(TransferFailed):
            router.remove_liquidity(lp, a.address, b.address, 1_000, 0, 0, lp)

    def test_unknown_pair(self, router, market, lp):
        a, _, c = market
        with pytest.raises(InvalidPath):
            router.remove_liquidity(lp, a.address, c.address, 1_000, 0, 0, lp)


class TestSwapExactIn:
    def test_multi_hop_sends_intermediate_directly_to_next_pool(self, env, router, factory, market, funded, alice):
        a, b, c = market
        funded(alice, 10_000, a)
        path = [a.address, b.address, c.address]
        expected = router.get_amounts_out(10_000, path)
        amounts = router.swap_exact_tokens_for_tokens(alice, 10_000, expected[-1], path, alice)
        assert amounts == expected
        assert c.balance_of(alice) == amounts[-1]
        assert a.balance_of(alice) == 0
        assert b.balance_of(alice) == 0
        assert b.balance_of(router.address) == 0
        first, second = env.log.of_type("Swap")
        assert first.meta["to"] == factory.get_pool(b.address, c.address)
        assert second.meta["to"] == alice

    def test_minimum_output(self, router, market, funded, alice):
        a, b, _ = market
        funded(alice, 10_000, a)
        path = [a.address, b.address]
        quoted = router.get_amounts_out(10_000, path)[-1]
        with pytest.raises(InsufficientOutputAmount):
            router.swap_exact_tokens_for_tokens(alice, 10_000, quoted + 1, path, alice)
        assert a.balance_of(alice) == 10_000

    def test_expired(self, env, router, market, funded, alice):
        a, b, _ = market
        funded(alice, 10_000, a)
        env.clock.advance(100)
        with pytest.raises(Expired):
            router.swap_exact_tokens_for_tokens(alice, 10_000, 0, [a.address, b.address], alice,
                                                deadline=env.now() - 50)

    def test_missing_pool(self, router, market, funded, alice):
        a, _, c = market
        funded(alice, 10_000, a)
        with pytest.raises(InvalidPath):
            router.swap_exact_tokens_for_tokens(alice, 10_000, 0, [a.address, c.address], alice)


class TestSwapExactOut:
    def test_delivers_exact_output(self, router, market, funded, alice):
        a, b, c = market
        funded(alice, 10**6, a)
        path = [a.address, b.address, c.address]
        expected = router.get_amounts_in(5_000, path)
        amounts = router.swap_tokens_for_exact_tokens(alice, 5_000, 10**6, path, alice)
        assert amounts == expected
        assert c.balance_of(alice) == 5_000
        assert a.balance_of(alice) == 10**6 - amounts[0]
        assert b.balance_of(router.address) == 0

    def test_bound_applies_to_input(self, router, market, funded, alice):
        a, b, _ = market
        funded(alice, 10**6, a)
        path = [a.address, b.address]
        needed = router.get_amounts_in(1_000, path)[0]
        # about half as much A is needed as B received at a 1:2 price
        assert needed < 1_000
        with pytest.raises(ExcessiveInputAmount):
            router.swap_tokens_for_exact_tokens(alice, 1_000, needed - 1, path, alice)
        amounts = router.swap_tokens_for_exact_tokens(alice, 1_000, needed, path, alice)
        assert amounts[0] == needed
        assert b.balance_of(alice) == 1_000


class TestFeeOnTransfer:
    @pytest.fixture
    def fot_market(self, env, router, tokens, funded, lp, alice):
        fot = FeeOnTransferToken(env, "FOT", fee_bps=100)
        b = tokens[1]
        funded(lp, 10 * DEEP, fot, b)
        router.add_liquidity(lp, fot.address, b.address, DEEP, DEEP, 0, 0, lp)
        funded(alice, 10**7, fot)
        return fot, b

    def test_plain_swap_fails_invariant(self, router, fot_market, alice):
        fot, b = fot_market
        with pytest.raises(InvalidK):
            router.swap_exact_tokens_for_tokens(alice, 10**6, 0, [fot.address, b.address], alice)
        assert fot.balance_of(alice) == 10**7
        assert b.balance_of(alice) == 0

    def test_supporting_variant_uses_received_amount(self, factory, router, fot_market, alice):
        fot, b = fot_market
        reserve_in, reserve_out = quoting.get_reserves(factory, fot.address, b.address)
        received = router.swap_exact_tokens_for_tokens_supporting_fee_on_transfer_tokens(
            alice, 10**6, 1, [fot.address, b.address], alice,
        )
        assert received == quoting.get_amount_out(10**6 * 99 // 100, reserve_in, reserve_out)
        assert b.balance_of(alice) == received

    def test_supporting_variant_minimum(self, router, fot_market, alice):
        fot, b = fot_market
        with pytest.raises(InsufficientOutputAmount):
            router.swap_exact_tokens_for_tokens_supporting_fee_on_transfer_tokens(
                alice, 10**6, 10**6, [fot.address, b.address], alice,
            )
        assert fot.balance_of(alice) == 10**7


class TestFindRoute:
    def test_prefers_deeper_two_hop_route(self, router, factory, market, lp):
        a, b, c = market
        router.add_liquidity(lp, a.address, c.address, 10_000, 10_000, 0, 0, lp)
        plan = router.find_route(a.address, c.address, 1_000)
        assert plan.ok
        assert plan.path == [a.address, b.address, c.address]
        assert [hop.pool_id for hop in plan.hops] == [
            factory.get_pool(a.address, b.address),
            factory.get_pool(b.address, c.address),
        ]
        assert plan.expected_amount_out == router.get_amounts_out(1_000, plan.path)[-1]

    def test_hop_limit(self, router, market, lp):
        a, _, c = market
        router.add_liquidity(lp, a.address, c.address, 10_000, 10_000, 0, 0, lp)
        plan = router.find_route(a.address, c.address, 1_000, max_hops=1)
        assert plan.path == [a.address, c.address]

    def test_identical_tokens(self, router, market):
        plan = router.find_route(market[0].address, market[0].address, 1_000)
        assert not plan.ok
        assert plan.reason == "identical_tokens"

    def test_no_path(self, router, tokens):
        plan = router.find_route(tokens[0].address, tokens[2].address, 1_000)
        assert not plan.ok
        assert plan.reason == "no_path_found"
        assert plan.hops == []
