"""Shared fixtures: an environment with three tokens, a factory and a router."""

import pytest

from amm.core import MAX_UINT256, Environment, Token
from amm.factory import PoolFactory
from amm.pool import Pool
from amm.router import Router


@pytest.fixture
def env():
    return Environment(start_time=1_700_000_000)


@pytest.fixture
def admin(env):
    return env.new_address("admin")


@pytest.fixture
def alice(env):
    return env.new_address("alice")


@pytest.fixture
def bob(env):
    return env.new_address("bob")


@pytest.fixture
def factory(env, admin):
    return PoolFactory(env, fee_to_setter=admin)


@pytest.fixture
def router(env, factory):
    return Router(env, factory)


@pytest.fixture
def tokens(env):
    """Three tokens sorted by address, so tokens[0] is always token0 of any pair."""
    created = [Token(env, symbol) for symbol in ("TKA", "TKB", "TKC")]
    return sorted(created, key=lambda t: t.address)


@pytest.fixture
def seed_pool(env, factory):
    """Create (if needed) and fund a pool by direct transfer plus `mint`."""

    def _seed(token_a: Token, token_b: Token, amount_a: int, amount_b: int, provider: str) -> Pool:
        address = factory.get_pool(token_a.address, token_b.address)
        if address is None:
            address = factory.create_pool(token_a.address, token_b.address)
        token_a.mint(provider, amount_a)
        token_b.mint(provider, amount_b)
        token_a.transfer(provider, address, amount_a)
        token_b.transfer(provider, address, amount_b)
        pool = factory.pool(address)
        pool.mint(provider)
        return pool

    return _seed


@pytest.fixture
def funded(router):
    """Mint `amount` of each token to `holder` and approve the router."""

    def _fund(holder: str, amount: int, *token_list: Token) -> None:
        for token in token_list:
            token.mint(holder, amount)
            token.approve(holder, router.address, MAX_UINT256)

    return _fund
