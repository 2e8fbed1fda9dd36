from __future__ import annotations
from typing import Dict, List, Optional, Tuple
import hashlib
import logging

from .core import Environment, Stateful, derive_address, short_address
from .errors import Forbidden, PoolExists
from .pool import Pool
from .quoting import sort_tokens

logger = logging.getLogger(__name__)

POOL_INIT_CODE_HASH = hashlib.sha256(b"amm.pool.Pool/v2").hexdigest()


class PoolFactory(Stateful):
    """Registry that deploys one pool per unordered token pair.

    Pool addresses are derived from the factory address and the sorted pair,
    so anyone can compute them without asking the registry.
    """

    _state_fields = ("pools", "all_pools", "fee_to", "fee_to_setter")

    def __init__(self, env: Environment, fee_to_setter: str, address: Optional[str] = None) -> None:
        self.env = env
        self.address = address or env.new_address("factory")
        self.init_code_hash = POOL_INIT_CODE_HASH
        self.fee_to: Optional[str] = None
        self.fee_to_setter = fee_to_setter
        self.pools: Dict[Tuple[str, str], str] = {}
        self.all_pools: List[str] = []
        env.register(self.address, self)

    def pool_address(self, token_a: str, token_b: str) -> str:
        token0, token1 = sort_tokens(token_a, token_b)
        return derive_address("create2", self.address, token0, token1, self.init_code_hash)

    def get_pool(self, token_a: str, token_b: str) -> Optional[str]:
        key = (token_a, token_b) if token_a < token_b else (token_b, token_a)
        return self.pools.get(key)

    def pool(self, address: str) -> Pool:
        contract = self.env.contract_at(address)
        if not isinstance(contract, Pool):
            raise KeyError(f"no pool at {address}")
        return contract

    def all_pools_length(self) -> int:
        return len(self.all_pools)

    def create_pool(self, token_a: str, token_b: str) -> str:
        with self.env.atomic():
            token0, token1 = sort_tokens(token_a, token_b)
            if (token0, token1) in self.pools:
                raise PoolExists(f"pool for {token0}/{token1} already exists")
            address = self.pool_address(token0, token1)
            pool = Pool(self.env, factory=self.address, address=address)
            pool.initialize(token0, token1, caller=self.address)
            self.pools[(token0, token1)] = address
            self.all_pools.append(address)
            logger.debug("[FACTORY] created pool=%s token0=%s token1=%s",
                         short_address(address), short_address(token0), short_address(token1))
            self.env.emit("PoolCreated", source=self.address, token0=token0, token1=token1,
                          pool=address, index=len(self.all_pools))
            return address

    def set_fee_to(self, caller: str, fee_to: Optional[str]) -> None:
        if caller != self.fee_to_setter:
            raise Forbidden("only the fee setter may change fee_to")
        self.fee_to = fee_to

    def set_fee_to_setter(self, caller: str, fee_to_setter: str) -> None:
        if caller != self.fee_to_setter:
            raise Forbidden("only the fee setter may hand over the role")
        self.fee_to_setter = fee_to_setter
