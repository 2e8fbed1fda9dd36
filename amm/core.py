from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple
from collections import deque
import copy
import hashlib
import logging

from .errors import InsufficientAllowance, InsufficientBalance, TokenError, TransferFailed

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40
MAX_UINT256 = (1 << 256) - 1
DEFAULT_START_TIME = 1_700_000_000


def derive_address(*parts: str) -> str:
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return "0x" + digest[-40:]


def short_address(address: str) -> str:
    return f"{address[:6]}..{address[-4:]}"


def format_balances(balances: Dict[str, int]) -> str:
    if not balances:
        return "(empty)"
    items = sorted(balances.items(), key=lambda kv: kv[0])
    return ", ".join(f"{short_address(holder)}:{amount}" for holder, amount in items)


# -----------------------------
# Events
# -----------------------------
@dataclass
class Event:
    timestamp: int
    event_type: str
    source: Optional[str] = None
    actor_id: Optional[str] = None
    meta: dict = field(default_factory=dict)

class EventLog:
    def __init__(self, maxlen: Optional[int] = None) -> None:
        self.events = deque(maxlen=maxlen)

    def add(self, e: Event) -> None:
        self.events.append(e)

    def tail(self, n: int = 200) -> List[Event]:
        if n <= 0:
            return []
        if n >= len(self.events):
            return list(self.events)
        return list(self.events)[-n:]

    def of_type(self, event_type: str) -> List[Event]:
        return [e for e in self.events if e.event_type == event_type]


# -----------------------------
# Host environment
# -----------------------------
class Stateful:
    """Mixin for contracts whose state takes part in atomic rollback."""

    _state_fields: Tuple[str, ...] = ()

    def snapshot(self) -> Dict[str, Any]:
        return {name: copy.deepcopy(getattr(self, name)) for name in self._state_fields}

    def restore(self, state: Dict[str, Any]) -> None:
        for name, value in state.items():
            setattr(self, name, value)

class Clock:
    def __init__(self, start: int = DEFAULT_START_TIME) -> None:
        self.timestamp = int(start)

    def now(self) -> int:
        return self.timestamp

    def advance(self, seconds: int) -> int:
        if seconds < 0:
            raise ValueError("clock cannot move backwards")
        self.timestamp += int(seconds)
        return self.timestamp

class Environment:
    """In-process stand-in for the host chain.

    Owns address allocation, the clock, the contract registry used to resolve
    callback targets and token addresses, and the event log. Every public
    mutating operation runs inside `atomic()`: a failure anywhere inside the
    scope restores every registered contract and drops the events emitted
    since the scope was entered.
    """

    def __init__(self, start_time: int = DEFAULT_START_TIME, event_log_maxlen: Optional[int] = None) -> None:
        self.clock = Clock(start_time)
        self.log = EventLog(maxlen=event_log_maxlen)
        self.accounts: Dict[str, object] = {}
        self._nonce = 0
        self._depth = 0
        self._pending: List[Event] = []

    def now(self) -> int:
        return self.clock.now()

    def new_address(self, label: str) -> str:
        self._nonce += 1
        return derive_address("account", label, str(self._nonce))

    def register(self, address: str, contract: object) -> None:
        if address in self.accounts:
            raise ValueError(f"address {address} already registered")
        self.accounts[address] = contract

    def contract_at(self, address: str) -> Optional[object]:
        return self.accounts.get(address)

    def token(self, address: str) -> "Token":
        contract = self.accounts.get(address)
        if not isinstance(contract, Token):
            raise TransferFailed(f"no token at {address}")
        return contract

    def emit(self, event_type: str, source: Optional[str] = None, actor_id: Optional[str] = None, **meta: Any) -> None:
        e = Event(self.now(), event_type, source=source, actor_id=actor_id, meta=meta)
        if self._depth > 0:
            self._pending.append(e)
        else:
            self.log.add(e)

    @property
    def in_atomic(self) -> bool:
        return self._depth > 0

    def _snapshot(self) -> Tuple[Dict[str, object], List[Tuple[Stateful, Dict[str, Any]]], int]:
        states = [
            (contract, contract.snapshot())
            for contract in self.accounts.values()
            if isinstance(contract, Stateful)
        ]
        return dict(self.accounts), states, self._nonce

    def _restore(self, saved: Tuple[Dict[str, object], List[Tuple[Stateful, Dict[str, Any]]], int]) -> None:
        accounts, states, nonce = saved
        self.accounts = accounts
        self._nonce = nonce
        for contract, state in states:
            contract.restore(state)

    @contextmanager
    def atomic(self) -> Iterator[None]:
        saved = self._snapshot()
        mark = len(self._pending)
        self._depth += 1
        try:
            yield
        except BaseException as exc:
            self._restore(saved)
            dropped = len(self._pending) - mark
            del self._pending[mark:]
            logger.debug("[ATOMIC] rollback depth=%d dropped_events=%d error=%s",
                         self._depth, dropped, type(exc).__name__)
            raise
        finally:
            self._depth -= 1
        if self._depth == 0 and self._pending:
            for e in self._pending:
                self.log.add(e)
            self._pending.clear()


# -----------------------------
# Fungible tokens
# -----------------------------
class Token(Stateful):
    """ERC20-like ledger. Rejected transfers raise `TokenError`."""

    _state_fields = ("total_supply", "balances", "allowances")

    def __init__(self, env: Environment, symbol: str, decimals: int = 18, address: Optional[str] = None) -> None:
        self.env = env
        self.symbol = symbol
        self.decimals = decimals
        self.address = address or env.new_address(f"token:{symbol}")
        self.total_supply: int = 0
        self.balances: Dict[str, int] = {}
        self.allowances: Dict[Tuple[str, str], int] = {}
        env.register(self.address, self)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.symbol}@{short_address(self.address)})"

    def balance_of(self, holder: str) -> int:
        return self.balances.get(holder, 0)

    def allowance(self, owner: str, spender: str) -> int:
        return self.allowances.get((owner, spender), 0)

    def approve(self, owner: str, spender: str, value: int) -> bool:
        self.allowances[(owner, spender)] = int(value)
        return True

    def transfer(self, sender: str, to: str, value: int) -> Optional[bool]:
        self._transfer(sender, to, value)
        return True

    def transfer_from(self, spender: str, owner: str, to: str, value: int) -> Optional[bool]:
        self._spend_allowance(owner, spender, value)
        self._transfer(owner, to, value)
        return True

    def mint(self, to: str, value: int) -> None:
        self._mint(to, value)

    def _mint(self, to: str, value: int) -> None:
        if value < 0:
            raise TokenError("negative mint")
        self.total_supply += value
        self.balances[to] = self.balance_of(to) + value

    def _burn(self, holder: str, value: int) -> None:
        balance = self.balance_of(holder)
        if value < 0 or balance < value:
            raise InsufficientBalance(f"{self.symbol}: burn {value} exceeds balance {balance}")
        self.balances[holder] = balance - value
        self.total_supply -= value

    def _debit(self, sender: str, value: int) -> None:
        balance = self.balance_of(sender)
        if value < 0 or balance < value:
            raise InsufficientBalance(f"{self.symbol}: transfer {value} exceeds balance {balance}")
        self.balances[sender] = balance - value

    def _transfer(self, sender: str, to: str, value: int) -> None:
        self._debit(sender, value)
        self.balances[to] = self.balance_of(to) + value

    def _spend_allowance(self, owner: str, spender: str, value: int) -> None:
        current = self.allowance(owner, spender)
        if current == MAX_UINT256:
            return
        if current < value:
            raise InsufficientAllowance(f"{self.symbol}: allowance {current} below {value}")
        self.allowances[(owner, spender)] = current - value

class NoReturnToken(Token):
    """Token whose transfer functions succeed without returning a flag."""

    def transfer(self, sender: str, to: str, value: int) -> Optional[bool]:
        self._transfer(sender, to, value)
        return None

    def transfer_from(self, spender: str, owner: str, to: str, value: int) -> Optional[bool]:
        self._spend_allowance(owner, spender, value)
        self._transfer(owner, to, value)
        return None

class FalseReturnToken(Token):
    """Token that reports rejected transfers by returning False."""

    def transfer(self, sender: str, to: str, value: int) -> Optional[bool]:
        try:
            self._transfer(sender, to, value)
        except TokenError:
            return False
        return True

    def transfer_from(self, spender: str, owner: str, to: str, value: int) -> Optional[bool]:
        try:
            self._spend_allowance(owner, spender, value)
            self._transfer(owner, to, value)
        except TokenError:
            return False
        return True

class FeeOnTransferToken(Token):
    """Token that burns `fee_bps` basis points of every transfer."""

    def __init__(self, env: Environment, symbol: str, fee_bps: int = 100, decimals: int = 18,
                 address: Optional[str] = None) -> None:
        super().__init__(env, symbol, decimals=decimals, address=address)
        self.fee_bps = int(fee_bps)

    def _transfer(self, sender: str, to: str, value: int) -> None:
        fee = value * self.fee_bps // 10_000
        self._debit(sender, value)
        self.balances[to] = self.balance_of(to) + value - fee
        self.total_supply -= fee


# -----------------------------
# Safe transfer helpers
# -----------------------------
def safe_transfer(env: Environment, token_address: str, sender: str, to: str, value: int) -> None:
    """Transfer that accepts a missing return flag and rejects False or a raise."""
    token = env.token(token_address)
    try:
        ok = token.transfer(sender, to, value)
    except TokenError as exc:
        raise TransferFailed(f"{token.symbol}: {exc}") from exc
    if ok is False:
        raise TransferFailed(f"{token.symbol}: transfer returned false")

def safe_transfer_from(env: Environment, token_address: str, spender: str, owner: str, to: str, value: int) -> None:
    token = env.token(token_address)
    try:
        ok = token.transfer_from(spender, owner, to, value)
    except TokenError as exc:
        raise TransferFailed(f"{token.symbol}: {exc}") from exc
    if ok is False:
        raise TransferFailed(f"{token.symbol}: transfer_from returned false")
