from __future__ import annotations


class AMMError(Exception):
    """Base for every failure raised by the engine.

    `reason` is a short snake_case code, stable across messages, that callers
    (and the simulation event log) can record without parsing text.
    """

    reason: str = "amm_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.reason)


# -----------------------------
# Categories
# -----------------------------
class InitializationError(AMMError):
    reason = "initialization_error"


class LiquidityError(AMMError):
    reason = "liquidity_error"


class SwapError(AMMError):
    reason = "swap_error"


class InvariantError(AMMError):
    reason = "invariant_error"


class RepresentationError(AMMError):
    reason = "representation_error"


class PathError(AMMError):
    reason = "path_error"


class CollaboratorError(AMMError):
    reason = "collaborator_error"


class OracleError(AMMError):
    reason = "oracle_error"


# -----------------------------
# Initialization misuse
# -----------------------------
class AlreadyInitialized(InitializationError):
    reason = "already_initialized"


class Forbidden(InitializationError):
    reason = "forbidden"


# -----------------------------
# Liquidity bounds
# -----------------------------
class InsufficientLiquidityMinted(LiquidityError):
    reason = "insufficient_liquidity_minted"


class InsufficientLiquidityBurned(LiquidityError):
    reason = "insufficient_liquidity_burned"


class InsufficientAAmount(LiquidityError):
    reason = "insufficient_a_amount"


class InsufficientBAmount(LiquidityError):
    reason = "insufficient_b_amount"


# -----------------------------
# Swap bounds
# -----------------------------
class InsufficientOutputAmount(SwapError):
    reason = "insufficient_output_amount"


class InsufficientInputAmount(SwapError):
    reason = "insufficient_input_amount"


class InsufficientLiquidity(SwapError):
    reason = "insufficient_liquidity"


class ExcessiveInputAmount(SwapError):
    reason = "excessive_input_amount"


class InvalidTo(SwapError):
    reason = "invalid_to"


class Locked(SwapError):
    reason = "locked"


class Expired(SwapError):
    reason = "expired"


# -----------------------------
# Invariant / representation
# -----------------------------
class InvalidK(InvariantError):
    reason = "invalid_k"


class BalanceOverflow(RepresentationError):
    reason = "balance_overflow"


# -----------------------------
# Paths and pairs
# -----------------------------
class InvalidPath(PathError):
    reason = "invalid_path"


class InsufficientAmount(PathError):
    reason = "insufficient_amount"


class IdenticalAddresses(PathError):
    reason = "identical_addresses"


class ZeroAddress(PathError):
    reason = "zero_address"


class PoolExists(PathError):
    reason = "pool_exists"


# -----------------------------
# Collaborators
# -----------------------------
class TokenError(CollaboratorError):
    """Raised by a token ledger that rejects a transfer."""

    reason = "token_error"


class InsufficientBalance(TokenError):
    reason = "insufficient_balance"


class InsufficientAllowance(TokenError):
    reason = "insufficient_allowance"


class TransferFailed(CollaboratorError):
    reason = "transfer_failed"


# -----------------------------
# Oracle
# -----------------------------
class PeriodNotElapsed(OracleError):
    reason = "period_not_elapsed"


class InvalidToken(OracleError):
    reason = "invalid_token"
