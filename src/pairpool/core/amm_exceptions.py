"""
Pool-specific exception hierarchy for pairpool.

Provides typed exceptions for pool operations so callers can tell caller
errors, economic rejections, exhausted pool state and fatal arithmetic apart
without parsing messages.
"""

from __future__ import annotations

from typing import Any, Optional, Dict


class AMMError(Exception):
    """Base exception for all pool-related errors.

    Attributes:
        message: Human-readable error description
        details: Additional context about the error
        recoverable: Whether the caller may retry with adjusted input
    """

    default_recoverable = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = self.default_recoverable if recoverable is None else recoverable


# ==================== Precondition Violations ====================


class PreconditionError(AMMError):
    """Raised when the caller supplied invalid input.

    Safe to retry with corrected arguments.
    """

    default_recoverable = True


class InvalidRangeError(PreconditionError):
    """Raised when a price range is not canonical (lower < upper) or out of bounds."""
    pass


class IdenticalAssetsError(PreconditionError):
    """Raised when both sides of a pair are the same asset."""
    pass


class InvalidAssetError(PreconditionError):
    """Raised when an asset identifier is empty or the zero address."""
    pass


class InvalidTokenError(InvalidAssetError):
    """Raised when a swap names an asset that is not part of the pool."""
    pass


class ZeroAmountError(PreconditionError):
    """Raised when an operation receives a zero or negative amount."""
    pass


class InvalidPriceError(PreconditionError):
    """Raised when a square-root price is non-positive or out of bounds."""
    pass


class InvalidFeeError(PreconditionError):
    """Raised when a fee rate is outside the permitted basis-point range."""
    pass


class RatioMismatchError(PreconditionError):
    """Raised when a deposit does not match the reserve ratio exactly."""
    pass


# ==================== Economic Policy Rejections ====================


class EconomicPolicyError(AMMError):
    """Raised when an operation is valid but economically unacceptable.

    Callers should re-quote and retry.
    """

    default_recoverable = True


class InsufficientOutputError(EconomicPolicyError):
    """Raised when an output amount falls below the caller's minimum."""
    pass


class SlippageExceededError(InsufficientOutputError):
    """Raised when a swap output is below the requested minimum."""
    pass


class InsufficientLiquidityMintedError(EconomicPolicyError):
    """Raised when a deposit would mint no liquidity shares."""
    pass


class InsufficientPositionError(EconomicPolicyError):
    """Raised when burning more liquidity than a position holds."""
    pass


class InsufficientSharesError(EconomicPolicyError):
    """Raised when redeeming more liquidity shares than the caller owns."""
    pass


class NoOutputError(EconomicPolicyError):
    """Raised when the pricing formula yields zero output."""
    pass


class ZeroLiquidityError(EconomicPolicyError):
    """Raised when desired amounts translate to zero liquidity."""
    pass


class InsufficientPaymentError(EconomicPolicyError):
    """Raised when the observed transferred amount is below what is owed."""
    pass


class PriceRangeExceededError(EconomicPolicyError):
    """Raised when a swap would move the price out of the active range."""
    pass


# ==================== State Exhaustion ====================


class StateExhaustionError(AMMError):
    """Raised when the pool has nothing to trade or redeem against.

    Transient until someone supplies liquidity.
    """

    default_recoverable = True


class PoolEmptyError(StateExhaustionError):
    """Raised when a constant-product reserve is zero."""
    pass


class NoActiveLiquidityError(StateExhaustionError):
    """Raised when no concentrated liquidity covers the current price."""
    pass


class NoLiquidityError(StateExhaustionError):
    """Raised when there is no share supply to redeem against."""
    pass


# ==================== Temporal / Concurrency / Registry ====================


class ExpiredError(AMMError):
    """Raised when an operation is submitted after its deadline."""

    default_recoverable = True

    def __init__(
        self,
        message: str,
        deadline: Optional[int] = None,
        now: Optional[int] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.deadline = deadline
        self.now = now


class ReentrancyError(AMMError):
    """Raised when a pool is re-entered while an operation is in flight."""
    pass


class PairExistsError(AMMError):
    """Raised when a pool already exists for the canonical pair."""
    pass


class TransferFailedError(AMMError):
    """Raised when a ledger transfer fails or reports failure."""
    pass


# ==================== Fatal Arithmetic ====================


class FatalArithmeticError(AMMError, ArithmeticError):
    """Raised on overflow or division by zero in the fixed-point core.

    Indicates a logic or bound-configuration bug; never recoverable.
    """
    pass


class ArithmeticOverflowError(FatalArithmeticError, OverflowError):
    """Raised when a value exceeds its fixed bit width."""
    pass


class DivisionByZeroError(FatalArithmeticError, ZeroDivisionError):
    """Raised when a fixed-point division has a zero denominator."""
    pass


__all__ = [
    "AMMError",
    "PreconditionError",
    "InvalidRangeError",
    "IdenticalAssetsError",
    "InvalidAssetError",
    "InvalidTokenError",
    "ZeroAmountError",
    "InvalidPriceError",
    "InvalidFeeError",
    "RatioMismatchError",
    "EconomicPolicyError",
    "InsufficientOutputError",
    "SlippageExceededError",
    "InsufficientLiquidityMintedError",
    "InsufficientPositionError",
    "InsufficientSharesError",
    "NoOutputError",
    "ZeroLiquidityError",
    "InsufficientPaymentError",
    "PriceRangeExceededError",
    "StateExhaustionError",
    "PoolEmptyError",
    "NoActiveLiquidityError",
    "NoLiquidityError",
    "ExpiredError",
    "ReentrancyError",
    "PairExistsError",
    "TransferFailedError",
    "FatalArithmeticError",
    "ArithmeticOverflowError",
    "DivisionByZeroError",
]
