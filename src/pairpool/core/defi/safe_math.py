"""
Fixed-Point Arithmetic Primitives.

Integer-only math shared by every pool:
- Babylonian integer square root
- Q-format multiply/divide/reciprocal with a wide accumulator
- Basis-point fee calculation with controlled rounding
- Bounded add/sub/mul helpers mirroring 256-bit contract arithmetic

Python integers are unbounded, so every intermediate product is exact; the
bounds below are enforced on results only.
"""

from __future__ import annotations

from decimal import Decimal, localcontext

from ..amm_exceptions import (
    ArithmeticOverflowError,
    DivisionByZeroError,
    FatalArithmeticError,
    ZeroAmountError,
)

MAX_UINT256 = 2**256 - 1
MAX_UINT128 = 2**128 - 1

# Q96 fixed point (2^96) for sqrt price representation
RESOLUTION = 96
Q96 = 1 << RESOLUTION

BPS_DENOMINATOR = 10_000


def integer_sqrt(y: int) -> int:
    """
    Floor square root using the Babylonian method.

    integer_sqrt(0) == 0, integer_sqrt(1..3) == 1, integer_sqrt(8) == 2.
    """
    if y < 0:
        raise FatalArithmeticError("Square root of negative value", details={"value": y})
    if y > 3:
        z = y
        x = y // 2 + 1
        while x < z:
            z = x
            x = (y // x + x) // 2
        return z
    if y != 0:
        return 1
    return 0


def mul_div(a: int, b: int, denominator: int, round_up: bool = False) -> int:
    """
    Calculate (a * b) / denominator with full precision and controlled rounding.

    Args:
        a: First multiplicand
        b: Second multiplicand
        denominator: Divisor
        round_up: If True, round up (for charging users)
                  If False, round down (for paying users)

    Returns:
        Result of (a * b) / denominator

    Raises:
        DivisionByZeroError: If denominator is zero
        ArithmeticOverflowError: If the result does not fit in 256 bits
    """
    if denominator == 0:
        raise DivisionByZeroError("Division by zero", details={"a": a, "b": b})

    product = a * b
    if round_up:
        result = -((-product) // denominator)
    else:
        result = product // denominator

    if result > MAX_UINT256 or result < -MAX_UINT256:
        raise ArithmeticOverflowError("mul_div result exceeds uint256")
    return result


def mul_div_q(a: int, b: int, scale: int = Q96, round_up: bool = False) -> int:
    """Fixed-point multiply: a * b / scale."""
    return mul_div(a, b, scale, round_up)


def div_q(a: int, b: int, scale: int = Q96, round_up: bool = False) -> int:
    """Fixed-point divide: a * scale / b."""
    return mul_div(a, scale, b, round_up)


def reciprocal_q(x: int, scale: int = Q96, round_up: bool = False) -> int:
    """Fixed-point reciprocal: scale^2 / x."""
    return mul_div(scale, scale, x, round_up)


def div_rounding_up(numerator: int, denominator: int) -> int:
    if denominator == 0:
        raise DivisionByZeroError("Division by zero")
    return -((-numerator) // denominator)


def calculate_fee_amount(amount: int, fee_bps: int) -> int:
    """
    Calculate fee amount from basis points, always rounding UP.

    Args:
        amount: Input amount
        fee_bps: Fee in basis points (30 = 0.30%)

    Returns:
        Fee amount (rounded up)
    """
    return mul_div(amount, fee_bps, BPS_DENOMINATOR, round_up=True)


def encode_sqrt_price(amount1: int, amount0: int) -> int:
    """
    Q96 square-root price for the ratio amount1 / amount0.

    encode_sqrt_price(1, 1) == Q96, encode_sqrt_price(4, 1) == 2 * Q96.
    """
    if amount0 <= 0 or amount1 <= 0:
        raise ZeroAmountError("Both ratio terms must be positive")
    return integer_sqrt((amount1 << (2 * RESOLUTION)) // amount0)


def sqrt_price_to_price(sqrt_price: int) -> Decimal:
    """Convert a Q96 sqrt price to a token1-per-token0 price (for display)."""
    with localcontext() as ctx:
        ctx.prec = 60
        ratio = Decimal(sqrt_price) / Decimal(Q96)
        return ratio * ratio


class SafeMath:
    """Bounded arithmetic helpers that fail loudly instead of wrapping."""

    @staticmethod
    def safe_add(a: int, b: int, max_value: int = MAX_UINT256, name: str = "value") -> int:
        result = a + b
        if result > max_value:
            raise ArithmeticOverflowError(
                f"Addition overflow: {name}",
                details={"a": a, "b": b, "max_value": max_value},
            )
        return result

    @staticmethod
    def safe_sub(a: int, b: int, name: str = "value") -> int:
        if b > a:
            raise ArithmeticOverflowError(
                f"Subtraction underflow: {name}",
                details={"a": a, "b": b},
            )
        return a - b

    @staticmethod
    def safe_mul(a: int, b: int, max_value: int = MAX_UINT256, name: str = "value") -> int:
        result = a * b
        if result > max_value:
            raise ArithmeticOverflowError(
                f"Multiplication overflow: {name}",
                details={"a": a, "b": b, "max_value": max_value},
            )
        return result

    @staticmethod
    def safe_div(a: int, b: int, round_up: bool = False) -> int:
        if b == 0:
            raise DivisionByZeroError("Division by zero", details={"a": a})
        if round_up:
            return div_rounding_up(a, b)
        return a // b

    @staticmethod
    def require_positive(value: int, name: str = "amount") -> int:
        if value <= 0:
            raise ZeroAmountError(f"{name} must be positive", details={name: value})
        return value

    @staticmethod
    def require_bits(value: int, bits: int, name: str = "value") -> int:
        """Check that a non-negative value fits in an unsigned `bits`-wide integer."""
        if value < 0 or value >> bits:
            raise ArithmeticOverflowError(
                f"{name} does not fit in uint{bits}",
                details={"value": value, "bits": bits},
            )
        return value
