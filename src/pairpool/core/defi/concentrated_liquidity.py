"""
Concentrated Liquidity Pool Implementation.

Liquidity is supplied over explicit square-root price ranges:
- Sqrt prices in Q64.96 fixed point
- Positions keyed by (owner, lower, upper)
- Swaps confined to the span where the active position set is constant
- Fee deducted from the input before pricing

Security features:
- Range bounds checking
- Reentrancy protection
- Directional rounding (round up when charging, down when paying)
- Active liquidity bounded to 128 bits
- Position and price updates written before payout, rolled back if
  nothing was sent
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from .. import config
from ..amm_exceptions import (
    AMMError,
    InsufficientPaymentError,
    InsufficientPositionError,
    InvalidFeeError,
    InvalidPriceError,
    InvalidRangeError,
    NoActiveLiquidityError,
    NoOutputError,
    PriceRangeExceededError,
    SlippageExceededError,
    ZeroAmountError,
    ZeroLiquidityError,
)
from ..metrics import get_dex_metrics, track_liquidity_change, track_swap
from .events import PoolEventType
from .ledger import Ledger
from .pair_ordering import AssetPair
from .pool_base import PoolBase, derive_pool_address
from .safe_math import (
    MAX_UINT128,
    Q96,
    SafeMath,
    calculate_fee_amount,
    mul_div,
    sqrt_price_to_price,
)

logger = logging.getLogger(__name__)

# Constants
MIN_SQRT_RATIO = 4295128739
MAX_SQRT_RATIO = 1461446703485210103287273052203988822378723970342


# ==================== Liquidity Math ====================

def get_liquidity_for_amount0(sqrt_price_a: int, sqrt_price_b: int, amount0: int) -> int:
    """
    Liquidity supported by amount0 between two sqrt prices.

    L = amount0 * (a * b / Q96) / (b - a), rounded down.
    """
    if sqrt_price_a > sqrt_price_b:
        sqrt_price_a, sqrt_price_b = sqrt_price_b, sqrt_price_a
    intermediate = mul_div(sqrt_price_a, sqrt_price_b, Q96)
    return mul_div(amount0, intermediate, sqrt_price_b - sqrt_price_a)


def get_liquidity_for_amount1(sqrt_price_a: int, sqrt_price_b: int, amount1: int) -> int:
    """L = amount1 * Q96 / (b - a), rounded down."""
    if sqrt_price_a > sqrt_price_b:
        sqrt_price_a, sqrt_price_b = sqrt_price_b, sqrt_price_a
    return mul_div(amount1, Q96, sqrt_price_b - sqrt_price_a)


def get_amount0_delta(
    sqrt_price_a: int,
    sqrt_price_b: int,
    liquidity: int,
    round_up: bool,
) -> int:
    """
    Token0 amount spanned by liquidity between two sqrt prices.

    amount0 = L * Q96 * (b - a) / (a * b)
    """
    if sqrt_price_a > sqrt_price_b:
        sqrt_price_a, sqrt_price_b = sqrt_price_b, sqrt_price_a
    if sqrt_price_a <= 0:
        raise InvalidPriceError("sqrt price must be positive")
    return mul_div(
        liquidity << 96,
        sqrt_price_b - sqrt_price_a,
        sqrt_price_a * sqrt_price_b,
        round_up,
    )


def get_amount1_delta(
    sqrt_price_a: int,
    sqrt_price_b: int,
    liquidity: int,
    round_up: bool,
) -> int:
    """amount1 = L * (b - a) / Q96"""
    if sqrt_price_a > sqrt_price_b:
        sqrt_price_a, sqrt_price_b = sqrt_price_b, sqrt_price_a
    return mul_div(liquidity, sqrt_price_b - sqrt_price_a, Q96, round_up)


@dataclass(frozen=True)
class PositionKey:
    """Identity of a position: one per owner and range."""
    owner: str
    sqrt_price_lower: int
    sqrt_price_upper: int


@dataclass
class Position:
    """
    Liquidity position within a sqrt price range.

    Empty positions (liquidity == 0) are kept so the owner's history of
    ranges stays queryable.
    """

    owner: str
    sqrt_price_lower: int
    sqrt_price_upper: int
    liquidity: int = 0

    def contains(self, sqrt_price: int) -> bool:
        """Half-open: active when lower <= price < upper."""
        return self.sqrt_price_lower <= sqrt_price < self.sqrt_price_upper

    def to_dict(self) -> dict:
        return {
            "owner": self.owner,
            "sqrt_price_lower": self.sqrt_price_lower,
            "sqrt_price_upper": self.sqrt_price_upper,
            "liquidity": self.liquidity,
        }


@dataclass
class ConcentratedLiquidityPool(PoolBase):
    """
    Range-bounded liquidity pool over an external ledger.

    Price representation:
    - sqrt_price is sqrt(token1 / token0) in Q64.96
    - liquidity is the sum of liquidity over positions containing sqrt_price
    """

    token0: str = ""
    token1: str = ""
    sqrt_price: int = 0
    ledger: Ledger | None = None
    fee_bps: int = config.CONCENTRATED_FEE_BPS
    address: str = ""
    time_provider: Callable[[], int] | None = None

    # Current state
    liquidity: int = 0

    # Fees charged on input, per token
    fees_collected_0: int = 0
    fees_collected_1: int = 0

    positions: dict[PositionKey, Position] = field(default_factory=dict)
    events: list = field(default_factory=list)

    # Payouts interrupted after value left the pool, keyed by (account, asset)
    owed: dict = field(default_factory=dict)

    # Reentrancy guard
    _locked: bool = False
    _mutex: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    KIND = "clp"

    def __post_init__(self) -> None:
        """Validate and initialize pool."""
        if self.ledger is None:
            raise ValueError("A ledger is required")
        self.pair = AssetPair(low=self.token0, high=self.token1)
        if not 0 <= self.fee_bps <= config.MAX_FEE_BPS:
            raise InvalidFeeError(
                f"fee_bps must be within 0..{config.MAX_FEE_BPS}",
                details={"fee_bps": self.fee_bps},
            )
        if not MIN_SQRT_RATIO <= self.sqrt_price < MAX_SQRT_RATIO:
            raise InvalidPriceError(
                "Initial sqrt price out of bounds",
                details={"sqrt_price": self.sqrt_price},
            )
        if not self.address:
            self.address = derive_pool_address(self.KIND, self.pair)

    # ==================== Liquidity Positions ====================

    def mint_position(
        self,
        caller: str,
        sqrt_price_lower: int,
        sqrt_price_upper: int,
        amount0_desired: int,
        amount1_desired: int,
        deadline: int | None = None,
    ) -> tuple[int, int, int]:
        """
        Add liquidity to the caller's position over [lower, upper).

        Args:
            caller: Position owner; must have approved the pool on both assets
            sqrt_price_lower: Lower sqrt price bound (Q64.96)
            sqrt_price_upper: Upper sqrt price bound (Q64.96)
            amount0_desired: Most token0 the caller will pay
            amount1_desired: Most token1 the caller will pay

        Returns:
            (liquidity, amount0, amount1) - amounts actually charged
        """
        with self._nonreentrant():
            self._ensure_not_expired(deadline)
            if amount0_desired < 0 or amount1_desired < 0:
                raise ZeroAmountError("Desired amounts cannot be negative")
            if amount0_desired == 0 and amount1_desired == 0:
                raise ZeroAmountError("At least one desired amount must be positive")
            self._validate_range(sqrt_price_lower, sqrt_price_upper)

            liquidity = self.liquidity_for_amounts(
                sqrt_price_lower, sqrt_price_upper, amount0_desired, amount1_desired
            )
            if liquidity == 0:
                raise ZeroLiquidityError(
                    "Desired amounts support no liquidity",
                    details={"amount0": amount0_desired, "amount1": amount1_desired},
                )

            amount0, amount1 = self.amounts_for_liquidity(
                sqrt_price_lower, sqrt_price_upper, liquidity, round_up=True
            )

            owner = caller.strip().lower()
            key = PositionKey(owner, sqrt_price_lower, sqrt_price_upper)
            position = self.positions.get(key)
            stored = position.liquidity if position else 0
            new_position_liquidity = SafeMath.safe_add(stored, liquidity, MAX_UINT128, "position liquidity")
            in_range = sqrt_price_lower <= self.sqrt_price < sqrt_price_upper
            new_active = self.liquidity
            if in_range:
                new_active = SafeMath.safe_add(self.liquidity, liquidity, MAX_UINT128, "active liquidity")

            received = self._pull(caller, {self.token0: amount0, self.token1: amount1})
            if received[self.token0] < amount0 or received[self.token1] < amount1:
                self._refund(caller, received)
                raise InsufficientPaymentError(
                    "Pool received less than the required amounts",
                    details={
                        "required0": amount0,
                        "required1": amount1,
                        "received0": received[self.token0],
                        "received1": received[self.token1],
                    },
                )

            if position is None:
                position = Position(owner, sqrt_price_lower, sqrt_price_upper)
                self.positions[key] = position
            position.liquidity = new_position_liquidity
            self.liquidity = new_active

            self._emit(
                PoolEventType.MINT,
                owner=owner,
                sqrt_price_lower=sqrt_price_lower,
                sqrt_price_upper=sqrt_price_upper,
                liquidity=liquidity,
                amount0=amount0,
                amount1=amount1,
            )
            self._record_liquidity_metrics(amount0, amount1, "add")

            logger.info(
                "Position minted",
                extra={
                    "event": "clp.mint",
                    "pool": self.address[:10],
                    "owner": owner[:10],
                    "range": f"[{sqrt_price_lower}, {sqrt_price_upper})",
                    "liquidity": liquidity,
                    "in_range": in_range,
                },
            )

            return liquidity, amount0, amount1

    def burn_position(
        self,
        caller: str,
        sqrt_price_lower: int,
        sqrt_price_upper: int,
        liquidity: int,
        recipient: str | None = None,
        deadline: int | None = None,
    ) -> tuple[int, int]:
        """
        Remove liquidity from the caller's position.

        Returns:
            (amount0, amount1) - tokens paid out, rounded down
        """
        with self._nonreentrant():
            self._ensure_not_expired(deadline)
            SafeMath.require_positive(liquidity, "liquidity")
            self._validate_range(sqrt_price_lower, sqrt_price_upper)

            owner = caller.strip().lower()
            position = self.positions.get(PositionKey(owner, sqrt_price_lower, sqrt_price_upper))
            stored = position.liquidity if position else 0
            if stored < liquidity:
                raise InsufficientPositionError(
                    "Position liquidity too low",
                    details={"available": stored, "requested": liquidity},
                )

            amount0, amount1 = self.amounts_for_liquidity(
                sqrt_price_lower, sqrt_price_upper, liquidity, round_up=False
            )
            self._require_available(self.token0, amount0)
            self._require_available(self.token1, amount1)

            to = recipient or caller
            active_before = self.liquidity
            position.liquidity -= liquidity
            if position.contains(self.sqrt_price):
                self.liquidity -= liquidity

            def restore_position() -> None:
                position.liquidity += liquidity
                self.liquidity = active_before

            self._payout([(self.token0, to, amount0), (self.token1, to, amount1)], rollback=restore_position)

            self._emit(
                PoolEventType.BURN,
                owner=owner,
                recipient=to,
                sqrt_price_lower=sqrt_price_lower,
                sqrt_price_upper=sqrt_price_upper,
                liquidity=liquidity,
                amount0=amount0,
                amount1=amount1,
            )
            self._record_liquidity_metrics(amount0, amount1, "remove")

            logger.info(
                "Position burned",
                extra={
                    "event": "clp.burn",
                    "pool": self.address[:10],
                    "owner": owner[:10],
                    "liquidity": liquidity,
                    "amount0": amount0,
                    "amount1": amount1,
                },
            )

            return amount0, amount1

    # ==================== Swapping ====================

    def swap_exact_in(
        self,
        caller: str,
        token_in: str,
        amount_in: int,
        recipient: str | None = None,
        min_amount_out: int = 0,
        deadline: int | None = None,
    ) -> int:
        """
        Swap an exact input within the active range.

        Args:
            caller: Trader; must have approved the pool on token_in
            token_in: Asset paid in
            amount_in: Exact input amount (fee included)
            recipient: Output recipient (default: caller)
            min_amount_out: Minimum acceptable output

        Returns:
            Output amount
        """
        start_time = time.time()
        with self._nonreentrant():
            self._ensure_not_expired(deadline)
            SafeMath.require_positive(amount_in, "amount_in")
            index_in = self.pair.index_of(token_in)
            if self.liquidity == 0:
                raise NoActiveLiquidityError("No liquidity at the current price", details={"pool": self.address})

            asset_in = self.token0 if index_in == 0 else self.token1
            asset_out = self.token1 if index_in == 0 else self.token0
            sqrt_price_before = self.sqrt_price

            received = self._pull(caller, {asset_in: amount_in})
            net_received = received[asset_in]

            try:
                amount_out, sqrt_price_after, fee = self._compute_swap(index_in, net_received)
                if amount_out < min_amount_out:
                    raise SlippageExceededError(
                        "Slippage too high",
                        details={"amount_out": amount_out, "min_amount_out": min_amount_out},
                    )
                self._require_available(asset_out, amount_out)
            except AMMError:
                self._refund(caller, received)
                raise

            to = recipient or caller
            fees_before = (self.fees_collected_0, self.fees_collected_1)
            self.sqrt_price = sqrt_price_after
            if index_in == 0:
                self.fees_collected_0 += fee
            else:
                self.fees_collected_1 += fee

            def undo_swap() -> None:
                self.sqrt_price = sqrt_price_before
                self.fees_collected_0, self.fees_collected_1 = fees_before
                self._refund(caller, received)

            self._payout([(asset_out, to, amount_out)], rollback=undo_swap)

            self._emit(
                PoolEventType.SWAP,
                sender=caller,
                recipient=to,
                token_in=asset_in,
                amount_in=net_received,
                amount_out=amount_out,
                fee=fee,
                sqrt_price_before=sqrt_price_before,
                sqrt_price_after=sqrt_price_after,
                liquidity=self.liquidity,
            )

            track_swap(self.address, asset_in, asset_out, net_received, fee, time.time() - start_time)

            logger.info(
                "Swap executed",
                extra={
                    "event": "clp.swap",
                    "pool": self.address[:10],
                    "token_in": asset_in,
                    "amount_in": net_received,
                    "amount_out": amount_out,
                    "sqrt_price": sqrt_price_after,
                },
            )

            return amount_out

    def quote_exact_in(self, token_in: str, amount_in: int) -> int:
        """Output a swap would produce at the current state."""
        SafeMath.require_positive(amount_in, "amount_in")
        index_in = self.pair.index_of(token_in)
        if self.liquidity == 0:
            raise NoActiveLiquidityError("No liquidity at the current price", details={"pool": self.address})
        amount_out, _, _ = self._compute_swap(index_in, amount_in)
        return amount_out

    def _compute_swap(self, index_in: int, amount_in: int) -> tuple[int, int, int]:
        """Return (amount_out, new_sqrt_price, fee) for an input of token index_in."""
        fee = calculate_fee_amount(amount_in, self.fee_bps)
        net = amount_in - fee
        if net <= 0:
            raise NoOutputError("Input is consumed entirely by the fee", details={"amount_in": amount_in})

        price = self.sqrt_price
        liquidity = self.liquidity
        span_low, span_high = self._active_span()

        if index_in == 1:
            # price moves up; round the new price down so less output is paid
            new_price = price + mul_div(net, Q96, liquidity)
            if new_price >= span_high:
                raise PriceRangeExceededError(
                    "Swap would cross the active range",
                    details={"sqrt_price_target": new_price, "bound": span_high},
                )
            amount_out = get_amount0_delta(price, new_price, liquidity, round_up=False)
        else:
            # 1/P' = 1/P + net/L, rounded up
            numerator = liquidity << 96
            new_price = mul_div(numerator, price, numerator + net * price, round_up=True)
            if new_price < span_low:
                raise PriceRangeExceededError(
                    "Swap would cross the active range",
                    details={"sqrt_price_target": new_price, "bound": span_low},
                )
            amount_out = get_amount1_delta(new_price, price, liquidity, round_up=False)

        if amount_out == 0:
            raise NoOutputError("Swap produces no output", details={"amount_in": amount_in})
        return amount_out, new_price, fee

    def _active_span(self) -> tuple[int, int]:
        """
        Sqrt price interval [low, high) around the current price in which
        the set of active positions does not change.
        """
        low = MIN_SQRT_RATIO
        high = MAX_SQRT_RATIO
        for position in self.positions.values():
            if position.liquidity == 0:
                continue
            for bound in (position.sqrt_price_lower, position.sqrt_price_upper):
                if bound <= self.sqrt_price:
                    low = max(low, bound)
                else:
                    high = min(high, bound)
        return low, high

    # ==================== Amount Calculations ====================

    def liquidity_for_amounts(
        self,
        sqrt_price_lower: int,
        sqrt_price_upper: int,
        amount0: int,
        amount1: int,
    ) -> int:
        """Largest liquidity the amounts support at the current price."""
        price = self.sqrt_price
        if price <= sqrt_price_lower:
            return get_liquidity_for_amount0(sqrt_price_lower, sqrt_price_upper, amount0)
        if price < sqrt_price_upper:
            liquidity0 = get_liquidity_for_amount0(price, sqrt_price_upper, amount0)
            liquidity1 = get_liquidity_for_amount1(sqrt_price_lower, price, amount1)
            return min(liquidity0, liquidity1)
        return get_liquidity_for_amount1(sqrt_price_lower, sqrt_price_upper, amount1)

    def amounts_for_liquidity(
        self,
        sqrt_price_lower: int,
        sqrt_price_upper: int,
        liquidity: int,
        round_up: bool = False,
    ) -> tuple[int, int]:
        """Token amounts represented by liquidity over a range at the current price."""
        price = self.sqrt_price
        if price <= sqrt_price_lower:
            return get_amount0_delta(sqrt_price_lower, sqrt_price_upper, liquidity, round_up), 0
        if price < sqrt_price_upper:
            amount0 = get_amount0_delta(price, sqrt_price_upper, liquidity, round_up)
            amount1 = get_amount1_delta(sqrt_price_lower, price, liquidity, round_up)
            return amount0, amount1
        return 0, get_amount1_delta(sqrt_price_lower, sqrt_price_upper, liquidity, round_up)

    # ==================== View Functions ====================

    def get_position(self, owner: str, sqrt_price_lower: int, sqrt_price_upper: int) -> Position | None:
        return self.positions.get(PositionKey(owner.strip().lower(), sqrt_price_lower, sqrt_price_upper))

    def positions_for(self, owner: str) -> list[Position]:
        owner_norm = owner.strip().lower()
        return [p for key, p in self.positions.items() if key.owner == owner_norm]

    def get_pool_state(self) -> dict:
        """Get current pool state."""
        return {
            "address": self.address,
            "token0": self.token0,
            "token1": self.token1,
            "fee_bps": self.fee_bps,
            "sqrt_price": self.sqrt_price,
            "price": str(sqrt_price_to_price(self.sqrt_price)),
            "liquidity": self.liquidity,
            "reserve0": self._free_balance(self.token0),
            "reserve1": self._free_balance(self.token1),
            "fees_collected_0": self.fees_collected_0,
            "fees_collected_1": self.fees_collected_1,
            "positions_count": len(self.positions),
            "active_positions": len([p for p in self.positions.values() if p.liquidity > 0]),
        }

    # ==================== Helpers ====================

    @staticmethod
    def _validate_range(sqrt_price_lower: int, sqrt_price_upper: int) -> None:
        if not MIN_SQRT_RATIO <= sqrt_price_lower < sqrt_price_upper <= MAX_SQRT_RATIO:
            raise InvalidRangeError(
                "Invalid sqrt price range",
                details={"lower": sqrt_price_lower, "upper": sqrt_price_upper},
            )

    def _record_liquidity_metrics(self, amount0: int, amount1: int, operation: str) -> None:
        track_liquidity_change(self.address, self.token0, amount0, operation)
        track_liquidity_change(self.address, self.token1, amount1, operation)
        metrics = get_dex_metrics()
        metrics.active_liquidity.labels(pool=self.address).set(self.liquidity)
        metrics.concentrated_liquidity_positions.labels(pool=self.address).set(len(self.positions))
