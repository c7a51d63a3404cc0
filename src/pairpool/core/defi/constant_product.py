"""
Constant Product Pool Implementation (x * y = k).

Two-asset AMM pool with fungible liquidity shares:
- Genesis deposit mints sqrt(x * y) shares, minus an optional locked minimum
- Later deposits mint shares pro rata to the binding side
- Exact-input swaps priced by reserve_out * net_in / (reserve_in + net_in)
- Optional protocol fee routed to a fee recipient

Security features:
- Reentrancy protection
- Reserves resynchronised to observed ledger balances after every transfer
- Bounded reserve width (overflow is fatal)
- Product of reserves never decreases across a swap
- Shares are burned before payout; an interrupted payout leaves the
  unpaid remainder owed to the recipient rather than re-claimable
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from .. import config
from ..amm_exceptions import (
    AMMError,
    FatalArithmeticError,
    InsufficientLiquidityMintedError,
    InsufficientOutputError,
    InsufficientSharesError,
    InvalidFeeError,
    NoLiquidityError,
    NoOutputError,
    PoolEmptyError,
    RatioMismatchError,
    SlippageExceededError,
)
from ..config import DepositPolicy
from ..metrics import get_dex_metrics, track_liquidity_change, track_swap
from .events import PoolEventType
from .ledger import Ledger
from .pair_ordering import AssetPair, normalize_asset
from .pool_base import PoolBase, derive_pool_address
from .safe_math import BPS_DENOMINATOR, SafeMath, integer_sqrt, mul_div

logger = logging.getLogger(__name__)

# Receives the permanently locked minimum liquidity
DEAD_ADDRESS = "0x000000000000000000000000000000000000dead"


class ConstantProductPool(PoolBase):
    """
    Uniswap V2-style constant product pool over an external ledger.

    token0 < token1 under the canonical asset ordering. All amounts are
    integers in base units.
    """

    KIND = "cpp"

    def __init__(
        self,
        token_a: str,
        token_b: str,
        ledger: Ledger,
        fee_bps: int = config.DEFAULT_FEE_BPS,
        fee_recipient: str | None = None,
        minimum_liquidity: int = config.MINIMUM_LIQUIDITY,
        deposit_policy: DepositPolicy = DepositPolicy.OPTIMAL,
        reserve_bits: int = config.RESERVE_BITS,
        address: str = "",
        time_provider: Callable[[], int] | None = None,
    ):
        if ledger is None:
            raise ValueError("A ledger is required")
        if not 0 <= fee_bps <= config.MAX_FEE_BPS:
            raise InvalidFeeError(
                f"fee_bps must be within 0..{config.MAX_FEE_BPS}",
                details={"fee_bps": fee_bps},
            )
        if minimum_liquidity < 0:
            raise ValueError("minimum_liquidity cannot be negative")

        self.pair = AssetPair.from_unordered(token_a, token_b)
        self.token0 = self.pair.low
        self.token1 = self.pair.high
        self.ledger = ledger
        self.fee_bps = fee_bps
        self.fee_recipient = normalize_asset(fee_recipient) if fee_recipient is not None else None
        self.minimum_liquidity = minimum_liquidity
        self.deposit_policy = deposit_policy
        self.reserve_bits = reserve_bits
        self.address = address or derive_pool_address(self.KIND, self.pair)
        self.time_provider = time_provider

        # Pool reserves
        self.reserve0 = 0
        self.reserve1 = 0

        # Liquidity shares
        self.total_supply = 0
        self.balances: dict[str, int] = {}

        # Payouts interrupted after value left the pool, keyed by (account, asset)
        self.owed: dict[tuple[str, str], int] = {}

        self.events = []
        self._locked = False
        self._mutex = threading.RLock()

    # ==================== Liquidity ====================

    def add_liquidity(
        self,
        caller: str,
        amount0_desired: int,
        amount1_desired: int,
        min_liquidity_out: int = 0,
        deadline: int | None = None,
        recipient: str | None = None,
    ) -> int:
        """
        Deposit both assets and mint liquidity shares.

        Args:
            caller: Depositor; must have approved the pool on both assets
            amount0_desired: Desired token0 deposit
            amount1_desired: Desired token1 deposit
            min_liquidity_out: Minimum shares to accept
            deadline: Latest acceptable timestamp
            recipient: Share recipient (default: caller)

        Returns:
            Shares minted to the recipient
        """
        with self._nonreentrant():
            self._ensure_not_expired(deadline)
            SafeMath.require_positive(amount0_desired, "amount0_desired")
            SafeMath.require_positive(amount1_desired, "amount1_desired")

            amount0, amount1 = self._deposit_amounts(amount0_desired, amount1_desired)
            received = self._pull(caller, {self.token0: amount0, self.token1: amount1})
            added0 = received[self.token0]
            added1 = received[self.token1]

            try:
                liquidity, locked = self._liquidity_for_deposit(added0, added1)
                if liquidity < min_liquidity_out:
                    raise InsufficientOutputError(
                        "Insufficient liquidity minted for minimum",
                        details={"liquidity": liquidity, "min_liquidity_out": min_liquidity_out},
                    )
                balance0, balance1 = self._checked_balances()
            except AMMError:
                self._refund(caller, received)
                raise

            owner = (recipient or caller).strip().lower()
            if locked:
                self._mint_shares(DEAD_ADDRESS, locked)
            self._mint_shares(owner, liquidity)
            self._update(balance0, balance1)

            self._emit(
                PoolEventType.MINT,
                sender=caller,
                owner=owner,
                amount0=added0,
                amount1=added1,
                liquidity=liquidity,
                locked=locked,
            )

            track_liquidity_change(self.address, self.token0, added0, "add")
            track_liquidity_change(self.address, self.token1, added1, "add")
            get_dex_metrics().lp_token_supply.labels(pool=self.address).set(self.total_supply)

            logger.info(
                "Liquidity added",
                extra={
                    "event": "cpp.mint",
                    "pool": self.address[:10],
                    "owner": owner[:10],
                    "amount0": added0,
                    "amount1": added1,
                    "liquidity": liquidity,
                },
            )
            return liquidity

    def remove_liquidity(
        self,
        caller: str,
        liquidity: int,
        amount0_min: int = 0,
        amount1_min: int = 0,
        recipient: str | None = None,
        deadline: int | None = None,
    ) -> tuple[int, int]:
        """
        Burn liquidity shares for a proportional slice of both reserves.

        Returns:
            (amount0, amount1) paid to the recipient
        """
        with self._nonreentrant():
            self._ensure_not_expired(deadline)
            SafeMath.require_positive(liquidity, "liquidity")

            if self.total_supply == 0:
                raise NoLiquidityError("Pool has no liquidity shares", details={"pool": self.address})

            owner = caller.strip().lower()
            held = self.balances.get(owner, 0)
            if held < liquidity:
                raise InsufficientSharesError(
                    "Insufficient liquidity shares",
                    details={"available": held, "requested": liquidity},
                )

            amount0 = mul_div(liquidity, self.reserve0, self.total_supply)
            amount1 = mul_div(liquidity, self.reserve1, self.total_supply)

            if amount0 == 0 and amount1 == 0:
                raise InsufficientOutputError("Insufficient liquidity burned")
            if amount0 < amount0_min or amount1 < amount1_min:
                raise InsufficientOutputError(
                    "Withdrawal below minimum amounts",
                    details={
                        "amount0": amount0,
                        "amount1": amount1,
                        "amount0_min": amount0_min,
                        "amount1_min": amount1_min,
                    },
                )
            self._require_available(self.token0, amount0)
            self._require_available(self.token1, amount1)

            to = recipient or caller
            self._burn_shares(owner, liquidity)
            restored = []

            def restore_shares() -> None:
                self._mint_shares(owner, liquidity)
                restored.append(True)

            try:
                self._payout([(self.token0, to, amount0), (self.token1, to, amount1)], rollback=restore_shares)
            finally:
                if not restored:
                    self._update(*self._checked_balances())

            self._emit(
                PoolEventType.BURN,
                sender=caller,
                recipient=to,
                amount0=amount0,
                amount1=amount1,
                liquidity=liquidity,
            )

            track_liquidity_change(self.address, self.token0, amount0, "remove")
            track_liquidity_change(self.address, self.token1, amount1, "remove")
            get_dex_metrics().lp_token_supply.labels(pool=self.address).set(self.total_supply)

            logger.info(
                "Liquidity removed",
                extra={
                    "event": "cpp.burn",
                    "pool": self.address[:10],
                    "owner": owner[:10],
                    "amount0": amount0,
                    "amount1": amount1,
                    "liquidity": liquidity,
                },
            )
            return amount0, amount1

    # ==================== Swapping ====================

    def swap_exact_in(
        self,
        caller: str,
        token_in: str,
        amount_in: int,
        min_amount_out: int = 0,
        recipient: str | None = None,
        deadline: int | None = None,
    ) -> int:
        """
        Swap an exact input amount for as much of the other asset as possible.

        Args:
            caller: Trader; must have approved the pool on token_in
            token_in: Asset paid in (direction is inferred from it)
            amount_in: Exact input amount
            min_amount_out: Minimum acceptable output
            recipient: Output recipient (default: caller)
            deadline: Latest acceptable timestamp

        Returns:
            Output amount sent to the recipient
        """
        start_time = time.time()
        with self._nonreentrant():
            self._ensure_not_expired(deadline)
            index_in = self.pair.index_of(token_in)
            SafeMath.require_positive(amount_in, "amount_in")

            asset_in = self.token0 if index_in == 0 else self.token1
            asset_out = self.token1 if index_in == 0 else self.token0
            reserve_in, reserve_out = self._ordered_reserves(index_in)
            if reserve_in == 0 or reserve_out == 0:
                raise PoolEmptyError("Pool has no liquidity", details={"pool": self.address})

            reserve0_before, reserve1_before = self.reserve0, self.reserve1
            k_before = reserve0_before * reserve1_before

            received = self._pull(caller, {asset_in: amount_in})
            net_received = received[asset_in]

            try:
                amount_out = self.compute_amount_out(net_received, reserve_in, reserve_out, self.fee_bps)
                if amount_out == 0:
                    raise NoOutputError(
                        "Swap produces no output",
                        details={"amount_in": net_received},
                    )
                if amount_out < min_amount_out:
                    raise SlippageExceededError(
                        "Slippage too high",
                        details={"amount_out": amount_out, "min_amount_out": min_amount_out},
                    )

                # the pool keeps the remainder of the floored protocol fee
                protocol_fee = 0
                if self.fee_recipient:
                    protocol_fee = mul_div(net_received, self.fee_bps, BPS_DENOMINATOR)

                new_reserve_in = reserve_in + net_received - protocol_fee
                new_reserve_out = reserve_out - amount_out
                if new_reserve_in * new_reserve_out < reserve_in * reserve_out:
                    raise FatalArithmeticError(
                        "Constant product would decrease",
                        details={"k_before": k_before},
                    )
                SafeMath.require_bits(self._balance(asset_in), self.reserve_bits, "reserve")
                self._require_available(asset_out, amount_out)
            except AMMError:
                self._refund(caller, received)
                raise

            to = recipient or caller
            legs = [(asset_out, to, amount_out)]
            if protocol_fee:
                legs.append((asset_in, self.fee_recipient, protocol_fee))
            refunded = []

            def refund_input() -> None:
                self._refund(caller, received)
                refunded.append(True)

            try:
                self._payout(legs, rollback=refund_input)
            finally:
                if not refunded:
                    self._update(*self._checked_balances())

            amount0_in, amount1_in = (net_received, 0) if index_in == 0 else (0, net_received)
            amount0_out, amount1_out = (0, amount_out) if index_in == 0 else (amount_out, 0)
            self._emit(
                PoolEventType.SWAP,
                sender=caller,
                recipient=to,
                amount0_in=amount0_in,
                amount1_in=amount1_in,
                amount0_out=amount0_out,
                amount1_out=amount1_out,
                protocol_fee=protocol_fee,
                reserve0_before=reserve0_before,
                reserve1_before=reserve1_before,
                reserve0_after=self.reserve0,
                reserve1_after=self.reserve1,
            )

            fee_amount = mul_div(net_received, self.fee_bps, BPS_DENOMINATOR, round_up=True)
            track_swap(
                self.address,
                asset_in,
                asset_out,
                net_received,
                fee_amount,
                time.time() - start_time,
            )

            logger.info(
                "Swap executed",
                extra={
                    "event": "cpp.swap",
                    "pool": self.address[:10],
                    "token_in": asset_in,
                    "amount_in": net_received,
                    "amount_out": amount_out,
                    "protocol_fee": protocol_fee,
                },
            )
            return amount_out

    @staticmethod
    def compute_amount_out(amount_in: int, reserve_in: int, reserve_out: int, fee_bps: int) -> int:
        """
        Constant-product output for an exact input after the fee.

        amount_out = reserve_out * net_in / (reserve_in + net_in), with
        net_in = amount_in * (1 - fee) kept in basis-point scale so no
        precision is lost before the final floor division.
        """
        if reserve_in <= 0 or reserve_out <= 0:
            raise PoolEmptyError("Pool has no liquidity")
        amount_in_with_fee = amount_in * (BPS_DENOMINATOR - fee_bps)
        numerator = amount_in_with_fee * reserve_out
        denominator = reserve_in * BPS_DENOMINATOR + amount_in_with_fee
        return numerator // denominator

    def get_amount_out(self, token_in: str, amount_in: int) -> int:
        """Quote a swap without executing it."""
        index_in = self.pair.index_of(token_in)
        SafeMath.require_positive(amount_in, "amount_in")
        reserve_in, reserve_out = self._ordered_reserves(index_in)
        return self.compute_amount_out(amount_in, reserve_in, reserve_out, self.fee_bps)

    # ==================== Reserve Maintenance ====================

    def sync(self) -> tuple[int, int]:
        """Force reserves to match the pool's ledger balances."""
        with self._nonreentrant():
            balance0, balance1 = self._checked_balances()
            self._update(balance0, balance1)
            return self.reserve0, self.reserve1

    def skim(self, recipient: str) -> tuple[int, int]:
        """Send any balance in excess of the reserves to recipient."""
        with self._nonreentrant():
            excess0 = max(self._free_balance(self.token0) - self.reserve0, 0)
            excess1 = max(self._free_balance(self.token1) - self.reserve1, 0)
            self._push(self.token0, recipient, excess0)
            self._push(self.token1, recipient, excess1)
            logger.info(
                "Excess balances skimmed",
                extra={
                    "event": "cpp.skim",
                    "pool": self.address[:10],
                    "amount0": excess0,
                    "amount1": excess1,
                },
            )
            return excess0, excess1

    # ==================== View Functions ====================

    def get_reserves(self) -> tuple[int, int]:
        return self.reserve0, self.reserve1

    def share_balance_of(self, owner: str) -> int:
        return self.balances.get(owner.strip().lower(), 0)

    def get_state(self) -> dict:
        """Get current pool state."""
        return {
            "address": self.address,
            "token0": self.token0,
            "token1": self.token1,
            "reserve0": self.reserve0,
            "reserve1": self.reserve1,
            "total_supply": self.total_supply,
            "fee_bps": self.fee_bps,
            "fee_recipient": self.fee_recipient,
            "minimum_liquidity": self.minimum_liquidity,
            "deposit_policy": self.deposit_policy.value,
            "providers_count": len([b for b in self.balances.values() if b > 0]),
        }

    # ==================== Internal ====================

    def _deposit_amounts(self, amount0_desired: int, amount1_desired: int) -> tuple[int, int]:
        if self.total_supply == 0:
            return amount0_desired, amount1_desired

        if self.reserve0 == 0 or self.reserve1 == 0:
            raise PoolEmptyError("Pool has shares but an empty reserve", details={"pool": self.address})

        if self.deposit_policy is DepositPolicy.EXACT:
            if self.reserve0 * amount1_desired != self.reserve1 * amount0_desired:
                raise RatioMismatchError(
                    "Deposit does not match the reserve ratio",
                    details={
                        "reserve0": self.reserve0,
                        "reserve1": self.reserve1,
                        "amount0": amount0_desired,
                        "amount1": amount1_desired,
                    },
                )
            return amount0_desired, amount1_desired

        amount1_optimal = mul_div(amount0_desired, self.reserve1, self.reserve0)
        if amount1_optimal <= amount1_desired:
            return amount0_desired, amount1_optimal
        amount0_optimal = mul_div(amount1_desired, self.reserve0, self.reserve1)
        return amount0_optimal, amount1_desired

    def _liquidity_for_deposit(self, added0: int, added1: int) -> tuple[int, int]:
        """Return (shares for depositor, shares locked permanently)."""
        if self.total_supply == 0:
            liquidity = integer_sqrt(SafeMath.safe_mul(added0, added1, name="genesis product")) - self.minimum_liquidity
            locked = self.minimum_liquidity
        else:
            liquidity = min(
                mul_div(added0, self.total_supply, self.reserve0),
                mul_div(added1, self.total_supply, self.reserve1),
            )
            locked = 0

        if liquidity <= 0:
            raise InsufficientLiquidityMintedError(
                "Insufficient liquidity minted",
                details={"amount0": added0, "amount1": added1},
            )
        return liquidity, locked

    def _ordered_reserves(self, index_in: int) -> tuple[int, int]:
        if index_in == 0:
            return self.reserve0, self.reserve1
        return self.reserve1, self.reserve0

    def _checked_balances(self) -> tuple[int, int]:
        # owed amounts belong to past recipients, not to the reserves
        balance0 = SafeMath.require_bits(self._free_balance(self.token0), self.reserve_bits, "reserve0")
        balance1 = SafeMath.require_bits(self._free_balance(self.token1), self.reserve_bits, "reserve1")
        return balance0, balance1

    def _mint_shares(self, owner: str, amount: int) -> None:
        self.total_supply += amount
        self.balances[owner] = self.balances.get(owner, 0) + amount

    def _burn_shares(self, owner: str, amount: int) -> None:
        self.balances[owner] = SafeMath.safe_sub(self.balances.get(owner, 0), amount, "share balance")
        self.total_supply -= amount

    def _update(self, balance0: int, balance1: int) -> None:
        SafeMath.require_bits(balance0, self.reserve_bits, "reserve0")
        SafeMath.require_bits(balance1, self.reserve_bits, "reserve1")
        self.reserve0 = balance0
        self.reserve1 = balance1

        self._emit(PoolEventType.SYNC, reserve0=balance0, reserve1=balance1)

        metrics = get_dex_metrics()
        metrics.pool_reserves.labels(pool=self.address, denom=self.token0).set(balance0)
        metrics.pool_reserves.labels(pool=self.address, denom=self.token1).set(balance1)

        logger.debug(
            "Reserves synchronized",
            extra={
                "event": "cpp.sync",
                "pool": self.address[:10],
                "reserve0": balance0,
                "reserve1": balance1,
            },
        )
