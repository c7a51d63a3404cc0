"""
Shared pool machinery.

Both pool engines settle against an external ledger, reject re-entrant
calls and honour deadlines the same way; this mixin holds that code.

Settlement rules:
- Inbound amounts are measured as the observed change in the pool's ledger
  balance, never the requested amount (fee-on-transfer assets deliver less).
- If a later inbound transfer fails, earlier ones are refunded before the
  error propagates.
- Bookkeeping for a payout is written before any outbound transfer. If the
  first outbound leg fails with nothing sent, the bookkeeping is rolled back.
  Once value has left the pool, unpaid legs are recorded as owed to their
  recipient and can be collected later with claim_owed.
- Owed amounts are excluded from the pool's free balance.
"""

from __future__ import annotations

import hashlib
import logging
import time
from contextlib import contextmanager
from typing import Callable, Iterator

from ..amm_exceptions import (
    AMMError,
    ExpiredError,
    PoolEmptyError,
    ReentrancyError,
    TransferFailedError,
    ZeroAmountError,
)
from .events import PoolEvent, PoolEventType
from .pair_ordering import AssetPair

logger = logging.getLogger(__name__)


def derive_pool_address(kind: str, pair: AssetPair) -> str:
    """Deterministic pool address for a pool kind and canonical pair."""
    addr_hash = hashlib.sha3_256(f"{kind}:{pair.low}:{pair.high}".encode()).digest()
    return f"0x{addr_hash[-20:].hex()}"


class PoolBase:
    """
    Mixin for pools that settle through a Ledger.

    Expects the host class to define ``address``, ``ledger``, ``events``,
    ``time_provider``, ``owed`` (a dict keyed by (account, asset)),
    ``_locked`` and ``_mutex`` (an RLock).
    """

    # ==================== Guards ====================

    @contextmanager
    def _nonreentrant(self) -> Iterator[None]:
        # RLock serialises threads; the flag rejects same-thread re-entry
        with self._mutex:
            if self._locked:
                raise ReentrancyError("Pool is locked", details={"pool": self.address})
            self._locked = True
            try:
                yield
            finally:
                self._locked = False

    def _current_time(self) -> int:
        if self.time_provider is None:
            return int(time.time())
        timestamp = self.time_provider()
        try:
            return int(timestamp)
        except (TypeError, ValueError) as exc:
            raise ValueError("time_provider must return an integer timestamp") from exc

    def _ensure_not_expired(self, deadline: int | None) -> None:
        if deadline is None:
            return
        now = self._current_time()
        if now > deadline:
            raise ExpiredError(
                "Transaction expired",
                deadline=deadline,
                now=now,
                details={"pool": self.address},
            )

    # ==================== Settlement ====================

    def _balance(self, asset: str) -> int:
        return self.ledger.balance_of(asset, self.address)

    def _owed_total(self, asset: str) -> int:
        return sum(amount for (_, owed_asset), amount in self.owed.items() if owed_asset == asset)

    def _free_balance(self, asset: str) -> int:
        """Ledger balance not already owed to past recipients."""
        return max(self._balance(asset) - self._owed_total(asset), 0)

    def _require_available(self, asset: str, amount: int) -> None:
        available = self._free_balance(asset)
        if amount > available:
            raise PoolEmptyError(
                "Pool balance cannot cover payout",
                details={"asset": asset, "amount": amount, "available": available},
            )

    def _pull(self, payer: str, amounts: dict[str, int]) -> dict[str, int]:
        """
        Collect amounts from payer and return what actually arrived.

        Requires payer to have approved the pool address on each asset.
        """
        received: dict[str, int] = {}
        for asset, amount in amounts.items():
            if amount == 0:
                received[asset] = 0
                continue
            before = self._balance(asset)
            try:
                ok = self.ledger.transfer_from(asset, self.address, payer, self.address, amount)
                if not ok:
                    raise TransferFailedError(
                        f"transfer_from reported failure for {asset}",
                        details={"asset": asset, "from": payer, "amount": amount},
                    )
            except AMMError:
                # a transfer may settle and still raise (e.g. a hook re-entered)
                settled = self._balance(asset) - before
                if settled > 0:
                    received[asset] = settled
                self._refund(payer, received)
                raise
            received[asset] = self._balance(asset) - before
        return received

    def _push(self, asset: str, recipient: str, amount: int) -> None:
        if amount == 0:
            return
        ok = self.ledger.transfer(asset, self.address, recipient, amount)
        if not ok:
            raise TransferFailedError(
                f"transfer reported failure for {asset}",
                details={"asset": asset, "to": recipient, "amount": amount},
            )

    def _payout(
        self,
        legs: list[tuple[str, str, int]],
        rollback: Callable[[], None] | None = None,
    ) -> None:
        """
        Push (asset, recipient, amount) legs in order.

        Callers write their bookkeeping first. If the first failing leg is
        reached before any value has left the pool, ``rollback`` undoes that
        bookkeeping and the error propagates. Otherwise the unpaid remainder
        of the failing leg and every later leg is credited to ``owed`` before
        the error propagates.
        """
        settled = False
        for index, (asset, recipient, amount) in enumerate(legs):
            if amount == 0:
                continue
            before = self._balance(asset)
            try:
                self._push(asset, recipient, amount)
            except AMMError:
                sent = max(before - self._balance(asset), 0)
                if not settled and sent == 0:
                    if rollback is not None:
                        rollback()
                    raise
                unpaid = [(asset, recipient, amount - sent)] + list(legs[index + 1:])
                for owed_asset, owed_to, owed_amount in unpaid:
                    if owed_amount > 0:
                        key = (owed_to.strip().lower(), owed_asset)
                        self.owed[key] = self.owed.get(key, 0) + owed_amount
                logger.warning(
                    "Payout interrupted; unpaid legs recorded as owed",
                    extra={
                        "event": "pool.payout_owed",
                        "pool": self.address[:10],
                        "unpaid": [(a, r[:10], amt) for a, r, amt in unpaid if amt > 0],
                    },
                )
                raise
            settled = True

    def owed_to(self, account: str, asset: str) -> int:
        """Amount of asset the pool still owes account from an interrupted payout."""
        return self.owed.get((account.strip().lower(), asset.strip().lower()), 0)

    def claim_owed(self, caller: str, asset: str) -> int:
        """
        Retry delivery of an amount left owed by an interrupted payout.

        The owed entry is cleared only once the transfer succeeds.
        """
        with self._nonreentrant():
            key = (caller.strip().lower(), asset.strip().lower())
            amount = self.owed.get(key, 0)
            if amount == 0:
                raise ZeroAmountError("Nothing owed", details={"account": caller, "asset": asset})
            before = self._balance(key[1])
            try:
                self._push(key[1], key[0], amount)
            finally:
                sent = max(before - self._balance(key[1]), 0)
                remaining = amount - min(sent, amount)
                if remaining:
                    self.owed[key] = remaining
                else:
                    del self.owed[key]
            logger.info(
                "Owed payout claimed",
                extra={"event": "pool.owed_claimed", "pool": self.address[:10], "asset": key[1], "amount": amount},
            )
            return amount

    def _refund(self, payer: str, received: dict[str, int]) -> None:
        for asset, amount in received.items():
            if amount > 0:
                self._push(asset, payer, amount)
        if any(received.values()):
            logger.warning(
                "Refunded inbound transfers after failed operation",
                extra={
                    "event": "pool.refund",
                    "pool": self.address[:10],
                    "payer": payer[:10],
                    "amounts": {asset: amount for asset, amount in received.items()},
                },
            )

    # ==================== Events ====================

    def _emit(self, event_type: PoolEventType, **payload) -> PoolEvent:
        event = PoolEvent(event_type=event_type, pool=self.address, payload=payload)
        self.events.append(event)
        return event
