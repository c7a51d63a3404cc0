"""
Fungible Asset Ledger.

Pools consume a ledger capability (balance lookup, transfer, transferFrom)
rather than tracking asset balances themselves. This module defines that
capability and an in-memory multi-asset ledger modelled on the ERC20
standard, including:
- Balances and allowances per asset
- Unlimited allowances (UINT256_MAX is never decremented)
- Optional fee-on-transfer behaviour (the fee is burned)
- Pausing (paused assets report failure instead of raising)
- Per-asset transfer hooks, used to model tokens that call back into pools

Security features:
- Zero address checks
- Balance underflow prevention
- Allowance validation
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol, runtime_checkable

from ..amm_exceptions import InvalidAssetError, InvalidFeeError, TransferFailedError
from .pair_ordering import ZERO_ADDRESS, normalize_asset
from .safe_math import BPS_DENOMINATOR, MAX_UINT256

logger = logging.getLogger(__name__)

TransferHook = Callable[[str, str, str, int], None]


@runtime_checkable
class Ledger(Protocol):
    """Ledger capability consumed by pools.

    ``transfer`` and ``transfer_from`` return False (or raise
    TransferFailedError) on failure. Implementations may deliver less than
    the requested amount; pools always re-read balances.
    """

    def balance_of(self, asset: str, account: str) -> int:
        ...

    def transfer(self, asset: str, sender: str, recipient: str, amount: int) -> bool:
        ...

    def transfer_from(
        self, asset: str, spender: str, owner: str, recipient: str, amount: int
    ) -> bool:
        ...


@dataclass
class TransferRecord:
    """A settled transfer on one asset."""

    asset: str
    from_address: str
    to_address: str
    value: int
    fee: int = 0
    timestamp: float = field(default_factory=time.time)


@dataclass
class AssetAccount:
    """Balance sheet of one asset inside the ledger."""

    asset: str
    transfer_fee_bps: int = 0
    total_supply: int = 0
    balances: dict[str, int] = field(default_factory=dict)
    allowances: dict[str, dict[str, int]] = field(default_factory=dict)
    paused: bool = False
    transfer_hook: TransferHook | None = None


class InMemoryLedger:
    """Multi-asset in-memory ledger implementing the Ledger capability."""

    UINT256_MAX = MAX_UINT256

    def __init__(self) -> None:
        self.assets: dict[str, AssetAccount] = {}
        self.transfers: list[TransferRecord] = []

    # ==================== Administration ====================

    def register_asset(self, asset: str, transfer_fee_bps: int = 0) -> AssetAccount:
        key = normalize_asset(asset)
        if not 0 <= transfer_fee_bps < BPS_DENOMINATOR:
            raise InvalidFeeError("transfer fee must be within 0..9999 bps")
        account = self.assets.get(key)
        if account is None:
            account = AssetAccount(asset=key, transfer_fee_bps=transfer_fee_bps)
            self.assets[key] = account
        else:
            account.transfer_fee_bps = transfer_fee_bps
        return account

    def mint(self, asset: str, to: str, amount: int) -> None:
        account = self._account(asset, create=True)
        to_norm = self._normalize(to)
        self._validate_address(to_norm, "recipient")
        self._validate_amount(amount)
        account.balances[to_norm] = account.balances.get(to_norm, 0) + amount
        account.total_supply += amount

    def pause(self, asset: str) -> None:
        self._account(asset).paused = True

    def unpause(self, asset: str) -> None:
        self._account(asset).paused = False

    def set_transfer_hook(self, asset: str, hook: TransferHook | None) -> None:
        self._account(asset).transfer_hook = hook

    # ==================== View Functions ====================

    def balance_of(self, asset: str, account: str) -> int:
        key = normalize_asset(asset)
        sheet = self.assets.get(key)
        if sheet is None:
            return 0
        return sheet.balances.get(self._normalize(account), 0)

    def allowance(self, asset: str, owner: str, spender: str) -> int:
        sheet = self.assets.get(normalize_asset(asset))
        if sheet is None:
            return 0
        return sheet.allowances.get(self._normalize(owner), {}).get(self._normalize(spender), 0)

    # ==================== State-Changing Functions ====================

    def approve(self, asset: str, owner: str, spender: str, amount: int) -> bool:
        account = self._account(asset, create=True)
        owner_norm = self._normalize(owner)
        spender_norm = self._normalize(spender)
        self._validate_address(spender_norm, "spender")
        self._validate_amount(amount)
        account.allowances.setdefault(owner_norm, {})[spender_norm] = amount
        return True

    def transfer(self, asset: str, sender: str, recipient: str, amount: int) -> bool:
        """
        Move ``amount`` of ``asset`` from sender to recipient.

        Returns:
            False if the asset is paused, True otherwise

        Raises:
            TransferFailedError: On unknown asset or insufficient balance
        """
        account = self._account(asset)
        if account.paused:
            return False
        sender_norm = self._normalize(sender)
        recipient_norm = self._normalize(recipient)
        self._validate_address(recipient_norm, "recipient")
        self._validate_amount(amount)

        self._move(account, sender_norm, recipient_norm, amount)
        return True

    def transfer_from(
        self, asset: str, spender: str, owner: str, recipient: str, amount: int
    ) -> bool:
        """
        Move ``amount`` from owner to recipient using spender's allowance.

        Raises:
            TransferFailedError: On insufficient allowance or balance
        """
        account = self._account(asset)
        if account.paused:
            return False
        spender_norm = self._normalize(spender)
        owner_norm = self._normalize(owner)
        recipient_norm = self._normalize(recipient)
        self._validate_address(recipient_norm, "recipient")
        self._validate_amount(amount)

        current_allowance = account.allowances.get(owner_norm, {}).get(spender_norm, 0)
        if current_allowance < amount:
            raise TransferFailedError(
                f"Insufficient allowance ({current_allowance} < {amount})",
                details={"asset": account.asset, "owner": owner_norm, "spender": spender_norm},
            )

        self._move(account, owner_norm, recipient_norm, amount)

        if current_allowance != self.UINT256_MAX:
            account.allowances[owner_norm][spender_norm] = current_allowance - amount
        return True

    # ==================== Helpers ====================

    def _move(self, account: AssetAccount, sender: str, recipient: str, amount: int) -> None:
        sender_balance = account.balances.get(sender, 0)
        if sender_balance < amount:
            raise TransferFailedError(
                f"Transfer amount exceeds balance ({amount} > {sender_balance})",
                details={"asset": account.asset, "from": sender},
            )

        fee = amount * account.transfer_fee_bps // BPS_DENOMINATOR
        received = amount - fee

        account.balances[sender] = sender_balance - amount
        account.balances[recipient] = account.balances.get(recipient, 0) + received
        account.total_supply -= fee

        self.transfers.append(
            TransferRecord(
                asset=account.asset,
                from_address=sender,
                to_address=recipient,
                value=received,
                fee=fee,
            )
        )
        logger.debug(
            "Ledger transfer",
            extra={
                "event": "ledger.transfer",
                "asset": account.asset,
                "from": sender[:10],
                "to": recipient[:10],
                "amount": amount,
                "fee": fee,
            },
        )

        if account.transfer_hook is not None:
            account.transfer_hook(account.asset, sender, recipient, received)

    def _account(self, asset: str, create: bool = False) -> AssetAccount:
        key = normalize_asset(asset)
        account = self.assets.get(key)
        if account is None:
            if create:
                return self.register_asset(key)
            raise TransferFailedError(f"Unknown asset {key}", details={"asset": key})
        return account

    @staticmethod
    def _normalize(address: str) -> str:
        return address.strip().lower()

    @staticmethod
    def _validate_address(address: str, field_name: str) -> None:
        if not address or address == ZERO_ADDRESS:
            raise InvalidAssetError(f"Ledger: {field_name} is zero address")

    @classmethod
    def _validate_amount(cls, amount: int) -> None:
        if amount < 0:
            raise TransferFailedError("Ledger: amount cannot be negative")
        if amount > cls.UINT256_MAX:
            raise TransferFailedError("Ledger: amount exceeds uint256")
