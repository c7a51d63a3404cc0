"""
Canonical ordering for asset pairs.

A pair of assets always resolves to one (low, high) representation so that a
pool has a single identity regardless of argument order.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..amm_exceptions import IdenticalAssetsError, InvalidAssetError, InvalidTokenError

ZERO_ADDRESS = "0x" + "0" * 40


def normalize_asset(asset: str | None) -> str:
    """Normalize an asset identifier; rejects empty and zero-address ids."""
    if asset is None or not isinstance(asset, str):
        raise InvalidAssetError("Asset identifier must be a non-empty string")
    normalized = asset.strip().lower()
    if not normalized or normalized == ZERO_ADDRESS:
        raise InvalidAssetError("Asset identifier is empty or the zero address", details={"asset": asset})
    return normalized


def sort_assets(asset_a: str, asset_b: str) -> tuple[str, str]:
    """Return the canonical (low, high) ordering of two assets."""
    a = normalize_asset(asset_a)
    b = normalize_asset(asset_b)
    if a == b:
        raise IdenticalAssetsError(
            "Cannot pair an asset with itself",
            details={"asset": a},
        )
    return (a, b) if a < b else (b, a)


@dataclass(frozen=True)
class AssetPair:
    """Canonically ordered asset pair (low < high)."""

    low: str
    high: str

    def __post_init__(self) -> None:
        if sort_assets(self.low, self.high) != (self.low, self.high):
            raise InvalidAssetError(
                "AssetPair must be built in canonical order; use AssetPair.from_unordered",
                details={"low": self.low, "high": self.high},
            )

    @classmethod
    def from_unordered(cls, asset_a: str, asset_b: str) -> "AssetPair":
        low, high = sort_assets(asset_a, asset_b)
        return cls(low=low, high=high)

    @property
    def key(self) -> str:
        return f"{self.low}:{self.high}"

    def contains(self, asset: str) -> bool:
        try:
            normalized = normalize_asset(asset)
        except InvalidAssetError:
            return False
        return normalized in (self.low, self.high)

    def index_of(self, asset: str) -> int:
        """0 for the low asset, 1 for the high asset."""
        normalized = normalize_asset(asset)
        if normalized == self.low:
            return 0
        if normalized == self.high:
            return 1
        raise InvalidTokenError(
            f"Asset {normalized} is not part of pair {self.key}",
            details={"asset": normalized, "pair": self.key},
        )

    def other(self, asset: str) -> str:
        return self.high if self.index_of(asset) == 0 else self.low
