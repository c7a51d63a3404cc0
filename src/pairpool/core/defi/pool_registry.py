"""
Pool registry.

Creates pools, guarantees a single pool per canonical pair and pool kind,
and resolves pools by pair or by address. The registry owns every pool it
creates; callers hold pool addresses as handles.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable

from ..amm_exceptions import AMMError, InvalidPriceError, PairExistsError
from ..config import PoolConfig
from ..metrics import get_dex_metrics
from .concentrated_liquidity import ConcentratedLiquidityPool
from .constant_product import ConstantProductPool
from .events import PoolEvent, PoolEventType
from .ledger import Ledger
from .pair_ordering import AssetPair, normalize_asset
from .safe_math import reciprocal_q

logger = logging.getLogger(__name__)


class PoolKind(Enum):
    """Pool engines the registry can deploy."""
    CONSTANT_PRODUCT = "cpp"
    CONCENTRATED = "clp"


class PoolRegistry:
    """Factory and lookup table for pools sharing one ledger."""

    def __init__(
        self,
        ledger: Ledger,
        config: PoolConfig | None = None,
        time_provider: Callable[[], int] | None = None,
    ):
        if ledger is None:
            raise ValueError("A ledger is required")
        self.ledger = ledger
        self.config = config or PoolConfig.from_env()
        self.time_provider = time_provider

        # Deployed pools by address
        self.pools: dict[str, ConstantProductPool | ConcentratedLiquidityPool] = {}

        # Pool lookup by pair key, then kind
        self.pool_by_pair: dict[str, dict[PoolKind, str]] = {}

        self.events: list[PoolEvent] = []

    def create_pool(
        self,
        asset_a: str,
        asset_b: str,
        fee_bps: int | None = None,
        fee_recipient: str | None = None,
    ) -> ConstantProductPool:
        """
        Create a constant product pool.

        Raises:
            IdenticalAssetsError: asset_a and asset_b are the same
            InvalidAssetError: either asset is empty or the zero address
            PairExistsError: a constant product pool already exists for the pair
        """
        pair = AssetPair.from_unordered(asset_a, asset_b)
        self._ensure_absent(pair, PoolKind.CONSTANT_PRODUCT)

        pool = ConstantProductPool(
            pair.low,
            pair.high,
            self.ledger,
            fee_bps=self.config.fee_bps if fee_bps is None else fee_bps,
            fee_recipient=fee_recipient,
            minimum_liquidity=self.config.minimum_liquidity,
            deposit_policy=self.config.deposit_policy,
            reserve_bits=self.config.reserve_bits,
            time_provider=self.time_provider,
        )
        self._register(pool, pair, PoolKind.CONSTANT_PRODUCT)
        return pool

    def create_concentrated_pool(
        self,
        asset_a: str,
        asset_b: str,
        initial_sqrt_price: int,
        fee_bps: int | None = None,
    ) -> ConcentratedLiquidityPool:
        """
        Create a concentrated liquidity pool.

        Args:
            asset_a: First asset
            asset_b: Second asset
            initial_sqrt_price: sqrt(asset_b / asset_a) in Q64.96
            fee_bps: Swap fee (default from config)

        Returns:
            Created pool; its sqrt price is quoted in canonical order
        """
        pair = AssetPair.from_unordered(asset_a, asset_b)
        self._ensure_absent(pair, PoolKind.CONCENTRATED)

        if normalize_asset(asset_a) != pair.low:
            if initial_sqrt_price <= 0:
                raise InvalidPriceError("Initial sqrt price must be positive")
            # Invert sqrt price with full precision
            initial_sqrt_price = reciprocal_q(initial_sqrt_price)

        pool = ConcentratedLiquidityPool(
            token0=pair.low,
            token1=pair.high,
            sqrt_price=initial_sqrt_price,
            ledger=self.ledger,
            fee_bps=self.config.concentrated_fee_bps if fee_bps is None else fee_bps,
            time_provider=self.time_provider,
        )
        self._register(pool, pair, PoolKind.CONCENTRATED)
        return pool

    def get_pool(self, asset_a: str, asset_b: str) -> ConstantProductPool | None:
        """Get the constant product pool for a pair, in either order."""
        return self._lookup(asset_a, asset_b, PoolKind.CONSTANT_PRODUCT)

    def get_concentrated_pool(self, asset_a: str, asset_b: str) -> ConcentratedLiquidityPool | None:
        return self._lookup(asset_a, asset_b, PoolKind.CONCENTRATED)

    def pool_at(self, address: str) -> ConstantProductPool | ConcentratedLiquidityPool | None:
        return self.pools.get(address.strip().lower())

    def all_pools(self) -> list[ConstantProductPool | ConcentratedLiquidityPool]:
        return list(self.pools.values())

    # ==================== Internal ====================

    def _lookup(self, asset_a: str, asset_b: str, kind: PoolKind):
        try:
            pair = AssetPair.from_unordered(asset_a, asset_b)
        except AMMError:
            return None
        address = self.pool_by_pair.get(pair.key, {}).get(kind)
        if not address:
            return None
        return self.pools.get(address)

    def _ensure_absent(self, pair: AssetPair, kind: PoolKind) -> None:
        if kind in self.pool_by_pair.get(pair.key, {}):
            raise PairExistsError(
                f"{kind.value} pool already exists for {pair.key}",
                details={"pair": pair.key, "pool": self.pool_by_pair[pair.key][kind]},
            )

    def _register(self, pool, pair: AssetPair, kind: PoolKind) -> None:
        self.pools[pool.address] = pool
        self.pool_by_pair.setdefault(pair.key, {})[kind] = pool.address

        self.events.append(
            PoolEvent(
                event_type=PoolEventType.POOL_CREATED,
                pool=pool.address,
                payload={"kind": kind.value, "token0": pair.low, "token1": pair.high, "fee_bps": pool.fee_bps},
            )
        )
        get_dex_metrics().pool_creations.labels(kind=kind.value).inc()

        logger.info(
            "Pool created",
            extra={
                "event": "registry.pool_created",
                "pool": pool.address[:10],
                "kind": kind.value,
                "pair": pair.key,
                "fee": pool.fee_bps,
            },
        )
