"""
pairpool DeFi primitives.

This module provides:
- Constant Product Pool: x * y = k pool with fungible liquidity shares
- Concentrated Liquidity: range positions over Q64.96 sqrt prices
- Pool Registry: one pool per canonical pair and pool kind
- Ledger: the asset transfer capability pools settle against
"""

from .concentrated_liquidity import (
    MAX_SQRT_RATIO,
    MIN_SQRT_RATIO,
    ConcentratedLiquidityPool,
    PositionKey,
)
from .concentrated_liquidity import Position as CLPosition
from .constant_product import DEAD_ADDRESS, ConstantProductPool
from .events import PoolEvent, PoolEventType
from .ledger import InMemoryLedger, Ledger
from .pair_ordering import AssetPair, sort_assets
from .pool_registry import PoolKind, PoolRegistry
from .safe_math import Q96, encode_sqrt_price, integer_sqrt, mul_div

__all__ = [
    # Pools
    "ConstantProductPool",
    "ConcentratedLiquidityPool",
    "CLPosition",
    "PositionKey",
    "DEAD_ADDRESS",
    "MIN_SQRT_RATIO",
    "MAX_SQRT_RATIO",
    # Registry
    "PoolRegistry",
    "PoolKind",
    # Ledger
    "Ledger",
    "InMemoryLedger",
    # Events
    "PoolEvent",
    "PoolEventType",
    # Math and ordering
    "AssetPair",
    "sort_assets",
    "Q96",
    "encode_sqrt_price",
    "integer_sqrt",
    "mul_div",
]
