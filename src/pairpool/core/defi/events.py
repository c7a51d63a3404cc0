"""Observable pool events for external indexers."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class PoolEventType(Enum):
    """Kinds of state change a pool or registry records."""
    POOL_CREATED = "pool_created"
    MINT = "mint"
    BURN = "burn"
    SWAP = "swap"
    SYNC = "sync"


@dataclass(frozen=True)
class PoolEvent:
    """Record of a pool state change."""
    event_type: PoolEventType
    pool: str
    payload: dict[str, Any]
    timestamp: float = field(default_factory=time.time)
