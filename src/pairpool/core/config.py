"""
pairpool Configuration

Pool defaults are read from PAIRPOOL_* environment variables so deployments
can tune fees, the minimum-liquidity lock and the deposit policy without
code changes.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


class DepositPolicy(Enum):
    """How non-initial constant-product deposits are reconciled to the reserve ratio."""

    OPTIMAL = "optimal"  # trim the surplus side, use less than desired
    EXACT = "exact"      # reject anything off the reserve ratio


MAX_FEE_BPS = 1000  # 10%

DEFAULT_FEE_BPS = int(os.getenv("PAIRPOOL_DEFAULT_FEE_BPS", "30"))
CONCENTRATED_FEE_BPS = int(os.getenv("PAIRPOOL_CL_FEE_BPS", "30"))
MINIMUM_LIQUIDITY = int(os.getenv("PAIRPOOL_MINIMUM_LIQUIDITY", "1000"))
RESERVE_BITS = int(os.getenv("PAIRPOOL_RESERVE_BITS", "112"))
LOG_LEVEL = os.getenv("PAIRPOOL_LOG_LEVEL", "INFO").upper()
ENVIRONMENT = os.getenv("PAIRPOOL_ENVIRONMENT", "development")


def _get_int(env_var: str, default: int) -> int:
    raw = os.getenv(env_var, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{env_var} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class PoolConfig:
    """Validated defaults applied to newly created pools."""

    fee_bps: int = DEFAULT_FEE_BPS
    concentrated_fee_bps: int = CONCENTRATED_FEE_BPS
    minimum_liquidity: int = MINIMUM_LIQUIDITY
    deposit_policy: DepositPolicy = DepositPolicy.OPTIMAL
    reserve_bits: int = RESERVE_BITS

    def __post_init__(self) -> None:
        for name in ("fee_bps", "concentrated_fee_bps"):
            value = getattr(self, name)
            if not 0 <= value <= MAX_FEE_BPS:
                raise ConfigurationError(f"{name} must be within 0..{MAX_FEE_BPS} bps, got {value}")
        if self.minimum_liquidity < 0:
            raise ConfigurationError("minimum_liquidity cannot be negative")
        if not 8 <= self.reserve_bits <= 256:
            raise ConfigurationError("reserve_bits must be within 8..256")

    @classmethod
    def from_env(cls) -> "PoolConfig":
        """Build a config from the current environment."""
        policy_raw = os.getenv("PAIRPOOL_DEPOSIT_POLICY", DepositPolicy.OPTIMAL.value).strip().lower()
        try:
            policy = DepositPolicy(policy_raw)
        except ValueError as exc:
            raise ConfigurationError(
                f"PAIRPOOL_DEPOSIT_POLICY must be one of "
                f"{[p.value for p in DepositPolicy]}, got {policy_raw!r}"
            ) from exc

        config = cls(
            fee_bps=_get_int("PAIRPOOL_DEFAULT_FEE_BPS", 30),
            concentrated_fee_bps=_get_int("PAIRPOOL_CL_FEE_BPS", 30),
            minimum_liquidity=_get_int("PAIRPOOL_MINIMUM_LIQUIDITY", 1000),
            deposit_policy=policy,
            reserve_bits=_get_int("PAIRPOOL_RESERVE_BITS", 112),
        )
        logger.debug(
            "Pool configuration loaded",
            extra={
                "event": "config.loaded",
                "fee_bps": config.fee_bps,
                "minimum_liquidity": config.minimum_liquidity,
                "deposit_policy": config.deposit_policy.value,
            },
        )
        return config
