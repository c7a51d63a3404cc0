"""
pairpool - Two-asset liquidity pools

Pricing and liquidity accounting for constant-product and
concentrated-liquidity pools settled against an external ledger.

Main Components:
- core.defi: pool engines, registry, ledger capability and fixed-point math
- core.amm_exceptions: typed error hierarchy
- core.config / core.logging_config / core.metrics: runtime support
"""

__version__ = "0.1.0"
__author__ = "pairpool Development Team"

__all__ = []
