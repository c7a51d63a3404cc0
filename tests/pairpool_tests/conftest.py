import sys
from pathlib import Path

import pytest

# pool_helpers lives beside this file
sys.path.insert(0, str(Path(__file__).parent))

from pool_helpers import ALICE, BOB, TOKEN_A, TOKEN_B, FakeClock, approve_pool, make_ledger  # noqa: E402

from pairpool.core.config import DepositPolicy  # noqa: E402
from pairpool.core.defi.concentrated_liquidity import ConcentratedLiquidityPool  # noqa: E402
from pairpool.core.defi.constant_product import ConstantProductPool  # noqa: E402
from pairpool.core.defi.safe_math import Q96  # noqa: E402


@pytest.fixture
def ledger():
    return make_ledger()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_cp_pool(ledger, clock):
    """Factory for constant product pools approved for ALICE and BOB."""

    def _make(
        fee_bps=30,
        minimum_liquidity=0,
        fee_recipient=None,
        deposit_policy=DepositPolicy.OPTIMAL,
        reserve_bits=112,
        pool_ledger=None,
    ):
        target = pool_ledger or ledger
        pool = ConstantProductPool(
            TOKEN_A,
            TOKEN_B,
            target,
            fee_bps=fee_bps,
            fee_recipient=fee_recipient,
            minimum_liquidity=minimum_liquidity,
            deposit_policy=deposit_policy,
            reserve_bits=reserve_bits,
            time_provider=clock,
        )
        approve_pool(target, pool.address, ALICE, BOB)
        return pool

    return _make


@pytest.fixture
def make_cl_pool(ledger, clock):
    """Factory for concentrated liquidity pools approved for ALICE and BOB."""

    def _make(sqrt_price=Q96, fee_bps=30, pool_ledger=None):
        target = pool_ledger or ledger
        pool = ConcentratedLiquidityPool(
            token0=TOKEN_A,
            token1=TOKEN_B,
            sqrt_price=sqrt_price,
            ledger=target,
            fee_bps=fee_bps,
            time_provider=clock,
        )
        approve_pool(target, pool.address, ALICE, BOB)
        return pool

    return _make
