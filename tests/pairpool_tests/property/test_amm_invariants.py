"""
Pool Invariant Tests using Property-Based Testing

Checks the pricing and accounting invariants of both pool engines across
generated inputs with Hypothesis:
- Constant product never decreases across a swap
- Depositing then withdrawing never returns more than was deposited
- Canonical pair ordering is order independent
- Concentrated liquidity range cases and active-liquidity bookkeeping
- integer_sqrt is the exact floor square root
"""

import pytest
from hypothesis import assume, given, settings, strategies as st

from pool_helpers import ALICE, BOB, FakeClock, TOKEN_A, TOKEN_B, approve_pool, make_ledger

from pairpool.core.amm_exceptions import (
    AMMError,
    IdenticalAssetsError,
    NoOutputError,
    PriceRangeExceededError,
    SlippageExceededError,
)
from pairpool.core.defi.concentrated_liquidity import ConcentratedLiquidityPool
from pairpool.core.defi.constant_product import ConstantProductPool
from pairpool.core.defi.pair_ordering import sort_assets
from pairpool.core.defi.safe_math import Q96, integer_sqrt

pytestmark = pytest.mark.property

addresses = st.integers(min_value=1, max_value=2**160 - 1).map(lambda n: f"0x{n:040x}")
reserves = st.integers(min_value=1_000, max_value=10**15)
fees = st.integers(min_value=0, max_value=1000)


def build_cp_pool(fee_bps=30, minimum_liquidity=0):
    ledger = make_ledger()
    pool = ConstantProductPool(
        TOKEN_A,
        TOKEN_B,
        ledger,
        fee_bps=fee_bps,
        minimum_liquidity=minimum_liquidity,
        time_provider=FakeClock(),
    )
    approve_pool(ledger, pool.address)
    return ledger, pool


def build_cl_pool(sqrt_price=Q96, fee_bps=30):
    ledger = make_ledger()
    pool = ConcentratedLiquidityPool(
        token0=TOKEN_A,
        token1=TOKEN_B,
        sqrt_price=sqrt_price,
        ledger=ledger,
        fee_bps=fee_bps,
        time_provider=FakeClock(),
    )
    approve_pool(ledger, pool.address)
    return ledger, pool


class TestFixedPointProperties:
    @given(st.integers(min_value=0, max_value=2**256))
    @settings(max_examples=500)
    def test_integer_sqrt_is_floor_root(self, y):
        root = integer_sqrt(y)
        assert root * root <= y < (root + 1) * (root + 1)


class TestOrderingProperties:
    @given(addresses, addresses)
    @settings(max_examples=300)
    def test_sort_is_symmetric(self, a, b):
        assume(a != b)
        low, high = sort_assets(a, b)
        assert (low, high) == sort_assets(b, a)
        assert low < high
        assert {low, high} == {a, b}

    @given(addresses)
    def test_identical_rejected(self, a):
        with pytest.raises(IdenticalAssetsError):
            sort_assets(a, a.upper().replace("0X", "0x"))


class TestConstantProductProperties:
    @given(reserves, reserves, st.integers(min_value=1, max_value=10**15), fees, st.booleans())
    @settings(max_examples=150, deadline=None)
    def test_product_never_decreases(self, reserve0, reserve1, amount_in, fee_bps, zero_for_one):
        _, pool = build_cp_pool(fee_bps=fee_bps)
        pool.add_liquidity(ALICE, reserve0, reserve1)
        token_in = TOKEN_A if zero_for_one else TOKEN_B
        assume(pool.get_amount_out(token_in, amount_in) > 0)

        k_before = pool.reserve0 * pool.reserve1
        pool.swap_exact_in(BOB, token_in, amount_in)
        assert pool.reserve0 * pool.reserve1 >= k_before

    @given(reserves, reserves, st.integers(min_value=1, max_value=10**15), st.booleans())
    @settings(max_examples=100, deadline=None)
    def test_failed_swap_leaves_no_trace(self, reserve0, reserve1, amount_in, zero_for_one):
        ledger, pool = build_cp_pool()
        pool.add_liquidity(ALICE, reserve0, reserve1)
        token_in = TOKEN_A if zero_for_one else TOKEN_B
        before = (pool.get_reserves(), ledger.balance_of(token_in, BOB), len(pool.events))

        quote = pool.get_amount_out(token_in, amount_in)
        with pytest.raises((SlippageExceededError, NoOutputError)):
            pool.swap_exact_in(BOB, token_in, amount_in, min_amount_out=quote + 1)

        assert (pool.get_reserves(), ledger.balance_of(token_in, BOB), len(pool.events)) == before

    @given(reserves, reserves, reserves, reserves)
    @settings(max_examples=150, deadline=None)
    def test_deposit_withdraw_round_trip_never_profits(self, reserve0, reserve1, deposit0, deposit1):
        ledger, pool = build_cp_pool()
        pool.add_liquidity(ALICE, reserve0, reserve1)

        before0 = ledger.balance_of(TOKEN_A, BOB)
        before1 = ledger.balance_of(TOKEN_B, BOB)
        try:
            shares = pool.add_liquidity(BOB, deposit0, deposit1)
        except AMMError:
            assume(False)
        paid0 = before0 - ledger.balance_of(TOKEN_A, BOB)
        paid1 = before1 - ledger.balance_of(TOKEN_B, BOB)

        amount0, amount1 = pool.remove_liquidity(BOB, shares)
        assert amount0 <= paid0
        assert amount1 <= paid1
        assert pool.reserve0 * pool.reserve1 >= reserve0 * reserve1

    @given(reserves, reserves)
    @settings(max_examples=100, deadline=None)
    def test_genesis_shares_are_floor_geometric_mean(self, amount0, amount1):
        _, pool = build_cp_pool()
        assert pool.add_liquidity(ALICE, amount0, amount1) == integer_sqrt(amount0 * amount1)
        assert pool.get_reserves() == (amount0, amount1)


# Exact Q96 bounds around a price of 1
QUARTER, ONE, FOUR = Q96 // 2, Q96, 2 * Q96
bounds = st.sampled_from([Q96 // 8, Q96 // 4, QUARTER, ONE, FOUR, 4 * Q96, 8 * Q96])
amounts = st.integers(min_value=10**6, max_value=10**21)


class TestConcentratedLiquidityProperties:
    @given(bounds, bounds, amounts, amounts)
    @settings(max_examples=200, deadline=None)
    def test_range_cases(self, lower, upper, amount0, amount1):
        assume(lower < upper)
        _, pool = build_cl_pool()
        liquidity, paid0, paid1 = pool.mint_position(ALICE, lower, upper, amount0, amount1)

        assert paid0 <= amount0 and paid1 <= amount1
        if pool.sqrt_price <= lower:
            assert paid1 == 0
        elif pool.sqrt_price >= upper:
            assert paid0 == 0
        in_range = lower <= pool.sqrt_price < upper
        assert pool.liquidity == (liquidity if in_range else 0)

    @given(bounds, bounds, amounts, amounts)
    @settings(max_examples=150, deadline=None)
    def test_mint_burn_round_trip_never_profits(self, lower, upper, amount0, amount1):
        assume(lower < upper)
        ledger, pool = build_cl_pool()
        liquidity, paid0, paid1 = pool.mint_position(ALICE, lower, upper, amount0, amount1)

        out0, out1 = pool.burn_position(ALICE, lower, upper, liquidity)
        assert out0 <= paid0 and out1 <= paid1
        assert paid0 - out0 <= 1 and paid1 - out1 <= 1
        assert pool.liquidity == 0

    @given(
        st.lists(st.tuples(bounds, bounds, amounts), min_size=1, max_size=4),
        st.integers(min_value=10**9, max_value=10**18),
        st.booleans(),
    )
    @settings(max_examples=150, deadline=None)
    def test_active_liquidity_matches_positions(self, ranges, amount_in, zero_for_one):
        _, pool = build_cl_pool()
        for lower, upper, amount in ranges:
            if lower < upper:
                pool.mint_position(ALICE, lower, upper, amount, amount)
        assume(pool.liquidity > 0)

        price_before = pool.sqrt_price
        token_in = TOKEN_A if zero_for_one else TOKEN_B
        try:
            pool.swap_exact_in(BOB, token_in, amount_in)
        except (PriceRangeExceededError, NoOutputError):
            assert pool.sqrt_price == price_before
        else:
            if zero_for_one:
                assert pool.sqrt_price < price_before
            else:
                assert pool.sqrt_price > price_before

        active = sum(p.liquidity for p in pool.positions.values() if p.contains(pool.sqrt_price))
        assert pool.liquidity == active
