"""
Constant Product Pool Tests.

Covers genesis and pro-rata deposits, withdrawals, exact-input swaps,
protocol fees, deadlines, reentrancy and failure atomicity against the
in-memory ledger.
"""

import threading

import pytest

from pool_helpers import (
    ALICE,
    BOB,
    FEE_SINK,
    STARTING_BALANCE,
    TOKEN_A,
    TOKEN_B,
    TOKEN_C,
    RecipientBlockingLedger,
    make_ledger,
)

from pairpool.core.amm_exceptions import (
    ArithmeticOverflowError,
    ExpiredError,
    InsufficientLiquidityMintedError,
    InsufficientOutputError,
    InsufficientSharesError,
    InvalidAssetError,
    InvalidFeeError,
    InvalidTokenError,
    NoLiquidityError,
    NoOutputError,
    PoolEmptyError,
    RatioMismatchError,
    ReentrancyError,
    SlippageExceededError,
    TransferFailedError,
    ZeroAmountError,
)
from pairpool.core.config import DepositPolicy
from pairpool.core.defi.constant_product import DEAD_ADDRESS, ConstantProductPool
from pairpool.core.defi.events import PoolEventType
from pairpool.core.defi.safe_math import mul_div


def seed(pool, amount0=1000, amount1=4000, provider=ALICE):
    return pool.add_liquidity(provider, amount0, amount1)


class TestConstruction:
    def test_tokens_are_canonically_ordered(self, ledger):
        pool = ConstantProductPool(TOKEN_B, TOKEN_A, ledger)
        assert pool.token0 == TOKEN_A
        assert pool.token1 == TOKEN_B

    def test_address_is_deterministic(self, ledger):
        assert ConstantProductPool(TOKEN_A, TOKEN_B, ledger).address == ConstantProductPool(TOKEN_B, TOKEN_A, ledger).address

    def test_fee_bounds(self, ledger):
        with pytest.raises(InvalidFeeError):
            ConstantProductPool(TOKEN_A, TOKEN_B, ledger, fee_bps=1001)
        assert ConstantProductPool(TOKEN_A, TOKEN_B, ledger, fee_bps=1000).fee_bps == 1000

    @pytest.mark.parametrize("bad", ["", "   ", "0x" + "0" * 40])
    def test_fee_recipient_must_be_an_account(self, ledger, bad):
        with pytest.raises(InvalidAssetError):
            ConstantProductPool(TOKEN_A, TOKEN_B, ledger, fee_recipient=bad)

    def test_fee_recipient_is_normalized(self, ledger):
        pool = ConstantProductPool(TOKEN_A, TOKEN_B, ledger, fee_recipient=FEE_SINK.upper().replace("0X", "0x"))
        assert pool.fee_recipient == FEE_SINK


class TestAddLiquidity:
    def test_genesis_mints_geometric_mean(self, make_cp_pool):
        pool = make_cp_pool(minimum_liquidity=0)
        liquidity = seed(pool)

        assert liquidity == 2000
        assert pool.total_supply == 2000
        assert pool.share_balance_of(ALICE) == 2000
        assert pool.get_reserves() == (1000, 4000)
        assert [e.event_type for e in pool.events] == [PoolEventType.SYNC, PoolEventType.MINT]

    def test_genesis_locks_minimum_liquidity(self, make_cp_pool):
        pool = make_cp_pool(minimum_liquidity=1000)
        liquidity = pool.add_liquidity(ALICE, 10_000, 10_000)

        assert liquidity == 9000
        assert pool.share_balance_of(DEAD_ADDRESS) == 1000
        assert pool.total_supply == 10_000

    def test_genesis_below_minimum_refunds(self, make_cp_pool, ledger):
        pool = make_cp_pool(minimum_liquidity=1000)
        with pytest.raises(InsufficientLiquidityMintedError):
            pool.add_liquidity(ALICE, 100, 100)

        assert pool.total_supply == 0
        assert pool.get_reserves() == (0, 0)
        assert ledger.balance_of(TOKEN_A, ALICE) == STARTING_BALANCE
        assert ledger.balance_of(TOKEN_B, ALICE) == STARTING_BALANCE

    def test_optimal_policy_trims_surplus(self, make_cp_pool, ledger):
        pool = make_cp_pool()
        seed(pool)
        liquidity = pool.add_liquidity(BOB, 500, 5000)

        assert liquidity == 1000
        assert pool.get_reserves() == (1500, 6000)
        assert ledger.balance_of(TOKEN_B, BOB) == STARTING_BALANCE - 2000

    def test_optimal_policy_trims_token0(self, make_cp_pool):
        pool = make_cp_pool()
        seed(pool)
        assert pool.add_liquidity(BOB, 5000, 400) == 200
        assert pool.get_reserves() == (1100, 4400)

    def test_exact_policy_rejects_ratio_mismatch(self, make_cp_pool, ledger):
        pool = make_cp_pool(deposit_policy=DepositPolicy.EXACT)
        seed(pool)
        with pytest.raises(RatioMismatchError):
            pool.add_liquidity(BOB, 500, 5000)
        assert ledger.balance_of(TOKEN_A, BOB) == STARTING_BALANCE

        assert pool.add_liquidity(BOB, 500, 2000) == 1000

    def test_min_liquidity_out(self, make_cp_pool, ledger):
        pool = make_cp_pool()
        seed(pool)
        with pytest.raises(InsufficientOutputError):
            pool.add_liquidity(BOB, 500, 2000, min_liquidity_out=1001)
        assert pool.get_reserves() == (1000, 4000)
        assert ledger.balance_of(TOKEN_A, BOB) == STARTING_BALANCE

    def test_zero_amount(self, make_cp_pool):
        pool = make_cp_pool()
        with pytest.raises(ZeroAmountError):
            pool.add_liquidity(ALICE, 0, 100)

    def test_recipient_receives_shares(self, make_cp_pool):
        pool = make_cp_pool()
        pool.add_liquidity(ALICE, 1000, 4000, recipient=BOB)
        assert pool.share_balance_of(BOB) == 2000
        assert pool.share_balance_of(ALICE) == 0

    def test_reserve_bound_is_fatal(self, make_cp_pool, ledger):
        pool = make_cp_pool(reserve_bits=16)
        with pytest.raises(ArithmeticOverflowError):
            pool.add_liquidity(ALICE, 70_000, 100)
        assert ledger.balance_of(TOKEN_A, pool.address) == 0


class TestRemoveLiquidity:
    def test_full_withdrawal(self, make_cp_pool, ledger):
        pool = make_cp_pool()
        seed(pool)
        amounts = pool.remove_liquidity(ALICE, 2000)

        assert amounts == (1000, 4000)
        assert pool.total_supply == 0
        assert pool.get_reserves() == (0, 0)
        assert ledger.balance_of(TOKEN_A, ALICE) == STARTING_BALANCE
        assert pool.events[-1].event_type == PoolEventType.BURN

    def test_partial_withdrawal_pro_rata(self, make_cp_pool):
        pool = make_cp_pool()
        seed(pool)
        assert pool.remove_liquidity(ALICE, 500, recipient=BOB) == (250, 1000)
        assert pool.get_reserves() == (750, 3000)

    def test_more_than_held(self, make_cp_pool):
        pool = make_cp_pool()
        seed(pool)
        with pytest.raises(InsufficientSharesError):
            pool.remove_liquidity(BOB, 1)
        with pytest.raises(InsufficientSharesError):
            pool.remove_liquidity(ALICE, 2001)

    def test_empty_pool(self, make_cp_pool):
        pool = make_cp_pool()
        with pytest.raises(NoLiquidityError):
            pool.remove_liquidity(ALICE, 1)

    def test_minimum_amounts(self, make_cp_pool):
        pool = make_cp_pool()
        seed(pool)
        with pytest.raises(InsufficientOutputError):
            pool.remove_liquidity(ALICE, 500, amount0_min=251)
        assert pool.share_balance_of(ALICE) == 2000

    def test_zero_liquidity(self, make_cp_pool):
        pool = make_cp_pool()
        seed(pool)
        with pytest.raises(ZeroAmountError):
            pool.remove_liquidity(ALICE, 0)


class TestSwap:
    def test_end_to_end_scenario(self, make_cp_pool, ledger):
        pool = make_cp_pool(fee_bps=30, minimum_liquidity=0)
        assert seed(pool) == 2000
        k_before = pool.reserve0 * pool.reserve1

        amount_out = pool.swap_exact_in(BOB, TOKEN_A, 100)

        # 100 * 9970 * 4000 // (1000 * 10000 + 997000)
        assert amount_out == 362
        assert pool.get_reserves() == (1100, 3638)
        assert pool.reserve0 * pool.reserve1 >= k_before
        assert ledger.balance_of(TOKEN_B, BOB) == STARTING_BALANCE + 362

    def test_reverse_direction(self, make_cp_pool):
        pool = make_cp_pool()
        seed(pool)
        expected = ConstantProductPool.compute_amount_out(400, 4000, 1000, 30)
        assert pool.swap_exact_in(BOB, TOKEN_B, 400) == expected
        assert pool.get_reserves() == (1000 - expected, 4400)

    def test_quote_matches_execution(self, make_cp_pool):
        pool = make_cp_pool()
        seed(pool, 10**9, 3 * 10**9)
        quote = pool.get_amount_out(TOKEN_B, 12345)
        assert pool.swap_exact_in(BOB, TOKEN_B, 12345) == quote

    def test_swap_event(self, make_cp_pool):
        pool = make_cp_pool()
        seed(pool)
        pool.swap_exact_in(BOB, TOKEN_A, 100)
        swap = [e for e in pool.events if e.event_type == PoolEventType.SWAP][-1]
        assert swap.payload["amount0_in"] == 100
        assert swap.payload["amount1_out"] == 362
        assert swap.payload["reserve0_before"] == 1000
        assert swap.payload["reserve1_after"] == 3638
        assert pool.events[-2].event_type == PoolEventType.SYNC

    def test_slippage_is_atomic(self, make_cp_pool, ledger):
        pool = make_cp_pool()
        seed(pool)
        with pytest.raises(SlippageExceededError):
            pool.swap_exact_in(BOB, TOKEN_A, 100, min_amount_out=363)

        assert pool.get_reserves() == (1000, 4000)
        assert ledger.balance_of(TOKEN_A, BOB) == STARTING_BALANCE
        assert ledger.balance_of(TOKEN_A, pool.address) == 1000

    def test_slippage_is_an_insufficient_output(self, make_cp_pool):
        pool = make_cp_pool()
        seed(pool)
        with pytest.raises(InsufficientOutputError):
            pool.swap_exact_in(BOB, TOKEN_A, 100, min_amount_out=10**6)

    def test_no_output(self, make_cp_pool):
        pool = make_cp_pool()
        seed(pool)
        # 1 * 9970 * 1000 // (4000 * 10000 + 9970) == 0
        with pytest.raises(NoOutputError):
            pool.swap_exact_in(BOB, TOKEN_B, 1)

    def test_empty_pool(self, make_cp_pool):
        pool = make_cp_pool()
        with pytest.raises(PoolEmptyError):
            pool.swap_exact_in(BOB, TOKEN_A, 100)

    def test_foreign_token(self, make_cp_pool):
        pool = make_cp_pool()
        seed(pool)
        with pytest.raises(InvalidTokenError):
            pool.swap_exact_in(BOB, TOKEN_C, 100)

    def test_zero_amount(self, make_cp_pool):
        pool = make_cp_pool()
        seed(pool)
        with pytest.raises(ZeroAmountError):
            pool.swap_exact_in(BOB, TOKEN_A, 0)

    def test_zero_fee(self, make_cp_pool):
        pool = make_cp_pool(fee_bps=0)
        seed(pool)
        # 100 * 4000 // 1100
        assert pool.swap_exact_in(BOB, TOKEN_A, 100) == 363

    def test_protocol_fee_routed_to_recipient(self, make_cp_pool, ledger):
        pool = make_cp_pool(fee_recipient=FEE_SINK)
        seed(pool, 100_000, 400_000)
        expected = ConstantProductPool.compute_amount_out(10_000, 100_000, 400_000, 30)

        assert pool.swap_exact_in(BOB, TOKEN_A, 10_000) == expected
        assert ledger.balance_of(TOKEN_A, FEE_SINK) == 30
        assert pool.get_reserves() == (109_970, 400_000 - expected)

    def test_recipient(self, make_cp_pool, ledger):
        pool = make_cp_pool()
        seed(pool)
        pool.swap_exact_in(BOB, TOKEN_A, 100, recipient=FEE_SINK)
        assert ledger.balance_of(TOKEN_B, FEE_SINK) == 362


class TestDeadlines:
    def test_expired(self, make_cp_pool, clock):
        pool = make_cp_pool()
        with pytest.raises(ExpiredError) as exc_info:
            pool.add_liquidity(ALICE, 1000, 4000, deadline=clock.now - 1)
        assert exc_info.value.deadline == clock.now - 1
        assert exc_info.value.now == clock.now

    def test_deadline_equal_to_now_passes(self, make_cp_pool, clock):
        pool = make_cp_pool()
        pool.add_liquidity(ALICE, 1000, 4000, deadline=clock.now)
        assert pool.swap_exact_in(BOB, TOKEN_A, 100, deadline=clock.now) == 362

    def test_swap_and_remove_check_deadline(self, make_cp_pool, clock):
        pool = make_cp_pool()
        seed(pool)
        clock.now += 10
        with pytest.raises(ExpiredError):
            pool.swap_exact_in(BOB, TOKEN_A, 100, deadline=clock.now - 5)
        with pytest.raises(ExpiredError):
            pool.remove_liquidity(ALICE, 100, deadline=clock.now - 5)


class TestLedgerInteractions:
    def test_fee_on_transfer_uses_observed_amounts(self, clock):
        ledger = make_ledger({TOKEN_A: 100})
        pool = ConstantProductPool(TOKEN_A, TOKEN_B, ledger, minimum_liquidity=0, time_provider=clock)
        for account in (ALICE, BOB):
            ledger.approve(TOKEN_A, account, pool.address, ledger.UINT256_MAX)
            ledger.approve(TOKEN_B, account, pool.address, ledger.UINT256_MAX)

        liquidity = pool.add_liquidity(ALICE, 10_000, 10_000)
        assert pool.get_reserves() == (9_900, 10_000)
        # isqrt(9_900 * 10_000)
        assert liquidity == 9_949

        expected = ConstantProductPool.compute_amount_out(990, 9_900, 10_000, 30)
        assert pool.swap_exact_in(BOB, TOKEN_A, 1_000) == expected
        assert pool.get_reserves() == (10_890, 10_000 - expected)

    def test_paused_token_refunds_first_leg(self, make_cp_pool, ledger):
        pool = make_cp_pool()
        ledger.pause(TOKEN_B)
        with pytest.raises(TransferFailedError):
            pool.add_liquidity(ALICE, 1000, 4000)

        assert ledger.balance_of(TOKEN_A, ALICE) == STARTING_BALANCE
        assert ledger.balance_of(TOKEN_A, pool.address) == 0
        assert pool.total_supply == 0

    def test_missing_allowance(self, ledger, clock):
        pool = ConstantProductPool(TOKEN_A, TOKEN_B, ledger, time_provider=clock)
        with pytest.raises(TransferFailedError):
            pool.add_liquidity(ALICE, 1000, 4000)
        assert pool.get_reserves() == (0, 0)

    def test_sync_and_skim(self, make_cp_pool, ledger):
        pool = make_cp_pool()
        seed(pool)
        ledger.transfer(TOKEN_A, BOB, pool.address, 500)

        assert pool.skim(FEE_SINK) == (500, 0)
        assert ledger.balance_of(TOKEN_A, FEE_SINK) == 500
        assert pool.get_reserves() == (1000, 4000)

        ledger.transfer(TOKEN_B, BOB, pool.address, 1000)
        assert pool.sync() == (1000, 5000)

    def test_state_snapshot(self, make_cp_pool):
        pool = make_cp_pool()
        seed(pool)
        state = pool.get_state()
        assert state["reserve0"] == 1000
        assert state["reserve1"] == 4000
        assert state["total_supply"] == 2000
        assert state["deposit_policy"] == "optimal"
        assert state["providers_count"] == 1


class TestInterruptedPayouts:
    """Outbound legs that fail after value has already left the pool."""

    E18 = 10**18

    def test_failed_second_leg_cannot_be_replayed(self, make_cp_pool, ledger):
        pool = make_cp_pool()
        alice_shares = pool.add_liquidity(ALICE, self.E18, self.E18)
        bob_shares = pool.add_liquidity(BOB, self.E18, self.E18)
        ledger.pause(TOKEN_B)

        with pytest.raises(TransferFailedError):
            pool.remove_liquidity(ALICE, alice_shares)
        with pytest.raises(InsufficientSharesError):
            pool.remove_liquidity(ALICE, alice_shares)

        assert ledger.balance_of(TOKEN_A, ALICE) == STARTING_BALANCE
        assert pool.share_balance_of(ALICE) == 0
        assert pool.owed_to(ALICE, TOKEN_B) == self.E18
        assert pool.get_reserves() == (self.E18, self.E18)
        assert pool.reserve0 == ledger.balance_of(TOKEN_A, pool.address)
        assert pool.reserve1 == ledger.balance_of(TOKEN_B, pool.address) - self.E18

        ledger.unpause(TOKEN_B)
        assert pool.claim_owed(ALICE, TOKEN_B) == self.E18
        assert ledger.balance_of(TOKEN_B, ALICE) == STARTING_BALANCE
        assert pool.owed_to(ALICE, TOKEN_B) == 0
        assert pool.remove_liquidity(BOB, bob_shares) == (self.E18, self.E18)

    def test_failed_first_leg_restores_shares(self, make_cp_pool, ledger):
        pool = make_cp_pool()
        shares = pool.add_liquidity(ALICE, self.E18, self.E18)
        events_before = len(pool.events)
        ledger.pause(TOKEN_A)

        with pytest.raises(TransferFailedError):
            pool.remove_liquidity(ALICE, shares)

        assert pool.share_balance_of(ALICE) == shares
        assert pool.total_supply == shares
        assert pool.get_reserves() == (self.E18, self.E18)
        assert pool.owed == {}
        assert len(pool.events) == events_before

    def test_failed_protocol_fee_leg_keeps_reserves_in_sync(self, make_cp_pool):
        blocking = make_ledger(ledger_cls=RecipientBlockingLedger)
        pool = make_cp_pool(fee_recipient=FEE_SINK, pool_ledger=blocking)
        pool.add_liquidity(ALICE, self.E18, self.E18)
        k_before = pool.reserve0 * pool.reserve1
        blocking.blocked.add(FEE_SINK)

        amount_in = 10**16
        with pytest.raises(TransferFailedError):
            pool.swap_exact_in(BOB, TOKEN_A, amount_in)

        protocol_fee = mul_div(amount_in, 30, 10_000)
        assert pool.owed_to(FEE_SINK, TOKEN_A) == protocol_fee
        assert pool.reserve0 == blocking.balance_of(TOKEN_A, pool.address) - protocol_fee
        assert pool.reserve1 == blocking.balance_of(TOKEN_B, pool.address)
        assert pool.reserve0 * pool.reserve1 >= k_before
        # owed balances are not excess
        assert pool.skim(BOB) == (0, 0)

        blocking.blocked.clear()
        assert pool.claim_owed(FEE_SINK, TOKEN_A) == protocol_fee
        assert blocking.balance_of(TOKEN_A, FEE_SINK) == protocol_fee

    def test_failed_output_leg_refunds_input(self, make_cp_pool):
        blocking = make_ledger(ledger_cls=RecipientBlockingLedger)
        pool = make_cp_pool(pool_ledger=blocking)
        pool.add_liquidity(ALICE, self.E18, self.E18)
        events_before = len(pool.events)
        blocking.blocked.add(FEE_SINK)

        with pytest.raises(TransferFailedError):
            pool.swap_exact_in(BOB, TOKEN_A, 10**16, recipient=FEE_SINK)

        assert blocking.balance_of(TOKEN_A, BOB) == STARTING_BALANCE
        assert pool.get_reserves() == (self.E18, self.E18)
        assert pool.owed == {}
        assert len(pool.events) == events_before

    def test_nothing_to_claim(self, make_cp_pool):
        pool = make_cp_pool()
        with pytest.raises(ZeroAmountError):
            pool.claim_owed(ALICE, TOKEN_A)


class TestReentrancy:
    def test_hook_reentry_is_rejected_and_rolled_back(self, make_cp_pool, ledger):
        pool = make_cp_pool()
        seed(pool)

        def hook(asset, sender, recipient, received):
            if recipient == pool.address:
                pool.swap_exact_in(ALICE, TOKEN_B, 10)

        ledger.set_transfer_hook(TOKEN_A, hook)
        with pytest.raises(ReentrancyError):
            pool.swap_exact_in(BOB, TOKEN_A, 100)

        assert pool.get_reserves() == (1000, 4000)
        assert ledger.balance_of(TOKEN_A, BOB) == STARTING_BALANCE
        assert ledger.balance_of(TOKEN_A, pool.address) == 1000

    def test_nested_call_fails_while_outer_completes(self, make_cp_pool, ledger):
        pool = make_cp_pool()
        seed(pool)
        nested_errors = []

        def hook(asset, sender, recipient, received):
            if recipient == pool.address:
                try:
                    pool.remove_liquidity(ALICE, 10)
                except ReentrancyError as exc:
                    nested_errors.append(exc)

        ledger.set_transfer_hook(TOKEN_A, hook)
        assert pool.swap_exact_in(BOB, TOKEN_A, 100) == 362
        assert len(nested_errors) == 1
        assert pool.share_balance_of(ALICE) == 2000

    def test_threads_are_serialised(self, make_cp_pool, ledger):
        pool = make_cp_pool()
        seed(pool, 10**12, 10**12)
        errors = []

        def trade(token):
            try:
                for _ in range(20):
                    pool.swap_exact_in(BOB, token, 10**6)
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=trade, args=(t,)) for t in (TOKEN_A, TOKEN_B, TOKEN_A, TOKEN_B)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert pool.reserve0 == ledger.balance_of(TOKEN_A, pool.address)
        assert pool.reserve1 == ledger.balance_of(TOKEN_B, pool.address)
        assert pool.reserve0 * pool.reserve1 >= 10**24
