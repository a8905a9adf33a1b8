"""
Tests for lp_balances.py

Balance reconstruction from pool-share transfers and value-weighted contributions.
"""

import random
from fractions import Fraction
from unittest.mock import Mock

import pytest

from address_and_contracts import NULL_ADDR
from errors import DataIntegrityError, IncentiveConfigError
from lp_balances import BalanceLedger, Transfer, sort_transfers, spot_check_balances
from value_curve import ValuePoint, build_value_curve


ALICE = '0x' + 'a' * 40
BOB = '0x' + 'b' * 40
CAROL = '0x' + 'c' * 40


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def ledger():
    """Alice is minted 100 at block 5 and sends 30 to Bob at block 12."""
    return BalanceLedger([
        Transfer(ALICE, BOB, 30, 12, 0),
        Transfer(NULL_ADDR, ALICE, 100, 5, 0),
    ])


@pytest.fixture
def flat_curve():
    return build_value_curve([], Fraction(2), 10, 20)


# ============================================================================
# TRANSFER ORDERING TESTS
# ============================================================================

class TestSortTransfers:

    def test_block_then_log_index(self):
        xfers = [
            Transfer(ALICE, BOB, 1, 7, 3),
            Transfer(ALICE, BOB, 2, 5, 9),
            Transfer(ALICE, BOB, 3, 7, 1),
        ]
        assert [x.amount for x in sort_transfers(xfers)] == [2, 3, 1]


# ============================================================================
# BALANCE TESTS
# ============================================================================

class TestBalances:

    def test_addresses_exclude_zero_address(self, ledger):
        assert ledger.addresses == [ALICE, BOB]
        assert not ledger.has_address(NULL_ADDR)

    def test_balance_at(self, ledger):
        assert ledger.balance_at(ALICE, 4) == 0
        assert ledger.balance_at(ALICE, 5) == 100
        assert ledger.balance_at(ALICE, 11) == 100
        assert ledger.balance_at(ALICE, 12) == 70
        assert ledger.balance_at(BOB, 12) == 30

    def test_balance_segments(self, ledger):
        assert ledger.balance_segments(ALICE, 10, 20) == [(10, 12, 100), (12, 20, 70)]
        assert ledger.balance_segments(BOB, 10, 20) == [(10, 12, 0), (12, 20, 30)]

    def test_balance_series(self, ledger):
        series = ledger.balance_series(ALICE, 10, 14)
        assert list(series) == [100, 100, 70, 70]

    def test_unknown_address_has_zero_balance(self, ledger):
        assert ledger.balance_segments(CAROL, 10, 20) == [(10, 20, 0)]

    def test_inverted_range_rejected(self, ledger):
        with pytest.raises(IncentiveConfigError):
            ledger.balance_segments(ALICE, 20, 10)

    def test_negative_balance_raises(self):
        ledger = BalanceLedger([Transfer(ALICE, BOB, 50, 3)])
        with pytest.raises(DataIntegrityError):
            ledger.balance_at(ALICE, 3)

    def test_negative_amount_rejected(self):
        with pytest.raises(DataIntegrityError):
            BalanceLedger([Transfer(NULL_ADDR, ALICE, -1, 3)])

    def test_self_transfer_is_noop(self):
        ledger = BalanceLedger([
            Transfer(NULL_ADDR, ALICE, 100, 1),
            Transfer(ALICE, ALICE, 40, 2),
        ])
        assert ledger.balance_at(ALICE, 2) == 100
        assert len(ledger.xfer_ix_by_address[ALICE]) == 2

    def test_same_block_uses_log_order(self):
        # receive then forward in the same block never dips below zero
        ledger = BalanceLedger([
            Transfer(ALICE, BOB, 10, 4, 2),
            Transfer(NULL_ADDR, ALICE, 10, 4, 1),
        ])
        assert ledger.balance_at(ALICE, 4) == 0
        assert ledger.balance_at(BOB, 4) == 10


# ============================================================================
# SUPPLY TESTS
# ============================================================================

class TestSupply:

    def test_mint_and_burn_move_supply(self):
        ledger = BalanceLedger([
            Transfer(NULL_ADDR, ALICE, 100, 5),
            Transfer(ALICE, NULL_ADDR, 20, 15),
        ])
        assert ledger.total_supply_at(4) == 0
        assert ledger.total_supply_at(5) == 100
        assert ledger.total_supply_at(15) == 80
        assert ledger.check_supply(15) == 80

    def test_negative_supply_raises(self):
        ledger = BalanceLedger([Transfer(ALICE, NULL_ADDR, 10, 5)])
        with pytest.raises(DataIntegrityError):
            ledger.total_supply_at(5)


# ============================================================================
# CONTRIBUTION TESTS
# ============================================================================

class TestContribution:

    def test_constant_holding(self, flat_curve):
        # 100 shares for 10 blocks at value 2
        ledger = BalanceLedger([Transfer(NULL_ADDR, ALICE, 100, 5)])
        assert ledger.compute_contribution(ALICE, flat_curve, 10, 20) == 2000

    def test_deposit_on_first_block_counts(self):
        # 100 shares from block 0 over [0, 10) at value 2
        ledger = BalanceLedger([Transfer(NULL_ADDR, ALICE, 100, 0)])
        curve = build_value_curve([], Fraction(2), 0, 10)
        assert ledger.compute_contribution(ALICE, curve, 0, 10) == 2000
        assert ledger.compute_contribution_dense(ALICE, curve, 0, 10) == 2000

    def test_transfer_mid_period(self, ledger, flat_curve):
        assert ledger.compute_contribution(ALICE, flat_curve, 10, 20) == 2 * (100 * 2 + 70 * 8)
        assert ledger.compute_contribution(BOB, flat_curve, 10, 20) == 2 * 30 * 8

    def test_unknown_address_contributes_zero(self, ledger, flat_curve):
        assert not ledger.has_address(CAROL)
        assert ledger.compute_contribution(CAROL, flat_curve, 10, 20) == 0
        assert ledger.compute_contribution_dense(CAROL, flat_curve, 10, 20) == 0

    def test_curve_length_checked(self, ledger, flat_curve):
        with pytest.raises(DataIntegrityError):
            ledger.compute_contribution(ALICE, flat_curve, 10, 25)
        with pytest.raises(DataIntegrityError):
            ledger.compute_contribution_dense(ALICE, flat_curve, 10, 25)

    def test_segment_sum_matches_dense(self):
        ledger = BalanceLedger([
            Transfer(NULL_ADDR, ALICE, 1000, 2),
            Transfer(ALICE, BOB, 333, 13, 0),
            Transfer(BOB, CAROL, 33, 13, 1),
            Transfer(ALICE, NULL_ADDR, 17, 21),
            Transfer(CAROL, ALICE, 11, 27),
        ])
        points = [ValuePoint(12, Fraction(7, 3)), ValuePoint(21, Fraction(5, 11)), ValuePoint(26, Fraction(9))]
        curve = build_value_curve(points, Fraction(3, 2), 10, 30)
        for addr in (ALICE, BOB, CAROL):
            assert ledger.compute_contribution(addr, curve, 10, 30) == ledger.compute_contribution_dense(addr, curve, 10, 30)

    def test_contribution_vector_aligned(self, ledger, flat_curve):
        yvec = ledger.contribution_vector([BOB, CAROL, ALICE], flat_curve, 10, 20)
        assert list(yvec) == [480, 0, 1520]


# ============================================================================
# SPOT CHECK TESTS
# ============================================================================

class TestSpotCheckBalances:

    def test_matching_source_passes(self, ledger):
        balance_of = Mock(side_effect=lambda addr, blk: ledger.balance_at(addr, blk))
        spot_check_balances(ledger, ledger.addresses, 10, 20, balance_of, n_tests=20, rng=random.Random(3))
        assert balance_of.call_count == 20

    def test_mismatch_raises(self, ledger):
        with pytest.raises(DataIntegrityError):
            spot_check_balances(ledger, [ALICE], 10, 20, Mock(return_value=1), n_tests=5)

    def test_nothing_to_check(self, ledger):
        balance_of = Mock()
        spot_check_balances(ledger, [], 10, 20, balance_of)
        balance_of.assert_not_called()
