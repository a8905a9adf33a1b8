"""
Tests for allocation.py

Budget normalization, cumulative-report subtraction and payout truncation.
"""

from decimal import Decimal
from fractions import Fraction

import numpy as np
import pandas as pd
import pytest

from allocation import (
    accumulate_payouts, allocate, payout_series, subtract_cumulative, truncate_amount, truncate_payouts
)
from errors import DataIntegrityError, IncentiveConfigError


ALICE = '0x' + 'a' * 40
BOB = '0x' + 'b' * 40
CAROL = '0x' + 'c' * 40

POOL_1 = '0x' + '1' * 40
POOL_2 = '0x' + '2' * 40


def vec(*values):
    return np.array([Fraction(v) for v in values], dtype=object)


def ones(n):
    return vec(*([1] * n))


def decimal_series(amounts):
    return pd.Series(
        [Decimal(v) for v in amounts.values()], index=pd.Index(list(amounts.keys()), name='address'),
        dtype=object, name='amount'
    )


# ============================================================================
# ALLOCATE TESTS
# ============================================================================

class TestAllocate:

    def test_payout_sums_to_budget(self):
        payout = allocate(
            {POOL_1: vec(3, 1, 0), POOL_2: vec(0, 5, 7)},
            {POOL_1: vec(1, 2, 1), POOL_2: vec(1, Fraction(3, 2), 1)},
            {POOL_1: vec(Fraction('1.05'), 1, 1), POOL_2: ones(3)},
            Fraction(1000),
        )
        assert sum(payout, Fraction(0)) == 1000

    def test_weights_multiply(self):
        payout = allocate({POOL_1: vec(1, 1)}, {POOL_1: vec(2, 1)}, {POOL_1: vec(1, 3)}, 50)
        assert list(payout) == [20, 30]

    def test_zero_contribution_gets_nothing(self):
        payout = allocate({POOL_1: vec(0, 4)}, {POOL_1: ones(2)}, {POOL_1: ones(2)}, 10)
        assert list(payout) == [0, 10]

    def test_all_zero_contribution_raises(self):
        with pytest.raises(DataIntegrityError):
            allocate({POOL_1: vec(0, 0)}, {POOL_1: ones(2)}, {POOL_1: ones(2)}, 10)

    def test_no_pools_raises(self):
        with pytest.raises(IncentiveConfigError):
            allocate({}, {}, {}, 10)

    def test_mismatched_pools_raise(self):
        with pytest.raises(IncentiveConfigError):
            allocate({POOL_1: vec(1)}, {POOL_2: vec(1)}, {POOL_1: vec(1)}, 10)

    def test_misaligned_vectors_raise(self):
        with pytest.raises(DataIntegrityError):
            allocate({POOL_1: vec(1, 2)}, {POOL_1: ones(1)}, {POOL_1: ones(2)}, 10)

    def test_negative_budget_raises(self):
        with pytest.raises(IncentiveConfigError):
            allocate({POOL_1: vec(1)}, {POOL_1: ones(1)}, {POOL_1: ones(1)}, -1)


# ============================================================================
# TRUNCATION TESTS
# ============================================================================

class TestTruncation:

    def test_truncates_toward_zero(self):
        assert truncate_amount(Fraction(2, 3)) == Decimal('0.66')
        assert truncate_amount(Fraction(1999, 1000), precision=2) == Decimal('1.99')
        assert truncate_amount(Fraction(5), precision=0) == Decimal(5)

    def test_never_exceeds_budget(self):
        payout = allocate({POOL_1: vec(1, 1, 1)}, {POOL_1: ones(3)}, {POOL_1: ones(3)}, 100)
        truncated = truncate_payouts(payout_series([ALICE, BOB, CAROL], payout))
        assert list(truncated.values) == [Decimal('33.33')] * 3
        assert sum(truncated.values, Decimal(0)) <= 100

    def test_non_positive_entries_omitted(self):
        series = payout_series([ALICE, BOB, CAROL], [Fraction(1, 1000), Fraction(5), Fraction(-2)])
        truncated = truncate_payouts(series)
        assert list(truncated.index) == [BOB]
        assert truncated.name == 'amount'


# ============================================================================
# CUMULATIVE REPORT TESTS
# ============================================================================

class TestCumulative:

    def test_subtract_previous_cumulative(self):
        new = decimal_series({ALICE: '10.50', BOB: '4.00', CAROL: '1.25'})
        old = decimal_series({ALICE: '7.00', BOB: '4.00'})
        incremental = subtract_cumulative(new, old)
        assert incremental[ALICE] == Decimal('3.50')
        assert incremental[BOB] == 0
        assert incremental[CAROL] == Decimal('1.25')

    def test_address_missing_from_new_report(self):
        new = decimal_series({ALICE: '10'})
        old = decimal_series({ALICE: '8', BOB: '2'})
        incremental = truncate_payouts(subtract_cumulative(new, old))
        assert list(incremental.index) == [ALICE]
        assert incremental[ALICE] == Decimal('2.00')

    def test_no_previous_report(self):
        new = decimal_series({ALICE: '10'})
        assert subtract_cumulative(new, None).equals(new)
        assert subtract_cumulative(new, decimal_series({})).equals(new)

    def test_accumulate(self):
        running = accumulate_payouts(None, decimal_series({ALICE: '1.10'}))
        running = accumulate_payouts(running, decimal_series({ALICE: '2.00', BOB: '0.50'}))
        assert running[ALICE] == Decimal('3.10')
        assert running[BOB] == Decimal('0.50')
