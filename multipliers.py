import logging
from collections import defaultdict
from fractions import Fraction
from typing import Dict

import numpy as np

from address_and_contracts import DIVERSITY_MAX_MULTIPLIER, LOYALTY_GROWTH_FACTOR, NULL_ADDR
from errors import DataIntegrityError, IncentiveConfigError
from lp_balances import sort_transfers

logger = logging.getLogger(__name__)

GROWTH_POLICIES = ('per_period', 'proportional')


def compute_diversity(contribution_by_pool: Dict[str, np.ndarray], max_multiplier=DIVERSITY_MAX_MULTIPLIER) -> Dict[str, np.ndarray]:
    """
    Per-pool multiplier rewarding addresses whose contribution is spread
    across pools:

        M_p[i] = 1 + boost * sum_{q != p} min(1, Y_q[i] / Y_p[i])
        boost  = (max_multiplier - 1) / (n_pools - 1)

    A term with Y_p[i] == 0 adds nothing. With a single pool there is
    nothing to diversify into and every multiplier is 1.
    """
    pools = list(contribution_by_pool.keys())
    if len(pools) == 0:
        raise IncentiveConfigError('diversity multiplier needs at least one pool')
    max_multiplier = Fraction(max_multiplier)
    if max_multiplier < 1:
        raise IncentiveConfigError(f'max diversity multiplier {max_multiplier} < 1')
    n_addr = len(contribution_by_pool[pools[0]])
    for pool in pools:
        if len(contribution_by_pool[pool]) != n_addr:
            raise DataIntegrityError(f'contribution vector of {pool} not aligned with address list')

    if len(pools) == 1:
        return {pools[0]: np.array([Fraction(1)] * n_addr, dtype=object)}

    boost = (max_multiplier - 1) / (len(pools) - 1)
    mvec_by_pool = {}
    for pool in pools:
        y_p = contribution_by_pool[pool]
        spread = np.array([Fraction(0)] * n_addr, dtype=object)
        for other in pools:
            if other == pool:
                continue
            y_q = contribution_by_pool[other]
            spread += np.array(
                [min(Fraction(1), Fraction(y_q[i]) / y_p[i]) if y_p[i] != 0 else Fraction(0) for i in range(n_addr)],
                dtype=object
            )
        mvec_by_pool[pool] = 1 + boost * spread
    return mvec_by_pool


class TimeStack:
    # deposit tranches, oldest first: [[amount, multiplier], ...]

    def __init__(self, entries=None):
        self.entries = [[int(amt), Fraction(mult)] for amt, mult in entries] if entries else []

    def copy(self):
        return TimeStack(self.entries)

    @property
    def total(self):
        return sum(amt for amt, _ in self.entries)

    def is_empty(self):
        return len(self.entries) == 0

    def grow(self, factor):
        for entry in self.entries:
            entry[1] *= factor

    def deposit(self, amount):
        if amount > 0:
            self.entries.append([amount, Fraction(1)])

    def withdraw(self, amount):
        # most recent deposit leaves first
        stacked = self.total
        if amount > stacked:
            raise DataIntegrityError(f'withdrawal of {amount} exceeds stacked amount {stacked}')
        remaining = amount
        while remaining > 0:
            top = self.entries[-1]
            if top[0] > remaining:
                top[0] -= remaining
                remaining = 0
            else:
                remaining -= top[0]
                self.entries.pop()

    def multiplier(self) -> Fraction:
        total = self.total
        if total == 0:
            return Fraction(1)
        return sum(amt * mult for amt, mult in self.entries) / total

    def to_list(self):
        return [[amt, mult] for amt, mult in self.entries]

    @classmethod
    def from_list(cls, entries):
        return cls(entries)

    def __eq__(self, other):
        return isinstance(other, TimeStack) and self.entries == other.entries

    def __repr__(self):
        return f'TimeStack({self.entries})'


def growth_for_period(growth_factor=LOYALTY_GROWTH_FACTOR, policy='per_period', elapsed=None, period=None) -> Fraction:
    """
    Multiplier growth applied to tranches carried into a period.

    'per_period' grows once per period whatever its length; 'proportional'
    grows linearly with the share of the period that has elapsed.
    """
    growth_factor = Fraction(growth_factor)
    if growth_factor < 1:
        raise IncentiveConfigError(f'growth factor {growth_factor} < 1')
    if policy == 'per_period':
        return growth_factor
    if policy == 'proportional':
        if period is None or elapsed is None or period <= 0 or elapsed < 0:
            raise IncentiveConfigError('proportional growth needs elapsed and total period length')
        return 1 + (growth_factor - 1) * Fraction(elapsed, period)
    raise IncentiveConfigError(f'unknown growth policy {policy!r}, expected one of {GROWTH_POLICIES}')


def advance_time_stacks(transfers, addresses, prior_stacks: Dict[str, TimeStack], start_blk, end_blk, growth=LOYALTY_GROWTH_FACTOR, tolerance=1e-12):
    """
    Carry every address's stack into [start_blk, end_blk) and replay the
    period's transfers on it.

    Returns the loyalty multiplier vector aligned with `addresses` and the
    stacks to persist at end_blk. Prior stacks are not modified.
    """
    growth = Fraction(growth)
    xfers_by_address = defaultdict(list)
    for xfer in sort_transfers(transfers):
        if not (start_blk <= xfer.block < end_blk) or xfer.from_addr == xfer.to_addr:
            continue
        if xfer.from_addr != NULL_ADDR:
            xfers_by_address[xfer.from_addr].append(xfer)
        if xfer.to_addr != NULL_ADDR:
            xfers_by_address[xfer.to_addr].append(xfer)

    new_stacks = {}
    for addr in sorted(set(addresses) | set(prior_stacks.keys()) | set(xfers_by_address.keys())):
        stack = prior_stacks[addr].copy() if addr in prior_stacks else TimeStack()
        stack.grow(growth)
        for xfer in xfers_by_address.get(addr, []):
            if xfer.to_addr == addr:
                stack.deposit(xfer.amount)
            else:
                try:
                    stack.withdraw(xfer.amount)
                except DataIntegrityError as e:
                    raise DataIntegrityError(f'{addr} at block {xfer.block}: {e}') from e
        if not stack.is_empty():
            new_stacks[addr] = stack

    mvec = np.empty(len(addresses), dtype=object)
    for i, addr in enumerate(addresses):
        mvec[i] = new_stacks[addr].multiplier() if addr in new_stacks else Fraction(1)
        if mvec[i] < 1 - tolerance:
            raise DataIntegrityError(f'loyalty multiplier {float(mvec[i])} < 1 for {addr}')
    return mvec, new_stacks
