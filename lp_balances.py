import logging
import random
from collections import defaultdict
from fractions import Fraction
from typing import Callable, List, NamedTuple, Tuple

import numpy as np

from address_and_contracts import NULL_ADDR
from errors import DataIntegrityError, IncentiveConfigError
from value_curve import value_prefix_sums

logger = logging.getLogger(__name__)


class Transfer(NamedTuple):
    from_addr: str
    to_addr: str
    amount: int
    block: int
    log_index: int = 0
    tx_hash: str = ''


def sort_transfers(transfers):
    # block order, ties broken by log emission order
    return sorted(transfers, key=lambda xfer: (xfer.block, xfer.log_index))


class BalanceLedger:
    """
    Pool-share balances rebuilt from a transfer log.

    Every address keeps the positions of the transfers touching it, so one
    address can be replayed without walking the whole log. The zero address
    never holds a balance: transfers from it are mints and transfers to it
    are burns, both only move the total supply.
    """

    def __init__(self, transfers):
        self.transfers = sort_transfers(transfers)
        self.xfer_ix_by_address = defaultdict(list) # Dict[address, List[ix into self.transfers]]
        self.supply_changes = [] # List[Tuple[blk_num, delta]]
        for ix, xfer in enumerate(self.transfers):
            if xfer.amount < 0:
                raise DataIntegrityError(f'negative transfer amount {xfer.amount} at block {xfer.block}')
            if xfer.from_addr == NULL_ADDR:
                self.supply_changes.append((xfer.block, xfer.amount))
            else:
                self.xfer_ix_by_address[xfer.from_addr].append(ix)
            if xfer.to_addr == NULL_ADDR:
                self.supply_changes.append((xfer.block, -xfer.amount))
            elif xfer.to_addr != xfer.from_addr:
                self.xfer_ix_by_address[xfer.to_addr].append(ix)

    @property
    def addresses(self):
        return sorted(self.xfer_ix_by_address.keys())

    def has_address(self, address):
        return address in self.xfer_ix_by_address

    def balance_segments(self, address, start_blk, end_blk) -> List[Tuple[int, int, int]]:
        """
        Run-length balance series over [start_blk, end_blk) as
        (segment_start, segment_end, balance) tuples.

        Transfers at or before start_blk only set the opening balance; a
        transfer at block b takes effect from b itself.
        """
        if end_blk < start_blk:
            raise IncentiveConfigError(f'inverted block range [{start_blk}, {end_blk})')
        segments = []
        balance = 0
        last_blk = start_blk
        for ix in self.xfer_ix_by_address.get(address, []):
            xfer = self.transfers[ix]
            if xfer.block >= end_blk:
                break
            if xfer.block > last_blk:
                segments.append((last_blk, xfer.block, balance))
                last_blk = xfer.block
            if xfer.to_addr == address:
                balance += xfer.amount
            if xfer.from_addr == address:
                balance -= xfer.amount
            if balance < 0:
                raise DataIntegrityError(
                    f'negative balance {balance} for {address} at block {xfer.block} (tx {xfer.tx_hash})'
                )
        if end_blk > last_blk:
            segments.append((last_blk, end_blk, balance))
        return segments

    def balance_series(self, address, start_blk, end_blk) -> np.ndarray:
        series = np.zeros(end_blk - start_blk, dtype=object)
        for seg_start, seg_end, balance in self.balance_segments(address, start_blk, end_blk):
            series[seg_start - start_blk:seg_end - start_blk] = balance
        return series

    def balance_at(self, address, blk_num):
        # balance once every transfer up to and including blk_num is applied
        return self.balance_segments(address, blk_num, blk_num + 1)[-1][2]

    def total_supply_at(self, blk_num):
        supply = sum(delta for blk, delta in self.supply_changes if blk <= blk_num)
        if supply < 0:
            raise DataIntegrityError(f'negative total supply {supply} at block {blk_num}')
        return supply

    def check_supply(self, blk_num):
        held = sum(self.balance_at(addr, blk_num) for addr in self.xfer_ix_by_address)
        supply = self.total_supply_at(blk_num)
        if held != supply:
            raise DataIntegrityError(f'balances sum to {held} but minted supply is {supply} at block {blk_num}')
        return supply

    def compute_contribution(self, address, value_curve, start_blk, end_blk, prefix=None) -> Fraction:
        """Sum over blocks of balance * value, one prefix-sum lookup per constant-balance segment."""
        if len(value_curve) != end_blk - start_blk:
            raise DataIntegrityError(f'value curve length {len(value_curve)} != {end_blk - start_blk}')
        if not self.has_address(address):
            return Fraction(0)
        if prefix is None:
            prefix = value_prefix_sums(value_curve)
        contribution = Fraction(0)
        for seg_start, seg_end, balance in self.balance_segments(address, start_blk, end_blk):
            if balance != 0:
                contribution += balance * (prefix[seg_end - start_blk] - prefix[seg_start - start_blk])
        return contribution

    def compute_contribution_dense(self, address, value_curve, start_blk, end_blk) -> Fraction:
        if len(value_curve) != end_blk - start_blk:
            raise DataIntegrityError(f'value curve length {len(value_curve)} != {end_blk - start_blk}')
        if not self.has_address(address):
            return Fraction(0)
        return Fraction(np.dot(self.balance_series(address, start_blk, end_blk), value_curve))

    def contribution_vector(self, addresses, value_curve, start_blk, end_blk) -> np.ndarray:
        prefix = value_prefix_sums(value_curve)
        res = np.empty(len(addresses), dtype=object)
        for i, addr in enumerate(addresses):
            res[i] = self.compute_contribution(addr, value_curve, start_blk, end_blk, prefix=prefix)
        return res


def spot_check_balances(
        ledger: BalanceLedger, addresses, start_blk, end_blk,
        balance_of: Callable[[str, int], int], n_tests=100, rng=None
    ):
    """Compare random (address, block) balances against an external balanceOf query."""
    if len(addresses) == 0 or end_blk <= start_blk:
        return
    rng = random.Random() if rng is None else rng
    for _ in range(n_tests):
        addr = addresses[rng.randrange(len(addresses))]
        blk = rng.randrange(start_blk, end_blk)
        expected = int(balance_of(addr, blk))
        actual = ledger.balance_at(addr, blk)
        if expected != actual:
            raise DataIntegrityError(f'balance mismatch for {addr} at block {blk}: ledger {actual}, source {expected}')
    logger.info(f'balance spot check passed ({n_tests} samples)')
