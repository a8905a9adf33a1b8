import argparse
import logging
import random
import sys
from fractions import Fraction
from functools import partial
from typing import Dict, List, NamedTuple

import numpy as np
import pandas as pd
from web3 import Web3

from address_and_contracts import (
    W3, DATA_ROOT, DIVERSITY_MAX_MULTIPLIER, INCENTIVE_POOLS, LOYALTY_GROWTH_FACTOR, LOYALTY_GROWTH_POLICY,
    NORMALIZATION_TOLERANCE, NULL_ADDR, address_to_symbol, contracts
)
from allocation import accumulate_payouts, allocate, payout_series, subtract_cumulative, truncate_payouts
from chain_data import (
    get_balance_at_block, get_block_num_from_ts, get_lpt_value_at_block, get_pool_id, get_transfers,
    get_value_points, shorten_address
)
from errors import DataIntegrityError, IncentiveConfigError, IncentivesError
from lp_balances import BalanceLedger, spot_check_balances
from multipliers import GROWTH_POLICIES, advance_time_stacks, compute_diversity, growth_for_period
from reports import (
    load_cumulative_report, load_time_stacks, payout_report_path, save_cumulative_report, save_time_stacks,
    write_payout_report
)
from value_curve import build_value_curve, spot_check_value_curve

logger = logging.getLogger(__name__)

SECONDS_PER_WEEK = 7 * 24 * 60 * 60
LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'


class PeriodAllocation(NamedTuple):
    addresses: List[str]
    contribution_by_pool: Dict[str, np.ndarray]
    diversity_by_pool: Dict[str, np.ndarray]
    loyalty_by_pool: Dict[str, np.ndarray]
    payout: np.ndarray
    stacks_by_pool: Dict[str, dict]


def pool_label(pool):
    return address_to_symbol.get(Web3.to_checksum_address(pool), shorten_address(pool))


def collect_addresses(transfers_by_pool):
    # one global ordering so every pool's vectors line up
    addresses = set()
    for transfers in transfers_by_pool.values():
        for xfer in transfers:
            addresses.add(xfer.from_addr)
            addresses.add(xfer.to_addr)
    addresses.discard(NULL_ADDR)
    return sorted(addresses)


def bootstrap_time_stacks(transfers, addresses, start_blk):
    _, stacks = advance_time_stacks(transfers, addresses, {}, 0, start_blk, growth=1)
    return stacks


def _check_stacks_match_balances(ledger, stacks, end_blk):
    for addr in ledger.addresses:
        stacked = stacks[addr].total if addr in stacks else 0
        balance = ledger.balance_at(addr, end_blk - 1)
        if stacked != balance:
            raise DataIntegrityError(f'time stack of {addr} holds {stacked} but balance is {balance} at block {end_blk - 1}')


def compute_period_allocation(
        transfers_by_pool, value_curve_by_pool, prior_stacks_by_pool, start_blk, end_blk, budget,
        max_multiplier=DIVERSITY_MAX_MULTIPLIER, growth=LOYALTY_GROWTH_FACTOR, tolerance=NORMALIZATION_TOLERANCE
    ) -> PeriodAllocation:
    """
    Payout vector for [start_blk, end_blk) from already fetched data.

    Pools run one after another; the diversity multiplier waits until every
    pool's contribution vector exists. No I/O happens here.
    """
    pools = list(transfers_by_pool.keys())
    if len(pools) == 0:
        raise IncentiveConfigError('no pools supplied')
    if set(value_curve_by_pool.keys()) != set(pools):
        raise IncentiveConfigError('transfers and value curves cover different pools')
    if end_blk <= start_blk:
        raise IncentiveConfigError(f'empty period [{start_blk}, {end_blk})')

    addresses = collect_addresses(transfers_by_pool)
    contribution_by_pool = {}
    loyalty_by_pool = {}
    stacks_by_pool = {}
    for pool in pools:
        logger.info(f'checking pool {pool_label(pool)}')
        ledger = BalanceLedger(transfers_by_pool[pool])
        ledger.check_supply(end_blk - 1)
        contribution_by_pool[pool] = ledger.contribution_vector(addresses, value_curve_by_pool[pool], start_blk, end_blk)
        loyalty_by_pool[pool], stacks_by_pool[pool] = advance_time_stacks(
            ledger.transfers, addresses, prior_stacks_by_pool.get(pool) or {}, start_blk, end_blk, growth
        )
        _check_stacks_match_balances(ledger, stacks_by_pool[pool], end_blk)

    diversity_by_pool = compute_diversity(contribution_by_pool, max_multiplier)
    payout = allocate(contribution_by_pool, diversity_by_pool, loyalty_by_pool, budget, tolerance)
    return PeriodAllocation(addresses, contribution_by_pool, diversity_by_pool, loyalty_by_pool, payout, stacks_by_pool)


def load_prior_stacks(root_path, pool, transfers, addresses, start_blk):
    stacks = load_time_stacks(root_path, pool, start_blk)
    if stacks is None:
        if start_blk > 0:
            logger.warning(f'no time stacks for {pool_label(pool)} at block {start_blk}, rebuilding without growth')
        stacks = bootstrap_time_stacks(transfers, addresses, start_blk)
    return stacks


def distribute_sub_period(
        pools, super_start_ts, super_end_ts, sub_end_ts, super_budget, prev_sub_end_ts=None,
        root_path=DATA_ROOT, w3_chain=W3, growth_policy=LOYALTY_GROWTH_POLICY, verify=0
    ):
    """
    Cumulative allocation for [super_start_ts, sub_end_ts) and the increment
    over the previous sub-period's cumulative report.

    The budget is the super-period budget pro rata of elapsed time. Reports
    and time stacks are written only once everything has been computed.
    """
    if not (super_start_ts < sub_end_ts <= super_end_ts):
        raise IncentiveConfigError(f'sub-period end {sub_end_ts} outside ({super_start_ts}, {super_end_ts}]')
    start_blk = get_block_num_from_ts(super_start_ts, w3_chain)
    end_blk = get_block_num_from_ts(sub_end_ts, w3_chain)
    budget = Fraction(super_budget) * Fraction(sub_end_ts - super_start_ts, super_end_ts - super_start_ts)
    growth = growth_for_period(
        LOYALTY_GROWTH_FACTOR, growth_policy, sub_end_ts - super_start_ts, super_end_ts - super_start_ts
    )
    logger.info(f'period ts [{super_start_ts}, {sub_end_ts}), blocks [{start_blk}, {end_blk}), budget {float(budget)}')

    transfers_by_pool = {}
    value_curve_by_pool = {}
    for pool in pools:
        transfers_by_pool[pool] = get_transfers(pool, end_blk, w3_chain)
        pool_id = get_pool_id(pool, w3_chain)
        initial_value, value_points = get_value_points(pool_id, start_blk, end_blk)
        value_curve_by_pool[pool] = build_value_curve(value_points, initial_value, start_blk, end_blk)
        if verify > 0:
            rng = random.Random(end_blk)
            spot_check_value_curve(
                value_curve_by_pool[pool], start_blk, partial(get_lpt_value_at_block, pool_id), verify, rng
            )
            ledger = BalanceLedger(transfers_by_pool[pool])
            spot_check_balances(
                ledger, ledger.addresses, start_blk, end_blk,
                lambda addr, blk, pool=pool: get_balance_at_block(pool, addr, blk, w3_chain), verify, rng
            )

    addresses = collect_addresses(transfers_by_pool)
    prior_stacks_by_pool = {
        pool: load_prior_stacks(root_path, pool, transfers_by_pool[pool], addresses, start_blk) for pool in pools
    }
    result = compute_period_allocation(
        transfers_by_pool, value_curve_by_pool, prior_stacks_by_pool, start_blk, end_blk, budget, growth=growth
    )

    cumulative = truncate_payouts(payout_series(result.addresses, result.payout))
    previous = None
    if prev_sub_end_ts is not None:
        previous = load_cumulative_report(root_path, prev_sub_end_ts)
        if previous is None:
            raise IncentiveConfigError(f'no cumulative report for {prev_sub_end_ts} to subtract')
    incremental = truncate_payouts(subtract_cumulative(cumulative, previous))

    # stacks last: a period with persisted stacks always has its reports
    asset = contracts['tel'].address
    report_start_ts = super_start_ts if prev_sub_end_ts is None else prev_sub_end_ts
    write_payout_report(payout_report_path(root_path, report_start_ts, sub_end_ts), incremental, asset=asset)
    save_cumulative_report(root_path, sub_end_ts, cumulative, asset=asset)
    for pool, stacks in result.stacks_by_pool.items():
        save_time_stacks(root_path, pool, end_blk, stacks)
    logger.info(f'{len(incremental)} payouts totalling {sum(incremental.values, 0)} for [{report_start_ts}, {sub_end_ts})')
    return incremental, cumulative


def sub_period_ends(start_ts, end_ts, sub_period=SECONDS_PER_WEEK):
    ends = list(range(start_ts + sub_period, end_ts, sub_period))
    ends.append(end_ts)
    return ends


def week_by_week_summary(
        start_date, end_date, budget, pools=None, root_path=DATA_ROOT, w3_chain=W3,
        growth_policy=LOYALTY_GROWTH_POLICY, verify=0
    ):
    if pools is None:
        pools = list(INCENTIVE_POOLS.keys())
    start_ts = int(pd.Timestamp(start_date, tz='UTC').timestamp())
    end_ts = int(pd.Timestamp(end_date, tz='UTC').timestamp())
    if end_ts <= start_ts:
        raise IncentiveConfigError(f'end date {end_date} not after start date {start_date}')

    running = None
    cumulative = None
    prev_ts = None
    for sub_end_ts in sub_period_ends(start_ts, end_ts):
        logger.info(f'sub-period ending {pd.Timestamp(sub_end_ts, unit="s", tz="UTC").date()}')
        incremental, cumulative = distribute_sub_period(
            pools, start_ts, end_ts, sub_end_ts, budget, prev_sub_end_ts=prev_ts,
            root_path=root_path, w3_chain=w3_chain, growth_policy=growth_policy, verify=verify
        )
        running = accumulate_payouts(running, incremental)
        prev_ts = sub_end_ts

    # negative increments are not paid, so an address can end up ahead of its cumulative amount
    drift = subtract_cumulative(running, cumulative)
    drift = drift[drift != 0]
    if len(drift) > 0:
        logger.warning(f'{len(drift)} addresses paid {sum(drift.values, 0)} more than the final cumulative report')
    return running


def main(argv=None):
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    parser = argparse.ArgumentParser(description='Weekly LP incentive distribution over a super-period.')
    parser.add_argument('start_date', help='super-period start, YYYY-MM-DD (UTC)')
    parser.add_argument('end_date', help='super-period end, YYYY-MM-DD (UTC), exclusive')
    parser.add_argument('budget', type=Fraction, help='incentive budget for the whole super-period')
    parser.add_argument('--root', default=DATA_ROOT, help='directory for time stacks and reports')
    parser.add_argument('--verify', type=int, default=0, help='random spot checks per pool against the chain')
    parser.add_argument('--growth-policy', choices=GROWTH_POLICIES, default=LOYALTY_GROWTH_POLICY)
    parser.add_argument('--pool', action='append', dest='pools', help='pool-share token address (repeatable)')
    args = parser.parse_args(argv)

    try:
        running = week_by_week_summary(
            args.start_date, args.end_date, args.budget, pools=args.pools, root_path=args.root,
            growth_policy=args.growth_policy, verify=args.verify
        )
    except IncentivesError as e:
        logger.error(f'aborted: {e}')
        return 1
    logger.info(f'paid {sum(running.values, 0)} to {len(running)} addresses')
    return 0


if __name__ == '__main__':
    sys.exit(main())
