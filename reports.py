import json
import logging
import os
from decimal import Decimal
from fractions import Fraction

import pandas as pd

from multipliers import TimeStack

logger = logging.getLogger(__name__)


def _stack_path(root_path, pool, end_blk):
    return os.path.join(root_path, 'weekly_data', 'time_stacks', f'{pool.lower()}_{end_blk}.json')


def _cumulative_path(root_path, end_ts):
    return os.path.join(root_path, 'weekly_reports', f'cumulative_{end_ts}.csv')


def payout_report_path(root_path, start_ts, end_ts):
    return os.path.join(root_path, 'weekly_reports', f'payouts_{start_ts}_{end_ts}.csv')


def save_time_stacks(root_path, pool, end_blk, stacks):
    path = _stack_path(root_path, pool, end_blk)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    data = {
        addr: [[str(amt), f'{mult.numerator}/{mult.denominator}'] for amt, mult in stack.to_list()]
        for addr, stack in stacks.items()
    }
    with open(path, 'w') as f:
        json.dump({'pool': pool, 'end_block': end_blk, 'stacks': data}, f, indent=1, sort_keys=True)
    logger.info(f'saved {len(stacks)} time stacks for {pool} at block {end_blk}')
    return path


def load_time_stacks(root_path, pool, end_blk):
    path = _stack_path(root_path, pool, end_blk)
    if not os.path.exists(path):
        logger.info(f'{path} not found')
        return None
    with open(path) as f:
        data = json.load(f)
    return {
        addr: TimeStack.from_list([[int(amt), Fraction(mult)] for amt, mult in entries])
        for addr, entries in data['stacks'].items()
    }


def write_payout_report(path, series: pd.Series, asset=None):
    os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
    df = pd.DataFrame({'address': list(series.index), 'amount': [str(amt) for amt in series.values]})
    if asset is not None:
        df['asset'] = asset
    df.to_csv(path, index=False)
    return path


def read_payout_report(path) -> pd.Series:
    df = pd.read_csv(path, dtype=str)
    return pd.Series(
        [Decimal(amt) for amt in df['amount']], index=pd.Index(list(df['address']), name='address'),
        dtype=object, name='amount'
    )


def save_cumulative_report(root_path, end_ts, series: pd.Series, asset=None):
    return write_payout_report(_cumulative_path(root_path, end_ts), series, asset=asset)


def load_cumulative_report(root_path, end_ts):
    path = _cumulative_path(root_path, end_ts)
    if not os.path.exists(path):
        logger.info(f'{path} not found')
        return None
    return read_payout_report(path)
