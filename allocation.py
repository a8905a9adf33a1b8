import logging
import math
from decimal import Decimal
from fractions import Fraction
from typing import Dict

import numpy as np
import pandas as pd

from address_and_contracts import NORMALIZATION_TOLERANCE, REPORT_PRECISION
from errors import DataIntegrityError, IncentiveConfigError

logger = logging.getLogger(__name__)


def allocate(
        contribution_by_pool: Dict[str, np.ndarray], diversity_by_pool: Dict[str, np.ndarray],
        loyalty_by_pool: Dict[str, np.ndarray], budget, tolerance=NORMALIZATION_TOLERANCE
    ) -> np.ndarray:
    """
    F = sum_p Y_p * D_p * L_p (element-wise), payout = budget * F / sum(F).

    Every vector is aligned with the same global address list.
    """
    pools = list(contribution_by_pool.keys())
    if len(pools) == 0:
        raise IncentiveConfigError('nothing to allocate: no pools')
    if set(diversity_by_pool.keys()) != set(pools) or set(loyalty_by_pool.keys()) != set(pools):
        raise IncentiveConfigError('contribution, diversity and loyalty vectors cover different pools')
    budget = Fraction(budget)
    if budget < 0:
        raise IncentiveConfigError(f'negative budget {budget}')

    n_addr = len(contribution_by_pool[pools[0]])
    fvec = np.array([Fraction(0)] * n_addr, dtype=object)
    for pool in pools:
        yvec, dvec, lvec = contribution_by_pool[pool], diversity_by_pool[pool], loyalty_by_pool[pool]
        if not (len(yvec) == len(dvec) == len(lvec) == n_addr):
            raise DataIntegrityError(f'vectors of pool {pool} not aligned with address list')
        fvec = fvec + yvec * dvec * lvec

    total = sum(fvec, Fraction(0))
    if total <= 0:
        raise DataIntegrityError('no positive contribution in any pool, cannot normalize')
    normalized = fvec / total
    norm_sum = sum(normalized, Fraction(0))
    if abs(float(norm_sum) - 1) > tolerance:
        raise DataIntegrityError(f'normalized scores sum to {float(norm_sum)}, not 1')
    return budget * normalized


def payout_series(addresses, payout) -> pd.Series:
    return pd.Series(list(payout), index=pd.Index(addresses, name='address'), dtype=object, name='amount')


def _align(new: pd.Series, old: pd.Series):
    index = new.index.union(old.index)
    return new.reindex(index, fill_value=0), old.reindex(index, fill_value=0)


def accumulate_payouts(running: pd.Series, payout: pd.Series) -> pd.Series:
    if running is None:
        return payout.copy()
    running, payout = _align(running, payout)
    return (running + payout).rename('amount')


def subtract_cumulative(new_cumulative: pd.Series, old_cumulative: pd.Series) -> pd.Series:
    """Incremental payout since the previous cumulative report; addresses it lacks had 0."""
    if old_cumulative is None or len(old_cumulative) == 0:
        return new_cumulative.copy()
    new_cumulative, old_cumulative = _align(new_cumulative, old_cumulative)
    return (new_cumulative - old_cumulative).rename('amount')


def truncate_amount(amount, precision=REPORT_PRECISION) -> Decimal:
    # toward zero, never rounds a payout up
    scaled = math.trunc(Fraction(amount) * 10 ** precision)
    return Decimal(scaled).scaleb(-precision)


def truncate_payouts(series: pd.Series, precision=REPORT_PRECISION) -> pd.Series:
    res = {}
    for addr, amount in series.items():
        amt = truncate_amount(amount, precision)
        if amt > 0:
            res[addr] = amt
    return pd.Series(res, index=pd.Index(list(res.keys()), name='address'), dtype=object, name='amount')
