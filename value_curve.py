import logging
import random
from fractions import Fraction
from typing import Callable, List, NamedTuple

import numpy as np

from errors import DataIntegrityError, IncentiveConfigError

logger = logging.getLogger(__name__)


class ValuePoint(NamedTuple):
    # price of one pool-share unit from `block` onwards
    block: int
    value: Fraction


def build_value_curve(value_points: List[ValuePoint], initial_value, start_blk: int, end_blk: int) -> np.ndarray:
    """
    Dense per-block value series over [start_blk, end_blk).

    The value is a step function: `initial_value` until the first point, then
    each point's value until the next point's block. Points outside the range
    are ignored; two points on the same block are rejected.
    """
    if end_blk < start_blk:
        raise IncentiveConfigError(f'inverted block range [{start_blk}, {end_blk})')
    points = sorted(value_points, key=lambda pt: pt.block)
    for prev, nxt in zip(points, points[1:]):
        if nxt.block <= prev.block:
            raise DataIntegrityError(f'value points not strictly increasing at block {nxt.block}')
    points = [pt for pt in points if start_blk <= pt.block < end_blk]

    curve = np.empty(end_blk - start_blk, dtype=object)
    if len(points) == 0:
        curve[:] = Fraction(initial_value)
        return curve
    curve[:points[0].block - start_blk] = Fraction(initial_value)
    for pt, nxt_pt in zip(points, points[1:]):
        curve[pt.block - start_blk:nxt_pt.block - start_blk] = Fraction(pt.value)
    curve[points[-1].block - start_blk:] = Fraction(points[-1].value)

    if len(curve) != end_blk - start_blk:
        raise DataIntegrityError(f'value curve length {len(curve)} != {end_blk - start_blk}')
    return curve


def value_prefix_sums(curve: np.ndarray) -> np.ndarray:
    # prefix[i] == sum(curve[:i]), so any block segment sums in O(1)
    prefix = np.empty(len(curve) + 1, dtype=object)
    prefix[0] = Fraction(0)
    if len(curve) > 0:
        prefix[1:] = np.cumsum(curve)
    return prefix


def spot_check_value_curve(
        curve: np.ndarray, start_blk: int, value_at_block: Callable[[int], Fraction],
        n_tests: int = 100, rng=None
    ):
    """Compare randomly sampled blocks of `curve` against an external point query."""
    if any(v < 0 for v in curve):
        raise DataIntegrityError('negative pool-share value in curve')
    if len(curve) == 0:
        return
    rng = random.Random() if rng is None else rng
    for _ in range(n_tests):
        ix = rng.randrange(len(curve))
        expected = Fraction(value_at_block(start_blk + ix))
        if expected != curve[ix]:
            raise DataIntegrityError(
                f'value curve mismatch at block {start_blk + ix}: curve {curve[ix]}, source {expected}'
            )
    logger.info(f'value curve spot check passed ({n_tests} samples)')
