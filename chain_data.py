import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from fractions import Fraction
from functools import partial

import requests
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import Web3RPCError

from address_and_contracts import (
    W3, BALANCER_SUBGRAPH_URL, FETCH_BATCH_SIZE, FETCH_RETRIES, FETCH_RETRY_DELAY, MAX_EVENT_RECORDS,
    contracts, get_lpt_contract
)
from errors import FetchError, IncentiveConfigError
from lp_balances import Transfer, sort_transfers
from value_curve import ValuePoint

logger = logging.getLogger(__name__)

Block_Time_Cache = {}


def shorten_address(address):
    return address[:6] + '...' + address[-4:]


def decimal_to_percent(d):
    return int(d * 100)


def to_hex(value):
    return '0x' + bytes(HexBytes(value)).hex()


def with_retries(fn, *args, retries=FETCH_RETRIES, delay=FETCH_RETRY_DELAY, **kwargs):
    last_err = None
    for attempt in range(retries):
        try:
            return fn(*args, **kwargs)
        except FetchError:
            raise
        except Exception as e:
            last_err = e
            logger.warning(f'{getattr(fn, "__name__", fn)} failed ({attempt + 1}/{retries}): {e}')
            time.sleep(delay)
    raise FetchError(f'{getattr(fn, "__name__", fn)} failed after {retries} attempts: {last_err}') from last_err


def fetch_in_batches(fn, items, batch_size=FETCH_BATCH_SIZE, retries=FETCH_RETRIES, delay=FETCH_RETRY_DELAY, label='fetch'):
    """
    Call `fn(item)` for every item, at most `batch_size` in flight at once,
    each call retried on its own. Results come back in input order.
    """
    items = list(items)
    results = []
    if len(items) == 0:
        return results
    with ThreadPoolExecutor(max_workers=batch_size) as executor:
        for i in range(0, len(items), batch_size):
            futures = [
                executor.submit(with_retries, fn, item, retries=retries, delay=delay)
                for item in items[i:i + batch_size]
            ]
            results.extend(fut.result() for fut in futures)
            logger.info(f'{label}: {decimal_to_percent(len(results) / len(items))}%')
    return results


def get_block_time(block_num, w3_chain=W3):
    if block_num not in Block_Time_Cache:
        Block_Time_Cache[block_num] = with_retries(lambda: w3_chain.eth.get_block(block_num)['timestamp'])
    return Block_Time_Cache[block_num]


def get_block_num_from_ts(target_ts, w3_chain=W3, from_blk=1, to_blk='latest'):
    """First block whose timestamp is >= target_ts."""
    if to_blk == 'latest':
        to_blk = with_retries(lambda: w3_chain.eth.block_number)
    if get_block_time(from_blk, w3_chain) >= target_ts:
        return from_blk
    if get_block_time(to_blk, w3_chain) < target_ts:
        raise IncentiveConfigError(f'timestamp {target_ts} is later than block {to_blk}')
    # time(from_blk) < target_ts <= time(to_blk)
    while from_blk + 1 < to_blk:
        mid_blk = (from_blk + to_blk) >> 1
        if get_block_time(mid_blk, w3_chain) < target_ts:
            from_blk = mid_blk
        else:
            to_blk = mid_blk
    return to_blk


def get_events(contract_event, from_blk, to_blk, arg_filter=None, max_records=MAX_EVENT_RECORDS, retries=FETCH_RETRIES):
    """
    All logs of `contract_event` in [from_blk, to_blk] (inclusive, like eth_getLogs).

    A provider refusing the range either suggests a smaller one, which is
    used, or the range is halved. Going past `max_records` is an error
    rather than a silent truncation.
    """
    if arg_filter is None:
        arg_filter = {}
    res = []
    while from_blk <= to_blk:
        to_blk_limit = to_blk
        failures = 0
        while True:
            try:
                events = contract_event.get_logs(
                    from_block=from_blk,
                    to_block=to_blk_limit,
                    argument_filters=arg_filter
                )
                break
            except (ValueError, Web3RPCError) as e:
                m = re.search(r'range should work: \[(0x[0-9a-f]*), (0x[0-9a-f]*)\]', str(e))
                new_limit = int(m.group(2), 0) if m is not None else (to_blk_limit - from_blk) // 2 + from_blk
                if new_limit >= to_blk_limit or new_limit < from_blk:
                    raise FetchError(f'cannot narrow log range [{from_blk}, {to_blk_limit}]: {e}') from e
                to_blk_limit = new_limit
            except Exception as e:
                failures += 1
                if failures >= retries:
                    raise FetchError(f'get_logs failed for [{from_blk}, {to_blk_limit}]: {e}') from e
                logger.warning(f'get_logs failed for [{from_blk}, {to_blk_limit}], retrying: {e}')
                time.sleep(FETCH_RETRY_DELAY)
        res.extend(events)
        if len(res) > max_records:
            raise FetchError(f'more than {max_records} events up to block {to_blk_limit}, refusing to truncate')
        from_blk = to_blk_limit + 1
    return res


def dedup_events(events):
    seen = set()
    res = []
    for event in events:
        key = (to_hex(event['transactionHash']), int(event['logIndex']))
        if key in seen:
            continue
        seen.add(key)
        res.append(event)
    return res


def get_transfers(lpt_address, to_blk, w3_chain=W3, from_blk=0, max_records=MAX_EVENT_RECORDS):
    """Pool-share transfers in [from_blk, to_blk), addresses lowercased, sorted."""
    lpt_contract = get_lpt_contract(lpt_address, w3_chain)
    events = dedup_events(get_events(lpt_contract.events.Transfer, from_blk, to_blk - 1, max_records=max_records))
    transfers = [
        Transfer(
            event['args']['from'].lower(), event['args']['to'].lower(), int(event['args']['value']),
            int(event['blockNumber']), int(event['logIndex']), to_hex(event['transactionHash'])
        )
        for event in events
    ]
    logger.info(f'found {len(transfers)} transfers of {shorten_address(lpt_address)} before block {to_blk}')
    return sort_transfers(transfers)


def get_pool_id(lpt_address, w3_chain=W3):
    lpt_contract = get_lpt_contract(lpt_address, w3_chain)
    return to_hex(with_retries(lpt_contract.functions.getPoolId().call))


def get_value_change_blocks(pool_id, from_blk, to_blk, vault_contract=None):
    """Blocks in [from_blk, to_blk) with a swap, join or exit on the pool."""
    if vault_contract is None:
        vault_contract = contracts['balancer_vault']
    blocks = set()
    for contract_event in (vault_contract.events.Swap, vault_contract.events.PoolBalanceChanged):
        events = dedup_events(get_events(contract_event, from_blk, to_blk - 1, arg_filter={'poolId': pool_id}))
        blocks.update(int(event['blockNumber']) for event in events)
    return sorted(blocks)


def get_lpt_value_at_block(pool_id, block, url=BALANCER_SUBGRAPH_URL, timeout=30):
    q = f'''{{
        pools(where: {{id: "{pool_id.lower()}"}}, block: {{number: {block}}}) {{
            totalLiquidity,
            totalShares
        }}
    }}'''
    resp = requests.post(url, json={'query': q}, timeout=timeout)
    resp.raise_for_status()
    res = resp.json()
    if 'errors' in res:
        raise FetchError(f'subgraph error for pool {pool_id} at block {block}: {res["errors"]}')
    pools = res['data']['pools']
    if len(pools) == 0:
        raise FetchError(f'pool {pool_id} not found in subgraph at block {block}')
    total_shares = Fraction(Decimal(pools[0]['totalShares']))
    if total_shares == 0:
        return Fraction(0)
    return Fraction(Decimal(pools[0]['totalLiquidity'])) / total_shares


def get_value_points(pool_id, from_blk, to_blk, vault_contract=None, value_at_block=None):
    """Opening value at from_blk plus one ValuePoint per value-changing block in [from_blk, to_blk)."""
    if value_at_block is None:
        value_at_block = partial(get_lpt_value_at_block, pool_id)
    blocks = get_value_change_blocks(pool_id, from_blk, to_blk, vault_contract)
    initial_value = with_retries(value_at_block, from_blk)
    values = fetch_in_batches(value_at_block, blocks, label=f'fetch liquidity data for {shorten_address(pool_id)}')
    return initial_value, [ValuePoint(blk, val) for blk, val in zip(blocks, values)]


def get_balance_at_block(lpt_address, owner, block, w3_chain=W3):
    lpt_contract = get_lpt_contract(lpt_address, w3_chain)
    return with_retries(
        lpt_contract.functions.balanceOf(Web3.to_checksum_address(owner)).call, block_identifier=block
    )
