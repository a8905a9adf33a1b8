import json
import os
from fractions import Fraction
from pathlib import Path
from dotenv import load_dotenv
from web3 import Web3

load_dotenv()

ABI_PATH = Path(__file__).resolve().parent / 'abi'
DATA_ROOT = os.getenv('INCENTIVES_DATA_ROOT', './')
POLYGON_RPC_ENDPOINT = os.getenv('POLYGON_RPC_ENDPOINT', 'https://polygon-rpc.com')
BALANCER_SUBGRAPH_URL = os.getenv(
    'BALANCER_SUBGRAPH_URL',
    'https://api.thegraph.com/subgraphs/name/balancer-labs/balancer-polygon-v2'
)
W3 = Web3(Web3.HTTPProvider(POLYGON_RPC_ENDPOINT, request_kwargs={'timeout': 10}))

NULL_ADDR = '0x0000000000000000000000000000000000000000'
BALANCER_VAULT_ADDRESS = '0xBA12222222228d8Ba445958a75a0704d566BF2C8'
TEL_ADDRESS = '0xdF7837DE1F2Fa4631D716CF2502f8b230F1dcc32'

# pool-share token (balancer LPT) -> label
INCENTIVE_POOLS = {
    Web3.to_checksum_address('0x03cd191f589d12b0582a99808cf19851e468e6b5'): 'tel-weighted',
}

DIVERSITY_MAX_MULTIPLIER = Fraction(2)
LOYALTY_GROWTH_FACTOR = Fraction('1.05')
LOYALTY_GROWTH_POLICY = 'per_period'
NORMALIZATION_TOLERANCE = 1e-8
REPORT_PRECISION = 2 # TEL has 2 decimals

FETCH_BATCH_SIZE = 5
FETCH_RETRIES = 5
FETCH_RETRY_DELAY = 1
MAX_EVENT_RECORDS = 1_000_000

abis = {}
abis['erc20'] = json.load(open(ABI_PATH / 'erc20.json', 'rb'))
abis['balancer_lpt'] = json.load(open(ABI_PATH / 'balancer_lpt.json', 'rb'))
abis['balancer_vault'] = json.load(open(ABI_PATH / 'balancer_vault.json', 'rb'))

address_to_symbol = {}
contracts = {}
contracts['balancer_vault'] = W3.eth.contract(address=BALANCER_VAULT_ADDRESS, abi=abis['balancer_vault'])
contracts['tel'] = W3.eth.contract(address=TEL_ADDRESS, abi=abis['erc20'])
address_to_symbol[TEL_ADDRESS] = 'tel'
for _lpt_address, _label in INCENTIVE_POOLS.items():
    address_to_symbol[_lpt_address] = _label

_lpt_contracts = {}
def get_lpt_contract(address, w3_chain=W3):
    address = Web3.to_checksum_address(address)
    if address not in _lpt_contracts:
        _lpt_contracts[address] = w3_chain.eth.contract(address=address, abi=abis['balancer_lpt'])
    return _lpt_contracts[address]
