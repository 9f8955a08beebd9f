import os
import json
from decimal import Decimal
from dotenv import load_dotenv

load_dotenv()

# Discord Configuration
TOKEN = os.getenv("DISCORD_TOKEN")
GUILD_ID = int(os.getenv("GUILD_ID", "0"))

# Channels and Categories
# Venue channels live under this category; they are provisioned out of band
VENUE_CATEGORY_ID = int(os.getenv("VENUE_CATEGORY_ID", "0"))
LOG_CHANNEL = int(os.getenv("LOG_CHANNEL_ID", "0"))
DISPUTE_CHANNEL_ID = int(os.getenv("DISPUTE_CHANNEL_ID", "0"))

# Admins
ADMIN_IDS = [int(x) for x in os.getenv("ADMIN_IDS", "").split(",") if x.strip().isdigit()]
ADMIN_USERNAMES = [
    u.strip().lstrip("@").lower() for u in os.getenv("ADMIN_USERNAMES", "").split(",") if u.strip()
]

# Database
DATABASE_URL = os.getenv("DATABASE_URL")
SQLITE_PATH = os.getenv("SQLITE_PATH", "escrow.db")

# =====================================================
# CHAIN CONFIGURATION
# =====================================================

HOT_WALLET_PRIVATE_KEY = os.getenv("HOT_WALLET_PRIVATE_KEY", "")

def _urls(env_key, default):
    return [url.strip() for url in os.getenv(env_key, default).split(",") if url.strip()]

CHAINS = {
    "BSC": {
        "rpc_urls": _urls("BSC_RPC_URLS", "https://bsc-dataseed.binance.org,https://bsc-dataseed1.ninicoin.io,https://bsc-dataseed1.defibit.io"),
        "chain_id": 56,
        "explorer_api": os.getenv("BSC_EXPLORER_API", "https://api.bscscan.com/api"),
        "explorer_key": os.getenv("BSCSCAN_API_KEY", ""),
        "tx_url": "https://bscscan.com/tx/{}",
    },
    "ETH": {
        "rpc_urls": _urls("ETH_RPC_URLS", "https://ethereum-rpc.publicnode.com,https://eth.llamarpc.com,https://1rpc.io/eth"),
        "chain_id": 1,
        "explorer_api": os.getenv("ETH_EXPLORER_API", "https://api.etherscan.io/api"),
        "explorer_key": os.getenv("ETHERSCAN_API_KEY", ""),
        "tx_url": "https://etherscan.io/tx/{}",
    },
    "SEPOLIA": {
        "rpc_urls": _urls("SEPOLIA_RPC_URLS", "https://ethereum-sepolia-rpc.publicnode.com"),
        "chain_id": 11155111,
        "explorer_api": os.getenv("SEPOLIA_EXPLORER_API", "https://api-sepolia.etherscan.io/api"),
        "explorer_key": os.getenv("ETHERSCAN_API_KEY", ""),
        "tx_url": "https://sepolia.etherscan.io/tx/{}",
    },
    "POLYGON": {
        "rpc_urls": _urls("POLYGON_RPC_URLS", "https://polygon.llamarpc.com,https://1rpc.io/matic,https://polygon-rpc.com"),
        "chain_id": 137,
        "explorer_api": os.getenv("POLYGON_EXPLORER_API", "https://api.polygonscan.com/api"),
        "explorer_key": os.getenv("POLYGONSCAN_API_KEY", ""),
        "tx_url": "https://polygonscan.com/tx/{}",
    },
}

# Chains whose addresses are base58 rather than 0x hex
BASE58_CHAINS = {"TRON", "TRX", "SOL", "SOLANA"}

# (TOKEN, CHAIN) -> ERC20 contract
TOKEN_ADDRESSES = {
    ("USDT", "BSC"): os.getenv("USDT_BSC", "0x55d398326f99059fF775485246999027B3197955"),
    ("USDC", "BSC"): os.getenv("USDC_BSC", "0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d"),
    ("BUSD", "BSC"): os.getenv("BUSD_BSC", "0xe9e7CEA3DedcA5984780Bafc599bD69ADd087D56"),
    ("USDT", "ETH"): os.getenv("USDT_ETH", "0xdAC17F958D2ee523a2206206994597C13D831ec7"),
    ("USDT", "SEPOLIA"): os.getenv("USDT_SEPOLIA", ""),
    ("USDT", "POLYGON"): os.getenv("USDT_POLYGON", "0xc2132D05D31c914a87C6611C10748AEb04B58e8F"),
}

# (TOKEN, CHAIN) -> decimals, 18 when not listed
TOKEN_DECIMALS = {
    ("USDT", "SEPOLIA"): 6,
    ("USDT", "ETH"): 6,
    ("USDT", "POLYGON"): 6,
    ("USDT", "BSC"): 18,
    ("USDC", "BSC"): 18,
    ("BUSD", "BSC"): 18,
    ("USDT", "TRON"): 6,
}
DEFAULT_DECIMALS = 18

# (TOKEN, CHAIN) -> custodial escrow vault
# ESCROW_CONTRACTS_JSON='{"USDT_BSC": "0x..."}'
CONTRACT_ADDRESSES = {}
try:
    for _key, _addr in json.loads(os.getenv("ESCROW_CONTRACTS_JSON", "{}")).items():
        _token, _chain = _key.upper().split("_", 1)
        CONTRACT_ADDRESSES[(_token, _chain)] = _addr
except ValueError:
    CONTRACT_ADDRESSES = {}

# ABIs
ESCROW_VAULT_ABI = [
    {
        "inputs": [{"name": "to", "type": "address"}, {"name": "amount", "type": "uint256"}],
        "name": "release",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "to", "type": "address"}, {"name": "amount", "type": "uint256"}],
        "name": "refund",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "token",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
]

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    }
]

TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

# =====================================================
# TIMINGS & LIMITS
# =====================================================

JOIN_TIMEOUT_SECONDS = int(os.getenv("JOIN_TIMEOUT_SECONDS", "300"))
RECYCLE_DELAY_SECONDS = int(os.getenv("RECYCLE_DELAY_SECONDS", "300"))
DEPOSIT_POLL_SECONDS = int(os.getenv("DEPOSIT_POLL_SECONDS", "30"))
RECONCILE_INTERVAL_SECONDS = int(os.getenv("RECONCILE_INTERVAL_SECONDS", "120"))
VERIFY_ATTEMPTS = int(os.getenv("VERIFY_ATTEMPTS", "3"))
VERIFY_TIMEOUT_SECONDS = int(os.getenv("VERIFY_TIMEOUT_SECONDS", "60"))
LOG_SCAN_CHUNK = int(os.getenv("LOG_SCAN_CHUNK", "500"))
LOG_SCAN_LOOKBACK = int(os.getenv("LOG_SCAN_LOOKBACK", "2000"))

AMOUNT_EPSILON = Decimal("0.00001")

# Fee Configuration (deducted on-chain by the vault, shown in the deal summary)
ESCROW_FEE_PERCENT = Decimal(os.getenv("ESCROW_FEE_PERCENT", "0"))


def get_chain(chain):
    return CHAINS.get((chain or "").upper())


def get_token_decimals(token, chain):
    return TOKEN_DECIMALS.get(((token or "").upper(), (chain or "").upper()), DEFAULT_DECIMALS)


def get_token_address(token, chain):
    return TOKEN_ADDRESSES.get(((token or "").upper(), (chain or "").upper())) or None


def get_contract_address(token, chain):
    return CONTRACT_ADDRESSES.get(((token or "").upper(), (chain or "").upper())) or None


def is_supported(token, chain):
    return get_chain(chain) is not None and get_token_address(token, chain) is not None


def is_admin(user_id, username=None):
    if user_id is not None and str(user_id).isdigit() and int(user_id) in ADMIN_IDS:
        return True
    if username and username.lstrip("@").lower() in ADMIN_USERNAMES:
        return True
    return False


def get_explorer_tx_url(chain, tx_hash):
    info = get_chain(chain)
    if not info or not tx_hash:
        return None
    return info["tx_url"].format(tx_hash)
