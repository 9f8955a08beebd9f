"""
Utility Functions
Address validation and explorer URLs
"""

import re

import base58

import config

EVM_PATTERN = r'^0x[a-fA-F0-9]{40}$'
TRON_PATTERN = r'^T[1-9A-HJ-NP-Za-km-z]{33}$'
SOLANA_PATTERN = r'^[1-9A-HJ-NP-Za-km-z]{32,44}$'


def is_valid_address(address: str, chain: str) -> bool:
    """Validate a payout address for the trade's chain"""
    if not address or len(address) < 10:
        return False

    chain = (chain or "").upper()
    if chain in ("TRON", "TRX"):
        return is_valid_tron_address(address)
    elif chain in ("SOL", "SOLANA"):
        # Solana: base58, 32-44 chars
        return bool(re.match(SOLANA_PATTERN, address))
    elif chain in config.CHAINS:
        # EVM address: 0x + 40 hex chars
        return bool(re.match(EVM_PATTERN, address))
    return False


def is_valid_tron_address(address: str) -> bool:
    """Base58check, 0x41 version byte"""
    if not re.match(TRON_PATTERN, address or ""):
        return False
    try:
        raw = base58.b58decode_check(address)
    except ValueError:
        return False
    return len(raw) == 21 and raw[0] == 0x41


def get_explorer_url(chain: str, tx_hash: str) -> str:
    """Get blockchain explorer URL for transaction"""
    url = config.get_explorer_tx_url(chain, tx_hash)
    if url:
        return url
    if (chain or "").upper() in ("TRON", "TRX"):
        return f"https://tronscan.org/#/transaction/{tx_hash}"
    return f"https://blockchair.com/search?q={tx_hash}"


def short_hash(tx_hash: str, size: int = 10) -> str:
    if not tx_hash or len(tx_hash) <= size * 2:
        return tx_hash or ""
    return f"{tx_hash[:size]}...{tx_hash[-6:]}"
