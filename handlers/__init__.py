"""Handlers Module - Input validation and display helpers"""

from .utils import (
    is_valid_address,
    is_valid_tron_address,
    get_explorer_url,
    short_hash
)

__all__ = [
    'is_valid_address',
    'is_valid_tron_address',
    'get_explorer_url',
    'short_hash'
]
