"""Services Module - Trade engine, chain access and side effects"""

from .fee_service import (
    is_fees_enabled,
    get_fee_percentage,
    calculate_fee
)

__all__ = [
    # Fee service
    'is_fees_enabled',
    'get_fee_percentage',
    'calculate_fee'
]
