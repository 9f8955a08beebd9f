"""Trade and Venue records.

Balances are Decimal, on-chain amounts are exact integers (token base units).
UI bookkeeping (message ids and the like) is kept out of these records; see
TradeStore.set_ui_ref.
"""

import time
import config
from dataclasses import dataclass, field, fields
from decimal import Decimal, ROUND_DOWN
from enum import Enum
from typing import Optional


class TradeStatus(str, Enum):
    DRAFT = "draft"
    AWAITING_DETAILS = "awaiting_details"
    AWAITING_DEPOSIT = "awaiting_deposit"
    DEPOSITED = "deposited"
    IN_FIAT_TRANSFER = "in_fiat_transfer"
    READY_TO_RELEASE = "ready_to_release"
    DISPUTED = "disputed"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class VenueStatus(str, Enum):
    AVAILABLE = "available"
    ASSIGNED = "assigned"
    TERMINAL = "terminal"
    ARCHIVED = "archived"


class Role(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"


class SettlementKind(str, Enum):
    RELEASE = "release"
    REFUND = "refund"


PRE_DEPOSIT_STATUSES = frozenset({
    TradeStatus.DRAFT,
    TradeStatus.AWAITING_DETAILS,
    TradeStatus.AWAITING_DEPOSIT,
})

FUNDED_STATUSES = frozenset({
    TradeStatus.DEPOSITED,
    TradeStatus.IN_FIAT_TRANSFER,
    TradeStatus.READY_TO_RELEASE,
    TradeStatus.DISPUTED,
})

ACTIVE_STATUSES = PRE_DEPOSIT_STATUSES | FUNDED_STATUSES

TERMINAL_STATUSES = frozenset({
    TradeStatus.COMPLETED,
    TradeStatus.REFUNDED,
    TradeStatus.CANCELLED,
})

# Statuses from which each settlement kind may move funds
SETTLEABLE_STATUSES = {
    SettlementKind.RELEASE: frozenset({TradeStatus.READY_TO_RELEASE, TradeStatus.DISPUTED}),
    SettlementKind.REFUND: FUNDED_STATUSES,
}

SETTLED_STATUS = {
    SettlementKind.RELEASE: TradeStatus.COMPLETED,
    SettlementKind.REFUND: TradeStatus.REFUNDED,
}


def to_units(amount, decimals):
    """Decimal amount -> integer base units, truncating below the last place."""
    scaled = Decimal(str(amount)) * (Decimal(10) ** decimals)
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def from_units(units, decimals):
    return Decimal(int(units)) / (Decimal(10) ** decimals)


def _dec(value):
    if value is None or value == "":
        return None
    return Decimal(str(value))


@dataclass
class Participant:
    user_id: int
    username: Optional[str] = None

    @property
    def label(self):
        return f"@{self.username}" if self.username else f"[{self.user_id}]"


@dataclass
class Trade:
    trade_id: str
    status: TradeStatus = TradeStatus.DRAFT
    venue_id: Optional[str] = None

    creator_id: Optional[int] = None
    creator_username: Optional[str] = None
    buyer_id: Optional[int] = None
    buyer_username: Optional[str] = None
    seller_id: Optional[int] = None
    seller_username: Optional[str] = None

    # Venue admission
    allowed_user_ids: list = field(default_factory=list)
    allowed_usernames: list = field(default_factory=list)
    joined_user_ids: list = field(default_factory=list)
    quorum_reached: bool = False

    # Terms
    token: Optional[str] = None
    chain: Optional[str] = None
    quantity: Optional[Decimal] = None
    rate: Optional[Decimal] = None
    payment_method: Optional[str] = None
    terms_approved_by: list = field(default_factory=list)
    escrow_fee: Decimal = Decimal("0")
    fee_rate: Decimal = Decimal("0")

    # Addresses
    buyer_address: Optional[str] = None
    seller_address: Optional[str] = None
    deposit_address: Optional[str] = None

    # Balance
    balance: Decimal = Decimal("0")
    balance_wei: Optional[int] = None
    last_checked_block: int = 0
    seen_transfer_ids: list = field(default_factory=list)
    deposit_tx_hashes: list = field(default_factory=list)

    # Fiat handshake
    buyer_sent_fiat: bool = False
    seller_received_fiat: bool = False

    # Dual confirmation
    buyer_approved_release: bool = False
    seller_approved_release: bool = False
    buyer_approved_refund: bool = False
    seller_approved_refund: bool = False
    pending_release_amount: Optional[Decimal] = None
    pending_refund_amount: Optional[Decimal] = None

    # Settlement results
    release_tx_hash: Optional[str] = None
    refund_tx_hash: Optional[str] = None
    release_tx_hashes: list = field(default_factory=list)
    refund_tx_hashes: list = field(default_factory=list)
    pending_settlement: Optional[dict] = None

    # Downstream side effects (idempotency flags)
    completion_log_sent: bool = False
    completion_log_tx: Optional[str] = None
    refund_log_sent: bool = False
    refund_log_tx: Optional[str] = None
    partial_deposit_log_total: Optional[str] = None
    stats_recorded: bool = False

    # Disputes
    dispute_reason: Optional[str] = None
    disputed_by: Optional[int] = None

    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    trade_start_time: Optional[float] = None
    completed_at: Optional[float] = None

    version: int = 0

    _DECIMAL_FIELDS = ("quantity", "rate", "escrow_fee", "fee_rate", "balance",
                       "pending_release_amount", "pending_refund_amount")

    @property
    def buyer(self):
        return Participant(self.buyer_id, self.buyer_username) if self.buyer_id else None

    @property
    def seller(self):
        return Participant(self.seller_id, self.seller_username) if self.seller_id else None

    @property
    def decimals(self):
        return config.get_token_decimals(self.token, self.chain)

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def role_of(self, user_id):
        if user_id is None:
            return None
        if self.buyer_id is not None and int(user_id) == int(self.buyer_id):
            return Role.BUYER
        if self.seller_id is not None and int(user_id) == int(self.seller_id):
            return Role.SELLER
        return None

    def approvals(self, kind):
        kind = SettlementKind(kind)
        return (getattr(self, f"buyer_approved_{kind.value}"),
                getattr(self, f"seller_approved_{kind.value}"))

    def set_approvals(self, kind, buyer, seller):
        kind = SettlementKind(kind)
        setattr(self, f"buyer_approved_{kind.value}", buyer)
        setattr(self, f"seller_approved_{kind.value}", seller)

    def pending_amount(self, kind):
        return getattr(self, f"pending_{SettlementKind(kind).value}_amount")

    def set_pending_amount(self, kind, amount):
        setattr(self, f"pending_{SettlementKind(kind).value}_amount", amount)

    def participant_ids(self):
        ids = {self.buyer_id, self.seller_id, self.creator_id, *self.allowed_user_ids, *self.joined_user_ids}
        return {int(i) for i in ids if i is not None}

    def to_dict(self):
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Decimal):
                value = str(value)
            elif isinstance(value, Enum):
                value = value.value
            elif f.name == "balance_wei" and value is not None:
                # exceeds 64-bit for 18-decimal tokens
                value = str(value)
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data):
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["status"] = TradeStatus(kwargs.get("status", TradeStatus.DRAFT))
        for name in cls._DECIMAL_FIELDS:
            if name in kwargs:
                kwargs[name] = _dec(kwargs[name])
        if kwargs.get("balance") is None:
            kwargs["balance"] = Decimal("0")
        for name in ("escrow_fee", "fee_rate"):
            if kwargs.get(name) is None:
                kwargs[name] = Decimal("0")
        if kwargs.get("balance_wei") not in (None, ""):
            kwargs["balance_wei"] = int(kwargs["balance_wei"])
        else:
            kwargs["balance_wei"] = None
        return cls(**kwargs)


@dataclass
class Venue:
    venue_id: str
    title: Optional[str] = None
    status: VenueStatus = VenueStatus.AVAILABLE
    assigned_trade_id: Optional[str] = None
    assigned_at: Optional[float] = None
    completed_at: Optional[float] = None
    invite_code: Optional[str] = None
    # token symbol -> {"address": ..., "chain": ...}
    contracts: dict = field(default_factory=dict)
    version: int = 0

    def contract_for(self, token, chain):
        entry = (self.contracts or {}).get((token or "").upper())
        if not entry:
            return None
        if (entry.get("chain") or "").upper() != (chain or "").upper():
            return None
        return entry.get("address")
