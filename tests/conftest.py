"""
Shared fixtures for the escrow engine tests.

Everything runs against a throwaway SQLite database and in-memory fakes of
the chain, the block explorer and the Discord messenger.
"""

import asyncio
import time
from decimal import Decimal

import pytest
import pytest_asyncio

import config
from database import TradeStore, VenueStore
from models import Participant, Trade, TradeStatus, Venue, VenueStatus
from services.audit_service import AuditService
from services.authorization import AuthorizationPolicy
from services.db_manager import DBManager
from services.deposit_watcher import DepositWatcher
from services.errors import ChainError, VerificationTimeout
from services.fund_movement import FundMovementEngine
from services.notification_service import NotificationService
from services.reconciliation_service import ReconciliationService
from services.scheduler import Scheduler
from services.stats_service import StatsService
from services.trade_engine import TradeEngine
from services.venue_pool import VenuePool

VAULT = "0x" + "ab" * 20
BUYER_ADDRESS = "0x" + "11" * 20
SELLER_ADDRESS = "0x" + "22" * 20
TOKEN_UNIT = 10 ** 18

BUYER = Participant(101, "alice")
SELLER = Participant(202, "bob")
ADMIN = Participant(999, "boss")
STRANGER = Participant(303, "mallory")


class FakeChain:
    """Scripted chain: logs, balances and receipts, counting every submission."""

    def __init__(self):
        self.head = 1000
        self.logs = []
        self.log_calls = []
        self.contract_balance = 10 ** 30
        self.submissions = []
        self.verify = "ok"
        self.receipts = {}
        self.fail_logs = False

    async def get_block_number(self, chain):
        return self.head

    async def get_transfer_logs(self, token, chain, to_address, from_block, to_block):
        self.log_calls.append((from_block, to_block))
        if self.fail_logs:
            raise ChainError("RPC down")
        return [dict(log) for log in self.logs if log["to"] == to_address.lower()]

    async def get_contract_token_balance(self, token, chain, contract_address):
        return self.contract_balance

    async def submit_settlement(self, kind, token, chain, contract_address, to_address, amount_wei):
        await asyncio.sleep(0)
        tx_hash = "0x" + f"{len(self.submissions) + 1:064x}"
        self.submissions.append({
            "kind": str(getattr(kind, "value", kind)),
            "contract": contract_address,
            "to": to_address,
            "wei": amount_wei,
            "tx_hash": tx_hash,
        })
        return tx_hash

    async def wait_for_receipt(self, chain, tx_hash):
        await asyncio.sleep(0)
        if self.verify == "timeout":
            raise VerificationTimeout(tx_hash)
        if self.verify == "revert":
            raise ChainError(f"Transaction {tx_hash} reverted.")
        return {"status": 1, "block": self.head}

    async def get_receipt(self, chain, tx_hash):
        return self.receipts.get(tx_hash)


class FakeExplorer:
    def __init__(self):
        self.transfers = []
        self.calls = 0

    async def token_transfers(self, token, chain, address, start_block=0):
        self.calls += 1
        return [dict(t) for t in self.transfers if t["block"] >= start_block]


class FakeMessenger:
    def __init__(self):
        self.sent = []
        self.logs = []
        self.approved = []
        self.declined = []
        self.removed = []
        self.members = {}
        self.unremovable = set()
        self.invites = 0

    async def send(self, venue_id, content=None, embed=None, view=None):
        self.sent.append((venue_id, content, embed))
        return len(self.sent)

    async def edit(self, venue_id, message_id, content=None, embed=None, view=None):
        return True

    async def send_log(self, content=None, embed=None, channel_id=None):
        self.logs.append((channel_id, content, embed))
        return len(self.logs)

    async def approve_join(self, venue_id, user_id):
        self.approved.append((venue_id, int(user_id)))
        self.members.setdefault(venue_id, set()).add(int(user_id))
        return True

    async def decline_join(self, venue_id, user_id):
        self.declined.append((venue_id, user_id))
        return True

    async def remove_member(self, venue_id, user_id):
        self.removed.append((venue_id, int(user_id)))
        if int(user_id) in self.unremovable:
            return False
        self.members.get(venue_id, set()).discard(int(user_id))
        return True

    async def is_member(self, venue_id, user_id):
        return int(user_id) in self.members.get(venue_id, set())

    async def rotate_invite(self, venue_id):
        self.invites += 1
        return f"https://discord.gg/invite{self.invites}"


@pytest.fixture(autouse=True)
def escrow_config(monkeypatch):
    monkeypatch.setattr(config, "ADMIN_IDS", [ADMIN.user_id])
    monkeypatch.setattr(config, "ADMIN_USERNAMES", ["boss"])
    monkeypatch.setattr(config, "CONTRACT_ADDRESSES", {("USDT", "BSC"): VAULT})
    monkeypatch.setattr(config, "ESCROW_FEE_PERCENT", Decimal("1"))
    monkeypatch.setattr(config, "JOIN_TIMEOUT_SECONDS", 300)
    monkeypatch.setattr(config, "RECYCLE_DELAY_SECONDS", 300)
    monkeypatch.setattr(config, "LOG_SCAN_LOOKBACK", 2000)
    monkeypatch.setattr(config, "LOG_SCAN_CHUNK", 500)
    monkeypatch.setattr(config, "LOG_CHANNEL", 0)
    monkeypatch.setattr(config, "DISPUTE_CHANNEL_ID", 0)


@pytest.fixture
def db(tmp_path):
    return DBManager(database_url="", sqlite_path=str(tmp_path / "escrow_test.db"))


@pytest.fixture
def trades(db):
    return TradeStore(db)


@pytest.fixture
def venues(db):
    return VenueStore(db)


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def explorer():
    return FakeExplorer()


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def audit(db):
    return AuditService(db)


@pytest.fixture
def notifications(messenger, trades):
    return NotificationService(messenger, trades)


@pytest.fixture
def pool(venues, trades, messenger, audit):
    return VenuePool(venues, trades, messenger, audit)


@pytest.fixture
def fund(trades, venues, chain, audit):
    return FundMovementEngine(trades, venues, chain, audit)


@pytest.fixture
def watcher(trades, chain, explorer, notifications, audit):
    return DepositWatcher(trades, chain, explorer, notifications, audit)


@pytest_asyncio.fixture
async def scheduler(db):
    scheduler = Scheduler(db)
    yield scheduler
    await scheduler.close()


@pytest.fixture
def stats(db, trades):
    return StatsService(db, trades)


@pytest.fixture
def engine(trades, venues, pool, fund, watcher, scheduler, messenger, notifications, stats, audit, chain):
    return TradeEngine(
        trades, venues, pool, fund, watcher, scheduler, messenger, AuthorizationPolicy(),
        notifications=notifications, stats=stats, audit=audit, chain=chain,
    )


@pytest.fixture
def reconciler(trades, chain, fund, engine):
    return ReconciliationService(trades, chain, fund, engine)


@pytest.fixture
def venue(venues):
    return venues.add(Venue(venue_id="5001", title="room-1"))


@pytest.fixture
def make_trade(trades, venues):
    """Insert a funded trade bound to an assigned venue."""
    counter = {"n": 0}

    def _make(status=TradeStatus.READY_TO_RELEASE, balance="1000", balance_wei=None, **overrides):
        counter["n"] += 1
        trade_id = overrides.pop("trade_id", f"TRTEST{counter['n']:04d}")
        venue_id = overrides.pop("venue_id", f"70{counter['n']:02d}")
        venues.add(Venue(venue_id=venue_id, title=f"room-{venue_id}"))
        venues.transition(venue_id, VenueStatus.ASSIGNED, [VenueStatus.AVAILABLE],
                          assigned_trade_id=trade_id, assigned_at=time.time())
        balance = Decimal(balance)
        if balance_wei is None:
            balance_wei = int(balance * TOKEN_UNIT)
        fields = dict(
            trade_id=trade_id,
            status=status,
            venue_id=venue_id,
            creator_id=BUYER.user_id,
            buyer_id=BUYER.user_id,
            buyer_username=BUYER.username,
            seller_id=SELLER.user_id,
            seller_username=SELLER.username,
            allowed_user_ids=[BUYER.user_id, SELLER.user_id],
            joined_user_ids=[BUYER.user_id, SELLER.user_id],
            quorum_reached=True,
            token="USDT",
            chain="BSC",
            quantity=Decimal("1000"),
            buyer_address=BUYER_ADDRESS,
            seller_address=SELLER_ADDRESS,
            deposit_address=VAULT,
            balance=balance,
            balance_wei=balance_wei,
        )
        fields.update(overrides)
        return trades.insert(Trade(**fields))

    return _make
