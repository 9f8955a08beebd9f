"""
Trade state machine.

draft -> awaiting_details -> awaiting_deposit -> deposited -> in_fiat_transfer
      -> ready_to_release | disputed -> completed, or refunded from any funded
status. Every operation re-reads the trade and writes conditionally through
TradeStore.update; nothing here moves funds except via FundMovementEngine.
"""

import logging
import re
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import config
from database import create_trade_id
from handlers.utils import EVM_PATTERN, SOLANA_PATTERN, is_valid_address, is_valid_tron_address
from models import (
    FUNDED_STATUSES, PRE_DEPOSIT_STATUSES, SETTLEABLE_STATUSES, Role,
    SettlementKind, Trade, TradeStatus,
)
from services.authorization import Access
from services.errors import (
    EscrowError, ValidationError, VenueUnavailable, VerificationTimeout,
)
from services.fee_service import calculate_fee
from services.fund_movement import resolve_contract_address, resolve_settlement_amount
from services.scheduler import JOIN_TIMEOUT, RECYCLE, job_key

logger = logging.getLogger("TradeEngine")

DISPUTABLE_STATUSES = frozenset({
    TradeStatus.DEPOSITED,
    TradeStatus.IN_FIAT_TRANSFER,
    TradeStatus.READY_TO_RELEASE,
})


@dataclass
class JoinOutcome:
    approved: bool
    quorum: bool = False
    newly_reached: bool = False
    joined: int = 0


def parse_amount(value):
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"'{value}' is not a valid amount.")
    if not amount.is_finite():
        raise ValidationError(f"'{value}' is not a valid amount.")
    return amount


class TradeEngine:
    def __init__(self, trades, venues, pool, fund, watcher, scheduler, messenger,
                 policy, notifications=None, stats=None, audit=None, chain=None):
        self.trades = trades
        self.venues = venues
        self.pool = pool
        self.fund = fund
        self.watcher = watcher
        self.scheduler = scheduler
        self.messenger = messenger
        self.policy = policy
        self.notifications = notifications
        self.stats = stats
        self.audit = audit
        self.chain = chain

        scheduler.register(JOIN_TIMEOUT, self.handle_join_timeout)
        scheduler.register(RECYCLE, self.handle_recycle)

    def _audit(self, action, actor, trade_id, details=None):
        if self.audit:
            user_id = actor.user_id if hasattr(actor, "user_id") else actor
            self.audit.log_action(action, user_id, trade_id, details)

    def _is_admin(self, actor):
        return self.policy.is_admin(actor.user_id, actor.username)

    # ------------------------------------------------------------------
    # Creation and venue admission
    # ------------------------------------------------------------------
    async def create_trade(self, creator, counterparty):
        """New draft trade bound to a free venue. Returns (trade, invite)."""
        if counterparty.user_id is None and not counterparty.username:
            raise ValidationError("Tell me who you are trading with.")
        if (counterparty.user_id is not None and creator.user_id is not None
                and int(counterparty.user_id) == int(creator.user_id)):
            raise ValidationError("You cannot open a trade with yourself.")

        allowed_ids = [int(creator.user_id)]
        if counterparty.user_id is not None:
            allowed_ids.append(int(counterparty.user_id))
        allowed_names = [
            u.lstrip("@").lower() for u in (creator.username, counterparty.username) if u
        ]
        trade = self.trades.insert(Trade(
            trade_id=create_trade_id(),
            creator_id=int(creator.user_id),
            creator_username=creator.username,
            allowed_user_ids=allowed_ids,
            allowed_usernames=allowed_names,
        ))

        try:
            venue = self.pool.assign(trade.trade_id)
        except VenueUnavailable:
            self.trades.delete(trade.trade_id)
            raise

        def _bind(t):
            t.venue_id = venue.venue_id

        trade = self.trades.update(trade.trade_id, _bind)
        invite = await self.pool.refresh_invite(venue.venue_id)
        self.scheduler.schedule(
            job_key(JOIN_TIMEOUT, trade.trade_id), config.JOIN_TIMEOUT_SECONDS, JOIN_TIMEOUT, trade.trade_id,
        )
        self._audit("trade_created", creator, trade.trade_id, f"venue={venue.venue_id} with={counterparty.label}")
        logger.info(f"[CREATE] {trade.trade_id} by {creator.label} with {counterparty.label} in venue {venue.venue_id}")
        return trade, invite

    def _is_allowed(self, trade, user):
        if user.user_id is not None and int(user.user_id) in {int(i) for i in trade.allowed_user_ids}:
            return True
        return bool(user.username) and user.username.lstrip("@").lower() in trade.allowed_usernames

    async def record_join(self, trade_id, user):
        """Admit or reject a join request, then recompute quorum from the stored set."""
        trade = self.trades.require(trade_id)
        if trade.status != TradeStatus.DRAFT or not trade.venue_id or not self._is_allowed(trade, user):
            logger.info(f"[JOIN] Declining {user.label} for {trade_id}")
            try:
                await self.messenger.decline_join(trade.venue_id, user.user_id)
            except Exception as e:
                logger.error(f"[JOIN] Decline of {user.label} failed: {e}")
            return JoinOutcome(approved=False)

        try:
            await self.messenger.approve_join(trade.venue_id, user.user_id)
        except Exception as e:
            logger.error(f"[JOIN] Approve of {user.label} in {trade.venue_id} failed: {e}")

        uid = int(user.user_id)

        def _add(t):
            changed = False
            if uid not in t.joined_user_ids:
                t.joined_user_ids.append(uid)
                changed = True
            if uid not in t.allowed_user_ids:
                t.allowed_user_ids.append(uid)
                changed = True
            return None if changed else False

        trade = self.trades.update(trade_id, _add, expected_statuses=[TradeStatus.DRAFT], retries=3)
        joined = set(trade.joined_user_ids)

        if len(joined) < 2:
            # Stored set may lag a concurrent join; ask the venue directly
            for other in set(trade.allowed_user_ids) - joined:
                try:
                    present = await self.messenger.is_member(trade.venue_id, other)
                except Exception as e:
                    logger.warning(f"[JOIN] Membership check for {other} failed: {e}")
                    present = False
                if present:
                    trade = self.trades.add_to_set(trade_id, "joined_user_ids", other, [TradeStatus.DRAFT])
            joined = set(trade.joined_user_ids)

        if len(joined) < 2:
            return JoinOutcome(approved=True, joined=len(joined))

        claimed = []

        def _quorum(t):
            claimed.clear()
            if t.quorum_reached:
                return False
            t.quorum_reached = True
            claimed.append(True)

        trade = self.trades.update(trade_id, _quorum, expected_statuses=[TradeStatus.DRAFT], retries=3)
        if claimed:
            self.scheduler.cancel(job_key(JOIN_TIMEOUT, trade_id))
            self._audit("quorum_reached", user, trade_id, f"joined={sorted(joined)}")
            logger.info(f"[JOIN] Quorum reached for {trade_id}")
        return JoinOutcome(approved=True, quorum=True, newly_reached=bool(claimed), joined=len(joined))

    async def handle_join_timeout(self, trade_id):
        """Expire a draft whose participants never all joined: retire the venue, delete the trade."""
        expired = []

        def _expire(t):
            expired.clear()
            if t.quorum_reached or t.status != TradeStatus.DRAFT:
                return False
            t.status = TradeStatus.CANCELLED
            expired.append(True)

        trade = self.trades.get(trade_id)
        if trade is None:
            return None
        trade = self.trades.update(trade_id, _expire, retries=3)
        if not expired:
            logger.info(f"[JOIN] Timeout for {trade_id} ignored ({trade.status.value}, quorum={trade.quorum_reached})")
            return None

        status = await self.pool.recycle(trade)
        self.trades.delete(trade_id, expected_statuses=[TradeStatus.CANCELLED])
        self._audit("trade_expired", "system", trade_id, f"venue={trade.venue_id} -> {status.value if status else None}")
        logger.info(f"[JOIN] {trade_id} expired; venue {trade.venue_id} -> {status.value if status else None}")
        if self.notifications:
            await self.notifications.join_expired(trade)
        return status

    # ------------------------------------------------------------------
    # Roles, terms and addresses
    # ------------------------------------------------------------------
    async def select_role(self, trade_id, actor, role):
        role = Role(role)
        trade = self.trades.require(trade_id)
        if int(actor.user_id) not in trade.participant_ids() and not self._is_admin(actor):
            raise ValidationError("You are not part of this trade.")
        opposite = Role.SELLER if role == Role.BUYER else Role.BUYER

        def _claim(t):
            current = t.role_of(actor.user_id)
            if current == role:
                return False
            if current == opposite:
                raise ValidationError(f"You are already the {opposite.value}.")
            holder = getattr(t, f"{role.value}_id")
            if holder is not None:
                raise ValidationError(f"The {role.value} role is already taken.")
            setattr(t, f"{role.value}_id", int(actor.user_id))
            setattr(t, f"{role.value}_username", actor.username)
            if t.buyer_id is not None and t.seller_id is not None:
                t.status = TradeStatus.AWAITING_DETAILS

        trade = self.trades.update(trade_id, _claim, expected_statuses=[TradeStatus.DRAFT])
        self._audit("role_selected", actor, trade_id, role.value)
        return trade

    async def set_terms(self, trade_id, actor, token, chain, quantity, rate=None, payment_method=None):
        trade = self.trades.require(trade_id)
        self.policy.require(trade, actor, Access.PARTICIPANT)

        token = (token or "").upper()
        chain = (chain or "").upper()
        if not config.is_supported(token, chain):
            raise ValidationError(f"{token} on {chain} is not supported.")
        quantity = parse_amount(quantity)
        if quantity is None or quantity <= 0:
            raise ValidationError("Quantity must be greater than zero.")
        rate = parse_amount(rate)
        if rate is not None and rate <= 0:
            raise ValidationError("Rate must be greater than zero.")

        def _terms(t):
            t.token = token
            t.chain = chain
            t.quantity = quantity
            t.rate = rate
            t.payment_method = payment_method
            t.terms_approved_by = []
            # Addresses entered for another chain no longer apply
            for field_name in ("buyer_address", "seller_address"):
                address = getattr(t, field_name)
                if address and not is_valid_address(address, chain):
                    setattr(t, field_name, None)

        trade = self.trades.update(trade_id, _terms, expected_statuses=[TradeStatus.AWAITING_DETAILS])
        self._audit("terms_set", actor, trade_id, f"{quantity} {token}/{chain} rate={rate}")
        return trade

    async def set_address(self, trade_id, actor, role, address):
        role = Role(role)
        trade = self.trades.require(trade_id)
        self.policy.require(trade, actor, Access.BUYER if role == Role.BUYER else Access.SELLER)

        address = (address or "").strip()
        if trade.chain:
            valid = is_valid_address(address, trade.chain)
        else:
            valid = bool(re.match(EVM_PATTERN, address) or is_valid_tron_address(address)
                         or re.match(SOLANA_PATTERN, address))
        if not valid:
            raise ValidationError(f"`{address}` is not a valid {trade.chain or 'payout'} address.")

        def _set(t):
            setattr(t, f"{role.value}_address", address)
            t.terms_approved_by = []

        trade = self.trades.update(trade_id, _set, expected_statuses=[TradeStatus.AWAITING_DETAILS])
        self._audit("address_set", actor, trade_id, f"{role.value}={address}")
        return trade

    async def approve_terms(self, trade_id, actor):
        """Dual confirmation of terms. The second approval opens the deposit window."""
        trade = self.trades.require(trade_id)
        role = self.policy.require(trade, actor, Access.PARTICIPANT)
        missing = [
            name for name, value in (
                ("buyer address", trade.buyer_address), ("seller address", trade.seller_address),
                ("token", trade.token), ("chain", trade.chain), ("quantity", trade.quantity),
            ) if not value
        ]
        if missing:
            raise ValidationError(f"Missing before approval: {', '.join(missing)}.")

        trade = self.trades.add_to_set(trade_id, "terms_approved_by", role.value, [TradeStatus.AWAITING_DETAILS])
        if set(trade.terms_approved_by) != {Role.BUYER.value, Role.SELLER.value}:
            return trade

        venue = self.venues.get(trade.venue_id) if trade.venue_id else None
        contract = resolve_contract_address(trade, venue)
        if not contract:
            raise ValidationError(f"No escrow contract configured for {trade.token} on {trade.chain}.")
        head = 0
        if self.chain is not None:
            try:
                head = await self.chain.get_block_number(trade.chain)
            except EscrowError as e:
                logger.warning(f"[TERMS] Could not read head for {trade_id}: {e}; watcher will use lookback")
        fee, _ = calculate_fee(trade.quantity, trade.decimals)

        def _open(t):
            if t.status != TradeStatus.AWAITING_DETAILS:
                return False
            if set(t.terms_approved_by) != {Role.BUYER.value, Role.SELLER.value}:
                return False
            t.deposit_address = contract
            t.escrow_fee = fee
            t.fee_rate = config.ESCROW_FEE_PERCENT
            t.last_checked_block = max(0, head - 1) if head else 0
            t.trade_start_time = time.time()
            t.status = TradeStatus.AWAITING_DEPOSIT

        trade = self.trades.update(trade_id, _open, retries=2)
        if trade.status == TradeStatus.AWAITING_DEPOSIT:
            self._audit("terms_approved", actor, trade_id, f"deposit={contract} fee={fee}")
            logger.info(f"[TERMS] {trade_id} awaiting {trade.quantity} {trade.token} at {contract}")
        return trade

    async def cancel_trade(self, trade_id, actor):
        trade = self.trades.require(trade_id)
        self.policy.require(trade, actor, Access.PARTICIPANT_OR_ADMIN)

        def _cancel(t):
            if t.balance > 0 or t.deposit_tx_hashes:
                raise ValidationError("Funds were already deposited; request a refund instead.")
            t.status = TradeStatus.CANCELLED
            t.completed_at = time.time()

        trade = self.trades.update(trade_id, _cancel, expected_statuses=PRE_DEPOSIT_STATUSES)
        self.scheduler.cancel(job_key(JOIN_TIMEOUT, trade_id))
        self._schedule_recycle(trade)
        self._audit("trade_cancelled", actor, trade_id)
        return trade

    # ------------------------------------------------------------------
    # Deposits, fiat handshake and disputes
    # ------------------------------------------------------------------
    async def check_deposit(self, trade_id, actor=None):
        if actor is not None:
            self.policy.require(self.trades.require(trade_id), actor, Access.PARTICIPANT_OR_ADMIN)
        return await self.watcher.check(trade_id)

    async def poll_deposits(self):
        """One watcher pass over every trade waiting on funds."""
        found = 0
        for trade in self.trades.list_by_status([TradeStatus.AWAITING_DEPOSIT]):
            try:
                result = await self.watcher.check(trade.trade_id)
            except EscrowError as e:
                logger.warning(f"[DEPOSIT] Check for {trade.trade_id} failed: {e}")
                continue
            if result.found:
                found += 1
        return found

    def _transition(self, trade_id, actor, access, from_statuses, to_status, **changes):
        trade = self.trades.require(trade_id)
        self.policy.require(trade, actor, access)

        def _move(t):
            t.status = to_status
            for name, value in changes.items():
                setattr(t, name, value)

        return self.trades.update(trade_id, _move, expected_statuses=from_statuses)

    async def mark_fiat_sent(self, trade_id, actor):
        trade = self._transition(
            trade_id, actor, Access.BUYER, [TradeStatus.DEPOSITED], TradeStatus.IN_FIAT_TRANSFER,
            buyer_sent_fiat=True,
        )
        self._audit("fiat_sent", actor, trade_id)
        return trade

    async def confirm_fiat_received(self, trade_id, actor):
        trade = self._transition(
            trade_id, actor, Access.SELLER, [TradeStatus.IN_FIAT_TRANSFER], TradeStatus.READY_TO_RELEASE,
            seller_received_fiat=True,
        )
        self._audit("fiat_received", actor, trade_id)
        return trade

    async def report_fiat_issue(self, trade_id, actor, reason=None):
        trade = self._transition(
            trade_id, actor, Access.SELLER, [TradeStatus.IN_FIAT_TRANSFER], TradeStatus.DISPUTED,
            dispute_reason=reason or "Seller did not receive the payment.", disputed_by=int(actor.user_id),
        )
        await self._on_dispute(trade, actor)
        return trade

    async def raise_dispute(self, trade_id, actor, reason=None):
        trade = self._transition(
            trade_id, actor, Access.PARTICIPANT_OR_ADMIN, DISPUTABLE_STATUSES, TradeStatus.DISPUTED,
            dispute_reason=reason, disputed_by=int(actor.user_id),
        )
        await self._on_dispute(trade, actor)
        return trade

    async def _on_dispute(self, trade, actor):
        self.scheduler.cancel(job_key(JOIN_TIMEOUT, trade.trade_id))
        self.scheduler.cancel(job_key(RECYCLE, trade.trade_id))
        self._audit("dispute_raised", actor, trade.trade_id, trade.dispute_reason)
        logger.warning(f"[DISPUTE] {trade.trade_id} disputed by {actor.label}: {trade.dispute_reason}")
        if self.notifications:
            await self.notifications.dispute_raised(trade, actor)

    async def resolve_dispute(self, trade_id, actor, outcome, amount=None):
        kind = SettlementKind(outcome)
        trade = self.trades.require(trade_id)
        self.policy.require(trade, actor, Access.ADMIN)
        if trade.status != TradeStatus.DISPUTED:
            raise ValidationError(f"Trade {trade_id} is not disputed.")
        self._audit("dispute_resolved", actor, trade_id, f"{kind.value} {amount or 'full'}")
        return await self.force_settlement(trade_id, actor, kind, amount)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------
    def _settleable(self, trade, kind):
        if trade.status not in SETTLEABLE_STATUSES[kind]:
            raise ValidationError(f"Cannot {kind.value} while the trade is {trade.status.value}.")
        if trade.pending_settlement:
            raise ValidationError("A settlement is still awaiting on-chain confirmation.")

    async def request_settlement(self, trade_id, actor, kind, amount=None):
        """Stage a partial amount (None for the full balance) and restart approvals."""
        kind = SettlementKind(kind)
        trade = self.trades.require(trade_id)
        self.policy.require(trade, actor, Access.PARTICIPANT_OR_ADMIN)
        self._settleable(trade, kind)
        amount = parse_amount(amount)
        if amount is not None:
            resolve_settlement_amount(trade.balance, trade.balance_wei, amount, trade.decimals)

        def _stage(t):
            t.set_pending_amount(kind, amount)
            t.set_approvals(kind, False, False)

        trade = self.trades.update(trade_id, _stage, expected_statuses=SETTLEABLE_STATUSES[kind])
        self._audit(f"{kind.value}_requested", actor, trade_id, str(amount or "full"))
        return trade

    async def approve_settlement(self, trade_id, actor, kind):
        """Set the actor's approval flag; execute once both are set."""
        kind = SettlementKind(kind)
        trade = self.trades.require(trade_id)
        role = self.policy.require(trade, actor, Access.PARTICIPANT_OR_ADMIN)
        self._settleable(trade, kind)

        def _approve(t):
            buyer, seller = t.approvals(kind)
            if role == Role.BUYER:
                buyer = True
            elif role == Role.SELLER:
                seller = True
            else:
                buyer = seller = True
            if (buyer, seller) == t.approvals(kind):
                return False
            t.set_approvals(kind, buyer, seller)

        trade = self.trades.update(trade_id, _approve, expected_statuses=SETTLEABLE_STATUSES[kind], retries=3)
        self._audit(f"{kind.value}_approved", actor, trade_id, role.value if role else "admin")
        if not all(trade.approvals(kind)):
            return None
        return await self._execute(trade_id, kind, actor)

    async def decline_settlement(self, trade_id, actor, kind):
        kind = SettlementKind(kind)
        trade = self.trades.require(trade_id)
        self.policy.require(trade, actor, Access.PARTICIPANT_OR_ADMIN)

        def _decline(t):
            t.set_approvals(kind, False, False)

        trade = self.trades.update(trade_id, _decline, expected_statuses=FUNDED_STATUSES)
        self._audit(f"{kind.value}_declined", actor, trade_id)
        return trade

    async def force_settlement(self, trade_id, actor, kind, amount=None):
        kind = SettlementKind(kind)
        trade = self.trades.require(trade_id)
        self.policy.require(trade, actor, Access.ADMIN)
        self._settleable(trade, kind)
        amount = parse_amount(amount)
        if amount is not None:
            resolve_settlement_amount(trade.balance, trade.balance_wei, amount, trade.decimals)

        def _force(t):
            t.set_pending_amount(kind, amount)
            t.set_approvals(kind, True, True)

        self.trades.update(trade_id, _force, expected_statuses=SETTLEABLE_STATUSES[kind])
        self._audit(f"{kind.value}_forced", actor, trade_id, str(amount or "full"))
        return await self._execute(trade_id, kind, actor)

    async def request_release(self, trade_id, actor, amount=None):
        return await self.request_settlement(trade_id, actor, SettlementKind.RELEASE, amount)

    async def request_refund(self, trade_id, actor, amount=None):
        return await self.request_settlement(trade_id, actor, SettlementKind.REFUND, amount)

    async def approve_release(self, trade_id, actor):
        return await self.approve_settlement(trade_id, actor, SettlementKind.RELEASE)

    async def approve_refund(self, trade_id, actor):
        return await self.approve_settlement(trade_id, actor, SettlementKind.REFUND)

    async def decline_release(self, trade_id, actor):
        return await self.decline_settlement(trade_id, actor, SettlementKind.RELEASE)

    async def decline_refund(self, trade_id, actor):
        return await self.decline_settlement(trade_id, actor, SettlementKind.REFUND)

    async def force_release(self, trade_id, actor, amount=None):
        return await self.force_settlement(trade_id, actor, SettlementKind.RELEASE, amount)

    async def force_refund(self, trade_id, actor, amount=None):
        return await self.force_settlement(trade_id, actor, SettlementKind.REFUND, amount)

    async def _execute(self, trade_id, kind, actor):
        try:
            result = await self.fund.execute(trade_id, kind, actor_id=actor.user_id)
        except VerificationTimeout as e:
            if self.notifications:
                await self.notifications.settlement_unconfirmed(self.trades.require(trade_id), kind, e.tx_hash)
            raise
        if result is not None:
            await self.after_settlement(result)
        return result

    async def after_settlement(self, result):
        """Broadcasts, stats and recycling for a confirmed settlement. Never raises."""
        trade = result.trade
        if self.notifications:
            try:
                await self.notifications.settlement(trade, result)
            except Exception as e:
                logger.error(f"[NOTIFY] Settlement broadcast for {trade.trade_id} failed: {e}")
        if not result.is_full:
            return
        if self.stats:
            try:
                self.stats.record_settlement(trade.trade_id, trade.quantity or result.amount)
            except Exception as e:
                logger.error(f"[STATS] Recording {trade.trade_id} failed: {e}")
        self._schedule_recycle(trade)

    # ------------------------------------------------------------------
    # Venue recycling
    # ------------------------------------------------------------------
    def _schedule_recycle(self, trade):
        if not trade.venue_id:
            return
        self.scheduler.schedule(
            job_key(RECYCLE, trade.trade_id), config.RECYCLE_DELAY_SECONDS, RECYCLE, trade.trade_id,
        )

    async def handle_recycle(self, trade_id):
        trade = self.trades.get(trade_id)
        if trade is None or not trade.is_terminal:
            logger.info(f"[RECYCLE] {trade_id} not terminal; skipping")
            return None
        return await self.pool.recycle(trade)

    async def close_venue(self, trade_id, actor):
        """Immediate recycle by a participant or admin once the trade is over."""
        trade = self.trades.require(trade_id)
        self.policy.require(trade, actor, Access.PARTICIPANT_OR_ADMIN)
        if not trade.is_terminal:
            raise ValidationError("The trade is still active.")
        self.scheduler.cancel(job_key(RECYCLE, trade_id))
        status = await self.pool.recycle(trade)
        self._audit("venue_closed", actor, trade_id, status.value if status else None)
        return status
