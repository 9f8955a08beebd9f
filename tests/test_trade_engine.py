"""Trade lifecycle through the engine: admission, roles, terms, fiat handshake, disputes and approvals."""

from decimal import Decimal

import pytest

from models import Role, SettlementKind, TradeStatus
from services.errors import AuthorizationError, ConcurrencyConflict, ValidationError
from tests.conftest import ADMIN, BUYER, BUYER_ADDRESS, SELLER, SELLER_ADDRESS, STRANGER, VAULT


async def _joined_trade(engine):
    trade, _ = await engine.create_trade(BUYER, SELLER)
    await engine.record_join(trade.trade_id, BUYER)
    await engine.record_join(trade.trade_id, SELLER)
    return trade


async def _detailed_trade(engine):
    trade = await _joined_trade(engine)
    await engine.select_role(trade.trade_id, BUYER, Role.BUYER)
    await engine.select_role(trade.trade_id, SELLER, Role.SELLER)
    await engine.set_terms(trade.trade_id, BUYER, "usdt", "bsc", "1000", rate="1.02", payment_method="SEPA")
    await engine.set_address(trade.trade_id, BUYER, Role.BUYER, BUYER_ADDRESS)
    await engine.set_address(trade.trade_id, SELLER, Role.SELLER, SELLER_ADDRESS)
    return trade


class TestAdmission:

    @pytest.mark.asyncio
    async def test_quorum_cancels_join_timer(self, engine, scheduler, venue):
        trade, _ = await engine.create_trade(BUYER, SELLER)

        first = await engine.record_join(trade.trade_id, BUYER)
        second = await engine.record_join(trade.trade_id, SELLER)

        assert first.approved and not first.quorum
        assert second.quorum and second.newly_reached
        assert not scheduler.is_pending(f"join_timeout:{trade.trade_id}")

    @pytest.mark.asyncio
    async def test_quorum_claimed_once(self, engine, venue):
        trade = await _joined_trade(engine)

        again = await engine.record_join(trade.trade_id, SELLER)

        assert again.quorum and not again.newly_reached

    @pytest.mark.asyncio
    async def test_uninvited_user_is_declined(self, engine, messenger, venue):
        trade, _ = await engine.create_trade(BUYER, SELLER)

        outcome = await engine.record_join(trade.trade_id, STRANGER)

        assert not outcome.approved
        assert messenger.declined == [(venue.venue_id, STRANGER.user_id)]

    @pytest.mark.asyncio
    async def test_membership_check_catches_missed_join(self, engine, messenger, trades, venue):
        trade, _ = await engine.create_trade(BUYER, SELLER)
        # Seller entered the venue but the join event was never recorded
        messenger.members[venue.venue_id] = {SELLER.user_id}

        outcome = await engine.record_join(trade.trade_id, BUYER)

        assert outcome.quorum
        assert set(trades.get(trade.trade_id).joined_user_ids) == {BUYER.user_id, SELLER.user_id}

    @pytest.mark.asyncio
    async def test_cannot_trade_with_yourself(self, engine, venue):
        with pytest.raises(ValidationError):
            await engine.create_trade(BUYER, BUYER)


class TestRoles:

    @pytest.mark.asyncio
    async def test_both_roles_move_to_awaiting_details(self, engine, venue):
        trade = await _joined_trade(engine)

        await engine.select_role(trade.trade_id, BUYER, Role.BUYER)
        trade = await engine.select_role(trade.trade_id, SELLER, Role.SELLER)

        assert trade.status == TradeStatus.AWAITING_DETAILS
        assert trade.buyer_id == BUYER.user_id
        assert trade.seller_id == SELLER.user_id

    @pytest.mark.asyncio
    async def test_same_user_cannot_hold_both_roles(self, engine, venue):
        trade = await _joined_trade(engine)
        await engine.select_role(trade.trade_id, BUYER, Role.BUYER)

        with pytest.raises(ValidationError):
            await engine.select_role(trade.trade_id, BUYER, Role.SELLER)

    @pytest.mark.asyncio
    async def test_taken_role_is_rejected(self, engine, venue):
        trade = await _joined_trade(engine)
        await engine.select_role(trade.trade_id, BUYER, Role.BUYER)

        with pytest.raises(ValidationError):
            await engine.select_role(trade.trade_id, SELLER, Role.BUYER)

    @pytest.mark.asyncio
    async def test_outsider_cannot_pick_a_role(self, engine, venue):
        trade = await _joined_trade(engine)

        with pytest.raises(ValidationError):
            await engine.select_role(trade.trade_id, STRANGER, Role.BUYER)


class TestTermsAndAddresses:

    @pytest.mark.asyncio
    async def test_invalid_address_rejected(self, engine, venue):
        trade = await _joined_trade(engine)
        await engine.select_role(trade.trade_id, BUYER, Role.BUYER)
        await engine.select_role(trade.trade_id, SELLER, Role.SELLER)
        await engine.set_terms(trade.trade_id, BUYER, "USDT", "BSC", "1000")

        with pytest.raises(ValidationError):
            await engine.set_address(trade.trade_id, BUYER, Role.BUYER, "0x1234")

    @pytest.mark.asyncio
    async def test_only_buyer_sets_buyer_address(self, engine, venue):
        trade = await _joined_trade(engine)
        await engine.select_role(trade.trade_id, BUYER, Role.BUYER)
        await engine.select_role(trade.trade_id, SELLER, Role.SELLER)

        with pytest.raises(AuthorizationError):
            await engine.set_address(trade.trade_id, SELLER, Role.BUYER, BUYER_ADDRESS)

    @pytest.mark.asyncio
    async def test_unsupported_token_rejected(self, engine, venue):
        trade = await _joined_trade(engine)
        await engine.select_role(trade.trade_id, BUYER, Role.BUYER)
        await engine.select_role(trade.trade_id, SELLER, Role.SELLER)

        with pytest.raises(ValidationError):
            await engine.set_terms(trade.trade_id, BUYER, "DOGE", "BSC", "10")

    @pytest.mark.asyncio
    async def test_non_positive_quantity_rejected(self, engine, venue):
        trade = await _joined_trade(engine)
        await engine.select_role(trade.trade_id, BUYER, Role.BUYER)
        await engine.select_role(trade.trade_id, SELLER, Role.SELLER)

        with pytest.raises(ValidationError):
            await engine.set_terms(trade.trade_id, BUYER, "USDT", "BSC", "0")

    @pytest.mark.asyncio
    async def test_dual_approval_opens_deposit_window(self, engine, chain, venue):
        trade = await _detailed_trade(engine)

        half = await engine.approve_terms(trade.trade_id, BUYER)
        assert half.status == TradeStatus.AWAITING_DETAILS

        trade = await engine.approve_terms(trade.trade_id, SELLER)

        assert trade.status == TradeStatus.AWAITING_DEPOSIT
        assert trade.deposit_address == VAULT
        assert trade.escrow_fee == Decimal("10")
        assert trade.fee_rate == Decimal("1")
        assert trade.last_checked_block == chain.head - 1
        assert trade.quantity == Decimal("1000")
        assert trade.token == "USDT" and trade.chain == "BSC"

    @pytest.mark.asyncio
    async def test_editing_address_resets_approvals(self, engine, venue):
        trade = await _detailed_trade(engine)
        await engine.approve_terms(trade.trade_id, BUYER)

        trade = await engine.set_address(trade.trade_id, SELLER, Role.SELLER, "0x" + "23" * 20)

        assert trade.terms_approved_by == []

    @pytest.mark.asyncio
    async def test_approval_requires_both_addresses(self, engine, venue):
        trade = await _joined_trade(engine)
        await engine.select_role(trade.trade_id, BUYER, Role.BUYER)
        await engine.select_role(trade.trade_id, SELLER, Role.SELLER)
        await engine.set_terms(trade.trade_id, BUYER, "USDT", "BSC", "1000")

        with pytest.raises(ValidationError):
            await engine.approve_terms(trade.trade_id, BUYER)

    @pytest.mark.asyncio
    async def test_cancel_before_deposit(self, engine, scheduler, venue):
        trade = await _detailed_trade(engine)

        trade = await engine.cancel_trade(trade.trade_id, SELLER)

        assert trade.status == TradeStatus.CANCELLED
        assert scheduler.is_pending(f"recycle:{trade.trade_id}")

    @pytest.mark.asyncio
    async def test_cancel_after_deposit_rejected(self, engine, make_trade):
        trade = make_trade(status=TradeStatus.DEPOSITED)

        with pytest.raises(ConcurrencyConflict):
            await engine.cancel_trade(trade.trade_id, BUYER)


class TestFiatHandshake:

    @pytest.mark.asyncio
    async def test_sent_then_received_makes_trade_releasable(self, engine, make_trade):
        trade = make_trade(status=TradeStatus.DEPOSITED)

        trade = await engine.mark_fiat_sent(trade.trade_id, BUYER)
        assert trade.status == TradeStatus.IN_FIAT_TRANSFER
        assert trade.buyer_sent_fiat

        trade = await engine.confirm_fiat_received(trade.trade_id, SELLER)
        assert trade.status == TradeStatus.READY_TO_RELEASE
        assert trade.seller_received_fiat

    @pytest.mark.asyncio
    async def test_seller_cannot_mark_fiat_sent(self, engine, make_trade):
        trade = make_trade(status=TradeStatus.DEPOSITED)

        with pytest.raises(AuthorizationError):
            await engine.mark_fiat_sent(trade.trade_id, SELLER)

    @pytest.mark.asyncio
    async def test_fiat_issue_opens_dispute(self, engine, messenger, make_trade):
        trade = make_trade(status=TradeStatus.IN_FIAT_TRANSFER)

        trade = await engine.report_fiat_issue(trade.trade_id, SELLER, "Nothing arrived")

        assert trade.status == TradeStatus.DISPUTED
        assert trade.disputed_by == SELLER.user_id
        assert any(embed is not None and embed.title == "Dispute Raised" for _, _, embed in messenger.sent)


class TestDisputes:

    @pytest.mark.asyncio
    async def test_participant_raises_dispute(self, engine, make_trade):
        trade = make_trade(status=TradeStatus.DEPOSITED)

        trade = await engine.raise_dispute(trade.trade_id, BUYER, "Seller went quiet")

        assert trade.status == TradeStatus.DISPUTED
        assert trade.dispute_reason == "Seller went quiet"

    @pytest.mark.asyncio
    async def test_dispute_needs_funds(self, engine, make_trade):
        trade = make_trade(status=TradeStatus.AWAITING_DEPOSIT, balance="0")

        with pytest.raises(ConcurrencyConflict):
            await engine.raise_dispute(trade.trade_id, BUYER)

    @pytest.mark.asyncio
    async def test_stranger_cannot_dispute(self, engine, make_trade):
        trade = make_trade(status=TradeStatus.DEPOSITED)

        with pytest.raises(AuthorizationError):
            await engine.raise_dispute(trade.trade_id, STRANGER)

    @pytest.mark.asyncio
    async def test_admin_resolves_dispute_with_release(self, engine, chain, make_trade):
        trade = make_trade(status=TradeStatus.DISPUTED)

        result = await engine.resolve_dispute(trade.trade_id, ADMIN, "release")

        assert result.is_full
        assert chain.submissions[0]["to"] == BUYER_ADDRESS
        assert result.trade.status == TradeStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_only_admin_resolves(self, engine, make_trade):
        trade = make_trade(status=TradeStatus.DISPUTED)

        with pytest.raises(AuthorizationError):
            await engine.resolve_dispute(trade.trade_id, BUYER, "refund")


class TestSettlementApprovals:

    @pytest.mark.asyncio
    async def test_single_approval_does_not_move_funds(self, engine, trades, chain, make_trade):
        trade = make_trade()

        assert await engine.approve_release(trade.trade_id, BUYER) is None

        assert chain.submissions == []
        assert trades.get(trade.trade_id).approvals(SettlementKind.RELEASE) == (True, False)

    @pytest.mark.asyncio
    async def test_second_approval_executes(self, engine, chain, make_trade):
        trade = make_trade()

        await engine.approve_release(trade.trade_id, BUYER)
        result = await engine.approve_release(trade.trade_id, SELLER)

        assert result.is_full
        assert len(chain.submissions) == 1

    @pytest.mark.asyncio
    async def test_admin_approval_counts_for_both_sides(self, engine, chain, make_trade):
        trade = make_trade(status=TradeStatus.DEPOSITED)

        result = await engine.approve_refund(trade.trade_id, ADMIN)

        assert result.kind == SettlementKind.REFUND
        assert chain.submissions[0]["to"] == SELLER_ADDRESS

    @pytest.mark.asyncio
    async def test_stranger_cannot_approve(self, engine, make_trade):
        trade = make_trade()

        with pytest.raises(AuthorizationError):
            await engine.approve_release(trade.trade_id, STRANGER)

    @pytest.mark.asyncio
    async def test_decline_clears_both_flags(self, engine, trades, make_trade):
        trade = make_trade(buyer_approved_release=True)

        await engine.decline_release(trade.trade_id, SELLER)

        assert trades.get(trade.trade_id).approvals(SettlementKind.RELEASE) == (False, False)

    @pytest.mark.asyncio
    async def test_partial_request_then_approvals(self, engine, trades, chain, make_trade):
        trade = make_trade()

        await engine.request_release(trade.trade_id, BUYER, "250")
        await engine.approve_release(trade.trade_id, BUYER)
        result = await engine.approve_release(trade.trade_id, SELLER)

        assert not result.is_full
        stored = trades.get(trade.trade_id)
        assert stored.balance == Decimal("750")
        assert stored.status == TradeStatus.READY_TO_RELEASE

    @pytest.mark.asyncio
    async def test_request_restarts_approvals(self, engine, trades, make_trade):
        trade = make_trade(buyer_approved_release=True)

        await engine.request_release(trade.trade_id, SELLER, "100")

        stored = trades.get(trade.trade_id)
        assert stored.approvals(SettlementKind.RELEASE) == (False, False)
        assert stored.pending_release_amount == Decimal("100")

    @pytest.mark.asyncio
    async def test_request_above_balance_rejected(self, engine, make_trade):
        trade = make_trade(balance="50")

        with pytest.raises(ValidationError):
            await engine.request_refund(trade.trade_id, SELLER, "100")

    @pytest.mark.asyncio
    async def test_release_blocked_before_fiat_received(self, engine, make_trade):
        trade = make_trade(status=TradeStatus.IN_FIAT_TRANSFER)

        with pytest.raises(ValidationError):
            await engine.approve_release(trade.trade_id, BUYER)

    @pytest.mark.asyncio
    async def test_force_requires_admin(self, engine, make_trade):
        trade = make_trade()

        with pytest.raises(AuthorizationError):
            await engine.force_release(trade.trade_id, SELLER)

    @pytest.mark.asyncio
    async def test_force_partial_refund(self, engine, trades, chain, make_trade):
        trade = make_trade(status=TradeStatus.DEPOSITED)

        result = await engine.force_refund(trade.trade_id, ADMIN, "100")

        assert result.wei == 100 * 10 ** 18
        assert trades.get(trade.trade_id).balance == Decimal("900")
