"""
Fund movement: partial and full settlements, pre-flight checks, duplicate
triggers and verification timeouts.
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from models import SettlementKind, TradeStatus
from services.errors import ChainError, InsufficientContractBalance, ValidationError, VerificationTimeout
from tests.conftest import ADMIN, BUYER, BUYER_ADDRESS, SELLER, SELLER_ADDRESS, TOKEN_UNIT, VAULT


def _approve_both(trades, trade_id, kind, amount=None):
    def _mutate(t):
        t.set_approvals(kind, True, True)
        t.set_pending_amount(kind, amount)
    return trades.update(trade_id, _mutate)


class TestPartialAndFullRelease:

    @pytest.mark.asyncio
    async def test_partial_then_full_release(self, trades, fund, chain, make_trade):
        trade = make_trade()
        _approve_both(trades, trade.trade_id, SettlementKind.RELEASE, Decimal("400"))

        result = await fund.execute(trade.trade_id, SettlementKind.RELEASE)

        assert result.wei == 400 * TOKEN_UNIT
        assert not result.is_full
        stored = trades.get(trade.trade_id)
        assert stored.balance == Decimal("600")
        assert stored.balance_wei == 600 * TOKEN_UNIT
        assert stored.status == TradeStatus.READY_TO_RELEASE
        assert stored.approvals(SettlementKind.RELEASE) == (False, False)
        assert stored.pending_release_amount is None
        assert stored.release_tx_hashes == [result.tx_hash]

        _approve_both(trades, trade.trade_id, SettlementKind.RELEASE, Decimal("600"))
        final = await fund.execute(trade.trade_id, SettlementKind.RELEASE)

        assert final.wei == 600 * TOKEN_UNIT
        assert final.is_full
        stored = trades.get(trade.trade_id)
        assert stored.status == TradeStatus.COMPLETED
        assert stored.balance == Decimal("0")
        assert stored.balance_wei == 0
        assert stored.release_tx_hash == final.tx_hash
        assert len(stored.release_tx_hashes) == 2
        assert [s["to"] for s in chain.submissions] == [BUYER_ADDRESS, BUYER_ADDRESS]
        assert all(s["contract"] == VAULT for s in chain.submissions)

    @pytest.mark.asyncio
    async def test_refund_goes_to_seller(self, trades, fund, chain, make_trade):
        trade = make_trade(status=TradeStatus.DEPOSITED, balance="50")
        _approve_both(trades, trade.trade_id, SettlementKind.REFUND)

        result = await fund.execute(trade.trade_id, SettlementKind.REFUND)

        assert result.is_full
        assert chain.submissions[0]["to"] == SELLER_ADDRESS
        assert chain.submissions[0]["wei"] == 50 * TOKEN_UNIT
        assert trades.get(trade.trade_id).status == TradeStatus.REFUNDED


class TestRejections:

    @pytest.mark.asyncio
    async def test_refund_above_balance_never_reaches_chain(self, trades, fund, chain, make_trade):
        trade = make_trade(status=TradeStatus.DEPOSITED, balance="50")
        _approve_both(trades, trade.trade_id, SettlementKind.REFUND, Decimal("100"))

        with pytest.raises(ValidationError):
            await fund.execute(trade.trade_id, SettlementKind.REFUND)

        assert chain.submissions == []
        assert trades.get(trade.trade_id).balance == Decimal("50")

    @pytest.mark.asyncio
    async def test_release_not_allowed_before_fiat_confirmed(self, trades, fund, chain, make_trade):
        trade = make_trade(status=TradeStatus.DEPOSITED)
        _approve_both(trades, trade.trade_id, SettlementKind.RELEASE)

        with pytest.raises(ValidationError):
            await fund.execute(trade.trade_id, SettlementKind.RELEASE)
        assert chain.submissions == []

    @pytest.mark.asyncio
    async def test_insufficient_contract_balance_aborts_before_submit(self, trades, fund, chain, make_trade):
        trade = make_trade()
        _approve_both(trades, trade.trade_id, SettlementKind.RELEASE)
        chain.contract_balance = 10 * TOKEN_UNIT

        with pytest.raises(InsufficientContractBalance) as excinfo:
            await fund.execute(trade.trade_id, SettlementKind.RELEASE)

        assert excinfo.value.required_wei == 1000 * TOKEN_UNIT
        assert chain.submissions == []
        stored = trades.get(trade.trade_id)
        assert stored.status == TradeStatus.READY_TO_RELEASE
        assert stored.approvals(SettlementKind.RELEASE) == (True, True)

    @pytest.mark.asyncio
    async def test_reverted_transaction_leaves_trade_untouched(self, trades, fund, chain, make_trade):
        trade = make_trade()
        _approve_both(trades, trade.trade_id, SettlementKind.RELEASE)
        before = trades.get(trade.trade_id)
        chain.verify = "revert"

        with pytest.raises(ChainError):
            await fund.execute(trade.trade_id, SettlementKind.RELEASE)

        after = trades.get(trade.trade_id)
        assert after.balance == before.balance
        assert after.status == before.status
        assert after.version == before.version

    @pytest.mark.asyncio
    async def test_missing_approval_is_a_no_op(self, trades, fund, chain, make_trade):
        trade = make_trade(buyer_approved_release=True)

        assert await fund.execute(trade.trade_id, SettlementKind.RELEASE) is None
        assert chain.submissions == []


class TestExactlyOnce:

    @pytest.mark.asyncio
    async def test_concurrent_triggers_submit_once(self, trades, fund, chain, make_trade):
        trade = make_trade()
        _approve_both(trades, trade.trade_id, SettlementKind.RELEASE)

        results = await asyncio.gather(
            fund.execute(trade.trade_id, SettlementKind.RELEASE),
            fund.execute(trade.trade_id, SettlementKind.RELEASE),
        )

        assert len(chain.submissions) == 1
        assert sum(1 for r in results if r is not None) == 1
        assert trades.get(trade.trade_id).status == TradeStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_concurrent_partial_triggers_submit_once(self, trades, fund, chain, make_trade):
        trade = make_trade()
        _approve_both(trades, trade.trade_id, SettlementKind.RELEASE, Decimal("250"))

        await asyncio.gather(
            fund.execute(trade.trade_id, SettlementKind.RELEASE),
            fund.execute(trade.trade_id, SettlementKind.RELEASE),
        )

        assert len(chain.submissions) == 1
        assert trades.get(trade.trade_id).balance == Decimal("750")

    @pytest.mark.asyncio
    async def test_engine_double_approval_submits_once(self, engine, trades, chain, make_trade):
        trade = make_trade(buyer_approved_release=True, seller_approved_release=True)

        await asyncio.gather(
            engine._execute(trade.trade_id, SettlementKind.RELEASE, BUYER),
            engine._execute(trade.trade_id, SettlementKind.RELEASE, SELLER),
        )

        assert len(chain.submissions) == 1


class TestVerificationTimeout:

    @pytest.mark.asyncio
    async def test_timeout_parks_settlement_and_blocks_resubmission(self, trades, fund, chain, make_trade):
        trade = make_trade()
        _approve_both(trades, trade.trade_id, SettlementKind.RELEASE)
        chain.verify = "timeout"

        with pytest.raises(VerificationTimeout) as excinfo:
            await fund.execute(trade.trade_id, SettlementKind.RELEASE)

        stored = trades.get(trade.trade_id)
        assert stored.status == TradeStatus.READY_TO_RELEASE
        assert stored.balance == Decimal("1000")
        assert stored.pending_settlement["tx_hash"] == excinfo.value.tx_hash
        assert stored.pending_settlement["wei"] == str(1000 * TOKEN_UNIT)

        _approve_both(trades, trade.trade_id, SettlementKind.RELEASE)
        with pytest.raises(ValidationError):
            await fund.execute(trade.trade_id, SettlementKind.RELEASE)
        assert len(chain.submissions) == 1

    @pytest.mark.asyncio
    async def test_reconciliation_finalizes_late_confirmation(self, trades, fund, chain, reconciler, make_trade):
        trade = make_trade()
        _approve_both(trades, trade.trade_id, SettlementKind.RELEASE)
        chain.verify = "timeout"
        with pytest.raises(VerificationTimeout) as excinfo:
            await fund.execute(trade.trade_id, SettlementKind.RELEASE)

        assert (await reconciler.sweep())["pending"] == 1

        chain.receipts[excinfo.value.tx_hash] = {"status": 1, "block": 1001}
        counts = await reconciler.sweep()

        assert counts["finalized"] == 1
        stored = trades.get(trade.trade_id)
        assert stored.status == TradeStatus.COMPLETED
        assert stored.pending_settlement is None
        assert stored.release_tx_hash == excinfo.value.tx_hash
        assert stored.balance_wei == 0

    @pytest.mark.asyncio
    async def test_reconciliation_clears_reverted_settlement(self, trades, fund, chain, reconciler, make_trade):
        trade = make_trade()
        _approve_both(trades, trade.trade_id, SettlementKind.RELEASE)
        chain.verify = "timeout"
        with pytest.raises(VerificationTimeout) as excinfo:
            await fund.execute(trade.trade_id, SettlementKind.RELEASE)

        chain.receipts[excinfo.value.tx_hash] = {"status": 0, "block": 1001}
        counts = await reconciler.sweep()

        assert counts["reverted"] == 1
        stored = trades.get(trade.trade_id)
        assert stored.pending_settlement is None
        assert stored.balance == Decimal("1000")
        assert stored.status == TradeStatus.READY_TO_RELEASE


class TestDownstreamEffects:

    @pytest.mark.asyncio
    async def test_completion_broadcast_and_stats_happen_once(self, engine, trades, messenger, stats, make_trade):
        trade = make_trade(buyer_approved_release=True, seller_approved_release=True)

        result = await engine._execute(trade.trade_id, SettlementKind.RELEASE, ADMIN)
        await engine.after_settlement(result)

        stored = trades.get(trade.trade_id)
        assert stored.completion_log_tx == result.tx_hash
        assert stored.completion_log_sent
        assert stored.stats_recorded
        titles = [embed.title for _, _, embed in messenger.sent if embed is not None]
        assert titles.count("Deal Completed") == 1
        assert stats.get_stats(BUYER.user_id)["deals_completed"] == 1
        assert stats.get_stats(SELLER.user_id)["deals_completed"] == 1

    @pytest.mark.asyncio
    async def test_broadcast_failure_does_not_undo_settlement(self, engine, trades, messenger, make_trade, monkeypatch):
        monkeypatch.setattr(messenger, "send", AsyncMock(side_effect=RuntimeError("discord down")))
        trade = make_trade(buyer_approved_release=True, seller_approved_release=True)

        result = await engine._execute(trade.trade_id, SettlementKind.RELEASE, ADMIN)

        assert result.is_full
        assert trades.get(trade.trade_id).status == TradeStatus.COMPLETED
        messenger.send.assert_awaited()

    @pytest.mark.asyncio
    async def test_full_settlement_schedules_recycle(self, engine, scheduler, make_trade):
        trade = make_trade(buyer_approved_release=True, seller_approved_release=True)

        await engine._execute(trade.trade_id, SettlementKind.RELEASE, ADMIN)

        assert scheduler.is_pending(f"recycle:{trade.trade_id}")


class TestInFlightEdges:

    @pytest.mark.asyncio
    async def test_deposit_during_full_refund_stays_escrowed(self, trades, fund, chain, watcher, make_trade, monkeypatch):
        trade = make_trade(status=TradeStatus.DEPOSITED, balance="100")
        _approve_both(trades, trade.trade_id, SettlementKind.REFUND)
        confirm = chain.wait_for_receipt

        async def _confirm_after_late_deposit(chain_name, tx_hash):
            chain.logs = [{"tx_hash": "0x" + "cc" * 32, "block": 999, "log_index": 0, "to": VAULT, "value_wei": 50 * TOKEN_UNIT}]
            await watcher.check(trade.trade_id)
            return await confirm(chain_name, tx_hash)

        monkeypatch.setattr(chain, "wait_for_receipt", _confirm_after_late_deposit)

        result = await fund.execute(trade.trade_id, SettlementKind.REFUND)

        assert chain.submissions[0]["wei"] == 100 * TOKEN_UNIT
        assert not result.is_full
        stored = trades.get(trade.trade_id)
        assert stored.status == TradeStatus.DEPOSITED
        assert stored.balance == Decimal("50")
        assert stored.balance_wei == 50 * TOKEN_UNIT
        assert stored.approvals(SettlementKind.REFUND) == (False, False)

    @pytest.mark.asyncio
    async def test_unknown_broadcast_is_parked_and_not_resubmitted(self, engine, trades, fund, chain, make_trade, monkeypatch):
        trade = make_trade(buyer_approved_release=True, seller_approved_release=True)
        submit = chain.submit_settlement

        async def _broadcast_lost(*args):
            tx_hash = await submit(*args)
            raise VerificationTimeout(tx_hash, "release broadcast has an unknown outcome")

        monkeypatch.setattr(chain, "submit_settlement", _broadcast_lost)

        with pytest.raises(VerificationTimeout):
            await engine._execute(trade.trade_id, SettlementKind.RELEASE, BUYER)

        stored = trades.get(trade.trade_id)
        assert stored.pending_settlement["tx_hash"] == chain.submissions[0]["tx_hash"]
        assert stored.approvals(SettlementKind.RELEASE) == (False, False)
        assert stored.balance == Decimal("1000")

        with pytest.raises(ValidationError):
            await engine.approve_release(trade.trade_id, BUYER)
        _approve_both(trades, trade.trade_id, SettlementKind.RELEASE)
        with pytest.raises(ValidationError):
            await fund.execute(trade.trade_id, SettlementKind.RELEASE)
        assert len(chain.submissions) == 1

    @pytest.mark.asyncio
    async def test_lock_dropped_once_trade_is_terminal(self, trades, fund, make_trade):
        trade = make_trade()
        _approve_both(trades, trade.trade_id, SettlementKind.RELEASE, Decimal("100"))
        await fund.execute(trade.trade_id, SettlementKind.RELEASE)
        assert trade.trade_id in fund._locks

        _approve_both(trades, trade.trade_id, SettlementKind.RELEASE)
        await fund.execute(trade.trade_id, SettlementKind.RELEASE)

        assert trade.trade_id not in fund._locks
