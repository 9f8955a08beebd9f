import logging

import discord

import config
from models import SettlementKind

logger = logging.getLogger("NotificationService")


class NotificationService:
    """Broadcasts downstream of deposits and settlements.

    Each broadcast is claimed through an idempotency flag on the trade before
    it is sent, so a settlement event delivered twice is announced once.
    Failures are logged and swallowed; they never undo a fund movement.
    """

    def __init__(self, messenger, trades):
        self.messenger = messenger
        self.trades = trades

    def _claim(self, trade_id, check_and_set):
        claimed = []

        def _mutate(trade):
            claimed.clear()
            if check_and_set(trade) is False:
                return False
            claimed.append(True)

        try:
            self.trades.update(trade_id, _mutate, retries=2)
        except Exception as e:
            logger.error(f"[NOTIFY] Could not claim broadcast flag on {trade_id}: {e}")
            return False
        return bool(claimed)

    async def _send(self, venue_id, embed, log=False, channel_id=None):
        try:
            if venue_id:
                await self.messenger.send(venue_id, embed=embed)
            if log or channel_id:
                await self.messenger.send_log(embed=embed, channel_id=channel_id)
            return True
        except Exception as e:
            logger.error(f"[NOTIFY] Broadcast failed for venue {venue_id}: {e}")
            return False

    async def deposit_confirmed(self, trade, result):
        embed = discord.Embed(
            title="Deposit Confirmed",
            description=f"**{result.new_amount} {trade.token}** received. Escrowed total: **{trade.balance} {trade.token}**.",
            color=discord.Color.green(),
        )
        for tx_hash in result.tx_hashes:
            url = config.get_explorer_tx_url(trade.chain, tx_hash)
            embed.add_field(name="Transaction", value=f"[{tx_hash[:12]}...]({url})" if url else tx_hash, inline=False)
        embed.set_footer(text=f"Trade {trade.trade_id}")
        return await self._send(trade.venue_id, embed)

    async def partial_deposit(self, trade, result):
        total = str(result.balance)

        def _check(t):
            if t.partial_deposit_log_total == total:
                return False
            t.partial_deposit_log_total = total

        if not self._claim(trade.trade_id, _check):
            return False
        missing = (result.expected or result.balance) - result.balance
        embed = discord.Embed(
            title="Partial Deposit",
            description=(
                f"Received **{result.new_amount} {trade.token}** (total {result.balance}). "
                f"Still expected: **{missing} {trade.token}**."
            ),
            color=discord.Color.orange(),
        )
        embed.set_footer(text=f"Trade {trade.trade_id}")
        return await self._send(trade.venue_id, embed)

    async def settlement(self, trade, result):
        """Announce a release or refund, once per transaction hash."""
        kind = SettlementKind(result.kind)
        prefix = "completion" if kind == SettlementKind.RELEASE else "refund"

        def _check(t):
            if getattr(t, f"{prefix}_log_tx") == result.tx_hash:
                return False
            setattr(t, f"{prefix}_log_tx", result.tx_hash)
            if result.is_full:
                setattr(t, f"{prefix}_log_sent", True)

        if not self._claim(trade.trade_id, _check):
            logger.info(f"[NOTIFY] {kind.value} {result.tx_hash} already announced")
            return False

        if kind == SettlementKind.RELEASE:
            title = "Deal Completed" if result.is_full else "Partial Release"
            color = discord.Color.green()
            target = trade.buyer_address
        else:
            title = "Deal Refunded" if result.is_full else "Partial Refund"
            color = discord.Color.blue()
            target = trade.seller_address

        url = config.get_explorer_tx_url(trade.chain, result.tx_hash)
        embed = discord.Embed(title=title, color=color)
        embed.add_field(name="Amount", value=f"{result.amount} {trade.token}", inline=True)
        embed.add_field(name="To", value=f"`{target}`", inline=True)
        embed.add_field(name="Transaction", value=f"[{result.tx_hash[:12]}...]({url})" if url else result.tx_hash, inline=False)
        if not result.is_full:
            embed.add_field(name="Remaining", value=f"{trade.balance} {trade.token}", inline=True)
        embed.set_footer(text=f"Trade {trade.trade_id}")
        return await self._send(trade.venue_id, embed, log=result.is_full)

    async def settlement_unconfirmed(self, trade, kind, tx_hash):
        embed = discord.Embed(
            title="Settlement Pending Confirmation",
            description=(
                f"The {SettlementKind(kind).value} transaction `{tx_hash}` was submitted but not confirmed yet. "
                "It will be finalized automatically once it lands. Do not retry."
            ),
            color=discord.Color.orange(),
        )
        embed.set_footer(text=f"Trade {trade.trade_id}")
        return await self._send(trade.venue_id, embed, log=True)

    async def dispute_raised(self, trade, actor):
        embed = discord.Embed(
            title="Dispute Raised",
            description=f"{actor.label} opened a dispute on trade `{trade.trade_id}`.",
            color=discord.Color.red(),
        )
        if trade.dispute_reason:
            embed.add_field(name="Reason", value=trade.dispute_reason[:1024], inline=False)
        embed.add_field(name="Escrowed", value=f"{trade.balance} {trade.token or ''}", inline=True)
        if trade.venue_id:
            embed.add_field(name="Venue", value=f"<#{trade.venue_id}>", inline=True)
        return await self._send(trade.venue_id, embed, channel_id=config.DISPUTE_CHANNEL_ID or None)

    async def join_expired(self, trade):
        embed = discord.Embed(
            title="Trade Expired",
            description=f"Trade `{trade.trade_id}` expired: not every participant joined in time.",
            color=discord.Color.dark_grey(),
        )
        return await self._send(None, embed, log=True)
