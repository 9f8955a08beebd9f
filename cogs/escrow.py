import logging
from typing import Literal, Optional

import discord
from discord import app_commands
from discord.ext import commands, tasks

import config
from bot_utils import safe_respond
from handlers.utils import get_explorer_url, short_hash
from models import ACTIVE_STATUSES, TERMINAL_STATUSES, Participant, TradeStatus
from services.errors import EscrowError, NotFoundError

logger = logging.getLogger("EscrowCog")

STATUS_COLORS = {
    TradeStatus.DRAFT: 0x95A5A6,
    TradeStatus.AWAITING_DETAILS: 0x3498DB,
    TradeStatus.AWAITING_DEPOSIT: 0xF1C40F,
    TradeStatus.DEPOSITED: 0x2ECC71,
    TradeStatus.IN_FIAT_TRANSFER: 0xE67E22,
    TradeStatus.READY_TO_RELEASE: 0x1ABC9C,
    TradeStatus.DISPUTED: 0xE74C3C,
    TradeStatus.COMPLETED: 0x27AE60,
    TradeStatus.REFUNDED: 0x2980B9,
    TradeStatus.CANCELLED: 0x7F8C8D,
}


def actor_of(user):
    return Participant(user.id, user.name)


def trade_embed(trade):
    embed = discord.Embed(
        title=f"Trade {trade.trade_id}",
        description=f"Status: **{trade.status.value.replace('_', ' ').title()}**",
        color=STATUS_COLORS.get(trade.status, 0x5865F2),
    )
    embed.add_field(name="Buyer", value=f"<@{trade.buyer_id}>" if trade.buyer_id else "—", inline=True)
    embed.add_field(name="Seller", value=f"<@{trade.seller_id}>" if trade.seller_id else "—", inline=True)
    if trade.token:
        embed.add_field(name="Terms", value=f"{trade.quantity} {trade.token} on {trade.chain}"
                        + (f" @ {trade.rate}" if trade.rate else "")
                        + (f" via {trade.payment_method}" if trade.payment_method else ""), inline=False)
    if trade.buyer_address:
        embed.add_field(name="Buyer Address", value=f"`{trade.buyer_address}`", inline=False)
    if trade.seller_address:
        embed.add_field(name="Seller Address", value=f"`{trade.seller_address}`", inline=False)
    if trade.deposit_address:
        embed.add_field(name="Deposit To", value=f"`{trade.deposit_address}`", inline=False)
        embed.add_field(name="Escrowed", value=f"{trade.balance} {trade.token}", inline=True)
        if trade.escrow_fee:
            embed.add_field(name="Fee", value=f"{trade.escrow_fee} {trade.token} ({trade.fee_rate}%)", inline=True)
    for label, tx_hash in (("Release Tx", trade.release_tx_hash), ("Refund Tx", trade.refund_tx_hash)):
        if tx_hash:
            embed.add_field(name=label, value=f"[{short_hash(tx_hash)}]({get_explorer_url(trade.chain, tx_hash)})", inline=False)
    if trade.pending_settlement:
        embed.add_field(name="Awaiting Confirmation", value=f"`{trade.pending_settlement.get('tx_hash')}`", inline=False)
    return embed


class Escrow(commands.Cog):
    def __init__(self, bot):
        self.bot = bot
        self.deposit_poll.change_interval(seconds=config.DEPOSIT_POLL_SECONDS)
        self.reconcile_loop.change_interval(seconds=config.RECONCILE_INTERVAL_SECONDS)
        self.deposit_poll.start()
        self.reconcile_loop.start()

    def cog_unload(self):
        self.deposit_poll.cancel()
        self.reconcile_loop.cancel()

    @property
    def engine(self):
        return self.bot.engine

    def _resolve_trade(self, interaction, trade_id=None):
        trades = self.bot.trades
        if trade_id:
            return trades.require(trade_id.strip().upper())
        trade = trades.find_by_venue(interaction.channel_id, ACTIVE_STATUSES | TERMINAL_STATUSES)
        if not trade:
            raise NotFoundError("No trade is bound to this channel. Pass a trade id.")
        return trade

    async def _run(self, interaction, action, success, ephemeral=False):
        """Defer, run an engine call, report EscrowErrors to the caller only."""
        await safe_respond(interaction, defer=True, ephemeral=ephemeral)
        try:
            result = await action()
        except EscrowError as e:
            await safe_respond(interaction, content=f"❌ {e}", ephemeral=True)
            return None
        except Exception as e:
            logger.error(f"[CMD] /{interaction.command.name if interaction.command else '?'} failed: {e}", exc_info=True)
            await safe_respond(interaction, content="⚠️ Something went wrong. Please try again later.", ephemeral=True)
            return None
        await safe_respond(interaction, **success(result), ephemeral=ephemeral)
        return result

    async def _post_summary(self, trade):
        """Pin the locked deal summary in the trade room, once."""
        if not trade.venue_id or self.bot.trades.get_ui_ref(trade.trade_id, "summary_message_id"):
            return
        channel = self.bot.get_channel(int(trade.venue_id))
        if channel is None:
            return
        try:
            message = await channel.send(embed=trade_embed(trade))
            await message.pin()
        except discord.HTTPException as e:
            logger.warning(f"[SUMMARY] Could not post summary for {trade.trade_id}: {e}")
            return
        self.bot.trades.set_ui_ref(trade.trade_id, "summary_message_id", message.id)

    # --- background duties ---
    @tasks.loop(seconds=30)
    async def deposit_poll(self):
        try:
            await self.engine.poll_deposits()
        except Exception as e:
            logger.error(f"[DEPOSIT] Poll loop error: {e}")

    @deposit_poll.before_loop
    async def before_deposit_poll(self):
        await self.bot.wait_until_ready()

    @tasks.loop(seconds=120)
    async def reconcile_loop(self):
        try:
            await self.bot.reconciler.sweep()
        except Exception as e:
            logger.error(f"[RECONCILE] Sweep error: {e}")

    @reconcile_loop.before_loop
    async def before_reconcile(self):
        await self.bot.wait_until_ready()

    # --- venue admission ---
    @commands.Cog.listener()
    async def on_member_join(self, member: discord.Member):
        actor = actor_of(member)
        for trade in self.bot.trades.list_by_status([TradeStatus.DRAFT]):
            if self.engine._is_allowed(trade, actor):
                try:
                    await self.engine.record_join(trade.trade_id, actor)
                except EscrowError as e:
                    logger.warning(f"[JOIN] {member} on {trade.trade_id}: {e}")

    @app_commands.command(name="trade", description="Open a new escrow trade with another user")
    @app_commands.describe(counterparty="The user you are trading with")
    async def trade_start(self, interaction: discord.Interaction, counterparty: discord.User):
        async def action():
            return await self.engine.create_trade(actor_of(interaction.user), actor_of(counterparty))

        def success(result):
            trade, invite = result
            embed = discord.Embed(
                title="Trade Opened",
                description=(
                    f"Trade `{trade.trade_id}` with {counterparty.mention}.\n"
                    f"Both of you must join within **{config.JOIN_TIMEOUT_SECONDS // 60} minutes**: "
                    f"{invite or f'<#{trade.venue_id}>'}"
                ),
                color=0x5865F2,
            )
            return {"embed": embed}

        await self._run(interaction, action, success, ephemeral=True)

    @app_commands.command(name="join", description="Join a trade room you were invited to")
    async def join(self, interaction: discord.Interaction, trade_id: str):
        async def action():
            return await self.engine.record_join(trade_id.strip().upper(), actor_of(interaction.user))

        def success(outcome):
            if not outcome.approved:
                return {"content": "❌ You are not part of that trade."}
            if outcome.quorum:
                return {"content": "✅ Joined. Everyone is here, pick your roles with `/role`."}
            return {"content": "✅ Joined. Waiting for your counterparty."}

        await self._run(interaction, action, success, ephemeral=True)

    # --- setup ---
    @app_commands.command(name="role", description="Claim your role in this trade")
    async def role(self, interaction: discord.Interaction, role: Literal["buyer", "seller"], trade_id: Optional[str] = None):
        async def action():
            trade = self._resolve_trade(interaction, trade_id)
            return await self.engine.select_role(trade.trade_id, actor_of(interaction.user), role)

        await self._run(interaction, action, lambda t: {"embed": trade_embed(t)})

    @app_commands.command(name="terms", description="Set the token, chain and quantity for this trade")
    async def terms(self, interaction: discord.Interaction, token: str, chain: str, quantity: str,
                    rate: Optional[str] = None, payment_method: Optional[str] = None, trade_id: Optional[str] = None):
        async def action():
            trade = self._resolve_trade(interaction, trade_id)
            return await self.engine.set_terms(trade.trade_id, actor_of(interaction.user), token, chain, quantity, rate, payment_method)

        await self._run(interaction, action, lambda t: {"embed": trade_embed(t)})

    @app_commands.command(name="address", description="Set your payout address")
    async def address(self, interaction: discord.Interaction, address: str, trade_id: Optional[str] = None):
        async def action():
            trade = self._resolve_trade(interaction, trade_id)
            role = trade.role_of(interaction.user.id)
            if role is None:
                raise NotFoundError("Claim a role with `/role` first.")
            return await self.engine.set_address(trade.trade_id, actor_of(interaction.user), role, address)

        await self._run(interaction, action, lambda t: {"embed": trade_embed(t)})

    @app_commands.command(name="confirm_terms", description="Approve the current terms and addresses")
    async def confirm_terms(self, interaction: discord.Interaction, trade_id: Optional[str] = None):
        async def action():
            trade = self._resolve_trade(interaction, trade_id)
            trade = await self.engine.approve_terms(trade.trade_id, actor_of(interaction.user))
            if trade.status == TradeStatus.AWAITING_DEPOSIT:
                await self._post_summary(trade)
            return trade

        def success(trade):
            if trade.status == TradeStatus.AWAITING_DEPOSIT:
                return {"content": f"✅ Terms locked. Seller, deposit **{trade.quantity} {trade.token}** ({trade.chain}) to `{trade.deposit_address}`.",
                        "embed": trade_embed(trade)}
            return {"content": "✅ Approval recorded. Waiting for the other party."}

        await self._run(interaction, action, success)

    @app_commands.command(name="cancel", description="Cancel a trade before funds are deposited")
    async def cancel(self, interaction: discord.Interaction, trade_id: Optional[str] = None):
        async def action():
            trade = self._resolve_trade(interaction, trade_id)
            return await self.engine.cancel_trade(trade.trade_id, actor_of(interaction.user))

        await self._run(interaction, action, lambda t: {"content": f"🛑 Trade `{t.trade_id}` cancelled."})

    # --- funding and fiat ---
    @app_commands.command(name="check_deposit", description="Check the chain for the escrow deposit")
    async def check_deposit(self, interaction: discord.Interaction, trade_id: Optional[str] = None):
        async def action():
            trade = self._resolve_trade(interaction, trade_id)
            return await self.engine.check_deposit(trade.trade_id, actor_of(interaction.user))

        def success(result):
            if not result.found:
                return {"content": f"⏳ No new deposit yet. Escrowed: {result.balance}."}
            return {"content": f"✅ Received {result.new_amount}. Escrowed: {result.balance}."}

        await self._run(interaction, action, success)

    @app_commands.command(name="fiat_sent", description="Buyer: confirm you sent the fiat payment")
    async def fiat_sent(self, interaction: discord.Interaction, trade_id: Optional[str] = None):
        async def action():
            trade = self._resolve_trade(interaction, trade_id)
            return await self.engine.mark_fiat_sent(trade.trade_id, actor_of(interaction.user))

        await self._run(interaction, action, lambda t: {"content": "💸 Marked as sent. Seller, confirm with `/fiat_received`."})

    @app_commands.command(name="fiat_received", description="Seller: confirm the fiat payment arrived")
    async def fiat_received(self, interaction: discord.Interaction, trade_id: Optional[str] = None):
        async def action():
            trade = self._resolve_trade(interaction, trade_id)
            return await self.engine.confirm_fiat_received(trade.trade_id, actor_of(interaction.user))

        await self._run(interaction, action, lambda t: {"content": "✅ Payment confirmed. Both parties can now `/approve release`."})

    @app_commands.command(name="fiat_issue", description="Seller: report that the fiat payment did not arrive")
    async def fiat_issue(self, interaction: discord.Interaction, reason: Optional[str] = None, trade_id: Optional[str] = None):
        async def action():
            trade = self._resolve_trade(interaction, trade_id)
            return await self.engine.report_fiat_issue(trade.trade_id, actor_of(interaction.user), reason)

        await self._run(interaction, action, lambda t: {"content": "⚠️ Reported. An admin will review this trade."})

    @app_commands.command(name="dispute", description="Open a dispute on this trade")
    async def dispute(self, interaction: discord.Interaction, reason: str, trade_id: Optional[str] = None):
        async def action():
            trade = self._resolve_trade(interaction, trade_id)
            return await self.engine.raise_dispute(trade.trade_id, actor_of(interaction.user), reason)

        await self._run(interaction, action, lambda t: {"content": "⚠️ Dispute opened. An admin will review this trade."})

    # --- settlement ---
    @app_commands.command(name="request", description="Propose a release or refund, optionally partial")
    async def request(self, interaction: discord.Interaction, kind: Literal["release", "refund"],
                      amount: Optional[str] = None, trade_id: Optional[str] = None):
        async def action():
            trade = self._resolve_trade(interaction, trade_id)
            return await self.engine.request_settlement(trade.trade_id, actor_of(interaction.user), kind, amount)

        def success(trade):
            staged = trade.pending_amount(kind)
            return {"content": f"📝 {kind.title()} of **{staged or trade.balance} {trade.token}** proposed. Both parties must `/approve {kind}`."}

        await self._run(interaction, action, success)

    @app_commands.command(name="approve", description="Approve the proposed release or refund")
    async def approve(self, interaction: discord.Interaction, kind: Literal["release", "refund"], trade_id: Optional[str] = None):
        async def action():
            trade = self._resolve_trade(interaction, trade_id)
            return await self.engine.approve_settlement(trade.trade_id, actor_of(interaction.user), kind)

        def success(result):
            if result is None:
                return {"content": f"✅ {kind.title()} approval recorded. Waiting for the other party."}
            url = get_explorer_url(result.trade.chain, result.tx_hash)
            return {"content": f"✅ {kind.title()} of {result.amount} {result.trade.token} sent: [{short_hash(result.tx_hash)}]({url})"}

        await self._run(interaction, action, success)

    @app_commands.command(name="decline", description="Decline the proposed release or refund")
    async def decline(self, interaction: discord.Interaction, kind: Literal["release", "refund"], trade_id: Optional[str] = None):
        async def action():
            trade = self._resolve_trade(interaction, trade_id)
            return await self.engine.decline_settlement(trade.trade_id, actor_of(interaction.user), kind)

        await self._run(interaction, action, lambda t: {"content": f"↩️ {kind.title()} declined. Approvals reset."})

    @app_commands.command(name="close", description="Close the trade room now that the trade is finished")
    async def close(self, interaction: discord.Interaction, trade_id: Optional[str] = None):
        async def action():
            trade = self._resolve_trade(interaction, trade_id)
            return await self.engine.close_venue(trade.trade_id, actor_of(interaction.user))

        await self._run(interaction, action, lambda status: {"content": "🔒 Room closed."}, ephemeral=True)

    @app_commands.command(name="status", description="Show the current state of a trade")
    async def status(self, interaction: discord.Interaction, trade_id: Optional[str] = None):
        async def action():
            return self._resolve_trade(interaction, trade_id)

        await self._run(interaction, action, lambda t: {"embed": trade_embed(t)}, ephemeral=True)


async def setup(bot):
    await bot.add_cog(Escrow(bot))
