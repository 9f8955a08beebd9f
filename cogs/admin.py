import json
import logging
from datetime import datetime
from typing import Literal, Optional

import discord
from discord import app_commands
from discord.ext import commands

import config
from bot_utils import safe_respond
from cogs.escrow import actor_of, trade_embed
from handlers.utils import get_explorer_url, short_hash
from services.errors import EscrowError, ValidationError

logger = logging.getLogger("AdminCog")


def is_admin_check():
    async def predicate(interaction: discord.Interaction) -> bool:
        return config.is_admin(interaction.user.id, interaction.user.name)
    return app_commands.check(predicate)


class Admin(commands.Cog):
    def __init__(self, bot):
        self.bot = bot

    async def _run(self, interaction, action, success):
        await safe_respond(interaction, defer=True, ephemeral=True)
        try:
            result = await action()
        except EscrowError as e:
            await safe_respond(interaction, content=f"❌ {e}", ephemeral=True)
            return None
        except Exception as e:
            logger.error(f"[ADMIN] /{interaction.command.name if interaction.command else '?'} failed: {e}", exc_info=True)
            await safe_respond(interaction, content=f"⚠️ Failed: {e}", ephemeral=True)
            return None
        await safe_respond(interaction, **success(result), ephemeral=True)
        return result

    @staticmethod
    def _settled(result):
        if result is None:
            return {"content": "Nothing to settle (already settled or approvals consumed)."}
        url = get_explorer_url(result.trade.chain, result.tx_hash)
        return {"content": f"✅ {result.kind.value.title()} of {result.amount} {result.trade.token} sent: [{short_hash(result.tx_hash)}]({url})"}

    @app_commands.command(name="force_release", description="[Admin] Release escrowed funds to the buyer")
    @is_admin_check()
    async def force_release(self, interaction: discord.Interaction, trade_id: str, amount: Optional[str] = None):
        async def action():
            return await self.bot.engine.force_release(trade_id.strip().upper(), actor_of(interaction.user), amount)
        await self._run(interaction, action, self._settled)

    @app_commands.command(name="force_refund", description="[Admin] Refund escrowed funds to the seller")
    @is_admin_check()
    async def force_refund(self, interaction: discord.Interaction, trade_id: str, amount: Optional[str] = None):
        async def action():
            return await self.bot.engine.force_refund(trade_id.strip().upper(), actor_of(interaction.user), amount)
        await self._run(interaction, action, self._settled)

    @app_commands.command(name="resolve_dispute", description="[Admin] Settle a disputed trade")
    @is_admin_check()
    async def resolve_dispute(self, interaction: discord.Interaction, trade_id: str,
                              outcome: Literal["release", "refund"], amount: Optional[str] = None):
        async def action():
            return await self.bot.engine.resolve_dispute(trade_id.strip().upper(), actor_of(interaction.user), outcome, amount)
        await self._run(interaction, action, self._settled)

    @app_commands.command(name="trade_info", description="[Admin] Inspect a trade and its audit trail")
    @is_admin_check()
    async def trade_info(self, interaction: discord.Interaction, trade_id: str):
        async def action():
            trade = self.bot.trades.require(trade_id.strip().upper())
            return trade, self.bot.audit.history(trade.trade_id, limit=10)

        def success(result):
            trade, history = result
            embed = trade_embed(trade)
            if history:
                lines = [
                    f"`{datetime.fromtimestamp(h['timestamp']).strftime('%m-%d %H:%M')}` {h['action']} by {h['user_id']}"
                    for h in history
                ]
                embed.add_field(name="Recent Activity", value="\n".join(lines)[:1024], inline=False)
            return {"embed": embed}

        await self._run(interaction, action, success)

    # --- venue pool ---
    @app_commands.command(name="pool_add", description="[Admin] Add a private channel to the trade room pool")
    @app_commands.describe(contracts='Optional JSON: {"USDT": {"address": "0x...", "chain": "BSC"}}')
    @is_admin_check()
    async def pool_add(self, interaction: discord.Interaction, channel: discord.TextChannel, contracts: Optional[str] = None):
        async def action():
            mapping = None
            if contracts:
                try:
                    mapping = {k.upper(): v for k, v in json.loads(contracts).items()}
                except (ValueError, AttributeError):
                    raise ValidationError("Contracts must be a JSON object.")
            return self.bot.pool.add_venue(str(channel.id), channel.name, mapping)

        await self._run(interaction, action, lambda v: {"content": f"✅ <#{v.venue_id}> is in the pool ({v.status.value})."})

    @app_commands.command(name="pool_stats", description="[Admin] Trade room pool usage")
    @is_admin_check()
    async def pool_stats(self, interaction: discord.Interaction):
        async def action():
            return self.bot.pool.pool_stats()

        def success(stats):
            embed = discord.Embed(title="Trade Room Pool", color=0x5865F2)
            for key in ("available", "assigned", "terminal", "archived", "total"):
                embed.add_field(name=key.title(), value=str(stats.get(key, 0)), inline=True)
            return {"embed": embed}

        await self._run(interaction, action, success)

    @app_commands.command(name="pool_reset", description="[Admin] Return retired rooms with no active trade to the pool")
    @is_admin_check()
    async def pool_reset(self, interaction: discord.Interaction):
        async def action():
            return self.bot.pool.reset_terminal_venues()
        await self._run(interaction, action, lambda ids: {"content": f"♻️ Reset {len(ids)} room(s)."})

    @app_commands.command(name="pool_archive", description="[Admin] Take a room out of rotation")
    @is_admin_check()
    async def pool_archive(self, interaction: discord.Interaction, channel: discord.TextChannel):
        async def action():
            return self.bot.pool.archive_venue(str(channel.id))
        await self._run(interaction, action, lambda _: {"content": f"🗄️ <#{channel.id}> archived."})

    @app_commands.command(name="reconcile", description="[Admin] Re-check unconfirmed settlements now")
    @is_admin_check()
    async def reconcile(self, interaction: discord.Interaction):
        async def action():
            return await self.bot.reconciler.sweep()
        await self._run(interaction, action, lambda c: {"content": f"🔁 Finalized {c['finalized']}, reverted {c['reverted']}, still pending {c['pending']}."})

    async def cog_app_command_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError):
        if isinstance(error, app_commands.CheckFailure):
            await safe_respond(interaction, content="🚫 Admins only.", ephemeral=True)
            return
        raise error


async def setup(bot):
    await bot.add_cog(Admin(bot))
