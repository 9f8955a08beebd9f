import discord
from discord.ext import commands
from discord import app_commands
import os
import logging

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler("bot.log"),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger("EscrowBot")

# internal modules
import config
from bot_utils import safe_respond
from database import TradeStore, VenueStore
from services.audit_service import AuditService
from services.authorization import AuthorizationPolicy
from services.chain_service import chain_service
from services.db_manager import DBManager
from services.deposit_watcher import DepositWatcher
from services.errors import EscrowError
from services.explorer_service import explorer_service
from services.fund_movement import FundMovementEngine
from services.messenger import DiscordMessenger
from services.notification_service import NotificationService
from services.reconciliation_service import ReconciliationService
from services.scheduler import Scheduler
from services.stats_service import StatsService
from services.trade_engine import TradeEngine
from services.venue_pool import VenuePool

bot = commands.AutoShardedBot(command_prefix="!", intents=discord.Intents.all(), help_command=None)


def build_services(bot):
    """Wire the engine and its collaborators onto the bot."""
    db = DBManager()
    trades = TradeStore(db)
    venues = VenueStore(db)
    messenger = DiscordMessenger(bot)
    audit = AuditService(db)
    notifications = NotificationService(messenger, trades)
    stats = StatsService(db, trades)
    pool = VenuePool(venues, trades, messenger, audit)
    fund = FundMovementEngine(trades, venues, chain_service, audit)
    watcher = DepositWatcher(trades, chain_service, explorer_service, notifications, audit)
    scheduler = Scheduler(db)
    engine = TradeEngine(
        trades, venues, pool, fund, watcher, scheduler, messenger, AuthorizationPolicy(),
        notifications=notifications, stats=stats, audit=audit, chain=chain_service,
    )

    bot.db = db
    bot.trades = trades
    bot.venues = venues
    bot.audit = audit
    bot.pool = pool
    bot.scheduler = scheduler
    bot.engine = engine
    bot.stats = stats
    bot.reconciler = ReconciliationService(trades, chain_service, fund, engine)
    bot.recovered = False


@bot.tree.error
async def on_app_command_error(interaction: discord.Interaction, error: app_commands.AppCommandError):
    """Global error handler for all application commands."""
    original = getattr(error, "original", error)
    if isinstance(original, EscrowError):
        return await safe_respond(interaction, content=f"❌ {original}", ephemeral=True)

    if isinstance(error, app_commands.CheckFailure):
        msg = "🚫 **Permission Denied**\nYou do not have the required permissions to execute this command."
        return await safe_respond(interaction, content=msg, ephemeral=True)

    # Log unexpected errors for developers
    logger.error(f"[Interaction Error] {error}", exc_info=original)

    # Generic failure response
    msg = "⚠️ **System Error**\nAn unexpected error occurred. Please try again later."
    await safe_respond(interaction, content=msg, ephemeral=True)


async def setup_hook():
    build_services(bot)
    logger.info(f"[INFO] Services initialized ({bot.db.db_type}).")

    # Load Cogs
    for filename in sorted(os.listdir(os.path.join(os.path.dirname(os.path.abspath(__file__)), 'cogs'))):
        if filename.endswith('.py') and not filename.startswith('_'):
            extension = f'cogs.{filename[:-3]}'
            try:
                await bot.load_extension(extension)
                logger.info(f"Loaded extension: {extension}")
            except Exception as e:
                logger.error(f"Failed to load extension {extension}: {e}")

bot.setup_hook = setup_hook


@bot.event
async def on_ready():
    logger.info(f"Logged in as {bot.user}")

    if config.GUILD_ID:
        guild = discord.Object(id=config.GUILD_ID)
        bot.tree.copy_global_to(guild=guild)
        synced = await bot.tree.sync(guild=guild)
    else:
        synced = await bot.tree.sync()
    logger.info(f"[Startup] Command tree synced ({len(synced)} commands).")

    # on_ready fires again after reconnects; recover once
    if bot.recovered:
        return
    bot.recovered = True

    # ========== STARTUP RECOVERY: re-arm persisted timers, settle parked txs ==========
    armed = bot.scheduler.reconcile()
    logger.info(f"[Startup Recovery] Re-armed {armed} scheduled job(s).")
    try:
        counts = await bot.reconciler.sweep()
        logger.info(f"[Startup Recovery] Reconciliation: {counts}")
    except Exception as e:
        logger.error(f"[Startup Recovery] Reconciliation failed: {e}")


if __name__ == "__main__":
    if not config.TOKEN:
        raise SystemExit("DISCORD_TOKEN is not set.")
    bot.run(config.TOKEN)
