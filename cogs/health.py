import discord
from discord import app_commands
from discord.ext import commands, tasks
import time
import logging

logger = logging.getLogger("HealthMonitor")


class Health(commands.Cog):
    def __init__(self, bot):
        self.bot = bot
        self.start_time = time.time()
        self.heartbeat_loop.start()

    def cog_unload(self):
        self.heartbeat_loop.cancel()

    @tasks.loop(seconds=60)
    async def heartbeat_loop(self):
        # Basic liveliness check
        stats = self.bot.pool.pool_stats()
        logger.info(
            f"HEARTBEAT: Bot active for {int(time.time() - self.start_time)}s. "
            f"Latency: {self.bot.latency * 1000:.2f}ms. Rooms free: {stats.get('available', 0)}/{stats.get('total', 0)}"
        )

    @heartbeat_loop.before_loop
    async def before_heartbeat(self):
        await self.bot.wait_until_ready()

    @app_commands.command(name="ping", description="Check bot health and latency")
    async def ping(self, interaction: discord.Interaction):
        await interaction.response.defer()

        # 1. Discord Latency
        latency = self.bot.latency * 1000

        # 2. DB Health
        db_status = "❌ Failed"
        try:
            with self.bot.db.cursor() as cursor:
                cursor.execute("SELECT 1")
                db_status = f"✅ Connected ({self.bot.db.db_type})"
        except Exception as e:
            db_status = f"❌ Error: {str(e)}"

        # 3. Trade room pool
        stats = self.bot.pool.pool_stats()

        # 4. Uptime
        uptime = int(time.time() - self.start_time)
        hours, remainder = divmod(uptime, 3600)
        minutes, seconds = divmod(remainder, 60)
        uptime_str = f"{hours}h {minutes}m {seconds}s"

        embed = discord.Embed(title="🏓 Pong!", color=0x00ff00)
        embed.add_field(name="Latency", value=f"{latency:.2f} ms", inline=True)
        embed.add_field(name="Database", value=db_status, inline=True)
        embed.add_field(name="Rooms", value=f"{stats.get('available', 0)} free / {stats.get('total', 0)}", inline=True)
        embed.add_field(name="Uptime", value=uptime_str, inline=False)

        await interaction.followup.send(embed=embed)


async def setup(bot):
    await bot.add_cog(Health(bot))
