import logging

import discord

import config
from utils.retry import with_retry

logger = logging.getLogger("Messenger")


class Messenger:
    """Messaging capability the engine drives. Calls are at-least-once side effects."""

    async def send(self, venue_id, content=None, embed=None, view=None):
        raise NotImplementedError

    async def edit(self, venue_id, message_id, content=None, embed=None, view=None):
        raise NotImplementedError

    async def send_log(self, content=None, embed=None, channel_id=None):
        raise NotImplementedError

    async def approve_join(self, venue_id, user_id):
        raise NotImplementedError

    async def decline_join(self, venue_id, user_id):
        raise NotImplementedError

    async def remove_member(self, venue_id, user_id):
        """Returns True once the user can no longer see the venue."""
        raise NotImplementedError

    async def is_member(self, venue_id, user_id):
        raise NotImplementedError

    async def rotate_invite(self, venue_id):
        """Invalidate existing join credentials and return a fresh one."""
        raise NotImplementedError


class DiscordMessenger(Messenger):
    """Venues are private text channels; membership is a member permission overwrite."""

    def __init__(self, bot):
        self.bot = bot

    def _channel(self, venue_id):
        channel = self.bot.get_channel(int(venue_id))
        if channel is None:
            logger.warning(f"[MSG] Venue channel {venue_id} not found")
        return channel

    def _member(self, channel, user_id):
        return channel.guild.get_member(int(user_id)) if channel else None

    async def send(self, venue_id, content=None, embed=None, view=None):
        channel = self._channel(venue_id)
        if not channel:
            return None
        kwargs = {"content": content, "embed": embed}
        if view is not None:
            kwargs["view"] = view
        message = await with_retry(channel.send, **kwargs)
        return message.id

    async def edit(self, venue_id, message_id, content=None, embed=None, view=None):
        channel = self._channel(venue_id)
        if not channel or not message_id:
            return False
        try:
            message = await with_retry(channel.fetch_message, int(message_id))
            kwargs = {"content": content, "embed": embed}
            if view is not None:
                kwargs["view"] = view
            await with_retry(message.edit, **kwargs)
            return True
        except discord.NotFound:
            return False

    async def send_log(self, content=None, embed=None, channel_id=None):
        channel = self.bot.get_channel(int(channel_id or config.LOG_CHANNEL or 0))
        if not channel:
            logger.warning(f"[MSG] Log channel {channel_id or config.LOG_CHANNEL} not found")
            return None
        message = await with_retry(channel.send, content=content, embed=embed)
        return message.id

    async def approve_join(self, venue_id, user_id):
        channel = self._channel(venue_id)
        member = self._member(channel, user_id)
        if not member:
            return False
        await with_retry(channel.set_permissions, member, read_messages=True, send_messages=True)
        return True

    async def decline_join(self, venue_id, user_id):
        channel = self._channel(venue_id)
        member = self._member(channel, user_id)
        if not member:
            return False
        await with_retry(channel.set_permissions, member, overwrite=None)
        return True

    async def remove_member(self, venue_id, user_id):
        channel = self._channel(venue_id)
        if not channel:
            return False
        member = self._member(channel, user_id)
        if member is None:
            # Left the guild; nothing left to revoke
            return True
        # Cached overwrites lag the gateway update; the HTTP result decides
        try:
            await with_retry(channel.set_permissions, member, overwrite=None)
        except discord.NotFound:
            return True
        except (discord.Forbidden, discord.HTTPException) as e:
            logger.error(f"[MSG] Could not remove {user_id} from {venue_id}: {e}")
            return False
        return True

    async def is_member(self, venue_id, user_id):
        channel = self._channel(venue_id)
        member = self._member(channel, user_id)
        if not member:
            return False
        overwrite = channel.overwrites_for(member)
        return bool(overwrite.read_messages)

    async def rotate_invite(self, venue_id):
        channel = self._channel(venue_id)
        if not channel:
            return None
        for invite in await with_retry(channel.invites):
            try:
                await with_retry(invite.delete, reason="Venue invite rotated")
            except discord.NotFound:
                pass
        invite = await with_retry(channel.create_invite, max_uses=2, max_age=0, unique=True, reason="Venue invite rotated")
        return invite.url
