import logging

import discord

logger = logging.getLogger("BotUtils")


def _message_kwargs(content, embed, view, ephemeral=None):
    kwargs = {}
    if content is not None:
        kwargs['content'] = content
    if embed is not None:
        kwargs['embed'] = embed
    if view is not None:
        kwargs['view'] = view
    if ephemeral is not None:
        kwargs['ephemeral'] = ephemeral
    return kwargs


async def safe_respond(interaction, *, content=None, embed=None, view=None, ephemeral=False, defer=False, edit_original=False):
    """Reply to an interaction whether or not it was already acknowledged."""
    try:
        if defer:
            if not interaction.response.is_done():
                await interaction.response.defer(ephemeral=ephemeral, thinking=True)
            return True
        elif edit_original and interaction.message:
            await interaction.message.edit(**_message_kwargs(content, embed, view))
            return True
        elif not interaction.response.is_done():
            await interaction.response.send_message(**_message_kwargs(content, embed, view, ephemeral))
            return True
        else:
            await interaction.followup.send(**_message_kwargs(content, embed, view, ephemeral))
            return True
    except (discord.InteractionResponded, discord.NotFound, discord.HTTPException) as e:
        logger.warning(f"[RESPOND] Interaction reply failed: {e}")
        return False
