from __future__ import annotations

import asyncio
import functools
import logging

import aiohttp
import discord
from discord import app_commands
from discord.ext import commands

from commands._media_common import (
    MediaSource,
    SourcePickModal,
    close_payload,
    convert_for_interaction,
    convert_source,
    delivery_payload,
    format_media_error,
    pick_source,
    sources_from_context,
    sources_from_message,
)
from media.config import MediaConfig
from media.delivery import effective_ceiling
from media.errors import MediaError
from media.tools import convert_to_favoritable
from utils import BOT_PREFIX, defer_interaction, safe_reply, tag_error_text

log = logging.getLogger(__name__)


class Favoritize(commands.Cog):
    """Two-frame WebPs that Discord lets you save to the GIF favorites."""

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot
        self.cfg = MediaConfig.from_env()
        self._sem = asyncio.Semaphore(self.cfg.max_concurrent)
        self.ctx_menu = app_commands.ContextMenu(
            name="Favoritize Image",
            callback=self.favoritize_context_menu,
        )
        self.bot.tree.add_command(self.ctx_menu)

    async def cog_unload(self) -> None:
        self.bot.tree.remove_command(self.ctx_menu.name, type=self.ctx_menu.type)

    async def _convert(self, source: MediaSource) -> tuple[bytes, str]:
        convert = functools.partial(
            convert_to_favoritable, blank_frame=self.cfg.blank_frame, ffmpeg=self.cfg.ffmpeg_bin
        )
        return await convert_source(source, convert, self.cfg.work_root, self._sem)

    @commands.hybrid_command(
        name="favoritize",
        description="Turn an image into a WebP you can add to your GIF favorites (owner only).",
        help=(
            "Re-encode an attached image as a lossless two-frame WebP. Discord treats it "
            "as animated, so the star button for GIF favorites shows up on it.\n\n"
            "**Usage**: `/favoritize <attachment>`\n"
            f"Prefix: `{BOT_PREFIX}favoritize` with an image attached or as a reply to one"
        ),
        usage="<attachment>",
        extras={
            "category": "Tools",
            "destination": "Make an image favoritable like a GIF.",
            "plus": "Also available as the \"Favoritize Image\" message menu entry.",
            "pro": (
                "img2webp encodes the image losslessly, then webpmux appends a transparent "
                "1x1 frame so the file counts as an animation."
            ),
        },
    )
    @commands.is_owner()
    async def favoritize(
        self,
        ctx: commands.Context,
        attachment: discord.Attachment | None = None,
        ephemeral: bool = False,
    ) -> None:
        try:
            source = pick_source(sources_from_context(ctx, attachment))
        except ValueError:
            await safe_reply(
                ctx,
                tag_error_text("Attach an image (or reply to a message that has one)."),
                mention_author=False,
                ephemeral=True,
            )
            return

        await defer_interaction(ctx, ephemeral=ephemeral)
        try:
            data, filename = await self._convert(source)
        except (discord.HTTPException, aiohttp.ClientError, MediaError) as exc:
            await safe_reply(ctx, tag_error_text(format_media_error(exc)), mention_author=False, ephemeral=True)
            return

        ceiling = effective_ceiling(getattr(ctx.guild, "filesize_limit", None), self.cfg.size_ceiling_bytes)
        payload = delivery_payload(data, filename, len(data), ceiling, link=source.url)
        try:
            await safe_reply(ctx, mention_author=False, ephemeral=ephemeral, **payload)
        finally:
            close_payload(payload)

    async def favoritize_context_menu(self, interaction: discord.Interaction, message: discord.Message) -> None:
        if not await self.bot.is_owner(interaction.user):
            await interaction.response.send_message(
                tag_error_text("Only the bot owner can use this command."), ephemeral=True
            )
            return

        sources = sources_from_message(message)
        if not sources:
            await interaction.response.send_message(
                tag_error_text("That message has no attachments or thumbnails."), ephemeral=True
            )
            return

        modal = SourcePickModal(self.ctx_menu.name, sources, self._convert_for_interaction)
        await interaction.response.send_modal(modal)

    async def _convert_for_interaction(
        self, interaction: discord.Interaction, source: MediaSource, ephemeral: bool
    ) -> None:
        await convert_for_interaction(
            interaction, source, ephemeral, convert=self._convert, size_ceiling=self.cfg.size_ceiling_bytes
        )


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(Favoritize(bot))
