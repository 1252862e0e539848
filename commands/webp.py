from __future__ import annotations

import asyncio
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
from media.tools import convert_to_webp
from utils import BOT_PREFIX, defer_interaction, safe_reply, tag_error_text

log = logging.getLogger(__name__)


class WebP(commands.Cog):
    """Lossless WebP conversion via img2webp / gif2webp."""

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot
        self.cfg = MediaConfig.from_env()
        self._sem = asyncio.Semaphore(self.cfg.max_concurrent)
        self.ctx_menu = app_commands.ContextMenu(
            name="Convert To WebP",
            callback=self.webp_context_menu,
        )
        self.bot.tree.add_command(self.ctx_menu)

    async def cog_unload(self) -> None:
        self.bot.tree.remove_command(self.ctx_menu.name, type=self.ctx_menu.type)

    async def _convert(self, source: MediaSource) -> tuple[bytes, str]:
        return await convert_source(source, convert_to_webp, self.cfg.work_root, self._sem)

    @commands.hybrid_command(
        name="webp",
        description="Convert an image (or GIF) to lossless WebP.",
        help=(
            "Convert an attached image to lossless WebP. GIFs keep their animation.\n\n"
            "**Usage**: `/webp <attachment>`\n"
            f"Prefix: `{BOT_PREFIX}webp` with an image attached or as a reply to one"
        ),
        usage="<attachment>",
        extras={
            "category": "Tools",
            "destination": "Turn an image or GIF into a lossless WebP.",
            "plus": "Also available as the \"Convert To WebP\" message menu entry.",
            "pro": (
                "GIFs go through gif2webp in mixed lossy/lossless mode; other images through "
                "img2webp with sharp YUV at maximum effort."
            ),
        },
    )
    async def webp(
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

    async def webp_context_menu(self, interaction: discord.Interaction, message: discord.Message) -> None:
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
    await bot.add_cog(WebP(bot))
