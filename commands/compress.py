from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import aiohttp
import discord
from discord.ext import commands

from commands._media_common import (
    MediaSource,
    close_payload,
    delivery_payload,
    format_media_error,
    pick_source,
    sources_from_context,
)
from media.config import MediaConfig
from media.delivery import decide_delivery, effective_ceiling
from media.engine import MediaConverter
from media.errors import MediaError
from media.files import TempWorkspace
from media.models import ConversionResult, Delivery
from utils import BOT_PREFIX, defer_interaction, human_size, safe_reply, tag_error_text

log = logging.getLogger(__name__)


def _result_embed(source: MediaSource, original_size: int, result: ConversionResult) -> discord.Embed:
    embed = discord.Embed(
        title="🗜️ Media ready",
        description=f"`{source.filename}` → `.{result.extension}`",
        color=0x2ECC71,
    )
    embed.add_field(name="Type", value=result.media_type.value, inline=True)
    embed.add_field(name="Original", value=human_size(original_size), inline=True)
    embed.add_field(name="Result", value=human_size(result.size_bytes), inline=True)
    if result.attempts:
        embed.add_field(name="Attempts", value=str(len(result.attempts)), inline=True)
    else:
        embed.add_field(name="Attempts", value="already small enough", inline=True)
    return embed


class Compress(commands.Cog):
    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot
        self.cfg = MediaConfig.from_env()
        self.converter = MediaConverter(self.cfg)
        self._sem = asyncio.Semaphore(self.cfg.max_concurrent)

    @commands.hybrid_command(
        name="compress",
        description="Shrink an image or video so it fits under the upload limit.",
        help=(
            "Re-encode an attached image (animated WebP) or video (H.265 MP4) with "
            "lower quality until it fits under the 8 MB upload limit. Files that "
            "already fit are sent back unchanged.\n\n"
            "**Usage**: `/compress <attachment>`\n"
            f"Prefix: `{BOT_PREFIX}compress` with a file attached or as a reply to one"
        ),
        usage="<attachment>",
        extras={
            "category": "Tools",
            "destination": "Fit an image or video under Discord's upload limit.",
            "plus": "Images become WebP, videos become H.265 MP4; small files pass through untouched.",
            "pro": (
                "Images retry at quality 90, 85 and 80. Videos are probed for bitrate and "
                "duration, then re-encoded at a bitrate aimed 1 MB (then 2 MB) under the "
                "limit, with frame rate capped at 30 when the bitrate drops."
            ),
        },
    )
    async def compress(
        self,
        ctx: commands.Context,
        attachment: discord.Attachment | None = None,
        ephemeral: bool = False,
    ) -> None:
        await self._run(ctx, attachment, reencode_small=False, ephemeral=ephemeral)

    @commands.hybrid_command(
        name="convert",
        description="Convert an image to WebP or a video to H.265 MP4.",
        help=(
            "Always re-encode the attachment into a Discord friendly container, "
            "even when it is already small, then shrink it if needed.\n\n"
            "**Usage**: `/convert <attachment>`\n"
            f"Prefix: `{BOT_PREFIX}convert` with a file attached or as a reply to one"
        ),
        usage="<attachment>",
        extras={
            "category": "Tools",
            "destination": "Convert any image to animated WebP or any video to H.265 MP4.",
            "plus": "Same size limits as /compress, but never skips the re-encode.",
            "pro": (
                "Useful for formats Discord can't preview (HEIC, AVIF, MKV, AVI...). "
                "The output is still kept under the upload limit with the same retry budget."
            ),
        },
    )
    async def convert(
        self,
        ctx: commands.Context,
        attachment: discord.Attachment | None = None,
        ephemeral: bool = False,
    ) -> None:
        await self._run(ctx, attachment, reencode_small=True, ephemeral=ephemeral)

    async def _run(
        self,
        ctx: commands.Context,
        attachment: discord.Attachment | None,
        *,
        reencode_small: bool,
        ephemeral: bool,
    ) -> None:
        try:
            source = pick_source(sources_from_context(ctx, attachment))
        except ValueError:
            await safe_reply(
                ctx,
                tag_error_text("Attach an image or video (or reply to a message that has one)."),
                mention_author=False,
                ephemeral=True,
            )
            return

        await defer_interaction(ctx, ephemeral=ephemeral)
        ceiling = effective_ceiling(getattr(ctx.guild, "filesize_limit", None), self.cfg.size_ceiling_bytes)

        async with self._sem:
            with TempWorkspace(self.cfg.work_root) as workspace:
                try:
                    data = await source.read()
                    input_path = workspace.write(data, source.filename)
                    result = await self.converter.convert_async(input_path, reencode_small=reencode_small)
                except (discord.HTTPException, aiohttp.ClientError) as exc:
                    log.warning("Failed to download %s: %s", source.url, exc)
                    await safe_reply(
                        ctx,
                        tag_error_text("Couldn't download that file from Discord. Try again."),
                        mention_author=False,
                        ephemeral=True,
                    )
                    return
                except MediaError as exc:
                    await safe_reply(
                        ctx,
                        tag_error_text(format_media_error(exc)),
                        mention_author=False,
                        ephemeral=True,
                    )
                    return

            try:
                await self._deliver(ctx, source, len(data), result, ceiling, ephemeral)
            finally:
                result.discard()

    async def _deliver(
        self,
        ctx: commands.Context,
        source: MediaSource,
        original_size: int,
        result: ConversionResult,
        ceiling: int,
        ephemeral: bool,
    ) -> None:
        filename = f"{Path(source.filename).stem or 'media'}.{result.extension}"
        payload = delivery_payload(result.path, filename, result.size_bytes, ceiling, link=source.url)
        if decide_delivery(result.size_bytes, ceiling) is Delivery.ATTACH:
            payload["embed"] = _result_embed(source, original_size, result)
        try:
            await safe_reply(ctx, mention_author=False, ephemeral=ephemeral, **payload)
        finally:
            close_payload(payload)


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(Compress(bot))
