from __future__ import annotations

import asyncio
import logging

import aiohttp
import discord
from discord.ext import commands

from commands._media_common import delivery_payload, format_media_error, sources_from_context
from media.config import MediaConfig
from media.delivery import effective_ceiling
from media.errors import MediaError
from media.tools import run_ffmpeg
from utils import BOT_PREFIX, defer_interaction, safe_reply, tag_error_text

log = logging.getLogger(__name__)

MAX_INPUTS = 4


class FFmpeg(commands.Cog):
    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot
        self.cfg = MediaConfig.from_env()
        self._sem = asyncio.Semaphore(self.cfg.max_concurrent)

    @commands.hybrid_command(
        name="ffmpeg",
        description="Run ffmpeg with your own flags over up to four attachments (owner only).",
        help=(
            "Feed the attachments to ffmpeg as inputs, append your flags and write "
            "to the given output name. The extension of the output name picks the "
            "container.\n\n"
            "**Usage**: `/ffmpeg <attachment> <output_name> [flags]`\n"
            f"Prefix: `{BOT_PREFIX}ffmpeg out.mp4 -c:v libx264 -crf 28` with files attached"
        ),
        usage="<attachment> <output_name> [flags]",
        extras={
            "category": "Tools",
            "destination": "Run an arbitrary ffmpeg command over uploaded files.",
            "plus": "Accepts up to four inputs, passed to ffmpeg in order as -i arguments.",
            "pro": (
                "Flags are split like a shell would (quotes work) but never go through a "
                "shell. Restricted to the bot owner since the flags are unrestricted."
            ),
        },
    )
    @commands.is_owner()
    async def ffmpeg(
        self,
        ctx: commands.Context,
        attachment: discord.Attachment | None = None,
        output_name: str = "output.mp4",
        *,
        flags: str = "",
        attachment_2: discord.Attachment | None = None,
        attachment_3: discord.Attachment | None = None,
        attachment_4: discord.Attachment | None = None,
    ) -> None:
        sources = sources_from_context(ctx, attachment, attachment_2, attachment_3, attachment_4)
        if not sources:
            await safe_reply(
                ctx,
                tag_error_text("Attach at least one file for ffmpeg to read."),
                mention_author=False,
                ephemeral=True,
            )
            return
        sources = sources[:MAX_INPUTS]

        await defer_interaction(ctx)
        try:
            inputs = [(await source.read(), source.filename) for source in sources]
            async with self._sem:
                data, filename = await asyncio.to_thread(
                    run_ffmpeg,
                    inputs,
                    flags,
                    output_name,
                    self.cfg.work_root,
                    ffmpeg=self.cfg.ffmpeg_bin,
                )
        except (discord.HTTPException, aiohttp.ClientError) as exc:
            log.warning("Failed to download ffmpeg inputs: %s", exc)
            await safe_reply(
                ctx,
                tag_error_text("Couldn't download the attachments. Try again."),
                mention_author=False,
                ephemeral=True,
            )
            return
        except MediaError as exc:
            await safe_reply(ctx, tag_error_text(format_media_error(exc)), mention_author=False, ephemeral=True)
            return

        ceiling = effective_ceiling(getattr(ctx.guild, "filesize_limit", None), self.cfg.size_ceiling_bytes)
        payload = delivery_payload(data, filename, len(data), ceiling, link=None)
        await safe_reply(ctx, mention_author=False, **payload)


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(FFmpeg(bot))
