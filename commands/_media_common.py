"""Shared plumbing for the media cogs: where inputs come from and how results go out."""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable
from urllib.parse import urlparse

import aiohttp
import discord
from discord.ext import commands

from media.delivery import decide_delivery, effective_ceiling
from media.errors import EncodeFailure, MediaError, ProbeFailure, RetryBudgetExhausted, UnsupportedMediaType
from media.files import safe_name
from media.models import Delivery
from utils import code_block, human_size, tag_error_text, truncate_text

log = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT_S = 30
DEFAULT_THUMBNAIL_NAME = "thumbnail.png"


@dataclass(frozen=True)
class MediaSource:
    """An attachment or an embed thumbnail we can download."""

    filename: str
    url: str
    attachment: discord.Attachment | None = None

    @classmethod
    def from_attachment(cls, att: discord.Attachment) -> "MediaSource":
        return cls(filename=safe_name(att.filename or "", "attachment"), url=att.url, attachment=att)

    @classmethod
    def from_thumbnail_url(cls, url: str) -> "MediaSource":
        name = Path(urlparse(url).path).name
        return cls(filename=safe_name(name, DEFAULT_THUMBNAIL_NAME), url=url)

    async def read(self) -> bytes:
        if self.attachment is not None:
            return await self.attachment.read()
        timeout = aiohttp.ClientTimeout(total=DOWNLOAD_TIMEOUT_S)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(self.url) as resp:
                resp.raise_for_status()
                return await resp.read()


def sources_from_message(message: discord.Message | Any) -> list[MediaSource]:
    sources = [MediaSource.from_attachment(att) for att in getattr(message, "attachments", []) or []]
    for embed in getattr(message, "embeds", []) or []:
        thumbnail = getattr(embed, "thumbnail", None)
        proxy_url = getattr(thumbnail, "proxy_url", None) if thumbnail else None
        if proxy_url:
            sources.append(MediaSource.from_thumbnail_url(proxy_url))
    return sources


def _dedupe(sources: list[MediaSource]) -> list[MediaSource]:
    seen: set[str] = set()
    unique: list[MediaSource] = []
    for source in sources:
        if source.url in seen:
            continue
        seen.add(source.url)
        unique.append(source)
    return unique


def sources_from_context(ctx: commands.Context, *explicit: discord.Attachment | None) -> list[MediaSource]:
    """Explicit slash options first, then the message's own media.

    The replied-to message is only consulted when neither has anything.
    Prefix invocations fill at most one attachment option, so the rest of the
    message's attachments are merged in here.
    """
    sources = [MediaSource.from_attachment(att) for att in explicit if att is not None]
    message = getattr(ctx, "message", None)
    if message is not None:
        sources.extend(sources_from_message(message))
        if not sources:
            ref = getattr(message, "reference", None)
            resolved = getattr(ref, "resolved", None) if ref else None
            if isinstance(resolved, discord.Message):
                sources.extend(sources_from_message(resolved))
    return _dedupe(sources)


def pick_source(sources: list[MediaSource], index: int = 0) -> MediaSource:
    if 0 <= index < len(sources):
        return sources[index]
    count = len(sources)
    raise ValueError(
        f"You chose attachment {index + 1} but there {'is' if count == 1 else 'are'} "
        f"only {count} attachment{'' if count == 1 else 's'}."
    )


def format_media_error(exc: Exception) -> str:
    if isinstance(exc, RetryBudgetExhausted):
        message = (
            f"Couldn't get the {exc.kind} under the upload limit after {exc.attempts} attempts."
        )
        if exc.last_size is not None:
            message += f" The last try was still {human_size(exc.last_size)}."
        if isinstance(exc.last_error, EncodeFailure) and exc.last_error.stderr:
            message += "\n" + code_block(exc.last_error.stderr, max_len=1200)
        return message
    if isinstance(exc, (EncodeFailure, ProbeFailure)):
        return code_block(str(exc))
    if isinstance(exc, UnsupportedMediaType):
        return "Unsupported file type. Send an image or a video."
    if isinstance(exc, MediaError):
        return truncate_text(str(exc), 1500)
    return "Something went wrong while processing that file."


def delivery_payload(
    path_or_bytes: Path | bytes,
    filename: str,
    size_bytes: int,
    ceiling: int,
    *,
    link: str | None,
) -> dict[str, Any]:
    """Keyword arguments for ``send``: the file itself, or a link when it can't be attached."""
    if decide_delivery(size_bytes, ceiling) is Delivery.ATTACH:
        if isinstance(path_or_bytes, bytes):
            fp: Any = io.BytesIO(path_or_bytes)
        else:
            fp = str(path_or_bytes)
        return {"file": discord.File(fp, filename=filename)}

    log.info("%s is %d bytes (> %d); sending link only", filename, size_bytes, ceiling)
    content = (
        f"The result is {human_size(size_bytes)}, over the {human_size(ceiling)} upload limit."
    )
    if link:
        content += f"\n<{link}>"
    return {"content": content}


def link_fallback(reason: str, link: str | None) -> dict[str, Any]:
    """Reply for when no uploadable file could be produced: the reason plus the original URL."""
    content = reason
    if link:
        content += f"\nHere's the original instead:\n<{link}>"
    return {"content": content}


def close_payload(payload: dict[str, Any]) -> None:
    file = payload.get("file")
    if isinstance(file, discord.File):
        file.close()


async def convert_source(
    source: MediaSource,
    convert: Callable[[bytes, str, Path], tuple[bytes, str]],
    work_root: Path,
    sem: asyncio.Semaphore,
) -> tuple[bytes, str]:
    """Download ``source`` and run a blocking one-shot converter on a worker thread."""
    data = await source.read()
    async with sem:
        return await asyncio.to_thread(convert, data, source.filename, work_root)


def parse_modal_choice(index_raw: str | None, ephemeral_raw: str | None) -> tuple[int, bool]:
    """Read the attachment index (0-based, default 0) and visibility typed into a modal.

    Any non-empty visibility answer other than ``false`` means ephemeral.
    """
    index_raw = (index_raw or "").strip()
    try:
        index = int(index_raw) if index_raw else 0
    except ValueError:
        raise ValueError(f"`{index_raw}` is not an attachment index. Use 0 for the first one.") from None
    if index < 0:
        raise ValueError("The attachment index can't be negative.")
    ephemeral_raw = (ephemeral_raw or "").strip().lower()
    return index, bool(ephemeral_raw) and ephemeral_raw != "false"


SourceHandler = Callable[[discord.Interaction, MediaSource, bool], Awaitable[None]]


class SourcePickModal(discord.ui.Modal):
    """Asks which attachment of a message to use and whether to reply privately."""

    def __init__(self, title: str, sources: list[MediaSource], handler: SourceHandler) -> None:
        super().__init__(title=title)
        self.sources = sources
        self.handler = handler
        self.index_input = discord.ui.TextInput(
            label="Attachment Index",
            placeholder="The index of the attachment to use. (default: 0)",
            required=False,
            max_length=3,
        )
        self.ephemeral_input = discord.ui.TextInput(
            label="Ephemeral",
            placeholder="Whether or not to show the message.",
            required=False,
            max_length=5,
        )
        self.add_item(self.index_input)
        self.add_item(self.ephemeral_input)

    async def on_submit(self, interaction: discord.Interaction) -> None:
        try:
            index, ephemeral = parse_modal_choice(self.index_input.value, self.ephemeral_input.value)
            source = pick_source(self.sources, index)
        except ValueError as exc:
            await interaction.response.send_message(tag_error_text(str(exc)), ephemeral=True)
            return
        await self.handler(interaction, source, ephemeral)


async def send_interaction_error(interaction: discord.Interaction, text: str, *, deferred_ephemeral: bool) -> None:
    """Report an error privately after ``defer(thinking=True)``.

    The first followup replaces the public "thinking" message and ignores the
    ephemeral flag, so that message is deleted first.
    """
    text = tag_error_text(text)
    if not deferred_ephemeral:
        try:
            await interaction.delete_original_response()
        except discord.HTTPException:
            log.debug("Could not delete the deferred response", exc_info=True)
    await interaction.followup.send(text, ephemeral=True)


async def convert_for_interaction(
    interaction: discord.Interaction,
    source: MediaSource,
    ephemeral: bool,
    *,
    convert: Callable[[MediaSource], Awaitable[tuple[bytes, str]]],
    size_ceiling: int,
) -> None:
    """Context-menu flow once a source is chosen: defer, convert, then send the file or an error."""
    await interaction.response.defer(thinking=True, ephemeral=ephemeral)
    try:
        data, filename = await convert(source)
    except (discord.HTTPException, aiohttp.ClientError, MediaError) as exc:
        await send_interaction_error(interaction, format_media_error(exc), deferred_ephemeral=ephemeral)
        return

    ceiling = effective_ceiling(getattr(interaction.guild, "filesize_limit", None), size_ceiling)
    payload = delivery_payload(data, filename, len(data), ceiling, link=source.url)
    try:
        await interaction.followup.send(**payload)
    finally:
        close_payload(payload)
