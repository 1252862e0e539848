import os

import discord
from discord.ext import commands
from difflib import SequenceMatcher
from typing import Iterable, List, Sequence, Tuple

BOT_PREFIX = os.getenv("BOT_PREFIX", "c!")
LONG_VIEW_TIMEOUT_S = 60 * 60 * 24 * 7  # 7 days
SUGGESTION_VIEW_TIMEOUT_S = LONG_VIEW_TIMEOUT_S
ERROR_TAG = "\u2063MEDIAERR\u2063"
DISCORD_CONTENT_LIMIT = 2000


def humanize_delta(seconds: float) -> str:
    seconds = int(seconds)
    units = [("d", 86400), ("h", 3600), ("m", 60), ("s", 1)]
    parts = []
    for suffix, size in units:
        value, seconds = divmod(seconds, size)
        if value:
            parts.append(f"{value}{suffix}")
    return " ".join(parts) if parts else "0s"


def human_size(value: int) -> str:
    units = ["B", "KB", "MB", "GB"]
    size = float(value)
    for unit in units:
        if size < 1024 or unit == units[-1]:
            return f"{size:.1f}{unit}" if unit != "B" else f"{int(size)}B"
        size /= 1024
    return f"{size:.1f}GB"


def truncate_text(text: str, max_len: int) -> str:
    if max_len <= 0:
        return ""
    if len(text) <= max_len:
        return text
    return text[: max_len - 1] + "…"


def code_block(text: str, max_len: int = DISCORD_CONTENT_LIMIT - 100) -> str:
    """Wrap tool output in a code block, keeping the tail when it is too long."""
    body = (text or "").replace("```", "`\u200b``").strip() or "(no output)"
    if len(body) > max_len:
        body = "…" + body[-(max_len - 1):]
    return f"```\n{body}\n```"


def tag_error_text(text: str) -> str:
    if ERROR_TAG in text:
        return text
    return f"{text}\n{ERROR_TAG}"


async def defer_interaction(ctx: commands.Context, *, ephemeral: bool = False) -> None:
    """Show a 'processing' state while a command runs."""
    if ctx.interaction and not ctx.interaction.response.is_done():
        await ctx.interaction.response.defer(thinking=True, ephemeral=ephemeral)
    else:
        await ctx.typing()


async def safe_reply(ctx: commands.Context, *args, **kwargs):
    """Send an ephemeral reply when possible.

    If the context has an interaction, pass through the ``ephemeral`` flag to
    ``ctx.reply``. Otherwise, fall back to ``ctx.reply``/``ctx.send`` without the
    flag to avoid ``TypeError`` in prefix commands.
    """
    ephemeral = kwargs.pop("ephemeral", False)
    if ctx.interaction:
        return await ctx.reply(*args, ephemeral=ephemeral, **kwargs)
    func = getattr(ctx, "reply", None) or ctx.send
    return await func(*args, **kwargs)


def build_suggestions(
    query: str,
    commands_iter: Iterable[commands.Command],
    *,
    primary_count: int = 3,
    max_results: int = 10,
    threshold: float = 0.35,
) -> Tuple[List[str], List[str]]:
    """Rank similar commands by fuzzy match.

    Always returns up to ``primary_count`` top suggestions (if any exist) based
    on raw similarity so the user sees immediate options. Remaining candidates
    up to ``max_results`` are filtered by ``threshold`` and returned as extras
    for optional expansion (e.g., a "Show more" button). Hidden commands are
    ignored.
    """

    query = query.strip().lower()
    if not query:
        return [], []

    candidates: list[tuple[str, str]] = []
    for cmd in commands_iter:
        if getattr(cmd, "hidden", False):
            continue
        names = [cmd.qualified_name, *getattr(cmd, "aliases", [])]
        candidates.extend((f"/{name}", name) for name in names)

    ranked: list[tuple[float, str]] = []
    for display, name in candidates:
        match = SequenceMatcher(None, query, name.lower()).ratio()
        if match > 0:
            ranked.append((match, display))

    ranked.sort(key=lambda item: item[0], reverse=True)

    primary = ranked[:primary_count]
    remaining = ranked[primary_count:max_results]
    extras = [(score, display) for score, display in remaining if score >= threshold]

    def fmt(items: Sequence[tuple[float, str]]) -> List[str]:
        return [f"- {display} ({score * 100:.0f}%)" for score, display in items]

    return fmt(primary), fmt(extras)


class SuggestionView(discord.ui.View):
    """Provides a button to reveal additional suggestions."""

    def __init__(self, extras: List[str], *, timeout: float | None = SUGGESTION_VIEW_TIMEOUT_S) -> None:
        super().__init__(timeout=timeout)
        self.extras = extras

    @discord.ui.button(label="Show more", style=discord.ButtonStyle.secondary)
    async def show_more(
        self, interaction: discord.Interaction, _: discord.ui.Button
    ) -> None:
        content = "More similar commands:\n" + "\n".join(self.extras)
        await interaction.response.send_message(content, ephemeral=True)
