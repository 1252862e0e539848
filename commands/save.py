from __future__ import annotations

import asyncio
import logging
import os
import re
import socket
import tempfile
from dataclasses import dataclass
from ipaddress import ip_address
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import discord
from discord.ext import commands
import yt_dlp

from commands._media_common import close_payload, delivery_payload, format_media_error, link_fallback
from media.config import MediaConfig, env_int, env_str
from media.delivery import decide_delivery, effective_ceiling
from media.engine import MediaConverter
from media.errors import MediaError
from media.models import ConversionResult, Delivery
from utils import (
    BOT_PREFIX,
    DISCORD_CONTENT_LIMIT,
    ERROR_TAG,
    defer_interaction,
    human_size,
    humanize_delta,
    safe_reply,
    tag_error_text,
    truncate_text,
)

log = logging.getLogger(__name__)

# Hard cap on what yt-dlp may pull down before the engine shrinks it.
DEFAULT_MAX_BYTES = 200 * 1024 * 1024  # 200MiB
DEFAULT_TIMEOUT_S = 120
DEFAULT_MAX_CONCURRENT = 2
DEFAULT_LOG_TAIL = 60
DEFAULT_WORK_ROOT = "data/savevideo"
DEFAULT_DNS_TIMEOUT_S = 2
DEFAULT_ERROR_TEXT_MAX = 1900
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)

ERROR_PATTERNS: dict[str, re.Pattern[str]] = {
    "unsupported_url": re.compile(r"(unsupported\s+url|no\s+video\s+formats)", re.I),
    "forbidden": re.compile(r"(403|forbidden|access\s+denied)", re.I),
    "rate_limited": re.compile(r"(429|rate\s*limit|too\s+many\s+requests)", re.I),
    "private": re.compile(r"(private|unavailable|not\s+available|deleted)", re.I),
    "login_required": re.compile(r"(login\s*required|sign\s*in|confirm\s+your\s+age)", re.I),
    "geo_restricted": re.compile(r"(not\s+available\s+in\s+your\s+country|geo\s*restricted)", re.I),
    "ffmpeg_missing": re.compile(r"(ffmpeg|avconv).*(not\s+found|not\s+installed)", re.I),
    "max_filesize": re.compile(r"(max(filesize)?|file\s+is\s+too\s+large|max\-filesize)", re.I),
}

CookiesFromBrowser = tuple[str] | tuple[str, str | None, str | None, str | None]


def _parse_cookies_from_browser(spec: str | None) -> CookiesFromBrowser | None:
    """Parse ``BROWSER[+KEYRING][:PROFILE][:CONTAINER]`` into the tuple yt-dlp expects."""
    spec = (spec or "").strip()
    if not spec:
        return None

    parts = spec.split(":")
    head = parts[0].strip()
    profile = parts[1].strip() if len(parts) >= 2 and parts[1].strip() else None
    container = parts[2].strip() if len(parts) >= 3 and parts[2].strip() else None

    browser, _, keyring = head.partition("+")
    browser = browser.strip()
    keyring = keyring.strip() or None

    if profile is None and keyring is None and container is None:
        return (browser,)
    return (browser, profile, keyring, container)


def _is_blocked_ip_literal(host: str) -> bool:
    """Block obvious SSRF targets (localhost, RFC1918, link-local, etc.) for IP literals."""
    try:
        ip = ip_address(host)
    except ValueError:
        return host.lower() in {"localhost", "ip6-localhost"}

    return ip.is_loopback or ip.is_private or ip.is_link_local or ip.is_reserved or ip.is_multicast


async def _resolve_host_ips_async(host: str) -> set[str]:
    infos = await asyncio.get_running_loop().getaddrinfo(host, None)
    return {
        sockaddr[0]
        for family, _type, _proto, _canon, sockaddr in infos
        if family in (socket.AF_INET, socket.AF_INET6)
    }


async def is_public_url(url: str, *, dns_timeout_s: int) -> bool:
    """Allow only http(s) URLs whose host resolves to public addresses."""
    try:
        parsed = urlparse(url)
        host = parsed.hostname
    except ValueError:
        return False

    if parsed.scheme not in {"http", "https"}:
        return False

    if not host or _is_blocked_ip_literal(host):
        return False

    try:
        ips = await asyncio.wait_for(_resolve_host_ips_async(host), timeout=float(dns_timeout_s))
    except (OSError, asyncio.TimeoutError):
        return False

    return bool(ips) and not any(_is_blocked_ip_literal(ip) for ip in ips)


def _pick_downloaded_file(download_dir: Path) -> Path | None:
    files = [path for path in download_dir.iterdir() if path.is_file()]
    if not files:
        return None
    # prefer mp4 if present, else the largest file.
    mp4s = [path for path in files if path.suffix.lower() == ".mp4"]
    return max(mp4s or files, key=lambda path: path.stat().st_size)


class YTDLLogger:
    """Collects yt-dlp output so the tail can be shown when a download fails."""

    def __init__(self) -> None:
        self.lines: list[str] = []

    def debug(self, message: str) -> None:
        self._append(message)

    def info(self, message: str) -> None:
        self._append(message)

    def warning(self, message: str) -> None:
        self._append(message)

    def error(self, message: str) -> None:
        log.debug("yt-dlp: %s", message)
        self._append(message)

    def _append(self, message: str) -> None:
        if message:
            self.lines.append(str(message))

    def tail(self, count: int) -> str:
        if count <= 0:
            return ""
        return "\n".join(self.lines[-count:])


@dataclass(frozen=True)
class SaveConfig:
    max_bytes: int
    timeout_s: int
    max_concurrent: int
    log_tail_lines: int
    work_root: Path
    dns_timeout_s: int
    user_agent: str
    cookies_file: str | None
    cookies_from_browser: CookiesFromBrowser | None
    impersonate: str | None

    @staticmethod
    def from_env() -> "SaveConfig":
        return SaveConfig(
            max_bytes=env_int("SAVEVIDEO_MAX_BYTES", DEFAULT_MAX_BYTES),
            timeout_s=env_int("SAVEVIDEO_TIMEOUT_S", DEFAULT_TIMEOUT_S),
            max_concurrent=env_int("SAVEVIDEO_MAX_CONCURRENT", DEFAULT_MAX_CONCURRENT),
            log_tail_lines=env_int("SAVEVIDEO_LOG_TAIL_LINES", DEFAULT_LOG_TAIL),
            work_root=Path(os.getenv("SAVEVIDEO_WORK_DIR", DEFAULT_WORK_ROOT)),
            dns_timeout_s=env_int("SAVEVIDEO_DNS_TIMEOUT_S", DEFAULT_DNS_TIMEOUT_S),
            user_agent=os.getenv("SAVEVIDEO_USER_AGENT", DEFAULT_USER_AGENT),
            cookies_file=env_str("SAVEVIDEO_COOKIES_FILE"),
            cookies_from_browser=_parse_cookies_from_browser(env_str("SAVEVIDEO_COOKIES_FROM_BROWSER")),
            impersonate=env_str("SAVEVIDEO_IMPERSONATE"),
        )


def _assemble_error_message(*, base: str, tail: str, max_len: int) -> str:
    if max_len <= 0:
        return ""
    tail = tail.strip()
    if not tail:
        return truncate_text(base, max_len)

    tail_prefix = "\n```text\n"
    tail_suffix = "\n```"
    trunc_suffix = "\n...(truncated)"

    headroom = max_len - len(base) - len(tail_prefix) - len(tail_suffix)
    if headroom <= 0:
        return truncate_text(base, max_len)

    if len(tail) <= headroom:
        return f"{base}{tail_prefix}{tail}{tail_suffix}"

    # keep the end of the log, that's where yt-dlp reports the failure
    trimmed_tail = tail[-max(headroom - len(trunc_suffix), 0):]
    return f"{base}{tail_prefix}{trunc_suffix.strip()}\n{trimmed_tail}{tail_suffix}"


def _cap_error_message(text: str, max_len: int) -> str:
    if max_len <= 0:
        return ""

    tagged = tag_error_text(text)
    if len(tagged) <= max_len:
        return tagged

    cleaned = tagged.replace(ERROR_TAG, "").rstrip()
    suffix = f"\n{ERROR_TAG}"
    available = max_len - len(suffix)
    if available <= 0:
        return ERROR_TAG[:max_len]
    return f"{truncate_text(cleaned, available)}{suffix}"


def _extra_headers(url: str, user_agent: str) -> dict[str, str]:
    headers = {"User-Agent": user_agent}
    host = urlparse(url).hostname or ""
    if "tiktok.com" in host:
        headers["Referer"] = "https://www.tiktok.com/"
    if host.endswith("x.com") or host.endswith("twitter.com"):
        headers["Referer"] = "https://x.com/"
    return headers


def _default_impersonate(url: str, configured: str | None) -> str | None:
    if configured is not None:
        return configured
    host = urlparse(url).hostname or ""
    if "tiktok.com" in host or host.endswith("x.com") or host.endswith("twitter.com"):
        return "chrome"
    return None


def format_selector(max_height: int | None = None) -> str:
    """mp4/m4a first so merging is a remux; anything else is left to the engine."""
    height = f"[height<={max_height}]" if max_height else ""
    return (
        f"bv*{height}[ext=mp4]+ba[ext=m4a]/b{height}[ext=mp4]/"
        f"bv*{height}+ba/b{height}/b"
    )


def build_ydl_opts(
    *,
    logger: YTDLLogger,
    work_dir: Path,
    cfg: SaveConfig,
    url: str,
    max_height: int | None = None,
) -> dict[str, Any]:
    opts: dict[str, Any] = {
        "quiet": True,
        "no_warnings": True,
        "noplaylist": True,
        "restrictfilenames": True,
        "logger": logger,
        "format": format_selector(max_height),
        "max_filesize": cfg.max_bytes,
        "merge_output_format": "mp4",
        "http_headers": _extra_headers(url, cfg.user_agent),
        "outtmpl": {"default": str(work_dir / "%(title).200B-%(id)s.%(ext)s")},
        "concurrent_fragment_downloads": 4,
        "socket_timeout": max(10, cfg.timeout_s),
        "retries": 3,
        "fragment_retries": 3,
    }
    if cfg.cookies_file:
        opts["cookiefile"] = cfg.cookies_file
    if cfg.cookies_from_browser:
        opts["cookiesfrombrowser"] = cfg.cookies_from_browser
    impersonate = _default_impersonate(url, cfg.impersonate)
    if impersonate:
        opts["impersonate"] = impersonate
    return opts


def download_video(url: str, opts: dict[str, Any], work_dir: Path) -> tuple[dict[str, Any], Path]:
    with yt_dlp.YoutubeDL(opts) as ydl:
        info = ydl.extract_info(url, download=True)

    if not isinstance(info, dict):
        raise yt_dlp.utils.DownloadError("yt-dlp returned unexpected info")
    if info.get("_type") == "playlist" or isinstance(info.get("entries"), list):
        raise yt_dlp.utils.DownloadError("URL resolves to multiple items (playlist/carousel)")

    chosen = _pick_downloaded_file(work_dir)
    if chosen is None:
        raise yt_dlp.utils.DownloadError("Download completed but no files were written")
    return info, chosen


def _classify_error(message: str) -> str:
    for key, pattern in ERROR_PATTERNS.items():
        if pattern.search(message):
            return key
    return "unknown"


def _saved_embed(
    info: dict[str, Any],
    url: str,
    *,
    downloaded_size: int,
    result: ConversionResult,
    ceiling: int,
) -> discord.Embed:
    title = str(info.get("title") or "Saved video")
    webpage_url = info.get("webpage_url") or url
    duration = info.get("duration")
    width, height = info.get("width"), info.get("height")

    embed = discord.Embed(title="💾 Video saved", description=f"[{title}]({webpage_url})", color=0x2ECC71)
    embed.add_field(
        name="Duration",
        value=humanize_delta(duration) if isinstance(duration, (int, float)) else "?",
        inline=True,
    )
    embed.add_field(
        name="Resolution",
        value=f"{width}x{height}" if isinstance(width, int) and isinstance(height, int) else "unknown",
        inline=True,
    )
    embed.add_field(name="Size", value=human_size(result.size_bytes), inline=True)
    if result.attempts:
        embed.add_field(
            name="Compressed",
            value=f"{human_size(downloaded_size)} → {human_size(result.size_bytes)} "
            f"in {len(result.attempts)} attempt(s)",
            inline=False,
        )
    embed.add_field(name="Discord limit", value=human_size(ceiling), inline=True)
    return embed


class Save(commands.Cog):
    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot
        self.cfg = SaveConfig.from_env()
        self.media_cfg = MediaConfig.from_env()
        self.converter = MediaConverter(self.media_cfg)
        self._sem = asyncio.Semaphore(self.cfg.max_concurrent)

    @commands.hybrid_command(
        name="save",
        description="Save a video from a public URL and attach it as mp4.",
        help=(
            "Download a video from a public URL (TikTok, YouTube, etc.) with yt-dlp "
            "and attach it to Discord. Downloads over the upload limit are re-encoded "
            "to H.265 until they fit; if that fails you get the link instead.\n\n"
            "**Usage**: `/save <url>`\n\n"
            "Optional: `/save <url> max_height:<int>`\n\n"
            "Env knobs: SAVEVIDEO_MAX_BYTES, SAVEVIDEO_TIMEOUT_S, SAVEVIDEO_MAX_CONCURRENT, "
            "SAVEVIDEO_LOG_TAIL_LINES, SAVEVIDEO_WORK_DIR, SAVEVIDEO_DNS_TIMEOUT_S, "
            "SAVEVIDEO_USER_AGENT, SAVEVIDEO_COOKIES_FILE, SAVEVIDEO_COOKIES_FROM_BROWSER, "
            "SAVEVIDEO_IMPERSONATE\n\n"
            f"Prefix: `{BOT_PREFIX}save <url>`"
        ),
        usage="<url> [max_height]",
        extras={
            "category": "Tools",
            "destination": "Save a video from a link straight into the chat.",
            "plus": "Too-large downloads are compressed automatically before upload.",
            "pro": (
                "Fetches a single video with yt-dlp, blocks private/localhost targets, "
                "and runs oversized files through the media engine (two bitrate-targeted "
                "H.265 passes) before falling back to a link."
            ),
        },
    )
    async def save(self, ctx: commands.Context, url: str, max_height: int | None = None) -> None:
        url = (url or "").strip()
        if not url:
            await safe_reply(
                ctx,
                tag_error_text("Provide a video URL to save."),
                mention_author=False,
                ephemeral=True,
            )
            return

        if not await is_public_url(url, dns_timeout_s=self.cfg.dns_timeout_s):
            await safe_reply(
                ctx,
                tag_error_text("That URL is not allowed. Use a public http/https link."),
                mention_author=False,
                ephemeral=True,
            )
            return

        await defer_interaction(ctx)
        ceiling = effective_ceiling(getattr(ctx.guild, "filesize_limit", None), self.media_cfg.size_ceiling_bytes)

        async with self._sem:
            logger = YTDLLogger()
            try:
                self.cfg.work_root.mkdir(parents=True, exist_ok=True)
                with tempfile.TemporaryDirectory(prefix="savevideo_", dir=self.cfg.work_root) as tmp_dir:
                    tmp_path = Path(tmp_dir)
                    opts = build_ydl_opts(
                        logger=logger, work_dir=tmp_path, cfg=self.cfg, url=url, max_height=max_height
                    )
                    info, download_path = await asyncio.wait_for(
                        asyncio.to_thread(download_video, url, opts, tmp_path),
                        timeout=float(self.cfg.timeout_s),
                    )
                    downloaded_size = download_path.stat().st_size
                    log.info("Saved %s (%d bytes)", url, downloaded_size)

                    # Pass-through when it already fits; the engine only steps in for oversized files.
                    try:
                        result = await self.converter.convert_async(download_path, reencode_small=False)
                    except MediaError as exc:
                        log.warning("Could not fit %s under %d bytes: %s", url, ceiling, exc)
                        payload = link_fallback(format_media_error(exc), info.get("webpage_url") or url)
                        await safe_reply(ctx, mention_author=False, **payload)
                        return

                try:
                    await self._deliver(ctx, url, info, downloaded_size, result, ceiling)
                finally:
                    result.discard()

            except yt_dlp.utils.DownloadError as exc:
                await self._handle_error(ctx, url, exc, logger)
            except asyncio.TimeoutError:
                await safe_reply(
                    ctx,
                    tag_error_text(
                        f"Download timed out after {self.cfg.timeout_s}s. "
                        "Try a shorter clip, or increase SAVEVIDEO_TIMEOUT_S."
                    ),
                    mention_author=False,
                    ephemeral=True,
                )

    async def _deliver(
        self,
        ctx: commands.Context,
        url: str,
        info: dict[str, Any],
        downloaded_size: int,
        result: ConversionResult,
        ceiling: int,
    ) -> None:
        link = info.get("webpage_url") or url
        filename = f"video.{result.extension}"
        payload = delivery_payload(result.path, filename, result.size_bytes, ceiling, link=link)
        if decide_delivery(result.size_bytes, ceiling) is Delivery.ATTACH:
            payload["embed"] = _saved_embed(
                info, url, downloaded_size=downloaded_size, result=result, ceiling=ceiling
            )
        try:
            await safe_reply(ctx, mention_author=False, **payload)
        finally:
            close_payload(payload)

    async def _handle_error(
        self,
        ctx: commands.Context,
        url: str,
        exc: Exception,
        logger: YTDLLogger,
    ) -> None:
        raw_error = f"{exc}"
        kind = _classify_error(raw_error)

        reason = {
            "unsupported_url": "Unsupported URL or no compatible formats.",
            "forbidden": "Access denied (403). The site may block bots.",
            "rate_limited": "Rate limited (429). Wait a bit and retry.",
            "private": "The video looks private, deleted, or unavailable.",
            "login_required": "Login is required (or age/anti-bot verification).",
            "geo_restricted": "Geo-restricted. The content is not available from this region.",
            "ffmpeg_missing": "ffmpeg is missing on the host. Install ffmpeg to merge streams.",
            "max_filesize": f"The video is larger than the download cap ({human_size(self.cfg.max_bytes)}).",
            "unknown": "Extraction failed. The site may require cookies or a newer yt-dlp.",
        }[kind]

        base = f"{reason}\nURL: {url}\nRaw error: {truncate_text(raw_error, 500)}"
        message = _assemble_error_message(
            base=base,
            tail=logger.tail(self.cfg.log_tail_lines),
            max_len=DEFAULT_ERROR_TEXT_MAX,
        )
        await safe_reply(
            ctx,
            _cap_error_message(message, DISCORD_CONTENT_LIMIT),
            mention_author=False,
            ephemeral=True,
        )


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(Save(bot))
