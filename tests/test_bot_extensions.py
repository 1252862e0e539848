import asyncio
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any, cast

import pytest
from discord.ext import commands

sys.path.append(str(Path(__file__).resolve().parents[1]))

import bot as bot_module  # noqa: E402


def test_all_media_extensions_load(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MEDIA_WORK_DIR", str(tmp_path))
    bot = bot_module.Bot("!")

    successes, failures = asyncio.run(bot.load_all_extensions())

    assert failures == []
    assert set(successes) == {
        "commands.compress",
        "commands.favoritize",
        "commands.ffmpeg",
        "commands.jxl",
        "commands.save",
        "commands.webp",
    }
    assert {"compress", "convert", "favoritize", "ffmpeg", "jxl", "save", "webp"} <= {c.name for c in bot.commands}


def test_not_owner_gets_friendly_reply(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: list[tuple[tuple[Any, ...], dict[str, Any]]] = []

    async def _capture_reply(ctx: Any, *args: Any, **kwargs: Any) -> None:
        captured.append((args, kwargs))

    monkeypatch.setattr(bot_module, "safe_reply", _capture_reply)
    bot = bot_module.Bot("!")
    ctx = cast(commands.Context[Any], SimpleNamespace(interaction=None))

    asyncio.run(bot.on_command_error(ctx, commands.NotOwner("nope")))

    assert captured == [(("Only the bot owner can use this command.",), {"ephemeral": True})]
