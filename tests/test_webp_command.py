import asyncio
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any, cast

import discord
import pytest
from discord.ext import commands

sys.path.append(str(Path(__file__).resolve().parents[1]))

from commands import favoritize as favoritize_module  # noqa: E402
from commands import jxl as jxl_module  # noqa: E402
from commands import webp as webp_module  # noqa: E402
from commands._media_common import SourcePickModal  # noqa: E402
from media.errors import EncodeFailure  # noqa: E402


class _FakeAttachment:
    filename = "party.gif"
    url = "https://cdn.discordapp.com/attachments/1/2/party.gif"

    async def read(self) -> bytes:
        return b"GIF89a"


def _ctx() -> commands.Context[Any]:
    async def _typing() -> None:
        return None

    return cast(
        commands.Context[Any],
        SimpleNamespace(interaction=None, guild=None, message=None, typing=_typing),
    )


def _capture(monkeypatch: pytest.MonkeyPatch, module: Any) -> list[tuple[tuple[Any, ...], dict[str, Any]]]:
    captured: list[tuple[tuple[Any, ...], dict[str, Any]]] = []

    async def _capture_reply(ctx: Any, *args: Any, **kwargs: Any) -> None:
        captured.append((args, kwargs))

    monkeypatch.setattr(module, "safe_reply", _capture_reply)
    return captured


def test_webp_sends_converted_file(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MEDIA_WORK_DIR", str(tmp_path))
    seen: list[tuple[bytes, str, Path]] = []

    def _fake_convert(data: bytes, filename: str, work_root: Path) -> tuple[bytes, str]:
        seen.append((data, filename, work_root))
        return b"RIFFWEBP", "party.webp"

    monkeypatch.setattr(webp_module, "convert_to_webp", _fake_convert)
    captured = _capture(monkeypatch, webp_module)

    bot = commands.Bot(command_prefix="!", intents=discord.Intents.none())
    cog = webp_module.WebP(bot)
    asyncio.run(cast(Any, cog.webp.callback)(cog, _ctx(), _FakeAttachment()))

    assert seen == [(b"GIF89a", "party.gif", tmp_path)]
    (args, kwargs), = captured
    assert kwargs["file"].filename == "party.webp"
    assert bot.tree.get_command("Convert To WebP", type=discord.AppCommandType.message) is not None


def test_jxl_reports_encoder_output(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MEDIA_WORK_DIR", str(tmp_path))

    def _fail(data: bytes, filename: str, work_root: Path) -> tuple[bytes, str]:
        raise EncodeFailure("Getting pixel data failed.")

    monkeypatch.setattr(jxl_module, "convert_to_jxl", _fail)
    captured = _capture(monkeypatch, jxl_module)

    bot = commands.Bot(command_prefix="!", intents=discord.Intents.none())
    cog = jxl_module.JXL(bot)
    asyncio.run(cast(Any, cog.jxl.callback)(cog, _ctx(), _FakeAttachment()))

    (args, kwargs), = captured
    assert "Getting pixel data failed." in args[0]
    assert args[0].startswith("```")
    assert kwargs["ephemeral"] is True


def test_favoritize_passes_blank_frame_setting(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MEDIA_WORK_DIR", str(tmp_path))
    monkeypatch.setenv("MEDIA_BLANK_WEBP", str(tmp_path / "blank.webp"))
    seen: list[dict[str, Any]] = []

    def _fake_convert(data: bytes, filename: str, work_root: Path, **kwargs: Any) -> tuple[bytes, str]:
        seen.append(kwargs)
        return b"RIFFANIM", "party.webp"

    monkeypatch.setattr(favoritize_module, "convert_to_favoritable", _fake_convert)
    captured = _capture(monkeypatch, favoritize_module)

    bot = commands.Bot(command_prefix="!", intents=discord.Intents.none())
    cog = favoritize_module.Favoritize(bot)
    asyncio.run(cast(Any, cog.favoritize.callback)(cog, _ctx(), _FakeAttachment()))

    assert seen == [{"blank_frame": tmp_path / "blank.webp", "ffmpeg": "ffmpeg"}]
    (args, kwargs), = captured
    assert kwargs["file"].filename == "party.webp"
    assert bot.tree.get_command("Favoritize Image", type=discord.AppCommandType.message) is not None


class _FakeResponse:
    def __init__(self) -> None:
        self.modals: list[Any] = []
        self.messages: list[tuple[str, dict[str, Any]]] = []

    async def send_modal(self, modal: Any) -> None:
        self.modals.append(modal)

    async def send_message(self, content: str, **kwargs: Any) -> None:
        self.messages.append((content, kwargs))


def _interaction(user_id: int) -> Any:
    return SimpleNamespace(response=_FakeResponse(), user=SimpleNamespace(id=user_id), guild=None)


def _message() -> Any:
    return SimpleNamespace(attachments=[_FakeAttachment()], embeds=[])


def test_webp_context_menu_asks_which_attachment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MEDIA_WORK_DIR", str(tmp_path))
    bot = commands.Bot(command_prefix="!", intents=discord.Intents.none())
    cog = webp_module.WebP(bot)
    interaction = _interaction(1)

    asyncio.run(cog.webp_context_menu(interaction, _message()))

    (modal,) = interaction.response.modals
    assert isinstance(modal, SourcePickModal)
    assert modal.title == "Convert To WebP"
    assert [s.filename for s in modal.sources] == ["party.gif"]


def test_favoritize_context_menu_is_owner_only(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MEDIA_WORK_DIR", str(tmp_path))
    bot = commands.Bot(command_prefix="!", intents=discord.Intents.none(), owner_id=42)
    cog = favoritize_module.Favoritize(bot)

    stranger = _interaction(7)
    asyncio.run(cog.favoritize_context_menu(stranger, _message()))
    assert stranger.response.modals == []
    ((content, kwargs),) = stranger.response.messages
    assert "Only the bot owner" in content
    assert kwargs == {"ephemeral": True}

    owner = _interaction(42)
    asyncio.run(cog.favoritize_context_menu(owner, _message()))
    assert len(owner.response.modals) == 1
