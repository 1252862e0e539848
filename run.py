from __future__ import annotations

import argparse
import shutil
import subprocess
import sys

REQUIRED_TOOLS = ("ffmpeg", "ffprobe", "img2webp", "gif2webp", "webpmux", "cjxl")


def _run_bootstrap() -> None:
    subprocess.run(
        [sys.executable, "-m", "pip", "install", "-e", "."],
        check=True,
    )
    subprocess.run(
        [sys.executable, "-m", "pip", "install", "--upgrade", "yt-dlp"],
        check=True,
    )


def _missing_tools() -> list[str]:
    return [tool for tool in REQUIRED_TOOLS if shutil.which(tool) is None]


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the Discord bot.")
    parser.add_argument(
        "--bootstrap",
        action="store_true",
        help="Install/update Python dependencies before starting.",
    )
    args = parser.parse_args()

    if args.bootstrap:
        _run_bootstrap()
    missing = _missing_tools()
    if missing:
        print(f"warning: media tools not on PATH: {', '.join(missing)}", file=sys.stderr)
    from bot import main as bot_main

    bot_main()


if __name__ == "__main__":
    main()
