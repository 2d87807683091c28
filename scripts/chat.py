#!/usr/bin/env python3
"""
Interactive chat against a running koe server.

Text is printed as it streams; each turn's audio is written to
<out_dir>/turn-NNN.mp3 through the same PlaybackBuffer a UI would use.

Usage:
    python scripts/chat.py <agent_id>
    python scripts/chat.py <agent_id> --url http://localhost:3040 --out /tmp/koe-audio
"""

import asyncio
import sys
import uuid
from pathlib import Path

from dotenv import load_dotenv

from koe.client import ChatClient
from koe.log import setup_logging
from koe.media import FileMediaBackend
from koe.player import PlaybackBuffer
from koe.types import ChatMessage

DEFAULT_URL = "http://localhost:3040"
DEFAULT_OUT = Path("/tmp/koe-audio")


def _option(args, flag: str, default):
    if flag in args:
        idx = args.index(flag)
        value = args[idx + 1]
        del args[idx:idx + 2]
        return value
    return default


async def chat(agent_id: str, url: str, out_dir: Path) -> None:
    player = PlaybackBuffer(FileMediaBackend(out_dir))
    client = ChatClient(url, player=player)
    session_id = uuid.uuid4().hex

    print(f"Session {session_id[:8]} -- empty line to quit")
    while True:
        try:
            prompt = await asyncio.to_thread(input, "\n> ")
        except EOFError:
            break
        if not prompt.strip():
            break

        printed = 0

        def on_update(message: ChatMessage) -> None:
            nonlocal printed
            if len(message.content) > printed:
                print(message.content[printed:], end="", flush=True)
                printed = len(message.content)

        message = await client.ask(agent_id, session_id, prompt, on_update=on_update)
        print()
        if message.error:
            print(f"[error] {message.error}")
        for call in message.tool_calls:
            print(f"[tool] {call.get('toolName', call.get('name', '?'))}")
        if player.source is not None:
            print(f"[audio] {message.audio_chunks} chunks, {player.bytes_received} bytes -> {player.source.path}")

    await player.reset()


def main():
    args = sys.argv[1:]
    url = _option(args, "--url", DEFAULT_URL)
    out_dir = Path(_option(args, "--out", str(DEFAULT_OUT)))

    if not args:
        print(__doc__)
        sys.exit(1)

    load_dotenv()
    setup_logging()
    try:
        asyncio.run(chat(args[0], url, out_dir))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
