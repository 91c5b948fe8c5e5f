#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import dataclass, field

import httpx

from services.protocol.sse import SSEDecoder
from services.scene.objects import snapshot_to_payload


@dataclass
class TurnResult:
    text: str = ""
    scenes: list[list[dict]] = field(default_factory=list)
    conversation_id: str | None = None
    message_id: str | None = None
    error: str = ""


async def run_chat_turn(
    gateway: str,
    prompt: str,
    conversation_id: str | None,
    variant: str,
    timeout_s: float,
    echo: bool = True,
) -> TurnResult:
    gateway = gateway.rstrip("/")
    decoder = SSEDecoder(variant=variant)
    result = TurnResult()
    body = {
        "messages": [{"role": "user", "content": prompt}],
        "new_message": prompt,
        "conversation_id": conversation_id,
    }

    async with httpx.AsyncClient(timeout=timeout_s) as client:
        async with client.stream("POST", f"{gateway}/v1/chat", json=body) as response:
            if response.status_code != 200:
                await response.aread()
                result.error = f"HTTP {response.status_code}: {response.text}"
                return result
            async for chunk in response.aiter_bytes():
                for message in decoder.feed(chunk):
                    if message.type == "token":
                        result.text += message.content
                        if echo:
                            print(message.content, end="", flush=True)
                    elif message.type == "scene_data":
                        result.scenes.append(snapshot_to_payload(message.objects))
                    elif message.type == "done":
                        result.conversation_id = message.conversation_id
                        result.message_id = message.message_id
                    elif message.type == "error":
                        result.error = message.message
    if echo and result.text:
        print()
    return result


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SceneChat streaming chat client")
    parser.add_argument("--gateway", default="http://127.0.0.1:8000", help="Gateway base URL")
    parser.add_argument("--prompt", default="put a red sphere on green ground", help="Message to send")
    parser.add_argument("--chat-id", default=None, help="Continue an existing conversation")
    parser.add_argument("--variant", choices=("typed", "legacy"), default="typed", help="Wire variant the server speaks")
    parser.add_argument("--timeout", type=float, default=120.0, help="HTTP timeout in seconds")
    return parser


def main() -> None:
    args = build_arg_parser().parse_args()
    turn = asyncio.run(
        run_chat_turn(
            gateway=args.gateway,
            prompt=args.prompt,
            conversation_id=args.chat_id,
            variant=args.variant,
            timeout_s=args.timeout,
        )
    )

    if turn.error:
        print(f"stream failed: {turn.error}")
        raise SystemExit(1)
    print("turn complete:")
    print(f"  conversation_id: {turn.conversation_id}")
    print(f"  message_id: {turn.message_id}")
    print(f"  scene_updates: {len(turn.scenes)}")
    if turn.scenes:
        print(json.dumps(turn.scenes[-1], indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
