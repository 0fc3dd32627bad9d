"""
Terminal client for the advisor engine.

Streams replies token by token and prints handoff offers as cards:

    python main.py --user-id demo --property listing.json
"""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any, Dict, Optional

from advisor.config import EngineSettings
from advisor.handoff import handoff_offer_for
from advisor.persistence import default_store
from advisor.session import ChatSession, SessionContext
from advisor.transcript import TranscriptEvent, TranscriptEventKind

WELCOME = (
    "Hi! I'm your PropertyX advisor. Ask me about a property, an area or an investment, "
    "and I'll walk you through the numbers."
)
EXIT_COMMANDS = {"exit", "quit", ":q"}


def _load_property(path: Optional[str]) -> Optional[Dict[str, Any]]:
    if not path:
        return None
    with Path(path).open("r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError("Property file must contain a JSON object")
    return data


def _render(event: TranscriptEvent) -> None:
    if event.kind is TranscriptEventKind.GREETING:
        print(f"Advisor: {event.message.content}\n")
    elif event.kind is TranscriptEventKind.ASSISTANT_STARTED:
        print("Advisor: ", end="", flush=True)
    elif event.kind is TranscriptEventKind.DELTA:
        print(event.fragment, end="", flush=True)
    elif event.kind is TranscriptEventKind.REPLACED:
        print(event.message.content, end="", flush=True)
    elif event.kind is TranscriptEventKind.FINALIZED:
        print("\n")
    elif event.kind is TranscriptEventKind.HANDOFF_OFFER:
        offer = handoff_offer_for(event.message.handoff_trigger)
        print("+" + "-" * 58)
        print(f"| {offer['title']}")
        print(f"| {offer['description']}")
        print("| Reply via the web app's handoff form to reach an agent.")
        print("+" + "-" * 58 + "\n")


async def run_chat_cli(
    user_id: Optional[str] = None,
    property_record: Optional[Dict[str, Any]] = None,
    analysis_mode: Optional[str] = None,
) -> None:
    context = SessionContext(
        user_id=user_id,
        subject=property_record,
        analysis_mode=analysis_mode,
        greeting=WELCOME,
    )
    session = ChatSession(context, store=default_store(), settings=EngineSettings.from_env(), listener=_render)
    try:
        while True:
            try:
                text = (await asyncio.to_thread(input, "You: ")).strip()
            except EOFError:
                break
            if not text:
                continue
            if text.lower() in EXIT_COMMANDS:
                break
            await session.send(text)
    finally:
        await session.aclose()


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="PropertyX advisor chat")
    parser.add_argument("--user-id", "-u", metavar="ID", help="Store the conversation under this user.")
    parser.add_argument("--property", "-p", metavar="FILE", help="JSON file describing the property being discussed.")
    parser.add_argument("--analysis-mode", "-m", metavar="MODE", help="Ask for a focused analysis (e.g. investment).")
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    asyncio.run(run_chat_cli(args.user_id, _load_property(args.property), args.analysis_mode))


if __name__ == "__main__":
    main()
