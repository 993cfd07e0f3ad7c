"""CLI helper to validate an API key or stream one answer from the agent."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Sequence

from ..ai.ai_types import CompletionClient
from ..ai.orchestration import AgentEvent, AgentEventType, AgentOrchestrator, AgentState
from ..ai.orchestration.tools import ToolContext, ToolRegistry
from ..ai.providers import PROVIDERS, create_client
from ..services.settings import Settings, SettingsStore
from ..utils.logging import setup_logging


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Ask the chat-analysis agent a question from the terminal.")
    parser.add_argument("question", nargs="?", help="Question to ask. Reads stdin when omitted.")
    parser.add_argument("--settings", type=Path, help="Path to a settings.json file.")
    parser.add_argument("--provider", choices=sorted(PROVIDERS), help="Completion provider to use.")
    parser.add_argument("--base-url", dest="base_url", help="Override the provider's base URL.")
    parser.add_argument("--model", help="Model identifier to use.")
    parser.add_argument("--api-key", dest="api_key", help="API key (prefer CHATLENS_API_KEY).")
    parser.add_argument("--max-rounds", dest="max_tool_rounds", type=int, help="Tool round limit.")
    parser.add_argument(
        "--chat-type",
        choices=("group", "private"),
        default="group",
        help="Conversation variant used for the system prompt.",
    )
    parser.add_argument("--validate", action="store_true", help="Only check that the API key is accepted.")
    parser.add_argument("--verbose", action="store_true", help="Log debug output to the console.")
    args = parser.parse_args(argv)

    setup_logging(logging.DEBUG if args.verbose else logging.WARNING, console=args.verbose)
    overrides: dict[str, Any] = {
        "provider": args.provider,
        "base_url": args.base_url,
        "model": args.model,
        "api_key": args.api_key,
        "max_tool_rounds": args.max_tool_rounds,
    }
    settings = SettingsStore(args.settings).load(overrides=overrides)
    if not settings.api_key:
        print("No API key configured; set CHATLENS_API_KEY or pass --api-key.", file=sys.stderr)
        return 2

    if args.validate:
        return asyncio.run(_validate(settings))

    question = (args.question or sys.stdin.read()).strip()
    if not question:
        print("No question provided.", file=sys.stderr)
        return 1
    return asyncio.run(_ask(settings, question, chat_type=args.chat_type))


async def _validate(settings: Settings) -> int:
    client = create_client(settings.client_settings())
    try:
        result = await client.validate_api_key()
    finally:
        await _close(client)
    if result.success:
        print("API key accepted.")
        return 0
    print(f"API key rejected: {result.error}", file=sys.stderr)
    return 1


async def _ask(settings: Settings, question: str, *, chat_type: str) -> int:
    client = create_client(settings.client_settings())
    context = ToolContext(session_id="cli", max_messages_limit=settings.max_messages_limit)
    orchestrator = AgentOrchestrator(
        client,
        ToolRegistry(),
        context,
        settings.agent_config(),
        chat_type=chat_type,  # type: ignore[arg-type]
    )

    def _print_event(event: AgentEvent) -> None:
        if event.type == AgentEventType.CONTENT and event.content:
            sys.stdout.write(event.content)
            sys.stdout.flush()
        elif event.type == AgentEventType.ERROR:
            print(f"\nerror: {event.error}", file=sys.stderr)

    try:
        result = await orchestrator.execute_stream(question, _print_event)
    finally:
        await _close(client)
    print()
    return 0 if result.state != AgentState.ERROR else 1


async def _close(client: CompletionClient) -> None:
    closer = getattr(client, "aclose", None)
    if closer is not None:
        await closer()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
