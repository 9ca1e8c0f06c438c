"""
toolrelay entry point.

Modes:
- ``api``   - serve the HTTP / WebSocket API (default).
- ``cli``   - serve the API in a background thread and open the interactive shell on it.
- ``tools`` - print the merged tool catalog of the configured providers and exit.
- ``ask``   - answer one prompt locally (no server) and exit.
"""

import argparse
import asyncio
import logging
import sys

from toolrelay.api.app import (
    build_orchestrator,
    run_api,
)
from toolrelay.common import (
    AnsiColors,
    colored_print,
)
from toolrelay.config import settings
from toolrelay.core.errors import ToolRelayError
from toolrelay.core.schema import (
    AgentChatOptions,
    ConversationMessage,
)

logger = logging.getLogger(__name__)

SECRET_SETTINGS = {"OPENAI_API_KEY", "MODEL_API_KEY"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _init_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        stream=sys.stderr,
    )
    # Quiet the HTTP client libraries
    for noisy in ("httpx", "openai", "mcp"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="LLM agent over MCP tool providers")
    parser.add_argument(
        "--mode",
        choices=["api", "cli", "tools", "ask"],
        type=str.lower,
        default="api",
        help="What to run (default: api)",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        type=str.lower,
        default=settings.LOG_LEVEL,
        help="Logging level (default from env: %(default)s)",
    )
    parser.add_argument(
        "--providers",
        default=None,
        help="Path of the provider JSON file (default from env: PROVIDERS_FILE)",
    )
    parser.add_argument("--model", default=None, help="Model name override for ask mode")
    parser.add_argument("prompt", nargs="*", help="Prompt for ask mode")
    return parser


async def _print_tools() -> None:
    orchestrator = build_orchestrator()
    try:
        tools = await orchestrator.list_tools()
    finally:
        await orchestrator.pool.close_all()

    if not tools:
        colored_print("No tools available.", AnsiColors.GREY)
    for tool in tools:
        colored_print(f"[{tool.provider_id}] {tool.name}", AnsiColors.GREEN, end="")
        print(f"  {tool.description}" if tool.description else "")


async def _ask(prompt: str, model: str | None) -> None:
    orchestrator = build_orchestrator()
    options = AgentChatOptions(
        messages=[ConversationMessage(role="user", content=prompt)], model=model
    )
    try:
        result = await orchestrator.chat(options)
    finally:
        await orchestrator.pool.close_all()

    for call in result.tool_calls:
        colored_print(f"[{call.name}] {call.args}", AnsiColors.GREY)
    colored_print(result.message, AnsiColors.YELLOW)


def _run_cli() -> None:
    # Lazy import to avoid CLI dependencies if not needed
    import threading  # pylint: disable=import-outside-toplevel

    from toolrelay.client.cli import run_cli  # pylint: disable=import-outside-toplevel

    api_thread = threading.Thread(
        target=run_api,
        kwargs={
            "host": "127.0.0.1",
            "port": settings.API_PORT,
            "reload": False,  # Reload doesn't work well with threading
            "log_level": "warning",
        },
        daemon=True,
    )
    api_thread.start()
    run_cli()


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def main(argv: list[str] | None = None) -> None:
    """Parse arguments, apply them to the settings, and run the selected mode."""
    parser = _build_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)

    settings.LOG_LEVEL = args.log_level
    if args.providers:
        settings.PROVIDERS_FILE = args.providers

    _init_logging(settings.LOG_LEVEL)
    logger.info("Starting toolrelay [%s mode]", args.mode)
    logger.debug("Settings: %s", settings.model_dump(exclude=SECRET_SETTINGS))

    if args.mode == "api":
        run_api(host="0.0.0.0", port=settings.API_PORT, reload=settings.DEBUG)
    elif args.mode == "cli":
        _run_cli()
    else:
        prompt = " ".join(args.prompt).strip()
        if args.mode == "ask" and not prompt:
            parser.error("ask mode needs a prompt")
        try:
            if args.mode == "tools":
                asyncio.run(_print_tools())
            else:
                asyncio.run(_ask(prompt, args.model))
        except ToolRelayError as exc:
            colored_print(f"⚠️ {exc}", AnsiColors.RED)
            sys.exit(1)


if __name__ == "__main__":
    main()
