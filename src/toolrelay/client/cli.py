"""CLI client for the toolrelay API."""

from __future__ import annotations

import logging
import time
from typing import (
    Any,
    Dict,
    List,
    Tuple,
    cast,
)

import httpx

from toolrelay.common import (
    AnsiColors,
    colored_print,
)
from toolrelay.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# CLI Client
# ---------------------------------------------------------------------------
def get_user_message() -> Tuple[str, bool]:
    """
    Get a message from the user via standard input.

    Returns:
        Tuple of (user_input, success_flag)
        The success_flag is False if input couldn't be read (e.g., Ctrl+C)
    """
    import signal  # pylint: disable=import-outside-toplevel

    # Ensure SIGINT breaks out of slow system calls such as read()
    signal.siginterrupt(signal.SIGINT, True)

    try:
        user_input = input().strip()
        return user_input, True
    except (EOFError, KeyboardInterrupt):
        return "", False


def call_api(
    endpoint: str,
    data: Dict[str, Any] | None = None,
    max_retries: int = 5,
    timeout: float = 300.0,
) -> Dict[str, Any]:
    """
    Call the API and return the decoded response, retrying while the server starts up.

    A GET is sent when *data* is None, a POST otherwise.  Errors are returned as
    ``{"error": "..."}`` rather than raised.
    """
    api_url = f"http://localhost:{settings.API_PORT}{endpoint}"

    for attempt in range(max_retries):
        try:
            with httpx.Client(timeout=timeout) as client:
                if data is None:
                    response = client.get(api_url)
                else:
                    response = client.post(api_url, json=data)
                response.raise_for_status()
                return cast(Dict[str, Any], response.json())
        except httpx.ConnectError as e:
            if attempt < max_retries - 1:
                retry_delay = 0.5 * (2**attempt)  # exponential backoff: 0.5s, 1s, 2s, 4s...
                logger.info(
                    "API not ready yet, retrying in %.1f seconds (attempt %d/%d)...",
                    retry_delay,
                    attempt + 1,
                    max_retries,
                )
                time.sleep(retry_delay)
                continue
            return {"error": f"Error connecting to API: {e}"}
        except httpx.HTTPStatusError as e:
            detail = str(e)
            try:
                detail = e.response.json().get("detail", detail)
            except ValueError:
                pass
            logger.error("API request error: %s", detail)
            return {"error": f"API error: {detail}"}
        except httpx.HTTPError as e:
            logger.error("API request error: %s", str(e))
            return {"error": f"Error connecting to API: {e}"}

    return {"error": f"Failed to connect to API after {max_retries} attempts"}


def show_tools() -> None:
    """Print the tool catalog."""
    response = call_api("/agent/tools")
    if response.get("error"):
        colored_print(f"⚠️ {response['error']}", AnsiColors.RED)
    tools = response.get("tools") or []
    if not tools:
        colored_print("No tools available.", AnsiColors.GREY)
    for tool in tools:
        colored_print(f"- {tool['name']}: {tool.get('description', '')}", AnsiColors.GREY)


def run_cli() -> None:
    """Run the CLI client that communicates with the API."""
    history: List[Dict[str, str]] = []

    colored_print(
        "\ntoolrelay shell - type '/tools' to list tools, 'exit' or 'quit' (or Ctrl+C) to exit",
        AnsiColors.GREEN,
    )
    while True:
        colored_print("\n🧑 You: ", AnsiColors.BLUE, end="")
        user_msg, ok = get_user_message()
        if not ok:
            break  # Exit if user input couldn't be retrieved (e.g., Ctrl+C)
        if user_msg.lower() in {"exit", "quit"}:
            break
        if not user_msg:
            continue
        if user_msg == "/tools":
            show_tools()
            continue

        messages = [*history, {"role": "user", "content": user_msg}]
        response = call_api("/agent/chat", {"messages": messages})

        if response.get("error"):
            colored_print(f"⚠️ {response['error']}", AnsiColors.RED)
            continue

        for call in response.get("tool_calls") or []:
            colored_print(f"[{call['name']}] {call.get('args', {})}", AnsiColors.GREY)

        reply = response.get("message", "")
        colored_print(reply, AnsiColors.YELLOW)
        history = [*messages, {"role": "assistant", "content": reply}]


if __name__ == "__main__":
    run_cli()
