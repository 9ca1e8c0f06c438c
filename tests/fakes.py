"""
In-memory stand-ins for provider processes and the chat model (used only by tests).

Import from test modules with ``from fakes import ...``.
"""

import asyncio
import copy
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from toolrelay.agent.model_client import ModelClient
from toolrelay.core.errors import ProviderConnectionError
from toolrelay.core.schema import (
    ContentPart,
    ModelResponse,
    ModelToolCall,
    RawToolResult,
    ToolDescriptor,
    ToolProviderConfig,
)
from toolrelay.providers.transport import ProviderTransport


def provider(provider_id: str, name: Optional[str] = None, **kwargs: Any) -> ToolProviderConfig:
    """Build a provider config pointing at a fake command."""
    return ToolProviderConfig(
        id=provider_id, name=name or provider_id, command=f"fake-{provider_id}", **kwargs
    )


class FakeHandle:
    """Handle returned by :class:`FakeTransport`."""

    def __init__(self, config: ToolProviderConfig) -> None:
        self.config = config
        self.closed = False
        self.alive = True


ToolBehaviour = Union[str, RawToolResult, Exception, Callable[[Dict[str, Any]], Any]]


class FakeTransport(ProviderTransport):
    """Providers whose catalogs and tool results are given up front."""

    def __init__(
        self,
        catalogs: Dict[str, Sequence[str]],
        results: Optional[Dict[str, ToolBehaviour]] = None,
        failing: Iterable[str] = (),
        connect_delay: float = 0.0,
    ) -> None:
        self.catalogs = catalogs
        self.results = results or {}
        self.failing = set(failing)
        self.connect_delay = connect_delay
        self.connects: List[str] = []
        self.closed: List[str] = []
        self.listings: List[str] = []
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []

    async def connect(self, config: ToolProviderConfig) -> FakeHandle:
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        self.connects.append(config.id)
        if config.id in self.failing:
            raise ProviderConnectionError(f"cannot start {config.id}")
        return FakeHandle(config)

    async def list_tools(self, handle: FakeHandle) -> List[ToolDescriptor]:
        self.listings.append(handle.config.id)
        return [
            ToolDescriptor(name=name, description=f"{name} tool", provider_id=handle.config.id)
            for name in self.catalogs.get(handle.config.id, [])
        ]

    async def call_tool(self, handle: FakeHandle, name: str, args: Dict[str, Any]) -> RawToolResult:
        self.calls.append((handle.config.id, name, dict(args)))
        behaviour = self.results.get(name, f"{name} done")
        if callable(behaviour) and not isinstance(behaviour, Exception):
            behaviour = behaviour(args)
        if isinstance(behaviour, Exception):
            raise behaviour
        if isinstance(behaviour, RawToolResult):
            return behaviour
        return RawToolResult(content=[ContentPart(type="text", text=str(behaviour))])

    async def close(self, handle: FakeHandle) -> None:
        handle.closed = True
        self.closed.append(handle.config.id)

    def is_alive(self, handle: FakeHandle) -> bool:
        return handle.alive and not handle.closed


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        """Move time forward."""
        self.now += seconds


def tool_call(name: str, args: Optional[Dict[str, Any]] = None, call_id: Optional[str] = None,
              text: str = "") -> ModelResponse:
    """Model turn asking for one tool."""
    return ModelResponse(
        text=text,
        tool_calls=[ModelToolCall(id=call_id or f"call_{name}", name=name, arguments=args or {})],
    )


Reply = Union[str, ModelResponse, Exception, Callable[[List[Dict[str, Any]]], ModelResponse]]


class ScriptedModel(ModelClient):
    """
    Model that plays back *replies* in order, then repeats *default* forever.

    Strings become text-only answers; exceptions are raised; callables receive the transcript.
    """

    def __init__(self, *replies: Reply, default: Optional[Reply] = None) -> None:
        self._replies = list(replies)
        self._default = default
        self.transcripts: List[List[Dict[str, Any]]] = []
        self.tools_seen: List[List[str]] = []
        self.tool_choices: List[str] = []
        self.json_modes: List[bool] = []

    @property
    def calls(self) -> int:
        """Number of completions requested."""
        return len(self.transcripts)

    async def complete(
        self,
        transcript: Sequence[Dict[str, Any]],
        tools: Sequence[ToolDescriptor] = (),
        tool_choice: str = "auto",
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
    ) -> ModelResponse:
        self.transcripts.append(copy.deepcopy(list(transcript)))
        self.tools_seen.append([tool.name for tool in tools])
        self.tool_choices.append(tool_choice)
        self.json_modes.append(json_mode)

        if self._replies:
            reply = self._replies.pop(0)
        elif self._default is not None:
            reply = self._default
        else:
            raise AssertionError("ScriptedModel ran out of replies")

        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, str):
            return ModelResponse(text=reply)
        if isinstance(reply, ModelResponse):
            return reply
        return reply(list(transcript))


def transcript_text(transcript: Sequence[Dict[str, Any]]) -> str:
    """All message contents of a transcript joined together, for substring checks."""
    return "\n".join(str(message.get("content") or "") for message in transcript)
