"""End-to-end tests of AgentOrchestrator.chat() against fake providers and a scripted model."""

import asyncio
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Sequence,
)

import pytest
from fakes import (
    FakeTransport,
    ScriptedModel,
    provider,
    tool_call,
    transcript_text,
)

from toolrelay.agent.events import (
    EventChannel,
    EventRecorder,
)
from toolrelay.agent.orchestrator import AgentOrchestrator
from toolrelay.config import Settings
from toolrelay.core.errors import (
    ConfigurationError,
    ModelCallError,
    ProviderConnectionError,
)
from toolrelay.core.schema import (
    AgentChatOptions,
    ConversationMessage,
    ModelEndpoint,
    ModelResponse,
)
from toolrelay.providers.pool import ConnectionPool
from toolrelay.providers.store import StaticProviderStore

ENDPOINT = ModelEndpoint(base_url="http://model.test/v1", model="test-model")


def _orchestrator(
    transport: FakeTransport,
    model: ScriptedModel,
    provider_ids: Sequence[str] = (),
    endpoint: Optional[ModelEndpoint] = ENDPOINT,
    **overrides: object,
) -> AgentOrchestrator:
    config = Settings(**{"PLANNER_ENABLED": False, "MAX_TOOL_ROUNDS": 5, **overrides})
    return AgentOrchestrator(
        StaticProviderStore(provider(pid) for pid in provider_ids),
        ConnectionPool(transport),
        config=config,
        endpoint_resolver=lambda _model: endpoint,
        client_factory=lambda _endpoint: model,
    )


def _ask(text: str) -> AgentChatOptions:
    return AgentChatOptions(messages=[ConversationMessage(role="user", content=text)])


def test_simple_answer_without_tools() -> None:
    """No tools and a direct answer give a plain result."""
    model = ScriptedModel("4")
    orchestrator = _orchestrator(FakeTransport({}), model)

    result = asyncio.run(orchestrator.chat(_ask("what is 2+2")))

    assert result.message == "4"
    assert result.tool_calls_used == 0
    assert result.tool_calls == []
    assert model.calls == 1
    assert model.transcripts[0][0]["role"] == "system"
    assert model.transcripts[0][-1] == {"role": "user", "content": "what is 2+2"}


def test_missing_endpoint_fails_before_model_call() -> None:
    """Without a configured endpoint nothing is sent to any model."""
    model = ScriptedModel("never")
    transport = FakeTransport({"a": ["ping"]})
    orchestrator = _orchestrator(transport, model, ["a"], endpoint=None)

    with pytest.raises(ConfigurationError):
        asyncio.run(orchestrator.chat(_ask("hi")))
    assert model.calls == 0
    assert transport.connects == []


def test_model_failure_is_terminal() -> None:
    """A model error ends the call and already-run tools are not retried."""
    transport = FakeTransport({"a": ["ping"]})
    model = ScriptedModel(tool_call("ping"), ModelCallError("upstream 500"))
    orchestrator = _orchestrator(transport, model, ["a"])

    with pytest.raises(ModelCallError):
        asyncio.run(orchestrator.chat(_ask("ping it")))
    assert len(transport.calls) == 1


def test_provider_failure_is_terminal() -> None:
    """An unreachable provider aborts the call before the model is asked."""
    model = ScriptedModel("never")
    orchestrator = _orchestrator(FakeTransport({"a": ["x"]}, failing={"a"}), model, ["a"])

    with pytest.raises(ProviderConnectionError):
        asyncio.run(orchestrator.chat(_ask("hi")))
    assert model.calls == 0


def test_tool_calls_are_counted_and_streamed() -> None:
    """Tool calls land in the result and in the event stream, with one final event."""
    transport = FakeTransport({"calc": ["add"]}, results={"add": lambda a: a["x"] + a["y"]})
    model = ScriptedModel(tool_call("add", {"x": 2, "y": 2}), "It is 4.")
    orchestrator = _orchestrator(transport, model, ["calc"])
    recorder = EventRecorder()

    result = asyncio.run(orchestrator.chat(_ask("add 2 and 2"), recorder))

    assert result.message == "It is 4."
    assert result.tool_calls_used == 1
    assert result.tool_calls[0].name == "add"
    assert [event.type for event in recorder.events] == [
        "tool_call",
        "tool_result",
        "assistant_message",
        "final_message",
    ]
    assert recorder.of_type("tool_result")[0].text == "4"
    assert len(recorder.of_type("final_message")) == 1


def test_planned_chat_passes_step_result_on() -> None:
    """A two-step plan runs each step and step 2 sees 'found 3 files'."""
    transport = FakeTransport({"fs": ["search"]}, results={"search": "found 3 files"})
    model = ScriptedModel(
        '{"needPlan": true, "steps": ["search files", "summarize"]}',
        tool_call("search", {"query": "*"}),
        "Searched.",
        "There are 3 files.",
    )
    orchestrator = _orchestrator(transport, model, ["fs"], PLANNER_ENABLED=True)
    recorder = EventRecorder()

    result = asyncio.run(orchestrator.chat(_ask("search files then summarize"), recorder))

    assert result.message == "There are 3 files."
    assert result.tool_calls_used == 1
    assert model.tool_choices[0] == "none"
    assert "found 3 files" in transcript_text(model.transcripts[3])
    assert recorder.events[0].type == "plan"
    assert [step.description for step in recorder.events[0].steps] == ["search files", "summarize"]
    assert [event.type for event in recorder.events].count("final_message") == 1
    assert recorder.events[-1].type == "final_message"


def test_planner_garbage_falls_back_to_single_pass() -> None:
    """Unusable planner output just means no plan."""
    model = ScriptedModel("I cannot do JSON", "plain answer")
    orchestrator = _orchestrator(FakeTransport({"a": ["ping"]}), model, ["a"], PLANNER_ENABLED=True)

    result = asyncio.run(orchestrator.chat(_ask("hello")))

    assert result.message == "plain answer"
    assert model.calls == 2


def test_round_ceiling_from_options() -> None:
    """max_tool_rounds in the options overrides the configured ceiling."""
    model = ScriptedModel(default=tool_call("ping"))
    orchestrator = _orchestrator(FakeTransport({"a": ["ping"]}), model, ["a"])
    options = _ask("loop forever")
    options.max_tool_rounds = 2

    result = asyncio.run(orchestrator.chat(options))

    assert result.message == "Max tool rounds reached; ending turn."
    assert result.tool_calls_used == 2


def test_calls_do_not_share_tool_logs() -> None:
    """Concurrent chats keep separate tool-call logs but share one connection."""
    transport = FakeTransport({"a": ["ping"]})

    def reply(transcript: List[Dict[str, Any]]) -> ModelResponse:
        if transcript[-1]["role"] == "user":
            return tool_call("ping")
        return ModelResponse(text="done")

    model = ScriptedModel(default=reply)
    orchestrator = _orchestrator(transport, model, ["a"])

    async def scenario():  # type: ignore[no-untyped-def]
        return await asyncio.gather(orchestrator.chat(_ask("one")), orchestrator.chat(_ask("two")))

    first, second = asyncio.run(scenario())

    assert first.tool_calls is not second.tool_calls
    assert first.tool_calls_used == 1 and second.tool_calls_used == 1
    assert transport.connects == ["a"]


def test_list_tools_returns_merged_catalog() -> None:
    """list_tools() exposes the deduplicated catalog of all providers."""
    transport = FakeTransport({"a": ["read", "search"], "b": ["search", "write"]})
    orchestrator = _orchestrator(transport, ScriptedModel(), ["a", "b"])

    tools = asyncio.run(orchestrator.list_tools())

    assert [tool.name for tool in tools] == ["read", "search", "write"]


def test_event_channel_streams_and_detaches() -> None:
    """A channel delivers events until closed; a detached one silently drops them."""
    model = ScriptedModel("hello", "still answered")
    orchestrator = _orchestrator(FakeTransport({}), model)

    async def scenario():  # type: ignore[no-untyped-def]
        channel = EventChannel()
        task = asyncio.create_task(orchestrator.chat(_ask("hi"), channel))
        task.add_done_callback(lambda _t: channel.close())
        received = [event.type async for event in channel]
        await task

        detached = EventChannel()
        detached.detach()
        result = await orchestrator.chat(_ask("hi again"), detached)
        return received, result

    received, result = asyncio.run(scenario())

    assert received == ["assistant_message", "final_message"]
    assert result.message == "still answered"
