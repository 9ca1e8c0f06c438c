"""Tests for the one-shot command-line modes."""

import pytest
from fakes import (
    FakeTransport,
    ScriptedModel,
    provider,
    tool_call,
)

from toolrelay import main as entry
from toolrelay.agent.orchestrator import AgentOrchestrator
from toolrelay.config import Settings
from toolrelay.core.schema import ModelEndpoint
from toolrelay.providers.pool import ConnectionPool
from toolrelay.providers.store import StaticProviderStore


def _install(monkeypatch: pytest.MonkeyPatch, transport: FakeTransport, model: ScriptedModel) -> None:
    orchestrator = AgentOrchestrator(
        StaticProviderStore([provider("calc")]),
        ConnectionPool(transport),
        config=Settings(PLANNER_ENABLED=False),
        endpoint_resolver=lambda _model: ModelEndpoint(model="test-model"),
        client_factory=lambda _endpoint: model,
    )
    monkeypatch.setattr(entry, "build_orchestrator", lambda: orchestrator)


def test_tools_mode_lists_catalog_and_closes(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    """tools mode prints every tool and leaves no connection open."""
    transport = FakeTransport({"calc": ["add", "mul"]})
    _install(monkeypatch, transport, ScriptedModel())

    entry.main(["--mode", "tools", "--log-level", "warning"])

    out = capsys.readouterr().out
    assert "add" in out and "mul" in out
    assert transport.closed == ["calc"]


def test_ask_mode_prints_answer(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    """ask mode runs one chat and prints the final message."""
    transport = FakeTransport({"calc": ["add"]}, results={"add": "3"})
    _install(monkeypatch, transport, ScriptedModel(tool_call("add", {"x": 1, "y": 2}), "It is 3."))

    entry.main(["--mode", "ask", "--log-level", "warning", "what", "is", "1+2"])

    assert "It is 3." in capsys.readouterr().out


def test_ask_mode_requires_prompt(monkeypatch: pytest.MonkeyPatch) -> None:
    """ask mode without a prompt is a usage error."""
    _install(monkeypatch, FakeTransport({}), ScriptedModel())

    with pytest.raises(SystemExit):
        entry.main(["--mode", "ask", "--log-level", "warning"])
