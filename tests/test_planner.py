"""Tests for plan parsing and the planner call."""

import asyncio

from fakes import (
    ScriptedModel,
    provider,
)

from toolrelay.agent.planner import (
    Planner,
    parse_plan,
)
from toolrelay.core.errors import ModelCallError
from toolrelay.core.schema import (
    ConversationMessage,
    PlanStep,
    ToolDescriptor,
)

CONVERSATION = [ConversationMessage(role="user", content="find my notes and summarize them")]


def test_parse_structured_steps() -> None:
    """Object steps keep description and pinned server."""
    plan = parse_plan(
        '{"needPlan": true, "steps": [{"description": "search files", "server": "fs"},'
        ' {"description": "summarize"}]}'
    )

    assert plan.active
    assert plan.steps == (
        PlanStep(description="search files", provider="fs"),
        PlanStep(description="summarize"),
    )


def test_parse_plain_string_steps() -> None:
    """Steps may be bare strings."""
    plan = parse_plan('{"needPlan": true, "steps": ["search files", "summarize"]}')

    assert [step.description for step in plan.steps] == ["search files", "summarize"]


def test_parse_fenced_json_with_chatter() -> None:
    """Code fences and surrounding prose are stripped."""
    content = 'Sure!\n```json\n{"needPlan": true, "steps": ["a {b}", "c"]}\n```\nDone.'

    assert [step.description for step in parse_plan(content).steps] == ["a {b}", "c"]


def test_malformed_output_means_no_plan() -> None:
    """Garbage, wrong types and empty step lists all degrade to no plan."""
    for content in ["", "not json", '{"needPlan": "maybe", "steps": 3}', '{"needPlan": true}']:
        plan = parse_plan(content)
        assert not plan.needs_plan
        assert plan.steps == ()


def test_need_plan_false_discards_steps() -> None:
    """Steps are ignored when the model says no plan is needed."""
    assert not parse_plan('{"needPlan": false, "steps": ["x", "y"]}').active


def test_step_count_is_bounded() -> None:
    """Only the first max_steps steps are kept."""
    plan = parse_plan('{"needPlan": true, "steps": ["1", "2", "3", "4"]}', max_steps=2)

    assert [step.description for step in plan.steps] == ["1", "2"]


def test_classify_disables_tools_and_lists_catalog() -> None:
    """The planner call has tool calling off, asks for JSON and sees the catalog."""
    model = ScriptedModel('{"needPlan": true, "steps": ["search files", "summarize"]}')
    planner = Planner(model, max_tokens=256)
    catalog = [ToolDescriptor(name="search", description="Search files", provider_id="fs")]

    plan = asyncio.run(planner.classify(CONVERSATION, catalog, [provider("fs", name="files")]))

    assert plan.active and len(plan.steps) == 2
    assert model.tool_choices == ["none"]
    assert model.tools_seen == [[]]
    assert model.json_modes == [True]
    system_prompt = model.transcripts[0][0]["content"]
    assert "[files] search: Search files" in system_prompt
    assert model.transcripts[0][-1]["content"] == CONVERSATION[0].content


def test_classify_swallows_model_errors() -> None:
    """A failing planner call means no plan, not a failed request."""
    planner = Planner(ScriptedModel(ModelCallError("timeout")))

    plan = asyncio.run(planner.classify(CONVERSATION))

    assert not plan.active
