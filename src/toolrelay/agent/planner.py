"""
Planner for toolrelay.

Before the round loop starts, one extra model call decides whether a request is simple (answer it
directly, calling tools as needed) or multi-step (split it into ordered steps, each optionally pinned
to one provider).  Planning is best-effort: whatever goes wrong, the request runs unplanned.
"""

import json
import logging
import re
from typing import (
    Any,
    ClassVar,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
)

from pydantic import (
    BaseModel,
    Field,
    ValidationError,
    field_validator,
)

from toolrelay.agent.model_client import ModelClient
from toolrelay.core.schema import (
    ConversationMessage,
    Plan,
    PlanStep,
    ToolDescriptor,
    ToolProviderConfig,
)
from toolrelay.tools import describe_catalog

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic models for response validation
# ---------------------------------------------------------------------------
class PlannerStep(BaseModel):
    """One step as the model writes it."""

    description: str
    server: Optional[str] = None


class PlannerResponse(BaseModel):
    """Validates planner responses from LLMs."""

    need_plan: bool = Field(False, alias="needPlan")
    steps: List[PlannerStep] = Field(default_factory=list)

    model_config = {"populate_by_name": True}

    @field_validator("steps", mode="before")
    @classmethod
    def _accept_plain_strings(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [{"description": item} if isinstance(item, str) else item for item in value]
        return value


def _sanitize_json_string(content: str) -> str:
    """Clean up JSON strings returned by LLMs."""
    # Strip markdown code blocks if present
    if "```" in content:
        match = re.search(r"```(?:json)?\s*(.+?)```", content, re.DOTALL)
        if match:
            content = match.group(1).strip()

    # Remove control characters except whitespace
    content = "".join(ch for ch in content if ch >= " " or ch in "\n\r\t")

    # Keep the outermost {...} object, skipping braces inside strings
    open_idx = content.find("{")
    if open_idx < 0:
        return content
    depth = 0
    in_string = False
    escaped = False
    for i in range(open_idx, len(content)):
        ch = content[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return content[open_idx : i + 1]
    return content[open_idx:]


def parse_plan(content: str, max_steps: int = 8) -> Plan:
    """
    Turn raw planner output into a :class:`Plan`.

    Malformed output never raises; it yields an empty, inactive plan.
    """
    try:
        parsed = PlannerResponse.model_validate(json.loads(_sanitize_json_string(content)))
    except (json.JSONDecodeError, ValidationError) as exc:
        logger.warning("Discarding unparsable plan: %s", exc)
        return Plan()

    steps = tuple(
        PlanStep(description=step.description.strip(), provider=(step.server or "").strip() or None)
        for step in parsed.steps
        if step.description.strip()
    )
    if len(steps) > max_steps:
        logger.info("Planner returned %d steps; keeping the first %d", len(steps), max_steps)
        steps = steps[:max_steps]

    if not parsed.need_plan or not steps:
        return Plan()
    return Plan(needs_plan=True, steps=steps)


class Planner:
    """Single-call request classifier."""

    SYSTEM_PROMPT: ClassVar[
        str
    ] = """\
You decide whether a user request needs a multi-step plan before an assistant with tools answers it.
Reply with ONE JSON object and nothing else:
{"needPlan": false, "steps": []}
or
{"needPlan": true, "steps": [{"description": "<what to do>", "server": "<tool server name, optional>"}]}
Plan only when the request needs several dependent actions (e.g. find something, then act on it).
Simple questions and single actions get needPlan=false.
Steps run in order and each sees the previous step's result. Set "server" only when a step should
use tools of exactly one server.
"""

    def __init__(self, model: ModelClient, max_tokens: int = 1024, max_steps: int = 8) -> None:
        self._model = model
        self._max_tokens = max_tokens
        self._max_steps = max_steps

    def _build_prompt(
        self,
        catalog: Sequence[ToolDescriptor],
        providers: Sequence[ToolProviderConfig],
    ) -> str:
        """Build prompt with optional available tools information."""
        prompt = self.SYSTEM_PROMPT
        if catalog:
            by_id: Mapping[str, ToolProviderConfig] = {p.id: p for p in providers}
            prompt += "\nAvailable tools ([server] name: description):\n"
            prompt += describe_catalog(catalog, by_id)
        else:
            prompt += "\nNo tools are available."
        return prompt

    async def classify(
        self,
        conversation: Sequence[ConversationMessage],
        catalog: Sequence[ToolDescriptor] = (),
        providers: Sequence[ToolProviderConfig] = (),
    ) -> Plan:
        """Ask the model for a plan; any failure means "no plan"."""
        transcript: List[Dict[str, Any]] = [
            {"role": "system", "content": self._build_prompt(catalog, providers)}
        ]
        transcript.extend(
            {"role": message.role, "content": message.content}
            for message in conversation
            if message.role != "system"
        )

        try:
            response = await self._model.complete(
                transcript,
                tools=(),
                tool_choice="none",
                max_tokens=self._max_tokens,
                json_mode=True,
            )
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Planner call failed; continuing without a plan: %s", exc)
            return Plan()

        logger.debug("Planner response: %s", response.text)
        plan = parse_plan(response.text, self._max_steps)
        if plan.active:
            logger.info(
                "Planner produced %d step(s): %s",
                len(plan.steps),
                [step.description for step in plan.steps],
            )
        return plan
