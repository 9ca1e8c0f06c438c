"""
Round loop for toolrelay.

A *unit* of work is either a whole request or one plan step.  For each unit the executor alternates
model calls and tool executions::

    awaiting_model -> awaiting_tools -> awaiting_model -> ... -> complete

until the model answers without asking for tools, or the round ceiling is hit.  Tool calls of one
round run one after the other in the order the model issued them, since later calls may depend on
earlier ones.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Sequence,
)

from toolrelay.agent.events import EventSink
from toolrelay.agent.model_client import ModelClient
from toolrelay.agent.tool_executor import ToolInvoker
from toolrelay.common import shorten
from toolrelay.core.errors import ProviderConnectionError
from toolrelay.core.schema import (
    AgentEvent,
    AssistantMessageEvent,
    ModelToolCall,
    Plan,
    PlanStep,
    ToolCallEvent,
    ToolCallRecord,
    ToolDescriptor,
    ToolProviderConfig,
    ToolResultEvent,
)
from toolrelay.tools import (
    find_provider,
    tools_for_provider,
)

logger = logging.getLogger(__name__)

ROUND_BUDGET_EXHAUSTED = "Max tool rounds reached; ending turn."

Transcript = List[Dict[str, Any]]


class LoopState(str, Enum):
    """Where a unit of work stands."""

    AWAITING_MODEL = "awaiting_model"
    AWAITING_TOOLS = "awaiting_tools"
    COMPLETE = "complete"


@dataclass
class RoundState:
    """Round counter of one unit, bounded by ``max_rounds``."""

    max_rounds: int
    rounds: int = 0
    state: LoopState = LoopState.AWAITING_MODEL

    @property
    def exhausted(self) -> bool:
        """True once no further tool round is allowed."""
        return self.rounds >= self.max_rounds


@dataclass
class UnitResult:
    """Outcome of one unit of work."""

    text: str
    rounds: int
    budget_exhausted: bool = False


def _assistant_entry(text: str, calls: Sequence[ModelToolCall]) -> Dict[str, Any]:
    return {
        "role": "assistant",
        "content": text or None,
        "tool_calls": [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
            }
            for call in calls
        ],
    }


def step_instruction(steps: Sequence[PlanStep], index: int) -> str:
    """Tell the model which step it is on and which steps it must leave alone."""
    step = steps[index]
    lines = [f"Step {index + 1} of {len(steps)}: {step.description}"]
    lines.append("Carry out only this step and report its result.")
    later = steps[index + 1 :]
    if later:
        lines.append("Do NOT perform these later steps yet:")
        lines.extend(f"- Step {index + 2 + offset}: {s.description}" for offset, s in enumerate(later))
    return "\n".join(lines)


def previous_result_message(step: PlanStep, result: str) -> str:
    """Hand the previous step's result to the next step."""
    return (
        f'Result of the previous step ("{step.description}"). '
        f"Use this result to continue:\n{result}"
    )


class StepExecutor:
    """
    Drives rounds for one ``chat()`` call.

    The executor owns nothing shared: it appends to the caller's transcript and to the caller's
    tool-call log, both of which belong to a single invocation.
    """

    def __init__(
        self,
        model: ModelClient,
        invoker: ToolInvoker,
        records: List[ToolCallRecord],
        sink: Optional[EventSink] = None,
    ) -> None:
        self._model = model
        self._invoker = invoker
        self._records = records
        self._sink = sink

    async def _emit(self, event: AgentEvent) -> None:
        if self._sink is not None:
            await self._sink.emit(event)

    async def run_unit(
        self,
        transcript: Transcript,
        catalog: Sequence[ToolDescriptor],
        max_rounds: int,
        step_index: Optional[int] = None,
        provider: Optional[ToolProviderConfig] = None,
    ) -> UnitResult:
        """
        Run model/tool rounds until the model stops asking for tools.

        Parameters
        ----------
        transcript:
            OpenAI-format messages; extended in place with every assistant and tool message.
        catalog:
            Tools the model may call during this unit.
        max_rounds:
            Ceiling on tool rounds.  Reaching it completes the unit with
            :data:`ROUND_BUDGET_EXHAUSTED`.
        step_index:
            Plan step being executed, attached to emitted events.
        provider:
            Provider a pinned step is bound to.  Calls to tools in *catalog* go straight to it
            instead of through name resolution.
        """
        state = RoundState(max_rounds=max_rounds)
        pinned = {tool.name for tool in catalog} if provider is not None else set()

        while not state.exhausted:
            state.state = LoopState.AWAITING_MODEL
            response = await self._model.complete(transcript, tools=catalog, tool_choice="auto")

            if response.text:
                await self._emit(AssistantMessageEvent(content=response.text, step_index=step_index))

            if not response.tool_calls:
                state.state = LoopState.COMPLETE
                transcript.append({"role": "assistant", "content": response.text})
                logger.debug("Unit complete after %d round(s)", state.rounds)
                return UnitResult(text=response.text, rounds=state.rounds)

            state.state = LoopState.AWAITING_TOOLS
            transcript.append(_assistant_entry(response.text, response.tool_calls))
            for call in response.tool_calls:
                target = provider if call.name in pinned else None
                await self._run_tool_call(transcript, call, step_index, target)
            state.rounds += 1

        state.state = LoopState.COMPLETE
        logger.warning("Round budget of %d exhausted", max_rounds)
        return UnitResult(text=ROUND_BUDGET_EXHAUSTED, rounds=state.rounds, budget_exhausted=True)

    async def _run_tool_call(
        self,
        transcript: Transcript,
        call: ModelToolCall,
        step_index: Optional[int],
        provider: Optional[ToolProviderConfig] = None,
    ) -> None:
        self._records.append(ToolCallRecord(name=call.name, args=call.arguments))
        await self._emit(
            ToolCallEvent(call_id=call.id, name=call.name, args=call.arguments, step_index=step_index)
        )
        logger.info("Calling tool '%s' (%s)", call.name, call.id)

        if provider is not None:
            result = await self._invoker.invoke(provider, call.name, call.arguments)
        else:
            result = await self._invoker.execute(call.name, call.arguments)
        transcript.append({"role": "tool", "tool_call_id": call.id, "content": result.text})
        await self._emit(
            ToolResultEvent(
                call_id=call.id,
                name=call.name,
                text=result.text,
                is_error=result.is_error,
                step_index=step_index,
            )
        )
        logger.debug("Tool '%s' result: %s", call.name, shorten(result.text))

    async def run_plan(
        self,
        transcript: Transcript,
        catalog: Sequence[ToolDescriptor],
        plan: Plan,
        providers: Sequence[ToolProviderConfig],
        max_rounds: int,
    ) -> UnitResult:
        """
        Run one unit per plan step, in order, each with a fresh round counter.

        A step pinned to a provider sees that provider's own catalog (tools another provider
        shadows in the merged catalog included) and its calls go to that provider.  A step that
        runs out of rounds ends the plan.
        """
        steps = plan.steps
        result = UnitResult(text="", rounds=0)
        for index, step in enumerate(steps):
            if index > 0:
                transcript.append(
                    {"role": "user", "content": previous_result_message(steps[index - 1], result.text)}
                )
            transcript.append({"role": "user", "content": step_instruction(steps, index)})

            pinned = None
            if step.provider:
                pinned = find_provider(providers, step.provider)
                if pinned is None:
                    logger.warning("Step pinned to unknown provider '%s'; using all tools",
                                   step.provider)
            step_catalog = catalog if pinned is None else await self._pinned_catalog(pinned, catalog)
            logger.info("Running step %d/%d: %s", index + 1, len(steps), step.description)
            result = await self.run_unit(
                transcript,
                step_catalog,
                max_rounds,
                step_index=index,
                provider=pinned,
            )
            if result.budget_exhausted:
                logger.warning("Step %d exhausted its round budget; stopping the plan", index + 1)
                break
        return result

    async def _pinned_catalog(
        self, provider: ToolProviderConfig, catalog: Sequence[ToolDescriptor]
    ) -> Sequence[ToolDescriptor]:
        try:
            return await self._invoker.list_provider_tools(provider)
        except ProviderConnectionError as exc:
            logger.warning("Cannot list tools of pinned provider '%s': %s", provider.id, exc)
            return tools_for_provider(catalog, provider)
