"""
Schema definitions for provider <-> agent <-> model messages.

These data models serve as the contract between the connection pool, the planner, the round loop
and whatever transport streams events to a client.  We keep them separate from runtime logic so they
can be imported anywhere without side-effects.
"""

from typing import (
    Annotated,
    Any,
    Dict,
    List,
    Literal,
    Optional,
    Tuple,
    Union,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
)


def _empty_object_schema() -> Dict[str, Any]:
    return {"type": "object", "properties": {}}


# ---------------------------------------------------------------------------
# Providers and tools
# ---------------------------------------------------------------------------
class ToolProviderConfig(BaseModel):
    """Launch descriptor of one stdio tool provider.  Owned by the config store."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Stable provider identifier")
    name: str = Field("", description="Human-readable name, used to pin plan steps")
    command: str = Field(..., description="Executable to spawn, e.g. 'npx'")
    args: Tuple[str, ...] = Field(default_factory=tuple)
    env: Dict[str, str] = Field(default_factory=dict)

    @property
    def label(self) -> str:
        """Name if set, id otherwise."""
        return self.name or self.id


class ToolDescriptor(BaseModel):
    """A tool as announced by a provider."""

    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=_empty_object_schema)
    provider_id: Optional[str] = None


class ContentPart(BaseModel):
    """One content block of a tool result (text, image, ...)."""

    type: str = "text"
    text: Optional[str] = None
    data: Optional[str] = None
    mime_type: Optional[str] = None


class RawToolResult(BaseModel):
    """What a provider transport hands back for a single tool call."""

    content: List[ContentPart] = Field(default_factory=list)
    is_error: bool = False


class ToolResult(BaseModel):
    """Flattened tool outcome fed back to the model."""

    text: str
    is_error: bool = False


# ---------------------------------------------------------------------------
# Conversation and planning
# ---------------------------------------------------------------------------
class ConversationMessage(BaseModel):
    """A message supplied by the caller."""

    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant", "system"]
    content: str


class PlanStep(BaseModel):
    """One unit of a decomposed task, optionally pinned to a provider."""

    model_config = ConfigDict(frozen=True)

    description: str
    provider: Optional[str] = None


class Plan(BaseModel):
    """Planner verdict.  Step order is fixed once created."""

    model_config = ConfigDict(frozen=True)

    needs_plan: bool = False
    steps: Tuple[PlanStep, ...] = ()

    @property
    def active(self) -> bool:
        """True when the request should be driven step by step."""
        return self.needs_plan and bool(self.steps)


class ToolCallRecord(BaseModel):
    """A tool call issued during one chat() invocation."""

    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Model I/O
# ---------------------------------------------------------------------------
class ModelEndpoint(BaseModel):
    """Where and how to reach the chat model."""

    base_url: Optional[str] = None
    model: str
    api_key: Optional[str] = None


class ModelToolCall(BaseModel):
    """A tool call requested by the model."""

    id: str
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ModelResponse(BaseModel):
    """One model turn: text and/or tool calls."""

    text: str = ""
    tool_calls: List[ModelToolCall] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Agent events
# ---------------------------------------------------------------------------
class ToolCallEvent(BaseModel):
    """The model asked for a tool."""

    type: Literal["tool_call"] = "tool_call"
    call_id: str
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)
    step_index: Optional[int] = None


class ToolResultEvent(BaseModel):
    """A tool finished (successfully or not)."""

    type: Literal["tool_result"] = "tool_result"
    call_id: str
    name: str
    text: str
    is_error: bool = False
    step_index: Optional[int] = None


class AssistantMessageEvent(BaseModel):
    """The model produced text."""

    type: Literal["assistant_message"] = "assistant_message"
    content: str
    step_index: Optional[int] = None


class PlanEvent(BaseModel):
    """The planner decomposed the request."""

    type: Literal["plan"] = "plan"
    steps: List[PlanStep]


class FinalMessageEvent(BaseModel):
    """The whole chat() call completed."""

    type: Literal["final_message"] = "final_message"
    message: str
    tool_calls_used: int = 0


AgentEvent = Annotated[
    Union[
        ToolCallEvent,
        ToolResultEvent,
        AssistantMessageEvent,
        PlanEvent,
        FinalMessageEvent,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Public chat contract
# ---------------------------------------------------------------------------
class AgentChatOptions(BaseModel):
    """Input of AgentOrchestrator.chat()."""

    messages: List[ConversationMessage] = Field(default_factory=list)
    model: Optional[str] = Field(None, description="Override the configured model name")
    max_tool_rounds: Optional[int] = Field(None, ge=1, description="Round ceiling per unit")
    plan: Optional[bool] = Field(None, description="Force planning on/off; None uses settings")


class AgentChatResult(BaseModel):
    """Output of AgentOrchestrator.chat()."""

    message: str
    tool_calls_used: int = 0
    tool_calls: List[ToolCallRecord] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Flow runs (node graphs executed without a model)
# ---------------------------------------------------------------------------
class FlowNodeData(BaseModel):
    """Tool call carried by a flow node."""

    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(None, description="Tool to run; nodes without one are skipped")
    args: Dict[str, Any] = Field(default_factory=dict)
    args_summary: Optional[str] = Field(None, alias="argsSummary")


class FlowNode(BaseModel):
    """One node of a flow graph.  Only ``toolCall`` (or untyped) nodes are executed."""

    id: str
    type: Optional[str] = None
    position: Optional[Dict[str, float]] = None
    data: FlowNodeData = Field(default_factory=FlowNodeData)

    @property
    def runnable(self) -> bool:
        """True for tool-call nodes that name a tool."""
        return self.type in (None, "toolCall") and isinstance(self.data.name, str)


class FlowEdge(BaseModel):
    """Ordering constraint: *source* runs before *target*."""

    id: Optional[str] = None
    source: str
    target: str


class FlowRunRequest(BaseModel):
    """A node/edge graph to execute."""

    nodes: List[FlowNode] = Field(default_factory=list)
    edges: List[FlowEdge] = Field(default_factory=list)


class FlowNodeResult(BaseModel):
    """Outcome of one executed node."""

    model_config = ConfigDict(populate_by_name=True)

    node_id: str = Field(..., alias="nodeId")
    tool_name: str = Field(..., alias="toolName")
    success: bool
    output: str = Field("", description="Tool text, or the error message")
    is_error: bool = Field(False, alias="isError")


class FlowRunResult(BaseModel):
    """Outcome of a flow run, in execution order."""

    model_config = ConfigDict(populate_by_name=True)

    results: List[FlowNodeResult] = Field(default_factory=list)
    executed_count: int = Field(0, alias="executedCount")
