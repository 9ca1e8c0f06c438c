"""
Pydantic models for toolrelay API requests and responses.
This module defines the request and response schemas used by the toolrelay API.
"""

from typing import (
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    Field,
)

from toolrelay.core.schema import (
    AgentChatOptions,
    ConversationMessage,
)


# ---------------------------------------------------------------------------
# Pydantic request / response schema
# ---------------------------------------------------------------------------
class ChatRequest(BaseModel):
    """Incoming conversation for a single agent call."""

    messages: List[ConversationMessage] = Field(default_factory=list)
    model: Optional[str] = Field(None, description="Model name override")
    max_tool_rounds: Optional[int] = Field(None, ge=1, le=50, description="Round ceiling")
    plan: Optional[bool] = Field(None, description="Force planning on or off")

    def to_options(self) -> AgentChatOptions:
        """Convert to orchestrator options."""
        return AgentChatOptions(
            messages=self.messages,
            model=self.model,
            max_tool_rounds=self.max_tool_rounds,
            plan=self.plan,
        )


class ToolSummary(BaseModel):
    """Name and description of one tool."""

    name: str
    description: str = ""


class ToolListResponse(BaseModel):
    """Catalog listing, with an error message when a provider could not be reached."""

    tools: List[ToolSummary] = Field(default_factory=list)
    error: Optional[str] = None


class ProviderSummary(BaseModel):
    """Configured provider, without its environment."""

    id: str
    name: str
    command: str
    args: List[str] = Field(default_factory=list)


class SocketChatMessage(BaseModel):
    """Frame sent by WebSocket clients."""

    user_message: str = Field(..., alias="userMessage")
    model: Optional[str] = None

    model_config = {"populate_by_name": True}
