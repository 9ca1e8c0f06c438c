"""
Model client for toolrelay.

This module is the only place that *directly* calls an LLM.  Everything else (round loop, planner,
pool) stays model-agnostic and talks to :class:`ModelClient`.

Any OpenAI-compatible chat-completions server works: the OpenAI API itself, or a self-hosted one
(Ollama, vLLM, LM Studio, ...) selected with ``MODEL_BASE_URL``.
"""

import json
import logging
import uuid
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    Dict,
    List,
    Literal,
    Optional,
    Sequence,
)

from toolrelay.config import Settings
from toolrelay.core.errors import ModelCallError
from toolrelay.core.schema import (
    ModelEndpoint,
    ModelResponse,
    ModelToolCall,
    ToolDescriptor,
)
from toolrelay.tools import to_openai_tool

logger = logging.getLogger(__name__)

ToolChoice = Literal["auto", "none"]


def resolve_model_endpoint(settings: Settings, model: Optional[str] = None) -> Optional[ModelEndpoint]:
    """
    Pick the model endpoint from settings.

    Fallback order:
    1. ``MODEL_BASE_URL`` (OpenAI-compatible server, key optional)
    2. ``OPENAI_API_KEY`` (the OpenAI API)
    3. nothing configured: *None*
    """
    name = model or settings.MODEL_NAME
    if settings.MODEL_BASE_URL:
        return ModelEndpoint(
            base_url=settings.MODEL_BASE_URL, model=name, api_key=settings.MODEL_API_KEY
        )
    if settings.OPENAI_API_KEY:
        return ModelEndpoint(model=name, api_key=settings.OPENAI_API_KEY)
    return None


class ModelClient(ABC):
    """One request/response per call; no state between calls."""

    @abstractmethod
    async def complete(
        self,
        transcript: Sequence[Dict[str, Any]],
        tools: Sequence[ToolDescriptor] = (),
        tool_choice: ToolChoice = "auto",
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
    ) -> ModelResponse:
        """
        Send *transcript* (OpenAI chat message dicts) and return the model's turn.

        Raises
        ------
        ModelCallError
            On transport failures or unusable responses.
        """


def _parse_arguments(raw: Optional[str], tool_name: str) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring unparsable arguments for tool '%s': %s", tool_name, raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _message_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    # Some servers return a list of content parts
    return "".join(
        part.get("text", "") for part in content if isinstance(part, dict) and part.get("type") == "text"
    )


class OpenAIModelClient(ModelClient):
    """Chat-completions client on the async OpenAI SDK."""

    def __init__(self, endpoint: ModelEndpoint, timeout: float = 120.0) -> None:
        import openai  # pylint: disable=import-outside-toplevel

        self.endpoint = endpoint
        self._openai = openai
        self._client = openai.AsyncOpenAI(
            base_url=endpoint.base_url,
            api_key=endpoint.api_key or "not-needed",
            timeout=timeout,
        )

    async def complete(
        self,
        transcript: Sequence[Dict[str, Any]],
        tools: Sequence[ToolDescriptor] = (),
        tool_choice: ToolChoice = "auto",
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
    ) -> ModelResponse:
        request: Dict[str, Any] = {
            "model": self.endpoint.model,
            "messages": list(transcript),
        }
        if tools:
            request["tools"] = [to_openai_tool(tool) for tool in tools]
            request["tool_choice"] = tool_choice
        if max_tokens is not None:
            request["max_tokens"] = max_tokens
        if json_mode:
            request["response_format"] = {"type": "json_object"}

        try:
            completion = await self._client.chat.completions.create(**request)
        except self._openai.OpenAIError as exc:
            logger.error("Model call to %s failed: %s", self.endpoint.model, exc)
            raise ModelCallError(f"Model call failed: {exc}") from exc

        if not completion.choices or completion.choices[0].message is None:
            raise ModelCallError("Model returned no choices")

        message = completion.choices[0].message
        calls: List[ModelToolCall] = []
        for call in message.tool_calls or []:
            function = getattr(call, "function", None)
            if function is None:
                continue
            calls.append(
                ModelToolCall(
                    id=call.id or f"call_{uuid.uuid4().hex[:12]}",
                    name=function.name or "",
                    arguments=_parse_arguments(function.arguments, function.name or ""),
                )
            )

        response = ModelResponse(text=_message_text(message.content), tool_calls=calls)
        logger.debug(
            "Model %s replied with %d chars and %d tool call(s)",
            self.endpoint.model,
            len(response.text),
            len(response.tool_calls),
        )
        return response
