"""
HTTP / WebSocket API for toolrelay.

This module is a thin transport around :class:`~toolrelay.agent.AgentOrchestrator`.
It exposes the following endpoints:
- **GET /health**  - liveness check.
- **GET /agent/tools** - merged tool catalog of all configured providers.
- **POST /agent/chat** - one agent call: {"messages": [...], "model": "...", "max_tool_rounds": 5}
- **GET /providers** - configured tool providers.
- **GET /providers/{id}/tools** - one-off catalog lookup for a single provider.
- **POST /engine/run** - run a node/edge graph of tool calls in edge order, without a model.
- **WS /agent/ws** - streaming chat: send {"userMessage": "..."}, receive agent events.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import (
    AsyncIterator,
    Dict,
    List,
    Optional,
    Set,
)

from fastapi import (
    Depends,
    FastAPI,
    HTTPException,
    WebSocket,
    WebSocketDisconnect,
)
from pydantic import ValidationError

from toolrelay.agent.events import EventChannel
from toolrelay.agent.orchestrator import AgentOrchestrator
from toolrelay.api.models import (
    ChatRequest,
    ProviderSummary,
    SocketChatMessage,
    ToolListResponse,
    ToolSummary,
)
from toolrelay.common import (
    AnsiColors,
    colored_print,
)
from toolrelay.config import settings
from toolrelay.core.errors import (
    ConfigurationError,
    ModelCallError,
    ProviderConnectionError,
    ToolRelayError,
)
from toolrelay.core.schema import (
    AgentChatOptions,
    AgentChatResult,
    ConversationMessage,
    FlowRunRequest,
    FlowRunResult,
)
from toolrelay.providers.mcp_stdio import McpStdioTransport
from toolrelay.providers.pool import ConnectionPool
from toolrelay.providers.store import JsonFileProviderStore

logger = logging.getLogger(__name__)

# Per-socket conversation history (in-memory, dropped on disconnect)
sessions: Dict[str, List[ConversationMessage]] = {}

# Chat tasks whose socket went away; kept referenced until they finish
_orphans: Set["asyncio.Task[AgentChatResult]"] = set()

_orchestrator: Optional[AgentOrchestrator] = None


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------
def build_orchestrator() -> AgentOrchestrator:
    """Wire store, transport and pool from settings."""
    pool = ConnectionPool(
        McpStdioTransport(),
        max_idle=settings.POOL_MAX_IDLE_SECONDS,
        sweep_interval=settings.POOL_SWEEP_INTERVAL_SECONDS,
    )
    return AgentOrchestrator(JsonFileProviderStore(settings.PROVIDERS_FILE), pool)


def get_orchestrator() -> AgentOrchestrator:
    """FastAPI dependency returning the process-wide orchestrator."""
    global _orchestrator  # pylint: disable=global-statement
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator


def _http_error(exc: ToolRelayError) -> HTTPException:
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, (ProviderConnectionError, ModelCallError)):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _log_orphan(task: "asyncio.Task[AgentChatResult]") -> None:
    _orphans.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.warning("Detached chat ended with error: %s", task.exception())


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Run the pool's idle sweep for the lifetime of the app."""
    factory = application.dependency_overrides.get(get_orchestrator, get_orchestrator)
    orchestrator = factory()
    orchestrator.pool.start()
    try:
        yield
    finally:
        await orchestrator.pool.stop()


app = FastAPI(
    title="toolrelay API",
    version="0.1.0",
    description="LLM agent over MCP tool providers",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@app.get("/health", summary="Health check")
async def health() -> dict[str, str]:
    """Return a simple liveness payload."""
    return {"status": "ok"}


@app.get("/agent/tools", response_model=ToolListResponse, summary="List available tools")
async def list_tools(
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
) -> ToolListResponse:
    """Return the merged catalog of all configured providers."""
    try:
        tools = await orchestrator.list_tools()
    except ToolRelayError as exc:
        logger.warning("Tool listing failed: %s", exc)
        return ToolListResponse(error=str(exc))
    return ToolListResponse(
        tools=[ToolSummary(name=tool.name, description=tool.description) for tool in tools]
    )


@app.post("/agent/chat", response_model=AgentChatResult, summary="Run one agent call")
async def chat(
    req: ChatRequest, orchestrator: AgentOrchestrator = Depends(get_orchestrator)
) -> AgentChatResult:
    """Answer a conversation, calling tools as needed.  No event streaming over plain HTTP."""
    try:
        return await orchestrator.chat(req.to_options())
    except ToolRelayError as exc:
        logger.warning("Chat failed: %s", exc)
        raise _http_error(exc) from exc


@app.get("/providers", response_model=List[ProviderSummary], summary="List tool providers")
async def list_providers(
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
) -> List[ProviderSummary]:
    """List configured providers (environment values are not exposed)."""
    try:
        providers = orchestrator.store.list_providers()
    except ToolRelayError as exc:
        raise _http_error(exc) from exc
    return [
        ProviderSummary(id=p.id, name=p.name, command=p.command, args=list(p.args))
        for p in providers
    ]


@app.get(
    "/providers/{provider_id}/tools",
    response_model=ToolListResponse,
    summary="List the tools of one provider",
)
async def list_provider_tools(
    provider_id: str, orchestrator: AgentOrchestrator = Depends(get_orchestrator)
) -> ToolListResponse:
    """One-off lookup: connections opened only for this request are closed afterwards."""
    provider = next((p for p in orchestrator.store.list_providers() if p.id == provider_id), None)
    if provider is None:
        raise HTTPException(status_code=404, detail=f"Provider '{provider_id}' not found")

    try:
        lease = await orchestrator.pool.acquire([provider])
    except ProviderConnectionError as exc:
        return ToolListResponse(error=str(exc))

    try:
        tools = [ToolSummary(name=t.name, description=t.description) for t in lease.tools]
    finally:
        orchestrator.pool.release(lease)
        if lease.fresh:
            await orchestrator.pool.close(lease.fingerprint)
    return ToolListResponse(tools=tools)


@app.post("/engine/run", response_model=FlowRunResult, summary="Run a tool flow graph")
async def run_flow(
    req: FlowRunRequest, orchestrator: AgentOrchestrator = Depends(get_orchestrator)
) -> FlowRunResult:
    """Execute the graph's tool nodes in edge order.  Failing tools are reported per node."""
    return await orchestrator.run_flow(req)


@app.websocket("/agent/ws")
async def agent_socket(
    websocket: WebSocket, orchestrator: AgentOrchestrator = Depends(get_orchestrator)
) -> None:
    """Streaming chat with per-socket history; every agent event is forwarded as JSON."""
    await websocket.accept()
    session_id = str(uuid.uuid4())
    sessions[session_id] = []
    channel: Optional[EventChannel] = None
    task: Optional["asyncio.Task[AgentChatResult]"] = None

    try:
        while True:
            frame = await websocket.receive_json()
            try:
                incoming = SocketChatMessage.model_validate(frame)
            except ValidationError as exc:
                await websocket.send_json({"type": "error", "message": str(exc)})
                continue

            text = incoming.user_message.strip()
            if not text:
                continue

            history = sessions[session_id]
            user_message = ConversationMessage(role="user", content=text)
            options = AgentChatOptions(messages=[*history, user_message], model=incoming.model)

            channel = EventChannel()
            task = asyncio.create_task(orchestrator.chat(options, channel))
            task.add_done_callback(lambda _t, ch=channel: ch.close())

            async for event in channel:
                await websocket.send_json(event.model_dump())

            try:
                result = await task
            except ToolRelayError as exc:
                logger.warning("Socket chat failed: %s", exc)
                await websocket.send_json({"type": "error", "message": str(exc)})
                continue

            history.extend([user_message, ConversationMessage(role="assistant", content=result.message)])
    except WebSocketDisconnect:
        logger.info("Socket %s disconnected", session_id)
    finally:
        sessions.pop(session_id, None)
        if task is not None and not task.done():
            # In-flight work runs to completion; its events are dropped.
            if channel is not None:
                channel.detach()
            _orphans.add(task)
            task.add_done_callback(_log_orphan)


# ---------------------------------------------------------------------------
# Public helper to launch the API (imported by main.py)
# ---------------------------------------------------------------------------
def run_api(
    host: str = "0.0.0.0", port: int = 8000, reload: bool = False, log_level: str | None = None
) -> None:
    """Start a uvicorn server hosting *app*.

    Parameters
    ----------
    host, port:
        Bind address for the HTTP server.
    reload:
        If *True*, enable auto-reload (useful in development).
    log_level:
        Logging level to use (default from settings if not provided).
    """

    # Lazy import - keeps uvicorn an optional dependency at pkg-import time
    import uvicorn  # pylint: disable=import-outside-toplevel

    if log_level is None:  # Use the default from settings if not provided
        log_level = settings.LOG_LEVEL

    logger.info(
        "Starting toolrelay API at %s:%d (reload=%s, log_level=%s)", host, port, reload, log_level
    )
    logger.debug("API settings: %s", settings.model_dump(exclude={"OPENAI_API_KEY", "MODEL_API_KEY"}))

    colored_print(f"toolrelay API is running at http://localhost:{port}.", AnsiColors.GREEN)
    colored_print(f"Visit http://localhost:{port}/docs for API documentation.", AnsiColors.BLUE)
    uvicorn.run(
        "toolrelay.api.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


# ---------------------------------------------------------------------------
# `python -m toolrelay.api.app` helper
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    run_api(reload=True)
