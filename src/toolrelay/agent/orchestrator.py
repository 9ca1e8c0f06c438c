"""Main orchestration entry point: ``chat()`` and catalog introspection."""

from __future__ import annotations

import logging
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
)

from toolrelay.agent.events import EventSink
from toolrelay.agent.executor import (
    StepExecutor,
    UnitResult,
)
from toolrelay.agent.flow import FlowRunner
from toolrelay.agent.model_client import (
    ModelClient,
    OpenAIModelClient,
    resolve_model_endpoint,
)
from toolrelay.agent.planner import Planner
from toolrelay.agent.tool_executor import ToolInvoker
from toolrelay.config import (
    Settings,
    settings as default_settings,
)
from toolrelay.core.errors import ConfigurationError
from toolrelay.core.schema import (
    AgentChatOptions,
    AgentChatResult,
    FinalMessageEvent,
    FlowRunRequest,
    FlowRunResult,
    ModelEndpoint,
    PlanEvent,
    ToolCallRecord,
    ToolDescriptor,
)
from toolrelay.providers.pool import ConnectionPool
from toolrelay.providers.store import ProviderConfigStore

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a helpful assistant. When you need to perform actions (search, read files, etc.), "
    "use the provided tools. Reply in the same language as the user when appropriate."
)

EndpointResolver = Callable[[Optional[str]], Optional[ModelEndpoint]]
ClientFactory = Callable[[ModelEndpoint], ModelClient]


class AgentOrchestrator:
    """
    Composes pool, invoker, planner and round loop into a single ``chat()`` operation.

    One orchestrator serves many concurrent calls.  Per-call state (transcript, tool-call log,
    round counters) is created inside :meth:`chat`; only the pool and the invoker's tool memo are
    shared.
    """

    def __init__(
        self,
        store: ProviderConfigStore,
        pool: ConnectionPool,
        *,
        config: Settings | None = None,
        endpoint_resolver: EndpointResolver | None = None,
        client_factory: ClientFactory | None = None,
        invoker: ToolInvoker | None = None,
    ) -> None:
        self.store = store
        self.pool = pool
        self.config = config or default_settings
        self.invoker = invoker or ToolInvoker(store, pool)
        self._resolve_endpoint: EndpointResolver = endpoint_resolver or (
            lambda model: resolve_model_endpoint(self.config, model)
        )
        self._client_factory: ClientFactory = client_factory or OpenAIModelClient

    async def list_tools(self) -> List[ToolDescriptor]:
        """Merged catalog of every configured provider."""
        async with self.pool.lease(self.store.list_providers()) as lease:
            return list(lease.tools)

    async def run_flow(self, request: FlowRunRequest) -> FlowRunResult:
        """Execute a node graph of tool calls in edge order; no model is involved."""
        return await FlowRunner(self.invoker).run(request)

    def _model_client(self, model: Optional[str]) -> ModelClient:
        endpoint = self._resolve_endpoint(model)
        if endpoint is None:
            raise ConfigurationError(
                "No model endpoint configured. Set MODEL_BASE_URL or OPENAI_API_KEY."
            )
        logger.debug("Using model %s at %s", endpoint.model, endpoint.base_url or "OpenAI")
        return self._client_factory(endpoint)

    def _wants_plan(self, options: AgentChatOptions) -> bool:
        if options.plan is not None:
            return options.plan
        return self.config.PLANNER_ENABLED

    async def chat(
        self, options: AgentChatOptions, sink: Optional[EventSink] = None
    ) -> AgentChatResult:
        """
        Answer a conversation, calling tools and optionally planning first.

        Raises
        ------
        ConfigurationError
            No model endpoint is configured (raised before any model call).
        ProviderConnectionError
            A configured provider could not be started.
        ModelCallError
            A model call failed; tool calls already executed are not retried.
        """
        model = self._model_client(options.model)
        max_rounds = options.max_tool_rounds or self.config.MAX_TOOL_ROUNDS
        providers = self.store.list_providers()
        records: List[ToolCallRecord] = []

        async with self.pool.lease(providers) as lease:
            catalog = list(lease.tools)
            logger.info(
                "Chat with %d message(s), %d tool(s), max %d round(s)",
                len(options.messages),
                len(catalog),
                max_rounds,
            )

            transcript: List[Dict[str, Any]] = [{"role": "system", "content": SYSTEM_PROMPT}]
            transcript.extend(
                {"role": message.role, "content": message.content} for message in options.messages
            )

            executor = StepExecutor(model, self.invoker, records, sink)
            result: UnitResult

            # Plans sequence tool actions; without tools there is nothing to sequence.
            plan = None
            if catalog and self._wants_plan(options):
                planner = Planner(
                    model,
                    max_tokens=self.config.PLANNER_MAX_TOKENS,
                    max_steps=self.config.PLANNER_MAX_STEPS,
                )
                plan = await planner.classify(options.messages, catalog, providers)

            if plan is not None and plan.active:
                if sink is not None:
                    await sink.emit(PlanEvent(steps=list(plan.steps)))
                result = await executor.run_plan(transcript, catalog, plan, providers, max_rounds)
            else:
                result = await executor.run_unit(transcript, catalog, max_rounds)

        if sink is not None:
            await sink.emit(FinalMessageEvent(message=result.text, tool_calls_used=len(records)))
        logger.info("Chat finished with %d tool call(s)", len(records))
        return AgentChatResult(message=result.text, tool_calls_used=len(records), tool_calls=records)
