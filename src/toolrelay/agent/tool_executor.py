"""Resolves tool names to providers and runs tool calls, folding every failure into the result."""

import logging
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from toolrelay.common import shorten
from toolrelay.core.errors import (
    ProviderConnectionError,
    ToolRelayError,
)
from toolrelay.core.schema import (
    ToolDescriptor,
    ToolProviderConfig,
    ToolResult,
)
from toolrelay.providers.pool import ConnectionPool
from toolrelay.providers.store import ProviderConfigStore
from toolrelay.tools import flatten_content

logger = logging.getLogger(__name__)


class ToolInvoker:
    """
    Maps tool names to providers and executes single calls.

    The name -> provider-id memo is filled lazily and is never invalidated behind the caller's back:
    if a provider later stops announcing a tool, calls keep going to it and surface as tool errors.
    Use :meth:`forget` after reconfiguring providers.
    """

    def __init__(self, store: ProviderConfigStore, pool: ConnectionPool) -> None:
        self._store = store
        self._pool = pool
        self._memo: Dict[str, str] = {}

    @property
    def memo(self) -> Dict[str, str]:
        """Copy of the tool name -> provider id table."""
        return dict(self._memo)

    def forget(self, tool_name: Optional[str] = None) -> None:
        """Drop one memoized tool, or all of them."""
        if tool_name is None:
            self._memo.clear()
        else:
            self._memo.pop(tool_name, None)

    async def list_provider_tools(self, provider: ToolProviderConfig) -> List[ToolDescriptor]:
        """Catalog of a single provider, through its own pool entry."""
        async with self._pool.lease([provider]) as lease:
            return list(lease.tools)

    async def resolve(self, tool_name: str) -> Optional[ToolProviderConfig]:
        """
        Find the provider serving *tool_name*.

        Providers are tried in configuration order; the first whose catalog contains the tool
        wins.  Providers that cannot be connected are skipped.

        Returns
        -------
        ToolProviderConfig | None
            The provider, or *None* if nobody serves the tool.

        Raises
        ------
        ConfigurationError
            If the provider configuration cannot be read.  :meth:`execute` turns this into an
            error result.
        """
        providers = self._store.list_providers()

        cached = self._memo.get(tool_name)
        if cached is not None:
            for provider in providers:
                if provider.id == cached:
                    return provider
            logger.debug("Memoized provider '%s' for '%s' is gone; rescanning", cached, tool_name)

        for provider in providers:
            try:
                tools = await self.list_provider_tools(provider)
            except ProviderConnectionError as exc:
                logger.warning("Skipping provider '%s' while resolving '%s': %s",
                               provider.id, tool_name, exc)
                continue
            if any(tool.name == tool_name for tool in tools):
                self._memo[tool_name] = provider.id
                return provider
        return None

    async def invoke(
        self, provider: ToolProviderConfig, tool_name: str, args: Dict[str, Any] | None = None
    ) -> ToolResult:
        """
        Run *tool_name* on *provider* with *args*.

        Never raises: connection problems, protocol errors and exceptions inside the tool all come
        back as ``ToolResult(is_error=True)`` so the model can react to them.
        """
        if args is None:
            args = {}

        try:
            logger.debug("Executing tool '%s' on '%s' with args=%s", tool_name, provider.id, args)
            async with self._pool.lease([provider]) as lease:
                raw = await lease.call_tool(provider.id, tool_name, args)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Tool '%s' on provider '%s' failed: %s", tool_name, provider.id, exc)
            return ToolResult(text=str(exc) or exc.__class__.__name__, is_error=True)

        result = ToolResult(text=flatten_content(raw.content), is_error=raw.is_error)
        logger.debug("Tool '%s' returned (error=%s): %s",
                     tool_name, result.is_error, shorten(result.text))
        return result

    async def execute(self, tool_name: str, args: Dict[str, Any] | None = None) -> ToolResult:
        """Resolve *tool_name* and invoke it; failures of either step yield an error result."""
        try:
            provider = await self.resolve(tool_name)
        except ToolRelayError as exc:
            logger.warning("Cannot resolve tool '%s': %s", tool_name, exc)
            return ToolResult(text=f"cannot resolve tool {tool_name}: {exc}", is_error=True)
        if provider is None:
            logger.warning("No provider serves tool '%s'", tool_name)
            return ToolResult(text=f"no provider serves tool {tool_name}", is_error=True)
        return await self.invoke(provider, tool_name, args)
