"""Per-provider transport contract used by the connection pool."""

from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    Dict,
    List,
)

from toolrelay.core.schema import (
    RawToolResult,
    ToolDescriptor,
    ToolProviderConfig,
)


class ProviderTransport(ABC):
    """
    Opens, queries and closes connections to individual tool providers.

    Handles are opaque to everyone but the transport that produced them.  ``connect`` performs the
    protocol handshake and raises :class:`~toolrelay.core.errors.ProviderConnectionError` when the
    provider cannot be reached.
    """

    @abstractmethod
    async def connect(self, config: ToolProviderConfig) -> Any:
        """Start the provider and return a live handle."""

    @abstractmethod
    async def list_tools(self, handle: Any) -> List[ToolDescriptor]:
        """Enumerate the tools announced by the provider behind *handle*."""

    @abstractmethod
    async def call_tool(self, handle: Any, name: str, args: Dict[str, Any]) -> RawToolResult:
        """Run one tool call.  May raise; the invoker absorbs failures."""

    @abstractmethod
    async def close(self, handle: Any) -> None:
        """Tear the connection down.  Must tolerate being called twice."""

    def is_alive(self, handle: Any) -> bool:  # pylint: disable=unused-argument
        """
        False once the provider behind *handle* has gone away.

        Pooled entries with a dead handle are reconnected on their next acquire.
        """
        return True
