"""
MCP stdio transport.

Every provider runs as a child process speaking the Model Context Protocol over stdin/stdout.  The
``mcp`` SDK exposes the connection as nested async context managers whose cancel scopes must be
entered and exited by the same task.  Pool entries, however, are opened inside one request and may
be closed by the idle sweeper or during shutdown, so each connection lives in its own runner task:
the task enters the contexts, signals readiness and then parks until it is told to stop.
"""

import asyncio
import logging
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

import anyio
from mcp import (
    ClientSession,
    StdioServerParameters,
)
from mcp.client.stdio import (
    get_default_environment,
    stdio_client,
)
from mcp.shared.exceptions import McpError
from mcp.types import CONNECTION_CLOSED

from toolrelay.core.errors import (
    ProviderConnectionError,
    ToolExecutionError,
)
from toolrelay.core.schema import (
    ContentPart,
    RawToolResult,
    ToolDescriptor,
    ToolProviderConfig,
)
from toolrelay.providers.transport import ProviderTransport

logger = logging.getLogger(__name__)


class McpStdioConnection:
    """A running MCP client session bound to one provider process."""

    def __init__(self, config: ToolProviderConfig) -> None:
        self.config = config
        self.session: Optional[ClientSession] = None
        self._ready: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._lost = False

    def _server_parameters(self) -> StdioServerParameters:
        env = None
        if self.config.env:
            env = {**get_default_environment(), **self.config.env}
        return StdioServerParameters(
            command=self.config.command,
            args=list(self.config.args),
            env=env,
        )

    async def _run(self) -> None:
        try:
            async with stdio_client(self._server_parameters()) as (read_stream, write_stream):
                async with ClientSession(read_stream, write_stream) as session:
                    await session.initialize()
                    self.session = session
                    self._ready.set_result(None)
                    await self._stop.wait()
        except Exception as exc:  # pylint: disable=broad-except
            if not self._ready.done():
                self._ready.set_exception(exc)
            else:
                logger.warning("Provider '%s' session ended with error: %s", self.config.id, exc)
        finally:
            self.session = None
            if not self._ready.done():
                self._ready.cancel()

    async def start(self, timeout: float) -> None:
        """Spawn the runner task and wait for the handshake to finish."""
        self._task = asyncio.create_task(self._run(), name=f"mcp-provider-{self.config.id}")
        try:
            await asyncio.wait_for(asyncio.shield(self._ready), timeout=timeout)
        except asyncio.TimeoutError as exc:
            await self.stop()
            raise ProviderConnectionError(
                f"Provider '{self.config.label}' did not finish its handshake in {timeout:g}s"
            ) from exc
        except asyncio.CancelledError:
            await self.stop()
            raise
        except Exception as exc:  # pylint: disable=broad-except
            await self.stop()
            raise ProviderConnectionError(
                f"Provider '{self.config.label}' failed to start: {exc}"
            ) from exc

    async def stop(self, timeout: float = 5.0) -> None:
        """Ask the runner to leave its contexts; cancel it if it does not comply in time."""
        self._stop.set()
        if self._task is None or self._task.done():
            return
        if not self._ready.done():
            # Still in the handshake: there is no session to leave gracefully.
            self._task.cancel()
        done, _ = await asyncio.wait({self._task}, timeout=timeout)
        if not done:
            logger.warning("Provider '%s' did not stop in %.1fs; cancelling", self.config.id, timeout)
            self._task.cancel()

    def mark_lost(self, reason: BaseException) -> None:
        """Record that the provider went away underneath an open session."""
        if not self._lost:
            logger.warning("Provider '%s' connection lost: %s", self.config.id, reason)
        self._lost = True

    @property
    def alive(self) -> bool:
        """True while the runner task holds an initialized session."""
        return (
            self.session is not None
            and not self._lost
            and self._task is not None
            and not self._task.done()
        )

    def require_session(self) -> ClientSession:
        """Return the live session or raise if the connection has gone away."""
        if self.session is None:
            raise ToolExecutionError(f"Provider '{self.config.label}' is not connected")
        return self.session


async def guarded_request(handle: McpStdioConnection, request: Any) -> Any:
    """Await an SDK request, marking *handle* dead when the stream underneath it is gone."""
    try:
        return await request
    except (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream) as exc:
        handle.mark_lost(exc)
        raise ToolExecutionError(f"Provider '{handle.config.label}' connection closed") from exc
    except McpError as exc:
        if exc.error.code == CONNECTION_CLOSED:
            handle.mark_lost(exc)
        raise


def _to_content_part(block: Any) -> ContentPart:
    return ContentPart(
        type=getattr(block, "type", "unknown"),
        text=getattr(block, "text", None),
        data=getattr(block, "data", None),
        mime_type=getattr(block, "mimeType", None),
    )


class McpStdioTransport(ProviderTransport):
    """:class:`ProviderTransport` speaking MCP over a child process's stdio."""

    def __init__(self, connect_timeout: float = 30.0) -> None:
        self._connect_timeout = connect_timeout

    async def connect(self, config: ToolProviderConfig) -> McpStdioConnection:
        logger.info("Starting provider '%s': %s %s", config.id, config.command, " ".join(config.args))
        connection = McpStdioConnection(config)
        await connection.start(self._connect_timeout)
        return connection

    async def list_tools(self, handle: McpStdioConnection) -> List[ToolDescriptor]:
        result = await guarded_request(handle, handle.require_session().list_tools())
        return [
            ToolDescriptor(
                name=tool.name,
                description=tool.description or "",
                input_schema=tool.inputSchema or {"type": "object", "properties": {}},
                provider_id=handle.config.id,
            )
            for tool in result.tools
        ]

    async def call_tool(
        self, handle: McpStdioConnection, name: str, args: Dict[str, Any]
    ) -> RawToolResult:
        session = handle.require_session()
        result = await guarded_request(handle, session.call_tool(name, arguments=args))
        return RawToolResult(
            content=[_to_content_part(block) for block in result.content],
            is_error=bool(result.isError),
        )

    async def close(self, handle: McpStdioConnection) -> None:
        logger.info("Stopping provider '%s'", handle.config.id)
        await handle.stop()

    def is_alive(self, handle: McpStdioConnection) -> bool:
        return handle.alive
