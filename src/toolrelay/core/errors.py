"""
Exception taxonomy shared by the pool, the tool invoker, the model client and the orchestrator.

Connection and model-call failures abort the current ``chat()`` call.  Tool failures never escape
the invoker: they are folded into a flagged :class:`~toolrelay.core.schema.ToolResult` so the model
can see them.  Running out of rounds is a result state, not an exception.
"""


class ToolRelayError(RuntimeError):
    """Base class for all errors raised by toolrelay."""


class ConfigurationError(ToolRelayError):
    """Raised when no model endpoint is configured or a config source is unreadable."""


class ProviderConnectionError(ToolRelayError):
    """Raised when a tool provider cannot be started or fails its handshake."""


class ToolExecutionError(ToolRelayError):
    """Raised by transports when a tool call fails; absorbed by the invoker."""


class ModelCallError(ToolRelayError):
    """Raised when the model endpoint fails or returns something unusable."""
