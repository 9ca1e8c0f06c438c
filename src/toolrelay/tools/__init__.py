"""
Tool catalog helpers for toolrelay.

Tools are not defined locally: providers announce them.  This module merges provider catalogs into
the single catalog the model sees, narrows it to one provider for pinned plan steps, renders it in
the OpenAI function-tool format and flattens tool output into text.
"""

import logging
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Mapping,
    Sequence,
)

from toolrelay.core.schema import (
    ContentPart,
    ToolDescriptor,
    ToolProviderConfig,
)

logger = logging.getLogger(__name__)


def merge_catalogs(catalogs: Iterable[Iterable[ToolDescriptor]]) -> List[ToolDescriptor]:
    """
    Concatenate provider catalogs, keeping the first descriptor seen for every tool name.

    Parameters
    ----------
    catalogs:
        One iterable of descriptors per provider, in provider order.

    Returns
    -------
    List[ToolDescriptor]
        Descriptors with pairwise-unique names.
    """
    merged: Dict[str, ToolDescriptor] = {}
    for catalog in catalogs:
        for tool in catalog:
            if tool.name in merged:
                logger.warning(
                    "Tool '%s' from provider '%s' shadowed by provider '%s'",
                    tool.name,
                    tool.provider_id,
                    merged[tool.name].provider_id,
                )
                continue
            merged[tool.name] = tool
    return list(merged.values())


def find_provider(
    providers: Sequence[ToolProviderConfig], reference: str
) -> ToolProviderConfig | None:
    """Look a provider up by name first, then by id (case-insensitive)."""
    wanted = reference.strip().lower()
    for provider in providers:
        if provider.name and provider.name.lower() == wanted:
            return provider
    for provider in providers:
        if provider.id.lower() == wanted:
            return provider
    return None


def tools_for_provider(
    catalog: Sequence[ToolDescriptor], provider: ToolProviderConfig
) -> List[ToolDescriptor]:
    """Subset of *catalog* announced by *provider*."""
    return [tool for tool in catalog if tool.provider_id == provider.id]


def to_openai_tool(tool: ToolDescriptor) -> Dict[str, Any]:
    """Render a descriptor as an OpenAI chat-completions function tool."""
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.input_schema or {"type": "object", "properties": {}},
        },
    }


def describe_catalog(
    catalog: Sequence[ToolDescriptor], providers: Mapping[str, ToolProviderConfig]
) -> str:
    """One line per tool, grouped by provider label, for prompts."""
    lines = []
    for tool in catalog:
        provider = providers.get(tool.provider_id or "")
        label = provider.label if provider is not None else "?"
        summary = tool.description.splitlines()[0] if tool.description else ""
        line = f"- [{label}] {tool.name}"
        lines.append(f"{line}: {summary}" if summary else line)
    return "\n".join(lines)


def flatten_content(parts: Sequence[ContentPart]) -> str:
    """
    Join the text parts of a tool result with newlines.

    Non-text parts are summarized (``[image: image/png]``) so the model knows something was
    returned without receiving raw binary data.
    """
    chunks: List[str] = []
    for part in parts:
        if part.type == "text":
            if part.text:
                chunks.append(part.text)
        elif part.text:
            chunks.append(part.text)
        else:
            kind = part.mime_type or "unknown type"
            chunks.append(f"[{part.type}: {kind}]")
    return "\n".join(chunks)
