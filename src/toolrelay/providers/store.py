"""Read-only sources of tool-provider configuration."""

import json
import logging
from abc import (
    ABC,
    abstractmethod,
)
from pathlib import Path
from typing import (
    Iterable,
    List,
)

from pydantic import ValidationError

from toolrelay.core.errors import ConfigurationError
from toolrelay.core.schema import ToolProviderConfig

logger = logging.getLogger(__name__)


class ProviderConfigStore(ABC):
    """Hands out a snapshot of the configured providers, in configuration order."""

    @abstractmethod
    def list_providers(self) -> List[ToolProviderConfig]:
        """Return the current providers.  Callers must not rely on identity across calls."""


class StaticProviderStore(ProviderConfigStore):
    """In-memory store, mostly for tests and embedding."""

    def __init__(self, providers: Iterable[ToolProviderConfig] = ()) -> None:
        self._providers = list(providers)

    def list_providers(self) -> List[ToolProviderConfig]:
        return list(self._providers)


class JsonFileProviderStore(ProviderConfigStore):
    """
    Reads providers from a JSON file on every call.

    Accepted layouts::

        {"providers": [{"id": "fs", "command": "npx", "args": ["-y", "..."]}]}
        [{"id": "fs", "command": "npx", "args": ["-y", "..."]}]

    A missing file means "no providers"; a malformed one is a configuration error.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        """Location of the JSON file."""
        return self._path

    def list_providers(self) -> List[ToolProviderConfig]:
        if not self._path.exists():
            logger.debug("Provider file %s does not exist; no providers configured", self._path)
            return []

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"Cannot read provider file {self._path}: {exc}") from exc

        entries = raw.get("providers", []) if isinstance(raw, dict) else raw
        if not isinstance(entries, list):
            raise ConfigurationError(f"Provider file {self._path} must hold a list of providers")

        try:
            return [ToolProviderConfig.model_validate(entry) for entry in entries]
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid provider entry in {self._path}: {exc}") from exc
