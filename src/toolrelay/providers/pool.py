"""
Connection pool for tool providers.

Starting a provider means spawning a process and running a handshake, so live connections are kept
and shared.  Entries are keyed by a fingerprint of the provider set: two callers asking for the same
providers (in any order, with the same launch descriptors) get the same connection.  Entries stay
open after use and are only closed by the idle sweep, an explicit :meth:`ConnectionPool.close` or
:meth:`ConnectionPool.stop`.

Every lease bumps an in-use counter on its entry; the sweep never touches an entry whose counter is
non-zero, whatever its last-used time says.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
)

from toolrelay.core.errors import (
    ProviderConnectionError,
    ToolExecutionError,
)
from toolrelay.core.schema import (
    RawToolResult,
    ToolDescriptor,
    ToolProviderConfig,
)
from toolrelay.providers.transport import ProviderTransport
from toolrelay.tools import merge_catalogs

logger = logging.getLogger(__name__)


def fingerprint(providers: Sequence[ToolProviderConfig]) -> str:
    """Deterministic key for a provider set; independent of the order of *providers*."""
    normalized = [
        {
            "id": p.id,
            "command": p.command,
            "args": list(p.args),
            "env": dict(sorted(p.env.items())),
        }
        for p in sorted(providers, key=lambda p: p.id)
    ]
    canonical = json.dumps(normalized, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Entries and leases
# ---------------------------------------------------------------------------
@dataclass
class PoolEntry:
    """Live connections for one provider set."""

    fingerprint: str
    providers: Tuple[ToolProviderConfig, ...]
    handles: Dict[str, Any]
    tools: List[ToolDescriptor]
    last_used: float
    in_use: int = 0


@dataclass
class PoolLease:
    """
    A caller's claim on a pool entry.

    ``tools`` is the merged, de-duplicated catalog of the provider set.  ``fresh`` tells whether
    this acquire established the connections (useful for one-off lookups that want to clean up).
    """

    fingerprint: str
    tools: List[ToolDescriptor]
    fresh: bool = False
    _pool: Optional["ConnectionPool"] = field(default=None, repr=False)
    _entry: Optional[PoolEntry] = field(default=None, repr=False)
    _released: bool = field(default=False, repr=False)

    @property
    def providers(self) -> Tuple[ToolProviderConfig, ...]:
        """Providers covered by this lease."""
        return self._entry.providers if self._entry is not None else ()

    def handle_for(self, provider_id: str) -> Any:
        """Transport handle of *provider_id* within this lease."""
        if self._entry is None or provider_id not in self._entry.handles:
            raise ToolExecutionError(f"Provider '{provider_id}' is not part of this connection")
        return self._entry.handles[provider_id]

    async def call_tool(self, provider_id: str, name: str, args: Dict[str, Any]) -> RawToolResult:
        """Run *name* on *provider_id* through the pool's transport."""
        if self._pool is None:
            raise ToolExecutionError("Lease is not bound to a pool")
        return await self._pool.transport.call_tool(self.handle_for(provider_id), name, args)


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------
class ConnectionPool:
    """
    Fingerprint -> connection table shared by every ``chat()`` call of a process.

    Map mutation is serialized by one :class:`asyncio.Lock`.  Establishing connections happens
    outside the lock; concurrent acquires of the same new fingerprint wait on a single pending
    future instead of spawning duplicate processes.
    """

    def __init__(
        self,
        transport: ProviderTransport,
        max_idle: float = 300.0,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport
        self.max_idle = max_idle
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: Dict[str, PoolEntry] = {}
        self._pending: Dict[str, asyncio.Future[None]] = {}
        self._lock = asyncio.Lock()
        self._sweeper: Optional[asyncio.Task[None]] = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def in_use(self, key: str) -> int:
        """Number of unreleased leases on the entry *key* (0 if absent)."""
        entry = self._entries.get(key)
        return entry.in_use if entry is not None else 0

    # -- acquire / release ---------------------------------------------------
    async def acquire(self, providers: Sequence[ToolProviderConfig]) -> PoolLease:
        """
        Return a lease on the connections for *providers*, establishing them if needed.

        A cached entry whose provider process has died is closed and established again.  Catalogs
        are merged in fingerprint (provider id) order, so for duplicate tool names the provider
        with the lowest id wins, whatever order the caller passed.

        Raises
        ------
        ProviderConnectionError
            If any provider of the set cannot be connected.  Nothing is cached in that case.
        """
        # Connect and merge in fingerprint order
        providers = tuple(sorted(providers, key=lambda p: p.id))
        key = fingerprint(providers)
        if not providers:
            return PoolLease(fingerprint=key, tools=[], _pool=self)

        while True:
            owner = False
            dead: Optional[PoolEntry] = None
            async with self._lock:
                entry = self._entries.get(key)
                if entry is not None and not self._is_alive(entry):
                    del self._entries[key]
                    dead, entry = entry, None
                if entry is not None:
                    entry.in_use += 1
                    entry.last_used = self._clock()
                    logger.debug("Reusing connection %s (in use: %d)", key[:12], entry.in_use)
                    return PoolLease(fingerprint=key, tools=entry.tools, _pool=self, _entry=entry)

                pending = self._pending.get(key)
                if pending is None:
                    pending = asyncio.get_running_loop().create_future()
                    self._pending[key] = pending
                    owner = True

            if dead is not None:
                logger.warning("Connection %s lost a provider; reconnecting", key[:12])
                await self._close_handles(dead.handles)

            if owner:
                break

            try:
                await asyncio.shield(pending)
            except asyncio.CancelledError:
                # The establishing caller was cancelled, not us: try again ourselves.
                if not pending.cancelled():
                    raise
            # Loop to pick the new entry up under the lock.

        try:
            entry = await self._establish(key, providers)
        except BaseException as exc:
            async with self._lock:
                self._pending.pop(key, None)
            if isinstance(exc, Exception):
                pending.set_exception(exc)
                pending.exception()  # mark retrieved when nobody is waiting
            else:
                pending.cancel()
            raise

        async with self._lock:
            entry.in_use = 1
            entry.last_used = self._clock()
            self._entries[key] = entry
            self._pending.pop(key, None)
        pending.set_result(None)
        return PoolLease(fingerprint=key, tools=entry.tools, fresh=True, _pool=self, _entry=entry)

    def release(self, lease: PoolLease) -> None:
        """Give a lease back.  The connection stays open; releasing twice is a no-op."""
        if lease._released:  # pylint: disable=protected-access
            return
        lease._released = True  # pylint: disable=protected-access
        entry = lease._entry  # pylint: disable=protected-access
        if entry is None:
            return
        entry.in_use = max(0, entry.in_use - 1)
        entry.last_used = self._clock()

    @asynccontextmanager
    async def lease(self, providers: Sequence[ToolProviderConfig]) -> AsyncIterator[PoolLease]:
        """``async with pool.lease(providers) as lease: ...`` acquire/release pair."""
        lease = await self.acquire(providers)
        try:
            yield lease
        finally:
            self.release(lease)

    def _is_alive(self, entry: PoolEntry) -> bool:
        return all(self.transport.is_alive(handle) for handle in entry.handles.values())

    async def _establish(self, key: str, providers: Tuple[ToolProviderConfig, ...]) -> PoolEntry:
        handles: Dict[str, Any] = {}
        catalogs: List[List[ToolDescriptor]] = []
        try:
            for provider in providers:
                try:
                    handle = await self.transport.connect(provider)
                    handles[provider.id] = handle
                    catalogs.append(await self.transport.list_tools(handle))
                except ProviderConnectionError:
                    raise
                except Exception as exc:
                    raise ProviderConnectionError(
                        f"Provider '{provider.label}' failed to connect: {exc}"
                    ) from exc
        except BaseException:
            await self._close_handles(handles)
            raise

        tools = merge_catalogs(catalogs)
        logger.info(
            "Connected %d provider(s) as %s with %d tool(s)", len(providers), key[:12], len(tools)
        )
        return PoolEntry(
            fingerprint=key,
            providers=providers,
            handles=handles,
            tools=tools,
            last_used=self._clock(),
        )

    # -- teardown ------------------------------------------------------------
    async def _close_handles(self, handles: Dict[str, Any]) -> None:
        for provider_id, handle in handles.items():
            try:
                await self.transport.close(handle)
            except Exception as exc:  # pylint: disable=broad-except
                logger.warning("Error closing provider '%s': %s", provider_id, exc)

    async def evict_idle(
        self, now: Optional[float] = None, max_idle: Optional[float] = None
    ) -> List[str]:
        """Close entries that nobody holds and that were unused for longer than *max_idle*."""
        now = self._clock() if now is None else now
        max_idle = self.max_idle if max_idle is None else max_idle

        async with self._lock:
            stale = [
                entry
                for entry in self._entries.values()
                if entry.in_use == 0 and now - entry.last_used > max_idle
            ]
            for entry in stale:
                del self._entries[entry.fingerprint]

        for entry in stale:
            logger.info("Evicting idle connection %s", entry.fingerprint[:12])
            await self._close_handles(entry.handles)
        return [entry.fingerprint for entry in stale]

    async def close(self, key: str) -> None:
        """Close one entry now, held or not.  Unknown keys are ignored."""
        async with self._lock:
            entry = self._entries.pop(key, None)
        if entry is not None:
            logger.info("Closing connection %s", key[:12])
            await self._close_handles(entry.handles)

    async def close_all(self) -> None:
        """Close every entry."""
        async with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for entry in entries:
            await self._close_handles(entry.handles)

    # -- background sweep ----------------------------------------------------
    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.evict_idle()
            except Exception:  # pylint: disable=broad-except
                logger.exception("Idle sweep failed")

    def start(self) -> None:
        """Start the periodic idle sweep (needs a running event loop)."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever(), name="pool-idle-sweep")

    async def stop(self) -> None:
        """Stop the sweep and close every connection."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.close_all()
