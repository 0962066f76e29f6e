"""Tool catalogue assembly.

The registry gathers entries from every configured provider once and serves
an immutable :class:`ToolCatalogue` snapshot until the cache is cleared.
Remote tools are namespaced ``server:tool``; a bare name still resolves to the
first server that exposes it.
"""

from __future__ import annotations

import asyncio
import logging
from types import MappingProxyType
from typing import Iterator, Mapping, Sequence

from .base import ToolCatalogueEntry, ToolProvider

LOGGER = logging.getLogger(__name__)

__all__ = ["ToolCatalogue", "ToolRegistry"]


class ToolCatalogue:
    """Read-only mapping of tool name to catalogue entry."""

    __slots__ = ("_entries", "_by_base_name")

    def __init__(self, entries: Sequence[ToolCatalogueEntry] = ()) -> None:
        ordered: dict[str, ToolCatalogueEntry] = {}
        for entry in entries:
            if entry.name in ordered:
                LOGGER.warning("Duplicate tool name %s; keeping the first registration", entry.name)
                continue
            ordered[entry.name] = entry
        self._entries: Mapping[str, ToolCatalogueEntry] = MappingProxyType(ordered)
        by_base: dict[str, list[str]] = {}
        for name, entry in ordered.items():
            if entry.base_name != name:
                by_base.setdefault(entry.base_name, []).append(name)
        self._by_base_name: Mapping[str, tuple[str, ...]] = MappingProxyType(
            {key: tuple(value) for key, value in by_base.items()}
        )

    def resolve(self, name: str) -> ToolCatalogueEntry | None:
        """Find an entry by exact name, then by un-namespaced name in registration order."""
        key = (name or "").strip()
        if not key:
            return None
        entry = self._entries.get(key)
        if entry is not None:
            return entry
        candidates = self._by_base_name.get(key, ())
        if not candidates:
            return None
        if len(candidates) > 1:
            LOGGER.debug("Tool name %s is exposed by several servers: %s", key, candidates)
        LOGGER.debug("Resolved legacy tool name %s to %s", key, candidates[0])
        return self._entries[candidates[0]]

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self._entries)

    def entries(self) -> tuple[ToolCatalogueEntry, ...]:
        return tuple(self._entries.values())

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.resolve(name) is not None

    def __iter__(self) -> Iterator[ToolCatalogueEntry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)


class ToolRegistry:
    """Collects tools from providers and caches the resulting catalogue."""

    def __init__(self, providers: Sequence[ToolProvider] = ()) -> None:
        self._providers: list[ToolProvider] = list(providers)
        self._catalogue: ToolCatalogue | None = None
        self._lock = asyncio.Lock()

    def add_provider(self, provider: ToolProvider) -> None:
        self._providers.append(provider)
        self.clear_cache()

    @property
    def providers(self) -> tuple[ToolProvider, ...]:
        return tuple(self._providers)

    @property
    def cached(self) -> bool:
        return self._catalogue is not None

    async def build_catalogue(self, *, force_refresh: bool = False) -> ToolCatalogue:
        if self._catalogue is not None and not force_refresh:
            return self._catalogue
        async with self._lock:
            if self._catalogue is not None and not force_refresh:
                return self._catalogue
            entries: list[ToolCatalogueEntry] = []
            for provider in self._providers:
                provided = await provider.list_tools()
                LOGGER.debug("Provider %s contributed %d tool(s)", provider.name, len(provided))
                entries.extend(provided)
            self._catalogue = ToolCatalogue(entries)
            LOGGER.info("Tool catalogue ready with %d tool(s)", len(self._catalogue))
            return self._catalogue

    def clear_cache(self) -> None:
        self._catalogue = None
