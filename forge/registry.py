"""Format registry: which adapter handles a directory or a format name."""

from __future__ import annotations

import logging
from pathlib import Path

import httpx

from forge.adapters.base import FormatAdapter
from forge.core.config import ForgeConfig
from forge.exceptions import NoAdapterFound, UnsupportedFormat

logger = logging.getLogger(__name__)


class FormatRegistry:
    """Adapter registration center.

    Adapters are registered statically; lookups go by adapter name or by any
    of an adapter's format aliases.
    """

    def __init__(self) -> None:
        self._adapters: dict[str, FormatAdapter] = {}
        self._formats: dict[str, FormatAdapter] = {}

    def register(self, adapter: FormatAdapter) -> None:
        self._adapters[adapter.name] = adapter
        for alias in adapter.supported_formats:
            self._formats[alias.lower()] = adapter
        logger.debug("Registered adapter: %s (%s)", adapter.name, ", ".join(adapter.supported_formats))

    def get(self, name: str) -> FormatAdapter | None:
        return self._adapters.get(name)

    def list_all(self) -> list[FormatAdapter]:
        return list(self._adapters.values())

    def formats(self) -> list[str]:
        return list(self._formats)

    def by_format(self, fmt: str) -> FormatAdapter:
        """Adapter for an explicit format alias. Raises :class:`UnsupportedFormat`."""
        adapter = self._formats.get(fmt.lower())
        if adapter is None:
            raise UnsupportedFormat(fmt, self.formats())
        return adapter

    def detect(self, directory: Path, priority: list[str] | None = None) -> FormatAdapter | None:
        """First adapter whose ``can_handle`` accepts *directory*.

        Adapters named in *priority* are tried first, in that order; the rest
        follow in registration order. An adapter raising counts as "no".
        """
        ordered: list[FormatAdapter] = []
        for fmt in priority or []:
            adapter = self._adapters.get(fmt) or self._formats.get(fmt.lower())
            if adapter is not None and adapter not in ordered:
                ordered.append(adapter)
        ordered.extend(a for a in self._adapters.values() if a not in ordered)

        for adapter in ordered:
            try:
                if adapter.can_handle(directory):
                    logger.debug("Selected adapter %s for %s", adapter.name, directory)
                    return adapter
            except Exception:
                logger.debug("Adapter %s failed detection", adapter.name, exc_info=True)
        return None

    def for_directory(self, directory: Path, priority: list[str] | None = None) -> FormatAdapter:
        """Like :meth:`detect` but raises :class:`NoAdapterFound` when nothing matches."""
        adapter = self.detect(directory, priority)
        if adapter is None:
            raise NoAdapterFound(str(directory), self.formats())
        return adapter

    def select(
        self, directory: Path, fmt: str | None = None, priority: list[str] | None = None
    ) -> FormatAdapter:
        """Explicit format wins; otherwise detect."""
        if fmt:
            return self.by_format(fmt)
        return self.for_directory(directory, priority)


def create_default_registry(
    config: ForgeConfig | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FormatRegistry:
    """Registry with the built-in adapters, minus any disabled in ``config.formats``."""
    from forge.adapters.node import NodeAdapter
    from forge.adapters.python import PythonAdapter

    registry = FormatRegistry()
    for adapter_cls in (NodeAdapter, PythonAdapter):
        if config is not None and not config.format_enabled(adapter_cls.name):
            logger.debug("Adapter %s disabled by configuration", adapter_cls.name)
            continue
        registry.register(adapter_cls(transport=transport))
    return registry
