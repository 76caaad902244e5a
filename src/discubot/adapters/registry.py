"""Registry mapping source types to adapter instances."""

from __future__ import annotations

from discubot.adapters.base import SourceAdapter
from discubot.logging import get_logger
from discubot.processor.errors import ProcessingError, ProcessingStage

log = get_logger("discubot.adapters.registry")


class AdapterRegistry:
    """Lookup from ``source_type`` to the adapter that handles it.

    An unknown source type is a configuration problem, so :meth:`get`
    raises a non-retryable :class:`ProcessingError`.
    """

    def __init__(self, adapters: list[SourceAdapter] | None = None):
        self._adapters: dict[str, SourceAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: SourceAdapter) -> None:
        """Register an adapter, replacing any previous one for its source type."""
        if adapter.source_type in self._adapters:
            log.warning("adapter_replaced", source_type=adapter.source_type)
        self._adapters[adapter.source_type] = adapter
        log.debug("adapter_registered", source_type=adapter.source_type)

    def has(self, source_type: str) -> bool:
        return source_type in self._adapters

    def get(self, source_type: str) -> SourceAdapter:
        adapter = self._adapters.get(source_type)
        if adapter is None:
            raise ProcessingError(
                f"No adapter registered for source type: {source_type}",
                ProcessingStage.FLOW_LOADING,
                context={"sourceType": source_type, "available": self.source_types},
                retryable=False,
            )
        return adapter

    @property
    def source_types(self) -> list[str]:
        return sorted(self._adapters)

    async def close(self) -> None:
        """Close adapters that hold network clients."""
        for adapter in self._adapters.values():
            close = getattr(adapter, "close", None)
            if close is not None:
                await close()


def create_default_registry(timeout: float = 30.0) -> AdapterRegistry:
    """Registry with the built-in Slack, Notion and Figma adapters."""
    from discubot.adapters.figma import FigmaAdapter
    from discubot.adapters.notion import NotionAdapter
    from discubot.adapters.slack import SlackAdapter

    return AdapterRegistry(
        [
            SlackAdapter(timeout=timeout),
            NotionAdapter(timeout=timeout),
            FigmaAdapter(timeout=timeout),
        ]
    )
