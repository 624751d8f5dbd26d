from __future__ import annotations

from ragsync.services.handlers.base import SourceHandler


class HandlerRegistryError(Exception):
    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code


class HandlerRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, SourceHandler] = {}
        self._variants: dict[str, str] = {}

    def register(self, handler: SourceHandler) -> None:
        self._handlers[handler.source_type] = handler
        for variant in handler.source_types or (handler.source_type,):
            self._variants[variant] = handler.source_type

    def get(self, source_type: str) -> SourceHandler:
        handler = self._handlers.get(self._variants.get(source_type, source_type))
        if handler is None:
            raise HandlerRegistryError("RAG-HANDLER-UNKNOWN-SOURCE", f"Unknown source_type: {source_type}")
        configured, reason = handler.is_configured()
        if not configured:
            raise HandlerRegistryError(
                "RAG-HANDLER-NOT-CONFIGURED",
                reason or f"Handler {source_type} is not configured",
            )
        return handler

    def list_registered(self) -> list[str]:
        return sorted(self._handlers.keys())

    def indexed_types(self) -> list[str]:
        """Every rag_sources.source_type value a registered handler can produce."""
        return sorted(self._variants.keys())

    def syncable(self) -> list[SourceHandler]:
        return [
            self._handlers[source_type]
            for source_type in self.list_registered()
            if self._handlers[source_type].is_configured()[0]
        ]


registry = HandlerRegistry()
