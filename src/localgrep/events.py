"""
Service lifecycle events and a small synchronous event bus.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Literal

from pydantic import BaseModel

from .models import BulkIndexResult, ServiceStatus

logger = logging.getLogger(__name__)


class ServiceEvent(BaseModel):
    type: str


class ReadyEvent(ServiceEvent):
    type: Literal["ready"] = "ready"
    status: ServiceStatus


class IndexingStartEvent(ServiceEvent):
    type: Literal["indexing-start"] = "indexing-start"
    total_files: int


class IndexingProgressEvent(ServiceEvent):
    type: Literal["indexing-progress"] = "indexing-progress"
    current: int
    total: int
    current_file: str


class IndexingCompleteEvent(ServiceEvent):
    type: Literal["indexing-complete"] = "indexing-complete"
    result: BulkIndexResult


class FileIndexedEvent(ServiceEvent):
    type: Literal["file-indexed"] = "file-indexed"
    file_path: str
    chunks: int


class FileDeletedEvent(ServiceEvent):
    type: Literal["file-deleted"] = "file-deleted"
    file_path: str
    chunks_removed: int


class ErrorEvent(ServiceEvent):
    type: Literal["error"] = "error"
    message: str
    file_path: str | None = None


Listener = Callable[[ServiceEvent], None]


class EventBus:
    """Fan events out to subscribers; a failing listener never breaks the emitter."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: ServiceEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed for %s event", event.type)

    def clear(self) -> None:
        with self._lock:
            self._listeners.clear()
