from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Iterable, List, Optional, Protocol

import structlog

from .previews import PreviewStore
from .protocol import (
    CompleteStatus,
    ErrorStatus,
    LoadingStatus,
    PreloadCommand,
    ProcessCommand,
    ProcessingStatus,
    ReadyStatus,
)

log = structlog.get_logger(__name__)


class ItemStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class ImageItem:
    id: str
    source: bytes
    status: ItemStatus
    original_preview: str
    result: Optional[bytes] = None
    result_preview: Optional[str] = None
    error: Optional[str] = None


class CommandSink(Protocol):
    def send(self, command) -> None: ...


class ProcessingCoordinator:
    """
    Single-flight FIFO over queued items.

    At most one item is `processing` at any time. Results are keyed by item id;
    a result for an id that no longer exists is dropped.
    """

    def __init__(self, worker: CommandSink, previews: Optional[PreviewStore] = None):
        self.worker = worker
        self.previews = previews if previews is not None else PreviewStore()
        self._items: Dict[str, ImageItem] = {}
        self.is_ready = False
        self.init_error: Optional[str] = None
        self.device: Optional[str] = None
        self.is_playing = False
        self.processing_id: Optional[str] = None

    @property
    def items(self) -> List[ImageItem]:
        return list(self._items.values())

    def get(self, item_id: str) -> Optional[ImageItem]:
        return self._items.get(item_id)

    def preload(self) -> None:
        self.init_error = None
        self.worker.send(PreloadCommand())

    def add_images(self, images: Iterable[bytes], status: ItemStatus = ItemStatus.QUEUED) -> List[str]:
        """
        Register images. With status DONE the image is its own result
        (e.g. a finished selection cut-out).
        """
        ids = []
        for data in images:
            item_id = uuid.uuid4().hex[:8]
            done = status == ItemStatus.DONE
            self._items[item_id] = ImageItem(
                id=item_id,
                source=data,
                status=status,
                original_preview=self.previews.create(data),
                result=data if done else None,
                result_preview=self.previews.create(data) if done else None,
            )
            ids.append(item_id)
        return ids

    def remove_item(self, item_id: str) -> None:
        item = self._items.pop(item_id, None)
        if item is None:
            return
        self._release_previews(item)
        log.info("Item removed", item_id=item_id, status=item.status.value)

    def update_result(self, item_id: str, data: bytes) -> None:
        item = self._items.get(item_id)
        if item is None:
            raise KeyError(f"Unknown item: {item_id}")
        if item.result_preview is not None:
            self.previews.release(item.result_preview)
        self._items[item_id] = replace(
            item,
            status=ItemStatus.DONE,
            result=data,
            result_preview=self.previews.create(data),
            error=None,
        )

    def start(self) -> None:
        self.is_playing = True
        self._advance()

    def reset_all(self) -> None:
        for item in self._items.values():
            self._release_previews(item)
        self._items.clear()
        self.is_playing = False
        self.processing_id = None

    def handle(self, status) -> None:
        """Apply one worker status."""
        if isinstance(status, ReadyStatus):
            self.is_ready = True
            self.init_error = None
            self.device = status.device
            log.info("Batch worker ready", device=status.device)
        elif isinstance(status, ErrorStatus) and status.id is None:
            self.init_error = status.message or "Model initialization failed"
            log.error("Batch worker initialization failed", error=self.init_error)
            return
        elif isinstance(status, CompleteStatus):
            self._finish(status.id, ItemStatus.DONE, result=status.result)
        elif isinstance(status, ErrorStatus):
            self._finish(status.id, ItemStatus.ERROR, error=status.message)
        elif isinstance(status, (LoadingStatus, ProcessingStatus)):
            return
        else:
            log.warning("Unexpected status for batch worker", kind=getattr(status, "kind", None))
            return
        self._advance()

    def _finish(
        self,
        item_id: str,
        outcome: ItemStatus,
        result: Optional[bytes] = None,
        error: Optional[str] = None,
    ) -> None:
        if self.processing_id == item_id:
            self.processing_id = None

        item = self._items.get(item_id)
        if item is None:
            log.info("Dropping result for removed item", item_id=item_id)
            return
        if outcome == ItemStatus.DONE:
            if item.result_preview is not None:
                self.previews.release(item.result_preview)
            self._items[item_id] = replace(
                item, status=outcome, result=result, result_preview=self.previews.create(result), error=None
            )
        else:
            log.warning("Item failed", item_id=item_id, error=error)
            self._items[item_id] = replace(item, status=outcome, error=error)

    def _advance(self) -> None:
        if not (self.is_ready and self.is_playing) or self.processing_id is not None:
            return
        next_item = next((i for i in self._items.values() if i.status == ItemStatus.QUEUED), None)
        if next_item is None:
            self.is_playing = False
            log.info("Queue drained")
            return
        self.processing_id = next_item.id
        self._items[next_item.id] = replace(next_item, status=ItemStatus.PROCESSING)
        self.worker.send(ProcessCommand(id=next_item.id, image=next_item.source))

    def _release_previews(self, item: ImageItem) -> None:
        self.previews.release(item.original_preview)
        if item.result_preview is not None:
            self.previews.release(item.result_preview)
