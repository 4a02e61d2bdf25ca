from __future__ import annotations

import time
from typing import Callable, Iterator, Optional, Tuple

import numpy as np
import structlog

from .composite import MattingParams, composite_matte, encode_png
from .preprocess import decode_image
from .protocol import (
    CompleteStatus,
    ErrorStatus,
    LoadingStatus,
    PreloadCommand,
    ProcessCommand,
    ProcessingStatus,
    ReadyStatus,
    Status,
)

log = structlog.get_logger(__name__)

# RGB (H,W,3) uint8 -> coarse foreground probability (h,w)
SegmentFn = Callable[[np.ndarray], np.ndarray]
SegmenterLoader = Callable[[], Tuple[SegmentFn, str]]


class BatchMattingWorker:
    """
    Worker-side actor for batch background removal.

    Deterministic, linear per item:
      1) Decode image
      2) Coarse mask from the segmentation model
      3) Guided-filter refinement + alpha injection
      4) Encode lossless RGBA PNG
    Every failure becomes an ErrorStatus for that item only.
    """

    def __init__(self, load_segmenter: SegmenterLoader, params: MattingParams = MattingParams()):
        self._load_segmenter = load_segmenter
        self.params = params
        self.segmenter: Optional[SegmentFn] = None
        self.device: Optional[str] = None

    def handle(self, command) -> Iterator[Status]:
        try:
            if isinstance(command, PreloadCommand):
                yield from self._preload()
            elif isinstance(command, ProcessCommand):
                yield from self._process(command)
            else:
                raise ValueError(f"Unsupported command for batch worker: {type(command).__name__}")
        except Exception as e:  # noqa: BLE001 - worker boundary
            log.exception("Batch command failed", command=getattr(command, "kind", None))
            yield ErrorStatus(id=getattr(command, "id", None), message=str(e))

    def _preload(self) -> Iterator[Status]:
        if self.segmenter is not None:
            yield ReadyStatus(device=self.device or "cpu", message="Model ready")
            return
        yield LoadingStatus(message="Loading segmentation model...")
        try:
            self.segmenter, self.device = self._load_segmenter()
        except Exception as e:  # noqa: BLE001
            log.error("Segmentation model load failed", error=str(e))
            yield ErrorStatus(id=None, message=f"Model load failed: {e}")
            return
        yield ReadyStatus(device=self.device, message="Model ready")

    def _process(self, command: ProcessCommand) -> Iterator[Status]:
        if self.segmenter is None:
            yield from self._preload()
        if self.segmenter is None:
            yield ErrorStatus(id=command.id, message="Segmenter not initialized")
            return

        yield ProcessingStatus(id=command.id)
        t0 = time.perf_counter()
        try:
            rgb = decode_image(command.image)
            coarse = self.segmenter(rgb)
            if coarse is None:
                raise RuntimeError("Segmentation model returned no mask.")
            result = encode_png(composite_matte(rgb, np.asarray(coarse), self.params))
        except Exception as e:  # noqa: BLE001 - isolate the item
            log.warning("Item failed", item_id=command.id, error=str(e))
            yield ErrorStatus(id=command.id, message=str(e))
            return
        log.info("Item done", item_id=command.id, seconds=round(time.perf_counter() - t0, 3))
        yield CompleteStatus(id=command.id, result=result)
