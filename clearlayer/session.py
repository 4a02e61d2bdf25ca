from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterator, Optional, Tuple

import numpy as np
import structlog

from .composite import encode_png, encode_rgba_png, extract_selection
from .masks import MaskPair, MaskParams, Point, decode_to_masks, scale_points, with_corner_anchors
from .preprocess import decode_image
from .protocol import (
    DecodeCommand,
    DecodedStatus,
    EncodeCommand,
    EncodedStatus,
    ErrorStatus,
    ExtractCommand,
    ExtractedStatus,
    LoadingStatus,
    PreloadCommand,
    ReadyStatus,
    Status,
)
from .sam import ImageEmbedding, PromptableModel

log = structlog.get_logger(__name__)

ModelLoader = Callable[[], Tuple[PromptableModel, str]]


class SessionState(str, Enum):
    IDLE = "idle"
    MODEL_LOADING = "model_loading"
    EMBEDDING = "embedding"
    READY = "ready"
    DECODING = "decoding"


@dataclass
class EncodedContext:
    uuid: str
    image: np.ndarray
    embedding: ImageEmbedding
    last_masks: Optional[MaskPair] = field(default=None)

    @property
    def scale_x(self) -> float:
        return self.embedding.reshaped_size[1] / float(self.embedding.original_size[1])

    @property
    def scale_y(self) -> float:
        return self.embedding.reshaped_size[0] / float(self.embedding.original_size[0])


class SegmentationSession:
    """
    Worker-side actor for point-prompted selection.

    Encodes each image once and keeps exactly one EncodedContext; every decode
    reuses the cached embedding.
    """

    def __init__(self, load_model: ModelLoader, params: MaskParams = MaskParams()):
        self._load_model = load_model
        self.params = params
        self.model: Optional[PromptableModel] = None
        self.device: Optional[str] = None
        self.context: Optional[EncodedContext] = None
        self.state = SessionState.IDLE
        self.encode_count = 0

    def handle(self, command) -> Iterator[Status]:
        try:
            if isinstance(command, PreloadCommand):
                yield from self._preload()
            elif isinstance(command, EncodeCommand):
                yield from self._encode(command)
            elif isinstance(command, DecodeCommand):
                yield from self._decode(command)
            elif isinstance(command, ExtractCommand):
                yield from self._extract(command)
            else:
                raise ValueError(f"Unsupported command for selection worker: {type(command).__name__}")
        except Exception as e:  # noqa: BLE001 - worker boundary
            log.exception("Selection command failed", command=getattr(command, "kind", None))
            yield ErrorStatus(id=getattr(command, "uuid", None), message=str(e))

    def _preload(self) -> Iterator[Status]:
        if self.model is not None:
            yield ReadyStatus(device=self.device or "cpu", message="Selection model ready")
            return

        self.state = SessionState.MODEL_LOADING
        yield LoadingStatus(message="Loading selection model...")
        try:
            self.model, self.device = self._load_model()
        except Exception as e:  # noqa: BLE001
            self.state = SessionState.IDLE
            log.error("Selection model load failed", error=str(e))
            yield ErrorStatus(id=None, message=f"Model load failed: {e}")
            return
        self.state = SessionState.READY if self.context is not None else SessionState.IDLE
        yield ReadyStatus(device=self.device, message="Selection model ready")

    def _encode(self, command: EncodeCommand) -> Iterator[Status]:
        if self.model is None:
            raise RuntimeError("Selection model is not loaded; send preload first.")
        if self.context is not None and self.context.uuid == command.uuid:
            yield EncodedStatus(uuid=command.uuid)
            return

        # a new image replaces the previous context
        self.context = None
        self.state = SessionState.EMBEDDING
        try:
            image = decode_image(command.image)
            embedding = self.model.encode(image)
        except Exception:
            self.state = SessionState.IDLE
            raise
        self.context = EncodedContext(uuid=command.uuid, image=image, embedding=embedding)
        self.encode_count += 1
        self.state = SessionState.READY
        log.info("Image encoded", uuid=command.uuid, size=embedding.original_size)
        yield EncodedStatus(uuid=command.uuid)

    def _require_context(self, uuid: str) -> EncodedContext:
        if self.model is None:
            raise RuntimeError("Selection model is not loaded; send preload first.")
        if self.context is None or self.context.uuid != uuid:
            raise RuntimeError(f"No encoded image for session {uuid}")
        return self.context

    def _decode(self, command: DecodeCommand) -> Iterator[Status]:
        ctx = self._require_context(command.uuid)
        if not command.points:
            raise ValueError("Decode needs at least one point.")

        self.state = SessionState.DECODING
        try:
            orig_h, orig_w = ctx.embedding.original_size
            points = [Point(x, y, label) for (x, y), label in zip(command.points, command.labels)]
            points = with_corner_anchors(points, orig_w, orig_h)
            coords, labels = scale_points(points, ctx.scale_x, ctx.scale_y)

            logits, scores = self.model.decode(ctx.embedding, coords, labels)
            pair = decode_to_masks(
                np.asarray(logits),
                np.asarray(scores),
                command.sensitivity,
                command.smoothness,
                command.mask_index,
                self.params,
            )
            if pair.raw.shape[:2] != (orig_h, orig_w):
                raise RuntimeError(f"Decoder mask {pair.raw.shape[:2]} does not match image {(orig_h, orig_w)}")
            ctx.last_masks = pair
        finally:
            self.state = SessionState.READY

        yield DecodedStatus(
            uuid=command.uuid,
            display_mask=encode_rgba_png(pair.display),
            raw_mask=encode_rgba_png(pair.raw),
            mask_index=pair.mask_index,
            score=pair.score,
        )

    def _extract(self, command: ExtractCommand) -> Iterator[Status]:
        ctx = self._require_context(command.uuid)
        if ctx.last_masks is None:
            raise RuntimeError("Nothing to extract yet; add a point first.")
        result = encode_png(extract_selection(ctx.image, ctx.last_masks.raw))
        yield ExtractedStatus(uuid=command.uuid, result=result)
