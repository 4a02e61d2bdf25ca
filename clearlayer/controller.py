from __future__ import annotations

import time
import uuid as uuidlib
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

import structlog

from .config import DEBOUNCE_SECONDS, SENSITIVITY_DEFAULT, SMOOTHNESS_DEFAULT
from .geometry import Letterbox, map_display_to_natural
from .masks import KEEP, REMOVE, Point
from .previews import PreviewStore
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
)

log = structlog.get_logger(__name__)


class SelectionWorker(Protocol):
    def send(self, command) -> None: ...

    def terminate(self) -> None: ...


class Debouncer:
    """Coalesces rapid triggers: fires once, `delay` after the last trigger."""

    def __init__(self, delay: float, clock: Callable[[], float] = time.monotonic):
        self.delay = delay
        self.clock = clock
        self._due: Optional[float] = None

    @property
    def pending(self) -> bool:
        return self._due is not None

    def trigger(self) -> None:
        self._due = self.clock() + self.delay

    def cancel(self) -> None:
        self._due = None

    def ready(self) -> bool:
        """True once per trigger burst, when the quiet period has passed."""
        if self._due is None or self.clock() < self._due:
            return False
        self._due = None
        return True


@dataclass(frozen=True)
class MaskPreviews:
    display: str
    raw: str


class SelectionController:
    """
    Controlling-side half of a point-prompted selection session.

    Sends commands, never touches pixels. At most one decode is in flight;
    prompt and control changes made meanwhile are coalesced into the next one.
    """

    def __init__(
        self,
        worker: SelectionWorker,
        image: bytes,
        previews: Optional[PreviewStore] = None,
        debounce: float = DEBOUNCE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.worker = worker
        self.image = image
        self.previews = previews if previews is not None else PreviewStore()
        self.uuid = uuidlib.uuid4().hex[:8]
        self.points: List[Point] = []
        self.sensitivity = SENSITIVITY_DEFAULT
        self.smoothness = SMOOTHNESS_DEFAULT
        self.mask_index: Optional[int] = None

        self.is_model_loading = False
        self.is_embedding = False
        self.is_encoded = False
        self.decode_in_flight = False
        self.closed = False
        self.error: Optional[str] = None
        self.device: Optional[str] = None
        self.masks: Optional[MaskPreviews] = None
        self.mask_score: Optional[float] = None
        self.result: Optional[bytes] = None

        self._debouncer = Debouncer(debounce, clock)

    # --- lifecycle ------------------------------------------------------------

    def open(self) -> None:
        self.is_model_loading = True
        self.worker.send(PreloadCommand())

    def close(self) -> None:
        """Terminate the worker outright and release mask previews."""
        if self.closed:
            return
        self.closed = True
        self._debouncer.cancel()
        self.worker.terminate()
        self._release_masks()

    # --- user input -----------------------------------------------------------

    @property
    def busy(self) -> bool:
        return self.is_model_loading or self.is_embedding

    def click(self, x: float, y: float, box: Letterbox, label: int = KEEP) -> Optional[Point]:
        """Container-space click -> new prompt point; None when ignored."""
        if self.closed or self.busy or not self.is_encoded:
            return None
        natural = map_display_to_natural(x, y, box)
        if natural is None:
            return None
        return self.add_point(Point(natural[0], natural[1], KEEP if label == KEEP else REMOVE))

    def add_point(self, point: Point) -> Point:
        self.points.append(point)
        self._schedule()
        return point

    def set_sensitivity(self, value: float) -> None:
        self.sensitivity = min(1.0, max(0.0, float(value)))
        self._schedule()

    def set_smoothness(self, value: float) -> None:
        self.smoothness = min(1.0, max(0.0, float(value)))
        self._schedule()

    def set_mask_index(self, index: Optional[int]) -> None:
        self.mask_index = index
        self._schedule()

    def reset_points(self) -> None:
        self.points = []
        self._debouncer.cancel()
        self._release_masks()

    def dismiss_error(self) -> None:
        self.error = None

    def retry(self) -> None:
        """Re-issue whichever step failed: model load or encode."""
        if self.closed or self.busy:
            return
        self.error = None
        if self.device is None:
            self.open()
        elif not self.is_encoded:
            self.is_embedding = True
            self.worker.send(EncodeCommand(uuid=self.uuid, image=self.image))
        else:
            self._schedule()

    def extract(self) -> None:
        if self.masks is None or not self.points:
            raise RuntimeError("Nothing to extract yet; add a point first.")
        self.worker.send(ExtractCommand(uuid=self.uuid))

    # --- pump -----------------------------------------------------------------

    def tick(self) -> bool:
        """Send a decode if one is due and none is in flight. Returns True when sent."""
        if self.closed or self.decode_in_flight or not self.is_encoded or not self.points:
            return False
        if not self._debouncer.ready():
            return False
        self.worker.send(
            DecodeCommand(
                uuid=self.uuid,
                points=[(p.x, p.y) for p in self.points],
                labels=[p.label for p in self.points],
                sensitivity=self.sensitivity,
                smoothness=self.smoothness,
                mask_index=self.mask_index,
            )
        )
        self.decode_in_flight = True
        return True

    def handle(self, status) -> None:
        if self.closed:
            return
        if isinstance(status, LoadingStatus):
            self.is_model_loading = True
        elif isinstance(status, ReadyStatus):
            self.is_model_loading = False
            self.device = status.device
            if not self.is_encoded and not self.is_embedding:
                self.is_embedding = True
                self.worker.send(EncodeCommand(uuid=self.uuid, image=self.image))
        elif isinstance(status, EncodedStatus):
            if status.uuid != self.uuid:
                return
            self.is_embedding = False
            self.is_encoded = True
            if self.points:
                self._schedule()
        elif isinstance(status, DecodedStatus):
            if status.uuid != self.uuid:
                log.info("Dropping decode for another session", uuid=status.uuid)
                return
            self.decode_in_flight = False
            if not self.points:
                # reset while the decode was running
                return
            self._replace_masks(status)
        elif isinstance(status, ExtractedStatus):
            if status.uuid == self.uuid:
                self.result = status.result
        elif isinstance(status, ErrorStatus):
            if status.id is not None and status.id != self.uuid:
                return
            self.error = status.message or "Unknown error"
            if status.id is None:
                self.is_model_loading = False
            self.is_embedding = False
            self.decode_in_flight = False

    # --- internals ------------------------------------------------------------

    def _schedule(self) -> None:
        if self.points:
            self._debouncer.trigger()

    def _replace_masks(self, status: DecodedStatus) -> None:
        self._release_masks()
        self.masks = MaskPreviews(
            display=self.previews.create(status.display_mask),
            raw=self.previews.create(status.raw_mask),
        )
        self.mask_score = status.score

    def _release_masks(self) -> None:
        if self.masks is not None:
            self.previews.release(self.masks.display)
            self.previews.release(self.masks.raw)
            self.masks = None
            self.mask_score = None
