from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .config import (
    MASK_BAND_HIGH,
    MASK_BAND_LOW,
    MAX_LOGIT_GAIN,
    OVERLAY_ALPHA,
    OVERLAY_RGB,
    SENSITIVITY_LOGIT_RANGE,
)

KEEP = 1
REMOVE = 0


@dataclass(frozen=True)
class Point:
    """Natural-image coordinate with a keep (1) / remove (0) label."""

    x: float
    y: float
    label: int = KEEP


@dataclass(frozen=True)
class MaskParams:
    """
    Thresholds for turning a decoder probability into display/raw buffers.

    `decision_point` (default: `band_low`) splits the display overlay: tinted
    below it, transparent at or above it.
    """

    band_low: float = MASK_BAND_LOW
    band_high: float = MASK_BAND_HIGH
    decision_point: Optional[float] = None
    sensitivity_logit_range: float = SENSITIVITY_LOGIT_RANGE
    max_logit_gain: float = MAX_LOGIT_GAIN
    overlay_rgb: Tuple[int, int, int] = OVERLAY_RGB
    overlay_alpha: int = OVERLAY_ALPHA

    def __post_init__(self) -> None:
        if not 0.0 < self.band_low < self.band_high <= 1.0:
            raise ValueError(f"Invalid anti-alias band ({self.band_low}, {self.band_high})")
        if not self.band_low <= self.cutoff <= self.band_high:
            raise ValueError(f"decision_point {self.cutoff} must lie in the band ({self.band_low}, {self.band_high})")
        if self.max_logit_gain < 1.0:
            raise ValueError(f"max_logit_gain must be >= 1, got {self.max_logit_gain}")

    @property
    def cutoff(self) -> float:
        return self.band_low if self.decision_point is None else float(self.decision_point)


@dataclass(frozen=True)
class MaskPair:
    """RGBA uint8 buffers from a single decode: display overlay + raw cut mask."""

    display: np.ndarray
    raw: np.ndarray
    mask_index: int
    score: float


def with_corner_anchors(points: Sequence[Point], width: int, height: int) -> List[Point]:
    """Append "remove" anchors at the four image corners when no remove point exists."""
    out = list(points)
    if any(p.label == REMOVE for p in out):
        return out
    x1, y1 = float(width - 1), float(height - 1)
    out.extend(
        [
            Point(0.0, 0.0, REMOVE),
            Point(x1, 0.0, REMOVE),
            Point(0.0, y1, REMOVE),
            Point(x1, y1, REMOVE),
        ]
    )
    return out


def scale_points(points: Sequence[Point], scale_x: float, scale_y: float) -> Tuple[np.ndarray, np.ndarray]:
    """Natural coordinates -> model input coordinates. Returns ((N,2) float32, (N,) int64)."""
    coords = np.array([[p.x * scale_x, p.y * scale_y] for p in points], dtype=np.float32).reshape(-1, 2)
    labels = np.array([p.label for p in points], dtype=np.int64)
    return coords, labels


def select_candidate(scores: np.ndarray, mask_index: Optional[int] = None) -> int:
    """Highest-confidence candidate, unless the caller pins one."""
    scores = np.asarray(scores).reshape(-1)
    if scores.size == 0:
        raise ValueError("Decoder returned no candidate masks.")
    if mask_index is not None:
        if not 0 <= mask_index < scores.size:
            raise ValueError(f"mask_index {mask_index} out of range for {scores.size} candidates")
        return int(mask_index)
    return int(np.argmax(scores))


def logits_to_probability(
    logits: np.ndarray,
    sensitivity: float,
    smoothness: float,
    params: MaskParams = MaskParams(),
) -> np.ndarray:
    """
    Logistic conversion with controls in [0,1]: sigmoid((logit - shift) * gain).

    sensitivity: higher keeps more (moves the 0.5 point to lower logits).
    smoothness: higher -> lower gain -> wider soft transition.
    """
    shift = (0.5 - float(sensitivity)) * params.sensitivity_logit_range
    gain = 1.0 + (1.0 - float(smoothness)) * (params.max_logit_gain - 1.0)
    z = (logits.astype(np.float32) - shift) * gain
    # keeps np.exp in range
    z = np.clip(z, -60.0, 60.0)
    return (1.0 / (1.0 + np.exp(-z))).astype(np.float32)


def build_mask_pair(probability: np.ndarray, params: MaskParams = MaskParams()) -> Tuple[np.ndarray, np.ndarray]:
    """
    Probability (H,W) -> (display RGBA, raw RGBA).

    Display is binary at the decision point: p < cutoff is tinted with the
    overlay colour at overlay_alpha, everything else is fully transparent.
    Raw is opaque (255) wherever display is tinted, transparent at
    p >= band_high and anti-aliased in between, so the two never disagree on
    a side.
    """
    if probability.ndim != 2:
        raise ValueError(f"Expected (H,W) probability, got shape={probability.shape}")
    h, w = probability.shape
    span = params.band_high - params.band_low
    keep = np.clip((probability - params.band_low) / span, 0.0, 1.0)
    removed = probability < params.cutoff

    raw = np.zeros((h, w, 4), dtype=np.uint8)
    raw[..., 3] = np.round((1.0 - keep) * 255.0).astype(np.uint8)
    raw[removed, 3] = 255

    display = np.zeros((h, w, 4), dtype=np.uint8)
    display[removed, 0] = params.overlay_rgb[0]
    display[removed, 1] = params.overlay_rgb[1]
    display[removed, 2] = params.overlay_rgb[2]
    display[removed, 3] = params.overlay_alpha
    return display, raw


def decode_to_masks(
    logits: np.ndarray,
    scores: np.ndarray,
    sensitivity: float,
    smoothness: float,
    mask_index: Optional[int] = None,
    params: MaskParams = MaskParams(),
) -> MaskPair:
    """Candidate logits (K,H,W) + scores (K,) -> the chosen MaskPair."""
    if logits.ndim != 3:
        raise ValueError(f"Expected candidate logits (K,H,W), got shape={logits.shape}")
    scores = np.asarray(scores).reshape(-1)
    if scores.size != logits.shape[0]:
        raise ValueError(f"{logits.shape[0]} candidate masks but {scores.size} scores")

    idx = select_candidate(scores, mask_index)
    probability = logits_to_probability(logits[idx], sensitivity, smoothness, params)
    display, raw = build_mask_pair(probability, params)
    return MaskPair(display=display, raw=raw, mask_index=idx, score=float(scores[idx]))
