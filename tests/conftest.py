from __future__ import annotations

import io
from typing import List, Tuple

import numpy as np
import pytest
from PIL import Image

from clearlayer.sam import ImageEmbedding


def png_bytes(h: int = 60, w: int = 80, color=(200, 30, 30)) -> bytes:
    img = Image.new("RGB", (w, h), color)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def decode_rgba(data: bytes) -> np.ndarray:
    """PNG bytes -> RGBA uint8 (H, W, 4)."""
    img = Image.open(io.BytesIO(data))
    img.load()
    return np.array(img.convert("RGBA"), dtype=np.uint8)


class FakePromptableModel:
    """Disc of positive logits around the first keep point; three candidates."""

    def __init__(self, reshaped_scale: float = 0.5):
        self.reshaped_scale = reshaped_scale
        self.encode_calls = 0
        self.decode_calls: List[Tuple[np.ndarray, np.ndarray]] = []
        self.fail_decode = False

    def encode(self, rgb: np.ndarray) -> ImageEmbedding:
        self.encode_calls += 1
        h, w = rgb.shape[:2]
        rh, rw = int(round(h * self.reshaped_scale)), int(round(w * self.reshaped_scale))
        return ImageEmbedding(embeddings=object(), original_size=(h, w), reshaped_size=(rh, rw))

    def decode(self, embedding, points, labels):
        if self.fail_decode:
            raise RuntimeError("decoder exploded")
        self.decode_calls.append((points.copy(), labels.copy()))
        h, w = embedding.original_size
        keep = points[labels == 1] / self.reshaped_scale
        yy, xx = np.mgrid[0:h, 0:w]
        logits = np.full((h, w), -8.0, dtype=np.float32)
        for x, y in keep:
            logits[(xx - x) ** 2 + (yy - y) ** 2 <= 15**2] = 8.0
        candidates = np.stack([logits, -logits, np.zeros_like(logits)])
        return candidates, np.array([0.9, 0.1, 0.4], dtype=np.float32)


@pytest.fixture
def fake_model() -> FakePromptableModel:
    return FakePromptableModel()


class RecordingWorker:
    """Stands in for a WorkerHost: records commands, never runs them."""

    def __init__(self):
        self.sent = []
        self.terminated = False

    def send(self, command) -> None:
        self.sent.append(command)

    def terminate(self) -> None:
        self.terminated = True

    def of_kind(self, kind: str):
        return [c for c in self.sent if c.kind == kind]


@pytest.fixture
def worker() -> RecordingWorker:
    return RecordingWorker()
