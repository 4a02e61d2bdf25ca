from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, Tuple

import numpy as np
import torch

from .config import PROMPTABLE_MODEL
from .model import candidate_devices, load_promptable_hf, load_with_fallback


@dataclass(frozen=True)
class ImageEmbedding:
    """Opaque encoder output plus the geometry needed to place prompts."""

    embeddings: Any
    original_size: Tuple[int, int]  # (h, w)
    reshaped_size: Tuple[int, int]  # (h, w) model input before padding


class PromptableModel(Protocol):
    def encode(self, rgb: np.ndarray) -> ImageEmbedding: ...

    def decode(
        self, embedding: ImageEmbedding, points: np.ndarray, labels: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        points: (N,2) in reshaped input space, labels: (N,).
        Returns candidate logits (K, orig_h, orig_w) and confidence scores (K,).
        """
        ...


class SamPromptableModel:
    """transformers SamModel / SamProcessor behind the encode/decode contract."""

    def __init__(self, model: torch.nn.Module, processor: Any, device: torch.device):
        self.model = model
        self.processor = processor
        self.device = device

    def encode(self, rgb: np.ndarray) -> ImageEmbedding:
        inputs = self.processor(images=rgb, return_tensors="pt")
        pixel_values = inputs["pixel_values"].to(self.device)
        with torch.no_grad():
            embeddings = self.model.get_image_embeddings(pixel_values)
        orig_h, orig_w = (int(v) for v in inputs["original_sizes"][0].tolist())
        res_h, res_w = (int(v) for v in inputs["reshaped_input_sizes"][0].tolist())
        return ImageEmbedding(embeddings=embeddings, original_size=(orig_h, orig_w), reshaped_size=(res_h, res_w))

    def decode(
        self, embedding: ImageEmbedding, points: np.ndarray, labels: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray]:
        n = int(points.shape[0])
        input_points = torch.as_tensor(points, dtype=torch.float32).reshape(1, 1, n, 2).to(self.device)
        input_labels = torch.as_tensor(labels, dtype=torch.int64).reshape(1, 1, n).to(self.device)
        with torch.no_grad():
            outputs = self.model(
                image_embeddings=embedding.embeddings,
                input_points=input_points,
                input_labels=input_labels,
                multimask_output=True,
            )
        # Low-res logits -> original size with the model padding removed; keep them unbinarized.
        masks = self.processor.image_processor.post_process_masks(
            outputs.pred_masks.cpu(),
            torch.tensor([list(embedding.original_size)]),
            torch.tensor([list(embedding.reshaped_size)]),
            binarize=False,
        )[0]
        logits = masks[0].float().numpy()  # (K, H, W)
        scores = outputs.iou_scores.cpu()[0, 0].float().numpy()  # (K,)
        return logits, scores


def load_promptable(hf_repo: str = PROMPTABLE_MODEL, preferred_device: Optional[str] = None):
    """Load SAM with accelerator -> CPU fallback. Returns (SamPromptableModel, device_type)."""
    (model, processor), device = load_with_fallback(
        lambda d: load_promptable_hf(hf_repo, d),
        candidate_devices(preferred_device),
    )
    return SamPromptableModel(model, processor, device), device.type
