from __future__ import annotations

from typing import Optional

import numpy as np
import torch

from .config import SEGMENTATION_MODEL, TARGET_SIZE
from .model import candidate_devices, forward_model, load_segmentation_hf, load_with_fallback
from .preprocess import normalize, remove_padding, resize_with_padding


def _extract_primary_output(y):
    """
    BiRefNet / segmentation models may return:
      - a single tensor
      - (tensor, ...) tuple/list (final stage is typically last)
      - dict / ModelOutput with tensor fields

    We pick the last tensor-like payload for tuple/list outputs.
    """
    if isinstance(y, torch.Tensor):
        return y
    if isinstance(y, (list, tuple)) and len(y) > 0:
        for item in reversed(y):
            if isinstance(item, torch.Tensor):
                return item
        return _extract_primary_output(y[-1])
    if isinstance(y, dict):
        for k in ("logits", "pred", "alpha", "mask"):
            v = y.get(k, None)
            if isinstance(v, torch.Tensor):
                return v
        for v in y.values():
            if isinstance(v, torch.Tensor):
                return v
        return next(iter(y.values()))
    return y


def predict_matte(model: torch.nn.Module, x: torch.Tensor, device: torch.device) -> np.ndarray:
    """
    Forward pass and convert logits -> probability matte.

    Output:
      - float32 numpy array in [0,1]
      - shape (S, S) matching the square input
    """
    if x.dtype != torch.float32:
        x = x.float()
    if x.ndim != 4 or x.shape[0] != 1:
        raise ValueError(f"Expected input tensor (1,3,H,W), got {tuple(x.shape)}")
    size = (int(x.shape[-2]), int(x.shape[-1]))

    x = x.to(device)
    y = _extract_primary_output(forward_model(model, x))
    if not isinstance(y, torch.Tensor):
        raise RuntimeError(f"Model output is not a tensor: {type(y)}")

    # Expect either (1,1,H,W) or (1,H,W) or (H,W)
    if y.ndim == 4:
        y = y[0, 0]
    elif y.ndim == 3:
        y = y[0]
    elif y.ndim != 2:
        raise RuntimeError(f"Unexpected output tensor shape: {tuple(y.shape)}")

    if tuple(y.shape[-2:]) != size:
        y = torch.nn.functional.interpolate(
            y.unsqueeze(0).unsqueeze(0),
            size=size,
            mode="bilinear",
            align_corners=False,
        )[0, 0]

    p = torch.sigmoid(y.float())
    if torch.isnan(p).any():
        raise RuntimeError("NaNs detected in predicted matte.")

    matte = p.detach().to("cpu").numpy().astype(np.float32, copy=False)
    return np.clip(matte, 0.0, 1.0)


class Segmenter:
    """
    Coarse foreground probability for an RGB image.

    Returns a float32 (h, w) mask in [0,1] at model resolution with the
    letterbox padding removed; the compositor upsamples it.
    """

    def __init__(self, model: torch.nn.Module, device: torch.device, target_size: int = TARGET_SIZE):
        self.model = model
        self.device = device
        self.target_size = target_size

    def __call__(self, rgb: np.ndarray) -> np.ndarray:
        padded, meta = resize_with_padding(rgb, self.target_size)
        matte = predict_matte(self.model, normalize(padded), self.device)
        return remove_padding(matte, meta)


def load_segmenter(hf_repo: str = SEGMENTATION_MODEL, preferred_device: Optional[str] = None):
    """Load the segmentation model with accelerator -> CPU fallback. Returns (Segmenter, device_type)."""
    model, device = load_with_fallback(
        lambda d: load_segmentation_hf(hf_repo, d),
        candidate_devices(preferred_device),
    )
    return Segmenter(model, device), device.type
