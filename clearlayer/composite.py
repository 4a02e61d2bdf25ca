from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np
from PIL import Image

from .config import ALPHA_FLOOR, GUIDED_EPSILON, LUMA_WEIGHTS
from .filters import adaptive_radius, guided_filter


@dataclass(frozen=True)
class MattingParams:
    epsilon: float = GUIDED_EPSILON
    # None -> adaptive_radius(width, height)
    radius: Optional[int] = None
    alpha_floor: float = ALPHA_FLOOR


def luminance_guide(rgb: np.ndarray) -> np.ndarray:
    """Rec.601 luma of an RGB uint8 image, float32 in [0,1]."""
    if rgb.ndim != 3 or rgb.shape[2] != 3:
        raise ValueError(f"Expected RGB image (H,W,3), got {rgb.shape}")
    wr, wg, wb = LUMA_WEIGHTS
    x = rgb.astype(np.float32) / 255.0
    return (wr * x[..., 0] + wg * x[..., 1] + wb * x[..., 2]).astype(np.float32)


def _as_single_channel(mask: np.ndarray) -> np.ndarray:
    if mask.ndim == 2:
        return mask
    if mask.ndim == 3 and mask.shape[0] == 1:
        return mask[0]
    if mask.ndim == 3 and mask.shape[2] >= 1:
        # single channel, or take the first channel of a grey-as-RGB(A) mask
        return mask[..., 0]
    raise ValueError(f"Malformed coarse mask shape: {mask.shape}")


def resize_coarse_mask(mask: np.ndarray, width: int, height: int) -> np.ndarray:
    """
    Bring a coarse mask (uint8 0-255 or float 0-1) to (height, width) float32 in [0,1].
    """
    m = _as_single_channel(np.asarray(mask))
    if m.size == 0:
        raise ValueError("Coarse mask is empty.")
    if m.dtype == np.uint8:
        m = m.astype(np.float32) / 255.0
    else:
        m = m.astype(np.float32, copy=False)
    if not np.isfinite(m).all():
        raise ValueError("Coarse mask contains non-finite values.")
    if m.shape != (height, width):
        m = cv2.resize(m, (width, height), interpolation=cv2.INTER_LINEAR)
    return np.clip(m, 0.0, 1.0).astype(np.float32, copy=False)


def refine_alpha(rgb: np.ndarray, coarse_mask: np.ndarray, params: MattingParams = MattingParams()) -> np.ndarray:
    """
    Snap a coarse AI mask onto real image edges.

    Steps:
      1) luminance guide from the original pixels
      2) coarse mask -> native resolution, [0,1]
      3) guided filter (adaptive radius, small epsilon)
      4) clip; alpha under the floor -> 0. High alpha is left soft so
         translucent subjects (glass, sheer fabric) keep partial opacity.
    """
    h, w = rgb.shape[:2]
    guide = luminance_guide(rgb)
    p = resize_coarse_mask(coarse_mask, w, h)
    radius = params.radius if params.radius is not None else adaptive_radius(w, h)

    q = guided_filter(guide, p, radius, params.epsilon)
    q = np.clip(q, 0.0, 1.0)
    q[q < float(params.alpha_floor)] = 0.0
    return q.astype(np.float32, copy=False)


def inject_alpha(rgb: np.ndarray, alpha: np.ndarray) -> Image.Image:
    """
    Create a lossless RGBA PIL image from RGB uint8 and alpha float32 in [0,1].
    """
    if rgb.ndim != 3 or rgb.shape[2] != 3:
        raise ValueError(f"Expected RGB image (H,W,3), got {rgb.shape}")
    if alpha.ndim != 2 or alpha.shape[:2] != rgb.shape[:2]:
        raise ValueError(f"Alpha shape {alpha.shape} does not match RGB {rgb.shape[:2]}")

    a8 = np.round(np.clip(alpha, 0.0, 1.0) * 255.0).astype(np.uint8)
    rgba = np.dstack([rgb, a8])
    return Image.fromarray(rgba)


def composite_matte(rgb: np.ndarray, coarse_mask: np.ndarray, params: MattingParams = MattingParams()) -> Image.Image:
    """Original RGB + refined alpha."""
    return inject_alpha(rgb, refine_alpha(rgb, coarse_mask, params))


def extract_selection(rgb: np.ndarray, raw_mask: np.ndarray) -> Image.Image:
    """
    Cut an RGB image with a raw selection mask ("destination-out").

    raw_mask is RGBA uint8 where opaque means remove; the result alpha is
    255 * (1 - mask_alpha / 255).
    """
    if raw_mask.ndim != 3 or raw_mask.shape[2] != 4:
        raise ValueError(f"Expected RGBA raw mask (H,W,4), got {raw_mask.shape}")
    h, w = rgb.shape[:2]
    mask_alpha = raw_mask[..., 3]
    if mask_alpha.shape != (h, w):
        mask_alpha = cv2.resize(mask_alpha, (w, h), interpolation=cv2.INTER_LINEAR)
    keep = 1.0 - mask_alpha.astype(np.float32) / 255.0
    return inject_alpha(rgb, keep)


def encode_png(img: Image.Image) -> bytes:
    """
    Encode as lossless RGBA PNG bytes.
    """
    if img.mode != "RGBA":
        img = img.convert("RGBA")
    buf = io.BytesIO()
    img.save(buf, format="PNG", optimize=False)
    return buf.getvalue()


def encode_rgba_png(rgba: np.ndarray) -> bytes:
    """RGBA uint8 (H, W, 4) -> PNG bytes."""
    if rgba.ndim != 3 or rgba.shape[2] != 4 or rgba.dtype != np.uint8:
        raise ValueError(f"Expected RGBA uint8 (H,W,4), got {rgba.shape} {rgba.dtype}")
    return encode_png(Image.fromarray(rgba))
