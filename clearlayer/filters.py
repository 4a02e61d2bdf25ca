from __future__ import annotations

import numpy as np

from .config import GUIDED_MIN_RADIUS, GUIDED_RADIUS_DIVISOR


def _blur_axis(buf: np.ndarray, radius: int, axis: int) -> np.ndarray:
    """
    1-D running-sum mean along `axis` with edge replication.

    One cumulative sum over the padded line; every window sum is then a single
    difference, so cost does not depend on radius.
    """
    size = 2 * radius + 1
    pad = [(0, 0), (0, 0)]
    pad[axis] = (radius, radius)
    padded = np.pad(buf, pad, mode="edge")

    csum = np.cumsum(padded, axis=axis, dtype=np.float64)
    zero_shape = list(csum.shape)
    zero_shape[axis] = 1
    csum = np.concatenate([np.zeros(zero_shape, dtype=np.float64), csum], axis=axis)

    n = buf.shape[axis]
    upper = np.take(csum, np.arange(size, size + n), axis=axis)
    lower = np.take(csum, np.arange(0, n), axis=axis)
    return (upper - lower) / float(size)


def box_blur(buf: np.ndarray, radius: int) -> np.ndarray:
    """
    Mean over a (2r+1)x(2r+1) window: horizontal pass, then vertical pass.

    Input: single-channel (H, W) array. Output: float64 (H, W).
    """
    if buf.ndim != 2:
        raise ValueError(f"Expected single-channel (H,W) buffer, got shape={buf.shape}")
    r = int(radius)
    if r < 0:
        raise ValueError(f"Radius must be >= 0, got {radius}")
    out = buf.astype(np.float64, copy=True)
    if r == 0:
        return out
    out = _blur_axis(out, r, axis=1)
    out = _blur_axis(out, r, axis=0)
    return out


def guided_filter(guide: np.ndarray, src: np.ndarray, radius: int, epsilon: float) -> np.ndarray:
    """
    Edge-aware refinement of `src` using `guide` (He et al., single-channel guide).

    Per window: src ~= a * guide + b, with
      a = cov(guide, src) / (var(guide) + epsilon)
      b = mean(src) - a * mean(guide)
    a and b are averaged over all windows covering a pixel before reconstruction.

    Small epsilon follows guide edges tightly; large epsilon degrades to a plain
    blur of `src`.
    """
    if guide.shape != src.shape or guide.ndim != 2:
        raise ValueError(f"Guide {guide.shape} and input {src.shape} must be matching (H,W) buffers")
    if epsilon <= 0:
        raise ValueError(f"Epsilon must be > 0, got {epsilon}")

    I = guide.astype(np.float64, copy=False)
    p = src.astype(np.float64, copy=False)

    mean_I = box_blur(I, radius)
    mean_p = box_blur(p, radius)
    corr_II = box_blur(I * I, radius)
    corr_Ip = box_blur(I * p, radius)

    var_I = corr_II - mean_I * mean_I
    cov_Ip = corr_Ip - mean_I * mean_p

    a = cov_Ip / (var_I + float(epsilon))
    b = mean_p - a * mean_I

    mean_a = box_blur(a, radius)
    mean_b = box_blur(b, radius)
    return (mean_a * I + mean_b).astype(np.float32)


def adaptive_radius(width: int, height: int) -> int:
    """Spatial support that scales with resolution."""
    return max(GUIDED_MIN_RADIUS, min(int(width), int(height)) // GUIDED_RADIUS_DIVISOR)
