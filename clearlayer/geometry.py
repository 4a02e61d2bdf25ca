"""
"Contain" letterboxing: an image scaled to fit its display region with the
aspect ratio preserved and centred on the free axis.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple


@dataclass(frozen=True)
class Letterbox:
    natural_w: float
    natural_h: float
    offset_x: float
    offset_y: float
    display_w: float
    display_h: float


def fit_contain(natural_w: float, natural_h: float, container_w: float, container_h: float) -> Letterbox:
    if natural_w <= 0 or natural_h <= 0:
        raise ValueError(f"Invalid image size: {(natural_w, natural_h)}")
    if container_w <= 0 or container_h <= 0:
        raise ValueError(f"Invalid container size: {(container_w, container_h)}")

    ratio = natural_w / natural_h
    if container_w / container_h > ratio:
        # height-constrained
        display_h = float(container_h)
        display_w = display_h * ratio
        offset_x = (container_w - display_w) / 2.0
        offset_y = 0.0
    else:
        display_w = float(container_w)
        display_h = display_w / ratio
        offset_x = 0.0
        offset_y = (container_h - display_h) / 2.0

    return Letterbox(
        natural_w=float(natural_w),
        natural_h=float(natural_h),
        offset_x=offset_x,
        offset_y=offset_y,
        display_w=display_w,
        display_h=display_h,
    )


def map_display_to_natural(x: float, y: float, box: Letterbox) -> Optional[Tuple[float, float]]:
    """Container coordinates -> natural image coordinates; None outside the image area."""
    if x < box.offset_x or x > box.offset_x + box.display_w:
        return None
    if y < box.offset_y or y > box.offset_y + box.display_h:
        return None
    nx = (x - box.offset_x) * (box.natural_w / box.display_w)
    ny = (y - box.offset_y) * (box.natural_h / box.display_h)
    return nx, ny


def map_natural_to_display(x: float, y: float, box: Letterbox) -> Tuple[float, float]:
    return (
        box.offset_x + (x / box.natural_w) * box.display_w,
        box.offset_y + (y / box.natural_h) * box.display_h,
    )
