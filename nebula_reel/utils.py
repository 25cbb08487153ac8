"""Small helpers shared by the detector, renderer and exporters."""
from __future__ import annotations

import os
import re
from typing import Tuple

import numpy as np


def hex_to_rgb(value: str) -> Tuple[int, int, int]:
    """Convert ``"#rrggbb"`` (or ``"#rgb"``) hex color to an RGB tuple."""
    value = value.strip().lstrip("#")
    if len(value) == 3:
        value = "".join(ch * 2 for ch in value)
    if len(value) != 6:
        raise ValueError(f"invalid hex color: {value}")
    r = int(value[0:2], 16)
    g = int(value[2:4], 16)
    b = int(value[4:6], 16)
    return r, g, b


def rgb_to_hex(r: int, g: int, b: int) -> str:
    return "#{:02x}{:02x}{:02x}".format(int(r), int(g), int(b))


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def lerp(a: float, b: float, t: float) -> float:
    return a + (b - a) * t


def screen_blend(dst: np.ndarray, src: np.ndarray) -> np.ndarray:
    """Screen-composite *src* over *dst*; both float arrays in ``[0, 1]``."""
    return 1.0 - (1.0 - dst) * (1.0 - src)


def screen_rgb_clipped(canvas: np.ndarray, rgb: np.ndarray, x: int, y: int) -> None:
    """Screen-blend float *rgb* onto float *canvas* at ``(x, y)`` with clipping."""
    H, W = canvas.shape[:2]
    h, w = rgb.shape[:2]
    dst_x0 = max(0, x)
    dst_y0 = max(0, y)
    dst_x1 = min(W, x + w)
    dst_y1 = min(H, y + h)
    if dst_x1 <= dst_x0 or dst_y1 <= dst_y0:
        return
    src_x0 = max(0, -x)
    src_y0 = max(0, -y)
    src_x1 = src_x0 + (dst_x1 - dst_x0)
    src_y1 = src_y0 + (dst_y1 - dst_y0)
    region = canvas[dst_y0:dst_y1, dst_x0:dst_x1, :]
    src = rgb[src_y0:src_y1, src_x0:src_x1, :]
    canvas[dst_y0:dst_y1, dst_x0:dst_x1, :] = screen_blend(region, src)


def slugify(name: str, default: str = "nebula") -> str:
    """Replace everything but ASCII letters and digits with ``_``."""
    slug = re.sub(r"[^a-z0-9]", "_", name, flags=re.IGNORECASE)
    return slug or default


def unique_path(path: str) -> str:
    """Return *path* or the first ``<root>_N<ext>`` sibling that does not exist."""
    if not os.path.exists(path):
        return path
    root, ext = os.path.splitext(path)
    i = 2
    while True:
        cand = f"{root}_{i}{ext}"
        if not os.path.exists(cand):
            return cand
        i += 1
