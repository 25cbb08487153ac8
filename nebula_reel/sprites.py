"""Radial-gradient point-light sprites with a bounded cache."""
from __future__ import annotations

import math
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Optional, Tuple

import numpy as np

from .utils import hex_to_rgb

SPRITE_SIZE = 64
MAX_GLOW = 4.0
CORE_STOP = 0.15
MID_STOP = 0.4

SpikeSpec = Tuple[float, float]  # (gain, angle in degrees)


@dataclass(frozen=True)
class Sprite:
    """Premultiplied RGB sprite in ``[0, 1]``.

    ``extent`` is the sprite radius in units of the particle's base radius,
    so a particle of radius ``r`` is drawn ``2 * r * extent`` pixels wide.
    """

    rgb: np.ndarray
    extent: float


def glow_extent(feathering: float) -> float:
    return min(MAX_GLOW, 1.0 + max(0.0, feathering))


def edge_stop(feathering: float) -> float:
    """Where the gradient reaches zero, in units of the base radius.

    Negative feathering pulls the edge in (sharper falloff), non-negative
    feathering pushes it out to the glow extent.
    """
    if feathering < 0:
        return max(0.4, 1.0 + feathering / 3.0 * 0.6)
    return glow_extent(feathering)


@lru_cache(maxsize=64)
def _profile(feathering: float, size: int) -> Tuple[np.ndarray, np.ndarray]:
    """Alpha map and white-core mix for a given feathering (colour agnostic)."""
    extent = glow_extent(feathering)
    edge = edge_stop(feathering)
    c = (size - 1) / 2.0
    yy, xx = np.mgrid[0:size, 0:size].astype(np.float32)
    d = np.hypot(xx - c, yy - c) / max(c, 1e-6) * extent
    t = np.clip(d / edge, 0.0, 1.0)
    mid_alpha = 0.8 / (1.0 + 0.5 * max(0.0, feathering))
    alpha = np.where(
        t < MID_STOP,
        1.0 + (mid_alpha - 1.0) * (t / MID_STOP),
        mid_alpha * (1.0 - (t - MID_STOP) / (1.0 - MID_STOP)),
    )
    white = np.clip(1.0 - (t - CORE_STOP) / (MID_STOP - CORE_STOP), 0.0, 1.0)
    alpha = alpha.astype(np.float32)
    white = white.astype(np.float32)
    alpha.setflags(write=False)
    white.setflags(write=False)
    return alpha, white


def _spike_alpha(size: int, gain: float, angle: float) -> np.ndarray:
    c = (size - 1) / 2.0
    yy, xx = np.mgrid[0:size, 0:size].astype(np.float32)
    x = (xx - c) / max(c, 1e-6)
    y = (yy - c) / max(c, 1e-6)
    th = math.radians(angle)
    u = x * math.cos(th) + y * math.sin(th)
    v = -x * math.sin(th) + y * math.cos(th)
    width = 1.5 / size
    out = np.zeros_like(x)
    for along, across in ((u, v), (v, u)):
        out += np.exp(-((across / width) ** 2)) * np.clip(1.0 - np.abs(along), 0.0, 1.0)
    return np.clip(out * gain * 0.5, 0.0, 1.0)


def make_sprite(
    color: str,
    feathering: float,
    size: int = SPRITE_SIZE,
    spikes: Optional[SpikeSpec] = None,
) -> Sprite:
    """Hot white core, *color* mid-stop, transparent edge."""
    alpha, white = _profile(float(feathering), int(size))
    rgb = np.array(hex_to_rgb(color), dtype=np.float32) / 255.0
    tint = white[..., None] + (1.0 - white[..., None]) * rgb
    a = alpha
    if spikes is not None and spikes[0] > 0:
        a = np.clip(alpha + _spike_alpha(size, *spikes), 0.0, 1.0)
    return Sprite(rgb=(tint * a[..., None]).astype(np.float32), extent=glow_extent(feathering))


class SpriteCache:
    """Sprites keyed by ``(color, feathering, size, spikes)``.

    The whole cache is dropped once it holds ``max_entries`` sprites; per
    particle colours from star detection would otherwise grow it without bound.
    """

    def __init__(self, max_entries: int = 200):
        self.max_entries = max(1, int(max_entries))
        self._entries: Dict[tuple, Sprite] = {}
        self.hits = 0
        self.misses = 0
        self.clears = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(
        self,
        color: str,
        feathering: float,
        size: int = SPRITE_SIZE,
        spikes: Optional[SpikeSpec] = None,
    ) -> Sprite:
        key = (
            color.lower(),
            round(float(feathering), 3),
            int(size),
            None if spikes is None else (round(spikes[0], 3), round(spikes[1], 2)),
        )
        sprite = self._entries.get(key)
        if sprite is not None:
            self.hits += 1
            return sprite
        self.misses += 1
        if len(self._entries) >= self.max_entries:
            self._entries.clear()
            self.clears += 1
        sprite = make_sprite(color, feathering, size, spikes)
        self._entries[key] = sprite
        return sprite

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> Tuple[int, int]:
        """Return ``(hits, misses)``."""
        return self.hits, self.misses
