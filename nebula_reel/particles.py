"""Particle model and the particle source resolver.

The resolver picks where the animated point lights come from:

``real``
    Stars found by :func:`nebula_reel.detect.detect_stars`.
``ai-map``
    Sparse hotspots supplied by an external image description service,
    expanded into jittered clusters.
``procedural``
    Uniformly random particles.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
import yaml

from .config import ANALYSIS_SUFFIXES
from .utils import hex_to_rgb

REAL_MIN_COUNT = 50
CLUSTER_SIZE = 50
CLUSTER_JITTER = 0.15
MAX_DEPTH = 5.0
MAX_PARTICLES = {"mobile": 1500, "desktop": 3500}
DEFAULT_HOTSPOT_COLOR = "#ffffff"


def _is_hex_color(value) -> bool:
    if not isinstance(value, str):
        return False
    try:
        hex_to_rgb(value)
    except ValueError:
        return False
    return True


@dataclass(frozen=True)
class Particle:
    """A point light in normalised image coordinates.

    ``z`` is the depth factor: ``0`` is locked to the background, larger
    values sit closer to the camera and move faster while zooming.
    """

    x: float
    y: float
    z: float
    scale: float
    alpha: Optional[float] = None
    color: Optional[str] = None


@dataclass
class HotspotAnalysis:
    """Output of the external description service, as far as we use it."""

    description: str = ""
    dominant_colors: List[str] = field(default_factory=list)
    hotspots: List[Tuple[float, float]] = field(default_factory=list)
    name: Optional[str] = None


@dataclass
class ParticleSource:
    mode: str
    particles: List[Particle]

    def __len__(self) -> int:
        return len(self.particles)


def cubed_depth(rng: np.random.Generator, n: int, max_depth: float = MAX_DEPTH) -> np.ndarray:
    """Depths skewed towards the background: most near 0, few near ``max_depth``."""
    return np.power(rng.random(n), 3) * max_depth


def cap_particles(particles: Sequence[Particle], limit: int) -> List[Particle]:
    """Keep at most *limit* particles, largest ``scale`` first."""
    if len(particles) <= limit:
        return list(particles)
    ranked = sorted(particles, key=lambda p: p.scale, reverse=True)
    return ranked[:limit]


def expand_hotspots(
    hotspots: Iterable[Tuple[float, float]],
    colors: Sequence[str] = (),
    rng: Optional[np.random.Generator] = None,
    cluster_size: int = CLUSTER_SIZE,
    jitter: float = CLUSTER_JITTER,
) -> List[Particle]:
    """Expand ``0..100`` hotspots into clusters of jittered particles.

    Points that land outside the unit square are discarded, so the result
    holds at most ``len(hotspots) * cluster_size`` particles.
    """
    rng = rng if rng is not None else np.random.default_rng()
    palette = [c for c in colors if _is_hex_color(c)] or [DEFAULT_HOTSPOT_COLOR]
    out: List[Particle] = []
    for hx, hy in hotspots:
        offsets = (rng.random((cluster_size, 2)) - 0.5) * jitter
        xs = hx / 100.0 + offsets[:, 0]
        ys = hy / 100.0 + offsets[:, 1]
        zs = cubed_depth(rng, cluster_size)
        scales = 0.5 + rng.random(cluster_size)
        alphas = 0.6 + 0.4 * rng.random(cluster_size)
        for k in range(cluster_size):
            x, y = float(xs[k]), float(ys[k])
            if not (0.0 <= x <= 1.0 and 0.0 <= y <= 1.0):
                continue
            out.append(
                Particle(
                    x=x,
                    y=y,
                    z=float(zs[k]),
                    scale=float(scales[k]),
                    alpha=float(alphas[k]),
                    color=palette[len(out) % len(palette)],
                )
            )
    return out


def procedural_particles(count: int, rng: Optional[np.random.Generator] = None) -> List[Particle]:
    """Uniformly scattered particles with the cubed depth distribution."""
    rng = rng if rng is not None else np.random.default_rng()
    count = max(0, int(count))
    xs = rng.random(count)
    ys = rng.random(count)
    zs = cubed_depth(rng, count)
    scales = 0.5 + rng.random(count)
    return [
        Particle(x=float(xs[i]), y=float(ys[i]), z=float(zs[i]), scale=float(scales[i]))
        for i in range(count)
    ]


def resolve_particles(
    detected: Sequence[Particle],
    analysis: Optional[HotspotAnalysis] = None,
    density: int = 150,
    device: str = "desktop",
    rng: Optional[np.random.Generator] = None,
) -> ParticleSource:
    """Choose the particle source for one image.

    Detection wins when it found more than ``REAL_MIN_COUNT`` stars. A missing
    or empty hotspot list is treated exactly like "no hint".
    """
    rng = rng if rng is not None else np.random.default_rng()
    if len(detected) > REAL_MIN_COUNT:
        limit = MAX_PARTICLES.get(device, MAX_PARTICLES["desktop"])
        particles = cap_particles(detected, limit)
        if len(particles) < len(detected):
            logging.info("capped %d detected stars to %d (%s)", len(detected), limit, device)
        return ParticleSource("real", particles)

    if analysis is not None and analysis.hotspots:
        particles = expand_hotspots(analysis.hotspots, analysis.dominant_colors, rng=rng)
        return ParticleSource("ai-map", particles)

    return ParticleSource("procedural", procedural_particles(density, rng=rng))


def _parse_hotspot(raw) -> Optional[Tuple[float, float]]:
    try:
        if isinstance(raw, dict):
            x, y = float(raw["x"]), float(raw["y"])
        else:
            x, y = (float(v) for v in raw)
    except (KeyError, TypeError, ValueError):
        return None
    return (max(0.0, min(100.0, x)), max(0.0, min(100.0, y)))


def parse_analysis(data) -> Optional[HotspotAnalysis]:
    """Build a :class:`HotspotAnalysis` from decoded JSON/YAML data.

    Accepts both the camelCase keys of the description service and
    snake_case keys. Malformed entries are skipped.
    """
    if not isinstance(data, dict):
        return None
    raw_spots = data.get("starHotspots", data.get("hotspots")) or []
    raw_colors = data.get("dominantColors", data.get("dominant_colors")) or []
    if not isinstance(raw_colors, list):
        raw_colors = []
    hotspots = [h for h in (_parse_hotspot(r) for r in raw_spots) if h is not None]
    colors = [c for c in raw_colors if _is_hex_color(c)]
    if len(colors) < len(raw_colors):
        logging.debug("dropped %d malformed colours", len(raw_colors) - len(colors))
    name = data.get("name")
    return HotspotAnalysis(
        description=str(data.get("description", "")),
        dominant_colors=colors,
        hotspots=hotspots,
        name=str(name) if name else None,
    )


def load_analysis(path: str) -> Optional[HotspotAnalysis]:
    """Load a hotspot side-car; failures are logged and mean "no hint"."""
    try:
        with open(path, "r", encoding="utf8") as fh:
            data = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError) as exc:
        logging.warning("ignoring unreadable analysis %s: %s", path, exc)
        return None
    analysis = parse_analysis(data)
    if analysis is None:
        logging.warning("ignoring malformed analysis %s", path)
    return analysis


def find_analysis(image_path: str) -> Optional[str]:
    """Return the side-car path for *image_path* if one exists."""
    root = os.path.splitext(image_path)[0]
    for suffix in ANALYSIS_SUFFIXES:
        cand = root + suffix
        if os.path.isfile(cand):
            return cand
    return None
