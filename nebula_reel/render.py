"""Parallax compositor: background zoom/roll plus depth-scaled point lights.

Each call renders one frame for an explicit ``progress`` value, so the same
code serves the interactive preview loop and frame-exact capture.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple

import cv2
import numpy as np

from .config import AnimationConfig, ParticleConfig, RotationDirection, ZoomOrigin
from .particles import Particle
from .sprites import SpriteCache
from .utils import lerp, screen_rgb_clipped

REFERENCE_SIZE = (800, 600)
DEPTH_GAIN = 2.0
DEPTH_SIZE_GAIN = 0.5
# degrees per second for rotation_speed == 1
ROTATION_RATE = 0.2
MIN_DRAW_SIZE = 0.05
CROSSHAIR_COLOR = (0, 229, 255)

_RESOLUTION_BOXES = {"1080p": (1920, 1080), "4k": (3840, 2160)}


def canvas_size(image_size: Tuple[int, int], resolution: str) -> Tuple[int, int]:
    """Output surface size for an image of ``(w, h)`` at *resolution*.

    Landscape images get the long side of the box, portrait ones the short
    side; ``original`` keeps the image size. Dimensions are rounded down to
    even numbers for the encoder.
    """
    w, h = float(image_size[0]), float(image_size[1])
    box = _RESOLUTION_BOXES.get(resolution)
    if box is not None and w > 0 and h > 0:
        aspect = w / h
        if w > h:
            w, h = box[0], box[0] / aspect
        else:
            w, h = box[1] * aspect, box[1]
    return max(2, int(w // 2) * 2), max(2, int(h // 2) * 2)


def resolution_scale(width: int, height: int) -> float:
    """Size factor relative to the reference preview surface."""
    return math.hypot(width, height) / math.hypot(*REFERENCE_SIZE)


def _as3x3(m: np.ndarray) -> np.ndarray:
    return np.vstack([m, [0.0, 0.0, 1.0]])


@dataclass(frozen=True)
class FrameTransform:
    """Camera state of one frame."""

    progress: float
    current_scale: float
    zoom_delta: float
    angle: float
    origin: Tuple[float, float]
    rotation: np.ndarray
    background: np.ndarray

    def rotate(self, x: float, y: float) -> Tuple[float, float]:
        r = self.rotation
        return (r[0, 0] * x + r[0, 1] * y + r[0, 2], r[1, 0] * x + r[1, 1] * y + r[1, 2])


def frame_transform(
    progress: float,
    animation: AnimationConfig,
    origin: ZoomOrigin,
    size: Tuple[int, int],
) -> FrameTransform:
    """Zoom about *origin*, then roll about the surface centre."""
    w, h = size
    progress = min(1.0, max(0.0, progress))
    elapsed = progress * animation.duration
    sign = RotationDirection(animation.rotation_direction).sign
    angle = elapsed * animation.rotation_speed * ROTATION_RATE * sign
    current = lerp(animation.initial_scale, animation.final_scale, progress)
    ox, oy = origin.x * w, origin.y * h
    scale_m = np.array([[current, 0.0, ox * (1 - current)], [0.0, current, oy * (1 - current)]])
    # OpenCV angles are counter-clockwise in image coordinates
    rot_m = cv2.getRotationMatrix2D((w / 2.0, h / 2.0), -angle, 1.0)
    full = (_as3x3(rot_m) @ _as3x3(scale_m))[:2]
    return FrameTransform(
        progress=progress,
        current_scale=current,
        zoom_delta=current - animation.initial_scale,
        angle=angle,
        origin=(ox, oy),
        rotation=rot_m,
        background=full,
    )


def particle_screen_position(
    particle: Particle,
    transform: FrameTransform,
    size: Tuple[int, int],
    depth_gain: float = DEPTH_GAIN,
) -> Tuple[float, float]:
    """Where *particle* lands on the surface for *transform*.

    The vector from the zoom origin is scaled by the background scale plus a
    depth term, so ``z == 0`` follows the background exactly.
    """
    w, h = size
    ox, oy = transform.origin
    pscale = transform.current_scale + transform.zoom_delta * particle.z * depth_gain
    qx = ox + (particle.x * w - ox) * pscale
    qy = oy + (particle.y * h - oy) * pscale
    return transform.rotate(qx, qy)


def particle_radius(
    particle: Particle,
    transform: FrameTransform,
    config: ParticleConfig,
    res_scale: float,
) -> float:
    depth_mult = max(0.0, 1.0 + particle.z * transform.zoom_delta * DEPTH_SIZE_GAIN)
    bloom = 1.0 + max(0.0, config.brightness - 1.0) * 0.25
    return config.base_size * particle.scale * res_scale * depth_mult * bloom


class ParallaxRenderer:
    """Draws frames onto an ``uint8`` RGB surface owned by the caller.

    Particles are read-only inputs; the sprite cache is an explicit
    collaborator so several renderers may share it.
    """

    def __init__(self, sprites: Optional[SpriteCache] = None, depth_gain: float = DEPTH_GAIN):
        self.sprites = sprites if sprites is not None else SpriteCache()
        self.depth_gain = depth_gain
        self.last_drawn = 0
        self.last_culled = 0

    def _draw_background(
        self, surface: np.ndarray, background: Optional[np.ndarray], transform: FrameTransform
    ) -> None:
        h, w = surface.shape[:2]
        if background is None:
            surface[...] = 0
            return
        if background.shape[:2] != (h, w):
            background = cv2.resize(background, (w, h), interpolation=cv2.INTER_AREA)
        cv2.warpAffine(
            np.ascontiguousarray(background[:, :, :3]),
            transform.background,
            (w, h),
            dst=surface,
            flags=cv2.INTER_LINEAR,
            borderMode=cv2.BORDER_CONSTANT,
            borderValue=(0, 0, 0),
        )

    def _draw_particles(
        self,
        canvas: np.ndarray,
        particles: Iterable[Particle],
        transform: FrameTransform,
        config: ParticleConfig,
    ) -> None:
        h, w = canvas.shape[:2]
        res_scale = resolution_scale(w, h)
        drawn = culled = 0
        for p in particles:
            radius = particle_radius(p, transform, config, res_scale)
            if radius < MIN_DRAW_SIZE:
                culled += 1
                continue
            spikes = None
            if config.spikes_enabled and p.scale >= (config.spike_threshold or 0.0):
                spikes = (float(config.spike_gain), float(config.spike_angle or 45.0))
            sprite = self.sprites.get(p.color or config.color, config.feathering, spikes=spikes)
            half = radius * sprite.extent
            x, y = particle_screen_position(p, transform, (w, h), self.depth_gain)
            if x + half < 0 or y + half < 0 or x - half > w or y - half > h:
                culled += 1
                continue
            gain = config.brightness * (1.0 if p.alpha is None else p.alpha)
            diameter = 2.0 * half
            pix = max(1, int(round(diameter)))
            img = cv2.resize(sprite.rgb, (pix, pix), interpolation=cv2.INTER_AREA)
            if diameter < 1.0:
                gain *= diameter * diameter
            img = np.clip(img * gain, 0.0, 1.0)
            screen_rgb_clipped(canvas, img, int(round(x - pix / 2.0)), int(round(y - pix / 2.0)))
            drawn += 1
        self.last_drawn = drawn
        self.last_culled = culled

    def render(
        self,
        surface: np.ndarray,
        progress: float,
        particles: Sequence[Particle],
        animation: AnimationConfig,
        particle_config: ParticleConfig,
        zoom_origin: ZoomOrigin,
        background: Optional[np.ndarray],
        interactive: bool = False,
    ) -> np.ndarray:
        """Render one frame into *surface* (``H x W x 3`` uint8) and return it."""
        h, w = surface.shape[:2]
        transform = frame_transform(progress, animation, zoom_origin, (w, h))
        self._draw_background(surface, background, transform)

        if particles and particle_config.base_size > 0 and particle_config.brightness > 0:
            canvas = surface.astype(np.float32) / 255.0
            self._draw_particles(canvas, particles, transform, particle_config)
            surface[...] = np.clip(canvas * 255.0 + 0.5, 0, 255).astype(np.uint8)
        else:
            self.last_drawn = self.last_culled = 0

        if interactive:
            ox, oy = transform.origin
            arm = max(6, int(round(10 * resolution_scale(w, h))))
            cx, cy = int(round(ox)), int(round(oy))
            cv2.line(surface, (cx - arm, cy), (cx + arm, cy), CROSSHAIR_COLOR, 1)
            cv2.line(surface, (cx, cy - arm), (cx, cy + arm), CROSSHAIR_COLOR, 1)
            cv2.circle(surface, (cx, cy), max(2, arm // 3), CROSSHAIR_COLOR, 1)
        return surface
