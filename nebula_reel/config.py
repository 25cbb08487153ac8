"""Configuration objects for nebula_reel.

All values reaching the core originate from slider-like controls with fixed
bounds, so the ``clamped()`` helpers pull out-of-range values back into range
instead of rejecting them.  Hard errors (non-positive duration or fps) are
reported by :mod:`nebula_reel.validate`.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

from .utils import clamp

IMAGE_EXTS = {".jpg", ".jpeg", ".png", ".bmp", ".webp", ".tif", ".tiff"}
ANALYSIS_SUFFIXES = (".analysis.yaml", ".analysis.yml", ".analysis.json")

# Slider bounds
SCALE_RANGE = (0.1, 3.0)
ROTATION_SPEED_RANGE = (0.0, 5.0)
DURATION_RANGE = (1.0, 15.0)
DENSITY_RANGE = (0, 500)
BASE_SIZE_RANGE = (0.0, 2.0)
BRIGHTNESS_RANGE = (0.0, 3.0)
FEATHERING_RANGE = (-3.0, 3.0)
BITRATE_RANGE = (1.0, 50.0)
FPS_RANGE = (15, 120)

RESOLUTIONS = ("original", "1080p", "4k")
VIDEO_FORMATS = ("mp4", "webm", "mkv", "mov", "live-android", "live-ios")
LIVE_FORMATS = {"live-android", "live-ios"}
LIVE_DURATION = 5.0


class RotationDirection(str, Enum):
    CW = "cw"
    CCW = "ccw"

    @property
    def sign(self) -> int:
        return 1 if self is RotationDirection.CW else -1


@dataclass(frozen=True)
class AnimationConfig:
    initial_scale: float = 1.0
    final_scale: float = 1.5
    rotation_direction: RotationDirection = RotationDirection.CW
    rotation_speed: float = 0.5
    duration: float = 5.0

    def clamped(self) -> "AnimationConfig":
        return replace(
            self,
            initial_scale=clamp(self.initial_scale, *SCALE_RANGE),
            final_scale=clamp(self.final_scale, *SCALE_RANGE),
            rotation_direction=RotationDirection(self.rotation_direction),
            rotation_speed=clamp(self.rotation_speed, *ROTATION_SPEED_RANGE),
            duration=clamp(self.duration, *DURATION_RANGE),
        )


@dataclass(frozen=True)
class ParticleConfig:
    density: int = 150
    base_size: float = 1.4
    brightness: float = 2.0
    color: str = "#ffffff"
    feathering: float = -0.4
    spike_gain: Optional[float] = None
    spike_threshold: Optional[float] = None
    spike_angle: Optional[float] = None

    def clamped(self) -> "ParticleConfig":
        return replace(
            self,
            density=int(clamp(int(self.density), *DENSITY_RANGE)),
            base_size=clamp(self.base_size, *BASE_SIZE_RANGE),
            brightness=clamp(self.brightness, *BRIGHTNESS_RANGE),
            feathering=clamp(self.feathering, *FEATHERING_RANGE),
            spike_gain=None if self.spike_gain is None else max(0.0, self.spike_gain),
            spike_threshold=(
                None if self.spike_threshold is None else max(0.0, self.spike_threshold)
            ),
        )

    @property
    def spikes_enabled(self) -> bool:
        return bool(self.spike_gain) and self.spike_gain > 0


@dataclass(frozen=True)
class ZoomOrigin:
    x: float = 0.5
    y: float = 0.5

    def clamped(self) -> "ZoomOrigin":
        return ZoomOrigin(clamp(self.x, 0.0, 1.0), clamp(self.y, 0.0, 1.0))


@dataclass(frozen=True)
class VideoConfig:
    resolution: str = "1080p"
    bitrate: float = 5.0
    fps: int = 30
    format: str = "mp4"

    def clamped(self) -> "VideoConfig":
        resolution = self.resolution if self.resolution in RESOLUTIONS else "1080p"
        return replace(
            self,
            resolution=resolution,
            bitrate=clamp(self.bitrate, *BITRATE_RANGE),
            fps=int(clamp(int(self.fps), *FPS_RANGE)),
        )

    @property
    def is_live(self) -> bool:
        return self.format in LIVE_FORMATS

    @property
    def bits_per_second(self) -> int:
        return int(self.bitrate * 1_000_000)


@dataclass(frozen=True)
class DetectorConfig:
    """Tuning constants of the star detector.

    The defaults were tuned by eye on typical nebula photographs; there is no
    ground truth behind them, which is why they are configurable.
    """

    analysis_width: int = 1024
    block_size: int = 16
    block_stride: int = 4
    stats_stride: int = 100
    k_sigma: float = 3.0
    min_threshold: float = 1.0
    scan_step: int = 2
    margin: int = 2
    ring_radius: int = 3
    isolation_factor: float = 0.5
    scale_divisor: float = 50.0
    scale_min: float = 0.2
    scale_max: float = 2.0
    max_depth: float = 5.0


@dataclass
class RenderSettings:
    """Bundle of the per-batch settings shared by every item."""

    animation: AnimationConfig = field(default_factory=AnimationConfig)
    particles: ParticleConfig = field(default_factory=ParticleConfig)
    video: VideoConfig = field(default_factory=VideoConfig)
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    device: str = "desktop"

    def clamped(self) -> "RenderSettings":
        animation = self.animation.clamped()
        video = self.video.clamped()
        if video.is_live:
            animation = replace(animation, duration=LIVE_DURATION)
        return RenderSettings(
            animation=animation,
            particles=self.particles.clamped(),
            video=video,
            detector=self.detector,
            device=self.device if self.device in ("mobile", "desktop") else "desktop",
        )
