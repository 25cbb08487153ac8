"""Command line interface for nebula_reel."""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import random
import sys
from typing import Callable, List, Tuple

import numpy as np
import yaml
from PIL import Image

from .batch import BatchItem, BatchSequencer, BatchState, ItemStatus, scan_folder
from .bin_config import resolve_ffmpeg
from .capture import Artifact, CapturePipeline
from .config import (
    BASE_SIZE_RANGE,
    BITRATE_RANGE,
    BRIGHTNESS_RANGE,
    DENSITY_RANGE,
    FEATHERING_RANGE,
    RESOLUTIONS,
    ROTATION_SPEED_RANGE,
    SCALE_RANGE,
    VIDEO_FORMATS,
    AnimationConfig,
    DetectorConfig,
    ParticleConfig,
    RenderSettings,
    RotationDirection,
    VideoConfig,
    ZoomOrigin,
)
from .stage import Stage
from .utils import hex_to_rgb, slugify
from .validate import validate_args


def _clamped(kind: Callable, lo: float, hi: float) -> Callable[[str], float]:
    """argparse ``type=`` that pulls slider values back into ``[lo, hi]``."""

    def _parse(x: str):
        return kind(max(lo, min(hi, kind(x))))

    _parse.__name__ = kind.__name__
    return _parse


def _color_type(x: str) -> str:
    try:
        hex_to_rgb(x)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid colour {x!r}") from e
    return x if x.startswith("#") else "#" + x


def _positive_int(x: str) -> int:
    v = int(x)
    if v <= 0:
        raise argparse.ArgumentTypeError("must be > 0")
    return v


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Render parallax star-field animations")
    parser.add_argument("folder", help="Input folder with images (and optional .analysis.yaml side-cars)")
    parser.add_argument("--preset", action="append", default=[], help="Path to YAML preset overriding defaults")
    parser.add_argument("--ffmpeg", help="Path to ffmpeg binary")
    parser.add_argument("--output", help="Output directory (default: <folder>/renders)")
    parser.add_argument("--validate", action="store_true", help="Validate arguments and exit")
    parser.add_argument("--deterministic", action="store_true", help="Force deterministic build")
    parser.add_argument("--seed", type=int, default=0, help="Random seed for --deterministic")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    parser.add_argument("--analyze-only", action="store_true", help="Run detection and print a summary")
    parser.add_argument(
        "--preview-frame",
        type=_clamped(float, 0.0, 1.0),
        default=None,
        metavar="PROGRESS",
        help="Write one PNG still per image at PROGRESS (0..1) instead of a video",
    )
    parser.add_argument(
        "--realtime",
        action="store_true",
        help="Pace the capture on the wall clock instead of the capture clock",
    )

    anim = parser.add_argument_group("animation")
    anim.add_argument("--initial-scale", type=_clamped(float, *SCALE_RANGE), default=1.0)
    anim.add_argument("--final-scale", type=_clamped(float, *SCALE_RANGE), default=1.5)
    anim.add_argument(
        "--rotation-direction",
        choices=[d.value for d in RotationDirection],
        default=RotationDirection.CW.value,
    )
    anim.add_argument("--rotation-speed", type=_clamped(float, *ROTATION_SPEED_RANGE), default=0.5)
    anim.add_argument("--duration", type=float, default=5.0, help="Animation length in seconds (1..15)")
    anim.add_argument("--zoom-x", type=_clamped(float, 0.0, 1.0), default=0.5, help="Zoom origin x (0..1)")
    anim.add_argument("--zoom-y", type=_clamped(float, 0.0, 1.0), default=0.5, help="Zoom origin y (0..1)")

    part = parser.add_argument_group("particles")
    part.add_argument("--density", type=_clamped(int, *DENSITY_RANGE), default=150)
    part.add_argument("--base-size", type=_clamped(float, *BASE_SIZE_RANGE), default=1.4)
    part.add_argument("--brightness", type=_clamped(float, *BRIGHTNESS_RANGE), default=2.0)
    part.add_argument("--color", type=_color_type, default="#ffffff")
    part.add_argument("--feathering", type=_clamped(float, *FEATHERING_RANGE), default=-0.4)
    part.add_argument("--spike-gain", type=float, default=None, help="Diffraction spike strength")
    part.add_argument("--spike-threshold", type=float, default=None, help="Minimum particle scale for spikes")
    part.add_argument("--spike-angle", type=float, default=None, help="Spike angle in degrees")
    part.add_argument("--device", choices=["desktop", "mobile"], default="desktop")

    vid = parser.add_argument_group("video")
    vid.add_argument("--resolution", choices=list(RESOLUTIONS), default="1080p")
    vid.add_argument("--bitrate", type=_clamped(float, *BITRATE_RANGE), default=5.0, help="Mbps")
    vid.add_argument("--fps", type=int, default=30)
    vid.add_argument("--format", choices=list(VIDEO_FORMATS), default="mp4")

    det = parser.add_argument_group("detector")
    det.add_argument("--analysis-width", type=_positive_int, default=DetectorConfig.analysis_width)
    det.add_argument("--k-sigma", type=float, default=DetectorConfig.k_sigma)
    det.add_argument("--block-size", type=_positive_int, default=DetectorConfig.block_size)
    det.add_argument("--ring-radius", type=_positive_int, default=DetectorConfig.ring_radius)

    prelim, _ = parser.parse_known_args(argv)
    for path in prelim.preset:
        with open(path, "r", encoding="utf8") as fh:
            data = yaml.safe_load(fh) or {}
        parser.set_defaults(**{k.replace("-", "_"): v for k, v in data.items()})

    args = parser.parse_args(argv)
    if args.color and not str(args.color).startswith("#"):
        args.color = "#" + str(args.color)
    return args


def build_settings(args: argparse.Namespace) -> RenderSettings:
    """Assemble clamped render settings from parsed arguments."""
    settings = RenderSettings(
        animation=AnimationConfig(
            initial_scale=args.initial_scale,
            final_scale=args.final_scale,
            rotation_direction=RotationDirection(args.rotation_direction),
            rotation_speed=args.rotation_speed,
            duration=args.duration,
        ),
        particles=ParticleConfig(
            density=args.density,
            base_size=args.base_size,
            brightness=args.brightness,
            color=args.color,
            feathering=args.feathering,
            spike_gain=args.spike_gain,
            spike_threshold=args.spike_threshold,
            spike_angle=args.spike_angle,
        ),
        video=VideoConfig(
            resolution=args.resolution,
            bitrate=args.bitrate,
            fps=args.fps,
            format=args.format,
        ),
        detector=DetectorConfig(
            analysis_width=args.analysis_width,
            k_sigma=args.k_sigma,
            block_size=args.block_size,
            ring_radius=args.ring_radius,
        ),
        device=args.device,
    )
    return settings.clamped()


def _saving_sink(out_dir: str, written: List[str]) -> Callable[[BatchItem, Artifact], None]:
    def _sink(item: BatchItem, artifact: Artifact) -> None:
        path = artifact.save(out_dir, item.display_name)
        written.append(path)
        print(f"✅ {item.name} -> {path}")

    return _sink


async def _run(args: argparse.Namespace, settings: RenderSettings, rng: np.random.Generator) -> Tuple[BatchState, List[str]]:
    out_dir = args.output or os.path.join(args.folder, "renders")
    state = BatchState(items=scan_folder(args.folder))
    if not state.items:
        raise FileNotFoundError(f"no images in {args.folder}")
    origin = ZoomOrigin(args.zoom_x, args.zoom_y).clamped()
    for item in state.items:
        item.zoom_origin = origin

    written: List[str] = []
    stage = Stage(settings)
    pipeline = CapturePipeline(realtime=args.realtime)
    sequencer = BatchSequencer(stage, pipeline, _saving_sink(out_dir, written), rng=rng)
    await sequencer.analyze(state)

    if args.analyze_only:
        for item in state.items:
            print(f"{item.name}\t{item.status.value}\t{item.detection_mode or '-'}\t{len(item.particles)}")
        return state, written

    if args.preview_frame is not None:
        os.makedirs(out_dir, exist_ok=True)
        stage.interactive = True
        for item in state.items:
            if item.status is not ItemStatus.SUCCESS:
                continue
            await stage.load(item.source, item.particles, item.zoom_origin)
            frame = stage.render_frame(args.preview_frame)
            path = os.path.join(out_dir, f"{slugify(item.display_name)}-preview.png")
            Image.fromarray(frame).save(path)
            written.append(path)
            print(f"✅ {item.name} -> {path}")
        return state, written

    await sequencer.export_all(state, settings.video)
    hits, misses = stage.renderer.sprites.stats()
    total = hits + misses
    rate = hits / total if total else 0.0
    logging.info("sprite_cache hit-rate: %.2f%% (%d/%d)", rate * 100, hits, total)
    return state, written


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(message)s")
    rng = np.random.default_rng(args.seed if args.deterministic else None)
    if args.deterministic:
        random.seed(args.seed)
        np.random.seed(args.seed)
        logging.info("deterministic build seed=%s", args.seed)
    errs = validate_args(args)
    if errs:
        for e in errs:
            print(f"validation error: {e}", file=sys.stderr)
        raise SystemExit(1)
    if args.validate:
        return

    if not args.analyze_only and args.preview_frame is None:
        if resolve_ffmpeg(args.ffmpeg) is None:
            logging.warning("ffmpeg not found; encoding will fail unless moviepy finds one")
    settings = build_settings(args)
    state, _ = asyncio.run(_run(args, settings, rng))
    failed = [item for item in state.items if item.status is ItemStatus.ERROR]
    if failed:
        print(f"⚠️ {len(failed)} of {len(state.items)} images failed: " + ", ".join(i.name for i in failed), file=sys.stderr)
        raise SystemExit(2)


if __name__ == "__main__":
    main()
