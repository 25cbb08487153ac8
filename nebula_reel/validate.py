"""Argument validation helpers for the nebula_reel CLI."""
from __future__ import annotations

import logging
import os
from argparse import Namespace
from typing import List

from .config import RESOLUTIONS, VIDEO_FORMATS


def validate_args(args: Namespace) -> List[str]:
    """Validate parsed CLI arguments.

    Slider values are clamped while parsing; what remains here are values that
    cannot be clamped into something meaningful. Returns a list of human
    readable error messages, empty when the arguments are usable.
    """
    errors: List[str] = []
    if not os.path.isdir(args.folder):
        errors.append(f"folder {args.folder!r} does not exist")
    if args.duration <= 0:
        errors.append(f"--duration {args.duration:.2f}s must be > 0")
    if args.fps <= 0:
        errors.append(f"--fps {args.fps} must be > 0")
    if args.resolution not in RESOLUTIONS:
        errors.append(f"--resolution {args.resolution!r} not in {', '.join(RESOLUTIONS)}")
    if args.format not in VIDEO_FORMATS:
        errors.append(f"--format {args.format!r} not in {', '.join(VIDEO_FORMATS)}")
    if args.initial_scale == args.final_scale and args.rotation_speed == 0:
        logging.warning("--initial-scale equals --final-scale with no rotation: the camera stays still")
    return errors
