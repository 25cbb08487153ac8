"""Helpers to resolve the ffmpeg binary and probe its encoders.

Resolution honours an explicit CLI argument, the ``FFMPEG_BINARY``
environment variable (also read by moviepy), the binary bundled with
``imageio-ffmpeg`` and finally a search on ``PATH``.
"""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
from functools import lru_cache
from typing import FrozenSet, Optional


def _validate_binary(path: str | None) -> Optional[str]:
    """Return *path* if it points to an existing executable."""
    if not path:
        return None
    if os.path.isfile(path) or shutil.which(path):
        return path
    return None


def _bundled_ffmpeg() -> Optional[str]:
    try:
        import imageio_ffmpeg
    except ImportError:
        return None
    try:
        return imageio_ffmpeg.get_ffmpeg_exe()
    except RuntimeError:
        return None


def resolve_ffmpeg(cli_path: str | None = None) -> Optional[str]:
    """Resolve path to the ``ffmpeg`` executable.

    Resolution order:
    1. explicit ``cli_path`` argument (e.g. ``--ffmpeg``)
    2. ``FFMPEG_BINARY`` environment variable
    3. the binary shipped with ``imageio-ffmpeg``
    4. ``ffmpeg`` discovered on ``PATH``
    The returned path is validated and stored in ``os.environ`` so moviepy
    picks it up. Returns ``None`` if no candidate is found.
    """
    env = os.environ.get("FFMPEG_BINARY")
    candidates = [cli_path, None if env in (None, "", "ffmpeg-imageio", "auto-detect") else env]
    for cand in candidates:
        path = _validate_binary(cand)
        if path:
            os.environ["FFMPEG_BINARY"] = path
            return path
    for path in (_bundled_ffmpeg(), shutil.which("ffmpeg")):
        if _validate_binary(path):
            os.environ["FFMPEG_BINARY"] = path
            return path
    return None


@lru_cache(maxsize=8)
def available_encoders(binary: str | None = None) -> FrozenSet[str]:
    """Names of the video encoders compiled into ffmpeg.

    An empty set means ffmpeg could not be run at all.
    """
    binary = binary or resolve_ffmpeg()
    if not binary:
        logging.warning("ffmpeg not found; encoder probing disabled")
        return frozenset()
    try:
        proc = subprocess.run(
            [binary, "-hide_banner", "-encoders"],
            capture_output=True,
            text=True,
            timeout=20,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logging.warning("cannot query ffmpeg encoders: %s", exc)
        return frozenset()
    names = set()
    # the legend above the "------" separator uses the same flag layout
    _, sep, table = proc.stdout.partition("------")
    for line in (table if sep else proc.stdout).splitlines():
        parts = line.split()
        # " V....D libx264   libx264 H.264 ..."
        if len(parts) >= 2 and len(parts[0]) == 6 and parts[0][0] == "V":
            names.add(parts[1])
    return frozenset(names)
