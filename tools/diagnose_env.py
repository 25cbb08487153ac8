"""Report the ffmpeg binary in use and which containers it can encode."""
from __future__ import annotations

import shutil
import subprocess

from nebula_reel.bin_config import available_encoders, resolve_ffmpeg
from nebula_reel.capture import CANDIDATES, negotiate_profile


def ffmpeg_version(path: str) -> str:
    try:
        return subprocess.check_output([path, "-version"], stderr=subprocess.STDOUT, text=True).splitlines()[0]
    except (OSError, subprocess.SubprocessError) as e:
        return f"error invoking: {e}"


def main() -> None:
    path = resolve_ffmpeg()
    if not path:
        print("ffmpeg: NOT FOUND")
        return
    print(f"ffmpeg: {path} -> {ffmpeg_version(path)}")
    if shutil.which("ffmpeg") not in (None, path):
        print(f"note: PATH ffmpeg is {shutil.which('ffmpeg')}")
    encoders = available_encoders(path)
    for container in CANDIDATES:
        nego = negotiate_profile(container, lambda p: p.codec in encoders)
        tag = " (fallback)" if nego.fell_back else ""
        print(f"{container}: {nego.profile.codec} -> .{nego.profile.extension}{tag}")


if __name__ == "__main__":
    main()
