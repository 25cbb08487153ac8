"""Frame capture: container negotiation, encoders and the recording state machine.

A capture runs ``IDLE -> ARMED -> RECORDING -> FLUSHING -> IDLE``.  It is
armed only after the stage signalled that the input image is decoded and
painted, records one frame per clock tick until the stop timer
(``duration + safety margin``) fires or it is cancelled, and always leaves
through ``FLUSHING``, where the encoded chunks become one :class:`Artifact`.
"""
from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .bin_config import available_encoders
from .config import VideoConfig
from .errors import CaptureStateError, EncoderError
from .utils import slugify, unique_path

SETTLE_DELAY = 0.2
SAFETY_MARGIN_MS = 250


@dataclass(frozen=True)
class ContainerProfile:
    name: str
    extension: str
    mime: str
    codec: str
    ffmpeg_params: Tuple[str, ...] = ()


_MP4_H264 = ContainerProfile("mp4", "mp4", "video/mp4", "libx264", ("-movflags", "+faststart"))
_MP4_MPEG4 = ContainerProfile("mp4-mpeg4", "mp4", "video/mp4", "mpeg4", ("-pix_fmt", "yuv420p"))
_WEBM_VP9 = ContainerProfile("webm", "webm", "video/webm", "libvpx-vp9", ("-pix_fmt", "yuv420p"))
_WEBM_VP8 = ContainerProfile("webm-vp8", "webm", "video/webm", "libvpx", ("-pix_fmt", "yuv420p"))
_MKV_H264 = ContainerProfile("mkv", "mkv", "video/x-matroska", "libx264")
_MOV_H264 = ContainerProfile("mov", "mov", "video/quicktime", "libx264", ("-movflags", "+faststart"))

CANDIDATES: Dict[str, Tuple[ContainerProfile, ...]] = {
    "mp4": (_MP4_H264, _MP4_MPEG4),
    "webm": (_WEBM_VP9, _WEBM_VP8),
    "mkv": (_MKV_H264,),
    "mov": (_MOV_H264,),
}
# tried after the requested container's own candidates
FALLBACK_CHAIN: Tuple[ContainerProfile, ...] = (_MP4_H264, _WEBM_VP9, _WEBM_VP8, _MP4_MPEG4)
# mpeg4 is built into every ffmpeg
DEFAULT_PROFILE = _MP4_MPEG4


@dataclass(frozen=True)
class Negotiation:
    """Which profile a container request resolved to."""

    requested: str
    profile: ContainerProfile
    fell_back: bool


def ffmpeg_supports(profile: ContainerProfile) -> bool:
    return profile.codec in available_encoders()


def candidate_profiles(requested: str) -> List[ContainerProfile]:
    seen: List[ContainerProfile] = []
    for prof in CANDIDATES.get(requested.lower(), ()) + FALLBACK_CHAIN:
        if prof not in seen:
            seen.append(prof)
    return seen


def negotiate_profile(
    requested: str,
    supports: Callable[[ContainerProfile], bool] = ffmpeg_supports,
) -> Negotiation:
    """Pick the first supported profile for *requested*, in preference order."""
    own = CANDIDATES.get(requested.lower(), ())
    for prof in candidate_profiles(requested):
        if supports(prof):
            fell_back = prof not in own
            if fell_back:
                logging.warning("container %r unsupported, falling back to %s", requested, prof.name)
            return Negotiation(requested, prof, fell_back)
    logging.warning("no probed encoder for %r, using default %s", requested, DEFAULT_PROFILE.name)
    return Negotiation(requested, DEFAULT_PROFILE, DEFAULT_PROFILE not in own)


@dataclass
class Artifact:
    """One encoded video; ``mime``/``extension`` describe what was produced."""

    data: bytes
    profile: ContainerProfile
    requested: str
    frames: int
    fps: int
    partial: bool = False

    @property
    def mime(self) -> str:
        return self.profile.mime

    @property
    def extension(self) -> str:
        return self.profile.extension

    @property
    def duration(self) -> float:
        return self.frames / float(self.fps) if self.fps else 0.0

    def suggested_filename(self, display_name: str) -> str:
        return f"{slugify(display_name)}-animation.{self.extension}"

    def save(self, folder: str, display_name: str) -> str:
        os.makedirs(folder, exist_ok=True)
        path = unique_path(os.path.join(folder, self.suggested_filename(display_name)))
        with open(path, "wb") as fh:
            fh.write(self.data)
        return path


class FrameEncoder:
    """Interface of the frame consumers used by :class:`CapturePipeline`."""

    def write_frame(self, frame: np.ndarray) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def close(self) -> List[bytes]:  # pragma: no cover - interface
        """Finish encoding and return the encoded chunks."""
        raise NotImplementedError

    def abort(self) -> None:  # pragma: no cover - interface
        """Tear down after a failure, discarding output."""
        raise NotImplementedError


EncoderFactory = Callable[
    [ContainerProfile, Tuple[int, int], int, Optional[int], Sequence[str]], FrameEncoder
]


class MoviepyEncoder(FrameEncoder):
    """ffmpeg encoder fed frame by frame through moviepy's writer."""

    CHUNK_SIZE = 1 << 20

    def __init__(
        self,
        profile: ContainerProfile,
        size: Tuple[int, int],
        fps: int,
        bitrate: Optional[int] = None,
        ffmpeg_params: Sequence[str] = (),
    ):
        from moviepy.video.io.ffmpeg_writer import FFMPEG_VideoWriter

        fd, self.path = tempfile.mkstemp(prefix="nebula_", suffix="." + profile.extension)
        os.close(fd)
        try:
            self._writer = FFMPEG_VideoWriter(
                self.path,
                size,
                fps,
                codec=profile.codec,
                bitrate=f"{max(1, bitrate // 1000)}k" if bitrate else None,
                ffmpeg_params=list(ffmpeg_params) or None,
            )
        except Exception:
            os.remove(self.path)
            raise

    def write_frame(self, frame: np.ndarray) -> None:
        self._writer.write_frame(np.ascontiguousarray(frame))

    def close(self) -> List[bytes]:
        self._writer.close()
        chunks: List[bytes] = []
        try:
            with open(self.path, "rb") as fh:
                while True:
                    chunk = fh.read(self.CHUNK_SIZE)
                    if not chunk:
                        break
                    chunks.append(chunk)
        finally:
            os.remove(self.path)
        return chunks

    def abort(self) -> None:
        try:
            self._writer.close()
        except OSError as exc:
            logging.debug("encoder close after failure: %s", exc)
        if os.path.exists(self.path):
            os.remove(self.path)


def moviepy_encoder_factory(profile, size, fps, bitrate, ffmpeg_params) -> FrameEncoder:
    return MoviepyEncoder(profile, size, fps, bitrate, ffmpeg_params)


class CaptureState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    RECORDING = "recording"
    FLUSHING = "flushing"


@dataclass
class CaptureSession:
    target_duration_ms: int
    fps: int
    bitrate: int
    container: str
    chunks: List[bytes] = field(default_factory=list)
    frames: int = 0


class CapturePipeline:
    """Records a stage's frames into one artifact per :meth:`record` call.

    ``realtime=False`` (the default) runs the stop timer on the capture clock,
    which makes batch exports frame exact and independent of machine speed;
    ``realtime=True`` paces frames with the event loop and stops on a wall
    clock timer.
    """

    def __init__(
        self,
        encoder_factory: EncoderFactory = moviepy_encoder_factory,
        supports: Callable[[ContainerProfile], bool] = ffmpeg_supports,
        settle_delay: float = SETTLE_DELAY,
        safety_margin_ms: int = SAFETY_MARGIN_MS,
        realtime: bool = False,
    ):
        self.encoder_factory = encoder_factory
        self.supports = supports
        self.settle_delay = settle_delay
        self.safety_margin_ms = safety_margin_ms
        self.realtime = realtime
        self.session: Optional[CaptureSession] = None
        self.history: List[CaptureState] = []
        self._state = CaptureState.IDLE
        self._stop: Optional[asyncio.Event] = None
        self._cancelled = False

    @property
    def state(self) -> CaptureState:
        return self._state

    def _set_state(self, state: CaptureState) -> None:
        self._state = state
        self.history.append(state)
        logging.debug("capture state -> %s", state.value)

    def cancel(self) -> None:
        """Stop the running capture early; the partial artifact is still emitted."""
        self._cancelled = True
        if self._stop is not None:
            self._stop.set()

    def _open_encoder(
        self, negotiation: Negotiation, size: Tuple[int, int], fps: int, bitrate: int, first: np.ndarray
    ) -> Tuple[FrameEncoder, ContainerProfile]:
        """Build an encoder, retrying with reduced options, then the default profile."""
        prof = negotiation.profile
        attempts = [(prof, bitrate, prof.ffmpeg_params), (prof, None, ())]
        if prof != DEFAULT_PROFILE:
            attempts.append((DEFAULT_PROFILE, None, ()))
        errors = []
        for profile, rate, params in attempts:
            encoder = None
            try:
                encoder = self.encoder_factory(profile, size, fps, rate, params)
                encoder.write_frame(first)
            except Exception as exc:
                errors.append(f"{profile.name}: {exc}")
                logging.warning("encoder %s (bitrate=%s) failed: %s", profile.name, rate, exc)
                if encoder is not None:
                    encoder.abort()
                continue
            return encoder, profile
        raise EncoderError("could not start any encoder: " + "; ".join(errors))

    async def record(self, stage, ready, video: VideoConfig) -> Artifact:
        """Capture one animation of *stage* once *ready* has fired.

        *stage* must provide ``size``, ``clock`` and ``render_frame(progress)``;
        *ready* is awaited with ``await ready.wait()``.
        """
        if self._stop is not None:
            raise CaptureStateError(f"capture already running ({self._state.value})")
        self._stop = asyncio.Event()
        self._cancelled = False
        encoder: Optional[FrameEncoder] = None
        timer = None
        try:
            await ready.wait()
            self._set_state(CaptureState.ARMED)
            if self.settle_delay > 0:
                await asyncio.sleep(self.settle_delay)

            fps = int(video.fps)
            duration = stage.clock.duration
            self.session = CaptureSession(
                target_duration_ms=int(duration * 1000) + self.safety_margin_ms,
                fps=fps,
                bitrate=video.bits_per_second,
                container=video.format,
            )
            negotiation = negotiate_profile(video.format, self.supports)

            stage.clock.restart(capture=True)
            first = stage.render_frame(stage.clock.progress)
            encoder, profile = self._open_encoder(
                negotiation, stage.size, fps, self.session.bitrate, first
            )
            self.session.container = profile.name
            self.session.frames = 1
            self._set_state(CaptureState.RECORDING)
            logging.info(
                "recording %s at %dfps, %.0fms (%s)",
                "x".join(map(str, stage.size)),
                fps,
                self.session.target_duration_ms,
                profile.name,
            )

            dt = 1.0 / fps
            stop_at = self.session.target_duration_ms / 1000.0
            if self.realtime:
                timer = asyncio.get_running_loop().call_later(stop_at, self._stop.set)
            while not self._stop.is_set():
                if not self.realtime and self.session.frames * dt > stop_at + 1e-9:
                    break
                stage.clock.tick(dt)
                frame = stage.render_frame(stage.clock.progress)
                try:
                    encoder.write_frame(frame)
                except OSError as exc:
                    raise EncoderError(f"encoder failed at frame {self.session.frames}: {exc}") from exc
                self.session.frames += 1
                await asyncio.sleep(dt if self.realtime else 0)

            self._set_state(CaptureState.FLUSHING)
            try:
                chunks = encoder.close()
            except OSError as exc:
                raise EncoderError(f"encoder failed to finish: {exc}") from exc
            encoder = None
            self.session.chunks.extend(chunks)
            artifact = Artifact(
                data=b"".join(self.session.chunks),
                profile=profile,
                requested=video.format,
                frames=self.session.frames,
                fps=fps,
                partial=self._cancelled,
            )
            logging.info(
                "captured %d frames, %d bytes (%s%s)",
                artifact.frames,
                len(artifact.data),
                artifact.mime,
                ", partial" if artifact.partial else "",
            )
            return artifact
        finally:
            if timer is not None:
                timer.cancel()
            if encoder is not None:
                if self._state is not CaptureState.FLUSHING:
                    self._set_state(CaptureState.FLUSHING)
                encoder.abort()
            if self.session is not None:
                self.session.chunks.clear()
            self.session = None
            self._stop = None
            if self._state is not CaptureState.IDLE:
                self._set_state(CaptureState.IDLE)
