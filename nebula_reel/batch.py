"""Sequential analysis and export of a batch of images."""
from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from . import live_photo
from .capture import Artifact, CapturePipeline, ContainerProfile
from .config import IMAGE_EXTS, DetectorConfig, VideoConfig, ZoomOrigin
from .detect import ImageInput, detect_stars, load_rgb
from .errors import CaptureStateError, NebulaReelError
from .particles import (
    HotspotAnalysis,
    Particle,
    find_analysis,
    load_analysis,
    resolve_particles,
)
from .stage import Stage


class ItemStatus(str, Enum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class BatchItem:
    source: ImageInput
    name: str
    particles: List[Particle] = field(default_factory=list)
    zoom_origin: ZoomOrigin = field(default_factory=ZoomOrigin)
    status: ItemStatus = ItemStatus.IDLE
    detection_mode: Optional[str] = None
    detected: int = 0
    analysis: Optional[HotspotAnalysis] = None
    error: Optional[str] = None

    @property
    def display_name(self) -> str:
        """The analysis name unless the service could not name the object."""
        name = self.analysis.name if self.analysis else None
        if name and "unknown" not in name.lower():
            return name
        return self.name

    def fail(self, reason: str) -> None:
        self.status = ItemStatus.ERROR
        self.error = reason
        logging.error("%s: %s", self.name, reason)

    @classmethod
    def from_path(cls, path: str) -> "BatchItem":
        side_car = find_analysis(path)
        return cls(
            source=path,
            name=os.path.splitext(os.path.basename(path))[0],
            analysis=load_analysis(side_car) if side_car else None,
        )


@dataclass
class BatchState:
    """Items plus the export cursor.

    ``export_cursor`` is ``None`` when no export runs, otherwise the index of
    the item being captured.
    """

    items: List[BatchItem] = field(default_factory=list)
    active_index: int = 0
    export_cursor: Optional[int] = None

    @property
    def exporting(self) -> bool:
        return self.export_cursor is not None

    @property
    def active(self) -> Optional[BatchItem]:
        if 0 <= self.active_index < len(self.items):
            return self.items[self.active_index]
        return None


def scan_folder(folder: str) -> List[BatchItem]:
    """Batch items for every supported image in *folder*, sorted by name."""
    names = [f for f in os.listdir(folder) if os.path.splitext(f)[1].lower() in IMAGE_EXTS]
    names.sort(key=str.lower)
    return [BatchItem.from_path(os.path.join(folder, f)) for f in names]


Sink = Callable[[BatchItem, Artifact], None]


class BatchSequencer:
    """Runs analysis and one capture per item, strictly one after another.

    A failing item is marked ``error`` and the batch carries on with the next
    one. *sink* receives every artifact as soon as it was flushed.
    """

    def __init__(
        self,
        stage: Stage,
        pipeline: CapturePipeline,
        sink: Optional[Sink] = None,
        detector: Optional[DetectorConfig] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        self.stage = stage
        self.pipeline = pipeline
        self.sink = sink
        self.detector = detector if detector is not None else stage.settings.detector
        self.rng = rng if rng is not None else np.random.default_rng()

    async def _analyze_item(self, item: BatchItem, analysis: Optional[HotspotAnalysis] = None) -> None:
        item.status = ItemStatus.ANALYZING
        item.error = None
        if analysis is not None:
            item.analysis = analysis
        loop = asyncio.get_running_loop()
        rgb = await loop.run_in_executor(None, load_rgb, item.source)
        if rgb is None:
            item.fail("image could not be decoded")
            return
        start = time.perf_counter()
        detected = await loop.run_in_executor(None, detect_stars, rgb, self.detector, self.rng)
        settings = self.stage.settings
        source = resolve_particles(
            detected,
            item.analysis,
            density=settings.particles.density,
            device=settings.device,
            rng=self.rng,
        )
        item.detected = len(detected)
        item.particles = source.particles
        item.detection_mode = source.mode
        item.status = ItemStatus.SUCCESS
        logging.info(
            "%s: %s mode, %d particles (%d detected) in %.2fs",
            item.name,
            source.mode,
            len(source),
            len(detected),
            time.perf_counter() - start,
        )

    async def analyze(
        self, state: BatchState, analyses: Optional[Sequence[Optional[HotspotAnalysis]]] = None
    ) -> BatchState:
        """Detect stars and resolve particles for every item.

        *analyses*, when given, is aligned with ``state.items`` and overrides
        the side-car analyses.
        """
        for i, item in enumerate(state.items):
            hint = analyses[i] if analyses is not None and i < len(analyses) else None
            await self._analyze_item(item, hint)
        return state

    async def _export_item(self, item: BatchItem, video: VideoConfig) -> Artifact:
        ready = await self.stage.load(item.source, item.particles, item.zoom_origin)
        if not video.is_live:
            return await self.pipeline.record(self.stage, ready, video)

        still = self.stage.render_frame(0.0).copy()
        inner = replace(video, format=live_photo.VIDEO_CONTAINER[video.format])
        clip = await self.pipeline.record(self.stage, ready, inner)
        ext, mime = live_photo.PACKAGE_INFO[video.format]
        data = live_photo.package(video.format, still, clip.data, item.display_name)
        profile = ContainerProfile(video.format, ext, mime, clip.profile.codec)
        return replace(clip, data=data, profile=profile, requested=video.format)

    async def export_all(
        self, state: BatchState, video: Optional[VideoConfig] = None
    ) -> List[Tuple[BatchItem, Artifact]]:
        """Capture every item in order and return the emitted artifacts."""
        if state.exporting:
            raise CaptureStateError("an export is already running")
        video = (video or self.stage.settings.video).clamped()
        emitted: List[Tuple[BatchItem, Artifact]] = []
        state.export_cursor = 0
        try:
            for i, item in enumerate(state.items):
                state.export_cursor = i
                state.active_index = i
                if item.status is ItemStatus.IDLE:
                    await self._analyze_item(item)
                if item.status is ItemStatus.ERROR:
                    logging.warning("skipping %s: %s", item.name, item.error)
                    continue
                try:
                    artifact = await self._export_item(item, video)
                except NebulaReelError as exc:
                    item.fail(str(exc))
                    continue
                if self.sink is not None:
                    self.sink(item, artifact)
                emitted.append((item, artifact))
                logging.info(
                    "exported %d/%d %s", i + 1, len(state.items), artifact.suggested_filename(item.display_name)
                )
        finally:
            state.export_cursor = None
        return emitted
