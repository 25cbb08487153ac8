"""The render surface owner: image activation, ready handshake and preview."""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Callable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .clock import PlaybackClock
from .config import RenderSettings, ZoomOrigin
from .detect import ImageInput, load_rgb
from .errors import ImageDecodeError
from .particles import Particle
from .render import ParallaxRenderer, canvas_size


class ReadySignal:
    """One-shot "image decoded and painted" signal for a single activation.

    Waiting after the signal fired returns immediately, so a late waiter
    never misses the wake-up.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def fire(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> bool:
        return await self._event.wait()


class Stage:
    """Holds the active item's background, particles and the frame surface.

    :meth:`render_frame` is synchronous and takes an explicit progress, so the
    capture pipeline and the preview driver share the same draw path.
    """

    def __init__(
        self,
        settings: Optional[RenderSettings] = None,
        renderer: Optional[ParallaxRenderer] = None,
        interactive: bool = False,
    ):
        self.settings = (settings or RenderSettings()).clamped()
        self.renderer = renderer if renderer is not None else ParallaxRenderer()
        self.clock = PlaybackClock(self.settings.animation.duration)
        self.interactive = interactive
        self.surface: Optional[np.ndarray] = None
        self.background: Optional[np.ndarray] = None
        self.particles: List[Particle] = []
        self.zoom_origin = ZoomOrigin()
        self.ready = ReadySignal()
        self.frames_rendered = 0

    @property
    def size(self) -> Tuple[int, int]:
        if self.surface is None:
            raise RuntimeError("stage has no active image")
        h, w = self.surface.shape[:2]
        return w, h

    def _fit_background(self, rgb: np.ndarray) -> np.ndarray:
        h, w = rgb.shape[:2]
        cw, ch = canvas_size((w, h), self.settings.video.resolution)
        if (cw, ch) == (w, h):
            return rgb
        interp = cv2.INTER_AREA if cw < w else cv2.INTER_CUBIC
        return cv2.resize(rgb, (cw, ch), interpolation=interp)

    async def load(
        self,
        image: ImageInput,
        particles: Sequence[Particle] = (),
        zoom_origin: Optional[ZoomOrigin] = None,
    ) -> ReadySignal:
        """Activate *image*: decode off the loop, paint frame 0, fire ready.

        A fresh :class:`ReadySignal` is created per activation; callers may
        wait on the returned signal before or after it fired.
        """
        self.ready = ready = ReadySignal()
        loop = asyncio.get_running_loop()
        rgb = await loop.run_in_executor(None, load_rgb, image)
        if rgb is None:
            label = image if isinstance(image, (str, os.PathLike)) else type(image).__name__
            raise ImageDecodeError(f"cannot decode image {label}")
        self.background = self._fit_background(rgb)
        h, w = self.background.shape[:2]
        self.surface = np.zeros((h, w, 3), dtype=np.uint8)
        self.particles = list(particles)
        self.zoom_origin = (zoom_origin or ZoomOrigin()).clamped()
        self.clock.duration = self.settings.animation.duration
        self.clock.restart(capture=False)
        self.render_frame(0.0)
        logging.debug("stage ready %dx%d, %d particles", w, h, len(self.particles))
        ready.fire()
        return ready

    def render_frame(self, progress: float) -> np.ndarray:
        """Draw the frame for *progress* into the surface and return it."""
        if self.surface is None:
            raise RuntimeError("stage has no active image")
        s = self.settings
        frame = self.renderer.render(
            self.surface,
            progress,
            self.particles,
            s.animation,
            s.particles,
            self.zoom_origin,
            self.background,
            interactive=self.interactive and not self.clock.capture,
        )
        self.frames_rendered += 1
        return frame

    def step(self, dt: float) -> np.ndarray:
        """Advance the clock by *dt* and render; the preview driver's tick."""
        return self.render_frame(self.clock.tick(dt))

    async def preview(
        self,
        fps: int = 30,
        frames: Optional[int] = None,
        on_frame: Optional[Callable[[np.ndarray], None]] = None,
        realtime: bool = True,
    ) -> int:
        """Loop the animation in preview mode, handing frames to *on_frame*.

        Runs until *frames* frames were produced (forever when ``None``) and
        returns the count.
        """
        await self.ready.wait()
        self.clock.restart(capture=False)
        dt = 1.0 / max(1, int(fps))
        count = 0
        while frames is None or count < frames:
            frame = self.step(dt)
            if on_frame is not None:
                on_frame(frame)
            count += 1
            await asyncio.sleep(dt if realtime else 0)
        return count
