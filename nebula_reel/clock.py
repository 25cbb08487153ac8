"""Normalised playback clock driving the renderer's ``progress`` input."""
from __future__ import annotations

from enum import Enum


class ClockState(str, Enum):
    PLAYING = "playing"
    PAUSED = "paused"


class PlaybackClock:
    """Advance ``progress`` in ``[0, 1]`` by ``dt / duration`` per tick.

    In preview mode the clock loops back to 0; in capture mode it clamps at 1
    and reports :attr:`finished`.
    """

    def __init__(self, duration: float, capture: bool = False):
        self.duration = duration
        self.capture = capture
        self.progress = 0.0
        self.state = ClockState.PLAYING
        self.finished = False
        self.loops = 0

    @property
    def duration(self) -> float:
        return self._duration

    @duration.setter
    def duration(self, value: float) -> None:
        if not value > 0:
            raise ValueError(f"duration must be > 0, got {value!r}")
        self._duration = float(value)

    @property
    def playing(self) -> bool:
        return self.state is ClockState.PLAYING

    @property
    def elapsed(self) -> float:
        return self.progress * self._duration

    def tick(self, dt: float) -> float:
        """Advance by *dt* seconds when playing and return the new progress."""
        if not self.playing or dt <= 0:
            return self.progress
        progress = self.progress + dt / self._duration
        # tolerate float drift so N ticks of duration/N land exactly on 1
        if self.capture:
            if progress >= 1.0 - 1e-9:
                progress = 1.0
                self.finished = True
        else:
            while progress >= 1.0 - 1e-9:
                progress = max(0.0, progress - 1.0)
                self.loops += 1
            if progress < 1e-9:
                progress = 0.0
        self.progress = progress
        return progress

    def seek(self, progress: float) -> None:
        """Jump to *progress*; seeking always pauses."""
        self.progress = min(1.0, max(0.0, float(progress)))
        self.state = ClockState.PAUSED
        self.finished = self.capture and self.progress >= 1.0

    def pause(self) -> None:
        self.state = ClockState.PAUSED

    def play(self) -> None:
        self.state = ClockState.PLAYING

    def restart(self, capture: bool | None = None) -> None:
        """Back to 0 and playing, optionally switching preview/capture mode."""
        if capture is not None:
            self.capture = capture
        self.progress = 0.0
        self.finished = False
        self.loops = 0
        self.state = ClockState.PLAYING
