import asyncio
import os

import numpy as np
import pytest

from nebula_reel.bin_config import resolve_ffmpeg
from nebula_reel.capture import (
    DEFAULT_PROFILE,
    Artifact,
    CapturePipeline,
    CaptureState,
    MoviepyEncoder,
    negotiate_profile,
)
from nebula_reel.clock import PlaybackClock
from nebula_reel.config import VideoConfig
from nebula_reel.errors import CaptureStateError, EncoderError
from nebula_reel.stage import ReadySignal


class FakeStage:
    def __init__(self, duration=1.0, size=(32, 24), hook=None):
        self.clock = PlaybackClock(duration)
        self.size = size
        self.progress = []
        self.hook = hook

    def render_frame(self, progress):
        self.progress.append(progress)
        if self.hook is not None:
            self.hook(len(self.progress))
        return np.full((self.size[1], self.size[0], 3), int(progress * 255), dtype=np.uint8)


class FakeEncoder:
    def __init__(self, profile, bitrate, params):
        self.profile = profile
        self.bitrate = bitrate
        self.params = params
        self.frames = []
        self.closed = False
        self.aborted = False

    def write_frame(self, frame):
        self.frames.append(frame.copy())

    def close(self):
        self.closed = True
        return [self.profile.codec.encode(), bytes(len(self.frames))]

    def abort(self):
        self.aborted = True


class FakeFactory:
    def __init__(self, fail=None):
        self.fail = fail or (lambda profile, bitrate, params: False)
        self.calls = []
        self.encoders = []

    def __call__(self, profile, size, fps, bitrate, params):
        self.calls.append((profile.name, bitrate, tuple(params)))
        if self.fail(profile, bitrate, params):
            raise OSError(f"cannot open {profile.codec}")
        enc = FakeEncoder(profile, bitrate, params)
        self.encoders.append(enc)
        return enc


def only(*codecs):
    return lambda profile: profile.codec in codecs


def _ready():
    ready = ReadySignal()
    ready.fire()
    return ready


def _record(pipeline, stage, video, ready=None):
    async def main():
        return await pipeline.record(stage, ready or _ready(), video)

    return asyncio.run(main())


def test_negotiation_prefers_requested_container():
    nego = negotiate_profile("webm", only("libvpx-vp9", "libx264"))
    assert nego.profile.codec == "libvpx-vp9"
    assert not nego.fell_back


def test_negotiation_falls_back_in_order():
    nego = negotiate_profile("webm", only("libx264", "mpeg4"))
    assert nego.profile.extension == "mp4"
    assert nego.profile.codec == "libx264"
    assert nego.fell_back
    assert negotiate_profile("mkv", only()).profile == DEFAULT_PROFILE


def test_unsupported_container_names_artifact_by_actual_type():
    factory = FakeFactory()
    pipeline = CapturePipeline(factory, only("libx264"), settle_delay=0)
    art = _record(pipeline, FakeStage(), VideoConfig(format="webm", fps=15))
    assert art.requested == "webm"
    assert art.mime == "video/mp4"
    assert art.extension == "mp4"
    assert art.suggested_filename("M42 Orion") == "M42_Orion-animation.mp4"


def test_frame_count_covers_duration_plus_margin():
    factory = FakeFactory()
    stage = FakeStage(duration=1.0)
    pipeline = CapturePipeline(factory, only("libx264"), settle_delay=0, safety_margin_ms=250)
    art = _record(pipeline, stage, VideoConfig(fps=10))
    assert art.frames == 13
    assert len(factory.encoders[0].frames) == 13
    assert stage.progress[0] == 0.0
    assert stage.progress[-1] == 1.0
    assert max(stage.progress) <= 1.0
    assert art.duration == pytest.approx(1.3)
    assert not art.partial


def test_state_sequence():
    pipeline = CapturePipeline(FakeFactory(), only("libx264"), settle_delay=0)
    _record(pipeline, FakeStage(), VideoConfig(fps=15))
    assert pipeline.history == [
        CaptureState.ARMED,
        CaptureState.RECORDING,
        CaptureState.FLUSHING,
        CaptureState.IDLE,
    ]
    assert pipeline.state is CaptureState.IDLE
    assert pipeline.session is None


def test_waits_for_ready_signal():
    factory = FakeFactory()
    stage = FakeStage()
    pipeline = CapturePipeline(factory, only("libx264"), settle_delay=0)

    async def main():
        ready = ReadySignal()
        task = asyncio.create_task(pipeline.record(stage, ready, VideoConfig(fps=15)))
        for _ in range(5):
            await asyncio.sleep(0)
        assert pipeline.state is CaptureState.IDLE
        assert stage.progress == []
        ready.fire()
        return await task

    art = asyncio.run(main())
    assert art.frames > 0


def test_bitrate_is_dropped_on_retry():
    factory = FakeFactory(fail=lambda profile, bitrate, params: bitrate is not None)
    pipeline = CapturePipeline(factory, only("libx264"), settle_delay=0)
    art = _record(pipeline, FakeStage(), VideoConfig(fps=15, bitrate=8))
    assert factory.calls[0] == ("mp4", 8_000_000, ("-movflags", "+faststart"))
    assert factory.calls[1] == ("mp4", None, ())
    assert art.profile.name == "mp4"


def test_default_profile_is_last_resort():
    factory = FakeFactory(fail=lambda profile, bitrate, params: profile.codec != "mpeg4")
    pipeline = CapturePipeline(factory, only("libvpx-vp9"), settle_delay=0)
    art = _record(pipeline, FakeStage(), VideoConfig(format="webm", fps=15))
    assert len(factory.calls) == 3
    assert art.profile == DEFAULT_PROFILE
    assert art.extension == "mp4"


def test_encoder_failure_raises_and_resets():
    factory = FakeFactory(fail=lambda profile, bitrate, params: True)
    pipeline = CapturePipeline(factory, only("libx264"), settle_delay=0)
    with pytest.raises(EncoderError):
        _record(pipeline, FakeStage(), VideoConfig(fps=15))
    assert pipeline.state is CaptureState.IDLE


def test_cancel_emits_partial_artifact():
    pipeline = CapturePipeline(FakeFactory(), only("libx264"), settle_delay=0)

    def hook(n):
        if n == 4:
            pipeline.cancel()

    art = _record(pipeline, FakeStage(duration=2.0, hook=hook), VideoConfig(fps=30))
    assert art.partial
    assert art.frames == 4
    assert CaptureState.FLUSHING in pipeline.history
    assert pipeline.state is CaptureState.IDLE


def test_task_cancellation_aborts_encoder():
    factory = FakeFactory()
    pipeline = CapturePipeline(factory, only("libx264"), settle_delay=0)

    async def main():
        task = None

        def hook(n):
            if n == 3:
                task.cancel()

        stage = FakeStage(hook=hook)
        task = asyncio.create_task(pipeline.record(stage, _ready(), VideoConfig(fps=30)))
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(main())
    assert factory.encoders[0].aborted
    assert not factory.encoders[0].closed
    assert pipeline.history[-2:] == [CaptureState.FLUSHING, CaptureState.IDLE]
    assert pipeline.session is None


def test_second_capture_is_rejected_while_busy():
    pipeline = CapturePipeline(FakeFactory(), only("libx264"), settle_delay=0)

    async def main():
        ready = ReadySignal()
        stage = FakeStage()
        first = asyncio.create_task(pipeline.record(stage, ready, VideoConfig(fps=15)))
        await asyncio.sleep(0)
        ready.fire()
        await asyncio.sleep(0)
        with pytest.raises(CaptureStateError):
            await pipeline.record(stage, ready, VideoConfig(fps=15))
        return await first

    assert asyncio.run(main()).frames > 0


def test_artifact_save_avoids_collisions(tmp_path):
    art = Artifact(data=b"abc", profile=DEFAULT_PROFILE, requested="mp4", frames=3, fps=30)
    p1 = art.save(str(tmp_path), "Crab Nebula")
    p2 = art.save(str(tmp_path), "Crab Nebula")
    assert p1.endswith("Crab_Nebula-animation.mp4")
    assert p2.endswith("Crab_Nebula-animation_2.mp4")
    with open(p2, "rb") as fh:
        assert fh.read() == b"abc"


def test_moviepy_encoder_writes_real_video():
    pytest.importorskip("moviepy")
    if resolve_ffmpeg() is None:
        pytest.skip("ffmpeg not available")
    enc = MoviepyEncoder(DEFAULT_PROFILE, (64, 48), 10, bitrate=1_000_000)
    for i in range(10):
        enc.write_frame(np.full((48, 64, 3), i * 20, dtype=np.uint8))
    data = b"".join(enc.close())
    assert len(data) > 0
    assert not os.path.exists(enc.path)


def test_encoder_dying_mid_stream_becomes_encoder_error():
    factory = FakeFactory()
    pipeline = CapturePipeline(factory, only("libx264"), settle_delay=0)

    def hook(n):
        if n == 5:
            factory.encoders[0].write_frame = _broken_pipe

    with pytest.raises(EncoderError):
        _record(pipeline, FakeStage(hook=hook), VideoConfig(fps=15))
    assert factory.encoders[0].aborted
    assert not factory.encoders[0].closed
    assert pipeline.state is CaptureState.IDLE
    assert pipeline.session is None


def test_encoder_failing_on_close_becomes_encoder_error():
    factory = FakeFactory()
    pipeline = CapturePipeline(factory, only("libx264"), settle_delay=0)

    def hook(n):
        if n == 2:
            factory.encoders[0].close = _broken_pipe

    with pytest.raises(EncoderError):
        _record(pipeline, FakeStage(hook=hook), VideoConfig(fps=15))
    assert factory.encoders[0].aborted
    assert pipeline.state is CaptureState.IDLE


def _broken_pipe(*args):
    raise BrokenPipeError("ffmpeg died")
