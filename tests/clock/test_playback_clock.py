import pytest

from nebula_reel.clock import ClockState, PlaybackClock


def test_preview_loops_back_to_zero():
    clock = PlaybackClock(5.0)
    for _ in range(10):
        clock.tick(0.5)
    assert clock.progress == 0.0
    assert clock.loops == 1


def test_capture_clamps_at_one():
    clock = PlaybackClock(5.0, capture=True)
    for _ in range(10):
        clock.tick(0.5)
    assert clock.progress == 1.0
    assert clock.finished
    for _ in range(4):
        assert clock.tick(0.5) == 1.0


def test_capture_not_finished_before_duration():
    clock = PlaybackClock(5.0, capture=True)
    for _ in range(9):
        clock.tick(0.5)
    assert clock.progress == pytest.approx(0.9)
    assert not clock.finished


def test_seek_pauses_and_clamps():
    clock = PlaybackClock(2.0)
    clock.seek(1.4)
    assert clock.progress == 1.0
    assert clock.state is ClockState.PAUSED
    assert clock.tick(0.5) == 1.0
    clock.play()
    assert clock.tick(0.5) == pytest.approx(0.25)


def test_restart_rearms_and_switches_mode():
    clock = PlaybackClock(1.0)
    clock.tick(0.4)
    clock.pause()
    clock.restart(capture=True)
    assert clock.progress == 0.0
    assert clock.playing
    assert clock.capture
    assert clock.elapsed == 0.0


def test_duration_must_be_positive():
    with pytest.raises(ValueError):
        PlaybackClock(0)
    clock = PlaybackClock(1.0)
    with pytest.raises(ValueError):
        clock.duration = -1.0
