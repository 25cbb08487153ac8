import numpy as np
import pytest

from nebula_reel.config import AnimationConfig, ParticleConfig, RotationDirection, ZoomOrigin
from nebula_reel.particles import Particle
from nebula_reel.render import (
    CROSSHAIR_COLOR,
    ParallaxRenderer,
    canvas_size,
    frame_transform,
    particle_screen_position,
    resolution_scale,
)

SIZE = (800, 600)


def _apply(m, x, y):
    return (m[0, 0] * x + m[0, 1] * y + m[0, 2], m[1, 0] * x + m[1, 1] * y + m[1, 2])


@pytest.mark.parametrize("final_scale", [1.0, 1.5, 2.5])
@pytest.mark.parametrize("progress", [0.0, 0.3, 1.0])
def test_depth_zero_follows_background(final_scale, progress):
    anim = AnimationConfig(initial_scale=1.0, final_scale=final_scale, rotation_speed=1.0)
    origin = ZoomOrigin(0.3, 0.6)
    t = frame_transform(progress, anim, origin, SIZE)
    p = Particle(x=0.8, y=0.1, z=0.0, scale=1.0)
    got = particle_screen_position(p, t, SIZE)
    expected = _apply(t.background, p.x * SIZE[0], p.y * SIZE[1])
    assert got == pytest.approx(expected, abs=1e-6)


def test_deep_particles_move_faster():
    anim = AnimationConfig(initial_scale=1.0, final_scale=1.5, rotation_speed=0.0)
    origin = ZoomOrigin(0.5, 0.5)
    t0 = frame_transform(0.0, anim, origin, SIZE)
    t1 = frame_transform(1.0, anim, origin, SIZE)
    shallow = Particle(x=0.6, y=0.5, z=0.0, scale=1.0)
    deep = Particle(x=0.6, y=0.5, z=4.0, scale=1.0)

    def travel(p):
        a = particle_screen_position(p, t0, SIZE)
        b = particle_screen_position(p, t1, SIZE)
        return b[0] - a[0]

    assert travel(shallow) == pytest.approx(40.0)
    # 1.5 + 0.5 * 4 * 2 = 5.5 times the 80px offset
    assert travel(deep) == pytest.approx(80.0 * 5.5 - 80.0)


def test_rotation_direction_and_rate():
    cw = AnimationConfig(rotation_speed=1.0, duration=10.0)
    ccw = AnimationConfig(rotation_direction=RotationDirection.CCW, rotation_speed=1.0, duration=10.0)
    assert frame_transform(1.0, cw, ZoomOrigin(), SIZE).angle == pytest.approx(2.0)
    assert frame_transform(1.0, ccw, ZoomOrigin(), SIZE).angle == pytest.approx(-2.0)
    assert frame_transform(1.7, cw, ZoomOrigin(), SIZE).progress == 1.0


def test_canvas_size_rules():
    assert canvas_size((4000, 3000), "1080p") == (1920, 1440)
    assert canvas_size((3000, 4000), "1080p") == (810, 1080)
    assert canvas_size((1000, 500), "4k") == (3840, 1920)
    assert canvas_size((801, 601), "original") == (800, 600)


def test_resolution_scale_reference():
    assert resolution_scale(800, 600) == pytest.approx(1.0)
    assert resolution_scale(1600, 1200) == pytest.approx(2.0)


def test_static_camera_reproduces_background():
    rng = np.random.default_rng(0)
    bg = rng.integers(0, 255, (60, 80, 3), dtype=np.uint8)
    surface = np.zeros_like(bg)
    anim = AnimationConfig(initial_scale=1.0, final_scale=1.0, rotation_speed=0.0)
    ParallaxRenderer().render(surface, 0.5, [], anim, ParticleConfig(), ZoomOrigin(), bg)
    assert np.array_equal(surface, bg)


def test_particle_drawn_with_screen_blend():
    surface = np.zeros((SIZE[1], SIZE[0], 3), dtype=np.uint8)
    renderer = ParallaxRenderer()
    p = Particle(x=0.5, y=0.5, z=0.0, scale=1.0, color="#ff0000")
    cfg = ParticleConfig(base_size=2.0, brightness=1.0)
    renderer.render(surface, 0.0, [p], AnimationConfig(), cfg, ZoomOrigin(), None)
    assert renderer.last_drawn == 1
    assert surface[300, 400].max() > 0
    assert surface[0, 0].max() == 0


def test_offscreen_and_invisible_particles_are_culled():
    surface = np.zeros((SIZE[1], SIZE[0], 3), dtype=np.uint8)
    renderer = ParallaxRenderer()
    anim = AnimationConfig(initial_scale=1.0, final_scale=3.0, rotation_speed=0.0)
    far = Particle(x=1.0, y=1.0, z=5.0, scale=1.0)
    tiny = Particle(x=0.5, y=0.5, z=0.0, scale=0.001)
    renderer.render(surface, 1.0, [far, tiny], anim, ParticleConfig(), ZoomOrigin(), None)
    assert renderer.last_drawn == 0
    assert renderer.last_culled == 2
    assert surface.max() == 0


def test_crosshair_only_when_interactive():
    renderer = ParallaxRenderer()
    surface = np.zeros((SIZE[1], SIZE[0], 3), dtype=np.uint8)
    renderer.render(surface, 0.0, [], AnimationConfig(), ParticleConfig(), ZoomOrigin(0.25, 0.5), None)
    assert surface.max() == 0
    renderer.render(
        surface, 0.0, [], AnimationConfig(), ParticleConfig(), ZoomOrigin(0.25, 0.5), None, interactive=True
    )
    assert tuple(surface[300, 200]) == CROSSHAIR_COLOR
