import json
import logging

import numpy as np
import pytest

from nebula_reel.particles import (
    CLUSTER_JITTER,
    CLUSTER_SIZE,
    HotspotAnalysis,
    Particle,
    expand_hotspots,
    find_analysis,
    load_analysis,
    parse_analysis,
    procedural_particles,
    resolve_particles,
)


def _detected(n, rng=None):
    rng = rng or np.random.default_rng(0)
    return [Particle(x=rng.random(), y=rng.random(), z=0.0, scale=float(s)) for s in rng.random(n) * 2]


def _expected_kept(hotspots, seed, cluster=CLUSTER_SIZE, jitter=CLUSTER_JITTER):
    rng = np.random.default_rng(seed)
    kept = 0
    for hx, hy in hotspots:
        off = (rng.random((cluster, 2)) - 0.5) * jitter
        rng.random(cluster)
        rng.random(cluster)
        rng.random(cluster)
        xs = hx / 100.0 + off[:, 0]
        ys = hy / 100.0 + off[:, 1]
        kept += int(((xs >= 0) & (xs <= 1) & (ys >= 0) & (ys <= 1)).sum())
    return kept


def test_many_detections_use_real_mode():
    detected = _detected(51)
    src = resolve_particles(detected, HotspotAnalysis(hotspots=[(50, 50)]))
    assert src.mode == "real"
    assert len(src) == 51


def test_fifty_detections_are_not_enough():
    src = resolve_particles(_detected(50), None, density=20, rng=np.random.default_rng(1))
    assert src.mode == "procedural"
    assert len(src) == 20


def test_real_mode_capped_by_device_keeps_largest():
    detected = _detected(2000)
    src = resolve_particles(detected, device="mobile")
    assert len(src) == 1500
    cutoff = min(p.scale for p in src.particles)
    assert sum(p.scale > cutoff for p in detected) <= 1500
    assert len(resolve_particles(detected, device="desktop")) == 2000


def test_hotspots_interior_exact_count():
    analysis = HotspotAnalysis(dominant_colors=["#ff0000", "#00ff00"], hotspots=[(50, 50), (30, 70)])
    src = resolve_particles([], analysis, rng=np.random.default_rng(3))
    assert src.mode == "ai-map"
    assert len(src) == 2 * CLUSTER_SIZE
    assert {p.color for p in src.particles} == {"#ff0000", "#00ff00"}
    assert all(0.6 <= p.alpha <= 1.0 for p in src.particles)
    assert all(0.5 <= p.scale <= 1.5 for p in src.particles)


def test_hotspots_at_edges_drop_outside_points():
    hotspots = [(0, 0), (100, 50), (50, 50)]
    got = expand_hotspots(hotspots, rng=np.random.default_rng(11))
    assert len(got) == _expected_kept(hotspots, 11)
    assert len(got) < len(hotspots) * CLUSTER_SIZE
    assert all(0.0 <= p.x <= 1.0 and 0.0 <= p.y <= 1.0 for p in got)
    assert {p.color for p in got} == {"#ffffff"}


def test_hotspot_expansion_is_deterministic():
    a = expand_hotspots([(10, 90)], rng=np.random.default_rng(5))
    b = expand_hotspots([(10, 90)], rng=np.random.default_rng(5))
    assert a == b


def test_empty_hotspots_fall_through_to_procedural():
    src = resolve_particles([], HotspotAnalysis(hotspots=[]), density=42)
    assert src.mode == "procedural"
    assert len(src) == 42
    assert all(p.color is None for p in src.particles)


def test_procedural_depths_skewed_to_background():
    parts = procedural_particles(4000, rng=np.random.default_rng(9))
    zs = np.array([p.z for p in parts])
    assert zs.min() >= 0.0 and zs.max() <= 5.0
    # P(z < 5/8) == P(u < 0.5) for z = 5 * u**3
    assert (zs < 5.0 / 8).mean() == pytest.approx(0.5, abs=0.05)


def test_parse_analysis_camel_case():
    data = {
        "name": "Orion Nebula",
        "description": "emission nebula",
        "dominantColors": ["#112233", 7],
        "starHotspots": [{"x": 10, "y": 20}, {"x": "bad"}, [150, -5]],
    }
    analysis = parse_analysis(data)
    assert analysis.name == "Orion Nebula"
    assert analysis.dominant_colors == ["#112233"]
    assert analysis.hotspots == [(10.0, 20.0), (100.0, 0.0)]


def test_malformed_colours_are_no_hint():
    analysis = parse_analysis({"dominantColors": ["red", "#zzzzzz", "#0f0"], "hotspots": [[50, 50]]})
    assert analysis.dominant_colors == ["#0f0"]
    particles = expand_hotspots([(50, 50)], ["red", "blue"], rng=np.random.default_rng(1))
    assert particles
    assert {p.color for p in particles} == {"#ffffff"}


def test_parse_analysis_rejects_non_mapping():
    assert parse_analysis(["x"]) is None


def test_side_car_discovery_and_loading(tmp_path):
    img = tmp_path / "m42.png"
    img.write_bytes(b"")
    assert find_analysis(str(img)) is None
    side = tmp_path / "m42.analysis.json"
    side.write_text(json.dumps({"hotspots": [[40, 60]], "dominant_colors": ["#abcdef"]}))
    assert find_analysis(str(img)) == str(side)
    analysis = load_analysis(str(side))
    assert analysis.hotspots == [(40.0, 60.0)]


def test_broken_side_car_means_no_hint(tmp_path, caplog):
    side = tmp_path / "m1.analysis.yaml"
    side.write_text("hotspots: [unterminated")
    with caplog.at_level(logging.WARNING):
        assert load_analysis(str(side)) is None
    assert "ignoring" in caplog.text
