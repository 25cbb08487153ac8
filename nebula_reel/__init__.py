"""Nebula reel package."""

__all__ = ["detect_stars", "resolve_particles"]


def detect_stars(*args, **kwargs):
    from .detect import detect_stars as _detect_stars

    return _detect_stars(*args, **kwargs)


def resolve_particles(*args, **kwargs):
    from .particles import resolve_particles as _resolve_particles

    return _resolve_particles(*args, **kwargs)
