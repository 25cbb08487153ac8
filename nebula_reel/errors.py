"""Exception types raised by nebula_reel."""
from __future__ import annotations


class NebulaReelError(Exception):
    """Base class for all nebula_reel errors."""


class ImageDecodeError(NebulaReelError):
    """An input image could not be read or decoded."""


class EncoderError(NebulaReelError):
    """No encoder could be constructed for the requested output."""


class CaptureStateError(NebulaReelError):
    """A capture operation was requested in the wrong pipeline state."""
