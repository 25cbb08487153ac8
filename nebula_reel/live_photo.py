"""Motion-photo packaging of a still frame plus its animation.

``live-android`` produces a Google motion photo: a JPEG carrying an XMP
``GCamera:MicroVideoOffset`` segment with the video appended to the file.
``live-ios`` produces a zip bundle holding ``<name>.JPG`` and ``<name>.MOV``.
"""
from __future__ import annotations

import io
import logging
import struct
import zipfile

import numpy as np
from PIL import Image

from .utils import slugify

XMP_NAMESPACE = b"http://ns.adobe.com/xap/1.0/\x00"
JPEG_SOI = b"\xff\xd8"

# underlying video container per live format
VIDEO_CONTAINER = {"live-android": "mp4", "live-ios": "mov"}
PACKAGE_INFO = {
    "live-android": ("jpg", "image/jpeg"),
    "live-ios": ("zip", "application/zip"),
}

_XMP_TEMPLATE = """<x:xmpmeta xmlns:x="adobe:ns:meta/" x:xmptk="Adobe XMP Core 5.1.0-jc003">
  <rdf:RDF xmlns:rdf="http://www.w3.org/1999/02/22-rdf-syntax-ns#">
    <rdf:Description rdf:about=""
        xmlns:GCamera="http://ns.google.com/photos/1.0/camera/"
        GCamera:MotionPhoto="1"
        GCamera:MicroVideo="1"
        GCamera:MicroVideoVersion="1"
        GCamera:MicroVideoOffset="{offset}" />
  </rdf:RDF>
</x:xmpmeta>"""


def encode_still(frame: np.ndarray, quality: int = 95) -> bytes:
    """JPEG bytes of an RGB frame."""
    buf = io.BytesIO()
    Image.fromarray(np.ascontiguousarray(frame[:, :, :3])).save(buf, format="JPEG", quality=quality)
    return buf.getvalue()


def xmp_segment(video_size: int) -> bytes:
    """APP1 segment announcing a micro video of *video_size* trailing bytes."""
    payload = XMP_NAMESPACE + _XMP_TEMPLATE.format(offset=int(video_size)).encode("utf8")
    # the length field counts itself but not the marker
    return b"\xff\xe1" + struct.pack(">H", len(payload) + 2) + payload


def android_motion_photo(jpeg: bytes, video: bytes) -> bytes:
    """``[SOI][APP1 XMP][rest of JPEG][video]``."""
    segment = xmp_segment(len(video))
    if jpeg[:2] == JPEG_SOI:
        return JPEG_SOI + segment + jpeg[2:] + video
    logging.warning("still is not a JPEG, appending motion data without XMP insertion")
    return segment + jpeg + video


def ios_live_bundle(jpeg: bytes, video: bytes, name: str) -> bytes:
    stem = slugify(name)
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(f"{stem}.JPG", jpeg)
        zf.writestr(f"{stem}.MOV", video)
    return buf.getvalue()


def package(fmt: str, still: np.ndarray, video: bytes, name: str) -> bytes:
    """Bundle *still* and *video* for the live format *fmt*."""
    jpeg = encode_still(still)
    if fmt == "live-android":
        return android_motion_photo(jpeg, video)
    if fmt == "live-ios":
        return ios_live_bundle(jpeg, video, name)
    raise ValueError(f"unknown live format {fmt!r}")
