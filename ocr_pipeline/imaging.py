"""
Frame Imaging
=============
Pillow helpers used while preparing frames for recognition.
All functions take and return encoded image bytes.
"""

from __future__ import annotations

import io
import logging

from PIL import Image, ImageOps

logger = logging.getLogger(__name__)

_ASPECT_TOLERANCE = 0.01


def normalize_frame(data: bytes, size: tuple[int, int] = (1280, 720)) -> bytes:
    """
    Resize a frame to `size` as PNG.
    Frames with a different aspect ratio are letterboxed on black
    so subtitle text is never cut off.
    """
    target_w, target_h = size
    with Image.open(io.BytesIO(data)) as img:
        img = img.convert("RGB")
        width, height = img.size
        if width and height and abs(width / height - target_w / target_h) < _ASPECT_TOLERANCE:
            out = img.resize(size, Image.LANCZOS)
        else:
            out = ImageOps.pad(img, size, method=Image.LANCZOS, color=(0, 0, 0))
        return _encode(out, "PNG")


def crop_subtitle_strip(data: bytes, ratio: float = 0.32) -> bytes:
    """Keep the bottom `ratio` of the frame, where subtitles sit, as PNG."""
    with Image.open(io.BytesIO(data)) as img:
        width, height = img.size
        roi_height = int(height * ratio)
        if not width or roi_height <= 0:
            return _encode(img, "PNG")
        top = max(0, height - roi_height)
        return _encode(img.crop((0, top, width, height)), "PNG")


def make_thumbnail(
    data: bytes, size: tuple[int, int] = (200, 200), quality: int = 85
) -> bytes:
    """Fit the frame inside `size` and encode as JPEG."""
    with Image.open(io.BytesIO(data)) as img:
        img = img.convert("RGB")
        img.thumbnail(size)
        return _encode(img, "JPEG", quality=quality)


def _encode(img: Image.Image, fmt: str, **params) -> bytes:
    buf = io.BytesIO()
    if fmt == "PNG" and img.mode not in ("RGB", "RGBA", "L", "LA", "P", "1"):
        img = img.convert("RGB")
    img.save(buf, format=fmt, **params)
    return buf.getvalue()
