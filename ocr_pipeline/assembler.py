"""
Paragraph Assembler
===================
Merges recognized frames into one paragraph per logical page.

Frames of a page are joined in submission order (``index``), never by
filename, so "5", "5.1", "5.2" read in the order they were submitted.
Pages with integer keys come first in numeric order, then any other keys
in lexicographic order.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Iterable

from .canonicalizer import base_key_from_filename, digit_order, is_ascii_digits
from .models import Paragraph, RecognizedFrame

logger = logging.getLogger(__name__)


def build_paragraphs(frames: Iterable[RecognizedFrame]) -> list[Paragraph]:
    """Group frames by base_key and render ordered paragraphs."""
    buckets: dict[str, list[RecognizedFrame]] = defaultdict(list)
    for frame in frames:
        key = frame.base_key.strip() or base_key_from_filename(frame.original_name)
        buckets[key].append(frame)

    paragraphs = []
    for position, key in enumerate(sorted(buckets, key=_bucket_order)):
        ordered = sorted(buckets[key], key=lambda f: f.index)
        text = " ".join(f.text for f in ordered)
        paragraphs.append(Paragraph(base_key=key, text=text, position=position))

    logger.debug(
        f"Assembled {len(paragraphs)} paragraphs from "
        f"{sum(len(b) for b in buckets.values())} frames"
    )
    return paragraphs


def _bucket_order(key: str) -> tuple:
    if is_ascii_digits(key):
        return (0, *digit_order(key))
    return (1, 0, key)
