"""
Entry Canonicalizer
===================
Classifies raw archive entry names into logical-page frames.

Two passes share the same metadata and extension rules:

    canonicalize          one file per logical page (first claim wins)
    validate_processable  every frame that should be recognized,
                          including decimal continuations (5.1, 5.2)

A rejected entry raises ValidationError internally; both public
functions recover locally and return None.
"""

from __future__ import annotations

import logging
import posixpath
import re
from typing import Iterable, Optional

from .errors import ValidationError
from .models import CanonicalEntry, Frame

logger = logging.getLogger(__name__)

METADATA_DIR_PREFIX = "__MACOSX/"
METADATA_FILE_MARKER = "._"
RASTER_EXTENSIONS = {".png", ".jpg", ".jpeg"}

_CANONICAL_STEM_RE = re.compile(r"^[0-9]+$")
_PROCESSABLE_STEM_RE = re.compile(r"^([0-9]+)(?:\.([0-9]+))?$")
_LEADING_INT_RE = re.compile(r"^([0-9]+)")
_TOKEN_RE = re.compile(r"[0-9]+|[^0-9]+")
_DIGITS_RE = re.compile(r"[0-9]+")
_MAX_SEQUENCE_DIGITS = 18
# Leaves room for the "-N" suffixes added on disk
_MAX_NAME_BYTES = 200


class CanonicalKeyAccumulator:
    """
    Canonical keys already claimed within one archive.
    Owned by the caller; create a fresh one per archive.
    """

    def __init__(self, keys: Iterable[str] = ()):
        self._keys: set[str] = set(keys)

    def claim(self, key: str) -> bool:
        """Claim `key`. Returns False if it was already taken."""
        if key in self._keys:
            return False
        self._keys.add(key)
        return True

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)


# ─── Public API ───────────────────────────────────────────────────────────────


def canonicalize(
    entry_name: str, claimed: CanonicalKeyAccumulator
) -> Optional[CanonicalEntry]:
    """
    Accept `entry_name` as the canonical image of its page, or return None.

    Only pure-digit stems qualify ("5", "0003"). The key is the integer
    value without leading zeros; the first entry to claim it wins.
    """
    try:
        stem = _checked_stem(entry_name)
        if not _CANONICAL_STEM_RE.match(stem):
            raise ValidationError(entry_name, "stem is not a plain integer")
        key = strip_leading_zeros(stem)
        if not claimed.claim(key):
            raise ValidationError(entry_name, f"page {key} already claimed")
    except ValidationError as e:
        logger.debug(f"Canonical pass skipped {e}")
        return None
    return CanonicalEntry(base_key=key, original_name=_basename(entry_name))


def validate_processable(entry_name: str) -> Optional[Frame]:
    """
    Accept `entry_name` as a frame to recognize, or return None.

    Stems shaped "N" or "N.M" qualify. Continuations share the base key of
    page N and are never included in the canonical zip.
    """
    try:
        stem = _checked_stem(entry_name)
        match = _PROCESSABLE_STEM_RE.match(stem)
        if not match:
            raise ValidationError(entry_name, "stem is not N or N.M")
        suffix = match.group(2)
        sequence_index = 0
        if suffix is not None:
            digits = strip_leading_zeros(suffix)
            if len(digits) > _MAX_SEQUENCE_DIGITS:
                raise ValidationError(entry_name, "continuation index too long")
            sequence_index = int(digits)
    except ValidationError as e:
        logger.debug(f"Permissive pass skipped {e}")
        return None

    return Frame(
        original_name=_basename(entry_name),
        base_key=strip_leading_zeros(match.group(1)),
        sequence_index=sequence_index,
        should_include_in_zip=suffix is None,
    )


def base_key_from_filename(filename: str) -> str:
    """
    Leading integer of a filename, without leading zeros.
    "3.png" -> "3", "12-3.png" -> "12". Falls back to the bare stem.
    """
    stem = _split_ext(_basename(filename))[0]
    match = _LEADING_INT_RE.match(stem)
    if not match:
        return stem
    return strip_leading_zeros(match.group(1))


def natural_sort_key(filename: str) -> tuple:
    """
    Sort key that compares digit runs numerically.
    At the same position a number sorts before text; a shorter
    name sorts before any longer name sharing its prefix.
    """
    stem = _split_ext(filename.lower())[0]
    tokens = _TOKEN_RE.findall(stem) or [stem]
    return tuple(
        (0, *digit_order(token)) if is_ascii_digits(token) else (1, 0, token)
        for token in tokens
    )


def strip_leading_zeros(digits: str) -> str:
    """Drop leading zeros from a digit run: "007" -> "7", "000" -> "0"."""
    return digits.lstrip("0") or "0"


def is_ascii_digits(text: str) -> bool:
    return _DIGITS_RE.fullmatch(text) is not None


def digit_order(digits: str) -> tuple[int, str]:
    """Numeric sort key for an ASCII digit run, without int conversion."""
    stripped = strip_leading_zeros(digits)
    return (len(stripped), stripped)


def is_metadata_entry(entry_name: str) -> bool:
    return (
        entry_name.startswith(METADATA_DIR_PREFIX)
        or _basename(entry_name).startswith(METADATA_FILE_MARKER)
    )


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _checked_stem(entry_name: str) -> str:
    """Apply the shared metadata/extension rules; return the file stem."""
    if entry_name.startswith(METADATA_DIR_PREFIX):
        raise ValidationError(entry_name, "metadata directory")
    base = _basename(entry_name)
    if base.startswith(METADATA_FILE_MARKER):
        raise ValidationError(entry_name, "metadata file")
    if len(base.encode("utf-8")) > _MAX_NAME_BYTES:
        raise ValidationError(entry_name[:64], "file name too long")
    stem, ext = _split_ext(base)
    if ext.lower() not in RASTER_EXTENSIONS:
        raise ValidationError(entry_name, f"unsupported extension {ext!r}")
    if not stem:
        raise ValidationError(entry_name, "empty file stem")
    return stem


def _basename(entry_name: str) -> str:
    # Zip entries always use "/", but some archivers write "\"
    return posixpath.basename(entry_name.replace("\\", "/"))


def _split_ext(name: str) -> tuple[str, str]:
    stem, ext = posixpath.splitext(name)
    return stem, ext
