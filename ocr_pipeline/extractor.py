"""
Frame Extractor
===============
Materializes processable frames from an uploaded zip into a working
directory and fixes their submission order.

Usage:
    frames = extract_frames(zip_bytes, "image-files/<job>/raw")
    raw_zip = build_canonical_zip(frames)
"""

from __future__ import annotations

import io
import logging
import posixpath
import zipfile
from pathlib import Path
from typing import Iterable, Iterator, Union

from .canonicalizer import (
    CanonicalKeyAccumulator,
    canonicalize,
    natural_sort_key,
    validate_processable,
)
from .errors import StorageIOError, ValidationError
from .models import ContainerEntry, ExtractedFrame

logger = logging.getLogger(__name__)

# Fixed entry timestamp so identical inputs give identical archive bytes
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


def iter_entries(zip_bytes: bytes) -> Iterator[ContainerEntry]:
    """Yield every file entry of the archive, skipping directories."""
    try:
        archive = zipfile.ZipFile(io.BytesIO(zip_bytes))
    except zipfile.BadZipFile as e:
        raise ValidationError("<archive>", f"not a zip file: {e}") from e
    with archive:
        for info in archive.infolist():
            if info.is_dir():
                continue
            yield ContainerEntry(name=info.filename, data=archive.read(info))


def extract_frames(
    zip_bytes: bytes, dest_dir: Union[str, Path]
) -> list[ExtractedFrame]:
    """
    Write every processable image of the archive to `dest_dir`.

    Returns frames sorted by filename (digit runs compared numerically)
    and numbered 0..n-1. That numbering is the submission order.
    Only the first canonical image of each page is flagged for the
    canonical zip.
    """
    dest = Path(dest_dir)
    try:
        dest.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StorageIOError(f"Cannot create {dest}: {e}") from e

    claimed = CanonicalKeyAccumulator()
    used_names: set[str] = set()
    pending = []

    for entry in iter_entries(zip_bytes):
        frame = validate_processable(entry.name)
        if frame is None:
            continue
        canonical = canonicalize(entry.name, claimed)

        final_name = _unique_name(frame.original_name, used_names)
        out_path = dest / final_name
        try:
            out_path.write_bytes(entry.data)
        except OSError as e:
            raise StorageIOError(f"Cannot write {out_path}: {e}") from e

        pending.append((entry.name, frame.model_copy(update={
            "original_name": final_name,
            "should_include_in_zip": (
                frame.should_include_in_zip and canonical is not None
            ),
        }), out_path))

    pending.sort(key=lambda p: (natural_sort_key(p[1].original_name), p[0]))

    frames = [
        ExtractedFrame(**frame.model_dump(), index=i, path=str(path))
        for i, (_, frame, path) in enumerate(pending)
    ]
    logger.info(
        f"Extracted {len(frames)} frames to {dest} "
        f"({sum(f.should_include_in_zip for f in frames)} canonical)"
    )
    return frames


def canonical_entry_name(frame: ExtractedFrame) -> str:
    """Name of the frame inside the canonical zip, e.g. "001.PNG" -> "1.png"."""
    ext = posixpath.splitext(frame.original_name)[1].lower()
    return f"{frame.base_key}{ext}"


def build_canonical_zip(frames: Iterable[ExtractedFrame]) -> bytes:
    """Zip the one-image-per-page subset of `frames`."""
    selected = [f for f in frames if f.should_include_in_zip]
    selected.sort(key=lambda f: f.index)
    return build_zip(
        (canonical_entry_name(f), Path(f.path).read_bytes()) for f in selected
    )


def build_zip(items: Iterable[tuple[str, bytes]]) -> bytes:
    """Build a deflated zip whose bytes depend only on names and contents."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as archive:
        for name, data in items:
            info = zipfile.ZipInfo(name, date_time=ZIP_EPOCH)
            info.compress_type = zipfile.ZIP_DEFLATED
            info.external_attr = 0o644 << 16
            archive.writestr(info, data)
    return buf.getvalue()


def read_zip_members(zip_bytes: bytes) -> dict[str, bytes]:
    """Return {entry name: data} for every file entry."""
    return {e.name: e.data for e in iter_entries(zip_bytes)}


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _unique_name(name: str, used: set[str]) -> str:
    """Suffix "-N" until the name is unused (case-insensitive)."""
    stem, ext = posixpath.splitext(name)
    candidate = name
    counter = 1
    while candidate.lower() in used:
        candidate = f"{stem}-{counter}{ext}"
        counter += 1
    used.add(candidate.lower())
    return candidate
