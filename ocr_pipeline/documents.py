"""
Document Orchestrator
=====================
Renders the final text and Word documents from assembled paragraphs,
uploads them, and removes a job's scratch files once they are stored.
"""

from __future__ import annotations

import io
import logging
import shutil
from typing import Iterable

from docx import Document as DocxDocument

from . import storage
from .models import Paragraph
from .storage import ObjectStore, WorkspacePaths

logger = logging.getLogger(__name__)

TXT_CONTENT_TYPE = "text/plain; charset=utf-8"
DOCX_CONTENT_TYPE = (
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
)


def render_txt(paragraphs: Iterable[Paragraph]) -> bytes:
    """Paragraphs separated by a blank line, UTF-8."""
    return "\n\n".join(p.text for p in paragraphs).encode("utf-8")


def render_docx(paragraphs: Iterable[Paragraph]) -> bytes:
    """One Word paragraph per logical page."""
    doc = DocxDocument()
    for p in paragraphs:
        doc.add_paragraph(p.text)
    buf = io.BytesIO()
    doc.save(buf)
    return buf.getvalue()


def publish_documents(
    job_id: str, paragraphs: list[Paragraph], store: ObjectStore
) -> dict:
    """
    Render and upload both documents under the job's fixed keys.
    Returns the job columns to commit: keys and sizes.
    """
    txt = render_txt(paragraphs)
    docx = render_docx(paragraphs)

    txt_key = storage.txt_key(job_id)
    docx_key = storage.docx_key(job_id)
    store.put(txt_key, txt, TXT_CONTENT_TYPE)
    store.put(docx_key, docx, DOCX_CONTENT_TYPE)

    logger.info(
        f"Job {job_id}: Documents uploaded — {len(paragraphs)} paragraphs, "
        f"txt={len(txt)}B docx={len(docx)}B"
    )
    return {
        "txt_key": txt_key,
        "txt_size_bytes": len(txt),
        "docx_key": docx_key,
        "docx_size_bytes": len(docx),
    }


def cleanup_workspace(paths: WorkspacePaths) -> int:
    """
    Delete a job's extracted frames, crops, input copy and batch request
    files. Failures are logged and skipped. Returns the number removed.
    """
    removed = 0
    for directory in (paths.raw_dir, paths.normalized_dir, paths.crops_dir):
        if not directory.exists():
            continue
        try:
            shutil.rmtree(directory)
            removed += 1
        except OSError as e:
            logger.warning(f"Job {paths.job_id}: Could not remove {directory}: {e}")

    for path in [paths.input_zip] + paths.batch_jsonl_files():
        if not path.exists():
            continue
        try:
            path.unlink()
            removed += 1
        except OSError as e:
            logger.warning(f"Job {paths.job_id}: Could not remove {path}: {e}")

    try:
        if paths.root.exists() and not any(paths.root.iterdir()):
            paths.root.rmdir()
    except OSError as e:
        logger.warning(f"Job {paths.job_id}: Could not remove {paths.root}: {e}")

    logger.info(f"Job {paths.job_id}: Cleanup removed {removed} workspace entries")
    return removed
