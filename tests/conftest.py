"""
Shared fixtures for the OCR pipeline tests.
"""

from __future__ import annotations

import io
import logging
import threading
import zipfile
from pathlib import Path
from typing import Callable, Optional

import pytest
from PIL import Image

from ocr_pipeline import database as db
from ocr_pipeline.config import PipelineConfig
from ocr_pipeline.models import (
    BatchItemResult,
    BatchPollResult,
    BatchStatus,
    ImageRef,
    StepOutcome,
)
from ocr_pipeline.state_machine import PipelineStateMachine
from ocr_pipeline.storage import LocalObjectStore, UrlSigner


# ─── Builders ─────────────────────────────────────────────────────────────────


def image_bytes(color=(255, 255, 255), size=(64, 36), fmt="PNG") -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format=fmt)
    return buf.getvalue()


def make_zip(entries: dict[str, bytes]) -> bytes:
    """Zip `entries` in insertion order."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as archive:
        for name, data in entries.items():
            archive.writestr(name, data)
    return buf.getvalue()


def sample_entries() -> dict[str, bytes]:
    """Pages 1 (with a continuation), 2 and 10, plus junk entries."""
    return {
        "scans/10.png": image_bytes((0, 0, 255)),
        "scans/1.1.png": image_bytes((0, 255, 0)),
        "scans/1.png": image_bytes((255, 0, 0)),
        "scans/2.jpg": image_bytes((200, 200, 0), fmt="JPEG"),
        "__MACOSX/scans/._1.png": b"resource fork",
        "scans/notes.txt": b"not an image",
    }


SAMPLE_TXT = "text-1.png text-1.1.png\n\ntext-2.jpg\n\ntext-10.png"


# ─── Fakes ────────────────────────────────────────────────────────────────────


class FakeRecognizer:
    """
    In-memory batch provider.

    Each batch reports in_progress `polls_before_complete` times, then
    completes with ``text_for(filename)`` for every image.
    """

    def __init__(
        self,
        polls_before_complete: int = 0,
        text_for: Optional[Callable[[str], str]] = None,
        fail_once: tuple = (),
        fail_always: tuple = (),
    ):
        self.polls_before_complete = polls_before_complete
        self.text_for = text_for or (lambda filename: f"text-{filename}")
        self.fail_once = set(fail_once)
        self.fail_always = set(fail_always)
        self.terminal_status: Optional[BatchStatus] = None
        self.submissions: list[list[ImageRef]] = []
        self.poll_count = 0
        self._batches: dict[str, list[ImageRef]] = {}
        self._remaining: dict[str, int] = {}
        self._lock = threading.Lock()

    def submit(self, items, request_path=None) -> str:
        with self._lock:
            batch_id = f"batch-{len(self.submissions) + 1}"
            self.submissions.append(list(items))
            self._batches[batch_id] = list(items)
            self._remaining[batch_id] = self.polls_before_complete
        if request_path is not None:
            Path(request_path).parent.mkdir(parents=True, exist_ok=True)
            Path(request_path).write_text("\n".join(i.frame_ref for i in items))
        return batch_id

    def poll(self, batch_id: str) -> BatchPollResult:
        with self._lock:
            return self._poll(batch_id)

    def _poll(self, batch_id: str) -> BatchPollResult:
        self.poll_count += 1
        if self.terminal_status is not None:
            return BatchPollResult(status=self.terminal_status)
        if self._remaining[batch_id] > 0:
            self._remaining[batch_id] -= 1
            return BatchPollResult(status=BatchStatus.IN_PROGRESS)

        results = []
        for item in self._batches[batch_id]:
            if item.filename in self.fail_always or item.filename in self.fail_once:
                self.fail_once.discard(item.filename)
                results.append(BatchItemResult(frame_ref=item.frame_ref, error="rate limited"))
            else:
                results.append(BatchItemResult(
                    frame_ref=item.frame_ref, text=self.text_for(item.filename)
                ))
        return BatchPollResult(status=BatchStatus.COMPLETED, items=results)


class CountingStore(LocalObjectStore):
    """LocalObjectStore that counts mutations and can run a hook on put."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.puts: list[str] = []
        self.deletes: list[str] = []
        self.on_put: Optional[Callable[[str], None]] = None

    def put(self, key, data, content_type=None):
        self.puts.append(key)
        super().put(key, data, content_type)
        if self.on_put is not None:
            self.on_put(key)

    def delete(self, key):
        self.deletes.append(key)
        super().delete(key)


# ─── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Drop handlers that CLI runs attach to the package logger."""
    pipeline_logger = logging.getLogger("ocr_pipeline")
    before = list(pipeline_logger.handlers)
    yield
    for handler in list(pipeline_logger.handlers):
        if handler not in before:
            pipeline_logger.removeHandler(handler)
            handler.close()
    pipeline_logger.setLevel(logging.NOTSET)


@pytest.fixture
def config(tmp_path) -> PipelineConfig:
    cfg = PipelineConfig(
        base_dir=str(tmp_path / "work"),
        db_path=str(tmp_path / "jobs.sqlite"),
        storage_root=str(tmp_path / "objects"),
        signing_secret="test-secret",
        public_base_url="http://testserver",
        poll_interval_seconds=0,
    )
    db.init_db(cfg.db_path)
    return cfg


@pytest.fixture
def store(config) -> CountingStore:
    return CountingStore(
        config.storage_root,
        signer=UrlSigner(config.signing_secret, config.public_base_url),
    )


@pytest.fixture
def recognizer() -> FakeRecognizer:
    return FakeRecognizer()


@pytest.fixture
def machine(config, store, recognizer) -> PipelineStateMachine:
    return PipelineStateMachine(config, store, recognizer)


@pytest.fixture
def upload(store):
    """Store an archive and return its key."""
    counter = {"n": 0}

    def _upload(entries: Optional[dict] = None) -> str:
        counter["n"] += 1
        key = f"uploads/test-{counter['n']}.zip"
        store.put(key, make_zip(entries if entries is not None else sample_entries()))
        return key

    return _upload


def run_until_done(machine: PipelineStateMachine, job_id: str, max_ticks: int = 20):
    """Call advance until the job stops waiting."""
    outcome = machine.advance(job_id)
    ticks = 1
    while outcome == StepOutcome.WAITING:
        assert ticks < max_ticks, "job never finished"
        outcome = machine.advance(job_id)
        ticks += 1
    return outcome
