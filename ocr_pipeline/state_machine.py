"""
Job Step State Machine
======================
Drives an OCR job through its named steps and persists progress after
each one, so any step can be re-run safely after a crash or on request.

Steps (five-step schema):
    BuildRawZip → PreprocessImagesAndCrops → CreateAndAwaitBatch →
    SaveResultsToDb → BuildDocsAndCleanup

Each step's outputs land under fixed storage keys and are committed
together with the move to the next step in one conditional UPDATE
(guarded by current_step + revision). A step whose output is committed
and still present is skipped without writing anything.

Usage:
    machine = PipelineStateMachine(config, store, recognizer)
    job = machine.create_job(zip_key)
    outcome = machine.advance(job.id)   # call again while WAITING
"""

from __future__ import annotations

import logging
import shutil
import traceback
import uuid
from dataclasses import dataclass, field
from typing import Callable, Optional

from . import database as db
from . import storage
from .assembler import build_paragraphs
from .config import PipelineConfig
from .documents import cleanup_workspace, publish_documents
from .errors import (
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    PipelineError,
    StorageIOError,
    ValidationError,
)
from .extractor import build_canonical_zip, build_zip, extract_frames, read_zip_members
from .imaging import crop_subtitle_strip, make_thumbnail, normalize_frame
from .models import (
    BatchStatus,
    ImageRef,
    Job,
    JobStatus,
    JobType,
    Paragraph,
    RecognitionStatus,
    RecognizedFrame,
    StepOutcome,
)
from .recognition import (
    BatchRecognizer,
    OpenAIBatchRecognizer,
    frame_ref,
    is_empty_text,
    parse_frame_ref,
)
from .steps import JobStep, StepSchema, is_valid_step, next_step, step_precedes, steps_from
from .storage import ObjectStore, WorkspacePaths

logger = logging.getLogger(__name__)


# Record state owned by each step, reset when the job is rewound to it
_STEP_RESET_FIELDS: dict[JobStep, dict] = {
    JobStep.BUILD_RAW_ZIP: {
        "raw_zip_key": None,
        "raw_zip_size_bytes": None,
        "thumbnail_key": None,
    },
    JobStep.PREPROCESS_IMAGES_AND_CROPS: {
        "crops_zip_key": None,
        "total_images": 0,
    },
    JobStep.CREATE_AND_AWAIT_BATCH: {
        "batch_id": None,
        "batch_status": None,
        "batch_submission_count": 0,
        "processed_images": 0,
    },
    JobStep.SAVE_RESULTS_TO_DB: {},
    JobStep.BUILD_DOCS_AND_CLEANUP: {
        "txt_key": None,
        "txt_size_bytes": None,
        "docx_key": None,
        "docx_size_bytes": None,
    },
}


@dataclass
class StepResult:
    """What a step body wants committed."""
    outcome: StepOutcome
    fields: dict = field(default_factory=dict)
    frames: Optional[list[dict]] = None
    frame_updates: Optional[list[dict]] = None
    paragraphs: Optional[list[dict]] = None
    on_commit: Optional[Callable[[], object]] = None

    @property
    def has_writes(self) -> bool:
        return bool(
            self.outcome != StepOutcome.WAITING
            or self.fields
            or self.frames is not None
            or self.frame_updates
            or self.paragraphs is not None
        )


class PipelineStateMachine:
    """
    Durable step runner for OCR jobs.

    Not a scheduler: ``advance`` runs until the job completes or has to
    wait on the batch provider, and something external calls it again.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        store: Optional[ObjectStore] = None,
        recognizer: Optional[BatchRecognizer] = None,
        db_path: Optional[str] = None,
    ):
        self.config = config or PipelineConfig()
        self.store = store or storage.create_store(self.config)
        self.recognizer = recognizer or OpenAIBatchRecognizer.from_config(self.config)
        self.db_path = db_path or self.config.db_path

        self._handlers: dict[JobStep, Callable[[Job, WorkspacePaths], StepResult]] = {
            JobStep.BUILD_RAW_ZIP: self._build_raw_zip,
            JobStep.PREPROCESS_IMAGES_AND_CROPS: self._preprocess_images_and_crops,
            JobStep.CREATE_AND_AWAIT_BATCH: self._create_and_await_batch,
            JobStep.SAVE_RESULTS_TO_DB: self._save_results_to_db,
            JobStep.BUILD_DOCS_AND_CLEANUP: self._build_docs_and_cleanup,
        }

    # ─── Job Records ──────────────────────────────────────────────────────

    def load_job(self, job_id: str) -> Job:
        row = db.get_job(job_id, db_path=self.db_path)
        if not row:
            raise NotFoundError(f"Job {job_id} not found")
        return Job.from_row(row)

    def workspace(self, job_id: str) -> WorkspacePaths:
        return WorkspacePaths.for_job(self.config.base_dir, job_id)

    def create_job(
        self,
        zip_key: str,
        job_type: JobType = JobType.OCR,
        step_schema: StepSchema = StepSchema.FIVE_STEP,
        job_id: Optional[str] = None,
    ) -> Job:
        """Create a pending job at the schema's first step."""
        if not self.store.exists(zip_key):
            raise NotFoundError(f"Input archive {zip_key} not found")
        job_id = job_id or str(uuid.uuid4())
        row = db.insert_job(
            job_id,
            current_step=step_schema.first_step.value,
            job_type=job_type.value,
            step_schema=step_schema.value,
            zip_key=zip_key,
            db_path=self.db_path,
        )
        return Job.from_row(row)

    def create_child_job(
        self, parent_job_id: str, job_type: JobType = JobType.SUBTITLE_REMOVAL
    ) -> Job:
        """
        Create a job that consumes the parent's canonical raw zip.
        Processing of the child is handled elsewhere.
        """
        parent = self.load_job(parent_job_id)
        if parent.status != JobStatus.COMPLETED or not parent.artifacts.raw_zip_key:
            raise ConflictError(
                f"Job {parent.id} has no completed raw archive to derive from"
            )

        child_id = str(uuid.uuid4())
        if child_id in db.get_ancestor_ids(parent.id, db_path=self.db_path):
            raise ConflictError(f"Job {child_id} would be its own ancestor")

        row = db.insert_job(
            child_id,
            current_step=StepSchema.FIVE_STEP.first_step.value,
            job_type=job_type.value,
            step_schema=StepSchema.FIVE_STEP.value,
            zip_key=parent.artifacts.raw_zip_key,
            parent_job_id=parent.id,
            db_path=self.db_path,
        )
        logger.info(f"Job {child_id}: Created {job_type.value} child of {parent.id}")
        return Job.from_row(row)

    # ─── Commit Checks ────────────────────────────────────────────────────

    def is_step_committed(self, job: Job, step: JobStep) -> bool:
        """True if the record points at the step's output and it exists."""
        art = job.artifacts
        if step == JobStep.BUILD_RAW_ZIP:
            return self._key_present(art.raw_zip_key)
        if step == JobStep.PREPROCESS_IMAGES_AND_CROPS:
            return (
                self._key_present(art.crops_zip_key)
                and db.count_frames(job.id, db_path=self.db_path) > 0
            )
        if step == JobStep.CREATE_AND_AWAIT_BATCH:
            total = db.count_frames(job.id, db_path=self.db_path)
            done = db.count_frames(
                job.id, RecognitionStatus.DONE.value, db_path=self.db_path
            )
            return total > 0 and done == total and not job.batch.batch_id
        if step == JobStep.SAVE_RESULTS_TO_DB:
            return db.count_paragraphs(job.id, db_path=self.db_path) > 0
        if step == JobStep.BUILD_DOCS_AND_CLEANUP:
            return self._key_present(art.txt_key) and self._key_present(art.docx_key)
        return False

    def _key_present(self, key: Optional[str]) -> bool:
        return bool(key) and self.store.exists(key)

    @staticmethod
    def _is_past(job: Job, step: JobStep) -> bool:
        """True if `step` already finished according to the record."""
        if job.status == JobStatus.COMPLETED:
            return True
        return step_precedes(step, job.current_step)

    # ─── Operations ───────────────────────────────────────────────────────

    def run_step(self, job_id: str, step: JobStep) -> StepOutcome:
        """
        Run exactly one step. Returns SKIPPED, without any write, when
        the step is behind the job and its output is still present.
        """
        job = self.load_job(job_id)
        if not is_valid_step(job.step_schema, step):
            raise ConflictError(
                f"Step {step.value} is not part of job {job.id}'s "
                f"{job.step_schema.value} schema"
            )

        if self._is_past(job, step):
            if self.is_step_committed(job, step):
                logger.info(f"Job {job.id}: Step {step.value} already committed, skipping")
                return StepOutcome.SKIPPED
            raise ConflictError(
                f"Job {job.id}: Output of {step.value} is missing; "
                f"use retry-from-step to rebuild it"
            )

        if step != job.current_step:
            raise ConflictError(
                f"Job {job.id} is at {job.current_step.value}; "
                f"cannot run {step.value} yet"
            )
        return self._execute(job, step)

    def advance(self, job_id: str) -> StepOutcome:
        """
        One scheduler tick: run steps forward from current_step until the
        job completes or has to wait. Failures are recorded, then re-raised.
        """
        job = self.load_job(job_id)
        if job.status == JobStatus.COMPLETED:
            return StepOutcome.COMPLETED

        if job.status != JobStatus.RUNNING:
            db.update_job(job.id, status=JobStatus.RUNNING.value, db_path=self.db_path)
            job = self.load_job(job_id)

        while True:
            step = job.current_step
            try:
                outcome = self._execute(job, step)
            except Exception as e:
                self._record_failure(job, step, e)
                raise
            if outcome in (StepOutcome.WAITING, StepOutcome.COMPLETED):
                return outcome
            job = self.load_job(job_id)

    def retry_job(self, job_id: str) -> StepOutcome:
        """
        Re-run the job from its current step. A completed job whose
        documents still exist is left untouched.
        """
        job = self.load_job(job_id)
        if self.nothing_to_retry(job):
            logger.info(f"Job {job.id}: Already completed, nothing to retry")
            return StepOutcome.SKIPPED

        logger.info(f"Job {job.id}: Retrying from {job.current_step.value}")
        if job.current_step == JobStep.CREATE_AND_AWAIT_BATCH:
            # A manual retry gives failed frames a fresh attempt budget
            db.reset_failed_frames(job.id, db_path=self.db_path)
        db.update_job(
            job.id,
            status=JobStatus.RUNNING.value,
            failed_step=None,
            last_error=None,
            db_path=self.db_path,
        )
        return self.advance(job.id)

    def nothing_to_retry(self, job: Job) -> bool:
        """True when the job is completed and its final output still exists."""
        return job.status == JobStatus.COMPLETED and self.is_step_committed(
            job, job.current_step
        )

    def check_retry_from(self, job: Job, step: JobStep):
        """Raise ConflictError if `job` cannot be rewound to `step`."""
        if not is_valid_step(job.step_schema, step):
            raise ConflictError(
                f"Step {step.value} is not part of job {job.id}'s "
                f"{job.step_schema.value} schema"
            )
        if job.status != JobStatus.COMPLETED and step_precedes(job.current_step, step):
            raise ConflictError(
                f"Job {job.id} has not reached {step.value} "
                f"(current step {job.current_step.value})"
            )

    def retry_from_step(self, job_id: str, step: JobStep) -> StepOutcome:
        """
        Rewind the job to `step`, invalidating that step's and every later
        step's outputs, then advance.
        """
        job = self.load_job(job_id)
        self.check_retry_from(job, step)

        invalidated = steps_from(job.step_schema, step)
        reset_fields: dict = {}
        for s in invalidated:
            reset_fields.update(_STEP_RESET_FIELDS[s])

        ok = db.reset_job_from_step(
            job.id,
            expected_revision=job.revision,
            to_step=step.value,
            reset_fields=reset_fields,
            delete_frames=JobStep.PREPROCESS_IMAGES_AND_CROPS in invalidated,
            reset_recognition=JobStep.CREATE_AND_AWAIT_BATCH in invalidated,
            delete_paragraphs=JobStep.SAVE_RESULTS_TO_DB in invalidated,
            db_path=self.db_path,
        )
        if not ok:
            raise ConflictError(f"Job {job.id} changed concurrently; retry again")

        logger.info(
            f"Job {job.id}: Rewound to {step.value} "
            f"(invalidated {', '.join(s.value for s in invalidated)})"
        )
        return self.advance(job.id)

    # ─── Execution & Commit ───────────────────────────────────────────────

    def _execute(self, job: Job, step: JobStep) -> StepOutcome:
        handler = self._handlers[step]
        logger.info(f"Job {job.id}: Running step {step.value}")
        result = handler(job, self.workspace(job.id))
        outcome = self._commit(job, step, result)
        if result.on_commit is not None:
            result.on_commit()
        return outcome

    def _commit(self, job: Job, step: JobStep, result: StepResult) -> StepOutcome:
        if not result.has_writes:
            return result.outcome

        fields = dict(result.fields)
        outcome = result.outcome
        if outcome == StepOutcome.ADVANCED:
            following = next_step(job.step_schema, step)
            if following is None:
                fields["status"] = JobStatus.COMPLETED.value
                outcome = StepOutcome.COMPLETED
            else:
                fields["current_step"] = following.value

        ok = db.commit_step(
            job.id,
            expected_step=job.guard_step,
            expected_revision=job.revision,
            frames=result.frames,
            frame_updates=result.frame_updates,
            paragraphs=result.paragraphs,
            db_path=self.db_path,
            **fields,
        )
        if not ok:
            raise ConflictError(
                f"Job {job.id}: Stale commit for {step.value}; "
                f"the job was modified concurrently"
            )
        if outcome == StepOutcome.COMPLETED:
            logger.info(f"Job {job.id}: COMPLETED")
        elif outcome == StepOutcome.ADVANCED:
            logger.info(f"Job {job.id}: Step {step.value} committed")
        return outcome

    def _record_failure(self, job: Job, step: JobStep, error: Exception):
        if isinstance(error, PipelineError):
            message = f"{type(error).__name__}: {error}"
        else:
            message = f"{error}\n{traceback.format_exc()}"
        logger.error(f"Job {job.id}: Step {step.value} FAILED — {message}")
        recorded = db.mark_failed(
            job.id, job.revision, step.value, message, db_path=self.db_path
        )
        if not recorded:
            logger.warning(
                f"Job {job.id}: Failure not recorded, job was rewound concurrently"
            )

    # ─── Step Bodies ──────────────────────────────────────────────────────

    def _fetch_input(self, job: Job, ws: WorkspacePaths) -> bytes:
        """Download the input archive and keep a local copy."""
        if not job.zip_key:
            raise ConflictError(f"Job {job.id} has no input archive")
        data = self.store.get(job.zip_key)
        try:
            ws.root.mkdir(parents=True, exist_ok=True)
            ws.input_zip.write_bytes(data)
            if ws.raw_dir.exists():
                shutil.rmtree(ws.raw_dir)
        except OSError as e:
            raise StorageIOError(f"Cannot prepare workspace {ws.root}: {e}") from e
        return data

    def _build_raw_zip(self, job: Job, ws: WorkspacePaths) -> StepResult:
        frames = extract_frames(self._fetch_input(job, ws), ws.raw_dir)
        canonical = [f for f in frames if f.should_include_in_zip]
        if not canonical:
            raise ValidationError(job.zip_key, "archive holds no page images")

        raw_zip = build_canonical_zip(frames)
        key = storage.raw_zip_key(job.id)
        self.store.put(key, raw_zip, "application/zip")

        thumb_key = None
        try:
            with open(canonical[0].path, "rb") as f:
                thumb = make_thumbnail(
                    f.read(),
                    size=self.config.thumbnail_size,
                    quality=self.config.thumbnail_quality,
                )
            thumb_key = storage.thumbnail_key(job.id)
            self.store.put(thumb_key, thumb, "image/jpeg")
        except (OSError, ValueError, PipelineError) as e:
            thumb_key = None
            logger.warning(f"Job {job.id}: Thumbnail generation failed: {e}")

        logger.info(
            f"Job {job.id}: Raw archive built — {len(canonical)} pages, "
            f"{len(frames)} frames"
        )
        return StepResult(
            StepOutcome.ADVANCED,
            fields={
                "raw_zip_key": key,
                "raw_zip_size_bytes": len(raw_zip),
                "thumbnail_key": thumb_key,
            },
        )

    def _preprocess_images_and_crops(self, job: Job, ws: WorkspacePaths) -> StepResult:
        frames = extract_frames(self._fetch_input(job, ws), ws.raw_dir)
        if not frames:
            raise ValidationError(job.zip_key, "archive holds no processable images")

        try:
            for directory in (ws.normalized_dir, ws.crops_dir):
                if directory.exists():
                    shutil.rmtree(directory)
                directory.mkdir(parents=True)
        except OSError as e:
            raise StorageIOError(f"Cannot prepare workspace {ws.root}: {e}") from e

        crops: list[tuple[str, bytes]] = []
        rows: list[dict] = []
        used_names: set[str] = set()
        for frame in frames:
            stem = frame.original_name.rsplit(".", 1)[0]
            crop_name = f"{stem}.png"
            # "5.png" and "5.jpg" share a stem
            if crop_name.lower() in used_names:
                crop_name = f"{stem}-{frame.index}.png"
            used_names.add(crop_name.lower())

            with open(frame.path, "rb") as f:
                normalized = normalize_frame(f.read(), self.config.normalize_size)
            (ws.normalized_dir / crop_name).write_bytes(normalized)

            crop = crop_subtitle_strip(normalized, self.config.subtitle_crop_ratio)
            (ws.crops_dir / crop_name).write_bytes(crop)
            crops.append((crop_name, crop))

            rows.append({
                "idx": frame.index,
                "filename": frame.original_name,
                "crop_name": crop_name,
                "base_key": frame.base_key,
                "sequence_index": frame.sequence_index,
                "include_in_zip": frame.should_include_in_zip,
                "recognition_status": RecognitionStatus.PENDING.value,
            })

        key = storage.crops_zip_key(job.id)
        self.store.put(key, build_zip(crops), "application/zip")

        logger.info(f"Job {job.id}: Prepared {len(rows)} subtitle crops")
        return StepResult(
            StepOutcome.ADVANCED,
            fields={
                "crops_zip_key": key,
                "total_images": len(rows),
                "processed_images": 0,
                "batch_id": None,
                "batch_status": None,
                "batch_submission_count": 0,
            },
            frames=rows,
        )

    def _create_and_await_batch(self, job: Job, ws: WorkspacePaths) -> StepResult:
        rows = db.get_frames(job.id, db_path=self.db_path)
        if not rows:
            raise ConflictError(f"Job {job.id} has no frames to recognize")

        if job.batch.batch_id:
            return self._poll_batch(job, rows)
        return self._submit_batch(job, ws, rows)

    def _submit_batch(self, job: Job, ws: WorkspacePaths, rows: list[dict]) -> StepResult:
        todo = [
            r for r in rows
            if r["recognition_status"] != RecognitionStatus.DONE.value
        ]
        if not todo:
            return StepResult(
                StepOutcome.ADVANCED, fields={"processed_images": len(rows)}
            )

        exhausted = [r for r in todo if r["attempts"] >= self.config.max_item_attempts]
        if exhausted:
            sample = exhausted[0]
            raise ExternalServiceError(
                f"{len(exhausted)} frame(s) failed recognition after "
                f"{self.config.max_item_attempts} attempts "
                f"(e.g. {sample['filename']}: {sample['error']})"
            )

        if not job.artifacts.crops_zip_key:
            raise ConflictError(f"Job {job.id} has no crops archive")
        crops = read_zip_members(self.store.get(job.artifacts.crops_zip_key))

        images = []
        for r in todo:
            data = crops.get(r["crop_name"])
            if data is None:
                raise NotFoundError(
                    f"Crop {r['crop_name']} missing from {job.artifacts.crops_zip_key}"
                )
            images.append(ImageRef(
                frame_ref=frame_ref(job.id, r["idx"], r["filename"]),
                filename=r["filename"],
                data=data,
            ))

        submission = job.batch.submission_count + 1
        batch_id = self.recognizer.submit(
            images, request_path=ws.batch_jsonl(submission)
        )
        logger.info(
            f"Job {job.id}: Submitted batch {batch_id} "
            f"({len(images)} images, submission {submission})"
        )
        return StepResult(
            StepOutcome.WAITING,
            fields={
                "batch_id": batch_id,
                "batch_status": BatchStatus.VALIDATING.value,
                "batch_submission_count": submission,
            },
            frame_updates=[
                {
                    "idx": r["idx"],
                    "recognition_status": RecognitionStatus.SUBMITTED.value,
                    "attempts": r["attempts"] + 1,
                    "error": None,
                }
                for r in todo
            ],
        )

    def _poll_batch(self, job: Job, rows: list[dict]) -> StepResult:
        batch_id = job.batch.batch_id
        poll = self.recognizer.poll(batch_id)

        if poll.is_terminal_failure:
            # Release the dead batch so a retry submits a fresh one
            db.commit_step(
                job.id,
                expected_step=job.guard_step,
                expected_revision=job.revision,
                frame_updates=[
                    {
                        "idx": r["idx"],
                        "recognition_status": RecognitionStatus.FAILED.value,
                        "error": f"batch {poll.status.value}",
                    }
                    for r in rows
                    if r["recognition_status"] == RecognitionStatus.SUBMITTED.value
                ],
                db_path=self.db_path,
                batch_id=None,
                batch_status=poll.status.value,
            )
            raise ExternalServiceError(
                f"Batch {batch_id} ended with status {poll.status.value}"
            )
        if poll.status != BatchStatus.COMPLETED:
            logger.info(f"Job {job.id}: Batch {batch_id} is {poll.status.value}")
            if poll.status.value == job.batch.last_known_status:
                return StepResult(StepOutcome.WAITING)
            return StepResult(
                StepOutcome.WAITING, fields={"batch_status": poll.status.value}
            )

        by_index = {}
        for item in poll.items:
            parsed = parse_frame_ref(item.frame_ref)
            if parsed and parsed[0] == job.id:
                by_index[parsed[1]] = item

        updates = []
        done = 0
        failed = 0
        for r in rows:
            if r["recognition_status"] == RecognitionStatus.DONE.value:
                done += 1
                continue
            if r["recognition_status"] != RecognitionStatus.SUBMITTED.value:
                continue
            item = by_index.get(r["idx"])
            if item is not None and item.ok:
                done += 1
                updates.append({
                    "idx": r["idx"],
                    "recognition_status": RecognitionStatus.DONE.value,
                    "text": (item.text or "").strip(),
                    "error": None,
                })
            else:
                failed += 1
                updates.append({
                    "idx": r["idx"],
                    "recognition_status": RecognitionStatus.FAILED.value,
                    "error": item.error if item is not None else "missing from batch output",
                })

        logger.info(
            f"Job {job.id}: Batch {batch_id} completed — "
            f"{done}/{len(rows)} frames recognized, {failed} failed"
        )
        return StepResult(
            StepOutcome.ADVANCED if done == len(rows) else StepOutcome.WAITING,
            fields={
                "batch_id": None,
                "batch_status": BatchStatus.COMPLETED.value,
                "processed_images": done,
            },
            frame_updates=updates,
        )

    def _save_results_to_db(self, job: Job, ws: WorkspacePaths) -> StepResult:
        rows = db.get_frames(job.id, db_path=self.db_path)
        recognized = [
            RecognizedFrame(
                original_name=r["filename"],
                base_key=r["base_key"],
                sequence_index=r["sequence_index"],
                should_include_in_zip=bool(r["include_in_zip"]),
                index=r["idx"],
                text=r["text"].strip(),
            )
            for r in rows
            if r["recognition_status"] == RecognitionStatus.DONE.value
            and not is_empty_text(r["text"])
        ]
        if not recognized:
            raise ExternalServiceError(f"Job {job.id}: No text was recognized in any frame")

        paragraphs = build_paragraphs(recognized)
        logger.info(
            f"Job {job.id}: {len(recognized)} frames assembled into "
            f"{len(paragraphs)} paragraphs"
        )
        return StepResult(
            StepOutcome.ADVANCED,
            paragraphs=[p.model_dump() for p in paragraphs],
        )

    def _build_docs_and_cleanup(self, job: Job, ws: WorkspacePaths) -> StepResult:
        paragraphs = [
            Paragraph(base_key=r["base_key"], text=r["text"] or "", position=r["position"])
            for r in db.get_paragraphs(job.id, db_path=self.db_path)
        ]
        if not paragraphs:
            raise ConflictError(f"Job {job.id} has no saved paragraphs")

        fields = publish_documents(job.id, paragraphs, self.store)
        return StepResult(
            StepOutcome.ADVANCED,
            fields=fields,
            on_commit=lambda: cleanup_workspace(ws),
        )
