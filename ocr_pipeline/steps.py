"""
Job Steps
=========
Closed enumeration of pipeline steps with an explicit total order.

Two schema variants exist. Jobs created before the raw-zip step was
introduced use the legacy four-step schema; both variants are ordered
subsequences of the same rank table, so a single predicate orders them.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class JobStep(str, Enum):
    """Pipeline steps, in execution order."""
    BUILD_RAW_ZIP = "ocr.build-raw-zip"
    PREPROCESS_IMAGES_AND_CROPS = "ocr.preprocess-images-and-crops"
    CREATE_AND_AWAIT_BATCH = "ocr.create-and-await-batch"
    SAVE_RESULTS_TO_DB = "ocr.save-results-to-db"
    BUILD_DOCS_AND_CLEANUP = "ocr.build-docs-from-db-and-cleanup"

    @property
    def rank(self) -> int:
        return STEP_RANK[self]

    @classmethod
    def from_stored(cls, value: str) -> "JobStep":
        """Parse a persisted step value, accepting legacy step names."""
        if value in LEGACY_STEP_NAMES:
            return LEGACY_STEP_NAMES[value]
        try:
            return cls(value)
        except ValueError:
            pass
        # Member names ("create_and_await_batch") as typed on the CLI
        member = value.upper().replace("-", "_")
        if member in cls.__members__:
            return cls[member]
        raise ValueError(f"Unknown job step: {value!r}")


class StepSchema(str, Enum):
    """Step schema variant recorded on each job."""
    FIVE_STEP = "five_step"
    LEGACY_FOUR_STEP = "legacy_four_step"

    @property
    def steps(self) -> tuple[JobStep, ...]:
        return SCHEMA_STEPS[self]

    @property
    def first_step(self) -> JobStep:
        return self.steps[0]

    @property
    def last_step(self) -> JobStep:
        return self.steps[-1]


# ─── Order Table ──────────────────────────────────────────────────────────────

STEP_RANK: dict[JobStep, int] = {
    JobStep.BUILD_RAW_ZIP: 0,
    JobStep.PREPROCESS_IMAGES_AND_CROPS: 1,
    JobStep.CREATE_AND_AWAIT_BATCH: 2,
    JobStep.SAVE_RESULTS_TO_DB: 3,
    JobStep.BUILD_DOCS_AND_CLEANUP: 4,
}

SCHEMA_STEPS: dict[StepSchema, tuple[JobStep, ...]] = {
    StepSchema.FIVE_STEP: (
        JobStep.BUILD_RAW_ZIP,
        JobStep.PREPROCESS_IMAGES_AND_CROPS,
        JobStep.CREATE_AND_AWAIT_BATCH,
        JobStep.SAVE_RESULTS_TO_DB,
        JobStep.BUILD_DOCS_AND_CLEANUP,
    ),
    StepSchema.LEGACY_FOUR_STEP: (
        JobStep.PREPROCESS_IMAGES_AND_CROPS,
        JobStep.CREATE_AND_AWAIT_BATCH,
        JobStep.SAVE_RESULTS_TO_DB,
        JobStep.BUILD_DOCS_AND_CLEANUP,
    ),
}

# Values written by the four-step schema before step ids were introduced
LEGACY_STEP_NAMES: dict[str, JobStep] = {
    "PREPROCESSING": JobStep.PREPROCESS_IMAGES_AND_CROPS,
    "BATCH_SUBMITTED": JobStep.CREATE_AND_AWAIT_BATCH,
    "RESULTS_SAVED": JobStep.SAVE_RESULTS_TO_DB,
    "DOCS_BUILT": JobStep.BUILD_DOCS_AND_CLEANUP,
}


# ─── Ordering Helpers ─────────────────────────────────────────────────────────


def step_precedes(a: JobStep, b: JobStep) -> bool:
    """True if step `a` runs strictly before step `b` in every schema."""
    return STEP_RANK[a] < STEP_RANK[b]


def is_valid_step(schema: StepSchema, step: JobStep) -> bool:
    return step in SCHEMA_STEPS[schema]


def next_step(schema: StepSchema, step: JobStep) -> Optional[JobStep]:
    """Return the step following `step` in `schema`, or None if last."""
    steps = SCHEMA_STEPS[schema]
    position = steps.index(step)
    if position + 1 < len(steps):
        return steps[position + 1]
    return None


def steps_from(schema: StepSchema, step: JobStep) -> tuple[JobStep, ...]:
    """All steps of `schema` at or after `step`."""
    return tuple(s for s in SCHEMA_STEPS[schema] if STEP_RANK[s] >= STEP_RANK[step])
