"""
SQLite Job Store
================
Persistent job records, per-frame recognition rows and assembled
paragraphs. No in-memory caching — always reads from disk.

Step transitions go through ``commit_step``, a conditional UPDATE guarded
by the job's ``(current_step, revision)``. A writer holding a stale view
of the job changes nothing and gets False back.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

# Default database path: project_root/database.sqlite
_DEFAULT_DB_PATH = str(Path(__file__).parent.parent / "database.sqlite")

JOB_FIELDS = {
    "job_type", "step_schema", "current_step", "status", "failed_step",
    "last_error", "zip_key", "raw_zip_key", "raw_zip_size_bytes",
    "crops_zip_key", "txt_key", "txt_size_bytes", "docx_key",
    "docx_size_bytes", "thumbnail_key", "parent_job_id", "total_images",
    "processed_images", "batch_id", "batch_status", "batch_submission_count",
}

FRAME_FIELDS = {
    "filename", "crop_name", "base_key", "sequence_index", "include_in_zip",
    "recognition_status", "attempts", "text", "error",
}


def get_db_path() -> str:
    """Return the configured database path."""
    return os.environ.get("OCR_PIPELINE_DB_PATH", _DEFAULT_DB_PATH)


@contextmanager
def get_connection(db_path: str = None):
    """
    Context manager for database connections.
    Ensures proper commit/rollback and connection cleanup.
    """
    db_path = db_path or get_db_path()
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(db_path: str = None):
    """
    Initialize the database schema.
    Safe to call multiple times — uses IF NOT EXISTS.
    """
    db_path = db_path or get_db_path()
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    logger.info(f"Initializing database at: {db_path}")

    with get_connection(db_path) as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                job_type TEXT NOT NULL DEFAULT 'ocr',
                step_schema TEXT NOT NULL DEFAULT 'five_step',
                current_step TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                failed_step TEXT DEFAULT NULL,
                last_error TEXT DEFAULT NULL,
                zip_key TEXT DEFAULT NULL,
                raw_zip_key TEXT DEFAULT NULL,
                raw_zip_size_bytes INTEGER DEFAULT NULL,
                crops_zip_key TEXT DEFAULT NULL,
                txt_key TEXT DEFAULT NULL,
                txt_size_bytes INTEGER DEFAULT NULL,
                docx_key TEXT DEFAULT NULL,
                docx_size_bytes INTEGER DEFAULT NULL,
                thumbnail_key TEXT DEFAULT NULL,
                parent_job_id TEXT DEFAULT NULL,
                total_images INTEGER DEFAULT 0,
                processed_images INTEGER DEFAULT 0,
                batch_id TEXT DEFAULT NULL,
                batch_status TEXT DEFAULT NULL,
                batch_submission_count INTEGER DEFAULT 0,
                revision INTEGER NOT NULL DEFAULT 0,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY(parent_job_id) REFERENCES jobs(id) ON DELETE SET NULL
            );

            CREATE TABLE IF NOT EXISTS job_frames (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL,
                idx INTEGER NOT NULL,
                filename TEXT NOT NULL,
                crop_name TEXT DEFAULT '',
                base_key TEXT NOT NULL,
                sequence_index INTEGER DEFAULT 0,
                include_in_zip INTEGER DEFAULT 0,
                recognition_status TEXT DEFAULT 'pending',
                attempts INTEGER DEFAULT 0,
                text TEXT DEFAULT NULL,
                error TEXT DEFAULT NULL,
                UNIQUE(job_id, idx),
                FOREIGN KEY(job_id) REFERENCES jobs(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS job_paragraphs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                base_key TEXT NOT NULL,
                text TEXT DEFAULT '',
                FOREIGN KEY(job_id) REFERENCES jobs(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_jobs_status
                ON jobs(status);
            CREATE INDEX IF NOT EXISTS idx_frames_job_id
                ON job_frames(job_id, idx);
            CREATE INDEX IF NOT EXISTS idx_paragraphs_job_id
                ON job_paragraphs(job_id, position);
        """)

    # ── Migrations for existing databases ────────────────────────────
    _migrate_add_columns(db_path)

    logger.info("Database schema initialized successfully")


def _migrate_add_columns(db_path: str = None):
    """Add columns that may be missing in databases from older versions."""
    db_path = db_path or get_db_path()
    with get_connection(db_path) as conn:
        cols = {
            row["name"]
            for row in conn.execute("PRAGMA table_info(jobs)").fetchall()
        }
        # Jobs created before the raw-zip step carry no schema column
        if "step_schema" not in cols:
            conn.execute(
                "ALTER TABLE jobs ADD COLUMN step_schema TEXT NOT NULL "
                "DEFAULT 'legacy_four_step'")
            logger.info("Migrated: added jobs.step_schema")
        for name, ddl in (
            ("raw_zip_key", "TEXT DEFAULT NULL"),
            ("raw_zip_size_bytes", "INTEGER DEFAULT NULL"),
            ("thumbnail_key", "TEXT DEFAULT NULL"),
            ("parent_job_id", "TEXT DEFAULT NULL"),
            ("batch_submission_count", "INTEGER DEFAULT 0"),
            ("revision", "INTEGER NOT NULL DEFAULT 0"),
        ):
            if name not in cols:
                conn.execute(f"ALTER TABLE jobs ADD COLUMN {name} {ddl}")
                logger.info(f"Migrated: added jobs.{name}")
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_jobs_parent ON jobs(parent_job_id)")


# ─── Job CRUD ─────────────────────────────────────────────────────────────────


def insert_job(
    job_id: str,
    current_step: str,
    job_type: str = "ocr",
    step_schema: str = "five_step",
    zip_key: Optional[str] = None,
    parent_job_id: Optional[str] = None,
    status: str = "pending",
    db_path: str = None,
) -> dict:
    """Insert a new job record. Returns the stored row."""
    with get_connection(db_path) as conn:
        conn.execute(
            """INSERT INTO jobs
               (id, job_type, step_schema, current_step, status, zip_key,
                parent_job_id)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (job_id, job_type, step_schema, current_step, status, zip_key,
             parent_job_id),
        )
        row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
    logger.info(f"Inserted job id={job_id} type={job_type} schema={step_schema}")
    return dict(row)


def get_job(job_id: str, db_path: str = None) -> Optional[dict]:
    """Fetch a single job by ID."""
    with get_connection(db_path) as conn:
        row = conn.execute(
            "SELECT * FROM jobs WHERE id = ?", (job_id,)
        ).fetchone()
        return dict(row) if row else None


def list_jobs(
    status: Optional[str] = None, limit: int = 100, db_path: str = None
) -> list[dict]:
    """List jobs, newest first."""
    query = "SELECT * FROM jobs"
    params: list = []
    if status:
        query += " WHERE status = ?"
        params.append(status)
    query += " ORDER BY created_at DESC, id LIMIT ?"
    params.append(limit)
    with get_connection(db_path) as conn:
        rows = conn.execute(query, params).fetchall()
        return [dict(r) for r in rows]


def list_jobs_by_status(statuses: Iterable[str], db_path: str = None) -> list[dict]:
    """Jobs whose status is any of `statuses`, oldest first."""
    statuses = list(statuses)
    if not statuses:
        return []
    placeholders = ", ".join("?" for _ in statuses)
    with get_connection(db_path) as conn:
        rows = conn.execute(
            f"SELECT * FROM jobs WHERE status IN ({placeholders}) "
            f"ORDER BY created_at, id",
            statuses,
        ).fetchall()
        return [dict(r) for r in rows]


def update_job(job_id: str, db_path: str = None, **fields) -> bool:
    """Unconditionally update job fields. Returns True if row was found."""
    fields = {k: v for k, v in fields.items() if k in JOB_FIELDS}
    if not fields:
        return False

    set_clause = ", ".join(f"{k} = ?" for k in fields)
    values = list(fields.values()) + [job_id]

    with get_connection(db_path) as conn:
        cursor = conn.execute(
            f"UPDATE jobs SET {set_clause}, updated_at = CURRENT_TIMESTAMP "
            f"WHERE id = ?",
            values,
        )
        return cursor.rowcount > 0


def get_parent_id(job_id: str, db_path: str = None) -> Optional[str]:
    with get_connection(db_path) as conn:
        row = conn.execute(
            "SELECT parent_job_id FROM jobs WHERE id = ?", (job_id,)
        ).fetchone()
        return row["parent_job_id"] if row else None


def get_ancestor_ids(job_id: str, db_path: str = None) -> list[str]:
    """
    Walk parent links upward from `job_id` (inclusive).
    Stops at the root, a dangling link, or a repeated id.
    """
    chain: list[str] = []
    current: Optional[str] = job_id
    with get_connection(db_path) as conn:
        while current and current not in chain:
            row = conn.execute(
                "SELECT parent_job_id FROM jobs WHERE id = ?", (current,)
            ).fetchone()
            if not row:
                break
            chain.append(current)
            current = row["parent_job_id"]
    return chain


def list_children(job_id: str, db_path: str = None) -> list[dict]:
    with get_connection(db_path) as conn:
        rows = conn.execute(
            "SELECT * FROM jobs WHERE parent_job_id = ? ORDER BY created_at, id",
            (job_id,),
        ).fetchall()
        return [dict(r) for r in rows]


# ─── Guarded Step Commits ─────────────────────────────────────────────────────


def commit_step(
    job_id: str,
    expected_step: str,
    expected_revision: int,
    frames: Optional[list[dict]] = None,
    frame_updates: Optional[list[dict]] = None,
    paragraphs: Optional[list[dict]] = None,
    db_path: str = None,
    **fields,
) -> bool:
    """
    Apply a step's writes in one transaction, only if the job is still at
    `expected_step` with `expected_revision`.

    Args:
        frames: Replace all frame rows of the job with these.
        frame_updates: Per-frame field updates, each keyed by ``idx``.
        paragraphs: Replace all paragraph rows of the job with these.
        **fields: Job columns to set (e.g. current_step, crops_zip_key).

    Returns:
        False if the guard did not match. Nothing is written in that case.
    """
    fields = {k: v for k, v in fields.items() if k in JOB_FIELDS}
    set_clause = "".join(f"{k} = ?, " for k in fields)

    with get_connection(db_path) as conn:
        cursor = conn.execute(
            f"UPDATE jobs SET {set_clause}updated_at = CURRENT_TIMESTAMP "
            f"WHERE id = ? AND current_step = ? AND revision = ?",
            list(fields.values()) + [job_id, expected_step, expected_revision],
        )
        if cursor.rowcount == 0:
            return False

        if frames is not None:
            conn.execute("DELETE FROM job_frames WHERE job_id = ?", (job_id,))
            _insert_frames(conn, job_id, frames)

        for update in frame_updates or []:
            values = {k: v for k, v in update.items() if k in FRAME_FIELDS}
            if not values:
                continue
            clause = ", ".join(f"{k} = ?" for k in values)
            conn.execute(
                f"UPDATE job_frames SET {clause} WHERE job_id = ? AND idx = ?",
                list(values.values()) + [job_id, update["idx"]],
            )

        if paragraphs is not None:
            conn.execute("DELETE FROM job_paragraphs WHERE job_id = ?", (job_id,))
            conn.executemany(
                """INSERT INTO job_paragraphs (job_id, position, base_key, text)
                   VALUES (?, ?, ?, ?)""",
                [(job_id, p["position"], p["base_key"], p["text"])
                 for p in paragraphs],
            )
        return True


def mark_failed(
    job_id: str,
    expected_revision: int,
    failed_step: str,
    last_error: str,
    db_path: str = None,
) -> bool:
    """
    Record a step failure unless the job was rewound in the meantime.
    Returns False if the revision no longer matches.
    """
    with get_connection(db_path) as conn:
        cursor = conn.execute(
            """UPDATE jobs SET status = 'failed', failed_step = ?,
                   last_error = ?, updated_at = CURRENT_TIMESTAMP
               WHERE id = ? AND revision = ?""",
            (failed_step, last_error[:5000], job_id, expected_revision),
        )
        return cursor.rowcount > 0


def reset_job_from_step(
    job_id: str,
    expected_revision: int,
    to_step: str,
    reset_fields: Optional[dict] = None,
    delete_frames: bool = False,
    reset_recognition: bool = False,
    delete_paragraphs: bool = False,
    db_path: str = None,
) -> bool:
    """
    Rewind a job to `to_step` in one transaction: pending status, cleared
    failure info, bumped revision, and `reset_fields` written (pointers
    of the invalidated steps are reset to NULL this way).
    Returns False if the revision changed underneath.
    """
    fields = {k: v for k, v in (reset_fields or {}).items() if k in JOB_FIELDS}
    set_clause = "".join(f"{k} = ?, " for k in fields)

    with get_connection(db_path) as conn:
        cursor = conn.execute(
            f"""UPDATE jobs SET {set_clause}
                    current_step = ?, status = 'pending',
                    failed_step = NULL, last_error = NULL,
                    revision = revision + 1,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND revision = ?""",
            list(fields.values()) + [to_step, job_id, expected_revision],
        )
        if cursor.rowcount == 0:
            return False

        if delete_frames:
            conn.execute("DELETE FROM job_frames WHERE job_id = ?", (job_id,))
        elif reset_recognition:
            conn.execute(
                """UPDATE job_frames
                   SET recognition_status = 'pending', attempts = 0,
                       text = NULL, error = NULL
                   WHERE job_id = ?""",
                (job_id,),
            )
        if delete_paragraphs:
            conn.execute("DELETE FROM job_paragraphs WHERE job_id = ?", (job_id,))
        return True


# ─── Frames & Paragraphs ──────────────────────────────────────────────────────


def get_frames(job_id: str, db_path: str = None) -> list[dict]:
    """Frame rows of a job in submission order."""
    with get_connection(db_path) as conn:
        rows = conn.execute(
            "SELECT * FROM job_frames WHERE job_id = ? ORDER BY idx",
            (job_id,),
        ).fetchall()
        return [dict(r) for r in rows]


def count_frames(
    job_id: str, recognition_status: Optional[str] = None, db_path: str = None
) -> int:
    query = "SELECT COUNT(*) as cnt FROM job_frames WHERE job_id = ?"
    params: list = [job_id]
    if recognition_status:
        query += " AND recognition_status = ?"
        params.append(recognition_status)
    with get_connection(db_path) as conn:
        row = conn.execute(query, params).fetchone()
        return row["cnt"] if row else 0


def reset_failed_frames(job_id: str, db_path: str = None) -> int:
    """Give failed frames a fresh attempt budget. Returns rows changed."""
    with get_connection(db_path) as conn:
        cursor = conn.execute(
            """UPDATE job_frames SET attempts = 0
               WHERE job_id = ? AND recognition_status = 'failed'""",
            (job_id,),
        )
        if cursor.rowcount > 0:
            logger.info(f"Reset attempts of {cursor.rowcount} failed frames for job {job_id}")
        return cursor.rowcount


def get_paragraphs(job_id: str, db_path: str = None) -> list[dict]:
    """Paragraph rows of a job in document order."""
    with get_connection(db_path) as conn:
        rows = conn.execute(
            "SELECT * FROM job_paragraphs WHERE job_id = ? ORDER BY position",
            (job_id,),
        ).fetchall()
        return [dict(r) for r in rows]


def count_paragraphs(job_id: str, db_path: str = None) -> int:
    with get_connection(db_path) as conn:
        row = conn.execute(
            "SELECT COUNT(*) as cnt FROM job_paragraphs WHERE job_id = ?",
            (job_id,),
        ).fetchone()
        return row["cnt"] if row else 0


# ─── Helper ──────────────────────────────────────────────────────────────────


def _insert_frames(conn: sqlite3.Connection, job_id: str, frames: list[dict]):
    conn.executemany(
        """INSERT INTO job_frames
           (job_id, idx, filename, crop_name, base_key, sequence_index,
            include_in_zip, recognition_status, attempts, text, error)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        [
            (
                job_id,
                f["idx"],
                f["filename"],
                f.get("crop_name", ""),
                f["base_key"],
                f.get("sequence_index", 0),
                1 if f.get("include_in_zip") else 0,
                f.get("recognition_status", "pending"),
                f.get("attempts", 0),
                f.get("text"),
                f.get("error"),
            )
            for f in frames
        ],
    )
