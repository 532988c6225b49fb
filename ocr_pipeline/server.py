"""
HTTP Microservice
=================
Flask-based HTTP API for the OCR job pipeline.

Endpoints:
    POST   /api/uploads                        → Signed URL for uploading a zip
    POST   /api/jobs                           → Create a job (multipart zip or {"zip_key"})
    GET    /api/jobs                           → List jobs
    GET    /api/jobs/<id>                      → Job status
    POST   /api/jobs/<id>/retry                → Retry from the current step
    POST   /api/jobs/<id>/retry-from-step      → Rewind to {"step"} and rerun
    GET    /api/jobs/<id>/result               → Signed download URLs
    POST   /api/jobs/<id>/subtitle-removal     → Create a child job
    GET    /files/<token>                      → Signed download
    PUT    /files/<token>                      → Signed upload
    GET    /api/health                         → Health check
"""

from __future__ import annotations

import io
import logging
import uuid
import zipfile

from flask import Flask, jsonify, request, send_file
from flask_cors import CORS
from itsdangerous import BadSignature, SignatureExpired

from . import __version__
from . import background_worker
from . import database as db
from . import storage
from .config import PipelineConfig
from .errors import (
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    PipelineError,
    StorageIOError,
    ValidationError,
)
from .models import Job, JobStatus, JobType, StepOutcome
from .state_machine import PipelineStateMachine
from .steps import JobStep

logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app)

_ERROR_STATUS = {
    NotFoundError: 404,
    ConflictError: 409,
    ValidationError: 400,
    ExternalServiceError: 502,
    StorageIOError: 500,
}


def create_app(config: dict = None, machine: PipelineStateMachine = None) -> Flask:
    """
    Create and configure the Flask app.

    Config keys:
        PIPELINE_CONFIG    PipelineConfig (default: from environment)
        SYNC_EXECUTION     run jobs inline instead of on worker threads
        RECOVER_JOBS       re-spawn unfinished jobs on startup
        WORKER_STOP_TIMEOUT  seconds a retry waits for a busy worker
    """
    if config:
        app.config.update(config)

    app.config.setdefault("MAX_CONTENT_LENGTH", 500 * 1024 * 1024)  # 500MB
    app.config.setdefault("SYNC_EXECUTION", False)
    app.config.setdefault("RECOVER_JOBS", False)
    app.config.setdefault("WORKER_STOP_TIMEOUT", 10.0)

    pipeline_config = app.config.get("PIPELINE_CONFIG")
    if machine is None:
        pipeline_config = pipeline_config or PipelineConfig.from_env()
        db.init_db(pipeline_config.db_path)
        machine = PipelineStateMachine(pipeline_config)
    else:
        db.init_db(machine.db_path)
    app.extensions["ocr_pipeline"] = machine

    if app.config["RECOVER_JOBS"] and not app.config["SYNC_EXECUTION"]:
        background_worker.recover_jobs(machine)

    return app


def _machine() -> PipelineStateMachine:
    return app.extensions["ocr_pipeline"]


def _job_json(job: Job) -> dict:
    data = job.model_dump(mode="json")
    data["worker_active"] = background_worker.get_worker(job.id) is not None
    return data


def _dispatch(job_id: str, retry_from: JobStep = None, retry: bool = False):
    """
    Run a job inline (SYNC_EXECUTION) or on a worker thread.

    A retry first stops the job's current worker. Raises ConflictError
    when no worker could be started.
    """
    machine = _machine()
    if not app.config["SYNC_EXECUTION"]:
        if retry or retry_from is not None:
            timeout = app.config["WORKER_STOP_TIMEOUT"]
            if not background_worker.stop_worker(job_id, timeout=timeout):
                raise ConflictError(
                    f"Job {job_id} is busy running a step; try again shortly"
                )
        thread = background_worker.spawn_worker(
            job_id, machine, retry_from=retry_from, retry=retry
        )
        if thread is None and (retry or retry_from is not None):
            raise ConflictError(f"Job {job_id} already has an active worker")
        return None
    if retry_from is not None:
        return machine.retry_from_step(job_id, retry_from)
    if retry:
        return machine.retry_job(job_id)
    return machine.advance(job_id)


# ─── Error Mapping ────────────────────────────────────────────────────────────


@app.errorhandler(PipelineError)
def handle_pipeline_error(e: PipelineError):
    status = next(
        (code for cls, code in _ERROR_STATUS.items() if isinstance(e, cls)), 500
    )
    if status >= 500:
        logger.error(f"Request failed: {e}")
    return jsonify({"error": str(e), "type": type(e).__name__}), status


# ─── Health Check ─────────────────────────────────────────────────────────────


@app.route("/api/health", methods=["GET"])
def health():
    """Health check endpoint."""
    return jsonify({
        "status": "healthy",
        "service": "ocr-pipeline",
        "version": __version__,
        "active_workers": len(background_worker.list_workers()),
    })


# ─── Uploads & Job Creation ───────────────────────────────────────────────────


@app.route("/api/uploads", methods=["POST"])
def request_upload():
    """Issue a signed PUT URL for uploading an input zip."""
    key = f"uploads/{uuid.uuid4()}.zip"
    signed = _machine().store.signed_upload_url(key, "application/zip")
    return jsonify({"zip_key": key, "upload": signed.model_dump()}), 201


@app.route("/api/jobs", methods=["POST"])
def create_job():
    """
    Create an OCR job and start processing it.

    Accepts either a multipart upload (field "file") or a JSON body
    {"zip_key": "..."} naming an already uploaded archive.
    """
    machine = _machine()
    job_id = str(uuid.uuid4())

    if "file" in request.files:
        file = request.files["file"]
        if not file.filename:
            return jsonify({"error": "No file selected"}), 400
        if not file.filename.lower().endswith(".zip"):
            return jsonify({"error": "Only ZIP archives are accepted"}), 400
        data = file.read()
        if not zipfile.is_zipfile(io.BytesIO(data)):
            return jsonify({"error": "Uploaded file is not a valid ZIP archive"}), 400
        zip_key = storage.input_zip_key(job_id)
        machine.store.put(zip_key, data, "application/zip")
    else:
        body = request.get_json(silent=True) or {}
        zip_key = body.get("zip_key")
        if not zip_key:
            return jsonify({"error": "Provide a zip file or a zip_key"}), 400

    job = machine.create_job(zip_key, job_id=job_id)
    logger.info(f"Job {job.id}: Created from {zip_key}, dispatching")
    outcome = _dispatch(job.id)

    response = _job_json(machine.load_job(job.id))
    if outcome is not None:
        response["outcome"] = outcome.value
    return jsonify(response), 202


@app.route("/api/jobs", methods=["GET"])
def list_jobs():
    """List jobs, newest first. Optional ?status= filter."""
    status = request.args.get("status")
    if status and status not in {s.value for s in JobStatus}:
        return jsonify({"error": f"Unknown status: {status}"}), 400
    limit = request.args.get("limit", 100, type=int)
    rows = db.list_jobs(status=status, limit=limit, db_path=_machine().db_path)
    return jsonify([_job_json(Job.from_row(r)) for r in rows])


@app.route("/api/jobs/<job_id>", methods=["GET"])
def get_job(job_id: str):
    return jsonify(_job_json(_machine().load_job(job_id)))


# ─── Retries ──────────────────────────────────────────────────────────────────


@app.route("/api/jobs/<job_id>/retry", methods=["POST"])
def retry_job(job_id: str):
    """Re-run a job from its current step."""
    machine = _machine()
    job = machine.load_job(job_id)
    if machine.nothing_to_retry(job):
        return jsonify({**_job_json(job), "outcome": StepOutcome.SKIPPED.value})

    outcome = _dispatch(job_id, retry=True)
    response = _job_json(machine.load_job(job_id))
    if outcome is not None:
        response["outcome"] = outcome.value
    return jsonify(response), 202


@app.route("/api/jobs/<job_id>/retry-from-step", methods=["POST"])
def retry_from_step(job_id: str):
    """Rewind a job to {"step": "<step id>"} and re-run it."""
    body = request.get_json(silent=True) or {}
    raw_step = body.get("step")
    if not raw_step:
        return jsonify({"error": "step is required"}), 400
    try:
        step = JobStep.from_stored(raw_step)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    machine = _machine()
    if app.config["SYNC_EXECUTION"]:
        outcome = machine.retry_from_step(job_id, step)
        return jsonify({**_job_json(machine.load_job(job_id)), "outcome": outcome.value})

    # Validate synchronously so conflicts surface as 409 before dispatch
    machine.check_retry_from(machine.load_job(job_id), step)
    _dispatch(job_id, retry_from=step)
    return jsonify(_job_json(machine.load_job(job_id))), 202


# ─── Results & Child Jobs ─────────────────────────────────────────────────────


@app.route("/api/jobs/<job_id>/result", methods=["GET"])
def get_result(job_id: str):
    """Signed download URLs for a completed job's artifacts."""
    machine = _machine()
    job = machine.load_job(job_id)
    if job.status != JobStatus.COMPLETED:
        return jsonify({
            "error": f"Job is {job.status.value}, results not available yet",
            "status": job.status.value,
        }), 409

    art = job.artifacts
    downloads = {}
    for name, key, filename in (
        ("txt", art.txt_key, f"{job.id}.txt"),
        ("docx", art.docx_key, f"{job.id}.docx"),
        ("raw_zip", art.raw_zip_key, f"{job.id}-raw-images.zip"),
        ("thumbnail", art.thumbnail_key, None),
    ):
        if key and machine.store.exists(key):
            downloads[name] = machine.store.signed_download_url(
                key, filename=filename
            ).model_dump()

    return jsonify({
        "job_id": job.id,
        "txt_size_bytes": art.txt_size_bytes,
        "docx_size_bytes": art.docx_size_bytes,
        "raw_zip_size_bytes": art.raw_zip_size_bytes,
        "downloads": downloads,
    })


@app.route("/api/jobs/<job_id>/subtitle-removal", methods=["POST"])
def create_subtitle_removal(job_id: str):
    """Create a subtitle-removal child job from a completed OCR job."""
    child = _machine().create_child_job(job_id, JobType.SUBTITLE_REMOVAL)
    return jsonify(_job_json(child)), 201


@app.route("/api/jobs/<job_id>/children", methods=["GET"])
def list_children(job_id: str):
    machine = _machine()
    machine.load_job(job_id)
    rows = db.list_children(job_id, db_path=machine.db_path)
    return jsonify([_job_json(Job.from_row(r)) for r in rows])


# ─── Signed File Access ───────────────────────────────────────────────────────


def _verify_token(token: str, method: str):
    signer = _machine().store.signer
    if signer is None:
        return None, (jsonify({"error": "Signed URLs are disabled"}), 404)
    try:
        return signer.verify(token, method), None
    except SignatureExpired:
        return None, (jsonify({"error": "Signed URL expired"}), 403)
    except BadSignature:
        return None, (jsonify({"error": "Invalid signed URL"}), 403)


@app.route("/files/<token>", methods=["GET"])
def download_file(token: str):
    payload, error = _verify_token(token, "GET")
    if error:
        return error
    data = _machine().store.get(payload["k"])
    return send_file(
        io.BytesIO(data),
        mimetype=payload.get("ct") or storage.guess_content_type(payload["k"]),
        as_attachment=bool(payload.get("fn")),
        download_name=payload.get("fn"),
    )


@app.route("/files/<token>", methods=["PUT"])
def upload_file(token: str):
    payload, error = _verify_token(token, "PUT")
    if error:
        return error
    _machine().store.put(payload["k"], request.get_data(), payload.get("ct"))
    return jsonify({"key": payload["k"], "stored": True}), 201


# ─── Run Server ──────────────────────────────────────────────────────────────


def run_server(
    host: str = "0.0.0.0",
    port: int = 5000,
    debug: bool = False,
    config: PipelineConfig = None,
):
    """Start the microservice server."""
    create_app({"PIPELINE_CONFIG": config, "RECOVER_JOBS": True})
    app.run(host=host, port=port, debug=debug)


if __name__ == "__main__":
    run_server(debug=True)
