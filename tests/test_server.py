"""
Test Suite for the Service Surfaces
===================================
Flask API (inline execution), background workers and the CLI.
"""

from __future__ import annotations

import io
import time
from urllib.parse import urlparse

import pytest
from click.testing import CliRunner

from conftest import SAMPLE_TXT, make_zip, run_until_done, sample_entries
from ocr_pipeline import background_worker
from ocr_pipeline import database as db
from ocr_pipeline.cli import cli
from ocr_pipeline.models import JobStatus, StepOutcome
from ocr_pipeline.server import create_app
from ocr_pipeline.steps import JobStep


@pytest.fixture
def client(machine):
    app = create_app({"TESTING": True, "SYNC_EXECUTION": True}, machine=machine)
    return app.test_client()


def _upload_archive(client, data=None, name="pages.zip"):
    return client.post(
        "/api/jobs",
        data={"file": (io.BytesIO(data or make_zip(sample_entries())), name)},
        content_type="multipart/form-data",
    )


def _path(url: str) -> str:
    return urlparse(url).path


def _wait_for_workers(job_ids, timeout=15.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if all(background_worker.get_worker(j) is None for j in job_ids):
            return
        time.sleep(0.05)
    raise AssertionError("workers did not finish")


# ═══════════════════════════════════════════════════════════════════════════════
# API TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestJobApi:
    """Test job creation, status and retries over HTTP."""

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.get_json()["status"] == "healthy"

    def test_upload_and_complete(self, client):
        response = _upload_archive(client)
        assert response.status_code == 202
        body = response.get_json()
        assert body["outcome"] == "waiting"
        assert body["current_step"] == JobStep.CREATE_AND_AWAIT_BATCH.value
        job_id = body["id"]

        response = client.post(f"/api/jobs/{job_id}/retry")
        assert response.status_code == 202
        assert response.get_json()["outcome"] == "completed"

        status = client.get(f"/api/jobs/{job_id}").get_json()
        assert status["status"] == "completed"
        assert status["progress_percentage"] == 100.0

        again = client.post(f"/api/jobs/{job_id}/retry")
        assert again.status_code == 200
        assert again.get_json()["outcome"] == "skipped"

    def test_result_downloads(self, client, machine):
        job_id = _upload_archive(client).get_json()["id"]
        run_until_done(machine, job_id)

        result = client.get(f"/api/jobs/{job_id}/result")
        assert result.status_code == 200
        downloads = result.get_json()["downloads"]
        assert set(downloads) == {"txt", "docx", "raw_zip", "thumbnail"}

        txt = client.get(_path(downloads["txt"]["url"]))
        assert txt.status_code == 200
        assert txt.data == SAMPLE_TXT.encode("utf-8")
        assert "attachment" in txt.headers["Content-Disposition"]

    def test_result_before_completion(self, client):
        job_id = _upload_archive(client).get_json()["id"]
        response = client.get(f"/api/jobs/{job_id}/result")
        assert response.status_code == 409

    def test_signed_upload_flow(self, client):
        grant = client.post("/api/uploads")
        assert grant.status_code == 201
        grant = grant.get_json()

        put = client.put(
            _path(grant["upload"]["url"]),
            data=make_zip(sample_entries()),
            content_type="application/zip",
        )
        assert put.status_code == 201

        created = client.post("/api/jobs", json={"zip_key": grant["zip_key"]})
        assert created.status_code == 202
        assert created.get_json()["zip_key"] == grant["zip_key"]

    def test_unknown_zip_key(self, client):
        response = client.post("/api/jobs", json={"zip_key": "uploads/missing.zip"})
        assert response.status_code == 404
        assert response.get_json()["type"] == "NotFoundError"

    def test_rejects_non_zip_uploads(self, client):
        assert _upload_archive(client, data=b"plain text").status_code == 400
        assert _upload_archive(client, name="pages.rar").status_code == 400
        assert client.post("/api/jobs", json={}).status_code == 400

    def test_invalid_signed_urls(self, client):
        assert client.get("/files/not-a-token").status_code == 403
        grant = client.post("/api/uploads").get_json()
        assert client.get(_path(grant["upload"]["url"])).status_code == 403

    def test_missing_job(self, client):
        response = client.get("/api/jobs/nope")
        assert response.status_code == 404
        assert "nope" in response.get_json()["error"]

    def test_list_jobs(self, client):
        _upload_archive(client)
        assert len(client.get("/api/jobs").get_json()) == 1
        assert client.get("/api/jobs?status=completed").get_json() == []
        assert client.get("/api/jobs?status=bogus").status_code == 400


class TestRetryFromStepApi:
    """Test the rewind endpoint."""

    def test_rewind_completed_job(self, client, machine):
        job_id = _upload_archive(client).get_json()["id"]
        run_until_done(machine, job_id)

        response = client.post(
            f"/api/jobs/{job_id}/retry-from-step",
            json={"step": JobStep.SAVE_RESULTS_TO_DB.value},
        )
        assert response.status_code == 200
        body = response.get_json()
        assert body["outcome"] == "completed"
        assert body["revision"] == 1

    def test_step_validation(self, client):
        job_id = _upload_archive(client).get_json()["id"]
        url = f"/api/jobs/{job_id}/retry-from-step"
        assert client.post(url, json={}).status_code == 400
        assert client.post(url, json={"step": "ocr.teleport"}).status_code == 400

        conflict = client.post(url, json={"step": JobStep.BUILD_DOCS_AND_CLEANUP.value})
        assert conflict.status_code == 409
        assert conflict.get_json()["type"] == "ConflictError"

    def test_legacy_job_has_no_raw_zip_step(self, client, machine, upload):
        from ocr_pipeline.steps import StepSchema

        job = machine.create_job(upload(), step_schema=StepSchema.LEGACY_FOUR_STEP)
        response = client.post(
            f"/api/jobs/{job.id}/retry-from-step",
            json={"step": JobStep.BUILD_RAW_ZIP.value},
        )
        assert response.status_code == 409


class TestChildJobApi:
    """Test subtitle-removal child jobs over HTTP."""

    def test_create_child(self, client, machine):
        job_id = _upload_archive(client).get_json()["id"]
        assert client.post(f"/api/jobs/{job_id}/subtitle-removal").status_code == 409

        run_until_done(machine, job_id)
        response = client.post(f"/api/jobs/{job_id}/subtitle-removal")
        assert response.status_code == 201
        child = response.get_json()
        assert child["parent_job_id"] == job_id
        assert child["job_type"] == "subtitle_removal"

        children = client.get(f"/api/jobs/{job_id}/children").get_json()
        assert [c["id"] for c in children] == [child["id"]]


# ═══════════════════════════════════════════════════════════════════════════════
# BACKGROUND WORKER TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestBackgroundWorker:
    """Test driving jobs on worker threads."""

    def test_worker_completes_job(self, machine, upload):
        job = machine.create_job(upload())
        thread = background_worker.spawn_worker(job.id, machine, poll_interval=0)
        assert thread is not None
        thread.join(timeout=15)

        assert not thread.is_alive()
        assert machine.load_job(job.id).status == JobStatus.COMPLETED
        assert background_worker.get_worker(job.id) is None

    def test_worker_stops_on_failure(self, machine, upload):
        job = machine.create_job(upload({"readme.txt": b"x"}))
        thread = background_worker.spawn_worker(job.id, machine, poll_interval=0)
        thread.join(timeout=15)

        job = machine.load_job(job.id)
        assert job.status == JobStatus.FAILED
        assert job.failed_step == JobStep.BUILD_RAW_ZIP

    def test_worker_retry_from(self, machine, upload):
        job = machine.create_job(upload())
        run_until_done(machine, job.id)
        thread = background_worker.spawn_worker(
            job.id, machine, retry_from=JobStep.PREPROCESS_IMAGES_AND_CROPS, poll_interval=0
        )
        thread.join(timeout=15)
        job = machine.load_job(job.id)
        assert job.status == JobStatus.COMPLETED
        assert job.revision == 1

    def test_stop_request(self, machine, upload, recognizer):
        recognizer.polls_before_complete = 1000
        job = machine.create_job(upload())
        thread = background_worker.spawn_worker(job.id, machine, poll_interval=0.05)
        deadline = time.time() + 10
        while background_worker.get_worker(job.id) is None or \
                machine.load_job(job.id).batch.batch_id is None:
            assert time.time() < deadline
            time.sleep(0.02)

        assert background_worker.spawn_worker(job.id, machine) is None
        background_worker.get_worker(job.id).request_stop()
        thread.join(timeout=15)
        assert not thread.is_alive()
        assert machine.load_job(job.id).status == JobStatus.RUNNING

    def test_stop_worker_without_worker(self):
        assert background_worker.stop_worker("no-such-job", timeout=0.1) is True

    def test_recover_jobs(self, machine, upload):
        first = machine.create_job(upload())
        second = machine.create_job(upload())
        db.insert_job(
            "child-1",
            current_step=JobStep.BUILD_RAW_ZIP.value,
            job_type="subtitle_removal",
            zip_key=upload(),
            db_path=machine.db_path,
        )

        recovered = background_worker.recover_jobs(machine)
        assert sorted(recovered) == sorted([first.id, second.id])
        _wait_for_workers(recovered)

        for job_id in recovered:
            assert machine.load_job(job_id).status == JobStatus.COMPLETED
        assert machine.load_job("child-1").status == JobStatus.PENDING


class TestRetryUnderLiveWorker:
    """Test retries over HTTP while a worker is polling the batch."""

    @pytest.fixture
    def async_client(self, machine):
        machine.config.poll_interval_seconds = 0.02
        app = create_app({"TESTING": True, "SYNC_EXECUTION": False}, machine=machine)
        return app.test_client()

    def _waiting_job(self, machine, upload, recognizer):
        recognizer.polls_before_complete = 1000
        job = machine.create_job(upload())
        assert background_worker.spawn_worker(job.id, machine) is not None
        deadline = time.time() + 10
        while machine.load_job(job.id).batch.batch_id is None:
            assert time.time() < deadline
            time.sleep(0.02)
        return machine.load_job(job.id)

    def test_retry_from_step_rewinds_waiting_job(
        self, async_client, machine, upload, recognizer
    ):
        job = self._waiting_job(machine, upload, recognizer)
        assert job.current_step == JobStep.CREATE_AND_AWAIT_BATCH
        assert job.revision == 0
        recognizer.polls_before_complete = 0

        response = async_client.post(
            f"/api/jobs/{job.id}/retry-from-step",
            json={"step": JobStep.BUILD_RAW_ZIP.value},
        )
        assert response.status_code == 202
        _wait_for_workers([job.id])

        job = machine.load_job(job.id)
        assert job.revision == 1
        assert job.status == JobStatus.COMPLETED
        assert len(recognizer.submissions) == 2

    def test_retry_replaces_waiting_worker(self, async_client, machine, upload, recognizer):
        job = self._waiting_job(machine, upload, recognizer)
        old_worker = background_worker.get_worker(job.id)

        response = async_client.post(f"/api/jobs/{job.id}/retry")
        assert response.status_code == 202
        assert old_worker.wait_finished(timeout=5)

        new_worker = background_worker.get_worker(job.id)
        assert new_worker is not None
        assert new_worker is not old_worker
        assert background_worker.stop_worker(job.id, timeout=5)

    def test_busy_worker_is_a_conflict(
        self, async_client, machine, upload, recognizer, monkeypatch
    ):
        job = self._waiting_job(machine, upload, recognizer)
        monkeypatch.setattr(background_worker, "stop_worker", lambda job_id, timeout: False)

        response = async_client.post(
            f"/api/jobs/{job.id}/retry-from-step",
            json={"step": JobStep.BUILD_RAW_ZIP.value},
        )
        assert response.status_code == 409
        assert machine.load_job(job.id).revision == 0

        monkeypatch.undo()
        assert background_worker.stop_worker(job.id, timeout=5)


# ═══════════════════════════════════════════════════════════════════════════════
# CLI TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestCli:
    """Test the click command group."""

    def _base_args(self, config):
        return [
            "--db", config.db_path,
            "--storage-root", config.storage_root,
            "--base-dir", config.base_dir,
        ]

    def test_submit_without_waiting(self, config, tmp_path):
        archive = tmp_path / "pages.zip"
        archive.write_bytes(make_zip(sample_entries()))

        result = CliRunner().invoke(
            cli, self._base_args(config) + ["submit", str(archive), "--no-wait"]
        )
        assert result.exit_code == 0, result.output
        assert "Created job" in result.output

        rows = db.list_jobs(db_path=config.db_path)
        assert len(rows) == 1
        assert rows[0]["status"] == JobStatus.PENDING.value

        listing = CliRunner().invoke(cli, self._base_args(config) + ["jobs"])
        assert listing.exit_code == 0, listing.output
        assert "Jobs" in listing.output

    def test_status_of_missing_job(self, config):
        result = CliRunner().invoke(cli, self._base_args(config) + ["status", "nope"])
        assert result.exit_code == 1
        assert "Error" in result.output

    def test_retry_from_rejects_unknown_step(self, config):
        result = CliRunner().invoke(
            cli, self._base_args(config) + ["retry-from", "j1", "ocr.teleport"]
        )
        assert result.exit_code == 2

    def test_status_of_completed_job(self, config, machine, upload):
        job = machine.create_job(upload())
        assert run_until_done(machine, job.id) == StepOutcome.COMPLETED

        result = CliRunner().invoke(cli, self._base_args(config) + ["status", job.id])
        assert result.exit_code == 0
        assert "completed" in result.output
