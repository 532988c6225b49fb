"""
Test Suite for Batch Recognition
================================
OpenAI Batch API adapter with a mocked client.
"""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import openai
import pytest

from ocr_pipeline.errors import ExternalServiceError
from ocr_pipeline.models import BatchStatus, ImageRef
from ocr_pipeline.recognition import (
    CHAT_COMPLETIONS_ENDPOINT,
    OpenAIBatchRecognizer,
    completion_text,
    frame_ref,
    is_empty_text,
    parse_frame_ref,
    parse_result_lines,
)


def _image(index=0, filename="1.png"):
    return ImageRef(
        frame_ref=frame_ref("job-a", index, filename),
        filename=filename,
        data=b"\x89PNG fake",
    )


def _output_line(ref, content, status_code=200):
    return json.dumps({
        "id": "req",
        "custom_id": ref,
        "response": {
            "status_code": status_code,
            "body": {"choices": [{"message": {"role": "assistant", "content": content}}]},
        },
        "error": None,
    })


# ═══════════════════════════════════════════════════════════════════════════════
# FRAME REFERENCE TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestFrameRef:
    """Test request ids that carry frame identity."""

    def test_format(self):
        assert frame_ref("abc", 3, "4.1.png") == "job-abc-frame-3-4.1.png"

    def test_parse_with_dashed_job_id(self):
        ref = frame_ref("1b2c-33-ff", 12, "7-1.png")
        assert parse_frame_ref(ref) == ("1b2c-33-ff", 12, "7-1.png")

    def test_parse_rejects_foreign_ids(self):
        assert parse_frame_ref("request-1") is None
        assert parse_frame_ref("") is None


# ═══════════════════════════════════════════════════════════════════════════════
# SUBMIT TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestSubmit:
    """Test building and uploading batch request files."""

    def test_request_line(self):
        recognizer = OpenAIBatchRecognizer(client=MagicMock(), model="m", max_tokens=50)
        line = recognizer.build_request_line(_image())
        assert line["custom_id"] == "job-job-a-frame-0-1.png"
        assert line["url"] == CHAT_COMPLETIONS_ENDPOINT
        assert line["body"]["model"] == "m"
        assert line["body"]["temperature"] == 0
        assert line["body"]["max_tokens"] == 50
        parts = line["body"]["messages"][0]["content"]
        assert parts[0]["type"] == "text"
        assert parts[1]["image_url"]["url"].startswith("data:image/png;base64,")

    def test_submit_uploads_file_and_creates_batch(self, tmp_path):
        client = MagicMock()
        client.files.create.return_value = MagicMock(id="file-1")
        client.batches.create.return_value = MagicMock(id="batch_1")
        recognizer = OpenAIBatchRecognizer(client=client, completion_window="24h")

        path = tmp_path / "tmp" / "job-a-ocr-batch-1.jsonl"
        batch_id = recognizer.submit([_image(0, "1.png"), _image(1, "2.png")], request_path=path)

        assert batch_id == "batch_1"
        lines = path.read_text(encoding="utf-8").splitlines()
        assert [json.loads(l)["custom_id"] for l in lines] == [
            "job-job-a-frame-0-1.png", "job-job-a-frame-1-2.png",
        ]
        assert client.files.create.call_args.kwargs["purpose"] == "batch"
        client.batches.create.assert_called_once_with(
            input_file_id="file-1",
            endpoint=CHAT_COMPLETIONS_ENDPOINT,
            completion_window="24h",
        )

    def test_submit_empty(self):
        with pytest.raises(ExternalServiceError):
            OpenAIBatchRecognizer(client=MagicMock()).submit([])

    def test_submit_api_error(self, tmp_path):
        client = MagicMock()
        client.files.create.side_effect = openai.OpenAIError("quota exceeded")
        recognizer = OpenAIBatchRecognizer(client=client)
        with pytest.raises(ExternalServiceError, match="quota exceeded"):
            recognizer.submit([_image()], request_path=tmp_path / "r.jsonl")


# ═══════════════════════════════════════════════════════════════════════════════
# POLL TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestPoll:
    """Test reading batch status and results back."""

    def test_in_progress(self):
        client = MagicMock()
        client.batches.retrieve.return_value = MagicMock(status="in_progress")
        result = OpenAIBatchRecognizer(client=client).poll("batch_1")
        assert result.status == BatchStatus.IN_PROGRESS
        assert result.items == []
        client.files.content.assert_not_called()

    def test_completed_reads_output_and_error_files(self):
        ok_ref = frame_ref("a", 0, "1.png")
        bad_ref = frame_ref("a", 1, "2.png")
        contents = {
            "out": _output_line(ok_ref, "  Hello there \n") + "\n",
            "err": json.dumps({
                "custom_id": bad_ref,
                "response": None,
                "error": {"code": "rate_limit", "message": "Too many requests"},
            }),
        }
        client = MagicMock()
        client.batches.retrieve.return_value = MagicMock(
            status="completed", output_file_id="out", error_file_id="err"
        )
        client.files.content.side_effect = lambda file_id: MagicMock(text=contents[file_id])

        result = OpenAIBatchRecognizer(client=client).poll("batch_1")

        assert result.status == BatchStatus.COMPLETED
        by_ref = {item.frame_ref: item for item in result.items}
        assert by_ref[ok_ref].text == "Hello there"
        assert by_ref[ok_ref].ok
        assert by_ref[bad_ref].error == "Too many requests"

    def test_completed_without_error_file(self):
        client = MagicMock()
        client.batches.retrieve.return_value = MagicMock(
            status="completed", output_file_id="out", error_file_id=None
        )
        client.files.content.return_value = MagicMock(text=_output_line("r", "x"))
        result = OpenAIBatchRecognizer(client=client).poll("batch_1")
        assert [i.text for i in result.items] == ["x"]
        client.files.content.assert_called_once_with("out")

    def test_failed_status(self):
        client = MagicMock()
        client.batches.retrieve.return_value = MagicMock(status="expired")
        result = OpenAIBatchRecognizer(client=client).poll("batch_1")
        assert result.is_terminal_failure

    def test_api_error(self):
        client = MagicMock()
        client.batches.retrieve.side_effect = openai.OpenAIError("connection reset")
        with pytest.raises(ExternalServiceError):
            OpenAIBatchRecognizer(client=client).poll("batch_1")

    def test_unparseable_output(self):
        client = MagicMock()
        client.batches.retrieve.return_value = MagicMock(
            status="completed", output_file_id="out", error_file_id=None
        )
        client.files.content.return_value = MagicMock(text="{not json")
        with pytest.raises(ExternalServiceError):
            OpenAIBatchRecognizer(client=client).poll("batch_1")

    def test_unknown_status(self):
        client = MagicMock()
        client.batches.retrieve.return_value = MagicMock(status="teleported")
        with pytest.raises(ExternalServiceError):
            OpenAIBatchRecognizer(client=client).poll("batch_1")


# ═══════════════════════════════════════════════════════════════════════════════
# OUTPUT PARSING TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestParseResultLines:
    """Test per-line result parsing."""

    def test_http_error_response(self):
        line = json.dumps({
            "custom_id": "r1",
            "response": {
                "status_code": 400,
                "body": {"error": {"message": "Invalid image"}},
            },
        })
        [item] = parse_result_lines(line)
        assert item.error == "Invalid image"

    def test_http_error_without_body(self):
        line = json.dumps({"custom_id": "r1", "response": {"status_code": 500}})
        [item] = parse_result_lines(line)
        assert item.error == "HTTP 500"

    def test_blank_lines_and_missing_ids_skipped(self):
        content = "\n" + json.dumps({"response": {}}) + "\n\n" + _output_line("r2", "ok")
        assert [i.frame_ref for i in parse_result_lines(content)] == ["r2"]

    def test_content_parts(self):
        assert completion_text([{"type": "text", "text": "a"}, {"type": "text", "text": "b "}]) == "ab"
        assert completion_text(None) == ""
        assert completion_text(" x ") == "x"

    def test_invalid_json(self):
        with pytest.raises(ValueError):
            parse_result_lines("{oops")

    @pytest.mark.parametrize("text,empty", [
        (None, True),
        ("", True),
        ("   ", True),
        ("<EMPTY>", True),
        (" <EMPTY> ", True),
        ("Hello", False),
    ])
    def test_is_empty_text(self, text, empty):
        assert is_empty_text(text) is empty
