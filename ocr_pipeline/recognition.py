"""
Batch Recognition
=================
Asynchronous bulk OCR through the OpenAI Batch API.

Each image becomes one chat-completions request line in a JSONL file.
The file is uploaded and a batch is created; later polls read the
output and error files back into per-image results.

Usage:
    recognizer = OpenAIBatchRecognizer(model="gpt-4o-mini")
    batch_id = recognizer.submit(images, request_path="tmp/job-ocr-batch-1.jsonl")
    result = recognizer.poll(batch_id)
"""

from __future__ import annotations

import base64
import json
import logging
import re
import tempfile
from pathlib import Path
from typing import Optional, Protocol, Union

import openai
from openai import OpenAI

from .config import DEFAULT_OCR_PROMPT
from .errors import ExternalServiceError
from .models import BatchItemResult, BatchPollResult, BatchStatus, ImageRef

logger = logging.getLogger(__name__)

CHAT_COMPLETIONS_ENDPOINT = "/v1/chat/completions"
EMPTY_SENTINEL = "<EMPTY>"

_FRAME_REF_RE = re.compile(r"^job-(.+)-frame-(\d+)-(.+)$")


def frame_ref(job_id: str, index: int, filename: str) -> str:
    """Request id for one frame, e.g. "job-abc-frame-3-4.1.png"."""
    return f"job-{job_id}-frame-{index}-{filename}"


def parse_frame_ref(ref: str) -> Optional[tuple[str, int, str]]:
    """Split a frame ref into (job_id, index, filename), or None."""
    match = _FRAME_REF_RE.match(ref or "")
    if not match:
        return None
    return match.group(1), int(match.group(2)), match.group(3)


class BatchRecognizer(Protocol):
    """Operations the pipeline needs from a batch OCR provider."""

    def submit(
        self, items: list[ImageRef], request_path: Optional[Union[str, Path]] = None
    ) -> str: ...

    def poll(self, batch_id: str) -> BatchPollResult: ...


class OpenAIBatchRecognizer:
    """BatchRecognizer backed by the OpenAI Batch API."""

    def __init__(
        self,
        client: Optional[OpenAI] = None,
        model: str = "gpt-4o-mini",
        prompt: str = DEFAULT_OCR_PROMPT,
        max_tokens: int = 96,
        completion_window: str = "24h",
    ):
        self._client = client
        self.model = model
        self.prompt = prompt
        self.max_tokens = max_tokens
        self.completion_window = completion_window

    @classmethod
    def from_config(cls, config) -> "OpenAIBatchRecognizer":
        return cls(
            model=config.openai_model,
            prompt=config.ocr_prompt,
            max_tokens=config.max_tokens,
            completion_window=config.completion_window,
        )

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            try:
                # Reads OPENAI_API_KEY / OPENAI_BASE_URL from the environment
                self._client = OpenAI()
            except openai.OpenAIError as e:
                raise ExternalServiceError(f"OpenAI client unavailable: {e}") from e
        return self._client

    # ─── Submit ───────────────────────────────────────────────────────────

    def build_request_line(self, item: ImageRef) -> dict:
        b64 = base64.b64encode(item.data).decode("utf-8")
        data_url = f"data:{item.content_type};base64,{b64}"
        return {
            "custom_id": item.frame_ref,
            "method": "POST",
            "url": CHAT_COMPLETIONS_ENDPOINT,
            "body": {
                "model": self.model,
                "temperature": 0,
                "max_tokens": self.max_tokens,
                "messages": [
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": self.prompt},
                            {"type": "image_url", "image_url": {"url": data_url}},
                        ],
                    }
                ],
            },
        }

    def write_requests(self, items: list[ImageRef], path: Union[str, Path]) -> Path:
        """Write the JSONL request file for `items`."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            for item in items:
                f.write(json.dumps(self.build_request_line(item), ensure_ascii=False))
                f.write("\n")
        return path

    def submit(
        self, items: list[ImageRef], request_path: Optional[Union[str, Path]] = None
    ) -> str:
        """Upload a request file for `items` and create a batch. Returns its id."""
        if not items:
            raise ExternalServiceError("Refusing to submit an empty batch")

        if request_path is None:
            handle = tempfile.NamedTemporaryFile(suffix=".jsonl", delete=False)
            handle.close()
            request_path = handle.name
        path = self.write_requests(items, request_path)

        try:
            with open(path, "rb") as f:
                input_file = self.client.files.create(file=f, purpose="batch")
            batch = self.client.batches.create(
                input_file_id=input_file.id,
                endpoint=CHAT_COMPLETIONS_ENDPOINT,
                completion_window=self.completion_window,
            )
        except openai.OpenAIError as e:
            raise ExternalServiceError(f"Batch submission failed: {e}") from e

        logger.info(
            f"Submitted batch {batch.id} with {len(items)} images "
            f"(input file {input_file.id})"
        )
        return batch.id

    # ─── Poll ─────────────────────────────────────────────────────────────

    def poll(self, batch_id: str) -> BatchPollResult:
        """Fetch batch status; on completion include per-item results."""
        try:
            batch = self.client.batches.retrieve(batch_id)
            status = BatchStatus(batch.status)
            if status != BatchStatus.COMPLETED:
                return BatchPollResult(status=status)

            items: list[BatchItemResult] = []
            for file_id in (batch.output_file_id, batch.error_file_id):
                if file_id:
                    content = self.client.files.content(file_id).text
                    items.extend(parse_result_lines(content))
        except openai.OpenAIError as e:
            raise ExternalServiceError(f"Polling batch {batch_id} failed: {e}") from e
        except ValueError as e:
            raise ExternalServiceError(f"Unexpected batch {batch_id} response: {e}") from e

        logger.info(f"Batch {batch_id} completed with {len(items)} results")
        return BatchPollResult(status=status, items=items)


# ─── Output Parsing ───────────────────────────────────────────────────────────


def parse_result_lines(content: str) -> list[BatchItemResult]:
    """Parse an output or error JSONL file into item results."""
    results = []
    for line in content.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON line in batch output: {e}") from e

        ref = parsed.get("custom_id")
        if not ref:
            continue

        error = parsed.get("error")
        response = parsed.get("response") or {}
        if not error and response.get("status_code", 200) >= 400:
            error = (response.get("body") or {}).get("error") or {
                "message": f"HTTP {response.get('status_code')}"
            }
        if error:
            message = error.get("message") or error.get("code") or "Unknown batch error"
            results.append(BatchItemResult(frame_ref=ref, error=message))
            continue

        choices = (response.get("body") or {}).get("choices") or [{}]
        content_part = (choices[0].get("message") or {}).get("content")
        results.append(BatchItemResult(frame_ref=ref, text=completion_text(content_part)))
    return results


def completion_text(content) -> str:
    """Flatten a chat message content (string or parts list) to text."""
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text") or "")
        return "".join(parts).strip()
    return ""


def is_empty_text(text: Optional[str]) -> bool:
    return not text or not text.strip() or text.strip() == EMPTY_SENTINEL
