"""
Object Storage
==============
Filesystem-backed object store with signed, time-limited URLs, plus the
per-job working directory layout.

Directory Layout:
    <storage_root>/
    └── jobs/{job_id}/
        ├── input.zip          # uploaded archive
        ├── raw-images.zip     # canonical one-image-per-page archive
        ├── crops.zip          # subtitle crops of every frame
        ├── thumbnail.jpg
        ├── document.txt
        └── document.docx

    <base_dir>/
    ├── image-files/{job_id}/{input.zip,raw,normalized,crops}
    └── tmp/{job_id}-ocr-batch-{n}.jsonl
"""

from __future__ import annotations

import logging
import mimetypes
import os
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol, Union

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from .errors import NotFoundError, StorageIOError
from .models import SignedUrl

logger = logging.getLogger(__name__)

SIGNING_SALT = "ocr-pipeline-files"

DEFAULT_UPLOAD_TTL = 12 * 60 * 60
DEFAULT_DOWNLOAD_TTL = 2 * 60 * 60


# ─── Deterministic Keys ───────────────────────────────────────────────────────


def job_key(job_id: str, name: str) -> str:
    return f"jobs/{job_id}/{name}"


def input_zip_key(job_id: str) -> str:
    return job_key(job_id, "input.zip")


def raw_zip_key(job_id: str) -> str:
    return job_key(job_id, "raw-images.zip")


def crops_zip_key(job_id: str) -> str:
    return job_key(job_id, "crops.zip")


def thumbnail_key(job_id: str) -> str:
    return job_key(job_id, "thumbnail.jpg")


def txt_key(job_id: str) -> str:
    return job_key(job_id, "document.txt")


def docx_key(job_id: str) -> str:
    return job_key(job_id, "document.docx")


# ─── Store Interface ──────────────────────────────────────────────────────────


class ObjectStore(Protocol):
    """Operations the pipeline needs from an object store."""

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None: ...

    def get(self, key: str) -> bytes: ...

    def exists(self, key: str) -> bool: ...

    def delete(self, key: str) -> None: ...

    def signed_upload_url(
        self, key: str, content_type: str, ttl: Optional[int] = None
    ) -> SignedUrl: ...

    def signed_download_url(
        self,
        key: str,
        content_type: Optional[str] = None,
        filename: Optional[str] = None,
        ttl: Optional[int] = None,
    ) -> SignedUrl: ...


class UrlSigner:
    """
    Issues and verifies itsdangerous tokens for /files/<token>.
    The payload carries key, method, headers and an absolute expiry.
    """

    def __init__(self, secret: str, base_url: str = ""):
        self._serializer = URLSafeTimedSerializer(secret, salt=SIGNING_SALT)
        self.base_url = base_url.rstrip("/")

    def sign(
        self,
        key: str,
        method: str,
        ttl: int,
        content_type: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> SignedUrl:
        expires = int(time.time()) + int(ttl)
        payload = {"k": key, "m": method, "exp": expires}
        if content_type:
            payload["ct"] = content_type
        if filename:
            payload["fn"] = filename
        token = self._serializer.dumps(payload)
        headers = {"Content-Type": content_type} if method == "PUT" and content_type else {}
        return SignedUrl(
            key=key,
            url=f"{self.base_url}/files/{token}",
            expires_at=datetime.fromtimestamp(expires, tz=timezone.utc).isoformat(),
            method=method,
            headers=headers,
        )

    def verify(self, token: str, method: str) -> dict:
        """
        Return the payload of a valid token for `method`.
        Raises BadSignature (or SignatureExpired) otherwise.
        """
        payload = self._serializer.loads(token)
        if payload.get("m") != method:
            raise BadSignature(f"Token not valid for {method}")
        if time.time() > payload.get("exp", 0):
            raise SignatureExpired("Signed URL expired", payload=payload)
        return payload


class LocalObjectStore:
    """
    ObjectStore on the local filesystem.
    Puts are atomic: data lands in a temp file, then os.replace.
    """

    def __init__(
        self,
        root: Union[str, Path],
        signer: Optional[UrlSigner] = None,
        upload_ttl: int = DEFAULT_UPLOAD_TTL,
        download_ttl: int = DEFAULT_DOWNLOAD_TTL,
    ):
        self.root = Path(root).absolute()
        self.root.mkdir(parents=True, exist_ok=True)
        self.signer = signer
        self.upload_ttl = upload_ttl
        self.download_ttl = download_ttl

    def path_for(self, key: str) -> Path:
        parts = Path(key).parts
        if not key or Path(key).is_absolute() or ".." in parts:
            raise StorageIOError(f"Invalid object key: {key!r}")
        return self.root / key

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        path = self.path_for(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as e:
            raise StorageIOError(f"Failed to write {key}: {e}") from e
        logger.debug(f"Stored {key} ({len(data)} bytes)")

    def get(self, key: str) -> bytes:
        path = self.path_for(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise NotFoundError(f"Object not found: {key}")
        except OSError as e:
            raise StorageIOError(f"Failed to read {key}: {e}") from e

    def exists(self, key: str) -> bool:
        return self.path_for(key).is_file()

    def size(self, key: str) -> int:
        try:
            return self.path_for(key).stat().st_size
        except FileNotFoundError:
            raise NotFoundError(f"Object not found: {key}")

    def delete(self, key: str) -> None:
        path = self.path_for(key)
        try:
            path.unlink()
            logger.info(f"Deleted object: {key}")
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageIOError(f"Failed to delete {key}: {e}") from e

    # ── Signed URLs ──────────────────────────────────────────────────

    def signed_upload_url(
        self, key: str, content_type: str, ttl: Optional[int] = None
    ) -> SignedUrl:
        return self._require_signer().sign(
            key, "PUT", ttl or self.upload_ttl, content_type=content_type
        )

    def signed_download_url(
        self,
        key: str,
        content_type: Optional[str] = None,
        filename: Optional[str] = None,
        ttl: Optional[int] = None,
    ) -> SignedUrl:
        if not self.exists(key):
            raise NotFoundError(f"Object not found: {key}")
        content_type = content_type or guess_content_type(key)
        return self._require_signer().sign(
            key, "GET", ttl or self.download_ttl,
            content_type=content_type, filename=filename,
        )

    def _require_signer(self) -> UrlSigner:
        if self.signer is None:
            raise StorageIOError("Signed URLs require a signing secret")
        return self.signer


def guess_content_type(key: str) -> str:
    if key.endswith(".docx"):
        return "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
    return mimetypes.guess_type(key)[0] or "application/octet-stream"


def create_store(config) -> LocalObjectStore:
    """Build the object store described by a PipelineConfig."""
    store = LocalObjectStore(
        config.storage_root,
        signer=UrlSigner(config.signing_secret, config.public_base_url),
        upload_ttl=config.signed_upload_ttl_seconds,
        download_ttl=config.signed_download_ttl_seconds,
    )
    logger.info(f"Object store initialized: {store.root}")
    return store


# ─── Working Directories ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class WorkspacePaths:
    """Local scratch paths for one job."""
    job_id: str
    root: Path
    input_zip: Path
    raw_dir: Path
    normalized_dir: Path
    crops_dir: Path
    tmp_dir: Path

    @classmethod
    def for_job(cls, base_dir: Union[str, Path], job_id: str) -> "WorkspacePaths":
        base = Path(base_dir)
        root = base / "image-files" / job_id
        return cls(
            job_id=job_id,
            root=root,
            input_zip=root / "input.zip",
            raw_dir=root / "raw",
            normalized_dir=root / "normalized",
            crops_dir=root / "crops",
            tmp_dir=base / "tmp",
        )

    def batch_jsonl(self, submission: int) -> Path:
        return self.tmp_dir / f"{self.job_id}-ocr-batch-{submission}.jsonl"

    def batch_jsonl_files(self) -> list[Path]:
        if not self.tmp_dir.exists():
            return []
        return sorted(self.tmp_dir.glob(f"{self.job_id}-ocr-batch-*.jsonl"))
