"""
Pipeline Configuration
======================
Runtime settings for the OCR job pipeline and the package logger setup.

Every field can be overridden from the environment with an
``OCR_PIPELINE_<FIELD>`` variable, e.g. ``OCR_PIPELINE_DB_PATH``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).parent.parent.absolute()

ENV_PREFIX = "OCR_PIPELINE_"

LOG_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

DEFAULT_OCR_PROMPT = (
    "Transcribe the subtitle text visible in this image exactly as written. "
    "Return only the text. If there is no readable text, return <EMPTY>."
)


@dataclass
class PipelineConfig:
    """Configuration for the OCR job pipeline."""

    # Paths
    base_dir: str = str(_PROJECT_ROOT / "storage")
    db_path: str = str(_PROJECT_ROOT / "database.sqlite")
    storage_root: str = str(_PROJECT_ROOT / "storage" / "objects")

    # Signed URLs
    signing_secret: str = "change-me"
    signed_upload_ttl_seconds: int = 12 * 60 * 60
    signed_download_ttl_seconds: int = 2 * 60 * 60
    public_base_url: str = "http://127.0.0.1:5000"

    # Batch recognition
    openai_model: str = "gpt-4o-mini"
    ocr_prompt: str = DEFAULT_OCR_PROMPT
    max_tokens: int = 96
    completion_window: str = "24h"
    poll_interval_seconds: int = 20
    max_item_attempts: int = 3

    # Image settings
    normalize_size: tuple[int, int] = (1280, 720)
    subtitle_crop_ratio: float = 0.32
    thumbnail_size: tuple[int, int] = (200, 200)
    thumbnail_quality: int = 85

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[dict] = None, **overrides) -> "PipelineConfig":
        """
        Build a config from OCR_PIPELINE_* variables.
        Explicit keyword overrides win over the environment.
        """
        environ = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            values[f.name] = _coerce(f.name, f.type, raw)
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def _coerce(name: str, type_name, raw: str):
    """Convert an environment string to the field's declared type."""
    type_name = str(type_name)
    try:
        if type_name == "int":
            return int(raw)
        if type_name == "float":
            return float(raw)
        if type_name.startswith("tuple"):
            width, height = raw.lower().replace(",", "x").split("x")
            return (int(width), int(height))
    except ValueError as e:
        raise ValueError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}") from e
    return raw


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    """Configure the ocr_pipeline package logger."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    pipeline_logger = logging.getLogger("ocr_pipeline")
    pipeline_logger.setLevel(log_level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    # Console handler
    if not pipeline_logger.handlers:
        console = logging.StreamHandler()
        console.setLevel(log_level)
        console.setFormatter(formatter)
        pipeline_logger.addHandler(console)

    # File handler
    if log_file:
        log_dir = Path(log_file).parent
        log_dir.mkdir(parents=True, exist_ok=True)
        already = any(
            isinstance(h, logging.FileHandler)
            and Path(h.baseFilename) == Path(log_file).absolute()
            for h in pipeline_logger.handlers
        )
        if not already:
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            pipeline_logger.addHandler(file_handler)

    return pipeline_logger
