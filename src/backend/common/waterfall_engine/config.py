from __future__ import annotations

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


load_dotenv()

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class EngineConfig(BaseModel):
    """Runtime knobs for the waterfall engine.

    Values come from `WATERFALL_*` environment variables via `get_engine_config`.
    """

    # Workers used for document-level waterfalls inside one run; 1 keeps execution on the caller thread.
    max_document_workers: int = Field(default=1, ge=1)
    # Workers used by the batch dispatcher (one run per loan per task).
    max_run_workers: int = Field(default=4, ge=1)

    repository_timeout_seconds: float = Field(default=30.0, gt=0)
    persist_max_retries: int = Field(default=3, ge=0)
    persist_backoff_seconds: float = Field(default=0.5, ge=0)

    # Overrides the traversal bound (defaults to the catalog rule count).
    max_depth: Optional[int] = Field(default=None, ge=1)

    log_level: str = "INFO"


def get_engine_config() -> EngineConfig:
    values: dict[str, object] = {}
    for name, key in (
        ("max_document_workers", "WATERFALL_MAX_DOCUMENT_WORKERS"),
        ("max_run_workers", "WATERFALL_MAX_RUN_WORKERS"),
        ("repository_timeout_seconds", "WATERFALL_REPOSITORY_TIMEOUT_SECONDS"),
        ("persist_max_retries", "WATERFALL_PERSIST_MAX_RETRIES"),
        ("persist_backoff_seconds", "WATERFALL_PERSIST_BACKOFF_SECONDS"),
        ("max_depth", "WATERFALL_MAX_DEPTH"),
        ("log_level", "WATERFALL_LOG_LEVEL"),
    ):
        raw = os.getenv(key, "").strip()
        if raw:
            values[name] = raw
    return EngineConfig.model_validate(values)


def configure_logging(level: str | int | None = None) -> None:
    if level is None:
        level = get_engine_config().log_level
    if isinstance(level, str):
        name = level
        level = logging.getLevelName(name.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {name}")
    logging.basicConfig(level=level, format=LOG_FORMAT)
