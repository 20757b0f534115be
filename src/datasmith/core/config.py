from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class AppPaths:
    project_root: Path
    data_dir: Path
    db_path: Path
    objects_dir: Path


DEFAULT_DATA_DIRNAME = ".datasmith"


def load_paths(project_root: Path | None = None) -> AppPaths:
    root = (project_root or Path.cwd()).expanduser().resolve()

    home_raw = os.getenv("DATASMITH_HOME")
    if home_raw:
        data_dir = Path(home_raw).expanduser().resolve()
    else:
        data_dir = root / DEFAULT_DATA_DIRNAME

    return AppPaths(
        project_root=root,
        data_dir=data_dir,
        db_path=data_dir / "datasmith.db",
        objects_dir=data_dir / "objects",
    )


def env_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    return max(minimum, value)


def env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        return default
    return max(minimum, value)


def env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


@dataclass(frozen=True)
class QueueSettings:
    concurrency: int = 1
    max_retries: int = 2
    retry_base_delay_seconds: float = 1.0
    job_timeout_seconds: float = 600.0
    poll_interval_seconds: float = 1.0
    stall_threshold_seconds: float = 60.0

    @classmethod
    def from_env(cls) -> "QueueSettings":
        return cls(
            concurrency=env_int("DATASMITH_QUEUE_CONCURRENCY", 1, minimum=1),
            max_retries=env_int("DATASMITH_QUEUE_MAX_RETRIES", 2),
            retry_base_delay_seconds=env_float("DATASMITH_QUEUE_RETRY_BASE_SECONDS", 1.0),
            job_timeout_seconds=env_float("DATASMITH_JOB_TIMEOUT_SECONDS", 600.0),
            poll_interval_seconds=env_float("DATASMITH_QUEUE_POLL_SECONDS", 1.0, minimum=0.01),
            stall_threshold_seconds=env_float("DATASMITH_STALL_THRESHOLD_SECONDS", 60.0),
        )


@dataclass(frozen=True)
class PipelineSettings:
    unit_batch_size: int = 4
    extract_concurrency: int = 2
    classify_concurrency: int = 5
    generate_concurrency: int = 3
    classify_batch_size: int = 20
    generate_batch_size: int = 10
    max_consecutive_timeouts: int = 5
    heartbeat_interval_seconds: float = 5.0
    max_candidates: int = 50
    unit_text_limit: int = 4000
    classify_text_limit: int = 500
    generate_text_limit: int = 800
    collect_garbage: bool = False

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        return cls(
            unit_batch_size=env_int("DATASMITH_UNIT_BATCH_SIZE", 4, minimum=1),
            extract_concurrency=env_int("DATASMITH_EXTRACT_CONCURRENCY", 2, minimum=1),
            classify_concurrency=env_int("DATASMITH_CLASSIFY_CONCURRENCY", 5, minimum=1),
            generate_concurrency=env_int("DATASMITH_GENERATE_CONCURRENCY", 3, minimum=1),
            classify_batch_size=env_int("DATASMITH_CLASSIFY_BATCH_SIZE", 20, minimum=1),
            generate_batch_size=env_int("DATASMITH_GENERATE_BATCH_SIZE", 10, minimum=1),
            max_consecutive_timeouts=env_int("DATASMITH_MAX_CONSECUTIVE_TIMEOUTS", 5, minimum=1),
            heartbeat_interval_seconds=env_float("DATASMITH_HEARTBEAT_SECONDS", 5.0, minimum=0.01),
            max_candidates=env_int("DATASMITH_MAX_CANDIDATES", 50, minimum=1),
            unit_text_limit=env_int("DATASMITH_UNIT_TEXT_LIMIT", 4000, minimum=1),
            collect_garbage=env_bool("DATASMITH_COLLECT_GARBAGE", False),
        )


@dataclass(frozen=True)
class CompletionSettings:
    models: dict[str, str] = field(
        default_factory=lambda: {
            "extractor": "gpt-4o-mini",
            "classifier": "gpt-4o-mini",
            "generator": "gpt-4o-mini",
        }
    )
    request_timeout_seconds: float = 120.0
    max_rate_limit_attempts: int = 4
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> "CompletionSettings":
        default_model = os.getenv("DATASMITH_MODEL", "gpt-4o-mini")
        return cls(
            models={
                role: os.getenv(f"DATASMITH_{role.upper()}_MODEL", default_model)
                for role in ("extractor", "classifier", "generator")
            },
            request_timeout_seconds=env_float("DATASMITH_COMPLETION_TIMEOUT_SECONDS", 120.0, minimum=1.0),
            max_rate_limit_attempts=env_int("DATASMITH_RATE_LIMIT_ATTEMPTS", 4, minimum=1),
            backoff_base_seconds=env_float("DATASMITH_RATE_LIMIT_BACKOFF_SECONDS", 1.0),
        )

    def model_for(self, role: str) -> str:
        return self.models.get(role) or next(iter(self.models.values()))
