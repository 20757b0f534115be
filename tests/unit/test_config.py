from __future__ import annotations

import logging
from pathlib import Path

from datasmith.core.config import CompletionSettings, PipelineSettings, QueueSettings, load_paths
from datasmith.core.logging import configure_logging, level_for_verbosity


def test_load_paths_defaults_under_project_root(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("DATASMITH_HOME", raising=False)

    paths = load_paths(tmp_path)

    assert paths.data_dir == tmp_path.resolve() / ".datasmith"
    assert paths.db_path.name == "datasmith.db"
    assert paths.objects_dir.parent == paths.data_dir


def test_load_paths_honours_home_override(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("DATASMITH_HOME", str(tmp_path / "elsewhere"))

    assert load_paths(tmp_path / "proj").data_dir == (tmp_path / "elsewhere").resolve()


def test_settings_read_environment(monkeypatch) -> None:
    monkeypatch.setenv("DATASMITH_QUEUE_CONCURRENCY", "3")
    monkeypatch.setenv("DATASMITH_QUEUE_MAX_RETRIES", "not-a-number")
    monkeypatch.setenv("DATASMITH_MAX_CONSECUTIVE_TIMEOUTS", "0")
    monkeypatch.setenv("DATASMITH_MODEL", "base-model")
    monkeypatch.setenv("DATASMITH_CLASSIFIER_MODEL", "small-model")

    queue = QueueSettings.from_env()
    pipeline = PipelineSettings.from_env()
    completion = CompletionSettings.from_env()

    assert queue.concurrency == 3
    assert queue.max_retries == 2
    assert pipeline.max_consecutive_timeouts == 1
    assert completion.model_for("classifier") == "small-model"
    assert completion.model_for("extractor") == "base-model"


def test_configure_logging_installs_one_handler() -> None:
    root = logging.getLogger()
    before = list(root.handlers)
    try:
        configure_logging(1)
        configure_logging(2)
        added = [h for h in root.handlers if h not in before]
        assert len(added) <= 1
        assert root.level == logging.DEBUG
    finally:
        for handler in [h for h in root.handlers if h not in before]:
            root.removeHandler(handler)

    assert level_for_verbosity(0) == logging.WARNING
    assert level_for_verbosity(1) == logging.INFO
