"""Tests for settings loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from frame_pipeline.config import Settings, load_settings


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "FRAME_PIPELINE_SETTINGS",
        "FRAME_DATABASE_URL",
        "STORAGE_BACKEND",
        "STORAGE_DIR",
        "STORAGE_ENDPOINT_URL",
        "STORAGE_ACCESS_KEY",
        "STORAGE_SECRET_KEY",
    ):
        monkeypatch.delenv(name, raising=False)


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    settings = load_settings(tmp_path / "nope.yaml")

    assert settings == Settings()
    assert settings.jobs.batch_size == 5
    assert settings.jobs.poll_interval_ms == 5000
    assert settings.thumbnails.sizes == [128, 256, 512]
    assert settings.preview.max_side == 2000
    assert settings.grouping.threshold == 0.8


def test_yaml_values_override_defaults(tmp_path: Path) -> None:
    path = tmp_path / "settings.yaml"
    path.write_text(
        """
databases:
  url: sqlite:///tmp/other.db
storage:
  backend: s3
  temp_dirs: [/srv/ingest, /var/tmp/ingest]
jobs:
  batch_size: 10
  lease_timeout_seconds: 45
thumbnails:
  sizes: [64, 320]
preview:
  progressive: false
detection:
  min_confidence: 0.5
grouping:
  threshold: 0.9
""",
        encoding="utf-8",
    )

    settings = load_settings(path)

    assert settings.databases.url == "sqlite:///tmp/other.db"
    assert settings.storage.backend == "s3" and settings.storage.is_cloud
    assert settings.storage.temp_dirs == ["/srv/ingest", "/var/tmp/ingest"]
    assert settings.jobs.batch_size == 10
    assert settings.jobs.lease_timeout_seconds == 45.0
    assert settings.thumbnails.sizes == [64, 320]
    assert settings.preview.progressive is False
    assert settings.detection.min_confidence == 0.5
    assert settings.grouping.threshold == 0.9


def test_wrongly_typed_values_are_ignored(tmp_path: Path) -> None:
    path = tmp_path / "settings.yaml"
    path.write_text(
        """
jobs:
  batch_size: "ten"
  max_attempts: true
thumbnails:
  sizes: [128, -1]
preview: [not, a, mapping]
""",
        encoding="utf-8",
    )

    settings = load_settings(path)

    assert settings.jobs.batch_size == 5
    assert settings.jobs.max_attempts == 3
    assert settings.thumbnails.sizes == [128, 256, 512]
    assert settings.preview.max_side == 2000


def test_environment_overrides_win(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "settings.yaml"
    path.write_text("storage:\n  backend: local\n", encoding="utf-8")
    monkeypatch.setenv("FRAME_PIPELINE_SETTINGS", str(path))
    monkeypatch.setenv("FRAME_DATABASE_URL", "postgresql+psycopg://u:p@db/frame")
    monkeypatch.setenv("STORAGE_BACKEND", "R2")
    monkeypatch.setenv("STORAGE_ENDPOINT_URL", "https://acct.r2.cloudflarestorage.com")
    monkeypatch.setenv("STORAGE_ACCESS_KEY", "key")

    settings = load_settings()

    assert settings.databases.url == "postgresql+psycopg://u:p@db/frame"
    assert settings.storage.is_cloud
    assert settings.storage.endpoint_url == "https://acct.r2.cloudflarestorage.com"
    assert settings.storage.access_key == "key"
    assert settings.storage.secret_key is None
