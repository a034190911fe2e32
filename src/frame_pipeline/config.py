"""Configuration loader and typed settings for the derived-asset pipeline."""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


def _default_storage_root() -> str:
    return str(Path.home() / "frame" / "storage")


def _default_temp_dirs() -> list[str]:
    return [str(Path(tempfile.gettempdir()) / "frame" / "ingest")]


@dataclass
class DatabaseConfig:
    """Database connection target for the job and image tables."""

    url: str = "sqlite:///data/frame.db"


@dataclass
class StorageConfig:
    """Storage backend selection and backend-specific options."""

    backend: str = "local"
    root: str = field(default_factory=_default_storage_root)
    default_bucket: str = "project-albums"
    temp_dirs: list[str] = field(default_factory=_default_temp_dirs)
    cache_dir: str = field(default_factory=lambda: str(Path(tempfile.gettempdir()) / "frame" / "cache"))
    endpoint_url: str | None = None
    region: str | None = None
    access_key: str | None = None
    secret_key: str | None = None
    public_base_url: str | None = None
    signed_url_ttl: int = 3600

    @property
    def is_cloud(self) -> bool:
        """Whether derived bytes leave the local machine."""

        return self.backend.strip().lower() in {"s3", "r2"}


@dataclass
class JobsConfig:
    """Runner and lease parameters."""

    batch_size: int = 5
    poll_interval_ms: int = 5000
    lease_timeout_seconds: float = 30.0
    max_attempts: int = 3
    worker_id: str | None = None


@dataclass
class ThumbnailConfig:
    """Square thumbnail sizes and encoder quality."""

    sizes: list[int] = field(default_factory=lambda: [128, 256, 512])
    quality: int = 80


@dataclass
class PreviewConfig:
    """Web preview bounds and encoder quality."""

    max_side: int = 2000
    quality: int = 85
    progressive: bool = True


@dataclass
class DetectionConfig:
    """Face/object detection thresholds."""

    min_confidence: float = 0.7
    embedding_dim: int = 128


@dataclass
class GroupingConfig:
    """Face clustering parameters."""

    threshold: float = 0.8


@dataclass
class Settings:
    """Top-level application settings."""

    databases: DatabaseConfig = field(default_factory=DatabaseConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    jobs: JobsConfig = field(default_factory=JobsConfig)
    thumbnails: ThumbnailConfig = field(default_factory=ThumbnailConfig)
    preview: PreviewConfig = field(default_factory=PreviewConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    grouping: GroupingConfig = field(default_factory=GroupingConfig)


def _project_root() -> Path:
    """Best-effort detection of the repository root for config discovery."""

    module_path = Path(__file__).resolve()
    try:
        return module_path.parents[2]
    except IndexError:  # pragma: no cover - installed without a repo checkout
        return module_path.parent


def _build_default_settings_paths() -> list[Path]:
    """Return candidate settings paths ordered by preference."""

    cwd_candidate = (Path.cwd() / "config" / "settings.yaml").resolve()
    repo_candidate = (_project_root() / "config" / "settings.yaml").resolve()

    candidates: list[Path] = [cwd_candidate]
    if repo_candidate != cwd_candidate:
        candidates.append(repo_candidate)
    return candidates


def _resolve_settings_path(settings_path: Path | str | None) -> Path:
    """Determine which settings file to load, honoring overrides."""

    if settings_path:
        return Path(settings_path).expanduser().resolve()

    env_override = os.getenv("FRAME_PIPELINE_SETTINGS")
    if env_override:
        return Path(env_override).expanduser().resolve()

    candidates = _build_default_settings_paths()
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return candidates[0]


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _apply_storage(raw: dict[str, Any], cfg: StorageConfig) -> None:
    string_keys = (
        "backend",
        "root",
        "default_bucket",
        "cache_dir",
        "endpoint_url",
        "region",
        "access_key",
        "secret_key",
        "public_base_url",
    )
    for key in string_keys:
        if isinstance(raw.get(key), str):
            setattr(cfg, key, raw[key])
    if isinstance(raw.get("temp_dirs"), list):
        cfg.temp_dirs = [str(item) for item in raw["temp_dirs"] if str(item)]
    if _is_int(raw.get("signed_url_ttl")):
        cfg.signed_url_ttl = raw["signed_url_ttl"]


def _apply_jobs(raw: dict[str, Any], cfg: JobsConfig) -> None:
    if _is_int(raw.get("batch_size")):
        cfg.batch_size = raw["batch_size"]
    if _is_int(raw.get("poll_interval_ms")):
        cfg.poll_interval_ms = raw["poll_interval_ms"]
    if _is_number(raw.get("lease_timeout_seconds")):
        cfg.lease_timeout_seconds = float(raw["lease_timeout_seconds"])
    if _is_int(raw.get("max_attempts")):
        cfg.max_attempts = raw["max_attempts"]
    if isinstance(raw.get("worker_id"), str):
        cfg.worker_id = raw["worker_id"]


def _apply_env_overrides(settings: Settings) -> None:
    """Environment variables win over the YAML file for deploy-time secrets."""

    database_url = os.getenv("FRAME_DATABASE_URL")
    if database_url:
        settings.databases.url = database_url

    backend = os.getenv("STORAGE_BACKEND")
    if backend:
        settings.storage.backend = backend
    storage_dir = os.getenv("STORAGE_DIR")
    if storage_dir:
        settings.storage.root = storage_dir

    storage_env = {
        "endpoint_url": "STORAGE_ENDPOINT_URL",
        "region": "STORAGE_REGION",
        "access_key": "STORAGE_ACCESS_KEY",
        "secret_key": "STORAGE_SECRET_KEY",
        "public_base_url": "STORAGE_PUBLIC_BASE_URL",
    }
    for attr, env_name in storage_env.items():
        value = os.getenv(env_name)
        if value:
            setattr(settings.storage, attr, value)


def load_settings(settings_path: Path | str | None = None) -> Settings:
    """Load application settings from a YAML file, falling back to defaults.

    Unknown keys and values of the wrong type are ignored so a partially
    written file still yields a usable :class:`Settings`. Environment
    variables for the database URL and storage credentials are applied last.
    """

    path = _resolve_settings_path(settings_path)
    settings = Settings()

    raw: Any = {}
    if path.exists() and path.is_file():
        with path.open("r", encoding="utf-8") as fp:
            raw = yaml.safe_load(fp) or {}
    if not isinstance(raw, dict):
        raw = {}

    databases_raw = _as_dict(raw.get("databases"))
    if isinstance(databases_raw.get("url"), str):
        settings.databases.url = databases_raw["url"]

    _apply_storage(_as_dict(raw.get("storage")), settings.storage)
    _apply_jobs(_as_dict(raw.get("jobs")), settings.jobs)

    thumbnails_raw = _as_dict(raw.get("thumbnails"))
    sizes = thumbnails_raw.get("sizes")
    if isinstance(sizes, list) and sizes and all(_is_int(size) and size > 0 for size in sizes):
        settings.thumbnails.sizes = [int(size) for size in sizes]
    if _is_int(thumbnails_raw.get("quality")):
        settings.thumbnails.quality = thumbnails_raw["quality"]

    preview_raw = _as_dict(raw.get("preview"))
    if _is_int(preview_raw.get("max_side")):
        settings.preview.max_side = preview_raw["max_side"]
    if _is_int(preview_raw.get("quality")):
        settings.preview.quality = preview_raw["quality"]
    if isinstance(preview_raw.get("progressive"), bool):
        settings.preview.progressive = preview_raw["progressive"]

    detection_raw = _as_dict(raw.get("detection"))
    if _is_number(detection_raw.get("min_confidence")):
        settings.detection.min_confidence = float(detection_raw["min_confidence"])
    if _is_int(detection_raw.get("embedding_dim")):
        settings.detection.embedding_dim = detection_raw["embedding_dim"]

    grouping_raw = _as_dict(raw.get("grouping"))
    if _is_number(grouping_raw.get("threshold")):
        settings.grouping.threshold = float(grouping_raw["threshold"])

    _apply_env_overrides(settings)
    return settings


__all__ = [
    "DatabaseConfig",
    "StorageConfig",
    "JobsConfig",
    "ThumbnailConfig",
    "PreviewConfig",
    "DetectionConfig",
    "GroupingConfig",
    "Settings",
    "load_settings",
]
