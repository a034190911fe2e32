"""SQLAlchemy schema, engine cache, and session management."""

from __future__ import annotations

import time
import uuid
from pathlib import Path
from threading import Lock
from typing import Any, Callable

from sqlalchemy import (
    JSON,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship

from frame_pipeline.db_helpers import is_sqlite_url, normalize_database_url, redact_database_url
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "db"})

SessionFactory = Callable[[], Session]


class JobStatus:
    """Lifecycle states of a :class:`Job` row."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class ImageStatus:
    """Lifecycle states of an :class:`Image` row."""

    UPLOADED = "UPLOADED"
    INGESTED = "INGESTED"
    PROCESSING = "PROCESSING"
    STORED = "STORED"
    FAILED = "FAILED"


def _new_id() -> str:
    return uuid.uuid4().hex


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class Album(Base):
    """Project album an image may belong to; only the fields the pipeline reads."""

    __tablename__ = "albums"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str | None] = mapped_column(String, nullable=True)


class Image(Base):
    """Uploaded asset and its derived-asset state."""

    __tablename__ = "images"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    album_id: Mapped[str | None] = mapped_column(String, ForeignKey("albums.id"), nullable=True)
    temp_path: Mapped[str | None] = mapped_column(String, nullable=True)
    thumbnail_path: Mapped[str | None] = mapped_column(String, nullable=True)
    preview_path: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=ImageStatus.UPLOADED)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String, nullable=True)
    checksum: Mapped[str | None] = mapped_column(String, nullable=True)

    make: Mapped[str | None] = mapped_column(String, nullable=True)
    model: Mapped[str | None] = mapped_column(String, nullable=True)
    software: Mapped[str | None] = mapped_column(String, nullable=True)
    exposure_time: Mapped[str | None] = mapped_column(String, nullable=True)
    f_number: Mapped[float | None] = mapped_column(Float, nullable=True)
    iso: Mapped[int | None] = mapped_column(Integer, nullable=True)
    focal_length: Mapped[float | None] = mapped_column(Float, nullable=True)
    lens_model: Mapped[str | None] = mapped_column(String, nullable=True)
    date_taken: Mapped[str | None] = mapped_column(String, nullable=True)
    lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    alt: Mapped[float | None] = mapped_column(Float, nullable=True)

    created_at: Mapped[float] = mapped_column(Float, nullable=False, default=time.time)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False, default=time.time)

    album: Mapped[Album | None] = relationship(Album, lazy="joined")

    __table_args__ = (
        Index("idx_images_status", "status"),
        Index("idx_images_album", "album_id"),
    )


class Job(Base):
    """Persistent work item processed by the job runner."""

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    type: Mapped[str] = mapped_column(String, nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default=JobStatus.PENDING)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    locked_at: Mapped[float | None] = mapped_column(Float, nullable=True)
    locked_by: Mapped[str | None] = mapped_column(String, nullable=True)
    image_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[float] = mapped_column(Float, nullable=False, default=time.time)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False, default=time.time)

    __table_args__ = (
        Index("idx_jobs_status_created", "status", "created_at"),
        Index("idx_jobs_image_type", "image_id", "type"),
    )


class FaceGroup(Base):
    """Cluster of faces believed to belong to the same person."""

    __tablename__ = "face_groups"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    album_id: Mapped[str | None] = mapped_column(String, nullable=True)
    face_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    suggested_name: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[float] = mapped_column(Float, nullable=False, default=time.time)


class DetectedFace(Base):
    """Face bounding box (normalized to [0, 1]) with its identity embedding."""

    __tablename__ = "detected_faces"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    image_id: Mapped[str] = mapped_column(String, ForeignKey("images.id"), nullable=False)
    x: Mapped[float] = mapped_column(Float, nullable=False)
    y: Mapped[float] = mapped_column(Float, nullable=False)
    width: Mapped[float] = mapped_column(Float, nullable=False)
    height: Mapped[float] = mapped_column(Float, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    embedding: Mapped[list[float] | None] = mapped_column(JSON, nullable=True)
    face_group_id: Mapped[str | None] = mapped_column(String, ForeignKey("face_groups.id"), nullable=True)
    created_at: Mapped[float] = mapped_column(Float, nullable=False, default=time.time)

    __table_args__ = (
        Index("idx_detected_faces_image", "image_id"),
        Index("idx_detected_faces_group", "face_group_id"),
    )


class DetectedObject(Base):
    """Object bounding box (normalized to [0, 1]) with label and optional embedding."""

    __tablename__ = "detected_objects"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    image_id: Mapped[str] = mapped_column(String, ForeignKey("images.id"), nullable=False)
    type: Mapped[str] = mapped_column(String, nullable=False)
    label: Mapped[str] = mapped_column(String, nullable=False)
    x: Mapped[float] = mapped_column(Float, nullable=False)
    y: Mapped[float] = mapped_column(Float, nullable=False)
    width: Mapped[float] = mapped_column(Float, nullable=False)
    height: Mapped[float] = mapped_column(Float, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    embedding: Mapped[list[float] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[float] = mapped_column(Float, nullable=False, default=time.time)

    __table_args__ = (Index("idx_detected_objects_image", "image_id"),)


_ENGINE_CACHE: dict[str, Engine] = {}
_ENGINE_LOCK = Lock()


def _ensure_parent_directory(path: Path) -> None:
    """Ensure the parent directory for a database file exists."""

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.error("db_parent_directory_error", extra={"path": str(path), "error": str(exc)})
        raise


def get_engine(target: str | Path) -> Engine:
    """Return a cached SQLAlchemy engine for the target, creating the schema if needed."""

    normalized = normalize_database_url(target)
    engine = _ENGINE_CACHE.get(normalized)
    if engine is not None:
        return engine

    with _ENGINE_LOCK:
        engine = _ENGINE_CACHE.get(normalized)
        if engine is not None:
            return engine

        sa_url = make_url(normalized)
        is_sqlite = is_sqlite_url(normalized)

        engine_kwargs: dict[str, object] = {}
        if is_sqlite:
            if sa_url.database and sa_url.database != ":memory:":
                _ensure_parent_directory(Path(sa_url.database))
            # Worker threads share the engine; each opens its own session.
            engine_kwargs["connect_args"] = {"timeout": 30.0, "check_same_thread": False}
        else:
            engine_kwargs["pool_pre_ping"] = True

        engine = create_engine(normalized, **engine_kwargs)

        if is_sqlite:

            @event.listens_for(engine, "connect")
            def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
                """Configure SQLite for concurrent workers."""

                # Transactions are opened explicitly by the "begin" hook below.
                dbapi_connection.isolation_level = None
                cursor = dbapi_connection.cursor()
                try:
                    cursor.execute("PRAGMA journal_mode=WAL")
                    cursor.execute("PRAGMA busy_timeout = 30000")
                finally:
                    cursor.close()

            @event.listens_for(engine, "begin")
            def _begin_immediate(conn: Any) -> None:
                """Take the write lock up front so read-then-write sessions wait instead of failing."""

                conn.exec_driver_sql("BEGIN IMMEDIATE")

        try:
            Base.metadata.create_all(engine)
        except OperationalError as exc:
            # Several workers starting at once may race on CREATE TABLE.
            if "already exists" in str(exc).lower():
                LOGGER.info("db_create_all_table_exists_race", extra={"target": redact_database_url(normalized), "error": str(exc)})
            else:
                raise

        _ENGINE_CACHE[normalized] = engine
        return engine


def session_factory(target: str | Path) -> SessionFactory:
    """Return a zero-argument callable producing fresh sessions for ``target``."""

    engine = get_engine(target)

    def _factory() -> Session:
        return Session(engine, expire_on_commit=False)

    return _factory


__all__ = [
    "Base",
    "Album",
    "Image",
    "ImageStatus",
    "Job",
    "JobStatus",
    "DetectedFace",
    "DetectedObject",
    "FaceGroup",
    "SessionFactory",
    "get_engine",
    "session_factory",
]
