from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest
from botocore.exceptions import ClientError
from PIL import Image as PILImage

from frame_pipeline.config import Settings
from frame_pipeline.db import Album, Image, ImageStatus, SessionFactory, session_factory
from frame_pipeline.detection import PlaceholderFaceDetector, PlaceholderObjectDetector
from frame_pipeline.handlers import HandlerContext
from frame_pipeline.job_store import JobStore
from frame_pipeline.storage import LocalStorage


class FakeClock:
    """Manually advanced clock for lease tests."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'data' / 'frame.db'}"


@pytest.fixture
def sessions(db_url: str) -> SessionFactory:
    return session_factory(db_url)


@pytest.fixture
def store(sessions: SessionFactory, clock: FakeClock) -> JobStore:
    return JobStore(sessions, worker_id="worker-a", lease_timeout=30.0, clock=clock)


@pytest.fixture
def settings(tmp_path: Path, db_url: str) -> Settings:
    cfg = Settings()
    cfg.databases.url = db_url
    cfg.storage.backend = "local"
    cfg.storage.root = str(tmp_path / "storage")
    cfg.storage.temp_dirs = [str(tmp_path / "ingest")]
    cfg.storage.cache_dir = str(tmp_path / "cache")
    cfg.jobs.poll_interval_ms = 0
    return cfg


@pytest.fixture
def local_storage(settings: Settings) -> LocalStorage:
    return LocalStorage(settings.storage.root)


@pytest.fixture
def ctx(settings: Settings, local_storage: LocalStorage, sessions: SessionFactory) -> HandlerContext:
    real_clock_store = JobStore(sessions, worker_id="handler-worker", lease_timeout=30.0)
    return HandlerContext(
        settings=settings,
        storage=local_storage,
        store=real_clock_store,
        session_factory=sessions,
        face_detector=PlaceholderFaceDetector(seed=7),
        object_detector=PlaceholderObjectDetector(seed=7),
    )


@pytest.fixture
def make_jpeg(tmp_path: Path) -> Callable[..., Path]:
    def _make(name: str = "photo.jpg", size: tuple[int, int] = (640, 480), *, exif: PILImage.Exif | None = None) -> Path:
        path = tmp_path / "ingest" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        image = PILImage.new("RGB", size, (120, 80, 40))
        if exif is not None:
            image.save(path, format="JPEG", exif=exif)
        else:
            image.save(path, format="JPEG")
        return path

    return _make


@pytest.fixture
def add_image(sessions: SessionFactory) -> Callable[..., str]:
    def _add(
        *,
        temp_path: str | None = None,
        status: str = ImageStatus.INGESTED,
        user_id: str | None = "user-1",
        album: tuple[str, str, str | None] | None = None,
        **fields: object,
    ) -> str:
        with sessions() as session:
            album_id = None
            if album is not None:
                album_id, project_id, name = album
                if session.get(Album, album_id) is None:
                    session.add(Album(id=album_id, project_id=project_id, name=name))
                    session.flush()
            image = Image(user_id=user_id, album_id=album_id, temp_path=temp_path, status=status, **fields)
            session.add(image)
            session.commit()
            return image.id

    return _add


class FakeS3Client:
    """In-memory stand-in for the boto3 S3 client calls the storage adapter makes."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], bytes] = {}
        self.content_types: dict[tuple[str, str], str | None] = {}

    def _missing(self, operation: str) -> Exception:
        return ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, operation)

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, ContentType: str | None = None) -> dict:
        self.objects[(Bucket, Key)] = Body
        self.content_types[(Bucket, Key)] = ContentType
        return {}

    def download_file(self, bucket: str, key: str, filename: str) -> None:
        if (bucket, key) not in self.objects:
            raise self._missing("HeadObject")
        Path(filename).write_bytes(self.objects[(bucket, key)])

    def delete_object(self, *, Bucket: str, Key: str) -> dict:
        self.objects.pop((Bucket, Key), None)
        return {}

    def head_object(self, *, Bucket: str, Key: str) -> dict:
        if (Bucket, Key) not in self.objects:
            raise self._missing("HeadObject")
        return {"ContentLength": len(self.objects[(Bucket, Key)])}

    def generate_presigned_url(self, operation: str, *, Params: dict, ExpiresIn: int) -> str:
        return f"https://s3.test/{Params['Bucket']}/{Params['Key']}?expires={ExpiresIn}"


class FakeBoto3:
    def __init__(self, s3_client: FakeS3Client) -> None:
        self._s3 = s3_client
        self.client_kwargs: dict = {}

    def client(self, name: str, **kwargs: object) -> FakeS3Client:
        if name != "s3":
            raise ValueError(name)
        self.client_kwargs = kwargs
        return self._s3


@pytest.fixture
def fake_s3(monkeypatch: pytest.MonkeyPatch) -> FakeS3Client:
    client = FakeS3Client()
    monkeypatch.setattr("frame_pipeline.storage._boto3", lambda: FakeBoto3(client))
    return client
