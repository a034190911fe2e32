"""Tests for the storage adapter and source-location resolution."""

from __future__ import annotations

from pathlib import Path

import pytest

from frame_pipeline.config import StorageConfig
from frame_pipeline.storage import (
    Bucket,
    LocalStorage,
    ResolutionStrategy,
    S3Storage,
    SourceNotFoundError,
    StorageError,
    StorageObjectNotFound,
    build_storage,
    candidate_locations,
    resolve_source_location,
    storage_path,
)


def test_storage_path_templates() -> None:
    assert storage_path(Bucket.TEMP, image_id="i1", extension="png") == "ingest/i1.png"
    assert storage_path(Bucket.USER_GALLERY, image_id="i1", user_id="u1") == "u1/Gallery/images/i1.jpg"
    assert (
        storage_path(Bucket.PROJECT_ALBUMS, image_id="i1", project_id="p1", album_id="a1", extension=".jpeg")
        == "projects/p1/albums/a1/i1.jpeg"
    )
    assert storage_path(Bucket.THUMBNAILS, image_id="i1", filename="256") == "i1/thumb-256.jpg"
    assert storage_path(Bucket.PROCESSED, image_id="i1", filename="preview") == "i1/preview.jpg"

    with pytest.raises(ValueError):
        storage_path(Bucket.USER_GALLERY, image_id="i1")
    with pytest.raises(ValueError):
        storage_path("nope", image_id="i1")


def test_local_storage_round_trip(tmp_path: Path) -> None:
    storage = LocalStorage(tmp_path / "store")

    stored = storage.store(b"jpeg-bytes", bucket=Bucket.THUMBNAILS, path="img/thumb-128.jpg")

    expected = (tmp_path / "store" / "thumbnails" / "img" / "thumb-128.jpg").resolve()
    assert stored.full_path == str(expected)
    assert storage.exists(Bucket.THUMBNAILS, "img/thumb-128.jpg")
    assert storage.retrieve(Bucket.THUMBNAILS, "img/thumb-128.jpg").read_bytes() == b"jpeg-bytes"
    assert storage.get_url(Bucket.THUMBNAILS, "img/thumb-128.jpg") == expected.as_uri()

    assert storage.remove(Bucket.THUMBNAILS, "img/thumb-128.jpg") is True
    assert storage.remove(Bucket.THUMBNAILS, "img/thumb-128.jpg") is False
    with pytest.raises(StorageObjectNotFound):
        storage.retrieve(Bucket.THUMBNAILS, "img/thumb-128.jpg")


def test_local_storage_copies_files_and_rejects_escaping_paths(tmp_path: Path) -> None:
    storage = LocalStorage(tmp_path / "store")
    source = tmp_path / "upload.jpg"
    source.write_bytes(b"original")

    stored = storage.store(source, bucket=Bucket.USER_GALLERY, path="u1/Gallery/images/x.jpg")

    assert Path(stored.full_path).read_bytes() == b"original"
    assert source.exists()
    with pytest.raises(StorageError):
        storage.store(b"x", bucket=Bucket.PROCESSED, path="../../outside.jpg")
    with pytest.raises(StorageObjectNotFound):
        storage.retrieve(Bucket.PROCESSED, "../thumbnails/a.jpg")


def test_s3_storage_uses_boto3_client(fake_s3, tmp_path: Path) -> None:
    storage = S3Storage(cache_dir=tmp_path / "cache", public_base_url="https://cdn.test/")

    stored = storage.store(b"thumb", bucket=Bucket.THUMBNAILS, path="i1/thumb-128.jpg", content_type="image/jpeg")
    private = storage.store(b"orig", bucket=Bucket.USER_GALLERY, path="u1/Gallery/images/i1.jpg")

    assert stored.full_path == "thumbnails/i1/thumb-128.jpg"
    assert stored.public_url == "https://cdn.test/thumbnails/i1/thumb-128.jpg"
    assert private.public_url is None
    assert fake_s3.content_types[(Bucket.THUMBNAILS, "i1/thumb-128.jpg")] == "image/jpeg"

    local = storage.retrieve(Bucket.USER_GALLERY, "u1/Gallery/images/i1.jpg")
    assert local.read_bytes() == b"orig"
    assert local.is_relative_to(tmp_path / "cache")

    assert storage.get_url(Bucket.USER_GALLERY, "u1/Gallery/images/i1.jpg", expires_in=60).endswith("expires=60")
    assert storage.exists(Bucket.USER_GALLERY, "u1/Gallery/images/i1.jpg") is True
    assert storage.remove(Bucket.USER_GALLERY, "u1/Gallery/images/i1.jpg") is True
    assert storage.exists(Bucket.USER_GALLERY, "u1/Gallery/images/i1.jpg") is False
    with pytest.raises(StorageObjectNotFound):
        storage.retrieve(Bucket.USER_GALLERY, "u1/Gallery/images/i1.jpg")


def test_build_storage_selects_backend(tmp_path: Path, fake_s3) -> None:
    local = build_storage(StorageConfig(backend="local", root=str(tmp_path)))
    cloud = build_storage(StorageConfig(backend="R2", cache_dir=str(tmp_path / "cache")))

    assert isinstance(local, LocalStorage) and not local.is_cloud
    assert isinstance(cloud, S3Storage) and cloud.is_cloud
    with pytest.raises(ValueError):
        build_storage(StorageConfig(backend="ftp"))


def test_candidate_locations_order() -> None:
    url = "https://x.supabase.co/storage/v1/object/public/project-albums/projects/p/albums/a/i.jpg?token=1"
    strategies = [loc.strategy for loc in candidate_locations(url, default_bucket=Bucket.PROJECT_ALBUMS, temp_dirs=["/tmp/in"])]
    assert strategies == [ResolutionStrategy.LOCAL_FILE, ResolutionStrategy.URL, ResolutionStrategy.TEMP_FALLBACK]

    composite = candidate_locations("user-gallery/u1/Gallery/images/i.jpg", default_bucket=Bucket.PROJECT_ALBUMS)
    assert [(loc.strategy, loc.bucket, loc.path) for loc in composite[1:]] == [
        (ResolutionStrategy.BUCKET_PATH, "user-gallery", "u1/Gallery/images/i.jpg"),
        (ResolutionStrategy.DEFAULT_BUCKET, "project-albums", "user-gallery/u1/Gallery/images/i.jpg"),
    ]

    bare = candidate_locations("projects/p/albums/a/i.jpg", default_bucket=Bucket.PROJECT_ALBUMS)
    assert [loc.strategy for loc in bare] == [ResolutionStrategy.LOCAL_FILE, ResolutionStrategy.DEFAULT_BUCKET]


def test_resolve_prefers_existing_local_file(tmp_path: Path) -> None:
    storage = LocalStorage(tmp_path / "store")
    local = tmp_path / "a.jpg"
    local.write_bytes(b"x")

    resolved = resolve_source_location(str(local), storage)

    assert resolved.strategy == ResolutionStrategy.LOCAL_FILE
    assert resolved.local_path == local


def test_resolve_url_and_bucket_path_and_default_bucket(tmp_path: Path) -> None:
    storage = LocalStorage(tmp_path / "store")
    storage.store(b"album", bucket=Bucket.PROJECT_ALBUMS, path="projects/p/albums/a/i.jpg")
    storage.store(b"gallery", bucket=Bucket.USER_GALLERY, path="u1/Gallery/images/i.jpg")

    by_url = resolve_source_location(
        "https://cdn.test/storage/v1/object/public/user-gallery/u1/Gallery/images/i.jpg", storage
    )
    by_composite = resolve_source_location("user-gallery/u1/Gallery/images/i.jpg", storage)
    by_default = resolve_source_location("projects/p/albums/a/i.jpg", storage)

    assert (by_url.strategy, by_url.local_path.read_bytes()) == (ResolutionStrategy.URL, b"gallery")
    assert (by_composite.strategy, by_composite.bucket) == (ResolutionStrategy.BUCKET_PATH, "user-gallery")
    assert (by_default.strategy, by_default.local_path.read_bytes()) == (ResolutionStrategy.DEFAULT_BUCKET, b"album")


def test_resolve_falls_back_to_temp_dir_basename(tmp_path: Path) -> None:
    storage = LocalStorage(tmp_path / "store")
    temp_dir = tmp_path / "ingest"
    temp_dir.mkdir()
    (temp_dir / "i.jpg").write_bytes(b"temp")

    resolved = resolve_source_location("project-albums/projects/p/albums/a/i.jpg", storage, temp_dirs=[temp_dir])

    assert resolved.strategy == ResolutionStrategy.TEMP_FALLBACK
    assert resolved.local_path == temp_dir / "i.jpg"


def test_resolve_raises_when_nothing_matches(tmp_path: Path) -> None:
    storage = LocalStorage(tmp_path / "store")

    with pytest.raises(SourceNotFoundError) as excinfo:
        resolve_source_location("project-albums/missing.jpg", storage, temp_dirs=[tmp_path])

    assert "missing.jpg" in str(excinfo.value)


def test_resolve_propagates_transient_storage_errors(tmp_path: Path) -> None:
    class _Unreachable(LocalStorage):
        def retrieve(self, bucket: str, path: str) -> Path:
            raise StorageError("connection reset")

    with pytest.raises(StorageError) as excinfo:
        resolve_source_location("user-gallery/u1/x.jpg", _Unreachable(tmp_path))

    assert not isinstance(excinfo.value, SourceNotFoundError)


def test_s3_downloads_of_one_object_are_released_independently(fake_s3, tmp_path: Path) -> None:
    storage = S3Storage(cache_dir=tmp_path / "cache")
    storage.store(b"orig", bucket=Bucket.PROJECT_ALBUMS, path="projects/p1/albums/a1/i1.jpg")

    first = storage.retrieve(Bucket.PROJECT_ALBUMS, "projects/p1/albums/a1/i1.jpg")
    second = storage.retrieve(Bucket.PROJECT_ALBUMS, "projects/p1/albums/a1/i1.jpg")
    assert first != second

    storage.discard_local_copy(first)
    storage.discard_local_copy(first)

    assert not first.exists()
    assert second.read_bytes() == b"orig"
    storage.discard_local_copy(second)
    assert list((tmp_path / "cache").iterdir()) == []


def test_s3_failed_download_leaves_no_cache_directory(fake_s3, tmp_path: Path) -> None:
    storage = S3Storage(cache_dir=tmp_path / "cache")

    with pytest.raises(StorageObjectNotFound):
        storage.retrieve(Bucket.PROJECT_ALBUMS, "missing.jpg")

    assert list((tmp_path / "cache").iterdir()) == []


def test_local_storage_keeps_stored_file_on_discard(tmp_path: Path) -> None:
    storage = LocalStorage(tmp_path / "store")
    storage.store(b"orig", bucket=Bucket.USER_GALLERY, path="u1/Gallery/images/i1.jpg")

    local = storage.retrieve(Bucket.USER_GALLERY, "u1/Gallery/images/i1.jpg")
    storage.discard_local_copy(local)

    assert local.read_bytes() == b"orig"
