"""Storage adapter over the local filesystem and an S3-compatible object store.

Every handler reads source bytes and writes derived bytes through a
:class:`StorageProvider`. Objects are addressed by ``(bucket, path)``; the
string persisted on image rows (the *location token*) is either an absolute
local path (local backend) or a ``"{bucket}/{path}"`` composite (cloud
backend). :func:`resolve_source_location` turns any historical token back
into a local file.
"""

from __future__ import annotations

import os
import re
import shutil
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence
from urllib.parse import unquote, urlparse

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from frame_pipeline.config import StorageConfig
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "storage"})


class Bucket:
    """Bucket names shared with previously stored assets; must not change."""

    TEMP = "temp"
    USER_GALLERY = "user-gallery"
    PROJECT_ALBUMS = "project-albums"
    THUMBNAILS = "thumbnails"
    PROCESSED = "processed"


KNOWN_BUCKETS = frozenset(
    {Bucket.TEMP, Bucket.USER_GALLERY, Bucket.PROJECT_ALBUMS, Bucket.THUMBNAILS, Bucket.PROCESSED}
)
PUBLIC_BUCKETS = frozenset({Bucket.THUMBNAILS})


class StorageError(RuntimeError):
    """Storage backend failure (usually transient: network, permissions)."""


class StorageObjectNotFound(StorageError):
    """The requested ``(bucket, path)`` does not exist in the backend."""


class SourceNotFoundError(StorageError):
    """No candidate location for a source asset resolved to a local file."""


@dataclass(frozen=True)
class StoredObject:
    """Where :meth:`StorageProvider.store` put an object."""

    bucket: str
    path: str
    full_path: str
    public_url: Optional[str] = None


def storage_path(
    bucket: str,
    *,
    image_id: Optional[str] = None,
    user_id: Optional[str] = None,
    project_id: Optional[str] = None,
    album_id: Optional[str] = None,
    filename: Optional[str] = None,
    extension: str = "jpg",
) -> str:
    """Build the object path for ``bucket`` following the shared path templates."""

    ext = extension.lstrip(".") or "jpg"
    unique_id = image_id or uuid.uuid4().hex

    if bucket == Bucket.TEMP:
        return f"ingest/{unique_id}.{ext}"
    if bucket == Bucket.USER_GALLERY:
        if not user_id:
            raise ValueError("user_id required for user-gallery bucket")
        return f"{user_id}/Gallery/images/{unique_id}.{ext}"
    if bucket == Bucket.PROJECT_ALBUMS:
        if not project_id or not album_id:
            raise ValueError("project_id and album_id required for project-albums bucket")
        return f"projects/{project_id}/albums/{album_id}/{unique_id}.{ext}"
    if bucket == Bucket.THUMBNAILS:
        if not image_id:
            raise ValueError("image_id required for thumbnails bucket")
        return f"{image_id}/thumb-{filename or '512'}.{ext}"
    if bucket == Bucket.PROCESSED:
        if not image_id:
            raise ValueError("image_id required for processed bucket")
        return f"{image_id}/{filename or 'original'}.{ext}"
    raise ValueError(f"Unknown bucket: {bucket}")


class StorageProvider(ABC):
    """Uniform put/get/delete/url contract implemented by every backend."""

    is_cloud: bool = False

    @abstractmethod
    def store(
        self,
        source: bytes | Path,
        *,
        bucket: str,
        path: str,
        content_type: Optional[str] = None,
    ) -> StoredObject:
        """Persist bytes (or a local file's contents) at ``(bucket, path)``."""

    @abstractmethod
    def retrieve(self, bucket: str, path: str) -> Path:
        """Return a local file holding the object, downloading it if needed."""

    @abstractmethod
    def remove(self, bucket: str, path: str) -> bool:
        """Delete the object; ``True`` when something was removed."""

    @abstractmethod
    def get_url(self, bucket: str, path: str, expires_in: Optional[int] = None) -> Optional[str]:
        """Return a URL for the object, or ``None`` when none can be produced."""

    @abstractmethod
    def exists(self, bucket: str, path: str) -> bool:
        """Whether the object exists."""

    def discard_local_copy(self, local_path: Path) -> None:
        """Release a file returned by :meth:`retrieve` once the caller is done with it.

        Backends that hand out the stored object itself keep it.
        """


class LocalStorage(StorageProvider):
    """Objects live at ``{root}/{bucket}/{path}`` on the local filesystem."""

    is_cloud = False

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).expanduser().resolve()

    @property
    def root(self) -> Path:
        return self._root

    def _object_path(self, bucket: str, path: str) -> Path:
        candidate = (self._root / bucket / path.lstrip("/")).resolve()
        if not candidate.is_relative_to(self._root / bucket):
            raise StorageObjectNotFound(f"Path escapes bucket {bucket!r}: {path!r}")
        return candidate

    def store(
        self,
        source: bytes | Path,
        *,
        bucket: str,
        path: str,
        content_type: Optional[str] = None,
    ) -> StoredObject:
        try:
            target = self._object_path(bucket, path)
        except StorageObjectNotFound as exc:
            raise StorageError(str(exc)) from exc

        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(f"{target.name}.{uuid.uuid4().hex}.part")
        try:
            if isinstance(source, (bytes, bytearray)):
                partial.write_bytes(source)
            else:
                shutil.copyfile(source, partial)
            os.replace(partial, target)
        except OSError as exc:
            partial.unlink(missing_ok=True)
            raise StorageError(f"Failed to write {bucket}/{path}: {exc}") from exc

        LOGGER.debug("storage_object_stored", extra={"bucket": bucket, "path": path, "target": str(target)})
        return StoredObject(bucket=bucket, path=path, full_path=str(target))

    def retrieve(self, bucket: str, path: str) -> Path:
        target = self._object_path(bucket, path)
        if not target.is_file():
            raise StorageObjectNotFound(f"{bucket}/{path} not found under {self._root}")
        return target

    def remove(self, bucket: str, path: str) -> bool:
        try:
            target = self._object_path(bucket, path)
        except StorageObjectNotFound:
            return False
        if not target.is_file():
            return False
        target.unlink()
        return True

    def get_url(self, bucket: str, path: str, expires_in: Optional[int] = None) -> Optional[str]:
        try:
            target = self._object_path(bucket, path)
        except StorageObjectNotFound:
            return None
        return target.as_uri() if target.is_file() else None

    def exists(self, bucket: str, path: str) -> bool:
        try:
            return self._object_path(bucket, path).is_file()
        except StorageObjectNotFound:
            return False


_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}


def _is_not_found(exc: ClientError) -> bool:
    code = str(exc.response.get("Error", {}).get("Code", ""))
    return code in _NOT_FOUND_CODES


def _boto3() -> Any:
    return boto3


class S3Storage(StorageProvider):
    """S3-compatible object store (AWS S3, R2, MinIO) accessed through boto3.

    Every download lands in its own ``cache_dir/{token}/{bucket}/{path}`` so that
    image libraries work on a local file and concurrent readers of one object
    never share (or delete) each other's copy.
    """

    is_cloud = True

    def __init__(
        self,
        *,
        cache_dir: Path | str,
        endpoint_url: Optional[str] = None,
        region: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        public_base_url: Optional[str] = None,
        signed_url_ttl: int = 3600,
        client: Any = None,
    ) -> None:
        self._cache_dir = Path(cache_dir).expanduser()
        self._endpoint_url = endpoint_url
        self._region = region
        self._access_key = access_key
        self._secret_key = secret_key
        self._public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self._signed_url_ttl = signed_url_ttl
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = _boto3().client(
                "s3",
                endpoint_url=self._endpoint_url,
                region_name=self._region,
                aws_access_key_id=self._access_key,
                aws_secret_access_key=self._secret_key,
            )
        return self._client

    def _public_url(self, bucket: str, path: str) -> Optional[str]:
        if bucket not in PUBLIC_BUCKETS:
            return None
        if self._public_base_url:
            return f"{self._public_base_url}/{bucket}/{path}"
        if self._endpoint_url:
            return f"{self._endpoint_url.rstrip('/')}/{bucket}/{path}"
        return None

    def store(
        self,
        source: bytes | Path,
        *,
        bucket: str,
        path: str,
        content_type: Optional[str] = None,
    ) -> StoredObject:
        body = bytes(source) if isinstance(source, (bytes, bytearray)) else Path(source).read_bytes()
        params: dict[str, Any] = {"Bucket": bucket, "Key": path, "Body": body}
        if content_type:
            params["ContentType"] = content_type
        try:
            self.client.put_object(**params)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to upload {bucket}/{path}: {exc}") from exc

        LOGGER.info("storage_object_uploaded", extra={"bucket": bucket, "path": path, "size_bytes": len(body)})
        return StoredObject(
            bucket=bucket,
            path=path,
            full_path=f"{bucket}/{path}",
            public_url=self._public_url(bucket, path),
        )

    def retrieve(self, bucket: str, path: str) -> Path:
        download_dir = self._cache_dir / uuid.uuid4().hex
        target = download_dir / bucket / path.lstrip("/")
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.client.download_file(bucket, path, str(target))
        except ClientError as exc:
            shutil.rmtree(download_dir, ignore_errors=True)
            if _is_not_found(exc):
                raise StorageObjectNotFound(f"{bucket}/{path} not found") from exc
            raise StorageError(f"Failed to download {bucket}/{path}: {exc}") from exc
        except BotoCoreError as exc:
            shutil.rmtree(download_dir, ignore_errors=True)
            raise StorageError(f"Failed to download {bucket}/{path}: {exc}") from exc
        return target

    def discard_local_copy(self, local_path: Path) -> None:
        try:
            token = Path(local_path).relative_to(self._cache_dir).parts[0]
        except (ValueError, IndexError):
            LOGGER.warning("storage_discard_outside_cache", extra={"path": str(local_path)})
            return
        try:
            shutil.rmtree(self._cache_dir / token)
        except FileNotFoundError:
            return
        except OSError as exc:
            LOGGER.warning("storage_cache_cleanup_error", extra={"path": str(local_path), "error": str(exc)})

    def remove(self, bucket: str, path: str) -> bool:
        try:
            self.client.delete_object(Bucket=bucket, Key=path)
        except (BotoCoreError, ClientError) as exc:
            LOGGER.warning("storage_remove_error", extra={"bucket": bucket, "path": path, "error": str(exc)})
            return False
        return True

    def get_url(self, bucket: str, path: str, expires_in: Optional[int] = None) -> Optional[str]:
        public = self._public_url(bucket, path)
        if public:
            return public
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": bucket, "Key": path},
                ExpiresIn=expires_in or self._signed_url_ttl,
            )
        except (BotoCoreError, ClientError) as exc:
            LOGGER.warning("storage_signed_url_error", extra={"bucket": bucket, "path": path, "error": str(exc)})
            return None

    def exists(self, bucket: str, path: str) -> bool:
        try:
            self.client.head_object(Bucket=bucket, Key=path)
        except ClientError as exc:
            if _is_not_found(exc):
                return False
            raise StorageError(f"Failed to stat {bucket}/{path}: {exc}") from exc
        return True


def build_storage(config: StorageConfig) -> StorageProvider:
    """Instantiate the backend selected by ``config.backend``."""

    backend = config.backend.strip().lower()
    if backend == "local":
        return LocalStorage(config.root)
    if config.is_cloud:
        return S3Storage(
            cache_dir=config.cache_dir,
            endpoint_url=config.endpoint_url,
            region=config.region,
            access_key=config.access_key,
            secret_key=config.secret_key,
            public_base_url=config.public_base_url,
            signed_url_ttl=config.signed_url_ttl,
        )
    raise ValueError(f"Unsupported storage backend: {config.backend!r}")


# --- source resolution ---------------------------------------------------------


class ResolutionStrategy(str, Enum):
    """Ways a location token can be mapped to a stored object, in priority order."""

    LOCAL_FILE = "local_file"
    URL = "url"
    BUCKET_PATH = "bucket_path"
    DEFAULT_BUCKET = "default_bucket"
    TEMP_FALLBACK = "temp_fallback"


@dataclass(frozen=True)
class SourceLocation:
    """One candidate interpretation of a location token.

    ``bucket`` is ``None`` for the filesystem strategies, in which case
    ``path`` is a local filesystem path.
    """

    strategy: ResolutionStrategy
    path: str
    bucket: Optional[str] = None


@dataclass(frozen=True)
class ResolvedPath:
    """The candidate that produced a readable local file."""

    strategy: ResolutionStrategy
    local_path: Path
    bucket: Optional[str] = None
    path: Optional[str] = None


_URL_OBJECT_PATTERN = re.compile(r"object/(?:public/|sign/|authenticated/)?([^/]+)/(.+)$")


def location_from_url(candidate: str) -> Optional[SourceLocation]:
    """Parse ``https://…/object/[public/]{bucket}/{path}`` style URLs."""

    if not candidate.startswith(("http://", "https://")):
        return None
    parsed = urlparse(candidate)
    match = _URL_OBJECT_PATTERN.search(unquote(parsed.path))
    if match is None:
        return None
    return SourceLocation(ResolutionStrategy.URL, path=match.group(2), bucket=match.group(1))


def location_from_composite(candidate: str) -> Optional[SourceLocation]:
    """Parse ``{bucket}/{path}`` composites whose first segment is a known bucket."""

    bucket, sep, path = candidate.partition("/")
    if not sep or not path or bucket not in KNOWN_BUCKETS:
        return None
    return SourceLocation(ResolutionStrategy.BUCKET_PATH, path=path, bucket=bucket)


def location_in_default_bucket(candidate: str, default_bucket: str) -> Optional[SourceLocation]:
    """Treat the token as a bare object path inside ``default_bucket``."""

    path = candidate.lstrip("/")
    if not path or not default_bucket:
        return None
    return SourceLocation(ResolutionStrategy.DEFAULT_BUCKET, path=path, bucket=default_bucket)


def temp_fallback_locations(candidate: str, temp_dirs: Iterable[Path | str]) -> List[SourceLocation]:
    """Same basename inside each local temp directory (interrupted offloads)."""

    name = Path(urlparse(candidate).path if "://" in candidate else candidate).name
    if not name:
        return []
    return [SourceLocation(ResolutionStrategy.TEMP_FALLBACK, path=str(Path(root) / name)) for root in temp_dirs]


def candidate_locations(
    candidate: str,
    *,
    default_bucket: str,
    temp_dirs: Sequence[Path | str] = (),
) -> List[SourceLocation]:
    """Expand a location token into candidates, highest priority first."""

    token = candidate.strip()
    if not token:
        return []

    locations: List[SourceLocation] = [SourceLocation(ResolutionStrategy.LOCAL_FILE, path=token)]

    url_location = location_from_url(token)
    if url_location is not None:
        locations.append(url_location)
    elif "://" not in token:
        composite = location_from_composite(token)
        if composite is not None:
            locations.append(composite)
        bare = location_in_default_bucket(token, default_bucket)
        if bare is not None and bare != composite:
            locations.append(bare)

    locations.extend(temp_fallback_locations(token, temp_dirs))
    return locations


def resolve_source_location(
    candidate: str,
    storage: StorageProvider,
    *,
    default_bucket: str = Bucket.PROJECT_ALBUMS,
    temp_dirs: Sequence[Path | str] = (),
) -> ResolvedPath:
    """Resolve a location token to a local file, trying each strategy in order.

    Missing objects move on to the next candidate; any other storage error
    propagates so the job is retried. Raises :class:`SourceNotFoundError`
    once every candidate is exhausted.
    """

    tried: List[str] = []
    for location in candidate_locations(candidate, default_bucket=default_bucket, temp_dirs=temp_dirs):
        if location.bucket is None:
            local = Path(location.path)
            tried.append(str(local))
            if local.is_file():
                return ResolvedPath(strategy=location.strategy, local_path=local)
            continue

        tried.append(f"{location.bucket}/{location.path}")
        try:
            local = storage.retrieve(location.bucket, location.path)
        except StorageObjectNotFound:
            continue
        LOGGER.debug(
            "source_resolved",
            extra={"candidate": candidate, "strategy": location.strategy.value, "local_path": str(local)},
        )
        return ResolvedPath(
            strategy=location.strategy,
            local_path=local,
            bucket=location.bucket,
            path=location.path,
        )

    raise SourceNotFoundError(f"Original image not found at: {candidate} (tried {', '.join(tried) or 'nothing'})")


__all__ = [
    "Bucket",
    "KNOWN_BUCKETS",
    "StorageError",
    "StorageObjectNotFound",
    "SourceNotFoundError",
    "StoredObject",
    "StorageProvider",
    "LocalStorage",
    "S3Storage",
    "build_storage",
    "storage_path",
    "ResolutionStrategy",
    "SourceLocation",
    "ResolvedPath",
    "location_from_url",
    "location_from_composite",
    "location_in_default_bucket",
    "temp_fallback_locations",
    "candidate_locations",
    "resolve_source_location",
]
