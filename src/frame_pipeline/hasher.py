"""Checksums recorded for ingested originals."""

from __future__ import annotations

from functools import partial
from pathlib import Path
from typing import Final, Iterable

import xxhash

_READ_SIZE: Final[int] = 1 << 20


def _hex_digest(chunks: Iterable[bytes]) -> str:
    state = xxhash.xxh64()
    for chunk in chunks:
        state.update(chunk)
    return f"{state.intdigest():016x}"


def compute_content_hash(path: Path, chunk_size: int = _READ_SIZE) -> str:
    """Stream ``path`` through xxh64 and return 16 lowercase hex characters."""

    with path.open("rb") as handle:
        return _hex_digest(iter(partial(handle.read, chunk_size), b""))


def compute_bytes_hash(data: bytes) -> str:
    return _hex_digest((data,))


def content_hash_matches(path: Path, expected: str | None) -> bool:
    """True when ``expected`` is empty or equals the file's checksum."""

    if not expected:
        return True
    return compute_content_hash(path) == expected.strip().lower()


__all__ = ["compute_bytes_hash", "compute_content_hash", "content_hash_matches"]
