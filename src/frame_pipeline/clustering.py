"""Cosine similarity and greedy single-link clustering of face embeddings."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Hashable, List, Optional, Sequence, TypeVar

import numpy as np

K = TypeVar("K", bound=Hashable)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between ``a`` and ``b``.

    Vectors of different length, or with zero norm, have similarity 0.
    """

    if len(a) != len(b) or len(a) == 0:
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)


@dataclass(frozen=True)
class EmbeddedItem(Generic[K]):
    key: K
    embedding: Optional[Sequence[float]]


def single_link_groups(items: Sequence[EmbeddedItem[K]], threshold: float) -> List[List[K]]:
    """Group items in input order, first seed wins.

    Each not-yet-assigned item seeds a new group and absorbs every later
    unassigned item whose similarity *to the seed* is at least ``threshold``.
    Membership is not transitive, so the result depends on input order.
    Items without an embedding only ever form their own singleton group.
    """

    assigned: set = set()
    groups: List[List[K]] = []

    for seed in items:
        if seed.key in assigned:
            continue
        group = [seed.key]
        assigned.add(seed.key)

        if seed.embedding:
            for other in items:
                if other.key in assigned or not other.embedding:
                    continue
                if cosine_similarity(seed.embedding, other.embedding) >= threshold:
                    group.append(other.key)
                    assigned.add(other.key)

        groups.append(group)

    return groups


__all__ = ["EmbeddedItem", "cosine_similarity", "single_link_groups"]
