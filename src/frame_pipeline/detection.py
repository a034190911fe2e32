"""Detector interfaces and the deterministic placeholder detectors.

Real models plug in by implementing :class:`FaceDetector` or
:class:`ObjectDetector`; the placeholders keep the pipeline's data flow
(boxes, confidences, embeddings) exercised without any model weights.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol

import numpy as np
from PIL import Image

DEFAULT_EMBEDDING_DIM = 128


@dataclass(frozen=True)
class BoundingBox:
    """Box normalized to the image size; every coordinate lies in [0, 1]."""

    x: float
    y: float
    width: float
    height: float


@dataclass(frozen=True)
class FaceDetection:
    box: BoundingBox
    confidence: float
    embedding: Optional[List[float]] = None


@dataclass(frozen=True)
class ObjectDetection:
    type: str
    label: str
    box: BoundingBox
    confidence: float
    embedding: Optional[List[float]] = None


class FaceDetector(Protocol):
    def detect_faces(self, image: Image.Image) -> List[FaceDetection]:
        ...


class ObjectDetector(Protocol):
    def detect_objects(self, image: Image.Image) -> List[ObjectDetection]:
        ...


def random_embedding(rng: np.random.Generator, dim: int = DEFAULT_EMBEDDING_DIM) -> List[float]:
    return rng.uniform(-1.0, 1.0, size=dim).astype(float).tolist()


class PlaceholderFaceDetector:
    """One centered square face, 30% of the short side, confidence 0.85."""

    FACE_FRACTION = 0.3
    CONFIDENCE = 0.85

    def __init__(self, *, embedding_dim: int = DEFAULT_EMBEDDING_DIM, seed: Optional[int] = None) -> None:
        self._embedding_dim = embedding_dim
        self._rng = np.random.default_rng(seed)

    def detect_faces(self, image: Image.Image) -> List[FaceDetection]:
        width, height = image.size
        if width <= 0 or height <= 0:
            return []

        face_size = min(width, height) * self.FACE_FRACTION
        box = BoundingBox(
            x=(width / 2 - face_size / 2) / width,
            y=(height / 2 - face_size / 2) / height,
            width=face_size / width,
            height=face_size / height,
        )
        return [
            FaceDetection(
                box=box,
                confidence=self.CONFIDENCE,
                embedding=random_embedding(self._rng, self._embedding_dim),
            )
        ]


class PlaceholderObjectDetector:
    """A single fixed ``person`` box with confidence 0.92."""

    CONFIDENCE = 0.92

    def __init__(self, *, embedding_dim: int = DEFAULT_EMBEDDING_DIM, seed: Optional[int] = None) -> None:
        self._embedding_dim = embedding_dim
        self._rng = np.random.default_rng(seed)

    def detect_objects(self, image: Image.Image) -> List[ObjectDetection]:
        return [
            ObjectDetection(
                type="PERSON",
                label="person",
                box=BoundingBox(x=0.3, y=0.2, width=0.4, height=0.6),
                confidence=self.CONFIDENCE,
                embedding=random_embedding(self._rng, self._embedding_dim),
            )
        ]


__all__ = [
    "BoundingBox",
    "DEFAULT_EMBEDDING_DIM",
    "FaceDetection",
    "FaceDetector",
    "ObjectDetection",
    "ObjectDetector",
    "PlaceholderFaceDetector",
    "PlaceholderObjectDetector",
    "random_embedding",
]
