"""
Domain records shared by the recognition pipeline, the store and the HTTP layer.
"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, List, Optional, Tuple

import numpy as np


class AttendanceStatus(str, Enum):
    """Attendance mark status (stored as its value)."""

    PRESENT = 'Present'
    ABSENT = 'Absent'


@dataclass(frozen=True)
class Identity:
    """An enrolled person. Written once, never mutated."""

    identity_key: str
    external_key: str
    display_name: str


@dataclass(frozen=True)
class Embedding:
    """A stored face embedding owned by exactly one identity."""

    identity_key: str
    vector: np.ndarray
    source_ref: str


@dataclass(frozen=True)
class EnrolledIdentity:
    """Result of a successful enrollment."""

    identity: Identity
    embeddings: Tuple[Embedding, ...]


@dataclass(frozen=True)
class AttendanceMark:
    """One (identity, session) attendance row."""

    identity_key: str
    session_key: str
    status: AttendanceStatus


@dataclass(frozen=True)
class ImageBlob:
    """
    Raw image bytes plus an opaque reference to where they came from.

    source_ref is an upload file name, local path or URL. Enrollment saves
    the bytes to disk and stores the saved path with each embedding.
    """

    data: bytes
    source_ref: str = ''


@dataclass
class DetectedFace:
    """A single face returned by the embedding extractor."""

    embedding: np.ndarray
    bbox: Tuple[float, float, float, float] = (0.0, 0.0, 0.0, 0.0)
    det_score: float = 1.0
    landmarks: Optional[List[Tuple[float, float]]] = None


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one attendance reconciliation run."""

    session_key: str
    present: FrozenSet[str]
    absent: FrozenSet[str]
    detections: int = 0
    skipped_images: int = 0
    unknown_faces: int = 0

    def summary(self) -> dict:
        return {
            'session_key': self.session_key,
            'presentCount': len(self.present),
            'absentCount': len(self.absent),
            'present': sorted(self.present),
            'absent': sorted(self.absent),
            'detections': self.detections,
            'skippedImages': self.skipped_images,
        }


@dataclass(frozen=True)
class JobReceipt:
    """Immediate acknowledgment for a background attendance job."""

    job_id: str
    session_key: str
    roster_size: int
    image_count: int
