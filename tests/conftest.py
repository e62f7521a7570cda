import dataclasses
import threading
from typing import Dict, List, Sequence, Union

import numpy as np
import pytest

from attendance_service import runtime
from attendance_service.config import load_config
from attendance_service.errors import ExtractionError
from attendance_service.models import DetectedFace, ImageBlob
from attendance_service.recognition.enrollment import EnrollmentValidator
from attendance_service.recognition.reconcile import AttendanceReconciler
from attendance_service.store import AttendanceStore

DIM = 4


def vec(*values: float) -> np.ndarray:
    """Embedding of DIM floats, zero-padded."""
    padded = list(values) + [0.0] * (DIM - len(values))
    return np.asarray(padded, dtype=np.float32)


FaceEntry = Union[Sequence[np.ndarray], Exception]


class FakeExtractor:
    """Maps image bytes to pre-baked face embeddings."""

    def __init__(self, faces: Dict[bytes, FaceEntry] = None):
        self.faces: Dict[bytes, FaceEntry] = dict(faces or {})
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def extract(self, image: bytes, single: bool = False) -> List[DetectedFace]:
        with self._lock:
            self.calls.append((image, single))

        entry = self.faces.get(image)
        if entry is None:
            raise ExtractionError('could not decode image')
        if isinstance(entry, Exception):
            raise entry

        detected = [DetectedFace(embedding=np.asarray(v, dtype=np.float32)) for v in entry]
        return detected[:1] if single else detected


def blob(data: bytes) -> ImageBlob:
    return ImageBlob(data=data, source_ref=data.decode(errors='replace'))


@pytest.fixture
def config(tmp_path):
    return dataclasses.replace(
        load_config(),
        db_path=str(tmp_path / 'attendance.db'),
        upload_dir=str(tmp_path / 'uploads'),
        match_threshold=0.6,
        require_single_face=False,
        extraction_workers=4,
        extraction_timeout_seconds=5.0,
        download_retries=1,
        job_workers=2,
    )


@pytest.fixture
def store(config):
    store = AttendanceStore(config.db_path)
    store.init_schema()
    return store


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def enrollment(store, extractor, config):
    return EnrollmentValidator(store, extractor, config)


@pytest.fixture
def reconciler(store, extractor, config):
    return AttendanceReconciler(store, extractor, config)


@pytest.fixture
def enroll(enrollment, extractor):
    """Enroll an identity whose three photos embed near the given center."""

    def _enroll(identity_key: str, center: np.ndarray, name: str = None):
        images = []
        for i, offset in enumerate((vec(0.0), vec(0.05), vec(0.0, 0.05))):
            data = f'{identity_key}-enroll-{i}'.encode()
            extractor.faces[data] = [center + offset]
            images.append(blob(data))
        return enrollment.validate_and_build(
            external_key=f'app-{identity_key}',
            display_name=name or f'Student {identity_key}',
            images=images,
            identity_key=identity_key,
        )

    return _enroll


@pytest.fixture
def clean_runtime():
    runtime.shutdown_runtime(wait=True)
    yield
    runtime.shutdown_runtime(wait=True)
