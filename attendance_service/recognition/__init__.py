"""
Recognition algorithms package.

Contains modules for:
- Image preprocessing
- Embedding extraction fan-out
- Embedding matching
- Enrollment validation
- Attendance reconciliation
"""

from .enrollment import ENROLLMENT_IMAGE_COUNT, EnrollmentValidator
from .extraction import EmbeddingExtractor, ExtractionOutcome, extract_all
from .matching import FaceMatcher, MatchResult, build_index, euclidean_distance
from .reconcile import AttendanceReconciler, normalize_roster

__all__ = [
    'ENROLLMENT_IMAGE_COUNT',
    'EnrollmentValidator',
    'EmbeddingExtractor',
    'ExtractionOutcome',
    'extract_all',
    'FaceMatcher',
    'MatchResult',
    'build_index',
    'euclidean_distance',
    'AttendanceReconciler',
    'normalize_roster',
]
