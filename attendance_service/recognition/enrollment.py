"""
Enrollment validation module.

Turns three photos of a person into a verified identity with three stored
embeddings. All checks run before anything is written:

1. Exactly three images
2. Keys not already enrolled
3. One usable face per image
4. All three faces within the match threshold of each other

Accepted photos are saved under the upload directory and their paths become
the embeddings' source references.
"""

import uuid
from itertools import combinations
from typing import List, Optional, Sequence

import numpy as np

from ..config import Config
from ..errors import ConflictError, InputError, ValidationError
from ..intake import remove_files, save_images
from ..logging_config import get_logger
from ..models import Embedding, EnrolledIdentity, Identity, ImageBlob
from ..store import AttendanceStore
from .extraction import EmbeddingExtractor, extract_all
from .matching import euclidean_distance

logger = get_logger(__name__)

ENROLLMENT_IMAGE_COUNT = 3


class EnrollmentValidator:
    """Validates enrollment photos and persists the resulting identity."""

    def __init__(self, store: AttendanceStore, extractor: EmbeddingExtractor, config: Config):
        """
        Args:
            store: Relational store
            extractor: Face embedding extractor
            config: Service configuration
        """
        self.store = store
        self.extractor = extractor
        self.config = config

    def validate_and_build(
        self,
        external_key: str,
        display_name: str,
        images: Sequence[ImageBlob],
        identity_key: Optional[str] = None
    ) -> EnrolledIdentity:
        """
        Validate enrollment photos and create the identity.

        Args:
            external_key: External (application) key, unique
            display_name: Person's name
            images: Exactly three photos of the same person
            identity_key: Roster key; a random one is generated if omitted

        Returns:
            The stored identity with its embeddings

        Raises:
            InputError: Missing fields or wrong number of images
            ConflictError: Either key is already enrolled
            ValidationError: No face, multiple faces (strict mode), unreadable
                image, or faces of different people
            IntakeError: Photos could not be saved (nothing is stored)
            StoreError: Persistence failed (nothing is stored)
        """
        external_key = (external_key or '').strip()
        display_name = (display_name or '').strip()
        if identity_key is not None:
            identity_key = str(identity_key).strip()
            if not identity_key:
                raise InputError('identity key must not be blank')

        if not external_key or not display_name:
            raise InputError('external key and display name are required')

        if len(images) != ENROLLMENT_IMAGE_COUNT:
            raise InputError(f'exactly {ENROLLMENT_IMAGE_COUNT} images required')

        if self.store.identity_exists(external_key, identity_key):
            raise ConflictError('duplicate identity')

        vectors = self._extract_enrollment_embeddings(images)
        self._check_same_person(vectors)

        identity = Identity(
            identity_key=identity_key or uuid.uuid4().hex,
            external_key=external_key,
            display_name=display_name,
        )
        paths = save_images(images, self.config.upload_dir, identity.identity_key)
        embeddings = tuple(
            Embedding(identity.identity_key, vector, path)
            for vector, path in zip(vectors, paths)
        )

        # Unique constraints turn a lost race with a concurrent enrollment into ConflictError
        try:
            self.store.create_identity(identity, embeddings)
        except Exception:
            remove_files(paths)
            raise

        logger.info(f'✅ Enrolled {display_name} as {identity.identity_key}')

        return EnrolledIdentity(identity, embeddings)

    def _extract_enrollment_embeddings(self, images: Sequence[ImageBlob]) -> List[np.ndarray]:
        """
        One embedding per image, failing on the first image (by index) that
        does not yield exactly one usable face.
        """
        strict = self.config.require_single_face

        outcomes = extract_all(
            self.extractor,
            images,
            single=not strict,
            max_workers=self.config.extraction_workers,
            timeout_seconds=self.config.extraction_timeout_seconds,
        )

        vectors: List[np.ndarray] = []
        for outcome in outcomes:
            if not outcome.ok:
                logger.warning(f'Enrollment image {outcome.index} unreadable: {outcome.error}')
                raise ValidationError('could not read image', outcome.index)
            if not outcome.faces:
                raise ValidationError('no face detected', outcome.index)
            if strict and len(outcome.faces) > 1:
                raise ValidationError('multiple faces detected', outcome.index)
            vectors.append(np.asarray(outcome.faces[0].embedding, dtype=np.float32))

        return vectors

    def _check_same_person(self, vectors: Sequence[np.ndarray]) -> None:
        """Reject if any pair of enrollment embeddings is farther apart than the threshold."""
        threshold = self.config.match_threshold

        for (i, a), (j, b) in combinations(enumerate(vectors), 2):
            if a.shape != b.shape:
                raise ValidationError('images are not of the same person')

            distance = euclidean_distance(a, b)
            logger.debug(f'Enrollment distance image {i} <-> {j}: {distance:.3f}')
            if distance > threshold:
                logger.info(
                    f'Enrollment rejected: images {i} and {j} at distance '
                    f'{distance:.3f} > {threshold:.2f}'
                )
                raise ValidationError('images are not of the same person')
