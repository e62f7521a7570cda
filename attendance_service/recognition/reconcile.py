"""
Attendance reconciliation module.

Decides who in a roster was present in a set of class images and writes one
mark per roster member for the session:
- Build a matcher from the roster's stored embeddings only
- Extract every face from every image (concurrently)
- Union of matched roster identities = present, the rest = absent
- Mark everyone Absent, then mark the present ones Present
"""

from typing import Iterable, Sequence, Set

from ..config import Config
from ..errors import InputError
from ..logging_config import get_logger
from ..models import AttendanceStatus, ImageBlob, ReconcileResult
from ..store import AttendanceStore
from .extraction import EmbeddingExtractor, extract_all
from .matching import FaceMatcher, build_index

logger = get_logger(__name__)


def normalize_roster(roster: Iterable) -> Set[str]:
    """
    Roster keys as a set of non-blank strings.

    Raises:
        InputError: If the roster is empty
    """
    keys = {str(key).strip() for key in roster if key is not None}
    keys.discard('')
    if not keys:
        raise InputError('roster must not be empty')
    return keys


class AttendanceReconciler:
    """Computes and persists present/absent sets for a session."""

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

    def build_matcher(self, roster: Set[str]) -> FaceMatcher:
        """Matcher restricted to roster identities."""
        identity_embeddings = self.store.load_embeddings(sorted(roster))
        matcher = build_index(identity_embeddings, self.config.match_threshold)

        missing = len(roster) - len(matcher)
        if missing:
            logger.warning(f'{missing}/{len(roster)} roster identities have no usable embeddings')

        return matcher

    def reconcile(
        self,
        session_key: str,
        roster: Iterable,
        probe_images: Sequence[ImageBlob]
    ) -> ReconcileResult:
        """
        Take attendance for one session.

        Args:
            session_key: Session identifier (e.g. timetable slot)
            roster: Identity keys eligible for this session
            probe_images: Class images

        Returns:
            ReconcileResult with present and absent sets

        Raises:
            InputError: Blank session key, empty roster or no images
            StoreError: Loading embeddings or writing marks failed
        """
        session_key = str(session_key or '').strip()
        if not session_key:
            raise InputError('session key is required')

        roster_keys = normalize_roster(roster)

        if not probe_images:
            raise InputError('at least one image is required')

        logger.info(
            f'[Attendance] Start session {session_key}: '
            f'{len(roster_keys)} in roster, {len(probe_images)} images'
        )

        matcher = self.build_matcher(roster_keys)

        present: Set[str] = set()
        detections = 0
        skipped = 0
        unknown = 0

        if len(matcher) == 0:
            logger.error(f'[Attendance] No valid face descriptors for session {session_key}, marking all absent')
        else:
            outcomes = extract_all(
                self.extractor,
                probe_images,
                single=False,
                max_workers=self.config.extraction_workers,
                timeout_seconds=self.config.extraction_timeout_seconds,
            )

            # Outcomes are merged after the join; workers never touch the present set
            for outcome in outcomes:
                if not outcome.ok:
                    skipped += 1
                    logger.error(
                        f'[Attendance] Image {outcome.index} ({outcome.source_ref or "upload"}) '
                        f'skipped: {outcome.error}'
                    )
                    continue

                detections += len(outcome.faces)
                for face in outcome.faces:
                    try:
                        match = matcher.classify(face.embedding)
                    except ValueError as e:
                        logger.warning(f'[Attendance] Unusable face in image {outcome.index}: {e}')
                        continue

                    if match.is_unknown:
                        unknown += 1
                    elif match.identity_key in roster_keys:
                        present.add(match.identity_key)

        absent = roster_keys - present

        # Absent pass first so a person no longer detected loses a stale Present
        self.store.upsert_marks(session_key, sorted(roster_keys), AttendanceStatus.ABSENT)
        self.store.upsert_marks(session_key, sorted(present), AttendanceStatus.PRESENT)

        logger.info(
            f'[Attendance] Done session {session_key}: Present={len(present)}, '
            f'Absent={len(absent)}, Detections={detections}, Unknown={unknown}, '
            f'Skipped images={skipped}'
        )

        return ReconcileResult(
            session_key=session_key,
            present=frozenset(present),
            absent=frozenset(absent),
            detections=detections,
            skipped_images=skipped,
            unknown_faces=unknown,
        )
