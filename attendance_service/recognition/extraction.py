"""
Embedding extraction fan-out.

Defines the extractor interface the pipeline depends on and runs one
extraction per image on a thread pool, joining all of them before the caller
moves on to matching or validation.
"""

import math
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence

from ..errors import ExtractionError
from ..logging_config import get_logger
from ..models import DetectedFace, ImageBlob

logger = get_logger(__name__)


class EmbeddingExtractor(Protocol):
    """Anything that turns image bytes into face embeddings."""

    def extract(self, image: bytes, single: bool = False) -> List[DetectedFace]:
        """
        Detect faces and compute their embeddings.

        Args:
            image: Encoded image bytes (JPEG/PNG/WEBP)
            single: Return at most the best face

        Returns:
            Detected faces, best first; empty if no face was found

        Raises:
            ExtractionError: If the image cannot be decoded or processed
        """
        ...


@dataclass
class ExtractionOutcome:
    """Per-image extraction result; exactly one of faces/error is meaningful."""

    index: int
    source_ref: str
    faces: List[DetectedFace] = field(default_factory=list)
    error: Optional[ExtractionError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def extract_all(
    extractor: EmbeddingExtractor,
    images: Sequence[ImageBlob],
    single: bool,
    max_workers: int,
    timeout_seconds: float
) -> List[ExtractionOutcome]:
    """
    Run the extractor over every image concurrently.

    Each call gets timeout_seconds; with more images than workers the overall
    deadline grows by one timeout per extra wave. Calls that miss the deadline
    are reported as ExtractionError. The worker thread itself cannot be
    interrupted and finishes in the background. concurrent.futures joins its
    worker threads at interpreter exit, so a call that never returns (a hung
    InsightFace session) also holds up process shutdown. A warning naming
    the abandoned images is logged when that happens.

    Args:
        extractor: Embedding extractor
        images: Images to process
        single: Passed through to the extractor
        max_workers: Thread pool size
        timeout_seconds: Per-call deadline

    Returns:
        One outcome per image, in input order
    """
    if not images:
        return []

    workers = max(1, min(max_workers, len(images)))
    deadline = timeout_seconds * math.ceil(len(images) / workers)

    outcomes = [ExtractionOutcome(index=i, source_ref=blob.source_ref) for i, blob in enumerate(images)]

    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix='extract')
    try:
        futures = {
            executor.submit(extractor.extract, blob.data, single): i
            for i, blob in enumerate(images)
        }
        done, not_done = wait(futures, timeout=deadline)

        for future in done:
            outcome = outcomes[futures[future]]
            try:
                outcome.faces = list(future.result())
            except ExtractionError as e:
                outcome.error = e
            except Exception as e:
                # Model/runtime failures on one image must not abort the batch
                outcome.error = ExtractionError(f'extraction failed: {e}')

        for future in not_done:
            future.cancel()
            outcome = outcomes[futures[future]]
            outcome.error = ExtractionError(f'extraction timed out after {timeout_seconds:.0f}s')

        if not_done:
            abandoned = sorted(futures[f] for f in not_done if f.running())
            if abandoned:
                logger.warning(
                    f'Extraction still running for images {abandoned} after the deadline; '
                    f'their threads are abandoned and will delay shutdown until they return'
                )
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    failed = sum(1 for o in outcomes if not o.ok)
    logger.debug(f'Extraction finished: {len(outcomes) - failed} ok, {failed} failed')

    return outcomes
