"""
Background job runner.

Accepts attendance-by-URL requests, acknowledges them immediately and runs
download + reconciliation on a worker pool. Outcomes are visible only through
stored attendance marks and the log.
"""

import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Iterable, List, Optional, Sequence, Set

from .config import Config
from .errors import AttendanceError, InputError
from .intake import fetch_images
from .logging_config import get_logger
from .models import ImageBlob, JobReceipt
from .recognition.reconcile import AttendanceReconciler, normalize_roster

logger = get_logger(__name__)

Fetcher = Callable[[Sequence[str]], List[ImageBlob]]


class BackgroundJobRunner:
    """
    Fire-and-forget executor for reconciliation jobs.

    Jobs for different sessions run concurrently; there is no status query
    and no cancellation.
    """

    def __init__(
        self,
        reconciler: AttendanceReconciler,
        config: Config,
        fetcher: Optional[Fetcher] = None
    ):
        """
        Args:
            reconciler: Attendance reconciler
            config: Service configuration
            fetcher: Turns image refs into blobs; defaults to lenient
                concurrent download that skips failed images
        """
        self.reconciler = reconciler
        self.config = config
        self.fetcher = fetcher or (
            lambda refs: fetch_images(refs, config, strict=False, allow_local=False)
        )
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, config.job_workers),
            thread_name_prefix='attendance-job'
        )
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

    def submit(self, session_key: str, roster: Iterable, image_refs: Sequence[str]) -> JobReceipt:
        """
        Queue a reconciliation and return at once.

        Args:
            session_key: Session identifier
            roster: Identity keys eligible for the session
            image_refs: Class image URLs

        Returns:
            JobReceipt with roster size and image count

        Raises:
            InputError: If the request is malformed (checked before queuing)
        """
        session_key = str(session_key or '').strip()
        if not session_key:
            raise InputError('session key is required')

        roster_keys = normalize_roster(roster)

        refs = [str(ref).strip() for ref in image_refs if ref and str(ref).strip()]
        if not refs:
            raise InputError('at least one image URL is required')

        receipt = JobReceipt(
            job_id=uuid.uuid4().hex,
            session_key=session_key,
            roster_size=len(roster_keys),
            image_count=len(refs),
        )

        future = self._executor.submit(self._run, receipt, roster_keys, refs)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)

        logger.info(
            f'Job {receipt.job_id} accepted: session {session_key}, '
            f'{receipt.roster_size} in roster, {receipt.image_count} images'
        )
        return receipt

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def _run(self, receipt: JobReceipt, roster: Set[str], refs: List[str]) -> None:
        logger.info(f'Job {receipt.job_id} started')
        try:
            images = self.fetcher(refs)
            if not images:
                logger.error(f'Job {receipt.job_id} aborted: none of {len(refs)} images could be fetched')
                return

            result = self.reconciler.reconcile(receipt.session_key, roster, images)
            logger.info(
                f'✅ Job {receipt.job_id} finished: session {result.session_key}, '
                f'present={len(result.present)}, absent={len(result.absent)}'
            )
        except AttendanceError as e:
            logger.error(f'Job {receipt.job_id} failed: {type(e).__name__}: {e}')
        except Exception as e:
            logger.error(f'Job {receipt.job_id} crashed: {e}', exc_info=True)

    def shutdown(self, wait: bool = True) -> None:
        """
        Stop accepting jobs.

        Args:
            wait: Block until queued and running jobs finish
        """
        logger.info(f'Shutting down job runner ({self.pending_count} pending)')
        self._executor.shutdown(wait=wait)
