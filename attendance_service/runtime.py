"""
Process-wide runtime state.

The face model and the store are initialized once at startup. Until
init_runtime() completes, get_runtime() raises NotReadyError so no request
can reach the pipeline half-initialized.
"""

import threading
from dataclasses import dataclass
from typing import Optional

from .config import Config
from .errors import NotReadyError
from .jobs import BackgroundJobRunner
from .logging_config import get_logger
from .recognition.enrollment import EnrollmentValidator
from .recognition.extraction import EmbeddingExtractor
from .recognition.reconcile import AttendanceReconciler
from .store import AttendanceStore

logger = get_logger(__name__)


@dataclass
class Runtime:
    """Initialized collaborators shared by all requests."""

    config: Config
    store: AttendanceStore
    extractor: EmbeddingExtractor
    enrollment: EnrollmentValidator
    reconciler: AttendanceReconciler
    jobs: BackgroundJobRunner


_runtime: Optional[Runtime] = None
_ready = threading.Event()
_init_lock = threading.Lock()


def init_runtime(
    config: Config,
    extractor: Optional[EmbeddingExtractor] = None,
    store: Optional[AttendanceStore] = None
) -> Runtime:
    """
    Initialize the store and face model and open the readiness gate.

    Args:
        config: Service configuration
        extractor: Pre-built extractor; InsightFace is loaded if omitted
        store: Pre-built store; a SQLite store at config.db_path if omitted

    Returns:
        The ready runtime

    Raises:
        StoreError: Database unreachable
        Exception: Any face model loading failure (callers treat it as fatal)
    """
    global _runtime

    with _init_lock:
        if _ready.is_set():
            logger.warning('Runtime already initialized')
            return _runtime

        if store is None:
            store = AttendanceStore(config.db_path)
        logger.info(f'Connecting to database {store.db_path}...')
        store.ping()
        if config.auto_create_schema:
            store.init_schema()

        if extractor is None:
            # Import here so tests and tools never load the model
            from .face_app import InsightFaceExtractor, initialize_face_app
            extractor = InsightFaceExtractor(initialize_face_app(config), config)

        reconciler = AttendanceReconciler(store, extractor, config)
        _runtime = Runtime(
            config=config,
            store=store,
            extractor=extractor,
            enrollment=EnrollmentValidator(store, extractor, config),
            reconciler=reconciler,
            jobs=BackgroundJobRunner(reconciler, config),
        )
        _ready.set()

    logger.info('✅ Runtime ready')
    return _runtime


def get_runtime() -> Runtime:
    """
    Return the initialized runtime.

    Raises:
        NotReadyError: If init_runtime() has not completed
    """
    if not _ready.is_set() or _runtime is None:
        raise NotReadyError('service is still initializing')
    return _runtime


def is_ready() -> bool:
    return _ready.is_set()


def shutdown_runtime(wait: bool = True) -> None:
    """Close the readiness gate and drain background jobs."""
    global _runtime

    with _init_lock:
        _ready.clear()
        runtime, _runtime = _runtime, None

    if runtime is not None:
        runtime.jobs.shutdown(wait=wait)
