"""
Configuration module for Attendance Service.

Loads configuration from environment variables with sensible defaults.
All settings are immutable after initialization.
"""

import os
from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class Config:
    """
    Immutable configuration for Attendance Service.

    Service Identity:
        service_name: Name of this service instance (used in log context)
        http_host: Interface for the Flask HTTP server
        http_port: Port for the Flask HTTP server

    Storage:
        db_path: Path to the SQLite database file
        auto_create_schema: Create missing tables on startup

    Matching:
        match_threshold: Maximum Euclidean distance at which two faces
            are considered the same person (lower = stricter)
            The 0.6 default assumes descriptors spread like dlib's; unit-length
            InsightFace embeddings of one person usually sit around 0.8-1.1
            apart, so retune FACE_MATCHER_THRESHOLD (about 1.0-1.2) for them
        require_single_face: Reject enrollment photos with more than one face

    InsightFace:
        insightface_model: Model pack name (buffalo_l, buffalo_s, ...)
        insightface_det_size: Detection size (width, height)
        resize_width: Enrollment images are downscaled to this width
            before detection (0 disables resizing)

    Intake:
        max_class_images: Maximum number of uploaded class images per request
        max_upload_bytes: Maximum request body size
        download_timeout_seconds: Per-request timeout for image downloads
        download_retries: Extra attempts for a failed image download
        upload_dir: Directory where accepted enrollment photos are saved

    Workers:
        extraction_workers: Thread pool size for per-image extraction
        extraction_timeout_seconds: Deadline for a single extraction call
        job_workers: Thread pool size for background attendance jobs

    System:
        debug_mode: Enable debug logging
        log_file: Rotating log file path (empty = stdout only)
    """

    # Service
    service_name: str
    http_host: str
    http_port: int

    # Storage
    db_path: str
    auto_create_schema: bool

    # Matching
    match_threshold: float
    require_single_face: bool

    # InsightFace
    insightface_model: str
    insightface_det_size: Tuple[int, int]
    resize_width: int

    # Intake
    max_class_images: int
    max_upload_bytes: int
    download_timeout_seconds: float
    download_retries: int
    upload_dir: str

    # Workers
    extraction_workers: int
    extraction_timeout_seconds: float
    job_workers: int

    # System
    debug_mode: bool
    log_file: str


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def load_config() -> Config:
    """
    Load configuration from environment variables.

    Returns:
        Config: Immutable configuration object

    Raises:
        ValueError: If a numeric variable cannot be parsed
    """
    return Config(
        # Service
        service_name=os.getenv('SERVICE_NAME', 'attendance'),
        http_host=os.getenv('HTTP_HOST', '0.0.0.0'),
        http_port=int(os.getenv('PORT', '3000')),

        # Storage
        db_path=os.getenv('DB_PATH', 'attendance.db'),
        auto_create_schema=_env_flag('AUTO_CREATE_SCHEMA', 'true'),

        # Matching
        match_threshold=float(os.getenv('FACE_MATCHER_THRESHOLD', '0.6')),
        require_single_face=_env_flag('ENROLL_REQUIRE_SINGLE_FACE', 'false'),

        # InsightFace
        insightface_model=os.getenv('INSIGHTFACE_MODEL', 'buffalo_l'),
        insightface_det_size=(640, 640),
        resize_width=int(os.getenv('RESIZE_WIDTH', '512')),

        # Intake
        max_class_images=int(os.getenv('MAX_CLASS_IMAGES', '5')),
        max_upload_bytes=int(os.getenv('MAX_UPLOAD_BYTES', str(10 * 1024 * 1024))),
        download_timeout_seconds=float(os.getenv('DOWNLOAD_TIMEOUT', '10')),
        download_retries=int(os.getenv('DOWNLOAD_RETRIES', '2')),
        upload_dir=os.getenv('UPLOAD_DIR', os.path.join('uploads', 'students')),

        # Workers
        extraction_workers=int(os.getenv('EXTRACTION_WORKERS', '4')),
        extraction_timeout_seconds=float(os.getenv('EXTRACTION_TIMEOUT', '30')),
        job_workers=int(os.getenv('JOB_WORKERS', '2')),

        # System
        debug_mode=_env_flag('DEBUG', 'false'),
        log_file=os.getenv('LOG_FILE', ''),
    )
