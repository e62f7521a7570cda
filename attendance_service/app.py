"""
Flask application for HTTP API.

Provides:
- POST /students: enroll a student from 3 photos (uploads and/or URLs)
- POST /class/attendance: take attendance from uploaded class photos
- POST /class/attendance-url: take attendance from class photo URLs
- POST /api/attendance-by-url: same, processed in the background
- GET /attendance: attendance records for a session
- GET /health: service health check
"""

import json
import time
from typing import Any, Dict, List

from flask import Flask, jsonify, request
from flask_cors import CORS
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from . import runtime
from .config import Config
from .errors import (
    AttendanceError,
    ConflictError,
    InputError,
    IntakeError,
    NotReadyError,
    ValidationError,
)
from .intake import fetch_images
from .logging_config import get_logger
from .models import ImageBlob
from .utils.timing import format_uptime

logger = get_logger(__name__)

ALLOWED_MIMETYPES = ('image/jpeg', 'image/png', 'image/webp')

_STATUS_BY_ERROR = (
    (NotReadyError, 503),
    (ConflictError, 409),
    (InputError, 400),
    (ValidationError, 400),
    (IntakeError, 400),
)


def parse_list(value: Any) -> List[Any]:
    """
    Accept a list, a JSON-encoded list or a single scalar.

    Form posts send arrays as JSON strings, JSON bodies send real arrays.
    """
    if value is None or value == '':
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return [value]
        return parsed if isinstance(parsed, list) else [parsed]
    return [value]


def _payload() -> Dict[str, Any]:
    """Merge form fields and JSON body into one dict (form wins)."""
    data: Dict[str, Any] = dict(request.get_json(silent=True) or {})
    for key in request.form:
        values = request.form.getlist(key)
        data[key] = values if len(values) > 1 else values[0]
    return data


def _uploaded_images(limit: int) -> List[ImageBlob]:
    files: List[FileStorage] = [f for f in request.files.getlist('images') if f and f.filename]

    if len(files) > limit:
        raise InputError(f'at most {limit} images may be uploaded')

    blobs = []
    for index, file in enumerate(files):
        if file.mimetype not in ALLOWED_MIMETYPES:
            raise InputError('Only JPG/PNG/WEBP allowed', index)
        blobs.append(ImageBlob(data=file.read(), source_ref=f'upload:{secure_filename(file.filename)}'))
    return blobs


def _error_status(error: AttendanceError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status
    return 500


def create_app(config: Config) -> Flask:
    """
    Create and configure Flask application.

    Handlers resolve collaborators through runtime.get_runtime(), so the app
    answers 503 until the runtime is initialized.

    Args:
        config: Service configuration

    Returns:
        Configured Flask app
    """
    app = Flask(__name__)
    app.config['MAX_CONTENT_LENGTH'] = config.max_upload_bytes * (config.max_class_images + 1)
    CORS(app)
    started_at = time.time()

    @app.errorhandler(AttendanceError)
    def handle_attendance_error(error: AttendanceError):
        status = _error_status(error)
        body: Dict[str, Any] = {'error': error.message, 'type': type(error).__name__}
        image_index = getattr(error, 'image_index', None)
        if image_index is not None:
            body['image_index'] = image_index
        if status >= 500:
            logger.error(f'{request.method} {request.path} failed: {error}')
        return jsonify(body), status

    @app.route('/students', methods=['POST'])
    def add_student():
        """Enroll a student from exactly 3 photos."""
        rt = runtime.get_runtime()
        data = _payload()

        student_id = data.get('student_id')
        app_id = data.get('app_id')
        name = data.get('name')
        if not student_id or not app_id or not name:
            raise InputError('student_id, app_id, and name are required')

        images = _uploaded_images(limit=3)
        urls = parse_list(data.get('image_urls'))
        if len(images) + len(urls) != 3:
            raise InputError('Exactly 3 images are required')
        if urls:
            images.extend(fetch_images(urls, rt.config, strict=True, allow_local=False))

        enrolled = rt.enrollment.validate_and_build(
            external_key=str(app_id),
            display_name=str(name),
            images=images,
            identity_key=str(student_id),
        )
        return jsonify({
            'message': 'Student registered',
            'student_id': enrolled.identity.identity_key,
        }), 201

    @app.route('/class/attendance', methods=['POST'])
    def class_attendance():
        """Take attendance synchronously from uploaded class photos."""
        rt = runtime.get_runtime()
        data = _payload()

        timetable_id = data.get('timetable_id')
        student_ids = parse_list(data.get('student_ids'))
        images = _uploaded_images(limit=rt.config.max_class_images)
        if not timetable_id or not student_ids or not images:
            raise InputError('timetable_id, student_ids, and images required')

        result = rt.reconciler.reconcile(str(timetable_id), student_ids, images)
        return jsonify({'message': 'Attendance processed', **result.summary()})

    @app.route('/class/attendance-url', methods=['POST'])
    def class_attendance_url():
        """Take attendance synchronously from class photo URLs."""
        rt = runtime.get_runtime()
        data = _payload()

        timetable_id = data.get('timetable_id')
        student_ids = parse_list(data.get('student_ids'))
        urls = parse_list(data.get('image_urls'))
        if not timetable_id or not student_ids or not urls:
            raise InputError('timetable_id, student_ids, image_urls required')

        images = fetch_images(urls, rt.config, strict=False, allow_local=False)
        if not images:
            raise IntakeError('none of the images could be downloaded')

        result = rt.reconciler.reconcile(str(timetable_id), student_ids, images)
        return jsonify({'message': 'Attendance processed via URLs', **result.summary()})

    @app.route('/api/attendance-by-url', methods=['POST'])
    def attendance_by_url():
        """Queue attendance from class photo URLs and answer immediately."""
        rt = runtime.get_runtime()
        data = _payload()

        timetable_id = data.get('timetable_id')
        student_ids = parse_list(data.get('student_ids'))
        urls = parse_list(data.get('image_urls'))
        if not timetable_id or not student_ids or not urls:
            raise InputError('timetable_id, student_ids, image_urls required')

        receipt = rt.jobs.submit(str(timetable_id), student_ids, urls)
        return jsonify({
            'message': 'Attendance request received. Processing in background.',
            'timetable_id': receipt.session_key,
            'jobId': receipt.job_id,
            'studentCount': receipt.roster_size,
            'imageCount': receipt.image_count,
        }), 202

    @app.route('/attendance', methods=['GET'])
    def get_attendance():
        """Attendance records for a session."""
        rt = runtime.get_runtime()

        timetable_id = request.args.get('timetable_id', '').strip()
        if not timetable_id:
            raise InputError('timetable_id required')

        return jsonify({
            'timetable_id': timetable_id,
            'records': rt.store.get_attendance(timetable_id),
        })

    @app.route('/health')
    def health():
        """Health check endpoint."""
        ready = runtime.is_ready()
        return jsonify({
            'status': 'ok' if ready else 'initializing',
            'service': config.service_name,
            'uptime': format_uptime(time.time() - started_at),
        }), 200 if ready else 503

    return app
