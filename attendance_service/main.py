"""
Attendance Service - Main Entry Point

Loads configuration, initializes the database and face model, then serves
the HTTP API.
"""

import argparse
import dataclasses
import os
import sys
from pathlib import Path

from .app import create_app
from .config import load_config
from .logging_config import get_logger, setup_logging
from .runtime import init_runtime, shutdown_runtime

logger = get_logger(__name__)


def _load_local_env() -> None:
    """Load environment variables from attendance_service/.env if present."""
    env_path = Path(__file__).resolve().parent / '.env'
    if not env_path.exists():
        return

    for raw_line in env_path.read_text().splitlines():
        line = raw_line.strip()
        if not line or line.startswith('#') or '=' not in line:
            continue
        key, value = line.split('=', 1)
        os.environ.setdefault(key.strip(), value.strip().strip('"').strip("'"))


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description='Attendance Service - Face Recognition Attendance API'
    )

    parser.add_argument(
        '--host',
        type=str,
        help='HTTP bind address (or set HTTP_HOST)'
    )

    parser.add_argument(
        '--port',
        type=int,
        help='HTTP port (or set PORT)'
    )

    parser.add_argument(
        '--db-path',
        type=str,
        help='SQLite database file (or set DB_PATH)'
    )

    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )

    return parser.parse_args()


def main() -> None:
    """Main entry point."""
    _load_local_env()
    args = parse_args()

    try:
        config = load_config()
    except ValueError as e:
        print(f'Invalid configuration: {e}', file=sys.stderr)
        sys.exit(2)

    overrides = {}
    if args.host:
        overrides['http_host'] = args.host
    if args.port:
        overrides['http_port'] = args.port
    if args.db_path:
        overrides['db_path'] = args.db_path
    if args.debug:
        overrides['debug_mode'] = True
    if overrides:
        config = dataclasses.replace(config, **overrides)

    setup_logging(config.service_name, config.debug_mode, log_file=config.log_file or None)

    logger.info('=' * 60)
    logger.info('Attendance Service')
    logger.info('=' * 60)
    logger.info(f'Database: {config.db_path}')
    logger.info(f'Match threshold: {config.match_threshold}')
    logger.info(f'Single-face enrollment: {config.require_single_face}')
    logger.info('=' * 60)

    try:
        init_runtime(config)
    except Exception as e:
        logger.error(f'Fatal init error: {e}', exc_info=True)
        sys.exit(1)

    app = create_app(config)
    logger.info(f'Server running on http://{config.http_host}:{config.http_port}')
    logger.info('Add student: POST /students')
    logger.info('Class attendance: POST /class/attendance')
    logger.info('Class attendance via URLs: POST /class/attendance-url')
    logger.info('Background attendance via URLs: POST /api/attendance-by-url')
    logger.info('Get attendance: GET /attendance?timetable_id=ID')

    try:
        app.run(
            host=config.http_host,
            port=config.http_port,
            threaded=True,
            debug=False,
            use_reloader=False
        )
    except KeyboardInterrupt:
        logger.info('Received keyboard interrupt, shutting down...')
    finally:
        shutdown_runtime(wait=True)


if __name__ == '__main__':
    main()
