"""
Image intake module.

Fetches raw image bytes from local paths or http(s) URLs and saves accepted
enrollment photos to disk. Multiple images are downloaded concurrently and
joined before the caller continues.
"""

import os
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List, Optional, Sequence
from urllib.parse import urlparse

import requests
from werkzeug.utils import secure_filename

from .config import Config
from .errors import IntakeError
from .logging_config import get_logger
from .models import ImageBlob
from .utils.timing import retry_with_backoff

logger = get_logger(__name__)

_RETRYABLE = (requests.exceptions.ConnectionError, requests.exceptions.Timeout)

_IMAGE_EXTENSIONS = ('.jpg', '.jpeg', '.png', '.webp')


def is_remote_ref(ref: str) -> bool:
    return urlparse(ref).scheme in ('http', 'https')


def _download(url: str, config: Config) -> bytes:
    def attempt() -> bytes:
        response = requests.get(url, timeout=config.download_timeout_seconds)
        response.raise_for_status()
        return response.content

    try:
        data = retry_with_backoff(
            attempt,
            max_attempts=config.download_retries + 1,
            retry_on=_RETRYABLE,
        )
    except requests.exceptions.RequestException as e:
        raise IntakeError(f'download failed: {e}', url) from e

    if len(data) > config.max_upload_bytes:
        raise IntakeError(f'image larger than {config.max_upload_bytes} bytes', url)

    return data


def _read_local(ref: str, config: Config) -> bytes:
    path = Path(ref)
    try:
        if path.stat().st_size > config.max_upload_bytes:
            raise IntakeError(f'image larger than {config.max_upload_bytes} bytes', ref)
        return path.read_bytes()
    except OSError as e:
        raise IntakeError(f'cannot read file: {e}', ref) from e


def fetch_image(ref: str, config: Config, allow_local: bool = True) -> ImageBlob:
    """
    Fetch one image.

    Args:
        ref: http(s) URL or local file path
        config: Service configuration
        allow_local: Accept local file paths (disabled for HTTP callers)

    Returns:
        ImageBlob with source_ref set to ref

    Raises:
        IntakeError: If the image cannot be fetched
    """
    ref = (ref or '').strip()
    if not ref:
        raise IntakeError('empty image reference', ref)

    if is_remote_ref(ref):
        data = _download(ref, config)
    elif allow_local:
        data = _read_local(ref, config)
    else:
        raise IntakeError('only http(s) image URLs are accepted', ref)

    if not data:
        raise IntakeError('image is empty', ref)

    return ImageBlob(data=data, source_ref=ref)


def fetch_images(
    refs: Sequence[str],
    config: Config,
    strict: bool = True,
    allow_local: bool = True
) -> List[ImageBlob]:
    """
    Fetch several images concurrently.

    Args:
        refs: URLs or paths
        config: Service configuration
        strict: Raise on the first failed image (by index); otherwise log and
            skip failed images
        allow_local: Accept local file paths

    Returns:
        Fetched images in input order (failed ones omitted when not strict)

    Raises:
        IntakeError: In strict mode, if any image cannot be fetched
    """
    if not refs:
        return []

    results: List[Optional[ImageBlob]] = [None] * len(refs)
    errors: List[Optional[IntakeError]] = [None] * len(refs)

    def fetch(index: int) -> None:
        try:
            results[index] = fetch_image(refs[index], config, allow_local=allow_local)
        except IntakeError as e:
            errors[index] = e

    workers = max(1, min(config.extraction_workers, len(refs)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='intake') as executor:
        list(executor.map(fetch, range(len(refs))))

    blobs: List[ImageBlob] = []
    for index, (blob, error) in enumerate(zip(results, errors)):
        if error is not None:
            if strict:
                raise error
            logger.error(f'Image {index} ({error.ref}) skipped: {error.message}')
            continue
        blobs.append(blob)

    return blobs


def _image_extension(source_ref: str) -> str:
    path = urlparse(source_ref).path if is_remote_ref(source_ref) else source_ref
    ext = os.path.splitext(path)[1].lower()
    return ext if ext in _IMAGE_EXTENSIONS else '.jpg'


def save_images(blobs: Sequence[ImageBlob], directory: str, stem: str) -> List[str]:
    """
    Write images under directory as <stem>_<timestamp>_<index>.<ext>.

    Args:
        blobs: Images to save
        directory: Target directory (created if missing)
        stem: File name prefix, usually the identity key

    Returns:
        Paths of the written files, in input order

    Raises:
        IntakeError: If a file cannot be written; files already written by
            this call are removed
    """
    timestamp = int(time.time() * 1000)
    safe_stem = secure_filename(stem) or 'image'
    paths: List[str] = []

    try:
        os.makedirs(directory, exist_ok=True)
        for index, blob in enumerate(blobs):
            name = f'{safe_stem}_{timestamp}_{index}{_image_extension(blob.source_ref)}'
            path = os.path.join(directory, name)
            with open(path, 'wb') as f:
                f.write(blob.data)
            paths.append(path)
    except OSError as e:
        remove_files(paths)
        raise IntakeError(f'cannot save image: {e}', directory) from e

    logger.debug(f'Saved {len(paths)} images to {directory}')
    return paths


def remove_files(paths: Sequence[str]) -> None:
    for path in paths:
        try:
            os.remove(path)
        except OSError as e:
            logger.warning(f'Could not remove {path}: {e}')
