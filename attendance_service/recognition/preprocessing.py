"""
Image preprocessing module.

Prepares raw upload bytes for InsightFace:
1. Decode (JPEG/PNG/WEBP) to a BGR array
2. Downscale to a bounded width to speed up detection
"""

import cv2
import numpy as np

from ..errors import ExtractionError


def decode_image(data: bytes) -> np.ndarray:
    """
    Decode encoded image bytes.

    Args:
        data: Encoded image bytes

    Returns:
        BGR image

    Raises:
        ExtractionError: If the bytes are empty or not a decodable image
    """
    if not data:
        raise ExtractionError('empty image')

    buffer = np.frombuffer(data, np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)

    if image is None:
        raise ExtractionError('could not decode image')

    return image


def resize_to_width(image: np.ndarray, width: int) -> np.ndarray:
    """
    Downscale an image to the given width, keeping aspect ratio.

    Images already narrower than width are returned unchanged.

    Args:
        image: BGR image
        width: Target width in pixels (0 disables resizing)

    Returns:
        Resized image
    """
    if width <= 0:
        return image

    h, w = image.shape[:2]
    if w <= width:
        return image

    height = max(1, int(round(h * width / w)))
    return cv2.resize(image, (width, height), interpolation=cv2.INTER_AREA)
