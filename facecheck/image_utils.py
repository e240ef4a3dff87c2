"""
Image Utilities

Conversions between OpenCV images, JPEG bytes and ``data:image/...;base64``
URLs, the format member photos are stored in on the backend.
"""

import base64
import logging
import re
from typing import Optional

import cv2
import numpy as np

from .errors import InvalidImageError

logger = logging.getLogger(__name__)

DATA_URL_PATTERN = re.compile(r'^data:image/[a-zA-Z+]+;base64,')


def strip_data_url_prefix(data: str) -> str:
    """Remove a ``data:image/...;base64,`` prefix if present."""
    return DATA_URL_PATTERN.sub('', data, count=1)


def is_data_url(data: Optional[str]) -> bool:
    return bool(data) and data.startswith('data:image/')


def data_url_to_bytes(data: str) -> bytes:
    """Decode a data URL (or bare base64 string) into raw bytes."""
    if not data:
        raise InvalidImageError('Empty image data')
    try:
        return base64.b64decode(strip_data_url_prefix(data), validate=False)
    except (ValueError, TypeError) as e:
        raise InvalidImageError(f'Invalid base64 image data: {e}') from e


def bytes_to_data_url(data: bytes, mime: str = 'image/jpeg') -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def decode_image(data: bytes) -> np.ndarray:
    """
    Decode encoded image bytes into a BGR array.

    Raises:
        InvalidImageError: If OpenCV cannot decode the bytes
    """
    buffer = np.frombuffer(data, dtype=np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_COLOR) if buffer.size else None
    if image is None:
        raise InvalidImageError('Could not decode image bytes')
    return image


def data_url_to_image(data: str) -> np.ndarray:
    return decode_image(data_url_to_bytes(data))


def image_to_data_url(image: np.ndarray, quality: int = 95) -> str:
    """
    Encode a BGR image as a JPEG data URL.

    Args:
        image: BGR image (uint8, or float in [0, 1])
        quality: JPEG quality

    Returns:
        ``data:image/jpeg;base64,...`` string
    """
    if image is None or image.size == 0:
        raise InvalidImageError('Empty image')

    if image.dtype != np.uint8:
        if image.max() <= 1.0:
            image = (image * 255).astype(np.uint8)
        else:
            image = np.clip(image, 0, 255).astype(np.uint8)

    ok, encoded = cv2.imencode('.jpg', image, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ok:
        raise InvalidImageError('JPEG encoding failed')
    return bytes_to_data_url(encoded.tobytes())


def load_image_file(path: str) -> Optional[np.ndarray]:
    """Read an image from disk, returning None if it cannot be read."""
    image = cv2.imread(path, cv2.IMREAD_COLOR)
    if image is None:
        logger.error(f"Could not read image file: {path}")
    return image
