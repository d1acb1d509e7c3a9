# imei_scanner/utils.py
"""
Utility functions for image handling.
Provides image loading, validation, rotation, statistics and barcode box drawing.
"""

from __future__ import annotations
from typing import List, Tuple, Optional
import logging
import cv2
import numpy as np

from .candidate import DecodedPayload

logger = logging.getLogger(__name__)


# IMAGE LOADING & VALIDATION


def load_image_from_bytes(image_bytes: bytes) -> np.ndarray:
    """
    Load an image from raw bytes (JPEG, PNG, WEBP, ...) as a BGR array.

    Args:
        image_bytes: Raw uploaded file bytes

    Returns:
        BGR image as numpy array (always a fresh copy)

    Raises:
        ValueError: If input is missing, empty or cannot be decoded
    """
    if image_bytes is None:
        raise ValueError("No image bytes provided")

    if not isinstance(image_bytes, (bytes, bytearray)):
        raise ValueError(f"Expected bytes, got {type(image_bytes)}")

    arr = np.frombuffer(bytes(image_bytes), np.uint8)

    if arr.size == 0:
        raise ValueError("Empty image buffer")

    try:
        img = cv2.imdecode(arr, cv2.IMREAD_COLOR)
    except cv2.error as e:
        logger.error(f"Error decoding image bytes: {e}", exc_info=True)
        raise ValueError(f"Failed to load image: {str(e)}")

    if img is None or img.size == 0:
        raise ValueError("Invalid image data: could not be decoded by OpenCV")

    logger.debug(f"Loaded image: shape={img.shape}, dtype={img.dtype}")
    return img.copy()


def validate_image(img: np.ndarray, operation: str = "processing") -> bool:
    """
    Validate image array for operations.

    Args:
        img: Image to validate
        operation: Name of operation (for logging)

    Returns:
        True if valid, False otherwise
    """
    if img is None:
        logger.warning(f"Image is None for {operation}")
        return False

    if not isinstance(img, np.ndarray):
        logger.warning(f"Image is not ndarray for {operation}")
        return False

    if img.size == 0:
        logger.warning(f"Image is empty for {operation}")
        return False

    if img.shape[0] <= 0 or img.shape[1] <= 0:
        logger.warning(f"Image has invalid dimensions for {operation}: {img.shape}")
        return False

    return True


def get_image_stats(img: np.ndarray) -> dict:
    """
    Statistics about an image for the debug panel.

    Returns:
        Dictionary with shape, dtype, channels, mean, std, min and max
    """
    if img is None or img.size == 0:
        return {
            "shape": None,
            "dtype": None,
            "channels": None,
            "mean": None,
            "std": None,
            "min": None,
            "max": None,
        }

    channels = img.shape[2] if len(img.shape) == 3 else 1

    return {
        "shape": img.shape,
        "dtype": str(img.dtype),
        "channels": channels,
        "mean": float(np.mean(img)),
        "std": float(np.std(img)),
        "min": float(np.min(img)),
        "max": float(np.max(img)),
    }


# IMAGE ROTATION


def rotate_image(img: np.ndarray, angle: int) -> np.ndarray:
    """
    Rotate image by multiples of 90 degrees.

    For 0 degrees, returns copy. For unsupported angles, returns original copy.

    Raises:
        ValueError: If image is None or empty
    """
    if img is None:
        raise ValueError("rotate_image: input image is None")

    if not isinstance(img, np.ndarray) or img.size == 0:
        raise ValueError("rotate_image: invalid image array")

    angle = angle % 360

    if angle == 0:
        return img.copy()
    elif angle == 90:
        return cv2.rotate(img, cv2.ROTATE_90_CLOCKWISE)
    elif angle == 180:
        return cv2.rotate(img, cv2.ROTATE_180)
    elif angle == 270:
        return cv2.rotate(img, cv2.ROTATE_90_COUNTERCLOCKWISE)

    logger.warning(f"Unsupported rotation angle: {angle}°. Returning copy.")
    return img.copy()


# VISUALIZATION


def draw_barcode_boxes(
    img: np.ndarray,
    payloads: List[DecodedPayload],
    color: Tuple[int, int, int] = (0, 255, 0),
    thickness: int = 2,
    highlight: Optional[str] = None,
) -> np.ndarray:
    """
    Draw rectangles around decoded symbols.

    Payloads without a rect (OCR, raw matrix) are skipped. The payload whose
    text contains `highlight` is drawn in red.

    Raises:
        ValueError: If image is None or empty
    """
    if img is None or not isinstance(img, np.ndarray) or img.size == 0:
        raise ValueError("draw_barcode_boxes: input image is None or invalid")

    out = img.copy()
    drawn_count = 0

    for payload in payloads:
        if payload.rect is None:
            continue

        x, y, w, h = payload.rect
        if min(x, y, w, h) < 0:
            logger.warning(f"Payload {payload} has negative coordinates")
            continue

        box_color = (0, 0, 255) if highlight and highlight in payload.text else color
        cv2.rectangle(out, (int(x), int(y)), (int(x + w), int(y + h)), box_color, thickness)
        drawn_count += 1

    logger.debug(f"Drew {drawn_count} barcode boxes")
    return out
