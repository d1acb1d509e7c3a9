# imei_scanner/preprocessing.py
"""
Image preprocessing for the escalating decode stages.
Provides:
  - Contrast gain (retry for washed-out barcodes)
  - Fixed-square resize (retry for tiny or huge symbols)
  - OCR block preparation (printed IMEI labels)
  - Aggressive OCR preparation (last-resort pass)
"""

import os
import cv2
import numpy as np
from datetime import datetime
import logging

logger = logging.getLogger(__name__)


# DEBUG CONFIGURATION


# Toggle to save intermediate images for inspection during debugging
DEBUG_SAVE = False
DEBUG_DIR = "intermediate"

CONTRAST_GAIN = 1.5
RESIZE_SQUARE = 400


def _ensure_debug_dir() -> None:
    """Create debug directory if it doesn't exist."""
    if DEBUG_SAVE and not os.path.exists(DEBUG_DIR):
        try:
            os.makedirs(DEBUG_DIR, exist_ok=True)
            logger.debug(f"Created debug directory: {DEBUG_DIR}")
        except OSError as e:
            logger.error(f"Failed to create debug directory: {e}")


def _save_debug_image(img: np.ndarray, name: str) -> None:
    """
    Save intermediate images for inspection.
    Files go into ./intermediate/<timestamp>_<name>.png
    """
    if not DEBUG_SAVE or img is None:
        return

    _ensure_debug_dir()

    try:
        ts = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        path = os.path.join(DEBUG_DIR, f"{ts}_{name}.png")

        if cv2.imwrite(path, img):
            logger.debug(f"Saved debug image: {path}")
        else:
            logger.warning(f"Failed to write debug image: {path}")
    except Exception as e:
        logger.error(f"Error saving debug image '{name}': {e}")


# UTILITY FUNCTIONS


def to_gray(img: np.ndarray) -> np.ndarray:
    """
    Convert image to single-channel uint8 grayscale.

    Args:
        img: Input image (BGR, BGRA or grayscale)

    Returns:
        Grayscale uint8 image

    Raises:
        ValueError: If image is None, empty or has an unsupported shape
    """
    if img is None or img.size == 0:
        raise ValueError("Input image is None or empty")

    if len(img.shape) == 2:
        gray = img
    elif len(img.shape) == 3 and img.shape[2] == 4:
        gray = cv2.cvtColor(img, cv2.COLOR_BGRA2GRAY)
    elif len(img.shape) == 3 and img.shape[2] == 3:
        gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    elif len(img.shape) == 3 and img.shape[2] == 1:
        gray = img[:, :, 0]
    else:
        raise ValueError(f"Invalid image shape: {img.shape}")

    if gray.dtype != np.uint8:
        gray = cv2.normalize(gray, None, 0, 255, cv2.NORM_MINMAX)
        gray = gray.astype(np.uint8)

    return gray


def _validate_image(img: np.ndarray, operation: str = "preprocessing") -> bool:
    if img is None:
        logger.warning(f"Image is None for {operation}")
        return False

    if img.size == 0:
        logger.warning(f"Image is empty for {operation}")
        return False

    return True


# DECODE RETRY VARIANTS


def enhance_contrast(img: np.ndarray, gain: float = CONTRAST_GAIN) -> np.ndarray:
    """
    Per-pixel linear gain, clamped to 255.

    Args:
        img: Input image (any channel count, uint8)
        gain: Multiplier applied to every channel value

    Returns:
        New uint8 image of the same shape

    Raises:
        ValueError: If image is None or empty
    """
    if not _validate_image(img, "contrast enhancement"):
        raise ValueError("enhance_contrast: input image is None or empty")

    out = np.clip(img.astype(np.float32) * gain, 0, 255).astype(np.uint8)
    _save_debug_image(out, "contrast")
    return out


def resize_square(img: np.ndarray, size: int = RESIZE_SQUARE) -> np.ndarray:
    """
    Resize to a fixed size x size square, ignoring aspect ratio.

    Raises:
        ValueError: If image is None or empty
    """
    if not _validate_image(img, "square resize"):
        raise ValueError("resize_square: input image is None or empty")

    h, w = img.shape[:2]
    interp = cv2.INTER_AREA if h * w > size * size else cv2.INTER_CUBIC
    out = cv2.resize(img, (size, size), interpolation=interp)
    _save_debug_image(out, "resized")
    return out


# OCR BLOCK PREPROCESSING


def preprocess_for_ocr_block(img: np.ndarray) -> np.ndarray:
    """
    Preprocessing for printed label text.

    Strategy:
      - Grayscale conversion
      - Strong denoising (fastNlMeansDenoising)
      - CLAHE contrast enhancement
      - OTSU global thresholding to binary
      - Morphological opening then closing

    Args:
        img: Input image

    Returns:
        Preprocessed OCR image (binary)
    """
    if not _validate_image(img, "OCR block preprocessing"):
        return np.zeros((1, 1), dtype=np.uint8)

    try:
        gray = to_gray(img)

        denoised = cv2.fastNlMeansDenoising(
            gray,
            None,
            h=15,
            templateWindowSize=7,
            searchWindowSize=21
        )
        _save_debug_image(denoised, "01_block_denoised")

        clahe = cv2.createCLAHE(clipLimit=2.5, tileGridSize=(8, 8))
        enhanced = clahe.apply(denoised)
        _save_debug_image(enhanced, "02_block_clahe")

        _, th = cv2.threshold(
            enhanced,
            0,
            255,
            cv2.THRESH_BINARY + cv2.THRESH_OTSU
        )
        _save_debug_image(th, "03_block_threshold")

        # Opening removes specks, closing joins broken strokes
        kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (2, 2))
        opened = cv2.morphologyEx(th, cv2.MORPH_OPEN, kernel, iterations=1)
        closed = cv2.morphologyEx(opened, cv2.MORPH_CLOSE, kernel, iterations=1)

        out = closed.astype(np.uint8)
        _save_debug_image(out, "04_block_final")
        return out

    except Exception as e:
        logger.error(f"Error in OCR block preprocessing: {e}", exc_info=True)
        return np.zeros((1, 1), dtype=np.uint8)


# AGGRESSIVE OCR PREPROCESSING


def preprocess_for_ocr_heavy(img: np.ndarray) -> np.ndarray:
    """
    Very aggressive preprocessing for the last OCR pass.

    CLAHE, adaptive Gaussian threshold, dilation and median blur. Distorts
    clean text but recovers faint thermal-printed labels.
    """
    if not _validate_image(img, "heavy OCR preprocessing"):
        return np.zeros((1, 1), dtype=np.uint8)

    try:
        gray = to_gray(img)
        clahe = cv2.createCLAHE(clipLimit=3.0, tileGridSize=(8, 8))
        gray = clahe.apply(gray)

        th = cv2.adaptiveThreshold(
            gray,
            255,
            cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
            cv2.THRESH_BINARY,
            35,
            10,
        )

        kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (2, 2))
        th = cv2.dilate(th, kernel, iterations=1)
        th = cv2.medianBlur(th, 3)

        _save_debug_image(th, "heavy_final")
        return th

    except Exception as e:
        logger.error(f"Heavy OCR preprocessing error: {e}", exc_info=True)
        return np.zeros((1, 1), dtype=np.uint8)
