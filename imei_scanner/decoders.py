# imei_scanner/decoders.py
"""
Decoder adapter around the three external decode capabilities:
  - pyzbar            1D / 2D barcode symbols
  - OpenCV            raw QR matrix decode
  - PaddleOCR         printed text recognition

Every call is isolated: a capability that raises yields "no result" for that
call only. Nothing is retried here; the detection pipeline retries with
differently preprocessed images.

The native libraries are imported on first use so the pure extraction code
and the tests do not need libzbar or paddle loaded.
"""

from __future__ import annotations
from typing import Callable, List, Optional
import logging

import cv2
import numpy as np

from .candidate import DecodedPayload, SourceMethod
from .preprocessing import to_gray

logger = logging.getLogger(__name__)

# GLOBALS


_ocr_instance = None
_qr_detector: Optional[cv2.QRCodeDetector] = None

OCR_LANG = "en"
MIN_OCR_CONFIDENCE = 0.30

TWO_D_SYMBOLOGIES = frozenset({"QRCODE", "DATAMATRIX", "PDF417", "AZTEC"})

BarcodeCapability = Callable[[np.ndarray], List[DecodedPayload]]
PayloadCapability = Callable[[np.ndarray], Optional[DecodedPayload]]


def get_ocr_instance():
    """Lazy-load OCR instance."""
    global _ocr_instance
    if _ocr_instance is None:
        from paddleocr import PaddleOCR

        logger.info("Initializing PaddleOCR instance...")
        _ocr_instance = PaddleOCR(
            lang=OCR_LANG,
            use_doc_orientation_classify=False,
            use_doc_unwarping=False,
            use_textline_orientation=False,
        )
    return _ocr_instance


def _get_qr_detector() -> cv2.QRCodeDetector:
    global _qr_detector
    if _qr_detector is None:
        _qr_detector = cv2.QRCodeDetector()
    return _qr_detector


# DEFAULT CAPABILITIES


def pyzbar_decode(img: np.ndarray) -> List[DecodedPayload]:
    """
    Decode every barcode symbol in the image with pyzbar.

    Returns:
        One payload per distinct symbol value, ordered top-to-bottom then
        left-to-right
    """
    from pyzbar.pyzbar import decode

    gray = to_gray(img)
    decoded = decode(gray)

    out: List[DecodedPayload] = []
    seen = set()
    for b in sorted(decoded, key=lambda s: (s.rect.top, s.rect.left)):
        try:
            value = b.data.decode("utf-8", errors="ignore").strip()
        except AttributeError as e:
            logger.warning(f"Failed to decode barcode: {e}")
            continue

        if not value or value in seen:
            continue
        seen.add(value)

        method = (
            SourceMethod.BARCODE_2D
            if b.type in TWO_D_SYMBOLOGIES
            else SourceMethod.BARCODE_1D
        )
        out.append(
            DecodedPayload(
                text=value,
                source_method=method,
                rect=(b.rect.left, b.rect.top, b.rect.width, b.rect.height),
            )
        )

    logger.debug(f"Decoded {len(out)} barcodes")
    return out


def opencv_matrix_decode(img: np.ndarray) -> Optional[DecodedPayload]:
    """Decode a single QR matrix straight from the bitmap with OpenCV."""
    gray = to_gray(img)
    text, points, _ = _get_qr_detector().detectAndDecode(gray)
    if not text:
        return None

    rect = None
    if points is not None and len(points) > 0:
        x, y, w, h = cv2.boundingRect(points.reshape(-1, 2).astype(np.float32))
        rect = (int(x), int(y), int(w), int(h))

    return DecodedPayload(text=text.strip(), source_method=SourceMethod.RAW_MATRIX, rect=rect)


def paddle_ocr(img: np.ndarray) -> Optional[DecodedPayload]:
    """Run PaddleOCR and join confident lines top to bottom."""
    if img is None or img.size == 0:
        return None

    if img.ndim == 2:
        img = cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)

    ocr = get_ocr_instance()
    result = ocr.predict(img)

    texts: List[str] = []
    confs: List[float] = []

    for page in result or []:
        for text, conf in zip(page["rec_texts"], page["rec_scores"]):
            conf = float(conf)
            if conf >= MIN_OCR_CONFIDENCE and text.strip():
                texts.append(text.strip())
                confs.append(conf)

    if not texts:
        logger.debug("No OCR lines above confidence threshold")
        return None

    avg_conf = sum(confs) / len(confs)
    logger.debug(f"OCR extracted {len(texts)} lines, avg confidence: {avg_conf:.3f}")
    return DecodedPayload(
        text="\n".join(texts),
        source_method=SourceMethod.OCR,
        confidence=avg_conf,
    )


# ADAPTER


class DecoderAdapter:
    """
    Isolating wrapper over the decode capabilities.

    Capabilities are injectable for tests and alternative backends:

        >>> adapter = DecoderAdapter(ocr=lambda img: None)
        >>> adapter.recognize_text(img)   # None, OCR disabled
    """

    def __init__(
        self,
        barcode: Optional[BarcodeCapability] = None,
        raw_matrix: Optional[PayloadCapability] = None,
        ocr: Optional[PayloadCapability] = None,
    ) -> None:
        self._barcode = barcode or pyzbar_decode
        self._raw_matrix = raw_matrix or opencv_matrix_decode
        self._ocr = ocr or paddle_ocr
        self.last_errors: List[str] = []

    def _record_error(self, capability: str, exc: Exception) -> None:
        logger.error(f"{capability} decode error: {exc}", exc_info=True)
        self.last_errors.append(f"{capability}: {exc}")

    def decode_barcodes(self, img: np.ndarray) -> List[DecodedPayload]:
        """1D/2D symbols; empty list when nothing decodes or the decoder fails."""
        try:
            return list(self._barcode(img) or [])
        except Exception as e:
            self._record_error("barcode", e)
            return []

    def decode_raw_matrix(self, img: np.ndarray) -> Optional[DecodedPayload]:
        try:
            return self._raw_matrix(img)
        except Exception as e:
            self._record_error("raw_matrix", e)
            return None

    def recognize_text(self, img: np.ndarray) -> Optional[DecodedPayload]:
        try:
            return self._ocr(img)
        except Exception as e:
            self._record_error("ocr", e)
            return None

    def drain_errors(self) -> List[str]:
        errors, self.last_errors = self.last_errors, []
        return errors
