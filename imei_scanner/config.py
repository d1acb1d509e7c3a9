# imei_scanner/config.py
"""Tunables for a scan session."""

from dataclasses import dataclass
from typing import Optional, Tuple

from .camera import DEFAULT_CONSTRAINT_CASCADE, CameraConstraints
from .preprocessing import CONTRAST_GAIN, RESIZE_SQUARE


@dataclass
class ScannerConfig:
    """
    Session configuration.

    Attributes:
        scan_interval:       Seconds between live pipeline runs
        error_interval:      Seconds before retrying after a pipeline error
        scan_timeout:        Seconds a camera session may stay active
        live_full_pipeline:  Run every stage on live frames instead of the
                             quick barcode / matrix / OCR pass
        device_id:           Camera to open first (None = device default)
        constraint_cascade:  Stream constraints tried in order
    """
    scan_interval: float = 2.0
    error_interval: float = 3.0
    scan_timeout: float = 30.0
    live_full_pipeline: bool = False
    device_id: Optional[str] = None
    constraint_cascade: Tuple[CameraConstraints, ...] = DEFAULT_CONSTRAINT_CASCADE
    contrast_gain: float = CONTRAST_GAIN
    square_size: int = RESIZE_SQUARE
