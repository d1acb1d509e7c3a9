# imei_scanner/camera.py
"""
Camera-device capability consumed by the scan session.

The session only sees two shapes:
  - CameraDevice: permission, enumeration and opening of a live stream
  - CameraHandle: one open stream; read frames, release exactly once

OpenCVCamera is the local implementation over cv2.VideoCapture. Browser or
mobile front ends provide their own CameraDevice with the same methods.
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np

from .errors import (
    CameraAcquisitionError,
    ScanErrorReason,
    TeardownError,
    TeardownErrorKind,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CameraConstraints:
    """Requested stream properties; None leaves the driver default."""
    width: Optional[int] = None
    height: Optional[int] = None
    fps: Optional[int] = None

    def describe(self) -> str:
        if self.width is None and self.height is None and self.fps is None:
            return "any"
        return f"{self.width}x{self.height}@{self.fps}"


# Tried in order until one is accepted by the device
DEFAULT_CONSTRAINT_CASCADE: Tuple[CameraConstraints, ...] = (
    CameraConstraints(width=1280, height=720, fps=30),
    CameraConstraints(width=1280, height=720),
    CameraConstraints(width=640, height=480, fps=15),
    CameraConstraints(),
)


class CameraHandle:
    """One open stream. Subclasses implement _read and _release."""

    def __init__(self, device_id: str) -> None:
        self.device_id = device_id
        self._released = False

    @property
    def is_open(self) -> bool:
        return not self._released

    async def read_frame(self) -> Optional[np.ndarray]:
        if self._released:
            return None
        return await self._read()

    def release(self) -> Optional[TeardownError]:
        """
        Stop the stream.

        Returns:
            None on success, or a TeardownError describing why release did
            not happen cleanly. Never raises.
        """
        if self._released:
            return TeardownError(TeardownErrorKind.ALREADY_RELEASED, self.device_id)
        self._released = True
        try:
            self._release()
        except Exception as e:
            logger.warning(f"Camera {self.device_id} release failed: {e}")
            return TeardownError(TeardownErrorKind.RELEASE_FAILED, str(e))
        logger.debug(f"Camera {self.device_id} released")
        return None

    async def _read(self) -> Optional[np.ndarray]:
        raise NotImplementedError

    def _release(self) -> None:
        raise NotImplementedError


class CameraDevice:
    """Interface for camera providers."""

    async def request_permission(self) -> None:
        """Raise if the operator or OS refuses camera access."""

    async def list_devices(self) -> List[str]:
        raise NotImplementedError

    async def open(self, device_id: Optional[str], constraints: CameraConstraints) -> CameraHandle:
        raise NotImplementedError


# OPENCV IMPLEMENTATION


class OpenCVCameraHandle(CameraHandle):

    def __init__(self, device_id: str, cap: cv2.VideoCapture) -> None:
        super().__init__(device_id)
        self._cap = cap

    async def _read(self) -> Optional[np.ndarray]:
        # Blocking read off the event loop
        ret, frame = await asyncio.to_thread(self._cap.read)
        if not ret:
            logger.warning(f"Failed to read frame from camera {self.device_id}")
            return None
        return frame

    def _release(self) -> None:
        self._cap.release()


class OpenCVCamera(CameraDevice):
    """
    Local webcams through cv2.VideoCapture.

    Device ids are the string form of the capture index.
    """

    def __init__(self, default_index: int = 0, max_probe: int = 4) -> None:
        self.default_index = default_index
        self.max_probe = max_probe

    async def list_devices(self) -> List[str]:
        def _probe() -> List[str]:
            found = []
            for idx in range(self.max_probe):
                cap = cv2.VideoCapture(idx)
                try:
                    if cap.isOpened():
                        found.append(str(idx))
                finally:
                    cap.release()
            return found

        devices = await asyncio.to_thread(_probe)
        logger.info(f"Camera devices found: {devices}")
        return devices

    async def open(self, device_id: Optional[str], constraints: CameraConstraints) -> CameraHandle:
        index = int(device_id) if device_id is not None else self.default_index
        return await asyncio.to_thread(self._open_blocking, index, constraints)

    def _open_blocking(self, index: int, constraints: CameraConstraints) -> CameraHandle:
        cap = cv2.VideoCapture(index)
        if not cap.isOpened():
            cap.release()
            raise CameraAcquisitionError(
                ScanErrorReason.DEVICE_NOT_FOUND,
                details={"device": index},
            )

        def _set(prop, val) -> bool:
            return val is None or bool(cap.set(prop, val))

        ok = (
            _set(cv2.CAP_PROP_FRAME_WIDTH, constraints.width)
            and _set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.height)
            and _set(cv2.CAP_PROP_FPS, constraints.fps)
        )
        if not ok:
            cap.release()
            raise CameraAcquisitionError(
                ScanErrorReason.UNSUPPORTED_CONSTRAINTS,
                details={"device": index, "constraints": constraints.describe()},
            )

        # Opened but another process holds the stream
        ret, _ = cap.read()
        if not ret:
            cap.release()
            raise CameraAcquisitionError(
                ScanErrorReason.DEVICE_BUSY,
                details={"device": index},
            )

        logger.info(f"Camera {index} opened ({constraints.describe()})")
        return OpenCVCameraHandle(str(index), cap)
