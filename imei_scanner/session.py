# imei_scanner/session.py
"""
Scanner session state machine.

Owns the camera handle, camera/upload mode, the periodic live detection
loop, the scan timeout and teardown for one scanning interaction.

States:
    IDLE -> REQUESTING_PERMISSION -> INITIALIZING -> ACTIVE
    ACTIVE -> SWITCHING_CAMERA -> ACTIVE
    ACTIVE -> ERROR | IDLE
    any    -> EMERGENCY_STOPPED  (reset() returns to IDLE)

Everything runs on one asyncio event loop. Decoder calls cannot be
cancelled, so every await is followed by a generation check: teardown bumps
the generation and anything started before it is discarded on return.
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from .camera import CameraDevice, CameraHandle, OpenCVCamera
from .candidate import CandidateKind
from .config import ScannerConfig
from .errors import (
    CameraAcquisitionError,
    InvalidTransitionError,
    ScanErrorReason,
    ScannerError,
    TeardownError,
    classify_camera_error,
)
from .pipeline import DetectionPipeline, PipelineOutput, process_image_bytes
from .resolver import ResolutionStatus
from .scheduling import ScheduledTask
from .text_extraction import log_extraction

logger = logging.getLogger(__name__)


class ScanMode(Enum):
    CAMERA = "camera"
    UPLOAD = "upload"


class SessionState(Enum):
    IDLE = "idle"
    REQUESTING_PERMISSION = "requesting_permission"
    INITIALIZING = "initializing"
    ACTIVE = "active"
    SWITCHING_CAMERA = "switching_camera"
    EMERGENCY_STOPPED = "emergency_stopped"
    ERROR = "error"


class SessionEventType(Enum):
    STATE_CHANGED = "state_changed"
    MODE_CHANGED = "mode_changed"
    RESULT = "result"
    VALIDATION_FAILED = "validation_failed"
    ERROR = "error"


@dataclass
class ScanResult:
    """What the session hands back to the caller."""
    value: Optional[str]
    status: ResolutionStatus
    source: str                         # "camera" | "upload" | "manual"
    kind: Optional[CandidateKind] = None
    stage: Optional[str] = None
    output: Optional[PipelineOutput] = None

    @property
    def is_accepted(self) -> bool:
        return self.value is not None and self.status is ResolutionStatus.OK

    @classmethod
    def from_output(cls, output: PipelineOutput, source: str) -> "ScanResult":
        return cls(
            value=output.matched_text,
            status=output.status,
            source=source,
            kind=output.resolution.kind,
            stage=output.stage,
            output=output,
        )


@dataclass
class SessionEvent:
    """Notification for UI display only."""
    type: SessionEventType
    state: SessionState
    mode: ScanMode
    result: Optional[ScanResult] = None
    reason: Optional[ScanErrorReason] = None
    message: str = ""


Listener = Callable[[SessionEvent], None]

_STARTABLE = (SessionState.IDLE, SessionState.ERROR)


class ScanSession:
    """
    One scanning interaction.

    Example:
        >>> async with ScanSession(OpenCVCamera()) as session:
        ...     if await session.start():
        ...         result = await session.wait_for_result()
    """

    def __init__(
        self,
        camera: Optional[CameraDevice] = None,
        pipeline: Optional[DetectionPipeline] = None,
        config: Optional[ScannerConfig] = None,
        mode: ScanMode = ScanMode.CAMERA,
    ) -> None:
        self.config = config or ScannerConfig()
        self._camera = camera or OpenCVCamera()
        self._pipeline = pipeline or DetectionPipeline(
            contrast_gain=self.config.contrast_gain,
            square_size=self.config.square_size,
        )

        self.mode = mode
        self.state = SessionState.IDLE
        self.error_count = 0
        self.error_reason: Optional[ScanErrorReason] = None
        self.result: Optional[ScanResult] = None
        self.last_teardown_error: Optional[TeardownError] = None

        self._handle: Optional[CameraHandle] = None
        self._device_id: Optional[str] = self.config.device_id
        self._generation = 0
        self._stop_processing = True
        self._in_flight = False
        self._acquire_lock = asyncio.Lock()
        self._waiter: Optional[asyncio.Future] = None
        self._listeners: List[Listener] = []

        self._scan_timer = ScheduledTask("scan_timeout", self._on_scan_timeout)
        self._loop_timer = ScheduledTask("ocr_loop_timer", self._tick)

    # PROPERTIES

    @property
    def camera_handle(self) -> Optional[CameraHandle]:
        return self._handle

    @property
    def timers(self) -> dict:
        return {
            "scan_timeout": self._scan_timer.pending,
            "ocr_loop_timer": self._loop_timer.pending,
        }

    @property
    def is_processing(self) -> bool:
        return self.state is SessionState.ACTIVE and not self._stop_processing

    # LISTENERS

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event_type: SessionEventType, **kwargs) -> None:
        event = SessionEvent(type=event_type, state=self.state, mode=self.mode, **kwargs)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Session listener failed on {event_type.value}: {e}", exc_info=True)

    def _set_state(self, state: SessionState) -> None:
        if state is self.state:
            return
        logger.info(f"Session state {self.state.value} -> {state.value}")
        self.state = state
        self._emit(SessionEventType.STATE_CHANGED)

    # WAITERS

    def _settle_waiter(self, result: Optional[ScanResult] = None, error: Optional[Exception] = None) -> None:
        waiter, self._waiter = self._waiter, None
        if waiter is None or waiter.done():
            return
        if error is not None:
            waiter.set_exception(error)
        else:
            waiter.set_result(result)

    async def wait_for_result(self, timeout: Optional[float] = None) -> ScanResult:
        """
        Wait until the session reports an identifier.

        Raises:
            ScannerError: The session ended in ERROR, was stopped, or the
                camera could not be acquired
            InvalidTransitionError: Nothing is running that could produce a
                result (never started, stopped, emergency-stopped)
            asyncio.TimeoutError: `timeout` elapsed first
        """
        if self.result is not None:
            return self.result
        if self.state is SessionState.ERROR and self.error_reason is not None:
            raise ScannerError(self.error_reason)

        upload_running = self.mode is ScanMode.UPLOAD and self._in_flight
        if self.state in (SessionState.IDLE, SessionState.EMERGENCY_STOPPED) and not upload_running:
            raise InvalidTransitionError("wait for a result", self.state, self.mode)

        if self._waiter is None or self._waiter.done():
            self._waiter = asyncio.get_running_loop().create_future()
        return await asyncio.wait_for(asyncio.shield(self._waiter), timeout)

    # TEARDOWN

    def _teardown(self) -> None:
        """
        Release everything the session holds. Idempotent.

        Stops processing, invalidates in-flight work, cancels both timers and
        releases the camera handle.
        """
        self._stop_processing = True
        self._generation += 1
        self._scan_timer.cancel()
        self._loop_timer.cancel()

        handle, self._handle = self._handle, None
        if handle is not None:
            err = handle.release()
            if err is not None:
                logger.warning(f"Camera teardown: {err.kind.value} {err.detail}")
                self.last_teardown_error = err

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    # CAMERA ACQUISITION

    async def _acquire(self, generation: int) -> Optional[CameraHandle]:
        """
        Open one camera handle, trying each constraint set in turn.

        Returns None if the session was torn down while opening; the handle
        opened in the meantime is released before returning.
        """
        async with self._acquire_lock:
            if not self._is_current(generation):
                return None
            if self._handle is not None:
                raise InvalidTransitionError("acquire a second camera", self.state, self.mode)

            last_error: Optional[CameraAcquisitionError] = None
            handle = None
            for constraints in self.config.constraint_cascade:
                try:
                    handle = await self._camera.open(self._device_id, constraints)
                    break
                except CameraAcquisitionError as e:
                    if e.reason is not ScanErrorReason.UNSUPPORTED_CONSTRAINTS:
                        raise
                    logger.info(f"Camera rejected constraints {constraints.describe()}, trying next")
                    last_error = e
                    if not self._is_current(generation):
                        return None

            if handle is None:
                raise last_error or CameraAcquisitionError(ScanErrorReason.UNSUPPORTED_CONSTRAINTS)

            if not self._is_current(generation):
                logger.info("Session changed while opening camera, releasing stale handle")
                err = handle.release()
                if err is not None:
                    logger.warning(f"Stale camera teardown: {err.kind.value} {err.detail}")
                    self.last_teardown_error = err
                return None

            self._handle = handle
            return handle

    def _fail(self, reason: ScanErrorReason, exc: Optional[Exception] = None) -> None:
        self._teardown()
        self.error_reason = reason
        self._set_state(SessionState.ERROR)
        error = exc if isinstance(exc, ScannerError) else ScannerError(reason)
        self._emit(SessionEventType.ERROR, reason=reason, message=error.message)
        self._settle_waiter(error=error)

    def _arm_timers(self) -> None:
        self._stop_processing = False
        self._scan_timer.schedule(self.config.scan_timeout)
        self._loop_timer.schedule(self.config.scan_interval)

    async def _open_camera(self, generation: int) -> bool:
        try:
            handle = await self._acquire(generation)
        except Exception as e:
            if not self._is_current(generation):
                return False
            reason = classify_camera_error(e)
            logger.error(f"Camera acquisition failed ({reason.value}): {e}")
            self._fail(reason, e if isinstance(e, ScannerError) else CameraAcquisitionError(reason, str(e)))
            return False

        if handle is None:
            return False

        self._arm_timers()
        self._set_state(SessionState.ACTIVE)
        return True

    # OPERATIONS

    async def start(self) -> bool:
        """
        Request permission, open the camera and start the live loop.

        Returns:
            True when the session reached ACTIVE. On acquisition failure the
            session is in ERROR with `error_reason` set; no retry happens.

        Raises:
            InvalidTransitionError: Not in camera mode, or not IDLE / ERROR
        """
        if self.mode is not ScanMode.CAMERA:
            raise InvalidTransitionError("start camera", self.state, self.mode)
        if self.state not in _STARTABLE:
            raise InvalidTransitionError("start camera", self.state, self.mode)

        self._teardown()
        generation = self._generation
        self.result = None
        self.error_reason = None
        self.error_count = 0

        self._set_state(SessionState.REQUESTING_PERMISSION)
        try:
            await self._camera.request_permission()
        except Exception as e:
            if not self._is_current(generation):
                return False
            reason = classify_camera_error(e)
            logger.error(f"Camera permission failed ({reason.value}): {e}")
            self._fail(reason, CameraAcquisitionError(reason, str(e)))
            return False

        if not self._is_current(generation):
            return False

        self._set_state(SessionState.INITIALIZING)
        return await self._open_camera(generation)

    async def stop(self) -> None:
        """Normal stop: full teardown, back to IDLE."""
        if self.state is SessionState.EMERGENCY_STOPPED:
            return
        self._teardown()
        self._set_state(SessionState.IDLE)
        if self.result is None:
            self._settle_waiter(error=ScannerError(
                ScanErrorReason.NO_IDENTIFIER_FOUND,
                "Scan stopped before an identifier was found",
            ))

    async def switch_camera(self, device_id: str) -> bool:
        """Move the live scan to another camera."""
        if self.state is not SessionState.ACTIVE:
            raise InvalidTransitionError("switch camera", self.state, self.mode)

        self._set_state(SessionState.SWITCHING_CAMERA)
        self._teardown()
        generation = self._generation
        self._device_id = device_id
        logger.info(f"Switching to camera {device_id}")
        return await self._open_camera(generation)

    async def list_cameras(self) -> List[str]:
        return await self._camera.list_devices()

    async def switch_to_upload_mode(self) -> None:
        """Tear down the camera completely, then enter upload mode."""
        if self.state is SessionState.EMERGENCY_STOPPED:
            raise InvalidTransitionError("switch to upload mode", self.state, self.mode)
        if self.mode is ScanMode.UPLOAD:
            return

        await self.stop()
        self.mode = ScanMode.UPLOAD
        self._emit(SessionEventType.MODE_CHANGED)

    async def switch_to_camera_mode(self, start: bool = True) -> bool:
        """Leave upload mode and (by default) start the camera."""
        if self.state is SessionState.EMERGENCY_STOPPED:
            raise InvalidTransitionError("switch to camera mode", self.state, self.mode)
        if self.mode is ScanMode.CAMERA:
            return self.state is SessionState.ACTIVE

        await self.stop()
        self.mode = ScanMode.CAMERA
        self._emit(SessionEventType.MODE_CHANGED)
        if not start:
            return False
        return await self.start()

    def emergency_stop(self) -> None:
        """Override from any state: drop camera and timers immediately."""
        logger.warning(f"Emergency stop from {self.state.value}")
        self._teardown()
        self._set_state(SessionState.EMERGENCY_STOPPED)
        self._settle_waiter(error=ScannerError(
            ScanErrorReason.NO_IDENTIFIER_FOUND,
            "Scan emergency-stopped",
        ))

    def reset(self) -> None:
        """Operator acknowledgement after EMERGENCY_STOPPED or ERROR."""
        if self.state not in (SessionState.EMERGENCY_STOPPED, SessionState.ERROR):
            raise InvalidTransitionError("reset", self.state, self.mode)
        self._teardown()
        self.error_reason = None
        self._set_state(SessionState.IDLE)

    async def close(self) -> None:
        """Component teardown; safe to call any number of times."""
        self._teardown()
        if self.state is not SessionState.EMERGENCY_STOPPED:
            self._set_state(SessionState.IDLE)
        self._settle_waiter(error=ScannerError(
            ScanErrorReason.NO_IDENTIFIER_FOUND,
            "Scan session closed",
        ))
        self._listeners.clear()

    async def __aenter__(self) -> "ScanSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # RESULTS

    def _complete(self, result: ScanResult) -> None:
        self.result = result
        self._teardown()
        self._set_state(SessionState.IDLE)
        self._emit(SessionEventType.RESULT, result=result)
        self._settle_waiter(result=result)

    async def scan_upload(self, image_bytes: bytes) -> Optional[ScanResult]:
        """
        Run the full pipeline once over an uploaded image.

        Returns:
            ScanResult (possibly NO_IDENTIFIER_FOUND), or None when the
            session left upload mode before the pipeline finished

        Raises:
            InvalidTransitionError: Not in upload mode, emergency-stopped, or
                a detection run (upload or live tick) is still in flight
        """
        if self.mode is not ScanMode.UPLOAD or self.state is SessionState.EMERGENCY_STOPPED:
            raise InvalidTransitionError("scan an upload", self.state, self.mode)
        if self._in_flight:
            raise InvalidTransitionError("scan an upload while detection is running", self.state, self.mode)

        generation = self._generation
        self._in_flight = True
        try:
            output = await asyncio.to_thread(process_image_bytes, image_bytes, self._pipeline)
        finally:
            self._in_flight = False

        if not self._is_current(generation) or self.mode is not ScanMode.UPLOAD:
            logger.info("Discarding upload result from a superseded session")
            return None

        result = ScanResult.from_output(output, source="upload")
        self.result = result
        self._settle_waiter(result=result)

        if result.status is ResolutionStatus.OK:
            self._emit(SessionEventType.RESULT, result=result)
        elif result.status is ResolutionStatus.VALIDATION_FAILED:
            self._emit(
                SessionEventType.VALIDATION_FAILED,
                result=result,
                reason=ScanErrorReason.VALIDATION_FAILED,
            )
        else:
            self._emit(
                SessionEventType.ERROR,
                result=result,
                reason=ScanErrorReason.NO_IDENTIFIER_FOUND,
            )
        return result

    def submit_manual_entry(self, text: str) -> ScanResult:
        """
        Operator-typed identifier. Bypasses the pipeline and the validator.

        Raises:
            ValueError: If the entry is empty
            InvalidTransitionError: Emergency-stopped; reset() first
        """
        if self.state is SessionState.EMERGENCY_STOPPED:
            raise InvalidTransitionError("submit manual entry", self.state, self.mode)

        value = (text or "").strip()
        if not value:
            raise ValueError("Manual entry is empty")

        result = ScanResult(value=value, status=ResolutionStatus.OK, source="manual")
        log_extraction(value, "manual", result.status.value, text)
        logger.info(f"Manual entry accepted without validation: {value}")
        self._complete(result)
        return result

    # LIVE LOOP

    def _on_scan_timeout(self) -> None:
        if self.state is not SessionState.ACTIVE or self.result is not None:
            return
        logger.warning(f"No identifier within {self.config.scan_timeout:.0f}s, stopping camera")
        self._fail(ScanErrorReason.NO_IDENTIFIER_FOUND)

    async def _tick(self) -> None:
        generation = self._generation
        if not self.is_processing:
            return

        # Fixed cadence; a slow run causes skipped ticks, never a backlog
        self._loop_timer.schedule(self.config.scan_interval)

        if self._in_flight:
            logger.debug("Previous detection still running, skipping tick")
            return

        handle = self._handle
        if handle is None:
            return

        self._in_flight = True
        try:
            frame = await handle.read_frame()
            if frame is None:
                raise ScannerError(ScanErrorReason.TRANSIENT_DECODER_ERROR, "Camera returned no frame")
            run = self._pipeline.run if self.config.live_full_pipeline else self._pipeline.run_quick
            output = await asyncio.to_thread(run, frame)
        except Exception as e:
            if not (self._is_current(generation) and self.is_processing):
                return
            self.error_count += 1
            logger.error(f"Live detection error #{self.error_count}: {e}", exc_info=True)
            self._emit(
                SessionEventType.ERROR,
                reason=ScanErrorReason.TRANSIENT_DECODER_ERROR,
                message=str(e),
            )
            self._loop_timer.schedule(self.config.error_interval)
            return
        finally:
            self._in_flight = False

        if not (self._is_current(generation) and self.is_processing):
            logger.debug("Discarding stale detection result")
            return

        self._handle_live_output(output)

    def _handle_live_output(self, output: PipelineOutput) -> None:
        if output.is_accepted():
            self._complete(ScanResult.from_output(output, source="camera"))
        elif output.status is ResolutionStatus.VALIDATION_FAILED:
            # Keep scanning; the operator may hold the label steadier
            self._emit(
                SessionEventType.VALIDATION_FAILED,
                result=ScanResult.from_output(output, source="camera"),
                reason=ScanErrorReason.VALIDATION_FAILED,
            )


async def scan_camera_once(
    camera: Optional[CameraDevice] = None,
    config: Optional[ScannerConfig] = None,
    pipeline: Optional[DetectionPipeline] = None,
) -> ScanResult:
    """Open a camera session, wait for one identifier, tear everything down."""
    async with ScanSession(camera=camera, pipeline=pipeline, config=config) as session:
        if not await session.start():
            raise ScannerError(session.error_reason or ScanErrorReason.DEVICE_NOT_FOUND)
        return await session.wait_for_result()
