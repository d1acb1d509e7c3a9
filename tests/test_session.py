import asyncio
import threading
import time

import cv2
import numpy as np
import pytest

from imei_scanner.camera import CameraConstraints, CameraDevice, CameraHandle
from imei_scanner.candidate import (
    CandidateKind,
    CandidateOrigin,
    IdentifierCandidate,
    SourceMethod,
)
from imei_scanner.config import ScannerConfig
from imei_scanner.errors import (
    CameraAcquisitionError,
    InvalidTransitionError,
    ScanErrorReason,
    ScannerError,
    TeardownErrorKind,
)
from imei_scanner.pipeline import PipelineOutput
from imei_scanner.resolver import resolve
from imei_scanner.session import (
    ScanMode,
    ScanSession,
    SessionEventType,
    SessionState,
    scan_camera_once,
)


VALID_IMEI = "354626223546262"
INVALID_IMEI = "354626223546263"


def _output(value=None):
    cands = []
    if value:
        cands = [IdentifierCandidate(value, CandidateKind.IMEI, CandidateOrigin.LABELED, SourceMethod.OCR)]
    return PipelineOutput(resolution=resolve(cands), stage="ocr" if value else None)


# FAKES


class FakeHandle(CameraHandle):

    def __init__(self, camera, device_id):
        super().__init__(device_id)
        self.camera = camera

    async def _read(self):
        return np.zeros((8, 8, 3), dtype=np.uint8)

    def _release(self):
        self.camera.open_count -= 1
        if self.camera.fail_release:
            raise OSError("driver hung")


class FakeCamera(CameraDevice):
    """Counts live handles; optionally slow or failing."""

    def __init__(self, open_delay=0.0, fail_with=None, reject_first=0, fail_release=False):
        self.open_delay = open_delay
        self.fail_release = fail_release
        self.fail_with = fail_with
        self.reject_first = reject_first
        self.open_count = 0
        self.max_open = 0
        self.opened_with = []

    async def list_devices(self):
        return ["0", "1"]

    async def open(self, device_id, constraints):
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.fail_with is not None:
            raise self.fail_with
        if self.reject_first > 0:
            self.reject_first -= 1
            raise CameraAcquisitionError(ScanErrorReason.UNSUPPORTED_CONSTRAINTS)

        self.opened_with.append((device_id, constraints))
        self.open_count += 1
        self.max_open = max(self.max_open, self.open_count)
        return FakeHandle(self, device_id or "0")


class FakePipeline:
    """Returns queued outputs (or raises queued exceptions) in order."""

    def __init__(self, *outputs, delay=0.0):
        self.outputs = list(outputs)
        self.delay = delay
        self.calls = 0

    def _next(self, img):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        item = self.outputs.pop(0) if len(self.outputs) > 1 else self.outputs[0]
        if isinstance(item, Exception):
            raise item
        return item

    run = _next
    run_quick = _next


class CountingPipeline:
    """Tracks how many pipeline runs overlap."""

    def __init__(self, output, delay=0.1):
        self.output = output
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def _next(self, img):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        time.sleep(self.delay)
        with self._lock:
            self.active -= 1
        return self.output

    run = _next
    run_quick = _next


def _config(**kwargs):
    defaults = dict(scan_interval=0.01, error_interval=0.01, scan_timeout=5.0)
    defaults.update(kwargs)
    return ScannerConfig(**defaults)


def _png_bytes():
    ok, buf = cv2.imencode(".png", np.zeros((10, 10, 3), dtype=np.uint8))
    assert ok
    return buf.tobytes()


# START / STOP


def test_start_and_stop_release_everything():
    async def scenario():
        camera = FakeCamera()
        session = ScanSession(camera, FakePipeline(_output()), _config())

        assert await session.start()
        assert session.state is SessionState.ACTIVE
        assert camera.open_count == 1
        assert session.timers == {"scan_timeout": True, "ocr_loop_timer": True}

        await session.stop()
        assert session.state is SessionState.IDLE
        assert camera.open_count == 0
        assert session.camera_handle is None
        assert session.timers == {"scan_timeout": False, "ocr_loop_timer": False}

        # Second stop is a no-op
        await session.stop()
        assert camera.open_count == 0

    asyncio.run(scenario())


def test_live_scan_reports_accepted_imei():
    async def scenario():
        camera = FakeCamera()
        pipeline = FakePipeline(_output(), _output(VALID_IMEI))
        events = []
        session = ScanSession(camera, pipeline, _config())
        session.add_listener(events.append)

        await session.start()
        result = await session.wait_for_result(timeout=2.0)

        assert result.value == VALID_IMEI
        assert result.source == "camera"
        assert result.is_accepted
        assert session.state is SessionState.IDLE
        assert camera.open_count == 0
        assert pipeline.calls >= 2
        assert any(e.type is SessionEventType.RESULT for e in events)

    asyncio.run(scenario())


def test_validation_failure_keeps_scanning():
    async def scenario():
        pipeline = FakePipeline(_output(INVALID_IMEI), _output(VALID_IMEI))
        events = []
        session = ScanSession(FakeCamera(), pipeline, _config())
        session.add_listener(events.append)

        await session.start()
        result = await session.wait_for_result(timeout=2.0)

        assert result.value == VALID_IMEI
        failed = [e for e in events if e.type is SessionEventType.VALIDATION_FAILED]
        assert failed and failed[0].result.value == INVALID_IMEI

    asyncio.run(scenario())


def test_scan_timeout_ends_in_error():
    async def scenario():
        camera = FakeCamera()
        session = ScanSession(camera, FakePipeline(_output()), _config(scan_timeout=0.05))

        await session.start()
        with pytest.raises(ScannerError) as exc_info:
            await session.wait_for_result(timeout=2.0)

        assert exc_info.value.reason is ScanErrorReason.NO_IDENTIFIER_FOUND
        assert session.state is SessionState.ERROR
        assert session.error_reason is ScanErrorReason.NO_IDENTIFIER_FOUND
        assert camera.open_count == 0
        assert not any(session.timers.values())

    asyncio.run(scenario())


def test_transient_decoder_error_retries():
    async def scenario():
        pipeline = FakePipeline(RuntimeError("ocr exploded"), _output(VALID_IMEI))
        events = []
        session = ScanSession(FakeCamera(), pipeline, _config())
        session.add_listener(events.append)

        await session.start()
        result = await session.wait_for_result(timeout=2.0)

        assert result.value == VALID_IMEI
        assert session.error_count == 1
        errors = [e for e in events if e.type is SessionEventType.ERROR]
        assert errors[0].reason is ScanErrorReason.TRANSIENT_DECODER_ERROR

    asyncio.run(scenario())


def test_result_after_stop_is_discarded():
    async def scenario():
        pipeline = FakePipeline(_output(VALID_IMEI), delay=0.2)
        events = []
        session = ScanSession(FakeCamera(), pipeline, _config())
        session.add_listener(events.append)

        await session.start()
        await asyncio.sleep(0.05)   # first tick is now inside the pipeline
        assert pipeline.calls == 1
        await session.stop()
        await asyncio.sleep(0.3)

        assert session.result is None
        assert session.state is SessionState.IDLE
        assert not any(e.type is SessionEventType.RESULT for e in events)

    asyncio.run(scenario())


# CAMERA ACQUISITION


class NotAllowedError(Exception):
    pass


def test_permission_denied_is_classified():
    async def scenario():
        camera = FakeCamera(fail_with=NotAllowedError("user said no"))
        session = ScanSession(camera, FakePipeline(_output()), _config())

        assert not await session.start()
        assert session.state is SessionState.ERROR
        assert session.error_reason is ScanErrorReason.PERMISSION_DENIED
        assert camera.open_count == 0

        with pytest.raises(ScannerError) as exc_info:
            await session.wait_for_result()
        assert exc_info.value.reason is ScanErrorReason.PERMISSION_DENIED

    asyncio.run(scenario())


def test_constraint_cascade_falls_back():
    async def scenario():
        camera = FakeCamera(reject_first=2)
        session = ScanSession(camera, FakePipeline(_output()), _config())

        assert await session.start()
        assert camera.opened_with[0][1] == CameraConstraints(width=640, height=480, fps=15)
        await session.close()

    asyncio.run(scenario())


def test_constraint_cascade_exhausted():
    async def scenario():
        camera = FakeCamera(reject_first=10)
        session = ScanSession(camera, FakePipeline(_output()), _config())

        assert not await session.start()
        assert session.error_reason is ScanErrorReason.UNSUPPORTED_CONSTRAINTS

        # ERROR allows another attempt
        camera.reject_first = 0
        assert await session.start()
        assert session.state is SessionState.ACTIVE
        await session.close()

    asyncio.run(scenario())


def test_switch_camera():
    async def scenario():
        camera = FakeCamera()
        session = ScanSession(camera, FakePipeline(_output()), _config())

        await session.start()
        assert await session.list_cameras() == ["0", "1"]
        assert await session.switch_camera("1")

        assert session.state is SessionState.ACTIVE
        assert session.camera_handle.device_id == "1"
        assert camera.open_count == 1
        assert camera.max_open == 1
        await session.close()

    asyncio.run(scenario())


# MODE SWITCHING


def test_mode_switch_never_holds_two_handles():
    async def scenario():
        camera = FakeCamera(open_delay=0.02)
        session = ScanSession(camera, FakePipeline(_output()), _config())

        assert await session.start()
        await session.switch_to_upload_mode()
        assert session.mode is ScanMode.UPLOAD
        assert camera.open_count == 0

        assert await session.switch_to_camera_mode()
        assert session.mode is ScanMode.CAMERA
        assert camera.open_count == 1

        await session.close()
        assert camera.open_count == 0
        assert camera.max_open == 1

    asyncio.run(scenario())


def test_switch_to_upload_while_camera_is_opening():
    async def scenario():
        camera = FakeCamera(open_delay=0.05)
        session = ScanSession(camera, FakePipeline(_output()), _config())

        starting = asyncio.create_task(session.start())
        await asyncio.sleep(0)       # start() is now waiting on the camera
        assert session.state is SessionState.INITIALIZING

        await session.switch_to_upload_mode()
        assert not await starting

        assert session.mode is ScanMode.UPLOAD
        assert session.state is SessionState.IDLE
        assert camera.open_count == 0
        assert session.camera_handle is None

        assert await session.switch_to_camera_mode()
        assert camera.open_count == 1
        assert camera.max_open == 1
        await session.close()

    asyncio.run(scenario())


def test_start_requires_camera_mode_and_idle():
    async def scenario():
        session = ScanSession(FakeCamera(), FakePipeline(_output()), _config(), mode=ScanMode.UPLOAD)
        with pytest.raises(InvalidTransitionError):
            await session.start()

        await session.switch_to_camera_mode(start=False)
        assert await session.start()
        with pytest.raises(InvalidTransitionError):
            await session.start()
        await session.close()

    asyncio.run(scenario())


# EMERGENCY STOP


def test_emergency_stop_overrides_everything():
    async def scenario():
        camera = FakeCamera()
        session = ScanSession(camera, FakePipeline(_output()), _config())

        await session.start()
        session.emergency_stop()

        assert session.state is SessionState.EMERGENCY_STOPPED
        assert camera.open_count == 0
        assert not any(session.timers.values())

        with pytest.raises(InvalidTransitionError):
            await session.start()
        with pytest.raises(InvalidTransitionError):
            await session.switch_to_upload_mode()

        session.reset()
        assert session.state is SessionState.IDLE
        assert await session.start()
        await session.close()

    asyncio.run(scenario())


def test_emergency_stop_fails_waiter():
    async def scenario():
        session = ScanSession(FakeCamera(), FakePipeline(_output()), _config())
        await session.start()

        waiting = asyncio.create_task(session.wait_for_result())
        await asyncio.sleep(0)
        session.emergency_stop()

        with pytest.raises(ScannerError):
            await waiting

    asyncio.run(scenario())


# UPLOAD AND MANUAL ENTRY


def test_scan_upload():
    async def scenario():
        pipeline = FakePipeline(_output(VALID_IMEI))
        session = ScanSession(FakeCamera(), pipeline, _config(), mode=ScanMode.UPLOAD)

        result = await session.scan_upload(_png_bytes())
        assert result.value == VALID_IMEI
        assert result.source == "upload"

        failed = await session.scan_upload(b"garbage")
        assert failed.value is None

    asyncio.run(scenario())


def test_scan_upload_requires_upload_mode():
    async def scenario():
        session = ScanSession(FakeCamera(), FakePipeline(_output()), _config())
        with pytest.raises(InvalidTransitionError):
            await session.scan_upload(_png_bytes())

    asyncio.run(scenario())


def test_manual_entry_bypasses_validation():
    async def scenario():
        camera = FakeCamera()
        session = ScanSession(camera, FakePipeline(_output()), _config())
        await session.start()

        result = session.submit_manual_entry("  12345  ")
        assert result.value == "12345"
        assert result.source == "manual"
        assert result.is_accepted
        assert camera.open_count == 0
        assert await session.wait_for_result() is result

        with pytest.raises(ValueError):
            session.submit_manual_entry("   ")

    asyncio.run(scenario())


def test_scan_camera_once():
    camera = FakeCamera()
    result = asyncio.run(scan_camera_once(camera, _config(), FakePipeline(_output(VALID_IMEI))))
    assert result.value == VALID_IMEI
    assert camera.open_count == 0


def test_scan_camera_once_reports_acquisition_error():
    camera = FakeCamera(fail_with=FileNotFoundError("no /dev/video0"))
    with pytest.raises(ScannerError) as exc_info:
        asyncio.run(scan_camera_once(camera, _config(), FakePipeline(_output())))
    assert exc_info.value.reason is ScanErrorReason.DEVICE_NOT_FOUND


def test_listener_errors_do_not_break_session():
    async def scenario():
        session = ScanSession(FakeCamera(), FakePipeline(_output()), _config())

        def bad_listener(event):
            raise RuntimeError("ui gone")

        session.add_listener(bad_listener)
        assert await session.start()
        session.remove_listener(bad_listener)
        await session.close()

    asyncio.run(scenario())


def test_upload_and_live_ticks_never_overlap():
    async def scenario():
        pipeline = CountingPipeline(_output())
        session = ScanSession(FakeCamera(), pipeline, _config(), mode=ScanMode.UPLOAD)

        upload = asyncio.create_task(session.scan_upload(_png_bytes()))
        await asyncio.sleep(0)       # upload is now inside the pipeline
        assert await session.switch_to_camera_mode()
        await asyncio.sleep(0.2)

        # The mode switch superseded the upload
        assert await upload is None
        await session.close()
        assert pipeline.max_active == 1

    asyncio.run(scenario())


def test_second_upload_is_refused_while_first_runs():
    async def scenario():
        pipeline = CountingPipeline(_output(VALID_IMEI))
        session = ScanSession(FakeCamera(), pipeline, _config(), mode=ScanMode.UPLOAD)

        outcomes = await asyncio.gather(
            session.scan_upload(_png_bytes()),
            session.scan_upload(_png_bytes()),
            return_exceptions=True,
        )

        assert outcomes[0].value == VALID_IMEI
        assert isinstance(outcomes[1], InvalidTransitionError)
        assert pipeline.max_active == 1

        # Once the first run is done, uploads are accepted again
        again = await session.scan_upload(_png_bytes())
        assert again.value == VALID_IMEI

    asyncio.run(scenario())


def test_wait_for_result_returns_upload_result():
    async def scenario():
        pipeline = FakePipeline(_output(VALID_IMEI), delay=0.05)
        session = ScanSession(FakeCamera(), pipeline, _config(), mode=ScanMode.UPLOAD)

        upload = asyncio.create_task(session.scan_upload(_png_bytes()))
        await asyncio.sleep(0)
        result = await session.wait_for_result(timeout=2.0)

        assert result.value == VALID_IMEI
        assert await upload is result

    asyncio.run(scenario())


def test_wait_for_result_needs_something_running():
    async def scenario():
        session = ScanSession(FakeCamera(), FakePipeline(_output()), _config())
        with pytest.raises(InvalidTransitionError):
            await session.wait_for_result(timeout=1.0)

        await session.start()
        await session.stop()
        with pytest.raises(InvalidTransitionError):
            await session.wait_for_result(timeout=1.0)

        session.emergency_stop()
        with pytest.raises(InvalidTransitionError):
            await session.wait_for_result(timeout=1.0)

    asyncio.run(scenario())


def test_manual_entry_refused_after_emergency_stop():
    async def scenario():
        session = ScanSession(FakeCamera(), FakePipeline(_output()), _config())
        await session.start()
        session.emergency_stop()

        with pytest.raises(InvalidTransitionError):
            session.submit_manual_entry(VALID_IMEI)
        assert session.state is SessionState.EMERGENCY_STOPPED
        assert session.result is None

        session.reset()
        result = session.submit_manual_entry(VALID_IMEI)
        assert result.value == VALID_IMEI

    asyncio.run(scenario())


def test_stale_handle_release_failure_is_recorded():
    async def scenario():
        camera = FakeCamera(open_delay=0.05, fail_release=True)
        session = ScanSession(camera, FakePipeline(_output()), _config())

        starting = asyncio.create_task(session.start())
        await asyncio.sleep(0)
        await session.switch_to_upload_mode()
        assert not await starting

        assert session.camera_handle is None
        assert session.last_teardown_error is not None
        assert session.last_teardown_error.kind is TeardownErrorKind.RELEASE_FAILED
        assert "driver hung" in session.last_teardown_error.detail

    asyncio.run(scenario())
