import cv2
import numpy as np

from imei_scanner.candidate import DecodedPayload, SourceMethod
from imei_scanner.decoders import DecoderAdapter
from imei_scanner.pipeline import (
    FULL_STAGES,
    DetectionPipeline,
    output_to_dict,
    process_image_bytes,
)
from imei_scanner.resolver import ResolutionStatus


VALID_IMEI = "354626223546262"
INVALID_IMEI = "354626223546263"


def _image(level=100):
    return np.full((40, 60, 3), level, dtype=np.uint8)


class RecordingAdapter(DecoderAdapter):
    """Adapter over plain callables that records which capability ran."""

    def __init__(self, barcode=None, raw_matrix=None, ocr=None):
        self.calls = []

        def wrap(name, fn, default):
            def call(img):
                self.calls.append(name)
                return fn(img) if fn else default
            return call

        super().__init__(
            barcode=wrap("barcode", barcode, []),
            raw_matrix=wrap("raw_matrix", raw_matrix, None),
            ocr=wrap("ocr", ocr, None),
        )


def _barcode(text):
    return lambda img: [DecodedPayload(text, SourceMethod.BARCODE_1D, rect=(1, 1, 5, 5))]


def test_barcode_hit_stops_at_first_stage():
    adapter = RecordingAdapter(barcode=_barcode(VALID_IMEI))
    out = DetectionPipeline(adapter).run(_image())

    assert out.matched_text == VALID_IMEI
    assert out.status is ResolutionStatus.OK
    assert out.stage == "barcode"
    assert out.stages_run == ["barcode"]
    assert adapter.calls == ["barcode"]


def test_stage_order_when_nothing_decodes():
    adapter = RecordingAdapter()
    out = DetectionPipeline(adapter).run(_image())

    assert out.status is ResolutionStatus.NO_IDENTIFIER_FOUND
    assert out.matched_text is None
    assert out.stages_run == [s.name for s in FULL_STAGES]
    assert adapter.calls[:3] == ["barcode", "ocr", "raw_matrix"]
    assert adapter.calls[-4:] == ["ocr"] * 4


def test_contrast_retry_finds_faint_barcode():
    def faint_barcode(img):
        # Only readable once the gain pushes pixels to 150
        if img.max() >= 150:
            return [DecodedPayload(VALID_IMEI, SourceMethod.BARCODE_1D)]
        return []

    out = DetectionPipeline(RecordingAdapter(barcode=faint_barcode)).run(_image(100))
    assert out.stage == "contrast_barcode"
    assert out.stages_run == ["barcode", "ocr", "raw_matrix", "contrast_barcode"]


def test_decoder_failure_is_isolated():
    def broken(img):
        raise RuntimeError("zbar crashed")

    def ocr(img):
        return DecodedPayload(f"IMEI1: {VALID_IMEI}", SourceMethod.OCR, confidence=0.9)

    out = DetectionPipeline(RecordingAdapter(barcode=broken, ocr=ocr)).run(_image())

    assert out.matched_text == VALID_IMEI
    assert out.stage == "ocr"
    assert out.raw_text == f"IMEI1: {VALID_IMEI}"
    assert any("zbar crashed" in e for e in out.errors)


def test_invalid_imei_runs_every_stage_then_falls_back():
    adapter = RecordingAdapter(barcode=_barcode(INVALID_IMEI))
    out = DetectionPipeline(adapter).run(_image())

    assert len(out.stages_run) == len(FULL_STAGES)
    assert out.status is ResolutionStatus.VALIDATION_FAILED
    assert out.matched_text == INVALID_IMEI
    assert out.stage == "barcode"
    assert out.is_success()
    assert not out.is_accepted()


def test_mobile_number_from_ocr():
    def ocr(img):
        return DecodedPayload("Customer care 9876543210", SourceMethod.OCR)

    out = DetectionPipeline(RecordingAdapter(ocr=ocr)).run(_image())
    assert out.status is ResolutionStatus.OK
    assert out.matched_text == "9876543210"


def test_quick_run_follows_full_stage_order():
    adapter = RecordingAdapter()
    out = DetectionPipeline(adapter).run_quick(_image())
    assert out.stages_run == ["barcode", "ocr", "raw_matrix"]
    assert out.stages_run == [s.name for s in FULL_STAGES[:3]]
    assert adapter.calls == ["barcode", "ocr", "raw_matrix"]


def test_empty_image_is_reported_not_raised():
    out = DetectionPipeline(RecordingAdapter()).run(np.zeros((0, 0, 3), dtype=np.uint8))
    assert out.status is ResolutionStatus.NO_IDENTIFIER_FOUND
    assert out.errors


def test_process_image_bytes():
    ok, buf = cv2.imencode(".png", _image())
    assert ok

    pipeline = DetectionPipeline(RecordingAdapter(barcode=_barcode(VALID_IMEI)))
    out = process_image_bytes(buf.tobytes(), pipeline)
    assert out.matched_text == VALID_IMEI

    bad = process_image_bytes(b"garbage", pipeline)
    assert bad.status is ResolutionStatus.NO_IDENTIFIER_FOUND
    assert "Image load error" in bad.errors[0]


def test_output_to_dict():
    out = DetectionPipeline(RecordingAdapter(barcode=_barcode(VALID_IMEI))).run(_image())
    d = output_to_dict(out)

    assert d["matched_text"] == VALID_IMEI
    assert d["status"] == "ok"
    assert d["kind"] == "imei"
    assert d["reject_reason"] == "none"
    assert d["payloads"][0]["rect"] == (1, 1, 5, 5)
    assert d["imei_candidates"] == [VALID_IMEI]
