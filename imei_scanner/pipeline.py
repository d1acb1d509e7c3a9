# imei_scanner/pipeline.py
"""
Escalating detection pipeline for one still image.

Stage order (first accepted IMEI wins, everything else accumulates):
  1. barcode              pyzbar on the original image
  2. ocr                  PaddleOCR on the original image
  3. raw_matrix           OpenCV QR matrix on the original image
  4. contrast_*           barcode, raw matrix on a x1.5 gain copy
  5. resized_*            barcode, raw matrix on a 400x400 copy
  6. ocr_comprehensive*   OCR on block / heavy preprocessing and rotations

After the last stage the resolver picks from every candidate collected, so
an image without a valid IMEI can still report a phone number or the
lenient first-IMEI fallback.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional, Sequence
import logging
import time

import numpy as np

from .candidate import DecodedPayload
from .decoders import DecoderAdapter
from .preprocessing import (
    CONTRAST_GAIN,
    RESIZE_SQUARE,
    enhance_contrast,
    preprocess_for_ocr_block,
    preprocess_for_ocr_heavy,
    resize_square,
)
from .resolver import Resolution, ResolutionStatus, resolve
from .text_extraction import (
    ExtractionResult,
    extract_candidates,
    highlight_match_in_text,
    log_extraction,
    merge_results,
)
from .utils import load_image_from_bytes, rotate_image, validate_image
from .validation import first_accepted

logger = logging.getLogger(__name__)


# STAGE DEFINITIONS


class Stage(NamedTuple):
    name: str
    variant: str   # which copy of the image to decode
    decoder: str   # "barcode" | "raw_matrix" | "ocr"


FULL_STAGES: List[Stage] = [
    Stage("barcode", "original", "barcode"),
    Stage("ocr", "original", "ocr"),
    Stage("raw_matrix", "original", "raw_matrix"),
    Stage("contrast_barcode", "contrast", "barcode"),
    Stage("contrast_raw_matrix", "contrast", "raw_matrix"),
    Stage("resized_barcode", "resized", "barcode"),
    Stage("resized_raw_matrix", "resized", "raw_matrix"),
    Stage("ocr_comprehensive", "ocr_block", "ocr"),
    Stage("ocr_comprehensive_heavy", "ocr_heavy", "ocr"),
    Stage("ocr_comprehensive_rot90", "rot90", "ocr"),
    Stage("ocr_comprehensive_rot180", "rot180", "ocr"),
    Stage("ocr_comprehensive_rot270", "rot270", "ocr"),
]

# Live camera ticks: the first three stages, raw frame only
QUICK_STAGES: List[Stage] = [
    Stage("barcode", "original", "barcode"),
    Stage("ocr", "original", "ocr"),
    Stage("raw_matrix", "original", "raw_matrix"),
]


# OUTPUT


@dataclass
class PipelineOutput:
    """Complete pipeline output."""
    resolution: Resolution
    stage: Optional[str] = None
    raw_text: str = ""
    payloads: List[DecodedPayload] = field(default_factory=list)
    candidates: ExtractionResult = field(default_factory=lambda: ExtractionResult([], []))
    stages_run: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def matched_text(self) -> Optional[str]:
        return self.resolution.value

    @property
    def status(self) -> ResolutionStatus:
        return self.resolution.status

    def is_success(self) -> bool:
        return self.resolution.is_success

    def is_accepted(self) -> bool:
        return self.resolution.is_accepted


def _failed_output(error: str) -> PipelineOutput:
    return PipelineOutput(
        resolution=Resolution(status=ResolutionStatus.NO_IDENTIFIER_FOUND),
        errors=[error],
    )


# PIPELINE


class DetectionPipeline:
    """
    Runs decode stages over one image until an IMEI is accepted.

    Example:
        >>> pipeline = DetectionPipeline()
        >>> out = pipeline.run(img)
        >>> out.matched_text, out.status, out.stage
    """

    def __init__(
        self,
        adapter: Optional[DecoderAdapter] = None,
        contrast_gain: float = CONTRAST_GAIN,
        square_size: int = RESIZE_SQUARE,
    ) -> None:
        self.adapter = adapter or DecoderAdapter()
        self.contrast_gain = contrast_gain
        self.square_size = square_size

    # VARIANTS

    def _make_variant(self, img: np.ndarray, variant: str) -> np.ndarray:
        if variant == "original":
            return img
        if variant == "contrast":
            return enhance_contrast(img, self.contrast_gain)
        if variant == "resized":
            return resize_square(img, self.square_size)
        if variant == "ocr_block":
            return preprocess_for_ocr_block(img)
        if variant == "ocr_heavy":
            return preprocess_for_ocr_heavy(img)
        if variant.startswith("rot"):
            return rotate_image(img, int(variant[3:]))
        raise ValueError(f"Unknown image variant: {variant}")

    def _decode(self, decoder: str, img: np.ndarray) -> List[DecodedPayload]:
        if decoder == "barcode":
            return self.adapter.decode_barcodes(img)

        if decoder == "raw_matrix":
            payload = self.adapter.decode_raw_matrix(img)
        elif decoder == "ocr":
            payload = self.adapter.recognize_text(img)
        else:
            raise ValueError(f"Unknown decoder: {decoder}")

        return [payload] if payload is not None else []

    # RUN

    def run(self, img: np.ndarray) -> PipelineOutput:
        """Full ordered stage list (upload mode)."""
        return self.run_stages(img, FULL_STAGES)

    def run_quick(self, img: np.ndarray) -> PipelineOutput:
        """Reduced stage list for periodic live-camera ticks."""
        return self.run_stages(img, QUICK_STAGES)

    def run_stages(self, img: np.ndarray, stages: Sequence[Stage]) -> PipelineOutput:
        """
        Run the given stages in order, stopping at the first accepted IMEI.

        Args:
            img: BGR or grayscale image
            stages: Ordered stage definitions

        Returns:
            PipelineOutput; never raises for decoder failures
        """
        if not validate_image(img, "detection pipeline"):
            return _failed_output("Invalid image: None or empty")

        started = time.perf_counter()
        errors: List[str] = []
        payloads: List[DecodedPayload] = []
        results: List[ExtractionResult] = []
        stages_run: List[str] = []
        first_stage: Dict[str, str] = {}
        first_text: Dict[str, str] = {}
        variants: Dict[str, np.ndarray] = {}

        self.adapter.drain_errors()

        for stage in stages:
            try:
                if stage.variant not in variants:
                    variants[stage.variant] = self._make_variant(img, stage.variant)
                stage_img = variants[stage.variant]
            except ValueError as e:
                logger.error(f"Stage {stage.name}: could not prepare image: {e}")
                errors.append(f"{stage.name}: {e}")
                continue

            stages_run.append(stage.name)
            stage_payloads = self._decode(stage.decoder, stage_img)
            errors.extend(f"{stage.name}: {err}" for err in self.adapter.drain_errors())

            accepted = None
            for payload in stage_payloads:
                payloads.append(payload)
                res = extract_candidates(payload.text, payload.source_method)
                results.append(res)

                for cand in res.imei_candidates + res.mobile_candidates:
                    first_stage.setdefault(cand.value, stage.name)
                    first_text.setdefault(cand.value, payload.text)

                if accepted is None:
                    accepted = first_accepted(res.imei_candidates)

            if accepted:
                logger.info(f"Stage {stage.name} accepted IMEI {accepted.candidate.value}")
                break

            logger.debug(f"Stage {stage.name}: {len(stage_payloads)} payload(s), nothing accepted")

        merged = merge_results(results)
        resolution = resolve(merged.imei_candidates, merged.mobile_candidates)
        elapsed = time.perf_counter() - started

        out = PipelineOutput(
            resolution=resolution,
            stage=first_stage.get(resolution.value) if resolution.value else None,
            raw_text=first_text.get(resolution.value, "") if resolution.value else "",
            payloads=payloads,
            candidates=merged,
            stages_run=stages_run,
            errors=errors,
            elapsed=elapsed,
        )

        if resolution.is_success:
            logger.info(
                f"FINAL RESULT: {resolution.value} ({resolution.status.value}) "
                f"from {out.stage} in {elapsed:.2f}s"
            )
            log_extraction(resolution.value, out.stage or "", resolution.status.value, out.raw_text)
        else:
            logger.warning(f"No identifier found after {len(stages_run)} stage(s)")

        return out


# UPLOAD ENTRY POINT


def process_image_bytes(
    image_bytes: bytes,
    pipeline: Optional[DetectionPipeline] = None,
) -> PipelineOutput:
    """
    One-shot upload scan: decode the file and run every stage once.

    An unreadable file is reported as a failed output, not raised.
    """
    try:
        img = load_image_from_bytes(image_bytes)
    except ValueError as e:
        logger.error(f"Image load error: {e}")
        return _failed_output(f"Image load error: {str(e)}")

    return (pipeline or DetectionPipeline()).run(img)


def output_to_dict(out: PipelineOutput) -> Dict:
    """Convert PipelineOutput to a JSON-ready dictionary."""
    resolution = out.resolution
    return {
        "matched_text": out.matched_text,
        "kind": resolution.kind.value if resolution.kind else None,
        "status": resolution.status.value,
        "is_success": out.is_success(),
        "is_accepted": out.is_accepted(),
        "reject_reason": (
            resolution.validation.reject_reason.value
            if resolution.validation else None
        ),
        "stage": out.stage,
        "highlighted_text": highlight_match_in_text(out.raw_text, out.matched_text),
        "raw_text": out.raw_text,
        "payloads": [
            {
                "text": p.text,
                "source_method": p.source_method.value,
                "confidence": round(p.confidence, 4),
                "rect": p.rect,
            }
            for p in out.payloads
        ],
        "imei_candidates": [c.value for c in out.candidates.imei_candidates],
        "mobile_candidates": [c.value for c in out.candidates.mobile_candidates],
        "stages_run": out.stages_run,
        "errors": out.errors,
        "elapsed": round(out.elapsed, 3),
    }
