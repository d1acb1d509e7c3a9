# imei_scanner/candidate.py
"""
Structured representation of decoder output and identifier hypotheses.

Why this exists:
    - Each barcode/matrix/OCR capability produces raw text
    - Raw text may hold zero, one or many identifier-shaped numbers
    - We capture each number with where it came from and how it was found
    - Validation and resolution work on these records, never on raw strings
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


# SOURCE / KIND / ORIGIN ENUMS


class SourceMethod(Enum):
    """Which decode capability produced a payload."""

    BARCODE_1D = "barcode_1d"
    BARCODE_2D = "barcode_2d"
    RAW_MATRIX = "raw_matrix"
    OCR = "ocr"


class CandidateKind(Enum):
    IMEI = "imei"
    MOBILE = "mobile"


class CandidateOrigin(Enum):
    """
    How a candidate was located inside the decoded text.

        LABELED:   preceded by an IMEI1 / IMEI / IMEI2 / IMEI/MEID label
        UNLABELED: bare digit run that passed the leading-digit heuristic
        JSON_WALK: found inside a string leaf of a JSON payload
    """

    LABELED = "labeled"
    UNLABELED = "unlabeled"
    JSON_WALK = "json_walk"


class RejectReason(Enum):
    NONE = "none"
    BAD_LENGTH = "bad_length"
    BAD_CHECKSUM = "bad_checksum"
    DENYLISTED = "denylisted"


# PAYLOAD REPRESENTATION


@dataclass
class DecodedPayload:
    """
    Text returned by one decoder call.

    Attributes:
        text:          Decoded string (barcode data or joined OCR lines)
        source_method: Which capability produced it
        confidence:    OCR average line confidence; 1.0 for symbol decoders
        rect:          (x, y, w, h) of the symbol when the decoder reports one
    """

    text: str
    source_method: SourceMethod
    confidence: float = 1.0
    rect: Optional[Tuple[int, int, int, int]] = None

    def __repr__(self) -> str:
        snippet = " ".join(self.text.split())[:40]
        return (
            f"Payload("
            f"src={self.source_method.value}, "
            f"conf={self.confidence:.2f}, "
            f"text='{snippet}'"
            f")"
        )


# CANDIDATE REPRESENTATION


@dataclass(frozen=True)
class IdentifierCandidate:
    """
    One identifier-shaped substring pulled out of a payload.

    Candidates are not yet validated: an IMEI candidate may still fail
    the checksum or the product-barcode denylist.
    """

    value: str
    kind: CandidateKind
    origin: CandidateOrigin
    source_method: SourceMethod

    def with_origin(self, origin: CandidateOrigin) -> "IdentifierCandidate":
        return IdentifierCandidate(
            value=self.value,
            kind=self.kind,
            origin=origin,
            source_method=self.source_method,
        )

    def __repr__(self) -> str:
        return (
            f"Candidate("
            f"value='{self.value}', "
            f"kind={self.kind.value}, "
            f"origin={self.origin.value}, "
            f"src={self.source_method.value}"
            f")"
        )


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of running the validator over one candidate."""

    candidate: IdentifierCandidate
    is_valid: bool
    reject_reason: RejectReason = RejectReason.NONE

    def pretty(self) -> str:
        """
        Verbose multi-line representation for dev-mode logging.
        """
        return (
            f"Value         : {self.candidate.value}\n"
            f"Kind          : {self.candidate.kind.value}\n"
            f"Origin        : {self.candidate.origin.value}\n"
            f"Source        : {self.candidate.source_method.value}\n"
            f"Valid         : {self.is_valid}\n"
            f"Reject Reason : {self.reject_reason.value}\n"
        )
