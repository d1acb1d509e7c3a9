# imei_scanner/resolver.py
"""
Pick the single identifier to report from accumulated candidate lists.

Policy (IMEI1 priority):
    1. first IMEI candidate that validates
    2. first IMEI candidate anyway (lenient fallback, status VALIDATION_FAILED)
    3. first mobile candidate, unvalidated
    4. nothing -> NO_IDENTIFIER_FOUND
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from .candidate import CandidateKind, IdentifierCandidate, ValidationResult
from .validation import first_accepted, validate_candidate

logger = logging.getLogger(__name__)


class ResolutionStatus(Enum):
    OK = "ok"
    VALIDATION_FAILED = "validation_failed"
    NO_IDENTIFIER_FOUND = "no_identifier_found"


@dataclass
class Resolution:
    """The reported identifier, or the reason there is none."""
    status: ResolutionStatus
    candidate: Optional[IdentifierCandidate] = None
    validation: Optional[ValidationResult] = None

    @property
    def value(self) -> Optional[str]:
        return self.candidate.value if self.candidate else None

    @property
    def kind(self) -> Optional[CandidateKind]:
        return self.candidate.kind if self.candidate else None

    @property
    def is_success(self) -> bool:
        """Something was reported, possibly via the lenient fallback."""
        return self.candidate is not None

    @property
    def is_accepted(self) -> bool:
        """A validated IMEI or a mobile number, not the fallback."""
        return self.status is ResolutionStatus.OK


NOT_FOUND = Resolution(status=ResolutionStatus.NO_IDENTIFIER_FOUND)


def resolve(
    imei_candidates: Sequence[IdentifierCandidate],
    mobile_candidates: Sequence[IdentifierCandidate] = (),
) -> Resolution:
    """
    Choose the reported identifier.

    Args:
        imei_candidates: IMEI candidates in document order
        mobile_candidates: Mobile candidates in document order

    Returns:
        Resolution describing the chosen candidate and how it was chosen
    """
    accepted = first_accepted(imei_candidates)
    if accepted:
        logger.info(f"Resolved IMEI {accepted.candidate.value} ({accepted.candidate.origin.value})")
        return Resolution(
            status=ResolutionStatus.OK,
            candidate=accepted.candidate,
            validation=accepted,
        )

    if imei_candidates:
        # TODO: confirm with product whether unvalidated IMEIs should be
        # reported at all; today the caller sees VALIDATION_FAILED.
        first = imei_candidates[0]
        validation = validate_candidate(first)
        logger.warning(f"No IMEI candidate validated; falling back to {first.value}")
        logger.debug(f"Fallback candidate:\n{validation.pretty()}")
        return Resolution(
            status=ResolutionStatus.VALIDATION_FAILED,
            candidate=first,
            validation=validation,
        )

    if mobile_candidates:
        first = mobile_candidates[0]
        logger.info(f"Resolved mobile number {first.value}")
        return Resolution(status=ResolutionStatus.OK, candidate=first)

    logger.debug("No identifier candidates to resolve")
    return NOT_FOUND
