# imei_scanner/validation.py
"""
Predicates that decide whether an IMEI candidate is a real device identifier.

Three independent checks:
  - structure: exactly 15 ASCII digits
  - Luhn check digit over the first 14 digits
  - denylist of retail product barcodes that are often printed next to the
    IMEI on phone boxes and otherwise look identifier-shaped
"""

import logging
from typing import Optional

from .candidate import (
    CandidateKind,
    IdentifierCandidate,
    RejectReason,
    ValidationResult,
)

logger = logging.getLogger(__name__)

# CONFIGURATION


IMEI_LENGTH = 15

# GS1 prefixes 690-695 (China) cover the EAN-13 product codes found on
# most handset packaging.
DENYLIST_PREFIXES = ("693", "690", "691", "692", "694", "695")

DENYLIST_VALUES = frozenset({
    "6932204509475",
    "693220450947",
})


# STRUCTURE


def _is_ascii_digits(value: str) -> bool:
    # str.isdigit() also accepts superscripts and other unicode digits
    return bool(value) and all("0" <= c <= "9" for c in value)


def is_structurally_valid(value: str) -> bool:
    """Exactly 15 ASCII digits."""
    if not isinstance(value, str):
        return False
    return len(value) == IMEI_LENGTH and _is_ascii_digits(value)


# LUHN


def luhn_check_digit(body: str) -> int:
    """
    Compute the Luhn check digit for the first 14 digits of an IMEI.

    Positions 2, 4, ..., 14 (1-based from the left) are doubled, with 9
    subtracted from any doubled value above 9.

    Args:
        body: 14 ASCII digits

    Returns:
        Check digit in range 0-9

    Raises:
        ValueError: If body is not 14 ASCII digits
    """
    if len(body) != IMEI_LENGTH - 1 or not _is_ascii_digits(body):
        raise ValueError(f"Luhn body must be {IMEI_LENGTH - 1} digits, got {body!r}")

    total = 0
    for idx, ch in enumerate(body):
        digit = int(ch)
        if idx % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit

    return (10 - (total % 10)) % 10


def is_luhn_valid(value: str) -> bool:
    """True if value is 15 digits and its last digit is the Luhn check digit."""
    if not is_structurally_valid(value):
        return False
    return luhn_check_digit(value[:-1]) == int(value[-1])


# DENYLIST


def is_denylisted(value: str) -> bool:
    """Known product barcode prefix or value; independent of the checksum."""
    if not value:
        return False
    return value in DENYLIST_VALUES or value.startswith(DENYLIST_PREFIXES)


# COMBINED


def is_accepted(value: str) -> bool:
    """Structure, checksum and denylist all pass."""
    return (
        is_structurally_valid(value)
        and is_luhn_valid(value)
        and not is_denylisted(value)
    )


def _reject_reason(candidate: IdentifierCandidate) -> RejectReason:
    value = candidate.value

    if candidate.kind is CandidateKind.MOBILE:
        # Phone numbers carry no check digit.
        if not (10 <= len(value) <= IMEI_LENGTH) or not _is_ascii_digits(value):
            return RejectReason.BAD_LENGTH
        if is_denylisted(value):
            return RejectReason.DENYLISTED
        return RejectReason.NONE

    if not is_structurally_valid(value):
        return RejectReason.BAD_LENGTH
    if is_denylisted(value):
        return RejectReason.DENYLISTED
    if not is_luhn_valid(value):
        return RejectReason.BAD_CHECKSUM
    return RejectReason.NONE


def validate_candidate(candidate: IdentifierCandidate) -> ValidationResult:
    """
    Validate one candidate.

    Reasons are checked in order: length, denylist, checksum.

    Args:
        candidate: Extracted IMEI or mobile candidate

    Returns:
        ValidationResult with the first failing reason, or NONE
    """
    reason = _reject_reason(candidate)
    result = ValidationResult(
        candidate=candidate,
        is_valid=reason is RejectReason.NONE,
        reject_reason=reason,
    )

    if result.is_valid:
        logger.debug(f"Candidate accepted: {candidate}")
    else:
        logger.debug(f"Candidate rejected ({reason.value}): {candidate}")

    return result


def first_accepted(candidates) -> Optional[ValidationResult]:
    """First IMEI candidate, in list order, that passes validation."""
    for cand in candidates:
        if cand.kind is not CandidateKind.IMEI:
            continue
        result = validate_candidate(cand)
        if result.is_valid:
            return result
    return None
