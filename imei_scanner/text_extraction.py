# imei_scanner/text_extraction.py
"""
Candidate extraction from decoded barcode / QR / OCR text.

Finds IMEI-shaped (15 digits) and mobile-shaped (10-15 digits) numbers in
arbitrary text, including text that is itself a JSON document.
"""

import os
import re
import json
import logging
from datetime import datetime
from typing import Any, Iterable, List, NamedTuple, Optional

from .candidate import (
    CandidateKind,
    CandidateOrigin,
    IdentifierCandidate,
    SourceMethod,
)
from .validation import is_denylisted

logger = logging.getLogger(__name__)

# CONFIGURATION


LOG_DIR = "intermediate"
LOG_FILE = "extracted_imeis.txt"

# Audit trail of reported identifiers; switched on by the Streamlit app
AUDIT_LOG_ENABLED = False

# Bare 15-digit payload, the common case for an IMEI barcode
DIRECT_IMEI_REGEX = re.compile(r"[83]\d{14}")

# Labeled patterns in priority order: the primary SIM identifier first
LABELED_PATTERNS = [
    re.compile(r"IMEI1\s*:?\s*(\d{15})", re.IGNORECASE),
    re.compile(r"IMEI\s*2?\s*:?\s*(\d{15})", re.IGNORECASE),
    re.compile(r"IMEI/MEID\s*:?\s*(\d{15})", re.IGNORECASE),
]

# Digit runs bounded by non-digits (or string ends)
UNLABELED_IMEI_REGEX = re.compile(r"(?<!\d)(\d{15})(?!\d)")
MOBILE_REGEX = re.compile(r"(?<!\d)(\d{10,15})(?!\d)")

UNLABELED_LEADING_DIGITS = ("8", "3")


# DATA CLASSES


class ExtractionResult(NamedTuple):
    """Ordered, de-duplicated candidate lists from one piece of text."""
    imei_candidates: List[IdentifierCandidate]
    mobile_candidates: List[IdentifierCandidate]

    @property
    def is_empty(self) -> bool:
        return not self.imei_candidates and not self.mobile_candidates


# LOGGING HELPERS


def _ensure_log_dir() -> None:
    """Create logging directory if it doesn't exist."""
    if not os.path.exists(LOG_DIR):
        try:
            os.makedirs(LOG_DIR, exist_ok=True)
            logger.debug(f"Created log directory: {LOG_DIR}")
        except OSError as e:
            logger.error(f"Failed to create log directory: {e}")


def log_extraction(value: str, source: str, status: str, raw_text: str) -> None:
    """
    Append a reported identifier to the audit log.

    Args:
        value: Reported identifier
        source: Pipeline stage or "manual"
        status: Resolution status label
        raw_text: Decoded text the identifier came from
    """
    if not AUDIT_LOG_ENABLED:
        return

    _ensure_log_dir()
    path = os.path.join(LOG_DIR, LOG_FILE)

    try:
        ts = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        # Truncate raw text to first 200 chars and normalize whitespace
        raw_snippet = " ".join((raw_text or "").split())[:200]

        line = f"{ts} | {source} | {status} | {value} | {raw_snippet}\n"

        with open(path, "a", encoding="utf-8") as f:
            f.write(line)

        logger.debug(f"Logged extraction: {value}")

    except OSError as e:
        # Audit logging must never break a scan
        logger.warning(f"Failed to log extraction: {e}")


def get_extraction_log_path() -> str:
    return os.path.join(LOG_DIR, LOG_FILE)


def clear_extraction_log() -> bool:
    """
    Clear extraction log file (useful for testing).

    Returns:
        True if successful, False otherwise
    """
    try:
        path = get_extraction_log_path()
        if os.path.exists(path):
            os.remove(path)
            logger.info("Cleared extraction log")
        return True
    except OSError as e:
        logger.error(f"Failed to clear extraction log: {e}")
        return False


# DEDUPE HELPERS


def _append_unique(
    out: List[IdentifierCandidate],
    seen: set,
    candidates: Iterable[IdentifierCandidate],
) -> None:
    for cand in candidates:
        if cand.value in seen:
            continue
        seen.add(cand.value)
        out.append(cand)


# PLAIN-TEXT EXTRACTION


def _extract_labeled(text: str, source_method: SourceMethod) -> List[IdentifierCandidate]:
    found: List[IdentifierCandidate] = []
    for pattern in LABELED_PATTERNS:
        for m in pattern.finditer(text):
            found.append(IdentifierCandidate(
                value=m.group(1),
                kind=CandidateKind.IMEI,
                origin=CandidateOrigin.LABELED,
                source_method=source_method,
            ))
    return found


def _extract_unlabeled(
    text: str,
    source_method: SourceMethod,
    already: set,
) -> List[IdentifierCandidate]:
    found: List[IdentifierCandidate] = []
    for m in UNLABELED_IMEI_REGEX.finditer(text):
        value = m.group(1)
        if value in already:
            continue
        if is_denylisted(value):
            logger.debug(f"Skipping denylisted 15-digit run: {value}")
            continue
        if not value.startswith(UNLABELED_LEADING_DIGITS):
            continue
        found.append(IdentifierCandidate(
            value=value,
            kind=CandidateKind.IMEI,
            origin=CandidateOrigin.UNLABELED,
            source_method=source_method,
        ))
    return found


def _extract_mobile(text: str, source_method: SourceMethod) -> List[IdentifierCandidate]:
    found: List[IdentifierCandidate] = []
    for m in MOBILE_REGEX.finditer(text):
        value = m.group(1)
        if is_denylisted(value):
            continue
        found.append(IdentifierCandidate(
            value=value,
            kind=CandidateKind.MOBILE,
            origin=CandidateOrigin.UNLABELED,
            source_method=source_method,
        ))
    return found


# JSON WALK


def _parse_json(text: str) -> Optional[Any]:
    stripped = text.strip()
    if not stripped or stripped[0] not in "{[":
        return None
    try:
        return json.loads(stripped)
    except ValueError:
        return None


def _iter_string_leaves(node: Any):
    """Depth-first string leaves, objects in key order."""
    if isinstance(node, str):
        yield node
    elif isinstance(node, dict):
        for value in node.values():
            yield from _iter_string_leaves(value)
    elif isinstance(node, list):
        for item in node:
            yield from _iter_string_leaves(item)


# PUBLIC API


def extract_candidates(
    text: str,
    source_method: SourceMethod = SourceMethod.OCR,
) -> ExtractionResult:
    """
    Extract IMEI and mobile candidates from decoded text.

    Algorithm:
      1. Bare 15-digit payload starting with 8 or 3 -> single IMEI, done
      2. Labeled IMEI1 / IMEI / IMEI2 / IMEI/MEID patterns, in that order
      3. Remaining bounded 15-digit runs starting with 8 or 3
      4. Bounded 10-15 digit runs as mobile candidates
      5. If the text is JSON, the same extraction on every string leaf

    Args:
        text: Decoded payload text
        source_method: Capability that produced the text

    Returns:
        ExtractionResult(imei_candidates, mobile_candidates)
    """
    if not text or not isinstance(text, str):
        return ExtractionResult([], [])

    stripped = text.strip()
    if DIRECT_IMEI_REGEX.fullmatch(stripped):
        logger.debug(f"Direct IMEI payload from {source_method.value}: {stripped}")
        return ExtractionResult(
            [IdentifierCandidate(
                value=stripped,
                kind=CandidateKind.IMEI,
                origin=CandidateOrigin.UNLABELED,
                source_method=source_method,
            )],
            [],
        )

    imeis: List[IdentifierCandidate] = []
    imei_seen: set = set()
    mobiles: List[IdentifierCandidate] = []
    mobile_seen: set = set()

    _append_unique(imeis, imei_seen, _extract_labeled(text, source_method))
    _append_unique(imeis, imei_seen, _extract_unlabeled(text, source_method, imei_seen))
    _append_unique(mobiles, mobile_seen, _extract_mobile(text, source_method))

    parsed = _parse_json(text)
    if parsed is not None:
        for leaf in _iter_string_leaves(parsed):
            sub = extract_candidates(leaf, source_method)
            _append_unique(
                imeis, imei_seen,
                (c.with_origin(CandidateOrigin.JSON_WALK) for c in sub.imei_candidates),
            )
            _append_unique(
                mobiles, mobile_seen,
                (c.with_origin(CandidateOrigin.JSON_WALK) for c in sub.mobile_candidates),
            )

    if imeis or mobiles:
        logger.debug(
            f"Extracted {len(imeis)} IMEI / {len(mobiles)} mobile candidate(s) "
            f"from {source_method.value}"
        )

    return ExtractionResult(imeis, mobiles)


def merge_results(results: Iterable[ExtractionResult]) -> ExtractionResult:
    """Concatenate several results, keeping the first occurrence of each value."""
    imeis: List[IdentifierCandidate] = []
    imei_seen: set = set()
    mobiles: List[IdentifierCandidate] = []
    mobile_seen: set = set()

    for res in results:
        _append_unique(imeis, imei_seen, res.imei_candidates)
        _append_unique(mobiles, mobile_seen, res.mobile_candidates)

    return ExtractionResult(imeis, mobiles)


# TEXT HIGHLIGHTING


def highlight_match_in_text(text: str, value: Optional[str]) -> str:
    """
    Highlight the reported identifier in decoded text for display.

    Args:
        text: Decoded text
        value: Reported identifier

    Returns:
        Text with the value wrapped in **bold** markdown
    """
    if not value or not text:
        return text

    highlighted, count = re.subn(
        re.escape(value),
        f"**{value}**",
        text,
        count=1,
    )

    if count > 0:
        return highlighted

    # Value came from another stage's text
    return f"{text}\n\n[IMEI: **{value}**]"
