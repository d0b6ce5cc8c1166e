"""
Number extraction policy.

Turns the raw text detections of an OCR capability into a single decision for
a fixed-length identification number: success, warning (ambiguous, needs a
human) or failure.
"""

import re
import logging
from typing import List, Optional
from pydantic import BaseModel

from plate_reader.core.models import Candidate, ExtractionOutcome, ExtractionResult

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


class TextDetection(BaseModel):
    """One detection returned by the OCR capability."""
    text: str
    confidence: float
    type: str = "LINE"


def extract_digits(text: Optional[str]) -> str:
    """
    Keep only the digits of a detected line, in order.

    The result stays a string so leading zeros survive ("A-012345" -> "012345").
    """
    if not text:
        return ""
    return _NON_DIGITS.sub("", text)


def find_candidates(detections: List[TextDetection], digit_length: int) -> List[Candidate]:
    """All LINE detections whose digits have exactly `digit_length` characters."""
    candidates = []
    for detection in detections:
        if detection.type != "LINE":
            continue
        digits = extract_digits(detection.text)
        if len(digits) == digit_length:
            candidates.append(Candidate(text=digits, confidence=round(float(detection.confidence), 2)))
    return candidates


def _near_misses(detections: List[TextDetection], digit_length: int) -> List[str]:
    misses = []
    for detection in detections:
        if detection.type != "LINE":
            continue
        digits = extract_digits(detection.text)
        if digits and len(digits) != digit_length:
            misses.append(f"{digits} ({len(digits)} digits)")
    return misses


def decide(detections: List[TextDetection], digit_length: int, min_confidence: float) -> ExtractionResult:
    """Apply the decision table to a set of detections."""
    lines = [d for d in detections if d.type == "LINE"]
    if not lines:
        return ExtractionResult(outcome=ExtractionOutcome.FAILURE, reason="no text detected")

    candidates = find_candidates(lines, digit_length)

    if not candidates:
        misses = _near_misses(lines, digit_length)
        if misses:
            reason = f"only numbers with a length other than {digit_length}: {', '.join(misses)}"
        else:
            reason = f"no {digit_length}-digit number found"
        return ExtractionResult(outcome=ExtractionOutcome.FAILURE, reason=reason)

    if len(candidates) == 1:
        match = candidates[0]
        if match.confidence >= min_confidence:
            return ExtractionResult(
                number=match.text,
                confidence=match.confidence,
                outcome=ExtractionOutcome.SUCCESS,
                reason="single number found with sufficient confidence",
            )
        return ExtractionResult(
            number=match.text,
            confidence=match.confidence,
            outcome=ExtractionOutcome.FAILURE,
            reason=f"low confidence: {match.confidence:g}% < {min_confidence:g}% minimum",
        )

    ranked = sorted(candidates, key=lambda c: c.confidence, reverse=True)
    primary = ranked[0]
    return ExtractionResult(
        number=primary.text,
        confidence=primary.confidence,
        outcome=ExtractionOutcome.WARNING,
        reason=f"{len(ranked)} numbers found; manual review required",
        alternatives=ranked[1:],
    )


class NumberExtractor:
    """Runs the OCR capability over an image and applies the decision table."""

    def __init__(self, detector, min_confidence: float = 95.0):
        """
        Initialize the extractor.

        Args:
            detector: Object exposing `async detect_text(image_bytes) -> List[TextDetection]`
            min_confidence: Minimum confidence (0-100) for a single match to count as success
        """
        self.detector = detector
        self.min_confidence = min_confidence

    async def extract(self, image_bytes: bytes, digit_length: int = 6) -> ExtractionResult:
        """
        Extract a `digit_length`-digit number from an image.

        A failing OCR call is reported as a failure outcome with the error message as
        reason and `service_error` set, so the caller can decide whether to retry.
        """
        try:
            detections = await self.detector.detect_text(image_bytes)
        except Exception as e:
            logger.error(f"Text detection failed: {e}")
            return ExtractionResult(
                outcome=ExtractionOutcome.FAILURE,
                reason=str(e),
                service_error=True,
            )

        logger.debug(f"{len(detections)} text detections returned")
        result = decide(detections, digit_length, self.min_confidence)
        logger.info(f"Extraction outcome: {result.outcome.value} ({result.reason})")
        return result
