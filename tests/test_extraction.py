from plate_reader.core.errors import RecognitionServiceError
from plate_reader.core.extraction import NumberExtractor, TextDetection, decide, extract_digits, find_candidates
from plate_reader.core.models import ExtractionOutcome

from fakes import FakeDetector


def line(text, confidence):
    return TextDetection(text=text, confidence=confidence)


def test_extract_digits_keeps_leading_zeros():
    assert extract_digits("A-012345") == "012345"
    assert extract_digits("  00 12 ") == "0012"
    assert extract_digits(None) == ""


def test_word_detections_are_ignored():
    detections = [
        TextDetection(text="123456", confidence=99.0, type="WORD"),
        line("654321", 98.0),
    ]
    candidates = find_candidates(detections, 6)
    assert [c.text for c in candidates] == ["654321"]


def test_no_text_detected():
    result = decide([], 6, 95.0)
    assert result.outcome == ExtractionOutcome.FAILURE
    assert result.reason == "no text detected"
    assert result.number == ""


def test_no_six_digit_line_reports_near_misses():
    result = decide([line("PLACA 12345", 99.0), line("1234567", 97.0)], 6, 95.0)
    assert result.outcome == ExtractionOutcome.FAILURE
    assert "12345 (5 digits)" in result.reason
    assert "1234567 (7 digits)" in result.reason


def test_no_digits_at_all():
    result = decide([line("PREFEITURA", 99.0)], 6, 95.0)
    assert result.outcome == ExtractionOutcome.FAILURE
    assert result.reason == "no 6-digit number found"


def test_single_match_above_threshold_is_success():
    result = decide([line("012345", 97.0)], 6, 95.0)
    assert result.outcome == ExtractionOutcome.SUCCESS
    assert result.number == "012345"
    assert result.confidence == 97.0
    assert result.alternatives == []


def test_single_match_at_threshold_is_success():
    result = decide([line("123456", 95.0)], 6, 95.0)
    assert result.outcome == ExtractionOutcome.SUCCESS


def test_single_match_below_threshold_is_failure():
    result = decide([line("012345", 80.0)], 6, 95.0)
    assert result.outcome == ExtractionOutcome.FAILURE
    assert "80% < 95%" in result.reason
    assert result.number == "012345"


def test_multiple_matches_is_warning_with_sorted_alternatives():
    result = decide([line("111111", 96.0), line("222222", 99.0), line("333333", 97.5)], 6, 95.0)
    assert result.outcome == ExtractionOutcome.WARNING
    assert result.number == "222222"
    assert result.confidence == 99.0
    assert [c.text for c in result.alternatives] == ["333333", "111111"]
    assert result.reason == "3 numbers found; manual review required"


def test_two_matches_spec_example():
    result = decide([line("100001", 96.0), line("200002", 99.0)], 6, 95.0)
    assert result.outcome == ExtractionOutcome.WARNING
    assert result.number == "200002"
    assert [c.text for c in result.alternatives] == ["100001"]


def test_digit_length_is_configurable():
    result = decide([line("1234", 99.0), line("123456", 99.0)], 4, 95.0)
    assert result.outcome == ExtractionOutcome.SUCCESS
    assert result.number == "1234"


async def test_extractor_runs_detector_and_decides():
    detector = FakeDetector([line("N. 098765", 99.3)])
    extractor = NumberExtractor(detector, min_confidence=95.0)

    result = await extractor.extract(b"image", 6)

    assert detector.calls == 1
    assert result.outcome == ExtractionOutcome.SUCCESS
    assert result.number == "098765"
    assert result.service_error is False


async def test_extractor_reports_service_failure():
    detector = FakeDetector(error=RecognitionServiceError("Rekognition DetectText failed: throttled"))
    extractor = NumberExtractor(detector)

    result = await extractor.extract(b"image", 6)

    assert result.outcome == ExtractionOutcome.FAILURE
    assert result.service_error is True
    assert "throttled" in result.reason
