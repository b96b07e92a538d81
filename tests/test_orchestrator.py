import threading
import time
import unittest

from card_catalog.confidence import FIELD_NAMES
from card_catalog.models import FieldConfidence, RecognitionAttempt
from card_catalog.orchestrator import CANCELLED_MESSAGE, TOTAL_FAILURE_MESSAGE, RecognitionOrchestrator
from card_catalog.recognize import Recognizer

IMAGE = b"\x89PNG fake image bytes"


def attempt(method: str, confidence: float) -> RecognitionAttempt:
    # Every field at the same confidence, so the weighted overall matches it.
    values = {"player_name": "Robin Yount", "year": "1989", "brand": "Topps", "card_series": "Base Set"}
    return RecognitionAttempt.from_fields(method, {name: FieldConfidence(values[name], confidence) for name in FIELD_NAMES})


class StubRecognizer(Recognizer):
    def __init__(self, method: str, result=None, error: Exception = None, delay_s: float = 0.0) -> None:
        self.name = f"stub-{method}"
        self.method = method
        self.result = result
        self.error = error
        self.delay_s = delay_s
        self.calls = 0

    def recognize(self, image: bytes) -> RecognitionAttempt:
        self.calls += 1
        if self.delay_s:
            time.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return self.result


class TestCascade(unittest.TestCase):
    def test_confident_primary_short_circuits(self) -> None:
        primary_attempt = attempt("primary", 0.85)
        primary = StubRecognizer("primary", primary_attempt)
        fallback = StubRecognizer("fallback", attempt("fallback", 0.9))

        result = RecognitionOrchestrator(primary, fallback).recognize_card(IMAGE)

        self.assertIs(result, primary_attempt)
        self.assertEqual(fallback.calls, 0)

    def test_fallback_clearing_its_bar_wins(self) -> None:
        primary = StubRecognizer("primary", attempt("primary", 0.6))
        fallback = StubRecognizer("fallback", attempt("fallback", 0.55))

        result = RecognitionOrchestrator(primary, fallback).recognize_card(IMAGE)

        self.assertEqual(result.method, "fallback")
        self.assertAlmostEqual(result.overall_confidence, 0.55)
        self.assertEqual(primary.calls, 1)
        self.assertEqual(fallback.calls, 1)

    def test_weak_primary_is_best_available(self) -> None:
        primary = StubRecognizer("primary", attempt("primary", 0.4))
        fallback = StubRecognizer("fallback", RecognitionAttempt.failure("fallback", "Fallback recognition failed"))

        result = RecognitionOrchestrator(primary, fallback).recognize_card(IMAGE)

        self.assertTrue(result.success)
        self.assertEqual(result.method, "primary")
        self.assertAlmostEqual(result.overall_confidence, 0.4)

    def test_both_stages_failing_is_total_failure(self) -> None:
        primary = StubRecognizer("primary", RecognitionAttempt.failure("primary", "Primary recognition failed"))
        fallback = StubRecognizer("fallback", RecognitionAttempt.failure("fallback", "Fallback recognition failed"))

        result = RecognitionOrchestrator(primary, fallback).recognize_card(IMAGE)

        self.assertFalse(result.success)
        self.assertEqual(result.method, "failed")
        self.assertEqual(result.overall_confidence, 0)
        self.assertEqual(result.error, TOTAL_FAILURE_MESSAGE)
        self.assertEqual(result.fields, {})

    def test_tie_between_non_qualifiers_goes_to_primary(self) -> None:
        primary = StubRecognizer("primary", attempt("primary", 0.45))
        fallback = StubRecognizer("fallback", attempt("fallback", 0.45))

        result = RecognitionOrchestrator(primary, fallback).recognize_card(IMAGE)

        self.assertEqual(result.method, "primary")

    def test_stronger_weak_fallback_beats_weaker_primary(self) -> None:
        primary = StubRecognizer("primary", attempt("primary", 0.3))
        fallback = StubRecognizer("fallback", attempt("fallback", 0.45))

        result = RecognitionOrchestrator(primary, fallback).recognize_card(IMAGE)

        self.assertEqual(result.method, "fallback")

    def test_primary_exactly_at_threshold_is_accepted(self) -> None:
        at_bar = attempt("primary", 0.7)
        primary = StubRecognizer("primary", at_bar)
        fallback = StubRecognizer("fallback", attempt("fallback", 0.9))

        result = RecognitionOrchestrator(primary, fallback, primary_threshold=at_bar.overall_confidence).recognize_card(IMAGE)

        self.assertEqual(result.method, "primary")
        self.assertEqual(fallback.calls, 0)

    def test_overstated_confidence_is_rescored_from_fields(self) -> None:
        inflated = RecognitionAttempt(
            method="primary", success=True, overall_confidence=0.95, fields={"player_name": FieldConfidence("Robin Yount", 0.1)}
        )
        primary = StubRecognizer("primary", inflated)
        fallback = StubRecognizer("fallback", RecognitionAttempt.failure("fallback", "nothing"))

        result = RecognitionOrchestrator(primary, fallback).recognize_card(IMAGE)

        self.assertEqual(fallback.calls, 1)
        self.assertEqual(result.method, "primary")
        self.assertAlmostEqual(result.overall_confidence, 0.035)
        self.assertEqual(result.value_of("player_name"), "Robin Yount")

    def test_rescoring_uses_configured_weights(self) -> None:
        weights = {"player_name": 0.7, "year": 0.1, "brand": 0.1, "card_series": 0.1}
        claimed = RecognitionAttempt.from_fields("primary", {"player_name": FieldConfidence("Robin Yount", 1.0)})
        primary = StubRecognizer("primary", claimed)
        fallback = StubRecognizer("fallback", attempt("fallback", 0.2))

        result = RecognitionOrchestrator(primary, fallback, field_weights=weights).recognize_card(IMAGE)

        self.assertEqual(result.method, "primary")
        self.assertAlmostEqual(result.overall_confidence, 0.7)
        self.assertEqual(fallback.calls, 0)

    def test_repeated_calls_give_identical_results(self) -> None:
        primary = StubRecognizer("primary", attempt("primary", 0.6))
        fallback = StubRecognizer("fallback", attempt("fallback", 0.52))
        orchestrator = RecognitionOrchestrator(primary, fallback)

        self.assertEqual(orchestrator.recognize_card(IMAGE), orchestrator.recognize_card(IMAGE))


class TestStageFaults(unittest.TestCase):
    def test_raising_primary_still_runs_fallback(self) -> None:
        primary = StubRecognizer("primary", error=ConnectionError("connection reset"))
        fallback = StubRecognizer("fallback", attempt("fallback", 0.65))

        result = RecognitionOrchestrator(primary, fallback).recognize_card(IMAGE)

        self.assertEqual(result.method, "fallback")
        self.assertEqual(fallback.calls, 1)

    def test_both_raising_never_escapes(self) -> None:
        primary = StubRecognizer("primary", error=RuntimeError("boom"))
        fallback = StubRecognizer("fallback", error=ValueError("bad payload"))

        result = RecognitionOrchestrator(primary, fallback, stage_timeout_s=None).recognize_card(IMAGE)

        self.assertFalse(result.success)
        self.assertEqual(result.method, "failed")
        self.assertTrue(result.error)

    def test_slow_stage_times_out_and_cascade_continues(self) -> None:
        primary = StubRecognizer("primary", attempt("primary", 0.95), delay_s=1.0)
        fallback = StubRecognizer("fallback", attempt("fallback", 0.6))

        orchestrator = RecognitionOrchestrator(primary, fallback, stage_timeout_s=0.1)
        with self.assertLogs("card_catalog.orchestrator", level="WARNING") as logs:
            result = orchestrator.recognize_card(IMAGE)

        self.assertEqual(result.method, "fallback")
        self.assertTrue(any("timed out" in line for line in logs.output))

    def test_both_stages_timing_out_is_total_failure(self) -> None:
        primary = StubRecognizer("primary", attempt("primary", 0.95), delay_s=1.0)
        fallback = StubRecognizer("fallback", attempt("fallback", 0.95), delay_s=1.0)

        result = RecognitionOrchestrator(primary, fallback, stage_timeout_s=0.1).recognize_card(IMAGE)

        self.assertEqual(result.method, "failed")

    def test_recognizer_raising_timeout_is_reported_as_timeout(self) -> None:
        primary = StubRecognizer("primary", error=TimeoutError("socket read"))
        fallback = StubRecognizer("fallback", RecognitionAttempt.failure("fallback", "nothing"))

        orchestrator = RecognitionOrchestrator(primary, fallback, stage_timeout_s=5)
        with self.assertLogs("card_catalog.orchestrator", level="WARNING") as logs:
            result = orchestrator.recognize_card(IMAGE)

        self.assertEqual(result.method, "failed")
        self.assertTrue(any("primary stage failed: stub-primary: timed out" in line for line in logs.output))

    def test_attempt_with_wrong_method_is_a_stage_failure(self) -> None:
        primary = StubRecognizer("primary", attempt("fallback", 0.9))
        fallback = StubRecognizer("fallback", RecognitionAttempt.failure("fallback", "nothing"))

        result = RecognitionOrchestrator(primary, fallback).recognize_card(IMAGE)

        self.assertEqual(result.method, "failed")

    def test_recognizer_returning_nothing_is_a_stage_failure(self) -> None:
        primary = StubRecognizer("primary", None)
        fallback = StubRecognizer("fallback", attempt("fallback", 0.5))

        result = RecognitionOrchestrator(primary, fallback).recognize_card(IMAGE)

        self.assertEqual(result.method, "fallback")


class TestCancellation(unittest.TestCase):
    def test_cancelled_before_start(self) -> None:
        primary = StubRecognizer("primary", attempt("primary", 0.9))
        fallback = StubRecognizer("fallback", attempt("fallback", 0.9))
        cancel = threading.Event()
        cancel.set()

        result = RecognitionOrchestrator(primary, fallback).recognize_card(IMAGE, cancel_event=cancel)

        self.assertFalse(result.success)
        self.assertEqual(result.error, CANCELLED_MESSAGE)
        self.assertEqual(primary.calls, 0)

    def test_cancelled_during_primary_skips_fallback(self) -> None:
        primary = StubRecognizer("primary", attempt("primary", 0.9), delay_s=1.0)
        fallback = StubRecognizer("fallback", attempt("fallback", 0.9))
        cancel = threading.Event()
        timer = threading.Timer(0.1, cancel.set)
        timer.start()
        try:
            result = RecognitionOrchestrator(primary, fallback, stage_timeout_s=5).recognize_card(IMAGE, cancel_event=cancel)
        finally:
            timer.cancel()

        self.assertEqual(result.method, "failed")
        self.assertEqual(result.error, CANCELLED_MESSAGE)
        self.assertEqual(fallback.calls, 0)


class TestConstruction(unittest.TestCase):
    def test_inverted_thresholds_rejected(self) -> None:
        with self.assertRaises(ValueError):
            RecognitionOrchestrator(StubRecognizer("primary"), StubRecognizer("fallback"), primary_threshold=0.4, fallback_threshold=0.5)

    def test_out_of_range_threshold_rejected(self) -> None:
        with self.assertRaises(ValueError):
            RecognitionOrchestrator(StubRecognizer("primary"), StubRecognizer("fallback"), primary_threshold=1.5)


if __name__ == "__main__":
    unittest.main()
