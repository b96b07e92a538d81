"""Two-stage card recognition.

The primary stage runs first and is accepted outright when it is confident
enough. Otherwise the fallback stage runs, and the best available attempt is
returned. Stage errors and timeouts are folded into failed attempts so that
callers only ever receive a result, never an exception.
"""
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Mapping, Optional

import requests

from .confidence import FIELD_WEIGHTS, HIGH_THRESHOLD, MEDIUM_THRESHOLD, check_confidence, overall_confidence, validate_weights
from .logger import get_logger
from .models import METHOD_FAILED, RecognitionAttempt, ReconciledResult
from .recognize import Recognizer


logger = get_logger(__name__)

TOTAL_FAILURE_MESSAGE = "Unable to recognize card with sufficient confidence"
CANCELLED_MESSAGE = "Recognition cancelled"
DEFAULT_STAGE_TIMEOUT_S = 10.0

# How often a waiting stage checks the cancel event.
_POLL_INTERVAL_S = 0.05


class StageFailure(Exception):
    pass


class TimeoutFailure(StageFailure):
    pass


class RecognitionCancelled(Exception):
    pass


def _stage_failure(recognizer: Recognizer, error: Exception) -> StageFailure:
    if isinstance(error, (TimeoutError, requests.Timeout)):
        return TimeoutFailure(f"{recognizer.name}: timed out ({error})")
    return StageFailure(f"{recognizer.name}: {error}")


class RecognitionOrchestrator:
    def __init__(
        self,
        primary: Recognizer,
        fallback: Recognizer,
        primary_threshold: float = HIGH_THRESHOLD,
        fallback_threshold: float = MEDIUM_THRESHOLD,
        stage_timeout_s: Optional[float] = DEFAULT_STAGE_TIMEOUT_S,
        field_weights: Mapping[str, float] = FIELD_WEIGHTS,
    ) -> None:
        check_confidence(primary_threshold)
        check_confidence(fallback_threshold)
        if primary_threshold < fallback_threshold:
            raise ValueError("primary_threshold must not be below fallback_threshold")
        if stage_timeout_s is not None and stage_timeout_s <= 0:
            raise ValueError("stage_timeout_s must be positive")
        self.primary = primary
        self.fallback = fallback
        self.primary_threshold = primary_threshold
        self.fallback_threshold = fallback_threshold
        self.stage_timeout_s = stage_timeout_s
        self.field_weights = validate_weights(field_weights)

    @classmethod
    def from_config(cls, config, primary: Recognizer, fallback: Recognizer) -> "RecognitionOrchestrator":
        return cls(
            primary=primary,
            fallback=fallback,
            primary_threshold=config.primary_threshold,
            fallback_threshold=config.fallback_threshold,
            stage_timeout_s=config.stage_timeout_s,
            field_weights=config.field_weights,
        )

    def recognize_card(self, image: bytes, cancel_event: Optional[threading.Event] = None) -> ReconciledResult:
        try:
            return self._cascade(image, cancel_event)
        except RecognitionCancelled:
            logger.info("Recognition cancelled by caller")
            return RecognitionAttempt.failure(METHOD_FAILED, CANCELLED_MESSAGE)
        except Exception as e:
            logger.error(f"Recognition process failed: {e}", exc_info=True)
            return RecognitionAttempt.failure(METHOD_FAILED, "Recognition process failed")

    def _cascade(self, image: bytes, cancel_event: Optional[threading.Event]) -> ReconciledResult:
        primary = self._run_stage(self.primary, image, cancel_event)
        if primary.success and primary.overall_confidence >= self.primary_threshold:
            logger.info(f"Primary recognition accepted [conf={primary.overall_confidence:.2f}]")
            return primary

        fallback = self._run_stage(self.fallback, image, cancel_event)
        if fallback.success and fallback.overall_confidence >= self.fallback_threshold:
            logger.info(f"Fallback recognition accepted [conf={fallback.overall_confidence:.2f}]")
            return fallback

        if primary.success or fallback.success:
            best = primary if primary.overall_confidence >= fallback.overall_confidence else fallback
            logger.info(f"No stage cleared its threshold; using best {best.method} attempt [conf={best.overall_confidence:.2f}]")
            return best

        logger.warning(f"Recognition failed: primary={primary.error!r}, fallback={fallback.error!r}")
        return RecognitionAttempt.failure(METHOD_FAILED, TOTAL_FAILURE_MESSAGE)

    def _run_stage(self, recognizer: Recognizer, image: bytes, cancel_event: Optional[threading.Event]) -> RecognitionAttempt:
        method = recognizer.method
        if cancel_event is not None and cancel_event.is_set():
            raise RecognitionCancelled()
        try:
            attempt = self._call(recognizer, image, cancel_event)
        except StageFailure as e:
            logger.warning(f"{method} stage failed: {e}")
            return RecognitionAttempt.failure(method, str(e))

        if not isinstance(attempt, RecognitionAttempt):
            logger.warning(f"{recognizer.name} returned {type(attempt).__name__} instead of a recognition attempt")
            return RecognitionAttempt.failure(method, "Recognizer returned no result")
        if attempt.method != method:
            logger.warning(f"{recognizer.name} returned a {attempt.method} attempt for the {method} stage")
            return RecognitionAttempt.failure(method, f"Recognizer returned unexpected method {attempt.method!r}")
        if not attempt.success:
            logger.warning(f"{method} stage unsuccessful: {attempt.error}")
            return attempt

        # A successful attempt scores as the weighted sum of its fields.
        weighted = overall_confidence({name: fc.confidence for name, fc in attempt.fields.items()}, self.field_weights)
        if abs(weighted - attempt.overall_confidence) > 1e-9:
            logger.warning(
                f"{recognizer.name} reported confidence {attempt.overall_confidence:.3f} but its fields weigh {weighted:.3f}; using {weighted:.3f}"
            )
            return RecognitionAttempt.from_fields(method, attempt.fields, self.field_weights)
        return attempt

    def _call(self, recognizer: Recognizer, image: bytes, cancel_event: Optional[threading.Event]) -> RecognitionAttempt:
        if self.stage_timeout_s is None and cancel_event is None:
            try:
                return recognizer.recognize(image)
            except Exception as e:
                raise _stage_failure(recognizer, e) from e

        # A stuck stage keeps its worker thread; the executor is not waited on.
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"recognize-{recognizer.method}")
        try:
            future = executor.submit(recognizer.recognize, image)
            waited = 0.0
            while True:
                step = _POLL_INTERVAL_S if cancel_event is not None else self.stage_timeout_s
                if self.stage_timeout_s is not None:
                    step = min(step, self.stage_timeout_s - waited)
                try:
                    return future.result(timeout=step)
                except FutureTimeout:
                    # Finished after the wait expired, or raised TimeoutError itself.
                    if future.done():
                        error = future.exception()
                        if error is None:
                            return future.result()
                        raise _stage_failure(recognizer, error) from error
                    waited += step
                except Exception as e:
                    raise _stage_failure(recognizer, e) from e
                if cancel_event is not None and cancel_event.is_set():
                    future.cancel()
                    raise RecognitionCancelled()
                if self.stage_timeout_s is not None and waited >= self.stage_timeout_s:
                    future.cancel()
                    raise TimeoutFailure(f"{recognizer.name}: timed out after {self.stage_timeout_s:g}s")
        finally:
            executor.shutdown(wait=False)


def recognize_card(image: bytes, primary: Recognizer, fallback: Recognizer, cancel_event: Optional[threading.Event] = None) -> ReconciledResult:
    return RecognitionOrchestrator(primary, fallback).recognize_card(image, cancel_event)
