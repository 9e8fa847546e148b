"""Bounded retry for flaky remote operations.

Wrapped tools are opaque CLIs, so failures are classified from their text
output. Transient failures (network resets, handshake timeouts, throttling,
5xx) are retried with linear backoff capped at a maximum delay. Everything
else is fatal and returned after the first attempt.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum

from .errors import FatalOperationError, RetryExhaustedError
from .runner import CommandResult

logger = logging.getLogger(__name__)

# Retry constants with documented bounds
DEFAULT_APPLY_MAX_ATTEMPTS = 5
APPLY_BASE_DELAY_SECONDS = 10.0
APPLY_CAP_DELAY_SECONDS = 60.0

HEALTH_CHECK_BASE_DELAY_SECONDS = 5.0
HEALTH_CHECK_CAP_DELAY_SECONDS = 30.0

# Output fragments that indicate a failure expected to clear up on its own
TRANSIENT_ERROR_PATTERNS: tuple[str, ...] = (
    "connection refused",
    "was refused",
    "connection reset",
    "connection lost",
    "client connection lost",
    "tls handshake timeout",
    "i/o timeout",
    "net/http",
    "context deadline exceeded",
    "server unavailable",
    "service unavailable",
    "gateway timeout",
    "too many requests",
    "internal server error",
    "http2",
    "dial tcp",
    "no such host",
    "temporary failure",
    "connection timed out",
    "command timed out",
)

# kubectl apply output markers
APPLY_ERROR_KEYWORDS: tuple[str, ...] = (
    "error",
    "failed",
    "invalid",
    "unable to",
    "warning",
    "forbidden",
    "unauthorized",
    "not found",
)
APPLY_SUCCESS_KEYWORDS: tuple[str, ...] = ("created", "configured", "unchanged")


class ErrorClass(str, Enum):
    """Whether a failed attempt is worth repeating."""

    FATAL = "fatal"
    TRANSIENT = "transient"


Classifier = Callable[[str, str | None], ErrorClass]
Operation = Callable[[], CommandResult]


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff for one kind of operation."""

    max_attempts: int = DEFAULT_APPLY_MAX_ATTEMPTS
    base_delay_seconds: float = APPLY_BASE_DELAY_SECONDS
    cap_delay_seconds: float = APPLY_CAP_DELAY_SECONDS

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0 or self.cap_delay_seconds < 0:
            raise ValueError("retry delays must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return min(self.base_delay_seconds * attempt, self.cap_delay_seconds)


HEALTH_CHECK_POLICY = RetryPolicy(
    max_attempts=DEFAULT_APPLY_MAX_ATTEMPTS,
    base_delay_seconds=HEALTH_CHECK_BASE_DELAY_SECONDS,
    cap_delay_seconds=HEALTH_CHECK_CAP_DELAY_SECONDS,
)


def pattern_classifier(patterns: Iterable[str]) -> Classifier:
    """Build a classifier that marks output matching any pattern as transient."""
    lowered = tuple(p.lower() for p in patterns)

    def classify(output: str, error: str | None) -> ErrorClass:
        text = f"{output}\n{error or ''}".lower()
        if any(pattern in text for pattern in lowered):
            return ErrorClass.TRANSIENT
        return ErrorClass.FATAL

    return classify


classify_command_error = pattern_classifier(TRANSIENT_ERROR_PATTERNS)


def is_apply_success(output: str) -> bool:
    """Judge kubectl apply output.

    Any error keyword means failure, even alongside success keywords. Output
    with neither kind of keyword is treated as failure too.
    """
    lowered = output.lower()
    if any(keyword in lowered for keyword in APPLY_ERROR_KEYWORDS):
        return False
    return any(keyword in lowered for keyword in APPLY_SUCCESS_KEYWORDS)


class RetryExecutor:
    """Runs an operation until it succeeds, fails fatally or runs out of attempts."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        classify: Classifier = classify_command_error,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._policy = policy or RetryPolicy()
        self._classify = classify
        self._sleep = sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def run(
        self,
        operation: Operation,
        classify: Classifier | None = None,
        policy: RetryPolicy | None = None,
        *,
        step: str = "operation",
    ) -> str:
        """Run ``operation`` with retries.

        Args:
            operation: Performs one attempt and reports success and output.
            classify: Failure classifier (default: the executor's).
            policy: Attempt budget (default: the executor's).
            step: Name of the step, used in logs and errors.

        Returns:
            Output of the successful attempt.

        Raises:
            FatalOperationError: If a failure was classified fatal.
            RetryExhaustedError: If every attempt failed transiently.
        """
        classify = classify or self._classify
        policy = policy or self._policy
        attempt = 0

        while True:
            attempt += 1
            result = operation()
            if result.success:
                if attempt > 1:
                    logger.info(
                        "Operation succeeded after retry",
                        extra={"step": step, "attempt": attempt},
                    )
                return result.output

            reason = result.error or "operation reported failure"

            if classify(result.output, result.error) == ErrorClass.FATAL:
                logger.error(
                    "Operation failed with non-retryable error",
                    extra={"step": step, "attempt": attempt, "error": reason},
                )
                raise FatalOperationError(step, attempt, result.output, reason)

            if attempt >= policy.max_attempts:
                logger.error(
                    "Operation failed after all retries",
                    extra={"step": step, "attempts": attempt},
                )
                raise RetryExhaustedError(step, attempt, result.output, reason)

            wait_seconds = policy.delay_for(attempt)
            logger.warning(
                "Operation failed, retrying",
                extra={
                    "step": step,
                    "attempt": attempt,
                    "max_attempts": policy.max_attempts,
                    "wait_seconds": wait_seconds,
                    "error": reason,
                },
            )
            self._sleep(wait_seconds)
