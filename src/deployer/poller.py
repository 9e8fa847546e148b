"""Deadline-bounded polling of external resource state.

The deadline is checked before every sample, so a poll never starts a new
check once its budget is spent. A sleep that is already in progress when
the deadline passes still completes, so the real overrun is at most one
interval.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Collection
from dataclasses import dataclass
from typing import TypeVar

from .errors import DeployerError, PollFailedError, PollTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_POLL_INTERVAL_SECONDS = 30.0
FAILED_PHASE = "Failed"


@dataclass(frozen=True)
class PollProgress:
    """Progress of a wait, emitted once per unsuccessful check."""

    description: str
    iteration: int
    elapsed: float
    remaining: float
    timeout: float
    status: str | None = None

    @property
    def percentage(self) -> int:
        if self.timeout <= 0:
            return 100
        return max(0, min(100, int(self.elapsed / self.timeout * 100)))


ProgressCallback = Callable[[PollProgress], None]


class ReadinessPoller:
    """Samples a status function until it is ready, failed or out of time."""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._clock = clock
        self._sleep = sleep

    def wait(
        self,
        sample: Callable[[], T],
        *,
        is_ready: Callable[[T], bool],
        timeout: float,
        interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        description: str = "resource",
        is_failed: Callable[[T], bool] | None = None,
        describe: Callable[[T], str] = str,
        on_progress: ProgressCallback | None = None,
    ) -> T:
        """Poll until ``is_ready`` holds for a sample.

        A sample that raises DeployerError counts as "not ready yet"; the
        error is kept for the timeout diagnostics.

        Args:
            sample: Reads the current state once.
            is_ready: True when the wait is over.
            timeout: Deadline in seconds from the first check.
            interval: Seconds to sleep between checks.
            description: What is being waited for, for logs and errors.
            is_failed: True when the state can never become ready.
            describe: Renders a sample as a status string.
            on_progress: Receives a PollProgress after each unsuccessful check.

        Returns:
            The sample that satisfied ``is_ready``.

        Raises:
            PollFailedError: If ``is_failed`` holds for a sample.
            PollTimeoutError: If the deadline passes first. Carries the last
                observed status.
        """
        start_time = self._clock()
        iteration = 0
        last_status: str | None = None
        last_error: str | None = None

        while True:
            elapsed = self._clock() - start_time
            if elapsed > timeout:
                status = last_status
                if last_error:
                    status = f"{status} (last check failed: {last_error})" if status else last_error
                logger.error(
                    "Timed out waiting",
                    extra={
                        "description": description,
                        "elapsed_seconds": round(elapsed, 1),
                        "timeout_seconds": timeout,
                        "iterations": iteration,
                        "last_status": status,
                    },
                )
                raise PollTimeoutError(description, elapsed, timeout, iteration, status)

            iteration += 1
            try:
                value = sample()
            except DeployerError as e:
                last_error = str(e)
                logger.warning(
                    "Status check failed, will retry",
                    extra={"description": description, "iteration": iteration, "error": last_error},
                )
            else:
                last_error = None
                last_status = describe(value)
                if is_ready(value):
                    logger.info(
                        "Wait completed",
                        extra={
                            "description": description,
                            "iterations": iteration,
                            "elapsed_seconds": round(elapsed, 1),
                            "status": last_status,
                        },
                    )
                    return value
                if is_failed is not None and is_failed(value):
                    logger.error(
                        "Terminal failure observed",
                        extra={"description": description, "status": last_status},
                    )
                    raise PollFailedError(description, last_status, iteration, elapsed)

            progress = PollProgress(
                description=description,
                iteration=iteration,
                elapsed=elapsed,
                remaining=max(0.0, timeout - elapsed),
                timeout=timeout,
                status=last_status,
            )
            logger.info(
                "Waiting",
                extra={
                    "description": description,
                    "iteration": progress.iteration,
                    "elapsed_seconds": round(progress.elapsed, 1),
                    "remaining_seconds": round(progress.remaining, 1),
                    "percentage": progress.percentage,
                    "status": progress.status,
                },
            )
            if on_progress is not None:
                on_progress(progress)

            self._sleep(interval)

    def wait_until_true(self, sample: Callable[[], bool], **kwargs) -> bool:
        """Wait for a boolean readiness flag."""
        kwargs.setdefault("describe", lambda ready: "ready" if ready else "not ready")
        return self.wait(sample, is_ready=bool, **kwargs)

    def wait_for_phase(
        self,
        sample: Callable[[], str],
        *,
        target: str,
        failed: Collection[str] = (FAILED_PHASE,),
        **kwargs,
    ) -> str:
        """Wait for a phase string to equal ``target``.

        A phase in ``failed`` ends the wait immediately with PollFailedError.
        """
        kwargs.setdefault("describe", lambda phase: f"phase={phase or 'Unknown'}")
        return self.wait(
            sample,
            is_ready=lambda phase: phase == target,
            is_failed=lambda phase: phase in failed,
            **kwargs,
        )

    def wait_until_absent(
        self,
        sample: Callable[[], T],
        *,
        exists: Callable[[T], bool] = bool,
        **kwargs,
    ) -> T:
        """Wait until ``exists`` is false for a sample."""
        return self.wait(sample, is_ready=lambda value: not exists(value), **kwargs)
