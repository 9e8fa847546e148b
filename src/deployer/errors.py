"""Exception hierarchy shared across deployment phases.

Every terminal failure names the step that failed. Retried failures also
carry the attempt count and the last output, and polled failures carry the
last observed status.
"""

from __future__ import annotations


class DeployerError(Exception):
    """Base class for all deployment orchestration errors."""

    pass


class CommandFailedError(DeployerError):
    """Raised when a collaborator command (kubectl, az, kind) fails."""

    def __init__(self, command: str, output: str, return_code: int | None = None) -> None:
        self.command = command
        self.output = output
        self.return_code = return_code
        detail = output.strip() or "no output"
        super().__init__(f"{command} failed (exit {return_code}): {detail}")


class OperationFailedError(DeployerError):
    """Raised when a retried operation ends in failure."""

    def __init__(self, step: str, attempts: int, last_output: str, reason: str) -> None:
        self.step = step
        self.attempts = attempts
        self.last_output = last_output
        self.reason = reason
        message = f"{step} failed after {attempts} attempt(s): {reason}"
        if last_output.strip():
            message += f"\n  Last output: {last_output.strip()}"
        super().__init__(message)


class FatalOperationError(OperationFailedError):
    """Raised when a failure is classified as fatal and is not retried."""

    pass


class RetryExhaustedError(OperationFailedError):
    """Raised when every attempt failed with a transient error."""

    pass


class PollTimeoutError(DeployerError):
    """Raised when a readiness poll reaches its deadline.

    Attributes:
        description: What was being waited for.
        elapsed: Seconds spent polling.
        timeout: The deadline in seconds.
        iterations: Number of samples taken.
        last_status: Last observed status, or the last sampling error.
    """

    def __init__(
        self,
        description: str,
        elapsed: float,
        timeout: float,
        iterations: int,
        last_status: str | None,
    ) -> None:
        self.description = description
        self.elapsed = elapsed
        self.timeout = timeout
        self.iterations = iterations
        self.last_status = last_status
        status = last_status if last_status else "no status observed"
        super().__init__(
            f"Timed out waiting for {description} after {elapsed:.0f}s "
            f"(timeout {timeout:.0f}s, {iterations} checks)\n  Last status: {status}"
        )


class PollFailedError(DeployerError):
    """Raised when a polled resource reports a terminal failure state."""

    def __init__(self, description: str, status: str, iteration: int, elapsed: float) -> None:
        self.description = description
        self.status = status
        self.iteration = iteration
        self.elapsed = elapsed
        super().__init__(
            f"{description} reached a terminal failure state after {elapsed:.0f}s "
            f"(check {iteration}): {status}"
        )


class ArtifactApplyError(DeployerError):
    """Raised when applying a generated artifact fails."""

    def __init__(self, artifact: str, cause: OperationFailedError, remediation: str | None = None) -> None:
        self.artifact = artifact
        self.attempts = cause.attempts
        self.last_output = cause.last_output
        self.remediation = remediation
        message = f"Failed to apply {artifact} on attempt {cause.attempts}: {cause}"
        if remediation:
            message += f"\n{remediation}"
        super().__init__(message)


class GenerationError(DeployerError):
    """Raised when manifest generation fails or produces invalid output."""

    pass


class CloudLookupError(DeployerError):
    """Raised when the cloud provider cannot be queried."""

    pass
