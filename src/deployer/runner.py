"""Subprocess execution for external tools (kubectl, az, kind, generation script).

Tools are opaque: the only signals are their combined text output and exit
status. Timeouts and missing binaries are reported as failed results rather
than exceptions so callers can classify them like any other failure.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import threading
import time
from collections.abc import Callable, Sequence
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import IO

logger = logging.getLogger(__name__)

# Timeout constants (seconds)
COMMAND_TIMEOUT_SECONDS = 300
STREAMING_TIMEOUT_SECONDS = 30 * 60
READER_JOIN_TIMEOUT_SECONDS = 5.0

MAX_COMMAND_ARG_LENGTH = 4096


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one external command."""

    args: tuple[str, ...]
    success: bool
    output: str
    return_code: int | None
    error: str | None = None

    @property
    def command(self) -> str:
        return " ".join(self.args)


class OutputAccumulator:
    """Collects lines from several reader threads in arrival order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._lines: list[str] = []

    def append(self, line: str) -> None:
        with self._lock:
            self._lines.append(line)

    def text(self) -> str:
        with self._lock:
            return "".join(self._lines)


def _validate_args(args: Sequence[str]) -> tuple[str, ...]:
    if not args:
        raise ValueError("command must not be empty")
    for arg in args:
        if not isinstance(arg, str):
            raise TypeError(f"command arguments must be strings: {arg!r}")
        if "\x00" in arg:
            raise ValueError("command arguments must not contain NUL bytes")
        if len(arg) > MAX_COMMAND_ARG_LENGTH:
            raise ValueError(f"command argument exceeds {MAX_COMMAND_ARG_LENGTH} characters")
    return tuple(args)


def _merged_env(env: dict[str, str] | None) -> dict[str, str] | None:
    if env is None:
        return None
    full_env = os.environ.copy()
    full_env.update(env)
    return full_env


def run_command(
    args: Sequence[str],
    *,
    timeout: float = COMMAND_TIMEOUT_SECONDS,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run a command and capture stdout and stderr together.

    Args:
        args: Command and arguments.
        timeout: Seconds before the command is killed.
        cwd: Working directory.
        env: Extra environment variables (merged with the current environment).

    Returns:
        CommandResult; ``success`` is True only for exit status 0.
    """
    argv = _validate_args(args)
    logger.debug("Running command", extra={"command": " ".join(argv)})

    try:
        completed = subprocess.run(
            argv,
            cwd=cwd,
            env=_merged_env(env),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        partial = e.output or ""
        if isinstance(partial, bytes):
            partial = partial.decode(errors="replace")
        return CommandResult(
            args=argv,
            success=False,
            output=partial,
            return_code=None,
            error=f"command timed out after {timeout:.0f}s: {' '.join(argv)}",
        )
    except FileNotFoundError:
        return CommandResult(
            args=argv,
            success=False,
            output="",
            return_code=None,
            error=f"command not found: {argv[0]}",
        )

    output = completed.stdout or ""
    if completed.returncode != 0:
        return CommandResult(
            args=argv,
            success=False,
            output=output,
            return_code=completed.returncode,
            error=f"exit status {completed.returncode}",
        )
    return CommandResult(args=argv, success=True, output=output, return_code=0)


def _echo_stderr(line: str) -> None:
    sys.stderr.write(line)
    sys.stderr.flush()


def _drain(stream: IO[str], accumulator: OutputAccumulator, sink: Callable[[str], object] | None) -> None:
    for line in iter(stream.readline, ""):
        accumulator.append(line)
        if sink is not None:
            sink(line)
    stream.close()


def _kill_group(process: subprocess.Popen) -> None:
    """SIGKILL the child's process group, including anything it spawned."""
    with suppress(ProcessLookupError):
        os.killpg(process.pid, signal.SIGKILL)


def _join_readers(readers: list[threading.Thread]) -> bool:
    """Join reader threads with a shared deadline. Returns True if all finished."""
    deadline = time.monotonic() + READER_JOIN_TIMEOUT_SECONDS
    for reader in readers:
        reader.join(timeout=max(0.0, deadline - time.monotonic()))
    return not any(reader.is_alive() for reader in readers)


def run_streaming(
    args: Sequence[str],
    *,
    sink: Callable[[str], object] | None = _echo_stderr,
    timeout: float = STREAMING_TIMEOUT_SECONDS,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run a long command, echoing its output live.

    stdout and stderr are drained by two reader threads so neither pipe can
    fill up and block the child. Both threads write into one lock-guarded
    accumulator and are joined before the exit status is read. The child
    runs in its own process group; a timeout kills the whole group, and
    reader joins are bounded so descendants holding the pipes cannot stall
    the caller.

    Args:
        args: Command and arguments.
        sink: Called with each output line as it arrives (None to stay quiet).
        timeout: Seconds before the command is killed.
        cwd: Working directory.
        env: Extra environment variables (merged with the current environment).

    Returns:
        CommandResult with the interleaved output of both streams.
    """
    argv = _validate_args(args)
    logger.debug("Running streaming command", extra={"command": " ".join(argv)})

    try:
        process = subprocess.Popen(
            argv,
            cwd=cwd,
            env=_merged_env(env),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            bufsize=1,
            start_new_session=True,
        )
    except FileNotFoundError:
        return CommandResult(
            args=argv,
            success=False,
            output="",
            return_code=None,
            error=f"command not found: {argv[0]}",
        )

    accumulator = OutputAccumulator()
    readers = [
        threading.Thread(target=_drain, args=(stream, accumulator, sink), daemon=True)
        for stream in (process.stdout, process.stderr)
    ]
    for reader in readers:
        reader.start()

    timed_out = False
    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_group(process)
        process.wait()
    finally:
        if not _join_readers(readers):
            # Descendants outlived the child and still hold the pipes open
            logger.warning(
                "Output readers still busy after exit, killing process group",
                extra={"command": " ".join(argv), "pid": process.pid},
            )
            _kill_group(process)
            _join_readers(readers)

    output = accumulator.text()
    return_code = process.returncode
    if timed_out:
        return CommandResult(
            args=argv,
            success=False,
            output=output,
            return_code=return_code,
            error=f"command timed out after {timeout:.0f}s: {' '.join(argv)}",
        )
    if return_code != 0:
        return CommandResult(
            args=argv,
            success=False,
            output=output,
            return_code=return_code,
            error=f"exit status {return_code}",
        )
    return CommandResult(args=argv, success=True, output=output, return_code=0)
