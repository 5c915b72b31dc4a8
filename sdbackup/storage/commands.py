"""External command execution with captured, typed results.

Every disk utility the backup drives (losetup, parted, mkfs, rsync, ...) is
invoked through this module so that callers always receive a
:class:`CommandResult` instead of inspecting ambient exit statuses.
"""

from __future__ import annotations

import shutil
import subprocess
from collections import deque
from dataclasses import dataclass
from typing import BinaryIO, Callable, Iterable, Optional, Sequence

from sdbackup.logging import LoggerFactory
from sdbackup.storage.exceptions import CommandFailedError, DependencyMissingError


log = LoggerFactory.for_system()

STREAM_TAIL_LINES = 50


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one external program invocation."""

    command: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def output(self) -> str:
        """Stripped stdout, the value most query commands print."""
        return self.stdout.strip()


def run_command(
    command: Sequence[str],
    input_text: Optional[str] = None,
    log_output: bool = True,
    log_command: bool = True,
) -> CommandResult:
    """Run a command to completion and capture its output.

    Never raises for a non-zero exit status; see :func:`run_checked_command`.
    A missing executable is reported as :class:`DependencyMissingError`.
    """
    command = tuple(str(part) for part in command)
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        completed = subprocess.run(
            list(command),
            input=input_text,
            text=True,
            capture_output=True,
        )
    except FileNotFoundError as error:
        raise DependencyMissingError(command[0]) from error
    result = CommandResult(
        command=command,
        returncode=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
    )
    if result.stdout and (log_output or not result.ok):
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or not result.ok):
        log.debug(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def run_checked_command(
    command: Sequence[str],
    input_text: Optional[str] = None,
    accept_codes: Iterable[int] = (0,),
) -> CommandResult:
    """Run a command and raise CommandFailedError if it fails."""
    result = run_command(command, input_text=input_text)
    if result.returncode not in set(accept_codes):
        raise CommandFailedError(result)
    return result


def run_streaming_command(
    command: Sequence[str],
    on_line: Optional[Callable[[str], None]] = None,
    accept_codes: Iterable[int] = (0,),
) -> CommandResult:
    """Run a long command, handing each output line to ``on_line`` as it arrives.

    stderr is merged into stdout. Only the last lines are kept in the returned
    result so that multi-gigabyte transfer listings are not held in memory.
    """
    command = tuple(str(part) for part in command)
    log.debug(f"Running command: {' '.join(command)}")
    try:
        process = subprocess.Popen(
            list(command),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except FileNotFoundError as error:
        raise DependencyMissingError(command[0]) from error
    tail: deque[str] = deque(maxlen=STREAM_TAIL_LINES)
    assert process.stdout is not None
    for line in process.stdout:
        line = line.rstrip("\n")
        tail.append(line)
        if on_line:
            on_line(line)
    returncode = process.wait()
    log.debug(f"Command completed with return code {returncode}")
    result = CommandResult(command=command, returncode=returncode, stdout="\n".join(tail))
    if returncode not in set(accept_codes):
        raise CommandFailedError(result)
    return result


def find_missing_programs(programs: Iterable[str]) -> list[str]:
    return [program for program in programs if shutil.which(program) is None]


def require_programs(programs: Iterable[str]) -> None:
    """Raise DependencyMissingError for the first program not on PATH."""
    missing = find_missing_programs(programs)
    if missing:
        raise DependencyMissingError(missing[0])


def sync_filesystems(passes: int = 1) -> None:
    """Flush pending writes to stable storage."""
    for _ in range(passes):
        run_checked_command(["sync"])


def run_pipeline(
    producer: Sequence[str], consumer: Sequence[str], output: BinaryIO
) -> tuple[CommandResult, CommandResult]:
    """Run ``producer | consumer > output`` and return both results.

    stderr of both programs stays attached to the terminal so progress meters
    such as pv remain visible.
    """
    producer = tuple(str(part) for part in producer)
    consumer = tuple(str(part) for part in consumer)
    log.debug(f"Running pipeline: {' '.join(producer)} | {' '.join(consumer)}")
    try:
        first = subprocess.Popen(list(producer), stdout=subprocess.PIPE)
    except FileNotFoundError as error:
        raise DependencyMissingError(producer[0]) from error
    try:
        second = subprocess.Popen(list(consumer), stdin=first.stdout, stdout=output)
    except FileNotFoundError as error:
        first.kill()
        first.wait()
        raise DependencyMissingError(consumer[0]) from error
    finally:
        # the consumer holds its own copy; closing ours lets the producer see SIGPIPE
        if first.stdout is not None:
            first.stdout.close()
    second_rc = second.wait()
    first_rc = first.wait()
    log.debug(f"Pipeline completed with return codes {first_rc}, {second_rc}")
    return (
        CommandResult(command=producer, returncode=first_rc),
        CommandResult(command=consumer, returncode=second_rc),
    )
