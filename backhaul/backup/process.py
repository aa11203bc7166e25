"""
External command runner used by every source strategy.

Commands are always an argument vector executed without a shell. Secrets
reach the tools through environment variables or credential files, and any
value listed in ``redact`` is scrubbed from output and error messages.
"""

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .errors import CommandTimeoutError, ExecutionError

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Captured output of a finished command."""
    stdout: str
    stderr: str
    returncode: int


def _scrub(text: str, redact: Iterable[str]) -> str:
    for secret in redact:
        if secret:
            text = text.replace(secret, '****')
    return text


def format_command(argv: List[str], redact: Iterable[str] = ()) -> str:
    """Render an argument vector as a loggable command line."""
    return _scrub(' '.join(shlex.quote(str(arg)) for arg in argv), redact)


def _terminate(process: subprocess.Popen, grace_period: float):
    """Send SIGTERM, then SIGKILL if the process outlives the grace period."""
    process.terminate()
    try:
        process.wait(timeout=grace_period)
    except subprocess.TimeoutExpired:
        logger.warning(f"Process {process.pid} ignored SIGTERM, sending SIGKILL")
        process.kill()
        process.wait()


def run_command(
    argv: List[str],
    env: Optional[Dict[str, str]] = None,
    output_file: Optional[str] = None,
    timeout: Optional[float] = None,
    grace_period: float = 5,
    redact: Iterable[str] = ()
) -> CommandResult:
    """
    Run an external command and capture its output.

    Args:
        argv: Program and arguments, never interpreted by a shell
        env: Extra environment variables merged over the current environment
        output_file: If set, stdout is written to this file instead of captured
        timeout: Seconds before the process is terminated (None = unbounded)
        grace_period: Seconds between SIGTERM and SIGKILL on timeout
        redact: Secret values to replace with **** in returned output

    Returns:
        CommandResult for a zero exit status

    Raises:
        CommandTimeoutError: If the timeout elapsed
        ExecutionError: If the program is missing or exits non-zero
    """
    redact = [value for value in redact if value]
    command_name = os.path.basename(str(argv[0]))
    process_env = {**os.environ, **(env or {})}

    logger.debug(f"Running: {format_command(argv, redact)}")

    stdout_handle = open(output_file, 'wb') if output_file else subprocess.PIPE
    try:
        try:
            process = subprocess.Popen(
                [str(arg) for arg in argv],
                stdout=stdout_handle,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                env=process_env,
                shell=False
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ExecutionError(f"Failed to start {command_name}: {e}", returncode=127)

        try:
            stdout, stderr = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            _terminate(process, grace_period)
            stdout, stderr = process.communicate()
            raise CommandTimeoutError(
                f"{command_name} timed out after {timeout} seconds",
                stdout=_scrub(_decode(stdout), redact),
                stderr=_scrub(_decode(stderr), redact),
                returncode=process.returncode
            )
    finally:
        if output_file:
            stdout_handle.close()

    stdout = _scrub(_decode(stdout), redact)
    stderr = _scrub(_decode(stderr), redact)

    if process.returncode != 0:
        detail = stderr.strip() or stdout.strip() or 'no output'
        raise ExecutionError(
            f"{command_name} exited with code {process.returncode}: {detail}",
            stdout=stdout,
            stderr=stderr,
            returncode=process.returncode
        )

    return CommandResult(stdout=stdout, stderr=stderr, returncode=process.returncode)


def _decode(data) -> str:
    if not data:
        return ''
    return data.decode('utf-8', errors='replace')
