"""Command execution helpers shared by the disk engine and install steps."""

from __future__ import annotations

import subprocess
from typing import Mapping, Optional, Sequence

from deploykit.logging import LoggerFactory


log = LoggerFactory.for_disk()


def run_command(
    command: Sequence[str],
    check: bool = True,
    log_output: bool = True,
    log_command: bool = True,
    input_text: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> subprocess.CompletedProcess:
    """Run ``command`` with captured text output.

    Raises:
        subprocess.CalledProcessError: If ``check`` and the command fails
        FileNotFoundError: If the executable does not exist
    """
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            list(command),
            check=check,
            text=True,
            capture_output=True,
            input=input_text,
            env=dict(env) if env is not None else None,
        )
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)}")
        if error.stdout:
            log.debug(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def format_command_failure(
    summary: str, command: Sequence[str], result: subprocess.CompletedProcess
) -> str:
    """Format a command failure message."""
    stderr = " ".join((result.stderr or "").strip().split())
    stdout = " ".join((result.stdout or "").strip().split())
    details = []
    if stderr:
        details.append(f"stderr: {stderr}")
    if stdout:
        details.append(f"stdout: {stdout}")
    if details:
        return f"{summary} ({' '.join(command)}): {' | '.join(details)}"
    return f"{summary} ({' '.join(command)})"


def command_error_detail(error: Exception) -> str:
    """Best single-line description of a failed command."""
    if not isinstance(error, subprocess.CalledProcessError):
        return str(error)
    for stream in (error.stderr, error.stdout):
        if stream and stream.strip():
            return stream.strip().splitlines()[-1]
    return f"exit code {error.returncode}"
