"""Process runner for environment and dependency installation.

This module handles:
- Running external commands asynchronously with a timeout
- Creating the virtual environment layer contents
- Installing requirements into a target directory

A failed command raises ProcessExecutionError carrying its stderr.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import time
from dataclasses import dataclass
from pathlib import Path

from spacejar.errors import ProcessExecutionError

logger = logging.getLogger(__name__)

REQUIREMENTS_FILE = "requirements.txt"


@dataclass
class CommandResult:
    """Result of a finished command.

    Attributes:
        command: The command that was executed.
        exit_code: Process exit code.
        stdout: Captured standard output.
        stderr: Captured standard error.
        duration: Wall-clock seconds.
    """

    command: list[str]
    exit_code: int
    stdout: str
    stderr: str
    duration: float


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    await process.wait()


async def run_command(
    cmd: list[str],
    cwd: Path | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """Run *cmd* and wait for it to finish.

    The process is killed if it times out or the caller is cancelled.

    Raises:
        ProcessExecutionError: If the command cannot be started, times
            out or exits non-zero.
    """
    cmd_str = shlex.join(cmd)
    logger.info("Executing: %s", cmd_str)
    started = time.monotonic()

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise ProcessExecutionError(
            f"Failed to execute {cmd[0]}: {e}", command=cmd, code="execution_error"
        ) from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
    except TimeoutError as e:
        await _terminate(process)
        raise ProcessExecutionError(
            f"{cmd_str} timed out after {timeout} seconds",
            command=cmd,
            exit_code=-1,
            code="timeout",
        ) from e
    except asyncio.CancelledError:
        await _terminate(process)
        raise

    duration = time.monotonic() - started
    result = CommandResult(
        command=cmd,
        exit_code=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
        duration=duration,
    )

    if result.exit_code != 0:
        logger.error("%s failed with exit code %d", cmd_str, result.exit_code)
        raise ProcessExecutionError(
            f"{cmd_str} failed with exit code {result.exit_code}",
            command=cmd,
            exit_code=result.exit_code,
            stderr=result.stderr,
            code="command_failed",
        )

    logger.debug("%s finished in %.1fs", cmd_str, duration)
    return result


def has_requirements(requirements: Path) -> bool:
    """Return True if *requirements* exists and lists at least one requirement."""
    if not requirements.is_file():
        return False
    for line in requirements.read_text().splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("#"):
            return True
    return False


async def create_virtualenv(
    venv_dir: Path,
    python: str = "python",
    upgrade_pip: bool = True,
    timeout: float | None = None,
) -> Path:
    """Create a virtual environment at *venv_dir*.

    Raises:
        ProcessExecutionError: If creation fails or leaves no activation
            script.
    """
    await run_command(
        [python, "-m", "venv", "--system-site-packages", str(venv_dir)],
        timeout=timeout,
    )

    if not (venv_dir / "bin" / "activate").is_file():
        raise ProcessExecutionError(
            f"Virtual environment at {venv_dir} has no activation script",
            command=[python, "-m", "venv", str(venv_dir)],
            code="venv_incomplete",
        )

    if upgrade_pip:
        await run_command(
            [str(venv_dir / "bin" / "pip"), "install", "--upgrade", "pip"],
            timeout=timeout,
        )
    return venv_dir


async def install_dependencies(
    requirements: Path,
    target: Path,
    python: str = "python",
    timeout: float | None = None,
) -> Path:
    """Install *requirements* into *target*.

    A missing or requirement-free file leaves *target* empty and runs
    nothing.

    Raises:
        ProcessExecutionError: If pip fails.
    """
    target.mkdir(parents=True, exist_ok=True)
    if not has_requirements(requirements):
        logger.info("No requirements to install from %s", requirements)
        return target

    await run_command(
        [
            python,
            "-m",
            "pip",
            "install",
            "--target",
            str(target),
            "-r",
            str(requirements),
        ],
        timeout=timeout,
    )
    return target


__all__ = [
    "REQUIREMENTS_FILE",
    "CommandResult",
    "create_virtualenv",
    "has_requirements",
    "install_dependencies",
    "run_command",
]
