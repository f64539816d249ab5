"""Toolchain runner for building local binaries.

This module handles:
- Composing the toolchain build command for a set of binary names
- Executing builds with subprocess
- Capturing stdout/stderr to log files
- Enforcing build timeouts
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

# Lines of log output surfaced as a failure diagnostic
DIAGNOSTIC_TAIL_LINES = 20


class ToolchainError(Exception):
    """Raised when the toolchain cannot be run to completion."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "toolchain_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


@dataclass
class ToolchainResult:
    """Result of a toolchain build.

    Attributes:
        success: Whether the build succeeded.
        exit_code: Process exit code.
        out_dir: Directory containing the built binaries.
        log_path: Path to the build log file.
        started_at: Build start time.
        finished_at: Build finish time.
        command: The command that was executed.
        error_message: Error message if build failed.
    """

    success: bool
    exit_code: int
    out_dir: Path
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str
    error_message: str | None = None

    def diagnostic(self, lines: int = DIAGNOSTIC_TAIL_LINES) -> str:
        """Return the error message followed by the tail of the build log."""
        parts = [self.error_message or f"exit code {self.exit_code}"]
        try:
            tail = self.log_path.read_text(errors="replace").splitlines()[-lines:]
        except OSError:
            tail = []
        if tail:
            parts.append("\n".join(tail))
        return "\n".join(parts)


class Toolchain(Protocol):
    """Builds named binaries and reports where they were written."""

    def build(
        self,
        binary_names: Sequence[str],
        release: bool,
        log_path: Path,
    ) -> ToolchainResult: ...


def compose_build_command(
    command: str,
    binary_names: Sequence[str],
    release: bool,
) -> list[str]:
    """Compose the build command for the given binaries.

    Args:
        command: Toolchain executable (e.g. ``cargo``).
        binary_names: Binaries to build.
        release: Build with optimizations.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [*shlex.split(command), "build"]
    if release:
        cmd.append("--release")
    for name in sorted(binary_names):
        cmd.extend(["--bin", name])
    return cmd


class CargoToolchain:
    """Toolchain backed by ``cargo build`` in a workspace directory."""

    def __init__(
        self,
        workspace: Path,
        command: str = "cargo",
        timeout: int | None = None,
        target_dir: Path | None = None,
    ) -> None:
        self.workspace = workspace
        self.command = command
        self.timeout = timeout
        # An explicit target directory is passed to cargo as CARGO_TARGET_DIR
        self.custom_target_dir = target_dir is not None
        self.target_dir = target_dir if target_dir is not None else workspace / "target"

    def output_dir(self, release: bool) -> Path:
        """Directory the toolchain writes binaries to."""
        return self.target_dir / ("release" if release else "debug")

    def build(
        self,
        binary_names: Sequence[str],
        release: bool,
        log_path: Path,
    ) -> ToolchainResult:
        """Build binaries, logging output to ``log_path``.

        Returns:
            ToolchainResult with execution details.

        Raises:
            ToolchainError: If the build times out or cannot be started.
        """
        log_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = compose_build_command(self.command, binary_names, release)
        cmd_str = shlex.join(cmd)
        logger.info("Executing build: %s", cmd_str)
        logger.debug("Working directory: %s", self.workspace)

        started_at = datetime.now(timezone.utc)
        error_message: str | None = None

        env: dict[str, str] | None = None
        if self.custom_target_dir:
            env = dict(os.environ)
            env["CARGO_TARGET_DIR"] = str(self.target_dir)

        try:
            with log_path.open("w") as log_file:
                log_file.write(f"# Command: {cmd_str}\n")
                log_file.write(f"# Started: {started_at.isoformat()}\n")
                log_file.write(f"# CWD: {self.workspace}\n")
                log_file.write("# " + "=" * 70 + "\n\n")
                log_file.flush()

                result = subprocess.run(
                    cmd,
                    cwd=self.workspace,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    timeout=self.timeout,
                    env=env,
                    check=False,
                )

            exit_code = result.returncode
            success = exit_code == 0
            if not success:
                error_message = f"Build failed with exit code {exit_code}"
                logger.error("%s. See log: %s", error_message, log_path)

        except subprocess.TimeoutExpired as e:
            error_message = f"Build timed out after {self.timeout} seconds"
            logger.error("%s. See log: %s", error_message, log_path)
            with log_path.open("a") as log_file:
                log_file.write(f"\n# TIMEOUT after {self.timeout} seconds\n")
            raise ToolchainError(
                error_message, exit_code=-1, code="build_timeout"
            ) from e

        except OSError as e:
            error_message = f"Failed to execute build: {e}"
            logger.error(error_message)
            raise ToolchainError(error_message, code="execution_error") from e

        finished_at = datetime.now(timezone.utc)
        with log_path.open("a") as log_file:
            log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
            log_file.write(f"# Exit code: {exit_code}\n")
            duration = (finished_at - started_at).total_seconds()
            log_file.write(f"# Duration: {duration:.1f}s\n")

        return ToolchainResult(
            success=success,
            exit_code=exit_code,
            out_dir=self.output_dir(release),
            log_path=log_path,
            started_at=started_at,
            finished_at=finished_at,
            command=cmd_str,
            error_message=error_message,
        )


__all__ = [
    "CargoToolchain",
    "Toolchain",
    "ToolchainError",
    "ToolchainResult",
    "compose_build_command",
]
