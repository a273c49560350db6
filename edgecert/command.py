"""
External command execution.

The ACME client and friends are driven through a CommandRunner so the
orchestration can be exercised with a fake runner in tests.
"""

import os
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Mapping, Optional

from .logger import get_logger


class CommandTimeoutError(Exception):
    """Raised when an external command exceeds its timeout."""
    pass


@dataclass
class CommandResult:
    """Outcome of an external command."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class CommandRunner(ABC):
    """Capability to run an external command."""

    @abstractmethod
    def run(
        self,
        command: str,
        args: List[str],
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """
        Run a command to completion.

        Args:
            command: Executable name or path
            args: Arguments, passed without shell interpretation
            env: Extra environment variables layered over the process env
            timeout: Timeout in seconds (None for no timeout)

        Returns:
            CommandResult with exit code and captured output

        Raises:
            CommandTimeoutError: If the timeout expired
        """
        pass


class SubprocessRunner(CommandRunner):
    """CommandRunner backed by subprocess.run."""

    def run(
        self,
        command: str,
        args: List[str],
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        logger = get_logger()

        env_vars = os.environ.copy()
        if env:
            env_vars.update(env)

        cmd = [command, *args]
        logger.debug(f"Running: {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                env=env_vars,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise CommandTimeoutError(f"{command} timed out after {timeout} seconds")
        except FileNotFoundError:
            return CommandResult(exit_code=127, stderr=f"{command}: command not found")
        except OSError as e:
            return CommandResult(exit_code=126, stderr=f"{command}: cannot execute: {e}")

        if result.stdout:
            logger.debug(f"{command} stdout: {result.stdout}")
        if result.stderr and result.returncode != 0:
            logger.debug(f"{command} stderr: {result.stderr}")

        return CommandResult(
            exit_code=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )
