"""Subprocess execution service for gpinstaller."""

import os
import subprocess
import time
from typing import Dict, Iterable, List, Optional

from gpinstaller.errors import CommandFailure, CommandTimeoutError, InstallerError
from gpinstaller.services.retry import retry_call


class _RetryableExit(Exception):
    def __init__(self, result: subprocess.CompletedProcess):
        super().__init__(result.returncode)
        self.result = result


class CommandRunner:
    """Runs local commands with consistent error handling."""

    def __init__(self, logger, default_timeout: Optional[float] = None):
        self.logger = logger
        self.default_timeout = default_timeout

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = False,
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
        retry_count: int = 0,
        retry_backoff_seconds: float = 0.0,
        retry_on_returncodes: Optional[Iterable[int]] = None,
        display: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        cmd_str = display or " ".join(cmd)
        self.logger.debug("Executing: %s", cmd_str)

        effective_timeout = timeout if timeout is not None else self.default_timeout
        retry_codes = set(retry_on_returncodes or [])
        process_env = None
        if env:
            process_env = dict(os.environ)
            process_env.update(env)

        def attempt() -> subprocess.CompletedProcess:
            try:
                result = subprocess.run(
                    cmd,
                    text=True,
                    capture_output=capture_output,
                    timeout=effective_timeout,
                    env=process_env,
                )
            except FileNotFoundError as exc:
                raise InstallerError(
                    f"Required command not found: {cmd[0]}. Please install it and try again."
                ) from exc
            except subprocess.TimeoutExpired as exc:
                raise CommandTimeoutError(
                    f"Command timed out after {effective_timeout}s: {cmd_str}",
                    command=cmd_str,
                    timeout_seconds=effective_timeout,
                ) from exc
            except OSError as exc:
                raise InstallerError(f"Failed to execute command: {cmd_str}. {exc}") from exc

            if capture_output and result.stdout:
                self.logger.debug("Command output: %s", result.stdout.strip())

            if result.returncode != 0 and (not retry_codes or result.returncode in retry_codes):
                raise _RetryableExit(result)
            return result

        def on_retry(attempt_number: int, exc: BaseException):
            self.logger.warning(
                "Command failed on attempt %s/%s and will be retried in %.1fs: %s",
                attempt_number,
                retry_count + 1,
                retry_backoff_seconds,
                cmd_str,
            )

        try:
            result = retry_call(
                attempt,
                should_retry=lambda exc: isinstance(exc, _RetryableExit),
                max_retries=retry_count,
                backoff="none",
                on_retry=on_retry,
                sleep=lambda _seconds: time.sleep(retry_backoff_seconds),
            )
        except _RetryableExit as exc:
            result = exc.result

        if result.returncode == 0:
            return result

        stderr = (result.stderr or "").strip() if capture_output else ""
        if check:
            raise CommandFailure(cmd_str, result.returncode, stderr)

        self.logger.debug("Command returned %s: %s", result.returncode, cmd_str)
        return result
