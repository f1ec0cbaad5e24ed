"""Remote command execution with timeout and bounded retry."""

import time
from typing import Callable, Optional

from gpinstaller.errors import ChannelLostError, CommandFailure, CommandTimeoutError
from gpinstaller.models import CancellationToken, Channel, CommandResult, ExecutionOptions
from gpinstaller.services.retry import retry_call


class _TransientExit(Exception):
    def __init__(self, result: CommandResult):
        super().__init__(result.exit_code)
        self.result = result


class CommandExecutor:
    """Runs single operations through a host channel.

    Retryable exit codes are retried up to ``max_retries``. A lost channel and
    a timed out command each get one re-acquire and replay per call, which is
    accounted separately from the retry budget.
    """

    def __init__(
        self,
        connections,
        logger,
        default_options: Optional[ExecutionOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.connections = connections
        self.logger = logger
        self.default_options = default_options or ExecutionOptions()
        self.cancel_token = cancel_token or CancellationToken()
        self.sleep = sleep

    @property
    def transport(self):
        return self.connections.transport

    def run(
        self,
        channel: Channel,
        command: str,
        options: Optional[ExecutionOptions] = None,
        *,
        check: bool = True,
        redact: Optional[str] = None,
    ) -> CommandResult:
        options = options or self.default_options
        host = channel.host
        shown = redact or command
        state = {"channel": channel, "lost_replayed": False, "timeout_replayed": False}

        def execute_once() -> CommandResult:
            current = state["channel"]
            if not current.is_live(self.connections.clock()):
                current = state["channel"] = self.connections.acquire(host)
            return self.transport.execute(current, command, options.timeout_seconds, display=redact)

        def attempt() -> CommandResult:
            self.cancel_token.raise_if_cancelled()
            try:
                result = execute_once()
            except ChannelLostError:
                if state["lost_replayed"]:
                    raise
                state["lost_replayed"] = True
                self.logger.warning("Channel to %s was lost, reconnecting and replaying: %s", host, shown)
                state["channel"] = self._reacquire(host)
                result = execute_once()
            except CommandTimeoutError as exc:
                self.connections.mark_suspect(host)
                if state["timeout_replayed"]:
                    raise exc.with_context(host=host)
                state["timeout_replayed"] = True
                self.logger.warning("Command timed out on %s, reconnecting and replaying once: %s", host, shown)
                state["channel"] = self._reacquire(host)
                try:
                    result = execute_once()
                except CommandTimeoutError as second:
                    self.connections.mark_suspect(host)
                    raise second.with_context(host=host)

            if result.exit_code != 0 and result.exit_code in options.retryable_exit_codes:
                raise _TransientExit(result)
            return result

        def on_retry(attempt_number: int, exc: BaseException):
            self.logger.warning(
                "Transient failure on %s (attempt %s/%s): %s",
                host,
                attempt_number,
                options.max_retries + 1,
                shown,
            )

        try:
            result = retry_call(
                attempt,
                should_retry=lambda exc: isinstance(exc, _TransientExit),
                max_retries=options.max_retries,
                backoff=options.backoff,
                backoff_seconds=options.backoff_seconds,
                on_retry=on_retry,
                cancel_token=self.cancel_token,
                sleep=self.sleep,
            )
        except _TransientExit as exc:
            result = exc.result

        if result.exit_code != 0:
            if check:
                raise CommandFailure(shown, result.exit_code, result.stderr.strip(), host=host)
            self.logger.debug("Command returned %s on %s: %s", result.exit_code, host, shown)
            return result

        self.connections.refresh(host)
        return result

    def _reacquire(self, host: str) -> Channel:
        self.connections.mark_suspect(host)
        return self.connections.acquire(host)

    def run_on(
        self,
        host: str,
        command: str,
        options: Optional[ExecutionOptions] = None,
        *,
        check: bool = True,
        redact: Optional[str] = None,
    ) -> CommandResult:
        with self.connections.session(host) as channel:
            return self.run(channel, command, options, check=check, redact=redact)

    def copy_to(self, host: str, local_path: str, remote_path: str, options: Optional[ExecutionOptions] = None):
        options = options or self.default_options
        self.cancel_token.raise_if_cancelled()
        with self.connections.session(host) as channel:
            self.logger.debug("Copying %s to %s:%s", local_path, host, remote_path)
            self.transport.copy(channel, local_path, remote_path, options.timeout_seconds)
            self.connections.refresh(host)
