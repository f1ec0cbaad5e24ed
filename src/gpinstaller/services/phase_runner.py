"""Installation state machine and per-host step scheduling."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, Optional, Sequence

from gpinstaller.errors import CancelledError, InstallerError, PartialInstallError
from gpinstaller.errors_catalog import actionable_error, remediation
from gpinstaller.models import (
    CancellationToken,
    CommandResult,
    ExecutionOptions,
    Host,
    HostStatus,
    InstallSettings,
    Phase,
    RunState,
    Step,
)

TERMINAL_STATES = frozenset({RunState.COMPLETE, RunState.FAILED})

TRANSITIONS = {
    RunState.INIT: {RunState.PREFLIGHT},
    RunState.PREFLIGHT: {RunState.HOST_SETUP, RunState.STOP_CLUSTER},
    RunState.HOST_SETUP: {RunState.BINARY_INSTALL},
    RunState.BINARY_INSTALL: {RunState.CLUSTER_INIT},
    RunState.CLUSTER_INIT: {RunState.EXTENSION_INIT, RunState.COMPLETE},
    RunState.EXTENSION_INIT: {RunState.COMPLETE},
    RunState.STOP_CLUSTER: {RunState.CLEAN_HOSTS},
    RunState.CLEAN_HOSTS: {RunState.COMPLETE},
    RunState.COMPLETE: set(),
    RunState.FAILED: set(),
}


class _HaltRequested(Exception):
    """Another host failed or the run was cancelled while this one was waiting."""


class RunData:
    """Values produced by a step on one host and consumed on another."""

    def __init__(self):
        self._values: Dict[str, Any] = {}
        self._condition = threading.Condition()

    def put(self, key: str, value: Any):
        with self._condition:
            self._values[key] = value
            self._condition.notify_all()

    def get(self, key: str, default: Any = None) -> Any:
        with self._condition:
            return self._values.get(key, default)

    def require(self, key: str) -> Any:
        with self._condition:
            if key not in self._values:
                raise InstallerError(f"Required value '{key}' was not produced by an earlier step.")
            return self._values[key]

    def wait_for(
        self,
        key: str,
        timeout: Optional[float] = None,
        abort: Optional[Callable[[], bool]] = None,
        poll_seconds: float = 0.2,
    ) -> Any:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            while key not in self._values:
                if abort is not None and abort():
                    raise _HaltRequested(key)
                wait_seconds = poll_seconds
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise InstallerError(f"Timed out waiting for '{key}' from another host.")
                    wait_seconds = min(wait_seconds, remaining)
                self._condition.wait(wait_seconds)
            return self._values[key]


class StepContext:
    """What a step action sees: its host, the run settings and remote execution."""

    def __init__(self, runner: "PhaseRunner", phase: Phase, host: Host, key: str):
        self.runner = runner
        self.phase = phase
        self.host = host
        self.key = key

    @property
    def settings(self) -> InstallSettings:
        return self.runner.settings

    @property
    def registry(self):
        return self.runner.registry

    @property
    def data(self) -> RunData:
        return self.runner.data

    @property
    def dry_run(self) -> bool:
        return self.runner.settings.dry_run

    @property
    def logger(self):
        return self.runner.logger

    def run(
        self,
        command: str,
        options: Optional[ExecutionOptions] = None,
        *,
        check: bool = True,
        redact: Optional[str] = None,
    ) -> CommandResult:
        return self.runner.executor.run_on(self.host.address, command, options, check=check, redact=redact)

    def run_on(self, address: str, command: str, options: Optional[ExecutionOptions] = None, **kwargs) -> CommandResult:
        return self.runner.executor.run_on(address, command, options, **kwargs)

    def copy_to(self, local_path: str, remote_path: str):
        self.runner.executor.copy_to(self.host.address, local_path, remote_path)

    def snapshot(self, target: str):
        return self.runner.rollback.snapshot(self.host.address, target)

    def register_temp_file(self, path: str):
        self.runner.rollback.register_temp_file(self.host.address, path)

    def wait_for(self, key: str, timeout: Optional[float] = None) -> Any:
        if timeout is None:
            timeout = self.settings.command_timeout_seconds
        return self.data.wait_for(key, timeout=timeout, abort=self.runner.should_stop)


class PhaseRunner:
    """Drives phases in declared order with a barrier between them.

    Hosts within a phase run concurrently on a bounded pool; steps on one host
    run strictly in order. The first host failure halts scheduling everywhere
    and moves the run to FAILED, which restores outstanding backups.
    """

    def __init__(
        self,
        registry,
        connections,
        executor,
        rollback,
        settings: InstallSettings,
        logger,
        console,
        state_service=None,
        cancel_token: Optional[CancellationToken] = None,
        data: Optional[RunData] = None,
    ):
        self.registry = registry
        self.connections = connections
        self.executor = executor
        self.rollback = rollback
        self.settings = settings
        self.logger = logger
        self.console = console
        self.state_service = state_service
        self.cancel_token = cancel_token or CancellationToken()
        self.data = data or RunData()
        self.state = RunState.INIT
        self.failed_phase: Optional[str] = None
        self.abandoned = False
        self._halt = threading.Event()
        self._state_lock = threading.Lock()

    def should_stop(self) -> bool:
        return self._halt.is_set() or self.cancel_token.cancelled

    def transition(self, new_state: RunState):
        if new_state not in TRANSITIONS[self.state]:
            raise InstallerError(f"Invalid phase transition: {self.state.value} -> {new_state.value}")
        self.logger.debug("Run state %s -> %s", self.state.value, new_state.value)
        self.state = new_state
        self.save_state()

    def save_state(self):
        if self.state_service is None:
            return
        with self._state_lock:
            self.state_service.save(self.registry.snapshot(self.state).to_dict())

    def run(self, phases: Sequence[Phase]) -> RunState:
        try:
            for phase in phases:
                self.run_phase(phase)
            self.transition(RunState.COMPLETE)
            self.rollback.discard_all()
            self.connections.release_all()
            return self.state
        except KeyboardInterrupt as exc:
            self.cancel_token.cancel()
            self._fail()
            raise CancelledError("Installation interrupted by user.", phase=self.failed_phase) from exc
        except Exception:
            self._fail()
            raise

    def _fail(self):
        if self.state in TERMINAL_STATES:
            return
        self.failed_phase = self.registry.current_phase
        self._halt.set()
        self.state = RunState.FAILED
        try:
            self.save_state()
        except (InstallerError, OSError) as exc:
            self.logger.error("Could not record the failed run state: %s", exc)

        # Hosts with a step still running after a forced stop keep their channel lock.
        busy = self.connections.busy_hosts() if self.abandoned else set()
        for address in sorted(busy):
            self.logger.error("%s still has a step running, its remote state may be inconsistent.", address)
        try:
            errors = self.rollback.restore_all(skip_hosts=busy)
            if errors:
                self.console.print(f"[yellow]{len(errors)} backup(s) could not be restored, see log.[/yellow]")
        finally:
            self.rollback.cleanup_run(skip_hosts=busy)

    def run_phase(self, phase: Phase):
        self.transition(phase.state)
        if phase.dependency is not None and not self.registry.all_done(phase.dependency):
            raise PartialInstallError(
                actionable_error("phase_failed", phase=phase.dependency.name),
                phase=phase.name,
                remediation=remediation("phase_failed", phase=phase.dependency.name),
            )

        hosts = self.registry.hosts_for(phase)
        self.console.print(f"[blue]{phase.name}: {len(hosts)} host(s)...[/blue]")

        if phase.driver is not None:
            self.registry.begin(phase.name, hosts)
            phase.driver(self, phase, hosts)
            for host in hosts:
                self.registry.mark(host, HostStatus.DONE, phase=phase.name)
        else:
            self.run_stage(phase, hosts, phase.steps)

        if not self.registry.all_done(phase.name):
            raise PartialInstallError(
                actionable_error("phase_failed", phase=phase.name),
                phase=phase.name,
                remediation=remediation("phase_failed", phase=phase.name),
            )
        self.save_state()
        self.console.print(f"[green]{phase.name} completed.[/green]")

    def run_stage(
        self,
        phase: Phase,
        hosts: Sequence[Host],
        steps: Sequence[Step],
        stage: Optional[str] = None,
    ) -> str:
        """Runs ``steps`` on every host in parallel; returns the barrier key."""
        key = phase.name if stage is None else f"{phase.name}.{stage}"
        hosts = list(hosts)
        self.registry.begin(key, hosts)
        if not hosts:
            return key

        workers = max(1, min(self.settings.pool_width, len(hosts)))
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="gpinstaller")
        futures = {}
        try:
            for host in hosts:
                futures[host.address] = pool.submit(self._run_host, phase, key, host, steps)
            wait(list(futures.values()))
        except KeyboardInterrupt as exc:
            self.cancel_token.cancel()
            self._halt.set()
            try:
                self.console.print(
                    "[yellow]Interrupt received, waiting for running steps to finish "
                    "(press Ctrl+C again to stop immediately)...[/yellow]"
                )
                pool.shutdown(wait=True, cancel_futures=True)
            except KeyboardInterrupt:
                self.logger.warning("Second interrupt, abandoning running steps. Remote state may be inconsistent.")
                self.abandoned = True
                pool.shutdown(wait=False, cancel_futures=True)
            raise CancelledError("Installation interrupted by user.", phase=key) from exc
        pool.shutdown(wait=True)

        for host in hosts:
            future = futures[host.address]
            if future.cancelled():
                continue
            error = future.exception()
            if error is not None:
                raise error
        return key

    def _run_host(self, phase: Phase, key: str, host: Host, steps: Sequence[Step]):
        if self.should_stop():
            self.registry.mark(host, HostStatus.SKIPPED)
            return

        step_name = None
        try:
            self.registry.mark(host, HostStatus.CONNECTING)
            self.connections.acquire(host.address)
            self.registry.mark(host, HostStatus.IN_PROGRESS)

            for step in steps:
                if not step.applies_to(host):
                    continue
                if self._halt.is_set():
                    self.registry.mark(host, HostStatus.SKIPPED)
                    return
                self.cancel_token.raise_if_cancelled()

                step_name = step.name
                self.registry.set_cursor(host, f"{key}:{step.name}")
                self.logger.debug("%s: %s on %s", key, step.name, host.address)
                with self.connections.session(host.address):
                    if step.destructive:
                        for target in step.backup_targets:
                            self.rollback.snapshot(host.address, target)
                    step.action(StepContext(self, phase, host, key))
                self.save_state()
        except _HaltRequested:
            self.registry.mark(host, HostStatus.SKIPPED)
            return
        except InstallerError as exc:
            self._halt.set()
            exc.with_context(host=host.address, phase=key, step=step_name)
            self.registry.mark(host, HostStatus.FAILED, error=str(exc))
            self.console.print(f"[red]{host.address}: {key} failed at {step_name or 'connect'}.[/red]")
            raise
        except Exception as exc:
            self._halt.set()
            self.registry.mark(host, HostStatus.FAILED, error=str(exc))
            raise

        self.registry.mark(host, HostStatus.DONE, phase=key)
        self.logger.info("%s done on %s", key, host.address)
