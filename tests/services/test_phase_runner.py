import signal
import threading
import time
from dataclasses import replace

import pytest

from gpinstaller.errors import (
    AuthenticationError,
    CancelledError,
    CommandFailure,
    InstallerError,
    PartialInstallError,
    ValidationError,
)
from gpinstaller.models import CommandResult, HostStatus, Phase, Role, RunState, Step
from gpinstaller.services.phase_runner import RunData


class EventLog:
    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def add(self, *event):
        with self._lock:
            self.events.append(event)

    def index(self, predicate):
        return [position for position, event in enumerate(self.events) if predicate(event)]


def _snapshot_responder(host, command):
    if command.startswith("if [ -e"):
        return CommandResult(stdout="present\n", stderr="", exit_code=0)
    return None


def _teardown_tail():
    return [Phase("STOP_CLUSTER", RunState.STOP_CLUSTER), Phase("CLEAN_HOSTS", RunState.CLEAN_HOSTS)]


def _recording_step(log, name, delay_for=None, fail_on=None, error=None, **kwargs):
    def action(ctx):
        log.add("start", ctx.key, name, ctx.host.address)
        if delay_for and ctx.host.address in delay_for:
            time.sleep(delay_for[ctx.host.address])
        if fail_on and ctx.host.address == fail_on:
            raise error or CommandFailure(name, 1, "boom")
        ctx.run(f"{name} on {ctx.host.address}")
        log.add("end", ctx.key, name, ctx.host.address)

    return Step(name, action, **kwargs)


def test_barrier_holds_next_phase_until_slowest_host(make_transport, make_harness, three_host_settings):
    harness = make_harness(three_host_settings, make_transport())
    log = EventLog()
    preflight = Phase(
        "PREFLIGHT",
        RunState.PREFLIGHT,
        steps=(_recording_step(log, "probe", delay_for={"sdw1": 0.2}),),
    )
    stop_cluster = Phase(
        "STOP_CLUSTER",
        RunState.STOP_CLUSTER,
        steps=(_recording_step(log, "prepare"),),
        dependency=preflight,
    )

    state = harness.runner.run([preflight, stop_cluster, Phase("CLEAN_HOSTS", RunState.CLEAN_HOSTS)])

    assert state == RunState.COMPLETE
    preflight_ends = log.index(lambda event: event[0] == "end" and event[1] == "PREFLIGHT")
    stop_starts = log.index(lambda event: event[0] == "start" and event[1] == "STOP_CLUSTER")
    assert len(preflight_ends) == 3
    assert len(stop_starts) == 3
    assert max(preflight_ends) < min(stop_starts)
    assert all(host.completed_phases == ["PREFLIGHT", "STOP_CLUSTER", "CLEAN_HOSTS"] for host in harness.registry.hosts)
    assert harness.connections.live_channels() == []


def test_steps_on_one_host_run_in_declared_order(make_transport, make_harness, three_host_settings):
    transport = make_transport()
    harness = make_harness(three_host_settings, transport)
    log = EventLog()
    phase = Phase(
        "PREFLIGHT",
        RunState.PREFLIGHT,
        steps=(_recording_step(log, "first"), _recording_step(log, "second"), _recording_step(log, "third")),
    )

    harness.runner.run([phase] + _teardown_tail())

    for host in ("cdw", "sdw1", "sdw2"):
        assert transport.commands_for(host) == [f"{name} on {host}" for name in ("first", "second", "third")]


def test_step_roles_limit_where_a_step_runs(make_transport, make_harness, three_host_settings):
    transport = make_transport()
    harness = make_harness(three_host_settings, transport)
    log = EventLog()
    phase = Phase(
        "PREFLIGHT",
        RunState.PREFLIGHT,
        steps=(_recording_step(log, "installer", roles=frozenset({Role.COORDINATOR})), _recording_step(log, "os")),
    )

    harness.runner.run([phase] + _teardown_tail())

    assert transport.commands_for("cdw") == ["installer on cdw", "os on cdw"]
    assert transport.commands_for("sdw1") == ["os on sdw1"]


def test_first_failure_halts_remaining_hosts(make_transport, make_harness, three_host_settings):
    settings = replace(three_host_settings, pool_width=1)
    transport = make_transport()
    harness = make_harness(settings, transport)
    log = EventLog()
    phase = Phase("PREFLIGHT", RunState.PREFLIGHT, steps=(_recording_step(log, "probe", fail_on="sdw1"),))

    with pytest.raises(CommandFailure) as exc_info:
        harness.runner.run([phase])

    error = exc_info.value
    assert (error.host, error.phase, error.step) == ("sdw1", "PREFLIGHT", "probe")
    assert harness.runner.state == RunState.FAILED
    statuses = {host.address: host.status for host in harness.registry.hosts}
    assert statuses == {"cdw": HostStatus.DONE, "sdw1": HostStatus.FAILED, "sdw2": HostStatus.SKIPPED}
    assert transport.commands_for("sdw2") == []
    assert harness.credentials.zero_count == 1


def test_partial_failure_restores_backups_and_releases_channels(make_transport, make_harness, three_host_settings):
    settings = replace(three_host_settings, pool_width=1)
    transport = make_transport(_snapshot_responder)
    harness = make_harness(settings, transport)
    log = EventLog()
    phase = Phase(
        "PREFLIGHT",
        RunState.PREFLIGHT,
        steps=(
            _recording_step(log, "write_config", fail_on="sdw1", destructive=True, backup_targets=("/etc/app.conf",)),
        ),
    )

    with pytest.raises(CommandFailure):
        harness.runner.run([phase])

    for host in ("cdw", "sdw1"):
        restores = [command for command in transport.commands_for(host) if command.startswith("rm -rf /etc/app.conf &&")]
        assert len(restores) == 1
    assert transport.commands_for("sdw2") == []
    assert harness.rollback.backups == []
    assert harness.connections.live_channels() == []
    assert all(count == 0 for count in transport.live.values())
    assert harness.credentials.zero_count == 1


def test_authentication_failure_mid_run_rolls_back_earlier_host(make_transport, make_harness, three_host_settings):
    settings = replace(three_host_settings, pool_width=1)
    transport = make_transport(
        _snapshot_responder,
        open_errors={"sdw1": [AuthenticationError("Authentication to sdw1 was rejected.", host="sdw1")]},
    )
    harness = make_harness(settings, transport)
    log = EventLog()
    preflight = Phase(
        "PREFLIGHT",
        RunState.PREFLIGHT,
        steps=(_recording_step(log, "probe"),),
        applicable_roles=frozenset({Role.COORDINATOR}),
    )
    host_setup = Phase(
        "HOST_SETUP",
        RunState.HOST_SETUP,
        steps=(_recording_step(log, "create_user", destructive=True, backup_targets=("/home/gpadmin",)),),
    )

    with pytest.raises(AuthenticationError) as exc_info:
        harness.runner.run([preflight, host_setup])

    assert exc_info.value.exit_code == 4
    assert exc_info.value.host == "sdw1"
    assert exc_info.value.step is None
    assert any(command.startswith("rm -rf /home/gpadmin && cp -a") for command in transport.commands_for("cdw"))
    assert [host for host, _policy, _loopback in transport.opens if host == "sdw2"] == []
    assert harness.registry.get("sdw2").status == HostStatus.SKIPPED
    assert harness.connections.live_channels() == []
    assert harness.credentials.zero_count == 1


def test_missing_dependency_raises_partial_install(make_transport, make_harness, three_host_settings):
    harness = make_harness(three_host_settings, make_transport())
    preflight = Phase("PREFLIGHT", RunState.PREFLIGHT)
    harness.runner.transition(RunState.PREFLIGHT)
    host_setup = Phase("HOST_SETUP", RunState.HOST_SETUP, dependency=preflight)

    with pytest.raises(PartialInstallError, match="PREFLIGHT did not complete"):
        harness.runner.run_phase(host_setup)


def test_invalid_transition_is_rejected(make_transport, make_harness, three_host_settings):
    harness = make_harness(three_host_settings, make_transport())

    with pytest.raises(InstallerError, match="Invalid phase transition: INIT -> CLUSTER_INIT"):
        harness.runner.transition(RunState.CLUSTER_INIT)


def test_out_of_order_phases_fail_the_run(make_transport, make_harness, three_host_settings):
    harness = make_harness(three_host_settings, make_transport())

    with pytest.raises(InstallerError, match="Invalid phase transition"):
        harness.runner.run([Phase("HOST_SETUP", RunState.HOST_SETUP)])

    assert harness.runner.state == RunState.FAILED


def test_values_flow_between_hosts(make_transport, make_harness, three_host_settings):
    harness = make_harness(three_host_settings, make_transport())
    received = {}

    def publish(ctx):
        time.sleep(0.05)
        ctx.data.put("admin_public_key", "ssh-rsa AAAA")

    def consume(ctx):
        received[ctx.host.address] = ctx.wait_for("admin_public_key", timeout=5)

    phase = Phase(
        "PREFLIGHT",
        RunState.PREFLIGHT,
        steps=(
            Step("publish", publish, roles=frozenset({Role.COORDINATOR})),
            Step("consume", consume, roles=frozenset({Role.SEGMENT})),
        ),
    )

    harness.runner.run([phase] + _teardown_tail())

    assert received == {"sdw1": "ssh-rsa AAAA", "sdw2": "ssh-rsa AAAA"}


def test_waiting_host_is_skipped_when_producer_fails(make_transport, make_harness, three_host_settings):
    harness = make_harness(three_host_settings, make_transport())

    def publish(ctx):
        raise ValidationError("installer package missing")

    def consume(ctx):
        ctx.wait_for("admin_public_key", timeout=5)

    phase = Phase(
        "PREFLIGHT",
        RunState.PREFLIGHT,
        steps=(
            Step("publish", publish, roles=frozenset({Role.COORDINATOR})),
            Step("consume", consume, roles=frozenset({Role.SEGMENT})),
        ),
    )

    with pytest.raises(ValidationError):
        harness.runner.run([phase])

    assert harness.registry.get("cdw").status == HostStatus.FAILED


def test_run_data_require_and_timeout():
    data = RunData()
    data.put("config", {"path": "/home/gpadmin/gpconfigs"})

    assert data.require("config") == {"path": "/home/gpadmin/gpconfigs"}
    assert data.get("missing", "default") == "default"
    with pytest.raises(InstallerError, match="was not produced"):
        data.require("missing")
    with pytest.raises(InstallerError, match="Timed out waiting"):
        data.wait_for("missing", timeout=0.05, poll_seconds=0.01)


class FailingStateService:
    def __init__(self):
        self.saved = []

    def save(self, state):
        if state["run_state"] == RunState.FAILED.value:
            raise InstallerError("Could not write state file 'state.json': disk full")
        self.saved.append(state["run_state"])


def test_state_write_failure_still_restores_and_keeps_original_error(
    make_transport, make_harness, three_host_settings
):
    settings = replace(three_host_settings, pool_width=1)
    transport = make_transport(_snapshot_responder)
    harness = make_harness(settings, transport)
    harness.runner.state_service = FailingStateService()
    log = EventLog()
    phase = Phase(
        "PREFLIGHT",
        RunState.PREFLIGHT,
        steps=(
            _recording_step(log, "write_config", fail_on="sdw1", destructive=True, backup_targets=("/etc/app.conf",)),
        ),
    )

    with pytest.raises(CommandFailure) as exc_info:
        harness.runner.run([phase])

    assert exc_info.value.host == "sdw1"
    for host in ("cdw", "sdw1"):
        assert any(command.startswith("rm -rf /etc/app.conf &&") for command in transport.commands_for(host))
    assert harness.rollback.backups == []
    assert any("Could not record the failed run state" in error for error in harness.logger.errors)
    assert harness.credentials.zero_count == 1


needs_signals = pytest.mark.skipif(not hasattr(signal, "pthread_kill"), reason="requires POSIX signals")


@pytest.fixture
def interruptible():
    previous = signal.signal(signal.SIGINT, signal.default_int_handler)
    yield
    signal.signal(signal.SIGINT, previous)


def _interrupt_main():
    signal.pthread_kill(threading.main_thread().ident, signal.SIGINT)


class HeldCommand:
    """Blocks one command on one host until released."""

    def __init__(self, host, command):
        self.host = host
        self.command = command
        self.entered = threading.Event()
        self.gate = threading.Event()
        self.finished = threading.Event()

    def __call__(self, host, command):
        if host == self.host and command == self.command:
            self.entered.set()
            self.gate.wait(10)
            self.finished.set()
        return _snapshot_responder(host, command)


def _held_phase(log):
    return Phase(
        "PREFLIGHT",
        RunState.PREFLIGHT,
        steps=(
            _recording_step(log, "hold", destructive=True, backup_targets=("/etc/app.conf",)),
            _recording_step(log, "after"),
        ),
    )


@needs_signals
def test_interrupt_lets_running_step_finish_without_starting_new_ones(
    make_transport, make_harness, three_host_settings, interruptible
):
    held = HeldCommand("sdw1", "hold on sdw1")
    transport = make_transport(held)
    harness = make_harness(three_host_settings, transport)
    log = EventLog()

    def interrupt_then_release():
        held.entered.wait(5)
        _interrupt_main()
        time.sleep(0.3)
        held.gate.set()

    helper = threading.Thread(target=interrupt_then_release)
    helper.start()
    try:
        with pytest.raises(CancelledError):
            harness.runner.run([_held_phase(log)])
    finally:
        held.gate.set()
        helper.join(5)

    assert ("end", "PREFLIGHT", "hold", "sdw1") in log.events
    assert ("start", "PREFLIGHT", "after", "sdw1") not in log.events
    assert harness.runner.abandoned is False
    assert harness.runner.state == RunState.FAILED
    assert any(command.startswith("rm -rf /etc/app.conf &&") for command in transport.commands_for("sdw1"))
    assert harness.connections.live_channels() == []
    assert all(count == 0 for count in transport.live.values())
    assert harness.credentials.zero_count == 1


@needs_signals
def test_second_interrupt_tears_down_without_waiting_for_running_step(
    make_transport, make_harness, three_host_settings, interruptible
):
    held = HeldCommand("sdw1", "hold on sdw1")
    transport = make_transport(held)
    harness = make_harness(three_host_settings, transport)
    log = EventLog()

    def interrupt_twice():
        held.entered.wait(5)
        _interrupt_main()
        time.sleep(0.3)
        _interrupt_main()

    helper = threading.Thread(target=interrupt_twice)
    helper.start()
    started = time.monotonic()
    try:
        with pytest.raises(CancelledError):
            harness.runner.run([_held_phase(log)])
        elapsed = time.monotonic() - started
        step_was_released = held.gate.is_set()
    finally:
        held.gate.set()
        helper.join(5)
        held.finished.wait(5)

    assert step_was_released is False
    assert elapsed < 5
    assert harness.runner.abandoned is True
    assert any(command.startswith("rm -rf /etc/app.conf &&") for command in transport.commands_for("cdw"))
    assert not any(command.startswith("rm -rf /etc/app.conf &&") for command in transport.commands_for("sdw1"))
    assert any("sdw1 still has a step running" in error for error in harness.logger.errors)
    assert "sdw1" in transport.closes
    assert harness.connections.live_channels() == []
    assert harness.credentials.zero_count == 1
