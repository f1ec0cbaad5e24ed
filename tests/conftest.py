import threading
import time
from collections import defaultdict

import pytest

from gpinstaller.models import CommandResult, InstallSettings
from gpinstaller.services.connection import ConnectionManager
from gpinstaller.services.credentials import CredentialContext
from gpinstaller.services.executor import CommandExecutor
from gpinstaller.services.host_registry import HostRegistry
from gpinstaller.services.phase_runner import PhaseRunner
from gpinstaller.services.rollback import RollbackManager


class DummyLogger:
    def __init__(self):
        self.warnings = []
        self.errors = []

    def debug(self, *_args, **_kwargs):
        return None

    def info(self, *_args, **_kwargs):
        return None

    def warning(self, message, *args, **_kwargs):
        self.warnings.append(message % args if args else message)

    def error(self, message, *args, **_kwargs):
        self.errors.append(message % args if args else message)

    def exception(self, *_args, **_kwargs):
        return None


class DummyConsole:
    def __init__(self):
        self.messages = []

    def print(self, message, *_args, **_kwargs):
        self.messages.append(str(message))


class FakeTransport:
    """In-memory transport that records every open, close, command and copy."""

    simulated = False

    def __init__(self, responder=None, open_errors=None, open_delay=0.0):
        self.responder = responder
        self.open_errors = {host: list(errors) for host, errors in (open_errors or {}).items()}
        self.open_delay = open_delay
        self.opens = []
        self.closes = []
        self.commands = []
        self.copies = []
        self.forgotten = []
        self.live = defaultdict(int)
        self.max_live = defaultdict(int)
        self._lock = threading.Lock()

    def open(self, host, credentials, idle_seconds, host_key_policy="yes", loopback=False):
        with self._lock:
            self.opens.append((host, host_key_policy, loopback))
            pending = self.open_errors.get(host)
            error = pending.pop(0) if pending else None
        if error is not None:
            raise error
        if self.open_delay:
            time.sleep(self.open_delay)
        with self._lock:
            self.live[host] += 1
            self.max_live[host] = max(self.max_live[host], self.live[host])
        return f"/fake/{host}.sock"

    def close(self, channel):
        with self._lock:
            self.closes.append(channel.host)
            self.live[channel.host] -= 1

    def execute(self, channel, command, timeout, display=None):
        with self._lock:
            self.commands.append((channel.host, command))
        if self.responder is not None:
            result = self.responder(channel.host, command)
            if result is not None:
                return result
        return CommandResult(stdout="", stderr="", exit_code=0)

    def copy(self, channel, local_path, remote_path, timeout=None):
        with self._lock:
            self.copies.append((channel.host, local_path, remote_path))

    def forget_host_key(self, host):
        self.forgotten.append(host)

    def commands_for(self, host):
        return [command for command_host, command in self.commands if command_host == host]


class Harness:
    """Fully wired services around a FakeTransport."""

    def __init__(self, settings, transport, aliases=("localhost", "127.0.0.1")):
        self.settings = settings
        self.transport = transport
        self.logger = DummyLogger()
        self.console = DummyConsole()
        self.credentials = CredentialContext("secret-password", automation_available=True)
        self.registry = HostRegistry.load(settings, aliases=aliases)
        loopback = {self.registry.coordinator.address} if self.registry.is_single_node else set()
        self.connections = ConnectionManager(
            transport,
            self.credentials,
            self.logger,
            loopback_hosts=loopback,
            connect_retries=0,
            sleep=lambda _seconds: None,
        )
        options = settings.execution_options(backoff="none")
        self.executor = CommandExecutor(self.connections, self.logger, options, sleep=lambda _seconds: None)
        self.rollback = RollbackManager(
            CommandExecutor(self.connections, self.logger, options, sleep=lambda _seconds: None),
            self.connections,
            self.credentials,
            settings,
            self.logger,
        )
        self.runner = PhaseRunner(
            self.registry,
            self.connections,
            self.executor,
            self.rollback,
            settings,
            self.logger,
            self.console,
            cancel_token=self.executor.cancel_token,
        )


@pytest.fixture
def logger():
    return DummyLogger()


@pytest.fixture
def console():
    return DummyConsole()


@pytest.fixture
def make_transport():
    return FakeTransport


@pytest.fixture
def make_harness():
    return Harness


@pytest.fixture
def three_host_settings(tmp_path):
    return InstallSettings(
        coordinator_host="cdw",
        segment_hosts=("sdw1", "sdw2"),
        temp_dir=str(tmp_path),
        pool_width=4,
        max_retries=0,
    )
