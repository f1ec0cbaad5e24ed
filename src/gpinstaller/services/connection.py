"""Multiplexed SSH channels, one per host."""

import hashlib
import os
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from gpinstaller.constants import DEFAULT_CONNECT_TIMEOUT_SECONDS, SSH_CONNECTION_EXIT_CODE
from gpinstaller.errors import (
    AuthenticationError,
    ChannelLostError,
    CommandTimeoutError,
    ConnectivityError,
    InstallerError,
    TrustWarning,
)
from gpinstaller.errors_catalog import actionable_error, remediation
from gpinstaller.models import CancellationToken, Channel, CommandResult
from gpinstaller.services.credentials import CredentialContext
from gpinstaller.services.retry import retry_call

LOOPBACK_ADDRESS = "localhost"

_HOST_KEY_MARKERS = (
    "Host key verification failed",
    "No ECDSA host key is known",
    "No ED25519 host key is known",
    "No RSA host key is known",
)
_HOST_KEY_CHANGED_MARKER = "REMOTE HOST IDENTIFICATION HAS CHANGED"
_AUTH_MARKERS = ("Permission denied", "Authentication failed", "Too many authentication failures")
_CONTROL_SOCKET_MARKERS = ("Control socket", "mux_client", "ControlSocket")
# sshpass exits 5 when the password is rejected.
_SSHPASS_BAD_PASSWORD = 5


class SshTransport:
    """OpenSSH ControlMaster transport driven through CommandRunner."""

    simulated = False

    def __init__(
        self,
        runner,
        logger,
        control_dir: str,
        ssh_user: str = "root",
        ssh_port: int = 22,
        connect_timeout: int = DEFAULT_CONNECT_TIMEOUT_SECONDS,
    ):
        self.runner = runner
        self.logger = logger
        self.control_dir = control_dir
        self.ssh_user = ssh_user
        self.ssh_port = ssh_port
        self.connect_timeout = connect_timeout

    def socket_path(self, host: str) -> str:
        # Unix socket paths are limited to ~104 bytes, keep the name short.
        digest = hashlib.sha1(f"{self.ssh_user}@{host}:{self.ssh_port}".encode("utf-8")).hexdigest()
        return os.path.join(self.control_dir, f"gpi-{digest[:12]}.sock")

    def _target(self, host: str, loopback: bool = False) -> str:
        return f"{self.ssh_user}@{LOOPBACK_ADDRESS if loopback else host}"

    def open(
        self,
        host: str,
        credentials: CredentialContext,
        idle_seconds: int,
        host_key_policy: str = "yes",
        loopback: bool = False,
    ) -> str:
        os.makedirs(self.control_dir, mode=0o700, exist_ok=True)
        socket = self.socket_path(host)
        if os.path.exists(socket):
            os.remove(socket)

        cmd = [
            "ssh",
            "-M",
            "-S",
            socket,
            "-fN",
            "-p",
            str(self.ssh_port),
            "-o",
            "ControlMaster=yes",
            "-o",
            f"ControlPersist={idle_seconds}s",
            "-o",
            f"StrictHostKeyChecking={host_key_policy}",
            "-o",
            f"ConnectTimeout={self.connect_timeout}",
        ]
        env = credentials.env()
        if env:
            cmd = ["sshpass", "-e"] + cmd + ["-o", "BatchMode=no"]
            timeout = self.connect_timeout * 3
        else:
            # ssh prompts on the terminal, bounded only by the runner default.
            cmd += ["-o", "BatchMode=no"]
            timeout = None
        cmd.append(self._target(host, loopback))

        try:
            result = self.runner.run(
                cmd,
                check=False,
                capture_output=True,
                timeout=timeout,
                env=env or None,
            )
        except CommandTimeoutError as exc:
            raise ConnectivityError(
                actionable_error("host_unreachable", host=host),
                host=host,
                remediation=remediation("host_unreachable", host=host),
            ) from exc

        if result.returncode != 0:
            self._raise_for_open_failure(host, result.returncode, (result.stderr or "").strip())
        self.logger.debug("Opened control master for %s at %s", host, socket)
        return socket

    def _raise_for_open_failure(self, host: str, returncode: int, stderr: str):
        if _HOST_KEY_CHANGED_MARKER in stderr:
            raise TrustWarning(host, detail=stderr, changed=True)
        if any(marker in stderr for marker in _HOST_KEY_MARKERS):
            raise TrustWarning(host, detail=stderr)
        if returncode == _SSHPASS_BAD_PASSWORD or any(marker in stderr for marker in _AUTH_MARKERS):
            raise AuthenticationError(
                actionable_error("authentication_failed", host=host),
                host=host,
                remediation=remediation("authentication_failed", host=host),
            )
        raise ConnectivityError(
            f"{actionable_error('host_unreachable', host=host)} ({stderr or f'exit {returncode}'})",
            host=host,
            remediation=remediation("host_unreachable", host=host),
        )

    def close(self, channel: Channel):
        if os.path.exists(channel.socket_identifier):
            self.runner.run(
                ["ssh", "-S", channel.socket_identifier, "-O", "exit", self._target(channel.host, channel.loopback)],
                check=False,
                capture_output=True,
                timeout=self.connect_timeout,
            )
        if os.path.exists(channel.socket_identifier):
            os.remove(channel.socket_identifier)

    def execute(
        self,
        channel: Channel,
        command: str,
        timeout: Optional[float],
        display: Optional[str] = None,
    ) -> CommandResult:
        if not os.path.exists(channel.socket_identifier):
            raise ChannelLostError(f"Control socket for {channel.host} is gone.", host=channel.host)

        cmd = [
            "ssh",
            "-S",
            channel.socket_identifier,
            "-p",
            str(self.ssh_port),
            "-o",
            "ControlMaster=no",
            "-o",
            "BatchMode=yes",
            self._target(channel.host, channel.loopback),
            command,
        ]
        shown = f"ssh {channel.host} {display or command}"
        result = self.runner.run(cmd, check=False, capture_output=True, timeout=timeout, display=shown)
        stderr = result.stderr or ""
        if result.returncode == SSH_CONNECTION_EXIT_CODE and any(
            marker in stderr for marker in _CONTROL_SOCKET_MARKERS
        ):
            raise ChannelLostError(f"Channel to {channel.host} was lost: {stderr.strip()}", host=channel.host)
        return CommandResult(stdout=result.stdout or "", stderr=stderr, exit_code=result.returncode)

    def copy(self, channel: Channel, local_path: str, remote_path: str, timeout: Optional[float] = None):
        cmd = [
            "scp",
            "-q",
            "-P",
            str(self.ssh_port),
            "-o",
            f"ControlPath={channel.socket_identifier}",
            "-o",
            "BatchMode=yes",
            local_path,
            f"{self._target(channel.host, channel.loopback)}:{remote_path}",
        ]
        self.runner.run(cmd, check=True, capture_output=True, timeout=timeout)

    def forget_host_key(self, host: str):
        self.runner.run(["ssh-keygen", "-R", host], check=False, capture_output=True)


class DryRunTransport:
    """Simulated transport: opens nothing and reports success for every command."""

    simulated = True

    def __init__(self, logger, console=None):
        self.logger = logger
        self.console = console
        self.commands: List[Tuple[str, str]] = []
        self.copies: List[Tuple[str, str, str]] = []
        self._lock = threading.Lock()

    def open(self, host, credentials, idle_seconds, host_key_policy="yes", loopback=False) -> str:
        return f"dry-run:{host}"

    def close(self, channel: Channel):
        return None

    def execute(self, channel: Channel, command: str, timeout, display=None) -> CommandResult:
        shown = display or command
        with self._lock:
            self.commands.append((channel.host, shown))
        self.logger.info("[dry-run] %s: %s", channel.host, shown)
        return CommandResult(stdout="", stderr="", exit_code=0)

    def copy(self, channel: Channel, local_path: str, remote_path: str, timeout=None):
        with self._lock:
            self.copies.append((channel.host, local_path, remote_path))
        self.logger.info("[dry-run] %s: copy %s -> %s", channel.host, local_path, remote_path)

    def forget_host_key(self, host: str):
        return None


TrustCallback = Callable[[TrustWarning], bool]


class ConnectionManager:
    """Owns at most one live channel per host.

    Access to a host's channel is serialized by a per-host lock; ``session``
    holds that lock for the duration of a step so two workers never share a
    channel concurrently.
    """

    def __init__(
        self,
        transport,
        credentials: CredentialContext,
        logger,
        idle_seconds: int = 30 * 60,
        trust_callback: Optional[TrustCallback] = None,
        loopback_hosts: Iterable[str] = (),
        connect_retries: int = 2,
        backoff_seconds: float = 1.0,
        cancel_token: Optional[CancellationToken] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.transport = transport
        self.credentials = credentials
        self.logger = logger
        self.idle_seconds = idle_seconds
        self.trust_callback = trust_callback
        self.loopback_hosts = frozenset(loopback_hosts)
        self.connect_retries = connect_retries
        self.backoff_seconds = backoff_seconds
        self.cancel_token = cancel_token
        self.clock = clock
        self.sleep = sleep

        self._channels: Dict[str, Channel] = {}
        self._host_locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()
        self._prompt_lock = threading.Lock()
        self._auth_lock = threading.Lock()
        self._trusted: Set[str] = set()

    def _lock_for(self, host: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._host_locks.get(host)
            if lock is None:
                lock = threading.RLock()
                self._host_locks[host] = lock
            return lock

    def acquire(self, host: str) -> Channel:
        with self._lock_for(host):
            channel = self._channels.get(host)
            if channel is not None and channel.is_live(self.clock()):
                return channel
            if channel is not None:
                self.logger.debug("Channel to %s is stale, reopening.", host)
                self._close(channel)

            channel = self._open(host)
            with self._registry_lock:
                self._channels[host] = channel
            return channel

    def _open(self, host: str) -> Channel:
        loopback = host in self.loopback_hosts
        policy = "accept-new" if loopback or host in self._trusted else "yes"
        try:
            socket = self._open_with_retry(host, policy, loopback)
        except TrustWarning as warning:
            if not self._accept_host_key(warning):
                raise ConnectivityError(
                    actionable_error("host_key_rejected", host=host),
                    host=host,
                    remediation=remediation("host_key_rejected", host=host),
                ) from warning
            if warning.changed:
                self.transport.forget_host_key(host)
            try:
                socket = self._open_with_retry(host, "accept-new", loopback)
            except TrustWarning as repeated:
                raise ConnectivityError(
                    actionable_error("host_key_rejected", host=host),
                    host=host,
                    remediation=remediation("host_key_rejected", host=host),
                ) from repeated

        now = self.clock()
        return Channel(
            host=host,
            socket_identifier=socket,
            opened_at=now,
            expires_at=now + self.idle_seconds,
            authenticated=True,
            loopback=loopback,
            simulated=getattr(self.transport, "simulated", False),
        )

    def _open_with_retry(self, host: str, policy: str, loopback: bool) -> str:
        def on_retry(attempt: int, exc: BaseException):
            self.logger.warning("Connection to %s failed (attempt %s): %s", host, attempt, exc)

        def open_once() -> str:
            if self.credentials.env():
                return self.transport.open(host, self.credentials, self.idle_seconds, policy, loopback)
            # Interactive logins share one terminal, prompt for one host at a time.
            with self._auth_lock:
                return self.transport.open(host, self.credentials, self.idle_seconds, policy, loopback)

        return retry_call(
            open_once,
            should_retry=lambda exc: isinstance(exc, ConnectivityError),
            max_retries=self.connect_retries,
            backoff="exponential",
            backoff_seconds=self.backoff_seconds,
            on_retry=on_retry,
            cancel_token=self.cancel_token,
            sleep=self.sleep,
        )

    def _accept_host_key(self, warning: TrustWarning) -> bool:
        with self._prompt_lock:
            if warning.host in self._trusted:
                return True
            if self.trust_callback is None or not self.trust_callback(warning):
                self.logger.warning("Host key for %s was not accepted.", warning.host)
                return False
            self._trusted.add(warning.host)
            self.logger.warning("Accepted host key for %s for this run.", warning.host)
            return True

    def refresh(self, host: str):
        with self._lock_for(host):
            channel = self._channels.get(host)
            if channel is not None:
                channel.expires_at = self.clock() + self.idle_seconds

    def mark_suspect(self, host: str):
        with self._lock_for(host):
            channel = self._channels.get(host)
            if channel is not None:
                channel.suspect = True

    def release(self, host: str):
        with self._lock_for(host):
            with self._registry_lock:
                channel = self._channels.pop(host, None)
            if channel is not None:
                self._close(channel)

    def release_all(self, force: bool = False):
        """Closes every channel.

        With ``force``, a channel whose host lock is held by a running step is
        closed anyway instead of waiting for the step to finish.
        """
        with self._registry_lock:
            hosts = list(self._channels)
        for host in hosts:
            if not force:
                self.release(host)
                continue
            lock = self._lock_for(host)
            if lock.acquire(blocking=False):
                try:
                    self.release(host)
                finally:
                    lock.release()
                continue
            self.logger.warning("Closing channel to %s while a step is still using it.", host)
            with self._registry_lock:
                channel = self._channels.pop(host, None)
            if channel is not None:
                self._close(channel)

    def busy_hosts(self) -> Set[str]:
        """Hosts whose channel lock is currently held by another thread."""
        with self._registry_lock:
            locks = list(self._host_locks.items())
        busy = set()
        for host, lock in locks:
            if lock.acquire(blocking=False):
                lock.release()
            else:
                busy.add(host)
        return busy

    def _close(self, channel: Channel):
        try:
            self.transport.close(channel)
        except (InstallerError, OSError) as exc:
            self.logger.warning("Could not close channel to %s: %s", channel.host, exc)

    @contextmanager
    def session(self, host: str):
        with self._lock_for(host):
            yield self.acquire(host)

    def live_channels(self) -> List[Channel]:
        now = self.clock()
        with self._registry_lock:
            return [channel for channel in self._channels.values() if channel.is_live(now)]
