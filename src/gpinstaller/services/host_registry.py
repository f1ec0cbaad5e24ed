"""Canonical host list with roles and per-host progress."""

import re
import socket
import threading
from typing import Dict, Iterable, List, Optional, Sequence, Union

from gpinstaller.errors import ValidationError
from gpinstaller.errors_catalog import actionable_error, remediation
from gpinstaller.models import ALL_ROLES, Host, HostStatus, InstallationState, InstallSettings, Phase, Role

HOSTNAME_PATTERN = re.compile(r"^[a-zA-Z0-9.-]+$")
MAX_HOSTNAME_LENGTH = 253
LOCAL_ALIASES = frozenset({"localhost", "127.0.0.1", "::1"})


def local_aliases() -> frozenset:
    names = set(LOCAL_ALIASES)
    hostname = socket.gethostname().lower()
    names.update({hostname, hostname.split(".")[0]})
    return frozenset(names)


def normalize_host(address: Optional[str], aliases: Iterable[str] = LOCAL_ALIASES) -> str:
    value = (address or "").strip().lower().rstrip(".")
    if value in aliases:
        return "localhost"
    return value


def validate_hostname(address: str):
    if len(address) > MAX_HOSTNAME_LENGTH or not HOSTNAME_PATTERN.match(address):
        raise ValidationError(
            actionable_error("invalid_hostname", host=address),
            host=address,
            remediation=remediation("invalid_hostname", host=address),
        )


def _collision(address: str, detail: str) -> ValidationError:
    return ValidationError(
        actionable_error("host_collision", host=address, detail=detail),
        host=address,
        remediation=remediation("host_collision", host=address, detail=detail),
    )


class HostRegistry:
    """Hosts ordered coordinator first, then segments in config order, then standby."""

    def __init__(self, hosts: Sequence[Host], is_single_node: bool = False):
        self._hosts = list(hosts)
        self.is_single_node = is_single_node
        self._lock = threading.Lock()
        self._by_address = {host.address: host for host in self._hosts}
        self._governed: Dict[str, List[str]] = {}
        self.current_phase: Optional[str] = None
        self.cursors: Dict[str, str] = {}

    @classmethod
    def load(cls, settings: InstallSettings, aliases: Optional[Iterable[str]] = None) -> "HostRegistry":
        aliases = frozenset(aliases) if aliases is not None else local_aliases()

        coordinator = normalize_host(settings.coordinator_host, aliases)
        if not coordinator:
            raise ValidationError(
                actionable_error("coordinator_missing"),
                remediation=remediation("coordinator_missing"),
            )
        validate_hostname(coordinator)

        segments: List[str] = []
        for raw in settings.segment_hosts:
            address = normalize_host(raw, aliases)
            if not address:
                continue
            validate_hostname(address)
            if address in segments:
                raise _collision(address, "duplicate segment host")
            segments.append(address)

        standby = normalize_host(settings.standby_host, aliases) or None
        if standby is not None:
            validate_hostname(standby)
            if standby == coordinator:
                raise _collision(standby, "standby equals coordinator")
            if standby in segments:
                raise _collision(standby, "standby is also a segment host")

        remote_segments = [address for address in segments if address != coordinator]
        if not remote_segments and standby is None:
            host = Host(address=coordinator, role=Role.COORDINATOR, roles=ALL_ROLES)
            return cls([host], is_single_node=True)

        if not remote_segments:
            raise ValidationError(
                actionable_error("segments_missing"),
                remediation=remediation("segments_missing"),
            )

        hosts = []
        coordinator_roles = {Role.COORDINATOR}
        if coordinator in segments:
            coordinator_roles.add(Role.SEGMENT)
        hosts.append(Host(address=coordinator, role=Role.COORDINATOR, roles=frozenset(coordinator_roles)))
        hosts.extend(Host(address=address, role=Role.SEGMENT) for address in remote_segments)
        if standby is not None:
            hosts.append(Host(address=standby, role=Role.STANDBY))
        return cls(hosts)

    @property
    def hosts(self) -> List[Host]:
        return list(self._hosts)

    @property
    def coordinator(self) -> Host:
        return next(host for host in self._hosts if host.has_role(Role.COORDINATOR))

    @property
    def standby(self) -> Optional[Host]:
        if self.is_single_node:
            return None
        return next((host for host in self._hosts if host.role == Role.STANDBY), None)

    @property
    def segments(self) -> List[Host]:
        return [host for host in self._hosts if host.has_role(Role.SEGMENT)]

    def get(self, address: str) -> Host:
        return self._by_address[address]

    def hosts_for(self, selector: Union[Role, Phase, Iterable[Role]]) -> List[Host]:
        if isinstance(selector, Role):
            roles = frozenset({selector})
        elif isinstance(selector, Phase):
            roles = selector.applicable_roles
        else:
            roles = frozenset(selector)
        return [host for host in self._hosts if host.roles & roles]

    def begin(self, key: str, hosts: Iterable[Host]):
        """Records which hosts a phase or stage governs."""
        hosts = list(hosts)
        with self._lock:
            self._governed[key] = [host.address for host in hosts]
            self.current_phase = key
            for host in hosts:
                host.status = HostStatus.PENDING
                host.last_error = None

    def mark(self, host: Host, status: HostStatus, phase: Optional[str] = None, error: Optional[str] = None):
        with self._lock:
            host.status = status
            if error is not None:
                host.last_error = error
            if status == HostStatus.DONE and phase and phase not in host.completed_phases:
                host.completed_phases.append(phase)

    def set_cursor(self, host: Host, step: str):
        with self._lock:
            self.cursors[host.address] = step

    def all_done(self, phase: Union[Phase, str]) -> bool:
        key = phase.name if isinstance(phase, Phase) else phase
        with self._lock:
            governed = self._governed.get(key)
            if governed is None:
                return False
            return all(key in self._by_address[address].completed_phases for address in governed)

    def failed_hosts(self) -> List[Host]:
        return [host for host in self._hosts if host.status == HostStatus.FAILED]

    def snapshot(self, run_state=None) -> InstallationState:
        with self._lock:
            state = InstallationState(
                hosts=[Host(**{**vars(host), "completed_phases": list(host.completed_phases)}) for host in self._hosts],
                current_phase=self.current_phase,
                cursors=dict(self.cursors),
            )
        if run_state is not None:
            state.run_state = run_state
        return state
