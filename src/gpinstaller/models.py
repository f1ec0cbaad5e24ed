"""Shared domain models for gpinstaller."""

import threading
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from gpinstaller.constants import (
    DEFAULT_ADMIN_USER,
    DEFAULT_BACKOFF_SECONDS,
    DEFAULT_CHANNEL_IDLE_MINUTES,
    DEFAULT_COMMAND_TIMEOUT_SECONDS,
    DEFAULT_COORDINATOR_PORT,
    DEFAULT_DATA_DIR,
    DEFAULT_DATABASE_NAME,
    DEFAULT_INSTALL_DIR,
    DEFAULT_INSTALL_FILES_DIR,
    DEFAULT_MAX_RETRIES,
    DEFAULT_POOL_WIDTH,
    DEFAULT_PORT_BASE,
    DEFAULT_RETRYABLE_EXIT_CODES,
)
from gpinstaller.errors import CancelledError

if TYPE_CHECKING:
    from gpinstaller.services.phase_runner import PhaseRunner, StepContext


class Role(str, Enum):
    COORDINATOR = "coordinator"
    STANDBY = "standby"
    SEGMENT = "segment"


class HostStatus(str, Enum):
    PENDING = "pending"
    CONNECTING = "connecting"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunState(str, Enum):
    INIT = "INIT"
    PREFLIGHT = "PREFLIGHT"
    HOST_SETUP = "HOST_SETUP"
    BINARY_INSTALL = "BINARY_INSTALL"
    CLUSTER_INIT = "CLUSTER_INIT"
    EXTENSION_INIT = "EXTENSION_INIT"
    STOP_CLUSTER = "STOP_CLUSTER"
    CLEAN_HOSTS = "CLEAN_HOSTS"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


ALL_ROLES = frozenset(Role)


@dataclass
class Host:
    """A cluster member. Roles are fixed at load time, status is owned by PhaseRunner."""

    address: str
    role: Role
    roles: FrozenSet[Role] = frozenset()
    status: HostStatus = HostStatus.PENDING
    completed_phases: List[str] = field(default_factory=list)
    last_error: Optional[str] = None

    def __post_init__(self):
        if not self.roles:
            self.roles = frozenset({self.role})

    def has_role(self, role: Role) -> bool:
        return role in self.roles

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "role": self.role.value,
            "roles": sorted(role.value for role in self.roles),
            "status": self.status.value,
            "completed_phases": list(self.completed_phases),
            "last_error": self.last_error,
        }


@dataclass
class Channel:
    """A reusable authenticated session to one host."""

    host: str
    socket_identifier: str
    opened_at: float
    expires_at: float
    authenticated: bool = True
    suspect: bool = False
    loopback: bool = False
    simulated: bool = False

    def is_live(self, now: Optional[float] = None) -> bool:
        now = time.monotonic() if now is None else now
        return self.authenticated and not self.suspect and now < self.expires_at


@dataclass(frozen=True)
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class ExecutionOptions:
    """Per-command timeout and retry policy."""

    timeout_seconds: Optional[float] = DEFAULT_COMMAND_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES
    backoff: str = "exponential"
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS
    retryable_exit_codes: FrozenSet[int] = DEFAULT_RETRYABLE_EXIT_CODES

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.backoff not in ("exponential", "none"):
            raise ValueError("backoff must be 'exponential' or 'none'")


@dataclass(frozen=True)
class Backup:
    host: str
    target_path: str
    snapshot_location: Optional[str]
    created_at: str
    existed: bool = True


@dataclass(frozen=True)
class Step:
    """One ordered unit of work executed on a single host."""

    name: str
    action: Callable[["StepContext"], None]
    destructive: bool = False
    backup_targets: Tuple[str, ...] = ()
    roles: Optional[FrozenSet[Role]] = None

    def applies_to(self, host: Host) -> bool:
        return self.roles is None or bool(self.roles & host.roles)


@dataclass(frozen=True)
class Phase:
    """Static phase definition. A driver replaces the default per-host step loop."""

    name: str
    state: RunState
    steps: Tuple[Step, ...] = ()
    applicable_roles: FrozenSet[Role] = ALL_ROLES
    dependency: Optional["Phase"] = None
    driver: Optional[Callable[["PhaseRunner", "Phase", List[Host]], None]] = None


@dataclass(frozen=True)
class InstallSettings:
    """Resolved, immutable run configuration."""

    coordinator_host: str
    segment_hosts: Tuple[str, ...] = ()
    standby_host: Optional[str] = None
    install_dir: str = DEFAULT_INSTALL_DIR
    data_dir: str = DEFAULT_DATA_DIR
    admin_user: str = DEFAULT_ADMIN_USER
    database_name: str = DEFAULT_DATABASE_NAME
    coordinator_port: int = DEFAULT_COORDINATOR_PORT
    port_base: int = DEFAULT_PORT_BASE
    install_files_dir: str = DEFAULT_INSTALL_FILES_DIR
    ssh_user: str = "root"
    ssh_port: int = 22
    install_pxf: bool = False
    install_madlib: bool = False
    install_postgis: bool = False
    pool_width: int = DEFAULT_POOL_WIDTH
    command_timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_backoff: str = "exponential"
    channel_idle_minutes: int = DEFAULT_CHANNEL_IDLE_MINUTES
    state_file: Optional[str] = None
    temp_dir: Optional[str] = None
    dry_run: bool = False
    teardown: bool = False
    force: bool = False
    remove_packages: bool = False
    accept_host_keys: bool = False

    @property
    def admin_home(self) -> str:
        return f"/home/{self.admin_user}"

    @property
    def coordinator_directory(self) -> str:
        return f"{self.data_dir}/master"

    @property
    def coordinator_data_dir(self) -> str:
        return f"{self.coordinator_directory}/gpseg-1"

    @property
    def extensions_enabled(self) -> bool:
        return self.install_pxf or self.install_madlib or self.install_postgis

    def execution_options(self, **overrides) -> ExecutionOptions:
        values = {
            "timeout_seconds": self.command_timeout_seconds,
            "max_retries": self.max_retries,
            "backoff": self.retry_backoff,
        }
        values.update(overrides)
        return ExecutionOptions(**values)


@dataclass
class InstallationState:
    """Aggregate run state, kept serializable for a future resume feature."""

    hosts: List[Host]
    current_phase: Optional[str] = None
    cursors: Dict[str, str] = field(default_factory=dict)
    run_state: RunState = RunState.INIT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_state": self.run_state.value,
            "current_phase": self.current_phase,
            "cursors": dict(self.cursors),
            "hosts": [host.to_dict() for host in self.hosts],
        }


class CancellationToken:
    """Cooperative cancellation flag checked at step and retry boundaries."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise CancelledError("Operation cancelled by user.")


def settings_as_dict(settings: InstallSettings) -> Dict[str, Any]:
    data = asdict(settings)
    data["segment_hosts"] = list(settings.segment_hosts)
    return data
