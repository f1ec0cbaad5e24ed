"""Extension lifecycle: prepare, init, register, sync and start, with recovery on re-run."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from gpinstaller.constants import MADLIB_RPM_PATTERNS, POSTGIS_RPM_PATTERNS, PXF_HOME, PXF_RPM_PATTERNS
from gpinstaller.errors import InstallerError
from gpinstaller.models import CommandResult, InstallSettings, Role, Step
from gpinstaller.services.shell import as_admin, q


class ExtensionState(str, Enum):
    NOT_PREPARED = "NOT_PREPARED"
    PREPARED = "PREPARED"
    INITIALIZED = "INITIALIZED"
    REGISTERED = "REGISTERED"
    SYNCED = "SYNCED"
    STARTED = "STARTED"
    RESET = "RESET"


FULL_SEQUENCE = (
    ExtensionState.PREPARED,
    ExtensionState.INITIALIZED,
    ExtensionState.REGISTERED,
    ExtensionState.SYNCED,
    ExtensionState.STARTED,
)


@dataclass(frozen=True)
class ExtensionDefinition:
    name: str
    package: str
    status_command: str
    running_marker: str
    commands: Dict[ExtensionState, str] = field(default_factory=dict)
    cluster_dir: Optional[str] = None
    package_patterns: Tuple[str, ...] = ()
    verify_command: Optional[str] = None


Execute = Callable[[str, bool], CommandResult]


class ExtensionLifecycle:
    """Moves one extension to STARTED.

    Current state is inferred from probes rather than a stored record: a
    running service short-circuits, an existing cluster directory gets a
    direct start attempt, and a failed start falls back to RESET and the full
    sequence. Transitions without a command are passed through.
    """

    def __init__(self, definition: ExtensionDefinition, execute: Execute, snapshot: Callable[[str], object], logger):
        self.definition = definition
        self.execute = execute
        self.snapshot = snapshot
        self.logger = logger
        self.state = ExtensionState.NOT_PREPARED
        self.history: List[ExtensionState] = [ExtensionState.NOT_PREPARED]
        self.destructive_steps: List[str] = []

    def _enter(self, state: ExtensionState):
        self.logger.debug("%s: %s -> %s", self.definition.name, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def is_running(self) -> bool:
        result = self.execute(self.definition.status_command, False)
        return result.ok and self.definition.running_marker in result.stdout

    def cluster_dir_present(self) -> bool:
        if not self.definition.cluster_dir:
            return False
        result = self.execute(f"test -d {q(self.definition.cluster_dir)} && echo present", False)
        return result.ok and "present" in result.stdout

    def transition(self, state: ExtensionState):
        command = self.definition.commands.get(state)
        if command:
            self.execute(command, True)
        self._enter(state)

    def reset(self):
        self.destructive_steps.append("reset")
        if self.definition.cluster_dir:
            self.snapshot(self.definition.cluster_dir)
        command = self.definition.commands.get(ExtensionState.RESET)
        if command:
            self.execute(command, False)
        if self.definition.cluster_dir:
            self.execute(f"rm -rf {q(self.definition.cluster_dir)}", True)
        self._enter(ExtensionState.RESET)

    def run(self) -> ExtensionState:
        name = self.definition.name
        if self.is_running():
            self.logger.info("%s is already running, nothing to do.", name)
            self._enter(ExtensionState.STARTED)
            return self.state

        if self.cluster_dir_present():
            self.logger.info("%s cluster directory exists, trying a direct start.", name)
            self._enter(ExtensionState.INITIALIZED)
            try:
                self.transition(ExtensionState.STARTED)
                return self.state
            except InstallerError as exc:
                self.logger.warning("%s failed to start (%s), resetting.", name, exc)
                self.reset()

        for state in FULL_SEQUENCE:
            self.transition(state)
        return self.state

    def verify(self) -> bool:
        """Runs the post-start check. A failed check is reported, not raised."""
        if not self.definition.verify_command:
            return True
        result = self.execute(self.definition.verify_command, False)
        if not result.ok:
            self.logger.warning(
                "%s verification failed: %s", self.definition.name, result.stderr.strip() or f"exit {result.exit_code}"
            )
            return False
        self.logger.info("%s verified: %s", self.definition.name, result.stdout.strip())
        return True


def pxf_definition(settings: InstallSettings) -> ExtensionDefinition:
    prefix = f"export PXF_BASE={PXF_HOME} PATH={PXF_HOME}/bin:$PATH && "
    query = "SELECT extversion FROM pg_extension WHERE extname = 'pxf'"
    return ExtensionDefinition(
        name="PXF",
        package="pxf-gp7",
        status_command=prefix + "pxf cluster status",
        running_marker="PXF is running",
        cluster_dir=f"{PXF_HOME}/clusters/default",
        commands={
            ExtensionState.PREPARED: prefix + "pxf cluster prepare",
            ExtensionState.INITIALIZED: prefix + "pxf cluster init",
            ExtensionState.REGISTERED: prefix + "pxf cluster register",
            ExtensionState.SYNCED: prefix + "pxf cluster sync",
            ExtensionState.STARTED: prefix + "pxf cluster start",
            ExtensionState.RESET: prefix + "pxf cluster reset -f",
        },
        package_patterns=PXF_RPM_PATTERNS,
        verify_command=prefix + f"pxf cluster status && psql -d {q(settings.database_name)} -tAc {q(query)}",
    )


def _sql_definition(
    settings: InstallSettings, name: str, package: str, extensions, patterns, check_query: str
) -> ExtensionDefinition:
    database = q(settings.database_name)
    query = f"SELECT 'running' FROM pg_extension WHERE extname = '{extensions[-1]}'"
    create = "; ".join(f"CREATE EXTENSION IF NOT EXISTS {extension}" for extension in extensions)
    return ExtensionDefinition(
        name=name,
        package=package,
        status_command=f"psql -d {database} -tAc {q(query)}",
        running_marker="running",
        commands={ExtensionState.REGISTERED: f"psql -d {database} -v ON_ERROR_STOP=1 -c {q(create + ';')}"},
        package_patterns=patterns,
        verify_command=f"psql -d {database} -tAc {q(check_query)}",
    )


def madlib_definition(settings: InstallSettings) -> ExtensionDefinition:
    return _sql_definition(
        settings, "MADlib", "madlib", ("plpython3u", "madlib"), MADLIB_RPM_PATTERNS, "SELECT madlib.version();"
    )


def postgis_definition(settings: InstallSettings) -> ExtensionDefinition:
    return _sql_definition(
        settings,
        "PostGIS",
        "postgis",
        ("postgis",),
        POSTGIS_RPM_PATTERNS,
        "SELECT ST_AsText(ST_GeomFromText('POINT(0 0)'));",
    )


def enabled_extensions(settings: InstallSettings) -> List[ExtensionDefinition]:
    definitions = []
    if settings.install_pxf:
        definitions.append(pxf_definition(settings))
    if settings.install_madlib:
        definitions.append(madlib_definition(settings))
    if settings.install_postgis:
        definitions.append(postgis_definition(settings))
    return definitions


def extension_step(definition: ExtensionDefinition, logger) -> Step:
    """Coordinator step that drives ``definition`` to STARTED."""

    def action(ctx):
        lifecycle = ExtensionLifecycle(
            definition,
            execute=lambda command, check: ctx.run(as_admin(ctx.settings, command), check=check),
            snapshot=ctx.snapshot,
            logger=logger,
        )
        lifecycle.run()
        ctx.data.put(f"extension.{definition.name}", [state.value for state in lifecycle.history])
        ctx.data.put(f"extension.{definition.name}.verified", lifecycle.verify())

    return Step(f"extension_{definition.name.lower()}", action, roles=frozenset({Role.COORDINATOR}))
