import logging
import os
import tempfile
import time
from typing import Callable, List, Optional

from rich.console import Console

from .constants import DEFAULT_BACKOFF_SECONDS, EXIT_FAILED, EXIT_INTERRUPTED, EXIT_OK
from .errors import CancelledError, InputError, InstallerError, TrustWarning
from .models import CancellationToken, InstallSettings, Phase, RunState
from .services.command_runner import CommandRunner
from .services.connection import ConnectionManager, DryRunTransport, SshTransport
from .services.credentials import CredentialContext, probe_automation
from .services.executor import CommandExecutor
from .services.host_registry import HostRegistry
from .services.phase_runner import PhaseRunner
from .services.phases import build_phases
from .services.rollback import RollbackManager
from .services.state import StateService

console = Console()
logger = logging.getLogger("gpinstaller")

PromptFn = Callable[[str, bool], str]
ConfirmFn = Callable[[str], bool]


class GreenplumInstaller:
    """Wires the installer services together and runs one bring-up or teardown."""

    def __init__(
        self,
        settings: InstallSettings,
        prompt_fn: Optional[PromptFn] = None,
        confirm_fn: Optional[ConfirmFn] = None,
        trust_fn: Optional[Callable[[TrustWarning], bool]] = None,
        transport=None,
        credentials: Optional[CredentialContext] = None,
        stored_password: Optional[str] = None,
        runner: Optional[CommandRunner] = None,
        host_aliases=None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.prompt_fn = prompt_fn
        self.confirm_fn = confirm_fn
        self.trust_fn = trust_fn
        self.transport = transport
        self.credentials = credentials
        self.stored_password = stored_password
        self.runner = runner or CommandRunner(logger, default_timeout=settings.command_timeout_seconds)
        self.host_aliases = host_aliases
        self.sleep = sleep

        self.cancel_token = CancellationToken()
        self.registry: Optional[HostRegistry] = None
        self.connections: Optional[ConnectionManager] = None
        self.rollback: Optional[RollbackManager] = None
        self.phase_runner: Optional[PhaseRunner] = None
        self.phases: List[Phase] = []

    @property
    def work_dir(self) -> str:
        return self.settings.temp_dir or tempfile.gettempdir()

    @property
    def state_file(self) -> str:
        return self.settings.state_file or os.path.join(self.work_dir, "gpinstaller-state.json")

    def run(self) -> int:
        exit_code = EXIT_FAILED
        try:
            logger.info("Starting gpinstaller...")
            self.registry = HostRegistry.load(self.settings, aliases=self.host_aliases)
            self.print_plan()

            if self.settings.teardown and not (self.settings.force or self.settings.dry_run):
                question = "This removes Greenplum data and configuration from every host listed above. Continue?"
                if self.confirm_fn is None or not self.confirm_fn(question):
                    console.print("[yellow]Cleanup cancelled.[/yellow]")
                    return EXIT_OK

            self.credentials = self.credentials or self.collect_credentials()
            self.wire()
            self.phase_runner.run(self.phases)

            if self.settings.teardown:
                console.print("[bold green]Cleanup completed.[/bold green]")
            else:
                console.print("[bold green]Greenplum installation completed.[/bold green]")
            exit_code = EXIT_OK
            return exit_code

        except (KeyboardInterrupt, CancelledError):
            console.print("[bold red]Operation cancelled by user.[/bold red]")
            logger.info("Operation cancelled by user")
            exit_code = EXIT_INTERRUPTED
            return exit_code
        except InstallerError as exc:
            self.report(exc)
            exit_code = exc.exit_code
            return exit_code
        except Exception as exc:
            console.print(f"[bold red]Unexpected error:[/bold red] {exc}")
            logger.exception("Unexpected error")
            exit_code = EXIT_FAILED
            return exit_code
        finally:
            self.cleanup()

    def collect_credentials(self) -> CredentialContext:
        if self.settings.dry_run:
            return CredentialContext.empty()

        def automation_probe() -> bool:
            return probe_automation(logger, self.runner)

        if self.stored_password:
            return CredentialContext.from_stored(self.stored_password, automation_probe=automation_probe)
        if self.prompt_fn is None:
            raise InputError("A password is required but no interactive prompt is available.")
        return CredentialContext.collect(self.prompt_fn, logger, automation_probe=automation_probe)

    def wire(self):
        settings = self.settings
        registry = self.registry

        transport = self.transport
        if transport is None:
            if settings.dry_run:
                transport = DryRunTransport(logger, console)
            else:
                transport = SshTransport(
                    self.runner,
                    logger,
                    control_dir=os.path.join(self.work_dir, "gpinstaller-ssh"),
                    ssh_user=settings.ssh_user,
                    ssh_port=settings.ssh_port,
                )
        self.transport = transport

        trust_callback = self.trust_fn
        if settings.accept_host_keys:

            def trust_callback(warning: TrustWarning) -> bool:
                logger.warning("Accepting host key for %s (--accept-host-keys).", warning.host)
                return True

        loopback = {registry.coordinator.address} if registry.is_single_node else set()
        self.connections = ConnectionManager(
            transport,
            self.credentials,
            logger,
            idle_seconds=settings.channel_idle_minutes * 60,
            trust_callback=trust_callback,
            loopback_hosts=loopback,
            connect_retries=settings.max_retries,
            backoff_seconds=DEFAULT_BACKOFF_SECONDS,
            cancel_token=self.cancel_token,
            sleep=self.sleep,
        )

        options = settings.execution_options()
        executor = CommandExecutor(self.connections, logger, options, self.cancel_token, sleep=self.sleep)
        # Restores must still run after a cancellation, so they get their own token.
        rollback_executor = CommandExecutor(self.connections, logger, options, sleep=self.sleep)
        self.rollback = RollbackManager(rollback_executor, self.connections, self.credentials, settings, logger)

        self.phase_runner = PhaseRunner(
            registry,
            self.connections,
            executor,
            self.rollback,
            settings,
            logger,
            console,
            state_service=StateService(self.state_file, logger),
            cancel_token=self.cancel_token,
        )
        self.phases = build_phases(settings, registry, logger)

    def print_plan(self):
        registry = self.registry
        mode = "Teardown" if self.settings.teardown else "Installation"
        if self.settings.dry_run:
            mode = f"{mode} (dry-run)"
        console.print(f"[bold blue]{mode} plan[/bold blue]")
        console.print(f"[blue]Coordinator:[/blue] {registry.coordinator.address}")
        if registry.is_single_node:
            console.print("[blue]Single-node deployment: all roles on one host.[/blue]")
            return
        segments = ", ".join(host.address for host in registry.segments)
        console.print(f"[blue]Segments:[/blue] {segments}")
        if registry.standby is not None:
            console.print(f"[blue]Standby:[/blue] {registry.standby.address}")

    def report(self, exc: InstallerError):
        console.print(f"[bold red]Error:[/bold red] {exc}")
        location = [
            f"{label}={value}"
            for label, value in (("host", exc.host), ("phase", exc.phase), ("step", exc.step))
            if value
        ]
        if location:
            console.print(f"[red]Failed at {', '.join(location)}[/red]")
        if exc.remediation and "Suggested action" not in str(exc):
            console.print(f"[yellow]Suggested action:[/yellow] {exc.remediation}")
        console.print(f"[red]Exit code {exc.exit_code}[/red]")
        logger.error("%s (host=%s phase=%s step=%s)", exc, exc.host, exc.phase, exc.step)

    @property
    def final_state(self) -> RunState:
        return self.phase_runner.state if self.phase_runner else RunState.INIT

    def cleanup(self):
        if self.rollback is not None:
            self.rollback.cleanup_run()
        elif self.credentials is not None:
            self.credentials.zero()
