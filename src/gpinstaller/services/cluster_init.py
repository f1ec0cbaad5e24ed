"""Cluster bring-up: config generation, coordinator, segments, standby, verification."""

import os
import tempfile
import time
from typing import Callable, List, Sequence

from gpinstaller.constants import DEFAULT_MIRROR_PORT_BASE, REMOTE_TEMP_DIR
from gpinstaller.errors import CommandFailure, InstallerError, PartialInstallError
from gpinstaller.errors_catalog import actionable_error, remediation
from gpinstaller.models import Host, InstallSettings, Phase, Step
from gpinstaller.services.shell import admin_environment, as_admin, privileged, q

CONFIG_FILE_NAME = "gpinitsystem_config"
HOSTFILE_NAME = "hostfile_gpinitsystem"
ENV_MARKER = "# Greenplum environment (gpinstaller)"
READY_POLL_ATTEMPTS = 30
READY_POLL_SECONDS = 10.0
INIT_TIMEOUT_SECONDS = 3600.0


class ClusterInitOrchestrator:
    """Nested CLUSTER_INIT machine run as a phase driver.

    Stages run in a fixed order and each is a barrier for the next, so segment
    work never starts before the coordinator reports ready.
    """

    STAGES = ("GENERATE_CONFIG", "INIT_COORDINATOR", "INIT_SEGMENTS", "INIT_STANDBY", "VERIFY")

    def __init__(self, settings: InstallSettings, logger, sleep: Callable[[float], None] = time.sleep):
        self.settings = settings
        self.logger = logger
        self.sleep = sleep

    @property
    def config_dir(self) -> str:
        return f"{self.settings.admin_home}/gpconfigs"

    @property
    def config_path(self) -> str:
        return f"{self.config_dir}/{CONFIG_FILE_NAME}"

    @property
    def hostfile_path(self) -> str:
        return f"{self.config_dir}/{HOSTFILE_NAME}"

    def __call__(self, runner, phase: Phase, hosts: Sequence[Host]):
        registry = runner.registry
        coordinator = registry.coordinator

        self._stage(runner, phase, [coordinator], self.generate_steps(), "GENERATE_CONFIG")
        self._stage(runner, phase, [coordinator], self.coordinator_steps(), "INIT_COORDINATOR")
        self._stage(runner, phase, registry.segments, self.segment_steps(), "INIT_SEGMENTS")
        if registry.standby is not None:
            self._stage(runner, phase, [registry.standby], self.standby_steps(), "INIT_STANDBY")
        verify_steps = (Step("verify_cluster", self.verify), Step("check_connectivity", self.check_connectivity))
        self._stage(runner, phase, [coordinator], verify_steps, "VERIFY")

    def _stage(self, runner, phase: Phase, hosts: List[Host], steps: Sequence[Step], stage: str):
        self.logger.info("Cluster init stage %s on %s host(s)", stage, len(hosts))
        key = runner.run_stage(phase, hosts, steps, stage=stage)
        if not runner.registry.all_done(key):
            raise PartialInstallError(
                actionable_error("phase_failed", phase=key),
                phase=key,
                remediation=remediation("phase_failed", phase=key),
            )

    def generate_steps(self) -> Sequence[Step]:
        return (
            Step(
                "generate_config",
                self.generate_config,
                destructive=True,
                backup_targets=(self.config_path, self.hostfile_path),
            ),
        )

    def coordinator_steps(self) -> Sequence[Step]:
        pg_hba = f"{self.settings.coordinator_data_dir}/pg_hba.conf"
        bashrc = f"{self.settings.admin_home}/.bashrc"
        return (
            Step("run_gpinitsystem", self.init_coordinator),
            Step("wait_for_coordinator", self.wait_until_ready),
            Step("configure_pg_hba", self.configure_pg_hba, destructive=True, backup_targets=(pg_hba,)),
            Step("configure_admin_environment", self.configure_environment, destructive=True, backup_targets=(bashrc,)),
        )

    def segment_steps(self) -> Sequence[Step]:
        bashrc = f"{self.settings.admin_home}/.bashrc"
        return (
            Step("configure_admin_environment", self.configure_environment, destructive=True, backup_targets=(bashrc,)),
            Step("verify_segment_directories", self.verify_segment_directories),
        )

    def standby_steps(self) -> Sequence[Step]:
        bashrc = f"{self.settings.admin_home}/.bashrc"
        return (
            Step("prepare_standby", self.prepare_standby),
            Step("configure_admin_environment", self.configure_environment, destructive=True, backup_targets=(bashrc,)),
            Step("run_gpinitstandby", self.init_standby),
        )

    def render_config(self, coordinator_name: str, segment_names: Sequence[str]) -> str:
        settings = self.settings
        lines = [
            'ARRAY_NAME="Greenplum Data Platform"',
            "SEG_PREFIX=gpseg",
            f"PORT_BASE={settings.port_base}",
            f"declare -a DATA_DIRECTORY=({settings.data_dir}/primary)",
            f"COORDINATOR_HOSTNAME={coordinator_name}",
            f"COORDINATOR_DIRECTORY={settings.coordinator_directory}",
            f"COORDINATOR_PORT={settings.coordinator_port}",
            "TRUSTED_SHELL=ssh",
            "CHECK_POINT_SEGMENTS=8",
            "ENCODING=UNICODE",
            f"DATABASE_NAME={settings.database_name}",
            f"MACHINE_LIST_FILE={self.hostfile_path}",
        ]
        if len(segment_names) > 1:
            lines.append(f"MIRROR_PORT_BASE={DEFAULT_MIRROR_PORT_BASE}")
            lines.append(f"declare -a MIRROR_DATA_DIRECTORY=({settings.data_dir}/mirror)")
        return "\n".join(lines) + "\n"

    @staticmethod
    def render_hostfile(segment_names: Sequence[str]) -> str:
        return "\n".join(segment_names) + "\n"

    def _resolve_name(self, ctx, address: str) -> str:
        if address != "localhost":
            return address
        return ctx.run("hostname").stdout.strip() or address

    def generate_config(self, ctx):
        registry = ctx.registry
        coordinator_name = self._resolve_name(ctx, registry.coordinator.address)
        segment_names = []
        for host in registry.segments:
            name = coordinator_name if host is registry.coordinator else host.address
            if name not in segment_names:
                segment_names.append(name)

        config = self.render_config(coordinator_name, segment_names)
        hostfile = self.render_hostfile(segment_names)

        local_dir = self.settings.temp_dir or tempfile.gettempdir()
        os.makedirs(local_dir, exist_ok=True)
        uploads = []
        for name, content, destination in (
            (CONFIG_FILE_NAME, config, self.config_path),
            (HOSTFILE_NAME, hostfile, self.hostfile_path),
        ):
            local_path = os.path.join(local_dir, f"gpinstaller-{name}")
            with open(local_path, "w", encoding="utf-8") as file_obj:
                file_obj.write(content)
            ctx.runner.rollback.register_local_file(local_path)

            staged = f"{REMOTE_TEMP_DIR}/gpinstaller-{name}"
            ctx.copy_to(local_path, staged)
            ctx.register_temp_file(staged)
            uploads.append((staged, destination))

        admin = q(self.settings.admin_user)
        script = [f"mkdir -p {q(self.config_dir)}"]
        for staged, destination in uploads:
            script.append(f"install -o {admin} -g {admin} -m 0644 {q(staged)} {q(destination)}")
        script.append(f"chown {admin}:{admin} {q(self.config_dir)}")
        ctx.run(privileged(self.settings, " && ".join(script)))

        ctx.data.put(
            "gpinitsystem_config",
            {"path": self.config_path, "hostfile": self.hostfile_path, "content": config},
        )
        self.logger.info("Generated %s for %s segment host(s)", CONFIG_FILE_NAME, len(segment_names))

    def _long_running(self):
        return self.settings.execution_options(
            timeout_seconds=max(self.settings.command_timeout_seconds, INIT_TIMEOUT_SECONDS),
            max_retries=0,
        )

    def init_coordinator(self, ctx):
        config = ctx.data.require("gpinitsystem_config")
        command = f"gpinitsystem -c {q(config['path'])} -a"
        result = ctx.run(as_admin(self.settings, command), self._long_running(), check=False)
        # gpinitsystem exits 1 when it completed with warnings.
        if result.exit_code > 1:
            raise CommandFailure(command, result.exit_code, result.stderr.strip() or result.stdout.strip())
        if result.exit_code == 1:
            self.logger.warning("gpinitsystem completed with warnings on %s", ctx.host.address)

    def wait_until_ready(self, ctx):
        for attempt in range(1, READY_POLL_ATTEMPTS + 1):
            result = ctx.run(as_admin(self.settings, "gpstate -s"), check=False)
            if result.ok:
                return
            self.logger.debug("Coordinator not ready yet (attempt %s/%s)", attempt, READY_POLL_ATTEMPTS)
            self.sleep(READY_POLL_SECONDS)
        raise InstallerError(
            f"Coordinator on {ctx.host.address} did not become ready after gpinitsystem.",
            remediation="Check the gpAdminLogs directory of the admin user on the coordinator.",
        )

    def pg_hba_entries(self, addresses: Sequence[str]) -> str:
        admin = self.settings.admin_user
        lines = [
            "# Cluster access (gpinstaller)",
            f"local   all             {admin}                                 trust",
            f"host    all             {admin}         127.0.0.1/32            trust",
            f"host    replication     {admin}         samehost                trust",
        ]
        for address in addresses:
            if address == "localhost":
                continue
            lines.append(f"host    all             {admin}         {address}    trust")
            lines.append(f"host    replication     {admin}         {address}    trust")
        lines.append("host    all             all             samenet                 md5")
        return "\n".join(lines)

    def configure_pg_hba(self, ctx):
        pg_hba = f"{self.settings.coordinator_data_dir}/pg_hba.conf"
        entries = self.pg_hba_entries([host.address for host in ctx.registry.hosts])
        marker = "GPINSTALLER_HBA"
        script = (
            f"grep -q 'Cluster access (gpinstaller)' {q(pg_hba)} || "
            f"cat >> {q(pg_hba)} <<'{marker}'\n{entries}\n{marker}\n"
        )
        ctx.run(as_admin(self.settings, script, with_env=False))
        ctx.run(as_admin(self.settings, "gpstop -ar"), self._long_running())

    def configure_environment(self, ctx):
        bashrc = f"{self.settings.admin_home}/.bashrc"
        admin = q(self.settings.admin_user)
        marker = "GPINSTALLER_ENV"
        script = (
            f"touch {q(bashrc)} && (grep -qF {q(ENV_MARKER)} {q(bashrc)} || "
            f"cat >> {q(bashrc)} <<'{marker}'\n{ENV_MARKER}\n{admin_environment(self.settings)}\n{marker}\n"
            f") && chown {admin}:{admin} {q(bashrc)}"
        )
        ctx.run(privileged(self.settings, script))

    def verify_segment_directories(self, ctx):
        primary = f"{self.settings.data_dir}/primary"
        ctx.run(privileged(self.settings, f"test -d {q(primary)} && ls {q(primary)} | grep -q gpseg"))

    def prepare_standby(self, ctx):
        ctx.data.require("gpinitsystem_config")
        admin = q(self.settings.admin_user)
        directory = q(self.settings.coordinator_directory)
        ctx.run(privileged(self.settings, f"mkdir -p {directory} && chown {admin}:{admin} {directory}"))

    def init_standby(self, ctx):
        coordinator = ctx.registry.coordinator.address
        command = f"gpinitstandby -s {q(ctx.host.address)} -a"
        ctx.run_on(coordinator, as_admin(self.settings, command), self._long_running())

    def verify(self, ctx):
        result = ctx.run(as_admin(self.settings, "gpstate -s"))
        self.logger.debug("gpstate output:\n%s", result.stdout.strip())

    def check_connectivity(self, ctx):
        database = q(self.settings.database_name)
        result = ctx.run(as_admin(self.settings, f"psql -d {database} -tAc 'SELECT version();'"), check=False)
        if not result.ok:
            self.logger.warning(
                "Could not query %s on %s: %s",
                self.settings.database_name,
                ctx.host.address,
                result.stderr.strip() or f"exit {result.exit_code}",
            )
            return
        ctx.data.put("greenplum_server_version", result.stdout.strip())
        self.logger.info("Connected to %s: %s", self.settings.database_name, result.stdout.strip())
