"""Bring-up and teardown phase catalogs."""

import glob
import os
import re
from typing import Dict, List, Optional, Sequence

from packaging import version

from gpinstaller.constants import (
    DEFAULT_MIRROR_PORT_BASE,
    FIREWALL_PORT_SPAN,
    GREENPLUM_RPM_PATTERN,
    MIN_DISK_GB,
    MIN_MEMORY_GB,
    OPTIONAL_HOST_COMMANDS,
    RECOMMENDED_MEMORY_GB,
    REMOTE_TEMP_DIR,
    REPLICATION_PORT_OFFSETS,
    REQUIRED_HOST_COMMANDS,
    SUPPORTED_GREENPLUM_MAJOR,
    SUPPORTED_OS_IDS,
    SUPPORTED_OS_MAJOR_VERSIONS,
)
from gpinstaller.errors import InstallerError, ValidationError
from gpinstaller.errors_catalog import actionable_error, remediation
from gpinstaller.models import ALL_ROLES, InstallSettings, Phase, Role, RunState, Step
from gpinstaller.services.cluster_init import ClusterInitOrchestrator
from gpinstaller.services.extension_lifecycle import ExtensionDefinition, enabled_extensions, extension_step
from gpinstaller.services.shell import as_admin, privileged, q

GREENPLUM_PACKAGE = "greenplum-db-7"
COORDINATOR_ONLY = frozenset({Role.COORDINATOR})
REMOTE_HOSTS = frozenset({Role.SEGMENT, Role.STANDBY})

_VERSION_IN_NAME = re.compile(r"greenplum-db-(\d+(?:\.\d+)*)")


def parse_os_release(text: str) -> Dict[str, str]:
    values = {}
    for line in text.splitlines():
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip().strip('"')
    return values


def greenplum_version_from_name(path: str) -> Optional[version.Version]:
    match = _VERSION_IN_NAME.search(os.path.basename(path))
    if not match:
        return None
    try:
        return version.Version(match.group(1))
    except version.InvalidVersion:
        return None


def find_artifact(directory: str, patterns: Sequence[str]) -> Optional[str]:
    for pattern in patterns:
        matches = sorted(glob.glob(os.path.join(directory, pattern)))
        if matches:
            return matches[-1]
    return None


class InstallPhases:
    """Step actions for the bring-up sequence."""

    def __init__(self, settings: InstallSettings, logger, extensions: Optional[List[ExtensionDefinition]] = None):
        self.settings = settings
        self.logger = logger
        self.extensions = enabled_extensions(settings) if extensions is None else extensions

    # PREFLIGHT

    def check_os(self, ctx):
        result = ctx.run("cat /etc/os-release 2>/dev/null || cat /usr/lib/os-release")
        release = parse_os_release(result.stdout)
        if not release:
            self.logger.debug("No os-release data from %s, skipping OS check.", ctx.host.address)
            return

        os_id = release.get("ID", "").lower()
        raw_version = release.get("VERSION_ID", "")
        try:
            major = version.Version(raw_version).major
        except version.InvalidVersion:
            major = None

        if os_id not in SUPPORTED_OS_IDS or major not in SUPPORTED_OS_MAJOR_VERSIONS:
            detail = f"{os_id or 'unknown'} {raw_version or '?'}"
            raise ValidationError(
                actionable_error("unsupported_os", host=ctx.host.address, detail=detail),
                remediation=remediation("unsupported_os", host=ctx.host.address, detail=detail),
            )

    def check_dependencies(self, ctx):
        tools = REQUIRED_HOST_COMMANDS + OPTIONAL_HOST_COMMANDS
        script = "; ".join(
            f"command -v {tool} >/dev/null 2>&1 || [ -x /usr/bin/{tool} ] || echo missing:{tool}" for tool in tools
        )
        result = ctx.run(script, check=False)
        missing = [line.split(":", 1)[1] for line in result.stdout.splitlines() if line.startswith("missing:")]
        for tool in missing:
            # sudo is only used when connecting as a non-root user.
            if tool in REQUIRED_HOST_COMMANDS and self.settings.ssh_user != "root":
                raise ValidationError(
                    actionable_error("dependency_missing", tool=tool, host=ctx.host.address),
                    remediation=remediation("dependency_missing", tool=tool, host=ctx.host.address),
                )
            self.logger.warning("%s is not installed on %s.", tool, ctx.host.address)

    def check_sudo(self, ctx):
        ctx.run(privileged(self.settings, "true"))

    def check_resources(self, ctx):
        memory = ctx.run("awk '/MemTotal/ {print $2}' /proc/meminfo", check=False).stdout.strip()
        if memory.isdigit():
            memory_gb = int(memory) / (1024 * 1024)
            if memory_gb < MIN_MEMORY_GB:
                self.logger.warning(
                    "%s has %.1f GB memory, below the %s GB minimum.", ctx.host.address, memory_gb, MIN_MEMORY_GB
                )
            elif memory_gb < RECOMMENDED_MEMORY_GB:
                self.logger.info("%s has %.1f GB memory (%s GB recommended).", ctx.host.address, memory_gb, RECOMMENDED_MEMORY_GB)

        probe_dir = os.path.dirname(self.settings.data_dir.rstrip("/")) or "/"
        disk = ctx.run(
            f"df -Pk {q(self.settings.data_dir)} 2>/dev/null || df -Pk {q(probe_dir)}", check=False
        ).stdout.strip().splitlines()
        if len(disk) >= 2:
            fields = disk[-1].split()
            if len(fields) >= 4 and fields[3].isdigit():
                free_gb = int(fields[3]) / (1024 * 1024)
                if free_gb < MIN_DISK_GB:
                    raise ValidationError(
                        f"{ctx.host.address} has {free_gb:.1f} GB free for {self.settings.data_dir}, "
                        f"{MIN_DISK_GB} GB required."
                    )

    def check_installer(self, ctx):
        directory = self.settings.install_files_dir
        installer = find_artifact(directory, (GREENPLUM_RPM_PATTERN,))
        if installer is None:
            message = actionable_error("installer_missing", pattern=GREENPLUM_RPM_PATTERN, directory=directory)
            if not ctx.dry_run:
                raise ValidationError(
                    message,
                    remediation=remediation("installer_missing", pattern=GREENPLUM_RPM_PATTERN, directory=directory),
                )
            self.logger.warning("[dry-run] %s", message)
            installer = os.path.join(directory, f"greenplum-db-{SUPPORTED_GREENPLUM_MAJOR}.0.0.rpm")

        gp_version = greenplum_version_from_name(installer)
        if gp_version is None or gp_version.major != SUPPORTED_GREENPLUM_MAJOR:
            raise ValidationError(
                f"Installer {os.path.basename(installer)} is not a Greenplum {SUPPORTED_GREENPLUM_MAJOR} package."
            )
        ctx.data.put("installer_path", installer)
        ctx.data.put("greenplum_version", str(gp_version))

        packages = {}
        for definition in self.extensions:
            path = find_artifact(directory, definition.package_patterns)
            if path is None:
                message = actionable_error("installer_missing", pattern=definition.package_patterns[0], directory=directory)
                if not ctx.dry_run:
                    raise ValidationError(message)
                self.logger.warning("[dry-run] %s", message)
                path = os.path.join(directory, definition.package_patterns[0].replace("*", "0"))
            packages[definition.package] = path
        ctx.data.put("extension_packages", packages)

    # HOST_SETUP

    def create_admin_user(self, ctx):
        admin = q(self.settings.admin_user)
        script = (
            f"(getent group {admin} >/dev/null || groupadd {admin}) && "
            f"(id -u {admin} >/dev/null 2>&1 || useradd -g {admin} -m -d {q(self.settings.admin_home)} -s /bin/bash {admin})"
        )
        ctx.run(privileged(self.settings, script))

    def create_directories(self, ctx):
        admin = q(self.settings.admin_user)
        data_dir = self.settings.data_dir
        subdirs = " ".join(q(f"{data_dir}/{name}") for name in ("master", "primary", "mirror"))
        script = (
            f"mkdir -p {subdirs} && chown -R {admin}:{admin} {q(data_dir)} && chmod 755 {q(data_dir)}"
        )
        ctx.run(privileged(self.settings, script))

    def firewall_ports(self) -> List[str]:
        bases = [self.settings.port_base, DEFAULT_MIRROR_PORT_BASE]
        bases += [DEFAULT_MIRROR_PORT_BASE + offset for offset in REPLICATION_PORT_OFFSETS]
        ports = [f"{base}-{base + FIREWALL_PORT_SPAN}/tcp" for base in bases]
        ports.append(f"{self.settings.coordinator_port}/tcp")
        return ports

    def configure_firewall(self, ctx):
        rules = " && ".join(f"firewall-cmd --permanent --add-port={port}" for port in self.firewall_ports())
        script = (
            f"if systemctl is-active --quiet firewalld; then {rules} && firewall-cmd --reload; "
            "else echo firewalld-inactive; fi"
        )
        result = ctx.run(privileged(self.settings, script), check=False)
        if not result.ok:
            self.logger.warning(
                "Could not open Greenplum ports on %s (exit %s), continuing.", ctx.host.address, result.exit_code
            )
        elif "firewalld-inactive" in result.stdout:
            self.logger.debug("firewalld is not running on %s, no ports to open.", ctx.host.address)

    def generate_admin_key(self, ctx):
        script = (
            "mkdir -p ~/.ssh && chmod 700 ~/.ssh && "
            "([ -f ~/.ssh/id_rsa ] || ssh-keygen -t rsa -b 4096 -N '' -f ~/.ssh/id_rsa -q) && "
            "cat ~/.ssh/id_rsa.pub"
        )
        result = ctx.run(as_admin(self.settings, script, with_env=False))
        ctx.data.put("admin_public_key", result.stdout.strip())

    def authorize_local_key(self, ctx):
        script = (
            "touch ~/.ssh/authorized_keys && "
            "(grep -qxF \"$(cat ~/.ssh/id_rsa.pub)\" ~/.ssh/authorized_keys || cat ~/.ssh/id_rsa.pub >> ~/.ssh/authorized_keys) && "
            "chmod 600 ~/.ssh/authorized_keys"
        )
        ctx.run(as_admin(self.settings, script, with_env=False))

    def push_admin_key(self, ctx):
        key = ctx.wait_for("admin_public_key")
        ssh_dir = f"{self.settings.admin_home}/.ssh"
        keys_file = f"{ssh_dir}/authorized_keys"
        admin = q(self.settings.admin_user)
        script = (
            f"mkdir -p {q(ssh_dir)} && touch {q(keys_file)} && "
            f"(grep -qxF {q(key)} {q(keys_file)} || echo {q(key)} >> {q(keys_file)}) && "
            f"chown -R {admin}:{admin} {q(ssh_dir)} && chmod 700 {q(ssh_dir)} && chmod 600 {q(keys_file)}"
        )
        ctx.run(privileged(self.settings, script), redact=f"authorize admin key in {keys_file}")

    def scan_known_hosts(self, ctx):
        names = [host.address for host in ctx.registry.hosts]
        if ctx.registry.is_single_node:
            names = ["localhost", "$(hostname)"]
        script = (
            "mkdir -p ~/.ssh && touch ~/.ssh/known_hosts && "
            f"ssh-keyscan -H {' '.join(names)} >> ~/.ssh/known_hosts 2>/dev/null; "
            "chmod 600 ~/.ssh/known_hosts"
        )
        ctx.run(as_admin(self.settings, script, with_env=False))

    # BINARY_INSTALL

    def _install_package(self, ctx, local_path: str, package: str):
        remote_path = f"{REMOTE_TEMP_DIR}/{os.path.basename(local_path)}"
        ctx.copy_to(local_path, remote_path)
        ctx.register_temp_file(remote_path)
        script = (
            f"rpm -q {q(package)} >/dev/null 2>&1 || "
            f"yum install -y {q(remote_path)} || dnf install -y {q(remote_path)}"
        )
        options = self.settings.execution_options(timeout_seconds=max(self.settings.command_timeout_seconds, 1800.0))
        ctx.run(privileged(self.settings, script), options)

    def install_greenplum(self, ctx):
        self._install_package(ctx, ctx.data.require("installer_path"), GREENPLUM_PACKAGE)

    def link_gphome(self, ctx):
        gp_version = ctx.data.require("greenplum_version")
        install_dir = self.settings.install_dir
        versioned = f"{install_dir}-{gp_version}"
        admin = q(self.settings.admin_user)
        script = (
            f"if [ -d {q(versioned)} ] && [ {q(versioned)} != {q(install_dir)} ]; then "
            f"ln -sfn {q(versioned)} {q(install_dir)}; fi && "
            f"test -f {q(install_dir + '/greenplum_path.sh')} && chown -R {admin}:{admin} {q(install_dir + '/')}"
        )
        ctx.run(privileged(self.settings, script))

    def install_extension_packages(self, ctx):
        packages = ctx.data.get("extension_packages") or {}
        for package, path in packages.items():
            self._install_package(ctx, path, package)

    def build(self, registry) -> List[Phase]:
        settings = self.settings
        preflight = Phase(
            "PREFLIGHT",
            RunState.PREFLIGHT,
            steps=(
                Step("check_installer", self.check_installer, roles=COORDINATOR_ONLY),
                Step("check_os", self.check_os),
                Step("check_dependencies", self.check_dependencies),
                Step("check_sudo", self.check_sudo),
                Step("check_resources", self.check_resources),
            ),
        )

        key_steps = [Step("generate_admin_key", self.generate_admin_key, roles=COORDINATOR_ONLY)]
        key_steps.append(Step("authorize_local_key", self.authorize_local_key, roles=COORDINATOR_ONLY))
        if not registry.is_single_node:
            key_steps.append(Step("push_admin_key", self.push_admin_key, roles=REMOTE_HOSTS))
        key_steps.append(Step("scan_known_hosts", self.scan_known_hosts, roles=COORDINATOR_ONLY))

        host_setup = Phase(
            "HOST_SETUP",
            RunState.HOST_SETUP,
            steps=(
                Step(
                    "create_admin_user",
                    self.create_admin_user,
                    destructive=True,
                    backup_targets=(settings.admin_home,),
                ),
                Step(
                    "create_directories",
                    self.create_directories,
                    destructive=True,
                    backup_targets=(settings.data_dir,),
                ),
                Step("configure_firewall", self.configure_firewall),
            )
            + tuple(key_steps),
            dependency=preflight,
        )

        binary_steps = [
            Step("install_greenplum", self.install_greenplum),
            Step("link_gphome", self.link_gphome, destructive=True, backup_targets=(settings.install_dir,)),
        ]
        if self.extensions:
            binary_steps.append(Step("install_extension_packages", self.install_extension_packages))
        binary_install = Phase(
            "BINARY_INSTALL",
            RunState.BINARY_INSTALL,
            steps=tuple(binary_steps),
            dependency=host_setup,
        )

        cluster_init = Phase(
            "CLUSTER_INIT",
            RunState.CLUSTER_INIT,
            applicable_roles=ALL_ROLES,
            dependency=binary_install,
            driver=ClusterInitOrchestrator(settings, self.logger),
        )

        phases = [preflight, host_setup, binary_install, cluster_init]
        if self.extensions:
            phases.append(
                Phase(
                    "EXTENSION_INIT",
                    RunState.EXTENSION_INIT,
                    steps=tuple(extension_step(definition, self.logger) for definition in self.extensions),
                    applicable_roles=COORDINATOR_ONLY,
                    dependency=cluster_init,
                )
            )
        return phases


class TeardownPhases:
    """Step actions for ``--clean``. Individual command failures are logged and skipped."""

    def __init__(self, settings: InstallSettings, logger):
        self.settings = settings
        self.logger = logger

    def _best_effort(self, ctx, description: str, script: str):
        try:
            result = ctx.run(privileged(self.settings, script), check=False)
        except InstallerError as exc:
            self.logger.warning("[%s] %s failed (continuing): %s", ctx.host.address, description, exc)
            return
        if not result.ok:
            self.logger.warning(
                "[%s] %s returned %s (continuing)", ctx.host.address, description, result.exit_code
            )

    def check_connectivity(self, ctx):
        ctx.run("true")

    def stop_cluster(self, ctx):
        self._best_effort(ctx, "Stop cluster", as_admin(self.settings, "gpstop -a -M fast"))

    def kill_processes(self, ctx):
        admin = q(self.settings.admin_user)
        script = (
            "pkill -f 'postgres.*gp' ; pkill -f gpfdist ; "
            f"pkill -u {admin} ; sleep 2 ; pkill -9 -f 'postgres.*gp' ; pkill -9 -u {admin} ; true"
        )
        self._best_effort(ctx, "Stop processes", script)

    def remove_data_directories(self, ctx):
        data_dir = self.settings.data_dir
        targets = " ".join(q(f"{data_dir}/{name}") for name in ("master", "primary", "mirror"))
        self._best_effort(ctx, "Remove data directories", f"rm -rf {targets} /tmp/gpinstaller-*")

    def clean_admin_home(self, ctx):
        home = self.settings.admin_home
        admin = q(self.settings.admin_user)
        script = (
            f"[ -d {q(home)} ] && rm -rf {q(home + '/gpconfigs')} {q(home + '/gpAdminLogs')} "
            f"&& sed -i '/Greenplum environment (gpinstaller)/,/^export PGDATABASE=/d' {q(home + '/.bashrc')} "
            f"&& chown {admin}:{admin} {q(home + '/.bashrc')}"
        )
        self._best_effort(ctx, "Clean admin home", script)

    def clean_shared_memory(self, ctx):
        admin = self.settings.admin_user
        script = f"ipcs -m | awk -v owner={q(admin)} '$3 == owner {{print $2}}' | xargs -r -n1 ipcrm -m"
        self._best_effort(ctx, "Clean shared memory", script)

    def remove_packages(self, ctx):
        script = (
            f"yum remove -y {GREENPLUM_PACKAGE} pxf-gp7 ; "
            f"rm -rf {q(self.settings.install_dir)} {q(self.settings.install_dir)}-*"
        )
        self._best_effort(ctx, "Uninstall packages", script)

    def build(self, registry) -> List[Phase]:
        preflight = Phase(
            "PREFLIGHT",
            RunState.PREFLIGHT,
            steps=(Step("check_connectivity", self.check_connectivity),),
        )
        stop = Phase(
            "STOP_CLUSTER",
            RunState.STOP_CLUSTER,
            steps=(
                Step("stop_cluster", self.stop_cluster, roles=COORDINATOR_ONLY),
                Step("kill_processes", self.kill_processes),
            ),
            dependency=preflight,
        )
        clean_steps = [
            Step("remove_data_directories", self.remove_data_directories),
            Step("clean_admin_home", self.clean_admin_home),
            Step("clean_shared_memory", self.clean_shared_memory),
        ]
        if self.settings.remove_packages:
            clean_steps.append(Step("remove_packages", self.remove_packages))
        clean = Phase("CLEAN_HOSTS", RunState.CLEAN_HOSTS, steps=tuple(clean_steps), dependency=stop)
        return [preflight, stop, clean]


def build_phases(settings: InstallSettings, registry, logger) -> List[Phase]:
    if settings.teardown:
        return TeardownPhases(settings, logger).build(registry)
    return InstallPhases(settings, logger).build(registry)
