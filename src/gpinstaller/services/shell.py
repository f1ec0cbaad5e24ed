"""Builds remote shell command lines for privileged and admin-user execution."""

import shlex

from gpinstaller.models import InstallSettings

q = shlex.quote


def greenplum_path(settings: InstallSettings) -> str:
    return f"{settings.install_dir}/greenplum_path.sh"


def admin_environment(settings: InstallSettings) -> str:
    """Lines appended to the admin user's ``.bashrc``."""
    return "\n".join(
        [
            f"source {greenplum_path(settings)}",
            f"export COORDINATOR_DATA_DIRECTORY={settings.coordinator_data_dir}",
            f"export PGPORT={settings.coordinator_port}",
            f"export PGUSER={settings.admin_user}",
            f"export PGDATABASE={settings.database_name}",
        ]
    )


def privileged(settings: InstallSettings, script: str) -> str:
    if settings.ssh_user == "root":
        return script
    return f"sudo -n bash -c {q(script)}"


def as_admin(settings: InstallSettings, script: str, with_env: bool = True) -> str:
    if with_env:
        script = (
            f"source {q(greenplum_path(settings))} && "
            f"export COORDINATOR_DATA_DIRECTORY={q(settings.coordinator_data_dir)} "
            f"PGPORT={settings.coordinator_port} && {script}"
        )
    wrapped = f"bash -lc {q(script)}"
    if settings.ssh_user == "root":
        return f"su - {q(settings.admin_user)} -c {q(wrapped)}"
    return f"sudo -n -u {q(settings.admin_user)} {wrapped}"
