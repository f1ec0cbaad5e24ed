import logging
import os
import signal

import click
from rich.logging import RichHandler

from .constants import (
    DEFAULT_ADMIN_USER,
    DEFAULT_CHANNEL_IDLE_MINUTES,
    DEFAULT_COMMAND_TIMEOUT_SECONDS,
    DEFAULT_CONFIG_FILES,
    DEFAULT_COORDINATOR_PORT,
    DEFAULT_DATA_DIR,
    DEFAULT_DATABASE_NAME,
    DEFAULT_INSTALL_DIR,
    DEFAULT_INSTALL_FILES_DIR,
    DEFAULT_MAX_RETRIES,
    DEFAULT_POOL_WIDTH,
    DEFAULT_PORT_BASE,
    EXIT_VALIDATION,
    MAX_POOL_WIDTH,
)
from .core import GreenplumInstaller
from .errors import InstallerError, TrustWarning, ValidationError
from .models import InstallSettings
from .services.config_loader import ConfigLoader

PASSWORD_ENV = "GPINSTALLER_SSH_PASSWORD"
TERMINATION_SIGNALS = ("SIGTERM", "SIGHUP")


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config and config[key] not in (None, ""):
        return config[key]
    return default


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes")


def _find_default_config():
    for name in DEFAULT_CONFIG_FILES:
        path = os.path.join(os.getcwd(), name)
        if os.path.exists(path):
            return path
    return None


def _prompt(label: str, hide_input: bool) -> str:
    return click.prompt(label, hide_input=hide_input, default="", show_default=False)


def _confirm(question: str) -> bool:
    return click.confirm(question, default=False)


def _trust(warning: TrustWarning) -> bool:
    click.echo(str(warning), err=True)
    return click.confirm(f"Trust the host key for {warning.host} for this run?", default=False)


def _interrupt(signum, _frame):
    raise KeyboardInterrupt(f"Received signal {signal.Signals(signum).name}")


def install_signal_handlers():
    """Routes termination signals through the same cleanup as Ctrl+C."""
    for name in TERMINATION_SIGNALS:
        signum = getattr(signal, name, None)
        if signum is not None:
            signal.signal(signum, _interrupt)


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


def build_settings(config_values, **cli) -> InstallSettings:
    segments = config_values.get("GPDB_SEGMENT_HOSTS") or []
    coordinator = _resolve_option(cli.get("host"), config_values, "GPDB_COORDINATOR_HOST")
    pool_width = int(_resolve_option(cli.get("pool_width"), config_values, "POOL_WIDTH", DEFAULT_POOL_WIDTH))
    if not 1 <= pool_width <= MAX_POOL_WIDTH:
        raise ValidationError(f"Pool width must be between 1 and {MAX_POOL_WIDTH}.")

    retry_backoff = str(_resolve_option(None, config_values, "RETRY_BACKOFF", "exponential")).lower()
    if retry_backoff not in ("exponential", "none"):
        raise ValidationError("RETRY_BACKOFF must be 'exponential' or 'none'.")

    return InstallSettings(
        coordinator_host=coordinator or "",
        segment_hosts=tuple(segments),
        standby_host=config_values.get("GPDB_STANDBY_HOST") or None,
        install_dir=_resolve_option(None, config_values, "GPDB_INSTALL_DIR", DEFAULT_INSTALL_DIR),
        data_dir=_resolve_option(None, config_values, "GPDB_DATA_DIR", DEFAULT_DATA_DIR),
        admin_user=_resolve_option(None, config_values, "GPDB_ADMIN_USER", DEFAULT_ADMIN_USER),
        database_name=_resolve_option(None, config_values, "GPDB_DATABASE_NAME", DEFAULT_DATABASE_NAME),
        coordinator_port=_resolve_option(None, config_values, "GPDB_COORDINATOR_PORT", DEFAULT_COORDINATOR_PORT),
        port_base=_resolve_option(None, config_values, "GPDB_PORT_BASE", DEFAULT_PORT_BASE),
        install_files_dir=_resolve_option(None, config_values, "INSTALL_FILES_DIR", DEFAULT_INSTALL_FILES_DIR),
        ssh_user=_resolve_option(None, config_values, "SSH_USER", "root"),
        ssh_port=_resolve_option(None, config_values, "SSH_PORT", 22),
        install_pxf=bool(config_values.get("INSTALL_PXF", False)),
        install_madlib=bool(config_values.get("INSTALL_MADLIB", False)),
        install_postgis=bool(config_values.get("INSTALL_POSTGIS", False)),
        pool_width=pool_width,
        command_timeout_seconds=_resolve_option(
            None, config_values, "COMMAND_TIMEOUT_SECONDS", DEFAULT_COMMAND_TIMEOUT_SECONDS
        ),
        max_retries=_resolve_option(None, config_values, "MAX_RETRIES", DEFAULT_MAX_RETRIES),
        retry_backoff=retry_backoff,
        channel_idle_minutes=_resolve_option(
            None, config_values, "CHANNEL_IDLE_MINUTES", DEFAULT_CHANNEL_IDLE_MINUTES
        ),
        state_file=_resolve_option(cli.get("state_file"), config_values, "STATE_FILE"),
        temp_dir=os.environ.get("TEST_TEMP_DIR") or None,
        dry_run=bool(cli.get("dry_run")) or _env_flag("DRY_RUN"),
        teardown=bool(cli.get("clean")),
        force=bool(cli.get("force")),
        remove_packages=bool(cli.get("remove")),
        accept_host_keys=bool(cli.get("accept_host_keys")),
    )


@click.command()
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help="Path to a configuration file (.yml or shell-style .conf). "
    "Defaults to .gpinstaller.yml or gpdb_config.conf if present.",
)
@click.option("--host", required=False, help="Override the coordinator host from the configuration.")
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Run the full phase sequence against a simulated executor. Also enabled by DRY_RUN=true.",
)
@click.option("--clean", is_flag=True, default=False, help="Tear down an existing installation instead.")
@click.option("--force", is_flag=True, default=False, help="Skip the teardown confirmation prompt.")
@click.option("--remove", is_flag=True, default=False, help="With --clean, also uninstall packages.")
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
@click.option(
    "--pool-width",
    required=False,
    type=int,
    default=None,
    help=f"Maximum hosts processed in parallel (default: {DEFAULT_POOL_WIDTH}).",
)
@click.option(
    "--state-file",
    required=False,
    type=click.Path(),
    help="Path to the run state file.",
)
@click.option(
    "--accept-host-keys",
    is_flag=True,
    default=False,
    help="Accept unknown or changed SSH host keys without prompting.",
)
def main(config, host, dry_run, clean, force, remove, verbose, log_file, pool_width, state_file, accept_host_keys):
    """Install and initialize a Greenplum cluster across remote hosts."""
    logger = logging.getLogger("gpinstaller")

    if remove and not clean:
        raise click.UsageError("--remove can only be used together with --clean.")

    try:
        resolved_config = config or _find_default_config()
        config_values = ConfigLoader().load(resolved_config)
        settings = build_settings(
            config_values,
            host=host,
            dry_run=dry_run,
            clean=clean,
            force=force,
            remove=remove,
            pool_width=pool_width,
            state_file=state_file,
            accept_host_keys=accept_host_keys,
        )
    except InstallerError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(EXIT_VALIDATION) from exc

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)

    installer = GreenplumInstaller(
        settings,
        prompt_fn=_prompt,
        confirm_fn=_confirm,
        trust_fn=_trust,
        stored_password=os.environ.pop(PASSWORD_ENV, None),
    )
    install_signal_handlers()
    raise SystemExit(installer.run())


if __name__ == "__main__":
    main()
