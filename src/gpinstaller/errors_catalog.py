"""Actionable error catalog for gpinstaller."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "coordinator_missing": {
        "what": "Coordinator host is not set in configuration.",
        "next": "Set `GPDB_COORDINATOR_HOST` in the config file or pass `--host`.",
    },
    "segments_missing": {
        "what": "No segment hosts defined in configuration.",
        "next": "List at least one host in `GPDB_SEGMENT_HOSTS` for a multi-host cluster.",
    },
    "host_collision": {
        "what": "Host '{host}' is configured more than once ({detail}).",
        "next": "Give every cluster role its own host entry.",
    },
    "invalid_hostname": {
        "what": "Invalid hostname format: {host}",
        "next": "Use letters, digits, dots and dashes only (max 253 characters).",
    },
    "authentication_failed": {
        "what": "Authentication to {host} was rejected.",
        "next": "Check the password and enable root SSH login (`PermitRootLogin yes`) on {host}.",
    },
    "host_unreachable": {
        "what": "Host {host} is not reachable over SSH.",
        "next": "Verify DNS, firewall rules and that sshd is running on {host}.",
    },
    "host_key_rejected": {
        "what": "Host key for {host} was not accepted.",
        "next": "Verify the fingerprint and rerun with `--accept-host-keys`, or fix known_hosts.",
    },
    "installer_missing": {
        "what": "No installer matching `{pattern}` found in '{directory}'.",
        "next": "Place the package in '{directory}' or set `INSTALL_FILES_DIR`.",
    },
    "unsupported_os": {
        "what": "Unsupported operating system on {host}: {detail}.",
        "next": "Use RHEL, CentOS, Rocky, Alma or Oracle Linux 7, 8 or 9.",
    },
    "dependency_missing": {
        "what": "Required command `{tool}` not found on {host}.",
        "next": "Install `{tool}` on {host} and rerun the installer.",
    },
    "phase_failed": {
        "what": "Phase {phase} did not complete on all hosts.",
        "next": "Inspect the log for the failing host, fix it and rerun the installer.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"


def remediation(code: str, **kwargs: str) -> str:
    """Returns only the suggested action of a catalog entry."""
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")
    return _ERROR_MESSAGES[code]["next"].format(**kwargs)
