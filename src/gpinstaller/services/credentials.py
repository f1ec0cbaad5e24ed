"""Transient credential handling for one installer run."""

import shutil
from typing import Callable, Dict, Optional

from gpinstaller.constants import MIN_PASSWORD_LENGTH
from gpinstaller.errors import InputError, InstallerError
from gpinstaller.services.package_installer import select_package_installer

AUTOMATION_HELPER = "sshpass"

PromptFn = Callable[[str, bool], str]


def probe_automation(
    logger,
    runner=None,
    which: Callable[[str], Optional[str]] = shutil.which,
    selector=select_package_installer,
) -> bool:
    """Checks for sshpass, attempting exactly one local install when missing."""
    if which(AUTOMATION_HELPER):
        return True

    installer = selector(which)
    if installer is None or runner is None:
        logger.warning(
            "%s is not installed and no supported package manager was found. "
            "Hosts will prompt for passwords interactively.",
            AUTOMATION_HELPER,
        )
        return False

    logger.info("Installing %s with %s...", AUTOMATION_HELPER, installer.name)
    try:
        installer.install(AUTOMATION_HELPER, runner)
    except InstallerError as exc:
        logger.warning(
            "Could not install %s (%s). Falling back to interactive authentication.",
            AUTOMATION_HELPER,
            exc,
        )
        return False
    return which(AUTOMATION_HELPER) is not None


class CredentialContext:
    """Holds the SSH password for the run and wipes it on teardown."""

    def __init__(self, secret: str, reuse_enabled: bool = True, automation_available: bool = False):
        self._secret = bytearray(secret.encode("utf-8"))
        self.reuse_enabled = reuse_enabled
        self.automation_available = automation_available
        self.zeroed = False
        self.zero_count = 0

    @classmethod
    def collect(
        cls,
        prompt_fn: PromptFn,
        logger,
        *,
        min_length: int = MIN_PASSWORD_LENGTH,
        reuse_enabled: bool = True,
        automation_probe: Optional[Callable[[], bool]] = None,
        label: str = "SSH password for all hosts",
    ) -> "CredentialContext":
        password = prompt_fn(f"Enter {label}", True)
        if not password:
            raise InputError("Password cannot be empty.")
        if len(password) < min_length:
            raise InputError(f"Password must be at least {min_length} characters long.")

        confirmation = prompt_fn(f"Confirm {label}", True)
        if confirmation != password:
            raise InputError("Passwords do not match.")

        automation = automation_probe() if automation_probe is not None else False
        logger.debug("Password automation available: %s", automation)
        return cls(password, reuse_enabled=reuse_enabled, automation_available=automation)

    @classmethod
    def from_stored(
        cls,
        secret: str,
        *,
        automation_probe: Optional[Callable[[], bool]] = None,
        min_length: int = MIN_PASSWORD_LENGTH,
    ) -> "CredentialContext":
        if not secret or len(secret) < min_length:
            raise InputError(f"Stored password must be at least {min_length} characters long.")
        automation = automation_probe() if automation_probe is not None else False
        return cls(secret, reuse_enabled=True, automation_available=automation)

    @classmethod
    def empty(cls) -> "CredentialContext":
        """Context for runs that never authenticate (dry-run)."""
        return cls("", reuse_enabled=True, automation_available=False)

    def secret(self) -> str:
        if self.zeroed:
            raise InstallerError("Credentials were already discarded.")
        return self._secret.decode("utf-8")

    def env(self) -> Dict[str, str]:
        """Environment for a single ssh subprocess when sshpass is used."""
        if not self.automation_available or self.zeroed or not self._secret:
            return {}
        return {"SSHPASS": self.secret()}

    def zero(self):
        self.zero_count += 1
        for index in range(len(self._secret)):
            self._secret[index] = 0
        self._secret = bytearray()
        self.zeroed = True
