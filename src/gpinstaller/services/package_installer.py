"""Local package manager capability, selected once by probing PATH."""

import shutil
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Sequence, Type


class PackageInstaller(ABC):
    """Installs packages on the control node with one package manager."""

    name = ""
    binary = ""
    package_aliases = {}

    @abstractmethod
    def install_commands(self, package: str) -> List[List[str]]:
        """Command lines that install ``package``, run in order."""

    def resolve(self, package: str) -> str:
        return self.package_aliases.get(package, package)

    def install(self, package: str, runner, timeout: Optional[float] = 600.0):
        for cmd in self.install_commands(self.resolve(package)):
            runner.run(cmd, check=True, capture_output=True, timeout=timeout)


class YumInstaller(PackageInstaller):
    name = "yum"
    binary = "yum"

    def install_commands(self, package: str) -> List[List[str]]:
        return [["sudo", "yum", "install", "-y", package]]


class DnfInstaller(PackageInstaller):
    name = "dnf"
    binary = "dnf"

    def install_commands(self, package: str) -> List[List[str]]:
        return [["sudo", "dnf", "install", "-y", package]]


class AptInstaller(PackageInstaller):
    name = "apt"
    binary = "apt-get"

    def install_commands(self, package: str) -> List[List[str]]:
        return [
            ["sudo", "apt-get", "update"],
            ["sudo", "apt-get", "install", "-y", package],
        ]


class BrewInstaller(PackageInstaller):
    name = "brew"
    binary = "brew"
    package_aliases = {"sshpass": "hudochenkov/sshpass/sshpass"}

    def install_commands(self, package: str) -> List[List[str]]:
        return [["brew", "install", package]]


PACKAGE_INSTALLERS: Sequence[Type[PackageInstaller]] = (
    YumInstaller,
    DnfInstaller,
    AptInstaller,
    BrewInstaller,
)


def select_package_installer(
    which: Callable[[str], Optional[str]] = shutil.which,
) -> Optional[PackageInstaller]:
    for installer_cls in PACKAGE_INSTALLERS:
        if which(installer_cls.binary):
            return installer_cls()
    return None
