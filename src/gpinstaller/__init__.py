"""
gpinstaller - Multi-host Greenplum installer
"""

__version__ = "1.0.0"

from .core import GreenplumInstaller
from .errors import InstallerError

__all__ = ["GreenplumInstaller", "InstallerError"]
