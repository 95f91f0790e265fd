"""External-program capabilities: version control, dependency installer, supervisor."""

from .errors import CapabilityError
from .packages import NodePackageManager, PackageManager
from .process import CommandResult, run_command
from .supervisor import ServiceSupervisor, SystemdServiceSupervisor
from .vcs import GitVersionControl, VersionControl

__all__ = [
    "CapabilityError",
    "CommandResult",
    "GitVersionControl",
    "NodePackageManager",
    "PackageManager",
    "ServiceSupervisor",
    "SystemdServiceSupervisor",
    "VersionControl",
    "run_command",
]
