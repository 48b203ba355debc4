"""Provider implementations wrapping the host's external tools."""
from .accounts import AccountsProvider
from .apt import AptProvider
from .command import CommandRunner
from .docker import DockerProvider
from .samba import SambaProvider
from .systemd import SystemdProvider
from .ufw import UfwProvider, normalise_rule

__all__ = [
    "AccountsProvider",
    "AptProvider",
    "CommandRunner",
    "DockerProvider",
    "SambaProvider",
    "SystemdProvider",
    "UfwProvider",
    "normalise_rule",
]
