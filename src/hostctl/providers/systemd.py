"""Systemd provider for querying and controlling host services."""
from __future__ import annotations

import subprocess
from collections.abc import Iterable
from dataclasses import dataclass

from .command import CommandRunner


@dataclass(slots=True)
class SystemdProvider:
    """Thin wrapper around ``systemctl``."""

    runner: CommandRunner
    systemctl_bin: str = "systemctl"

    def is_active(self, unit: str) -> bool:
        """Return ``True`` when *unit* is running."""
        result = self._systemctl("is-active", "--quiet", unit, check=False)
        return result.returncode == 0

    def is_enabled(self, unit: str) -> bool:
        """Return ``True`` when *unit* starts at boot."""
        result = self._systemctl("is-enabled", "--quiet", unit, check=False)
        return result.returncode == 0

    def enable(self, units: Iterable[str], *, now: bool = False) -> subprocess.CompletedProcess[str]:
        """Enable *units*, starting them too when *now* is set."""
        flags = ("--now",) if now else ()
        return self._systemctl("enable", *flags, *units)

    def restart(self, units: Iterable[str]) -> subprocess.CompletedProcess[str]:
        """Restart *units*."""
        return self._systemctl("restart", *units)

    def daemon_reload(self) -> subprocess.CompletedProcess[str]:
        """Reload unit files, picking up generated crypttab and fstab units."""
        return self._systemctl("daemon-reload")

    def _systemctl(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        return self.runner.run([self.systemctl_bin, *args], check=check)


__all__ = ["SystemdProvider"]
