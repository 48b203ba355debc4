"""Debian package management through ``apt-get`` and ``dpkg-query``."""
from __future__ import annotations

import subprocess
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from .command import CommandRunner

_APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}
_APT_FLAGS = ("-y", "-o", "Dpkg::Use-Pty=0")


@dataclass(slots=True)
class AptProvider:
    """Query and change the package database."""

    runner: CommandRunner
    package_timeout: float = 900.0
    apt_bin: str = "apt-get"
    dpkg_query_bin: str = "dpkg-query"

    def is_installed(self, name: str) -> bool:
        """Return ``True`` when *name* is fully installed."""
        result = self.runner.run(
            [self.dpkg_query_bin, "-W", "-f=${Status}", name],
            check=False,
        )
        return result.returncode == 0 and result.stdout.strip().endswith("install ok installed")

    def missing(self, names: Iterable[str]) -> list[str]:
        """Return the subset of *names* that is not installed, in order."""
        return [name for name in names if not self.is_installed(name)]

    def update(self) -> subprocess.CompletedProcess[str]:
        """Refresh the package index."""
        return self._apt("update")

    def full_upgrade(self) -> subprocess.CompletedProcess[str]:
        """Upgrade every installed package."""
        return self._apt("full-upgrade")

    def autoremove(self) -> subprocess.CompletedProcess[str]:
        """Remove packages that are no longer required."""
        return self._apt("autoremove")

    def autoclean(self) -> subprocess.CompletedProcess[str]:
        """Drop obsolete archives from the package cache."""
        return self._apt("autoclean")

    def install(self, names: Iterable[str]) -> subprocess.CompletedProcess[str]:
        """Install *names*."""
        return self._apt("install", *names)

    def install_file(self, path: Path) -> subprocess.CompletedProcess[str]:
        """Install a local ``.deb`` file, resolving its dependencies."""
        target = str(path) if path.is_absolute() else f"./{path}"
        return self._apt("install", target)

    def remove(self, names: Iterable[str]) -> subprocess.CompletedProcess[str]:
        """Remove *names*."""
        return self._apt("remove", *names)

    def architecture(self) -> str:
        """Return the dpkg architecture of the host (``arm64``, ``amd64``...)."""
        result = self.runner.run(["dpkg", "--print-architecture"])
        return result.stdout.strip()

    def _apt(self, command: str, *args: str) -> subprocess.CompletedProcess[str]:
        return self.runner.run(
            [self.apt_bin, *_APT_FLAGS, command, *args],
            timeout=self.package_timeout,
            env=_APT_ENV,
        )


__all__ = ["AptProvider"]
