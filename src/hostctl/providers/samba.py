"""Samba account and configuration helpers."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

from .command import CommandRunner


@dataclass(slots=True)
class SambaProvider:
    """Wrap ``pdbedit``, ``smbpasswd`` and ``testparm``."""

    runner: CommandRunner

    def users(self) -> list[str]:
        """Return the accounts in the Samba password database."""
        result = self.runner.run(["pdbedit", "-L"], check=False)
        if result.returncode != 0:
            return []
        return [line.split(":", 1)[0] for line in result.stdout.splitlines() if ":" in line]

    def has_user(self, name: str) -> bool:
        """Return ``True`` when *name* already has a Samba password."""
        return name in self.users()

    def set_password(self, name: str, password: str | None) -> subprocess.CompletedProcess[str]:
        """Add *name* to the Samba database.

        With ``password=None`` ``smbpasswd`` prompts on the terminal itself.
        """
        if password is None:
            return self.runner.run(["smbpasswd", "-a", name], interactive=True)
        return self.runner.run(
            ["smbpasswd", "-a", "-s", name],
            input=f"{password}\n{password}\n",
        )

    def testparm_available(self) -> bool:
        """Return ``True`` when ``testparm`` is on ``PATH``."""
        return self.runner.which("testparm") is not None

    def testparm(self, path: Path) -> subprocess.CompletedProcess[str]:
        """Validate the configuration file at *path*."""
        return self.runner.run(["testparm", "-s", str(path)])


__all__ = ["SambaProvider"]
