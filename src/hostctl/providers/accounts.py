"""User and group database access plus the shadow-utils that change it."""
from __future__ import annotations

import grp
import pwd
import subprocess
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from .command import CommandRunner


@dataclass(slots=True)
class AccountsProvider:
    """Look up and modify local accounts."""

    runner: CommandRunner

    def user_exists(self, name: str) -> bool:
        """Return ``True`` when the passwd database knows *name*."""
        try:
            pwd.getpwnam(name)
        except KeyError:
            return False
        return True

    def group_exists(self, name: str) -> bool:
        """Return ``True`` when the group database knows *name*."""
        try:
            grp.getgrnam(name)
        except KeyError:
            return False
        return True

    def uid(self, name: str) -> int:
        """Return the uid of *name*; raises ``KeyError`` when unknown."""
        return pwd.getpwnam(name).pw_uid

    def gid(self, name: str) -> int:
        """Return the gid of group *name*; raises ``KeyError`` when unknown."""
        return grp.getgrnam(name).gr_gid

    def is_member(self, user: str, group: str) -> bool:
        """Return ``True`` when *user* belongs to *group* (primary or supplementary)."""
        try:
            entry = grp.getgrnam(group)
            account = pwd.getpwnam(user)
        except KeyError:
            return False
        return user in entry.gr_mem or account.pw_gid == entry.gr_gid

    def rename_user(self, old: str, new: str, home: Path) -> subprocess.CompletedProcess[str]:
        """Rename *old* to *new*, moving the home directory to *home*."""
        return self.runner.run(["usermod", "-l", new, "-d", str(home), "-m", old])

    def rename_group(self, old: str, new: str) -> subprocess.CompletedProcess[str]:
        """Rename group *old* to *new*."""
        return self.runner.run(["groupmod", "-n", new, old])

    def add_to_groups(self, user: str, groups: Iterable[str]) -> subprocess.CompletedProcess[str]:
        """Append *groups* to the supplementary groups of *user*."""
        return self.runner.run(["usermod", "-aG", ",".join(groups), user])


__all__ = ["AccountsProvider"]
