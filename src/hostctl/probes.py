"""Side-effect-free checks of host state.

A probe answers one question, "is this already true?", by querying the
relevant facility: the package database, the passwd and group databases,
file contents, systemd, ufw, docker or ``/dev/mapper``. Probes never change
the host; the step runner relies on that to implement dry runs and ``plan``.
"""
from __future__ import annotations

import re
import stat
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from .context import HostContext


class StateProbe(Protocol):
    """Capability shared by every probe."""

    def check(self, ctx: HostContext) -> bool:
        """Return ``True`` when the desired state already holds."""

    def describe(self) -> str:
        """Return a short human readable description."""


# ---------------------------------------------------------------------------
# Packages, accounts and services
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PackageInstalled:
    name: str

    def check(self, ctx: HostContext) -> bool:
        return ctx.apt.is_installed(self.name)

    def describe(self) -> str:
        return f"package {self.name} installed"


@dataclass(frozen=True)
class UserExists:
    name: str

    def check(self, ctx: HostContext) -> bool:
        return ctx.accounts.user_exists(self.name)

    def describe(self) -> str:
        return f"user {self.name} exists"


@dataclass(frozen=True)
class GroupExists:
    name: str

    def check(self, ctx: HostContext) -> bool:
        return ctx.accounts.group_exists(self.name)

    def describe(self) -> str:
        return f"group {self.name} exists"


@dataclass(frozen=True)
class UserInGroup:
    """Membership check; with ``missing_ok`` an absent group counts as satisfied."""

    user: str
    group: str
    missing_ok: bool = False

    def check(self, ctx: HostContext) -> bool:
        if self.missing_ok and not ctx.accounts.group_exists(self.group):
            return True
        return ctx.accounts.is_member(self.user, self.group)

    def describe(self) -> str:
        return f"user {self.user} in group {self.group}"


@dataclass(frozen=True)
class ServiceActive:
    name: str

    def check(self, ctx: HostContext) -> bool:
        return ctx.systemd.is_active(self.name)

    def describe(self) -> str:
        return f"service {self.name} active"


@dataclass(frozen=True)
class ServiceEnabled:
    name: str

    def check(self, ctx: HostContext) -> bool:
        return ctx.systemd.is_enabled(self.name)

    def describe(self) -> str:
        return f"service {self.name} enabled"


@dataclass(frozen=True)
class SambaUserExists:
    name: str

    def check(self, ctx: HostContext) -> bool:
        return ctx.samba.has_user(self.name)

    def describe(self) -> str:
        return f"samba account {self.name} exists"


@dataclass(frozen=True)
class CommandAvailable:
    name: str

    def check(self, ctx: HostContext) -> bool:
        return ctx.runner.which(self.name) is not None

    def describe(self) -> str:
        return f"command {self.name} available"


# ---------------------------------------------------------------------------
# Files and devices
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LineInFile:
    """True when *pattern* (a multi-line regex) matches somewhere in *path*."""

    path: Path
    pattern: str

    def check(self, ctx: HostContext) -> bool:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return False
        return re.search(self.pattern, text, re.MULTILINE) is not None

    def describe(self) -> str:
        return f"{self.path} matches /{self.pattern}/"


@dataclass(frozen=True)
class FileExists:
    path: Path

    def check(self, ctx: HostContext) -> bool:
        return self.path.exists()

    def describe(self) -> str:
        return f"{self.path} exists"


@dataclass(frozen=True)
class FileMatches:
    path: Path
    content: str

    def check(self, ctx: HostContext) -> bool:
        try:
            return self.path.read_text(encoding="utf-8") == self.content
        except FileNotFoundError:
            return False

    def describe(self) -> str:
        return f"{self.path} up to date"


@dataclass(frozen=True)
class FileMatchesTemplate:
    """True when *path* already holds the rendering of *template*."""

    path: Path
    template: str
    context: Mapping[str, object]

    def check(self, ctx: HostContext) -> bool:
        rendered = ctx.templates.render_to_string(self.template, self.context)
        return FileMatches(self.path, rendered).check(ctx)

    def describe(self) -> str:
        return f"{self.path} rendered from {self.template}"


@dataclass(frozen=True)
class DirectoryState:
    """Directory exists with the given owner, group and permission bits."""

    path: Path
    owner: str
    group: str
    mode: int

    def check(self, ctx: HostContext) -> bool:
        try:
            info = self.path.stat()
        except FileNotFoundError:
            return False
        if not stat.S_ISDIR(info.st_mode):
            return False
        try:
            uid = ctx.accounts.uid(self.owner)
            gid = ctx.accounts.gid(self.group)
        except KeyError:
            return False
        return info.st_uid == uid and info.st_gid == gid and stat.S_IMODE(info.st_mode) == self.mode

    def describe(self) -> str:
        return f"{self.path} owned by {self.owner}:{self.group} mode {self.mode:04o}"


@dataclass(frozen=True)
class HostnameIs:
    name: str

    def check(self, ctx: HostContext) -> bool:
        try:
            current = ctx.config.paths.hostname_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return False
        return current == self.name

    def describe(self) -> str:
        return f"hostname is {self.name}"


@dataclass(frozen=True)
class DeviceUnlocked:
    mapper_name: str

    def check(self, ctx: HostContext) -> bool:
        return (ctx.config.paths.mapper_dir / self.mapper_name).exists()

    def describe(self) -> str:
        return f"/dev/mapper/{self.mapper_name} present"


# ---------------------------------------------------------------------------
# Firewall and containers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FirewallRulePresent:
    rule: str

    def check(self, ctx: HostContext) -> bool:
        return ctx.firewall.has_rule(self.rule)

    def describe(self) -> str:
        return f"ufw rule '{self.rule}'"


@dataclass(frozen=True)
class FirewallDefault:
    direction: str
    policy: str

    def check(self, ctx: HostContext) -> bool:
        return ctx.firewall.defaults().get(self.direction) == self.policy

    def describe(self) -> str:
        return f"ufw default {self.policy} {self.direction}"


@dataclass(frozen=True)
class FirewallActive:
    def check(self, ctx: HostContext) -> bool:
        return ctx.firewall.is_active()

    def describe(self) -> str:
        return "ufw active"


@dataclass(frozen=True)
class ContainerRunning:
    name: str

    def check(self, ctx: HostContext) -> bool:
        return ctx.docker.container_running(self.name)

    def describe(self) -> str:
        return f"container {self.name} running"


@dataclass(frozen=True)
class VolumeExists:
    name: str

    def check(self, ctx: HostContext) -> bool:
        return ctx.docker.volume_exists(self.name)

    def describe(self) -> str:
        return f"docker volume {self.name} exists"


# ---------------------------------------------------------------------------
# Combinators
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AllOf:
    """True when every child probe is true; stops at the first false one."""

    probes: tuple[StateProbe, ...]

    def check(self, ctx: HostContext) -> bool:
        return all(probe.check(ctx) for probe in self.probes)

    def describe(self) -> str:
        return " and ".join(probe.describe() for probe in self.probes)


@dataclass(frozen=True)
class Not:
    probe: StateProbe

    def check(self, ctx: HostContext) -> bool:
        return not self.probe.check(ctx)

    def describe(self) -> str:
        return f"not ({self.probe.describe()})"


__all__ = [
    "AllOf",
    "CommandAvailable",
    "ContainerRunning",
    "DeviceUnlocked",
    "DirectoryState",
    "FileExists",
    "FileMatches",
    "FileMatchesTemplate",
    "FirewallActive",
    "FirewallDefault",
    "FirewallRulePresent",
    "GroupExists",
    "HostnameIs",
    "LineInFile",
    "Not",
    "PackageInstalled",
    "SambaUserExists",
    "ServiceActive",
    "ServiceEnabled",
    "StateProbe",
    "UserExists",
    "UserInGroup",
    "VolumeExists",
]
