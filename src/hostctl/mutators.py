"""Mutators: single, idempotent changes to the host.

Each mutator re-checks the specific fact it changes before acting and reports
whether anything was actually modified through :class:`MutationResult`. Every
file replacement first copies the original to ``<name>.bak`` unless a backup
already exists; an existing backup is never overwritten.
"""
from __future__ import annotations

import os
import re
import shutil
import stat
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from .config import AptRepositoryConfig, PortainerConfig
from .errors import ValidationError
from .probes import DirectoryState, GroupExists, UserInGroup

if TYPE_CHECKING:
    from .context import HostContext


@dataclass(frozen=True)
class MutationResult:
    """Outcome of one mutator invocation."""

    changed: bool
    detail: str = ""


class Mutator(Protocol):
    """Capability shared by every mutator."""

    def apply(self, ctx: HostContext) -> MutationResult:
        """Apply the change if still needed."""

    def describe(self) -> str:
        """Return a short human readable description."""


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------


def backup_path_for(path: Path) -> Path:
    """Return the ``.bak`` sibling used when *path* is first replaced."""
    return path.with_name(f"{path.name}.bak")


def write_file_atomic(path: Path, content: str | bytes, mode: int) -> None:
    """Write *content* to *path* via a temporary file in the same directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        data = content.encode("utf-8") if isinstance(content, str) else content
        with os.fdopen(tmp_fd, "wb") as handle:
            handle.write(data)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


def _read_os_release(path: Path) -> dict[str, str]:
    values: dict[str, str] = {}
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return values
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip()] = value.strip().strip('"')
    return values


@dataclass(frozen=True)
class AppendLine:
    """Append *line* unless *key_pattern* already matches a line of the file."""

    path: Path
    line: str
    key_pattern: str

    def apply(self, ctx: HostContext) -> MutationResult:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            text = ""
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.touch(mode=0o644)
        if re.search(self.key_pattern, text, re.MULTILINE):
            return MutationResult(False, f"{self.path} already has an entry")
        prefix = "" if not text or text.endswith("\n") else "\n"
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(f"{prefix}{self.line}\n")
        return MutationResult(True, f"appended to {self.path}")

    def describe(self) -> str:
        return f"append '{self.line}' to {self.path}"


@dataclass(frozen=True)
class ReplaceFile:
    """Replace *path* with *content*, keeping the first original as ``.bak``."""

    path: Path
    content: str
    mode: int | None = None
    backup: bool = True
    restart: tuple[str, ...] = ()

    @property
    def backup_path(self) -> Path:
        return backup_path_for(self.path)

    def apply(self, ctx: HostContext) -> MutationResult:
        existing: str | None
        try:
            existing = self.path.read_text(encoding="utf-8")
            current_mode = stat.S_IMODE(self.path.stat().st_mode)
        except FileNotFoundError:
            existing = None
            current_mode = None
        mode = self.mode if self.mode is not None else (current_mode or 0o644)
        if existing == self.content and current_mode == mode:
            return MutationResult(False, f"{self.path} up to date")
        if existing == self.content:
            os.chmod(self.path, mode)
            return MutationResult(True, f"{self.path} mode set to {mode:04o}")

        detail = f"wrote {self.path}"
        if existing is not None and self.backup and not self.backup_path.exists():
            shutil.copy2(self.path, self.backup_path)
            detail += f" (backup {self.backup_path.name})"
        write_file_atomic(self.path, self.content, mode)
        if self.restart:
            ctx.systemd.restart(self.restart)
            detail += f"; restarted {', '.join(self.restart)}"
        return MutationResult(True, detail)

    def describe(self) -> str:
        return f"replace {self.path}"


@dataclass(frozen=True)
class RenderFile:
    """Render a template and install it with :class:`ReplaceFile` semantics."""

    path: Path
    template: str
    context: Mapping[str, object]
    mode: int | None = None
    restart: tuple[str, ...] = ()

    def apply(self, ctx: HostContext) -> MutationResult:
        content = ctx.templates.render_to_string(self.template, self.context)
        return ReplaceFile(self.path, content, mode=self.mode, restart=self.restart).apply(ctx)

    def describe(self) -> str:
        return f"render {self.template} to {self.path}"


@dataclass(frozen=True)
class FetchFile:
    """Download a file, verify and validate it, then replace *path*."""

    url: str
    path: Path
    sha256: str | None = None
    required_pattern: str | None = None
    validate_with_testparm: bool = False
    mode: int = 0o644
    restart: tuple[str, ...] = ()

    def apply(self, ctx: HostContext) -> MutationResult:
        content = ctx.fetcher.fetch_text(self.url, sha256=self.sha256)
        if self.required_pattern and not re.search(self.required_pattern, content, re.MULTILINE):
            raise ValidationError(
                f"Downloaded file from {self.url} does not match {self.required_pattern!r}."
            )
        if self.validate_with_testparm and ctx.samba.testparm_available():
            tmp_fd, tmp_name = tempfile.mkstemp(prefix="hostctl-", suffix=f"-{self.path.name}")
            tmp_path = Path(tmp_name)
            try:
                with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                    handle.write(content)
                ctx.samba.testparm(tmp_path)
            finally:
                tmp_path.unlink(missing_ok=True)
        return ReplaceFile(self.path, content, mode=self.mode, restart=self.restart).apply(ctx)

    def describe(self) -> str:
        return f"download {self.url} to {self.path}"


@dataclass(frozen=True)
class EnsureDirectory:
    """Create *path* and set its owner, group and mode (recursively if asked)."""

    path: Path
    owner: str
    group: str
    mode: int
    recursive: bool = False

    def apply(self, ctx: HostContext) -> MutationResult:
        if DirectoryState(self.path, self.owner, self.group, self.mode).check(ctx):
            return MutationResult(False, f"{self.path} already configured")
        try:
            uid = ctx.accounts.uid(self.owner)
            gid = ctx.accounts.gid(self.group)
        except KeyError as exc:
            raise ValidationError(
                f"Cannot set ownership of {self.path}: unknown user or group {exc}."
            ) from exc
        self.path.mkdir(parents=True, exist_ok=True)
        targets: list[Path] = [self.path]
        if self.recursive:
            for root, dirs, files in os.walk(self.path):
                base = Path(root)
                targets.extend(base / name for name in dirs)
                targets.extend(base / name for name in files)
        for target in targets:
            os.chown(target, uid, gid, follow_symlinks=False)
            if not target.is_symlink():
                os.chmod(target, self.mode)
        return MutationResult(
            True,
            f"{self.path} set to {self.owner}:{self.group} {self.mode:04o}"
            + (f" ({len(targets)} entries)" if self.recursive else ""),
        )

    def describe(self) -> str:
        suffix = " recursively" if self.recursive else ""
        return f"ensure {self.path} {self.owner}:{self.group} {self.mode:04o}{suffix}"


# ---------------------------------------------------------------------------
# Packages and repositories
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UpdatePackageIndex:
    def apply(self, ctx: HostContext) -> MutationResult:
        ctx.apt.update()
        return MutationResult(True, "package index refreshed")

    def describe(self) -> str:
        return "apt-get update"


@dataclass(frozen=True)
class UpgradeSystem:
    def apply(self, ctx: HostContext) -> MutationResult:
        ctx.apt.full_upgrade()
        ctx.apt.autoremove()
        return MutationResult(True, "packages upgraded")

    def describe(self) -> str:
        return "apt-get full-upgrade and autoremove"


@dataclass(frozen=True)
class CleanPackages:
    def apply(self, ctx: HostContext) -> MutationResult:
        ctx.apt.autoremove()
        ctx.apt.autoclean()
        return MutationResult(True, "package cache cleaned")

    def describe(self) -> str:
        return "apt-get autoremove and autoclean"


@dataclass(frozen=True)
class InstallPackages:
    names: tuple[str, ...]

    def apply(self, ctx: HostContext) -> MutationResult:
        missing = ctx.apt.missing(self.names)
        if not missing:
            return MutationResult(False, "all packages installed")
        ctx.apt.install(missing)
        return MutationResult(True, f"installed {' '.join(missing)}")

    def describe(self) -> str:
        return f"install {' '.join(self.names)}"


@dataclass(frozen=True)
class RemovePackages:
    names: tuple[str, ...]

    def apply(self, ctx: HostContext) -> MutationResult:
        present = [name for name in self.names if ctx.apt.is_installed(name)]
        if not present:
            return MutationResult(False, "no conflicting packages installed")
        ctx.apt.remove(present)
        return MutationResult(True, f"removed {' '.join(present)}")

    def describe(self) -> str:
        return f"remove {' '.join(self.names)}"


@dataclass(frozen=True)
class InstallDebFromUrl:
    """Install a ``.deb`` published as a release asset."""

    package: str
    url: str
    sha256: str | None = None

    def apply(self, ctx: HostContext) -> MutationResult:
        if ctx.apt.is_installed(self.package):
            return MutationResult(False, f"{self.package} already installed")
        payload = ctx.fetcher.fetch(self.url, sha256=self.sha256)
        filename = self.url.rsplit("/", 1)[-1] or f"{self.package}.deb"
        target = ctx.config.paths.download_dir / filename
        write_file_atomic(target, payload, 0o644)
        try:
            ctx.apt.install_file(target)
        finally:
            target.unlink(missing_ok=True)
        return MutationResult(True, f"installed {self.package} from {filename}")

    def describe(self) -> str:
        return f"install {self.package} from {self.url}"


@dataclass(frozen=True)
class AddAptRepository:
    """Install a repository signing key and its ``sources.list.d`` entry."""

    repository: AptRepositoryConfig

    def source_path(self, ctx: HostContext) -> Path:
        return ctx.config.paths.sources_dir / f"{self.repository.name}.list"

    def apply(self, ctx: HostContext) -> MutationResult:
        repo = self.repository
        changed: list[str] = []
        if not repo.keyring.exists():
            key = ctx.fetcher.fetch(repo.key_url)
            repo.keyring.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(prefix="hostctl-key-")
            tmp_path = Path(tmp_name)
            try:
                with os.fdopen(tmp_fd, "wb") as handle:
                    handle.write(key)
                ctx.runner.run(
                    ["gpg", "--batch", "--yes", "--dearmor", "-o", str(repo.keyring), str(tmp_path)]
                )
            finally:
                tmp_path.unlink(missing_ok=True)
            os.chmod(repo.keyring, 0o644)
            changed.append(f"keyring {repo.keyring}")

        suite = repo.suite or _read_os_release(ctx.config.paths.os_release).get(
            "VERSION_CODENAME", ""
        )
        if not suite:
            raise ValidationError(
                f"Cannot determine the release codename for the {repo.name} repository."
            )
        content = ctx.templates.render_to_string(
            "apt/source.list.j2",
            {
                "arch": ctx.apt.architecture() if repo.with_arch else None,
                "keyring": str(repo.keyring),
                "url": repo.url,
                "suite": suite,
                "components": repo.components,
            },
        )
        source = ReplaceFile(self.source_path(ctx), content, mode=0o644, backup=False)
        if source.apply(ctx).changed:
            changed.append(f"source {source.path}")
        if not changed:
            return MutationResult(False, f"{repo.name} repository configured")
        ctx.apt.update()
        return MutationResult(True, "added " + ", ".join(changed))

    def describe(self) -> str:
        return f"add apt repository {self.repository.name}"


# ---------------------------------------------------------------------------
# Identity and accounts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SetHostname:
    name: str

    def apply(self, ctx: HostContext) -> MutationResult:
        ctx.runner.run(["hostnamectl", "set-hostname", self.name])
        return MutationResult(True, f"hostname set to {self.name}")

    def describe(self) -> str:
        return f"hostnamectl set-hostname {self.name}"


@dataclass(frozen=True)
class RenameUser:
    """Rename *old* to *new*, moving its home and renaming its primary group."""

    old: str
    new: str

    def apply(self, ctx: HostContext) -> MutationResult:
        if ctx.accounts.user_exists(self.new):
            return MutationResult(False, f"user {self.new} already exists")
        if not ctx.accounts.user_exists(self.old):
            raise ValidationError(
                f"Cannot rename user: neither {self.old!r} nor {self.new!r} exists."
            )
        home = ctx.config.paths.home_root / self.new
        ctx.accounts.rename_user(self.old, self.new, home)
        detail = f"renamed {self.old} to {self.new}"
        if ctx.accounts.group_exists(self.old):
            ctx.accounts.rename_group(self.old, self.new)
            detail += " (group renamed)"
        return MutationResult(True, detail)

    def describe(self) -> str:
        return f"rename user {self.old} to {self.new}"


@dataclass(frozen=True)
class AddUserToGroups:
    """Add *user* to *groups*; ``only_existing`` skips groups that do not exist."""

    user: str
    groups: tuple[str, ...]
    only_existing: bool = False

    def apply(self, ctx: HostContext) -> MutationResult:
        pending: list[str] = []
        for group in self.groups:
            if self.only_existing and not GroupExists(group).check(ctx):
                continue
            if not UserInGroup(self.user, group).check(ctx):
                pending.append(group)
        if not pending:
            return MutationResult(False, f"{self.user} already in groups")
        ctx.accounts.add_to_groups(self.user, pending)
        return MutationResult(True, f"added {self.user} to {', '.join(pending)}")

    def describe(self) -> str:
        return f"add {self.user} to {', '.join(self.groups)}"


@dataclass(frozen=True)
class SetSambaPassword:
    """Create the Samba account using the configured credential provider."""

    user: str
    credential: str = "samba"

    def apply(self, ctx: HostContext) -> MutationResult:
        if ctx.samba.has_user(self.user):
            return MutationResult(False, f"samba account {self.user} exists")
        password = ctx.credential(self.credential).get()
        ctx.samba.set_password(self.user, password)
        return MutationResult(True, f"samba account {self.user} created")

    def describe(self) -> str:
        return f"smbpasswd -a {self.user}"


# ---------------------------------------------------------------------------
# Services, firewall and containers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EnableService:
    names: tuple[str, ...]
    start: bool = True

    def apply(self, ctx: HostContext) -> MutationResult:
        pending = [
            name
            for name in self.names
            if not ctx.systemd.is_enabled(name) or (self.start and not ctx.systemd.is_active(name))
        ]
        if not pending:
            return MutationResult(False, "services enabled")
        ctx.systemd.enable(pending, now=self.start)
        return MutationResult(True, f"enabled {', '.join(pending)}")

    def describe(self) -> str:
        return f"systemctl enable {'--now ' if self.start else ''}{' '.join(self.names)}"


@dataclass(frozen=True)
class RestartService:
    names: tuple[str, ...]

    def apply(self, ctx: HostContext) -> MutationResult:
        ctx.systemd.restart(self.names)
        return MutationResult(True, f"restarted {', '.join(self.names)}")

    def describe(self) -> str:
        return f"systemctl restart {' '.join(self.names)}"


@dataclass(frozen=True)
class SetFirewallDefault:
    direction: str
    policy: str

    def apply(self, ctx: HostContext) -> MutationResult:
        if ctx.firewall.defaults().get(self.direction) == self.policy:
            return MutationResult(False, f"default {self.direction} already {self.policy}")
        ctx.firewall.set_default(self.direction, self.policy)
        return MutationResult(True, f"default {self.direction} set to {self.policy}")

    def describe(self) -> str:
        return f"ufw default {self.policy} {self.direction}"


@dataclass(frozen=True)
class AddFirewallRule:
    rule: str

    def apply(self, ctx: HostContext) -> MutationResult:
        if ctx.firewall.has_rule(self.rule):
            return MutationResult(False, f"rule '{self.rule}' present")
        ctx.firewall.add_rule(self.rule)
        return MutationResult(True, f"added rule '{self.rule}'")

    def describe(self) -> str:
        return f"ufw {self.rule}"


@dataclass(frozen=True)
class EnableFirewall:
    def apply(self, ctx: HostContext) -> MutationResult:
        if ctx.firewall.is_active():
            return MutationResult(False, "firewall active")
        ctx.firewall.enable()
        ctx.firewall.reload()
        return MutationResult(True, "firewall enabled")

    def describe(self) -> str:
        return "ufw --force enable"


@dataclass(frozen=True)
class EnsureVolume:
    name: str

    def apply(self, ctx: HostContext) -> MutationResult:
        if ctx.docker.volume_exists(self.name):
            return MutationResult(False, f"volume {self.name} exists")
        ctx.docker.create_volume(self.name)
        return MutationResult(True, f"created volume {self.name}")

    def describe(self) -> str:
        return f"docker volume create {self.name}"


@dataclass(frozen=True)
class EnsureContainer:
    """Run the container; a stopped container with the same name is recreated."""

    spec: PortainerConfig

    def apply(self, ctx: HostContext) -> MutationResult:
        if ctx.docker.container_running(self.spec.name):
            return MutationResult(False, f"container {self.spec.name} running")
        if ctx.docker.container_exists(self.spec.name):
            ctx.docker.remove_container(self.spec.name)
        ctx.docker.run_container(self.spec)
        return MutationResult(True, f"started container {self.spec.name}")

    def describe(self) -> str:
        return f"docker run {self.spec.image} as {self.spec.name}"


# ---------------------------------------------------------------------------
# Generic commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunInstaller:
    """Download a shell installer and pipe it to ``sh``."""

    url: str
    sha256: str | None = None

    def apply(self, ctx: HostContext) -> MutationResult:
        script = ctx.fetcher.fetch_text(self.url, sha256=self.sha256)
        ctx.runner.run(["sh", "-s"], input=script, timeout=ctx.config.commands.package_timeout)
        return MutationResult(True, f"ran installer from {self.url}")

    def describe(self) -> str:
        return f"curl {self.url} | sh"


@dataclass(frozen=True)
class RunExternal:
    """Run a command whose effect the surrounding probe accounts for."""

    command: str
    args: tuple[str, ...] = ()
    timeout: float | None = None

    def apply(self, ctx: HostContext) -> MutationResult:
        result = ctx.runner.run([self.command, *self.args], timeout=self.timeout)
        return MutationResult(True, result.stdout.strip())

    def describe(self) -> str:
        return " ".join([self.command, *self.args])


@dataclass(frozen=True)
class Invoke:
    """Call a bound action, typically one device resolver transition."""

    label: str
    action: Callable[[], MutationResult] = field(compare=False)

    def apply(self, ctx: HostContext) -> MutationResult:
        return self.action()

    def describe(self) -> str:
        return self.label


__all__ = [
    "AddAptRepository",
    "AddFirewallRule",
    "AddUserToGroups",
    "AppendLine",
    "CleanPackages",
    "EnableFirewall",
    "EnableService",
    "EnsureContainer",
    "EnsureDirectory",
    "EnsureVolume",
    "FetchFile",
    "InstallDebFromUrl",
    "InstallPackages",
    "Invoke",
    "MutationResult",
    "Mutator",
    "RemovePackages",
    "RenameUser",
    "RenderFile",
    "ReplaceFile",
    "RestartService",
    "RunExternal",
    "RunInstaller",
    "SetFirewallDefault",
    "SetHostname",
    "SetSambaPassword",
    "UpdatePackageIndex",
    "UpgradeSystem",
    "backup_path_for",
    "write_file_atomic",
]
