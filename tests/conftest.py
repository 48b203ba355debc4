"""Shared fakes and fixtures for the hostctl test suite."""

from __future__ import annotations

import os
import subprocess
import urllib.request
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from hostctl.config import AppConfig, load_config
from hostctl.context import HostContext, build_context
from hostctl.credentials import StaticCredential
from hostctl.errors import ExternalToolError
from hostctl.fetch import Fetcher

SMB_CONF = "[global]\n   workgroup = WORKGROUP\n\n[4TB_HDD]\n   path = /mnt/4TB_HDD\n"

Handler = Callable[[list[str], str | None], subprocess.CompletedProcess[str]]


@dataclass
class FakeRunner:
    """Scripted stand-in for :class:`hostctl.providers.CommandRunner`.

    Responses are keyed on command prefixes; the longest matching prefix wins
    and unscripted commands succeed with empty output.
    """

    responses: dict[tuple[str, ...], tuple[int, str, str] | Handler] = field(default_factory=dict)
    available: set[str] = field(default_factory=set)
    calls: list[list[str]] = field(default_factory=list)
    inputs: list[str | None] = field(default_factory=list)
    interactive: list[list[str]] = field(default_factory=list)
    timeout: float | None = 60.0

    def script(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        self.responses[tuple(prefix)] = (returncode, stdout, stderr)

    def handle(self, *prefix: str, handler: Handler) -> None:
        self.responses[tuple(prefix)] = handler

    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        input: str | None = None,  # noqa: A002
        timeout: float | None = None,
        env: object | None = None,
        interactive: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        command = [str(part) for part in args]
        self.calls.append(command)
        self.inputs.append(input)
        if interactive:
            self.interactive.append(command)
        response = self._lookup(command)
        if callable(response):
            result = response(command, input)
        else:
            returncode, stdout, stderr = response
            result = subprocess.CompletedProcess(command, returncode, stdout, stderr)
        if check and result.returncode != 0:
            raise ExternalToolError(
                f"{' '.join(command)} failed (exit {result.returncode}): {result.stderr.strip()}",
                command=command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result

    def which(self, name: str) -> str | None:
        return f"/usr/bin/{name}" if name in self.available else None

    def called(self, *prefix: str) -> list[list[str]]:
        return [call for call in self.calls if tuple(call[: len(prefix)]) == prefix]

    def _lookup(self, command: list[str]) -> tuple[int, str, str] | Handler:
        best: tuple[str, ...] | None = None
        for prefix in self.responses:
            if tuple(command[: len(prefix)]) == prefix and (best is None or len(prefix) > len(best)):
                best = prefix
        if best is None:
            return (0, "", "")
        return self.responses[best]


@dataclass
class FakeAccounts:
    """In-memory passwd/group database mirroring :class:`AccountsProvider`."""

    users: dict[str, int] = field(default_factory=dict)
    groups: dict[str, tuple[int, set[str]]] = field(default_factory=dict)
    primary: dict[str, str] = field(default_factory=dict)
    calls: list[tuple[str, ...]] = field(default_factory=list)

    def add_user(self, name: str, *, uid: int | None = None, gid: int | None = None) -> None:
        self.users[name] = os.getuid() if uid is None else uid
        self.groups.setdefault(name, (os.getgid() if gid is None else gid, set()))
        self.primary[name] = name

    def add_group(self, name: str, *, gid: int = 5000, members: Sequence[str] = ()) -> None:
        self.groups[name] = (gid, set(members))

    def user_exists(self, name: str) -> bool:
        return name in self.users

    def group_exists(self, name: str) -> bool:
        return name in self.groups

    def uid(self, name: str) -> int:
        return self.users[name]

    def gid(self, name: str) -> int:
        return self.groups[name][0]

    def is_member(self, user: str, group: str) -> bool:
        if user not in self.users or group not in self.groups:
            return False
        return user in self.groups[group][1] or self.primary.get(user) == group

    def rename_user(self, old: str, new: str, home: Path) -> None:
        self.calls.append(("rename_user", old, new, str(home)))
        self.users[new] = self.users.pop(old)
        self.primary[new] = self.primary.pop(old)
        for _gid, members in self.groups.values():
            if old in members:
                members.discard(old)
                members.add(new)

    def rename_group(self, old: str, new: str) -> None:
        self.calls.append(("rename_group", old, new))
        self.groups[new] = self.groups.pop(old)
        for user, group in list(self.primary.items()):
            if group == old:
                self.primary[user] = new

    def add_to_groups(self, user: str, groups: Sequence[str]) -> None:
        self.calls.append(("add_to_groups", user, *groups))
        for group in groups:
            self.groups.setdefault(group, (6000, set()))[1].add(user)


class FakeOpener:
    """URL-keyed responses for :class:`hostctl.fetch.Fetcher`."""

    def __init__(self, payloads: dict[str, bytes] | None = None, default: bytes = b"payload"):
        self.payloads = dict(payloads or {})
        self.default = default
        self.requests: list[urllib.request.Request] = []

    def __call__(self, request: urllib.request.Request, timeout: float) -> bytes:
        self.requests.append(request)
        return self.payloads.get(request.full_url, self.default)

    @property
    def urls(self) -> list[str]:
        return [request.full_url for request in self.requests]


def write_dearmored_keyring(command: list[str], _input: str | None) -> subprocess.CompletedProcess[str]:
    """Emulate ``gpg --dearmor -o <keyring> <source>``."""
    target = Path(command[command.index("-o") + 1])
    target.write_bytes(b"keyring")
    return subprocess.CompletedProcess(command, 0, "", "")


def make_config(tmp_path: Path, **overrides: object) -> AppConfig:
    """Return a configuration whose host paths all live under *tmp_path*."""
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides=host_overrides(tmp_path, **overrides),
    )


def host_overrides(tmp_path: Path, **overrides: object) -> dict[str, object]:
    """Prepare a fake filesystem root and the config values pointing into it."""
    etc = tmp_path / "etc"
    etc.mkdir(exist_ok=True)
    (etc / "os-release").write_text(
        'PRETTY_NAME="Debian GNU/Linux 12 (bookworm)"\nVERSION_CODENAME=bookworm\n',
        encoding="utf-8",
    )
    (tmp_path / "mapper").mkdir(exist_ok=True)
    (tmp_path / "downloads").mkdir(exist_ok=True)
    base: dict[str, object] = {
        "logs_dir": str(tmp_path / "logs"),
        "templates_dir": str(tmp_path / "templates"),
        "paths": {
            "hosts": str(etc / "hosts"),
            "hostname_file": str(etc / "hostname"),
            "sshd_config": str(etc / "ssh" / "sshd_config"),
            "smb_conf": str(etc / "samba" / "smb.conf"),
            "crypttab": str(etc / "crypttab"),
            "fstab": str(etc / "fstab"),
            "sources_dir": str(etc / "apt" / "sources.list.d"),
            "mapper_dir": str(tmp_path / "mapper"),
            "os_release": str(etc / "os-release"),
            "home_root": str(tmp_path / "home"),
            "download_dir": str(tmp_path / "downloads"),
        },
        "docker": {"repository": {"keyring": str(etc / "apt" / "keyrings" / "docker.gpg")}},
        "cloudflared": {
            "repository": {"keyring": str(etc / "keyrings" / "cloudflare-public-v2.gpg")}
        },
        "samba": {"share_dir": str(tmp_path / "share")},
        "automount": {"mountpoint": str(tmp_path / "mnt" / "4TB_HDD")},
    }
    _merge(base, overrides)
    return base


def _merge(target: dict[str, object], overrides: dict[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            _merge(existing, value)
        else:
            target[key] = value


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Return a runner with the defaults a Debian host would answer."""
    runner = FakeRunner()
    runner.script("dpkg", "--print-architecture", stdout="arm64\n")
    runner.handle("gpg", handler=write_dearmored_keyring)
    return runner


@pytest.fixture
def fake_opener() -> FakeOpener:
    return FakeOpener(
        {"https://raw.githubusercontent.com/FainiDenis/rpi_setup/main/smb.conf": SMB_CONF.encode()}
    )


@pytest.fixture
def fake_accounts() -> FakeAccounts:
    accounts = FakeAccounts()
    accounts.add_user("dietpi")
    accounts.add_group("sudo", gid=27)
    accounts.add_group("docker", gid=998)
    accounts.add_group("sambashare", gid=997)
    return accounts


@pytest.fixture
def host_config(tmp_path: Path) -> AppConfig:
    return make_config(tmp_path)


@pytest.fixture
def host_context(
    host_config: AppConfig,
    fake_runner: FakeRunner,
    fake_opener: FakeOpener,
    fake_accounts: FakeAccounts,
    tmp_path: Path,
) -> HostContext:
    """Host context wired entirely to fakes and temporary paths."""
    ctx = build_context(
        host_config,
        runner=fake_runner,  # type: ignore[arg-type]
        fetcher=Fetcher(opener=fake_opener),
        credentials={"samba": StaticCredential("s3cret"), "luks": StaticCredential("hunter2")},
    )
    ctx.accounts = fake_accounts  # type: ignore[assignment]
    ctx.firewall.defaults_file = tmp_path / "etc" / "default-ufw"
    return ctx
