"""Tests for the thin wrappers around host tools."""
from __future__ import annotations

import subprocess
from pathlib import Path

import pytest
from conftest import FakeRunner

from hostctl.errors import ExternalToolError, MissingToolError
from hostctl.providers import (
    AptProvider,
    CommandRunner,
    SambaProvider,
    SystemdProvider,
    UfwProvider,
    normalise_rule,
)


def test_command_runner_raises_on_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    """Non-zero exits become ExternalToolError carrying stderr."""
    seen: dict[str, object] = {}

    def fake_run(command: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        seen.update(kwargs)
        return subprocess.CompletedProcess(command, 100, "", "E: Unable to locate package\n")

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(ExternalToolError) as excinfo:
        CommandRunner(timeout=5).run(["apt-get", "install", "nope"])

    assert excinfo.value.returncode == 100
    assert "E: Unable to locate package" in str(excinfo.value)
    assert seen["timeout"] == 5
    assert seen["capture_output"] is True


def test_command_runner_unchecked_and_interactive(monkeypatch: pytest.MonkeyPatch) -> None:
    """check=False returns the failure; interactive runs drop capture and timeout."""
    seen: list[dict[str, object]] = []

    def fake_run(command: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        seen.append(kwargs)
        return subprocess.CompletedProcess(command, 3, "", "")

    monkeypatch.setattr(subprocess, "run", fake_run)
    runner = CommandRunner(timeout=5)

    assert runner.run(["systemctl", "is-active", "smbd"], check=False).returncode == 3
    runner.run(["cryptsetup", "open", "/dev/sda1", "x"], check=False, interactive=True)

    assert seen[1]["capture_output"] is False
    assert seen[1]["timeout"] is None


def test_command_runner_missing_binary(monkeypatch: pytest.MonkeyPatch) -> None:
    """A missing executable is an environment problem, not a tool failure."""

    def fake_run(command: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        raise FileNotFoundError(2, "No such file or directory", command[0])

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(MissingToolError) as excinfo:
        CommandRunner().run(["ufw", "status"])
    assert excinfo.value.exit_code == 3


def test_command_runner_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    """Timeouts are reported with the command line."""

    def fake_run(command: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        raise subprocess.TimeoutExpired(command, 1.0)

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(ExternalToolError, match="timed out"):
        CommandRunner(timeout=1).run(["apt-get", "update"])


def test_apt_provider_runs_noninteractively() -> None:
    """apt-get runs with -y, no pty and the non-interactive frontend."""
    runner = FakeRunner()
    apt = AptProvider(runner, package_timeout=300)  # type: ignore[arg-type]

    apt.install(["git", "curl"])
    apt.install_file(Path("pkg.deb"))

    assert runner.calls == [
        ["apt-get", "-y", "-o", "Dpkg::Use-Pty=0", "install", "git", "curl"],
        ["apt-get", "-y", "-o", "Dpkg::Use-Pty=0", "install", "./pkg.deb"],
    ]


def test_systemd_provider_queries_quietly() -> None:
    """Status queries never raise; changes do."""
    runner = FakeRunner()
    runner.script("systemctl", "is-enabled", "--quiet", "nmbd", returncode=1)
    systemd = SystemdProvider(runner)  # type: ignore[arg-type]

    assert systemd.is_enabled("nmbd") is False
    assert systemd.is_enabled("smbd") is True
    systemd.enable(["smbd", "nmbd"], now=True)

    assert runner.calls[-1] == ["systemctl", "enable", "--now", "smbd", "nmbd"]


def test_samba_provider_lists_users_and_sets_password() -> None:
    """pdbedit output is parsed and passwords go through stdin."""
    runner = FakeRunner()
    runner.script("pdbedit", "-L", stdout="pi:1000:Pi\n")
    samba = SambaProvider(runner)  # type: ignore[arg-type]

    assert samba.users() == ["pi"]
    samba.set_password("alice", "pw")
    samba.set_password("bob", None)

    assert runner.inputs[1] == "pw\npw\n"
    assert runner.interactive == [["smbpasswd", "-a", "bob"]]


def test_ufw_provider_parses_rules_and_defaults(tmp_path: Path) -> None:
    """Added rules and default policies are read from ufw's own output."""
    runner = FakeRunner()
    runner.script(
        "ufw",
        "show",
        "added",
        stdout=(
            "Added user rules (see 'ufw status' for running firewall):\n"
            "ufw allow 80/tcp\n"
            "ufw allow from 192.168.1.0/24 to any port 22 proto tcp\n"
        ),
    )
    runner.script("ufw", "status", "verbose", stdout="Status: inactive\n")
    defaults_file = tmp_path / "ufw"
    defaults_file.write_text(
        'DEFAULT_INPUT_POLICY="DROP"\nDEFAULT_OUTPUT_POLICY="ACCEPT"\n'
        'DEFAULT_FORWARD_POLICY="DROP"\n',
        encoding="utf-8",
    )
    ufw = UfwProvider(runner, defaults_file=defaults_file)  # type: ignore[arg-type]

    assert ufw.added_rules() == [
        "allow 80/tcp",
        "allow from 192.168.1.0/24 to any port 22 proto tcp",
    ]
    assert ufw.has_rule("allow  from 192.168.1.0/24 to any port 22   proto tcp")
    assert ufw.defaults() == {"incoming": "deny", "outgoing": "allow", "routed": "deny"}
    assert ufw.is_active() is False


def test_normalise_rule_collapses_whitespace() -> None:
    """Rule comparison ignores spacing."""
    assert normalise_rule("  allow   in on  tailscale0 ") == "allow in on tailscale0"
