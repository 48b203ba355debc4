"""Tests for the side-effect-free state probes."""
from __future__ import annotations

import os
from pathlib import Path

from conftest import FakeAccounts, FakeRunner

from hostctl.context import HostContext
from hostctl.probes import (
    AllOf,
    CommandAvailable,
    ContainerRunning,
    DeviceUnlocked,
    DirectoryState,
    FileMatches,
    FileMatchesTemplate,
    FirewallDefault,
    FirewallRulePresent,
    GroupExists,
    HostnameIs,
    LineInFile,
    Not,
    PackageInstalled,
    SambaUserExists,
    ServiceActive,
    UserInGroup,
)


def test_package_installed_reads_dpkg_status(
    host_context: HostContext, fake_runner: FakeRunner
) -> None:
    """Only the "install ok installed" status counts as installed."""
    fake_runner.script("dpkg-query", "-W", "-f=${Status}", "git", stdout="install ok installed")
    fake_runner.script("dpkg-query", "-W", "-f=${Status}", "ufw", stdout="deinstall ok config-files")
    fake_runner.script("dpkg-query", "-W", "-f=${Status}", "nope", returncode=1)

    assert PackageInstalled("git").check(host_context) is True
    assert PackageInstalled("ufw").check(host_context) is False
    assert PackageInstalled("nope").check(host_context) is False
    assert Not(PackageInstalled("nope")).check(host_context) is True


def test_user_in_group_missing_ok(
    host_context: HostContext, fake_accounts: FakeAccounts
) -> None:
    """An absent group satisfies membership only when missing_ok is set."""
    assert UserInGroup("dietpi", "gitea", missing_ok=True).check(host_context) is True
    assert UserInGroup("dietpi", "gitea").check(host_context) is False
    assert UserInGroup("dietpi", "docker", missing_ok=True).check(host_context) is False
    fake_accounts.add_to_groups("dietpi", ["docker"])
    assert UserInGroup("dietpi", "docker").check(host_context) is True


def test_line_in_file_uses_multiline_regex(host_context: HostContext, tmp_path: Path) -> None:
    """Patterns anchor on lines and a missing file is simply unsatisfied."""
    hosts = tmp_path / "hosts"
    probe = LineInFile(hosts, r"^127\.0\.1\.1[ \t]+rpi4([ \t]|$)")
    assert probe.check(host_context) is False

    hosts.write_text("127.0.0.1 localhost\n127.0.1.1 rpi4\n", encoding="utf-8")
    assert probe.check(host_context) is True

    hosts.write_text("127.0.1.1 rpi40\n", encoding="utf-8")
    assert probe.check(host_context) is False


def test_hostname_is_reads_hostname_file(host_context: HostContext) -> None:
    """The hostname probe compares the stripped contents of the hostname file."""
    probe = HostnameIs("rpi4")
    assert probe.check(host_context) is False

    host_context.config.paths.hostname_file.write_text("rpi4\n", encoding="utf-8")
    assert probe.check(host_context) is True


def test_directory_state_checks_owner_and_mode(
    host_context: HostContext, fake_accounts: FakeAccounts, tmp_path: Path
) -> None:
    """Directory probes compare ownership and permission bits."""
    fake_accounts.add_user("pi")
    share = tmp_path / "share"
    probe = DirectoryState(share, "pi", "pi", 0o775)
    assert probe.check(host_context) is False

    share.mkdir()
    os.chmod(share, 0o700)
    assert probe.check(host_context) is False

    os.chmod(share, 0o775)
    assert probe.check(host_context) is True
    assert DirectoryState(share, "ghost", "pi", 0o775).check(host_context) is False


def test_file_matches_template(host_context: HostContext, tmp_path: Path) -> None:
    """A file rendered from the same template and context satisfies the probe."""
    context = {
        "port": 22,
        "permit_root_login": "no",
        "password_authentication": True,
        "allow_users": [],
    }
    target = tmp_path / "sshd_config"
    probe = FileMatchesTemplate(target, "ssh/sshd_config.j2", context)
    assert probe.check(host_context) is False

    target.write_text(
        host_context.templates.render_to_string("ssh/sshd_config.j2", context), encoding="utf-8"
    )
    assert probe.check(host_context) is True


def test_service_and_samba_probes(host_context: HostContext, fake_runner: FakeRunner) -> None:
    """Service and Samba probes never raise on a non-zero exit."""
    fake_runner.script("systemctl", "is-active", "--quiet", "smbd", returncode=3)
    fake_runner.script("pdbedit", "-L", stdout="pi:1000:\nguest:65534:\n")

    assert ServiceActive("smbd").check(host_context) is False
    assert ServiceActive("nmbd").check(host_context) is True
    assert SambaUserExists("pi").check(host_context) is True
    assert SambaUserExists("alice").check(host_context) is False


def test_firewall_probes(host_context: HostContext, fake_runner: FakeRunner) -> None:
    """Firewall probes read ufw's added rules and default policies."""
    fake_runner.script(
        "ufw",
        "show",
        "added",
        stdout="Added user rules (see 'ufw status' for running firewall):\nufw allow 80/tcp\n",
    )
    fake_runner.script(
        "ufw",
        "status",
        "verbose",
        stdout="Status: active\nDefault: deny (incoming), allow (outgoing), disabled (routed)\n",
    )

    assert FirewallRulePresent("allow   80/tcp").check(host_context) is True
    assert FirewallRulePresent("allow 443/tcp").check(host_context) is False
    assert FirewallDefault("incoming", "deny").check(host_context) is True
    assert FirewallDefault("outgoing", "deny").check(host_context) is False


def test_container_device_and_command_probes(
    host_context: HostContext, fake_runner: FakeRunner
) -> None:
    """Container, mapper and PATH probes report absent resources as unsatisfied."""
    fake_runner.script("docker", "inspect", returncode=1, stderr="No such object")
    assert ContainerRunning("portainer").check(host_context) is False
    fake_runner.script("docker", "inspect", stdout="true\n")
    assert ContainerRunning("portainer").check(host_context) is True

    probe = DeviceUnlocked("4tb_hdd_crypt")
    assert probe.check(host_context) is False
    (host_context.config.paths.mapper_dir / "4tb_hdd_crypt").touch()
    assert probe.check(host_context) is True

    assert CommandAvailable("tailscale").check(host_context) is False
    fake_runner.available.add("tailscale")
    assert CommandAvailable("tailscale").check(host_context) is True


def test_all_of_short_circuits(host_context: HostContext, fake_runner: FakeRunner) -> None:
    """AllOf stops querying once a child probe is unsatisfied."""
    fake_runner.script("dpkg-query", returncode=1)
    probe = AllOf((PackageInstalled("samba"), PackageInstalled("smbclient")))

    assert probe.check(host_context) is False
    assert len(fake_runner.called("dpkg-query")) == 1
    assert probe.describe() == "package samba installed and package smbclient installed"


def test_group_exists_and_file_matches(
    host_context: HostContext, fake_accounts: FakeAccounts, tmp_path: Path
) -> None:
    """Group lookups use the accounts database; file matches compare exact text."""
    assert GroupExists("sambashare").check(host_context) is True
    assert GroupExists("gitea").check(host_context) is False

    motd = tmp_path / "motd"
    probe = FileMatches(motd, "welcome\n")
    assert probe.check(host_context) is False
    motd.write_text("welcome", encoding="utf-8")
    assert probe.check(host_context) is False
    motd.write_text("welcome\n", encoding="utf-8")
    assert probe.check(host_context) is True
