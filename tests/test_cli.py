"""Tests for the hostctl CLI."""
from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path

import pytest
import yaml
from conftest import FakeOpener, FakeRunner, host_overrides
from typer.testing import CliRunner

from hostctl import __version__, cli, devices
from hostctl.fetch import Fetcher

runner = CliRunner()


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _journal(tmp_path: Path) -> list[dict[str, object]]:
    path = tmp_path / "logs" / "operations.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def _prepare_environment(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    *,
    fake_runner: FakeRunner | None = None,
    root: bool = True,
    **overrides: object,
) -> dict[str, str]:
    """Write a config file rooted in *tmp_path* and wire the CLI to fakes."""
    config_file = tmp_path / "config.yml"
    config_file.write_text(
        yaml.safe_dump(host_overrides(tmp_path, **overrides), sort_keys=True),
        encoding="utf-8",
    )
    runner_instance = fake_runner or FakeRunner()
    opener = FakeOpener(default=b"[global]\n")
    monkeypatch.setattr(cli, "CommandRunner", lambda timeout=None: runner_instance)
    monkeypatch.setattr(cli, "Fetcher", lambda timeout=None: Fetcher(opener=opener))
    monkeypatch.setattr(cli.os, "geteuid", lambda: 0 if root else 1000)
    return {"HOSTCTL_CONFIG_FILE": str(config_file), "LUKS_PASSPHRASE": "", "SAMBA_PASSWORD": ""}


def test_version_option_outputs_package_version(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """CLI ``--version`` flag emits the package version."""
    env = _prepare_environment(tmp_path, monkeypatch)
    result = runner.invoke(cli.app, ["--version"], env=env)

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_invocation_without_subcommand_shows_help(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Calling the CLI without a subcommand shows help output."""
    env = _prepare_environment(tmp_path, monkeypatch)
    result = runner.invoke(cli.app, env=env)

    assert result.exit_code == 0
    assert "Single-board host provisioning CLI" in result.stdout


def test_config_show_json(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """`config show --json` emits the merged configuration with secrets redacted."""
    env = _prepare_environment(
        tmp_path,
        monkeypatch,
        hostname="nas",
        credentials={"samba": {"source": "value", "value": "topsecret"}},
    )

    result = runner.invoke(cli.app, ["config", "show", "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["hostname"] == "nas"
    assert payload["config_file"] == str(tmp_path / "config.yml")
    assert "topsecret" not in result.stdout


def test_config_show_table(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """`config show` prints the merged configuration in a table."""
    env = _prepare_environment(tmp_path, monkeypatch)

    result = runner.invoke(cli.app, ["config", "show"], env=env)

    assert result.exit_code == 0
    assert "hostname" in result.stdout
    assert "automount" in result.stdout


def test_invalid_config_exits_with_validation_code(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Configuration errors are reported before any command runs."""
    env = _prepare_environment(tmp_path, monkeypatch)
    Path(env["HOSTCTL_CONFIG_FILE"]).write_text("unknown: 1\n", encoding="utf-8")

    result = runner.invoke(cli.app, ["plan"], env=env)

    assert result.exit_code == 2
    assert "Configuration error" in result.stdout


def test_provision_requires_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Mutating runs refuse to start without superuser privileges."""
    fake = FakeRunner()
    env = _prepare_environment(tmp_path, monkeypatch, fake_runner=fake, root=False)

    result = runner.invoke(cli.app, ["provision", "--yes"], env=env)

    assert result.exit_code == 3
    assert "must run as root" in result.stdout
    assert fake.calls == []
    (record,) = _journal(tmp_path)
    assert record["command"] == "provision"
    assert record["result"]["rc"] == 3  # type: ignore[index]


def test_provision_dry_run_needs_no_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A dry run only probes, so it runs unprivileged and changes nothing."""
    fake = FakeRunner()
    env = _prepare_environment(tmp_path, monkeypatch, fake_runner=fake, root=False)

    result = runner.invoke(cli.app, ["provision", "--dry-run"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "Summary:" in result.stdout
    assert fake.called("apt-get") == []
    assert fake.called("hostnamectl") == []
    assert not (tmp_path / "etc" / "hosts").exists()


def test_provision_only_hosts_entry_twice(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Selecting one step applies it once; the second run is satisfied."""
    env = _prepare_environment(tmp_path, monkeypatch)
    hosts = tmp_path / "etc" / "hosts"
    hosts.write_text("127.0.0.1 localhost\n", encoding="utf-8")

    first = runner.invoke(cli.app, ["provision", "--only", "hostname.hosts", "--yes"], env=env)
    second = runner.invoke(cli.app, ["provision", "--only", "hostname.hosts", "--yes"], env=env)

    assert first.exit_code == 0, first.stdout
    assert second.exit_code == 0, second.stdout
    assert "applied" in first.stdout
    assert "satisfied" in second.stdout
    assert hosts.read_text(encoding="utf-8") == "127.0.0.1 localhost\n127.0.1.1 rpi4\n"
    records = _journal(tmp_path)
    assert [record["command"] for record in records] == ["provision", "provision"]
    assert records[0]["result"]["changed"] == 1  # type: ignore[index]
    assert records[1]["result"]["changed"] == 0  # type: ignore[index]


def test_provision_confirmation_can_be_declined(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Answering no to the confirmation prompt leaves the host alone."""
    fake = FakeRunner()
    env = _prepare_environment(tmp_path, monkeypatch, fake_runner=fake)

    result = runner.invoke(cli.app, ["provision", "--only", "hostname"], input="n\n", env=env)

    assert result.exit_code == 1
    assert fake.calls == []
    assert not (tmp_path / "etc" / "hosts").exists()


def test_provision_unknown_selector(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Unknown step ids are rejected with the validation exit code."""
    env = _prepare_environment(tmp_path, monkeypatch)

    result = runner.invoke(cli.app, ["provision", "--only", "smb", "--yes"], env=env)

    assert result.exit_code == 2
    assert "Unknown step selector" in result.stdout


def test_provision_failure_exit_code(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A failing fatal step sets the exit code and is journalled as an error."""
    fake = FakeRunner()
    fake.script("hostnamectl", returncode=1, stderr="Could not set hostname")
    env = _prepare_environment(tmp_path, monkeypatch, fake_runner=fake)

    result = runner.invoke(cli.app, ["provision", "--only", "hostname", "--yes"], env=env)

    assert result.exit_code == 4
    assert "Aborted at hostname.set" in result.stdout
    (record,) = _journal(tmp_path)
    result_record = record["result"]
    assert isinstance(result_record, dict)
    assert result_record["status"] == "error"
    assert result_record["context"]["pending"] == ["hostname.hosts"]


def test_plan_json_lists_every_step(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """`plan --json` reports the dry-run outcome of every provisioning step."""
    env = _prepare_environment(tmp_path, monkeypatch, root=False)

    result = runner.invoke(cli.app, ["plan", "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    summary = payload["summary"]
    assert isinstance(summary, dict)
    assert summary["dry_run"] is True
    steps = payload["steps"]
    assert isinstance(steps, list)
    assert steps[0]["id"] == "system.update"
    assert steps[-1]["id"] == "system.cleanup"
    assert {step["status"] for step in steps} <= {"planned", "satisfied"}


def test_automount_rejects_non_block_device(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """The source must be a block device, even in a dry run."""
    fake = FakeRunner()
    env = _prepare_environment(tmp_path, monkeypatch, fake_runner=fake)
    image = tmp_path / "disk.img"
    image.write_bytes(b"")

    result = runner.invoke(cli.app, ["automount", str(image), "--dry-run"], env=env)

    assert result.exit_code == 2
    assert fake.calls == []
    (record,) = _journal(tmp_path)
    assert "is not a block device" in record["result"]["message"]  # type: ignore[index]


def test_automount_configures_drive(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A full automount run unlocks with the env passphrase and writes both tables."""
    fake = FakeRunner()
    mapper = tmp_path / "mapper" / "media_crypt"

    def open_mapping(command: list[str], _input: str | None) -> subprocess.CompletedProcess[str]:
        mapper.touch()
        return subprocess.CompletedProcess(command, 0, "", "")

    fake.script("cryptsetup", "luksUUID", stdout="luks-1234\n")
    fake.handle("cryptsetup", "open", handler=open_mapping)
    fake.script("blkid", stdout="fs-5678\n")
    env = _prepare_environment(tmp_path, monkeypatch, fake_runner=fake)
    env["LUKS_PASSPHRASE"] = "hunter2"
    monkeypatch.setattr(devices, "is_block_device", lambda path: True)
    mountpoint = tmp_path / "mnt" / "media"

    result = runner.invoke(
        cli.app,
        ["automount", "/dev/sdb1", "media_crypt", str(mountpoint), "ext4"],
        env=env,
    )

    assert result.exit_code == 0, result.stdout
    assert (tmp_path / "etc" / "crypttab").read_text(encoding="utf-8") == (
        "media_crypt UUID=luks-1234 none nofail,x-systemd.device-timeout=10s\n"
    )
    assert (tmp_path / "etc" / "fstab").read_text(encoding="utf-8").startswith(
        f"UUID=fs-5678 {mountpoint} ext4 "
    )
    open_call = fake.called("cryptsetup", "open")[0]
    assert fake.inputs[fake.calls.index(open_call)] == "hunter2"
    assert fake.called("mount", "-a")
    (record,) = _journal(tmp_path)
    assert record["command"] == "automount"
    assert [step["id"] for step in record["steps"]][:2] == [  # type: ignore[union-attr]
        "automount.resolve",
        "automount.crypttab",
    ]


def test_automount_rejects_malformed_arguments(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A mapper name with spaces or a relative mountpoint fails before any change."""
    fake = FakeRunner()
    env = _prepare_environment(tmp_path, monkeypatch, fake_runner=fake)
    env["LUKS_PASSPHRASE"] = "hunter2"
    monkeypatch.setattr(devices, "is_block_device", lambda path: True)
    monkeypatch.chdir(tmp_path)

    spaced = runner.invoke(
        cli.app, ["automount", "/dev/sdb1", "my crypt", "/mnt/media", "ext4"], env=env
    )
    relative = runner.invoke(
        cli.app, ["automount", "/dev/sdb1", "media_crypt", "rel/mnt", "ext4"], env=env
    )

    assert spaced.exit_code == 2
    assert "Invalid mapper name" in spaced.stdout
    assert relative.exit_code == 2
    assert fake.calls == []
    assert not (tmp_path / "rel").exists()
    assert not (tmp_path / "etc" / "crypttab").exists()
    assert not (tmp_path / "etc" / "fstab").exists()


def test_text_log_is_closed_after_each_command(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Every invocation releases its text log handler when it exits."""
    env = _prepare_environment(tmp_path, monkeypatch)

    for _ in range(2):
        result = runner.invoke(cli.app, ["config", "show"], env=env)
        assert result.exit_code == 0

    assert logging.getLogger("hostctl").handlers == []
    assert "config show" in (tmp_path / "logs" / "hostctl.log").read_text(encoding="utf-8")
