"""Tests for credential providers."""
from __future__ import annotations

from pathlib import Path

import pytest
import typer

from hostctl.config import CredentialSpec
from hostctl.credentials import (
    EnvCredential,
    FileCredential,
    PromptCredential,
    StaticCredential,
    TerminalCredential,
    build_credential,
)
from hostctl.errors import ValidationError


def test_auto_prefers_value_then_env_then_file(tmp_path: Path) -> None:
    """The auto source picks the first source that can answer without asking."""
    secret = tmp_path / "samba.pw"
    secret.write_text("from-file\n", encoding="utf-8")

    with_value = build_credential("samba", CredentialSpec(value="inline", env="PW"), environ={})
    with_env = build_credential(
        "samba", CredentialSpec(env="PW", file=secret), environ={"PW": "from-env"}
    )
    with_file = build_credential("samba", CredentialSpec(env="PW", file=secret), environ={})
    nothing = build_credential("samba", CredentialSpec(env="PW"), environ={})

    assert with_value.get() == "inline"
    assert with_env.get() == "from-env"
    assert with_file.get() == "from-file"
    assert isinstance(nothing, TerminalCredential)
    assert nothing.get() is None


def test_explicit_env_source_requires_variable() -> None:
    """An explicit env source fails loudly when the variable is unset."""
    provider = build_credential("luks", CredentialSpec(source="env", env="LUKS"), environ={})

    assert isinstance(provider, EnvCredential)
    with pytest.raises(ValidationError, match="LUKS is not set"):
        provider.get()


def test_file_credential_strips_single_newline(tmp_path: Path) -> None:
    """Only the final line ending is removed from a secret file."""
    secret = tmp_path / "luks.key"
    secret.write_text("pass phrase \n", encoding="utf-8")

    assert FileCredential(secret).get() == "pass phrase "
    with pytest.raises(ValidationError, match="Unable to read"):
        FileCredential(tmp_path / "absent").get()


def test_empty_secrets_are_rejected(tmp_path: Path) -> None:
    """Empty secrets never reach the external tool."""
    empty = tmp_path / "empty"
    empty.write_text("\n", encoding="utf-8")

    with pytest.raises(ValidationError, match="empty"):
        FileCredential(empty).get()
    with pytest.raises(ValidationError, match="empty"):
        StaticCredential("").get()


def test_prompt_source_confirms_except_for_luks(monkeypatch: pytest.MonkeyPatch) -> None:
    """The Samba password is confirmed; the LUKS passphrase is asked once."""
    asked: list[tuple[str, bool]] = []

    def fake_prompt(label: str, *, hide_input: bool, confirmation_prompt: bool) -> str:
        assert hide_input is True
        asked.append((label, confirmation_prompt))
        return "typed"

    monkeypatch.setattr(typer, "prompt", fake_prompt)

    samba = build_credential("samba", CredentialSpec(source="prompt"), environ={})
    luks = build_credential("luks", CredentialSpec(source="prompt"), environ={})

    assert isinstance(samba, PromptCredential)
    assert samba.get() == "typed"
    assert luks.get() == "typed"
    assert asked == [("Samba password", True), ("LUKS passphrase", False)]


def test_describe_never_reveals_secret() -> None:
    """Descriptions name the source, not the value."""
    assert "hunter2" not in StaticCredential("hunter2").describe()
    assert EnvCredential("LUKS_PASSPHRASE", {}).describe() == (
        "environment variable LUKS_PASSPHRASE"
    )
