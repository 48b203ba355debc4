"""Credential providers for secrets the host tools ask for.

The Samba password and the LUKS passphrase are never stored in configuration
by default. A provider either returns the secret, or ``None`` to signal that
the external tool should prompt on the terminal itself.
"""
from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import typer

from .config import CredentialSpec
from .errors import ValidationError


class CredentialProvider(Protocol):
    """Source of a single secret."""

    def describe(self) -> str:
        """Return a short, secret-free description of the source."""

    def get(self) -> str | None:
        """Return the secret, or ``None`` to let the tool prompt."""


def _non_empty(secret: str, source: str) -> str:
    if not secret:
        raise ValidationError(f"Credential from {source} is empty.")
    return secret


@dataclass(frozen=True)
class StaticCredential:
    """Secret supplied directly (configuration value or tests)."""

    value: str

    def describe(self) -> str:
        return "static value"

    def get(self) -> str:
        return _non_empty(self.value, self.describe())


@dataclass(frozen=True)
class EnvCredential:
    """Secret read from an environment variable."""

    variable: str
    environ: Mapping[str, str] = field(default_factory=lambda: os.environ)

    def describe(self) -> str:
        return f"environment variable {self.variable}"

    def get(self) -> str:
        value = self.environ.get(self.variable)
        if value is None:
            raise ValidationError(f"Environment variable {self.variable} is not set.")
        return _non_empty(value, self.describe())


@dataclass(frozen=True)
class FileCredential:
    """Secret read from a file; one trailing newline is ignored."""

    path: Path

    def describe(self) -> str:
        return f"file {self.path}"

    def get(self) -> str:
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ValidationError(f"Unable to read credential file {self.path}: {exc}") from exc
        return _non_empty(text.removesuffix("\n").removesuffix("\r"), self.describe())


@dataclass(frozen=True)
class PromptCredential:
    """Secret typed by the operator, with confirmation."""

    label: str
    confirm: bool = True

    def describe(self) -> str:
        return "interactive prompt"

    def get(self) -> str:
        value = typer.prompt(self.label, hide_input=True, confirmation_prompt=self.confirm)
        return _non_empty(str(value), self.describe())


@dataclass(frozen=True)
class TerminalCredential:
    """Hand the terminal to the external tool so it prompts on its own."""

    def describe(self) -> str:
        return "tool prompt"

    def get(self) -> None:
        return None


_PROMPT_LABELS = {
    "samba": "Samba password",
    "luks": "LUKS passphrase",
}


def build_credential(
    name: str,
    spec: CredentialSpec,
    *,
    environ: Mapping[str, str] | None = None,
) -> CredentialProvider:
    """Return the provider configured for credential *name*."""
    env = os.environ if environ is None else environ
    if spec.source == "value":
        return StaticCredential(spec.value or "")
    if spec.source == "env":
        return EnvCredential(spec.env or "", env)
    if spec.source == "file":
        if spec.file is None:
            raise ValidationError(f"credentials.{name}.file is not configured.")
        return FileCredential(spec.file)
    if spec.source == "prompt":
        return PromptCredential(_PROMPT_LABELS.get(name, name), confirm=name != "luks")
    if spec.source == "terminal":
        return TerminalCredential()

    # auto: the first configured source that can answer without asking.
    if spec.value is not None:
        return StaticCredential(spec.value)
    if spec.env and env.get(spec.env):
        return EnvCredential(spec.env, env)
    if spec.file is not None:
        return FileCredential(spec.file)
    return TerminalCredential()


__all__ = [
    "CredentialProvider",
    "EnvCredential",
    "FileCredential",
    "PromptCredential",
    "StaticCredential",
    "TerminalCredential",
    "build_credential",
]
