"""Uncomplicated Firewall (``ufw``) provider."""
from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .command import CommandRunner

_DEFAULT_RE = re.compile(r"(\w+) \((incoming|outgoing|routed)\)")


def normalise_rule(rule: str) -> str:
    """Collapse whitespace so rules compare equal regardless of spacing."""
    return " ".join(rule.split())


@dataclass(slots=True)
class UfwProvider:
    """Query and change ufw state."""

    runner: CommandRunner
    ufw_bin: str = "ufw"
    defaults_file: Path = Path("/etc/default/ufw")

    def added_rules(self) -> list[str]:
        """Return the user rules as written on the ufw command line."""
        result = self._ufw("show", "added")
        rules: list[str] = []
        for line in result.stdout.splitlines():
            text = line.strip()
            if not text.startswith(f"{self.ufw_bin} "):
                continue
            rules.append(normalise_rule(text[len(self.ufw_bin) + 1 :]))
        return rules

    def has_rule(self, rule: str) -> bool:
        """Return ``True`` when *rule* is already among the user rules."""
        return normalise_rule(rule) in self.added_rules()

    def is_active(self) -> bool:
        """Return ``True`` when the firewall is enabled."""
        result = self._ufw("status")
        return "Status: active" in result.stdout

    def defaults(self) -> dict[str, str]:
        """Return the default policy per direction (``incoming`` -> ``deny``)."""
        result = self._ufw("status", "verbose")
        for line in result.stdout.splitlines():
            if line.startswith("Default:"):
                return {direction: policy for policy, direction in _DEFAULT_RE.findall(line)}
        # An inactive firewall omits the Default line; read the persisted file instead.
        return self._defaults_from_config()

    def set_default(self, direction: str, policy: str) -> subprocess.CompletedProcess[str]:
        """Set the default *policy* for *direction*."""
        return self._ufw("default", policy, direction)

    def add_rule(self, rule: str) -> subprocess.CompletedProcess[str]:
        """Add *rule* (for example ``allow 443/tcp``)."""
        return self._ufw(*normalise_rule(rule).split(" "))

    def enable(self) -> subprocess.CompletedProcess[str]:
        """Enable the firewall without the interactive SSH warning."""
        return self._ufw("--force", "enable")

    def reload(self) -> subprocess.CompletedProcess[str]:
        """Reload rules into the running firewall."""
        return self._ufw("reload")

    def _defaults_from_config(self) -> dict[str, str]:
        try:
            text = self.defaults_file.read_text(encoding="utf-8")
        except OSError:
            return {}
        keys = {
            "DEFAULT_INPUT_POLICY": "incoming",
            "DEFAULT_OUTPUT_POLICY": "outgoing",
            "DEFAULT_FORWARD_POLICY": "routed",
        }
        defaults: dict[str, str] = {}
        for line in text.splitlines():
            key, _, value = line.partition("=")
            direction = keys.get(key.strip())
            if direction is None:
                continue
            policy = value.strip().strip('"').lower()
            defaults[direction] = {"drop": "deny", "accept": "allow"}.get(policy, policy)
        return defaults

    def _ufw(self, *args: str) -> subprocess.CompletedProcess[str]:
        return self.runner.run([self.ufw_bin, *args])


__all__ = ["UfwProvider", "normalise_rule"]
