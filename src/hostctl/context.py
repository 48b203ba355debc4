"""Runtime objects shared by probes, mutators and the device resolver."""
from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from .config import AppConfig
from .credentials import CredentialProvider, TerminalCredential, build_credential
from .fetch import Fetcher
from .providers import (
    AccountsProvider,
    AptProvider,
    CommandRunner,
    DockerProvider,
    SambaProvider,
    SystemdProvider,
    UfwProvider,
)
from .templates import TemplateEngine


@dataclass(slots=True)
class HostContext:
    """Everything a step needs to inspect or change the host."""

    config: AppConfig
    runner: CommandRunner
    templates: TemplateEngine
    fetcher: Fetcher
    accounts: AccountsProvider
    apt: AptProvider
    systemd: SystemdProvider
    firewall: UfwProvider
    samba: SambaProvider
    docker: DockerProvider
    credentials: Mapping[str, CredentialProvider] = field(default_factory=dict)
    dry_run: bool = False

    def credential(self, name: str) -> CredentialProvider:
        """Return the provider for credential *name*; unknown names prompt via the tool."""
        return self.credentials.get(name, TerminalCredential())


def build_context(
    config: AppConfig,
    *,
    runner: CommandRunner | None = None,
    fetcher: Fetcher | None = None,
    templates: TemplateEngine | None = None,
    credentials: Mapping[str, CredentialProvider] | None = None,
    environ: Mapping[str, str] | None = None,
    dry_run: bool = False,
) -> HostContext:
    """Wire providers for *config*; tests pass fake runners and fetchers."""
    command_runner = runner or CommandRunner(timeout=config.commands.timeout)
    if credentials is None:
        env = os.environ if environ is None else environ
        credentials = {
            name: build_credential(name, spec, environ=env)
            for name, spec in config.credentials.items()
        }
    return HostContext(
        config=config,
        runner=command_runner,
        templates=templates or TemplateEngine.with_overrides(config.templates_dir),
        fetcher=fetcher or Fetcher(timeout=config.commands.download_timeout),
        accounts=AccountsProvider(command_runner),
        apt=AptProvider(command_runner, package_timeout=config.commands.package_timeout),
        systemd=SystemdProvider(command_runner),
        firewall=UfwProvider(command_runner),
        samba=SambaProvider(command_runner),
        docker=DockerProvider(command_runner),
        credentials=dict(credentials),
        dry_run=dry_run,
    )


__all__ = ["HostContext", "build_context"]
