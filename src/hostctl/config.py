"""Configuration loader for hostctl.

This module centralises the logic for reading configuration values from
multiple sources, lowest precedence first:

1. Built-in defaults.
2. ``/etc/hostctl/config.yml`` (or an override path).
3. Legacy environment variables understood by the older provisioning shell
   scripts (``NEW_USERNAME``, ``SHARE_DIR``, ``SMB_CONF_URL`` ...).
4. Environment variables prefixed with ``HOSTCTL_``.
5. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export HOSTCTL_HOSTNAME=nas
    export HOSTCTL_SAMBA__SHARE_DIR=/srv/share
    export HOSTCTL_FIREWALL__ENABLED=false

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` and validated once, before any step runs.
"""
from __future__ import annotations

import os
import re
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load hostctl configuration. Install with "
        "`pip install hostctl` or ensure PyYAML>=6.0 is available."
    ) from exc

from .errors import ValidationError

ENV_PREFIX = "HOSTCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

# Environment variables honoured by the older shell scripts. ``HOSTNAME`` is
# deliberately absent: every interactive shell exports it.
LEGACY_ENV_ALIASES: Mapping[str, tuple[str, ...]] = {
    "NEW_USERNAME": ("users", "new_username"),
    "OLD_USERNAME": ("users", "old_username"),
    "SHARE_DIR": ("samba", "share_dir"),
    "SMB_CONF_URL": ("samba", "conf_url"),
    "SMB_CONF_SHA256": ("samba", "conf_sha256"),
}

CREDENTIAL_SOURCES = {"auto", "env", "file", "prompt", "value", "terminal"}
FIREWALL_POLICIES = {"allow", "deny", "reject"}
FIREWALL_DIRECTIONS = {"incoming", "outgoing", "routed"}
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}

_USERNAME_RE = re.compile(r"^[a-z_][a-z0-9_-]*[$]?$")
_HOSTNAME_RE = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")
_SHA256_RE = re.compile(r"^[0-9a-fA-F]{64}$")


class ConfigError(ValidationError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PathsConfig:
    """Host files hostctl reads and edits."""

    hosts: Path = Path("/etc/hosts")
    hostname_file: Path = Path("/etc/hostname")
    sshd_config: Path = Path("/etc/ssh/sshd_config")
    smb_conf: Path = Path("/etc/samba/smb.conf")
    crypttab: Path = Path("/etc/crypttab")
    fstab: Path = Path("/etc/fstab")
    sources_dir: Path = Path("/etc/apt/sources.list.d")
    mapper_dir: Path = Path("/dev/mapper")
    os_release: Path = Path("/etc/os-release")
    home_root: Path = Path("/home")
    download_dir: Path = Path("/tmp")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "hosts": str(self.hosts),
            "hostname_file": str(self.hostname_file),
            "sshd_config": str(self.sshd_config),
            "smb_conf": str(self.smb_conf),
            "crypttab": str(self.crypttab),
            "fstab": str(self.fstab),
            "sources_dir": str(self.sources_dir),
            "mapper_dir": str(self.mapper_dir),
            "os_release": str(self.os_release),
            "home_root": str(self.home_root),
            "download_dir": str(self.download_dir),
        }


@dataclass(frozen=True)
class UsersConfig:
    """Login account that replaces the image's default user."""

    new_username: str = "pi"
    old_username: str = "dietpi"
    admin_groups: tuple[str, ...] = ("sudo",)
    app_groups: tuple[str, ...] = ("navidrome", "docker", "sambashare", "beets", "gitea")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "new_username": self.new_username,
            "old_username": self.old_username,
            "admin_groups": list(self.admin_groups),
            "app_groups": list(self.app_groups),
        }


@dataclass(frozen=True)
class AptRepositoryConfig:
    """Third-party apt repository with its signing key."""

    name: str
    key_url: str
    keyring: Path
    url: str
    suite: str
    components: str = "main"
    with_arch: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "key_url": self.key_url,
            "keyring": str(self.keyring),
            "url": self.url,
            "suite": self.suite,
            "components": self.components,
            "with_arch": self.with_arch,
        }


@dataclass(frozen=True)
class PackagesConfig:
    """Base packages installed on every host."""

    base: tuple[str, ...]
    upgrade: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"base": list(self.base), "upgrade": self.upgrade}


@dataclass(frozen=True)
class DockerConfig:
    """Docker engine installation from the upstream repository."""

    enabled: bool
    repository: AptRepositoryConfig
    packages: tuple[str, ...]
    conflicts: tuple[str, ...]
    add_user_to_group: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "enabled": self.enabled,
            "repository": self.repository.to_dict(),
            "packages": list(self.packages),
            "conflicts": list(self.conflicts),
            "add_user_to_group": self.add_user_to_group,
        }


@dataclass(frozen=True)
class PortainerConfig:
    """Portainer CE container settings."""

    enabled: bool = True
    name: str = "portainer"
    image: str = "portainer/portainer-ce:lts"
    volume: str = "portainer_data"
    ports: tuple[str, ...] = ("9443:9443",)
    mounts: tuple[str, ...] = (
        "/var/run/docker.sock:/var/run/docker.sock:ro",
        "portainer_data:/data",
    )
    restart: str = "always"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "enabled": self.enabled,
            "name": self.name,
            "image": self.image,
            "volume": self.volume,
            "ports": list(self.ports),
            "mounts": list(self.mounts),
            "restart": self.restart,
        }


@dataclass(frozen=True)
class DebPackageConfig:
    """A ``.deb`` package installed straight from a release URL."""

    name: str
    url: str
    sha256: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"name": self.name, "url": self.url, "sha256": self.sha256}


@dataclass(frozen=True)
class CockpitConfig:
    """Optional Cockpit plugins."""

    enabled: bool
    plugins: tuple[DebPackageConfig, ...]
    extra_packages: tuple[str, ...] = ("cockpit-packagekit",)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "enabled": self.enabled,
            "plugins": [plugin.to_dict() for plugin in self.plugins],
            "extra_packages": list(self.extra_packages),
        }


@dataclass(frozen=True)
class SSHConfig:
    """Values rendered into the managed ``sshd_config``."""

    enabled: bool = True
    port: int = 22
    permit_root_login: str = "no"
    password_authentication: bool = True
    allow_users: tuple[str, ...] = ()
    service: str = "ssh"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "enabled": self.enabled,
            "port": self.port,
            "permit_root_login": self.permit_root_login,
            "password_authentication": self.password_authentication,
            "allow_users": list(self.allow_users),
            "service": self.service,
        }


@dataclass(frozen=True)
class SambaConfig:
    """Samba server, share directory and remote configuration template."""

    enabled: bool = True
    packages: tuple[str, ...] = ("samba", "smbclient")
    conf_url: str | None = None
    conf_sha256: str | None = None
    share_dir: Path = Path("/mnt/4TB_HDD")
    share_name: str = "4TB_HDD"
    share_mode: int = 0o775
    services: tuple[str, ...] = ("smbd", "nmbd")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "enabled": self.enabled,
            "packages": list(self.packages),
            "conf_url": self.conf_url,
            "conf_sha256": self.conf_sha256,
            "share_dir": str(self.share_dir),
            "share_name": self.share_name,
            "share_mode": f"{self.share_mode:04o}",
            "services": list(self.services),
        }


@dataclass(frozen=True)
class TailscaleConfig:
    """Tailscale installer settings."""

    enabled: bool = True
    install_url: str = "https://tailscale.com/install.sh"
    service: str = "tailscaled"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "enabled": self.enabled,
            "install_url": self.install_url,
            "service": self.service,
        }


@dataclass(frozen=True)
class CloudflaredConfig:
    """Cloudflare tunnel client installed from Cloudflare's apt repository."""

    enabled: bool
    repository: AptRepositoryConfig

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"enabled": self.enabled, "repository": self.repository.to_dict()}


@dataclass(frozen=True)
class FirewallConfig:
    """UFW default policies and allow rules."""

    enabled: bool
    defaults: Mapping[str, str]
    rules: tuple[str, ...]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "enabled": self.enabled,
            "defaults": dict(self.defaults),
            "rules": list(self.rules),
        }


@dataclass(frozen=True)
class AutomountConfig:
    """Defaults for the LUKS automount command."""

    device: str = "/dev/sda1"
    mapper_name: str = "4tb_hdd_crypt"
    mountpoint: Path = Path("/mnt/4TB_HDD")
    fs_type: str = "ext4"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "device": self.device,
            "mapper_name": self.mapper_name,
            "mountpoint": str(self.mountpoint),
            "fs_type": self.fs_type,
        }


@dataclass(frozen=True)
class CredentialSpec:
    """Where a secret (Samba password, LUKS passphrase) comes from."""

    source: str = "auto"
    env: str | None = None
    file: Path | None = None
    value: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (secret values are redacted)."""
        return {
            "source": self.source,
            "env": self.env,
            "file": str(self.file) if self.file is not None else None,
            "value": "***" if self.value else None,
        }


@dataclass(frozen=True)
class CommandsConfig:
    """Timeouts applied to external commands."""

    timeout: float = 60.0
    package_timeout: float = 900.0
    download_timeout: float = 30.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "timeout": self.timeout,
            "package_timeout": self.package_timeout,
            "download_timeout": self.download_timeout,
        }


@dataclass(frozen=True)
class LoggingConfig:
    """Text log verbosity and rotation."""

    level: str = "INFO"
    max_bytes: int = 1_048_576
    backup_count: int = 3

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "level": self.level,
            "max_bytes": self.max_bytes,
            "backup_count": self.backup_count,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for hostctl."""

    config_file: Path
    logs_dir: Path
    templates_dir: Path
    hostname: str
    hosts_address: str
    services: tuple[str, ...]
    paths: PathsConfig
    users: UsersConfig
    packages: PackagesConfig
    docker: DockerConfig
    portainer: PortainerConfig
    cockpit: CockpitConfig
    ssh: SSHConfig
    samba: SambaConfig
    tailscale: TailscaleConfig
    cloudflared: CloudflaredConfig
    firewall: FirewallConfig
    automount: AutomountConfig
    credentials: Mapping[str, CredentialSpec]
    commands: CommandsConfig
    logging: LoggingConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir),
            "hostname": self.hostname,
            "hosts_address": self.hosts_address,
            "services": list(self.services),
            "paths": self.paths.to_dict(),
            "users": self.users.to_dict(),
            "packages": self.packages.to_dict(),
            "docker": self.docker.to_dict(),
            "portainer": self.portainer.to_dict(),
            "cockpit": self.cockpit.to_dict(),
            "ssh": self.ssh.to_dict(),
            "samba": self.samba.to_dict(),
            "tailscale": self.tailscale.to_dict(),
            "cloudflared": self.cloudflared.to_dict(),
            "firewall": self.firewall.to_dict(),
            "automount": self.automount.to_dict(),
            "credentials": {
                name: spec.to_dict() for name, spec in self.credentials.items()
            },
            "commands": self.commands.to_dict(),
            "logging": self.logging.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/hostctl/config.yml",
    "logs_dir": "/var/log/hostctl",
    "templates_dir": "/etc/hostctl/templates",
    "hostname": "rpi4",
    "hosts_address": "127.0.1.1",
    "services": ["ssh", "avahi-daemon", "cockpit.socket", "docker"],
    "paths": PathsConfig().to_dict(),
    "users": {
        "new_username": "pi",
        "old_username": "dietpi",
        "admin_groups": ["sudo"],
        "app_groups": ["navidrome", "docker", "sambashare", "beets", "gitea"],
    },
    "packages": {
        "base": [
            "git",
            "curl",
            "wget",
            "ufw",
            "net-tools",
            "avahi-daemon",
            "openssh-server",
            "unzip",
            "python3",
            "python3-pip",
            "ca-certificates",
            "gnupg",
            "lsb-release",
            "apt-transport-https",
            "cockpit",
        ],
        "upgrade": True,
    },
    "docker": {
        "enabled": True,
        "repository": {
            "name": "docker",
            "key_url": "https://download.docker.com/linux/debian/gpg",
            "keyring": "/etc/apt/keyrings/docker.gpg",
            "url": "https://download.docker.com/linux/debian",
            "suite": None,  # derived from VERSION_CODENAME when absent
            "components": "stable",
            "with_arch": True,
        },
        "packages": [
            "docker-ce",
            "docker-ce-cli",
            "containerd.io",
            "docker-buildx-plugin",
            "docker-compose-plugin",
        ],
        "conflicts": ["docker", "docker.io", "containerd", "runc"],
        "add_user_to_group": True,
    },
    "portainer": PortainerConfig().to_dict(),
    "cockpit": {
        "enabled": True,
        "plugins": [
            {
                "name": "cockpit-navigator",
                "url": (
                    "https://github.com/45Drives/cockpit-navigator/releases/download/"
                    "v0.5.10/cockpit-navigator_0.5.10-1focal_all.deb"
                ),
                "sha256": None,
            },
            {
                "name": "cockpit-file-sharing",
                "url": (
                    "https://github.com/45Drives/cockpit-file-sharing/releases/download/"
                    "v4.3.2/cockpit-file-sharing_4.3.2-2focal_all.deb"
                ),
                "sha256": None,
            },
        ],
        "extra_packages": ["cockpit-packagekit"],
    },
    "ssh": SSHConfig().to_dict(),
    "samba": {
        "enabled": True,
        "packages": ["samba", "smbclient"],
        "conf_url": "https://raw.githubusercontent.com/FainiDenis/rpi_setup/main/smb.conf",
        "conf_sha256": None,
        "share_dir": "/mnt/4TB_HDD",
        "share_name": "4TB_HDD",
        "share_mode": "0775",
        "services": ["smbd", "nmbd"],
    },
    "tailscale": TailscaleConfig().to_dict(),
    "cloudflared": {
        "enabled": True,
        "repository": {
            "name": "cloudflared",
            "key_url": "https://pkg.cloudflare.com/cloudflare-public-v2.gpg",
            "keyring": "/usr/share/keyrings/cloudflare-public-v2.gpg",
            "url": "https://pkg.cloudflare.com/cloudflared",
            "suite": "any",
            "components": "main",
            "with_arch": False,
        },
    },
    "firewall": {
        "enabled": True,
        "defaults": {"incoming": "deny", "outgoing": "allow"},
        "rules": [
            "allow from 192.168.1.0/24 to any port 22 proto tcp",
            "allow 80/tcp",
            "allow 443/tcp",
            "allow from 192.168.1.0/24 to any port 9090 proto tcp",
            "allow from 192.168.1.0/24 to any port 9443 proto tcp",
            "allow in on tailscale0",
            "allow from 192.168.1.0/24 to any port 445 proto tcp",
        ],
    },
    "automount": AutomountConfig().to_dict(),
    "credentials": {
        "samba": {"source": "auto", "env": "SAMBA_PASSWORD", "file": None, "value": None},
        "luks": {"source": "auto", "env": "LUKS_PASSPHRASE", "file": None, "value": None},
    },
    "commands": CommandsConfig().to_dict(),
    "logging": LoggingConfig().to_dict(),
}

# Sections whose nested keys are free-form rather than checked against DEFAULTS.
_OPEN_SECTIONS = {("credentials",), ("firewall", "defaults")}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    legacy_values = _build_legacy_overrides(resolved_env)
    if legacy_values:
        _deep_merge(merged, legacy_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, _deep_copy(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged, DEFAULTS, ())

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(
    raw: Mapping[str, object],
    reference: Mapping[str, object],
    path: tuple[str, ...],
) -> None:
    if path in _OPEN_SECTIONS:
        return
    unknown_keys = set(raw.keys()) - set(reference.keys())
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        if path:
            raise ConfigError(f"Unknown {'.'.join(path)} configuration keys: {joined}.")
        raise ConfigError(f"Unknown configuration keys: {joined}.")
    for key, expected in reference.items():
        value = raw.get(key)
        if isinstance(expected, Mapping) and value is not None:
            label = ".".join((*path, key))
            _validate_structure(_as_dict(value, label), expected, (*path, key))


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    hostname = _expect_str(raw.get("hostname"), "hostname").strip()
    if not _HOSTNAME_RE.match(hostname):
        raise ConfigError(f"Invalid hostname {hostname!r}.")

    paths_map = _as_dict(raw.get("paths"), "paths")
    paths = PathsConfig(
        **{
            key: _to_path(paths_map.get(key, default))
            for key, default in PathsConfig().to_dict().items()
        }
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        hostname=hostname,
        hosts_address=_expect_str(raw.get("hosts_address"), "hosts_address"),
        services=_expect_str_tuple(raw.get("services"), "services"),
        paths=paths,
        users=_build_users(_as_dict(raw.get("users"), "users")),
        packages=_build_packages(_as_dict(raw.get("packages"), "packages")),
        docker=_build_docker(_as_dict(raw.get("docker"), "docker")),
        portainer=_build_portainer(_as_dict(raw.get("portainer"), "portainer")),
        cockpit=_build_cockpit(_as_dict(raw.get("cockpit"), "cockpit")),
        ssh=_build_ssh(_as_dict(raw.get("ssh"), "ssh")),
        samba=_build_samba(_as_dict(raw.get("samba"), "samba")),
        tailscale=_build_tailscale(_as_dict(raw.get("tailscale"), "tailscale")),
        cloudflared=_build_cloudflared(_as_dict(raw.get("cloudflared"), "cloudflared")),
        firewall=_build_firewall(_as_dict(raw.get("firewall"), "firewall")),
        automount=_build_automount(_as_dict(raw.get("automount"), "automount")),
        credentials=_build_credentials(_as_dict(raw.get("credentials"), "credentials")),
        commands=_build_commands(_as_dict(raw.get("commands"), "commands")),
        logging=_build_logging(_as_dict(raw.get("logging"), "logging")),
    )


def _build_users(mapping: Mapping[str, object]) -> UsersConfig:
    new_username = _expect_username(mapping.get("new_username"), "users.new_username")
    old_username = _expect_username(mapping.get("old_username"), "users.old_username")
    return UsersConfig(
        new_username=new_username,
        old_username=old_username,
        admin_groups=_expect_str_tuple(mapping.get("admin_groups"), "users.admin_groups"),
        app_groups=_expect_str_tuple(mapping.get("app_groups"), "users.app_groups"),
    )


def _build_packages(mapping: Mapping[str, object]) -> PackagesConfig:
    return PackagesConfig(
        base=_expect_str_tuple(mapping.get("base"), "packages.base"),
        upgrade=_expect_bool(mapping.get("upgrade"), "packages.upgrade", default=True),
    )


def _build_repository(mapping: Mapping[str, object], label: str) -> AptRepositoryConfig:
    suite_value = mapping.get("suite")
    return AptRepositoryConfig(
        name=_expect_str(mapping.get("name"), f"{label}.name"),
        key_url=_expect_url(mapping.get("key_url"), f"{label}.key_url"),
        keyring=_to_path(mapping.get("keyring")),
        url=_expect_url(mapping.get("url"), f"{label}.url"),
        suite=str(suite_value) if suite_value not in (None, "") else "",
        components=str(mapping.get("components", "main")),
        with_arch=_expect_bool(mapping.get("with_arch"), f"{label}.with_arch", default=False),
    )


def _build_docker(mapping: Mapping[str, object]) -> DockerConfig:
    return DockerConfig(
        enabled=_expect_bool(mapping.get("enabled"), "docker.enabled", default=True),
        repository=_build_repository(
            _as_dict(mapping.get("repository"), "docker.repository"), "docker.repository"
        ),
        packages=_expect_str_tuple(mapping.get("packages"), "docker.packages"),
        conflicts=_expect_str_tuple(mapping.get("conflicts"), "docker.conflicts"),
        add_user_to_group=_expect_bool(
            mapping.get("add_user_to_group"), "docker.add_user_to_group", default=True
        ),
    )


def _build_portainer(mapping: Mapping[str, object]) -> PortainerConfig:
    return PortainerConfig(
        enabled=_expect_bool(mapping.get("enabled"), "portainer.enabled", default=True),
        name=_expect_str(mapping.get("name"), "portainer.name"),
        image=_expect_str(mapping.get("image"), "portainer.image"),
        volume=_expect_str(mapping.get("volume"), "portainer.volume"),
        ports=_expect_str_tuple(mapping.get("ports"), "portainer.ports"),
        mounts=_expect_str_tuple(mapping.get("mounts"), "portainer.mounts"),
        restart=_expect_str(mapping.get("restart"), "portainer.restart"),
    )


def _build_cockpit(mapping: Mapping[str, object]) -> CockpitConfig:
    plugins: list[DebPackageConfig] = []
    for index, entry in enumerate(_as_sequence(mapping.get("plugins") or [], "cockpit.plugins")):
        label = f"cockpit.plugins[{index}]"
        plugin_map = _as_dict(entry, label)
        unknown = set(plugin_map.keys()) - {"name", "url", "sha256"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown keys for {label}: {joined}.")
        plugins.append(
            DebPackageConfig(
                name=_expect_str(plugin_map.get("name"), f"{label}.name"),
                url=_expect_url(plugin_map.get("url"), f"{label}.url"),
                sha256=_expect_sha256(plugin_map.get("sha256"), f"{label}.sha256"),
            )
        )
    return CockpitConfig(
        enabled=_expect_bool(mapping.get("enabled"), "cockpit.enabled", default=True),
        plugins=tuple(plugins),
        extra_packages=_expect_str_tuple(
            mapping.get("extra_packages"), "cockpit.extra_packages"
        ),
    )


def _build_ssh(mapping: Mapping[str, object]) -> SSHConfig:
    port = _expect_int(mapping.get("port"), "ssh.port", default=22)
    if not 0 < port < 65536:
        raise ConfigError(f"ssh.port must be between 1 and 65535. Got {port}.")
    permit_root_login = str(mapping.get("permit_root_login", "no"))
    if permit_root_login not in {"yes", "no", "prohibit-password", "forced-commands-only"}:
        raise ConfigError(f"Unsupported ssh.permit_root_login value {permit_root_login!r}.")
    return SSHConfig(
        enabled=_expect_bool(mapping.get("enabled"), "ssh.enabled", default=True),
        port=port,
        permit_root_login=permit_root_login,
        password_authentication=_expect_bool(
            mapping.get("password_authentication"),
            "ssh.password_authentication",
            default=True,
        ),
        allow_users=_expect_str_tuple(mapping.get("allow_users"), "ssh.allow_users"),
        service=_expect_str(mapping.get("service"), "ssh.service"),
    )


def _build_samba(mapping: Mapping[str, object]) -> SambaConfig:
    conf_url_value = mapping.get("conf_url")
    conf_url = (
        _expect_url(conf_url_value, "samba.conf_url")
        if conf_url_value not in (None, "")
        else None
    )
    return SambaConfig(
        enabled=_expect_bool(mapping.get("enabled"), "samba.enabled", default=True),
        packages=_expect_str_tuple(mapping.get("packages"), "samba.packages"),
        conf_url=conf_url,
        conf_sha256=_expect_sha256(mapping.get("conf_sha256"), "samba.conf_sha256"),
        share_dir=_to_path(mapping.get("share_dir")),
        share_name=_expect_str(mapping.get("share_name"), "samba.share_name"),
        share_mode=_parse_permission_mode(mapping.get("share_mode"), "samba.share_mode"),
        services=_expect_str_tuple(mapping.get("services"), "samba.services"),
    )


def _build_tailscale(mapping: Mapping[str, object]) -> TailscaleConfig:
    return TailscaleConfig(
        enabled=_expect_bool(mapping.get("enabled"), "tailscale.enabled", default=True),
        install_url=_expect_url(mapping.get("install_url"), "tailscale.install_url"),
        service=_expect_str(mapping.get("service"), "tailscale.service"),
    )


def _build_cloudflared(mapping: Mapping[str, object]) -> CloudflaredConfig:
    return CloudflaredConfig(
        enabled=_expect_bool(mapping.get("enabled"), "cloudflared.enabled", default=True),
        repository=_build_repository(
            _as_dict(mapping.get("repository"), "cloudflared.repository"),
            "cloudflared.repository",
        ),
    )


def _build_firewall(mapping: Mapping[str, object]) -> FirewallConfig:
    defaults_map = _as_dict(mapping.get("defaults"), "firewall.defaults")
    defaults: dict[str, str] = {}
    for direction, policy in defaults_map.items():
        if direction not in FIREWALL_DIRECTIONS:
            allowed = ", ".join(sorted(FIREWALL_DIRECTIONS))
            raise ConfigError(
                f"Unsupported firewall direction '{direction}'. Allowed: {allowed}."
            )
        policy_text = str(policy)
        if policy_text not in FIREWALL_POLICIES:
            allowed = ", ".join(sorted(FIREWALL_POLICIES))
            raise ConfigError(
                f"Unsupported firewall policy '{policy_text}' for {direction}. "
                f"Allowed: {allowed}."
            )
        defaults[direction] = policy_text

    rules = tuple(
        " ".join(rule.split())
        for rule in _expect_str_tuple(mapping.get("rules"), "firewall.rules", separator=",")
    )
    for rule in rules:
        action = rule.split(" ", 1)[0]
        if action not in {"allow", "deny", "reject", "limit"}:
            raise ConfigError(f"Firewall rule must start with an action: {rule!r}.")
    return FirewallConfig(
        enabled=_expect_bool(mapping.get("enabled"), "firewall.enabled", default=True),
        defaults=defaults,
        rules=rules,
    )


def validate_mapper_name(name: str, label: str = "mapper name") -> str:
    """Reject mapper names that cannot appear as the first crypttab field."""
    if not name or "/" in name or any(ch.isspace() for ch in name):
        raise ConfigError(f"Invalid {label} {name!r}.")
    return name


def validate_mountpoint(path: Path, label: str = "mountpoint") -> Path:
    """Reject relative or whitespace-containing mountpoints."""
    text = str(path)
    if not path.is_absolute() or any(ch.isspace() for ch in text):
        raise ConfigError(f"{label} must be an absolute path without spaces. Got {text!r}.")
    return path


def _build_automount(mapping: Mapping[str, object]) -> AutomountConfig:
    mapper_name = validate_mapper_name(
        _expect_str(mapping.get("mapper_name"), "automount.mapper_name"),
        "automount.mapper_name",
    )
    mountpoint = validate_mountpoint(
        _to_path(mapping.get("mountpoint")), "automount.mountpoint"
    )
    return AutomountConfig(
        device=_expect_str(mapping.get("device"), "automount.device"),
        mapper_name=mapper_name,
        mountpoint=mountpoint,
        fs_type=_expect_str(mapping.get("fs_type"), "automount.fs_type"),
    )


def _build_credentials(mapping: Mapping[str, object]) -> dict[str, CredentialSpec]:
    credentials: dict[str, CredentialSpec] = {}
    for name, entry in mapping.items():
        label = f"credentials.{name}"
        entry_map = _as_dict(entry, label)
        unknown = set(entry_map.keys()) - {"source", "env", "file", "value"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown keys for {label}: {joined}.")
        source = str(entry_map.get("source", "auto"))
        if source not in CREDENTIAL_SOURCES:
            allowed = ", ".join(sorted(CREDENTIAL_SOURCES))
            raise ConfigError(
                f"Unsupported credential source '{source}' for {label}. Allowed: {allowed}."
            )
        env_value = entry_map.get("env")
        file_value = entry_map.get("file")
        value = entry_map.get("value")
        spec = CredentialSpec(
            source=source,
            env=str(env_value) if env_value else None,
            file=_to_path(file_value) if file_value else None,
            value=str(value) if value is not None else None,
        )
        if spec.source == "env" and not spec.env:
            raise ConfigError(f"{label}.env is required when source is 'env'.")
        if spec.source == "file" and spec.file is None:
            raise ConfigError(f"{label}.file is required when source is 'file'.")
        if spec.source == "value" and spec.value is None:
            raise ConfigError(f"{label}.value is required when source is 'value'.")
        credentials[name] = spec
    return credentials


def _build_commands(mapping: Mapping[str, object]) -> CommandsConfig:
    return CommandsConfig(
        timeout=_expect_positive_float(mapping.get("timeout"), "commands.timeout", default=60.0),
        package_timeout=_expect_positive_float(
            mapping.get("package_timeout"), "commands.package_timeout", default=900.0
        ),
        download_timeout=_expect_positive_float(
            mapping.get("download_timeout"), "commands.download_timeout", default=30.0
        ),
    )


def _build_logging(mapping: Mapping[str, object]) -> LoggingConfig:
    level = str(mapping.get("level", "INFO")).upper()
    if level not in LOG_LEVELS:
        allowed = ", ".join(sorted(LOG_LEVELS))
        raise ConfigError(f"Unsupported logging.level '{level}'. Allowed: {allowed}.")
    max_bytes = _expect_int(mapping.get("max_bytes"), "logging.max_bytes", default=1_048_576)
    backup_count = _expect_int(mapping.get("backup_count"), "logging.backup_count", default=3)
    if max_bytes <= 0 or backup_count < 0:
        raise ConfigError("logging.max_bytes must be positive and backup_count non-negative.")
    return LoggingConfig(level=level, max_bytes=max_bytes, backup_count=backup_count)


def _build_legacy_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, path in LEGACY_ENV_ALIASES.items():
        value = env.get(key)
        if value is None or not value.strip():
            continue
        _assign_nested(overrides, list(path), value.strip())
    return overrides


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _expect_str_tuple(
    value: object | None, label: str, *, separator: str = r"[\s,]+"
) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        # Environment overrides arrive as one string; multi-word items need commas.
        return tuple(part.strip() for part in re.split(separator, value) if part.strip())
    items: list[str] = []
    for index, item in enumerate(_as_sequence(value, label)):
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"{label}[{index}] must be a non-empty string.")
        items.append(item.strip())
    return tuple(items)


def _parse_permission_mode(value: object, label: str) -> int:
    if value is None:
        raise ConfigError(f"{label} must be specified.")
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be an octal integer string. Got boolean {value!r}.")
    if isinstance(value, int):
        # PyYAML already reads 0775 and 0o775 as octal; a bare 775 stays decimal.
        mode = value
    elif isinstance(value, str):
        text = value.strip().lower()
        if not text:
            raise ConfigError(f"{label} must be an octal integer string.")
        if text.startswith("0o"):
            text = text[2:]
        try:
            mode = int(text, 8)
        except ValueError as exc:
            raise ConfigError(f"{label} must be an octal integer string.") from exc
    else:
        raise ConfigError(f"{label} must be an octal integer or string.")
    if mode < 0 or mode > 0o7777:
        raise ConfigError(f"{label} must be between 0000 and 7777 inclusive.")
    return mode


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "yes", "on", "1"}:
        return True
    if isinstance(value, str) and value.strip().lower() in {"false", "no", "off", "0"}:
        return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_username(value: object, label: str) -> str:
    name = _expect_str(value, label).strip()
    if not _USERNAME_RE.match(name) or len(name) > 32:
        raise ConfigError(f"Invalid user name for {label}: {name!r}.")
    return name


def _expect_url(value: object, label: str) -> str:
    url = _expect_str(value, label).strip()
    if not url.startswith("https://"):
        raise ConfigError(f"{label} must be an https:// URL. Got {url!r}.")
    return url


def _expect_sha256(value: object | None, label: str) -> str | None:
    if value in (None, ""):
        return None
    text = str(value).strip()
    if not _SHA256_RE.match(text):
        raise ConfigError(f"{label} must be a 64 character hex SHA-256 digest.")
    return text.lower()


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "AptRepositoryConfig",
    "AutomountConfig",
    "CloudflaredConfig",
    "CockpitConfig",
    "CommandsConfig",
    "ConfigError",
    "CredentialSpec",
    "DebPackageConfig",
    "DockerConfig",
    "FirewallConfig",
    "LoggingConfig",
    "PackagesConfig",
    "PathsConfig",
    "PortainerConfig",
    "SSHConfig",
    "SambaConfig",
    "TailscaleConfig",
    "UsersConfig",
    "load_config",
    "validate_mapper_name",
    "validate_mountpoint",
]
