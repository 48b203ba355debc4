"""The declared step sequences for ``provision`` and ``automount``."""
from __future__ import annotations

import re

from .config import AppConfig
from .devices import DeviceResolver
from .mutators import (
    AddAptRepository,
    AddFirewallRule,
    AddUserToGroups,
    AppendLine,
    CleanPackages,
    EnableFirewall,
    EnableService,
    EnsureContainer,
    EnsureDirectory,
    EnsureVolume,
    FetchFile,
    InstallDebFromUrl,
    InstallPackages,
    Invoke,
    RemovePackages,
    RenameUser,
    RenderFile,
    RunInstaller,
    SetFirewallDefault,
    SetHostname,
    SetSambaPassword,
    UpdatePackageIndex,
    UpgradeSystem,
)
from .probes import (
    AllOf,
    CommandAvailable,
    ContainerRunning,
    DirectoryState,
    FileExists,
    FileMatchesTemplate,
    FirewallActive,
    FirewallDefault,
    FirewallRulePresent,
    HostnameIs,
    LineInFile,
    Not,
    PackageInstalled,
    SambaUserExists,
    ServiceActive,
    ServiceEnabled,
    StateProbe,
    UserExists,
    UserInGroup,
    VolumeExists,
)
from .steps import Step


def _installed(names: tuple[str, ...]) -> StateProbe:
    return AllOf(tuple(PackageInstalled(name) for name in names))


def _services_up(names: tuple[str, ...]) -> StateProbe:
    return AllOf(
        tuple(probe for name in names for probe in (ServiceEnabled(name), ServiceActive(name)))
    )


def provision_steps(config: AppConfig) -> list[Step]:
    """Return the full provisioning sequence for *config*, in execution order."""
    steps: list[Step] = []
    steps.extend(_system_steps(config))
    steps.extend(_user_steps(config))
    steps.append(
        Step(
            "packages.base",
            "Install base packages",
            (InstallPackages(config.packages.base),),
            probe=_installed(config.packages.base),
        )
    )
    if config.docker.enabled:
        steps.extend(_docker_steps(config))
        if config.portainer.enabled:
            steps.extend(_portainer_steps(config))
    if config.cockpit.enabled:
        steps.extend(_cockpit_steps(config))
    if config.ssh.enabled:
        steps.append(_ssh_step(config))
    if config.samba.enabled:
        steps.extend(_samba_steps(config))
    if config.tailscale.enabled:
        steps.append(
            Step(
                "tailscale.install",
                "Install Tailscale",
                (
                    RunInstaller(config.tailscale.install_url),
                    EnableService((config.tailscale.service,)),
                ),
                probe=CommandAvailable("tailscale"),
                fatal=False,
            )
        )
    if config.cloudflared.enabled:
        repository = config.cloudflared.repository
        steps.append(
            Step(
                "cloudflared.repository",
                "Add the cloudflared apt repository",
                (AddAptRepository(repository),),
                probe=AllOf(
                    (
                        FileExists(repository.keyring),
                        FileExists(config.paths.sources_dir / f"{repository.name}.list"),
                    )
                ),
            )
        )
        steps.append(
            Step(
                "cloudflared.install",
                "Install cloudflared",
                (InstallPackages(("cloudflared",)),),
                probe=PackageInstalled("cloudflared"),
            )
        )
    if config.firewall.enabled:
        steps.extend(_firewall_steps(config))
    if config.services:
        steps.append(
            Step(
                "services.enable",
                "Enable core services at boot",
                (EnableService(config.services),),
                probe=_services_up(config.services),
            )
        )
    steps.append(
        Step(
            "system.cleanup",
            "Remove unused packages and clean the apt cache",
            (CleanPackages(),),
            fatal=False,
        )
    )
    return steps


def _system_steps(config: AppConfig) -> list[Step]:
    update: tuple[UpdatePackageIndex | UpgradeSystem, ...] = (UpdatePackageIndex(),)
    if config.packages.upgrade:
        update = (*update, UpgradeSystem())
    address = config.hosts_address
    hostname = config.hostname
    return [
        Step("system.update", "Refresh and upgrade installed packages", update),
        Step(
            "hostname.set",
            f"Set hostname to {hostname}",
            (SetHostname(hostname),),
            probe=HostnameIs(hostname),
        ),
        Step(
            "hostname.hosts",
            f"Map {address} to {hostname} in the hosts file",
            (
                AppendLine(
                    config.paths.hosts,
                    f"{address} {hostname}",
                    rf"^{re.escape(address)}[ \t]+{re.escape(hostname)}([ \t]|$)",
                ),
            ),
            probe=LineInFile(
                config.paths.hosts,
                rf"^{re.escape(address)}[ \t]+{re.escape(hostname)}([ \t]|$)",
            ),
        ),
    ]


def _user_steps(config: AppConfig) -> list[Step]:
    users = config.users
    user = users.new_username
    return [
        Step(
            "user.rename",
            f"Rename {users.old_username} to {user}",
            (RenameUser(users.old_username, user),),
            probe=UserExists(user),
        ),
        Step(
            "user.sudo",
            f"Grant {user} administrative groups",
            (AddUserToGroups(user, users.admin_groups),),
            probe=AllOf(tuple(UserInGroup(user, group) for group in users.admin_groups)),
        ),
        Step(
            "user.app-groups",
            f"Add {user} to application groups that exist",
            (AddUserToGroups(user, users.app_groups, only_existing=True),),
            probe=AllOf(
                tuple(UserInGroup(user, group, missing_ok=True) for group in users.app_groups)
            ),
            fatal=False,
        ),
    ]


def _docker_steps(config: AppConfig) -> list[Step]:
    docker = config.docker
    repository = docker.repository
    steps = [
        Step(
            "docker.remove-conflicts",
            "Remove distribution Docker packages",
            (RemovePackages(docker.conflicts),),
            probe=AllOf(tuple(Not(PackageInstalled(name)) for name in docker.conflicts)),
            fatal=False,
        ),
        Step(
            "docker.repository",
            "Add the Docker apt repository",
            (AddAptRepository(repository),),
            probe=AllOf(
                (
                    FileExists(repository.keyring),
                    FileExists(config.paths.sources_dir / f"{repository.name}.list"),
                )
            ),
        ),
        Step(
            "docker.install",
            "Install Docker Engine",
            (InstallPackages(docker.packages), EnableService(("docker",))),
            probe=_installed(docker.packages),
        ),
    ]
    if docker.add_user_to_group:
        user = config.users.new_username
        steps.append(
            Step(
                "docker.group",
                f"Add {user} to the docker group",
                (AddUserToGroups(user, ("docker",)),),
                probe=UserInGroup(user, "docker"),
                fatal=False,
            )
        )
    return steps


def _portainer_steps(config: AppConfig) -> list[Step]:
    portainer = config.portainer
    return [
        Step(
            "portainer.volume",
            f"Create the {portainer.volume} volume",
            (EnsureVolume(portainer.volume),),
            probe=VolumeExists(portainer.volume),
        ),
        Step(
            "portainer.container",
            f"Run {portainer.image}",
            (EnsureContainer(portainer),),
            probe=ContainerRunning(portainer.name),
        ),
    ]


def _cockpit_steps(config: AppConfig) -> list[Step]:
    cockpit = config.cockpit
    steps: list[Step] = []
    for plugin in cockpit.plugins:
        steps.append(
            Step(
                f"cockpit.{plugin.name.removeprefix('cockpit-')}",
                f"Install {plugin.name}",
                (InstallDebFromUrl(plugin.name, plugin.url, plugin.sha256),),
                probe=PackageInstalled(plugin.name),
                fatal=False,
            )
        )
    for package in cockpit.extra_packages:
        steps.append(
            Step(
                f"cockpit.{package.removeprefix('cockpit-')}",
                f"Install {package}",
                (InstallPackages((package,)),),
                probe=PackageInstalled(package),
                fatal=False,
            )
        )
    return steps


def _ssh_step(config: AppConfig) -> Step:
    ssh = config.ssh
    context: dict[str, object] = {
        "port": ssh.port,
        "permit_root_login": ssh.permit_root_login,
        "password_authentication": ssh.password_authentication,
        "allow_users": list(ssh.allow_users),
    }
    return Step(
        "ssh.config",
        "Install the managed sshd_config",
        (
            RenderFile(
                config.paths.sshd_config,
                "ssh/sshd_config.j2",
                context,
                mode=0o644,
                restart=(ssh.service,),
            ),
        ),
        probe=FileMatchesTemplate(config.paths.sshd_config, "ssh/sshd_config.j2", context),
    )


def _samba_steps(config: AppConfig) -> list[Step]:
    samba = config.samba
    user = config.users.new_username
    config_step: Step
    if samba.conf_url:
        config_step = Step(
            "samba.config",
            f"Install smb.conf from {samba.conf_url}",
            (
                FetchFile(
                    samba.conf_url,
                    config.paths.smb_conf,
                    sha256=samba.conf_sha256,
                    required_pattern=r"^\[global\]",
                    validate_with_testparm=True,
                    mode=0o644,
                    restart=samba.services,
                ),
            ),
        )
    else:
        context: dict[str, object] = {
            "hostname": config.hostname,
            "share_name": samba.share_name,
            "share_dir": str(samba.share_dir),
            "username": user,
        }
        config_step = Step(
            "samba.config",
            "Install the built-in smb.conf",
            (
                RenderFile(
                    config.paths.smb_conf,
                    "samba/smb.conf.j2",
                    context,
                    mode=0o644,
                    restart=samba.services,
                ),
            ),
            probe=FileMatchesTemplate(config.paths.smb_conf, "samba/smb.conf.j2", context),
        )
    return [
        Step(
            "samba.install",
            "Install Samba",
            (InstallPackages(samba.packages),),
            probe=_installed(samba.packages),
        ),
        config_step,
        Step(
            "samba.share",
            f"Prepare share directory {samba.share_dir}",
            (EnsureDirectory(samba.share_dir, user, user, samba.share_mode, recursive=True),),
            probe=DirectoryState(samba.share_dir, user, user, samba.share_mode),
        ),
        Step(
            "samba.user",
            f"Create the Samba account for {user}",
            (SetSambaPassword(user),),
            probe=SambaUserExists(user),
        ),
        Step(
            "samba.services",
            "Enable and start Samba services",
            (EnableService(samba.services),),
            probe=_services_up(samba.services),
        ),
    ]


def _firewall_steps(config: AppConfig) -> list[Step]:
    firewall = config.firewall
    return [
        Step(
            "firewall.install",
            "Install ufw",
            (InstallPackages(("ufw",)),),
            probe=PackageInstalled("ufw"),
        ),
        Step(
            "firewall.defaults",
            "Set default firewall policies",
            tuple(
                SetFirewallDefault(direction, policy)
                for direction, policy in firewall.defaults.items()
            ),
            probe=AllOf(
                tuple(
                    FirewallDefault(direction, policy)
                    for direction, policy in firewall.defaults.items()
                )
            ),
        ),
        Step(
            "firewall.rules",
            "Add firewall rules",
            tuple(AddFirewallRule(rule) for rule in firewall.rules),
            probe=AllOf(tuple(FirewallRulePresent(rule) for rule in firewall.rules)),
        ),
        Step(
            "firewall.enable",
            "Enable the firewall",
            (EnableFirewall(),),
            probe=FirewallActive(),
        ),
    ]


def automount_steps(resolver: DeviceResolver) -> list[Step]:
    """Return the steps that unlock, configure and mount one LUKS volume."""
    return [
        Step(
            "automount.resolve",
            f"Unlock {resolver.device} as {resolver.mapper_name} and read its UUIDs",
            (Invoke("cryptsetup open and blkid", resolver.resolve),),
        ),
        Step(
            "automount.crypttab",
            "Add the crypttab entry",
            (Invoke(f"append to {resolver.ctx.config.paths.crypttab}", resolver.write_crypttab),),
        ),
        Step(
            "automount.fstab",
            "Add the fstab entry",
            (Invoke(f"append to {resolver.ctx.config.paths.fstab}", resolver.write_fstab),),
        ),
        Step(
            "automount.reload",
            "Reload systemd units",
            (Invoke("systemctl daemon-reload", resolver.reload),),
        ),
        Step(
            "automount.mount",
            "Mount all filesystems",
            (Invoke("mount -a", resolver.mount),),
        ),
        Step(
            "automount.list",
            f"List {resolver.mountpoint}",
            (Invoke(f"ls -la {resolver.mountpoint}", resolver.list_mountpoint),),
            fatal=False,
        ),
    ]


__all__ = ["automount_steps", "provision_steps"]
