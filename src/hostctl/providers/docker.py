"""Docker CLI wrapper used for the Portainer container."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass

from ..config import PortainerConfig
from .command import CommandRunner


@dataclass(slots=True)
class DockerProvider:
    """Inspect and create containers and volumes."""

    runner: CommandRunner
    docker_bin: str = "docker"

    def container_exists(self, name: str) -> bool:
        """Return ``True`` when a container called *name* exists in any state."""
        result = self._docker("container", "inspect", name, check=False)
        return result.returncode == 0

    def container_running(self, name: str) -> bool:
        """Return ``True`` when the container *name* is running."""
        result = self._docker("inspect", "-f", "{{.State.Running}}", name, check=False)
        return result.returncode == 0 and result.stdout.strip() == "true"

    def volume_exists(self, name: str) -> bool:
        """Return ``True`` when the named volume exists."""
        result = self._docker("volume", "inspect", name, check=False)
        return result.returncode == 0

    def create_volume(self, name: str) -> subprocess.CompletedProcess[str]:
        """Create the named volume."""
        return self._docker("volume", "create", name)

    def remove_container(self, name: str) -> subprocess.CompletedProcess[str]:
        """Force-remove the container *name*."""
        return self._docker("rm", "-f", name)

    def run_container(self, spec: PortainerConfig) -> subprocess.CompletedProcess[str]:
        """Start a detached container described by *spec*."""
        args: list[str] = ["run", "-d"]
        for port in spec.ports:
            args.extend(["-p", port])
        args.extend(["--name", spec.name, f"--restart={spec.restart}"])
        for mount in spec.mounts:
            args.extend(["-v", mount])
        args.append(spec.image)
        return self._docker(*args)

    def _docker(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        return self.runner.run([self.docker_bin, *args], check=check)


__all__ = ["DockerProvider"]
