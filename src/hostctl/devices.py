"""Resolve a LUKS partition into crypttab and fstab entries.

:class:`DeviceResolver` walks one encrypted volume through a fixed sequence
of states::

    UNRESOLVED -> UNLOCKED -> FILESYSTEM_KNOWN -> CONFIG_WRITTEN

Each transition is only legal from the previous state; calling one out of
order raises :class:`ResolverStateError`. Every transition is idempotent: an
already-open mapping is not reopened, and the crypttab/fstab lines are keyed
on the mapper name and mountpoint so they are never duplicated.
"""
from __future__ import annotations

import os
import re
import stat
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path

from .config import validate_mapper_name, validate_mountpoint
from .context import HostContext
from .credentials import CredentialProvider
from .errors import ExternalToolError, HostctlError, MissingToolError, ValidationError
from .exit_codes import ExitCode
from .mutators import AppendLine, MutationResult
from .probes import DeviceUnlocked

CRYPTTAB_OPTIONS = "nofail,x-systemd.device-timeout=10s"
FSTAB_OPTIONS = "defaults,nofail,x-systemd.device-timeout=10s,x-systemd.automount"


class NotBlockDeviceError(ValidationError):
    """Raised when the source path is not a block device."""

    kind = "not-block-device"


class UnlockError(ExternalToolError):
    """Raised when ``cryptsetup open`` fails (wrong passphrase, busy device)."""

    kind = "unlock"


class NoFilesystemUUIDError(ValidationError):
    """Raised when the unlocked mapping carries no filesystem UUID."""

    kind = "no-filesystem-uuid"


class ResolverStateError(HostctlError):
    """Raised when a transition is requested out of order."""

    exit_code = ExitCode.PROVIDER
    kind = "resolver-state"


class ResolverState(IntEnum):
    UNRESOLVED = 0
    UNLOCKED = 1
    FILESYSTEM_KNOWN = 2
    CONFIG_WRITTEN = 3


def is_block_device(path: Path) -> bool:
    """Return ``True`` when *path* exists and is a block special file."""
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


@dataclass(frozen=True)
class DeviceMapping:
    """Facts about one encrypted volume, known only after a successful unlock."""

    source_device: str
    mapper_name: str
    luks_uuid: str
    filesystem_uuid: str
    mountpoint: Path
    fs_type: str

    def crypttab_line(self) -> str:
        return f"{self.mapper_name} UUID={self.luks_uuid} none {CRYPTTAB_OPTIONS}"

    def fstab_line(self) -> str:
        return f"UUID={self.filesystem_uuid} {self.mountpoint} {self.fs_type} {FSTAB_OPTIONS} 0 2"

    def to_dict(self) -> dict[str, str]:
        return {
            "source_device": self.source_device,
            "mapper_name": self.mapper_name,
            "luks_uuid": self.luks_uuid,
            "filesystem_uuid": self.filesystem_uuid,
            "mountpoint": str(self.mountpoint),
            "fs_type": self.fs_type,
        }


class DeviceResolver:
    """Drive one LUKS volume from raw partition to configured automount."""

    def __init__(
        self,
        ctx: HostContext,
        *,
        device: str,
        mapper_name: str,
        mountpoint: Path,
        fs_type: str,
        credential: CredentialProvider,
    ) -> None:
        self.ctx = ctx
        self.device = device
        self.mapper_name = mapper_name
        self.mountpoint = Path(mountpoint)
        self.fs_type = fs_type
        self.credential = credential
        self.state = ResolverState.UNRESOLVED
        self.luks_uuid: str | None = None
        self.mapping: DeviceMapping | None = None
        self._crypttab_written = False
        self._fstab_written = False

    @property
    def mapper_path(self) -> Path:
        return self.ctx.config.paths.mapper_dir / self.mapper_name

    def crypttab_key(self) -> str:
        """Regex identifying an existing crypttab entry for the mapper name."""
        return rf"^{re.escape(self.mapper_name)}[ \t]"

    def fstab_key(self) -> str:
        """Regex identifying an existing fstab entry for the mountpoint."""
        return rf"[ \t]{re.escape(str(self.mountpoint))}[ \t]"

    # ------------------------------------------------------------------
    def validate_device(self) -> None:
        """Check the arguments, then that the source is a block device.

        Raises :class:`ValidationError` for a malformed mapper name or mountpoint
        and :class:`NotBlockDeviceError` for anything but a block device.
        """
        validate_mapper_name(self.mapper_name)
        validate_mountpoint(self.mountpoint)
        if not is_block_device(Path(self.device)):
            raise NotBlockDeviceError(f"{self.device} is not a block device.")

    def unlock(self) -> MutationResult:
        """UNRESOLVED -> UNLOCKED: read the LUKS UUID and open the mapping."""
        self._require(ResolverState.UNRESOLVED, "unlock")
        self.validate_device()
        result = self.ctx.runner.run(["cryptsetup", "luksUUID", self.device], check=False)
        luks_uuid = result.stdout.strip() if result.returncode == 0 else ""
        if not luks_uuid:
            raise ValidationError(f"{self.device} is not a LUKS partition.")
        self.mountpoint.mkdir(parents=True, exist_ok=True)

        changed = False
        if not DeviceUnlocked(self.mapper_name).check(self.ctx):
            self._open()
            changed = True
        self.luks_uuid = luks_uuid
        self.state = ResolverState.UNLOCKED
        if changed:
            return MutationResult(True, f"opened {self.device} as {self.mapper_name}")
        return MutationResult(False, f"{self.mapper_name} already open")

    def discover_filesystem(self) -> MutationResult:
        """UNLOCKED -> FILESYSTEM_KNOWN: read the filesystem UUID of the mapping."""
        self._require(ResolverState.UNLOCKED, "discover_filesystem")
        result = self.ctx.runner.run(
            ["blkid", "-s", "UUID", "-o", "value", str(self.mapper_path)],
            check=False,
        )
        fs_uuid = result.stdout.strip() if result.returncode == 0 else ""
        if not fs_uuid:
            raise NoFilesystemUUIDError(f"No filesystem UUID found on {self.mapper_path}.")
        self.mapping = DeviceMapping(
            source_device=self.device,
            mapper_name=self.mapper_name,
            luks_uuid=self.luks_uuid or "",
            filesystem_uuid=fs_uuid,
            mountpoint=self.mountpoint,
            fs_type=self.fs_type,
        )
        self.state = ResolverState.FILESYSTEM_KNOWN
        return MutationResult(False, f"filesystem UUID {fs_uuid}")

    def resolve(self) -> MutationResult:
        """Unlock and discover the filesystem in one call."""
        unlocked = self.unlock()
        discovered = self.discover_filesystem()
        return MutationResult(unlocked.changed, f"{unlocked.detail}; {discovered.detail}")

    def write_crypttab(self) -> MutationResult:
        """Append the crypttab line keyed on the mapper name."""
        mapping = self._mapping_for("write_crypttab")
        result = AppendLine(
            self.ctx.config.paths.crypttab, mapping.crypttab_line(), self.crypttab_key()
        ).apply(self.ctx)
        self._crypttab_written = True
        self._advance_if_written()
        return result

    def write_fstab(self) -> MutationResult:
        """Append the fstab line keyed on the mountpoint."""
        mapping = self._mapping_for("write_fstab")
        result = AppendLine(
            self.ctx.config.paths.fstab, mapping.fstab_line(), self.fstab_key()
        ).apply(self.ctx)
        self._fstab_written = True
        self._advance_if_written()
        return result

    def write_config(self) -> MutationResult:
        """FILESYSTEM_KNOWN -> CONFIG_WRITTEN: write both lines."""
        crypttab = self.write_crypttab()
        fstab = self.write_fstab()
        return MutationResult(
            crypttab.changed or fstab.changed,
            f"{crypttab.detail}; {fstab.detail}",
        )

    def reload(self) -> MutationResult:
        """Reload systemd so it generates units for the new entries."""
        self._require(ResolverState.CONFIG_WRITTEN, "reload")
        self.ctx.systemd.daemon_reload()
        return MutationResult(True, "systemd reloaded")

    def mount(self) -> MutationResult:
        """Mount everything in fstab."""
        self._require(ResolverState.CONFIG_WRITTEN, "mount")
        self.ctx.runner.run(["mount", "-a"])
        return MutationResult(True, "mount -a")

    def list_mountpoint(self) -> MutationResult:
        """List the mountpoint so the operator can confirm the mount."""
        self._require(ResolverState.CONFIG_WRITTEN, "list_mountpoint")
        result = self.ctx.runner.run(["ls", "-la", str(self.mountpoint)])
        return MutationResult(False, result.stdout.rstrip())

    # ------------------------------------------------------------------
    def _open(self) -> None:
        passphrase = self.credential.get()
        try:
            if passphrase is None:
                self.ctx.runner.run(
                    ["cryptsetup", "open", self.device, self.mapper_name],
                    interactive=True,
                )
            else:
                self.ctx.runner.run(
                    ["cryptsetup", "open", "--key-file", "-", self.device, self.mapper_name],
                    input=passphrase,
                )
        except MissingToolError:
            raise
        except ExternalToolError as exc:
            raise UnlockError(
                f"Unable to unlock {self.device}: {exc}",
                command=exc.command,
                returncode=exc.returncode,
                stdout=exc.stdout,
                stderr=exc.stderr,
            ) from exc

    def _require(self, expected: ResolverState, operation: str) -> None:
        if self.state is not expected:
            raise ResolverStateError(
                f"{operation} requires state {expected.name}, resolver is {self.state.name}."
            )

    def _mapping_for(self, operation: str) -> DeviceMapping:
        if self.state < ResolverState.FILESYSTEM_KNOWN or self.mapping is None:
            raise ResolverStateError(
                f"{operation} requires state FILESYSTEM_KNOWN, resolver is {self.state.name}."
            )
        return self.mapping

    def _advance_if_written(self) -> None:
        if self._crypttab_written and self._fstab_written:
            self.state = ResolverState.CONFIG_WRITTEN


__all__ = [
    "DeviceMapping",
    "DeviceResolver",
    "NoFilesystemUUIDError",
    "NotBlockDeviceError",
    "ResolverState",
    "ResolverStateError",
    "UnlockError",
    "is_block_device",
]
