"""Subprocess wrapper shared by every provider."""
from __future__ import annotations

import os
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from ..errors import ExternalToolError, MissingToolError


@dataclass(slots=True)
class CommandRunner:
    """Run external commands, translating failures into hostctl errors."""

    timeout: float | None = 60.0

    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        input: str | None = None,  # noqa: A002 - mirrors subprocess.run
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
        interactive: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Run *args* and return the completed process.

        ``interactive`` commands inherit the terminal (no output capture, no
        timeout) so tools such as ``cryptsetup`` can prompt the operator.
        """
        command = [str(part) for part in args]
        merged_env = None
        if env:
            merged_env = dict(os.environ)
            merged_env.update(env)
        effective_timeout = None if interactive else (timeout or self.timeout)
        try:
            result = subprocess.run(  # noqa: S603
                command,
                input=input,
                capture_output=not interactive,
                text=True,
                check=False,
                timeout=effective_timeout,
                env=merged_env,
            )
        except FileNotFoundError as exc:
            raise MissingToolError(
                f"{command[0]} not found: {exc}",
                command=command,
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise ExternalToolError(
                f"{' '.join(command)} timed out after {effective_timeout:g}s",
                command=command,
            ) from exc
        if check and result.returncode != 0:
            stdout = result.stdout or ""
            stderr = result.stderr or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise ExternalToolError(
                f"{' '.join(command)} failed (exit {result.returncode}): {message}",
                command=command,
                returncode=result.returncode,
                stdout=stdout,
                stderr=stderr,
            )
        return result

    def which(self, name: str) -> str | None:
        """Return the absolute path of *name* on ``PATH`` or ``None``."""
        return shutil.which(name)


__all__ = ["CommandRunner"]
