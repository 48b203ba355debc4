"""HTTPS downloads with optional SHA-256 verification."""
from __future__ import annotations

import hashlib
import urllib.error
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass

from . import __version__
from .errors import ExternalToolError, ValidationError

Opener = Callable[[urllib.request.Request, float], bytes]


def _urlopen(request: urllib.request.Request, timeout: float) -> bytes:
    with urllib.request.urlopen(request, timeout=timeout) as resp:  # noqa: S310 - https enforced
        return resp.read()


def sha256_hex(payload: bytes) -> str:
    """Return the hex SHA-256 digest of *payload*."""
    return hashlib.sha256(payload).hexdigest()


@dataclass(slots=True)
class Fetcher:
    """Download repository keys, packages and remote configuration files."""

    timeout: float = 30.0
    opener: Opener = _urlopen

    def fetch(self, url: str, *, sha256: str | None = None) -> bytes:
        """Return the body of *url*, verifying *sha256* when given."""
        if not url.startswith("https://"):
            raise ValidationError(f"Refusing to download over plain HTTP: {url}")
        request = urllib.request.Request(
            url,
            headers={"User-Agent": f"hostctl/{__version__}"},
        )
        try:
            payload = self.opener(request, self.timeout)
        except urllib.error.HTTPError as exc:
            raise ExternalToolError(f"Download of {url} failed: HTTP {exc.code}") from exc
        except (urllib.error.URLError, TimeoutError) as exc:
            raise ExternalToolError(f"Download of {url} failed: {exc}") from exc
        if sha256:
            actual = sha256_hex(payload)
            if actual.lower() != sha256.lower():
                raise ValidationError(
                    f"Checksum mismatch for {url}: expected {sha256.lower()}, got {actual}"
                )
        return payload

    def fetch_text(self, url: str, *, sha256: str | None = None) -> str:
        """Return the body of *url* decoded as UTF-8."""
        payload = self.fetch(url, sha256=sha256)
        try:
            return payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ValidationError(f"{url} did not return UTF-8 text") from exc


__all__ = ["Fetcher", "sha256_hex"]
