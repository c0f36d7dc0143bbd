"""Map host architectures onto frp release artifacts and download the client."""
from __future__ import annotations

import logging
import os
import platform
import tempfile
import urllib.error
import urllib.request
from pathlib import Path

LOGGER = logging.getLogger(__name__)

FRP_RELEASES_URL = "https://github.com/fatedier/frp/releases/download"
DOWNLOAD_TIMEOUT = 60

_ARCH_ALIASES: dict[str, str] = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armv6l": "arm",
    "i386": "386",
    "i686": "386",
}


class UnsupportedPlatformError(RuntimeError):
    """Raised when no frp build exists for the host architecture."""


class ClientFetchError(RuntimeError):
    """Raised when the tunnel-client archive cannot be downloaded."""


def resolve_arch(machine: str | None = None) -> str:
    """Return frp's architecture label for *machine* (defaults to this host)."""
    raw = (machine if machine is not None else platform.machine()).strip().lower()
    try:
        return _ARCH_ALIASES[raw]
    except KeyError:
        raise UnsupportedPlatformError(
            f"Unsupported architecture '{raw or 'unknown'}'. "
            f"Supported: {', '.join(sorted(_ARCH_ALIASES))}."
        ) from None


def frp_archive_name(version: str, arch: str) -> str:
    """Return the release tarball name for *version* on *arch*."""
    return f"frp_{version.lstrip('v')}_linux_{arch}.tar.gz"


def frp_release_url(version: str, arch: str) -> str:
    """Return the download URL of the linux release tarball."""
    bare = version.lstrip("v")
    return f"{FRP_RELEASES_URL}/v{bare}/{frp_archive_name(bare, arch)}"


def fetch_frp_client(
    version: str,
    destination: Path,
    *,
    machine: str | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
) -> Path:
    """Download the frp release for this host into *destination*.

    The architecture is resolved before any network access so an unsupported
    host fails without side effects. Returns the path of the saved archive.
    """
    arch = resolve_arch(machine)
    url = frp_release_url(version, arch)
    destination.mkdir(parents=True, exist_ok=True)
    target = destination / frp_archive_name(version, arch)

    LOGGER.debug("Downloading %s to %s", url, target)
    request = urllib.request.Request(url, headers={"Accept": "application/octet-stream"})
    fd, tmp_name = tempfile.mkstemp(dir=str(destination), prefix=f".{target.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            with urllib.request.urlopen(request, timeout=timeout) as response:  # noqa: S310
                while chunk := response.read(64 * 1024):
                    handle.write(chunk)
        os.replace(tmp_path, target)
    except urllib.error.HTTPError as exc:
        raise ClientFetchError(f"Download of {url} failed: HTTP {exc.code}.") from exc
    except urllib.error.URLError as exc:
        raise ClientFetchError(f"Download of {url} failed: {exc.reason}.") from exc
    finally:
        tmp_path.unlink(missing_ok=True)
    return target


__all__ = [
    "ClientFetchError",
    "UnsupportedPlatformError",
    "fetch_frp_client",
    "frp_archive_name",
    "frp_release_url",
    "resolve_arch",
]
