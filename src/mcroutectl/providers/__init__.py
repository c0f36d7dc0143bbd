"""Providers wrapping the host tools mcroutectl shells out to."""
from __future__ import annotations

from .apt import AptProvider, PackageManagerError
from .compose import ComposeError, ComposeProvider
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "AptProvider",
    "ComposeError",
    "ComposeProvider",
    "PackageManagerError",
    "SystemdError",
    "SystemdProvider",
]
