"""Tunnel remote-port allocation for mcroutectl.

A single draw picks a port uniformly from ``[min_port, max_port]``. Draws made
through :class:`PortsRegistry` also consult ``ports.yml`` so repeated installs
and installs serialised by the deployment lock never hand out the same port
twice.
"""
from __future__ import annotations

import random
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .state import StateRegistry

MAX_RANDOM_ATTEMPTS = 64


class PortsRegistryError(RuntimeError):
    """Raised when port allocation or release fails."""


def draw_port(rng: random.Random, min_port: int, max_port: int) -> int:
    """Return one port drawn uniformly from the inclusive range."""
    if min_port >= max_port:
        raise PortsRegistryError(f"Invalid port range {min_port}-{max_port}.")
    return rng.randint(min_port, max_port)


@dataclass(slots=True)
class PortsRegistry:
    """Manage the port reservations stored under ``ports.yml``."""

    registry: StateRegistry
    min_port: int
    max_port: int
    strategy: str = "random"
    rng: random.Random = field(default_factory=random.Random)

    def __post_init__(self) -> None:
        """Validate initialiser parameters."""
        if self.min_port < 1 or self.max_port > 65535:
            raise PortsRegistryError("Port range must lie within 1-65535.")
        if self.min_port >= self.max_port:
            raise PortsRegistryError(
                f"Port range is empty: {self.min_port} must be lower than {self.max_port}."
            )
        if self.strategy not in {"random", "sequential"}:
            raise PortsRegistryError(f"Unsupported port allocation strategy '{self.strategy}'.")

    # ------------------------------------------------------------------
    def list_entries(self) -> list[dict[str, Any]]:
        """Return the current port reservations sorted by port."""
        raw = self.registry.read_ports()
        ports = raw.get("ports", [])
        entries: list[dict[str, Any]] = []
        if isinstance(ports, Iterable):
            for item in ports:
                if not isinstance(item, dict):
                    continue
                name = str(item.get("name", "")).strip()
                port_value = item.get("port")
                if not name or not isinstance(port_value, (int, str)):
                    continue
                try:
                    port = int(port_value)
                except ValueError:
                    continue
                entries.append({"name": name, "port": port})
        entries.sort(key=lambda entry: entry["port"])
        return entries

    def get_port(self, name: str) -> int | None:
        """Return the reserved port for *name*, if present."""
        normalized = _normalize_name(name)
        for entry in self.list_entries():
            if entry["name"] == normalized:
                return entry["port"]
        return None

    def reserve(self, name: str, *, requested_port: int | None = None) -> int:
        """Reserve a port for *name* and return the assigned value.

        Reserving again for an owner that already holds an in-range port
        returns that port unchanged.
        """
        normalized = _normalize_name(name)
        entries = self.list_entries()
        existing = next((entry for entry in entries if entry["name"] == normalized), None)
        if existing is not None:
            in_range = self.min_port <= existing["port"] <= self.max_port
            if in_range and requested_port in (None, existing["port"]):
                return int(existing["port"])
            entries = [entry for entry in entries if entry["name"] != normalized]

        used_ports = {entry["port"] for entry in entries}
        if requested_port is not None:
            if not self.min_port <= requested_port <= self.max_port:
                raise PortsRegistryError(
                    f"Requested port {requested_port} is outside {self.min_port}-{self.max_port}."
                )
            if requested_port in used_ports:
                raise PortsRegistryError(f"Port {requested_port} is already reserved.")
            port = requested_port
        else:
            port = self._next_available_port(used_ports)

        entries.append({"name": normalized, "port": port})
        self.registry.write_ports(entries)
        return port

    def release(self, name: str, *, missing_ok: bool = False) -> bool:
        """Release the port reserved for *name*."""
        normalized = _normalize_name(name)
        entries = self.list_entries()
        filtered = [entry for entry in entries if entry["name"] != normalized]
        if len(filtered) == len(entries):
            if missing_ok:
                return False
            raise PortsRegistryError(f"No port reservation found for '{normalized}'.")
        self.registry.write_ports(filtered)
        return True

    # Internal helpers -------------------------------------------------
    def _next_available_port(self, used: set[int]) -> int:
        """Return a free port using the configured strategy."""
        capacity = self.max_port - self.min_port + 1
        in_range = {port for port in used if self.min_port <= port <= self.max_port}
        if len(in_range) >= capacity:
            raise PortsRegistryError(
                f"No free ports left in range {self.min_port}-{self.max_port}."
            )

        if self.strategy == "random":
            for _ in range(MAX_RANDOM_ATTEMPTS):
                candidate = draw_port(self.rng, self.min_port, self.max_port)
                if candidate not in used:
                    return candidate
            # Dense table: fall back to a uniform pick among the free ports.
            free = [port for port in range(self.min_port, self.max_port + 1) if port not in used]
            return self.rng.choice(free)

        candidate = self.min_port
        while candidate in used:
            candidate += 1
        return candidate


def _normalize_name(name: str) -> str:
    """Return a normalised reservation owner name."""
    normalized = name.strip()
    if not normalized:
        raise PortsRegistryError("Reservation name must be a non-empty string.")
    return normalized


__all__ = ["PortsRegistry", "PortsRegistryError", "draw_port"]
