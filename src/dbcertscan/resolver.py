"""Read the certificate an instance is configured to present."""
from __future__ import annotations

from .providers.base import RegistryReader


class ConfigResolver:
    """Resolve the configured certificate thumbprint below an instance's registry root."""

    def __init__(
        self,
        registry: RegistryReader,
        *,
        network_subkey: str = "MSSQLServer\\SuperSocketNetLib",
        value_name: str = "Certificate",
    ) -> None:
        """Bind the resolver to a host-local *registry*."""
        self._registry = registry
        self._network_subkey = network_subkey.strip("\\")
        self._value_name = value_name

    def key_path(self, registry_root: str) -> str:
        """Return the key holding the network configuration for *registry_root*."""
        root = registry_root.strip().rstrip("\\")
        return f"{root}\\{self._network_subkey}"

    def resolve(self, registry_root: str) -> str | None:
        """Return the configured thumbprint, or ``None`` when nothing is configured."""
        if not registry_root or not registry_root.strip():
            return None
        value = self._registry.read_value(self.key_path(registry_root), self._value_name)
        if value is None:
            return None
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="ignore")
        text = str(value).strip()
        return text or None


__all__ = ["ConfigResolver"]
