"""Choose the provider that reaches a given host."""
from __future__ import annotations

from ..config import AppConfig
from .base import HostProvider, TransportError
from .local import LocalProvider, is_local_host
from .winrm import WinRMProvider


class ProviderSelector:
    """Pick a provider per host according to the configured transport.

    ``auto`` scans the local machine in-process when dbcertscan runs on
    Windows and talks WinRM to everything else. Provider instances are
    shared across hosts so WinRM sessions are reused.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        winrm_provider: WinRMProvider | None = None,
        local_provider: LocalProvider | None = None,
    ) -> None:
        """Bind the selector to *config*."""
        self._transport = config.transport
        self._winrm = winrm_provider or WinRMProvider(config.winrm)
        self._local = local_provider or LocalProvider()

    def __call__(self, host: str) -> HostProvider:
        """Return the provider for *host*; alias of :meth:`select`."""
        return self.select(host)

    def select(self, host: str) -> HostProvider:
        """Return the provider for *host*.

        Raises :class:`TransportError` when the local transport is forced
        for a host it cannot reach.
        """
        if self._transport == "winrm":
            return self._winrm
        local = is_local_host(host)
        if self._transport == "local":
            if not local:
                raise TransportError(host, "local transport cannot reach a remote host")
            if not self._local.available():
                raise TransportError(host, "local transport requires Windows")
            return self._local
        if local and self._local.available():
            return self._local
        return self._winrm


def select_provider(host: str, config: AppConfig) -> HostProvider:
    """Return a fresh provider for *host* under *config*."""
    return ProviderSelector(config).select(host)


__all__ = ["ProviderSelector", "select_provider"]
