"""Host access providers for dbcertscan."""
from __future__ import annotations

from .base import (
    CertificateStore,
    HostExecutor,
    HostProvider,
    RegistryReader,
    ServiceEnumerator,
    TransportError,
)
from .local import LocalProvider, WindowsCertificateStore, WindowsRegistry
from .selection import ProviderSelector, select_provider
from .winrm import WinRMProvider

__all__ = [
    "CertificateStore",
    "HostExecutor",
    "HostProvider",
    "LocalProvider",
    "ProviderSelector",
    "RegistryReader",
    "ServiceEnumerator",
    "TransportError",
    "WinRMProvider",
    "WindowsCertificateStore",
    "WindowsRegistry",
    "select_provider",
]
