"""Interfaces implemented by the host access providers."""
from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Protocol

from ..models import Credentials, CorrelationRequest, ProcedureResult, ServiceEntry

if TYPE_CHECKING:
    from cryptography import x509

    from ..procedure import CorrelationProcedure


class TransportError(RuntimeError):
    """Raised when a host cannot be reached or refuses the request."""

    def __init__(self, host: str, message: str) -> None:
        """Attribute *message* to *host*."""
        super().__init__(f"{host}: {message}")
        self.host = host
        self.detail = message


class ServiceEnumerator(Protocol):
    """Lists service entries registered with a host's service manager."""

    def enumerate_services(
        self,
        host: str,
        credentials: Credentials | None,
    ) -> Sequence[ServiceEntry]:
        """Return every database service entry known to *host*."""


class HostExecutor(Protocol):
    """Runs the correlation procedure inside a host's own security context."""

    def execute(
        self,
        host: str,
        credentials: Credentials | None,
        request: CorrelationRequest,
        procedure: CorrelationProcedure,
    ) -> ProcedureResult:
        """Execute *procedure* for *request* on *host*."""


class HostProvider(ServiceEnumerator, HostExecutor, Protocol):
    """A provider able to both enumerate and execute on a host."""


class RegistryReader(Protocol):
    """Host-local hierarchical configuration store (``HKEY_LOCAL_MACHINE``)."""

    def read_value(self, key_path: str, value_name: str) -> object | None:
        """Return the value stored under *key_path*, or ``None`` when absent."""


class CertificateStore(Protocol):
    """Host-local certificate store organised into named containers."""

    def containers(self) -> Sequence[str]:
        """Return the names of the logical containers in the store."""

    def certificates(self, container: str) -> Iterable[tuple[x509.Certificate, str | None]]:
        """Yield ``(certificate, friendly_name)`` pairs held in *container*."""


__all__ = [
    "CertificateStore",
    "HostExecutor",
    "HostProvider",
    "RegistryReader",
    "ServiceEnumerator",
    "TransportError",
]
