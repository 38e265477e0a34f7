"""Value objects shared by the scan pipeline."""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from cryptography import x509
from cryptography.hazmat.primitives import serialization


@dataclass(slots=True, frozen=True)
class Credentials:
    """Account used to reach a host; ``None`` elsewhere means integrated auth."""

    username: str
    password: str = field(default="", repr=False)

    def to_dict(self) -> dict[str, object]:
        """Return a loggable representation without the secret."""
        return {"username": self.username, "password": "***" if self.password else ""}


@dataclass(slots=True, frozen=True)
class ServiceEntry:
    """Raw service record returned by a host's service management facility.

    ``advanced_properties`` is untyped: depending on how the
    record was marshalled it arrives as a mapping, a list of name/value
    objects, a list of strings or a single blob of text.
    """

    display_name: str
    advanced_properties: object = None
    service_account: str = ""


@dataclass(slots=True, frozen=True)
class ServiceInstance:
    """Database engine service discovered on a host."""

    host: str
    display_name: str
    instance_name: str
    registry_root: str
    sql_instance: str
    service_account: str = ""

    def to_request(self) -> CorrelationRequest:
        """Return the parameters shipped to the host-side procedure."""
        return CorrelationRequest(
            registry_root=self.registry_root,
            service_account=self.service_account,
            instance_name=self.instance_name,
            sql_instance=self.sql_instance,
        )


@dataclass(slots=True, frozen=True)
class CorrelationRequest:
    """Parameters of one correlation lookup."""

    registry_root: str
    service_account: str
    instance_name: str
    sql_instance: str

    def to_dict(self) -> dict[str, str]:
        """Return the wire representation used by remote procedures."""
        return {
            "RegRoot": self.registry_root,
            "ServiceAccount": self.service_account,
            "InstanceName": self.instance_name,
            "SqlInstance": self.sql_instance,
        }


@dataclass(slots=True, frozen=True)
class CertificateRecord:
    """Certificate found in a host's certificate store."""

    thumbprint: str
    friendly_name: str | None
    dns_names: tuple[str, ...]
    not_before: datetime | None
    not_after: datetime | None
    issued_to: str
    issued_by: str
    handle: x509.Certificate | None = field(default=None, compare=False, repr=False)


@dataclass(slots=True, frozen=True)
class ProcedureResult:
    """Outcome of the correlation procedure as reported by the executing host."""

    computer_name: str
    certificate: CertificateRecord | None = None


@dataclass(slots=True, frozen=True)
class CorrelationResult:
    """One instance correlated with the certificate it is configured to use."""

    host: str
    instance_name: str
    sql_instance: str
    service_account: str
    friendly_name: str | None
    dns_names: tuple[str, ...]
    thumbprint: str
    not_before: datetime | None
    not_after: datetime | None
    issued_to: str
    issued_by: str
    certificate: x509.Certificate | None = field(default=None, compare=False, repr=False)

    def to_dict(self, *, include_certificate: bool = False) -> dict[str, Any]:
        """Return a JSON-serialisable mapping of the record."""
        payload: dict[str, Any] = {
            "host": self.host,
            "instance_name": self.instance_name,
            "sql_instance": self.sql_instance,
            "service_account": self.service_account,
            "friendly_name": self.friendly_name,
            "dns_names": list(self.dns_names),
            "thumbprint": self.thumbprint,
            "not_before": self.not_before.isoformat() if self.not_before else None,
            "not_after": self.not_after.isoformat() if self.not_after else None,
            "issued_to": self.issued_to,
            "issued_by": self.issued_by,
        }
        if include_certificate:
            payload["certificate"] = _certificate_pem(self.certificate)
        return payload


class FailureKind(str, Enum):
    """Category of a per-host or per-instance failure."""

    ENUMERATION = "enumeration"
    REMOTE_EXECUTION = "remote-execution"


@dataclass(slots=True, frozen=True)
class ScanFailure:
    """Failure attributed to a host and, when known, one of its instances."""

    kind: FailureKind
    host: str
    message: str
    instance: str | None = None

    def describe(self) -> str:
        """Return a one-line description suitable for console output."""
        target = f"{self.host}/{self.instance}" if self.instance else self.host
        return f"[{self.kind.value}] {target}: {self.message}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "kind": self.kind.value,
            "host": self.host,
            "instance": self.instance,
            "message": self.message,
        }


@dataclass(slots=True)
class ScanReport:
    """Aggregated outcome of a scan across hosts."""

    results: list[CorrelationResult] = field(default_factory=list)
    failures: list[ScanFailure] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def has_failures(self) -> bool:
        """Return ``True`` when any host or instance failed."""
        return bool(self.failures)

    def failures_for(self, host: str) -> Sequence[ScanFailure]:
        """Return failures attributed to *host*."""
        return [failure for failure in self.failures if failure.host == host]

    def to_dict(self, *, include_certificate: bool = False) -> Mapping[str, object]:
        """Return a serialisable representation of the report."""
        return {
            "results": [
                result.to_dict(include_certificate=include_certificate)
                for result in self.results
            ],
            "failures": [failure.to_dict() for failure in self.failures],
            "warnings": list(self.warnings),
        }


def _certificate_pem(certificate: x509.Certificate | None) -> str | None:
    if certificate is None:
        return None
    return certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")


__all__ = [
    "CertificateRecord",
    "CorrelationRequest",
    "CorrelationResult",
    "Credentials",
    "FailureKind",
    "ProcedureResult",
    "ScanFailure",
    "ScanReport",
    "ServiceEntry",
    "ServiceInstance",
]
