"""Merge instance metadata with procedure outcomes into output records."""
from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence

from .models import CorrelationResult, ProcedureResult, ServiceInstance

# Columns shown by default; the certificate handle is only rendered on request.
DEFAULT_COLUMNS: tuple[str, ...] = (
    "host",
    "instance_name",
    "sql_instance",
    "service_account",
    "friendly_name",
    "dns_names",
    "thumbprint",
    "not_before",
    "not_after",
    "issued_to",
    "issued_by",
)

COLUMN_TITLES: dict[str, str] = {
    "host": "Host",
    "instance_name": "Instance",
    "sql_instance": "SQL Instance",
    "service_account": "Service Account",
    "friendly_name": "Friendly Name",
    "dns_names": "DNS Names",
    "thumbprint": "Thumbprint",
    "not_before": "Generated",
    "not_after": "Expires",
    "issued_to": "Issued To",
    "issued_by": "Issued By",
    "certificate": "Certificate",
}


class ResultAssembler:
    """Build :class:`CorrelationResult` records."""

    def assemble(
        self,
        instance: ServiceInstance,
        outcome: ProcedureResult,
    ) -> CorrelationResult | None:
        """Return the merged record, or ``None`` when no certificate matched."""
        certificate = outcome.certificate
        if certificate is None:
            return None
        return CorrelationResult(
            host=outcome.computer_name or instance.host,
            instance_name=instance.instance_name,
            sql_instance=instance.sql_instance,
            service_account=instance.service_account,
            friendly_name=certificate.friendly_name,
            dns_names=certificate.dns_names,
            thumbprint=certificate.thumbprint,
            not_before=certificate.not_before,
            not_after=certificate.not_after,
            issued_to=certificate.issued_to,
            issued_by=certificate.issued_by,
            certificate=certificate.handle,
        )


def project(
    results: Iterable[CorrelationResult],
    columns: Sequence[str] = DEFAULT_COLUMNS,
) -> Iterator[dict[str, object]]:
    """Yield each result reduced to *columns*.

    ``certificate`` may be requested explicitly and is rendered as PEM.
    """
    unknown = [column for column in columns if column not in COLUMN_TITLES]
    if unknown:
        raise ValueError(f"Unknown columns: {', '.join(unknown)}")
    include_certificate = "certificate" in columns
    for result in results:
        payload = result.to_dict(include_certificate=include_certificate)
        yield {column: payload[column] for column in columns}


__all__ = ["COLUMN_TITLES", "DEFAULT_COLUMNS", "ResultAssembler", "project"]
