"""Sequential correlation scan across hosts and their instances."""
from __future__ import annotations

import logging
from collections.abc import Callable, Collection, Iterable, Iterator

from .config import ServicesConfig
from .locator import EnumerationError, InstanceLocator
from .models import CorrelationResult, Credentials, FailureKind, ScanFailure, ScanReport
from .procedure import CorrelationProcedure
from .providers.base import HostProvider, TransportError
from .runner import RemoteExecutionError, RemoteRunner

LOGGER = logging.getLogger(__name__)

ProviderFactory = Callable[[str], HostProvider]


class CorrelationScanner:
    """Correlate every database engine instance on a set of hosts with its certificate.

    Hosts are visited in the order given and instances in the order the
    host reports them. A failing host or instance is recorded on the
    :class:`ScanReport` and the scan moves on.
    """

    def __init__(
        self,
        provider_for: ProviderFactory,
        *,
        services: ServicesConfig | None = None,
        procedure: CorrelationProcedure | None = None,
        instance_filter: Collection[str] | None = None,
    ) -> None:
        """Configure the scanner; *provider_for* returns the provider reaching a host."""
        self._provider_for = provider_for
        self._services = services or ServicesConfig()
        self._procedure = procedure or CorrelationProcedure()
        self._instance_filter = (
            {name.strip().lower() for name in instance_filter if name.strip()}
            if instance_filter
            else set()
        )

    def scan(
        self,
        hosts: Iterable[str],
        credentials: Credentials | None = None,
    ) -> ScanReport:
        """Run the scan to completion and return the aggregated report."""
        report = ScanReport()
        for result in self.iter_results(hosts, credentials, report=report):
            report.results.append(result)
        return report

    def iter_results(
        self,
        hosts: Iterable[str],
        credentials: Credentials | None = None,
        *,
        report: ScanReport | None = None,
    ) -> Iterator[CorrelationResult]:
        """Yield correlation results lazily; failures are recorded on *report*."""
        sink = report if report is not None else ScanReport()
        for raw_host in hosts:
            host = raw_host.strip()
            if not host:
                continue
            yield from self._scan_host(host, credentials, sink)

    def _scan_host(
        self,
        host: str,
        credentials: Credentials | None,
        report: ScanReport,
    ) -> Iterator[CorrelationResult]:
        try:
            provider = self._provider_for(host)
        except TransportError as exc:
            self._record(report, FailureKind.ENUMERATION, host, exc.detail)
            return

        locator = InstanceLocator(
            provider,
            display_pattern=self._services.display_pattern,
            root_property=self._services.root_property,
            address_property=self._services.address_property,
            on_warning=report.warnings.append,
        )
        runner = RemoteRunner(provider, self._procedure)

        try:
            for instance in locator.locate(host, credentials):
                if not self._wanted(instance.instance_name):
                    continue
                try:
                    result = runner.run(instance, credentials)
                except RemoteExecutionError as exc:
                    self._record(
                        report,
                        FailureKind.REMOTE_EXECUTION,
                        host,
                        str(exc),
                        instance=instance.instance_name,
                    )
                    continue
                if result is not None:
                    yield result
        except EnumerationError as exc:
            self._record(report, FailureKind.ENUMERATION, host, str(exc))

    def _wanted(self, instance_name: str) -> bool:
        return not self._instance_filter or instance_name.lower() in self._instance_filter

    @staticmethod
    def _record(
        report: ScanReport,
        kind: FailureKind,
        host: str,
        message: str,
        *,
        instance: str | None = None,
    ) -> None:
        failure = ScanFailure(kind=kind, host=host, message=message, instance=instance)
        LOGGER.error("%s", failure.describe())
        report.failures.append(failure)


__all__ = ["CorrelationScanner", "ProviderFactory"]
