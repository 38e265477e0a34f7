"""End-to-end tests of the correlation scan over fake hosts."""
from __future__ import annotations

import pytest
from fakes import CertificateFactory, FakeHost, FakeProvider, FakeRegistry, FakeStore, engine_entry

from dbcertscan.config import ServicesConfig
from dbcertscan.matcher import thumbprint_of
from dbcertscan.models import FailureKind, ServiceEntry
from dbcertscan.providers.base import TransportError
from dbcertscan.scanner import CorrelationScanner

ENGINE_SERVICES = ServicesConfig(display_pattern=r"^Engine \((?P<instance>.+)\)$")
ROOT = "SOFTWARE\\Engine1\\MSSQLServer\\Net"
KEY = ROOT + "\\MSSQLServer\\SuperSocketNetLib"


def _key(root: str) -> str:
    return root + "\\MSSQLServer\\SuperSocketNetLib"


def _h1(make_certificate: CertificateFactory, *, stored: bool = True) -> FakeHost:
    certificate = make_certificate("h1.example.com", ("h1.example.com",))
    other = make_certificate("unrelated.example.com", ("unrelated.example.com",))
    return FakeHost(
        computer_name="H1",
        services=[ServiceEntry("Engine (MSSQLSERVER)", [{"Name": "REGROOT", "Value": ROOT}])],
        registry=FakeRegistry({(KEY, "Certificate"): thumbprint_of(certificate)}),
        store=FakeStore({"MY": [(certificate, None)] if stored else [(other, None)]}),
    )


def test_single_match_produces_one_record(make_certificate: CertificateFactory) -> None:
    """A configured and installed certificate yields exactly one result."""
    provider = FakeProvider({"H1": _h1(make_certificate)})

    report = CorrelationScanner(provider, services=ENGINE_SERVICES).scan(["H1"])

    assert len(report.results) == 1
    (result,) = report.results
    assert (result.host, result.instance_name) == ("H1", "MSSQLSERVER")
    assert result.dns_names == ("h1.example.com",)
    assert result.sql_instance == "H1"
    assert report.failures == []
    assert report.has_failures is False


def test_configured_but_missing_certificate_produces_no_record(
    make_certificate: CertificateFactory,
) -> None:
    provider = FakeProvider({"H1": _h1(make_certificate, stored=False)})

    report = CorrelationScanner(provider, services=ENGINE_SERVICES).scan(["H1"])

    assert report.results == []
    assert report.failures == []


def test_unreachable_host_does_not_stop_scan(make_certificate: CertificateFactory) -> None:
    """An enumeration failure is recorded and later hosts are still scanned."""
    provider = FakeProvider(
        {
            "H2": FakeHost(computer_name="H2", enumeration_error="connection refused"),
            "H1": _h1(make_certificate),
        }
    )

    report = CorrelationScanner(provider, services=ENGINE_SERVICES).scan(["H2", "H1"])

    assert [(r.host, r.instance_name) for r in report.results] == [("H1", "MSSQLSERVER")]
    assert len(report.failures) == 1
    failure = report.failures[0]
    assert failure.kind is FailureKind.ENUMERATION
    assert failure.host == "H2"
    assert failure.instance is None
    assert "connection refused" in failure.message
    assert report.has_failures is True
    assert report.failures_for("H1") == []


def test_execution_failure_is_isolated_to_instance(make_certificate: CertificateFactory) -> None:
    certificate = make_certificate("h3.example.com")
    host = FakeHost(
        computer_name="H3",
        services=[
            engine_entry("SQL Server (A)", "SOFTWARE\\A"),
            engine_entry("SQL Server (B)", "SOFTWARE\\B"),
        ],
        registry=FakeRegistry(
            {(_key("SOFTWARE\\B"), "Certificate"): thumbprint_of(certificate)}
        ),
        store=FakeStore({"MY": [(certificate, None)]}),
    )

    class FlakyProvider(FakeProvider):
        def execute(self, host, credentials, request, procedure):  # type: ignore[no-untyped-def]
            if request.instance_name == "A":
                raise TransportError(host, "timed out")
            return super().execute(host, credentials, request, procedure)

    report = CorrelationScanner(FlakyProvider({"H3": host})).scan(["H3"])

    assert [r.instance_name for r in report.results] == ["B"]
    (failure,) = report.failures
    assert failure.kind is FailureKind.REMOTE_EXECUTION
    assert (failure.host, failure.instance) == ("H3", "A")
    assert failure.message == "timed out"


def test_metadata_failure_warns_and_continues(make_certificate: CertificateFactory) -> None:
    certificate = make_certificate("h4.example.com")
    host = FakeHost(
        computer_name="H4",
        services=[
            engine_entry("SQL Server (FIRST)", None, "CLUSTERVS"),
            engine_entry("SQL Server (SECOND)", "SOFTWARE\\S"),
        ],
        registry=FakeRegistry(
            {(_key("SOFTWARE\\S"), "Certificate"): thumbprint_of(certificate)}
        ),
        store=FakeStore({"MY": [(certificate, None)]}),
    )

    report = CorrelationScanner(FakeProvider({"H4": host})).scan(["H4"])

    assert [r.instance_name for r in report.results] == ["SECOND"]
    assert report.warnings == ["cannot find instance CLUSTERVS on H4"]
    assert report.failures == []


def test_provider_selection_failure_is_recorded_per_host(
    make_certificate: CertificateFactory,
) -> None:
    provider = FakeProvider({"H1": _h1(make_certificate)})

    def provider_for(host: str) -> FakeProvider:
        if host == "remote":
            raise TransportError(host, "local transport cannot reach a remote host")
        return provider

    report = CorrelationScanner(provider_for, services=ENGINE_SERVICES).scan(["remote", "H1"])

    assert len(report.results) == 1
    (failure,) = report.failures
    assert failure.kind is FailureKind.ENUMERATION
    assert failure.host == "remote"


def test_results_follow_host_then_instance_order(make_certificate: CertificateFactory) -> None:
    hosts = {}
    for name in ("B", "A"):
        cert_one = make_certificate(f"{name}1")
        cert_two = make_certificate(f"{name}2")
        hosts[name] = FakeHost(
            computer_name=name,
            services=[
                engine_entry("SQL Server (Z)", "SOFTWARE\\Z"),
                engine_entry("SQL Server (Y)", "SOFTWARE\\Y"),
            ],
            registry=FakeRegistry(
                {
                    ("SOFTWARE\\Z\\MSSQLServer\\SuperSocketNetLib", "Certificate"): thumbprint_of(
                        cert_one
                    ),
                    ("SOFTWARE\\Y\\MSSQLServer\\SuperSocketNetLib", "Certificate"): thumbprint_of(
                        cert_two
                    ),
                }
            ),
            store=FakeStore({"MY": [(cert_one, None), (cert_two, None)]}),
        )

    results = list(CorrelationScanner(FakeProvider(hosts)).iter_results(["B", "A"]))

    assert [(r.host, r.instance_name) for r in results] == [
        ("B", "Z"),
        ("B", "Y"),
        ("A", "Z"),
        ("A", "Y"),
    ]


def test_iter_results_is_lazy(make_certificate: CertificateFactory) -> None:
    provider = FakeProvider({"H1": _h1(make_certificate), "H2": _h1(make_certificate)})
    scanner = CorrelationScanner(provider, services=ENGINE_SERVICES)

    iterator = scanner.iter_results(["H1", "H2"])
    next(iterator)

    assert [host for host, _ in provider.enumerated] == ["H1"]


@pytest.mark.parametrize("wanted", [["mssqlserver"], ["MSSQLSERVER", "other"]])
def test_instance_filter_is_case_insensitive(
    make_certificate: CertificateFactory,
    wanted: list[str],
) -> None:
    provider = FakeProvider({"H1": _h1(make_certificate)})

    report = CorrelationScanner(
        provider,
        services=ENGINE_SERVICES,
        instance_filter=wanted,
    ).scan(["H1"])

    assert len(report.results) == 1


def test_instance_filter_excludes_other_instances(make_certificate: CertificateFactory) -> None:
    provider = FakeProvider({"H1": _h1(make_certificate)})

    report = CorrelationScanner(
        provider,
        services=ENGINE_SERVICES,
        instance_filter=["SQLEXPRESS"],
    ).scan(["H1"])

    assert report.results == []
    assert provider.requests == []


@pytest.mark.parametrize(
    "services",
    [
        [],
        [
            engine_entry("SQL Server Agent (MSSQLSERVER)", "SOFTWARE\\A"),
            engine_entry("SQL Server Browser", None),
        ],
    ],
)
def test_host_without_engine_services_yields_nothing(services: list[ServiceEntry]) -> None:
    """A host with no engine services produces no results, failures or warnings."""
    provider = FakeProvider({"H5": FakeHost(computer_name="H5", services=services)})

    report = CorrelationScanner(provider).scan(["H5"])

    assert report.results == []
    assert report.failures == []
    assert report.warnings == []
    assert provider.enumerated == [("H5", None)]
    assert provider.requests == []


def test_blank_hosts_are_ignored() -> None:
    provider = FakeProvider({})

    report = CorrelationScanner(provider).scan(["", "   "])

    assert report.results == []
    assert report.failures == []
    assert provider.enumerated == []
