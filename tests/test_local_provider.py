"""Tests for the local provider, PowerShell helpers and provider selection."""
from __future__ import annotations

import base64
import json
import ssl
import subprocess
from pathlib import Path

import pytest
from cryptography.hazmat.primitives import serialization
from fakes import CertificateFactory, FakeRegistry, FakeStore

from dbcertscan.config import AppConfig, load_config
from dbcertscan.matcher import thumbprint_of
from dbcertscan.models import CorrelationRequest
from dbcertscan.procedure import CorrelationProcedure
from dbcertscan.providers import local as local_module
from dbcertscan.providers.base import TransportError
from dbcertscan.providers.local import (
    LocalProvider,
    WindowsCertificateStore,
    is_local_host,
)
from dbcertscan.providers.powershell import (
    PowerShellOutputError,
    encode_command,
    parse_service_entries,
)
from dbcertscan.providers.selection import ProviderSelector
from dbcertscan.providers.winrm import WinRMProvider

REQUEST = CorrelationRequest(
    registry_root="SOFTWARE\\Engine1",
    service_account="",
    instance_name="MSSQLSERVER",
    sql_instance="SQL01",
)


def test_parse_service_entries_handles_empty_output() -> None:
    assert parse_service_entries("") == []
    assert parse_service_entries("[]") == []


def test_parse_service_entries_rejects_scalars() -> None:
    with pytest.raises(PowerShellOutputError):
        parse_service_entries("42")


def test_encode_command_is_utf16_base64() -> None:
    encoded = encode_command("Get-Date")

    assert base64.b64decode(encoded).decode("utf-16-le") == "Get-Date"


def _completed(
    stdout: str = "",
    stderr: str = "",
    returncode: int = 0,
) -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(
        args=[], returncode=returncode, stdout=stdout, stderr=stderr
    )


def test_local_enumeration_runs_encoded_powershell(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[list[str]] = []
    listing = [
        {
            "DisplayName": "SQL Server (MSSQLSERVER)",
            "AdvancedProperties": "@{Name=REGROOT; Value=X}",
        }
    ]

    def fake_run(args: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        calls.append(args)
        assert kwargs["check"] is False
        return _completed(json.dumps(listing))

    monkeypatch.setattr(local_module.subprocess, "run", fake_run)

    entries = LocalProvider(powershell_bin="pwsh").enumerate_services("localhost", None)

    assert [entry.display_name for entry in entries] == ["SQL Server (MSSQLSERVER)"]
    assert entries[0].advanced_properties == "@{Name=REGROOT; Value=X}"
    (args,) = calls
    assert args[:4] == ["pwsh", "-NoProfile", "-NonInteractive", "-EncodedCommand"]


@pytest.mark.parametrize(
    ("behaviour", "message"),
    [
        (FileNotFoundError("powershell"), "not found"),
        (subprocess.TimeoutExpired(cmd="powershell", timeout=60), "timed out"),
        (_completed(stderr="Access is denied.", returncode=1), "status 1: Access is denied."),
        (_completed(stdout="oops"), "invalid service listing"),
    ],
)
def test_local_enumeration_failures(
    monkeypatch: pytest.MonkeyPatch,
    behaviour: object,
    message: str,
) -> None:
    def fake_run(args: list[str], **kwargs: object) -> object:
        if isinstance(behaviour, Exception):
            raise behaviour
        return behaviour

    monkeypatch.setattr(local_module.subprocess, "run", fake_run)

    with pytest.raises(TransportError, match=message):
        LocalProvider().enumerate_services("localhost", None)


def test_local_execute_requires_windows(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(local_module, "IS_WINDOWS", False)

    with pytest.raises(TransportError, match="requires Windows"):
        LocalProvider().execute("localhost", None, REQUEST, CorrelationProcedure())


def test_local_execute_runs_procedure_in_process(
    monkeypatch: pytest.MonkeyPatch,
    make_certificate: CertificateFactory,
) -> None:
    certificate = make_certificate("local.example.test")
    key = "SOFTWARE\\Engine1\\MSSQLServer\\SuperSocketNetLib"
    monkeypatch.setattr(local_module, "IS_WINDOWS", True)
    monkeypatch.setattr(
        local_module,
        "WindowsRegistry",
        lambda: FakeRegistry({(key, "Certificate"): thumbprint_of(certificate)}),
    )
    monkeypatch.setattr(
        local_module,
        "WindowsCertificateStore",
        lambda: FakeStore({"MY": [(certificate, None)]}),
    )
    monkeypatch.setenv("COMPUTERNAME", "LOCALSQL")

    outcome = LocalProvider().execute("localhost", None, REQUEST, CorrelationProcedure())

    assert outcome.computer_name == "LOCALSQL"
    assert outcome.certificate is not None
    assert outcome.certificate.thumbprint == thumbprint_of(certificate)


def test_local_execute_wraps_store_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    key = "SOFTWARE\\Engine1\\MSSQLServer\\SuperSocketNetLib"
    monkeypatch.setattr(local_module, "IS_WINDOWS", True)
    monkeypatch.setattr(
        local_module, "WindowsRegistry", lambda: FakeRegistry({(key, "Certificate"): "A" * 40})
    )
    monkeypatch.setattr(
        local_module, "WindowsCertificateStore", lambda: FakeStore(fail_listing=True)
    )

    with pytest.raises(TransportError, match="store unavailable"):
        LocalProvider().execute("localhost", None, REQUEST, CorrelationProcedure())


def test_windows_certificate_store_reads_system_stores(
    monkeypatch: pytest.MonkeyPatch,
    make_certificate: CertificateFactory,
) -> None:
    certificate = make_certificate("store.example.test")
    der = certificate.public_bytes(serialization.Encoding.DER)
    seen: list[str] = []

    def fake_enum(store_name: str) -> list[tuple[bytes, str, object]]:
        seen.append(store_name)
        return [(der, "x509_asn", True), (b"ignored", "pkcs_7_asn", True)]

    monkeypatch.setattr(ssl, "enum_certificates", fake_enum, raising=False)
    store = WindowsCertificateStore(names=("MY",))

    assert list(store.containers()) == ["MY"]
    assert list(store.certificates("MY")) == [(certificate, None)]
    assert seen == ["MY"]


@pytest.mark.parametrize(
    "host", ["localhost", ".", "127.0.0.1", "LOCALSQL", "localsql.corp.example"]
)
def test_is_local_host(monkeypatch: pytest.MonkeyPatch, host: str) -> None:
    monkeypatch.setenv("COMPUTERNAME", "LOCALSQL")
    monkeypatch.setattr(local_module.socket, "gethostname", lambda: "buildbox")

    assert is_local_host(host) is True


def test_remote_host_is_not_local(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("COMPUTERNAME", "LOCALSQL")
    monkeypatch.setattr(local_module.socket, "gethostname", lambda: "buildbox")

    assert is_local_host("sql02.corp.example") is False


def _config(tmp_path: Path, transport: str) -> AppConfig:
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={"transport": transport, "logs_dir": str(tmp_path / "logs")},
    )


def test_selector_auto_prefers_local_on_windows(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(local_module, "IS_WINDOWS", True)
    selector = ProviderSelector(_config(tmp_path, "auto"))

    assert isinstance(selector("localhost"), LocalProvider)
    assert isinstance(selector("sql02.corp.example"), WinRMProvider)
    assert selector("sql02") is selector("sql03")


def test_selector_auto_uses_winrm_off_windows(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(local_module, "IS_WINDOWS", False)

    assert isinstance(ProviderSelector(_config(tmp_path, "auto"))("localhost"), WinRMProvider)


def test_selector_forced_winrm(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(local_module, "IS_WINDOWS", True)

    assert isinstance(ProviderSelector(_config(tmp_path, "winrm"))("localhost"), WinRMProvider)


def test_selector_forced_local_rejects_remote_hosts(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(local_module, "IS_WINDOWS", True)
    selector = ProviderSelector(_config(tmp_path, "local"))

    assert isinstance(selector("localhost"), LocalProvider)
    with pytest.raises(TransportError, match="cannot reach a remote host"):
        selector("sql02.corp.example")


def test_selector_forced_local_requires_windows(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(local_module, "IS_WINDOWS", False)

    with pytest.raises(TransportError, match="requires Windows"):
        ProviderSelector(_config(tmp_path, "local"))("localhost")
