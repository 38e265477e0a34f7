"""The correlation procedure executed inside the target host's context.

The procedure reads the configured thumbprint below an instance's registry
root and looks it up in the host's certificate store. It exists in two
renditions that must stay behaviourally aligned:

* :meth:`CorrelationProcedure.run` executes in-process against a
  :class:`~dbcertscan.providers.base.RegistryReader` and a
  :class:`~dbcertscan.providers.base.CertificateStore` (local host, tests);
* :meth:`CorrelationProcedure.render_script` produces a PowerShell script for
  remote execution. Parameters travel as base64-encoded JSON and the host
  answers with a single JSON document decoded by
  :meth:`CorrelationProcedure.parse_output`.
"""
from __future__ import annotations

import base64
import binascii
import json
import socket
from collections.abc import Mapping
from datetime import UTC, datetime

from cryptography import x509

from .matcher import CertificateMatcher, record_from_certificate
from .models import CertificateRecord, CorrelationRequest, ProcedureResult
from .providers.base import CertificateStore, RegistryReader
from .resolver import ConfigResolver


class ProcedureError(RuntimeError):
    """Raised when a host returns a response the procedure cannot decode."""


_SCRIPT_TEMPLATE = r"""
$ErrorActionPreference = 'Stop'
$json = [System.Text.Encoding]::UTF8.GetString([System.Convert]::FromBase64String('__PARAMETERS__'))
$parameters = $json | ConvertFrom-Json
$keyPath = "Registry::HKEY_LOCAL_MACHINE\$($parameters.RegRoot)\$($parameters.NetworkSubkey)"
$result = [ordered]@{ ComputerName = [string]$env:COMPUTERNAME; Certificate = $null }

$thumbprint = $null
$item = Get-ItemProperty -LiteralPath $keyPath -Name $parameters.ValueName -ErrorAction SilentlyContinue
if ($item) {
    $thumbprint = ([string]$item.($parameters.ValueName) -replace '[\s\u200E\u200F\uFEFF]', '').ToUpperInvariant()
}

if ($thumbprint -match '^[0-9A-F]{40}$') {
    $match = $null
    foreach ($location in Get-ChildItem -Path Cert:\) {
        foreach ($store in Get-ChildItem -LiteralPath $location.PSPath -ErrorAction SilentlyContinue) {
            try {
                $match = Get-ChildItem -LiteralPath $store.PSPath -ErrorAction Stop |
                    Where-Object { $_.Thumbprint -eq $thumbprint } |
                    Select-Object -First 1
            } catch {
                continue
            }
            if ($match) { break }
        }
        if ($match) { break }
    }
    if ($match) {
        $result.Certificate = [ordered]@{
            FriendlyName = [string]$match.FriendlyName
            DnsNameList = @($match.DnsNameList | ForEach-Object { [string]$_.Unicode })
            Thumbprint = [string]$match.Thumbprint
            NotBefore = $match.NotBefore.ToUniversalTime().ToString("yyyy-MM-dd'T'HH:mm:ss'Z'")
            NotAfter = $match.NotAfter.ToUniversalTime().ToString("yyyy-MM-dd'T'HH:mm:ss'Z'")
            Subject = [string]$match.Subject
            Issuer = [string]$match.Issuer
            RawData = [System.Convert]::ToBase64String($match.RawData)
        }
    }
}

[pscustomobject]$result | ConvertTo-Json -Depth 4 -Compress
"""


class CorrelationProcedure:
    """ConfigResolver followed by CertificateMatcher, run as one unit on a host."""

    def __init__(
        self,
        *,
        network_subkey: str = "MSSQLServer\\SuperSocketNetLib",
        value_name: str = "Certificate",
    ) -> None:
        """Record where the configured thumbprint lives below an instance root."""
        self.network_subkey = network_subkey.strip("\\")
        self.value_name = value_name

    def run(
        self,
        request: CorrelationRequest,
        registry: RegistryReader,
        store: CertificateStore,
        *,
        computer_name: str | None = None,
    ) -> ProcedureResult:
        """Execute the procedure in-process on the current host."""
        resolver = ConfigResolver(
            registry,
            network_subkey=self.network_subkey,
            value_name=self.value_name,
        )
        thumbprint = resolver.resolve(request.registry_root)
        certificate = CertificateMatcher(store).match(thumbprint) if thumbprint else None
        return ProcedureResult(
            computer_name=computer_name or socket.gethostname(),
            certificate=certificate,
        )

    def parameters(self, request: CorrelationRequest) -> dict[str, str]:
        """Return the parameter document shipped to the host."""
        payload = request.to_dict()
        payload["NetworkSubkey"] = self.network_subkey
        payload["ValueName"] = self.value_name
        return payload

    def render_script(self, request: CorrelationRequest) -> str:
        """Return the PowerShell rendition of the procedure for *request*."""
        encoded = base64.b64encode(
            json.dumps(self.parameters(request), sort_keys=True).encode("utf-8")
        ).decode("ascii")
        return _SCRIPT_TEMPLATE.replace("__PARAMETERS__", encoded).strip()

    def parse_output(self, output: str) -> ProcedureResult:
        """Decode the JSON document printed by the remote rendition."""
        text = (output or "").strip()
        if not text:
            raise ProcedureError("host returned no output")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ProcedureError(f"invalid JSON response: {exc.msg}") from exc
        if not isinstance(payload, Mapping):
            raise ProcedureError("unexpected response shape; expected a JSON object")

        computer_name = str(payload.get("ComputerName") or "").strip()
        if not computer_name:
            raise ProcedureError("response does not identify the executing host")

        certificate_payload = payload.get("Certificate")
        certificate: CertificateRecord | None = None
        if isinstance(certificate_payload, Mapping):
            certificate = _record_from_payload(certificate_payload)
        elif certificate_payload is not None:
            raise ProcedureError("unexpected certificate shape in response")
        return ProcedureResult(computer_name=computer_name, certificate=certificate)


def _record_from_payload(payload: Mapping[str, object]) -> CertificateRecord:
    handle = _load_raw_certificate(payload.get("RawData"))
    fallback = record_from_certificate(handle) if handle is not None else None

    thumbprint = str(payload.get("Thumbprint") or "").strip().upper()
    if not thumbprint:
        if fallback is None:
            raise ProcedureError("certificate in response carries no thumbprint")
        thumbprint = fallback.thumbprint

    dns_raw = payload.get("DnsNameList")
    if isinstance(dns_raw, str):
        dns_names: tuple[str, ...] = (dns_raw,) if dns_raw else ()
    elif isinstance(dns_raw, list):
        dns_names = tuple(str(name) for name in dns_raw if name)
    else:
        dns_names = fallback.dns_names if fallback else ()

    return CertificateRecord(
        thumbprint=thumbprint,
        friendly_name=str(payload.get("FriendlyName") or "") or None,
        dns_names=dns_names,
        not_before=_parse_timestamp(payload.get("NotBefore"))
        or (fallback.not_before if fallback else None),
        not_after=_parse_timestamp(payload.get("NotAfter"))
        or (fallback.not_after if fallback else None),
        issued_to=str(payload.get("Subject") or (fallback.issued_to if fallback else "")),
        issued_by=str(payload.get("Issuer") or (fallback.issued_by if fallback else "")),
        handle=handle,
    )


def _load_raw_certificate(value: object) -> x509.Certificate | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return x509.load_der_x509_certificate(base64.b64decode(value, validate=True))
    except (binascii.Error, ValueError):
        return None


def _parse_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        moment = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


__all__ = ["CorrelationProcedure", "ProcedureError"]
