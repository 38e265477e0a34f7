"""PowerShell snippets shared by the WinRM and local providers."""
from __future__ import annotations

import base64
import json
from collections.abc import Mapping

from ..models import ServiceEntry

# Lists engine services together with their advanced properties from the
# newest SQL Server WMI provider installed on the host.
SERVICE_ENUMERATION_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
$namespace = Get-CimInstance -Namespace 'root\Microsoft\SqlServer' -ClassName __NAMESPACE |
    Where-Object { $_.Name -like 'ComputerManagement*' } |
    Sort-Object { [int]($_.Name -replace '\D', '') } -Descending |
    Select-Object -First 1
if (-not $namespace) {
    '[]'
    return
}
$path = "root\Microsoft\SqlServer\$($namespace.Name)"
$properties = @(Get-CimInstance -Namespace $path -ClassName SqlServiceAdvancedProperty)
$entries = foreach ($service in Get-CimInstance -Namespace $path -ClassName SqlService -Filter 'SQLServiceType = 1') {
    [ordered]@{
        DisplayName = [string]$service.DisplayName
        ServiceAccount = [string]$service.StartName
        AdvancedProperties = @(
            $properties |
                Where-Object { $_.ServiceName -eq $service.ServiceName } |
                ForEach-Object {
                    [ordered]@{
                        PropertyName = [string]$_.PropertyName
                        PropertyStrValue = $_.PropertyStrValue
                        PropertyNumValue = $_.PropertyNumValue
                    }
                }
        )
    }
}
ConvertTo-Json -InputObject @($entries) -Depth 5 -Compress
"""


class PowerShellOutputError(ValueError):
    """Raised when a PowerShell snippet prints something that is not the expected JSON."""


def parse_service_entries(output: str) -> list[ServiceEntry]:
    """Decode the JSON printed by :data:`SERVICE_ENUMERATION_SCRIPT`.

    A single service is serialised as a bare object rather than a one
    element array; both shapes are accepted.
    """
    text = (output or "").strip()
    if not text:
        return []
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise PowerShellOutputError(f"invalid service listing: {exc.msg}") from exc
    if isinstance(payload, Mapping):
        payload = [payload]
    if not isinstance(payload, list):
        raise PowerShellOutputError("unexpected service listing shape; expected a JSON array")

    entries: list[ServiceEntry] = []
    for item in payload:
        if not isinstance(item, Mapping):
            continue
        display_name = str(item.get("DisplayName") or "").strip()
        if not display_name:
            continue
        entries.append(
            ServiceEntry(
                display_name=display_name,
                advanced_properties=item.get("AdvancedProperties"),
                service_account=str(item.get("ServiceAccount") or "").strip(),
            )
        )
    return entries


def encode_command(script: str) -> str:
    """Return *script* in the UTF-16LE base64 form ``-EncodedCommand`` expects."""
    return base64.b64encode(script.encode("utf-16-le")).decode("ascii")


__all__ = [
    "SERVICE_ENUMERATION_SCRIPT",
    "PowerShellOutputError",
    "encode_command",
    "parse_service_entries",
]
