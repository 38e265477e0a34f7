"""Local provider for scanning the machine dbcertscan runs on."""
from __future__ import annotations

import logging
import os
import socket
import ssl
import subprocess
import sys
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from cryptography import x509

from ..models import Credentials, CorrelationRequest, ProcedureResult, ServiceEntry
from .base import TransportError
from .powershell import (
    SERVICE_ENUMERATION_SCRIPT,
    PowerShellOutputError,
    encode_command,
    parse_service_entries,
)

if TYPE_CHECKING:
    from ..procedure import CorrelationProcedure

LOGGER = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

# System stores searched by the in-process procedure, personal store first.
DEFAULT_CONTAINERS: tuple[str, ...] = (
    "MY",
    "WebHosting",
    "Remote Desktop",
    "TrustedPeople",
    "CA",
    "ROOT",
)


class WindowsRegistry:
    """Read values below ``HKEY_LOCAL_MACHINE`` through :mod:`winreg`."""

    def read_value(self, key_path: str, value_name: str) -> object | None:
        """Return the value named *value_name* under *key_path*, or ``None``."""
        import winreg

        try:
            with winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, key_path) as key:
                value, _value_type = winreg.QueryValueEx(key, value_name)
        except FileNotFoundError:
            return None
        return value


@dataclass(slots=True)
class WindowsCertificateStore:
    """Expose the Windows system certificate stores as named containers."""

    names: tuple[str, ...] = DEFAULT_CONTAINERS

    def containers(self) -> Sequence[str]:
        """Return the store names to search."""
        return self.names

    def certificates(self, container: str) -> Iterable[tuple[x509.Certificate, str | None]]:
        """Yield the DER certificates held in *container*."""
        for raw, encoding, _trust in ssl.enum_certificates(container):
            if encoding != "x509_asn":
                continue
            # friendly names are not exposed by the system store API
            yield x509.load_der_x509_certificate(raw), None


@dataclass(slots=True)
class LocalProvider:
    """Enumerate and correlate instances on the local Windows host."""

    powershell_bin: str = "powershell"
    timeout: float = 60.0

    @staticmethod
    def available() -> bool:
        """Return ``True`` when the local host can be scanned in-process."""
        return IS_WINDOWS

    def enumerate_services(
        self,
        host: str,
        credentials: Credentials | None,
    ) -> Sequence[ServiceEntry]:
        """Return the engine service entries registered on this machine."""
        if credentials is not None:
            LOGGER.debug("Ignoring credentials for local enumeration on %s", host)
        result = self._run_command(host, SERVICE_ENUMERATION_SCRIPT)
        try:
            return parse_service_entries(result.stdout)
        except PowerShellOutputError as exc:
            raise TransportError(host, str(exc)) from exc

    def execute(
        self,
        host: str,
        credentials: Credentials | None,
        request: CorrelationRequest,
        procedure: CorrelationProcedure,
    ) -> ProcedureResult:
        """Run *procedure* in-process against the local registry and stores."""
        if not self.available():
            raise TransportError(host, "local execution requires Windows")
        try:
            return procedure.run(
                request,
                WindowsRegistry(),
                WindowsCertificateStore(),
                computer_name=local_computer_name(),
            )
        except OSError as exc:
            raise TransportError(host, f"local procedure failed: {exc}") from exc

    # ------------------------------------------------------------------
    def _run_command(self, host: str, script: str) -> subprocess.CompletedProcess[str]:
        args = [
            self.powershell_bin,
            "-NoProfile",
            "-NonInteractive",
            "-EncodedCommand",
            encode_command(script),
        ]
        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise TransportError(host, f"{self.powershell_bin} not found") from exc
        except subprocess.TimeoutExpired as exc:
            raise TransportError(host, f"PowerShell timed out after {self.timeout}s") from exc
        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip()
            raise TransportError(
                host,
                f"PowerShell exited with status {result.returncode}: {detail or 'no output'}",
            )
        return result


def local_computer_name() -> str:
    """Return the name this machine reports for itself."""
    return os.environ.get("COMPUTERNAME") or socket.gethostname()


def is_local_host(host: str) -> bool:
    """Return ``True`` when *host* designates the machine dbcertscan runs on."""
    candidate = host.strip().lower()
    if candidate in {".", "localhost", "127.0.0.1", "::1"}:
        return True
    hostname = socket.gethostname().lower()
    names = {local_computer_name().lower(), hostname, hostname.split(".", 1)[0]}
    return candidate in names or candidate.split(".", 1)[0] in names


__all__ = [
    "DEFAULT_CONTAINERS",
    "IS_WINDOWS",
    "LocalProvider",
    "WindowsCertificateStore",
    "WindowsRegistry",
    "is_local_host",
    "local_computer_name",
]
