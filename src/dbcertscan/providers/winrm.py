"""WinRM provider reaching remote hosts through WS-Management."""
from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import winrm
from winrm.exceptions import WinRMError, WinRMOperationTimeoutError, WinRMTransportError

from ..config import WinRMConfig
from ..models import Credentials, CorrelationRequest, ProcedureResult, ServiceEntry
from .base import TransportError
from .powershell import SERVICE_ENUMERATION_SCRIPT, PowerShellOutputError, parse_service_entries

if TYPE_CHECKING:
    from ..procedure import CorrelationProcedure

LOGGER = logging.getLogger(__name__)

# requests' exceptions derive from OSError, so connection failures land there.
_TRANSPORT_FAILURES = (WinRMError, WinRMTransportError, WinRMOperationTimeoutError, OSError)

SessionFactory = Callable[..., Any]


@dataclass(slots=True)
class WinRMProvider:
    """Enumerate services and run the correlation procedure over WinRM."""

    config: WinRMConfig = field(default_factory=WinRMConfig)
    session_factory: SessionFactory = winrm.Session
    _sessions: dict[tuple[str, str], Any] = field(default_factory=dict, init=False, repr=False)

    def enumerate_services(
        self,
        host: str,
        credentials: Credentials | None,
    ) -> Sequence[ServiceEntry]:
        """Return the engine service entries registered on *host*."""
        output = self._run_ps(host, credentials, SERVICE_ENUMERATION_SCRIPT)
        try:
            return parse_service_entries(output)
        except PowerShellOutputError as exc:
            raise TransportError(host, str(exc)) from exc

    def execute(
        self,
        host: str,
        credentials: Credentials | None,
        request: CorrelationRequest,
        procedure: CorrelationProcedure,
    ) -> ProcedureResult:
        """Run the PowerShell rendition of *procedure* on *host*."""
        output = self._run_ps(host, credentials, procedure.render_script(request))
        return procedure.parse_output(output)

    # ------------------------------------------------------------------
    def _session(self, host: str, credentials: Credentials | None) -> Any:
        username = credentials.username if credentials else ""
        key = (host.lower(), username)
        session = self._sessions.get(key)
        if session is None:
            auth = (username or None, credentials.password if credentials else None)
            session = self.session_factory(
                self.config.endpoint(host),
                auth=auth,
                transport=self.config.transport,
                server_cert_validation=self.config.server_cert_validation,
                read_timeout_sec=self.config.read_timeout,
                operation_timeout_sec=self.config.operation_timeout,
            )
            self._sessions[key] = session
        return session

    def _run_ps(self, host: str, credentials: Credentials | None, script: str) -> str:
        LOGGER.debug("Running PowerShell on %s via %s", host, self.config.endpoint(host))
        try:
            response = self._session(host, credentials).run_ps(script)
        except _TRANSPORT_FAILURES as exc:
            raise TransportError(host, f"WinRM request failed: {exc}") from exc

        stdout = _decode(response.std_out)
        if response.status_code != 0:
            detail = _decode(response.std_err).strip() or stdout.strip()
            raise TransportError(
                host,
                f"PowerShell exited with status {response.status_code}: "
                f"{detail or 'no output'}",
            )
        return stdout


def _decode(value: bytes | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


__all__ = ["SessionFactory", "WinRMProvider"]
