"""Execute the correlation procedure on the host that owns an instance."""
from __future__ import annotations

import logging

from .assembler import ResultAssembler
from .models import CorrelationResult, Credentials, ServiceInstance
from .procedure import CorrelationProcedure, ProcedureError
from .providers.base import HostExecutor, TransportError

LOGGER = logging.getLogger(__name__)


class RemoteExecutionError(RuntimeError):
    """Raised when the procedure could not be executed for an instance."""

    def __init__(self, host: str, instance: str, message: str) -> None:
        """Attribute *message* to *instance* on *host*."""
        super().__init__(message)
        self.host = host
        self.instance = instance


class RemoteRunner:
    """Ship one instance's parameters to its host and assemble the answer."""

    def __init__(
        self,
        executor: HostExecutor,
        procedure: CorrelationProcedure | None = None,
        assembler: ResultAssembler | None = None,
    ) -> None:
        """Bind the runner to an *executor* reaching the target hosts."""
        self._executor = executor
        self._procedure = procedure or CorrelationProcedure()
        self._assembler = assembler or ResultAssembler()

    def run(
        self,
        instance: ServiceInstance,
        credentials: Credentials | None = None,
    ) -> CorrelationResult | None:
        """Return the correlation for *instance*, or ``None`` when nothing matched.

        Raises :class:`RemoteExecutionError` when the host could not run the
        procedure or answered with something undecodable.
        """
        request = instance.to_request()
        try:
            outcome = self._executor.execute(
                instance.host,
                credentials,
                request,
                self._procedure,
            )
        except TransportError as exc:
            raise RemoteExecutionError(instance.host, instance.instance_name, exc.detail) from exc
        except ProcedureError as exc:
            raise RemoteExecutionError(instance.host, instance.instance_name, str(exc)) from exc

        if outcome.certificate is None:
            LOGGER.debug(
                "No configured certificate matched for %s on %s",
                instance.instance_name,
                outcome.computer_name,
            )
        return self._assembler.assemble(instance, outcome)


__all__ = ["RemoteExecutionError", "RemoteRunner"]
