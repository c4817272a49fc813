"""
Org-hierarchy lookup: who supervises a worker.

The escalation monitor only needs ``resolve_supervisor(worker_id)``. Two
implementations are provided: an in-memory mapping (tests, small fixed
crews) and an HTTP client for an external org directory service.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Union

import httpx

from fieldnotify.src.services.exceptions import ServiceError
from fieldnotify.src.utils.logging_config import get_logger


logger = get_logger("escalation")

UNKNOWN_WORKER_NAME = "Unknown Worker"
DEFAULT_TIMEOUT = 10.0  # seconds


@dataclass
class SupervisorInfo:
    """Supervisor lookup result; ``supervisor_id`` is None when nobody is found."""
    supervisor_id: Optional[int]
    worker_name: str = UNKNOWN_WORKER_NAME


class SupervisorLookupError(ServiceError):
    """Raised when the org directory cannot be reached or answers unexpectedly."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SupervisorResolver:
    """Interface consumed by the escalation monitor."""

    def resolve_supervisor(self, worker_id: int) -> SupervisorInfo:
        raise NotImplementedError


class MappingSupervisorResolver(SupervisorResolver):
    """
    Resolver backed by a dict.

    Values are either a supervisor id or a ``(supervisor_id, worker_name)``
    tuple.

    Example:
        >>> resolver = MappingSupervisorResolver({7: (3, "Ahmad Ali")})
        >>> resolver.resolve_supervisor(7)
        SupervisorInfo(supervisor_id=3, worker_name='Ahmad Ali')
    """

    def __init__(self, mapping: Optional[Dict[int, Union[int, Tuple[int, str]]]] = None):
        self.mapping = dict(mapping or {})

    def resolve_supervisor(self, worker_id: int) -> SupervisorInfo:
        entry = self.mapping.get(worker_id)
        if entry is None:
            return SupervisorInfo(supervisor_id=None)
        if isinstance(entry, tuple):
            supervisor_id, worker_name = entry
            return SupervisorInfo(supervisor_id=supervisor_id, worker_name=worker_name or UNKNOWN_WORKER_NAME)
        return SupervisorInfo(supervisor_id=entry, worker_name=f"Worker {worker_id}")


class HttpSupervisorResolver(SupervisorResolver):
    """
    Resolver that asks an org directory service over HTTP.

    Expects ``GET {base_url}/workers/{worker_id}/supervisor`` to answer 200
    with ``{"supervisorId": ..., "workerName": ...}`` or 404 when the worker
    has no supervisor.
    """

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT):
        if not base_url:
            raise ValueError("base_url is required")

        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
        )

    def resolve_supervisor(self, worker_id: int) -> SupervisorInfo:
        """
        Raises:
            SupervisorLookupError: On connection failure, timeout or unexpected status
        """
        try:
            response = self._client.get(f"/workers/{worker_id}/supervisor")
        except httpx.ConnectError as e:
            raise SupervisorLookupError(f"Failed to connect to org directory: {e}")
        except httpx.TimeoutException as e:
            raise SupervisorLookupError(f"Org directory timed out: {e}")

        if response.status_code == 404:
            return SupervisorInfo(supervisor_id=None)
        if response.status_code != 200:
            raise SupervisorLookupError(
                f"Org directory returned status {response.status_code}",
                status_code=response.status_code,
            )

        body = response.json()
        supervisor_id = body.get("supervisorId", body.get("supervisor_id"))
        worker_name = body.get("workerName", body.get("worker_name")) or UNKNOWN_WORKER_NAME
        return SupervisorInfo(
            supervisor_id=int(supervisor_id) if supervisor_id else None,
            worker_name=worker_name,
        )

    def close(self) -> None:
        self._client.close()
