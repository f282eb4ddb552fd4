"""
Container orchestrator protocol and adapters.

The orchestrator is an external system referenced only by opaque container
ids. Every call goes through call_orchestrator(), which bounds it with
ORCHESTRATOR_TIMEOUT_SECONDS and turns timeouts and transport failures into
OrchestratorError.

Adapters:
- MockContainerOrchestrator: in-memory, for development and tests
- HttpContainerOrchestrator: JSON over HTTP (httpx)
"""

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol

import httpx

from mymcp.core.clock import ensure_utc, utc_now
from mymcp.core.config import settings
from mymcp.core.errors import ConfigurationError, OrchestratorError
from mymcp.core.logging import log_event
from mymcp.core.metrics import orchestrator_call_seconds, orchestrator_failures_total
from mymcp.models.server import ServerStatus


logger = logging.getLogger("mymcp")


class ContainerStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"
    UNKNOWN = "unknown"


_STATUS_MAP = {
    ContainerStatus.STARTING: ServerStatus.STARTING,
    ContainerStatus.RUNNING: ServerStatus.RUNNING,
    ContainerStatus.STOPPING: ServerStatus.STOPPING,
    ContainerStatus.STOPPED: ServerStatus.STOPPED,
    ContainerStatus.FAILED: ServerStatus.FAILED,
}


def map_container_status(value: Any) -> ServerStatus:
    """Orchestrator status -> server status. Anything unrecognised is UNKNOWN."""
    try:
        status = ContainerStatus(str(value).strip().lower())
    except (ValueError, AttributeError):
        return ServerStatus.UNKNOWN
    return _STATUS_MAP.get(status, ServerStatus.UNKNOWN)


@dataclass(frozen=True)
class ContainerStartRequest:
    image_name: str
    image_tag: str
    environment: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    cpu_limit: Optional[int] = None
    memory_limit: Optional[int] = None
    port: Optional[int] = None

    @property
    def image_ref(self) -> str:
        return f"{self.image_name}:{self.image_tag}"


@dataclass(frozen=True)
class ContainerStartResult:
    container_instance_id: Optional[str]
    status: str
    address: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class ContainerStopResult:
    success: bool
    error_message: Optional[str] = None
    # The orchestrator has no such container; nothing is left running
    not_found: bool = False


@dataclass(frozen=True)
class ContainerHealthResult:
    is_healthy: bool
    status: str
    checked_at: datetime
    error_message: Optional[str] = None


class ContainerOrchestrator(Protocol):
    """
    Protocol for container orchestrators.

    Implementations report failures of the container itself through result
    fields (status="failed", success=False). Raising is reserved for the
    call failing (unreachable, timed out, rejected).
    """

    def start_container(self, request: ContainerStartRequest) -> ContainerStartResult:
        ...

    def resume_container(self, container_instance_id: str) -> ContainerStartResult:
        ...

    def stop_container(self, container_instance_id: str) -> ContainerStopResult:
        ...

    def get_container_health(self, container_instance_id: str) -> ContainerHealthResult:
        ...


class MockContainerOrchestrator:
    """In-memory orchestrator: containers start Running and remember stops."""

    def __init__(self, start_status: ContainerStatus = ContainerStatus.RUNNING):
        self.start_status = start_status
        self.containers: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def start_container(self, request: ContainerStartRequest) -> ContainerStartResult:
        container_id = f"mock-container-{uuid.uuid4().hex[:12]}"
        with self._lock:
            self.containers[container_id] = {
                "status": self.start_status,
                "image": request.image_ref,
                "environment": dict(request.environment),
                "labels": dict(request.labels),
            }
        logger.debug(f"[orchestrator.mock] started {container_id} from {request.image_ref}")
        return ContainerStartResult(
            container_instance_id=container_id,
            status=self.start_status.value,
            address=f"http://{container_id}:8080",
        )

    def resume_container(self, container_instance_id: str) -> ContainerStartResult:
        with self._lock:
            container = self.containers.get(container_instance_id)
            if container is None:
                return ContainerStartResult(
                    container_instance_id=container_instance_id,
                    status=ContainerStatus.FAILED.value,
                    error_message="Container not found",
                )
            container["status"] = ContainerStatus.RUNNING
        return ContainerStartResult(
            container_instance_id=container_instance_id,
            status=ContainerStatus.RUNNING.value,
            address=f"http://{container_instance_id}:8080",
        )

    def stop_container(self, container_instance_id: str) -> ContainerStopResult:
        with self._lock:
            container = self.containers.get(container_instance_id)
            if container is None:
                return ContainerStopResult(success=False, error_message="Container not found", not_found=True)
            container["status"] = ContainerStatus.STOPPED
        return ContainerStopResult(success=True)

    def get_container_health(self, container_instance_id: str) -> ContainerHealthResult:
        with self._lock:
            container = self.containers.get(container_instance_id)
        if container is None:
            return ContainerHealthResult(
                is_healthy=False,
                status=ContainerStatus.UNKNOWN.value,
                checked_at=utc_now(),
                error_message="Container not found",
            )
        status = container["status"]
        return ContainerHealthResult(
            is_healthy=status == ContainerStatus.RUNNING,
            status=status.value,
            checked_at=utc_now(),
        )


class HttpContainerOrchestrator:
    """
    Orchestrator reached over HTTP.

    Endpoints:
    - POST /containers
    - POST /containers/{id}/start
    - POST /containers/{id}/stop
    - GET  /containers/{id}/health
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout, headers=headers)

    def close(self) -> None:
        self._client.close()

    def _request(self, operation: str, method: str, path: str, missing_ok: bool = False, **kwargs) -> Optional[dict]:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise OrchestratorError(
                f"Orchestrator {operation} timed out", operation=operation, timed_out=True
            ) from exc
        except httpx.HTTPError as exc:
            raise OrchestratorError(
                f"Orchestrator {operation} failed: {exc}", operation=operation
            ) from exc

        if missing_ok and response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise OrchestratorError(
                f"Orchestrator {operation} returned HTTP {response.status_code}",
                operation=operation,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise OrchestratorError(
                f"Orchestrator {operation} returned invalid JSON", operation=operation
            ) from exc

    def start_container(self, request: ContainerStartRequest) -> ContainerStartResult:
        payload = {
            "image": request.image_ref,
            "environment": request.environment,
            "labels": request.labels,
        }
        resources = {
            "cpu_millis": request.cpu_limit,
            "memory_mb": request.memory_limit,
            "port": request.port,
        }
        if any(v is not None for v in resources.values()):
            payload["resources"] = {k: v for k, v in resources.items() if v is not None}

        data = self._request("start", "POST", "/containers", json=payload)
        return ContainerStartResult(
            container_instance_id=data.get("id") or data.get("container_instance_id"),
            status=str(data.get("status") or ContainerStatus.UNKNOWN.value),
            address=data.get("address"),
            error_message=data.get("error"),
        )

    def resume_container(self, container_instance_id: str) -> ContainerStartResult:
        data = self._request("start", "POST", f"/containers/{container_instance_id}/start", missing_ok=True)
        if data is None:
            return ContainerStartResult(
                container_instance_id=container_instance_id,
                status=ContainerStatus.FAILED.value,
                error_message="Container not found",
            )
        return ContainerStartResult(
            container_instance_id=data.get("id") or container_instance_id,
            status=str(data.get("status") or ContainerStatus.UNKNOWN.value),
            address=data.get("address"),
            error_message=data.get("error"),
        )

    def stop_container(self, container_instance_id: str) -> ContainerStopResult:
        data = self._request("stop", "POST", f"/containers/{container_instance_id}/stop", missing_ok=True)
        if data is None:
            return ContainerStopResult(success=False, error_message="Container not found", not_found=True)
        return ContainerStopResult(
            success=bool(data.get("success")),
            error_message=data.get("error"),
        )

    def get_container_health(self, container_instance_id: str) -> ContainerHealthResult:
        data = self._request("health", "GET", f"/containers/{container_instance_id}/health")
        checked_at = data.get("checked_at")
        return ContainerHealthResult(
            is_healthy=bool(data.get("healthy", data.get("is_healthy", False))),
            status=str(data.get("status") or ContainerStatus.UNKNOWN.value),
            checked_at=ensure_utc(datetime.fromisoformat(checked_at)) if checked_at else utc_now(),
            error_message=data.get("error"),
        )


# Call bounding

_executor: Optional[ThreadPoolExecutor] = None
_executor_lock = threading.Lock()


def _get_executor() -> ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(
                max_workers=settings.ORCHESTRATOR_MAX_WORKERS,
                thread_name_prefix="orchestrator",
            )
        return _executor


def shutdown_executor() -> None:
    global _executor
    with _executor_lock:
        if _executor is not None:
            _executor.shutdown(wait=False)
            _executor = None


def call_orchestrator(
    operation: str,
    fn: Callable[..., Any],
    *args,
    timeout: Optional[float] = None,
    user_id: Optional[str] = None,
    server_id: Optional[str] = None,
) -> Any:
    """
    Run one orchestrator call with a deadline.

    A call that outlives the deadline keeps running on its worker thread but
    its result is discarded; the caller sees a retryable OrchestratorError.
    """
    limit = timeout if timeout is not None else settings.ORCHESTRATOR_TIMEOUT_SECONDS
    started = time.perf_counter()
    future = _get_executor().submit(fn, *args)
    try:
        result = future.result(timeout=limit)
        orchestrator_call_seconds.observe(time.perf_counter() - started, labels={"operation": operation})
        return result
    except FutureTimeoutError:
        error = OrchestratorError(
            f"Orchestrator {operation} timed out after {limit}s",
            operation=operation,
            timed_out=True,
        )
    except OrchestratorError as exc:
        error = exc
        if error.operation is None:
            error.operation = operation
    except Exception as exc:
        error = OrchestratorError(f"Orchestrator {operation} failed: {exc}", operation=operation)
        error.__cause__ = exc

    orchestrator_failures_total.inc(labels={"operation": operation})
    log_event(
        "error",
        "orchestrator.failure",
        user_id=user_id,
        server_id=server_id,
        operation=operation,
        error_code=error.code,
        extra={"timed_out": error.timed_out, "detail": error.message},
    )
    raise error


# Provider selection

_orchestrator: Optional[ContainerOrchestrator] = None
_orchestrator_lock = threading.Lock()


def build_orchestrator(mode: Optional[str] = None) -> ContainerOrchestrator:
    selected = (mode or settings.ORCHESTRATOR_MODE or "mock").lower()
    if selected == "mock":
        return MockContainerOrchestrator()
    if selected == "http":
        if not settings.ORCHESTRATOR_URL:
            raise ConfigurationError("ORCHESTRATOR_URL is required when ORCHESTRATOR_MODE=http")
        return HttpContainerOrchestrator(
            settings.ORCHESTRATOR_URL,
            api_key=settings.ORCHESTRATOR_API_KEY,
            timeout=settings.ORCHESTRATOR_TIMEOUT_SECONDS,
        )
    raise ConfigurationError(f"Unknown ORCHESTRATOR_MODE: {selected}")


def get_orchestrator() -> ContainerOrchestrator:
    """Process-wide orchestrator, chosen by ORCHESTRATOR_MODE. Also a FastAPI dependency."""
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            _orchestrator = build_orchestrator()
        return _orchestrator


def set_orchestrator(orchestrator: Optional[ContainerOrchestrator]) -> None:
    """Replace (or with None, reset) the process-wide orchestrator."""
    global _orchestrator
    with _orchestrator_lock:
        _orchestrator = orchestrator
