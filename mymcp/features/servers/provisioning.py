"""
MCP server provisioning and lifecycle.

Provision flow (order matters):
1. validate the request (no side effects on failure)
2. replay an idempotent retry, if the key was seen before
3. entitlement gate (before any orchestrator call)
4. register template / container spec reference data
5. start the container (bounded, may raise OrchestratorError)
6. persist the instance with the mapped status
7. bill the creation

A container that reports "failed" still yields a persisted, billed instance.
An orchestrator call that raises leaves nothing persisted and nothing billed.
"""

import time
import uuid
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy.exc import IntegrityError

from mymcp.core.clock import normalize_now
from mymcp.core.errors import ConflictError, NotFoundError, OrchestratorError, ValidationError
from mymcp.core.logging import log_event
from mymcp.core.metrics import servers_provisioned_total
from mymcp.features.audit.service import record_deployment_audit
from mymcp.features.entitlements.service import enforce_server_creation
from mymcp.features.servers import repository
from mymcp.features.servers.orchestrator import (
    ContainerOrchestrator,
    ContainerStartRequest,
    call_orchestrator,
    get_orchestrator,
    map_container_status,
)
from mymcp.features.servers.templates import (
    github_container_spec_values,
    github_environment,
    github_template_values,
    server_labels,
)
from mymcp.features.usage.service import track_server_creation
from mymcp.models.server import (
    LIVE_STATUSES,
    CreateGitHubServerRequest,
    ServerHealth,
    ServerInstance,
    ServerStatus,
    UpdateServerRequest,
)


MAX_NAME_LENGTH = 128
MAX_DESCRIPTION_LENGTH = 512
MAX_IDEMPOTENCY_KEY_LENGTH = 255

ALLOWED_TRANSITIONS: Dict[ServerStatus, FrozenSet[ServerStatus]] = {
    ServerStatus.STOPPED: frozenset({ServerStatus.STARTING}),
    ServerStatus.STARTING: frozenset({
        ServerStatus.RUNNING,
        ServerStatus.STOPPING,
        ServerStatus.STOPPED,
        ServerStatus.FAILED,
        ServerStatus.UNKNOWN,
    }),
    ServerStatus.RUNNING: frozenset({
        ServerStatus.STOPPING,
        ServerStatus.STOPPED,
        ServerStatus.FAILED,
        ServerStatus.UNKNOWN,
    }),
    ServerStatus.STOPPING: frozenset({
        ServerStatus.STOPPED,
        ServerStatus.FAILED,
        ServerStatus.UNKNOWN,
    }),
    ServerStatus.FAILED: frozenset({ServerStatus.STARTING, ServerStatus.STOPPED}),
    ServerStatus.UNKNOWN: frozenset({
        ServerStatus.STARTING,
        ServerStatus.RUNNING,
        ServerStatus.STOPPING,
        ServerStatus.STOPPED,
        ServerStatus.FAILED,
    }),
}


def can_transition(current: ServerStatus, target: ServerStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(instance: ServerInstance, target: ServerStatus) -> None:
    if not can_transition(instance.status, target):
        raise ConflictError(
            f"Server {instance.server_id} cannot go from {instance.status.value} to {target.value}"
        )


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _check_name(name: Optional[str]) -> None:
    if not name:
        raise ValidationError("Server name is required")
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"Server name must be at most {MAX_NAME_LENGTH} characters")


def _check_description(description: Optional[str]) -> None:
    if description and len(description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(f"Description must be at most {MAX_DESCRIPTION_LENGTH} characters")


def validate_github_request(request: CreateGitHubServerRequest) -> CreateGitHubServerRequest:
    """Return a normalized copy of the request or raise ValidationError."""
    name = _clean(request.name)
    token = _clean(request.github_token)
    description = _clean(request.description)
    key = _clean(request.idempotency_key)

    _check_name(name)
    if not token:
        raise ValidationError("GitHub token is required")
    _check_description(description)
    if key and len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise ValidationError(f"Idempotency key must be at most {MAX_IDEMPOTENCY_KEY_LENGTH} characters")

    return CreateGitHubServerRequest(
        name=name,
        description=description,
        github_token=token,
        repository=_clean(request.repository),
        idempotency_key=key,
    )


def list_servers(user_id: str) -> List[ServerInstance]:
    return repository.get_user_server_instances(user_id)


def get_server(user_id: str, server_id: str) -> ServerInstance:
    """Owner-scoped lookup. Another user's server is reported as not found."""
    instance = repository.get_server_instance(server_id)
    if instance is None or instance.user_id != user_id:
        raise NotFoundError(f"Server not found: {server_id}")
    return instance


def update_server(
    user_id: str,
    server_id: str,
    request: UpdateServerRequest,
    *,
    now: Optional[datetime] = None,
) -> ServerInstance:
    """Rename or redescribe a server. The orchestrator is not involved."""
    at = normalize_now(now)
    instance = get_server(user_id, server_id)

    changes = {}
    if request.name is not None:
        name = _clean(request.name)
        _check_name(name)
        changes["name"] = name
    if request.description is not None:
        description = _clean(request.description)
        _check_description(description)
        changes["description"] = description
    if not changes:
        return instance

    changes["updated_at"] = at
    updated = repository.update_server_instance(instance.model_copy(update=changes))
    if updated is None:
        raise NotFoundError(f"Server not found: {server_id}")
    log_event("info", "servers.updated", user_id=user_id, server_id=server_id, operation="update")
    return updated


def provision_github_server(
    user_id: str,
    request: CreateGitHubServerRequest,
    *,
    orchestrator: Optional[ContainerOrchestrator] = None,
    now: Optional[datetime] = None,
) -> ServerInstance:
    at = normalize_now(now)
    req = validate_github_request(request)

    if req.idempotency_key:
        existing = repository.get_by_idempotency_key(user_id, req.idempotency_key)
        if existing:
            log_event(
                "info",
                "servers.provision.replayed",
                user_id=user_id,
                server_id=existing.server_id,
                operation="provision",
            )
            return existing

    enforce_server_creation(user_id, at)

    template = repository.get_or_create_template(github_template_values(), at)
    spec = repository.get_or_create_container_spec(github_container_spec_values(), at)

    server_id = str(uuid.uuid4())
    start_request = ContainerStartRequest(
        image_name=spec.image_name,
        image_tag=spec.image_tag,
        environment=github_environment(req.github_token, req.repository),
        labels=server_labels(server_id, user_id),
        cpu_limit=spec.cpu_limit,
        memory_limit=spec.memory_limit,
        port=spec.port,
    )

    orch = orchestrator or get_orchestrator()
    started = time.perf_counter()
    try:
        result = call_orchestrator(
            "start",
            orch.start_container,
            start_request,
            user_id=user_id,
            server_id=server_id,
        )
    except OrchestratorError as exc:
        servers_provisioned_total.inc(labels={"status": "error"})
        record_deployment_audit(
            server_instance_id=server_id,
            user_id=user_id,
            action="provision",
            status="error",
            error_message=exc.message,
            details={"image": start_request.image_ref, "timed_out": exc.timed_out},
            duration_ms=_elapsed_ms(started),
        )
        raise

    status = map_container_status(result.status)
    instance = ServerInstance(
        server_id=server_id,
        user_id=user_id,
        name=req.name,
        description=req.description,
        template_id=template.template_id,
        container_spec_id=spec.spec_id,
        status=status,
        container_instance_id=result.container_instance_id,
        idempotency_key=req.idempotency_key,
        created_at=at,
        updated_at=at,
        last_started_at=at if status in (ServerStatus.STARTING, ServerStatus.RUNNING) else None,
    )

    try:
        instance = repository.create_server_instance(instance)
    except IntegrityError:
        winner = None
        if req.idempotency_key:
            winner = repository.get_by_idempotency_key(user_id, req.idempotency_key)
        if winner is None:
            raise
        _discard_duplicate_container(orch, user_id, server_id, result.container_instance_id)
        return winner

    track_server_creation(user_id, server_id, at)

    servers_provisioned_total.inc(labels={"status": status.value})
    record_deployment_audit(
        server_instance_id=server_id,
        user_id=user_id,
        action="provision",
        status=status.value,
        error_message=result.error_message,
        details={"image": start_request.image_ref, "container_instance_id": result.container_instance_id},
        duration_ms=_elapsed_ms(started),
    )
    log_event(
        "warning" if status == ServerStatus.FAILED else "info",
        "servers.provisioned",
        user_id=user_id,
        server_id=server_id,
        operation="provision",
        extra={"status": status.value},
    )
    return instance


def _discard_duplicate_container(
    orch: ContainerOrchestrator,
    user_id: str,
    server_id: str,
    container_instance_id: Optional[str],
) -> None:
    """Stop a container started by the losing side of an idempotency race."""
    if not container_instance_id:
        return
    try:
        call_orchestrator("stop", orch.stop_container, container_instance_id, user_id=user_id, server_id=server_id)
    except OrchestratorError:
        log_event(
            "error",
            "servers.duplicate_container_leaked",
            user_id=user_id,
            server_id=server_id,
            operation="stop",
            extra={"container_instance_id": container_instance_id},
        )


def _stop_container(
    orch: ContainerOrchestrator,
    instance: ServerInstance,
    action: str,
) -> None:
    """
    Stop the backing container or raise OrchestratorError. Never mutates the record.

    A container the orchestrator no longer knows about counts as stopped.
    """
    started = time.perf_counter()
    try:
        result = call_orchestrator(
            "stop",
            orch.stop_container,
            instance.container_instance_id,
            user_id=instance.user_id,
            server_id=instance.server_id,
        )
        if result.not_found:
            log_event(
                "warning",
                "servers.container_missing",
                user_id=instance.user_id,
                server_id=instance.server_id,
                operation=action,
                extra={"container_instance_id": instance.container_instance_id},
            )
            return
        if not result.success:
            raise OrchestratorError(
                result.error_message or "Orchestrator could not stop the container",
                operation="stop",
            )
    except OrchestratorError as exc:
        record_deployment_audit(
            server_instance_id=instance.server_id,
            user_id=instance.user_id,
            action=action,
            status="error",
            error_message=exc.message,
            details={"container_instance_id": instance.container_instance_id},
            duration_ms=_elapsed_ms(started),
        )
        log_event(
            "error",
            "servers.stop_failed",
            user_id=instance.user_id,
            server_id=instance.server_id,
            operation=action,
            error_code=exc.code,
        )
        raise


def start_server(
    user_id: str,
    server_id: str,
    *,
    orchestrator: Optional[ContainerOrchestrator] = None,
    now: Optional[datetime] = None,
) -> ServerInstance:
    """
    Start a stopped (or failed) server's container again.

    The record takes whatever status the orchestrator reports; on a call
    failure it is left untouched.
    """
    at = normalize_now(now)
    instance = get_server(user_id, server_id)
    ensure_transition(instance, ServerStatus.STARTING)
    if not instance.container_instance_id:
        raise ConflictError(f"Server {server_id} has no container to start; delete and recreate it")

    started = time.perf_counter()
    try:
        result = call_orchestrator(
            "start",
            (orchestrator or get_orchestrator()).resume_container,
            instance.container_instance_id,
            user_id=user_id,
            server_id=server_id,
        )
    except OrchestratorError as exc:
        record_deployment_audit(
            server_instance_id=server_id,
            user_id=user_id,
            action="start",
            status="error",
            error_message=exc.message,
            details={"container_instance_id": instance.container_instance_id},
            duration_ms=_elapsed_ms(started),
        )
        raise

    status = map_container_status(result.status)
    changes = {"status": status, "updated_at": at}
    if status in (ServerStatus.STARTING, ServerStatus.RUNNING):
        changes["last_started_at"] = at
    updated = repository.update_server_instance(instance.model_copy(update=changes))
    if updated is None:
        raise NotFoundError(f"Server not found: {server_id}")

    record_deployment_audit(
        server_instance_id=server_id,
        user_id=user_id,
        action="start",
        status=status.value,
        error_message=result.error_message,
        details={"container_instance_id": instance.container_instance_id},
        duration_ms=_elapsed_ms(started),
    )
    log_event(
        "warning" if status == ServerStatus.FAILED else "info",
        "servers.started",
        user_id=user_id,
        server_id=server_id,
        operation="start",
        extra={"status": status.value},
    )
    return updated


def stop_server(
    user_id: str,
    server_id: str,
    *,
    orchestrator: Optional[ContainerOrchestrator] = None,
    now: Optional[datetime] = None,
) -> ServerInstance:
    """
    Stop a server. Status moves to stopped only after the orchestrator
    confirms; on any failure the record is left untouched.
    """
    at = normalize_now(now)
    instance = get_server(user_id, server_id)
    ensure_transition(instance, ServerStatus.STOPPED)

    if instance.container_instance_id:
        _stop_container(orchestrator or get_orchestrator(), instance, "stop")

    updated = repository.update_server_instance(
        instance.model_copy(update={
            "status": ServerStatus.STOPPED,
            "last_stopped_at": at,
            "updated_at": at,
        })
    )
    if updated is None:
        # Deleted concurrently between lookup and update
        raise NotFoundError(f"Server not found: {server_id}")

    record_deployment_audit(
        server_instance_id=server_id,
        user_id=user_id,
        action="stop",
        status=ServerStatus.STOPPED.value,
    )
    log_event("info", "servers.stopped", user_id=user_id, server_id=server_id, operation="stop")
    return updated


def get_server_health(
    user_id: str,
    server_id: str,
    *,
    orchestrator: Optional[ContainerOrchestrator] = None,
) -> ServerHealth:
    """Health snapshot from the orchestrator. Read-only: the record is not updated."""
    instance = get_server(user_id, server_id)

    if not instance.container_instance_id:
        return ServerHealth(
            server_id=server_id,
            is_healthy=False,
            status=instance.status,
            last_checked=normalize_now(None),
            error_message="Server has no container instance",
        )

    orch = orchestrator or get_orchestrator()
    result = call_orchestrator(
        "health",
        orch.get_container_health,
        instance.container_instance_id,
        user_id=user_id,
        server_id=server_id,
    )
    return ServerHealth(
        server_id=server_id,
        is_healthy=result.is_healthy,
        status=map_container_status(result.status),
        last_checked=normalize_now(result.checked_at),
        error_message=result.error_message,
    )


def delete_server(
    user_id: str,
    server_id: str,
    *,
    orchestrator: Optional[ContainerOrchestrator] = None,
) -> None:
    """
    Delete a server record.

    Instances the orchestrator may still be running (starting, running,
    stopping, unknown) are stopped first; if that stop fails nothing is
    deleted. Stopped and failed instances are deleted directly.
    """
    instance = get_server(user_id, server_id)

    if instance.status in LIVE_STATUSES and instance.container_instance_id:
        _stop_container(orchestrator or get_orchestrator(), instance, "delete")

    repository.delete_server_instance(server_id)
    record_deployment_audit(
        server_instance_id=server_id,
        user_id=user_id,
        action="delete",
        status="deleted",
        details={"previous_status": instance.status.value},
    )
    log_event("info", "servers.deleted", user_id=user_id, server_id=server_id, operation="delete")
