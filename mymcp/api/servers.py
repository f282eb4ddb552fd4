"""
MCP server API routes.

- POST   /api/v1/mcp-servers/github        provision a GitHub server (201)
- GET    /api/v1/mcp-servers               list own servers, newest first
- GET    /api/v1/mcp-servers/{id}          get one server
- PUT    /api/v1/mcp-servers/{id}          rename or redescribe
- POST   /api/v1/mcp-servers/{id}/start    start a stopped server
- POST   /api/v1/mcp-servers/{id}/stop     stop a server
- DELETE /api/v1/mcp-servers/{id}          delete (stops live servers first)
- GET    /api/v1/mcp-servers/{id}/health   orchestrator health snapshot

Errors use the AppError envelope (see core/errors.py).
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Response, status
from pydantic import BaseModel

from mymcp.core.auth import get_current_user
from mymcp.features.servers import provisioning
from mymcp.features.servers.orchestrator import ContainerOrchestrator, get_orchestrator
from mymcp.models.server import CreateGitHubServerRequest, ServerHealth, ServerInstance, UpdateServerRequest
from mymcp.models.user import User


router = APIRouter(prefix="/api/v1/mcp-servers", tags=["mcp-servers"])


class ServerInstanceResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    status: str
    container_instance_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    last_started_at: Optional[datetime] = None
    last_stopped_at: Optional[datetime] = None


class ServerHealthResponse(BaseModel):
    server_id: str
    is_healthy: bool
    status: str
    last_checked: datetime
    error_message: Optional[str] = None


def _to_response(instance: ServerInstance) -> ServerInstanceResponse:
    return ServerInstanceResponse(
        id=instance.server_id,
        name=instance.name,
        description=instance.description,
        status=instance.status.value,
        container_instance_id=instance.container_instance_id,
        created_at=instance.created_at,
        updated_at=instance.updated_at,
        last_started_at=instance.last_started_at,
        last_stopped_at=instance.last_stopped_at,
    )


def _health_response(health: ServerHealth) -> ServerHealthResponse:
    return ServerHealthResponse(
        server_id=health.server_id,
        is_healthy=health.is_healthy,
        status=health.status.value,
        last_checked=health.last_checked,
        error_message=health.error_message,
    )


@router.post("/github", response_model=ServerInstanceResponse, status_code=status.HTTP_201_CREATED)
def create_github_server(
    body: CreateGitHubServerRequest,
    response: Response,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    user: User = Depends(get_current_user),
    orchestrator: ContainerOrchestrator = Depends(get_orchestrator),
):
    """
    Provision a GitHub MCP server.

    An Idempotency-Key header (or idempotency_key body field) makes retries
    return the original server instead of provisioning a second one.
    """
    if idempotency_key and not body.idempotency_key:
        body = body.model_copy(update={"idempotency_key": idempotency_key})
    instance = provisioning.provision_github_server(user.user_id, body, orchestrator=orchestrator)
    response.headers["Location"] = f"{router.prefix}/{instance.server_id}"
    return _to_response(instance)


@router.get("", response_model=List[ServerInstanceResponse])
def list_servers(user: User = Depends(get_current_user)):
    return [_to_response(i) for i in provisioning.list_servers(user.user_id)]


@router.get("/{server_id}", response_model=ServerInstanceResponse)
def get_server(server_id: str, user: User = Depends(get_current_user)):
    return _to_response(provisioning.get_server(user.user_id, server_id))


@router.put("/{server_id}", response_model=ServerInstanceResponse)
def update_server(server_id: str, body: UpdateServerRequest, user: User = Depends(get_current_user)):
    return _to_response(provisioning.update_server(user.user_id, server_id, body))


@router.post("/{server_id}/start", response_model=ServerInstanceResponse)
def start_server(
    server_id: str,
    user: User = Depends(get_current_user),
    orchestrator: ContainerOrchestrator = Depends(get_orchestrator),
):
    instance = provisioning.start_server(user.user_id, server_id, orchestrator=orchestrator)
    return _to_response(instance)


@router.post("/{server_id}/stop", response_model=ServerInstanceResponse)
def stop_server(
    server_id: str,
    user: User = Depends(get_current_user),
    orchestrator: ContainerOrchestrator = Depends(get_orchestrator),
):
    instance = provisioning.stop_server(user.user_id, server_id, orchestrator=orchestrator)
    return _to_response(instance)


@router.delete("/{server_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_server(
    server_id: str,
    user: User = Depends(get_current_user),
    orchestrator: ContainerOrchestrator = Depends(get_orchestrator),
):
    provisioning.delete_server(user.user_id, server_id, orchestrator=orchestrator)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{server_id}/health", response_model=ServerHealthResponse)
def get_server_health(
    server_id: str,
    user: User = Depends(get_current_user),
    orchestrator: ContainerOrchestrator = Depends(get_orchestrator),
):
    return _health_response(
        provisioning.get_server_health(user.user_id, server_id, orchestrator=orchestrator)
    )
