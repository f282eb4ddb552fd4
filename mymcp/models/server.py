"""
mymcp/models/server.py

MCP server instances and the reference data attached to them.

Lifecycle:
- stopped -> starting -> running
- running -> stopping -> stopped
- any live state -> failed (orchestrator reported a failure)
- unknown when health is indeterminate
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class ServerStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"
    UNKNOWN = "unknown"


# States in which the orchestrator may still hold resources for the instance
LIVE_STATUSES = frozenset({
    ServerStatus.STARTING,
    ServerStatus.RUNNING,
    ServerStatus.STOPPING,
    ServerStatus.UNKNOWN,
})


class TemplateCapability(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    is_required: bool = False


class McpServerTemplate(BaseModel):
    """Reference data, deduplicated by (name, version)."""
    model_config = ConfigDict(frozen=True)

    template_id: str
    name: str
    version: str
    description: Optional[str] = None
    category: str
    documentation_url: Optional[str] = None
    repository_url: Optional[str] = None
    is_official: bool = False
    capabilities: List[TemplateCapability] = Field(default_factory=list)
    default_configuration: Dict[str, Any] = Field(default_factory=dict)


class ContainerSpec(BaseModel):
    """Reference data, deduplicated by name. cpu_limit is milliCPU, memory_limit MB."""
    model_config = ConfigDict(frozen=True)

    spec_id: str
    name: str
    description: Optional[str] = None
    image_name: str
    image_tag: str
    cpu_limit: int
    memory_limit: int
    port: int
    environment: Dict[str, str] = Field(default_factory=dict)

    @property
    def image_ref(self) -> str:
        return f"{self.image_name}:{self.image_tag}"


class ServerInstance(BaseModel):
    model_config = ConfigDict(frozen=True)

    server_id: str
    user_id: str
    name: str
    description: Optional[str] = None
    template_id: str
    container_spec_id: str
    status: ServerStatus
    container_instance_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    last_started_at: Optional[datetime] = None
    last_stopped_at: Optional[datetime] = None


class CreateGitHubServerRequest(BaseModel):
    """
    Inbound create request for a GitHub-backed server.

    Kept permissive; the provisioning service performs the validation so
    that bad input surfaces as a ValidationError rather than a schema error.
    """
    name: Optional[str] = None
    description: Optional[str] = None
    github_token: Optional[str] = None
    repository: Optional[str] = None
    idempotency_key: Optional[str] = None


class UpdateServerRequest(BaseModel):
    """Rename or redescribe a server. None leaves a field as it is; an empty description clears it."""
    name: Optional[str] = None
    description: Optional[str] = None


class ServerHealth(BaseModel):
    model_config = ConfigDict(frozen=True)

    server_id: str
    is_healthy: bool
    status: ServerStatus
    last_checked: datetime
    error_message: Optional[str] = None
