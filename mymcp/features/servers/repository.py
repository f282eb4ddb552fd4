"""
Server instance persistence and reference-data registration.

Plain CRUD: lookups return None (or an empty list) when nothing matches,
and no function here makes a business decision.
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, insert, update, delete, func
from sqlalchemy.exc import IntegrityError

from mymcp.core.clock import ensure_utc, normalize_now
from mymcp.core.database import (
    get_db_session,
    server_instances,
    mcp_server_templates,
    container_specs,
)
from mymcp.models.server import (
    ContainerSpec,
    McpServerTemplate,
    ServerInstance,
    ServerStatus,
    TemplateCapability,
)


logger = logging.getLogger("mymcp")


def _row_to_instance(row) -> ServerInstance:
    return ServerInstance(
        server_id=row.server_id,
        user_id=row.user_id,
        name=row.name,
        description=row.description,
        template_id=row.template_id,
        container_spec_id=row.container_spec_id,
        status=ServerStatus(row.status),
        container_instance_id=row.container_instance_id,
        idempotency_key=row.idempotency_key,
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
        last_started_at=ensure_utc(row.last_started_at),
        last_stopped_at=ensure_utc(row.last_stopped_at),
    )


def _row_to_template(row) -> McpServerTemplate:
    return McpServerTemplate(
        template_id=row.template_id,
        name=row.name,
        version=row.version,
        description=row.description,
        category=row.category,
        documentation_url=row.documentation_url,
        repository_url=row.repository_url,
        is_official=bool(row.is_official),
        capabilities=[TemplateCapability(**c) for c in (row.capabilities or [])],
        default_configuration=row.default_configuration or {},
    )


def _row_to_spec(row) -> ContainerSpec:
    return ContainerSpec(
        spec_id=row.spec_id,
        name=row.name,
        description=row.description,
        image_name=row.image_name,
        image_tag=row.image_tag,
        cpu_limit=row.cpu_limit,
        memory_limit=row.memory_limit,
        port=row.port,
        environment=row.environment or {},
    )


# Server instances

def create_server_instance(instance: ServerInstance) -> ServerInstance:
    """Insert a new instance. IntegrityError propagates (idempotency key races)."""
    values = instance.model_dump(mode="python")
    values["status"] = instance.status.value
    with get_db_session() as session:
        session.execute(insert(server_instances).values(**values))
    return get_server_instance(instance.server_id)


def get_server_instance(server_id: str) -> Optional[ServerInstance]:
    with get_db_session() as session:
        row = session.execute(
            select(server_instances).where(server_instances.c.server_id == server_id)
        ).first()
        if not row:
            return None
        return _row_to_instance(row)


def get_user_server_instances(user_id: str) -> List[ServerInstance]:
    """All instances owned by a user, newest first."""
    with get_db_session() as session:
        rows = session.execute(
            select(server_instances)
            .where(server_instances.c.user_id == user_id)
            .order_by(server_instances.c.created_at.desc(), server_instances.c.server_id)
        ).fetchall()
        return [_row_to_instance(row) for row in rows]


def get_by_idempotency_key(user_id: str, idempotency_key: str) -> Optional[ServerInstance]:
    with get_db_session() as session:
        row = session.execute(
            select(server_instances)
            .where(server_instances.c.user_id == user_id)
            .where(server_instances.c.idempotency_key == idempotency_key)
        ).first()
        if not row:
            return None
        return _row_to_instance(row)


def count_user_server_instances(user_id: str) -> int:
    """Every persisted instance counts against the plan, whatever its status."""
    with get_db_session() as session:
        return session.execute(
            select(func.count()).select_from(server_instances).where(server_instances.c.user_id == user_id)
        ).scalar_one()


def update_server_instance(instance: ServerInstance) -> Optional[ServerInstance]:
    values = instance.model_dump(mode="python", exclude={"server_id", "user_id", "created_at"})
    values["status"] = instance.status.value
    with get_db_session() as session:
        result = session.execute(
            update(server_instances)
            .where(server_instances.c.server_id == instance.server_id)
            .values(**values)
        )
        if result.rowcount == 0:
            return None
    return get_server_instance(instance.server_id)


def delete_server_instance(server_id: str) -> bool:
    with get_db_session() as session:
        result = session.execute(
            delete(server_instances).where(server_instances.c.server_id == server_id)
        )
        return result.rowcount > 0


# Reference data (get-or-insert by natural key)

def get_template(name: str, version: str) -> Optional[McpServerTemplate]:
    with get_db_session() as session:
        row = session.execute(
            select(mcp_server_templates)
            .where(mcp_server_templates.c.name == name)
            .where(mcp_server_templates.c.version == version)
        ).first()
        if not row:
            return None
        return _row_to_template(row)


def get_or_create_template(values: dict, now: Optional[datetime] = None) -> McpServerTemplate:
    """Register a template once per (name, version); racing inserts re-read the winner."""
    existing = get_template(values["name"], values["version"])
    if existing:
        return existing

    at = normalize_now(now)
    try:
        with get_db_session() as session:
            session.execute(
                insert(mcp_server_templates).values(
                    template_id=str(uuid.uuid4()),
                    created_at=at,
                    updated_at=at,
                    **values,
                )
            )
    except IntegrityError:
        logger.debug(f"[servers] template {values['name']} {values['version']} registered concurrently")
    return get_template(values["name"], values["version"])


def get_container_spec(name: str) -> Optional[ContainerSpec]:
    with get_db_session() as session:
        row = session.execute(
            select(container_specs).where(container_specs.c.name == name)
        ).first()
        if not row:
            return None
        return _row_to_spec(row)


def get_or_create_container_spec(values: dict, now: Optional[datetime] = None) -> ContainerSpec:
    existing = get_container_spec(values["name"])
    if existing:
        return existing

    at = normalize_now(now)
    try:
        with get_db_session() as session:
            session.execute(
                insert(container_specs).values(
                    spec_id=str(uuid.uuid4()),
                    created_at=at,
                    updated_at=at,
                    **values,
                )
            )
    except IntegrityError:
        logger.debug(f"[servers] container spec {values['name']} registered concurrently")
    return get_container_spec(values["name"])
