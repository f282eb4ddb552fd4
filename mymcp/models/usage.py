"""
mymcp/models/usage.py

Monthly usage counter and billable request log entries.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field

from mymcp.core.clock import normalize_now
from mymcp.core.errors import ValidationError


class UserUsage(BaseModel):
    """
    One row per (user, year, month), tied to the subscription active when
    the row was created.

    The persisted counter is only ever moved by an atomic UPDATE in
    features/usage/service.py; increment_request_count mirrors that on a
    loaded snapshot.
    """

    usage_id: str
    user_id: str
    subscription_id: str
    year: int
    month: int
    request_count: int = Field(default=0, ge=0)
    last_updated: datetime

    def increment_request_count(self, now: Optional[datetime] = None, weight: int = 1) -> None:
        if weight < 1:
            raise ValidationError("weight must be positive")
        at = normalize_now(now)
        self.request_count += weight
        if at > self.last_updated:
            self.last_updated = at

    def has_exceeded_limit(self, limit: int) -> bool:
        return self.request_count >= limit


class RequestLog(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    usage_id: str
    server_instance_id: Optional[str] = None
    endpoint: str
    method: str
    response_code: int
    response_time_ms: int = 0
    weight: int = 1
    request_timestamp: datetime
