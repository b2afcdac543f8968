"""Shared Pydantic data models for agent-gateway."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

# --- Enums ---


class AuditEventType(str, Enum):
    WEBHOOK_RECEIVED = "webhook_received"
    AUTH_FAILURE = "auth_failure"
    EVENT_DROPPED = "event_dropped"
    DISPATCH = "dispatch"
    CREDENTIAL_STORED = "credential_stored"
    INTEGRITY_FAILURE = "integrity_failure"
    ADMIN_AUTH_FAILURE = "admin_auth_failure"


class RiskLevel(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


# --- Audit Models ---


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


class AuditEvent(BaseModel):
    timestamp: str = Field(default_factory=now_iso)
    event_type: AuditEventType
    source_ip: str | None = None
    project_id: str | None = None
    action: str
    result: str  # "success" | "failure" | "ignored"
    risk_level: RiskLevel
    details: dict[str, object] | None = None
