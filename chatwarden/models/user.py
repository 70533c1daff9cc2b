"""
Actor and warning data models.
Tracks actor standing used for escalation.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field
from uuid import UUID, uuid4

from chatwarden.models.content import utcnow
from chatwarden.models.enums import Severity


class Actor(BaseModel):
    """
    Any identity whose behavior is evaluated.
    Created on first observed event, never deleted by the engine.
    """
    actor_id: str
    account_created_at: Optional[datetime] = None
    first_seen_at: datetime = Field(default_factory=utcnow)
    verified: bool = False
    average_risk_score: float = Field(ge=0.0, le=100.0, default=0.0)
    total_warnings: int = 0


class WarningRecord(BaseModel):
    """An open warning against an actor within one tenant."""
    id: UUID = Field(default_factory=uuid4)
    tenant_id: str
    actor_id: str
    reason: str
    severity: Severity = Severity.MEDIUM
    issued_by: Optional[str] = None  # None when issued by the engine
    created_at: datetime = Field(default_factory=utcnow)
