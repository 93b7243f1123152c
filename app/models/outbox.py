from sqlmodel import SQLModel, Field
from sqlalchemy import Column, String, DateTime
from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from typing import Dict, Any
from uuid import UUID, uuid4
from datetime import datetime

class OutboxEvent(SQLModel, table=True):
    """
    Append-only. Written in the same transaction as the department insert it
    describes; surfaced centrally through central.vw_pending_users.
    """
    __tablename__ = "outbox"

    event_id: UUID = Field(
        default_factory=uuid4,
        sa_column=Column(PG_UUID(as_uuid=True), primary_key=True)
    )
    event_type: str = Field(sa_column=Column(String, nullable=False, index=True))

    # e.g. {"local_user_id": 42, "email": "...", "role": "student", "department": "..."}
    payload: Dict[str, Any] = Field(default={}, sa_column=Column(JSONB, nullable=False))

    created_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
