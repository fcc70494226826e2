from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class LedgerEntryRead(BaseModel):
    """One immutable audit row: who did what to which subject, and when."""

    model_config = ConfigDict(frozen=True)

    subject_type: str
    subject_id: UUID
    activity_id: UUID
    activity: str
    user_id: UUID
    user_name: str
    created_at: datetime


class TransferRecordRead(BaseModel):
    """One side of a move/copy between matters."""

    model_config = ConfigDict(frozen=True)

    direction: str
    matter_id: UUID
    document_id: UUID
    transfer_activity_id: UUID
    activity: str
    user_id: UUID
    created_at: datetime
    copied_document_id: UUID | None = None
