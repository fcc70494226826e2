from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# User
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    name: str = Field(min_length=1, max_length=50)


class UserRead(UserCreate):
    model_config = ConfigDict(from_attributes=True)

    id: UUID


# ---------------------------------------------------------------------------
# Matter
# ---------------------------------------------------------------------------


class MatterCreate(BaseModel):
    description: str = Field(min_length=1, max_length=128)

    @field_validator("description")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("description must not be blank")
        return value


class MatterRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    description: str
    status: str
    is_archived: bool
    is_deleted: bool
    creation_date: datetime

    @field_validator("status", mode="before")
    @classmethod
    def _status_value(cls, value):
        return getattr(value, "value", value)


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------


class DocumentCreate(BaseModel):
    file_name: str = Field(min_length=1, max_length=128)
    extension: str = Field(min_length=1, max_length=5, pattern=r"^[A-Za-z0-9]+$")
    content_ref: str | None = Field(default=None, max_length=1024)


class DocumentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    file_name: str
    extension: str
    matter_id: UUID
    content_ref: str | None = None
    is_checked_out: bool
    is_deleted: bool


# ---------------------------------------------------------------------------
# Revision
# ---------------------------------------------------------------------------


class RevisionCreate(BaseModel):
    revision_number: int | None = Field(default=None, gt=0)


class RevisionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    revision_number: int
    document_id: UUID
    creation_date: datetime
    modification_date: datetime
    is_deleted: bool
