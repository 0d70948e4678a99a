"""
Pydantic schemas for record and attachment payloads
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime

from app.models.record import RecordStatus


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


class RecordFields(BaseModel):
    """
    Scalar fields of a record as submitted on create
    """
    name: str = Field(..., min_length=1, max_length=255, description="Venue name")
    rating: int = Field(..., ge=1, le=5, description="Rating from 1 to 5")
    genre: str = Field(..., min_length=1, max_length=100, description="Genre, e.g. Yakitori")
    memo: Optional[str] = Field(None, description="Free-text memo")
    external_link_url: Optional[str] = Field(None, max_length=2048, description="Map link")
    status: RecordStatus = Field(RecordStatus.VISITED, description="VISITED or WANT_TO_GO")

    @field_validator("name", "genre")
    @classmethod
    def _strip_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("memo", "external_link_url", mode="before")
    @classmethod
    def _optional_text(cls, value):
        return _blank_to_none(value)


class RecordUpdate(BaseModel):
    """
    Scalar fields of a record as submitted on update

    Only fields that were sent are changed (see model_dump(exclude_unset=True)).
    """
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    rating: Optional[int] = Field(None, ge=1, le=5)
    genre: Optional[str] = Field(None, min_length=1, max_length=100)
    memo: Optional[str] = None
    external_link_url: Optional[str] = Field(None, max_length=2048)
    status: Optional[RecordStatus] = None

    @field_validator("name", "genre")
    @classmethod
    def _strip_required(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("memo", "external_link_url", mode="before")
    @classmethod
    def _optional_text(cls, value):
        return _blank_to_none(value)


class AttachmentOut(BaseModel):
    """
    Attachment as returned to clients
    """
    id: int
    parent_id: int
    location: str
    caption: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AttachmentFailureOut(BaseModel):
    """
    One attachment-level operation that did not succeed
    """
    phase: str
    error: str
    attachment_id: Optional[int] = None
    filename: Optional[str] = None
    key: Optional[str] = None


class RecordOut(BaseModel):
    """
    Record with its attachments, hero image first
    """
    id: int
    name: str
    rating: int
    genre: str
    memo: Optional[str] = None
    external_link_url: Optional[str] = None
    status: RecordStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    attachments: List[AttachmentOut] = Field(default_factory=list)
    attachment_failures: List[AttachmentFailureOut] = Field(default_factory=list)
