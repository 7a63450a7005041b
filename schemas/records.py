"""
Pydantic schemas for processed records with validation
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import Provider


class Participant(BaseModel):
    """A person taking part in a message or event"""
    email: str = Field(..., min_length=3, max_length=320)
    name: Optional[str] = Field(None, max_length=255)
    role: str = Field(..., max_length=32)

    @validator("email")
    def clean_email(cls, v):
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError(f"Not an email address: {v}")
        return v


class ProcessedRecordCreate(BaseModel):
    """
    Schema for creating processed records with validation.

    Ensures:
    - Required identity fields are present
    - Timestamps are parsed
    - Participants are well-formed email addresses
    """

    # Identity (required)
    provider: Provider
    provider_item_id: str = Field(..., min_length=1, max_length=255)
    raw_item_id: int
    user_id: str = Field(..., min_length=1, max_length=64)

    # Canonical content
    record_type: str = Field(..., min_length=1, max_length=32)
    title: Optional[str] = Field(None, max_length=1000)
    body_text: Optional[str] = None
    occurred_at: datetime

    participants: List[Participant] = Field(default_factory=list)
    record_metadata: Dict[str, Any] = Field(default_factory=dict)

    @validator("title", pre=True)
    def clean_title(cls, v):
        """Strip whitespace; an empty title becomes None"""
        if v is None:
            return None
        v = str(v).strip()
        return v[:1000] or None

    @validator("record_metadata", pre=True)
    def clean_metadata(cls, v):
        if not isinstance(v, dict):
            return {}
        return v
