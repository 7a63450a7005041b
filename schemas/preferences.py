"""
Pydantic schemas for per-provider sync preferences
"""

from pydantic import BaseModel, Field, validator
from typing import List
from models.base import Provider


class MailPreferences(BaseModel):
    """
    Mail sync configuration.

    - time_range_days: how far back the first (full) sync reaches
    - label_includes: only keep messages carrying one of these labels
      (empty = all)
    - label_excludes: drop messages carrying any of these labels
    - include_body: keep the message body; when False only the snippet is
      stored on the processed record
    """
    time_range_days: int = Field(default=365, ge=1, le=730)
    label_includes: List[str] = Field(default_factory=list)
    label_excludes: List[str] = Field(default_factory=lambda: ["SPAM", "TRASH"])
    include_body: bool = True

    @validator("label_includes", "label_excludes", pre=True)
    def clean_labels(cls, v):
        """Accept comma-separated strings and normalize case"""
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(",")
        return [str(label).strip().upper() for label in v if str(label).strip()]

    class Config:
        extra = "ignore"


class CalendarPreferences(BaseModel):
    """
    Calendar sync configuration.

    - past_days / future_days: event window around the sync time
    - selected_calendar_ids: calendars to keep (empty = all)
    - include_private: keep events marked private
    - include_organizer_self: keep events the user organizes
    """
    past_days: int = Field(default=365, ge=0, le=730)
    future_days: int = Field(default=90, ge=0, le=365)
    selected_calendar_ids: List[str] = Field(default_factory=list)
    include_private: bool = False
    include_organizer_self: bool = True

    @validator("selected_calendar_ids", pre=True)
    def clean_calendar_ids(cls, v):
        if v is None:
            return []
        return [str(calendar_id).strip() for calendar_id in v if str(calendar_id).strip()]

    class Config:
        extra = "ignore"


PREFERENCE_MODELS = {
    Provider.MAIL: MailPreferences,
    Provider.CALENDAR: CalendarPreferences,
}


def default_preferences(provider: Provider) -> BaseModel:
    return PREFERENCE_MODELS[Provider(provider)]()


def parse_preferences(provider: Provider, data: dict) -> BaseModel:
    """Validate a stored or snapshotted settings dict for the provider."""
    return PREFERENCE_MODELS[Provider(provider)](**(data or {}))
