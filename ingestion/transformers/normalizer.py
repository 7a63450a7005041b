"""
Transform raw provider items into canonical records with Pydantic validation
"""

from typing import Dict, Any, Optional, List
from datetime import datetime, timedelta
from email.utils import parseaddr
from pydantic import BaseModel, ValidationError
from schemas.records import ProcessedRecordCreate, Participant
from schemas.preferences import parse_preferences
from ingestion.base import parse_timestamp
from models.base import Provider
from models.raw_item import RawItem
from core.exceptions import MalformedItemError
import logging

logger = logging.getLogger(__name__)


class RecordNormalizer:
    """
    Normalize provider items into the canonical record schema.

    Handles:
    - Field mapping per provider
    - Preference filters (labels, calendars, privacy, time window)
    - Participant parsing
    - Validation

    normalize() returns None for items the batch preferences filter out and
    raises MalformedItemError for items that cannot be mapped at all.
    """

    def __init__(self, provider: Provider, preferences: Optional[Any] = None):
        self.provider = Provider(provider)
        if preferences is None or isinstance(preferences, dict):
            preferences = parse_preferences(self.provider, preferences or {})
        self.preferences: BaseModel = preferences

    def normalize(self, raw_item: RawItem) -> Optional[ProcessedRecordCreate]:
        payload = raw_item.payload
        if not isinstance(payload, dict):
            raise MalformedItemError(
                "Payload is not an object",
                context={"provider": self.provider.value, "provider_item_id": raw_item.provider_item_id}
            )

        if self.provider == Provider.MAIL:
            return self._normalize_mail(payload, raw_item)
        elif self.provider == Provider.CALENDAR:
            return self._normalize_event(payload, raw_item)
        else:
            raise ValueError(f"Unknown provider: {self.provider}")

    # ------------------------------------------------------------------
    # Mail
    # ------------------------------------------------------------------

    def _mail_filtered(self, payload: Dict[str, Any]) -> bool:
        labels = {str(label).upper() for label in payload.get("labelIds") or []}
        if labels & set(self.preferences.label_excludes):
            return True
        if self.preferences.label_includes and not labels & set(self.preferences.label_includes):
            return True
        return False

    def _normalize_mail(self, payload: Dict[str, Any], raw_item: RawItem) -> Optional[ProcessedRecordCreate]:
        if self._mail_filtered(payload):
            logger.debug(f"Mail item {raw_item.provider_item_id} filtered by label preferences")
            return None

        occurred_at = (
            parse_timestamp(payload.get("internalDate"))
            or parse_timestamp(payload.get("date"))
            or raw_item.occurred_at
        )
        if occurred_at is None:
            raise self._malformed(raw_item, "Message has no date", {"date": "missing"})

        sender = self._parse_participant(payload.get("from"), "from")
        if sender is None:
            raise self._malformed(raw_item, "Message has no valid sender", {"from": payload.get("from")})

        participants = [sender]
        for role in ("to", "cc"):
            for value in self._as_list(payload.get(role)):
                participant = self._parse_participant(value, role)
                if participant is not None:
                    participants.append(participant)

        if self.preferences.include_body:
            body_text = payload.get("body") or payload.get("snippet")
        else:
            body_text = payload.get("snippet")

        return self._build(
            raw_item,
            record_type="email",
            title=payload.get("subject"),
            body_text=body_text,
            occurred_at=occurred_at,
            participants=participants,
            record_metadata={
                "thread_id": payload.get("threadId"),
                "labels": payload.get("labelIds") or [],
            },
        )

    # ------------------------------------------------------------------
    # Calendar
    # ------------------------------------------------------------------

    def _event_filtered(self, payload: Dict[str, Any], starts_at: datetime) -> bool:
        prefs = self.preferences

        if payload.get("status") == "cancelled":
            return True
        if prefs.selected_calendar_ids and payload.get("calendarId") not in prefs.selected_calendar_ids:
            return True
        if not prefs.include_private and payload.get("visibility") in ("private", "confidential"):
            return True

        organizer = payload.get("organizer") or {}
        if not prefs.include_organizer_self and isinstance(organizer, dict) and organizer.get("self"):
            return True

        now = datetime.utcnow()
        if starts_at < now - timedelta(days=prefs.past_days) or starts_at > now + timedelta(days=prefs.future_days):
            return True
        return False

    def _normalize_event(self, payload: Dict[str, Any], raw_item: RawItem) -> Optional[ProcessedRecordCreate]:
        start = payload.get("start") or {}
        if isinstance(start, dict):
            starts_at = parse_timestamp(start.get("dateTime") or start.get("date"))
        else:
            starts_at = parse_timestamp(start)
        if starts_at is None:
            raise self._malformed(raw_item, "Event has no valid start", {"start": payload.get("start")})

        if self._event_filtered(payload, starts_at):
            logger.debug(f"Calendar item {raw_item.provider_item_id} filtered by preferences")
            return None

        participants: List[Participant] = []
        organizer = payload.get("organizer")
        if isinstance(organizer, dict):
            participant = self._parse_participant(
                {"email": organizer.get("email"), "name": organizer.get("displayName")}, "organizer"
            )
            if participant is not None:
                participants.append(participant)

        for attendee in self._as_list(payload.get("attendees")):
            if not isinstance(attendee, dict) or attendee.get("resource"):
                continue
            participant = self._parse_participant(
                {"email": attendee.get("email"), "name": attendee.get("displayName")}, "attendee"
            )
            if participant is not None:
                participants.append(participant)

        end = payload.get("end") or {}
        return self._build(
            raw_item,
            record_type="event",
            title=payload.get("summary"),
            body_text=payload.get("description"),
            occurred_at=starts_at,
            participants=participants,
            record_metadata={
                "calendar_id": payload.get("calendarId"),
                "end": end.get("dateTime") or end.get("date") if isinstance(end, dict) else end,
                "location": payload.get("location"),
                "visibility": payload.get("visibility", "default"),
            },
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _build(self, raw_item: RawItem, **fields) -> ProcessedRecordCreate:
        try:
            return ProcessedRecordCreate(
                provider=self.provider,
                provider_item_id=raw_item.provider_item_id,
                raw_item_id=raw_item.id,
                user_id=raw_item.user_id,
                **fields
            )
        except ValidationError as e:
            raise self._malformed(
                raw_item,
                "Record failed validation",
                {".".join(str(p) for p in err["loc"]): err["msg"] for err in e.errors()},
                original_exception=e
            )

    def _malformed(self, raw_item: RawItem, message: str, field_errors: Dict[str, Any], original_exception=None):
        return MalformedItemError(
            message,
            context={
                "provider": self.provider.value,
                "provider_item_id": raw_item.provider_item_id,
                "field_errors": field_errors,
            },
            original_exception=original_exception
        )

    @staticmethod
    def _as_list(value: Any) -> List[Any]:
        if value is None:
            return []
        if isinstance(value, list):
            return value
        if isinstance(value, str):
            return [part for part in value.split(",") if part.strip()]
        return [value]

    @staticmethod
    def _parse_participant(value: Any, role: str) -> Optional[Participant]:
        """Parse "Name <email>" strings or {email, name} objects; None when invalid."""
        if isinstance(value, dict):
            name, email = value.get("name"), value.get("email")
        elif isinstance(value, str):
            name, email = parseaddr(value)
        else:
            return None

        if not email:
            return None
        try:
            return Participant(email=email, name=name or None, role=role)
        except ValidationError:
            return None
