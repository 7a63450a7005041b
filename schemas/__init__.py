"""
Pydantic schemas for data validation and serialization.

This package defines Pydantic models for request/response validation
and data serialization throughout the sync pipeline:

Schemas:
    preferences: Per-provider sync preferences (mail, calendar)
    records: Canonical processed record and participant schemas
    api: Status, batch, error summary and action response schemas

Features:
    - Automatic data validation
    - Type coercion and conversion
    - JSON serialization/deserialization
    - OpenAPI schema generation for FastAPI

Usage:
    from schemas.preferences import MailPreferences, parse_preferences
    from schemas.records import ProcessedRecordCreate
    from schemas.api import StatusView, BatchView

Example:
    prefs = parse_preferences(Provider.MAIL, {"label_excludes": "spam, promotions"})
    assert prefs.label_excludes == ["SPAM", "PROMOTIONS"]

Validation:
    - Preference bounds (time windows) are enforced by Field constraints
    - Participants must carry a well-formed email address
    - Records without a timestamp or identity fail validation and are
      reported as malformed items
"""

__all__ = [
    "MailPreferences",
    "CalendarPreferences",
    "ProcessedRecordCreate",
    "Participant",
    "StatusView",
    "BatchView",
    "ErrorSummary",
]
