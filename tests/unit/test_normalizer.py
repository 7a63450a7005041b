"""
Unit tests for the record normalizer
"""

import pytest
from datetime import datetime, timedelta
from core.exceptions import MalformedItemError
from ingestion.transformers.normalizer import RecordNormalizer
from models.base import Provider
from models.raw_item import RawItem


def raw(payload, provider=Provider.MAIL, item_id="item_1", occurred_at=None):
    return RawItem(
        id=7,
        user_id="user_123",
        provider=provider,
        provider_item_id=item_id,
        payload=payload,
        occurred_at=occurred_at
    )


@pytest.fixture
def mail_payload():
    return {
        "id": "msg_1",
        "threadId": "thread_9",
        "subject": "  Quarterly review  ",
        "snippet": "Short preview",
        "body": "Full message body",
        "from": "Alice Example <Alice@Example.com>",
        "to": ["Bob <bob@example.com>", "not-an-address"],
        "cc": "carol@example.com, dave@example.com",
        "labelIds": ["INBOX", "IMPORTANT"],
        "internalDate": "1705312800000",
    }


def event_payload(**overrides):
    start = datetime.utcnow() + timedelta(days=2)
    payload = {
        "id": "evt_1",
        "summary": "Planning",
        "description": "Agenda attached",
        "status": "confirmed",
        "calendarId": "primary",
        "start": {"dateTime": start.isoformat() + "Z"},
        "end": {"dateTime": (start + timedelta(hours=1)).isoformat() + "Z"},
        "location": "Room 4",
        "organizer": {"email": "owner@example.com", "displayName": "Owner", "self": True},
        "attendees": [
            {"email": "guest@example.com", "displayName": "Guest"},
            {"email": "room-4@resource.example.com", "resource": True},
        ],
    }
    payload.update(overrides)
    return payload


class TestMailNormalization:
    def test_maps_message_fields(self, mail_payload):
        record = RecordNormalizer(Provider.MAIL).normalize(raw(mail_payload))

        assert record.record_type == "email"
        assert record.raw_item_id == 7
        assert record.provider_item_id == "item_1"
        assert record.title == "Quarterly review"
        assert record.body_text == "Full message body"
        assert record.occurred_at == datetime(2024, 1, 15, 10, 0, 0)
        assert record.record_metadata == {"thread_id": "thread_9", "labels": ["INBOX", "IMPORTANT"]}

        roles = [(p.role, p.email) for p in record.participants]
        assert roles == [
            ("from", "alice@example.com"),
            ("to", "bob@example.com"),
            ("cc", "carol@example.com"),
            ("cc", "dave@example.com"),
        ]
        assert record.participants[0].name == "Alice Example"

    def test_snippet_only_when_body_excluded(self, mail_payload):
        normalizer = RecordNormalizer(Provider.MAIL, {"include_body": False})
        assert normalizer.normalize(raw(mail_payload)).body_text == "Short preview"

    def test_excluded_label_is_filtered(self, mail_payload):
        mail_payload["labelIds"] = ["SPAM"]
        assert RecordNormalizer(Provider.MAIL).normalize(raw(mail_payload)) is None

    def test_label_includes_keep_only_matching(self, mail_payload):
        normalizer = RecordNormalizer(Provider.MAIL, {"label_includes": "important"})
        assert normalizer.normalize(raw(mail_payload)) is not None

        mail_payload["labelIds"] = ["INBOX"]
        assert normalizer.normalize(raw(mail_payload)) is None

    def test_missing_sender_is_malformed(self, mail_payload):
        del mail_payload["from"]

        with pytest.raises(MalformedItemError) as exc_info:
            RecordNormalizer(Provider.MAIL).normalize(raw(mail_payload))

        assert exc_info.value.reason_code == "item_level"
        assert exc_info.value.context["provider_item_id"] == "item_1"
        assert "from" in exc_info.value.context["field_errors"]

    def test_date_falls_back_to_raw_item(self, mail_payload):
        del mail_payload["internalDate"]
        occurred = datetime(2024, 2, 1, 8, 30)

        record = RecordNormalizer(Provider.MAIL).normalize(raw(mail_payload, occurred_at=occurred))
        assert record.occurred_at == occurred

    def test_missing_date_is_malformed(self, mail_payload):
        del mail_payload["internalDate"]
        with pytest.raises(MalformedItemError):
            RecordNormalizer(Provider.MAIL).normalize(raw(mail_payload))

    def test_non_object_payload_is_malformed(self):
        with pytest.raises(MalformedItemError):
            RecordNormalizer(Provider.MAIL).normalize(raw(["not", "a", "dict"]))


class TestCalendarNormalization:
    def test_maps_event_fields(self):
        record = RecordNormalizer(Provider.CALENDAR).normalize(raw(event_payload(), Provider.CALENDAR))

        assert record.record_type == "event"
        assert record.title == "Planning"
        assert record.body_text == "Agenda attached"
        assert record.record_metadata["calendar_id"] == "primary"
        assert record.record_metadata["location"] == "Room 4"
        assert record.record_metadata["visibility"] == "default"
        # Resource attendees (rooms) are not people
        assert [(p.role, p.email) for p in record.participants] == [
            ("organizer", "owner@example.com"),
            ("attendee", "guest@example.com"),
        ]

    def test_all_day_event(self):
        date = (datetime.utcnow() + timedelta(days=1)).date().isoformat()
        payload = event_payload(start={"date": date}, end={"date": date})

        record = RecordNormalizer(Provider.CALENDAR).normalize(raw(payload, Provider.CALENDAR))
        assert record.occurred_at.date().isoformat() == date

    @pytest.mark.parametrize("overrides", [
        {"status": "cancelled"},
        {"visibility": "private"},
        {"calendarId": "holidays"},
        {"start": {"dateTime": (datetime.utcnow() + timedelta(days=200)).isoformat()}},
        {"start": {"dateTime": (datetime.utcnow() - timedelta(days=400)).isoformat()}},
    ])
    def test_preference_filters(self, overrides):
        normalizer = RecordNormalizer(Provider.CALENDAR, {"selected_calendar_ids": ["primary"]})
        assert normalizer.normalize(raw(event_payload(**overrides), Provider.CALENDAR)) is None

    def test_private_events_kept_when_allowed(self):
        normalizer = RecordNormalizer(Provider.CALENDAR, {"include_private": True})
        payload = event_payload(visibility="private")
        assert normalizer.normalize(raw(payload, Provider.CALENDAR)) is not None

    def test_organizer_self_filter(self):
        normalizer = RecordNormalizer(Provider.CALENDAR, {"include_organizer_self": False})
        assert normalizer.normalize(raw(event_payload(), Provider.CALENDAR)) is None

        payload = event_payload(organizer={"email": "boss@example.com"})
        assert normalizer.normalize(raw(payload, Provider.CALENDAR)) is not None

    def test_missing_start_is_malformed(self):
        payload = event_payload(start={})
        with pytest.raises(MalformedItemError) as exc_info:
            RecordNormalizer(Provider.CALENDAR).normalize(raw(payload, Provider.CALENDAR))
        assert "start" in exc_info.value.context["field_errors"]
