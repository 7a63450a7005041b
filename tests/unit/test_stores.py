"""
Unit tests for preference and credential stores
"""

import pytest
from datetime import datetime
from pydantic import ValidationError
from conftest import USER_ID
from core.exceptions import PreferencesLockedError, PreferencesMissingError, ProviderNotConnectedError
from ingestion.stores import CredentialStore, PreferenceStore
from models.base import Provider, BatchStatus
from models.batch import SyncBatch
from models.connection import UserSyncPreferences
from schemas.preferences import CalendarPreferences, MailPreferences


class TestPreferenceStore:
    @pytest.mark.asyncio
    async def test_defaults_on_first_run(self, db_session):
        store = PreferenceStore(db_session)

        mail = await store.get_preferences(USER_ID, Provider.MAIL)
        assert isinstance(mail, MailPreferences)
        assert mail.time_range_days == 365
        assert mail.label_excludes == ["SPAM", "TRASH"]

        calendar = await store.get_preferences(USER_ID, "calendar")
        assert isinstance(calendar, CalendarPreferences)
        assert await store.is_locked(USER_ID, Provider.MAIL) is False

    @pytest.mark.asyncio
    async def test_update_and_read_back(self, db_session):
        store = PreferenceStore(db_session)

        updated = await store.update_preferences(
            USER_ID, Provider.MAIL, {"time_range_days": 30, "label_includes": "inbox, work", "unknown": 1}
        )
        assert updated.label_includes == ["INBOX", "WORK"]

        stored = await store.get_preferences(USER_ID, Provider.MAIL)
        assert stored.time_range_days == 30
        assert stored.label_includes == ["INBOX", "WORK"]

        # Second update replaces the same row
        await store.update_preferences(USER_ID, Provider.MAIL, {"time_range_days": 60})
        assert (await store.get_preferences(USER_ID, Provider.MAIL)).time_range_days == 60

    @pytest.mark.asyncio
    async def test_invalid_update_is_rejected(self, db_session):
        with pytest.raises(ValidationError):
            await PreferenceStore(db_session).update_preferences(USER_ID, Provider.MAIL, {"time_range_days": 0})

    @pytest.mark.asyncio
    async def test_locked_after_completed_batch(self, db_session):
        db_session.add(SyncBatch(
            user_id=USER_ID,
            provider=Provider.MAIL,
            status=BatchStatus.COMPLETED,
            preferences_snapshot={},
            created_at=datetime.utcnow()
        ))
        await db_session.commit()

        store = PreferenceStore(db_session)
        assert await store.is_locked(USER_ID, Provider.MAIL) is True
        assert await store.is_locked(USER_ID, Provider.CALENDAR) is False

        with pytest.raises(PreferencesLockedError):
            await store.update_preferences(USER_ID, Provider.MAIL, {"time_range_days": 30})

    @pytest.mark.asyncio
    async def test_unreadable_stored_settings(self, db_session):
        db_session.add(UserSyncPreferences(user_id=USER_ID, provider=Provider.CALENDAR, settings={"past_days": -5}))
        await db_session.commit()

        with pytest.raises(PreferencesMissingError) as exc_info:
            await PreferenceStore(db_session).get_preferences(USER_ID, Provider.CALENDAR)
        assert exc_info.value.context["provider"] == "calendar"


class TestCredentialStore:
    @pytest.mark.asyncio
    async def test_connect_and_revoke(self, db_session):
        store = CredentialStore(db_session)
        assert await store.is_connected(USER_ID, Provider.MAIL) is False

        await store.connect(USER_ID, Provider.MAIL, "token-abc", scopes=["mail.readonly"])
        assert await store.is_connected(USER_ID, Provider.MAIL) is True
        assert await store.get_scopes(USER_ID, Provider.MAIL) == ["mail.readonly"]
        assert await store.get_access_token(USER_ID, Provider.MAIL) == "token-abc"

        assert await store.revoke(USER_ID, Provider.MAIL) is True
        assert await store.is_connected(USER_ID, Provider.MAIL) is False
        assert await store.get_scopes(USER_ID, Provider.MAIL) == []
        with pytest.raises(ProviderNotConnectedError):
            await store.get_access_token(USER_ID, Provider.MAIL)

        assert await store.revoke(USER_ID, Provider.MAIL) is False

    @pytest.mark.asyncio
    async def test_reconnect_replaces_token(self, db_session):
        store = CredentialStore(db_session)
        await store.connect(USER_ID, Provider.CALENDAR, "old-token")
        await store.revoke(USER_ID, Provider.CALENDAR)
        await store.connect(USER_ID, Provider.CALENDAR, "new-token", scopes=["calendar.readonly"])

        assert await store.get_access_token(USER_ID, Provider.CALENDAR) == "new-token"
