"""
Database-backed preference and credential stores.

Both are collaborators of the sync core: the orchestrator only asks whether
a provider is usable and which preferences to freeze into a new batch.
"""

from typing import List, Optional, Dict, Any
from datetime import datetime
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_, func
from models.base import Provider, BatchStatus
from models.batch import SyncBatch
from models.connection import ProviderConnection, UserSyncPreferences
from schemas.preferences import default_preferences, parse_preferences
from core.exceptions import (
    PreferencesMissingError,
    PreferencesLockedError,
    ProviderNotConnectedError,
)
import logging

logger = logging.getLogger(__name__)


class PreferenceStore:
    """
    Per-user, per-provider sync preferences.

    Preferences are editable until the first batch for the provider
    completes; after that the time window and filters are locked so the
    watermark keeps meaning the same thing.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def _get_row(self, user_id: str, provider: Provider) -> Optional[UserSyncPreferences]:
        result = await self.db.execute(
            select(UserSyncPreferences).where(
                and_(
                    UserSyncPreferences.user_id == user_id,
                    UserSyncPreferences.provider == Provider(provider)
                )
            )
        )
        return result.scalar_one_or_none()

    async def get_preferences(self, user_id: str, provider: Provider) -> BaseModel:
        """Stored preferences, or provider defaults on first run."""
        row = await self._get_row(user_id, provider)
        if row is None:
            return default_preferences(provider)

        try:
            return parse_preferences(provider, row.settings)
        except ValidationError as e:
            raise PreferencesMissingError(
                "Stored preferences are invalid",
                context={"user_id": user_id, "provider": Provider(provider).value},
                original_exception=e
            )

    async def is_locked(self, user_id: str, provider: Provider) -> bool:
        result = await self.db.execute(
            select(func.count()).select_from(SyncBatch).where(
                and_(
                    SyncBatch.user_id == user_id,
                    SyncBatch.provider == Provider(provider),
                    SyncBatch.status == BatchStatus.COMPLETED
                )
            )
        )
        return (result.scalar() or 0) > 0

    async def update_preferences(
        self,
        user_id: str,
        provider: Provider,
        data: Dict[str, Any]
    ) -> BaseModel:
        """
        Validate and store new preferences.

        Raises:
            PreferencesLockedError: A batch for this provider already completed
            ValidationError: The payload does not fit the provider's model
        """
        if await self.is_locked(user_id, provider):
            raise PreferencesLockedError(
                "Preferences are locked after the first completed sync",
                context={"user_id": user_id, "provider": Provider(provider).value}
            )

        preferences = parse_preferences(provider, data)

        row = await self._get_row(user_id, provider)
        if row is None:
            row = UserSyncPreferences(user_id=user_id, provider=Provider(provider))
            self.db.add(row)
        row.settings = preferences.model_dump()
        row.updated_at = datetime.utcnow()

        await self.db.commit()
        logger.info(f"Updated {Provider(provider).value} preferences for user {user_id}")
        return preferences


class CredentialStore:
    """Linked provider accounts and their access tokens."""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def get_connection(self, user_id: str, provider: Provider) -> Optional[ProviderConnection]:
        """Active (non-revoked) connection, if any"""
        result = await self.db.execute(
            select(ProviderConnection).where(
                and_(
                    ProviderConnection.user_id == user_id,
                    ProviderConnection.provider == Provider(provider),
                    ProviderConnection.revoked_at.is_(None)
                )
            )
        )
        return result.scalar_one_or_none()

    async def is_connected(self, user_id: str, provider: Provider) -> bool:
        connection = await self.get_connection(user_id, provider)
        return connection is not None and bool(connection.access_token)

    async def get_scopes(self, user_id: str, provider: Provider) -> List[str]:
        connection = await self.get_connection(user_id, provider)
        return list(connection.scopes or []) if connection else []

    async def get_access_token(self, user_id: str, provider: Provider) -> str:
        connection = await self.get_connection(user_id, provider)
        if connection is None or not connection.access_token:
            raise ProviderNotConnectedError(
                "Provider is not connected",
                context={"user_id": user_id, "provider": Provider(provider).value}
            )
        return connection.access_token

    async def connect(
        self,
        user_id: str,
        provider: Provider,
        access_token: str,
        scopes: Optional[List[str]] = None
    ) -> ProviderConnection:
        """Store (or replace) the credential for a provider account."""
        result = await self.db.execute(
            select(ProviderConnection).where(
                and_(
                    ProviderConnection.user_id == user_id,
                    ProviderConnection.provider == Provider(provider)
                )
            )
        )
        connection = result.scalar_one_or_none()
        if connection is None:
            connection = ProviderConnection(user_id=user_id, provider=Provider(provider))
            self.db.add(connection)

        connection.access_token = access_token
        connection.scopes = list(scopes or [])
        connection.connected_at = datetime.utcnow()
        connection.revoked_at = None

        await self.db.commit()
        logger.info(f"Connected {Provider(provider).value} for user {user_id}")
        return connection

    async def revoke(self, user_id: str, provider: Provider) -> bool:
        connection = await self.get_connection(user_id, provider)
        if connection is None:
            return False
        connection.revoked_at = datetime.utcnow()
        await self.db.commit()
        logger.info(f"Revoked {Provider(provider).value} connection for user {user_id}")
        return True
