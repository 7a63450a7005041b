from sqlalchemy import Column, Integer, String, Enum, DateTime, Text, Index
from datetime import datetime
from models.base import Base, JSONType, Provider


class ProviderConnection(Base):
    """
    Stored credential for a linked provider account.

    Owned by the credential store; the sync core only asks whether a
    connection is usable and which scopes were granted.
    """
    __tablename__ = "provider_connections"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(String(64), nullable=False)
    provider = Column(Enum(Provider), nullable=False)

    access_token = Column(Text, nullable=True)
    scopes = Column(JSONType, nullable=False, default=list)

    connected_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    revoked_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_connection_user_provider", "user_id", "provider", unique=True),
    )


class UserSyncPreferences(Base):
    """Per-user, per-provider sync configuration (time window, filters)."""
    __tablename__ = "user_sync_preferences"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(String(64), nullable=False)
    provider = Column(Enum(Provider), nullable=False)
    settings = Column(JSONType, nullable=False, default=dict)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_preferences_user_provider", "user_id", "provider", unique=True),
    )
