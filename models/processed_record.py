from sqlalchemy import Column, String, Enum, DateTime, Text, Index, ForeignKey
from datetime import datetime
from models.base import Base, IdType, JSONType, Provider


class ProcessedRecord(Base):
    """
    Canonical, structured form of a raw item.

    Field Mapping Strategy:

    Mail message:
    - id -> provider_item_id
    - subject -> title
    - body (or snippet) -> body_text
    - date / internalDate -> occurred_at
    - from / to / cc -> participants (role = from, to, cc)
    - labelIds, threadId -> record_metadata

    Calendar event:
    - id -> provider_item_id
    - summary -> title
    - description -> body_text
    - start -> occurred_at
    - organizer / attendees -> participants (role = organizer, attendee)
    - calendarId, end, location, visibility -> record_metadata

    One-to-one with RawItem, or absent when the item was filtered out by
    the batch preferences.
    """
    __tablename__ = "processed_records"

    id = Column(IdType, primary_key=True, autoincrement=True)

    raw_item_id = Column(IdType, ForeignKey("raw_items.id"), nullable=False)
    user_id = Column(String(64), nullable=False, index=True)
    provider = Column(Enum(Provider), nullable=False)
    provider_item_id = Column(String(255), nullable=False)

    record_type = Column(String(32), nullable=False)
    title = Column(String(1000), nullable=True)
    body_text = Column(Text, nullable=True)
    occurred_at = Column(DateTime, nullable=True, index=True)

    participants = Column(JSONType, nullable=True)
    record_metadata = Column("metadata", JSONType, nullable=True)

    # Last batch that (re)wrote this record
    batch_id = Column(String(36), ForeignKey("sync_batches.batch_id"), nullable=True, index=True)

    # Downstream enrichment markers
    extracted_at = Column(DateTime, nullable=True)
    embedded_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_processed_raw_item", "raw_item_id", unique=True),
        Index("idx_processed_identity", "user_id", "provider", "provider_item_id"),
    )

    @property
    def embedding_text(self) -> str:
        """Text handed to the enrichment service."""
        parts = [self.title or "", self.body_text or ""]
        return "\n\n".join(p for p in parts if p).strip()
