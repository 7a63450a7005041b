from sqlalchemy import Column, String, Enum, DateTime, Integer, Index
from datetime import datetime
from models.base import Base, IdType, Provider


class ExtractedContact(Base):
    """
    Candidate contact derived from processed records by the Extract stage.

    Purely additive: rows are created or their counters bumped, never
    deleted by the pipeline.
    """
    __tablename__ = "extracted_contacts"

    id = Column(IdType, primary_key=True, autoincrement=True)

    user_id = Column(String(64), nullable=False)
    email = Column(String(320), nullable=False)
    display_name = Column(String(255), nullable=True)

    source_provider = Column(Enum(Provider), nullable=False)
    interaction_count = Column(Integer, nullable=False, default=0)

    first_seen_at = Column(DateTime, nullable=True)
    last_seen_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_contact_user_email", "user_id", "email", unique=True),
    )
