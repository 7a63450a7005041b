"""
Extract stage: derive candidate contacts from processed records.
"""

import re
from typing import Dict, Optional
from datetime import datetime
from sqlalchemy import select, and_
from models.base import JobKind
from models.contact import ExtractedContact
from models.processed_record import ProcessedRecord
from ingestion.stages.stage import ProcessedRecordStage
from core.exceptions import MalformedItemError
import logging

logger = logging.getLogger(__name__)

# Local parts of automated senders that never become contacts
AUTOMATED_SENDER = re.compile(
    r"^(no-?reply|do-?not-?reply|mailer-daemon|postmaster|bounces?|notifications?|calendar-notification)([+._-].*)?$",
    re.IGNORECASE,
)


def is_automated_address(email: str) -> bool:
    local_part = email.split("@", 1)[0]
    return bool(AUTOMATED_SENDER.match(local_part))


class ExtractStage(ProcessedRecordStage):
    """
    Turn record participants into ExtractedContact rows.

    Purely additive: contacts are created or their counters bumped. A record
    is counted once; records already extracted (unchanged re-deliveries)
    are skipped.
    """

    kind = JobKind.EXTRACT

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        # Contacts touched during this pass, so repeated emails in one page
        # hit the same pending row
        self._contacts: Dict[str, ExtractedContact] = {}

    async def process_unit(self, unit: ProcessedRecord):
        if unit.extracted_at is not None:
            return

        participants = unit.participants or []
        if not isinstance(participants, list):
            raise MalformedItemError(
                "Participants are not a list",
                context={"provider_item_id": unit.provider_item_id}
            )

        for participant in participants:
            if not isinstance(participant, dict) or not participant.get("email"):
                raise MalformedItemError(
                    "Participant without email",
                    context={"provider_item_id": unit.provider_item_id, "participant": str(participant)[:200]}
                )

        for participant in participants:
            email = str(participant["email"]).strip().lower()
            if is_automated_address(email):
                continue
            await self._touch_contact(unit, email, participant.get("name"))

        unit.extracted_at = datetime.utcnow()

    async def _touch_contact(self, record: ProcessedRecord, email: str, name: Optional[str]):
        contact = self._contacts.get(email)
        if contact is None:
            result = await self.db.execute(
                select(ExtractedContact).where(
                    and_(ExtractedContact.user_id == record.user_id, ExtractedContact.email == email)
                )
            )
            contact = result.scalar_one_or_none()

        seen_at = record.occurred_at
        if contact is None:
            contact = ExtractedContact(
                user_id=record.user_id,
                email=email,
                display_name=name,
                source_provider=record.provider,
                interaction_count=0,
                first_seen_at=seen_at,
                last_seen_at=seen_at,
                created_at=datetime.utcnow()
            )
            self.db.add(contact)

        contact.interaction_count = (contact.interaction_count or 0) + 1
        if name and not contact.display_name:
            contact.display_name = name
        if seen_at is not None:
            if contact.first_seen_at is None or seen_at < contact.first_seen_at:
                contact.first_seen_at = seen_at
            if contact.last_seen_at is None or seen_at > contact.last_seen_at:
                contact.last_seen_at = seen_at
        contact.updated_at = datetime.utcnow()

        self._contacts[email] = contact
