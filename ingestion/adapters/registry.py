"""
Provider adapter registry.

The runner builds a fresh adapter per Import pass through build_adapter so
that credentials and preferences always come from the current batch.
"""

from typing import Optional
from ingestion.base import ProviderAdapter
from ingestion.adapters.mail_adapter import MailAdapter
from ingestion.adapters.calendar_adapter import CalendarAdapter
from models.base import Provider

ADAPTERS = {
    Provider.MAIL: MailAdapter,
    Provider.CALENDAR: CalendarAdapter,
}


def build_adapter(provider: Provider, access_token: Optional[str] = None, preferences=None) -> ProviderAdapter:
    """Instantiate the adapter registered for a provider"""
    adapter_cls = ADAPTERS[Provider(provider)]
    return adapter_cls(access_token=access_token, preferences=preferences)
