"""
Per-provider sync preferences
"""

from fastapi import APIRouter, Depends, Body, HTTPException
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict, Any
from api.dependencies import get_db, get_current_user_id
from ingestion.stores import PreferenceStore
from models.base import Provider
from schemas.api import PreferencesResponse
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/preferences", tags=["Preferences"])


@router.get("/{provider}", response_model=PreferencesResponse)
async def get_preferences(
    provider: Provider,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    store = PreferenceStore(db)
    preferences = await store.get_preferences(user_id, provider)
    return PreferencesResponse(
        provider=provider,
        locked=await store.is_locked(user_id, provider),
        preferences=preferences.model_dump()
    )


@router.put("/{provider}", response_model=PreferencesResponse)
async def update_preferences(
    provider: Provider,
    payload: Dict[str, Any] = Body(...),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """Replace preferences; rejected with 409 once a sync has completed."""
    try:
        preferences = await PreferenceStore(db).update_preferences(user_id, provider, payload)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))

    return PreferencesResponse(provider=provider, locked=False, preferences=preferences.model_dump())
