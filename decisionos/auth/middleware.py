"""API key authentication middleware."""

import hashlib
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from decisionos.config import settings
from decisionos.schemas.household import HouseholdInfo
from decisionos.storage.port import LedgerStore
from decisionos.storage.repositories import get_store


API_KEY_HEADER = APIKeyHeader(name="Authorization", auto_error=False)


def hash_api_key(api_key: str) -> str:
    """Hash API key with salt for storage/lookup."""
    return hashlib.sha256(
        f"{settings.api_key_hash_salt}:{api_key}".encode()
    ).hexdigest()


async def get_household_from_bearer(
    store: Annotated[LedgerStore, Depends(get_store)],
    auth_header: str | None = Depends(API_KEY_HEADER),
) -> HouseholdInfo:
    """Resolve the household (tenant) from a Bearer API key."""
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid Authorization header",
        )
    api_key = auth_header[7:].strip()
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key",
        )
    household = await store.find_household_by_api_key_hash(hash_api_key(api_key))
    if not household:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )
    return household


HouseholdDep = Annotated[HouseholdInfo, Depends(get_household_from_bearer)]
StoreDep = Annotated[LedgerStore, Depends(get_store)]
