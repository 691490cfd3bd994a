"""Household (tenant) schema."""

from pydantic import BaseModel


class HouseholdInfo(BaseModel):
    """Resolved tenant for a request."""

    household_key: str
    name: str = ""
