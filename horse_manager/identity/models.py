"""
Identity models.

The local user is identified by its immutable backend id. The email is
carried for display only and is never used as a purchase-service identity.
"""
from pydantic import BaseModel, Field
from typing import Optional


class LocalUser(BaseModel):
    """Authenticated application user."""
    id: str = Field(..., min_length=1, description="Immutable backend user id")
    email: Optional[str] = None
    name: Optional[str] = None
    language: Optional[str] = None

