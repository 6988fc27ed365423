# src/marketplace_bff/session_data.py

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class AuthType(str, Enum):
    """Keycloak realm family a user signs in through."""
    CUSTOMERS = "customers"
    DEVELOPERS = "developers"
    VENDORS = "vendors"


class SessionRecord(BaseModel):
    """
    Represents the data stored server-side for a user session.
    Only the session id is stored in the browser cookie; the refresh token
    never leaves the server.
    """
    session_id: str
    refresh_token: str = Field(repr=False)
    auth_type: AuthType
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: float
    last_rotated_at: float

    def public_view(self) -> Dict[str, Any]:
        """Session facts that are safe to hand to the browser."""
        return {
            "authType": self.auth_type.value,
            "userId": self.user_id,
            "createdAt": self.created_at,
            "lastRotatedAt": self.last_rotated_at,
        }


class SessionMetadata(BaseModel):
    """Optional facts captured when a session is created."""
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
