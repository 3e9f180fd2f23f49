"""Authentication dependencies for FastAPI.

Every knowledge-chat route runs inside one organization: the caller sends a
Supabase access token as a Bearer credential plus the ``X-Organization-Id``
header, and must be a member of that organization.
"""

import asyncio
import logging
from typing import Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.db.supabase_client import get_supabase

logger = logging.getLogger(__name__)

# HTTP Bearer scheme for Authorization header
security = HTTPBearer(auto_error=False)


class AuthContext:
    """Authenticated user acting within one organization."""

    def __init__(self, user_id: str, organization_id: str, token: str = ""):
        self.user_id = user_id
        self.organization_id = organization_id
        self.token = token

    def __repr__(self) -> str:
        return f"AuthContext(user_id={self.user_id!r}, organization_id={self.organization_id!r})"


def _verify_token(token: str) -> Optional[str]:
    """Validate a Supabase JWT and return the user id, or None."""
    try:
        auth_response = get_supabase().auth.get_user(token)
    except Exception as e:
        logger.warning(f"Auth error: {e}")
        return None
    if not auth_response or not auth_response.user:
        return None
    return str(auth_response.user.id)


def _is_org_member(organization_id: str, user_id: str) -> bool:
    result = (
        get_supabase()
        .table("organization_members")
        .select("user_id")
        .eq("organization_id", organization_id)
        .eq("user_id", user_id)
        .limit(1)
        .execute()
    )
    return bool(result.data)


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[str]:
    """Return the authenticated user id, or None if no valid token is present."""
    if not credentials:
        return None
    return await asyncio.to_thread(_verify_token, credentials.credentials)


async def get_current_org_id(
    x_organization_id: Optional[str] = Header(None, alias="X-Organization-Id"),
) -> Optional[str]:
    """Extract organization ID from X-Organization-Id header."""
    if not x_organization_id:
        return None
    try:
        return str(UUID(x_organization_id))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid organization ID format",
        )


async def require_auth(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    user_id: Optional[str] = Depends(get_current_user_id),
    organization_id: Optional[str] = Depends(get_current_org_id),
) -> AuthContext:
    """Require an authenticated organization member.

    Raises:
        HTTPException: 401 without a valid token, 400 without an organization,
            403 if the user is not a member of the organization
    """
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not organization_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Organization-Id header required",
        )

    is_member = await asyncio.to_thread(_is_org_member, organization_id, user_id)
    if not is_member:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not a member of this organization",
        )

    return AuthContext(user_id=user_id, organization_id=organization_id, token=credentials.credentials)
