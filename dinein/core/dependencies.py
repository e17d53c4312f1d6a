"""
Request dependencies for FastAPI
"""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Dict, Optional
import uuid
import structlog

from dinein.core.auth import decode_access_token
from dinein.services.container import Services

logger = structlog.get_logger(__name__)
security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)

STAFF_ROLES = ("admin", "kitchen", "service")


def get_services(request: Request) -> Services:
    """Core services built in the application lifespan"""
    return request.app.state.services


def parse_claims(token: Optional[str]) -> Optional[Dict]:
    """Validate a token and its restaurant/role claims"""
    if not token:
        return None
    payload = decode_access_token(token)
    if payload is None:
        return None
    try:
        payload["restaurant_id"] = uuid.UUID(str(payload.get("restaurant_id")))
    except ValueError:
        return None
    if payload.get("role") not in STAFF_ROLES:
        return None
    return payload


async def get_claims(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> Dict:
    """Get restaurant and role claims from the JWT token"""
    payload = parse_claims(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


async def get_optional_restaurant_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security)
) -> Optional[uuid.UUID]:
    """Restaurant ID for endpoints that also serve unauthenticated guests"""
    if credentials is None:
        return None
    payload = parse_claims(credentials.credentials)
    if payload is None:
        return None
    return payload["restaurant_id"]


async def get_restaurant_id(claims: Dict = Depends(get_claims)) -> uuid.UUID:
    """Get restaurant ID from JWT token"""
    return claims["restaurant_id"]


async def get_user_role(claims: Dict = Depends(get_claims)) -> str:
    """Get staff role from JWT token"""
    return claims["role"]


def require_role(*roles: str):
    """Dependency factory restricting an endpoint to some staff roles"""

    async def checker(role: str = Depends(get_user_role)) -> str:
        if role not in roles:
            logger.warning("Role not permitted", role=role, required=list(roles))
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not enough permissions",
            )
        return role

    return checker
