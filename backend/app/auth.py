"""
Opportunity Loop - Authentication Utilities
JWT tokens carrying the tenant identity, and auth dependencies
"""
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

# Configuration
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "opportunity-loop-secret-key-change-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_HOURS = 24

# Bearer token security
security = HTTPBearer()


@dataclass
class TenantIdentity:
    """Who is calling: the tenant, and the human acting for it."""
    tenant_id: str
    reviewer: str
    role: str = "operator"


def create_access_token(tenant_id: str, reviewer: Optional[str] = None, role: str = "operator") -> str:
    """Create a JWT access token for a tenant operator."""
    expire = datetime.utcnow() + timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS)
    to_encode = {
        "sub": tenant_id,
        "reviewer": reviewer or tenant_id,
        "role": role,
        "exp": expire
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate a JWT token."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        return payload
    except JWTError:
        return None


async def get_current_tenant(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> TenantIdentity:
    """
    Dependency to get the calling tenant.
    Validates the JWT token; the tenant id is the subject claim.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_token(credentials.credentials)
    if payload is None:
        raise credentials_exception

    tenant_id: str = payload.get("sub")
    if tenant_id is None:
        raise credentials_exception

    return TenantIdentity(
        tenant_id=tenant_id,
        reviewer=payload.get("reviewer") or tenant_id,
        role=payload.get("role", "operator"),
    )


def resolve_tenant(requested: Optional[str], identity: TenantIdentity) -> str:
    """The ?tenant= parameter, which must match the token when given."""
    if requested is not None and requested != identity.tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token does not grant access to this tenant"
        )
    return identity.tenant_id
