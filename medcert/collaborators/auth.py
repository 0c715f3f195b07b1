"""
JWT authentication and role checks.

Identity is taken from a validated bearer token, never from the request
body. Services receive the Identity and call authorize() themselves, so
role rules hold for the worker and tests as well as for HTTP callers.

Roles:
- patient: owns intakes, downloads own certificates, answers info requests
- doctor: reviews, approves, declines, regenerates
- admin: everything a doctor can, plus revocation, anonymization and queue ops
- system: the retry sweep
"""
import time
from typing import Iterable, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from medcert.models.enums import ActorRole
from medcert.services.errors import Unauthorized

security = HTTPBearer()

VALID_ROLES = {r.value for r in ActorRole}


class Identity(BaseModel):
    """Authenticated caller."""
    sub: str
    role: str
    name: Optional[str] = None

    def has_role(self, *roles: str) -> bool:
        return self.role in roles


SYSTEM_IDENTITY = Identity(sub="system", role=ActorRole.SYSTEM.value, name="Retry worker")


def authorize(identity: Identity, roles: Iterable[str]) -> None:
    allowed = [r.value if isinstance(r, ActorRole) else r for r in roles]
    if identity.role not in allowed:
        raise Unauthorized(f"Role '{identity.role}' may not perform this action; requires one of {allowed}")


def decode_token(token: str, secret: str, algorithm: str = "HS256") -> Identity:
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[algorithm],
            options={"require": ["exp", "sub"]},
        )
    except jwt.PyJWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "INVALID_TOKEN", "message": f"Token validation failed: {e}"},
            headers={"WWW-Authenticate": "Bearer"},
        )

    role = payload.get("role")
    if role not in VALID_ROLES:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "INVALID_ROLE", "message": f"Invalid role '{role}'"},
        )
    return Identity(sub=str(payload["sub"]), role=role, name=payload.get("name"))


def create_token(sub: str, role: str, secret: str, name: Optional[str] = None,
                 expires_in_seconds: int = 3600, algorithm: str = "HS256") -> str:
    """Mint a token. Development and tests only; production tokens come from the identity provider."""
    payload = {"sub": sub, "role": role, "exp": int(time.time()) + expires_in_seconds}
    if name:
        payload["name"] = name
    return jwt.encode(payload, secret, algorithm=algorithm)


def get_current_identity(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Identity:
    settings = request.app.state.settings
    return decode_token(credentials.credentials, settings.jwt_secret_key, settings.jwt_algorithm)


def require_role(*roles: str):
    """
    Dependency factory for role-based access control.

    Usage:
        @router.post("/intakes/{intake_id}/approve")
        def approve(identity: Identity = Depends(require_role("doctor", "admin"))):
            ...
    """

    def role_checker(identity: Identity = Depends(get_current_identity)) -> Identity:
        if not identity.has_role(*roles):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "code": "INSUFFICIENT_PERMISSIONS",
                    "message": f"One of {list(roles)} required. You have: '{identity.role}'",
                },
            )
        return identity

    return role_checker
