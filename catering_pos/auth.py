"""
Request-scoped authentication and the permission policy.

Every request builds its own AuthSession from the bearer token; nothing about
the caller is kept in module state. Authorization goes through can(), which
is consulted at the API boundary by the require() dependency.
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .settings import Settings, get_settings

logger = logging.getLogger(__name__)

ROLES = ("admin", "manager", "staff")

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "manager": frozenset({
        "orders:read", "orders:read_all", "orders:create", "orders:update",
        "orders:status", "orders:delete", "orders:send_bill",
        "products:read", "products:write",
        "whatsapp:read", "whatsapp:manage", "whatsapp:send",
    }),
    "staff": frozenset({
        "orders:read", "orders:create", "orders:update", "orders:status",
        "orders:send_bill", "products:read", "whatsapp:read",
    }),
}

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: str
    permissions: tuple[str, ...] = ()
    branch: Optional[str] = None
    name: Optional[str] = None


def can(principal: Optional[Principal], action: str) -> bool:
    if principal is None:
        return False
    if principal.role == "admin":
        return True
    if action in principal.permissions:
        return True
    return action in ROLE_PERMISSIONS.get(principal.role, frozenset())


def issue_token(principal: Principal, settings: Settings, now: Optional[datetime] = None) -> tuple[str, datetime]:
    now = now or datetime.now(timezone.utc)
    expires_at = now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {
        "sub": principal.user_id,
        "role": principal.role,
        "permissions": list(principal.permissions),
        "branch": principal.branch,
        "name": principal.name,
        "iat": now,
        "exp": expires_at,
    }
    token = jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return token, expires_at


@dataclass
class AuthSession:
    principal: Principal
    token: str
    expires_at: datetime
    settings: Settings = field(repr=False)

    @classmethod
    def from_token(cls, token: str, settings: Settings) -> "AuthSession":
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        role = claims.get("role")
        if not claims.get("sub") or role not in ROLES:
            raise jwt.InvalidTokenError("token is missing a subject or a known role")
        principal = Principal(
            user_id=str(claims["sub"]),
            role=role,
            permissions=tuple(claims.get("permissions") or ()),
            branch=claims.get("branch"),
            name=claims.get("name"),
        )
        expires_at = datetime.fromtimestamp(claims["exp"], tz=timezone.utc)
        return cls(principal=principal, token=token, expires_at=expires_at, settings=settings)

    def refresh(self) -> "AuthSession":
        token, expires_at = issue_token(self.principal, self.settings)
        return AuthSession(principal=self.principal, token=token, expires_at=expires_at, settings=self.settings)

    def can(self, action: str) -> bool:
        return can(self.principal, action)


def get_session(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> AuthSession:
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized - No token found")
    try:
        return AuthSession.from_token(credentials.credentials, settings)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized - Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized - Invalid token")


def require(action: str):
    def dependency(session: AuthSession = Depends(get_session)) -> AuthSession:
        if not session.can(action):
            logger.warning("Denied %s to user %s (%s)", action, session.principal.user_id, session.principal.role)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Forbidden - {action} not permitted")
        return session
    return dependency


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Mint an access token for an operator")
    parser.add_argument("--user-id", default="operator")
    parser.add_argument("--role", choices=ROLES, default="admin")
    parser.add_argument("--branch")
    parser.add_argument("--name")
    parser.add_argument("--permission", action="append", default=[])
    args = parser.parse_args()
    token, expires_at = issue_token(
        Principal(args.user_id, args.role, tuple(args.permission), args.branch, args.name),
        get_settings(),
    )
    print(token)
    print(f"expires {expires_at.isoformat()}")
