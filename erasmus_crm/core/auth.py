from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from jose import JWTError, jwt
from sqlalchemy.orm import Session
from starlette.requests import Request

from erasmus_crm.core.config import get_settings
from erasmus_crm.core.database import get_db
from erasmus_crm.crm.models import User


@dataclass
class AuthUser:
    id: int
    name: str | None
    email: str | None
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.replace("Bearer ", "", 1) if auth_header.startswith("Bearer ") else ""


def decode_token(token: str) -> AuthUser | None:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        return None
    role = payload.get("role", "user")
    return AuthUser(
        id=user_id,
        name=payload.get("name"),
        email=payload.get("email"),
        role=role if role in ("user", "admin") else "user",
    )


def issue_token(user_id: int, *, name: str | None = None, email: str | None = None, role: str = "user") -> str:
    settings = get_settings()
    claims = {"sub": str(user_id), "name": name, "email": email, "role": role}
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def resolve_user(request: Request, session: Session | None) -> AuthUser | None:
    """Identify the caller from the bearer token.

    With storage available the user row is authoritative for name, email and
    role; a token for a user that no longer exists identifies nobody.
    """
    token = _bearer_token(request)
    if not token:
        return None
    claims = decode_token(token)
    if claims is None or session is None:
        return claims
    row = session.get(User, claims.id)
    if row is None:
        return None
    return AuthUser(id=row.id, name=row.name, email=row.email, role=row.role)


def get_optional_user(request: Request, db: Session | None = Depends(get_db)) -> AuthUser | None:
    return resolve_user(request, db)


def get_current_user(user: AuthUser | None = Depends(get_optional_user)) -> AuthUser:
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")
    return user
