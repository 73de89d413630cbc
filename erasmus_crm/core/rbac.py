from fastapi import HTTPException, status

from erasmus_crm.core.auth import AuthUser


def ensure_admin(user: AuthUser) -> AuthUser:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin access required")
    return user


def owner_scope(user: AuthUser) -> int | None:
    """Owner filter applied to list, count and export reads; admins see every row."""
    return None if user.is_admin else user.id
