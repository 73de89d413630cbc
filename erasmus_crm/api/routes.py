from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from erasmus_crm.core.auth import AuthUser, get_current_user
from erasmus_crm.core.config import get_settings
from erasmus_crm.crm.api import activities_router, companies_router, contacts_router, deals_router
from erasmus_crm.crm.rpc import router as rpc_router
from erasmus_crm.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(rpc_router)
router.include_router(contacts_router)
router.include_router(companies_router)
router.include_router(deals_router)
router.include_router(activities_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin access required")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
