from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.rbac import ADMIN_ROLES, require_roles
from app.crm.api import customers_router, offers_router, tasks_router
from app.metrics import generate_metrics_payload, metrics_content_type
from app.users.api import router as users_router

router = APIRouter()
router.include_router(customers_router)
router.include_router(offers_router)
router.include_router(tasks_router)
router.include_router(users_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str | bool]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "cache_enabled": settings.cache_enabled,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str]]:
    return {
        "sub": user.sub,
        "roles": user.roles,
    }


@router.get("/metrics", tags=["system"])
def metrics(_: AuthUser = Depends(require_roles(*ADMIN_ROLES))) -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
