from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from usage_billing.business.billing.api import router as billing_router
from usage_billing.business.usage.api import router as usage_router
from usage_billing.core.auth import AuthUser, get_current_user
from usage_billing.core.config import get_settings
from usage_billing.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(usage_router)
router.include_router(billing_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
