from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import Response

from gigaid.core.auth import AuthUser, get_current_user
from gigaid.core.config import get_settings
from gigaid.metrics import generate_metrics_payload, metrics_content_type
from gigaid.nba.api import router as next_actions_router

router = APIRouter()
router.include_router(next_actions_router)


@router.get("/health", tags=["system"])
def health(request: Request) -> dict[str, str | bool]:
    settings = get_settings()
    engine = getattr(request.app.state, "nba_engine", None)
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "engine_running": bool(engine is not None and engine.running),
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
