import logging

import httpx
from fastapi import APIRouter

from .deps import get_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["models"])


@router.get("/models")
async def list_models():
    session = get_session()
    return {
        "selected": session.settings.selected_model,
        "models": [m.model_dump() for m in session.models],
    }


@router.post("/models/refresh")
async def refresh_models():
    models = await get_session().refresh_models()
    return {"models": [m.model_dump() for m in models]}


@router.get("/providers")
async def list_providers():
    registry = get_session().client.registry
    return {"providers": [p.model_dump() for p in registry.providers.values()]}


@router.get("/health/gateway")
async def gateway_health():
    registry = get_session().client.registry
    try:
        data = await registry.check_health()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("Gateway health check failed: %s", e)
        return {"status": "unreachable", "url": registry.base_url, "error": str(e)}
    return {"status": "ok", "url": registry.base_url, "gateway": data}
