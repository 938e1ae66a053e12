from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel

from .deps import get_session

router = APIRouter(prefix="/api/settings", tags=["settings"])


def mask_secret(value: str) -> str:
    if not value:
        return ""
    return "****" + value[-4:] if len(value) > 8 else "****"


class SettingsUpdate(BaseModel):
    selected_model: Optional[str] = None
    stream_output: Optional[bool] = None
    search_enabled: Optional[bool] = None


class ValueRequest(BaseModel):
    value: str


def _settings_view() -> dict:
    chat = get_session().settings
    data = chat.model_dump()
    data["api_keys"] = {k: mask_secret(v) for k, v in chat.api_keys.items()}
    return data


@router.get("")
async def get_settings():
    return _settings_view()


@router.put("")
async def update_settings(update: SettingsUpdate):
    session = get_session()
    if update.selected_model is not None:
        session.set_selected_model(update.selected_model)
    if update.stream_output is not None:
        session.set_stream_output(update.stream_output)
    if update.search_enabled is not None:
        session.set_search_enabled(update.search_enabled)
    return _settings_view()


@router.put("/api-keys/{key_name}")
async def update_api_key(key_name: str, req: ValueRequest):
    get_session().update_api_key(key_name, req.value)
    return _settings_view()


@router.put("/base-urls/{key_name}")
async def update_base_url(key_name: str, req: ValueRequest):
    get_session().update_base_url(key_name, req.value)
    return _settings_view()
