import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field

from .llm.catalog import DEFAULT_MODEL, ONELLM_API_URL
from .llm.client import CompletionOptions, Credentials

logger = logging.getLogger(__name__)


class ChatSettings(BaseModel):
    api_keys: dict[str, str] = {}   # provider key-name -> key, never leaves this machine
    base_urls: dict[str, str] = {}  # provider key-name -> endpoint override
    selected_model: str = DEFAULT_MODEL
    stream_output: bool = True
    search_enabled: bool = False
    temperature: float = 0.7
    max_tokens: int = 0  # 0 = provider default

    def credentials(self) -> Credentials:
        return Credentials(api_keys=dict(self.api_keys), base_urls=dict(self.base_urls))

    def completion_options(self) -> CompletionOptions:
        return CompletionOptions(
            temperature=self.temperature,
            max_tokens=self.max_tokens or None,
            stream=self.stream_output,
        )

    def public_dict(self) -> dict[str, Any]:
        """Settings payload for the persistence API, without API keys."""
        return {
            "baseUrls": dict(self.base_urls),
            "selectedModel": self.selected_model,
            "streamOutput": self.stream_output,
            "searchEnabled": self.search_enabled,
        }

    def apply_remote(self, remote: dict[str, Any]) -> "ChatSettings":
        """Merge settings fetched from the persistence API.

        API keys in the remote payload are ignored; keys are only ever
        entered locally.
        """
        updates: dict[str, Any] = {}
        if isinstance(remote.get("baseUrls"), dict):
            updates["base_urls"] = {**self.base_urls, **remote["baseUrls"]}
        if remote.get("selectedModel"):
            updates["selected_model"] = remote["selectedModel"]
        if remote.get("streamOutput") is not None:
            updates["stream_output"] = bool(remote["streamOutput"])
        if remote.get("searchEnabled") is not None:
            updates["search_enabled"] = bool(remote["searchEnabled"])
        return self.model_copy(update=updates)


class ServiceConfig(BaseModel):
    onellm_api_url: str = ONELLM_API_URL
    search_backend: str = "proxy"  # "proxy" | "duckduckgo"
    search_url: str = ""
    search_max_results: int = 5
    ocr_url: str = "https://api.ocr.space/parse/image"
    ocr_api_key: str = ""
    ocr_language: str = "eng"
    persistence_url: str = ""  # empty = local JSON store
    persistence_token: str = ""
    sync_delay: float = 0.5
    request_timeout: float = 120.0


class AppConfig(BaseModel):
    chat: ChatSettings = Field(default_factory=ChatSettings)
    services: ServiceConfig = Field(default_factory=ServiceConfig)


_config_dir = Path(os.environ.get("ONECHAT_CONFIG_DIR", Path.home() / ".onechat"))
_config_file = _config_dir / "config.json"

SENSITIVE_FIELDS: list[str] = [
    "services.ocr_api_key",
    "services.persistence_token",
]
SENSITIVE_MAPS: list[str] = [
    "chat.api_keys",
]


def get_config_dir() -> Path:
    return _config_file.parent


def _ensure_config_dir() -> None:
    _config_file.parent.mkdir(parents=True, exist_ok=True)


def _transform_sensitive(data: dict, value_fn, map_fn) -> dict:
    for dotpath in SENSITIVE_FIELDS:
        section, field = dotpath.split(".", 1)
        if section in data and field in data[section]:
            data[section][field] = value_fn(data[section][field])
    for dotpath in SENSITIVE_MAPS:
        section, field = dotpath.split(".", 1)
        if section in data and data[section].get(field):
            data[section][field] = map_fn(data[section][field])
    return data


def _encrypt_sensitive(data: dict) -> dict:
    from .crypto import encrypt_dict_values, encrypt_value

    return _transform_sensitive(data, encrypt_value, encrypt_dict_values)


def _decrypt_sensitive(data: dict) -> dict:
    from .crypto import decrypt_dict_values, decrypt_value

    return _transform_sensitive(data, decrypt_value, decrypt_dict_values)


def _needs_migration(data: dict) -> bool:
    """True if any sensitive value is stored as plaintext."""
    from .crypto import is_encrypted

    for dotpath in SENSITIVE_FIELDS:
        section, field = dotpath.split(".", 1)
        val = data.get(section, {}).get(field, "")
        if val and not is_encrypted(val):
            return True
    for dotpath in SENSITIVE_MAPS:
        section, field = dotpath.split(".", 1)
        for val in (data.get(section, {}).get(field) or {}).values():
            if val and not is_encrypted(val):
                return True
    return False


def _apply_env_overrides(config: AppConfig) -> AppConfig:
    ocr_key = os.environ.get("ONECHAT_OCR_API_KEY")
    if ocr_key:
        config.services.ocr_api_key = ocr_key
    return config


def load_config() -> AppConfig:
    _ensure_config_dir()
    if not _config_file.exists():
        return _apply_env_overrides(AppConfig())

    data = json.loads(_config_file.read_text(encoding="utf-8"))
    migrate = _needs_migration(data)
    config = AppConfig(**_decrypt_sensitive(data))

    if migrate:
        logger.info("Migrating config secrets to encrypted storage")
        save_config(config)

    return _apply_env_overrides(config)


def save_config(config: AppConfig) -> None:
    from .crypto import set_strict_permissions

    _ensure_config_dir()
    data = _encrypt_sensitive(json.loads(config.model_dump_json()))
    _config_file.write_text(
        json.dumps(data, indent=2, ensure_ascii=False),
        encoding="utf-8",
    )
    set_strict_permissions(_config_file)


_current_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    global _current_config
    if _current_config is None:
        _current_config = load_config()
    return _current_config


def update_config(config: AppConfig) -> AppConfig:
    global _current_config
    save_config(config)
    _current_config = config
    return _current_config
