from typing import Optional

from ..augment.ocr import OCRClient
from ..augment.search import get_search_backend
from ..config import AppConfig, get_config, get_config_dir, update_config
from ..conversation.remote import RemoteConversationStore
from ..conversation.session import ChatSession
from ..conversation.storage import ConversationStore, LocalConversationStore
from ..llm.client import CompletionClient
from ..llm.registry import ModelRegistry, reset_registry


def build_store(config: AppConfig) -> ConversationStore:
    services = config.services
    if services.persistence_url:
        return RemoteConversationStore(
            services.persistence_url,
            services.persistence_token,
            timeout=services.request_timeout,
        )
    return LocalConversationStore(get_config_dir() / "conversations")


def build_session(config: AppConfig) -> ChatSession:
    services = config.services
    registry = ModelRegistry(base_url=services.onellm_api_url)
    reset_registry(registry)
    client = CompletionClient(registry=registry, timeout=services.request_timeout)
    return ChatSession(
        config,
        client,
        build_store(config),
        search=get_search_backend(config),
        ocr=OCRClient.from_config(config),
        save_config=update_config,
    )


_session: Optional[ChatSession] = None


def get_session() -> ChatSession:
    global _session
    if _session is None:
        _session = build_session(get_config())
    return _session


def set_session(session: Optional[ChatSession]) -> None:
    global _session
    _session = session
