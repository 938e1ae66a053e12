"""Per-user chat session: conversations, generation lifecycle and sync.

A send walks one conversation through::

    idle -> user message + assistant placeholder appended
         -> (searching) -> generating -> (deltas)* -> settled(success | error)

All state changes go through :meth:`ChatSession._replace_conversation`,
which swaps in a new :class:`Conversation` object (copy-on-write), so a
reader holding the old list never sees a half-applied update.  Async
continuations only remember the conversation id and re-read the current
state when they resume.

Local state is the source of truth.  Persistence happens in background
tasks that run a short delay after a send settles; their failures are
logged and never roll anything back.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from ..augment.base import SearchBackend, SearchResult
from ..augment.ocr import OCRClient
from ..augment.search import augment_messages
from ..config import AppConfig, ChatSettings
from ..errors import ChatError, ConversationNotFoundError, OCRError, SearchError, StorageError
from ..llm.catalog import ModelInfo
from ..llm.client import CompletionClient
from .models import NEW_CHAT_TITLE, Conversation, ImageRef, Message, derive_title
from .storage import ConversationStore

logger = logging.getLogger(__name__)

ERROR_PREFIX = "Error: "


@dataclass
class SessionEvent:
    type: str
    conversation_id: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "conversation_id": self.conversation_id, **self.data}


Listener = Callable[[SessionEvent], None]


class ChatSession:
    def __init__(
        self,
        config: AppConfig,
        client: CompletionClient,
        store: ConversationStore,
        search: Optional[SearchBackend] = None,
        ocr: Optional[OCRClient] = None,
        save_config: Optional[Callable[[AppConfig], Any]] = None,
    ) -> None:
        self.config = config
        self.client = client
        self.store = store
        self.search = search
        self.ocr = ocr
        self._save_config = save_config

        self.conversations: list[Conversation] = []
        self.active_id: Optional[str] = None
        self.is_generating = False
        self.is_searching = False
        self.is_processing_ocr = False
        self.error: Optional[str] = None

        self._listeners: list[Listener] = []
        self._deleted: set[str] = set()
        self._background: set[asyncio.Task] = set()

    # ---- Observers ----

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, type: str, conversation_id: Optional[str] = None, **data: Any) -> None:
        event = SessionEvent(type, conversation_id, data)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Session listener failed on %s event", type)

    # ---- State helpers ----

    @property
    def settings(self) -> ChatSettings:
        return self.config.chat

    @property
    def models(self) -> list[ModelInfo]:
        return self.client.registry.list_models()

    @property
    def active_conversation(self) -> Optional[Conversation]:
        return self.get_conversation(self.active_id) if self.active_id else None

    def get_conversation(self, conv_id: str) -> Optional[Conversation]:
        for conv in self.conversations:
            if conv.id == conv_id:
                return conv
        return None

    def _replace_conversation(self, conv_id: str, **changes: Any) -> Optional[Conversation]:
        """Swap in an updated copy of one conversation; no-op if it is gone."""
        current = self.get_conversation(conv_id)
        if current is None:
            return None
        updated = current.model_copy(update=changes)
        self.conversations = [updated if c.id == conv_id else c for c in self.conversations]
        self._emit("messages_updated", conv_id, messages=len(updated.messages))
        return updated

    def _update_placeholder(self, conv_id: str, **changes: Any) -> None:
        conv = self.get_conversation(conv_id)
        if conv is None or not conv.messages or conv.messages[-1].role != "assistant":
            return
        messages = list(conv.messages)
        messages[-1] = messages[-1].model_copy(update=changes)
        self._replace_conversation(conv_id, messages=messages)

    def snapshot(self) -> dict[str, Any]:
        return {
            "active_id": self.active_id,
            "is_generating": self.is_generating,
            "is_searching": self.is_searching,
            "is_processing_ocr": self.is_processing_ocr,
            "error": self.error,
            "conversations": [c.model_dump() for c in self.conversations],
        }

    # ---- Loading ----

    async def load(self) -> None:
        """Populate conversations and remote settings from the store."""
        try:
            self.conversations = await self.store.list_conversations()
        except StorageError as e:
            logger.error("Failed to load conversations: %s", e)
        if self.conversations and not self.active_id:
            self.active_id = self.conversations[0].id

        try:
            remote = await self.store.fetch_settings()
        except StorageError as e:
            logger.warning("Failed to load user settings: %s", e)
            remote = None
        if remote:
            self.config.chat = self.config.chat.apply_remote(remote)

    # ---- Conversations ----

    async def create_new_chat(self) -> Optional[str]:
        try:
            conv = await self.store.create_conversation(NEW_CHAT_TITLE)
        except StorageError as e:
            logger.error("Failed to create chat: %s", e)
            self.error = str(e)
            return None
        self.conversations = [conv, *self.conversations]
        self.active_id = conv.id
        self.error = None
        self._emit("conversation_created", conv.id, title=conv.title)
        return conv.id

    def set_active(self, conv_id: Optional[str]) -> bool:
        if conv_id is not None and self.get_conversation(conv_id) is None:
            return False
        self.active_id = conv_id
        return True

    async def delete_conversation(self, conv_id: str) -> bool:
        try:
            await self.store.delete_conversation(conv_id)
        except ConversationNotFoundError:
            logger.info("Conversation %s was not in the store, removing locally", conv_id)
        except StorageError as e:
            logger.error("Failed to delete conversation %s: %s", conv_id, e)
            self.error = str(e)
            return False

        self._deleted.add(conv_id)
        self.conversations = [c for c in self.conversations if c.id != conv_id]
        if self.active_id == conv_id:
            self.active_id = self.conversations[0].id if self.conversations else None
        self._emit("conversation_deleted", conv_id)
        return True

    # ---- Sending ----

    async def send_message(self, content: str, image: Optional[ImageRef] = None) -> Optional[str]:
        """Send *content* in the active conversation (creating one if needed).

        Returns the conversation id, or ``None`` when the call was a no-op
        (blank input, a generation already running, or chat creation failed).
        """
        text = content.strip()
        if not text or self.is_generating:
            return None
        self.is_generating = True
        try:
            conv_id = self.active_id
            if conv_id is None or self.get_conversation(conv_id) is None:
                conv_id = await self.create_new_chat()
                if conv_id is None:
                    return None
            await self._run_turn(conv_id, text, image)
            return conv_id
        finally:
            self.is_generating = False

    async def _run_turn(self, conv_id: str, text: str, image: Optional[ImageRef]) -> None:
        conv = self.get_conversation(conv_id)
        history = list(conv.messages)
        title = derive_title(text) if not history else None

        user_message = Message(role="user", content=text, image=image)
        placeholder = Message(role="assistant", content="")
        changes: dict[str, Any] = {"messages": [*history, user_message, placeholder]}
        if title:
            changes["title"] = title
        self._replace_conversation(conv_id, **changes)
        self.error = None

        settings = self.config.chat
        try:
            search_result = await self._run_search(conv_id, text)

            api_messages = [
                m.to_api() for m in [*history, user_message] if m.content and not m.is_error
            ]
            api_messages = augment_messages(api_messages, search_result.content)

            credentials = settings.credentials()
            options = settings.completion_options()
            model = settings.selected_model
            if options.stream:
                full_content = ""
                async for chunk in self.client.stream_chat_completion(
                    api_messages, model, credentials, options
                ):
                    full_content += chunk
                    self._update_placeholder(conv_id, content=full_content)
                    self._emit("delta", conv_id, content=chunk)
            else:
                result = await self.client.complete(api_messages, model, credentials, options)
                self._update_placeholder(conv_id, content=result.content)
            self._emit("settled", conv_id, status="success")
        except ChatError as e:
            message = str(e)
            logger.warning("Generation failed in conversation %s: %s", conv_id, message)
            self.error = message
            self._update_placeholder(conv_id, content=f"{ERROR_PREFIX}{message}", is_error=True)
            self._emit("error", conv_id, message=message)
            self._emit("settled", conv_id, status="error")
        finally:
            self._schedule_sync(conv_id, title)

    async def _run_search(self, conv_id: str, query: str) -> SearchResult:
        if not self.config.chat.search_enabled or self.search is None:
            return SearchResult()

        self.is_searching = True
        self._emit("search_started", conv_id)
        try:
            result = await self.search.search(query)
        except SearchError as e:
            logger.warning("Search failed, continuing without context: %s", e)
            return SearchResult()
        finally:
            self.is_searching = False
            self._emit("search_finished", conv_id)

        if result.images:
            self._update_placeholder(conv_id, search_images=list(result.images))
        return result

    # ---- Background sync ----

    def _spawn(self, coro) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.debug("No running event loop, background task dropped")
            return None
        task = loop.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _schedule_sync(self, conv_id: str, title: Optional[str] = None) -> None:
        self._spawn(self._sync_later(conv_id, title))

    async def _sync_later(self, conv_id: str, title: Optional[str]) -> None:
        await asyncio.sleep(self.config.services.sync_delay)
        conv = self.get_conversation(conv_id)
        if conv is None or conv_id in self._deleted:
            logger.debug("Skipping sync for removed conversation %s", conv_id)
            return
        try:
            await self.store.sync_conversation(conv_id, title or conv.title, list(conv.messages))
        except StorageError as e:
            logger.warning("Failed to sync conversation %s: %s", conv_id, e)

    async def wait_for_sync(self) -> None:
        """Wait for every pending background task (sync, settings push)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ---- Images ----

    async def process_image(
        self, content: bytes, filename: str, content_type: str = "application/octet-stream"
    ) -> str:
        """Extract text from an uploaded image; failures are re-raised."""
        if self.ocr is None:
            self.error = "OCR API key not configured"
            raise OCRError(self.error)
        self.is_processing_ocr = True
        self.error = None
        try:
            return await self.ocr.extract_text(content, filename, content_type)
        except ChatError as e:
            self.error = str(e)
            raise
        finally:
            self.is_processing_ocr = False

    # ---- Models and settings ----

    async def refresh_models(self) -> list[ModelInfo]:
        return await self.client.registry.fetch_all_models(self.config.chat.api_keys)

    def _persist_settings(self) -> None:
        if self._save_config is not None:
            self._save_config(self.config)
        self._spawn(self._push_settings(self.config.chat.public_dict()))

    async def _push_settings(self, settings: dict[str, Any]) -> None:
        try:
            await self.store.push_settings(settings)
        except StorageError as e:
            logger.warning("Failed to save settings: %s", e)

    def _update_settings(self, **changes: Any) -> None:
        self.config.chat = self.config.chat.model_copy(update=changes)
        self._persist_settings()

    def set_selected_model(self, model: str) -> None:
        self._update_settings(selected_model=model)

    def set_stream_output(self, value: bool) -> None:
        self._update_settings(stream_output=value)

    def set_search_enabled(self, value: bool) -> None:
        self._update_settings(search_enabled=value)

    def update_api_key(self, key_name: str, key: str) -> None:
        self._update_settings(api_keys={**self.config.chat.api_keys, key_name: key})

    def update_base_url(self, key_name: str, url: str) -> None:
        self._update_settings(base_urls={**self.config.chat.base_urls, key_name: url})

    # ---- Errors ----

    def clear_error(self) -> None:
        self.error = None

    def clear_message_error(self, conv_id: str, message_id: str) -> bool:
        """Remove a flagged error message from a conversation."""
        conv = self.get_conversation(conv_id)
        if conv is None:
            return False
        messages = [m for m in conv.messages if not (m.id == message_id and m.is_error)]
        if len(messages) == len(conv.messages):
            return False
        self._replace_conversation(conv_id, messages=messages)
        self._schedule_sync(conv_id)
        return True
