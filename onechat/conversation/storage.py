import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from ..errors import ConversationNotFoundError, StorageError
from .models import NEW_CHAT_TITLE, Conversation, Message

logger = logging.getLogger(__name__)


class ConversationStore(ABC):
    """Durable home for conversations and the key-free user settings."""

    @abstractmethod
    async def list_conversations(self) -> list[Conversation]:
        """All conversations, newest first, with their messages."""
        ...

    @abstractmethod
    async def create_conversation(self, title: str = NEW_CHAT_TITLE) -> Conversation:
        ...

    @abstractmethod
    async def delete_conversation(self, conv_id: str) -> None:
        """Raise :class:`ConversationNotFoundError` if *conv_id* is unknown."""
        ...

    @abstractmethod
    async def sync_conversation(
        self, conv_id: str, title: Optional[str], messages: list[Message]
    ) -> None:
        """Replace title and messages of an existing conversation."""
        ...

    async def fetch_settings(self) -> Optional[dict[str, Any]]:
        return None

    async def push_settings(self, settings: dict[str, Any]) -> None:
        return None


class LocalConversationStore(ConversationStore):
    """One JSON file per conversation plus an ``_index.json`` of ids."""

    def __init__(self, base_dir: Path) -> None:
        self._dir = Path(base_dir)
        self._index_file = self._dir / "_index.json"

    def _ensure_dir(self) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)

    def _conv_file(self, conv_id: str) -> Path:
        return self._dir / f"{conv_id}.json"

    # ---- Index helpers ----

    def _load_index(self) -> list[dict]:
        if self._index_file.exists():
            try:
                return json.loads(self._index_file.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError):
                logger.warning("Failed to load conversations index")
        return []

    def _save_index(self, items: list[dict]) -> None:
        try:
            self._ensure_dir()
            self._index_file.write_text(
                json.dumps(items, indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
        except OSError as e:
            raise StorageError(f"Failed to save conversations index: {e}") from e

    def _update_index_entry(self, conv: Conversation) -> None:
        items = self._load_index()
        entry = {
            "id": conv.id,
            "title": conv.title,
            "message_count": len(conv.messages),
            "created_at": conv.created_at,
        }
        for i, item in enumerate(items):
            if item["id"] == conv.id:
                items[i] = entry
                break
        else:
            items.append(entry)
        self._save_index(items)

    # ---- File helpers ----

    def _read(self, conv_id: str) -> Optional[Conversation]:
        conv_file = self._conv_file(conv_id)
        if not conv_file.exists():
            return None
        try:
            return Conversation(**json.loads(conv_file.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, OSError, ValueError):
            logger.error("Failed to load conversation %s", conv_id)
            return None

    def _write(self, conv: Conversation) -> None:
        try:
            self._ensure_dir()
            self._conv_file(conv.id).write_text(
                json.dumps(conv.model_dump(), indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
        except OSError as e:
            raise StorageError(f"Failed to save conversation {conv.id}: {e}") from e
        self._update_index_entry(conv)

    # ---- Store API ----

    async def list_conversations(self) -> list[Conversation]:
        conversations = []
        for item in self._load_index():
            conv = self._read(item["id"])
            if conv is not None:
                conversations.append(conv)
        conversations.sort(key=lambda c: c.created_at, reverse=True)
        return conversations

    async def create_conversation(self, title: str = NEW_CHAT_TITLE) -> Conversation:
        conv = Conversation(title=title or NEW_CHAT_TITLE)
        self._write(conv)
        return conv

    async def delete_conversation(self, conv_id: str) -> None:
        conv_file = self._conv_file(conv_id)
        existed = conv_file.exists()
        if existed:
            try:
                conv_file.unlink()
            except OSError as e:
                raise StorageError(f"Failed to delete conversation {conv_id}: {e}") from e
        items = self._load_index()
        remaining = [i for i in items if i["id"] != conv_id]
        if len(remaining) < len(items):
            self._save_index(remaining)
        elif not existed:
            raise ConversationNotFoundError(conv_id)

    async def sync_conversation(
        self, conv_id: str, title: Optional[str], messages: list[Message]
    ) -> None:
        conv = self._read(conv_id)
        if conv is None:
            raise ConversationNotFoundError(conv_id)
        update: dict[str, Any] = {"messages": list(messages)}
        if title:
            update["title"] = title
        self._write(conv.model_copy(update=update))
