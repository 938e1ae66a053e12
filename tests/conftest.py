from typing import Optional

import pytest

from onechat.config import AppConfig
from onechat.conversation.models import Conversation
from onechat.conversation.storage import ConversationStore
from onechat.errors import ConversationNotFoundError
from onechat.llm.client import CompletionResult
from onechat.llm.registry import ModelRegistry


class MemoryStore(ConversationStore):
    def __init__(self):
        self.conversations: dict[str, Conversation] = {}
        self.synced: list[tuple] = []
        self.pushed_settings: list[dict] = []
        self.remote_settings: Optional[dict] = None
        self.sync_error: Optional[Exception] = None

    async def list_conversations(self):
        return list(self.conversations.values())

    async def create_conversation(self, title="New Chat"):
        conv = Conversation(title=title)
        self.conversations[conv.id] = conv
        return conv

    async def delete_conversation(self, conv_id):
        if self.conversations.pop(conv_id, None) is None:
            raise ConversationNotFoundError(conv_id)

    async def sync_conversation(self, conv_id, title, messages):
        if self.sync_error is not None:
            raise self.sync_error
        if conv_id not in self.conversations:
            raise ConversationNotFoundError(conv_id)
        self.synced.append((conv_id, title, list(messages)))

    async def fetch_settings(self):
        return self.remote_settings

    async def push_settings(self, settings):
        self.pushed_settings.append(settings)


class FakeCompletionClient:
    """Replays scripted deltas and records the message lists it was sent."""

    def __init__(self, chunks=None, error=None, gate=None):
        self.registry = ModelRegistry()
        self.chunks = ["Hi", " there"] if chunks is None else chunks
        self.error = error
        self.gate = gate
        self.requests: list[list[dict]] = []

    async def stream_chat_completion(self, messages, model, credentials, options=None):
        self.requests.append(messages)
        if self.gate is not None:
            await self.gate.wait()
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error

    async def complete(self, messages, model, credentials, options=None):
        self.requests.append(messages)
        if self.error is not None:
            raise self.error
        return CompletionResult(content="".join(self.chunks))


@pytest.fixture
def config():
    cfg = AppConfig()
    cfg.services.sync_delay = 0
    return cfg


@pytest.fixture
def store():
    return MemoryStore()
