import asyncio

import httpx
import pytest

from onechat.augment.base import SearchBackend, SearchResult
from onechat.augment.search import ProxySearchBackend
from onechat.conversation.models import Conversation, Message
from onechat.conversation.session import ChatSession
from onechat.conversation.storage import LocalConversationStore
from onechat.errors import OCRError, SearchError, StorageError, TransportError
from onechat.llm.client import CompletionClient
from onechat.llm.registry import ModelRegistry

from tests.conftest import FakeCompletionClient


class FakeSearch(SearchBackend):
    name = "fake"

    def __init__(self, result=None, error=None):
        self.result = result or SearchResult()
        self.error = error
        self.queries = []

    def is_configured(self):
        return True

    async def search(self, query):
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return self.result


class FakeOCR:
    def __init__(self, text="", error=None):
        self.text = text
        self.error = error

    async def extract_text(self, content, filename, content_type="application/octet-stream"):
        if self.error is not None:
            raise self.error
        return self.text


def _send(session, *contents):
    async def run():
        ids = [await session.send_message(c) for c in contents]
        await session.wait_for_sync()
        return ids

    return asyncio.run(run())


def test_first_send_creates_titled_conversation(config, store):
    session = ChatSession(config, FakeCompletionClient(), store)
    (conv_id,) = _send(session, "Hello")

    assert len(session.conversations) == 1
    conv = session.get_conversation(conv_id)
    assert conv.title == "Hello"
    assert [m.role for m in conv.messages] == ["user", "assistant"]
    assert conv.messages[1].content == "Hi there"
    assert session.active_id == conv_id
    assert session.is_generating is False
    assert store.synced[0][1] == "Hello"


def test_long_first_message_title_is_truncated(config, store):
    session = ChatSession(config, FakeCompletionClient(), store)
    text = "abcdefghij" * 5
    (conv_id,) = _send(session, text)
    assert session.get_conversation(conv_id).title == text[:30] + "..."


def test_title_only_derived_from_first_message(config, store):
    session = ChatSession(config, FakeCompletionClient(), store)
    conv_id, _ = _send(session, "First question", "Something else entirely")
    conv = session.get_conversation(conv_id)
    assert conv.title == "First question"
    assert len(conv.messages) == 4


def test_blank_input_is_ignored(config, store):
    client = FakeCompletionClient()
    session = ChatSession(config, client, store)
    assert _send(session, "   ") == [None]
    assert session.conversations == []
    assert client.requests == []


def test_stream_deltas_accumulate_in_order(config, store):
    client = FakeCompletionClient(chunks=["Hel", "lo", "!"])
    session = ChatSession(config, client, store)
    events = []
    session.subscribe(events.append)
    (conv_id,) = _send(session, "hi")

    deltas = [e.data["content"] for e in events if e.type == "delta"]
    assert deltas == ["Hel", "lo", "!"]
    assert events[-1].type == "settled"
    assert events[-1].data["status"] == "success"
    assert session.get_conversation(conv_id).messages[-1].content == "Hello!"


def test_batch_mode_fills_placeholder_once(config, store):
    config.chat.stream_output = False
    session = ChatSession(config, FakeCompletionClient(chunks=["whole answer"]), store)
    events = []
    session.subscribe(events.append)
    (conv_id,) = _send(session, "hi")
    assert session.get_conversation(conv_id).messages[-1].content == "whole answer"
    assert not [e for e in events if e.type == "delta"]


def test_earlier_snapshot_is_not_mutated(config, store):
    session = ChatSession(config, FakeCompletionClient(), store)
    (conv_id,) = _send(session, "one")
    before = session.get_conversation(conv_id)
    _send(session, "two")
    assert len(before.messages) == 2
    assert len(session.get_conversation(conv_id).messages) == 4


def test_second_send_while_generating_is_rejected(config, store):
    async def run():
        gate = asyncio.Event()
        client = FakeCompletionClient(gate=gate)
        session = ChatSession(config, client, store)
        first = asyncio.create_task(session.send_message("first"))
        await asyncio.sleep(0)
        assert session.is_generating is True
        second = await session.send_message("second")
        gate.set()
        conv_id = await first
        await session.wait_for_sync()
        return session, client, conv_id, second

    session, client, conv_id, second = asyncio.run(run())
    assert second is None
    assert len(client.requests) == 1
    assert len(session.get_conversation(conv_id).messages) == 2
    assert session.is_generating is False


def test_failed_turn_is_flagged_and_excluded_from_history(config, store):
    client = FakeCompletionClient(chunks=["partial"], error=TransportError("connection refused"))
    session = ChatSession(config, client, store)
    events = []
    session.subscribe(events.append)
    (conv_id,) = _send(session, "first")

    placeholder = session.get_conversation(conv_id).messages[-1]
    assert placeholder.content == "Error: connection refused"
    assert placeholder.is_error is True
    assert session.error == "connection refused"
    assert [e.type for e in events][-2:] == ["error", "settled"]

    client.error = None
    client.chunks = ["ok"]
    _send(session, "second")
    assert client.requests[1] == [
        {"role": "user", "content": "first"},
        {"role": "user", "content": "second"},
    ]
    assert session.error is None


def test_missing_credential_never_reaches_network(config, store):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"content": "nope"})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = CompletionClient(registry=ModelRegistry(), http=http)
    config.chat.selected_model = "openai/gpt-4o"
    session = ChatSession(config, client, store)
    (conv_id,) = _send(session, "hi")

    placeholder = session.get_conversation(conv_id).messages[-1]
    assert placeholder.is_error is True
    assert "API key required for openai" in placeholder.content
    assert requests == []


def test_search_context_shapes_request_only(config, store):
    config.chat.search_enabled = True
    search = FakeSearch(SearchResult(content="1. **Doc**", images=["http://img/1.png"]))
    client = FakeCompletionClient()
    session = ChatSession(config, client, store, search=search)
    (conv_id,) = _send(session, "What is new?")

    sent = client.requests[0][-1]["content"]
    assert sent.startswith("What is new?\n\n---\nSearch Results:\n1. **Doc**")
    assert sent.endswith("please answer my question.")
    conv = session.get_conversation(conv_id)
    assert conv.messages[0].content == "What is new?"
    assert conv.messages[1].search_images == ["http://img/1.png"]
    assert session.is_searching is False


def test_search_failure_continues_without_context(config, store):
    config.chat.search_enabled = True
    client = FakeCompletionClient()
    session = ChatSession(config, client, store, search=FakeSearch(error=SearchError("boom")))
    (conv_id,) = _send(session, "plain")
    assert client.requests[0] == [{"role": "user", "content": "plain"}]
    assert session.error is None
    assert session.get_conversation(conv_id).messages[-1].content == "Hi there"


def test_search_disabled_skips_backend(config, store):
    search = FakeSearch()
    session = ChatSession(config, FakeCompletionClient(), store, search=search)
    _send(session, "hi")
    assert search.queries == []


def test_deleted_conversation_is_never_synced(config, store):
    config.services.sync_delay = 0.01

    async def run():
        session = ChatSession(config, FakeCompletionClient(), store)
        conv_id = await session.send_message("hi")
        assert await session.delete_conversation(conv_id) is True
        await session.wait_for_sync()
        return session

    session = asyncio.run(run())
    assert store.synced == []
    assert session.conversations == []
    assert session.active_id is None


def test_delete_of_conversation_missing_remotely_still_removes_it(config, store):
    session = ChatSession(config, FakeCompletionClient(), store)
    session.conversations = [Conversation(id="ghost")]
    session.active_id = "ghost"
    assert asyncio.run(session.delete_conversation("ghost")) is True
    assert session.conversations == []


def test_delete_failure_keeps_conversation(config, store):
    class FailingStore(type(store)):
        async def delete_conversation(self, conv_id):
            raise StorageError("HTTP 500", 500)

    session = ChatSession(config, FakeCompletionClient(), FailingStore())
    session.conversations = [Conversation(id="keep")]
    assert asyncio.run(session.delete_conversation("keep")) is False
    assert session.error == "HTTP 500"
    assert len(session.conversations) == 1


def test_sync_failure_is_absorbed(config, store):
    store.sync_error = StorageError("persistence down")
    session = ChatSession(config, FakeCompletionClient(), store)
    (conv_id,) = _send(session, "hi")
    assert session.error is None
    assert session.get_conversation(conv_id).messages[-1].content == "Hi there"


def test_clear_message_error_removes_flagged_message(config, store):
    client = FakeCompletionClient(chunks=[], error=TransportError("down"))
    session = ChatSession(config, client, store)
    (conv_id,) = _send(session, "hi")
    failed = session.get_conversation(conv_id).messages[-1]
    user = session.get_conversation(conv_id).messages[0]

    assert session.clear_message_error(conv_id, user.id) is False
    assert session.clear_message_error(conv_id, failed.id) is True
    assert [m.role for m in session.get_conversation(conv_id).messages] == ["user"]


def test_settings_push_excludes_api_keys(config, store):
    saved = []

    async def run():
        session = ChatSession(config, FakeCompletionClient(), store, save_config=saved.append)
        session.update_api_key("openai", "sk-very-secret")
        session.set_selected_model("openai/gpt-4o")
        await session.wait_for_sync()
        return session

    session = asyncio.run(run())
    assert session.settings.api_keys == {"openai": "sk-very-secret"}
    assert len(saved) == 2
    assert store.pushed_settings[-1]["selectedModel"] == "openai/gpt-4o"
    for pushed in store.pushed_settings:
        assert "sk-very-secret" not in str(pushed)


def test_load_applies_remote_settings_but_not_keys(config, store):
    older = Conversation(id="old", created_at="2024-01-01T00:00:00+00:00")
    store.conversations = {"old": older}
    store.remote_settings = {"selectedModel": "ollama/gemma3:4b", "apiKeys": {"openai": "leak"}}
    session = ChatSession(config, FakeCompletionClient(), store)
    asyncio.run(session.load())

    assert session.active_id == "old"
    assert session.settings.selected_model == "ollama/gemma3:4b"
    assert session.settings.api_keys == {}


def test_history_ignores_empty_messages(config, store):
    client = FakeCompletionClient()
    session = ChatSession(config, client, store)
    conv = Conversation(
        id="c1",
        messages=[Message(role="user", content="q"), Message(role="assistant", content="")],
    )
    store.conversations = {"c1": conv}
    session.conversations = [conv]
    session.active_id = "c1"
    _send(session, "again")
    assert client.requests[0] == [
        {"role": "user", "content": "q"},
        {"role": "user", "content": "again"},
    ]


def test_process_image_without_ocr_raises(config, store):
    session = ChatSession(config, FakeCompletionClient(), store)
    with pytest.raises(OCRError):
        asyncio.run(session.process_image(b"png", "a.png"))
    assert session.error == "OCR API key not configured"


def test_process_image_failure_sets_error(config, store):
    ocr = FakeOCR(error=OCRError("E301: bad image"))
    session = ChatSession(config, FakeCompletionClient(), store, ocr=ocr)
    with pytest.raises(OCRError):
        asyncio.run(session.process_image(b"png", "a.png"))
    assert session.error == "E301: bad image"
    assert session.is_processing_ocr is False


def test_process_image_returns_text(config, store):
    session = ChatSession(config, FakeCompletionClient(), store, ocr=FakeOCR(text="hello"))
    assert asyncio.run(session.process_image(b"png", "a.png")) == "hello"
    assert session.error is None


def test_malformed_search_reply_still_sends(config, store):
    config.chat.search_enabled = True
    http = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda r: httpx.Response(200, json=["oops"]))
    )
    search = ProxySearchBackend("https://search.test/api/search", http=http)
    client = FakeCompletionClient()
    session = ChatSession(config, client, store, search=search)
    (conv_id,) = _send(session, "Hello")

    assert client.requests[0] == [{"role": "user", "content": "Hello"}]
    placeholder = session.get_conversation(conv_id).messages[-1]
    assert placeholder.content == "Hi there"
    assert placeholder.is_error is False


def test_local_write_failure_during_sync_is_logged(config, tmp_path, monkeypatch, caplog):
    local = LocalConversationStore(tmp_path / "conversations")
    session = ChatSession(config, FakeCompletionClient(), local)
    conv_id = asyncio.run(session.create_new_chat())

    def disk_full():
        raise OSError("No space left on device")

    monkeypatch.setattr(local, "_ensure_dir", disk_full)
    _send(session, "hi")

    assert session.get_conversation(conv_id).messages[-1].content == "Hi there"
    assert session.error is None
    assert "Failed to sync conversation" in caplog.text
