import asyncio

import httpx

from onechat.llm.catalog import ModelInfo
from onechat.llm.registry import ModelRegistry, merge_models

BASE = "https://gateway.test/api"


def _registry(handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ModelRegistry(base_url=BASE, http=http)


def test_prefix_resolution():
    registry = ModelRegistry()
    assert registry.provider_id_for("openai/gpt-4o") == "openai"
    assert registry.provider_id_for("ollama/gemma3:4b") == "ollama"
    assert registry.resolve_provider("anthropic/claude-3").name == "Anthropic"


def test_substring_rule_for_unprefixed_family():
    registry = ModelRegistry()
    assert registry.provider_id_for("hf/rwkv7-g1a4-2.9b-20251118-ctx8192") == "rwkv"
    assert registry.provider_id_for("some-RWKV-variant") == "rwkv"


def test_prefix_wins_over_substring():
    registry = ModelRegistry()
    assert registry.provider_id_for("openrouter/rwkv-mirror") == "openrouter"


def test_known_model_lookup_is_last_resort():
    custom = ModelInfo(id="plain-model", name="Plain", provider="groq")
    registry = ModelRegistry(models=[custom])
    assert registry.provider_id_for("plain-model") == "groq"
    assert registry.provider_id_for("other-model") is None


def test_unknown_provider_requires_key():
    registry = ModelRegistry()
    assert registry.resolve_provider("mystery") is None
    assert registry.requires_key("mystery") is True
    assert registry.required_key_name("mystery") is None
    assert registry.requires_key("") is True


def test_provider_defaults():
    registry = ModelRegistry()
    model = "hf/rwkv7-g1a4-2.9b-20251118-ctx8192"
    assert registry.requires_key(model) is False
    assert registry.required_key_name(model) == "rwkv"
    assert registry.default_api_key(model) == "sk-test"
    assert registry.default_base_url(model).endswith("/api/v1")
    assert registry.default_api_key("openai/gpt-4o") is None
    assert registry.requires_key("openai/gpt-4o") is True


def test_token_limits():
    registry = ModelRegistry()
    assert registry.max_output_tokens("anthropic/claude") == 8192
    assert registry.context_window("freellm/x") == 4096
    assert registry.max_output_tokens("mystery") == 4096
    assert registry.context_window("mystery") == 8192


def test_merge_keeps_fallback_order_and_replaces_same_id():
    fallback = [
        ModelInfo(id="a", name="A", provider="ollama"),
        ModelInfo(id="b", name="B", provider="ollama"),
    ]
    fetched = [
        ModelInfo(id="c", name="C", provider="groq"),
        ModelInfo(id="b", name="B fetched", provider="ollama"),
    ]
    merged = merge_models(fallback, fetched)
    assert [m.id for m in merged] == ["a", "b", "c"]
    assert merged[1].name == "B fetched"


def test_fetch_all_models_isolates_failures_and_skips_keyless_paid():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        seen.append(path)
        if path == "/api/providers":
            return httpx.Response(200, json={"providers": ["ollama", "groq", "openai", "freellm"]})
        if path == "/api/models/ollama":
            return httpx.Response(200, json={"models": ["llama3:8b", {"id": "ollama/gemma3:4b", "name": "gemma3:4b"}]})
        if path == "/api/models/groq":
            assert request.url.params["apiKey"] == "gsk_test"
            return httpx.Response(200, json={"models": [{"name": "llama-3.1-8b"}]})
        if path == "/api/models/freellm":
            return httpx.Response(500, json={"error": "down"})
        raise AssertionError(f"unexpected request {path}")

    registry = _registry(handler)
    models = asyncio.run(registry.fetch_all_models({"groq": "gsk_test"}))
    ids = [m.id for m in models]

    assert "/api/models/openai" not in seen
    assert "ollama/llama3:8b" in ids
    assert "groq/llama-3.1-8b" in ids
    assert ids.count("ollama/gemma3:4b") == 1
    # freellm failed: its fallback entries survive
    assert "freellm/Qwen/Qwen2.5-0.5B-Instruct" in ids
    assert ids[0] == registry.fallback_models[0].id

    groq = next(m for m in models if m.id == "groq/llama-3.1-8b")
    assert groq.free is False
    assert groq.max_output_tokens == 8192
    assert registry.provider_id_for("groq/llama-3.1-8b") == "groq"


def test_provider_listing_failure_uses_builtin_set():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/providers":
            raise httpx.ConnectError("offline", request=request)
        return httpx.Response(200, json={"models": []})

    registry = _registry(handler)
    providers = asyncio.run(registry.fetch_providers())
    assert set(providers) == set(registry.providers)


def test_fetch_models_for_provider_handles_bad_json():
    registry = _registry(lambda r: httpx.Response(200, text="not json"))
    assert asyncio.run(registry.fetch_models_for_provider("ollama")) == []


def test_malformed_model_entry_does_not_abort_refresh():
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/providers":
            return httpx.Response(200, json={"providers": ["ollama", "freellm"]})
        if path == "/api/models/ollama":
            return httpx.Response(200, json={"models": [{"id": 7, "name": None}, "llama3:8b"]})
        if path == "/api/models/freellm":
            return httpx.Response(200, json=["good-model"])
        raise AssertionError(f"unexpected request {path}")

    registry = _registry(handler)
    ids = [m.id for m in asyncio.run(registry.fetch_all_models())]
    assert "freellm/good-model" in ids
    assert "ollama/llama3:8b" in ids
    assert 7 not in ids
