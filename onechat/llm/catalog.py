"""Static provider and model catalog.

The fallback model list is what the UI shows before (or without) a
successful fetch from the OneLLM gateway.  Token limits are deliberately
conservative per-provider values, not per-model truth.
"""

from typing import Optional

from pydantic import BaseModel

ONELLM_API_URL = "https://onellmweb.onrender.com/api"

DEFAULT_MODEL = "hf/rwkv7-g1a4-2.9b-20251118-ctx8192"

DEFAULT_MAX_TOKENS = 4096
DEFAULT_CONTEXT_WINDOW = 8192


class Provider(BaseModel, frozen=True):
    id: str
    name: str
    requires_key: bool = True
    key_name: Optional[str] = None
    key_placeholder: str = ""
    default_api_key: Optional[str] = None
    default_base_url: Optional[str] = None


class ModelInfo(BaseModel):
    id: str
    name: str
    provider: str
    free: bool = False
    description: str = ""
    max_output_tokens: int = DEFAULT_MAX_TOKENS
    context_window: int = DEFAULT_CONTEXT_WINDOW


PROVIDERS: dict[str, Provider] = {
    p.id: p
    for p in (
        Provider(id="openai", name="OpenAI", key_name="openai", key_placeholder="sk-..."),
        Provider(id="anthropic", name="Anthropic", key_name="anthropic", key_placeholder="sk-ant-..."),
        Provider(id="google", name="Google Gemini", key_name="google", key_placeholder="AIza..."),
        Provider(id="groq", name="Groq", key_name="groq", key_placeholder="gsk_..."),
        Provider(id="xai", name="xAI (Grok)", key_name="xai", key_placeholder="xai-..."),
        Provider(id="openrouter", name="OpenRouter", key_name="openrouter", key_placeholder="sk-or-..."),
        Provider(id="azure", name="Azure OpenAI", key_name="azure", key_placeholder="api-key"),
        Provider(id="cerebras", name="Cerebras", key_name="cerebras", key_placeholder="cbs-..."),
        Provider(id="copilot", name="GitHub Copilot", key_name="copilot", key_placeholder="token"),
        Provider(id="huggingface", name="Hugging Face", key_name="huggingface", key_placeholder="hf_..."),
        Provider(id="ollama", name="Ollama", requires_key=False),
        Provider(id="freellm", name="FreeLLM", requires_key=False),
        Provider(
            id="rwkv",
            name="RWKV7",
            requires_key=False,
            key_name="rwkv",
            key_placeholder="sk-test",
            default_api_key="sk-test",
            default_base_url="https://rwkv-red-team-rwkv-latestspace.hf.space/api/v1",
        ),
    )
}

# Max output tokens per provider
MAX_TOKENS: dict[str, int] = {
    "openai": 16384,
    "anthropic": 8192,
    "google": 1000000,
    "groq": 8192,
    "xai": 4096,
    "openrouter": 16384,
    "azure": 16384,
    "cerebras": 1000000,
    "copilot": 4096,
    "huggingface": 8192,
    "ollama": 1000000,
    "freellm": 1000000,
    "rwkv": 1000000,
}

# Total prompt + response tokens per provider
CONTEXT_WINDOWS: dict[str, int] = {
    "openai": 128000,
    "anthropic": 200000,
    "google": 1048576,
    "groq": 131072,
    "xai": 131072,
    "openrouter": 128000,
    "azure": 128000,
    "cerebras": 131072,
    "copilot": 64000,
    "huggingface": 32768,
    "ollama": 32768,
    "freellm": 4096,
    "rwkv": 8192,
}


def _fallback(id: str, name: str, provider: str, description: str) -> ModelInfo:
    return ModelInfo(
        id=id,
        name=name,
        provider=provider,
        free=True,
        description=description,
        max_output_tokens=MAX_TOKENS.get(provider, DEFAULT_MAX_TOKENS),
        context_window=CONTEXT_WINDOWS.get(provider, DEFAULT_CONTEXT_WINDOW),
    )


FALLBACK_MODELS: list[ModelInfo] = [
    _fallback("freellm/TinyLlama/TinyLlama-1.1B-Chat-v1.0", "TinyLlama 1.1B", "freellm", "Fast, lightweight"),
    _fallback("freellm/Qwen/Qwen2.5-0.5B-Instruct", "Qwen 0.5B", "freellm", "Ultra-fast"),
    _fallback("freellm/Qwen/Qwen2.5-1.5B-Instruct", "Qwen 1.5B", "freellm", "Balanced"),
    # RWKV ids carry no provider prefix
    _fallback("hf/rwkv7-g1a4-2.9b-20251118-ctx8192", "RWKV7 2.9B", "rwkv", "Standard chat"),
    _fallback(
        "hf/rwkv7-g1a4-2.9b-20251118-ctx8192:thinking",
        "RWKV7 2.9B Thinking",
        "rwkv",
        "Chain-of-thought reasoning",
    ),
    _fallback("ollama/gemma3:270m", "Gemma3 270M", "ollama", "Google lightweight"),
    _fallback("ollama/gemma3:4b", "Gemma3 4B", "ollama", "Google Balanced"),
    _fallback("ollama/mistral:7b", "Mistral 7B", "ollama", "Powerful open model"),
]
