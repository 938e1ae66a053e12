import asyncio
import logging
from typing import Any, Callable, Optional

import httpx
from pydantic import ValidationError

from .catalog import (
    CONTEXT_WINDOWS,
    DEFAULT_CONTEXT_WINDOW,
    DEFAULT_MAX_TOKENS,
    FALLBACK_MODELS,
    MAX_TOKENS,
    ONELLM_API_URL,
    PROVIDERS,
    ModelInfo,
    Provider,
)

logger = logging.getLogger(__name__)

# (substring, provider id) for families whose ids carry no usable prefix
SUBSTRING_RULES: list[tuple[str, str]] = [
    ("rwkv", "rwkv"),
]


class ModelRegistry:
    """Provider/model catalog plus the model-id -> provider resolution chain.

    Resolution runs the matchers in ``self.matchers`` in order and takes the
    first hit: an explicit ``provider/`` prefix, then substring heuristics,
    then an exact lookup among the known models.  Anything else is an
    unknown provider, for which :meth:`requires_key` answers ``True``.
    """

    def __init__(
        self,
        providers: Optional[dict[str, Provider]] = None,
        models: Optional[list[ModelInfo]] = None,
        base_url: str = ONELLM_API_URL,
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self.providers = dict(PROVIDERS if providers is None else providers)
        self.fallback_models = list(FALLBACK_MODELS if models is None else models)
        self.models: list[ModelInfo] = list(self.fallback_models)
        self.base_url = base_url.rstrip("/")
        self._http = http
        self._timeout = timeout
        self._fetch_locks: dict[str, asyncio.Lock] = {}
        self.matchers: tuple[Callable[[str], Optional[str]], ...] = (
            self._match_prefix,
            self._match_substring,
            self._match_known_model,
        )

    # ---- Resolution ----

    def _match_prefix(self, model_id: str) -> Optional[str]:
        for provider_id in self.providers:
            if model_id.startswith(f"{provider_id}/"):
                return provider_id
        return None

    def _match_substring(self, model_id: str) -> Optional[str]:
        lower = model_id.lower()
        for needle, provider_id in SUBSTRING_RULES:
            if needle in lower and provider_id in self.providers:
                return provider_id
        return None

    def _match_known_model(self, model_id: str) -> Optional[str]:
        for model in self.models:
            if model.id == model_id:
                return model.provider
        return None

    def provider_id_for(self, model_id: str) -> Optional[str]:
        if not model_id:
            return None
        for matcher in self.matchers:
            provider_id = matcher(model_id)
            if provider_id:
                return provider_id
        return None

    def resolve_provider(self, model_id: str) -> Optional[Provider]:
        provider_id = self.provider_id_for(model_id)
        if provider_id is None:
            return None
        return self.providers.get(provider_id)

    def requires_key(self, model_id: str) -> bool:
        provider = self.resolve_provider(model_id)
        if provider is None:
            return True
        return provider.requires_key

    def required_key_name(self, model_id: str) -> Optional[str]:
        provider = self.resolve_provider(model_id)
        return provider.key_name if provider else None

    def default_api_key(self, model_id: str) -> Optional[str]:
        provider = self.resolve_provider(model_id)
        return provider.default_api_key if provider else None

    def default_base_url(self, model_id: str) -> Optional[str]:
        provider = self.resolve_provider(model_id)
        return provider.default_base_url if provider else None

    def max_output_tokens(self, model_id: str, fallback: int = DEFAULT_MAX_TOKENS) -> int:
        provider_id = self.provider_id_for(model_id)
        if provider_id is None:
            return fallback
        return MAX_TOKENS.get(provider_id, fallback)

    def context_window(self, model_id: str, fallback: int = DEFAULT_CONTEXT_WINDOW) -> int:
        provider_id = self.provider_id_for(model_id)
        if provider_id is None:
            return fallback
        return CONTEXT_WINDOWS.get(provider_id, fallback)

    def list_models(self) -> list[ModelInfo]:
        return list(self.models)

    # ---- Remote catalog ----

    async def _get(self, path: str, params: Optional[dict] = None) -> httpx.Response:
        url = f"{self.base_url}{path}"
        if self._http is not None:
            return await self._http.get(url, params=params)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.get(url, params=params)

    async def check_health(self) -> dict:
        resp = await self._get("/health")
        resp.raise_for_status()
        return resp.json()

    async def fetch_providers(self) -> list[str]:
        """Provider ids the gateway supports; the known set if that fails."""
        try:
            resp = await self._get("/providers")
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Failed to fetch provider list, using built-in providers: %s", e)
            return list(self.providers)
        providers = data.get("providers") if isinstance(data, dict) else None
        return list(providers) if providers else list(self.providers)

    def _to_model_info(self, provider_id: str, entry: Any) -> Optional[ModelInfo]:
        provider = self.providers.get(provider_id)
        if isinstance(entry, str):
            model_id, name, description = f"{provider_id}/{entry}", entry, ""
        elif isinstance(entry, dict):
            raw_name = entry.get("name")
            model_id = entry.get("id") or (f"{provider_id}/{raw_name}" if raw_name else None)
            name = raw_name or entry.get("id")
            description = entry.get("description") or ""
        else:
            return None
        if not model_id:
            return None
        return ModelInfo(
            id=model_id,
            name=name or model_id,
            provider=provider_id,
            free=not (provider.requires_key if provider else True),
            description=description,
            max_output_tokens=MAX_TOKENS.get(provider_id, DEFAULT_MAX_TOKENS),
            context_window=CONTEXT_WINDOWS.get(provider_id, DEFAULT_CONTEXT_WINDOW),
        )

    async def fetch_models_for_provider(
        self, provider_id: str, api_key: Optional[str] = None
    ) -> list[ModelInfo]:
        """Models one provider offers; any failure yields an empty list."""
        lock = self._fetch_locks.setdefault(provider_id, asyncio.Lock())
        async with lock:
            params = {"apiKey": api_key} if api_key else None
            try:
                resp = await self._get(f"/models/{provider_id}", params=params)
                if not resp.is_success:
                    logger.info(
                        "Model listing for %s returned HTTP %d", provider_id, resp.status_code
                    )
                    return []
                data = resp.json()
            except (httpx.HTTPError, ValueError) as e:
                logger.warning("Failed to fetch models for %s: %s", provider_id, e)
                return []

        entries = data.get("models", []) if isinstance(data, dict) else data
        if not isinstance(entries, list):
            return []
        models = []
        for entry in entries:
            try:
                info = self._to_model_info(provider_id, entry)
            except ValidationError as e:
                logger.warning("Skipping malformed model entry from %s: %s", provider_id, e)
                continue
            if info is not None:
                models.append(info)
        return models

    def _fetchable_key(self, provider_id: str, api_keys: dict[str, str]) -> tuple[bool, Optional[str]]:
        provider = self.providers.get(provider_id)
        if provider is None:
            return True, None
        user_key = api_keys.get(provider.key_name) if provider.key_name else None
        key = user_key or provider.default_api_key
        if provider.requires_key and not key:
            return False, None
        return True, key

    async def fetch_all_models(self, api_keys: Optional[dict[str, str]] = None) -> list[ModelInfo]:
        """Refresh ``self.models`` from every provider that can be queried.

        Providers are fetched concurrently and independently.  A fetched
        model replaces the fallback entry with the same id; providers that
        return nothing keep only their fallback entries.
        """
        api_keys = api_keys or {}
        provider_ids = await self.fetch_providers()

        async def _fetch(provider_id: str) -> list[ModelInfo]:
            ok, key = self._fetchable_key(provider_id, api_keys)
            if not ok:
                return []
            return await self.fetch_models_for_provider(provider_id, key)

        results = await asyncio.gather(*(_fetch(p) for p in provider_ids))
        fetched = [m for models in results for m in models]
        self.models = merge_models(self.fallback_models, fetched)
        logger.info(
            "Model catalog refreshed: %d fetched, %d total", len(fetched), len(self.models)
        )
        return list(self.models)


def merge_models(fallback: list[ModelInfo], fetched: list[ModelInfo]) -> list[ModelInfo]:
    """Fallback entries in order (replaced by same-id fetched ones), then new fetched ids."""
    by_id: dict[str, ModelInfo] = {}
    for model in fetched:
        by_id.setdefault(model.id, model)
    merged = [by_id.pop(m.id, m) for m in fallback]
    for model in fetched:
        if model.id in by_id:
            merged.append(by_id.pop(model.id))
    return merged


_registry: Optional[ModelRegistry] = None


def get_registry() -> ModelRegistry:
    global _registry
    if _registry is None:
        _registry = ModelRegistry()
    return _registry


def reset_registry(registry: Optional[ModelRegistry] = None) -> None:
    global _registry
    _registry = registry
