"""Client for the REST persistence API (conversations and user settings).

All calls carry a bearer token.  The wire format is camelCase JSON; see
:class:`onechat.conversation.models.Message` for the aliases.
"""

import logging
from typing import Any, Optional

import httpx

from ..errors import ConversationNotFoundError, StorageError
from .models import NEW_CHAT_TITLE, Conversation, Message
from .storage import ConversationStore

logger = logging.getLogger(__name__)


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return f"HTTP {response.status_code}"


class RemoteConversationStore(ConversationStore):
    def __init__(
        self,
        base_url: str,
        token: str,
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._http = http
        self._timeout = timeout

    async def _request(self, method: str, path: str, json: Any = None) -> httpx.Response:
        url = f"{self._base_url}{path}"
        headers = {"Authorization": f"Bearer {self._token}"}
        try:
            if self._http is not None:
                return await self._http.request(method, url, json=json, headers=headers)
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                return await client.request(method, url, json=json, headers=headers)
        except httpx.HTTPError as e:
            raise StorageError(f"{method} {path} failed: {e}") from e

    def _check(self, response: httpx.Response, conv_id: Optional[str] = None) -> dict:
        if response.status_code == 404 and conv_id is not None:
            raise ConversationNotFoundError(conv_id)
        if not response.is_success:
            raise StorageError(_error_message(response), response.status_code)
        try:
            return response.json()
        except ValueError as e:
            raise StorageError("Invalid JSON from persistence API", response.status_code) from e

    async def list_conversations(self) -> list[Conversation]:
        data = self._check(await self._request("GET", "/api/conversations"))
        return [Conversation.model_validate(c) for c in data.get("conversations") or []]

    async def create_conversation(self, title: str = NEW_CHAT_TITLE) -> Conversation:
        data = self._check(
            await self._request("POST", "/api/conversations", json={"title": title})
        )
        return Conversation.model_validate(data["conversation"])

    async def delete_conversation(self, conv_id: str) -> None:
        self._check(await self._request("DELETE", f"/api/conversations/{conv_id}"), conv_id)

    async def sync_conversation(
        self, conv_id: str, title: Optional[str], messages: list[Message]
    ) -> None:
        body = {
            "title": title,
            "messages": [m.model_dump(by_alias=True, exclude={"image"}) for m in messages],
        }
        self._check(
            await self._request("POST", f"/api/conversations/{conv_id}/sync", json=body),
            conv_id,
        )

    async def fetch_settings(self) -> Optional[dict[str, Any]]:
        data = self._check(await self._request("GET", "/api/user/settings"))
        return data.get("settings")

    async def push_settings(self, settings: dict[str, Any]) -> None:
        self._check(await self._request("PUT", "/api/user/settings", json=settings))
