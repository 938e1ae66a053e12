import logging
from typing import Optional

import httpx

from ..config import AppConfig
from ..errors import OCRError

logger = logging.getLogger(__name__)


class OCRClient:
    """Text extraction through the ocr.space parse endpoint."""

    def __init__(
        self,
        api_key: str,
        url: str = "https://api.ocr.space/parse/image",
        language: str = "eng",
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
    ) -> None:
        self._api_key = api_key
        self._url = url
        self._language = language
        self._http = http
        self._timeout = timeout

    @classmethod
    def from_config(cls, config: AppConfig) -> "OCRClient":
        services = config.services
        return cls(
            services.ocr_api_key,
            url=services.ocr_url,
            language=services.ocr_language,
            timeout=services.request_timeout,
        )

    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def _post(self, files: dict, data: dict) -> httpx.Response:
        if self._http is not None:
            return await self._http.post(self._url, files=files, data=data)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.post(self._url, files=files, data=data)

    async def extract_text(
        self, content: bytes, filename: str, content_type: str = "application/octet-stream"
    ) -> str:
        if not self._api_key:
            raise OCRError("OCR API key not configured")

        files = {"file": (filename, content, content_type)}
        data = {
            "apikey": self._api_key,
            "language": self._language,
            "isOverlayRequired": "false",
        }
        try:
            resp = await self._post(files, data)
        except httpx.HTTPError as e:
            raise OCRError(f"OCR request failed: {e}") from e
        if not resp.is_success:
            raise OCRError("OCR request failed")

        try:
            result = resp.json()
        except ValueError as e:
            raise OCRError("OCR processing failed") from e

        if result.get("IsErroredOnProcessing"):
            message = result.get("ErrorMessage")
            if isinstance(message, list):
                message = message[0] if message else None
            raise OCRError(message or "OCR processing failed")

        parsed = result.get("ParsedResults") or []
        text = (parsed[0].get("ParsedText") if parsed else "") or ""
        logger.info("OCR extracted %d characters from %s", len(text), filename)
        return text.strip()
