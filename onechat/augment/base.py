from abc import ABC, abstractmethod

from pydantic import BaseModel


class SearchResult(BaseModel):
    content: str = ""  # formatted text handed to the model
    images: list[str] = []


class SearchBackend(ABC):
    """Abstract base class for web search backends."""

    name: str

    @abstractmethod
    async def search(self, query: str) -> SearchResult:
        """Run a search; raise :class:`~onechat.errors.SearchError` on failure."""
        ...

    @abstractmethod
    def is_configured(self) -> bool:
        """Check if this backend has what it needs to run (URL, keys, etc.)."""
        ...
