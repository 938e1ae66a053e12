"""Exception types raised by the chat core.

Everything derives from :class:`ChatError` so callers on the send path can
catch one type and turn it into a visible error message.
"""

from typing import Optional


class ChatError(Exception):
    """Base class for chat core failures."""


class MissingCredentialError(ChatError):
    """A provider requires an API key and none could be resolved."""

    def __init__(self, key_name: Optional[str], model: str = "") -> None:
        self.key_name = key_name
        self.model = model
        target = key_name or f"model '{model}'"
        super().__init__(f"API key required for {target}. Please add it in Settings.")


class TransportError(ChatError):
    """The request or the response stream failed below HTTP."""


class RemoteError(ChatError):
    """The completion service answered with a non-success status."""

    def __init__(self, message: str, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(message)


class SearchError(ChatError):
    """Web search augmentation failed."""


class OCRError(ChatError):
    """Image text extraction failed."""


class StorageError(ChatError):
    """The conversation store rejected or failed a request."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ConversationNotFoundError(StorageError):
    def __init__(self, conv_id: str) -> None:
        self.conv_id = conv_id
        super().__init__(f"Conversation not found: {conv_id}", 404)
