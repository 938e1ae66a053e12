import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

NEW_CHAT_TITLE = "New Chat"
TITLE_LENGTH = 30


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class _WireModel(BaseModel):
    # camelCase on the persistence API, snake_case in Python and local files
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ImageRef(_WireModel):
    name: str
    preview: str = ""  # data URL or other display handle


class Message(_WireModel):
    id: str = Field(default_factory=new_id)
    role: str  # "user" | "assistant" | "system"
    content: str = ""
    timestamp: str = Field(default_factory=utc_now)
    is_error: bool = False
    image: Optional[ImageRef] = None
    search_images: list[str] = []

    def to_api(self) -> dict:
        return {"role": self.role, "content": self.content}


class Conversation(_WireModel):
    id: str = Field(default_factory=new_id)
    title: str = NEW_CHAT_TITLE
    messages: list[Message] = []
    created_at: str = Field(default_factory=utc_now)


def derive_title(content: str) -> str:
    if len(content) > TITLE_LENGTH:
        return content[:TITLE_LENGTH] + "..."
    return content
