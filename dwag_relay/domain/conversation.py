"""
Inbound conversation schemas.

This is the normalized shape every inbound source hands to the pipeline,
regardless of how the conversation was obtained.
"""

from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator


class ItemKind(str, Enum):
    """Kind of an inbound conversation item."""
    MEDIA = "media"
    TEXT = "text"
    OTHER = "other"


class InboundItem(BaseModel):
    """One message inside a conversation."""

    item_id: str = Field(..., alias="itemId")
    author_id: Optional[str] = Field(None, alias="authorId")
    timestamp_micros: int = Field(0, alias="timestampMicros")
    kind: ItemKind = ItemKind.OTHER
    text_body: Optional[str] = Field(None, alias="textBody")
    media_ref: Optional[str] = Field(None, alias="mediaRef")
    metadata: Optional[dict] = None

    class Config:
        populate_by_name = True

    @field_validator("kind", mode="before")
    @classmethod
    def _unknown_kind_is_other(cls, value: Any) -> Any:
        # Providers add new item types over time; anything unrecognized is "other"
        if isinstance(value, ItemKind):
            return value
        if isinstance(value, str) and value.lower() in {k.value for k in ItemKind}:
            return value.lower()
        return ItemKind.OTHER

    @property
    def timestamp_millis(self) -> int:
        return self.timestamp_micros // 1000


class Conversation(BaseModel):
    """A conversation with its items ordered oldest to newest."""

    conversation_id: str = Field(..., alias="conversationId")
    participant: str
    items: List[InboundItem] = Field(default_factory=list)

    class Config:
        populate_by_name = True
