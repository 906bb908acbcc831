"""
Parsed command schemas.
"""

from typing import Literal, Union

from pydantic import BaseModel

# Closed set of content types accepted by "add"
CONTENT_TYPES = ("meme", "skit", "audio")
DEFAULT_CONTENT_TYPE = "meme"


class AddCommand(BaseModel):
    """Save the preceding media with an idea under a content type."""
    command: Literal["add"] = "add"
    type: str = DEFAULT_CONTENT_TYPE
    idea: str


class ListCommand(BaseModel):
    """List tags with record counts."""
    command: Literal["list"] = "list"


class ShowCommand(BaseModel):
    """List records under a tag."""
    command: Literal["show"] = "show"
    tag_name: str


class TagCommand(BaseModel):
    """Move a record to another tag."""
    command: Literal["tag"] = "tag"
    record_id: int
    tag_name: str


class DeleteCommand(BaseModel):
    """Soft-delete a record."""
    command: Literal["delete"] = "delete"
    record_id: int


class TagsCommand(BaseModel):
    """List all tag names."""
    command: Literal["tags"] = "tags"


class HelpCommand(BaseModel):
    """Show usage text."""
    command: Literal["help"] = "help"


class UnknownCommand(BaseModel):
    """Reserved prefix followed by a verb the grammar does not know."""
    command: Literal["unknown"] = "unknown"
    verb: str


class UsageError(BaseModel):
    """A known verb with missing or malformed arguments."""
    command: Literal["usage_error"] = "usage_error"
    verb: str
    message: str


Command = Union[
    AddCommand,
    ListCommand,
    ShowCommand,
    TagCommand,
    DeleteCommand,
    TagsCommand,
    HelpCommand,
    UnknownCommand,
    UsageError,
]
