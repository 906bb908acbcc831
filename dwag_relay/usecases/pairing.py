"""
Item classification and media pairing.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

from dwag_relay.domain.commands import Command
from dwag_relay.domain.conversation import InboundItem, ItemKind
from dwag_relay.parsing.command_parser import DEFAULT_PREFIX, parse_command

_SHARE_LINK = re.compile(r"^https?://\S+$", re.IGNORECASE)


class Classification(str, Enum):
    """Role of an item within a conversation."""
    MEDIA = "media"
    COMMAND = "command"
    OTHER = "other"


@dataclass(frozen=True)
class ClassifiedItem:
    """An inbound item together with its role and parsed payload."""

    item: InboundItem
    classification: Classification
    media_ref: Optional[str] = None
    command: Optional[Command] = None


def is_link(value: Optional[str]) -> bool:
    """True when the value is a single http(s) link."""
    return bool(value) and bool(_SHARE_LINK.match(value.strip()))


def classify_item(item: InboundItem, prefix: str = DEFAULT_PREFIX) -> ClassifiedItem:
    """Classify one inbound item as media, command or other."""
    if item.kind == ItemKind.MEDIA:
        if item.media_ref:
            return ClassifiedItem(item, Classification.MEDIA, media_ref=item.media_ref)
        return ClassifiedItem(item, Classification.OTHER)

    if item.kind == ItemKind.TEXT:
        command = parse_command(item.text_body, prefix=prefix)
        if command is not None:
            return ClassifiedItem(item, Classification.COMMAND, command=command)
        # A pasted share link counts as media
        if is_link(item.text_body):
            return ClassifiedItem(item, Classification.MEDIA, media_ref=item.text_body.strip())

    return ClassifiedItem(item, Classification.OTHER)


def classify_conversation(
    items: Sequence[InboundItem],
    prefix: str = DEFAULT_PREFIX
) -> List[ClassifiedItem]:
    """Classify every item, preserving conversation order."""
    return [classify_item(item, prefix=prefix) for item in items]


def find_preceding_media(
    items: Sequence[ClassifiedItem],
    command_index: int
) -> Optional[ClassifiedItem]:
    """
    Find the nearest media item strictly before a command.

    Args:
        items: Classified conversation, oldest to newest
        command_index: Position of the command in items

    Returns:
        The media item, or None when nothing precedes the command
    """
    for index in range(min(command_index, len(items)) - 1, -1, -1):
        if items[index].classification == Classification.MEDIA:
            return items[index]
    return None
