"""
Command grammar parser.

Turns a free-text message body into a typed command, or None when the text is
not addressed to the bot. Parsing is pure: it never touches storage.
"""

import logging
import re
from typing import Callable, Dict, List, Optional

from dwag_relay.domain.commands import (
    CONTENT_TYPES,
    DEFAULT_CONTENT_TYPE,
    AddCommand,
    Command,
    DeleteCommand,
    HelpCommand,
    ListCommand,
    ShowCommand,
    TagCommand,
    TagsCommand,
    UnknownCommand,
    UsageError,
)

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "dwag"

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_\- ]")


def sanitize_name(value: Optional[str]) -> str:
    """Strip characters outside [A-Za-z0-9_- ] and trim whitespace."""
    if not isinstance(value, str):
        return ""
    return _UNSAFE_NAME_CHARS.sub("", value).strip()


def help_text(prefix: str = DEFAULT_PREFIX) -> str:
    """Static usage text for the help command."""
    return (
        "Available commands:\n"
        f"• add [meme|skit|audio] <idea> - Save the video you just shared\n"
        f"• {prefix} list - Show all tags with counts\n"
        f"• {prefix} show <tag> - Show saved ideas in a tag\n"
        f"• {prefix} tag <id> <tag> - Tag/retag a saved idea\n"
        f"• {prefix} delete <id> - Delete a saved idea\n"
        f"• {prefix} tags - List all available tags\n"
        f"• {prefix} help - Show this help message\n\n"
        "Share a video, then say what it's for!\n"
        'Example: "add skit funny walk"'
    )


def _split_first(text: str) -> List[str]:
    """Split off the first whitespace-delimited token, keeping the rest verbatim."""
    parts = text.strip().split(None, 1)
    if not parts:
        return ["", ""]
    if len(parts) == 1:
        parts.append("")
    return parts


def _parse_record_id(raw: str) -> Optional[int]:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _parse_add(args: str, prefix: str) -> Command:
    args = args.strip()
    if not args:
        return UsageError(verb="add", message="Usage: add [meme|skit|audio] <idea>")

    first, rest = _split_first(args)
    # A lone type word is idea text, not a type with an empty idea
    if first.lower() in CONTENT_TYPES and rest.strip():
        return AddCommand(type=first.lower(), idea=rest.strip())
    return AddCommand(type=DEFAULT_CONTENT_TYPE, idea=args)


def _parse_list(args: str, prefix: str) -> Command:
    return ListCommand()


def _parse_show(args: str, prefix: str) -> Command:
    tag_name = sanitize_name(_split_first(args)[0])
    if not tag_name:
        return UsageError(verb="show", message=f"Usage: {prefix} show <tagname>")
    return ShowCommand(tag_name=tag_name)


def _parse_tag(args: str, prefix: str) -> Command:
    raw_id, rest = _split_first(args)
    # Tag names are one word; anything after it is ignored
    tag_name = sanitize_name(_split_first(rest)[0])
    if not raw_id or not tag_name:
        return UsageError(verb="tag", message=f"Usage: {prefix} tag <id> <tagname>")

    record_id = _parse_record_id(raw_id)
    if record_id is None:
        return UsageError(verb="tag", message="Invalid ID. Must be a number.")
    return TagCommand(record_id=record_id, tag_name=tag_name)


def _parse_delete(args: str, prefix: str) -> Command:
    raw_id, _ = _split_first(args)
    if not raw_id:
        return UsageError(verb="delete", message=f"Usage: {prefix} delete <id>")

    record_id = _parse_record_id(raw_id)
    if record_id is None:
        return UsageError(verb="delete", message="Invalid ID. Must be a number.")
    return DeleteCommand(record_id=record_id)


def _parse_tags(args: str, prefix: str) -> Command:
    return TagsCommand()


def _parse_help(args: str, prefix: str) -> Command:
    return HelpCommand()


_VERB_PARSERS: Dict[str, Callable[[str, str], Command]] = {
    "add": _parse_add,
    "list": _parse_list,
    "show": _parse_show,
    "tag": _parse_tag,
    "delete": _parse_delete,
    "tags": _parse_tags,
    "help": _parse_help,
}


def parse_command(text: Optional[str], prefix: str = DEFAULT_PREFIX) -> Optional[Command]:
    """
    Parse a message body into a command.

    Args:
        text: Message body
        prefix: Reserved prefix that addresses the bot (case-insensitive)

    Returns:
        A command model, or None when the text is not a command
    """
    if not text or not text.strip():
        return None

    head, tail = _split_first(text)
    head_lower = head.lower()

    if head_lower == prefix.lower():
        verb, args = _split_first(tail)
        verb = verb.lower()
        parser = _VERB_PARSERS.get(verb)
        if parser is None:
            logger.debug(f"Unknown command verb: {verb!r}")
            return UnknownCommand(verb=verb)
        return parser(args, prefix)

    # The short form only exists for "add"
    if head_lower == "add":
        return _parse_add(tail, prefix)

    return None
