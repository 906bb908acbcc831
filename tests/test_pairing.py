"""
Unit tests for item classification and media pairing.
"""

from dwag_relay.domain.commands import AddCommand
from dwag_relay.domain.conversation import Conversation, InboundItem, ItemKind
from dwag_relay.usecases.pairing import (
    Classification,
    classify_conversation,
    classify_item,
    find_preceding_media,
    is_link,
)

from conftest import media_item, text_item


class TestClassifyItem:
    """Tests for classify_item."""

    def test_media_item(self):
        entry = classify_item(media_item("1", "m1", 1000))

        assert entry.classification == Classification.MEDIA
        assert entry.media_ref == "m1"

    def test_media_without_reference_is_other(self):
        item = InboundItem(item_id="1", kind=ItemKind.MEDIA)

        assert classify_item(item).classification == Classification.OTHER

    def test_command(self):
        entry = classify_item(text_item("1", "add skit funny walk", 1000))

        assert entry.classification == Classification.COMMAND
        assert entry.command == AddCommand(type="skit", idea="funny walk")

    def test_share_link_is_media(self):
        """Test a pasted link counts as shared media."""
        entry = classify_item(text_item("1", " https://www.instagram.com/reel/abc/ ", 1000))

        assert entry.classification == Classification.MEDIA
        assert entry.media_ref == "https://www.instagram.com/reel/abc/"

    def test_chatter_is_other(self):
        assert classify_item(text_item("1", "lol", 1000)).classification == Classification.OTHER

    def test_unknown_kind_is_other(self):
        """Test unrecognized provider kinds fall back to other."""
        item = InboundItem.model_validate({"itemId": "1", "kind": "sticker", "timestampMicros": 5})

        assert item.kind == ItemKind.OTHER
        assert classify_item(item).classification == Classification.OTHER

    def test_is_link(self):
        assert is_link("http://a.b/c")
        assert not is_link("look at http://a.b/c")
        assert not is_link(None)


class TestFindPrecedingMedia:
    """Tests for find_preceding_media."""

    def test_example_pairing(self):
        """Test a command pairs with the media shared right before it."""
        classified = classify_conversation([
            media_item("1", "m1", 1000),
            text_item("2", "add skit funny walk", 2000),
        ])

        media = find_preceding_media(classified, 1)

        assert media is not None
        assert media.media_ref == "m1"

    def test_pairs_with_nearest_media(self):
        """Test the most recent media before the command wins."""
        classified = classify_conversation([
            media_item("1", "m1", 1000),
            text_item("2", "nice", 1500),
            media_item("3", "m2", 2000),
            text_item("4", "add meme good one", 3000),
        ])

        assert find_preceding_media(classified, 3).media_ref == "m2"

    def test_ignores_media_after_command(self):
        """Test media shared after the command is never used."""
        classified = classify_conversation([
            text_item("1", "add skit too early", 1000),
            media_item("2", "m1", 2000),
        ])

        assert find_preceding_media(classified, 0) is None

    def test_each_command_pairs_independently(self):
        """Test two commands after one media both pair with it."""
        classified = classify_conversation([
            media_item("1", "m1", 1000),
            text_item("2", "add skit first", 2000),
            text_item("3", "add meme second", 3000),
        ])

        assert find_preceding_media(classified, 1).media_ref == "m1"
        assert find_preceding_media(classified, 2).media_ref == "m1"

    def test_no_media(self):
        classified = classify_conversation([text_item("1", "add skit idea", 1000)])

        assert find_preceding_media(classified, 0) is None

    def test_index_out_of_range(self):
        classified = classify_conversation([media_item("1", "m1", 1000)])

        assert find_preceding_media(classified, 5).media_ref == "m1"


class TestConversationSchema:
    """Tests for the inbound conversation schema."""

    def test_parses_camel_case_payload(self):
        conversation = Conversation.model_validate({
            "conversationId": "c1",
            "participant": "alice",
            "items": [
                {"itemId": "i1", "authorId": "alice", "timestampMicros": 2_500_000,
                 "kind": "media", "mediaRef": "m1", "metadata": {"title": "clip"}},
            ],
        })

        item = conversation.items[0]
        assert item.media_ref == "m1"
        assert item.timestamp_millis == 2500
        assert item.metadata == {"title": "clip"}
