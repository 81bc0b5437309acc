"""
Tests for the character registry.
"""

from novel_video_agent.characters import (
    character_registry,
    describe_character,
    list_characters,
    sync_characters,
)
from novel_video_agent.models import NarrationContent
from novel_video_agent.tests.conftest import narration_document


def content_with(characters=(), speakers=()) -> NarrationContent:
    document = narration_document(1, max(len(speakers), 1))
    document["characters"] = list(characters)
    for shot, speaker in zip(document["scenes"][0]["shots"], speakers):
        shot["character"] = speaker
    return NarrationContent.model_validate(document)


class TestSyncCharacters:
    """Tests for sync_characters function."""

    def test_registers_declared_and_speaking_characters(self, store, novel) -> None:
        # Arrange
        content = content_with(
            characters=[{"name": "Lin", "gender": "female", "description": "red scarf"}],
            speakers=["Lin", "Old Wu"],
        )

        # Act
        registry = sync_characters(store, novel["id"], "user-1", content)

        # Assert
        assert [c["name"] for c in registry] == ["Lin", "Old Wu"]
        assert registry[0]["gender"] == "female"
        assert registry[0]["description"] == "red scarf"
        assert registry[1]["gender"] is None
        assert all(c["user_id"] == "user-1" for c in registry)

    def test_later_chapter_merges_traits(self, store, novel) -> None:
        """Test that new traits overwrite, and missing ones keep the registered value."""
        # Arrange
        sync_characters(store, novel["id"], "user-1", content_with(
            characters=[{"name": "Lin", "gender": "female", "ageGroup": "teen"}]))

        # Act
        sync_characters(store, novel["id"], "user-1", content_with(
            characters=[{"name": "Lin", "age_group": "adult", "description": "  "}], speakers=["Lin"]))

        # Assert
        [lin] = list_characters(store, novel["id"])
        assert (lin["gender"], lin["age_group"], lin["description"]) == ("female", "adult", None)

    def test_speaker_only_mention_keeps_traits(self, store, novel) -> None:
        # Arrange
        sync_characters(store, novel["id"], "user-1", content_with(
            characters=[{"name": "Lin", "description": "red scarf"}]))

        # Act
        sync_characters(store, novel["id"], "user-1", content_with(speakers=["Lin"]))

        # Assert
        assert character_registry(store, novel["id"])["Lin"]["description"] == "red scarf"

    def test_nothing_to_sync(self, store, novel) -> None:
        assert sync_characters(store, novel["id"], "user-1", content_with()) == []


class TestDescribeCharacter:
    def test_joins_present_traits(self) -> None:
        assert describe_character({"gender": "male", "age_group": None, "description": "grey beard"}) == \
            "male, grey beard"

    def test_no_traits(self) -> None:
        assert describe_character({"name": "Lin"}) == ""
