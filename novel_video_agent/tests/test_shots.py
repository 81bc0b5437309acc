"""
Tests for editing and regenerating single shots.
"""

import json

import pytest

from novel_video_agent.audio import failed_audio_units, generate_audios, list_audios, retry_failed_audios
from novel_video_agent.characters import character_registry
from novel_video_agent.errors import (
    InvalidInputError,
    MalformedOutputError,
    PreconditionError,
    TransientProviderError,
)
from novel_video_agent.images import generate_images, list_image_versions
from novel_video_agent.narration import get_active_narration, narration_content
from novel_video_agent.shots import regenerate_shot, update_shot
from novel_video_agent.subtitles import generate_subtitle, get_active_subtitle
from novel_video_agent.tests.conftest import FakeImageProvider, FakeSpeechProvider, FakeStructuringProvider


@pytest.fixture
def produced_chapter(store, blobs, narrated_chapter):
    """Narrated chapter with every audio, the caption track and one image version."""
    generate_audios(store, blobs, FakeSpeechProvider(), narrated_chapter["id"])
    generate_subtitle(store, blobs, narrated_chapter["id"])
    generate_images(store, blobs, FakeImageProvider(), narrated_chapter["id"])
    return narrated_chapter


def shot_of(store, chapter_id, scene_number, shot_number):
    content = narration_content(get_active_narration(store, chapter_id))
    [shot] = [s for scene in content.scenes if scene.scene_number == scene_number
              for s in scene.shots if s.shot_number == shot_number]
    return shot


class TestUpdateShot:
    """Tests for update_shot function."""

    def test_text_edit_drops_audio_and_captions(self, store, blobs, produced_chapter) -> None:
        # Arrange
        chapter_id = produced_chapter["id"]
        before = get_active_narration(store, chapter_id)

        # Act
        edit = update_shot(store, chapter_id, 2, 1, text="A sharper line.")

        # Assert
        after = get_active_narration(store, chapter_id)
        assert (after["id"], after["version"]) == (before["id"], before["version"])
        assert shot_of(store, chapter_id, 2, 1).text == "A sharper line."
        assert edit.changed == ("text",)
        assert edit.invalidated == {"audios": 1, "subtitles": 1}
        assert get_active_subtitle(store, after["id"]) is None
        assert len(list_audios(store, after["id"])) == 5
        assert len(list_image_versions(store, chapter_id, 2, 1)) == 1

    def test_retry_resynthesizes_edited_shot_only(self, store, blobs, produced_chapter) -> None:
        # Arrange
        update_shot(store, produced_chapter["id"], 2, 1, text="A sharper line.")
        provider = FakeSpeechProvider()

        # Act
        units = failed_audio_units(store, produced_chapter["id"])
        result = retry_failed_audios(store, blobs, provider, produced_chapter["id"])

        # Assert
        assert units == [(2, 1)]
        assert provider.calls == ["A sharper line."]
        assert result.ok

    def test_visual_edit_drops_images_only(self, store, blobs, produced_chapter) -> None:
        # Arrange
        chapter_id = produced_chapter["id"]
        narration = get_active_narration(store, chapter_id)
        provider = FakeImageProvider()

        # Act
        edit = update_shot(store, chapter_id, 1, 2, visual_description="A lantern in the rain")
        generate_images(store, blobs, provider, chapter_id, units=[(1, 2)])

        # Assert
        assert edit.invalidated == {"images": 1}
        assert get_active_subtitle(store, narration["id"]) is not None
        assert len(list_audios(store, narration["id"])) == 6
        assert provider.calls[0].endswith("A lantern in the rain")
        assert [i["version"] for i in list_image_versions(store, chapter_id, 1, 2)] == [2]

    def test_character_edit_registers_character(self, store, blobs, produced_chapter) -> None:
        # Act
        edit = update_shot(store, produced_chapter["id"], 3, 2, character="Lin")

        # Assert
        assert edit.changed == ("character",)
        assert edit.invalidated == {"images": 1}
        assert "Lin" in character_registry(store, produced_chapter["novel_id"])

    def test_empty_character_clears_it(self, store, narrated_chapter) -> None:
        # Arrange
        update_shot(store, narrated_chapter["id"], 1, 1, character="Lin")

        # Act
        edit = update_shot(store, narrated_chapter["id"], 1, 1, character="")

        # Assert
        assert edit.changed == ("character",)
        assert shot_of(store, narrated_chapter["id"], 1, 1).character is None

    def test_same_values_change_nothing(self, store, produced_chapter) -> None:
        # Act
        edit = update_shot(store, produced_chapter["id"], 1, 1, text="Scene 1 shot 1 line.")

        # Assert
        assert edit.changed == ()
        assert edit.invalidated == {}
        assert failed_audio_units(store, produced_chapter["id"]) == []

    def test_requires_a_field(self, store, narrated_chapter) -> None:
        with pytest.raises(InvalidInputError):
            update_shot(store, narrated_chapter["id"], 1, 1)

    def test_unknown_shot(self, store, narrated_chapter) -> None:
        with pytest.raises(InvalidInputError):
            update_shot(store, narrated_chapter["id"], 4, 1, text="Nowhere.")

    def test_blank_text_rejected(self, store, narrated_chapter) -> None:
        # Act
        with pytest.raises(InvalidInputError):
            update_shot(store, narrated_chapter["id"], 1, 1, text="   ")

        # Assert
        assert shot_of(store, narrated_chapter["id"], 1, 1).text == "Scene 1 shot 1 line."

    def test_requires_completed_narration(self, store, chapter) -> None:
        with pytest.raises(PreconditionError) as exc_info:
            update_shot(store, chapter["id"], 1, 1, text="Hello.")
        assert exc_info.value.stage == "shot_edit"


class TestRegenerateShot:
    """Tests for regenerate_shot function."""

    def test_applies_provider_rewrite(self, store, produced_chapter) -> None:
        # Arrange
        provider = FakeStructuringProvider(response=json.dumps({
            "text": "The wind dies down.",
            "visualDescription": "Still reeds by a river",
        }))

        # Act
        edit = regenerate_shot(store, provider, produced_chapter["id"], 1, 1)

        # Assert
        chapter_text, instructions = provider.calls[0]
        assert chapter_text == produced_chapter["chapter_text"]
        assert "Scene 1 shot 1 line." in instructions
        assert edit.changed == ("text", "visual_description")
        assert shot_of(store, produced_chapter["id"], 1, 1).visual_description == "Still reeds by a river"
        assert set(edit.invalidated) == {"audios", "subtitles", "images"}

    def test_malformed_rewrite_changes_nothing(self, store, produced_chapter) -> None:
        # Arrange
        provider = FakeStructuringProvider(response='{"text": "  "}')

        # Act
        with pytest.raises(MalformedOutputError):
            regenerate_shot(store, provider, produced_chapter["id"], 1, 1)

        # Assert
        assert shot_of(store, produced_chapter["id"], 1, 1).text == "Scene 1 shot 1 line."
        assert failed_audio_units(store, produced_chapter["id"]) == []

    def test_provider_error_changes_nothing(self, store, produced_chapter) -> None:
        # Arrange
        provider = FakeStructuringProvider(error=TransientProviderError("structuring", "HTTP 503", 503))

        # Act
        with pytest.raises(TransientProviderError):
            regenerate_shot(store, provider, produced_chapter["id"], 1, 1)

        # Assert
        assert shot_of(store, produced_chapter["id"], 1, 1).text == "Scene 1 shot 1 line."

    def test_unknown_shot_skips_provider(self, store, narrated_chapter) -> None:
        # Arrange
        provider = FakeStructuringProvider()

        # Act
        with pytest.raises(InvalidInputError):
            regenerate_shot(store, provider, narrated_chapter["id"], 9, 9)

        # Assert
        assert provider.calls == []
