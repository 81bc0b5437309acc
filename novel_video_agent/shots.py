"""
Shot editing.

An operator can correct one shot of a chapter's active narration, either
by hand or by asking the structuring provider to rewrite it. The edit is
made in place, so the narration keeps its id and version, and whatever
was derived from the changed fields is tombstoned for the next stage run
to rebuild: a new text drops the shot's audio and the chapter's caption
track, a new visual description or character drops the shot's images.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from pydantic import ValidationError

from novel_video_agent.characters import sync_characters
from novel_video_agent.dependencies import SHOT_EDIT, require_ready
from novel_video_agent.errors import InvalidInputError
from novel_video_agent.models import NarrationContent, Shot, parse_shot_rewrite
from novel_video_agent.narration import get_active_narration, narration_content
from novel_video_agent.providers import StructuringProvider
from novel_video_agent.store import RecordStore
from novel_video_agent.utils.logger import get_logger

logger = get_logger(__name__)

EDITABLE_FIELDS = ("text", "visual_description", "character")

SHOT_REWRITE_SCHEMA = {
    "text": "improved narration line",
    "visual_description": "improved description of the shot image",
    "character": "speaking character, if any",
}


@dataclass
class ShotEdit:
    """Outcome of an edit: the updated narration and what it invalidated."""

    narration: Dict[str, Any]
    shot: Shot
    changed: tuple
    invalidated: Dict[str, int] = field(default_factory=dict)


def _find_shot(content: NarrationContent, scene_number: int, shot_number: int) -> Shot:
    for scene in content.scenes:
        if scene.scene_number != scene_number:
            continue
        for shot in scene.shots:
            if shot.shot_number == shot_number:
                return shot
    raise InvalidInputError(f"Narration has no scene {scene_number} shot {shot_number}")


def _tombstone_all(store: RecordStore, table: str, **filters: Any) -> int:
    return sum(1 for record in store.find(table, **filters) if store.tombstone(table, record["id"]))


def update_shot(store: RecordStore, chapter_id: str, scene_number: int, shot_number: int,
                text: Optional[str] = None, visual_description: Optional[str] = None,
                character: Optional[str] = None) -> ShotEdit:
    """Edit one shot of the chapter's active narration.

    Args:
        store: Record store.
        chapter_id: Chapter whose narration is edited.
        scene_number: Scene of the shot.
        shot_number: Shot within the scene.
        text: New narration line.
        visual_description: New image description.
        character: New speaking character; an empty string clears it.

    Returns:
        ShotEdit with the updated narration record, the changed field names
        and the number of records tombstoned per table.

    Raises:
        PreconditionError: If the chapter has no completed narration.
        InvalidInputError: If no field is given, the shot does not exist or
            the edited shot fails validation.
    """
    require_ready(store, SHOT_EDIT, chapter_id)
    requested = {"text": text, "visual_description": visual_description, "character": character}
    requested = {key: value for key, value in requested.items() if value is not None}
    if not requested:
        raise InvalidInputError(f"Provide at least one of {', '.join(EDITABLE_FIELDS)}")
    if "character" in requested:
        requested["character"] = requested["character"].strip() or None

    narration = get_active_narration(store, chapter_id)
    content = narration_content(narration)
    current = _find_shot(content, scene_number, shot_number)
    try:
        edited = Shot.model_validate({**current.model_dump(), **requested})
    except ValidationError as e:
        raise InvalidInputError(f"Invalid shot edit: {e}")

    changed = tuple(key for key in EDITABLE_FIELDS if getattr(edited, key) != getattr(current, key))
    if not changed:
        return ShotEdit(narration=narration, shot=current, changed=())

    scenes = [
        scene.model_copy(update={"shots": [
            edited if (scene.scene_number, shot.shot_number) == (scene_number, shot_number) else shot
            for shot in scene.shots
        ]})
        for scene in content.scenes
    ]
    updated = content.model_copy(update={"scenes": scenes})
    record = store.update("narrations", narration["id"], {"content": updated.to_json()})

    unit = {"narration_id": narration["id"], "scene_number": scene_number, "shot_number": shot_number}
    invalidated = {}
    if "text" in changed:
        invalidated["audios"] = _tombstone_all(store, "audios", **unit)
        invalidated["subtitles"] = _tombstone_all(store, "subtitles", narration_id=narration["id"])
    if "visual_description" in changed or "character" in changed:
        invalidated["images"] = _tombstone_all(store, "images", chapter_id=chapter_id, **unit)
    if "character" in changed and edited.character:
        chapter = store.require("chapters", chapter_id)
        sync_characters(store, chapter["novel_id"], chapter["user_id"], updated)

    logger.info(f"[SHOT] Chapter {chapter_id} scene {scene_number} shot {shot_number}: "
                f"changed {', '.join(changed)}, invalidated {invalidated}")
    return ShotEdit(narration=record, shot=edited, changed=changed, invalidated=invalidated)


def build_rewrite_instructions(shot: Shot, scene_number: int) -> str:
    """System prompt asking the structuring provider to improve one shot."""
    current = {
        "text": shot.text,
        "visual_description": shot.visual_description,
        "character": shot.character or "",
    }
    return (
        f"Improve shot {shot.shot_number} of scene {scene_number} of a video script adapted "
        f"from the chapter below. Keep it faithful to the chapter, make the narration line "
        f"natural to read aloud and the visual description concrete enough to draw.\n"
        f"Current shot:\n{json.dumps(current, ensure_ascii=False, indent=2)}\n"
        f"Respond with JSON only, matching this shape:\n"
        f"{json.dumps(SHOT_REWRITE_SCHEMA, ensure_ascii=False, indent=2)}"
    )


def regenerate_shot(store: RecordStore, provider: StructuringProvider, chapter_id: str,
                    scene_number: int, shot_number: int) -> ShotEdit:
    """Ask the structuring provider to rewrite one shot, then apply it with update_shot.

    Nothing changes when the provider call fails or its output is unusable.

    Raises:
        PreconditionError: If the chapter has no completed narration.
        InvalidInputError: If the shot does not exist.
        MalformedOutputError: If the rewrite is not usable JSON.
        ProviderError: If the provider call fails.
    """
    require_ready(store, SHOT_EDIT, chapter_id)
    chapter = store.require("chapters", chapter_id)
    content = narration_content(get_active_narration(store, chapter_id))
    shot = _find_shot(content, scene_number, shot_number)

    raw = provider.structure(chapter["chapter_text"], build_rewrite_instructions(shot, scene_number))
    rewrite = parse_shot_rewrite(raw)
    logger.info(f"[SHOT] Provider rewrote chapter {chapter_id} scene {scene_number} shot {shot_number}")
    return update_shot(store, chapter_id, scene_number, shot_number, **rewrite.changes())
