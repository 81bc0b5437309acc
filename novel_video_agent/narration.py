"""
Narration generator.

Turns chapter text into a structured narration (scenes of shots) through the
structuring provider. Regeneration supersedes: the previous narration is
tombstoned and a new version becomes the chapter's single active narration.
"""

import json
from typing import Any, Dict, List, Optional

from novel_video_agent.characters import sync_characters
from novel_video_agent.dependencies import require_ready
from novel_video_agent.errors import InvalidInputError
from novel_video_agent.models import NarrationContent, parse_narration
from novel_video_agent.providers import StructuringProvider
from novel_video_agent.store import RecordStore
from novel_video_agent.utils.logger import get_logger

logger = get_logger(__name__)

NARRATION_SCHEMA = {
    "characters": [
        {
            "name": "character name as used on shots",
            "gender": "optional",
            "age_group": "optional",
            "description": "optional stable appearance: face, hair, clothing",
        }
    ],
    "scenes": [
        {
            "scene_number": 1,
            "shots": [
                {
                    "shot_number": 1,
                    "text": "narration line read aloud",
                    "visual_description": "what the image for this shot shows",
                    "character": "optional speaking character",
                }
            ],
        }
    ]
}

STYLE_HINTS = {
    "anime": "Describe visuals as anime-style illustrations.",
    "live": "Describe visuals as photorealistic live-action frames.",
    "mixed": "Describe visuals mixing illustrated and photorealistic elements.",
}


def build_instructions(style: str, narration_type: str, chapter_sequence: int) -> str:
    """System prompt for the structuring provider."""
    mode = ("a third-person narrator retelling the chapter" if narration_type == "narration"
            else "dialogue lines spoken by the characters, with a narrator where needed")
    return (
        f"You adapt chapter {chapter_sequence} of a novel into a short video script "
        f"written as {mode}. Split it into numbered scenes, each with numbered shots. "
        f"Every shot needs a non-empty narration text and a visual description. "
        f"List the recurring characters with their appearance. "
        f"{STYLE_HINTS.get(style, '')}\n"
        f"Respond with JSON only, matching this shape:\n"
        f"{json.dumps(NARRATION_SCHEMA, ensure_ascii=False, indent=2)}"
    )


def _new_pending(store: RecordStore, chapter: Dict[str, Any]) -> Dict[str, Any]:
    # Tombstone the current narration and insert the next version atomically
    return store.supersede(
        "narrations",
        {"chapter_id": chapter["id"]},
        [{"user_id": chapter["user_id"], "status": "pending"}],
        versioned=True,
    )[0]


def generate_narration(store: RecordStore, provider: StructuringProvider,
                       chapter_id: str) -> Dict[str, Any]:
    """Generate (or regenerate) the narration for a chapter.

    Args:
        store: Record store.
        provider: Structuring provider.
        chapter_id: Chapter to narrate.

    Returns:
        The completed narration record.

    Raises:
        PreconditionError: If the chapter is missing or empty.
        MalformedOutputError: If the provider output fails validation. The
            narration is marked failed first.
        ProviderError: If the provider call fails. The narration is marked
            failed first, as it is for any other error.
    """
    require_ready(store, "narration", chapter_id)
    chapter = store.require("chapters", chapter_id)
    novel = store.require("novels", chapter["novel_id"])

    record = _new_pending(store, chapter)
    logger.info(f"[NARRATION] Generating version {record['version']} for chapter {chapter_id}")

    instructions = build_instructions(novel["style"], novel["narration_type"], chapter["sequence"])
    try:
        raw = provider.structure(chapter["chapter_text"], instructions)
        content = parse_narration(raw)
    except Exception as e:
        logger.warning(f"[NARRATION] Chapter {chapter_id} failed: {e}")
        store.transition("narrations", record["id"], "failed", error_message=str(e))
        raise

    completed = store.transition("narrations", record["id"], "completed", content=content.to_json())
    sync_characters(store, novel["id"], chapter["user_id"], content)
    logger.info(f"[NARRATION] Chapter {chapter_id}: {len(content.scenes)} scenes, "
                f"{content.shot_count} shots")
    return completed


def manual_narration(store: RecordStore, chapter_id: str, content_json: str) -> Dict[str, Any]:
    """Store an operator-supplied narration document.

    The document is validated before anything changes, then stored under
    the same supersede policy as generated narrations.

    Raises:
        PreconditionError: If the chapter is missing or empty.
        MalformedOutputError: If the document fails validation.
    """
    require_ready(store, "narration", chapter_id)
    content = parse_narration(content_json)
    chapter = store.require("chapters", chapter_id)
    record = _new_pending(store, chapter)
    logger.info(f"[NARRATION] Stored manual narration version {record['version']} for chapter {chapter_id}")
    completed = store.transition("narrations", record["id"], "completed", content=content.to_json())
    sync_characters(store, chapter["novel_id"], chapter["user_id"], content)
    return completed


def get_active_narration(store: RecordStore, chapter_id: str) -> Optional[Dict[str, Any]]:
    narrations = store.find("narrations", chapter_id=chapter_id)
    return narrations[0] if narrations else None


def list_narration_versions(store: RecordStore, chapter_id: str) -> List[Dict[str, Any]]:
    """Every narration ever generated for a chapter, tombstoned included, oldest first."""
    return store.find("narrations", chapter_id=chapter_id, include_deleted=True, order_by="version")


def narration_content(narration: Dict[str, Any]) -> NarrationContent:
    """Validated content of a completed narration record."""
    if narration["status"] != "completed" or not narration["content"]:
        raise InvalidInputError(f"Narration {narration['id']} is {narration['status']}, not completed")
    return parse_narration(narration["content"])
