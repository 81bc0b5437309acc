"""
Image generator.

Renders one image per narration shot. Every invocation for a chapter gets
the next chapter-wide version, assigned to all of its rows in one atomic
read-max-then-insert, so earlier versions stay available for comparison
and rollback.
"""

import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple

from novel_video_agent.characters import character_registry, describe_character
from novel_video_agent.dependencies import require_ready
from novel_video_agent.errors import (
    BatchResult,
    InvalidInputError,
    OperationCancelled,
    UnitFailure,
    is_transient,
)
from novel_video_agent.models import Shot, iter_shots
from novel_video_agent.narration import get_active_narration, narration_content
from novel_video_agent.providers import ImageProvider
from novel_video_agent.resources import upload_resource
from novel_video_agent.storage import BlobStore
from novel_video_agent.store import RecordStore
from novel_video_agent.utils.concurrency import mark_unstarted_failed, run_bounded
from novel_video_agent.utils.logger import get_logger

logger = get_logger(__name__)

Unit = Tuple[int, int]

STYLE_PROMPTS = {
    "anime": "anime illustration, detailed, vibrant colors",
    "live": "photorealistic film still, cinematic lighting",
    "mixed": "semi-realistic digital painting, cinematic",
}


def build_image_prompt(style: str, shot: Shot, characters: Optional[Dict[str, Dict[str, Any]]] = None) -> str:
    """Join the novel style with the shot's visual description.

    A shot character found in the novel's character registry is described
    with its registered appearance so it looks the same across chapters.

    Examples:
        >>> build_image_prompt("anime", shot)
        'anime illustration, detailed, vibrant colors. A girl on a rooftop at dusk'
    """
    prefix = STYLE_PROMPTS.get(style, "")
    parts = [prefix, shot.visual_description]
    if shot.character:
        entry = (characters or {}).get(shot.character.strip())
        traits = describe_character(entry) if entry else ""
        parts.append(f"featuring {shot.character} ({traits})" if traits else f"featuring {shot.character}")
    return ". ".join(p for p in parts if p)


def generate_images(store: RecordStore, blobs: BlobStore, provider: ImageProvider, chapter_id: str,
                    units: Optional[Iterable[Unit]] = None, max_workers: int = 4,
                    cancel_event: Optional[threading.Event] = None) -> BatchResult:
    """Generate a new image version for each shot of the active narration.

    Args:
        store: Record store.
        blobs: Blob store for the images.
        provider: Image provider.
        chapter_id: Chapter to illustrate.
        units: (scene_number, shot_number) pairs to render; None means every shot.
        max_workers: Bound on concurrent provider calls.
        cancel_event: Drops units that have not started and returns without
            waiting on in-flight provider calls.

    Returns:
        BatchResult with completed records in scene/shot order and one
        UnitFailure per failed shot.

    Raises:
        PreconditionError: If the narration is not completed.
        OperationCancelled: If cancel_event fires. Finished units stay persisted.
    """
    require_ready(store, "image", chapter_id)
    narration = get_active_narration(store, chapter_id)
    content = narration_content(narration)
    novel = store.require("novels", store.require("chapters", chapter_id)["novel_id"])
    shots = {(scene, number): shot for scene, number, shot in iter_shots(content)}

    selected = list(shots) if units is None else list(dict.fromkeys(units))
    for unit in selected:
        if unit not in shots:
            raise InvalidInputError(f"Narration {narration['id']} has no scene {unit[0]} shot {unit[1]}")

    if not selected:
        return BatchResult(stage="image")

    characters = character_registry(store, novel["id"])
    # One chapter-wide version for the whole invocation
    records = store.insert_versioned("images", {"chapter_id": chapter_id}, [
        {
            "narration_id": narration["id"],
            "user_id": narration["user_id"],
            "scene_number": scene_number,
            "shot_number": shot_number,
            "prompt": build_image_prompt(novel["style"], shots[(scene_number, shot_number)], characters),
            "status": "pending",
        }
        for scene_number, shot_number in selected
    ])
    logger.info(f"[IMAGE] Rendering {len(records)} shot(s) for chapter {chapter_id} "
                f"as version {records[0]['version']}")

    def render(record: Dict[str, Any]) -> Dict[str, Any]:
        try:
            image = provider.generate_image(record["prompt"])
            resource = upload_resource(
                store, blobs, narration["user_id"],
                f"image_s{record['scene_number']:03d}_{record['shot_number']:03d}"
                f"_v{record['version']}.{image.ext}",
                image.image,
            )
        except Exception as e:
            store.transition("images", record["id"], "failed", error_message=str(e))
            raise
        return store.transition("images", record["id"], "completed",
                                storage_key=resource["storage_key"], resource_id=resource["id"])

    try:
        outcomes = run_bounded(records, render, max_workers, cancel_event)
    except OperationCancelled as e:
        mark_unstarted_failed(store, "images", e.unstarted)
        raise

    result = BatchResult(stage="image")
    for record, completed, error in outcomes:
        if error is None:
            result.records.append(completed)
            continue
        logger.warning(f"[IMAGE] Scene {record['scene_number']} shot {record['shot_number']} "
                       f"v{record['version']} failed: {error}")
        result.failures.append(UnitFailure(
            scene_number=record["scene_number"], shot_number=record["shot_number"],
            message=str(error), transient=is_transient(error),
        ))

    logger.info(f"[IMAGE] {result.summary()}")
    return result


def list_image_versions(store: RecordStore, chapter_id: str, scene_number: int,
                        shot_number: int) -> List[Dict[str, Any]]:
    """Every version for one shot, oldest first."""
    return store.find("images", chapter_id=chapter_id, scene_number=scene_number,
                      shot_number=shot_number, order_by="version")


def list_images(store: RecordStore, chapter_id: str, version: Optional[int] = None) -> List[Dict[str, Any]]:
    filters = {"chapter_id": chapter_id}
    if version is not None:
        filters["version"] = version
    return store.find("images", order_by="scene_number, shot_number, version", **filters)


def latest_completed_images(store: RecordStore, narration_id: str) -> Dict[Unit, Dict[str, Any]]:
    """Newest completed image per (scene, shot) of a narration."""
    latest: Dict[Unit, Dict[str, Any]] = {}
    for image in store.find("images", narration_id=narration_id, status="completed", order_by="version"):
        latest[(image["scene_number"], image["shot_number"])] = image
    return latest
