"""
Novels and chapters.

A novel wraps an uploaded text resource with its rendering style; splitting
it runs the chaptering engine and stores every chapter in one transaction.
"""

from typing import Any, Dict, List, Optional

from novel_video_agent.chaptering import chapter_stats, split_text, DEFAULT_TOLERANCE
from novel_video_agent.errors import InvalidInputError, NotFoundError
from novel_video_agent.resources import open_resource
from novel_video_agent.storage import BlobStore
from novel_video_agent.store import RecordStore
from novel_video_agent.utils.file_utils import decode_text
from novel_video_agent.utils.logger import get_logger
from novel_video_agent.utils.validation import (
    VALID_NARRATION_TYPES,
    VALID_STYLES,
    require_choice,
    require_positive,
)

logger = get_logger(__name__)


def create_novel(store: RecordStore, resource_id: str, user_id: str, style: str = "anime",
                 narration_type: str = "narration", title: Optional[str] = None) -> Dict[str, Any]:
    """Create a novel from a ready text resource.

    Args:
        store: Record store.
        resource_id: Uploaded novel text.
        user_id: Owner.
        style: One of anime, live, mixed.
        narration_type: One of narration, dialogue.
        title: Optional display title; defaults to the resource name.

    Returns:
        The novel record.

    Raises:
        NotFoundError: If the resource does not exist.
        InvalidInputError: If the resource is not ready or style/type is invalid.
    """
    require_choice(style, VALID_STYLES, "style")
    require_choice(narration_type, VALID_NARRATION_TYPES, "narration_type")

    resource = store.get("resources", resource_id)
    if resource is None:
        raise NotFoundError(f"Resource {resource_id} not found")
    if resource["status"] != "ready":
        raise InvalidInputError(f"Resource {resource_id} is {resource['status']}, not ready")

    novel = store.insert("novels", {
        "resource_id": resource_id,
        "user_id": user_id,
        "title": title or resource["name"],
        "style": style,
        "narration_type": narration_type,
        "status": "created",
    })
    logger.info(f"[NOVEL] Created novel {novel['id']} from resource {resource_id}")
    return novel


def get_novel(store: RecordStore, novel_id: str) -> Dict[str, Any]:
    return store.require("novels", novel_id)


def split_novel(store: RecordStore, blobs: BlobStore, novel_id: str, target_chapters: int,
                replace: bool = False, tolerance: float = DEFAULT_TOLERANCE) -> List[Dict[str, Any]]:
    """Split a novel's text into chapters and persist them.

    All chapters are written in a single transaction with sequence 1..N.

    Args:
        store: Record store.
        blobs: Blob store holding the novel text.
        novel_id: Novel to split.
        target_chapters: Desired chapter count.
        replace: Tombstone existing chapters instead of refusing.
        tolerance: Heading tolerance passed to the chaptering engine.

    Returns:
        Chapter records ordered by sequence.

    Raises:
        InvalidInputError: If the novel already has chapters and replace is False,
            or the text cannot be split.
    """
    require_positive(target_chapters, "target_chapters")
    novel = get_novel(store, novel_id)

    existing = store.find("chapters", novel_id=novel_id)
    if existing and not replace:
        raise InvalidInputError(
            f"Novel {novel_id} already has {len(existing)} chapters; pass replace=True to re-split"
        )

    raw = open_resource(store, blobs, novel["resource_id"])
    try:
        text = decode_text(raw)
    except ValueError as e:
        raise InvalidInputError(str(e))

    drafts = split_text(text, target_chapters, tolerance)
    rows = []
    for sequence, draft in enumerate(drafts, start=1):
        rows.append({
            "user_id": novel["user_id"],
            "sequence": sequence,
            "title": draft.title,
            "chapter_text": draft.text,
            **chapter_stats(draft.text),
        })

    chapters = store.supersede("chapters", {"novel_id": novel_id}, rows)
    store.transition("novels", novel_id, "chaptered")
    logger.info(f"[CHAPTER] Split novel {novel_id} into {len(chapters)} chapters (target {target_chapters})")
    return chapters


def get_chapter(store: RecordStore, chapter_id: str) -> Dict[str, Any]:
    return store.require("chapters", chapter_id)


def list_chapters(store: RecordStore, novel_id: str) -> List[Dict[str, Any]]:
    return store.find("chapters", novel_id=novel_id, order_by="sequence")
