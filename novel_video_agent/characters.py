"""
Character registry.

Characters a chapter's narration declares or gives lines to are synced
into a per-novel registry keyed by name. Image prompts read the registry
so a character is described the same way in every chapter.
"""

from typing import Any, Dict, List

from novel_video_agent.models import NarrationContent, iter_shots
from novel_video_agent.store import RecordStore
from novel_video_agent.utils.logger import get_logger

logger = get_logger(__name__)

TRAIT_FIELDS = ("gender", "age_group", "description")


def sync_characters(store: RecordStore, novel_id: str, user_id: str,
                    content: NarrationContent) -> List[Dict[str, Any]]:
    """Merge a narration's characters into the novel's registry.

    Declared characters contribute their non-empty traits, which overwrite
    the registered ones. Names that only appear on shots are registered
    without traits; an existing entry keeps its traits.

    Args:
        store: Record store.
        novel_id: Novel the registry belongs to.
        user_id: Owner of newly registered characters.
        content: Validated narration content.

    Returns:
        The registry after the sync, ordered by name.
    """
    traits: Dict[str, Dict[str, str]] = {}
    for character in content.characters:
        entry = traits.setdefault(character.name, {})
        for field in TRAIT_FIELDS:
            value = getattr(character, field)
            if value and value.strip():
                entry[field] = value.strip()
    for _, _, shot in iter_shots(content):
        if shot.character and shot.character.strip():
            traits.setdefault(shot.character.strip(), {})

    for name, values in traits.items():
        store.upsert("characters", {"novel_id": novel_id, "name": name},
                     {"user_id": user_id, **values})
    if traits:
        logger.info(f"[CHARACTER] Synced {len(traits)} character(s) for novel {novel_id}")
    return list_characters(store, novel_id)


def list_characters(store: RecordStore, novel_id: str) -> List[Dict[str, Any]]:
    return store.find("characters", novel_id=novel_id, order_by="name")


def character_registry(store: RecordStore, novel_id: str) -> Dict[str, Dict[str, Any]]:
    """Registered characters of a novel keyed by name."""
    return {character["name"]: character for character in list_characters(store, novel_id)}


def describe_character(character: Dict[str, Any]) -> str:
    """Comma-joined traits of a registry entry, empty when it has none.

    Examples:
        >>> describe_character({"gender": "female", "age_group": "teen", "description": None})
        'female, teen'
    """
    return ", ".join(character[field] for field in TRAIT_FIELDS if character.get(field))
