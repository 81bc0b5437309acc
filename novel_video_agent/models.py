"""
Narration document schema.

A narration is an ordered list of scenes, each an ordered list of shots.
Provider output and operator-supplied documents are both validated
against these models before anything is persisted.
"""

import json
from typing import Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from novel_video_agent.errors import MalformedOutputError
from novel_video_agent.utils.validation import clean_json_content


class Shot(BaseModel):
    """Smallest narration unit: a line of narration plus what to show."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    shot_number: int = Field(gt=0, alias="shotNumber")
    text: str
    visual_description: str = Field(alias="visualDescription")
    character: Optional[str] = None

    @field_validator("text", "visual_description")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must be non-empty")
        return value.strip()


class Scene(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    scene_number: int = Field(gt=0, alias="sceneNumber")
    shots: List[Shot] = Field(min_length=1)

    @model_validator(mode="after")
    def _unique_shots(self) -> "Scene":
        numbers = [shot.shot_number for shot in self.shots]
        if len(numbers) != len(set(numbers)):
            raise ValueError(f"duplicate shot numbers in scene {self.scene_number}")
        return self


class NarrationCharacter(BaseModel):
    """A character the narration declares, with optional appearance traits."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str
    gender: Optional[str] = None
    age_group: Optional[str] = Field(default=None, alias="ageGroup")
    description: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must be non-empty")
        return value.strip()


class NarrationContent(BaseModel):
    """Structured narration for one chapter."""

    model_config = ConfigDict(extra="ignore")

    scenes: List[Scene] = Field(min_length=1)
    characters: List[NarrationCharacter] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_scenes(self) -> "NarrationContent":
        numbers = [scene.scene_number for scene in self.scenes]
        if len(numbers) != len(set(numbers)):
            raise ValueError("duplicate scene numbers")
        return self

    def ordered(self) -> "NarrationContent":
        """Copy with scenes and shots sorted by their numbers."""
        scenes = [
            scene.model_copy(update={"shots": sorted(scene.shots, key=lambda s: s.shot_number)})
            for scene in sorted(self.scenes, key=lambda s: s.scene_number)
        ]
        return self.model_copy(update={"scenes": scenes})

    @property
    def shot_count(self) -> int:
        return sum(len(scene.shots) for scene in self.scenes)

    def to_json(self) -> str:
        return self.model_dump_json()


def iter_shots(content: NarrationContent) -> Iterator[Tuple[int, int, Shot]]:
    """Yield (scene_number, shot_number, shot) in source order.

    Examples:
        >>> [(s, n) for s, n, _ in iter_shots(content)]
        [(1, 1), (1, 2), (2, 1)]
    """
    for scene in content.ordered().scenes:
        for shot in scene.shots:
            yield scene.scene_number, shot.shot_number, shot


def parse_narration(raw: str) -> NarrationContent:
    """Parse and validate a narration document.

    Accepts raw provider output, including Markdown fenced JSON. A bare
    list of scenes is accepted as shorthand for {"scenes": [...]}.

    Args:
        raw: JSON text.

    Returns:
        Validated content with scenes and shots in numeric order.

    Raises:
        MalformedOutputError: If the text is not JSON or fails the schema.
    """
    if raw is None or not raw.strip():
        raise MalformedOutputError("Narration output is empty")

    cleaned = raw.strip()
    if not cleaned.startswith("["):
        cleaned = clean_json_content(cleaned)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise MalformedOutputError(f"Narration output is not valid JSON: {e}")

    if isinstance(data, list):
        data = {"scenes": data}

    try:
        content = NarrationContent.model_validate(data)
    except ValidationError as e:
        raise MalformedOutputError(f"Narration output failed validation: {e}")
    return content.ordered()


class ShotRewrite(BaseModel):
    """Replacement fields for one shot; empty fields keep the current value."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    text: Optional[str] = None
    visual_description: Optional[str] = Field(default=None, alias="visualDescription")
    character: Optional[str] = None

    def changes(self) -> Dict[str, str]:
        return {key: value.strip() for key, value in self.model_dump().items()
                if isinstance(value, str) and value.strip()}


def parse_shot_rewrite(raw: str) -> ShotRewrite:
    """Parse a provider's rewrite of a single shot.

    Raises:
        MalformedOutputError: If the text is not a JSON object, fails the
            schema, or carries no usable field.
    """
    if raw is None or not raw.strip():
        raise MalformedOutputError("Shot rewrite is empty")
    try:
        data = json.loads(clean_json_content(raw.strip()))
    except json.JSONDecodeError as e:
        raise MalformedOutputError(f"Shot rewrite is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise MalformedOutputError("Shot rewrite is not a JSON object")
    try:
        rewrite = ShotRewrite.model_validate(data)
    except ValidationError as e:
        raise MalformedOutputError(f"Shot rewrite failed validation: {e}")
    if not rewrite.changes():
        raise MalformedOutputError("Shot rewrite has no text, visual_description or character")
    return rewrite
