"""
Stage dependency checker.

can_run() re-reads live status from the record store and reports every
unmet prerequisite of a stage for one chapter, so callers can tell the
operator exactly which upstream stage to run first. Every generator
calls require_ready() before doing any work.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from novel_video_agent.errors import MalformedOutputError, MissingDependency, PreconditionError
from novel_video_agent.models import NarrationContent, iter_shots, parse_narration
from novel_video_agent.storage import BlobStore
from novel_video_agent.store import RecordStore

STAGES = ("narration", "audio", "subtitle", "image", "narration_video", "final_video")
# Not a pipeline stage: editing a shot only needs a completed narration
SHOT_EDIT = "shot_edit"


@dataclass
class Readiness:
    """Result of a dependency check: ok, or the list of what is missing."""

    stage: str
    chapter_id: str
    missing: List[MissingDependency] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing

    def __bool__(self) -> bool:
        return self.ok

    def require(self) -> "Readiness":
        if self.missing:
            raise PreconditionError(self.stage, self.missing)
        return self


@dataclass
class _Context:
    """Records loaded once per check and shared by the stage rules."""

    store: RecordStore
    chapter_id: str
    chapter: Optional[Dict[str, Any]] = None
    narration: Optional[Dict[str, Any]] = None
    content: Optional[NarrationContent] = None


def _load(store: RecordStore, chapter_id: str) -> _Context:
    ctx = _Context(store=store, chapter_id=chapter_id)
    ctx.chapter = store.get("chapters", chapter_id)
    if ctx.chapter is None:
        return ctx
    narrations = store.find("narrations", chapter_id=chapter_id)
    ctx.narration = narrations[0] if narrations else None
    if ctx.narration and ctx.narration["status"] == "completed" and ctx.narration["content"]:
        try:
            ctx.content = parse_narration(ctx.narration["content"])
        except MalformedOutputError:
            ctx.content = None
    return ctx


def _check_chapter(ctx: _Context, missing: List[MissingDependency]) -> bool:
    if ctx.chapter is None:
        missing.append(MissingDependency("chapter", f"chapter {ctx.chapter_id} does not exist"))
        return False
    return True


def _check_narration(ctx: _Context, missing: List[MissingDependency]) -> bool:
    if not _check_chapter(ctx, missing):
        return False
    if ctx.narration is None:
        missing.append(MissingDependency("narration", "no active narration"))
        return False
    if ctx.narration["status"] != "completed":
        missing.append(MissingDependency("narration", f"status is {ctx.narration['status']}, not completed"))
        return False
    if ctx.content is None:
        missing.append(MissingDependency("narration", "content is missing or invalid"))
        return False
    return True


def _check_audios(ctx: _Context, missing: List[MissingDependency]) -> None:
    audios = {
        (a["scene_number"], a["shot_number"]): a
        for a in ctx.store.find("audios", narration_id=ctx.narration["id"])
    }
    for scene_number, shot_number, _ in iter_shots(ctx.content):
        unit = f"scene {scene_number} shot {shot_number}"
        audio = audios.get((scene_number, shot_number))
        if audio is None:
            missing.append(MissingDependency("audio", "missing", unit))
        elif audio["status"] != "completed":
            missing.append(MissingDependency("audio", f"status is {audio['status']}", unit))


def _newest(records: List[Dict[str, Any]]) -> Optional[datetime]:
    stamps = [datetime.fromisoformat(r["updated_at"]) for r in records]
    return max(stamps) if stamps else None


def _check_subtitle(ctx: _Context, missing: List[MissingDependency]) -> None:
    subtitles = ctx.store.find("subtitles", narration_id=ctx.narration["id"])
    if not subtitles:
        missing.append(MissingDependency("subtitle", "no active subtitle"))
        return
    subtitle = subtitles[0]
    if subtitle["status"] != "completed":
        missing.append(MissingDependency("subtitle", f"status is {subtitle['status']}, not completed"))
        return
    newest_audio = _newest(ctx.store.find("audios", narration_id=ctx.narration["id"], status="completed"))
    if newest_audio is not None and datetime.fromisoformat(subtitle["updated_at"]) < newest_audio:
        missing.append(MissingDependency("subtitle", "built before the latest audio, regenerate it"))


def _check_images(ctx: _Context, missing: List[MissingDependency], min_images: int) -> None:
    completed_units = {
        (i["scene_number"], i["shot_number"])
        for i in ctx.store.find("images", narration_id=ctx.narration["id"], status="completed")
    }
    if len(completed_units) < min_images:
        missing.append(MissingDependency(
            "image", f"{len(completed_units)} completed image(s), at least {min_images} required"
        ))


def _check_narration_videos(ctx: _Context, missing: List[MissingDependency]) -> None:
    videos = ctx.store.find("videos", chapter_id=ctx.chapter_id, video_type="narration_video",
                            order_by="sequence")
    if not videos:
        missing.append(MissingDependency("narration_video", "no narration videos"))
        return
    active_id = ctx.narration["id"] if ctx.narration else None
    for video in videos:
        unit = f"sequence {video['sequence']}"
        if video["status"] != "completed":
            missing.append(MissingDependency("narration_video", f"status is {video['status']}", unit))
        elif video["narration_id"] != active_id:
            missing.append(MissingDependency("narration_video", "built from a superseded narration", unit))


def can_run(store: RecordStore, stage: str, chapter_id: str, blobs: Optional[BlobStore] = None,
            outro_key: Optional[str] = None, min_images: int = 2) -> Readiness:
    """Check whether stage may run for a chapter.

    Args:
        store: Record store to read live status from.
        stage: One of STAGES, or SHOT_EDIT.
        chapter_id: Chapter to check.
        blobs: Blob store, needed to confirm the outro asset for final_video.
        outro_key: Storage key of the closing clip.
        min_images: Completed images required for narration_video.

    Returns:
        Readiness listing every unmet dependency (empty when ready).

    Raises:
        ValueError: If stage is unknown.

    Examples:
        >>> readiness = can_run(store, "subtitle", chapter_id)
        >>> [str(m) for m in readiness.missing]
        ['audio[scene 1 shot 2]: status is failed']
    """
    if stage not in STAGES and stage != SHOT_EDIT:
        raise ValueError(f"Unknown stage: {stage}. Must be one of {STAGES}")

    ctx = _load(store, chapter_id)
    missing: List[MissingDependency] = []

    if stage == "narration":
        if _check_chapter(ctx, missing) and not ctx.chapter["chapter_text"].strip():
            missing.append(MissingDependency("chapter", "chapter text is empty"))

    elif stage in ("audio", "image", SHOT_EDIT):
        _check_narration(ctx, missing)

    elif stage == "subtitle":
        if _check_narration(ctx, missing):
            _check_audios(ctx, missing)

    elif stage == "narration_video":
        if _check_narration(ctx, missing):
            _check_audios(ctx, missing)
            _check_subtitle(ctx, missing)
            _check_images(ctx, missing, min_images)

    elif stage == "final_video":
        if _check_chapter(ctx, missing):
            _check_narration_videos(ctx, missing)
            if not outro_key:
                missing.append(MissingDependency("outro", "no outro asset configured"))
            elif blobs is not None and not blobs.exists(outro_key):
                missing.append(MissingDependency("outro", f"asset {outro_key} not found"))

    return Readiness(stage=stage, chapter_id=chapter_id, missing=missing)


def require_ready(store: RecordStore, stage: str, chapter_id: str, **kwargs) -> Readiness:
    """can_run() that raises PreconditionError when anything is missing."""
    return can_run(store, stage, chapter_id, **kwargs).require()


def pipeline_status(store: RecordStore, chapter_id: str, **kwargs) -> Dict[str, Readiness]:
    """Readiness of every stage for a chapter, in pipeline order."""
    return {stage: can_run(store, stage, chapter_id, **kwargs) for stage in STAGES}
