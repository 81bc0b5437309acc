"""
Audio generator.

Synthesizes one clip per narration shot with a bounded fan-out. Every unit
gets a record before its provider call, so a failed shot is kept as a
failed record and can be retried on its own. Bracketed asides are cleaned
out of the text before synthesis; captions keep the original wording.
"""

import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple

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
from novel_video_agent.providers import SpeechProvider
from novel_video_agent.resources import upload_resource
from novel_video_agent.storage import BlobStore
from novel_video_agent.store import RecordStore
from novel_video_agent.utils.concurrency import mark_unstarted_failed, run_bounded
from novel_video_agent.utils.logger import get_logger
from novel_video_agent.utils.text_cleaner import clean_text_for_tts

logger = get_logger(__name__)

Unit = Tuple[int, int]


def _prepare_records(store: RecordStore, narration: Dict[str, Any],
                     shots: Dict[Unit, Shot], units: Optional[Iterable[Unit]]) -> List[Dict[str, Any]]:
    """Create or reset the pending record for every unit to synthesize."""
    base = {"chapter_id": narration["chapter_id"], "user_id": narration["user_id"], "status": "pending"}

    if units is None:
        rows = [{**base, "scene_number": scene, "shot_number": shot} for scene, shot in shots]
        return store.supersede("audios", {"narration_id": narration["id"]}, rows)

    records = []
    for unit in units:
        if unit not in shots:
            raise InvalidInputError(f"Narration {narration['id']} has no scene {unit[0]} shot {unit[1]}")
        existing = store.find("audios", narration_id=narration["id"],
                              scene_number=unit[0], shot_number=unit[1])
        if existing and existing[0]["status"] == "failed":
            # Retry reuses the failed record in place
            records.append(store.transition("audios", existing[0]["id"], "pending", error_message=None))
            continue
        for record in existing:
            store.tombstone("audios", record["id"])
        records.append(store.insert("audios", {
            **base, "narration_id": narration["id"], "scene_number": unit[0], "shot_number": unit[1],
        }))
    return records


def generate_audios(store: RecordStore, blobs: BlobStore, provider: SpeechProvider, chapter_id: str,
                    units: Optional[Iterable[Unit]] = None, max_workers: int = 4,
                    cancel_event: Optional[threading.Event] = None) -> BatchResult:
    """Synthesize audio for the chapter's active narration.

    Args:
        store: Record store.
        blobs: Blob store for the clips.
        provider: Speech provider.
        chapter_id: Chapter whose narration is voiced.
        units: (scene_number, shot_number) pairs to synthesize; None means
            every shot, superseding any previous audio.
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
    require_ready(store, "audio", chapter_id)
    narration = get_active_narration(store, chapter_id)
    content = narration_content(narration)
    shots = {(scene, number): shot for scene, number, shot in iter_shots(content)}

    records = _prepare_records(store, narration, shots, units)
    logger.info(f"[AUDIO] Synthesizing {len(records)} shot(s) for chapter {chapter_id}")

    def synthesize(record: Dict[str, Any]) -> Dict[str, Any]:
        unit = (record["scene_number"], record["shot_number"])
        try:
            speech = provider.synthesize(clean_text_for_tts(shots[unit].text))
            resource = upload_resource(
                store, blobs, narration["user_id"],
                f"audio_s{unit[0]:03d}_{unit[1]:03d}.{speech.ext}", speech.audio,
            )
        except Exception as e:
            store.transition("audios", record["id"], "failed", error_message=str(e))
            raise
        return store.transition(
            "audios", record["id"], "completed",
            storage_key=resource["storage_key"], resource_id=resource["id"],
            duration_ms=speech.duration_ms, error_message=None,
        )

    try:
        outcomes = run_bounded(records, synthesize, max_workers, cancel_event)
    except OperationCancelled as e:
        mark_unstarted_failed(store, "audios", e.unstarted)
        raise

    result = BatchResult(stage="audio")
    for record, completed, error in outcomes:
        if error is None:
            result.records.append(completed)
            continue
        logger.warning(f"[AUDIO] Scene {record['scene_number']} shot {record['shot_number']} failed: {error}")
        result.failures.append(UnitFailure(
            scene_number=record["scene_number"], shot_number=record["shot_number"],
            message=str(error), transient=is_transient(error),
        ))

    logger.info(f"[AUDIO] {result.summary()}")
    return result


def failed_audio_units(store: RecordStore, chapter_id: str) -> List[Unit]:
    """Shots of the active narration whose audio failed or was dropped by a shot edit.

    Before any audio exists for the narration nothing counts as dropped.
    """
    narration = get_active_narration(store, chapter_id)
    if narration is None or narration["status"] != "completed":
        return []
    audios = {(a["scene_number"], a["shot_number"]): a for a in list_audios(store, narration["id"])}
    if not audios:
        return []
    return [
        (scene, shot) for scene, shot, _ in iter_shots(narration_content(narration))
        if (scene, shot) not in audios or audios[(scene, shot)]["status"] == "failed"
    ]


def retry_failed_audios(store: RecordStore, blobs: BlobStore, provider: SpeechProvider,
                        chapter_id: str, **kwargs) -> BatchResult:
    """Re-synthesize only the shots whose audio failed or is missing."""
    units = failed_audio_units(store, chapter_id)
    if not units:
        logger.info(f"[AUDIO] No failed audio for chapter {chapter_id}")
        return BatchResult(stage="audio")
    return generate_audios(store, blobs, provider, chapter_id, units=units, **kwargs)


def list_audios(store: RecordStore, narration_id: str) -> List[Dict[str, Any]]:
    return store.find("audios", narration_id=narration_id, order_by="scene_number, shot_number")
