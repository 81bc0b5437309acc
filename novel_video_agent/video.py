"""
Video generator.

Assembles one narration clip per scene from the chapter's images, audio and
captions, then concatenates the clips with the closing asset into the
final video. Every clip is an asynchronous provider job tracked by
video_jobs.VideoJob.
"""

import json
import threading
from typing import Any, Dict, List, Optional

from novel_video_agent.dependencies import require_ready
from novel_video_agent.errors import (
    BatchResult,
    JobTimeoutError,
    OperationCancelled,
    PermanentProviderError,
    UnitFailure,
    is_transient,
)
from novel_video_agent.images import latest_completed_images
from novel_video_agent.models import NarrationContent
from novel_video_agent.narration import get_active_narration, narration_content
from novel_video_agent.providers import VideoProvider
from novel_video_agent.resources import upload_resource
from novel_video_agent.storage import BlobStore
from novel_video_agent.store import RecordStore
from novel_video_agent.subtitles import get_active_subtitle, timeline
from novel_video_agent.utils.concurrency import mark_unstarted_failed, run_bounded
from novel_video_agent.utils.logger import get_logger
from novel_video_agent.video_jobs import PollPolicy, VideoJob

logger = get_logger(__name__)

NARRATION_VIDEO = "narration_video"
FINAL_VIDEO = "final_video"


def _fallback_images(order: List[tuple], images: Dict[tuple, Dict[str, Any]]) -> Dict[tuple, str]:
    """Image key per shot; a shot without one borrows the nearest earlier, else next, image."""
    keys = {}
    for index, unit in enumerate(order):
        if unit in images:
            keys[unit] = images[unit]["storage_key"]
            continue
        earlier = [u for u in order[:index] if u in images]
        later = [u for u in order[index + 1:] if u in images]
        source = earlier[-1] if earlier else later[0]
        keys[unit] = images[source]["storage_key"]
    return keys


def build_clip_inputs(chapter_id: str, content: NarrationContent, audios: List[Dict[str, Any]],
                      images: Dict[tuple, Dict[str, Any]], subtitle_key: str) -> List[Dict[str, Any]]:
    """Provider inputs for each scene clip, in scene order.

    Each clip lists its shots with image key, audio key and timing, plus
    the caption track and the span of it the clip covers.

    Args:
        chapter_id: Chapter being assembled.
        content: Ordered narration content.
        audios: Completed audio records.
        images: Latest completed image per (scene, shot); at least one.
        subtitle_key: Storage key of the caption track.

    Returns:
        List of input dicts; list position + 1 is the clip sequence.
    """
    spans = timeline(content, audios)
    audio_keys = {(a["scene_number"], a["shot_number"]): a["storage_key"] for a in audios}
    order = [(s.scene_number, s.shot_number) for s in spans]
    image_keys = _fallback_images(order, images)

    clips = []
    for sequence, scene in enumerate(content.scenes, start=1):
        scene_spans = [s for s in spans if s.scene_number == scene.scene_number]
        clips.append({
            "chapter_id": chapter_id,
            "sequence": sequence,
            "scene_number": scene.scene_number,
            "shots": [
                {
                    "shot_number": span.shot_number,
                    "image_key": image_keys[(span.scene_number, span.shot_number)],
                    "audio_key": audio_keys[(span.scene_number, span.shot_number)],
                    "duration_ms": span.duration_ms,
                }
                for span in scene_spans
            ],
            "subtitle_key": subtitle_key,
            "subtitle_span": {"start_ms": scene_spans[0].start_ms, "end_ms": scene_spans[-1].end_ms},
        })
    return clips


def _execute_job(store: RecordStore, blobs: BlobStore, provider: VideoProvider,
                 record: Dict[str, Any], policy: PollPolicy,
                 cancel_event: Optional[threading.Event]) -> Dict[str, Any]:
    """Drive one video record from pending to completed or failed."""
    inputs = json.loads(record["inputs"])
    try:
        job_id = provider.submit_job(inputs)
    except Exception as e:
        store.transition("videos", record["id"], "failed", error_message=str(e))
        raise

    store.transition("videos", record["id"], "processing", job_id=job_id)
    job = VideoJob(provider, job_id, policy, cancel_event)
    try:
        status = job.wait()
        if status.state == "failed":
            raise PermanentProviderError("video", status.error or f"job {job_id} failed")
        if not status.output_url:
            raise PermanentProviderError("video", f"job {job_id} completed without output")
        data = provider.download(status.output_url)
        resource = upload_resource(store, blobs, record["user_id"],
                                   f"{record['video_type']}_{record['sequence']:03d}.mp4", data, "video/mp4")
    except JobTimeoutError as e:
        store.transition("videos", record["id"], "failed", error_message=f"timeout: {e}")
        raise
    except OperationCancelled:
        store.transition("videos", record["id"], "failed", error_message="cancelled")
        raise
    except Exception as e:
        store.transition("videos", record["id"], "failed", error_message=str(e))
        raise

    return store.transition("videos", record["id"], "completed",
                            storage_key=resource["storage_key"], resource_id=resource["id"])


def generate_narration_videos(store: RecordStore, blobs: BlobStore, provider: VideoProvider,
                              chapter_id: str, policy: Optional[PollPolicy] = None,
                              min_images: int = 2, max_workers: int = 4,
                              cancel_event: Optional[threading.Event] = None) -> BatchResult:
    """Assemble the chapter's narration clips, one per scene.

    A new batch tombstones the previous one and carries the next version.

    Args:
        store: Record store.
        blobs: Blob store for the finished clips.
        provider: Video provider.
        chapter_id: Chapter to assemble.
        policy: Poll/backoff/deadline settings.
        min_images: Completed images required before assembly.
        max_workers: Clips assembled concurrently.
        cancel_event: Aborts polling and unstarted clips.

    Returns:
        BatchResult with completed video records in sequence order and one
        UnitFailure per failed clip.

    Raises:
        PreconditionError: If narration, audio, subtitle or images are not ready.
        OperationCancelled: If cancel_event fires.
    """
    policy = policy or PollPolicy()
    require_ready(store, NARRATION_VIDEO, chapter_id, min_images=min_images)

    narration = get_active_narration(store, chapter_id)
    content = narration_content(narration)
    audios = store.find("audios", narration_id=narration["id"], status="completed")
    subtitle = get_active_subtitle(store, narration["id"])
    images = latest_completed_images(store, narration["id"])

    clips = build_clip_inputs(chapter_id, content, audios, images, subtitle["storage_key"])
    rows = [
        {
            "narration_id": narration["id"],
            "user_id": narration["user_id"],
            "sequence": clip["sequence"],
            "inputs": json.dumps(clip, ensure_ascii=False),
            "status": "pending",
        }
        for clip in clips
    ]
    records = store.supersede("videos", {"chapter_id": chapter_id, "video_type": NARRATION_VIDEO},
                              rows, versioned=True)
    logger.info(f"[VIDEO] Assembling {len(records)} narration clip(s) for chapter {chapter_id} "
                f"(version {records[0]['version']})")

    def assemble(record: Dict[str, Any]) -> Dict[str, Any]:
        return _execute_job(store, blobs, provider, record, policy, cancel_event)

    try:
        outcomes = run_bounded(records, assemble, max_workers, cancel_event)
    except OperationCancelled as e:
        mark_unstarted_failed(store, "videos", e.unstarted)
        raise

    result = BatchResult(stage=NARRATION_VIDEO)
    cancelled = False
    for record, completed, error in outcomes:
        if error is None:
            result.records.append(completed)
            continue
        cancelled = cancelled or isinstance(error, OperationCancelled)
        logger.warning(f"[VIDEO] Clip {record['sequence']} of chapter {chapter_id} failed: {error}")
        scene_number = json.loads(record["inputs"])["scene_number"]
        result.failures.append(UnitFailure(scene_number=scene_number, shot_number=None,
                                           message=str(error), transient=is_transient(error)))
    if cancelled:
        raise OperationCancelled(f"Narration video assembly for chapter {chapter_id} cancelled")

    logger.info(f"[VIDEO] {result.summary()}")
    return result


def generate_final_video(store: RecordStore, blobs: BlobStore, provider: VideoProvider,
                         chapter_id: str, outro_key: str, policy: Optional[PollPolicy] = None,
                         cancel_event: Optional[threading.Event] = None) -> Dict[str, Any]:
    """Concatenate the chapter's narration clips and the closing asset.

    Returns:
        The completed final video record.

    Raises:
        PreconditionError: If any narration clip is not completed or the
            outro asset is missing.
        JobTimeoutError: If the provider job exceeds its deadline. The video
            is marked failed first.
        PermanentProviderError: If the provider job fails.
    """
    policy = policy or PollPolicy()
    require_ready(store, FINAL_VIDEO, chapter_id, blobs=blobs, outro_key=outro_key)

    chapter = store.require("chapters", chapter_id)
    clips = list_videos(store, chapter_id, NARRATION_VIDEO)
    inputs = {
        "chapter_id": chapter_id,
        "clips": [clip["storage_key"] for clip in clips],
        "outro_key": outro_key,
    }
    record = store.supersede(
        "videos", {"chapter_id": chapter_id, "video_type": FINAL_VIDEO},
        [{"user_id": chapter["user_id"], "sequence": 1, "status": "pending",
          "inputs": json.dumps(inputs, ensure_ascii=False)}],
        versioned=True,
    )[0]
    logger.info(f"[VIDEO] Assembling final video for chapter {chapter_id} from {len(clips)} clip(s)")

    try:
        return _execute_job(store, blobs, provider, record, policy, cancel_event)
    except Exception as e:
        logger.error(f"[VIDEO] Final video for chapter {chapter_id} failed: {e}")
        raise


def list_videos(store: RecordStore, chapter_id: str, video_type: Optional[str] = None) -> List[Dict[str, Any]]:
    filters = {"chapter_id": chapter_id}
    if video_type:
        filters["video_type"] = video_type
    return store.find("videos", order_by="video_type DESC, sequence", **filters)


def list_video_versions(store: RecordStore, chapter_id: str, video_type: str) -> List[Dict[str, Any]]:
    """Every batch ever assembled, tombstoned included, by version then sequence."""
    return store.find("videos", chapter_id=chapter_id, video_type=video_type,
                      include_deleted=True, order_by="version, sequence")
