"""
Pipeline wiring.

Builds the record store, blob store and provider clients from the global
config and exposes each stage with its configured limits applied.
"""

import os
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from novel_video_agent import audio, characters, images, narration, novels, resources, shots, subtitles, video
from novel_video_agent.db_manager import init_db
from novel_video_agent.dependencies import pipeline_status
from novel_video_agent.providers import (
    HTTPImageProvider,
    HTTPSpeechProvider,
    HTTPVideoProvider,
    ImageProvider,
    LLMStructuringProvider,
    SpeechProvider,
    StructuringProvider,
    VideoProvider,
)
from novel_video_agent.storage import BlobStore, LocalBlobStore
from novel_video_agent.store import RecordStore, SQLiteStore
from novel_video_agent.utils.file_utils import ensure_directories
from novel_video_agent.utils.logger import get_logger
from novel_video_agent.video_jobs import PollPolicy

logger = get_logger(__name__)


@dataclass
class PipelineContext:
    """Everything a stage needs, built once per process or request."""

    cfg: Dict[str, Any]
    store: RecordStore
    blobs: BlobStore
    structuring: StructuringProvider
    speech: SpeechProvider
    image: ImageProvider
    video: VideoProvider
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def max_workers(self) -> int:
        return self.cfg["concurrency"]["max_workers"]

    @property
    def poll_policy(self) -> PollPolicy:
        return PollPolicy.from_config(self.cfg["video"])

    def upload(self, user_id: str, name: str, data: bytes, content_type: Optional[str] = None):
        return resources.upload_resource(self.store, self.blobs, user_id, name, data, content_type)

    def create_novel(self, resource_id: str, user_id: str, **kwargs):
        return novels.create_novel(self.store, resource_id, user_id, **kwargs)

    def split(self, novel_id: str, target_chapters: Optional[int] = None, replace: bool = False):
        target = target_chapters or self.cfg["chaptering"]["default_target_chapters"]
        return novels.split_novel(self.store, self.blobs, novel_id, target, replace=replace,
                                  tolerance=self.cfg["chaptering"]["tolerance"])

    def narrate(self, chapter_id: str, content_json: Optional[str] = None):
        if content_json is not None:
            return narration.manual_narration(self.store, chapter_id, content_json)
        return narration.generate_narration(self.store, self.structuring, chapter_id)

    def edit_shot(self, chapter_id: str, scene_number: int, shot_number: int, **changes):
        return shots.update_shot(self.store, chapter_id, scene_number, shot_number, **changes)

    def regenerate_shot(self, chapter_id: str, scene_number: int, shot_number: int):
        return shots.regenerate_shot(self.store, self.structuring, chapter_id, scene_number, shot_number)

    def characters(self, novel_id: str):
        return characters.list_characters(self.store, novel_id)

    def audios(self, chapter_id: str, units=None, retry_failed: bool = False):
        if retry_failed:
            return audio.retry_failed_audios(self.store, self.blobs, self.speech, chapter_id,
                                             max_workers=self.max_workers, cancel_event=self.cancel_event)
        return audio.generate_audios(self.store, self.blobs, self.speech, chapter_id, units=units,
                                     max_workers=self.max_workers, cancel_event=self.cancel_event)

    def subtitles(self, chapter_id: str, fmt: str = "srt"):
        return subtitles.generate_subtitle(self.store, self.blobs, chapter_id, fmt)

    def images(self, chapter_id: str, units=None):
        return images.generate_images(self.store, self.blobs, self.image, chapter_id, units=units,
                                      max_workers=self.max_workers, cancel_event=self.cancel_event)

    def narration_videos(self, chapter_id: str):
        return video.generate_narration_videos(
            self.store, self.blobs, self.video, chapter_id, policy=self.poll_policy,
            min_images=self.cfg["video"]["min_images"], max_workers=self.max_workers,
            cancel_event=self.cancel_event,
        )

    def final_video(self, chapter_id: str):
        return video.generate_final_video(
            self.store, self.blobs, self.video, chapter_id, self.cfg["video"]["outro_asset_key"],
            policy=self.poll_policy, cancel_event=self.cancel_event,
        )

    def status(self, chapter_id: str):
        return pipeline_status(self.store, chapter_id, blobs=self.blobs,
                               outro_key=self.cfg["video"]["outro_asset_key"],
                               min_images=self.cfg["video"]["min_images"])


def build_context(cfg: Dict[str, Any], transport=None) -> PipelineContext:
    """Create stores and HTTP providers from a loaded config.

    Args:
        cfg: Output of load_global_config().
        transport: Optional httpx transport shared by every provider client.

    Returns:
        Ready PipelineContext; the database schema is created if missing.
    """
    paths = cfg["paths"]
    ensure_directories({
        "storage": paths["storage_root"],
        "logs": paths["logs"],
        "database": os.path.dirname(paths["database"]),
    })
    init_db(paths["database"])

    storage_cfg = cfg["storage"]
    blobs = LocalBlobStore(paths["storage_root"], storage_cfg["public_base_url"],
                           storage_cfg["presign_secret"], storage_cfg["default_ttl_seconds"])

    def provider_kwargs(name: str) -> Dict[str, Any]:
        p = cfg["providers"][name]
        return {"base_url": p["base_url"], "api_key": p["api_key"], "model": p["model"],
                "timeout_seconds": p["timeout_seconds"], "transport": transport}

    logger.debug(f"[PIPELINE] Database {paths['database']}, storage {paths['storage_root']}")
    return PipelineContext(
        cfg=cfg,
        store=SQLiteStore(paths["database"]),
        blobs=blobs,
        structuring=LLMStructuringProvider(
            **provider_kwargs("structuring"),
            temperature=cfg["providers"]["structuring"]["temperature"],
            max_retries=cfg["providers"]["structuring"]["max_retries"],
        ),
        speech=HTTPSpeechProvider(**provider_kwargs("speech")),
        image=HTTPImageProvider(**provider_kwargs("image")),
        video=HTTPVideoProvider(**provider_kwargs("video")),
    )
