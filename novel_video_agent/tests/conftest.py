"""
Shared fixtures: an isolated database and blob root per test, plus
in-memory fakes for every generative provider.
"""

import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from novel_video_agent.db_manager import init_db
from novel_video_agent.errors import PermanentProviderError, TransientProviderError
from novel_video_agent.narration import manual_narration
from novel_video_agent.novels import create_novel, split_novel
from novel_video_agent.providers import (
    ImageProvider,
    ImageResult,
    JobStatus,
    SpeechProvider,
    SpeechResult,
    StructuringProvider,
    VideoProvider,
)
from novel_video_agent.resources import upload_resource
from novel_video_agent.storage import LocalBlobStore
from novel_video_agent.store import SQLiteStore
from novel_video_agent.video_jobs import PollPolicy


def narration_document(scenes: int = 3, shots: int = 2) -> Dict[str, Any]:
    """Narration dict with scenes x shots units and predictable texts."""
    return {
        "scenes": [
            {
                "scene_number": s,
                "shots": [
                    {
                        "shot_number": n,
                        "text": f"Scene {s} shot {n} line.",
                        "visual_description": f"View of scene {s} shot {n}",
                    }
                    for n in range(1, shots + 1)
                ],
            }
            for s in range(1, scenes + 1)
        ]
    }


def chat_completion(content: str) -> Dict[str, Any]:
    """Minimal OpenAI chat completion body carrying content."""
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "test-model",
        "choices": [
            {"index": 0, "finish_reason": "stop", "message": {"role": "assistant", "content": content}}
        ],
        "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
    }


class FakeStructuringProvider(StructuringProvider):
    def __init__(self, response: Optional[str] = None, error: Optional[Exception] = None):
        self.response = response if response is not None else json.dumps(narration_document())
        self.error = error
        self.calls: List[tuple] = []

    def structure(self, chapter_text: str, instructions: str) -> str:
        self.calls.append((chapter_text, instructions))
        if self.error:
            raise self.error
        return self.response


class FakeSpeechProvider(SpeechProvider):
    """Returns 1000 ms + 10 ms per character; fails for texts listed in fail_texts."""

    def __init__(self, fail_texts=(), transient: bool = False):
        self.fail_texts = set(fail_texts)
        self.transient = transient
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def synthesize(self, text: str) -> SpeechResult:
        with self._lock:
            self.calls.append(text)
        if text in self.fail_texts:
            error_class = TransientProviderError if self.transient else PermanentProviderError
            raise error_class("speech", f"cannot synthesize {text!r}")
        return SpeechResult(audio=f"audio:{text}".encode("utf-8"), duration_ms=1000 + 10 * len(text))


class FakeImageProvider(ImageProvider):
    def __init__(self, fail_descriptions=()):
        self.fail_descriptions = set(fail_descriptions)
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def generate_image(self, description: str) -> ImageResult:
        with self._lock:
            self.calls.append(description)
        if any(fail in description for fail in self.fail_descriptions):
            raise PermanentProviderError("image", "content rejected")
        return ImageResult(image=f"image:{description}".encode("utf-8"))


class FakeVideoProvider(VideoProvider):
    """Each job walks through `states`, repeating the last one forever."""

    def __init__(self, states=("processing", "completed"), error: Optional[str] = None):
        self.states = list(states)
        self.error = error
        self.submitted: List[Dict[str, Any]] = []
        self.polls: Dict[str, int] = {}
        self._lock = threading.Lock()

    def submit_job(self, inputs: Dict[str, Any]) -> str:
        with self._lock:
            self.submitted.append(inputs)
            job_id = f"job-{len(self.submitted)}"
            self.polls[job_id] = 0
        return job_id

    def poll_status(self, job_id: str) -> JobStatus:
        with self._lock:
            index = min(self.polls[job_id], len(self.states) - 1)
            self.polls[job_id] += 1
        state = self.states[index]
        output = f"mem://{job_id}" if state == "completed" else None
        return JobStatus(state=state, output_url=output, error=self.error if state == "failed" else None)

    def download(self, output_url: str) -> bytes:
        return f"video:{output_url}".encode("utf-8")


@pytest.fixture
def store(tmp_path: Path) -> SQLiteStore:
    db_path = str(tmp_path / "test.db")
    init_db(db_path)
    return SQLiteStore(db_path)


@pytest.fixture
def blobs(tmp_path: Path) -> LocalBlobStore:
    return LocalBlobStore(str(tmp_path / "blobs"), "http://blobs.test", secret="test-secret")


@pytest.fixture
def fast_policy() -> PollPolicy:
    return PollPolicy(interval_seconds=0.01, max_interval_seconds=0.02,
                      backoff_factor=2.0, timeout_seconds=2.0)


@pytest.fixture
def novel(store, blobs) -> Dict[str, Any]:
    text = "Chapter 1\nThe beginning of the story.\n\nChapter 2\nThe end of the story.\n"
    resource = upload_resource(store, blobs, "user-1", "novel.txt", text.encode("utf-8"))
    return create_novel(store, resource["id"], "user-1", style="anime")


@pytest.fixture
def chapter(store, blobs, novel) -> Dict[str, Any]:
    return split_novel(store, blobs, novel["id"], 2)[0]


@pytest.fixture
def narrated_chapter(store, chapter) -> Dict[str, Any]:
    """First chapter with a completed 3 scene x 2 shot narration."""
    manual_narration(store, chapter["id"], json.dumps(narration_document()))
    return chapter
