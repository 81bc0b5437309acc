"""
Tests for video job tracking and the video generator.
"""

import itertools
import json
import threading

import pytest

from novel_video_agent.audio import generate_audios
from novel_video_agent.errors import (
    JobTimeoutError,
    OperationCancelled,
    PermanentProviderError,
    PreconditionError,
    TransientProviderError,
)
from novel_video_agent.images import generate_images
from novel_video_agent.providers import JobStatus
from novel_video_agent.subtitles import generate_subtitle
from novel_video_agent.tests.conftest import FakeImageProvider, FakeSpeechProvider, FakeVideoProvider
from novel_video_agent.video import (
    FINAL_VIDEO,
    NARRATION_VIDEO,
    generate_final_video,
    generate_narration_videos,
    list_video_versions,
    list_videos,
)
from novel_video_agent.video_jobs import PHASE_SUBMITTED, PHASE_TERMINAL, PollPolicy, VideoJob

OUTRO_KEY = "assets/finish.mp4"


@pytest.fixture
def ready_chapter(store, blobs, narrated_chapter):
    """Narrated chapter with all audio, a subtitle track and every image completed."""
    generate_audios(store, blobs, FakeSpeechProvider(), narrated_chapter["id"])
    generate_subtitle(store, blobs, narrated_chapter["id"])
    generate_images(store, blobs, FakeImageProvider(), narrated_chapter["id"])
    blobs.upload(OUTRO_KEY, b"outro", "video/mp4")
    return narrated_chapter


class FlakyPollProvider(FakeVideoProvider):
    """Raises one poll error before behaving like FakeVideoProvider."""

    def __init__(self, error, **kwargs):
        super().__init__(**kwargs)
        self.error_to_raise = error

    def poll_status(self, job_id: str) -> JobStatus:
        if self.error_to_raise is not None:
            error, self.error_to_raise = self.error_to_raise, None
            raise error
        return super().poll_status(job_id)


class TestPollPolicy:
    def test_backoff_is_capped(self) -> None:
        policy = PollPolicy(interval_seconds=1, max_interval_seconds=4, backoff_factor=2)
        assert policy.next_interval(1) == 2
        assert policy.next_interval(3) == 4

    def test_from_config(self) -> None:
        # Act
        policy = PollPolicy.from_config({
            "poll_interval_seconds": 3, "max_poll_interval_seconds": 30,
            "backoff_factor": 2.0, "timeout_seconds": 900,
        })

        # Assert
        assert policy == PollPolicy(3, 30, 2.0, 900)


class TestVideoJob:
    """Tests for the VideoJob poll loop."""

    def test_polls_until_terminal(self, fast_policy) -> None:
        # Arrange
        provider = FakeVideoProvider(states=("queued", "processing", "completed"))
        job = VideoJob(provider, provider.submit_job({}), fast_policy)
        assert job.phase == PHASE_SUBMITTED

        # Act
        status = job.wait()

        # Assert
        assert status.state == "completed"
        assert status.output_url == "mem://job-1"
        assert job.polls == 3
        assert job.phase == PHASE_TERMINAL

    def test_deadline_raises_timeout(self) -> None:
        """Test that a job still running at its deadline times out."""
        # Arrange
        provider = FakeVideoProvider(states=("processing",))
        clock = itertools.count(start=0, step=5).__next__
        policy = PollPolicy(interval_seconds=0.001, max_interval_seconds=0.001, timeout_seconds=12)
        job = VideoJob(provider, provider.submit_job({}), policy, clock=clock)

        # Act
        with pytest.raises(JobTimeoutError) as exc_info:
            job.wait()

        # Assert
        assert exc_info.value.transient is True
        assert job.polls == 3
        assert job.phase == PHASE_TERMINAL

    def test_transient_poll_error_is_tolerated(self, fast_policy) -> None:
        # Arrange
        provider = FlakyPollProvider(TransientProviderError("video", "HTTP 503", 503))
        job = VideoJob(provider, provider.submit_job({}), fast_policy)

        # Act
        status = job.wait()

        # Assert
        assert status.state == "completed"
        assert job.polls == 3

    def test_permanent_poll_error_propagates(self, fast_policy) -> None:
        # Arrange
        provider = FlakyPollProvider(PermanentProviderError("video", "HTTP 404", 404))
        job = VideoJob(provider, provider.submit_job({}), fast_policy)

        # Act / Assert
        with pytest.raises(PermanentProviderError):
            job.wait()
        assert job.phase == PHASE_TERMINAL

    def test_cancel_before_wait(self, fast_policy) -> None:
        # Arrange
        provider = FakeVideoProvider()
        cancel = threading.Event()
        cancel.set()
        job = VideoJob(provider, provider.submit_job({}), fast_policy, cancel_event=cancel)

        # Act / Assert
        with pytest.raises(OperationCancelled):
            job.wait()
        assert job.polls == 0


class TestGenerateNarrationVideos:
    """Tests for generate_narration_videos function."""

    def test_one_clip_per_scene(self, store, blobs, ready_chapter, fast_policy) -> None:
        # Arrange
        provider = FakeVideoProvider()

        # Act
        result = generate_narration_videos(store, blobs, provider, ready_chapter["id"], policy=fast_policy)

        # Assert
        assert result.ok
        assert [v["sequence"] for v in result.records] == [1, 2, 3]
        assert all(v["status"] == "completed" and v["version"] == 1 for v in result.records)
        assert all(v["job_id"] for v in result.records)
        assert blobs.download(result.records[0]["storage_key"]).startswith(b"video:mem://job-")
        inputs = json.loads(result.records[1]["inputs"])
        assert inputs["scene_number"] == 2
        assert inputs["subtitle_span"] == {"start_ms": 2400, "end_ms": 4800}
        assert [s["duration_ms"] for s in inputs["shots"]] == [1200, 1200]

    def test_missing_images_borrow_nearest(self, store, blobs, narrated_chapter, fast_policy) -> None:
        """Test that shots without an image reuse the nearest earlier image."""
        # Arrange
        generate_audios(store, blobs, FakeSpeechProvider(), narrated_chapter["id"])
        generate_subtitle(store, blobs, narrated_chapter["id"])
        images = generate_images(store, blobs, FakeImageProvider(), narrated_chapter["id"],
                                 units=[(1, 1), (3, 2)]).records
        provider = FakeVideoProvider()

        # Act
        generate_narration_videos(store, blobs, provider, narrated_chapter["id"], policy=fast_policy)

        # Assert
        by_scene = {clip["scene_number"]: clip for clip in provider.submitted}
        assert [s["image_key"] for s in by_scene[2]["shots"]] == [images[0]["storage_key"]] * 2
        assert by_scene[3]["shots"][1]["image_key"] == images[1]["storage_key"]

    def test_too_few_images_is_precondition_error(self, store, blobs, narrated_chapter, fast_policy) -> None:
        # Arrange
        generate_audios(store, blobs, FakeSpeechProvider(), narrated_chapter["id"])
        generate_subtitle(store, blobs, narrated_chapter["id"])
        generate_images(store, blobs, FakeImageProvider(), narrated_chapter["id"], units=[(1, 1)])

        # Act
        with pytest.raises(PreconditionError) as exc_info:
            generate_narration_videos(store, blobs, FakeVideoProvider(), narrated_chapter["id"],
                                      policy=fast_policy)

        # Assert
        assert [m.entity for m in exc_info.value.missing] == ["image"]
        assert store.find("videos", chapter_id=narrated_chapter["id"]) == []

    def test_timeout_marks_clip_failed(self, store, blobs, ready_chapter) -> None:
        # Arrange
        provider = FakeVideoProvider(states=("processing",))
        policy = PollPolicy(interval_seconds=0.01, max_interval_seconds=0.01, timeout_seconds=0.05)

        # Act
        result = generate_narration_videos(store, blobs, provider, ready_chapter["id"], policy=policy)

        # Assert
        assert result.failed_units() == [(1, None), (2, None), (3, None)]
        assert all(f.transient for f in result.failures)
        for video in list_videos(store, ready_chapter["id"], NARRATION_VIDEO):
            assert video["status"] == "failed"
            assert video["error_message"].startswith("timeout")

    def test_provider_job_failure(self, store, blobs, ready_chapter, fast_policy) -> None:
        # Arrange
        provider = FakeVideoProvider(states=("processing", "failed"), error="render error")

        # Act
        result = generate_narration_videos(store, blobs, provider, ready_chapter["id"], policy=fast_policy)

        # Assert
        assert len(result.failures) == 3
        assert result.failures[0].message.endswith("render error")
        assert result.failures[0].transient is False

    def test_cancel_aborts_polling(self, store, blobs, ready_chapter) -> None:
        """Test that cancelling mid-poll fails every unfinished clip as cancelled."""
        # Arrange
        provider = FakeVideoProvider(states=("processing",))
        policy = PollPolicy(interval_seconds=0.01, max_interval_seconds=0.05, timeout_seconds=30)
        cancel = threading.Event()
        timer = threading.Timer(0.2, cancel.set)

        # Act
        timer.start()
        try:
            with pytest.raises(OperationCancelled):
                generate_narration_videos(store, blobs, provider, ready_chapter["id"],
                                          policy=policy, cancel_event=cancel)
        finally:
            timer.cancel()

        # Assert
        videos = list_videos(store, ready_chapter["id"], NARRATION_VIDEO)
        assert [v["status"] for v in videos] == ["failed"] * 3
        assert {v["error_message"] for v in videos} == {"cancelled"}

    def test_rerun_supersedes_previous_batch(self, store, blobs, ready_chapter, fast_policy) -> None:
        # Arrange
        generate_narration_videos(store, blobs, FakeVideoProvider(), ready_chapter["id"], policy=fast_policy)

        # Act
        second = generate_narration_videos(store, blobs, FakeVideoProvider(), ready_chapter["id"],
                                           policy=fast_policy)

        # Assert
        assert {v["version"] for v in second.records} == {2}
        active = list_videos(store, ready_chapter["id"], NARRATION_VIDEO)
        assert [v["id"] for v in active] == [v["id"] for v in second.records]
        history = list_video_versions(store, ready_chapter["id"], NARRATION_VIDEO)
        assert [(v["version"], v["lifecycle"]) for v in history] == (
            [(1, "tombstoned")] * 3 + [(2, "active")] * 3
        )


class TestGenerateFinalVideo:
    """Tests for generate_final_video function."""

    def test_concatenates_clips_with_outro(self, store, blobs, ready_chapter, fast_policy) -> None:
        # Arrange
        clips = generate_narration_videos(store, blobs, FakeVideoProvider(), ready_chapter["id"],
                                          policy=fast_policy).records
        provider = FakeVideoProvider()

        # Act
        final = generate_final_video(store, blobs, provider, ready_chapter["id"], OUTRO_KEY, policy=fast_policy)

        # Assert
        assert final["status"] == "completed"
        assert final["video_type"] == FINAL_VIDEO
        assert final["sequence"] == 1
        assert provider.submitted[0]["clips"] == [c["storage_key"] for c in clips]
        assert provider.submitted[0]["outro_key"] == OUTRO_KEY
        assert blobs.exists(final["storage_key"])

    def test_incomplete_clip_blocks_final(self, store, blobs, ready_chapter, fast_policy) -> None:
        # Arrange
        generate_narration_videos(store, blobs, FakeVideoProvider(states=("processing", "failed")),
                                  ready_chapter["id"], policy=fast_policy)

        # Act
        with pytest.raises(PreconditionError) as exc_info:
            generate_final_video(store, blobs, FakeVideoProvider(), ready_chapter["id"], OUTRO_KEY,
                                 policy=fast_policy)

        # Assert
        assert [m.unit for m in exc_info.value.missing] == ["sequence 1", "sequence 2", "sequence 3"]
        assert list_videos(store, ready_chapter["id"], FINAL_VIDEO) == []

    def test_missing_outro_blocks_final(self, store, blobs, ready_chapter, fast_policy) -> None:
        # Arrange
        generate_narration_videos(store, blobs, FakeVideoProvider(), ready_chapter["id"], policy=fast_policy)

        # Act
        with pytest.raises(PreconditionError) as exc_info:
            generate_final_video(store, blobs, FakeVideoProvider(), ready_chapter["id"], "assets/none.mp4",
                                 policy=fast_policy)

        # Assert
        assert [m.entity for m in exc_info.value.missing] == ["outro"]

    def test_timeout_marks_final_failed(self, store, blobs, ready_chapter, fast_policy) -> None:
        # Arrange
        generate_narration_videos(store, blobs, FakeVideoProvider(), ready_chapter["id"], policy=fast_policy)
        policy = PollPolicy(interval_seconds=0.01, max_interval_seconds=0.01, timeout_seconds=0.05)

        # Act
        with pytest.raises(JobTimeoutError):
            generate_final_video(store, blobs, FakeVideoProvider(states=("processing",)),
                                 ready_chapter["id"], OUTRO_KEY, policy=policy)

        # Assert
        [final] = list_videos(store, ready_chapter["id"], FINAL_VIDEO)
        assert final["status"] == "failed"
        assert final["error_message"].startswith("timeout")
