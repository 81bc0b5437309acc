"""
Asynchronous video job tracking.

A VideoJob walks submitted -> polling -> terminal. Status checks back off
exponentially up to a cap, stop at a hard deadline, and sleep on the
caller's cancellation event so a cancel takes effect immediately.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from novel_video_agent.errors import JobTimeoutError, OperationCancelled, ProviderError
from novel_video_agent.providers import JobStatus, VideoProvider
from novel_video_agent.utils.logger import get_logger

logger = get_logger(__name__)

PHASE_SUBMITTED = "submitted"
PHASE_POLLING = "polling"
PHASE_TERMINAL = "terminal"


@dataclass(frozen=True)
class PollPolicy:
    interval_seconds: float = 2.0
    max_interval_seconds: float = 15.0
    backoff_factor: float = 1.5
    timeout_seconds: float = 600.0

    @classmethod
    def from_config(cls, video_cfg: Dict[str, Any]) -> "PollPolicy":
        return cls(
            interval_seconds=video_cfg["poll_interval_seconds"],
            max_interval_seconds=video_cfg["max_poll_interval_seconds"],
            backoff_factor=video_cfg["backoff_factor"],
            timeout_seconds=video_cfg["timeout_seconds"],
        )

    def next_interval(self, current: float) -> float:
        return min(current * self.backoff_factor, self.max_interval_seconds)


class VideoJob:
    """One submitted provider job and its poll loop.

    Examples:
        >>> job = VideoJob(provider, provider.submit_job(inputs), PollPolicy())
        >>> status = job.wait()
        >>> status.state
        'completed'
    """

    def __init__(self, provider: VideoProvider, job_id: str, policy: PollPolicy,
                 cancel_event: Optional[threading.Event] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.provider = provider
        self.job_id = job_id
        self.policy = policy
        self.cancel_event = cancel_event or threading.Event()
        self.clock = clock
        self.phase = PHASE_SUBMITTED
        self.polls = 0
        self.last_status: Optional[JobStatus] = None
        self.deadline = clock() + policy.timeout_seconds

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            self.phase = PHASE_TERMINAL
            raise OperationCancelled(f"Job {self.job_id} cancelled")

    def poll_once(self) -> JobStatus:
        """Single status check; transient provider errors count as 'still running'."""
        self.phase = PHASE_POLLING
        self.polls += 1
        try:
            status = self.provider.poll_status(self.job_id)
        except ProviderError as e:
            if not e.transient:
                self.phase = PHASE_TERMINAL
                raise
            logger.warning(f"[VIDEO] Poll {self.polls} of job {self.job_id} failed transiently: {e}")
            return self.last_status or JobStatus(state="queued")
        self.last_status = status
        if status.terminal:
            self.phase = PHASE_TERMINAL
        return status

    def wait(self) -> JobStatus:
        """Poll until the job is terminal.

        Returns:
            The terminal JobStatus (completed or failed).

        Raises:
            JobTimeoutError: If the deadline passes first.
            OperationCancelled: If the cancel event fires.
            PermanentProviderError: If a status check fails permanently.
        """
        interval = self.policy.interval_seconds
        while True:
            self._check_cancelled()
            status = self.poll_once()
            if status.terminal:
                logger.info(f"[VIDEO] Job {self.job_id} {status.state} after {self.polls} poll(s)")
                return status

            remaining = self.deadline - self.clock()
            if remaining <= 0:
                self.phase = PHASE_TERMINAL
                raise JobTimeoutError(self.job_id, self.policy.timeout_seconds)

            # Event.wait returns early when cancelled
            self.cancel_event.wait(min(interval, remaining))
            interval = self.policy.next_interval(interval)
