"""
Generative provider collaborators.

Abstract contracts for the structuring (LLM), speech, image and video
providers. The structuring client runs a LangChain prompt through
ChatOpenAI; the speech, image and video clients speak plain HTTP through
httpx. Every client maps failures onto TransientProviderError (rate limits,
timeouts, 5xx) or PermanentProviderError (other 4xx, malformed bodies).
"""

import base64
import binascii
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
import openai
from langchain_core.prompts import ChatPromptTemplate
from langchain_openai import ChatOpenAI

from novel_video_agent.errors import PermanentProviderError, TransientProviderError
from novel_video_agent.utils.logger import get_logger

logger = get_logger(__name__)

JOB_STATES = ("queued", "processing", "completed", "failed")
DEFAULT_LLM_MODEL = "gpt-4o"


@dataclass
class SpeechResult:
    audio: bytes
    duration_ms: int
    ext: str = "mp3"


@dataclass
class ImageResult:
    image: bytes
    ext: str = "png"


@dataclass
class JobStatus:
    """Snapshot of an asynchronous video job."""

    state: str
    output_url: Optional[str] = None
    error: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.state in ("completed", "failed")


class StructuringProvider(ABC):
    @abstractmethod
    def structure(self, chapter_text: str, instructions: str) -> str:
        """Return the model's raw narration document for chapter_text."""


class SpeechProvider(ABC):
    @abstractmethod
    def synthesize(self, text: str) -> SpeechResult:
        """Synthesize one narration line."""


class ImageProvider(ABC):
    @abstractmethod
    def generate_image(self, description: str) -> ImageResult:
        """Render one image from a visual description."""


class VideoProvider(ABC):
    @abstractmethod
    def submit_job(self, inputs: Dict[str, Any]) -> str:
        """Submit an assembly job and return its job id."""

    @abstractmethod
    def poll_status(self, job_id: str) -> JobStatus:
        """Current state of a submitted job."""

    @abstractmethod
    def download(self, output_url: str) -> bytes:
        """Fetch the finished video from its output locator."""


class _HTTPProvider:
    """Shared httpx plumbing and error classification."""

    name = "provider"

    def __init__(self, base_url: str, api_key: str = "", model: Optional[str] = None,
                 timeout_seconds: float = 60.0,
                 transport: Optional[httpx.BaseTransport] = None):
        """Initialize the client.

        Args:
            base_url: Provider base URL (e.g., http://127.0.0.1:9000).
            api_key: Bearer token; omitted from requests when empty.
            model: Model name forwarded in request bodies.
            timeout_seconds: Per-request timeout.
            transport: Optional httpx transport, used by tests.
        """
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.base_url = base_url.rstrip('/')
        self.model = model
        self.client = httpx.Client(base_url=self.base_url, headers=headers,
                                   timeout=timeout_seconds, transport=transport)

    def close(self) -> None:
        self.client.close()

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientProviderError(self.name, f"request timed out: {e}")
        except httpx.TransportError as e:
            raise TransientProviderError(self.name, f"transport error: {e}")

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientProviderError(self.name, f"HTTP {status}: {response.text[:200]}", status)
        if status >= 400:
            raise PermanentProviderError(self.name, f"HTTP {status}: {response.text[:200]}", status)
        return response

    def _json(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        response = self._request(method, url, **kwargs)
        try:
            body = response.json()
        except ValueError:
            raise PermanentProviderError(self.name, "response body is not JSON", response.status_code)
        if not isinstance(body, dict):
            raise PermanentProviderError(self.name, "response body is not a JSON object", response.status_code)
        return body

    def _b64(self, body: Dict[str, Any], key: str) -> bytes:
        value = body.get(key)
        if not isinstance(value, str) or not value:
            raise PermanentProviderError(self.name, f"response missing '{key}'")
        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            raise PermanentProviderError(self.name, f"'{key}' is not valid base64")


NARRATION_PROMPT = ChatPromptTemplate.from_messages([
    ("system", "{instructions}"),
    ("human", "{chapter_text}"),
])


class LLMStructuringProvider(StructuringProvider):
    """Chat model client built on LangChain's ChatOpenAI.

    Works against OpenAI itself and any OpenAI-compatible endpoint
    (Ollama, vLLM) through base_url.
    """

    name = "structuring"

    def __init__(self, base_url: str, api_key: str = "", model: Optional[str] = None,
                 timeout_seconds: float = 60.0, temperature: float = 0.7, max_retries: int = 2,
                 transport: Optional[httpx.BaseTransport] = None):
        """Initialize the client.

        Args:
            base_url: OpenAI-compatible API root (e.g., http://127.0.0.1:11434/v1).
            api_key: API key; falls back to OPENAI_API_KEY, then a placeholder
                for local endpoints that ignore it.
            model: Chat model name.
            timeout_seconds: Per-request timeout.
            temperature: Sampling temperature.
            max_retries: Retries the OpenAI client makes on its own before
                an error is classified.
            transport: Optional httpx transport, used by tests.
        """
        http_client = httpx.Client(transport=transport, timeout=timeout_seconds) if transport else None
        self.llm = ChatOpenAI(
            model=model or DEFAULT_LLM_MODEL,
            api_key=api_key or os.getenv("OPENAI_API_KEY") or "not-needed",
            base_url=base_url,
            temperature=temperature,
            timeout=timeout_seconds,
            max_retries=max_retries,
            http_client=http_client,
        )
        self.chain = NARRATION_PROMPT | self.llm

    def structure(self, chapter_text: str, instructions: str) -> str:
        try:
            response = self.chain.invoke({"instructions": instructions, "chapter_text": chapter_text})
        except openai.APIConnectionError as e:
            # Includes APITimeoutError
            raise TransientProviderError(self.name, f"request failed: {e}")
        except (openai.RateLimitError, openai.InternalServerError) as e:
            raise TransientProviderError(self.name, str(e), e.status_code)
        except openai.APIStatusError as e:
            raise PermanentProviderError(self.name, str(e), e.status_code)
        except openai.APIError as e:
            raise PermanentProviderError(self.name, f"unusable response: {e}")
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise PermanentProviderError(self.name, f"malformed chat completion: {e}")

        content = response.content
        if not isinstance(content, str) or not content.strip():
            raise PermanentProviderError(self.name, "message content is empty or not text")
        return content


class HTTPSpeechProvider(_HTTPProvider, SpeechProvider):
    """Text-to-speech client: POST /tts returns base64 audio and its duration."""

    name = "speech"

    def synthesize(self, text: str) -> SpeechResult:
        body = self._json("POST", "/tts", json={"text": text, "model": self.model})
        audio = self._b64(body, "audio")
        duration = body.get("duration_ms")
        if not isinstance(duration, (int, float)) or duration <= 0:
            raise PermanentProviderError(self.name, "response missing positive 'duration_ms'")
        return SpeechResult(audio=audio, duration_ms=int(duration), ext=body.get("format", "mp3"))


class HTTPImageProvider(_HTTPProvider, ImageProvider):
    name = "image"

    def generate_image(self, description: str) -> ImageResult:
        body = self._json("POST", "/images", json={"prompt": description, "model": self.model})
        return ImageResult(image=self._b64(body, "image"), ext=body.get("format", "png"))


class HTTPVideoProvider(_HTTPProvider, VideoProvider):
    """Asynchronous video assembly client."""

    name = "video"

    def submit_job(self, inputs: Dict[str, Any]) -> str:
        body = self._json("POST", "/jobs", json={"model": self.model, "inputs": inputs})
        job_id = body.get("job_id")
        if not job_id:
            raise PermanentProviderError(self.name, "response missing 'job_id'")
        logger.debug(f"[VIDEO] Submitted job {job_id}")
        return str(job_id)

    def poll_status(self, job_id: str) -> JobStatus:
        body = self._json("GET", f"/jobs/{job_id}")
        state = body.get("status")
        if state not in JOB_STATES:
            raise PermanentProviderError(self.name, f"unknown job status {state!r}")
        return JobStatus(state=state, output_url=body.get("output_url"), error=body.get("error"))

    def download(self, output_url: str) -> bytes:
        return self._request("GET", output_url).content
