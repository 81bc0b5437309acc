"""
Tests for the HTTP provider clients, using httpx.MockTransport.
"""

import base64
import json

import httpx
import pytest

from novel_video_agent.errors import PermanentProviderError, TransientProviderError
from novel_video_agent.providers import (
    HTTPImageProvider,
    HTTPSpeechProvider,
    HTTPVideoProvider,
    LLMStructuringProvider,
)
from novel_video_agent.tests.conftest import chat_completion


def transport_returning(status_code=200, body=None, text=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if text is not None:
            return httpx.Response(status_code, text=text)
        return httpx.Response(status_code, json=body)
    return httpx.MockTransport(handler)


class TestErrorClassification:
    """Tests for transient versus permanent provider errors."""

    @pytest.mark.parametrize("status_code", [429, 500, 503])
    def test_retryable_statuses_are_transient(self, status_code: int) -> None:
        # Arrange
        provider = HTTPSpeechProvider("http://tts.test", transport=transport_returning(status_code, {}))

        # Act
        with pytest.raises(TransientProviderError) as exc_info:
            provider.synthesize("hello")

        # Assert
        assert exc_info.value.status_code == status_code
        assert exc_info.value.transient is True

    @pytest.mark.parametrize("status_code", [400, 401, 422])
    def test_client_errors_are_permanent(self, status_code: int) -> None:
        provider = HTTPSpeechProvider("http://tts.test", transport=transport_returning(status_code, {}))
        with pytest.raises(PermanentProviderError):
            provider.synthesize("hello")

    def test_timeout_is_transient(self) -> None:
        # Arrange
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        provider = HTTPImageProvider("http://img.test", transport=httpx.MockTransport(handler))

        # Act / Assert
        with pytest.raises(TransientProviderError):
            provider.generate_image("a cat")

    def test_non_json_body_is_permanent(self) -> None:
        provider = HTTPImageProvider("http://img.test", transport=transport_returning(text="<html>"))
        with pytest.raises(PermanentProviderError):
            provider.generate_image("a cat")

    def test_invalid_base64_is_permanent(self) -> None:
        provider = HTTPImageProvider("http://img.test", transport=transport_returning(body={"image": "%%%"}))
        with pytest.raises(PermanentProviderError):
            provider.generate_image("a cat")


class TestLLMStructuringProvider:
    """Tests for the ChatOpenAI-backed structuring client."""

    def test_returns_message_content(self) -> None:
        # Arrange
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=chat_completion('{"scenes": []}'))

        provider = LLMStructuringProvider("http://llm.test/v1", api_key="k", model="m",
                                          transport=httpx.MockTransport(handler))

        # Act
        content = provider.structure("chapter text", "instructions")

        # Assert
        assert content == '{"scenes": []}'
        assert seen["path"] == "/v1/chat/completions"
        assert seen["auth"] == "Bearer k"
        assert seen["body"]["model"] == "m"
        assert seen["body"]["messages"] == [
            {"role": "system", "content": "instructions"},
            {"role": "user", "content": "chapter text"},
        ]

    def test_braces_in_instructions_are_sent_verbatim(self) -> None:
        # Arrange
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=chat_completion("{}"))

        provider = LLMStructuringProvider("http://llm.test/v1", api_key="k",
                                          transport=httpx.MockTransport(handler))

        # Act
        provider.structure("text", 'Respond as {"scenes": []}')

        # Assert
        assert seen["body"]["messages"][0]["content"] == 'Respond as {"scenes": []}'

    @pytest.mark.parametrize("status_code", [429, 500])
    def test_retryable_statuses_are_transient(self, status_code: int) -> None:
        provider = LLMStructuringProvider("http://llm.test/v1", api_key="k", max_retries=0,
                                          transport=transport_returning(status_code, {"error": {"message": "busy"}}))
        with pytest.raises(TransientProviderError) as exc_info:
            provider.structure("text", "instructions")
        assert exc_info.value.status_code == status_code

    def test_bad_request_is_permanent(self) -> None:
        provider = LLMStructuringProvider("http://llm.test/v1", api_key="k", max_retries=0,
                                          transport=transport_returning(400, {"error": {"message": "bad"}}))
        with pytest.raises(PermanentProviderError):
            provider.structure("text", "instructions")

    def test_missing_choices_is_permanent(self) -> None:
        body = {**chat_completion(""), "choices": []}
        provider = LLMStructuringProvider("http://llm.test/v1", api_key="k", max_retries=0,
                                          transport=transport_returning(body=body))
        with pytest.raises(PermanentProviderError):
            provider.structure("text", "instructions")


class TestHTTPSpeechProvider:
    def test_decodes_audio_and_duration(self) -> None:
        # Arrange
        body = {"audio": base64.b64encode(b"RIFF").decode(), "duration_ms": 1530, "format": "wav"}
        provider = HTTPSpeechProvider("http://tts.test", transport=transport_returning(body=body))

        # Act
        result = provider.synthesize("hello")

        # Assert
        assert result.audio == b"RIFF"
        assert result.duration_ms == 1530
        assert result.ext == "wav"

    def test_missing_duration_is_permanent(self) -> None:
        body = {"audio": base64.b64encode(b"RIFF").decode()}
        provider = HTTPSpeechProvider("http://tts.test", transport=transport_returning(body=body))
        with pytest.raises(PermanentProviderError):
            provider.synthesize("hello")


class TestHTTPVideoProvider:
    """Tests for the asynchronous job client."""

    def test_submit_poll_download(self) -> None:
        # Arrange
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST" and request.url.path == "/jobs":
                return httpx.Response(200, json={"job_id": "abc"})
            if request.url.path == "/jobs/abc":
                return httpx.Response(200, json={"status": "completed", "output_url": "/out/abc.mp4"})
            if request.url.path == "/out/abc.mp4":
                return httpx.Response(200, content=b"mp4")
            return httpx.Response(404)

        provider = HTTPVideoProvider("http://video.test", transport=httpx.MockTransport(handler))

        # Act
        job_id = provider.submit_job({"clips": []})
        status = provider.poll_status(job_id)
        data = provider.download(status.output_url)

        # Assert
        assert job_id == "abc"
        assert status.terminal
        assert data == b"mp4"

    def test_unknown_status_is_permanent(self) -> None:
        provider = HTTPVideoProvider("http://video.test", transport=transport_returning(body={"status": "weird"}))
        with pytest.raises(PermanentProviderError):
            provider.poll_status("abc")
