from __future__ import annotations

import os
from collections.abc import Iterator

import httpx
import requests
from google import genai
from google.genai import errors, types

from .config import GenerationSettings
from .models import OperationStatus, RemoteVideo

FILES_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
DOWNLOAD_CHUNK_SIZE = 1024 * 1024


class GenerationError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(GenerationError):
    """Remote quota exhausted; the caller should pause or back off."""


class TransientError(GenerationError):
    """Network or server failure; retrying later may succeed."""


class FatalSubmissionError(GenerationError):
    """The service rejected the request itself; retrying the same input will fail again."""


def classify_api_error(exc: errors.APIError, context: str, *, submitting: bool = False) -> GenerationError:
    code = exc.code if isinstance(exc.code, int) else None
    message = f"{context} failed: {exc.message or exc}"
    if code == 429 or exc.status == "RESOURCE_EXHAUSTED":
        return RateLimitError(message, status_code=code)
    if submitting and isinstance(exc, errors.ClientError):
        return FatalSubmissionError(message, status_code=code)
    return TransientError(message, status_code=code)


def classify_http_error(exc: requests.RequestException, context: str) -> GenerationError:
    response = exc.response
    code = response.status_code if response is not None else None
    message = f"{context} failed: {exc}"
    if code == 429:
        return RateLimitError(message, status_code=code)
    return TransientError(message, status_code=code)


class GenerationClient:
    """Veo video generation over the Gemini API: submit, poll, download."""

    def __init__(
        self,
        settings: GenerationSettings,
        api_key: str | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.settings = settings
        self.api_key = api_key or os.getenv(settings.api_key_env)
        if not self.api_key:
            raise ValueError(f"{settings.api_key_env} environment variable is required")
        self.client = genai.Client(
            api_key=self.api_key,
            http_options=types.HttpOptions(timeout=int(settings.request_timeout_seconds * 1000)),
        )
        self.session = session or requests.Session()

    def _video_config(self, settings: GenerationSettings) -> types.GenerateVideosConfig:
        options: dict[str, object] = {"aspect_ratio": settings.aspect_ratio}
        if settings.negative_prompt:
            options["negative_prompt"] = settings.negative_prompt
        # generate_audio is only sent when enabled.
        if settings.generate_audio:
            options["generate_audio"] = True
        return types.GenerateVideosConfig(**options)

    def submit(self, prompt: str, settings: GenerationSettings | None = None) -> str:
        """Start a generation and return its operation name."""
        settings = settings or self.settings
        try:
            operation = self.client.models.generate_videos(
                model=settings.model_name,
                prompt=prompt,
                config=self._video_config(settings),
            )
        except errors.APIError as exc:
            raise classify_api_error(exc, "submit", submitting=True) from exc
        except httpx.HTTPError as exc:
            raise TransientError(f"submit failed: {exc}") from exc
        if not operation.name:
            raise TransientError("submit returned an operation without a name")
        return operation.name

    def poll_status(self, operation_name: str) -> OperationStatus:
        try:
            operation = self.client.operations.get(types.GenerateVideosOperation(name=operation_name))
        except errors.APIError as exc:
            raise classify_api_error(exc, f"poll {operation_name}") from exc
        except httpx.HTTPError as exc:
            raise TransientError(f"poll {operation_name} failed: {exc}") from exc

        if not operation.done:
            return OperationStatus(done=False)
        if operation.error:
            raise TransientError(f"operation {operation_name} finished with error: {operation.error}")
        videos = operation.response.generated_videos if operation.response else None
        if not videos or videos[0].video is None or not videos[0].video.uri:
            raise TransientError(f"operation {operation_name} finished without a video uri")
        return OperationStatus(done=True, artifact_ref=videos[0].video.uri)

    def download(self, artifact_ref: str) -> Iterator[bytes]:
        return self._stream(artifact_ref, f"download {artifact_ref}")

    def _stream(self, url: str, context: str) -> Iterator[bytes]:
        try:
            with self.session.get(
                url,
                headers={"x-goog-api-key": self.api_key},
                stream=True,
                timeout=self.settings.request_timeout_seconds,
            ) as response:
                response.raise_for_status()
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if chunk:
                        yield chunk
        except requests.RequestException as exc:
            raise classify_http_error(exc, context) from exc

    def list_remote_videos(self) -> list[RemoteVideo]:
        videos: list[RemoteVideo] = []
        page_token: str | None = None
        while True:
            params: dict[str, object] = {"pageSize": 100}
            if page_token:
                params["pageToken"] = page_token
            try:
                response = self.session.get(
                    f"{FILES_API_BASE}/files",
                    params=params,
                    headers={"x-goog-api-key": self.api_key},
                    timeout=self.settings.request_timeout_seconds,
                )
                response.raise_for_status()
            except requests.RequestException as exc:
                raise classify_http_error(exc, "list files") from exc
            data = response.json()
            for item in data.get("files", []):
                mime_type = str(item.get("mimeType", ""))
                if mime_type.startswith("video/"):
                    videos.append(RemoteVideo(name=str(item["name"]), mime_type=mime_type))
            page_token = data.get("nextPageToken")
            if not page_token:
                return videos

    def download_file(self, video: RemoteVideo) -> Iterator[bytes]:
        url = f"{FILES_API_BASE}/{video.name}:download?alt=media"
        return self._stream(url, f"download {video.name}")
