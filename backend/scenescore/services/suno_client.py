"""Suno music generation API client.

Handles generation submission, status checks and audio download. Each call
maps transport problems onto the project's error taxonomy so the job state
machine can decide what is retryable:

  submit   -> TerminalTransportError / RemoteReportedFailure / ConfigurationError
  status   -> ContractViolation (404) / TransientTransportError (anything else)
  download -> TerminalTransportError
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from scenescore.config import (
    SUNO_API_KEY,
    SUNO_BASE_URL,
    SUNO_CALLBACK_URL,
    SUNO_CUSTOM_MODE,
    SUNO_INSTRUMENTAL,
    SUNO_MODEL,
)
from scenescore.exceptions import (
    ConfigurationError,
    ContractViolation,
    RemoteReportedFailure,
    TerminalTransportError,
    TransientTransportError,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_API_KEY = "your_suno_api_key_here"
REQUEST_TIMEOUT_S = 30
DOWNLOAD_TIMEOUT_S = 120


class SunoClient:
    """Client for the Suno generate / status API."""

    def __init__(
        self,
        api_key: str = SUNO_API_KEY,
        *,
        base_url: str = SUNO_BASE_URL,
        model: str = SUNO_MODEL,
        custom_mode: bool = SUNO_CUSTOM_MODE,
        instrumental: bool = SUNO_INSTRUMENTAL,
        callback_url: str = SUNO_CALLBACK_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.custom_mode = custom_mode
        self.instrumental = instrumental
        self.callback_url = callback_url
        self._transport = transport
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _client(self, timeout: float = REQUEST_TIMEOUT_S) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    def ensure_credentials(self) -> None:
        if not self.api_key or self.api_key == PLACEHOLDER_API_KEY:
            raise ConfigurationError("Suno API key is not set")

    def build_request(self, prompt: str) -> dict[str, Any]:
        return {
            "prompt": prompt,
            "model": self.model,
            "customMode": self.custom_mode,
            "instrumental": self.instrumental,
            "callBackUrl": self.callback_url,
        }

    async def submit(self, prompt: str) -> str:
        """Start a generation. Returns the job id for polling."""
        self.ensure_credentials()
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.base_url}/generate",
                    headers=self._headers,
                    json=self.build_request(prompt),
                )
        except httpx.HTTPError as exc:
            raise TerminalTransportError(f"Submit failed: {exc}") from exc

        if not response.is_success:
            logger.error(
                "[SUNO] submit HTTP %d: %s", response.status_code, response.text[:200]
            )
            raise TerminalTransportError(
                f"Submit failed: HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise TerminalTransportError("Submit returned a malformed response") from exc
        if not isinstance(data, dict):
            raise TerminalTransportError("Submit returned a malformed response")

        if data.get("error"):
            raise RemoteReportedFailure(str(data["error"]))
        job_id = self.extract_job_id(data)
        if not job_id:
            raise TerminalTransportError("Submit returned an empty job id")

        logger.info("[SUNO] Generation submitted: job_id=%s", job_id)
        return job_id

    async def fetch_status(self, job_id: str) -> dict:
        """Fetch job status once."""
        try:
            async with self._client() as client:
                response = await client.get(
                    f"{self.base_url}/status/{job_id}",
                    headers=self._headers,
                )
        except httpx.HTTPError as exc:
            raise TransientTransportError(f"Status check failed: {exc}") from exc

        if response.status_code == 404:
            raise ContractViolation(
                f"Status endpoint returned 404 for job {job_id}; check the API base URL"
            )
        if not response.is_success:
            raise TransientTransportError(
                f"Status check failed: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise TransientTransportError("Status returned a malformed response") from exc
        if not isinstance(data, dict):
            raise TransientTransportError("Status returned a malformed response")
        return data

    async def download(self, url: str) -> bytes:
        """Fetch generated audio from its result URL (no auth header)."""
        try:
            async with self._client(timeout=DOWNLOAD_TIMEOUT_S) as client:
                response = await client.get(url, follow_redirects=True)
        except httpx.HTTPError as exc:
            raise TerminalTransportError(f"Download failed: {exc}") from exc

        if not response.is_success:
            raise TerminalTransportError(
                f"Download failed: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response.content

    async def list_models(self) -> Any:
        """Connection check: fetch the model list."""
        self.ensure_credentials()
        try:
            async with self._client() as client:
                response = await client.get(f"{self.base_url}/models", headers=self._headers)
        except httpx.HTTPError as exc:
            raise TerminalTransportError(f"Connection test failed: {exc}") from exc
        if not response.is_success:
            raise TerminalTransportError(
                f"Connection test failed: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response.json()

    @staticmethod
    def extract_job_id(data: dict[str, Any]) -> str | None:
        """Job id from either the flat ``{id}`` shape or a ``{data: {taskId}}`` envelope."""
        nested = data.get("data") if isinstance(data.get("data"), dict) else {}
        return (
            data.get("id")
            or data.get("taskId")
            or nested.get("id")
            or nested.get("taskId")
        )

    @staticmethod
    def extract_status(data: dict[str, Any]) -> str | None:
        nested = data.get("data") if isinstance(data.get("data"), dict) else {}
        return data.get("status") or nested.get("status") or None

    @staticmethod
    def extract_error(data: dict[str, Any]) -> str | None:
        nested = data.get("data") if isinstance(data.get("data"), dict) else {}
        error = data.get("error") or nested.get("error")
        return str(error) if error else None

    @staticmethod
    def extract_audio_url(data: dict[str, Any]) -> str | None:
        nested = data.get("data") if isinstance(data.get("data"), dict) else {}
        return data.get("audio_url") or nested.get("audio_url") or None
