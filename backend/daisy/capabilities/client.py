"""
HTTP client for the external AI capabilities:
- Chat completion (POST /api/openai)
- Image generation (POST /api/dalle)
- Video generation (POST /api/runway) and task status (GET /api/runway/status/{task_id})

Each call is a single bearer-authenticated JSON request. Non-success responses
are mapped onto the error taxonomy in daisy.capabilities.errors; there is no
retry.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from daisy.capabilities.errors import (
    AuthError,
    ConnectivityError,
    PolicyError,
    QuotaError,
    RemoteError,
    RequestError,
)
from daisy.config import EngineSettings, get_settings

logger = logging.getLogger(__name__)

CHAT_PATH = "/api/openai"
IMAGE_PATH = "/api/dalle"
VIDEO_PATH = "/api/runway"
VIDEO_STATUS_PATH = "/api/runway/status/{task_id}"

_POLICY_MARKERS = ("content_policy", "content policy", "safety system")
_QUOTA_MARKERS = ("insufficient_quota", "quota exceeded", "quota")


def _error_message(body: dict[str, Any], status_code: int) -> str:
    message = body.get("error") or body.get("message")
    if isinstance(message, dict):
        message = message.get("message")
    if not message:
        message = f"Request failed with status {status_code}"
    details = body.get("details")
    if isinstance(details, str) and details and details not in str(message):
        message = f"{message} ({details})"
    return str(message)


def raise_for_capability_error(status_code: int, body: dict[str, Any]) -> None:
    """Raise the taxonomy error matching a failed capability response."""
    message = _error_message(body, status_code)
    lowered = message.lower()

    if body.get("type") == "safety_rejection" or any(m in lowered for m in _POLICY_MARKERS):
        suggestions = body.get("suggestions")
        raise PolicyError(
            body.get("message") or message,
            suggestions=suggestions if isinstance(suggestions, list) else None,
        )
    if status_code == 401:
        raise AuthError(message)
    if status_code == 402 or any(m in lowered for m in _QUOTA_MARKERS):
        raise QuotaError(message)
    if status_code == 503:
        raise ConnectivityError(message)
    if status_code == 400:
        raise RequestError(message, status_code=status_code)
    raise RemoteError(message, status_code=status_code)


class CapabilityClient:
    """Async client for the chat, image and video capability endpoints."""

    def __init__(
        self,
        settings: EngineSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(
            self.settings.http_timeout_seconds,
            connect=self.settings.http_connect_timeout_seconds,
        )
        return httpx.AsyncClient(
            base_url=self.settings.capability_base_url.rstrip("/"),
            timeout=timeout,
            transport=self._transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        api_key: str,
        payload: dict[str, Any] | None = None,
        require_success: bool = True,
    ) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {api_key}"}
        try:
            async with self._client() as client:
                response = await client.request(method, path, headers=headers, json=payload)
        except httpx.TransportError as e:
            logger.warning("Capability request %s %s failed: %s", method, path, e)
            raise ConnectivityError(f"Failed to connect to {path}: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {"error": response.text[:500]}
        if not isinstance(body, dict):
            body = {"error": f"Unexpected response payload: {str(body)[:200]}"}

        if response.status_code >= 400:
            logger.info(
                "Capability %s %s returned %d: %s",
                method,
                path,
                response.status_code,
                body.get("error"),
            )
            raise_for_capability_error(response.status_code, body)

        if require_success and not body.get("success"):
            raise RemoteError(
                _error_message(body, response.status_code),
                status_code=response.status_code,
            )
        return body

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    async def chat_completion(self, payload: dict[str, Any], api_key: str) -> dict[str, Any]:
        """
        Send {prompt|messages, model, temperature, maxTokens}.

        Returns {success, response, usage, model}.
        """
        return await self._request("POST", CHAT_PATH, api_key, payload)

    async def generate_image(self, payload: dict[str, Any], api_key: str) -> dict[str, Any]:
        """Send {prompt, size, quality, style}. Returns {success, imageUrl, revisedPrompt}."""
        return await self._request("POST", IMAGE_PATH, api_key, payload)

    async def generate_video(self, payload: dict[str, Any], api_key: str) -> dict[str, Any]:
        """Send {prompt, image?, model, duration, ratio, resolution}. Returns {success, taskId, status, progress}."""
        return await self._request("POST", VIDEO_PATH, api_key, payload)

    async def get_video_status(self, task_id: str, api_key: str) -> dict[str, Any]:
        """Fetch {status, progress, videoUrl|output, error?} for a video task."""
        path = VIDEO_STATUS_PATH.format(task_id=task_id)
        return await self._request("GET", path, api_key, require_success=False)
