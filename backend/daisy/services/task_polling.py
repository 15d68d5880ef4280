"""
Polling for asynchronous video-generation tasks.

Submitted → Polling → (Completed | Failed | TimedOut)

The first status check happens after poll_initial_delay_seconds, then every
poll_interval_seconds, for at most poll_max_attempts checks. A success status
only completes the task once an output URL is present.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from pydantic import BaseModel

from daisy.capabilities.errors import RemoteError, TaskTimeoutError
from daisy.config import EngineSettings, get_settings

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = frozenset({"completed", "succeeded", "done"})
FAILURE_STATUSES = frozenset({"failed", "error"})


class VideoStatusClient(Protocol):
    async def get_video_status(self, task_id: str, api_key: str) -> dict[str, Any]: ...


class TaskOutcome(BaseModel):
    task_id: str
    status: str
    output_url: str
    progress: int = 100
    polls: int


def normalize_status(payload: dict[str, Any]) -> str:
    status = payload.get("status") or payload.get("state") or ""
    return str(status).strip().lower()


def extract_output_url(payload: dict[str, Any]) -> str | None:
    """Find the output URL in a status payload, whichever key carries it."""
    for key in ("videoUrl", "outputUrl", "output", "outputs"):
        value = payload.get(key)
        if isinstance(value, list):
            value = value[0] if value else None
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _progress(payload: dict[str, Any]) -> int:
    raw = payload.get("progress") or 0
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0
    # Some providers report a 0-1 fraction
    if 0 < value <= 1:
        value *= 100
    return int(value)


async def poll_video_task(
    client: VideoStatusClient,
    task_id: str,
    api_key: str,
    on_progress: Callable[[int, str], Any] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    settings: EngineSettings | None = None,
) -> TaskOutcome:
    """
    Poll a video task until it completes, fails or runs out of attempts.

    Raises:
        RemoteError: the task reported a failure status
        TaskTimeoutError: no terminal status after poll_max_attempts polls
        ConnectivityError / AuthError: a status request could not be made
    """
    settings = settings or get_settings()
    max_polls = settings.poll_max_attempts
    polls = 0

    await sleep(settings.poll_initial_delay_seconds)

    while True:
        polls += 1
        try:
            payload = await client.get_video_status(task_id, api_key)
        except RemoteError as e:
            # Non-2xx status checks are logged and count towards the limit
            logger.warning("Status check %d for task %s failed: %s", polls, task_id, e)
            payload = None

        if payload is not None:
            status = normalize_status(payload)
            progress = _progress(payload)
            output_url = extract_output_url(payload)
            logger.debug(
                "Task %s poll %d: status=%s progress=%d output=%s",
                task_id,
                polls,
                status,
                progress,
                bool(output_url),
            )

            if status in SUCCESS_STATUSES:
                if output_url:
                    logger.info("Task %s completed after %d polls", task_id, polls)
                    return TaskOutcome(
                        task_id=task_id,
                        status=status,
                        output_url=output_url,
                        polls=polls,
                    )
                logger.warning(
                    "Task %s reports status '%s' but no output URL yet, still polling",
                    task_id,
                    status,
                )
            elif status in FAILURE_STATUSES:
                remote_message = payload.get("error") or payload.get("failure") or "Unknown error"
                logger.info("Task %s failed: %s", task_id, remote_message)
                raise RemoteError(f"Video generation failed: {remote_message}")

            if on_progress is not None:
                on_progress(progress, status)

        if polls >= max_polls:
            break
        await sleep(settings.poll_interval_seconds)

    logger.warning("Task %s timed out after %d polls", task_id, polls)
    raise TaskTimeoutError(
        f"Video generation timed out after {polls} status checks"
    )
