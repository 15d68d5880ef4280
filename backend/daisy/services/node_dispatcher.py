"""
Node execution dispatcher.

Runs one node at a time on request:

    idle → aggregating → dispatching → (succeeded | failed) → idle

Aggregating resolves the node's incoming nodes and folds them into an
ExecutionContext. Dispatching runs the executor registered for the node's
kind, which may call an external capability. Results and errors are written
back through Graph.update_node_attributes, touching only the executing node.
Errors never escape run_node: they become the node's displayed message.

Executors are registered per NodeKind with @executor; the registry must cover
every kind, which is checked when this module is imported.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel

from daisy.capabilities.client import CapabilityClient
from daisy.capabilities.credentials import CredentialStore
from daisy.capabilities.errors import NodeExecutionError, RemoteError, ValidationError
from daisy.config import EngineSettings, get_settings
from daisy.models.graph import ExecutionContext, Graph, Node, NodeKind
from daisy.models.node_registry import VISION_MODELS, get_node_spec
from daisy.services.context_aggregator import TEXT_INPUT_LABEL, aggregate_for_node
from daisy.services.edge_signaling import EdgeActivitySignaler
from daisy.services.event_bus import EventBus, EventType
from daisy.services.input_resolver import get_incoming_edges
from daisy.services.output_format import detect_format
from daisy.services.task_polling import extract_output_url, poll_video_task
from daisy.services.text_processor import process_text

logger = logging.getLogger(__name__)


class NodeRunStatus(str, Enum):
    IDLE = "idle"
    AGGREGATING = "aggregating"
    DISPATCHING = "dispatching"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class NodeRunResult(BaseModel):
    node_id: str
    kind: NodeKind
    status: Literal["succeeded", "failed", "rejected"]
    attributes: dict[str, Any]
    error: str | None = None
    error_category: str | None = None
    execution_time_ms: int = 0


@dataclass
class NodeRun:
    """Everything an executor needs for one invocation."""
    node: Node
    context: ExecutionContext
    dispatcher: NodeDispatcher

    @property
    def attrs(self) -> dict[str, Any]:
        return self.node.attributes

    def write(self, **changes: Any) -> None:
        """Write attributes to the node immediately (visible before the run ends)."""
        self.dispatcher.write_attributes(self.node.id, changes)
        self.node.attributes.update(changes)


# ---------------------------------------------------------------------------
# Executor registry
# ---------------------------------------------------------------------------

# Each executor receives the NodeRun and returns the attribute changes to store.
_registry: dict[NodeKind, Callable[[NodeRun], Awaitable[dict[str, Any]]]] = {}


def executor(*kinds: NodeKind):
    """
    Decorator that registers an async executor for one or more node kinds.

    Usage:
        @executor(NodeKind.OUTPUT)
        async def _exec_output(run: NodeRun) -> dict[str, Any]:
            return {"value": ...}
    """
    def decorator(fn: Callable[[NodeRun], Awaitable[dict[str, Any]]]):
        for kind in kinds:
            _registry[kind] = fn
        return fn
    return decorator


# Fields cleared when a run enters dispatching
_RESULT_FIELDS: dict[NodeKind, dict[str, Any]] = {
    NodeKind.AI_PROMPT: {"response": ""},
    NodeKind.IMAGE_GENERATION: {"imageUrl": "", "revisedPrompt": ""},
    NodeKind.VIDEO_GENERATION: {"videoUrl": "", "taskId": "", "progress": 0},
}


def _resolve_generation_prompt(run: NodeRun) -> str:
    """Connected text wins over the node's own prompt, minus the text-input label."""
    if run.context.text_context:
        return run.context.text_context.replace(TEXT_INPUT_LABEL, "", 1).strip()
    return str(run.attrs.get("prompt") or "").strip()


# ---------------------------------------------------------------------------
# Node executors
# ---------------------------------------------------------------------------


@executor(NodeKind.TEXT_INPUT, NodeKind.IMAGE_INPUT)
async def _exec_input(run: NodeRun) -> dict[str, Any]:
    # Input nodes hold their value directly
    return {}


@executor(NodeKind.TEXT_PROCESSOR)
async def _exec_text_processor(run: NodeRun) -> dict[str, Any]:
    input_text = str(run.attrs.get("inputText") or "")
    if not input_text:
        return {}
    output = process_text(
        input_text,
        str(run.attrs.get("operation") or "uppercase"),
        str(run.attrs.get("customOperation") or ""),
    )
    return {"outputText": output}


@executor(NodeKind.AI_PROMPT)
async def _exec_ai_prompt(run: NodeRun) -> dict[str, Any]:
    """
    Call chat completion with the node's prompt and its connected context.

    With an image in context the request is a single multi-part user message
    and the model is switched to a vision-capable one if needed. Otherwise the
    connected text is prepended to the prompt as a preamble.
    """
    prompt = str(run.attrs.get("prompt") or "").strip()
    if not prompt:
        raise ValidationError("Please enter a prompt before running this node.")

    dispatcher = run.dispatcher
    api_key = dispatcher.credentials.require("openai")

    text_context = run.context.text_context
    image_context = run.context.image_context
    model = str(run.attrs.get("model") or dispatcher.settings.vision_model)

    if image_context and model not in VISION_MODELS:
        logger.info(
            "Node %s: switching model %s → %s for image input",
            run.node.id,
            model,
            dispatcher.settings.vision_model,
        )
        model = dispatcher.settings.vision_model
        run.write(model=model)

    payload: dict[str, Any] = {
        "model": model,
        "temperature": run.attrs.get("temperature", 0.7),
        "maxTokens": run.attrs.get("maxTokens", 1000),
    }
    if image_context:
        text = f"Context: {text_context}\n\nTask: {prompt}" if text_context else prompt
        payload["messages"] = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": text},
                    {
                        "type": "image_url",
                        "image_url": {"url": image_context, "detail": "high"},
                    },
                ],
            }
        ]
    elif text_context:
        payload["prompt"] = f"Context from connected nodes:\n{text_context}\n\nTask: {prompt}"
    else:
        payload["prompt"] = prompt

    result = await dispatcher.client.chat_completion(payload, api_key)
    return {
        "response": result.get("response") or "No response generated",
        "usage": result.get("usage"),
    }


@executor(NodeKind.IMAGE_GENERATION)
async def _exec_image_generation(run: NodeRun) -> dict[str, Any]:
    prompt = _resolve_generation_prompt(run)
    if not prompt:
        raise ValidationError("Please provide a prompt for image generation.")

    dispatcher = run.dispatcher
    api_key = dispatcher.credentials.require("openai")

    payload = {
        "prompt": prompt,
        "size": run.attrs.get("size", "1024x1024"),
        "quality": run.attrs.get("quality", "standard"),
        "style": run.attrs.get("style", "vivid"),
    }
    result = await dispatcher.client.generate_image(payload, api_key)

    image_url = result.get("imageUrl")
    if not image_url:
        raise RemoteError("No image was generated")
    return {
        "imageUrl": image_url,
        "revisedPrompt": result.get("revisedPrompt") or "",
    }


@executor(NodeKind.VIDEO_GENERATION)
async def _exec_video_generation(run: NodeRun) -> dict[str, Any]:
    """
    Submit a video task, then poll it to completion.

    The connected image (if any) seeds image-to-video generation.
    """
    prompt = _resolve_generation_prompt(run)
    if not prompt:
        raise ValidationError("Please provide a prompt for video generation.")

    dispatcher = run.dispatcher
    api_key = dispatcher.credentials.require("runway")

    payload: dict[str, Any] = {
        "prompt": prompt,
        "model": run.attrs.get("model", "gen3a_turbo"),
        "duration": run.attrs.get("duration", 5),
        "ratio": run.attrs.get("ratio", "16:9"),
        "resolution": run.attrs.get("resolution", "1280x768"),
    }
    if run.context.image_context:
        payload["image"] = run.context.image_context

    submitted = await dispatcher.client.generate_video(payload, api_key)
    task_id = submitted.get("taskId")

    if not task_id:
        output_url = extract_output_url(submitted)
        if output_url:
            return {"videoUrl": output_url, "progress": 100}
        raise RemoteError("Video generation returned neither a task id nor an output")

    run.write(taskId=task_id, progress=0)
    logger.info("Node %s: video task %s submitted", run.node.id, task_id)

    def on_progress(progress: int, status: str) -> None:
        run.write(progress=progress, taskStatus=status)

    outcome = await poll_video_task(
        dispatcher.client,
        task_id,
        api_key,
        on_progress=on_progress,
        sleep=dispatcher.sleep,
        settings=dispatcher.settings,
    )
    return {"videoUrl": outcome.output_url, "progress": 100, "taskStatus": outcome.status}


# Upstream payload shown by an output node, and whether it is always an image
_OUTPUT_PAYLOAD: dict[NodeKind, tuple[tuple[str, ...], bool]] = {
    NodeKind.TEXT_INPUT: (("value",), False),
    NodeKind.IMAGE_INPUT: (("imageUrl",), True),
    NodeKind.AI_PROMPT: (("response",), False),
    NodeKind.TEXT_PROCESSOR: (("outputText", "inputText"), False),
    NodeKind.IMAGE_GENERATION: (("imageUrl",), True),
    NodeKind.VIDEO_GENERATION: (("videoUrl",), False),
    NodeKind.OUTPUT: (("value",), False),
}


@executor(NodeKind.OUTPUT)
async def _exec_output(run: NodeRun) -> dict[str, Any]:
    """Show the first connected input's payload, sniffing its display format."""
    inputs = run.context.connected_inputs
    if not inputs:
        return {}
    if len(inputs) > 1:
        logger.info(
            "Output node %s has %d inputs, showing only the first (%s)",
            run.node.id,
            len(inputs),
            inputs[0].node_id,
        )

    source = inputs[0]
    keys, is_image = _OUTPUT_PAYLOAD[source.kind]
    content = ""
    for key in keys:
        value = source.attributes.get(key)
        if value:
            content = value if isinstance(value, str) else str(value)
            break

    fmt = "image" if is_image and content else detect_format(content)
    return {"value": content, "format": fmt}


_missing = set(NodeKind) - set(_registry)
if _missing:
    raise RuntimeError(f"No executor registered for node kinds: {sorted(k.value for k in _missing)}")


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class NodeDispatcher:
    def __init__(
        self,
        graph: Graph,
        client: CapabilityClient,
        credentials: CredentialStore,
        signaler: EdgeActivitySignaler,
        bus: EventBus,
        settings: EngineSettings | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.graph = graph
        self.client = client
        self.credentials = credentials
        self.signaler = signaler
        self.bus = bus
        self.settings = settings or get_settings()
        self.sleep = sleep
        self._status: dict[str, NodeRunStatus] = {}

    def status_of(self, node_id: str) -> NodeRunStatus:
        return self._status.get(node_id, NodeRunStatus.IDLE)

    def is_running(self, node_id: str) -> bool:
        return self.status_of(node_id) in (NodeRunStatus.AGGREGATING, NodeRunStatus.DISPATCHING)

    def write_attributes(self, node_id: str, changes: dict[str, Any]) -> Node:
        node = self.graph.update_node_attributes(node_id, changes)
        self.bus.emit(EventType.NODE_UPDATED, node_id=node_id, changes=changes)
        return node

    def _set_status(self, node_id: str, status: NodeRunStatus, **data: Any) -> None:
        self._status[node_id] = status
        self.bus.emit(EventType.NODE_STATUS, node_id=node_id, status=status.value, **data)
        logger.debug("Node %s → %s", node_id, status.value)

    async def run_node(self, node_id: str) -> NodeRunResult:
        """
        Execute one node.

        Raises NodeNotFoundError for an unknown id; every other failure is
        reported in the returned result and written to the node.
        """
        node = self.graph.get_node(node_id)

        if self.is_running(node_id):
            logger.info("Node %s is already running, ignoring new run request", node_id)
            return NodeRunResult(
                node_id=node_id,
                kind=node.kind,
                status="rejected",
                attributes=node.attributes,
                error="Node is already running",
            )

        start = time.perf_counter()
        spec = get_node_spec(node.kind)

        self._set_status(node_id, NodeRunStatus.AGGREGATING)
        context = aggregate_for_node(self.graph, node_id)

        edge_ids = [edge.id for edge in get_incoming_edges(self.graph, node_id)]
        self._set_status(node_id, NodeRunStatus.DISPATCHING)
        activation_id = self.signaler.activate(edge_ids)

        error: NodeExecutionError | None = None
        try:
            reset = {**_RESULT_FIELDS.get(node.kind, {}), "error": "", "errorCategory": ""}
            self.write_attributes(node_id, reset)
            node.attributes.update(reset)

            run = NodeRun(node=node, context=context, dispatcher=self)
            updates = await _registry[node.kind](run)
            if updates:
                self.write_attributes(node_id, updates)

        except NodeExecutionError as e:
            error = e
            logger.info("Node %s failed (%s): %s", node_id, e.category, e.message)

        except Exception as e:
            error = RemoteError(f"{type(e).__name__}: {e}")
            logger.exception("Node %s failed unexpectedly", node_id)

        except asyncio.CancelledError:
            # Leave the node runnable again
            logger.info("Run of node %s was cancelled", node_id)
            self._set_status(node_id, NodeRunStatus.IDLE, cancelled=True)
            raise

        finally:
            self.signaler.deactivate(activation_id)

        elapsed_ms = int((time.perf_counter() - start) * 1000)

        if error is not None:
            message = error.user_message()
            failure = {"error": message, "errorCategory": error.category}
            if spec.display_field != "error":
                failure[spec.display_field] = message
            final = self.write_attributes(node_id, failure)
            self._set_status(node_id, NodeRunStatus.FAILED, error=message, category=error.category)
            self._set_status(node_id, NodeRunStatus.IDLE)
            return NodeRunResult(
                node_id=node_id,
                kind=node.kind,
                status="failed",
                attributes=final.attributes,
                error=message,
                error_category=error.category,
                execution_time_ms=elapsed_ms,
            )

        final = self.graph.get_node(node_id)
        self._set_status(node_id, NodeRunStatus.SUCCEEDED, execution_time_ms=elapsed_ms)
        self._set_status(node_id, NodeRunStatus.IDLE)
        logger.info("Node %s (%s) succeeded in %dms", node_id, node.kind.value, elapsed_ms)
        return NodeRunResult(
            node_id=node_id,
            kind=node.kind,
            status="succeeded",
            attributes=final.attributes,
            execution_time_ms=elapsed_ms,
        )
