"""
Node kind registry: source of truth for what each node kind holds.

Maps each NodeKind to its default attributes, the attribute that displays its
result (and therefore its error message), and the canvas menu metadata.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from daisy.models.graph import NodeKind


class NodeKindSpec(BaseModel):
    label: str
    shortcut: str | None = None
    default_attributes: dict[str, Any] = {}
    display_field: str = "error"
    # Whether running the node calls an external capability
    remote: bool = False
    credential_provider: str | None = None


# Chat-completion models able to accept image content
VISION_MODELS: frozenset[str] = frozenset({"gpt-4o", "gpt-4-vision-preview"})

CHAT_MODELS: tuple[str, ...] = (
    "gpt-4o",
    "gpt-4-vision-preview",
    "gpt-4-turbo-preview",
    "gpt-3.5-turbo",
)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

NODE_REGISTRY: dict[NodeKind, NodeKindSpec] = {
    # ---- Input nodes ----
    NodeKind.TEXT_INPUT: NodeKindSpec(
        label="Text",
        shortcut="T",
        default_attributes={"label": "Text Input", "value": ""},
        display_field="value",
    ),
    NodeKind.IMAGE_INPUT: NodeKindSpec(
        label="Image",
        shortcut="I",
        default_attributes={"label": "Image Input", "imageUrl": "", "fileName": ""},
    ),

    # ---- Capability nodes ----
    NodeKind.AI_PROMPT: NodeKindSpec(
        label="AI Prompt",
        shortcut="A",
        default_attributes={
            "label": "AI Prompt",
            "prompt": "",
            "model": "gpt-4o",
            "temperature": 0.7,
            "maxTokens": 1000,
            "response": "",
        },
        display_field="response",
        remote=True,
        credential_provider="openai",
    ),
    NodeKind.IMAGE_GENERATION: NodeKindSpec(
        label="Generate",
        shortcut="G",
        default_attributes={
            "label": "Image Generation",
            "prompt": "",
            "size": "1024x1024",
            "quality": "standard",
            "style": "vivid",
            "imageUrl": "",
            "revisedPrompt": "",
        },
        remote=True,
        credential_provider="openai",
    ),
    NodeKind.VIDEO_GENERATION: NodeKindSpec(
        label="Video",
        shortcut="V",
        default_attributes={
            "label": "Video Generation",
            "prompt": "",
            "model": "gen3a_turbo",
            "duration": 5,
            "ratio": "16:9",
            "resolution": "1280x768",
            "videoUrl": "",
            "taskId": "",
            "progress": 0,
        },
        remote=True,
        credential_provider="runway",
    ),

    # ---- Local nodes ----
    NodeKind.TEXT_PROCESSOR: NodeKindSpec(
        label="Process",
        shortcut="P",
        default_attributes={
            "label": "Text Processor",
            "operation": "uppercase",
            "customOperation": "",
            "inputText": "",
            "outputText": "",
        },
        display_field="outputText",
    ),
    NodeKind.OUTPUT: NodeKindSpec(
        label="Output",
        shortcut="O",
        default_attributes={"label": "Output", "value": "", "format": "text"},
        display_field="value",
    ),
}


def get_node_spec(kind: NodeKind | str) -> NodeKindSpec:
    """Look up the metadata for a node kind. Every NodeKind has an entry."""
    return NODE_REGISTRY[NodeKind(kind)]


def kind_for_shortcut(key: str) -> NodeKind | None:
    """Resolve a canvas menu keyboard shortcut (case-insensitive) to a node kind."""
    key = key.strip().upper()
    for kind, spec in NODE_REGISTRY.items():
        if spec.shortcut == key:
            return kind
    return None
