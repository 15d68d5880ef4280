"""
Context aggregation.

Folds the outputs of a node's upstream nodes into one ExecutionContext:

- text_context: one labelled line per contributing upstream node, in
  incoming-edge order, trailing whitespace stripped.
- image_context: the media URL of the LAST image-bearing upstream node
  (image inputs, generated images, generated videos), or None.
- connected_inputs: every upstream node summary, for input previews.

Aggregation is pure: the same upstream nodes always yield the same context.
"""

from __future__ import annotations

import logging
from typing import Any

from daisy.models.graph import ConnectedInput, ExecutionContext, Graph, Node, NodeKind
from daisy.services.input_resolver import get_incoming_nodes

logger = logging.getLogger(__name__)

TEXT_INPUT_LABEL = "Text Input: "


def _text(attributes: dict[str, Any], key: str) -> str:
    value = attributes.get(key)
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def build_execution_context(upstream: list[Node]) -> ExecutionContext:
    """Merge upstream node outputs into a single execution context."""
    lines: list[str] = []
    image_context: str | None = None

    for node in upstream:
        attrs = node.attributes

        match node.kind:
            case NodeKind.TEXT_INPUT:
                value = _text(attrs, "value")
                if value:
                    lines.append(f"{TEXT_INPUT_LABEL}{value}\n")

            case NodeKind.IMAGE_INPUT:
                image_url = _text(attrs, "imageUrl")
                if image_url:
                    image_context = image_url
                    lines.append("Image: [Image provided]\n")

            case NodeKind.TEXT_PROCESSOR:
                processed = _text(attrs, "outputText") or _text(attrs, "inputText")
                if processed:
                    lines.append(f"Processed Text: {processed}\n")

            case NodeKind.AI_PROMPT:
                response = _text(attrs, "response")
                if response:
                    lines.append(f"AI Response: {response}\n")

            case NodeKind.IMAGE_GENERATION:
                image_url = _text(attrs, "imageUrl")
                if image_url:
                    image_context = image_url
                    lines.append("Generated Image: [Image generated from DALL-E]\n")
                    revised = _text(attrs, "revisedPrompt")
                    if revised:
                        lines.append(f"Original Prompt: {revised}\n")

            case NodeKind.VIDEO_GENERATION:
                media_url = _text(attrs, "imageUrl") or _text(attrs, "videoUrl")
                if media_url:
                    image_context = media_url
                    lines.append("Generated Video: [Video generated from Runway]\n")
                    revised = _text(attrs, "revisedPrompt")
                    if revised:
                        lines.append(f"Original Prompt: {revised}\n")

            case NodeKind.OUTPUT:
                # Output nodes only display; they feed nothing forward
                pass

    connected_inputs = [
        ConnectedInput(
            node_id=node.id,
            kind=node.kind,
            attributes=dict(node.attributes),
        )
        for node in upstream
    ]

    return ExecutionContext(
        text_context="".join(lines).rstrip(),
        image_context=image_context,
        connected_inputs=connected_inputs,
    )


def aggregate_for_node(graph: Graph, node_id: str) -> ExecutionContext:
    """Resolve node_id's incoming nodes and aggregate them."""
    upstream = get_incoming_nodes(graph, node_id)
    context = build_execution_context(upstream)
    logger.debug(
        "Context for %s: %d inputs, %d text chars, image=%s",
        node_id,
        len(context.connected_inputs),
        len(context.text_context),
        "yes" if context.image_context else "no",
    )
    return context
