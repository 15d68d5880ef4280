"""
Workflow editor API endpoints.

Everything operates on the in-memory session graph: nothing is persisted, and
a restart begins again from the welcome node.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel, Field

from daisy.models.graph import Edge, ExecutionContext, Graph, Node, NodeKind, NodeNotFoundError
from daisy.models.node_registry import NODE_REGISTRY, kind_for_shortcut
from daisy.services.node_dispatcher import NodeRunResult
from daisy.services.output_format import FILE_EXTENSIONS, MIME_TYPES, decode_data_uri, detect_format
from daisy.services.workflow_session import WorkflowSession, get_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflow", tags=["workflow"])


class AddNodeRequest(BaseModel):
    kind: Optional[NodeKind] = None
    # Canvas menu key (T, I, A, P, G, V, O), used when kind is omitted
    shortcut: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)
    node_id: Optional[str] = None


class UpdateNodeRequest(BaseModel):
    attributes: Dict[str, Any]


class ConnectRequest(BaseModel):
    source_node_id: str
    target_node_id: str


class NodeKindInfo(BaseModel):
    kind: NodeKind
    label: str
    shortcut: Optional[str] = None
    remote: bool


class ActiveEdgesResponse(BaseModel):
    edge_ids: List[str]


def _not_found(e: NodeNotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=str(e))


@router.get("/node-kinds", response_model=List[NodeKindInfo])
async def list_node_kinds():
    """List the node kinds offered by the canvas menu."""
    return [
        NodeKindInfo(kind=kind, label=spec.label, shortcut=spec.shortcut, remote=spec.remote)
        for kind, spec in NODE_REGISTRY.items()
    ]


@router.get("/graph", response_model=Graph)
async def get_graph(session: WorkflowSession = Depends(get_session)):
    return session.graph.snapshot()


@router.post("/nodes", response_model=Node, status_code=201)
async def add_node(request: AddNodeRequest, session: WorkflowSession = Depends(get_session)):
    kind = request.kind
    if kind is None and request.shortcut:
        kind = kind_for_shortcut(request.shortcut)
    if kind is None:
        raise HTTPException(status_code=400, detail="A valid node kind or shortcut is required")

    try:
        return session.add_node(kind, attributes=request.attributes, node_id=request.node_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.patch("/nodes/{node_id}", response_model=Node)
async def update_node(
    node_id: str,
    request: UpdateNodeRequest,
    session: WorkflowSession = Depends(get_session),
):
    try:
        return session.update_node(node_id, request.attributes)
    except NodeNotFoundError as e:
        raise _not_found(e)


@router.post("/edges", response_model=Edge, status_code=201)
async def connect_nodes(request: ConnectRequest, session: WorkflowSession = Depends(get_session)):
    try:
        return await session.connect(request.source_node_id, request.target_node_id)
    except NodeNotFoundError as e:
        raise _not_found(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/nodes/{node_id}/context", response_model=ExecutionContext)
async def get_node_context(node_id: str, session: WorkflowSession = Depends(get_session)):
    """Preview what a node would receive from its connected inputs."""
    try:
        return session.context(node_id)
    except NodeNotFoundError as e:
        raise _not_found(e)


@router.post("/nodes/{node_id}/run", response_model=NodeRunResult)
async def run_node(node_id: str, session: WorkflowSession = Depends(get_session)):
    """
    Run a single node.

    Node-level failures are part of the result (status "failed"), not HTTP
    errors; only an unknown node id is a 404.
    """
    try:
        return await session.run_node(node_id)
    except NodeNotFoundError as e:
        raise _not_found(e)


@router.get("/nodes/{node_id}/download")
async def download_output(node_id: str, session: WorkflowSession = Depends(get_session)):
    """Download an output node's displayed value as a file."""
    try:
        node = session.graph.get_node(node_id)
    except NodeNotFoundError as e:
        raise _not_found(e)
    if node.kind != NodeKind.OUTPUT:
        raise HTTPException(status_code=400, detail="Only output nodes can be downloaded")

    value = str(node.attributes.get("value") or "")
    if not value:
        raise HTTPException(status_code=404, detail="Output node has no value yet")

    fmt = node.attributes.get("format") or detect_format(value)
    content: bytes = value.encode("utf-8")
    media_type = MIME_TYPES.get(fmt, "text/plain")
    extension = FILE_EXTENSIONS.get(fmt, "txt")
    if fmt == "image":
        if not value.startswith("data:"):
            # Remote images are downloaded by the client directly
            raise HTTPException(status_code=400, detail="Image output is a URL, fetch it directly")
        try:
            content, media_type, extension = decode_data_uri(value)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=f"Malformed image data: {e}")

    filename = f"output_{node_id}.{extension}"
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/edges/active", response_model=ActiveEdgesResponse)
async def get_active_edges(session: WorkflowSession = Depends(get_session)):
    return ActiveEdgesResponse(edge_ids=sorted(session.signaler.active_edges))


@router.post("/edges/test-animation", response_model=ActiveEdgesResponse)
async def test_edge_animation(session: WorkflowSession = Depends(get_session)):
    """Light up every edge for a few seconds."""
    return ActiveEdgesResponse(edge_ids=session.test_animation())


@router.get("/events")
async def stream_events(session: WorkflowSession = Depends(get_session)):
    """Stream workflow events to the canvas as server-sent events."""
    queue = session.bus.open_queue()

    async def event_generator():
        try:
            while True:
                event = await queue.get()
                yield f"event: {event.type.value}\ndata: {event.model_dump_json()}\n\n"
        finally:
            session.bus.close_queue(queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
