"""
Tests for single-node execution: per-kind executors, credential gating,
error conversion, edge signaling and the run state machine.
"""

import asyncio

import pytest

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from fakes import FakeCapabilityClient, RecordingSleep

from daisy.capabilities.credentials import CredentialStore
from daisy.capabilities.errors import AuthError, PolicyError, QuotaError
from daisy.config import EngineSettings
from daisy.models.graph import Graph, NodeKind, NodeNotFoundError
from daisy.services.edge_signaling import EdgeActivitySignaler
from daisy.services.event_bus import EventBus, EventType
from daisy.services.node_dispatcher import NodeDispatcher, _registry


def make_dispatcher(
    graph: Graph,
    client: FakeCapabilityClient | None = None,
    keys: dict[str, str] | None = None,
    sleep: RecordingSleep | None = None,
) -> NodeDispatcher:
    bus = EventBus()
    return NodeDispatcher(
        graph,
        client or FakeCapabilityClient(),
        CredentialStore(keys if keys is not None else {"openai": "sk-test", "runway": "rw-test"}),
        EdgeActivitySignaler(bus),
        bus,
        settings=EngineSettings(),
        sleep=sleep or RecordingSleep(),
    )


def status_trail(dispatcher: NodeDispatcher, node_id: str) -> list[str]:
    return [
        event.data["status"]
        for event in dispatcher.bus.get_history(EventType.NODE_STATUS, node_id=node_id)
    ]


class TestRegistry:
    def test_every_kind_has_an_executor(self):
        assert set(_registry) == set(NodeKind)


class TestAIPrompt:
    @pytest.mark.asyncio
    async def test_text_chain(self):
        """Connected text is sent as context ahead of the task prompt."""
        graph = Graph()
        graph.add_node(NodeKind.TEXT_INPUT, {"value": "hello"}, node_id="t1")
        graph.add_node(NodeKind.AI_PROMPT, {"prompt": "summarize"}, node_id="a1")
        graph.connect("t1", "a1")
        client = FakeCapabilityClient()
        client.chat_response = {"success": True, "response": "a greeting", "usage": {"total_tokens": 7}}
        dispatcher = make_dispatcher(graph, client)

        result = await dispatcher.run_node("a1")

        assert result.status == "succeeded"
        _, payload, api_key = client.calls_to("chat")[0]
        assert api_key == "sk-test"
        assert payload["prompt"] == "Context from connected nodes:\nText Input: hello\n\nTask: summarize"
        assert payload["model"] == "gpt-4o"
        assert payload["maxTokens"] == 1000
        assert "messages" not in payload
        node = graph.get_node("a1")
        assert node.attributes["response"] == "a greeting"
        assert node.attributes["usage"] == {"total_tokens": 7}

    @pytest.mark.asyncio
    async def test_prompt_only_without_connections(self):
        graph = Graph()
        graph.add_node(NodeKind.AI_PROMPT, {"prompt": "tell a joke"}, node_id="a1")
        client = FakeCapabilityClient()
        await make_dispatcher(graph, client).run_node("a1")
        assert client.calls_to("chat")[0][1]["prompt"] == "tell a joke"

    @pytest.mark.asyncio
    async def test_missing_credential_fails_without_network(self):
        graph = Graph()
        graph.add_node(NodeKind.AI_PROMPT, {"prompt": "hi"}, node_id="a1")
        client = FakeCapabilityClient()
        dispatcher = make_dispatcher(graph, client, keys={})

        result = await dispatcher.run_node("a1")

        assert result.status == "failed"
        assert result.error_category == "configuration"
        assert client.calls == []
        node = graph.get_node("a1")
        assert "OpenAI API key not configured" in node.attributes["response"]
        assert node.attributes["errorCategory"] == "configuration"

    @pytest.mark.asyncio
    async def test_empty_prompt_is_validation_error(self):
        graph = Graph()
        graph.add_node(NodeKind.AI_PROMPT, node_id="a1")
        client = FakeCapabilityClient()
        result = await make_dispatcher(graph, client).run_node("a1")
        assert result.error_category == "validation"
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_vision_upgrade_with_image_context(self):
        graph = Graph()
        graph.add_node(NodeKind.TEXT_INPUT, {"value": "a beach photo"}, node_id="t1")
        graph.add_node(NodeKind.IMAGE_INPUT, {"imageUrl": "data:image/png;base64,AAA"}, node_id="i1")
        graph.add_node(NodeKind.AI_PROMPT, {"prompt": "describe", "model": "gpt-3.5-turbo"}, node_id="a1")
        graph.connect("t1", "a1")
        graph.connect("i1", "a1")
        client = FakeCapabilityClient()

        result = await make_dispatcher(graph, client).run_node("a1")

        assert result.status == "succeeded"
        payload = client.calls_to("chat")[0][1]
        assert payload["model"] == "gpt-4o"
        assert "prompt" not in payload
        [message] = payload["messages"]
        assert message["role"] == "user"
        text_part, image_part = message["content"]
        assert text_part == {
            "type": "text",
            "text": "Context: Text Input: a beach photo\nImage: [Image provided]\n\nTask: describe",
        }
        assert image_part == {
            "type": "image_url",
            "image_url": {"url": "data:image/png;base64,AAA", "detail": "high"},
        }
        assert graph.get_node("a1").attributes["model"] == "gpt-4o"

    @pytest.mark.asyncio
    async def test_vision_upgrade_is_kept_when_the_call_fails(self):
        graph = Graph()
        graph.add_node(NodeKind.IMAGE_INPUT, {"imageUrl": "https://img.example/x.png"}, node_id="i1")
        graph.add_node(NodeKind.AI_PROMPT, {"prompt": "describe", "model": "gpt-3.5-turbo"}, node_id="a1")
        graph.connect("i1", "a1")
        client = FakeCapabilityClient()

        def reject(payload):
            raise AuthError("Invalid API key")

        client.chat_handler = reject

        result = await make_dispatcher(graph, client).run_node("a1")

        assert result.status == "failed"
        assert result.error_category == "auth"
        assert graph.get_node("a1").attributes["model"] == "gpt-4o"

    @pytest.mark.asyncio
    async def test_vision_model_is_left_alone(self):
        graph = Graph()
        graph.add_node(NodeKind.IMAGE_INPUT, {"imageUrl": "https://img.example/x.png"}, node_id="i1")
        graph.add_node(
            NodeKind.AI_PROMPT,
            {"prompt": "describe", "model": "gpt-4-vision-preview"},
            node_id="a1",
        )
        graph.connect("i1", "a1")
        client = FakeCapabilityClient()
        await make_dispatcher(graph, client).run_node("a1")
        assert client.calls_to("chat")[0][1]["model"] == "gpt-4-vision-preview"


class TestImageGeneration:
    @pytest.mark.asyncio
    async def test_empty_prompt_rejected_before_any_call(self):
        graph = Graph()
        graph.add_node(NodeKind.IMAGE_GENERATION, node_id="g1")
        client = FakeCapabilityClient()
        dispatcher = make_dispatcher(graph, client, keys={})

        result = await dispatcher.run_node("g1")

        assert result.status == "failed"
        assert result.error_category == "validation"
        assert client.calls == []
        assert graph.get_node("g1").attributes["error"].startswith("Missing Input")

    @pytest.mark.asyncio
    async def test_connected_text_replaces_own_prompt(self):
        graph = Graph()
        graph.add_node(NodeKind.TEXT_INPUT, {"value": "  a cat on a roof "}, node_id="t1")
        graph.add_node(NodeKind.IMAGE_GENERATION, {"prompt": "ignored", "size": "1792x1024"}, node_id="g1")
        graph.connect("t1", "g1")
        client = FakeCapabilityClient()

        result = await make_dispatcher(graph, client).run_node("g1")

        assert result.status == "succeeded"
        payload = client.calls_to("image")[0][1]
        assert payload == {"prompt": "a cat on a roof", "size": "1792x1024", "quality": "standard", "style": "vivid"}
        node = graph.get_node("g1")
        assert node.attributes["imageUrl"] == "https://images.example/cat.png"
        assert node.attributes["revisedPrompt"] == "a fluffy cat"

    @pytest.mark.asyncio
    async def test_success_without_image_is_an_error(self):
        graph = Graph()
        graph.add_node(NodeKind.IMAGE_GENERATION, {"prompt": "a cat"}, node_id="g1")
        client = FakeCapabilityClient()
        client.image_response = {"success": True}

        result = await make_dispatcher(graph, client).run_node("g1")

        assert result.status == "failed"
        assert result.error_category == "remote"
        assert "No image was generated" in graph.get_node("g1").attributes["error"]

    @pytest.mark.asyncio
    async def test_previous_result_cleared_on_failure(self):
        graph = Graph()
        graph.add_node(
            NodeKind.IMAGE_GENERATION,
            {"prompt": "a cat", "imageUrl": "https://old.example/1.png"},
            node_id="g1",
        )
        client = FakeCapabilityClient()
        client.image_response = {"success": True}

        await make_dispatcher(graph, client).run_node("g1")

        assert graph.get_node("g1").attributes["imageUrl"] == ""


class TestVideoGeneration:
    @pytest.mark.asyncio
    async def test_task_is_polled_to_completion(self):
        graph = Graph()
        graph.add_node(NodeKind.IMAGE_INPUT, {"imageUrl": "https://img.example/start.png"}, node_id="i1")
        graph.add_node(NodeKind.VIDEO_GENERATION, {"prompt": "waves rolling in"}, node_id="v1")
        graph.connect("i1", "v1")
        client = FakeCapabilityClient()
        client.status_responses = [
            {"status": "RUNNING", "progress": 0.5},
            {"status": "succeeded"},
            {"status": "SUCCEEDED", "output": ["https://x/video.mp4"]},
        ]
        sleep = RecordingSleep()
        dispatcher = make_dispatcher(graph, client, sleep=sleep)

        result = await dispatcher.run_node("v1")

        assert result.status == "succeeded"
        _, payload, api_key = client.calls_to("video")[0]
        assert api_key == "rw-test"
        assert payload["prompt"] == "waves rolling in"
        assert payload["image"] == "https://img.example/start.png"
        node = graph.get_node("v1")
        assert node.attributes["videoUrl"] == "https://x/video.mp4"
        assert node.attributes["progress"] == 100
        assert node.attributes["taskId"] == "task-1"
        assert sleep.delays == [5.0, 10.0, 10.0]

        progress_writes = [
            event.data["changes"]["progress"]
            for event in dispatcher.bus.get_history(EventType.NODE_UPDATED, node_id="v1")
            if "progress" in event.data["changes"]
        ]
        assert 50 in progress_writes

    @pytest.mark.asyncio
    async def test_immediate_output_skips_polling(self):
        graph = Graph()
        graph.add_node(NodeKind.VIDEO_GENERATION, {"prompt": "sunrise"}, node_id="v1")
        client = FakeCapabilityClient()
        client.video_response = {"success": True, "videoUrl": "https://x/instant.mp4"}
        sleep = RecordingSleep()

        result = await make_dispatcher(graph, client, sleep=sleep).run_node("v1")

        assert result.status == "succeeded"
        assert graph.get_node("v1").attributes["videoUrl"] == "https://x/instant.mp4"
        assert client.calls_to("status") == []
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_remote_failure_is_shown_on_node(self):
        graph = Graph()
        graph.add_node(NodeKind.VIDEO_GENERATION, {"prompt": "sunrise"}, node_id="v1")
        client = FakeCapabilityClient()
        client.status_responses = [{"status": "FAILED", "error": "Out of capacity"}]

        result = await make_dispatcher(graph, client).run_node("v1")

        assert result.status == "failed"
        assert "Out of capacity" in graph.get_node("v1").attributes["error"]

    @pytest.mark.asyncio
    async def test_requires_runway_key(self):
        graph = Graph()
        graph.add_node(NodeKind.VIDEO_GENERATION, {"prompt": "sunrise"}, node_id="v1")
        client = FakeCapabilityClient()

        result = await make_dispatcher(graph, client, keys={"openai": "sk"}).run_node("v1")

        assert result.error_category == "configuration"
        assert "Runway API key not configured" in result.error
        assert client.calls == []


class TestLocalNodes:
    @pytest.mark.asyncio
    async def test_text_processor(self):
        graph = Graph()
        graph.add_node(
            NodeKind.TEXT_PROCESSOR,
            {"inputText": "hello world", "operation": "wordcount"},
            node_id="p1",
        )
        result = await make_dispatcher(graph).run_node("p1")
        assert result.status == "succeeded"
        assert graph.get_node("p1").attributes["outputText"] == "Word count: 2"

    @pytest.mark.asyncio
    async def test_input_nodes_are_unchanged(self):
        graph = Graph()
        graph.add_node(NodeKind.TEXT_INPUT, {"value": "keep me"}, node_id="t1")
        result = await make_dispatcher(graph).run_node("t1")
        assert result.status == "succeeded"
        assert graph.get_node("t1").attributes["value"] == "keep me"

    @pytest.mark.asyncio
    async def test_output_shows_first_input_only(self):
        graph = Graph()
        graph.add_node(NodeKind.AI_PROMPT, {"response": '{"score": 9}'}, node_id="a1")
        graph.add_node(NodeKind.TEXT_INPUT, {"value": "second"}, node_id="t1")
        graph.add_node(NodeKind.OUTPUT, node_id="o1")
        graph.connect("a1", "o1")
        graph.connect("t1", "o1")

        await make_dispatcher(graph).run_node("o1")

        node = graph.get_node("o1")
        assert node.attributes["value"] == '{"score": 9}'
        assert node.attributes["format"] == "json"

    @pytest.mark.asyncio
    async def test_output_marks_generated_images(self):
        graph = Graph()
        graph.add_node(NodeKind.IMAGE_GENERATION, {"imageUrl": "https://blob.example/abc"}, node_id="g1")
        graph.add_node(NodeKind.OUTPUT, node_id="o1")
        graph.connect("g1", "o1")

        await make_dispatcher(graph).run_node("o1")

        node = graph.get_node("o1")
        assert node.attributes["value"] == "https://blob.example/abc"
        assert node.attributes["format"] == "image"

    @pytest.mark.asyncio
    async def test_output_without_inputs_is_unchanged(self):
        graph = Graph()
        graph.add_node(NodeKind.OUTPUT, {"value": "stale"}, node_id="o1")
        result = await make_dispatcher(graph).run_node("o1")
        assert result.status == "succeeded"
        assert graph.get_node("o1").attributes["value"] == "stale"


class TestRunLifecycle:
    @pytest.mark.asyncio
    async def test_unknown_node_raises(self):
        with pytest.raises(NodeNotFoundError):
            await make_dispatcher(Graph()).run_node("ghost")

    @pytest.mark.asyncio
    async def test_status_trail_on_success(self):
        graph = Graph()
        graph.add_node(NodeKind.AI_PROMPT, {"prompt": "hi"}, node_id="a1")
        dispatcher = make_dispatcher(graph)
        await dispatcher.run_node("a1")
        assert status_trail(dispatcher, "a1") == ["aggregating", "dispatching", "succeeded", "idle"]

    @pytest.mark.asyncio
    async def test_status_trail_on_failure(self):
        graph = Graph()
        graph.add_node(NodeKind.AI_PROMPT, node_id="a1")
        dispatcher = make_dispatcher(graph)
        await dispatcher.run_node("a1")
        assert status_trail(dispatcher, "a1") == ["aggregating", "dispatching", "failed", "idle"]

    @pytest.mark.asyncio
    async def test_previous_error_cleared_on_success(self):
        graph = Graph()
        graph.add_node(
            NodeKind.AI_PROMPT,
            {"prompt": "hi", "error": "old failure", "errorCategory": "remote"},
            node_id="a1",
        )
        await make_dispatcher(graph).run_node("a1")
        node = graph.get_node("a1")
        assert node.attributes["error"] == ""
        assert node.attributes["errorCategory"] == ""

    @pytest.mark.asyncio
    async def test_policy_rejection_lists_suggestions_on_node(self):
        graph = Graph()
        graph.add_node(NodeKind.AI_PROMPT, {"prompt": "hi"}, node_id="a1")
        client = FakeCapabilityClient()

        def reject(payload):
            raise PolicyError("Rejected by the safety system", suggestions=["Try gentler wording"])

        client.chat_handler = reject

        await make_dispatcher(graph, client).run_node("a1")

        response = graph.get_node("a1").attributes["response"]
        assert response.startswith("Safety System Rejection")
        assert "1. Try gentler wording" in response

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_contained(self):
        graph = Graph()
        graph.add_node(NodeKind.AI_PROMPT, {"prompt": "hi"}, node_id="a1")
        client = FakeCapabilityClient()

        def explode(payload):
            raise RuntimeError("kaboom")

        client.chat_handler = explode

        result = await make_dispatcher(graph, client).run_node("a1")

        assert result.status == "failed"
        assert result.error_category == "remote"
        assert "RuntimeError: kaboom" in result.error

    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_another_node(self):
        graph = Graph()
        graph.add_node(NodeKind.AI_PROMPT, {"prompt": "bad"}, node_id="a1")
        graph.add_node(NodeKind.AI_PROMPT, {"prompt": "good"}, node_id="a2")
        client = FakeCapabilityClient()

        def answer(payload):
            if payload["prompt"] == "bad":
                raise QuotaError("You exceeded your current quota")
            return {"success": True, "response": "fine"}

        client.chat_handler = answer
        dispatcher = make_dispatcher(graph, client)

        bad, good = await asyncio.gather(dispatcher.run_node("a1"), dispatcher.run_node("a2"))

        assert bad.status == "failed"
        assert bad.error_category == "quota"
        assert good.status == "succeeded"
        assert graph.get_node("a2").attributes["response"] == "fine"
        assert "errorCategory" in graph.get_node("a2").attributes
        assert graph.get_node("a2").attributes["errorCategory"] == ""

    @pytest.mark.asyncio
    async def test_duplicate_run_is_rejected_while_in_flight(self):
        graph = Graph()
        graph.add_node(NodeKind.TEXT_INPUT, {"value": "hello"}, node_id="t1")
        graph.add_node(NodeKind.AI_PROMPT, {"prompt": "summarize"}, node_id="a1")
        graph.connect("t1", "a1")
        client = FakeCapabilityClient()
        client.gate = asyncio.Event()
        dispatcher = make_dispatcher(graph, client)

        first = asyncio.create_task(dispatcher.run_node("a1"))
        await asyncio.sleep(0)
        assert dispatcher.is_running("a1")
        assert dispatcher.signaler.is_active("edge-t1-a1")

        second = await dispatcher.run_node("a1")
        assert second.status == "rejected"

        client.gate.set()
        result = await first

        assert result.status == "succeeded"
        assert len(client.calls_to("chat")) == 1
        assert not dispatcher.is_running("a1")
        assert not dispatcher.signaler.is_active("edge-t1-a1")

    @pytest.mark.asyncio
    async def test_cancelled_run_leaves_node_runnable(self):
        graph = Graph()
        graph.add_node(NodeKind.TEXT_INPUT, {"value": "hello"}, node_id="t1")
        graph.add_node(NodeKind.AI_PROMPT, {"prompt": "summarize"}, node_id="a1")
        graph.connect("t1", "a1")
        client = FakeCapabilityClient()
        client.gate = asyncio.Event()
        dispatcher = make_dispatcher(graph, client)

        task = asyncio.create_task(dispatcher.run_node("a1"))
        await asyncio.sleep(0)
        assert dispatcher.is_running("a1")

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not dispatcher.is_running("a1")
        assert not dispatcher.signaler.is_active("edge-t1-a1")
        assert status_trail(dispatcher, "a1")[-1] == "idle"

        client.gate.set()
        result = await dispatcher.run_node("a1")

        assert result.status == "succeeded"
        assert len(client.calls_to("chat")) == 2

    @pytest.mark.asyncio
    async def test_edges_are_signaled_around_dispatch(self):
        graph = Graph()
        graph.add_node(NodeKind.TEXT_INPUT, {"value": "hello"}, node_id="t1")
        graph.add_node(NodeKind.TEXT_INPUT, {"value": "there"}, node_id="t2")
        graph.add_node(NodeKind.OUTPUT, node_id="o1")
        graph.connect("t1", "o1")
        graph.connect("t2", "o1")
        dispatcher = make_dispatcher(graph)

        await dispatcher.run_node("o1")

        activated = dispatcher.bus.get_history(EventType.EDGES_ACTIVATED)
        deactivated = dispatcher.bus.get_history(EventType.EDGES_DEACTIVATED)
        assert activated[0].edge_ids == ["edge-t1-o1", "edge-t2-o1"]
        assert deactivated[0].edge_ids == ["edge-t1-o1", "edge-t2-o1"]
        assert dispatcher.signaler.active_edges == frozenset()
