import asyncio
import base64
import json

import httpx
import pytest

from asset_orchestrator.providers import (
    AvatarConverterClient,
    BinaryFetcher,
    MeshyClient,
    PromptEnhancerClient,
    parse_meshy_task,
)
from asset_shared.errors import AuthError, NetworkError, ValidationError
from asset_shared.schemas import JobHandle, JobKind, JobStatusKind


class Recorder:
    """MockTransport handler that records requests and answers from a route table."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key not in self.routes:
            return httpx.Response(404, json={"message": "not found"})
        status, body = self.routes[key]
        return httpx.Response(status, json=body)


def _meshy(routes, api_key="test-key"):
    recorder = Recorder(routes)
    client = MeshyClient(
        api_key=api_key,
        base_v1="https://meshy.test/openapi/v1",
        base_v2="https://meshy.test/openapi/v2",
        transport=httpx.MockTransport(recorder),
    )
    return client, recorder


class TestParseMeshyTask:
    def test_pending_is_queued_with_depth(self):
        status = parse_meshy_task({"status": "PENDING", "preceding_tasks": 4})
        assert status.status == JobStatusKind.QUEUED
        assert status.queue_depth == 4

    def test_in_progress(self):
        status = parse_meshy_task({"status": "IN_PROGRESS", "progress": 37})
        assert status.status == JobStatusKind.RUNNING
        assert status.progress == 37

    def test_succeeded_outputs(self):
        status = parse_meshy_task({
            "status": "SUCCEEDED",
            "model_urls": {"glb": "https://cdn/m.glb"},
            "thumbnail_url": "https://cdn/t.png",
        })
        assert status.output_urls == {"model": "https://cdn/m.glb", "thumbnail": "https://cdn/t.png"}

    def test_rigging_output(self):
        status = parse_meshy_task({"status": "SUCCEEDED", "result": {"rigged_character_glb_url": "https://cdn/r.glb"}})
        assert status.output_urls["rigged_model"] == "https://cdn/r.glb"

    @pytest.mark.parametrize("state", ["FAILED", "EXPIRED"])
    def test_failed_states(self, state):
        status = parse_meshy_task({"status": state, "task_error": {"message": "bad geometry"}})
        assert status.status == JobStatusKind.FAILED
        assert status.error_message == "bad geometry"

    def test_canceled(self):
        assert parse_meshy_task({"status": "CANCELED"}).status == JobStatusKind.CANCELED


class TestMeshyClient:
    def test_submit_preview_uses_v2(self):
        client, recorder = _meshy({("POST", "/openapi/v2/text-to-3d"): (202, {"result": "task-9"})})
        job_id = asyncio.run(client.submit_preview("iron sword", {"target_polycount": 10000}))
        assert job_id == "task-9"
        sent = json.loads(recorder.requests[0].content)
        assert sent["mode"] == "preview"
        assert sent["target_polycount"] == 10000
        assert recorder.requests[0].headers["Authorization"] == "Bearer test-key"

    def test_submit_rig_uses_v1(self):
        client, recorder = _meshy({("POST", "/openapi/v1/rigging"): (200, {"result": "rig-1"})})
        assert asyncio.run(client.submit_rig("https://cdn/m.glb", 1.7)) == "rig-1"
        assert json.loads(recorder.requests[0].content) == {"model_url": "https://cdn/m.glb", "height_meters": 1.7}

    def test_get_status_path_by_kind(self):
        client, recorder = _meshy({
            ("GET", "/openapi/v1/image-to-3d/img-1"): (200, {"status": "IN_PROGRESS", "progress": 12}),
        })
        status = asyncio.run(client.get_status(JobHandle(job_id="img-1", kind=JobKind.IMAGE_TO_MESH)))
        assert status.progress == 12

    def test_missing_key_is_auth_error(self):
        client, recorder = _meshy({}, api_key="")
        with pytest.raises(AuthError):
            asyncio.run(client.submit_preview("x", {}))
        assert recorder.requests == []

    def test_server_error_is_retryable_network_error(self):
        client, _ = _meshy({("POST", "/openapi/v2/text-to-3d"): (503, {"message": "busy"})})
        with pytest.raises(NetworkError) as info:
            asyncio.run(client.submit_preview("x", {}))
        assert info.value.is_retryable
        assert info.value.context["status_code"] == 503
        assert "busy" in info.value.context["body"]

    def test_401_is_auth_error(self):
        client, _ = _meshy({("POST", "/openapi/v1/retexture"): (401, {"message": "bad key"})})
        with pytest.raises(AuthError):
            asyncio.run(client.submit_retexture("https://cdn/m.glb", {"text_style_prompt": "gold"}))

    def test_missing_task_id(self):
        client, _ = _meshy({("POST", "/openapi/v1/image-to-3d"): (200, {})})
        with pytest.raises(NetworkError):
            asyncio.run(client.submit_image_to_mesh("https://img/x.png", {}))


class TestAvatarConverterClient:
    def test_round_trips_base64(self):
        def handler(request):
            body = json.loads(request.content)
            assert base64.b64decode(body["glb_data"]) == b"glb-bytes"
            assert body["avatar_name"] == "Knight"
            return httpx.Response(200, json={"vrm_data": base64.b64encode(b"vrm").decode(), "warnings": ["w1"]})

        client = AvatarConverterClient(base_url="https://conv.test", transport=httpx.MockTransport(handler))
        result = asyncio.run(client.convert("Knight", mesh_buffer=b"glb-bytes"))
        assert result == {"converted_buffer": b"vrm", "warnings": ["w1"]}


class TestPromptEnhancerClient:
    def test_without_key_reports_error(self):
        client = PromptEnhancerClient(api_key="", transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        result = asyncio.run(client.enhance("sword"))
        assert result["enhanced_prompt"] == "sword"
        assert result["error"]

    def test_character_prompt_adds_rigging_requirements(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"choices": [{"message": {"content": '"a knight in T-pose"'}}]})

        client = PromptEnhancerClient(
            base_url="https://gw.test/v1", api_key="k", transport=httpx.MockTransport(handler),
        )
        result = asyncio.run(client.enhance("knight", asset_type="character", is_avatar=True))
        assert result == {"enhanced_prompt": "a knight in T-pose", "error": None}
        assert "T-pose" in seen["messages"][0]["content"]
        assert "character" in seen["messages"][1]["content"]


class TestBinaryFetcher:
    def test_data_uri(self):
        uri = "data:model/gltf-binary;base64," + base64.b64encode(b"abc").decode()
        assert asyncio.run(BinaryFetcher().download(uri)) == b"abc"

    def test_bad_data_uri(self):
        with pytest.raises(ValidationError):
            asyncio.run(BinaryFetcher().download("data:text/plain,hello"))

    def test_http_download(self):
        fetcher = BinaryFetcher(transport=httpx.MockTransport(lambda r: httpx.Response(200, content=b"glb")))
        assert asyncio.run(fetcher.download("https://cdn/m.glb")) == b"glb"

    def test_http_404(self):
        fetcher = BinaryFetcher(transport=httpx.MockTransport(lambda r: httpx.Response(404)))
        with pytest.raises(NetworkError) as info:
            asyncio.run(fetcher.download("https://cdn/missing.glb"))
        assert not info.value.is_retryable
