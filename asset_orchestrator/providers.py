"""
HTTP clients for the external collaborators: mesh/rigging provider (Meshy),
avatar-format converter, prompt enhancement (OpenAI-compatible gateway) and binary fetch.
Every transport or HTTP failure leaves these clients as a ClassifiedError.
"""
import base64
import logging
from typing import Any, Dict, List, Optional

import httpx

from asset_shared.errors import AuthError, NetworkError, ValidationError, classify
from asset_shared.schemas import JobHandle, JobKind, JobStatus

from . import config

logger = logging.getLogger(__name__)


async def _request(
    method: str,
    url: str,
    *,
    timeout: float,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    **kwargs: Any,
) -> httpx.Response:
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=True) as client:
            resp = await client.request(method, url, **kwargs)
            resp.raise_for_status()
            return resp
    except httpx.HTTPStatusError as e:
        err = classify(e)
        err.context["body"] = e.response.text[:300]
        raise err from e
    except httpx.HTTPError as e:
        raise classify(e) from e


def _task_id(data: Dict[str, Any]) -> str:
    # Meshy returns {"result": "<task id>"}; older endpoints use task_id/id
    task_id = data.get("result") or data.get("task_id") or data.get("id")
    if not task_id or not isinstance(task_id, str):
        raise NetworkError(f"Provider did not return a task id: {data}")
    return task_id


# Provider task state -> JobStatus kind
_MESHY_STATES = {
    "PENDING": "queued",
    "IN_PROGRESS": "running",
    "SUCCEEDED": "succeeded",
    "FAILED": "failed",
    "EXPIRED": "failed",
    "CANCELED": "canceled",
}


def parse_meshy_task(data: Dict[str, Any]) -> JobStatus:
    state = _MESHY_STATES.get(str(data.get("status", "")).upper(), "running")
    progress = data.get("progress")
    queue_depth = data.get("preceding_tasks")
    if state == "queued":
        return JobStatus.queued(queue_depth)
    if state == "running":
        return JobStatus.running(progress, queue_depth)
    if state == "canceled":
        return JobStatus.canceled()
    if state == "failed":
        task_error = data.get("task_error") or {}
        message = task_error.get("message") if isinstance(task_error, dict) else None
        return JobStatus.failed(message or data.get("error") or "Task failed")

    urls: Dict[str, str] = {}
    model_urls = data.get("model_urls") or {}
    glb = model_urls.get("glb") or data.get("model_url")
    if glb:
        urls["model"] = glb
    if data.get("thumbnail_url"):
        urls["thumbnail"] = data["thumbnail_url"]
    rig_result = data.get("result")
    if isinstance(rig_result, dict) and rig_result.get("rigged_character_glb_url"):
        urls["rigged_model"] = rig_result["rigged_character_glb_url"]
    return JobStatus.succeeded(urls)


class MeshyClient:
    """Mesh and rigging provider. v2 for text-to-mesh, v1 for image-to-mesh, retexture and rigging."""

    STATUS_PATHS = {
        JobKind.MESH_PREVIEW: ("v2", "/text-to-3d"),
        JobKind.MESH_REFINE: ("v2", "/text-to-3d"),
        JobKind.IMAGE_TO_MESH: ("v1", "/image-to-3d"),
        JobKind.RETEXTURE: ("v1", "/retexture"),
        JobKind.RIG: ("v1", "/rigging"),
    }

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_v1: Optional[str] = None,
        base_v2: Optional[str] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = config.MESHY_API_KEY if api_key is None else api_key
        self.base_v1 = (base_v1 or config.MESHY_API_BASE_V1).rstrip("/")
        self.base_v2 = (base_v2 or config.MESHY_API_BASE_V2).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise AuthError("MESHY_API_KEY environment variable is required")
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def _base(self, version: str) -> str:
        return self.base_v2 if version == "v2" else self.base_v1

    async def _post(self, version: str, path: str, body: Dict[str, Any]) -> str:
        resp = await _request(
            "POST", f"{self._base(version)}{path}",
            timeout=self.timeout, transport=self._transport, headers=self._headers(), json=body,
        )
        return _task_id(resp.json())

    async def submit_preview(self, prompt: str, style_params: Dict[str, Any]) -> str:
        body = {
            "mode": "preview",
            "prompt": prompt,
            "art_style": style_params.get("art_style", "realistic"),
            "ai_model": style_params.get("ai_model", "latest"),
            "topology": style_params.get("topology", "triangle"),
            "target_polycount": style_params.get("target_polycount", 30000),
            "should_remesh": True,
            "symmetry_mode": style_params.get("symmetry_mode", "auto"),
        }
        return await self._post("v2", "/text-to-3d", body)

    async def submit_refine(self, preview_job_id: str, texture_params: Dict[str, Any]) -> str:
        body: Dict[str, Any] = {
            "mode": "refine",
            "preview_task_id": preview_job_id,
            "enable_pbr": texture_params.get("enable_pbr", True),
        }
        if texture_params.get("texture_prompt"):
            body["texture_prompt"] = texture_params["texture_prompt"]
        # Must match the preview model for meshy-5/latest
        if texture_params.get("ai_model"):
            body["ai_model"] = texture_params["ai_model"]
        return await self._post("v2", "/text-to-3d", body)

    async def submit_image_to_mesh(self, image_url: str, params: Dict[str, Any]) -> str:
        body = {
            "image_url": image_url,
            "enable_pbr": params.get("enable_pbr", True),
            "ai_model": params.get("ai_model", "latest"),
            "topology": params.get("topology", "quad"),
            "target_polycount": params.get("target_polycount", 30000),
            "texture_resolution": params.get("texture_resolution", 2048),
        }
        return await self._post("v1", "/image-to-3d", body)

    async def submit_retexture(self, model_url: str, style_params: Dict[str, Any]) -> str:
        body = {
            "model_url": model_url,
            "text_style_prompt": style_params.get("text_style_prompt", ""),
            "art_style": style_params.get("art_style", "realistic"),
            "ai_model": style_params.get("ai_model", "meshy-5"),
            "enable_original_uv": style_params.get("enable_original_uv", True),
        }
        return await self._post("v1", "/retexture", body)

    async def submit_rig(self, model_url: str, height_meters: float) -> str:
        return await self._post("v1", "/rigging", {"model_url": model_url, "height_meters": height_meters})

    async def get_status(self, handle: JobHandle) -> JobStatus:
        version, path = self.STATUS_PATHS.get(handle.kind, ("v2", "/text-to-3d"))
        resp = await _request(
            "GET", f"{self._base(version)}{path}/{handle.job_id}",
            timeout=self.timeout, transport=self._transport, headers=self._headers(),
        )
        return parse_meshy_task(resp.json())


class AvatarConverterClient:
    """GLB -> VRM converter service. Answers synchronously."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        author: str = "AssetForge",
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or config.AVATAR_CONVERTER_URL).rstrip("/")
        self.author = author
        self.timeout = timeout
        self._transport = transport

    async def convert(
        self,
        display_name: str,
        mesh_buffer: Optional[bytes] = None,
        model_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"avatar_name": display_name, "author": self.author}
        if mesh_buffer is not None:
            body["glb_data"] = base64.b64encode(mesh_buffer).decode("ascii")
        else:
            body["model_url"] = model_url
        resp = await _request(
            "POST", f"{self.base_url}/convert", timeout=self.timeout, transport=self._transport, json=body,
        )
        data = resp.json()
        raw = data.get("vrm_data")
        converted = base64.b64decode(raw) if raw else b""
        warnings: List[str] = [str(w) for w in data.get("warnings") or []]
        return {"converted_buffer": converted, "warnings": warnings}


_ENHANCE_SYSTEM_PROMPT = """You are an expert at optimizing prompts for 3D asset generation.
Your task is to enhance the user's description to create better results with text-to-3D generation.

Focus on:
- Clear, specific visual details
- Material and texture descriptions
- Geometric shape and form
- Game-ready asset considerations"""

_AVATAR_REQUIREMENTS = """

CRITICAL REQUIREMENTS FOR CHARACTER RIGGING:
The generated model will be auto-rigged, so the body structure MUST be clearly visible:
1. POSE: Standing in T-pose with arms stretched out horizontally, legs slightly apart
2. EMPTY HANDS: No weapons, tools, shields, or held items
3. VISIBLE LIMBS: no long robes, cloaks or capes that hide arms or legs
4. CLEAR SILHOUETTE: head, torso, 2 arms, 2 legs

Always end with: "Full body character in T-pose with arms extended horizontally, legs apart, empty open hands, clearly visible arms and legs.\""""


class PromptEnhancerClient:
    """Prompt rewriting through an OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or config.AI_GATEWAY_URL).rstrip("/")
        self.api_key = config.AI_GATEWAY_API_KEY if api_key is None else api_key
        self.model = model or config.ENHANCEMENT_MODEL
        self.timeout = timeout
        self._transport = transport

    async def enhance(self, prompt: str, asset_type: str = "item", is_avatar: bool = False) -> Dict[str, Any]:
        if not self.api_key:
            return {"enhanced_prompt": prompt, "error": "No AI_GATEWAY_API_KEY configured"}

        system_prompt = _ENHANCE_SYSTEM_PROMPT
        if is_avatar:
            system_prompt += _AVATAR_REQUIREMENTS
        system_prompt += "\n\nKeep the enhanced prompt concise but detailed. Return ONLY the enhanced prompt, nothing else."

        resp = await _request(
            "POST", f"{self.base_url}/chat/completions",
            timeout=self.timeout,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "model": self.model,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": f'Enhance this {asset_type} asset description for 3D generation: "{prompt}"'},
                ],
                "temperature": 0.7,
            },
        )
        choices = resp.json().get("choices") or []
        content = ""
        if choices:
            content = ((choices[0].get("message") or {}).get("content") or "").strip().strip('"')
        if not content:
            return {"enhanced_prompt": prompt, "error": "Enhancement returned empty text"}
        return {"enhanced_prompt": content, "error": None}


class BinaryFetcher:
    """Download remote artifacts. data: URIs are decoded locally."""

    def __init__(self, timeout: float = 120.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self._transport = transport

    async def download(self, url: str) -> bytes:
        if url.startswith("data:"):
            header, _, payload = url.partition(",")
            if ";base64" not in header:
                raise ValidationError("Only base64 data URIs are supported", field="url")
            try:
                return base64.b64decode(payload, validate=True)
            except ValueError as e:
                raise ValidationError("Invalid base64 data URI", field="url", cause=e) from e
        resp = await _request("GET", url, timeout=self.timeout, transport=self._transport)
        logger.debug("Downloaded %d bytes from %s", len(resp.content), url)
        return resp.content
