"""
Stage Drivers: one per external job type.
Each driver submits a job and interprets its terminal status; polling is the Task Poller's job.
Drivers hold no per-run state.
"""
import logging
import uuid
from typing import Any, Dict, List, NoReturn, Optional

from pydantic import BaseModel, Field

from asset_shared.errors import GenerationError, ValidationError, classify
from asset_shared.schemas import JobHandle, JobKind, JobStatus, JobStatusKind, QualityPreset

logger = logging.getLogger(__name__)

MAX_PROMPT_LENGTH = 600  # provider limit for text-to-3d


class EnhancementInput(BaseModel):
    prompt: Optional[str] = None
    asset_type: str = "item"
    is_avatar: bool = False


class EnhancementOutput(BaseModel):
    prompt: str
    original_prompt: str


class PreviewInput(BaseModel):
    prompt: Optional[str] = None
    preset: QualityPreset
    art_style: str = "realistic"


class PreviewOutput(BaseModel):
    job_id: str


class RefineInput(BaseModel):
    preview_job_id: Optional[str] = None
    preset: QualityPreset
    texture_prompt: Optional[str] = None


class ImageToMeshInput(BaseModel):
    image_url: Optional[str] = None
    preset: QualityPreset


class RetextureInput(BaseModel):
    model_url: Optional[str] = None
    style_prompt: Optional[str] = None
    preset: Optional[QualityPreset] = None
    art_style: str = "realistic"


class MeshOutput(BaseModel):
    job_id: str
    model_url: str
    thumbnail_url: Optional[str] = None


class RigInput(BaseModel):
    model_url: Optional[str] = None
    height_meters: float = Field(default=1.7, gt=0)


class RigOutput(BaseModel):
    job_id: str
    rigged_model_url: str


class AvatarInput(BaseModel):
    mesh_buffer: Optional[bytes] = None
    model_url: Optional[str] = None
    display_name: str = "Generated Avatar"


class AvatarOutput(BaseModel):
    converted_buffer: bytes
    warnings: List[str] = Field(default_factory=list)


def _is_url(value: str) -> bool:
    return value.startswith(("http://", "https://", "data:"))


class StageDriver:
    kind: JobKind

    def _fail(self, error: BaseException) -> NoReturn:
        """Re-raise any collaborator failure as a ClassifiedError tagged with this stage."""
        err = classify(error)
        err.context.setdefault("stage", self.kind.value)
        if isinstance(err, GenerationError) and err.stage is None:
            err.stage = self.kind.value
        if err is error:
            raise err
        raise err from error

    def _handle(self, job_id: str) -> JobHandle:
        return JobHandle(job_id=job_id, kind=self.kind)

    def _resolved(self, status: JobStatus) -> JobHandle:
        return JobHandle(job_id=f"{self.kind.value}-{uuid.uuid4().hex[:12]}", kind=self.kind, resolved=status)

    def _require_success(self, status: JobStatus) -> None:
        if status.status != JobStatusKind.SUCCEEDED:
            raise GenerationError(
                f"{self.kind.value} cannot interpret non-successful status {status.status.value}",
                stage=self.kind.value, is_retryable=False,
            )

    def _require_url(self, status: JobStatus, key: str) -> str:
        url = status.output_urls.get(key)
        if not url:
            raise GenerationError(f"{self.kind.value} completed but returned no {key} URL", stage=self.kind.value)
        return url


class PromptEnhancementDriver(StageDriver):
    kind = JobKind.ENHANCE_PROMPT

    def __init__(self, enhancer):
        self.enhancer = enhancer

    async def submit(self, stage_input: EnhancementInput) -> JobHandle:
        if not stage_input.prompt or not stage_input.prompt.strip():
            raise ValidationError("Prompt is required for enhancement", field="prompt")
        try:
            result = await self.enhancer.enhance(
                stage_input.prompt, asset_type=stage_input.asset_type, is_avatar=stage_input.is_avatar,
            )
        except Exception as e:
            self._fail(e)
        return self._resolved(JobStatus.succeeded(result={**result, "original_prompt": stage_input.prompt}))

    def interpret(self, status: JobStatus, handle: Optional[JobHandle] = None) -> EnhancementOutput:
        self._require_success(status)
        original = status.result.get("original_prompt", "")
        if status.result.get("error"):
            # Provider answered but declined; asking again will not help
            raise GenerationError(
                f"Prompt enhancement unavailable: {status.result['error']}",
                stage=self.kind.value, code="ENHANCEMENT_UNAVAILABLE", is_retryable=False,
            )
        enhanced = (status.result.get("enhanced_prompt") or "").strip()
        if not enhanced:
            raise GenerationError("Prompt enhancement returned no text", stage=self.kind.value)
        return EnhancementOutput(prompt=enhanced, original_prompt=original)


class MeshPreviewDriver(StageDriver):
    kind = JobKind.MESH_PREVIEW

    def __init__(self, provider):
        self.provider = provider

    async def submit(self, stage_input: PreviewInput) -> JobHandle:
        prompt = (stage_input.prompt or "").strip()
        if not prompt:
            raise ValidationError("Prompt is required for text-to-mesh generation", field="prompt")
        if len(prompt) > MAX_PROMPT_LENGTH:
            raise ValidationError(f"Prompt must be <= {MAX_PROMPT_LENGTH} characters", field="prompt")
        preset = stage_input.preset
        try:
            job_id = await self.provider.submit_preview(prompt, {
                "art_style": stage_input.art_style,
                "ai_model": preset.ai_model,
                "topology": "triangle",
                "target_polycount": preset.target_polycount,
            })
        except Exception as e:
            self._fail(e)
        return self._handle(job_id)

    def interpret(self, status: JobStatus, handle: Optional[JobHandle] = None) -> PreviewOutput:
        self._require_success(status)
        if handle is None:
            raise GenerationError("Preview result needs its job handle", stage=self.kind.value, is_retryable=False)
        return PreviewOutput(job_id=handle.job_id)


class MeshRefineDriver(StageDriver):
    kind = JobKind.MESH_REFINE

    def __init__(self, provider):
        self.provider = provider

    async def submit(self, stage_input: RefineInput) -> JobHandle:
        if not stage_input.preview_job_id:
            raise ValidationError("Refine requires a completed preview job", field="preview_job_id")
        preset = stage_input.preset
        try:
            job_id = await self.provider.submit_refine(stage_input.preview_job_id, {
                "enable_pbr": preset.enable_pbr,
                "texture_resolution": preset.texture_resolution,
                "texture_prompt": stage_input.texture_prompt,
                "ai_model": preset.ai_model,
            })
        except Exception as e:
            self._fail(e)
        return self._handle(job_id)

    def interpret(self, status: JobStatus, handle: Optional[JobHandle] = None) -> MeshOutput:
        self._require_success(status)
        return MeshOutput(
            job_id=handle.job_id if handle else "",
            model_url=self._require_url(status, "model"),
            thumbnail_url=status.output_urls.get("thumbnail"),
        )


class ImageToMeshDriver(StageDriver):
    kind = JobKind.IMAGE_TO_MESH

    def __init__(self, provider):
        self.provider = provider

    async def submit(self, stage_input: ImageToMeshInput) -> JobHandle:
        image_url = (stage_input.image_url or "").strip()
        if not image_url:
            raise ValidationError("Image URL required for image-to-mesh pipeline", field="image_url")
        if not _is_url(image_url):
            raise ValidationError("Image URL must be http(s) or a data URI", field="image_url")
        preset = stage_input.preset
        try:
            job_id = await self.provider.submit_image_to_mesh(image_url, {
                "enable_pbr": preset.enable_pbr,
                "ai_model": preset.ai_model,
                "topology": "quad",
                "target_polycount": preset.target_polycount,
                "texture_resolution": preset.texture_resolution,
            })
        except Exception as e:
            self._fail(e)
        return self._handle(job_id)

    def interpret(self, status: JobStatus, handle: Optional[JobHandle] = None) -> MeshOutput:
        self._require_success(status)
        return MeshOutput(
            job_id=handle.job_id if handle else "",
            model_url=self._require_url(status, "model"),
            thumbnail_url=status.output_urls.get("thumbnail"),
        )


class RetextureDriver(StageDriver):
    kind = JobKind.RETEXTURE

    def __init__(self, provider):
        self.provider = provider

    async def submit(self, stage_input: RetextureInput) -> JobHandle:
        if not stage_input.model_url:
            raise ValidationError("Model URL is required for retexturing", field="model_url")
        if not stage_input.style_prompt or not stage_input.style_prompt.strip():
            raise ValidationError("Style prompt is required for retexturing", field="style_prompt")
        style_params = {
            "text_style_prompt": stage_input.style_prompt.strip(),
            "art_style": stage_input.art_style,
        }
        if stage_input.preset is not None:
            style_params["ai_model"] = stage_input.preset.ai_model
        try:
            job_id = await self.provider.submit_retexture(stage_input.model_url, style_params)
        except Exception as e:
            self._fail(e)
        return self._handle(job_id)

    def interpret(self, status: JobStatus, handle: Optional[JobHandle] = None) -> MeshOutput:
        self._require_success(status)
        return MeshOutput(
            job_id=handle.job_id if handle else "",
            model_url=self._require_url(status, "model"),
            thumbnail_url=status.output_urls.get("thumbnail"),
        )


class RigDriver(StageDriver):
    kind = JobKind.RIG

    def __init__(self, provider):
        self.provider = provider

    async def submit(self, stage_input: RigInput) -> JobHandle:
        if not stage_input.model_url:
            raise ValidationError("Rigging requires a model URL", field="model_url")
        try:
            job_id = await self.provider.submit_rig(stage_input.model_url, stage_input.height_meters)
        except Exception as e:
            self._fail(e)
        return self._handle(job_id)

    def interpret(self, status: JobStatus, handle: Optional[JobHandle] = None) -> RigOutput:
        self._require_success(status)
        return RigOutput(
            job_id=handle.job_id if handle else "",
            rigged_model_url=self._require_url(status, "rigged_model"),
        )


class AvatarConversionDriver(StageDriver):
    kind = JobKind.CONVERT_AVATAR_FORMAT

    def __init__(self, converter):
        self.converter = converter

    async def submit(self, stage_input: AvatarInput) -> JobHandle:
        if not stage_input.mesh_buffer and not stage_input.model_url:
            raise ValidationError("Either a mesh buffer or a model URL is required", field="mesh_buffer")
        try:
            result: Dict[str, Any] = await self.converter.convert(
                stage_input.display_name,
                mesh_buffer=stage_input.mesh_buffer,
                model_url=None if stage_input.mesh_buffer else stage_input.model_url,
            )
        except Exception as e:
            self._fail(e)
        return self._resolved(JobStatus.succeeded(result=result))

    def interpret(self, status: JobStatus, handle: Optional[JobHandle] = None) -> AvatarOutput:
        self._require_success(status)
        converted = status.result.get("converted_buffer")
        if not converted:
            raise GenerationError("Avatar conversion produced no data", stage=self.kind.value)
        warnings = list(status.result.get("warnings") or [])
        if warnings:
            logger.warning("Avatar conversion warnings: %s", warnings)
        return AvatarOutput(converted_buffer=converted, warnings=warnings)


