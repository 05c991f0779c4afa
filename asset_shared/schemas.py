"""
Shared request/response schemas for the asset generation pipeline.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class GenerationMode(str, Enum):
    TEXT_TO_MESH = "text-to-mesh"    # preview -> refine
    IMAGE_TO_MESH = "image-to-mesh"  # single combined stage


class QualityTier(str, Enum):
    PREVIEW = "preview"  # fastest, older model
    MEDIUM = "medium"
    HIGH = "high"


class ContentCategory(str, Enum):
    ITEM = "item"
    PROP = "prop"
    CHARACTER = "character"
    NPC = "npc"

    @property
    def is_character(self) -> bool:
        return self in (ContentCategory.CHARACTER, ContentCategory.NPC)


# External job kinds, one per Stage Driver
class JobKind(str, Enum):
    ENHANCE_PROMPT = "enhance-prompt"
    MESH_PREVIEW = "mesh-preview"
    MESH_REFINE = "mesh-refine"
    IMAGE_TO_MESH = "image-to-mesh"
    RIG = "rig"
    CONVERT_AVATAR_FORMAT = "convert-avatar-format"
    RETEXTURE = "retexture"


class JobStatusKind(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_STATUSES = {JobStatusKind.SUCCEEDED, JobStatusKind.FAILED, JobStatusKind.CANCELED}


# Orchestrator states; also stored on job records
class PipelineState(str, Enum):
    QUEUED = "queued"
    IDLE = "idle"
    ENHANCING = "enhancing"
    MESH_GENERATING = "mesh_generating"
    RIGGING = "rigging"
    AVATAR_CONVERTING = "avatar_converting"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    FAILED = "failed"


class QualityPreset(BaseModel):
    model_config = ConfigDict(frozen=True)

    target_polycount: int
    texture_resolution: int
    ai_model: str
    texture_richness: str = "high"
    enable_pbr: bool = True


QUALITY_PRESETS = {
    QualityTier.PREVIEW: QualityPreset(
        target_polycount=10000, texture_resolution=1024, ai_model="meshy-4", texture_richness="medium",
    ),
    QualityTier.MEDIUM: QualityPreset(target_polycount=30000, texture_resolution=2048, ai_model="latest"),
    QualityTier.HIGH: QualityPreset(target_polycount=50000, texture_resolution=4096, ai_model="latest"),
}


def preset_for(tier: QualityTier) -> QualityPreset:
    return QUALITY_PRESETS.get(tier, QUALITY_PRESETS[QualityTier.MEDIUM])


class GenerationRequest(BaseModel):
    """One user-initiated "generate an asset" request. Never mutated."""
    model_config = ConfigDict(frozen=True)

    prompt: Optional[str] = None
    image_url: Optional[str] = None
    mode: GenerationMode = GenerationMode.TEXT_TO_MESH
    quality: QualityTier = QualityTier.MEDIUM
    category: ContentCategory = ContentCategory.ITEM
    enable_enhancement: bool = True
    enable_rigging: bool = False
    convert_to_avatar_format: bool = False
    asset_id: Optional[str] = None
    name: Optional[str] = None  # display name for avatar conversion
    art_style: str = "realistic"
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StageDecision(BaseModel):
    """Which optional stages a run will attempt. Computed once per run."""
    model_config = ConfigDict(frozen=True)

    run_enhancement: bool
    run_rigging: bool
    run_avatar_conversion: bool

    @classmethod
    def for_request(cls, request: GenerationRequest) -> "StageDecision":
        is_character = request.category.is_character
        return cls(
            run_enhancement=request.enable_enhancement,
            run_rigging=is_character and request.enable_rigging,
            run_avatar_conversion=is_character and request.convert_to_avatar_format,
        )


class JobStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: JobStatusKind
    progress: Optional[int] = None
    queue_depth: Optional[int] = None
    output_urls: Dict[str, str] = Field(default_factory=dict)
    result: Dict[str, Any] = Field(default_factory=dict)  # non-URL payload from synchronous collaborators
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def queued(cls, queue_depth: Optional[int] = None) -> "JobStatus":
        return cls(status=JobStatusKind.QUEUED, queue_depth=queue_depth)

    @classmethod
    def running(cls, progress: Optional[int] = None, queue_depth: Optional[int] = None) -> "JobStatus":
        return cls(status=JobStatusKind.RUNNING, progress=progress, queue_depth=queue_depth)

    @classmethod
    def succeeded(cls, output_urls: Optional[Dict[str, str]] = None, result: Optional[Dict[str, Any]] = None) -> "JobStatus":
        return cls(status=JobStatusKind.SUCCEEDED, progress=100, output_urls=output_urls or {}, result=result or {})

    @classmethod
    def failed(cls, message: Optional[str] = None) -> "JobStatus":
        return cls(status=JobStatusKind.FAILED, error_message=message)

    @classmethod
    def canceled(cls) -> "JobStatus":
        return cls(status=JobStatusKind.CANCELED)


class JobHandle(BaseModel):
    """Provider job reference. `resolved` is set when the collaborator answered synchronously."""
    model_config = ConfigDict(frozen=True)

    job_id: str
    kind: JobKind
    resolved: Optional[JobStatus] = None


class ProgressEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage: str
    percent: int = Field(..., ge=0, le=100)
    step: str = ""


class GenerationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    asset_id: str
    model_url: str
    thumbnail_url: Optional[str] = None
    avatar_url: Optional[str] = None
    rigged_model_url: Optional[str] = None
    source_model_url: Optional[str] = None  # provider URL of the unrigged mesh
    provider_job_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def has_vrm(self) -> bool:
        return bool(self.metadata.get("has_vrm"))

    @property
    def has_rigging(self) -> bool:
        return bool(self.metadata.get("has_rigging"))


class GenerationEvent(BaseModel):
    """Streamed element: progress updates, then exactly one result or error."""
    type: Literal["progress", "result", "error"]
    progress: Optional[ProgressEvent] = None
    result: Optional[GenerationResult] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.type != "progress"


class BatchFailure(BaseModel):
    index: int
    prompt: Optional[str] = None
    stage: Optional[str] = None
    error: Dict[str, Any] = Field(default_factory=dict)


class BatchResult(BaseModel):
    requested: int
    results: List[GenerationResult] = Field(default_factory=list)
    failures: List[BatchFailure] = Field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return len(self.results)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
