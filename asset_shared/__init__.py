from .schemas import (
    GenerationMode,
    QualityTier,
    ContentCategory,
    JobKind,
    JobStatusKind,
    PipelineState,
    QualityPreset,
    QUALITY_PRESETS,
    GenerationRequest,
    StageDecision,
    JobStatus,
    JobHandle,
    ProgressEvent,
    GenerationResult,
    GenerationEvent,
    BatchFailure,
    BatchResult,
    preset_for,
)
from .errors import (
    ErrorKind,
    ClassifiedError,
    NetworkError,
    ValidationError,
    GenerationError,
    StorageError,
    AuthError,
    ErrorHistory,
    classify,
    format_error,
    http_status_for,
)
from .retry import RetryOptions, backoff_delay, with_retry

__all__ = [
    "GenerationMode",
    "QualityTier",
    "ContentCategory",
    "JobKind",
    "JobStatusKind",
    "PipelineState",
    "QualityPreset",
    "QUALITY_PRESETS",
    "GenerationRequest",
    "StageDecision",
    "JobStatus",
    "JobHandle",
    "ProgressEvent",
    "GenerationResult",
    "GenerationEvent",
    "BatchFailure",
    "BatchResult",
    "preset_for",
    "ErrorKind",
    "ClassifiedError",
    "NetworkError",
    "ValidationError",
    "GenerationError",
    "StorageError",
    "AuthError",
    "ErrorHistory",
    "classify",
    "format_error",
    "http_status_for",
    "RetryOptions",
    "backoff_delay",
    "with_retry",
]
