"""
Service configuration from environment, plus optional per-stage overrides
from a machine-readable rules file (PIPELINE_RULES_PATH).
"""
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from asset_shared.retry import RetryOptions
from asset_shared.schemas import JobKind

logger = logging.getLogger(__name__)

# Config from env
REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
MESHY_API_KEY = os.getenv("MESHY_API_KEY", "")
MESHY_API_BASE_V1 = os.getenv("MESHY_API_BASE_V1", "https://api.meshy.ai/openapi/v1")
MESHY_API_BASE_V2 = os.getenv("MESHY_API_BASE_V2", "https://api.meshy.ai/openapi/v2")
AVATAR_CONVERTER_URL = os.getenv("AVATAR_CONVERTER_URL", "http://avatar-service:8000")
AI_GATEWAY_URL = os.getenv("AI_GATEWAY_URL", "https://ai-gateway.vercel.sh/v1")
AI_GATEWAY_API_KEY = os.getenv("AI_GATEWAY_API_KEY", "")
ENHANCEMENT_MODEL = os.getenv("ENHANCEMENT_MODEL", "openai/gpt-4o-mini")
OUTPUTS_DIR = os.getenv("OUTPUTS_DIR", "/outputs")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ERROR_HISTORY_SIZE = int(os.getenv("ERROR_HISTORY_SIZE", "50"))

POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "5"))
MESH_TIMEOUT_SECONDS = float(os.getenv("MESH_TIMEOUT_SECONDS", "300"))
# Retexturing is slower on the provider side
RETEXTURE_TIMEOUT_SECONDS = float(os.getenv("RETEXTURE_TIMEOUT_SECONDS", "600"))
CHARACTER_HEIGHT_METERS = float(os.getenv("CHARACTER_HEIGHT_METERS", "1.7"))

RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", "3"))
RETRY_BASE_DELAY_SECONDS = float(os.getenv("RETRY_BASE_DELAY_SECONDS", "1.0"))
RETRY_MAX_DELAY_SECONDS = float(os.getenv("RETRY_MAX_DELAY_SECONDS", "10.0"))
RETRY_BACKOFF_MULTIPLIER = float(os.getenv("RETRY_BACKOFF_MULTIPLIER", "2.0"))

RULES_PATH = os.getenv("PIPELINE_RULES_PATH", "/app/shared/pipeline_rules.json")


def _load_rules(path: Optional[str] = None) -> Dict[str, Any]:
    """Load pipeline rules JSON. Returns empty dict if missing or unreadable."""
    p = Path(path or RULES_PATH)
    if not p.is_file():
        return {}
    try:
        with open(p) as f:
            rules = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable rules file %s: %s", p, e)
        return {}
    return rules if isinstance(rules, dict) else {}


def _default_timeouts() -> Dict[JobKind, float]:
    timeouts = {kind: MESH_TIMEOUT_SECONDS for kind in JobKind}
    timeouts[JobKind.RETEXTURE] = RETEXTURE_TIMEOUT_SECONDS
    return timeouts


class PipelineSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    poll_interval: float = 5.0
    stage_timeouts: Dict[JobKind, float] = Field(default_factory=_default_timeouts)
    stage_attempts: Dict[JobKind, int] = Field(default_factory=dict)
    retry: RetryOptions = Field(default_factory=RetryOptions)
    character_height_meters: float = 1.7

    def timeout_for(self, kind: JobKind) -> float:
        if kind in self.stage_timeouts:
            return self.stage_timeouts[kind]
        return RETEXTURE_TIMEOUT_SECONDS if kind == JobKind.RETEXTURE else MESH_TIMEOUT_SECONDS

    def retry_for(self, kind: JobKind) -> RetryOptions:
        attempts = self.stage_attempts.get(kind)
        if attempts is None:
            return self.retry
        return self.retry.model_copy(update={"max_attempts": attempts})


def load_settings(rules_path: Optional[str] = None) -> PipelineSettings:
    """Fold environment defaults and rules-file stage overrides into PipelineSettings."""
    timeouts = _default_timeouts()
    attempts: Dict[JobKind, int] = {}
    stages = _load_rules(rules_path).get("stages", {})
    for name, stage in (stages.items() if isinstance(stages, dict) else []):
        try:
            kind = JobKind(name)
        except ValueError:
            logger.warning("Unknown stage %r in rules file", name)
            continue
        if not isinstance(stage, dict):
            logger.warning("Ignoring rules for stage %s: expected an object, got %r", name, stage)
            continue
        if "timeout_seconds" in stage:
            try:
                timeout = float(stage["timeout_seconds"])
            except (TypeError, ValueError):
                logger.warning("Ignoring timeout_seconds for stage %s: %r", name, stage["timeout_seconds"])
            else:
                if timeout > 0:
                    timeouts[kind] = timeout
                else:
                    logger.warning("Ignoring non-positive timeout_seconds for stage %s: %r", name, timeout)
        if "retry_max" in stage:
            try:
                attempts[kind] = max(0, int(stage["retry_max"])) + 1  # retries after the first attempt
            except (TypeError, ValueError, OverflowError):
                logger.warning("Ignoring retry_max for stage %s: %r", name, stage["retry_max"])
    return PipelineSettings(
        poll_interval=POLL_INTERVAL_SECONDS,
        stage_timeouts=timeouts,
        stage_attempts=attempts,
        retry=RetryOptions(
            max_attempts=RETRY_MAX_ATTEMPTS,
            base_delay=RETRY_BASE_DELAY_SECONDS,
            max_delay=RETRY_MAX_DELAY_SECONDS,
            backoff_multiplier=RETRY_BACKOFF_MULTIPLIER,
        ),
        character_height_meters=CHARACTER_HEIGHT_METERS,
    )
