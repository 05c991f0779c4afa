"""
Artifact persistence: stores model/thumbnail/avatar binaries and metadata under OUTPUTS_DIR/<asset_id>/.
"""
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel

from asset_shared.errors import StorageError, ValidationError

from . import config

logger = logging.getLogger(__name__)

# artifact name -> file name on disk
ARTIFACT_FILES = {
    "model": "model.glb",
    "thumbnail": "thumbnail.png",
    "avatar": "avatar.vrm",
    "metadata": "metadata.json",
}

_ASSET_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


class SavedArtifacts(BaseModel):
    model_url: str
    thumbnail_url: Optional[str] = None
    avatar_url: Optional[str] = None


def validate_asset_id(asset_id: str) -> str:
    """Asset ids become directory names; reject anything that is not a single safe path segment."""
    if not asset_id or ".." in asset_id or not _ASSET_ID_RE.match(asset_id):
        raise ValidationError(f"Invalid asset id: {asset_id!r}", field="asset_id")
    return asset_id


class LocalArtifactStore:
    def __init__(self, root: Optional[str] = None, public_base_url: Optional[str] = None):
        self.root = Path(root or config.OUTPUTS_DIR)
        base = config.PUBLIC_BASE_URL if public_base_url is None else public_base_url
        self.public_base_url = base.rstrip("/")

    def url_for(self, asset_id: str, artifact: str) -> str:
        return f"{self.public_base_url}/assets/download/{asset_id}/{artifact}"

    def path_for(self, asset_id: str, artifact: str) -> Path:
        validate_asset_id(asset_id)
        if artifact not in ARTIFACT_FILES:
            raise ValidationError(f"Unknown artifact {artifact!r}", field="artifact")
        return self.root / asset_id / ARTIFACT_FILES[artifact]

    def _write(self, path: Path, data: bytes) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(path.suffix + ".tmp")
            tmp.write_bytes(data)
            os.replace(tmp, path)
        except OSError as e:
            raise StorageError(
                f"Failed to write {path.name}: {e}",
                operation="write", storage_type="local", context={"path": str(path)}, cause=e,
            ) from e

    async def save(
        self,
        asset_id: str,
        model_buffer: bytes,
        thumbnail_buffer: Optional[bytes] = None,
        avatar_buffer: Optional[bytes] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SavedArtifacts:
        validate_asset_id(asset_id)
        if not model_buffer:
            raise ValidationError("Model data is empty", field="model_buffer")

        self._write(self.path_for(asset_id, "model"), model_buffer)
        saved = SavedArtifacts(model_url=self.url_for(asset_id, "model"))
        if thumbnail_buffer:
            self._write(self.path_for(asset_id, "thumbnail"), thumbnail_buffer)
            saved.thumbnail_url = self.url_for(asset_id, "thumbnail")
        if avatar_buffer:
            self._write(self.path_for(asset_id, "avatar"), avatar_buffer)
            saved.avatar_url = self.url_for(asset_id, "avatar")

        record = dict(metadata or {})
        record.update({"asset_id": asset_id, **saved.model_dump(exclude_none=True)})
        self._write(
            self.path_for(asset_id, "metadata"),
            json.dumps(record, indent=2, default=str).encode("utf-8"),
        )
        logger.info("Saved asset %s (%d bytes model, thumbnail=%s, avatar=%s)",
                    asset_id, len(model_buffer), bool(thumbnail_buffer), bool(avatar_buffer))
        return saved
