"""Shared fakes for the pipeline tests. No network, no redis, no real sleeping."""
import itertools
from typing import Any, Dict, List, Optional

import pytest

from asset_orchestrator.config import PipelineSettings
from asset_orchestrator.persistence import SavedArtifacts
from asset_orchestrator.pipeline import PipelineOrchestrator
from asset_shared.errors import ErrorHistory, NetworkError
from asset_shared.retry import RetryOptions
from asset_shared.schemas import JobHandle, JobKind, JobStatus

MODEL_URL = "https://cdn.test/model.glb"
THUMB_URL = "https://cdn.test/thumb.png"
RIGGED_URL = "https://cdn.test/rigged.glb"

MODEL_BYTES = b"glTF-unrigged"
THUMB_BYTES = b"\x89PNG-thumb"
RIGGED_BYTES = b"glTF-rigged"
VRM_BYTES = b"VRM-avatar"


class FakeTime:
    """Injected sleep + monotonic clock; sleeping advances the clock."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay

    def clock(self) -> float:
        return self.now


class FakeMeshProvider:
    """
    Scriptable mesh/rigging provider. Each submission of a kind consumes the next
    scripted status sequence; get_status walks that sequence and then repeats its last entry.
    """

    def __init__(self):
        self.submissions: List[tuple] = []
        self.scripts: Dict[JobKind, List[List[JobStatus]]] = {}
        self.submit_errors: Dict[JobKind, List[Exception]] = {}
        self.status_calls = 0
        self._sequences: Dict[str, List[JobStatus]] = {}
        self._ids = itertools.count(1)

    def script(self, kind: JobKind, *attempts: List[JobStatus]) -> None:
        self.scripts.setdefault(kind, []).extend(list(a) for a in attempts)

    def fail_submit(self, kind: JobKind, *errors: Exception) -> None:
        self.submit_errors.setdefault(kind, []).extend(errors)

    def kinds(self) -> List[JobKind]:
        return [kind for kind, _ in self.submissions]

    @staticmethod
    def _success(kind: JobKind) -> JobStatus:
        if kind == JobKind.RIG:
            return JobStatus.succeeded({"rigged_model": RIGGED_URL})
        if kind == JobKind.MESH_PREVIEW:
            return JobStatus.succeeded()
        return JobStatus.succeeded({"model": MODEL_URL, "thumbnail": THUMB_URL})

    def _submit(self, kind: JobKind, **args: Any) -> str:
        self.submissions.append((kind, args))
        errors = self.submit_errors.get(kind)
        if errors:
            raise errors.pop(0)
        job_id = f"{kind.value}-{next(self._ids)}"
        attempts = self.scripts.get(kind)
        if attempts:
            self._sequences[job_id] = attempts.pop(0)
        else:
            self._sequences[job_id] = [JobStatus.running(40, queue_depth=None), self._success(kind)]
        return job_id

    async def submit_preview(self, prompt, style_params):
        return self._submit(JobKind.MESH_PREVIEW, prompt=prompt, **style_params)

    async def submit_refine(self, preview_job_id, texture_params):
        return self._submit(JobKind.MESH_REFINE, preview_job_id=preview_job_id, **texture_params)

    async def submit_image_to_mesh(self, image_url, params):
        return self._submit(JobKind.IMAGE_TO_MESH, image_url=image_url, **params)

    async def submit_retexture(self, model_url, style_params):
        return self._submit(JobKind.RETEXTURE, model_url=model_url, **style_params)

    async def submit_rig(self, model_url, height_meters):
        return self._submit(JobKind.RIG, model_url=model_url, height_meters=height_meters)

    async def get_status(self, handle: JobHandle) -> JobStatus:
        self.status_calls += 1
        seq = self._sequences[handle.job_id]
        return seq.pop(0) if len(seq) > 1 else seq[0]


class FakeFetcher:
    def __init__(self, blobs: Optional[Dict[str, Any]] = None):
        self.blobs = {MODEL_URL: MODEL_BYTES, THUMB_URL: THUMB_BYTES, RIGGED_URL: RIGGED_BYTES}
        self.blobs.update(blobs or {})
        self.calls: List[str] = []

    async def download(self, url: str) -> bytes:
        self.calls.append(url)
        value = self.blobs.get(url)
        if value is None:
            raise NetworkError(f"HTTP 404 from {url}", status_code=404, endpoint=url)
        if isinstance(value, Exception):
            raise value
        return value


class FakeStore:
    def __init__(self):
        self.saved: List[Dict[str, Any]] = []
        self.errors: List[Exception] = []

    async def save(self, asset_id, model_buffer, thumbnail_buffer=None, avatar_buffer=None, metadata=None):
        if self.errors:
            raise self.errors.pop(0)
        self.saved.append({
            "asset_id": asset_id,
            "model_buffer": model_buffer,
            "thumbnail_buffer": thumbnail_buffer,
            "avatar_buffer": avatar_buffer,
            "metadata": metadata,
        })
        base = f"/assets/download/{asset_id}"
        return SavedArtifacts(
            model_url=f"{base}/model",
            thumbnail_url=f"{base}/thumbnail" if thumbnail_buffer else None,
            avatar_url=f"{base}/avatar" if avatar_buffer else None,
        )


class FakeEnhancer:
    def __init__(self, enhanced: str = "a detailed iron longsword with leather grip", error: Optional[Exception] = None):
        self.enhanced = enhanced
        self.error = error
        self.calls: List[tuple] = []

    async def enhance(self, prompt, asset_type="item", is_avatar=False):
        self.calls.append((prompt, asset_type, is_avatar))
        if self.error is not None:
            raise self.error
        return {"enhanced_prompt": self.enhanced, "error": None}


class FakeConverter:
    def __init__(self, error: Optional[Exception] = None, warnings: Optional[List[str]] = None):
        self.error = error
        self.warnings = warnings or []
        self.calls: List[Dict[str, Any]] = []

    async def convert(self, display_name, mesh_buffer=None, model_url=None):
        self.calls.append({"display_name": display_name, "mesh_buffer": mesh_buffer, "model_url": model_url})
        if self.error is not None:
            raise self.error
        return {"converted_buffer": VRM_BYTES, "warnings": list(self.warnings)}


class InMemoryRedis:
    """The handful of redis commands JobStore uses, with decode_responses semantics."""

    def __init__(self):
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.lists: Dict[str, List[str]] = {}
        self.closed = False

    def hset(self, name, mapping):
        self.hashes.setdefault(name, {}).update({k: str(v) for k, v in mapping.items()})
        return len(mapping)

    def hgetall(self, name):
        return dict(self.hashes.get(name, {}))

    def lpush(self, name, *values):
        lst = self.lists.setdefault(name, [])
        for v in values:
            lst.insert(0, str(v))
        return len(lst)

    def lrange(self, name, start, end):
        lst = self.lists.get(name, [])
        return lst[start:] if end == -1 else lst[start:end + 1]

    def lrem(self, name, count, value):
        lst = self.lists.get(name, [])
        before = len(lst)
        self.lists[name] = [v for v in lst if v != value]
        return before - len(self.lists[name])

    def delete(self, *names):
        removed = 0
        for name in names:
            removed += int(self.hashes.pop(name, None) is not None)
            removed += int(self.lists.pop(name, None) is not None)
        return removed

    def ping(self):
        return True

    def close(self):
        self.closed = True


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def mesh_provider():
    return FakeMeshProvider()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def enhancer():
    return FakeEnhancer()


@pytest.fixture
def converter():
    return FakeConverter()


@pytest.fixture
def errors():
    return ErrorHistory(max_entries=50)


@pytest.fixture
def settings():
    return PipelineSettings(
        poll_interval=5.0,
        retry=RetryOptions(max_attempts=3, base_delay=1.0, max_delay=10.0),
    )


@pytest.fixture
def orchestrator(mesh_provider, converter, enhancer, fetcher, store, settings, errors, fake_time):
    return PipelineOrchestrator(
        mesh_provider=mesh_provider,
        avatar_converter=converter,
        enhancer=enhancer,
        fetcher=fetcher,
        store=store,
        settings=settings,
        errors=errors,
        sleep=fake_time.sleep,
        clock=fake_time.clock,
    )
