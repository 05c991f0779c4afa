"""
Asset Orchestrator Service: HTTP surface for the asset generation pipeline.
Does not run models. Drives the remote mesh, rigging, avatar and enhancement providers
through the Pipeline Orchestrator and keeps job records in redis.
"""
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from asset_shared.errors import ClassifiedError, ErrorHistory, ValidationError, format_error, http_status_for
from asset_shared.schemas import GenerationMode, GenerationRequest, QualityTier

from . import config
from .jobs import JobStore
from .persistence import ARTIFACT_FILES, LocalArtifactStore
from .pipeline import MAX_BATCH_SIZE, PipelineFailed, PipelineOrchestrator
from .providers import AvatarConverterClient, BinaryFetcher, MeshyClient, PromptEnhancerClient

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

_orchestrator: Optional[PipelineOrchestrator] = None
_jobs: Optional[JobStore] = None
_errors: Optional[ErrorHistory] = None
_store: Optional[LocalArtifactStore] = None


def get_errors() -> ErrorHistory:
    global _errors
    if _errors is None:
        _errors = ErrorHistory(config.ERROR_HISTORY_SIZE)
    return _errors


def get_store() -> LocalArtifactStore:
    global _store
    if _store is None:
        _store = LocalArtifactStore()
    return _store


def get_jobs() -> JobStore:
    global _jobs
    if _jobs is None:
        _jobs = JobStore()
    return _jobs


def get_orchestrator() -> PipelineOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = PipelineOrchestrator(
            mesh_provider=MeshyClient(),
            avatar_converter=AvatarConverterClient(),
            enhancer=PromptEnhancerClient(),
            fetcher=BinaryFetcher(),
            store=get_store(),
            settings=config.load_settings(),
            errors=get_errors(),
        )
    return _orchestrator


def _resolve(app: FastAPI, getter: Callable[[], Any]) -> Any:
    # Lifespan and exception handlers sit outside dependency injection
    return app.dependency_overrides.get(getter, getter)()


class BatchRequest(BaseModel):
    request: GenerationRequest
    count: int = Field(1, ge=1, le=MAX_BATCH_SIZE)


class RetextureRequest(BaseModel):
    model_url: str = Field(..., min_length=1)
    style_prompt: str = Field(..., min_length=1)
    quality: QualityTier = QualityTier.MEDIUM
    asset_id: Optional[str] = None


class GenerateResponse(BaseModel):
    job_id: str
    status_url: str
    message: str = "Job queued. Poll status_url for progress."


def _check_request(req: GenerationRequest) -> None:
    if req.mode == GenerationMode.TEXT_TO_MESH and not (req.prompt or "").strip():
        raise ValidationError("Prompt is required for text-to-mesh generation", field="prompt")
    if req.mode == GenerationMode.IMAGE_TO_MESH and not (req.image_url or "").strip():
        raise ValidationError("Image URL required for image-to-mesh pipeline", field="image_url")


def _error_body(error: ClassifiedError, stage: Optional[str] = None) -> Dict[str, Any]:
    formatted = format_error(error)
    body = {
        "error": formatted.message,
        "code": formatted.code,
        "category": formatted.category.value,
        "is_retryable": formatted.is_retryable,
        "user_message": formatted.user_message,
    }
    if stage:
        body["stage"] = stage
    return body


def _queue(jobs: JobStore, kind: str, request: Dict[str, Any]) -> GenerateResponse:
    job_id = str(uuid.uuid4())
    jobs.create(job_id, kind, request)
    return GenerateResponse(job_id=job_id, status_url=f"/assets/status/{job_id}")


def _finish(jobs: JobStore, errors: ErrorHistory, job_id: str, write: Callable[[], None]) -> None:
    """Write a job's final record. If that write fails, record the error and try to mark the job failed."""
    try:
        write()
    except ClassifiedError as e:
        errors.record(e, source=f"job:{job_id}")
        logger.error("Could not record outcome of job %s: [%s] %s", job_id, e.code, e.message)
        try:
            jobs.fail(job_id, _error_body(e))
        except ClassifiedError:
            logger.exception("Job %s record left stale", job_id)


async def run_generation_job(
    job_id: str,
    req: GenerationRequest,
    orchestrator: PipelineOrchestrator,
    jobs: JobStore,
    errors: ErrorHistory,
) -> None:
    try:
        result = await orchestrator.run(req, on_progress=lambda ev: jobs.update_progress(job_id, ev))
    except PipelineFailed as e:
        _finish(jobs, errors, job_id, lambda: jobs.fail(job_id, _error_body(e.error, e.stage), e.stage))
        return
    _finish(jobs, errors, job_id, lambda: jobs.complete(job_id, result.model_dump(mode="json")))


async def run_batch_job(
    job_id: str,
    req: BatchRequest,
    orchestrator: PipelineOrchestrator,
    jobs: JobStore,
    errors: ErrorHistory,
) -> None:
    try:
        batch = await orchestrator.run_batch(
            req.request, req.count, on_progress=lambda ev: jobs.update_progress(job_id, ev),
        )
    except ClassifiedError as e:
        errors.record(e, source=f"batch:{job_id}")
        _finish(jobs, errors, job_id, lambda: jobs.fail(job_id, _error_body(e)))
        return
    _finish(jobs, errors, job_id, lambda: jobs.complete(
        job_id, {**batch.model_dump(mode="json"), "succeeded": batch.succeeded},
    ))


async def run_retexture_job(
    job_id: str,
    req: RetextureRequest,
    orchestrator: PipelineOrchestrator,
    jobs: JobStore,
    errors: ErrorHistory,
) -> None:
    try:
        result = await orchestrator.retexture(
            req.model_url, req.style_prompt, req.quality, asset_id=req.asset_id,
            on_progress=lambda ev: jobs.update_progress(job_id, ev),
        )
    except PipelineFailed as e:
        _finish(jobs, errors, job_id, lambda: jobs.fail(job_id, _error_body(e.error, e.stage), e.stage))
        return
    _finish(jobs, errors, job_id, lambda: jobs.complete(job_id, result.model_dump(mode="json")))


@asynccontextmanager
async def lifespan(app: FastAPI):
    jobs = _resolve(app, get_jobs)
    jobs.ping()
    yield
    jobs.close()


app = FastAPI(title="Asset Generation Orchestrator", lifespan=lifespan)

# CORS so the asset browser (different origin) can load GLB/VRM files and call the API
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ClassifiedError)
async def classified_error_handler(request: Request, exc: ClassifiedError):
    _resolve(request.app, get_errors).record(exc, source=request.url.path)
    return JSONResponse(status_code=http_status_for(exc), content=_error_body(exc))


@app.exception_handler(PipelineFailed)
async def pipeline_failed_handler(request: Request, exc: PipelineFailed):
    return JSONResponse(status_code=http_status_for(exc.error), content=_error_body(exc.error, exc.stage))


@app.post("/assets/generate", response_model=GenerateResponse)
async def generate_asset(
    req: GenerationRequest,
    background_tasks: BackgroundTasks,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
    jobs: JobStore = Depends(get_jobs),
    errors: ErrorHistory = Depends(get_errors),
):
    _check_request(req)
    resp = _queue(jobs, "generate", req.model_dump(mode="json"))
    background_tasks.add_task(run_generation_job, resp.job_id, req, orchestrator, jobs, errors)
    return resp


@app.post("/assets/generate/stream")
async def generate_stream(req: GenerationRequest, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    """Server-sent events: progress updates, then one `result` or `error` event."""
    _check_request(req)

    async def event_source():
        async for event in orchestrator.events(req):
            yield f"event: {event.type}\ndata: {event.model_dump_json(exclude_none=True)}\n\n"

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.post("/assets/generate/sync")
async def generate_sync(req: GenerationRequest, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    _check_request(req)
    result = await orchestrator.run(req)
    return result.model_dump(mode="json")


@app.post("/assets/batch", response_model=GenerateResponse)
async def generate_batch(
    req: BatchRequest,
    background_tasks: BackgroundTasks,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
    jobs: JobStore = Depends(get_jobs),
    errors: ErrorHistory = Depends(get_errors),
):
    _check_request(req.request)
    resp = _queue(jobs, "batch", req.model_dump(mode="json"))
    background_tasks.add_task(run_batch_job, resp.job_id, req, orchestrator, jobs, errors)
    return resp


@app.post("/assets/retexture", response_model=GenerateResponse)
async def retexture_asset(
    req: RetextureRequest,
    background_tasks: BackgroundTasks,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
    jobs: JobStore = Depends(get_jobs),
    errors: ErrorHistory = Depends(get_errors),
):
    resp = _queue(jobs, "retexture", req.model_dump(mode="json"))
    background_tasks.add_task(run_retexture_job, resp.job_id, req, orchestrator, jobs, errors)
    return resp


@app.get("/assets/status/{job_id}")
async def status(job_id: str, jobs: JobStore = Depends(get_jobs)):
    record = jobs.get(job_id)
    if not record:
        raise HTTPException(404, "Job not found")
    return record


@app.get("/assets/jobs")
async def list_jobs(jobs: JobStore = Depends(get_jobs)):
    """List jobs (newest first) for history."""
    return {"jobs": jobs.list()}


@app.delete("/assets/job/{job_id}")
async def delete_job(job_id: str, jobs: JobStore = Depends(get_jobs)):
    """Remove a job from history. Stored artifacts are kept."""
    if not jobs.delete(job_id):
        raise HTTPException(404, "Job not found")
    return {"ok": True}


@app.get("/assets/download/{asset_id}/{artifact}")
async def download(asset_id: str, artifact: str, store: LocalArtifactStore = Depends(get_store)):
    if artifact not in ARTIFACT_FILES:
        raise HTTPException(404, "Unknown artifact")
    path = store.path_for(asset_id, artifact)
    if not path.is_file():
        raise HTTPException(404, "Asset file not found")
    return FileResponse(path, filename=f"{asset_id}-{path.name}")


@app.get("/errors")
async def recent_errors(errors: ErrorHistory = Depends(get_errors)):
    """Recent classified errors, newest first."""
    return {"errors": [e.model_dump(mode="json") for e in errors.entries()]}


@app.delete("/errors")
async def clear_errors(errors: ErrorHistory = Depends(get_errors)):
    errors.clear()
    return {"ok": True}


@app.get("/health")
async def health(jobs: JobStore = Depends(get_jobs)):
    jobs.ping()
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
