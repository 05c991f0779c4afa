"""
Pipeline Orchestrator: drives one "generate an asset" request through its stages.

Idle -> Enhancing? -> MeshGenerating -> Rigging? -> AvatarConverting? -> Persisting -> Completed,
with Failed(stage, error) reachable from any non-terminal state.
Optional stages (enhancement, rigging, avatar conversion) degrade the result instead of aborting;
mandatory stages (mesh generation, download, persistence) raise PipelineFailed.
"""
import asyncio
import logging
import time
import uuid
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from asset_shared.errors import ClassifiedError, ErrorHistory, ValidationError, classify, format_error
from asset_shared.retry import with_retry
from asset_shared.schemas import (
    BatchFailure,
    BatchResult,
    GenerationEvent,
    GenerationMode,
    GenerationRequest,
    GenerationResult,
    JobKind,
    PipelineState,
    ProgressEvent,
    QualityTier,
    StageDecision,
    preset_for,
    utc_now_iso,
)

from .config import PipelineSettings
from .drivers import (
    AvatarConversionDriver,
    AvatarInput,
    EnhancementInput,
    ImageToMeshDriver,
    ImageToMeshInput,
    MeshPreviewDriver,
    MeshRefineDriver,
    PreviewInput,
    PromptEnhancementDriver,
    RefineInput,
    RetextureDriver,
    RetextureInput,
    RigDriver,
    RigInput,
    StageDriver,
)
from .persistence import validate_asset_id
from .poller import poll_until_terminal

logger = logging.getLogger(__name__)

T = TypeVar("T")
ProgressListener = Callable[[ProgressEvent], None]

MAX_BATCH_SIZE = 10

# Progress bands (percent) per stage
ENHANCE_BAND = (0, 5)
PREVIEW_BAND = (10, 45)
REFINE_START = 50
IMAGE_START = 10
MESH_END = 95
MESH_END_BEFORE_RIGGING = 70  # mesh band ends where rigging begins
RIG_BAND = (70, 85)
RIGGED_DOWNLOADED = 90
AVATAR_BAND = (95, 97)
PERSIST_START = 97
PERSIST_DONE = 99


def band_value(band: Tuple[int, int], sub_progress: int) -> int:
    """Map a stage's 0-100 sub-progress linearly into its band."""
    lo, hi = band
    sub = max(0, min(100, int(sub_progress)))
    return lo + (hi - lo) * sub // 100


class PipelineFailed(Exception):
    """Terminal Failed(stage, error) outcome of a run."""

    def __init__(self, stage: str, error: ClassifiedError):
        super().__init__(f"{stage} failed: {error.message}")
        self.stage = stage
        self.error = error


class PipelineRun:
    """Mutable state of one in-flight run. Owned by a single flow and discarded when it ends."""

    def __init__(self, run_id: str, on_progress: Optional[ProgressListener] = None):
        self.run_id = run_id
        self.state = PipelineState.IDLE
        self.progress = 0
        self.status_line = ""
        self.artifacts: Dict[str, Any] = {}
        self.job_ids: Dict[str, str] = {}
        self.degraded: Dict[str, str] = {}  # optional stage -> error code
        self._on_progress = on_progress

    def enter(self, state: PipelineState) -> None:
        logger.info("Run %s: %s -> %s", self.run_id, self.state.value, state.value)
        self.state = state

    def advance(self, percent: int, step: str) -> None:
        # Never report less than what was already reported
        self.progress = max(self.progress, min(100, int(percent)))
        self.status_line = step
        if self._on_progress is None:
            return
        try:
            self._on_progress(ProgressEvent(stage=self.state.value, percent=self.progress, step=step))
        except Exception:
            logger.exception("Progress listener failed for run %s", self.run_id)


class PipelineOrchestrator:
    def __init__(
        self,
        mesh_provider,
        avatar_converter,
        enhancer,
        fetcher,
        store,
        settings: Optional[PipelineSettings] = None,
        errors: Optional[ErrorHistory] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.mesh_provider = mesh_provider
        self.fetcher = fetcher
        self.store = store
        self.settings = settings or PipelineSettings()
        self.errors = errors if errors is not None else ErrorHistory()
        self._sleep = sleep
        self._clock = clock

        self.enhance_driver = PromptEnhancementDriver(enhancer)
        self.preview_driver = MeshPreviewDriver(mesh_provider)
        self.refine_driver = MeshRefineDriver(mesh_provider)
        self.image_driver = ImageToMeshDriver(mesh_provider)
        self.retexture_driver = RetextureDriver(mesh_provider)
        self.rig_driver = RigDriver(mesh_provider)
        self.avatar_driver = AvatarConversionDriver(avatar_converter)

    # --- stage plumbing ---

    async def _stage(
        self,
        run: PipelineRun,
        driver: StageDriver,
        stage_input: Any,
        band: Tuple[int, int],
        label: str,
    ) -> Any:
        """Submit, poll and interpret one stage under the retry policy."""
        kind = driver.kind

        async def attempt():
            handle = await driver.submit(stage_input)
            run.job_ids[kind.value] = handle.job_id
            run.advance(band[0], f"{label}...")

            def on_progress(progress: int, queue_depth: Optional[int]) -> None:
                queue_info = f" ({queue_depth} tasks ahead)" if queue_depth is not None else ""
                run.advance(band_value(band, progress), f"{label}: {progress}%{queue_info}")

            status = await poll_until_terminal(
                handle,
                self.mesh_provider.get_status,
                interval=self.settings.poll_interval,
                timeout=self.settings.timeout_for(kind),
                on_progress=on_progress,
                stage=kind.value,
                sleep=self._sleep,
                clock=self._clock,
            )
            return driver.interpret(status, handle)

        def on_retry(attempt_no: int, error: ClassifiedError, delay: float) -> None:
            run.advance(run.progress, f"{label}: retrying after {error.code} (attempt {attempt_no + 1})")

        output = await with_retry(attempt, self.settings.retry_for(kind), on_retry=on_retry, sleep=self._sleep)
        run.advance(band[1], f"{label} complete")
        return output

    async def _download(self, url: str) -> bytes:
        return await with_retry(lambda: self.fetcher.download(url), self.settings.retry, sleep=self._sleep)

    async def _mandatory(self, run: PipelineRun, stage: str, step: Callable[[], Awaitable[T]]) -> T:
        try:
            return await step()
        except Exception as e:
            err = classify(e)
            run.enter(PipelineState.FAILED)
            self.errors.record(err, source=f"{run.run_id}:{stage}")
            logger.error("Run %s failed at %s: [%s] %s", run.run_id, stage, err.code, err.message)
            raise PipelineFailed(stage, err) from e

    async def _optional(self, run: PipelineRun, stage: str, step: Callable[[], Awaitable[T]]) -> Optional[T]:
        try:
            return await step()
        except Exception as e:
            err = classify(e)
            run.degraded[stage] = err.code
            self.errors.record(err, source=f"{run.run_id}:{stage}")
            logger.warning("Run %s: optional stage %s skipped after [%s] %s", run.run_id, stage, err.code, err.message)
            return None

    async def _persist(
        self,
        run: PipelineRun,
        asset_id: str,
        model_buffer: bytes,
        thumbnail_buffer: Optional[bytes],
        avatar_buffer: Optional[bytes],
        metadata: Dict[str, Any],
    ):
        run.enter(PipelineState.PERSISTING)
        run.advance(PERSIST_START, "Saving assets to library...")
        saved = await self._mandatory(run, "persist", lambda: with_retry(
            lambda: self.store.save(
                asset_id=asset_id,
                model_buffer=model_buffer,
                thumbnail_buffer=thumbnail_buffer,
                avatar_buffer=avatar_buffer,
                metadata=metadata,
            ),
            self.settings.retry,
            sleep=self._sleep,
        ))
        run.advance(PERSIST_DONE, "Assets saved")
        return saved

    # --- operations ---

    async def run(self, request: GenerationRequest, on_progress: Optional[ProgressListener] = None) -> GenerationResult:
        """Run one generation to completion. Raises PipelineFailed on any fatal stage failure."""
        run = PipelineRun(uuid.uuid4().hex[:12], on_progress)
        try:
            return await self._run(run, request)
        except PipelineFailed:
            raise
        except Exception as e:
            err = classify(e)
            stage = run.state.value
            run.enter(PipelineState.FAILED)
            self.errors.record(err, source=f"{run.run_id}:{stage}")
            logger.exception("Run %s failed unexpectedly in %s", run.run_id, stage)
            raise PipelineFailed(stage, err) from e

    async def _run(self, run: PipelineRun, request: GenerationRequest) -> GenerationResult:
        decision = StageDecision.for_request(request)
        preset = preset_for(request.quality)
        logger.info(
            "Run %s: mode=%s quality=%s category=%s decision=%s",
            run.run_id, request.mode.value, request.quality.value, request.category.value, decision.model_dump(),
        )
        if request.asset_id:
            await self._mandatory(run, "validate", lambda: _validated(request.asset_id))
        run.advance(0, "Starting generation...")

        applied = {"enhancement": False, "rigging": False, "avatar_conversion": False}

        # Stage 0: prompt enhancement (optional)
        prompt = request.prompt
        if decision.run_enhancement and prompt and prompt.strip():
            run.enter(PipelineState.ENHANCING)
            run.advance(ENHANCE_BAND[0], "Enhancing prompt with AI...")
            enhanced = await self._optional(run, JobKind.ENHANCE_PROMPT.value, lambda: self._stage(
                run,
                self.enhance_driver,
                EnhancementInput(
                    prompt=prompt,
                    asset_type=request.category.value,
                    is_avatar=request.category.is_character,
                ),
                ENHANCE_BAND,
                "Prompt enhancement",
            ))
            if enhanced is not None:
                prompt = enhanced.prompt
                applied["enhancement"] = True
                logger.info("Run %s: enhanced prompt: %s", run.run_id, prompt)
            run.advance(ENHANCE_BAND[1], "Prompt ready")

        # Stage 1: mesh generation (mandatory)
        run.enter(PipelineState.MESH_GENERATING)
        mesh_end = MESH_END_BEFORE_RIGGING if decision.run_rigging else MESH_END
        if request.mode == GenerationMode.TEXT_TO_MESH:
            preview = await self._mandatory(run, JobKind.MESH_PREVIEW.value, lambda: self._stage(
                run,
                self.preview_driver,
                PreviewInput(prompt=prompt, preset=preset, art_style=request.art_style),
                PREVIEW_BAND,
                "Preview stage",
            ))
            mesh = await self._mandatory(run, JobKind.MESH_REFINE.value, lambda: self._stage(
                run,
                self.refine_driver,
                RefineInput(preview_job_id=preview.job_id, preset=preset),
                (REFINE_START, mesh_end),
                "Refine stage",
            ))
        else:
            mesh = await self._mandatory(run, JobKind.IMAGE_TO_MESH.value, lambda: self._stage(
                run,
                self.image_driver,
                ImageToMeshInput(image_url=request.image_url, preset=preset),
                (IMAGE_START, mesh_end),
                "Generating 3D model",
            ))
        run.artifacts["mesh_url"] = mesh.model_url
        run.artifacts["thumbnail_url"] = mesh.thumbnail_url

        run.advance(mesh_end, "Downloading model...")
        model_buffer = await self._mandatory(run, "download", lambda: self._download(mesh.model_url))

        # Stage 2: rigging (optional, characters only)
        rigged_buffer: Optional[bytes] = None
        rigged_url: Optional[str] = None
        if decision.run_rigging:
            run.enter(PipelineState.RIGGING)

            async def rig():
                out = await self._stage(
                    run,
                    self.rig_driver,
                    RigInput(model_url=mesh.model_url, height_meters=self.settings.character_height_meters),
                    RIG_BAND,
                    "Auto-rigging",
                )
                return out, await self._download(out.rigged_model_url)

            rigged = await self._optional(run, JobKind.RIG.value, rig)
            if rigged is not None:
                rigged_url, rigged_buffer = rigged[0].rigged_model_url, rigged[1]
                run.artifacts["rigged_mesh_buffer"] = rigged_buffer
                applied["rigging"] = True
                run.advance(RIGGED_DOWNLOADED, "Rigged model downloaded")

        # Stage 3: avatar-format conversion (optional, characters only, always last)
        avatar = None
        if decision.run_avatar_conversion:
            run.enter(PipelineState.AVATAR_CONVERTING)
            source = rigged_buffer if rigged_buffer is not None else model_buffer
            avatar = await self._optional(run, JobKind.CONVERT_AVATAR_FORMAT.value, lambda: self._stage(
                run,
                self.avatar_driver,
                AvatarInput(mesh_buffer=source, display_name=request.name or "Generated Avatar"),
                AVATAR_BAND,
                "Converting to avatar format",
            ))
            if avatar is not None:
                run.artifacts["avatar_buffer"] = avatar.converted_buffer
                applied["avatar_conversion"] = True

        thumbnail_buffer = None
        if mesh.thumbnail_url:
            thumbnail_buffer = await self._optional(run, "download-thumbnail", lambda: self._download(mesh.thumbnail_url))

        asset_id = request.asset_id or f"asset_{mesh.job_id}"
        metadata = {
            **request.metadata,
            "asset_id": asset_id,
            "prompt": request.prompt,
            "effective_prompt": prompt,
            "mode": request.mode.value,
            "quality": request.quality.value,
            "category": request.category.value,
            "provider_job_ids": dict(run.job_ids),
            "provider_model_url": mesh.model_url,
            "provider_thumbnail_url": mesh.thumbnail_url,
            "rigged_model_url": rigged_url,
            "features_requested": {
                "enhancement": request.enable_enhancement,
                "rigging": request.enable_rigging,
                "avatar_conversion": request.convert_to_avatar_format,
            },
            "features_applied": applied,
            "has_vrm": avatar is not None,
            "has_rigging": rigged_buffer is not None,
            "avatar_warnings": list(avatar.warnings) if avatar is not None else [],
            "degraded_stages": dict(run.degraded),
            "created_at": utc_now_iso(),
        }
        saved = await self._persist(
            run,
            asset_id,
            rigged_buffer if rigged_buffer is not None else model_buffer,
            thumbnail_buffer,
            avatar.converted_buffer if avatar is not None else None,
            metadata,
        )

        run.enter(PipelineState.COMPLETED)
        run.advance(100, "Generation complete!")
        return GenerationResult(
            asset_id=asset_id,
            model_url=saved.model_url,
            thumbnail_url=saved.thumbnail_url,
            avatar_url=saved.avatar_url,
            rigged_model_url=rigged_url,
            source_model_url=mesh.model_url,
            provider_job_id=mesh.job_id,
            metadata=metadata,
        )

    async def run_batch(
        self,
        base_request: GenerationRequest,
        count: int,
        on_progress: Optional[ProgressListener] = None,
    ) -> BatchResult:
        """Generate `count` variations one after another. A failed variation is recorded, not raised."""
        if count < 1 or count > MAX_BATCH_SIZE:
            raise ValidationError(f"Batch count must be between 1 and {MAX_BATCH_SIZE}", field="count")

        batch = BatchResult(requested=count)
        tracker = PipelineRun(f"batch-{uuid.uuid4().hex[:8]}", on_progress)
        for i in range(count):
            n = i + 1
            tracker.advance(i * 100 // count, f"Generating variation {n} of {count}...")
            update: Dict[str, Any] = {}
            if base_request.prompt:
                update["prompt"] = f"{base_request.prompt} (variation {n})"
            if base_request.asset_id:
                update["asset_id"] = f"{base_request.asset_id}-{n}"
            request = base_request.model_copy(update=update)
            try:
                result = await self.run(request)
            except PipelineFailed as e:
                logger.error("Variation %d of %d failed at %s: %s", n, count, e.stage, e.error.message)
                batch.failures.append(BatchFailure(index=n, prompt=request.prompt, stage=e.stage, error=e.error.to_dict()))
            else:
                batch.results.append(result)
        tracker.advance(100, f"Batch complete: {batch.succeeded} of {count} succeeded")
        return batch

    async def events(self, request: GenerationRequest) -> AsyncIterator[GenerationEvent]:
        """Pull-based view of run(): progress events, then exactly one result or error event."""
        queue: "asyncio.Queue[GenerationEvent]" = asyncio.Queue()

        def on_progress(event: ProgressEvent) -> None:
            queue.put_nowait(GenerationEvent(type="progress", progress=event))

        async def produce() -> None:
            try:
                result = await self.run(request, on_progress=on_progress)
            except PipelineFailed as e:
                error = format_error(e.error).model_dump(mode="json")
                error["stage"] = e.stage
                queue.put_nowait(GenerationEvent(type="error", error=error))
            else:
                queue.put_nowait(GenerationEvent(type="result", result=result))

        task = asyncio.create_task(produce())
        try:
            while True:
                event = await queue.get()
                yield event
                if event.is_terminal:
                    break
        finally:
            # Consumer went away: stop polling locally; the provider job runs out its own TTL
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def retexture(
        self,
        model_url: str,
        style_prompt: str,
        quality: QualityTier = QualityTier.MEDIUM,
        asset_id: Optional[str] = None,
        on_progress: Optional[ProgressListener] = None,
    ) -> GenerationResult:
        """Restyle an existing model and store it as a new asset."""
        run = PipelineRun(uuid.uuid4().hex[:12], on_progress)
        if asset_id:
            await self._mandatory(run, "validate", lambda: _validated(asset_id))
        run.enter(PipelineState.MESH_GENERATING)
        run.advance(0, "Starting retexture...")
        mesh = await self._mandatory(run, JobKind.RETEXTURE.value, lambda: self._stage(
            run,
            self.retexture_driver,
            RetextureInput(model_url=model_url, style_prompt=style_prompt, preset=preset_for(quality)),
            (5, 90),
            "Retexturing",
        ))
        model_buffer = await self._mandatory(run, "download", lambda: self._download(mesh.model_url))
        thumbnail_buffer = None
        if mesh.thumbnail_url:
            thumbnail_buffer = await self._optional(run, "download-thumbnail", lambda: self._download(mesh.thumbnail_url))

        asset_id = asset_id or f"asset_{mesh.job_id}"
        metadata = {
            "asset_id": asset_id,
            "mode": JobKind.RETEXTURE.value,
            "quality": quality.value,
            "style_prompt": style_prompt,
            "source_model_url": model_url,
            "provider_job_ids": dict(run.job_ids),
            "provider_model_url": mesh.model_url,
            "has_vrm": False,
            "has_rigging": False,
            "degraded_stages": dict(run.degraded),
            "created_at": utc_now_iso(),
        }
        saved = await self._persist(run, asset_id, model_buffer, thumbnail_buffer, None, metadata)
        run.enter(PipelineState.COMPLETED)
        run.advance(100, "Retexture complete!")
        return GenerationResult(
            asset_id=asset_id,
            model_url=saved.model_url,
            thumbnail_url=saved.thumbnail_url,
            source_model_url=model_url,
            provider_job_id=mesh.job_id,
            metadata=metadata,
        )


async def _validated(asset_id: str) -> str:
    return validate_asset_id(asset_id)
