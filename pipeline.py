"""
FRAMEFORGE 적응 파이프라인

Adapts one target image (uploaded asset, sketch or existing frame) into the
story so that it matches the surrounding frames' style and, for a known
recurring subject, its established appearance.

실행 플로우 (one invocation, strictly sequential):
1. ContextAssembler - style-reference neighbours + identity anchor
2. DirectorAgent    - schema-validated AnalysisBrief
3. ArtistAgent      - one rendered image
4. DossierRegistry  - new recurring subject is registered once the result is applied

State machine:
    IDLE -> ASSEMBLING_CONTEXT -> ANALYZING -> SYNTHESIZING -> SUCCEEDED | FAILED

The pipeline never retries and keeps nothing on failure; retry after an
out-of-band recovery (new API key, waiting) is the caller's decision.
"""

import asyncio
import concurrent.futures
import traceback
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from schemas import (
    AdaptationResult,
    Dossier,
    Frame,
    ImagePayload,
    PipelineState,
    ProgressEvent,
    Sketch,
    StyleContext,
)
from agents import (
    ArtistAgent,
    ContextAssembler,
    DirectorAgent,
    DossierRegistry,
    GeminiCapability,
    StoryStore,
)
from agents.director_agent import as_payload, load_optional
from agents.artist_agent import load_anchor_image
from config import get_model_settings, load_settings
from utils.error_manager import ErrorManager
from utils.errors import AnalysisError, ErrorKind, FrameforgeError, SynthesisError
from utils.logger import get_logger

logger = get_logger("pipeline")

Target = Union[Frame, Sketch]
ProgressCallback = Callable[[ProgressEvent], None]

# Allowed transitions; anything else is a programming error.
TRANSITIONS = {
    PipelineState.IDLE: (PipelineState.ASSEMBLING_CONTEXT,),
    PipelineState.ASSEMBLING_CONTEXT: (PipelineState.ANALYZING, PipelineState.FAILED),
    PipelineState.ANALYZING: (PipelineState.SYNTHESIZING, PipelineState.FAILED),
    PipelineState.SYNTHESIZING: (PipelineState.SUCCEEDED, PipelineState.FAILED),
    PipelineState.SUCCEEDED: (),
    PipelineState.FAILED: (),
}


class AdaptationRun:
    """
    State of a single invocation.

    Every invocation gets a fresh run starting at IDLE; nothing carries over.
    """

    def __init__(self, on_progress: Optional[ProgressCallback] = None):
        self.state = PipelineState.IDLE
        self.history: List[ProgressEvent] = []
        self.on_progress = on_progress

    def transition(self, state: PipelineState, message: str) -> None:
        if state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal pipeline transition {self.state.value} -> {state.value}")
        self.state = state
        event = ProgressEvent(stage=state, message=message)
        self.history.append(event)
        if self.on_progress is not None:
            try:
                self.on_progress(event)
            except Exception as e:
                # display-only; a broken listener must not fail the run
                logger.warning(f"Progress callback raised: {e}")


class AdaptationPipeline:
    """
    FRAMEFORGE 적응 파이프라인

    Independent invocations may run concurrently on one instance; the only
    shared mutable state is the DossierRegistry.
    """

    def __init__(
        self,
        capability=None,
        registry: Optional[DossierRegistry] = None,
        settings: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize pipeline.

        Args:
            capability: GenerativeCapability (default: GeminiCapability)
            registry: shared DossierRegistry (use the StoryStore's registry)
            settings: settings dict (default: load_settings())
        """
        self.settings = settings or load_settings()
        models = get_model_settings(self.settings)
        timeouts = self.settings["timeouts"]
        context_cfg = self.settings["context"]

        # per-instance error log; ErrorManager.LOG_FILE stays the process default
        self.error_log = self.settings.get("errors", {}).get("log_file") or None

        self.analysis_timeout = timeouts.get("analysis_sec")
        self.synthesis_timeout = timeouts.get("synthesis_sec")

        if capability is None:
            http_timeout = max(t for t in (self.analysis_timeout, self.synthesis_timeout, 60) if t)
            capability = GeminiCapability(timeout_sec=http_timeout)
        self.capability = capability
        self.registry = registry if registry is not None else DossierRegistry()

        self.assembler = ContextAssembler(
            registry=self.registry,
            policy=context_cfg.get("extension_policy", "left_first"),
            max_style_references=context_cfg.get("max_style_references", 2),
        )
        self.director = DirectorAgent(
            capability,
            model=models.analysis_model,
            language=self.settings["story"].get("language", "Russian"),
        )
        self.artist = ArtistAgent(capability, model=models.editing_model)

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def run_adaptation(
        self,
        target: Target,
        frames: Sequence[Frame],
        instruction: str = "",
        known_dossier: Optional[Dossier] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> AdaptationResult:
        """
        Adapt `target` into the story given by `frames`.

        Args:
            target: frame already in the sequence, or a sketch/asset that is not
            frames: snapshot of the ordered frame sequence
            instruction: free-text user instruction
            known_dossier: explicit identity anchor (overrides registry lookup)
            on_progress: receives a ProgressEvent at every state transition

        Returns:
            AdaptationResult (image, display prompt, brief, new dossier if any)

        Raises:
            ContextError / AnalysisError / SynthesisError
        """
        result, anchor_hash = self._invoke(target, frames, instruction, known_dossier, on_progress)
        return self._commit_dossiers(self.registry, result, anchor_hash)

    async def run_adaptation_async(
        self,
        target: Target,
        frames: Sequence[Frame],
        instruction: str = "",
        known_dossier: Optional[Dossier] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> AdaptationResult:
        """asyncio wrapper; the blocking stages run in a worker thread."""
        return await asyncio.to_thread(
            self.run_adaptation, target, frames, instruction, known_dossier, on_progress
        )

    def adapt_in_store(
        self,
        store: StoryStore,
        target: Target,
        instruction: str = "",
        known_dossier: Optional[Dossier] = None,
        insert_at: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Tuple[AdaptationResult, bool]:
        """
        Run an adaptation against a StoryStore and apply the result.

        A target already in the store is regenerated in place; any other target
        gets a placeholder slot (at `insert_at`, default: end).

        Returns:
            (result, applied) - applied is False when a newer invocation for
            the same frame superseded this one; the image and any new dossier
            were dropped

        A new dossier is registered in the store's registry only together
        with the frame update, under the same token check.
        """
        if store.get(target.id) is not None:
            frame_id = target.id
            token = store.begin_generation(frame_id, "Adapting style...")
        else:
            placeholder, token = store.insert_placeholder(
                index=insert_at,
                message="Adapting style...",
                source_hash=target.source_hash,
                frame_id=target.id,
            )
            frame_id = placeholder.id

        def _progress(event: ProgressEvent):
            store.report_progress(frame_id, token, event.message)
            if on_progress is not None:
                on_progress(event)

        try:
            result, anchor_hash = self._invoke(target, store.snapshot(), instruction, known_dossier, _progress)
            applied = store.apply_result(
                frame_id, token, result, source_hash=target.source_hash, anchor_hash=anchor_hash
            )
        except FrameforgeError as e:
            store.fail_generation(frame_id, token, e.user_message())
            raise
        except Exception as e:
            # the slot must never stay GENERATING with a live token
            store.fail_generation(frame_id, token, f"Adaptation failed unexpectedly: {e}")
            raise

        if not applied and result.new_dossier is not None:
            result = result.model_copy(update={"new_dossier": None})
        return result, applied

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _invoke(
        self,
        target: Target,
        frames: Sequence[Frame],
        instruction: str,
        known_dossier: Optional[Dossier],
        on_progress: Optional[ProgressCallback],
    ) -> Tuple[AdaptationResult, Optional[str]]:
        """One run with failure logging; nothing is written to any registry."""
        run = AdaptationRun(on_progress)
        try:
            return self._execute(run, target, list(frames), instruction, known_dossier)
        except FrameforgeError as e:
            self._record_failure(run, e)
            raise
        except Exception as e:
            if run.state not in (PipelineState.FAILED, PipelineState.SUCCEEDED, PipelineState.IDLE):
                run.transition(PipelineState.FAILED, f"Unexpected error: {e}")
            ErrorManager.log_error(
                "AdaptationPipeline", str(e), traceback.format_exc(),
                severity="critical", log_file=self.error_log,
            )
            raise

    def _execute(
        self,
        run: AdaptationRun,
        target: Target,
        frames: List[Frame],
        instruction: str,
        known_dossier: Optional[Dossier],
    ) -> Tuple[AdaptationResult, Optional[str]]:
        """
        Returns:
            (result, anchor_hash) - result.new_dossier is only proposed here;
            anchor_hash names the reused dossier whose last_used to refresh
        """
        run.transition(PipelineState.ASSEMBLING_CONTEXT, "Assembling story context...")
        context = self.assembler.assemble(target, frames, known_dossier)

        run.transition(PipelineState.ANALYZING, "Director is analyzing the story...")
        target_image, style_images, anchor_image = self._load_images(target, context)

        brief = self._call_stage(
            self.director.analyze,
            self.analysis_timeout,
            AnalysisError,
            target_image,
            style_images,
            instruction,
            context.identity_anchor,
        )

        run.transition(PipelineState.SYNTHESIZING, f"Artist is drawing '{brief.role_label}'...")
        image = self._call_stage(
            self.artist.synthesize,
            self.synthesis_timeout,
            SynthesisError,
            brief,
            target_image,
            style_images,
            anchor_image,
        )

        proposed = self._propose_dossier(target, context, brief, image)
        anchor = context.identity_anchor
        anchor_hash = anchor.source_hash if anchor is not None and anchor.source_hash else None

        run.transition(PipelineState.SUCCEEDED, "Frame ready")
        result = AdaptationResult(
            image=image,
            display_prompt=brief.display_prompt(),
            brief=brief,
            new_dossier=proposed,
        )
        return result, anchor_hash

    def _load_images(
        self, target: Target, context: StyleContext
    ) -> Tuple[ImagePayload, List[ImagePayload], Optional[ImagePayload]]:
        """Fetch every image once; both stages reuse the bytes."""
        target_image = as_payload(target)
        style_images = [
            payload
            for payload in (load_optional(ref, "Context") for ref in context.style_references)
            if payload is not None
        ]
        anchor_image = load_anchor_image(context.identity_anchor)
        return target_image, style_images, anchor_image

    def _call_stage(self, fn, timeout: Optional[float], error_cls, *args):
        if not timeout:
            return fn(*args)
        # a dedicated worker per call, so the clock starts when the stage does
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"frameforge-{error_cls.stage}"
        )
        try:
            future = executor.submit(fn, *args)
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            # the worker keeps running; its result is discarded
            raise error_cls(
                f"{error_cls.stage.capitalize()} stage timed out after {timeout:g}s",
                kind=ErrorKind.SERVICE_UNAVAILABLE,
            )
        finally:
            executor.shutdown(wait=False)

    def _propose_dossier(
        self,
        target: Target,
        context: StyleContext,
        brief,
        image: ImagePayload,
    ) -> Optional[Dossier]:
        """New recurring subject, or None; not registered yet."""
        if context.identity_anchor is not None:
            return None
        source_hash = getattr(target, "source_hash", None)
        if not source_hash or self.registry.lookup(source_hash) is not None:
            return None
        return Dossier(
            source_hash=source_hash,
            type=brief.subject_type,
            role_label=brief.role_label,
            description=brief.subject_identity,
            reference_image_url=image.to_data_url(),
        )

    @staticmethod
    def _commit_dossiers(
        registry: DossierRegistry, result: AdaptationResult, anchor_hash: Optional[str]
    ) -> AdaptationResult:
        if anchor_hash is not None:
            registry.touch(anchor_hash)
            return result
        if result.new_dossier is None:
            return result
        stored = registry.upsert(result.new_dossier)
        return result.model_copy(update={"new_dossier": stored})

    def _record_failure(self, run: AdaptationRun, error: FrameforgeError) -> None:
        if run.state not in (PipelineState.FAILED, PipelineState.SUCCEEDED, PipelineState.IDLE):
            run.transition(PipelineState.FAILED, error.user_message())
        ErrorManager.log_error(
            service=f"{error.stage}_stage",
            error_message=error.message,
            details=repr(error.cause) if error.cause else None,
            severity="warning" if error.recoverable else "error",
            kind=error.kind.value,
            log_file=self.error_log,
        )


def run_adaptation(
    target: Target,
    frames: Sequence[Frame],
    instruction: str = "",
    known_dossier: Optional[Dossier] = None,
    on_progress: Optional[ProgressCallback] = None,
    capability=None,
    registry: Optional[DossierRegistry] = None,
) -> AdaptationResult:
    """
    편의 함수: 한 번의 적응 실행

    Args:
        target: frame or sketch to adapt
        frames: ordered frame sequence
        instruction: user instruction
        known_dossier: explicit identity anchor
        on_progress: progress callback
        capability: GenerativeCapability (default: Gemini)
        registry: DossierRegistry to read and update

    Returns:
        AdaptationResult
    """
    pipeline = AdaptationPipeline(capability=capability, registry=registry)
    return pipeline.run_adaptation(target, frames, instruction, known_dossier, on_progress)
