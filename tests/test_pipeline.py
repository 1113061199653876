"""
AdaptationPipeline tests.

Scenario A: new sketch next to a placeholder slot gets the real frames as context
Scenario B: a known recurring subject keeps its identity and anchor image
Scenario C: a non-conforming Director payload fails the run with no side effects
Plus: state machine, timeouts, dossier registration, store integration.
"""
import asyncio
import concurrent.futures
import json
import time

import pytest

from agents import DossierRegistry, StoryStore
from pipeline import AdaptationPipeline, AdaptationRun
from schemas import GenerationStatus, ImagePayload, PipelineState
from utils.error_manager import ErrorManager
from utils.errors import AnalysisError, ContextError, ErrorKind, SynthesisError
from conftest import (
    FakeCapability,
    brief_payload,
    inline_images,
    make_dossier,
    make_frame,
    make_sketch,
    make_slot,
    png_bytes,
)

RED = (200, 0, 0)
BLUE = (0, 0, 200)
SKETCH = (0, 200, 0)


class SlowCapability(FakeCapability):
    def __init__(self, delay, **kwargs):
        super().__init__(**kwargs)
        self.delay = delay

    def structured_generate(self, parts, schema, model):
        time.sleep(self.delay)
        return super().structured_generate(parts, schema, model)


class SlowSynthesisCapability(FakeCapability):
    def __init__(self, delay, **kwargs):
        super().__init__(**kwargs)
        self.delay = delay

    def image_generate(self, parts, model):
        time.sleep(self.delay)
        return super().image_generate(parts, model)


@pytest.fixture
def make_pipeline(settings):
    def factory(capability=None, registry=None, **overrides):
        cfg = json.loads(json.dumps(settings))
        for section, values in overrides.items():
            cfg[section].update(values)
        return AdaptationPipeline(
            capability=capability or FakeCapability(),
            registry=registry,
            settings=cfg,
        )

    return factory


def record(events):
    return lambda event: events.append(event.stage)


class TestScenarios:

    def test_a_sketch_next_to_empty_slot(self, make_pipeline):
        capability = FakeCapability()
        frames = [make_frame("F0", color=RED), make_slot("slot"), make_frame("F1", color=BLUE)]
        sketch = make_sketch(color=SKETCH)

        result = make_pipeline(capability).run_adaptation(sketch, frames, "")

        sent = inline_images(capability.structured_calls[0]["parts"])
        assert sent == [png_bytes(SKETCH), png_bytes(RED), png_bytes(BLUE)]
        assert result.brief.visual_anchor_index is None
        assert result.image.data
        assert result.display_prompt == brief_payload()["video_prompt"]

    def test_b_known_subject_keeps_identity(self, make_pipeline):
        registry = DossierRegistry([make_dossier("h-cat", role_label="Рыжий кот")])
        before = registry.lookup("h-cat").last_used
        capability = FakeCapability(structured=json.dumps(brief_payload(role_label="Кошка")))
        sketch = make_sketch(source_hash="h-cat")

        result = make_pipeline(capability, registry).run_adaptation(sketch, [make_frame("F0")], "")

        assert result.brief.role_label == "Рыжий кот"
        assert result.new_dossier is None
        artist_images = inline_images(capability.image_calls[0]["parts"])
        assert artist_images[-1] == png_bytes((255, 128, 0))
        assert registry.lookup("h-cat").last_used >= before
        assert len(registry) == 1

    def test_anchor_reaches_every_invocation(self, make_pipeline):
        registry = DossierRegistry([make_dossier("h-cat")])
        capability = FakeCapability()
        pipeline = make_pipeline(capability, registry)
        sketch = make_sketch(source_hash="h-cat")

        pipeline.run_adaptation(sketch, [make_frame("F0")], "")
        pipeline.run_adaptation(sketch, [make_frame("F0")], "")

        anchors = [inline_images(call["parts"])[-1] for call in capability.image_calls]
        assert anchors == [png_bytes((255, 128, 0))] * 2

    def test_c_director_exception_fails_the_run(self, make_pipeline):
        registry = DossierRegistry()
        capability = FakeCapability(structured=RuntimeError("connection reset"))
        with pytest.raises(AnalysisError):
            make_pipeline(capability, registry).run_adaptation(make_sketch(source_hash="h-new"), [], "")
        assert capability.image_calls == []
        assert len(registry) == 0

    def test_c_schema_miss_fails_without_side_effects(self, make_pipeline):
        registry = DossierRegistry()
        payload = brief_payload()
        payload.pop("visual_description")
        capability = FakeCapability(structured=json.dumps(payload))
        events = []

        with pytest.raises(AnalysisError):
            make_pipeline(capability, registry).run_adaptation(
                make_sketch(source_hash="h-new"), [make_frame("F0")], "", on_progress=record(events)
            )

        assert events[-1] == PipelineState.FAILED
        assert capability.image_calls == []
        assert len(registry) == 0
        logged = ErrorManager.get_recent_errors()
        assert logged[0]["service"] == "analysis_stage"


class TestStateMachine:

    def test_success_transitions(self, make_pipeline):
        events = []
        make_pipeline().run_adaptation(make_sketch(), [make_frame("F0")], "", on_progress=record(events))
        assert events == [
            PipelineState.ASSEMBLING_CONTEXT,
            PipelineState.ANALYZING,
            PipelineState.SYNTHESIZING,
            PipelineState.SUCCEEDED,
        ]

    def test_context_failure(self, make_pipeline):
        events = []
        sketch = make_sketch().model_copy(update={"image_url": "/nonexistent/sketch.png"})
        with pytest.raises(ContextError):
            make_pipeline().run_adaptation(sketch, [], "", on_progress=record(events))
        assert events == [PipelineState.ASSEMBLING_CONTEXT, PipelineState.ANALYZING, PipelineState.FAILED]

    def test_synthesis_failure(self, make_pipeline):
        events = []
        registry = DossierRegistry()
        with pytest.raises(SynthesisError):
            make_pipeline(FakeCapability(images=[]), registry).run_adaptation(
                make_sketch(source_hash="h-new"), [], "", on_progress=record(events)
            )
        assert events[-2:] == [PipelineState.SYNTHESIZING, PipelineState.FAILED]
        assert len(registry) == 0

    def test_broken_progress_listener_is_ignored(self, make_pipeline):
        def explode(event):
            raise RuntimeError("listener bug")

        result = make_pipeline().run_adaptation(make_sketch(), [], "", on_progress=explode)
        assert result.image.data

    def test_illegal_transition(self):
        run = AdaptationRun()
        with pytest.raises(RuntimeError):
            run.transition(PipelineState.SUCCEEDED, "skip ahead")
        assert run.state == PipelineState.IDLE

    def test_analysis_timeout_is_service_unavailable(self, make_pipeline):
        pipeline = make_pipeline(SlowCapability(0.5), timeouts={"analysis_sec": 0.05})
        with pytest.raises(AnalysisError) as exc_info:
            pipeline.run_adaptation(make_sketch(), [], "")
        assert exc_info.value.kind == ErrorKind.SERVICE_UNAVAILABLE
        assert "timed out" in exc_info.value.message
        assert "0.05s" in exc_info.value.message

    def test_async_entry_point(self, make_pipeline):
        pipeline = make_pipeline()
        result = asyncio.run(pipeline.run_adaptation_async(make_sketch(), [make_frame("F0")], "go"))
        assert result.brief.role_label == "Рыжий кот"


class TestDossierRegistration:

    def test_new_subject_is_registered(self, make_pipeline):
        generated = ImagePayload(data=png_bytes((7, 7, 7)))
        registry = DossierRegistry()
        pipeline = make_pipeline(FakeCapability(images=[generated]), registry)

        result = pipeline.run_adaptation(make_sketch(source_hash="h-new"), [], "")

        assert result.new_dossier is not None
        stored = registry.lookup("h-new")
        assert stored.role_label == "Рыжий кот"
        assert stored.description == brief_payload()["subject_identity"]
        assert stored.reference_image_url == generated.to_data_url()

    def test_target_without_hash_registers_nothing(self, make_pipeline):
        registry = DossierRegistry()
        result = make_pipeline(registry=registry).run_adaptation(make_sketch(), [], "")
        assert result.new_dossier is None
        assert len(registry) == 0

    def test_explicit_dossier_is_forwarded_as_anchor(self, make_pipeline):
        capability = FakeCapability()
        dossier = make_dossier("h-other", role_label="Пёс")
        make_pipeline(capability).run_adaptation(make_sketch(), [], "", known_dossier=dossier)
        assert inline_images(capability.image_calls[0]["parts"])[-1] == png_bytes((255, 128, 0))


class TestStoreIntegration:

    def test_new_sketch_lands_in_placeholder(self, make_pipeline):
        store = StoryStore([make_frame("F0"), make_frame("F1")])
        pipeline = make_pipeline(registry=store.registry)
        sketch = make_sketch(source_hash="h-new")

        result, applied = pipeline.adapt_in_store(store, sketch, "", insert_at=1)

        assert applied is True
        frame = store.get(sketch.id)
        assert store.index_of(sketch.id) == 1
        assert frame.generation_status == GenerationStatus.IDLE
        assert frame.active_image_url == result.image.to_data_url()
        assert frame.prompt == result.display_prompt
        assert frame.source_hash == "h-new"
        assert store.registry.lookup("h-new") is not None

    def test_regenerate_existing_frame_appends_version(self, make_pipeline):
        store = StoryStore([make_frame("F0"), make_frame("F1")])
        pipeline = make_pipeline(registry=store.registry)

        _, applied = pipeline.adapt_in_store(store, store.get("F1"), "warmer light")

        frame = store.get("F1")
        assert applied is True
        assert len(frame.image_versions) == 2
        assert frame.active_version_index == 1

    def test_superseded_result_is_dropped(self, make_pipeline):
        store = StoryStore([make_frame("F0"), make_frame("F1")])
        pipeline = make_pipeline(registry=store.registry)

        def supersede(event):
            if event.stage == PipelineState.SYNTHESIZING:
                store.begin_generation("F1", "newer request")

        _, applied = pipeline.adapt_in_store(store, store.get("F1"), "", on_progress=supersede)

        assert applied is False
        frame = store.get("F1")
        assert len(frame.image_versions) == 1
        assert frame.generation_status == GenerationStatus.GENERATING

    def test_failure_marks_empty_slot_as_error(self, make_pipeline):
        store = StoryStore([make_frame("F0")])
        pipeline = make_pipeline(FakeCapability(images=[]), registry=store.registry)
        sketch = make_sketch()

        with pytest.raises(SynthesisError):
            pipeline.adapt_in_store(store, sketch, "")

        frame = store.get(sketch.id)
        assert frame.generation_status == GenerationStatus.ERROR
        assert frame.generating_message.startswith("Artist image synthesis failed")

    def test_cancelled_run_registers_no_dossier(self, make_pipeline):
        store = StoryStore([make_frame("F0")])
        pipeline = make_pipeline(registry=store.registry)
        sketch = make_sketch(source_hash="h-new")

        def cancel(event):
            if event.stage == PipelineState.SYNTHESIZING:
                store.cancel(sketch.id)

        result, applied = pipeline.adapt_in_store(store, sketch, "", on_progress=cancel)

        assert applied is False
        assert result.new_dossier is None
        assert len(store.registry) == 0
        assert store.to_project().dossiers == []

    def test_superseded_run_does_not_touch_anchor(self, make_pipeline):
        registry = DossierRegistry([make_dossier("h-cat")])
        store = StoryStore([make_frame("F0"), make_frame("F1", source_hash="h-cat")], registry)
        before = store.registry.lookup("h-cat").last_used
        pipeline = make_pipeline(registry=store.registry)

        def supersede(event):
            if event.stage == PipelineState.SYNTHESIZING:
                store.begin_generation("F1", "newer request")

        _, applied = pipeline.adapt_in_store(store, store.get("F1"), "", on_progress=supersede)

        assert applied is False
        assert store.registry.lookup("h-cat").last_used == before

    def test_unexpected_error_settles_the_slot(self, make_pipeline):
        store = StoryStore([make_frame("F0")])
        pipeline = make_pipeline(FakeCapability(images=[None]), registry=store.registry)
        sketch = make_sketch()

        with pytest.raises(AttributeError):
            pipeline.adapt_in_store(store, sketch, "")

        frame = store.get(sketch.id)
        assert frame.generation_status == GenerationStatus.ERROR
        assert frame.generating_message.startswith("Adaptation failed unexpectedly")
        assert store.cancel(sketch.id) is False

    def test_unexpected_error_on_existing_frame_returns_to_idle(self, make_pipeline):
        store = StoryStore([make_frame("F0"), make_frame("F1")])
        pipeline = make_pipeline(FakeCapability(images=[None]), registry=store.registry)

        with pytest.raises(AttributeError):
            pipeline.adapt_in_store(store, store.get("F1"), "")

        frame = store.get("F1")
        assert frame.generation_status == GenerationStatus.IDLE
        assert len(frame.image_versions) == 1


class TestConcurrency:

    def test_waiting_runs_keep_their_full_stage_budget(self, make_pipeline):
        pipeline = make_pipeline(
            SlowSynthesisCapability(1.0),
            timeouts={"analysis_sec": 0.5, "synthesis_sec": 5},
        )
        with concurrent.futures.ThreadPoolExecutor(max_workers=12) as pool:
            futures = [
                pool.submit(pipeline.run_adaptation, make_sketch(f"sketch-{i}"), [], "")
                for i in range(12)
            ]
            results = [f.result() for f in futures]

        assert len(results) == 12
        assert all(r.image.data for r in results)


class TestErrorLog:

    def test_each_pipeline_logs_to_its_own_file(self, make_pipeline, tmp_path):
        default_log = ErrorManager.LOG_FILE
        first_log = str(tmp_path / "first.log")
        second_log = str(tmp_path / "second.log")
        first = make_pipeline(FakeCapability(images=[]), errors={"log_file": first_log})
        make_pipeline(errors={"log_file": second_log})

        with pytest.raises(SynthesisError):
            first.run_adaptation(make_sketch(), [], "")

        assert ErrorManager.LOG_FILE == default_log
        assert ErrorManager.get_recent_errors(log_file=first_log)[0]["service"] == "synthesis_stage"
        assert ErrorManager.get_recent_errors(log_file=second_log) == []
