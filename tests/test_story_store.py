"""StoryStore tests: frame invariants, invocation tokens, persistence."""
import pytest
from pydantic import ValidationError

from agents import StoryStore
from schemas import AdaptationResult, AnalysisBrief, Frame, GenerationStatus, ImagePayload
from conftest import brief_payload, make_dossier, make_frame, png_bytes


def make_result(color=(9, 9, 9), prompt=None) -> AdaptationResult:
    brief = AnalysisBrief.model_validate(brief_payload())
    return AdaptationResult(
        image=ImagePayload(data=png_bytes(color)),
        display_prompt=prompt or brief.display_prompt(),
        brief=brief,
    )


@pytest.fixture
def store():
    return StoryStore([make_frame("F0"), make_frame("F1", duration=2.0), make_frame("F2")])


class TestFrameInvariants:

    def test_idle_frame_needs_a_version(self):
        with pytest.raises(ValidationError):
            Frame(id="x")

    def test_active_index_in_range(self):
        with pytest.raises(ValidationError):
            make_frame("x", active_version_index=1)

    def test_minimum_duration(self, store):
        with pytest.raises(ValueError):
            store.set_duration("F0", 0.1)
        assert store.set_duration("F0", 0.25).duration == 0.25

    def test_rollback_out_of_range_rejected(self, store):
        with pytest.raises(ValidationError):
            store.set_active_version("F0", 3)
        assert store.get("F0").active_version_index == 0


class TestEdits:

    def test_insert_move_delete(self, store):
        store.insert_frame(make_frame("N"), 1)
        assert [f.id for f in store.snapshot()] == ["F0", "N", "F1", "F2"]
        store.move_frame("N", 10)
        assert store.index_of("N") == 3
        assert store.delete_frame("N") is True
        assert store.delete_frame("N") is False

    def test_duplicate_id_rejected(self, store):
        with pytest.raises(ValueError):
            store.insert_frame(make_frame("F0"))

    def test_snapshot_is_isolated(self, store):
        snapshot = store.snapshot()
        store.update_prompt("F0", "new prompt")
        assert snapshot[0].prompt == ""
        assert store.get("F0").prompt == "new prompt"

    def test_append_version_and_rollback(self, store):
        store.append_version("F0", "data:image/png;base64,AAAA", prompt="v2")
        assert store.get("F0").active_version_index == 1
        frame = store.set_active_version("F0", 0)
        assert frame.active_image_url == store.get("F0").image_versions[0]

    def test_total_duration_skips_generating(self, store):
        assert store.total_duration() == pytest.approx(8.0)
        store.insert_placeholder(duration=5.0)
        assert store.total_duration() == pytest.approx(8.0)

    def test_unknown_frame(self, store):
        with pytest.raises(KeyError):
            store.update_prompt("missing", "x")
        assert store.get("missing") is None


class TestGenerationTokens:

    def test_apply_current_result(self, store):
        token = store.begin_generation("F1", "Adapting...")
        assert store.get("F1").generation_status == GenerationStatus.GENERATING
        assert store.apply_result("F1", token, make_result(prompt="new")) is True
        frame = store.get("F1")
        assert frame.generation_status == GenerationStatus.IDLE
        assert frame.prompt == "new"
        assert len(frame.image_versions) == 2

    def test_superseded_result_dropped(self, store):
        stale = store.begin_generation("F1")
        fresh = store.begin_generation("F1")
        assert store.apply_result("F1", stale, make_result()) is False
        assert store.report_progress("F1", stale, "late") is False
        assert store.apply_result("F1", fresh, make_result()) is True

    def test_token_is_single_use(self, store):
        token = store.begin_generation("F1")
        assert store.apply_result("F1", token, make_result()) is True
        assert store.apply_result("F1", token, make_result()) is False

    def test_cancel_supersedes(self, store):
        token = store.begin_generation("F1")
        assert store.cancel("F1") is True
        assert store.apply_result("F1", token, make_result()) is False
        assert store.get("F1").generation_status == GenerationStatus.IDLE
        assert store.cancel("F1") is False

    def test_deleted_frame_drops_result(self, store):
        token = store.begin_generation("F1")
        store.delete_frame("F1")
        assert store.apply_result("F1", token, make_result()) is False

    def test_failure_on_existing_frame_keeps_it(self, store):
        token = store.begin_generation("F1")
        store.fail_generation("F1", token, "boom")
        frame = store.get("F1")
        assert frame.generation_status == GenerationStatus.IDLE
        assert len(frame.image_versions) == 1

    def test_failure_on_placeholder_is_error_frame(self, store):
        slot, token = store.insert_placeholder(index=1)
        store.fail_generation(slot.id, token, "Director analysis failed")
        frame = store.get(slot.id)
        assert frame.generation_status == GenerationStatus.ERROR
        assert frame.generating_message == "Director analysis failed"

    def test_placeholder_result_sets_source_hash(self, store):
        slot, token = store.insert_placeholder(frame_id="sketch-9")
        assert store.apply_result("sketch-9", token, make_result(), source_hash="h9") is True
        assert store.get("sketch-9").source_hash == "h9"
        assert store.index_of("sketch-9") == 3


class TestPersistence:

    def test_project_round_trip(self, store):
        store.registry.upsert(make_dossier("h1"))
        store.insert_placeholder()
        project = store.to_project("Story", project_id="p1")

        assert project.id == "p1"
        assert [f.id for f in project.frames] == ["F0", "F1", "F2"]
        assert [d.source_hash for d in project.dossiers] == ["h1"]

        restored = StoryStore.from_project(project)
        assert len(restored) == 3
        assert restored.registry.lookup("h1").role_label == "Рыжий кот"

    def test_in_flight_frame_saved_idle(self, store):
        store.begin_generation("F0")
        project = store.to_project()
        assert project.frames[0].generation_status == GenerationStatus.IDLE

    def test_frames_for_dossier(self, store):
        store.insert_frame(make_frame("S", source_hash="h1"))
        assert [f.id for f in store.frames_for_dossier("h1")] == ["S"]
