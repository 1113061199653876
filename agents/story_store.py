"""
Story Store: owns the ordered frame sequence and the dossier registry.

The pipeline only ever reads a snapshot. Results come back through
apply_result() together with the invocation token handed out by
begin_generation(); a token that is no longer current (the frame was
regenerated again, cancelled or deleted) is dropped silently.
"""

import threading
import time
import uuid
from typing import Dict, List, Optional, Tuple

from schemas import (
    MIN_FRAME_DURATION,
    AdaptationResult,
    AspectRatio,
    Frame,
    GenerationStatus,
    StoryProject,
)
from agents.dossier_registry import DossierRegistry
from utils.logger import get_logger

logger = get_logger("story_store")


class StoryStore:
    """
    프레임 시퀀스 + 도시에 레지스트리 저장소

    Frames are treated as immutable values: every change swaps in a freshly
    validated Frame, so a snapshot handed to the pipeline never changes under it.
    """

    def __init__(self, frames: Optional[List[Frame]] = None, registry: Optional[DossierRegistry] = None):
        self._lock = threading.RLock()
        self._frames: List[Frame] = list(frames or [])
        self._tokens: Dict[str, str] = {}
        self.registry = registry if registry is not None else DossierRegistry()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> List[Frame]:
        with self._lock:
            return list(self._frames)

    def get(self, frame_id: str) -> Optional[Frame]:
        with self._lock:
            index = self._index(frame_id)
            return self._frames[index] if index >= 0 else None

    def index_of(self, frame_id: str) -> int:
        with self._lock:
            return self._index(frame_id)

    def total_duration(self) -> float:
        """Sum of durations; frames still generating do not count."""
        with self._lock:
            return sum(f.duration for f in self._frames if f.generation_status != GenerationStatus.GENERATING)

    def frames_for_dossier(self, source_hash: str) -> List[Frame]:
        return self.registry.list_by_source_hash(source_hash, self.snapshot())

    def __len__(self) -> int:
        with self._lock:
            return len(self._frames)

    # ------------------------------------------------------------------
    # Structural edits
    # ------------------------------------------------------------------

    def insert_frame(self, frame: Frame, index: Optional[int] = None) -> Frame:
        with self._lock:
            if self._index(frame.id) >= 0:
                raise ValueError(f"Frame {frame.id} already exists")
            if index is None or index > len(self._frames):
                index = len(self._frames)
            self._frames.insert(max(index, 0), frame)
        return frame

    def insert_placeholder(
        self,
        index: Optional[int] = None,
        message: str = "Generating...",
        duration: float = 3.0,
        aspect_ratio: AspectRatio = AspectRatio.WIDE,
        source_hash: Optional[str] = None,
        frame_id: Optional[str] = None,
    ) -> Tuple[Frame, str]:
        """
        Insert an empty generating slot and start an invocation for it.

        Passing the id of a not-yet-placed sketch as frame_id lets the context
        assembler find the slot and pick its neighbours.
        """
        placeholder = Frame(
            id=frame_id or f"placeholder-{uuid.uuid4()}",
            duration=duration,
            aspect_ratio=aspect_ratio,
            source_hash=source_hash,
            generation_status=GenerationStatus.GENERATING,
            generating_message=message,
        )
        with self._lock:
            self.insert_frame(placeholder, index)
            token = str(uuid.uuid4())
            self._tokens[placeholder.id] = token
        return placeholder, token

    def delete_frame(self, frame_id: str) -> bool:
        with self._lock:
            index = self._index(frame_id)
            if index < 0:
                return False
            del self._frames[index]
            self._tokens.pop(frame_id, None)
        return True

    def move_frame(self, frame_id: str, new_index: int) -> None:
        with self._lock:
            index = self._require(frame_id)
            frame = self._frames.pop(index)
            self._frames.insert(max(0, min(new_index, len(self._frames))), frame)

    # ------------------------------------------------------------------
    # Field edits
    # ------------------------------------------------------------------

    def update_prompt(self, frame_id: str, prompt: str) -> Frame:
        return self._replace(frame_id, prompt=prompt)

    def set_duration(self, frame_id: str, duration: float) -> Frame:
        if duration < MIN_FRAME_DURATION:
            raise ValueError(f"duration must be >= {MIN_FRAME_DURATION}s")
        return self._replace(frame_id, duration=duration)

    def set_active_version(self, frame_id: str, version_index: int) -> Frame:
        """Rollback / roll forward between existing versions."""
        return self._replace(frame_id, active_version_index=version_index)

    def append_version(self, frame_id: str, image_url: str, prompt: Optional[str] = None) -> Frame:
        with self._lock:
            frame = self._frames[self._require(frame_id)]
            versions = frame.image_versions + [image_url]
            updates = {
                "image_versions": versions,
                "active_version_index": len(versions) - 1,
            }
            if prompt is not None:
                updates["prompt"] = prompt
            return self._replace(frame_id, **updates)

    # ------------------------------------------------------------------
    # Generation lifecycle
    # ------------------------------------------------------------------

    def begin_generation(self, frame_id: str, message: str = "Adapting style...") -> str:
        """Mark the frame as generating and return the new invocation token."""
        token = str(uuid.uuid4())
        with self._lock:
            self._replace(frame_id, generation_status=GenerationStatus.GENERATING, generating_message=message)
            self._tokens[frame_id] = token
        return token

    def is_current(self, frame_id: str, token: str) -> bool:
        with self._lock:
            return self._tokens.get(frame_id) == token

    def report_progress(self, frame_id: str, token: str, message: str) -> bool:
        with self._lock:
            if not self.is_current(frame_id, token):
                return False
            self._replace(frame_id, generating_message=message)
            return True

    def apply_result(
        self,
        frame_id: str,
        token: str,
        result: AdaptationResult,
        source_hash: Optional[str] = None,
        anchor_hash: Optional[str] = None,
    ) -> bool:
        """
        Append the generated image as a new version.

        The dossier side of the result goes through the same token check:
        result.new_dossier is registered (unless the hash got one meanwhile)
        and a reused anchor_hash has last_used refreshed.

        Returns:
            False if the invocation was superseded (image and dossier dropped)
        """
        with self._lock:
            if not self.is_current(frame_id, token):
                logger.info(f"[Store] Dropping superseded result for frame {frame_id}")
                return False
            frame = self._frames[self._require(frame_id)]
            versions = frame.image_versions + [result.image.to_data_url()]
            updates = {
                "image_versions": versions,
                "active_version_index": len(versions) - 1,
                "prompt": result.display_prompt or frame.prompt,
                "generation_status": GenerationStatus.IDLE,
                "generating_message": None,
            }
            if source_hash:
                updates["source_hash"] = source_hash
            self._replace(frame_id, **updates)
            del self._tokens[frame_id]

            if anchor_hash:
                self.registry.touch(anchor_hash)
            elif result.new_dossier is not None and self.registry.lookup(result.new_dossier.source_hash) is None:
                self.registry.upsert(result.new_dossier)
        return True

    def fail_generation(self, frame_id: str, token: str, message: str) -> bool:
        """
        Record a failed invocation.

        A frame that still has earlier versions goes back to idle; an empty
        slot becomes an error frame whose only recovery is regeneration.
        """
        with self._lock:
            if not self.is_current(frame_id, token):
                return False
            self._settle(frame_id, message)
            del self._tokens[frame_id]
        return True

    def cancel(self, frame_id: str) -> bool:
        """Supersede the in-flight invocation without applying anything."""
        with self._lock:
            if self._tokens.pop(frame_id, None) is None:
                return False
            self._settle(frame_id, "Cancelled")
        return True

    # ------------------------------------------------------------------
    # Persistence boundary
    # ------------------------------------------------------------------

    def to_project(self, name: str = "Untitled", project_id: Optional[str] = None) -> StoryProject:
        """Frames and dossiers together; in-flight generation state is not saved."""
        frames = []
        for frame in self.snapshot():
            if frame.generation_status == GenerationStatus.GENERATING and not frame.image_versions:
                continue
            frames.append(frame.model_copy(update={
                "generation_status": GenerationStatus.IDLE if frame.image_versions else frame.generation_status,
                "generating_message": None,
            }))
        extra = {"id": project_id} if project_id else {}
        return StoryProject(
            name=name,
            frames=frames,
            dossiers=self.registry.to_list(),
            last_modified=time.time() * 1000.0,
            **extra,
        )

    @classmethod
    def from_project(cls, project: StoryProject) -> "StoryStore":
        return cls(frames=project.frames, registry=DossierRegistry(project.dossiers))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _index(self, frame_id: str) -> int:
        for i, frame in enumerate(self._frames):
            if frame.id == frame_id:
                return i
        return -1

    def _require(self, frame_id: str) -> int:
        index = self._index(frame_id)
        if index < 0:
            raise KeyError(f"Unknown frame: {frame_id}")
        return index

    def _replace(self, frame_id: str, **updates) -> Frame:
        with self._lock:
            index = self._require(frame_id)
            data = self._frames[index].model_dump()
            data.update(updates)
            frame = Frame.model_validate(data)
            self._frames[index] = frame
            return frame

    def _settle(self, frame_id: str, message: str) -> None:
        frame = self._frames[self._require(frame_id)]
        if frame.image_versions:
            self._replace(frame_id, generation_status=GenerationStatus.IDLE, generating_message=None)
        else:
            self._replace(frame_id, generation_status=GenerationStatus.ERROR, generating_message=message)
