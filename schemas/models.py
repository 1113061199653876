"""
FRAMEFORGE Data Models

Shared data models (pydantic based)
- Frame / Sketch: storyboard beats and not-yet-placed targets
- ImageSource / ImagePayload: one tagged image variant and its normalized bytes
- Dossier: consistency anchor for a recurring subject
- AnalysisBrief: Director output (transient)
- AdaptationResult / ProgressEvent: pipeline outputs
- SubjectAnalysis / IntegrationResult / StorySettings / StoryIdea / StoryUpdate: asset helpers
"""

import base64
import time
import uuid
from enum import Enum
from typing import Optional, List, Dict, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


MIN_FRAME_DURATION = 0.25


def _now_ms() -> float:
    return time.time() * 1000.0


class AspectRatio(str, Enum):
    """Supported frame aspect ratios"""
    WIDE = "16:9"
    STANDARD = "4:3"
    SQUARE = "1:1"
    VERTICAL = "9:16"


class GenerationStatus(str, Enum):
    """Frame generation status"""
    IDLE = "idle"
    GENERATING = "generating"
    ERROR = "error"


class SubjectType(str, Enum):
    """Kind of subject the Director classified"""
    CHARACTER = "character"
    OBJECT = "object"
    LOCATION = "location"


class ImageKind(str, Enum):
    """Where an image came from"""
    FRAME = "frame"
    SKETCH = "sketch"
    ASSET = "asset"
    RAW = "raw"


class PipelineState(str, Enum):
    """Adaptation state machine"""
    IDLE = "idle"
    ASSEMBLING_CONTEXT = "assembling_context"
    ANALYZING = "analyzing"
    SYNTHESIZING = "synthesizing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ImagePayload(BaseModel):
    """Raw image bytes plus mime type, ready to ship to the model."""
    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    data: bytes
    mime_type: str = "image/png"

    def to_part(self) -> Dict[str, Any]:
        """Gemini inline_data part."""
        return {
            "inline_data": {
                "mime_type": self.mime_type,
                "data": base64.b64encode(self.data).decode("utf-8"),
            }
        }

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("utf-8")
        return f"data:{self.mime_type};base64,{encoded}"


class ImageSource(BaseModel):
    """
    Tagged image variant.

    - frame: a frame's active version (url)
    - sketch: a canvas export (url, usually a data URL)
    - asset: an uploaded file (data + mime_type, or url)
    - raw: a bare url wrapper, e.g. a dossier reference image
    """
    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    kind: ImageKind
    url: Optional[str] = None
    data: Optional[bytes] = None
    mime_type: Optional[str] = None
    id: Optional[str] = None
    name: Optional[str] = None

    @model_validator(mode="after")
    def _has_content(self):
        if not self.url and self.data is None:
            raise ValueError(f"{self.kind.value} image source needs either url or data")
        return self

    @classmethod
    def raw(cls, url: str) -> "ImageSource":
        return cls(kind=ImageKind.RAW, url=url)


class Frame(BaseModel):
    """One storyboard beat."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    image_versions: List[str] = Field(default_factory=list, description="URLs or data URLs, append-only")
    active_version_index: int = 0
    prompt: str = ""
    duration: float = Field(default=3.0, ge=MIN_FRAME_DURATION)
    source_hash: Optional[str] = None
    aspect_ratio: AspectRatio = AspectRatio.WIDE
    generation_status: GenerationStatus = GenerationStatus.IDLE
    generating_message: Optional[str] = None
    is_transition: bool = False

    @model_validator(mode="after")
    def _check_versions(self):
        if self.image_versions:
            if not 0 <= self.active_version_index < len(self.image_versions):
                raise ValueError(
                    f"active_version_index {self.active_version_index} out of range "
                    f"for {len(self.image_versions)} versions"
                )
        elif self.generation_status == GenerationStatus.IDLE:
            raise ValueError("an idle frame needs at least one image version")
        return self

    @property
    def active_image_url(self) -> Optional[str]:
        if not self.image_versions:
            return None
        return self.image_versions[self.active_version_index]

    @property
    def has_image(self) -> bool:
        return self.generation_status == GenerationStatus.IDLE and bool(self.image_versions)

    def to_image_source(self) -> ImageSource:
        url = self.active_image_url
        if not url:
            raise ValueError(f"Frame {self.id} has no image")
        return ImageSource(kind=ImageKind.FRAME, url=url, id=self.id)


class Sketch(BaseModel):
    """A target that is not (yet) part of the frame sequence."""
    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    id: str = Field(default_factory=lambda: f"sketch-{uuid.uuid4()}")
    image_url: Optional[str] = None
    data: Optional[bytes] = None
    mime_type: Optional[str] = None
    source_hash: Optional[str] = None
    kind: ImageKind = ImageKind.SKETCH

    def to_image_source(self) -> ImageSource:
        return ImageSource(
            kind=self.kind,
            url=self.image_url,
            data=self.data,
            mime_type=self.mime_type,
            id=self.id,
        )


class Dossier(BaseModel):
    """Consistency anchor: a recurring character, object or location."""
    source_hash: str
    type: SubjectType = SubjectType.CHARACTER
    role_label: str
    description: str = ""
    reference_image_url: str
    last_used: float = Field(default_factory=_now_ms, description="epoch milliseconds")


# Order in which brief fields are tried when choosing the human-facing prompt.
DISPLAY_PROMPT_SOURCES = ("video_prompt", "scene_action", "visual_description")


class AnalysisBrief(BaseModel):
    """
    Director output.

    Narrative fields are in the story language; visual_description is the
    technical English prompt for the image model; video_prompt is the
    human/video-facing action description.
    """
    model_config = ConfigDict(extra="ignore")

    story_style: str
    world_rules: Optional[str] = None
    subject_type: SubjectType
    role_label: str
    subject_identity: str
    transformation: str
    narrative_position: Optional[str] = None
    scene_action: Optional[str] = None
    visual_anchor_index: Optional[int] = None
    visual_description: str = Field(min_length=1)
    video_prompt: str

    @field_validator("role_label")
    @classmethod
    def _label_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("role_label must not be blank")
        return v.strip()

    def display_prompt(self) -> str:
        """First non-blank field from DISPLAY_PROMPT_SOURCES."""
        for field_name in DISPLAY_PROMPT_SOURCES:
            value = getattr(self, field_name)
            if value and value.strip():
                return value.strip()
        return ""


class StyleContext(BaseModel):
    """Context Assembler output."""
    style_references: List[Frame] = Field(default_factory=list)
    identity_anchor: Optional[Dossier] = None


class AdaptationResult(BaseModel):
    """Successful pipeline output."""
    image: ImagePayload
    display_prompt: str
    brief: AnalysisBrief
    new_dossier: Optional[Dossier] = None


class SubjectAnalysis(BaseModel):
    """What an integrated asset is: classification, short label, look."""
    model_config = ConfigDict(extra="ignore")

    type: SubjectType = SubjectType.OBJECT
    role_label: str
    description: str = ""


class IntegrationResult(BaseModel):
    """Asset placed into an existing frame."""
    image: ImagePayload
    prompt: str
    analysis: SubjectAnalysis
    new_dossier: Optional[Dossier] = None


class StorySettings(BaseModel):
    """User direction for a story built from assets."""
    genre: str = ""
    ending: str = ""
    prompt: str = ""


class StoryIdea(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str
    synopsis: str = ""


class StoryUpdate(BaseModel):
    """One event of create_story_from_assets: a progress line or a finished frame."""
    type: Literal["progress", "frame"]
    message: Optional[str] = None
    index: Optional[int] = None
    frame: Optional[Frame] = None


class ProgressEvent(BaseModel):
    """Display-only progress notification."""
    stage: PipelineState
    message: str
    timestamp: float = Field(default_factory=time.time)


class ModelSettings(BaseModel):
    """Model names per role"""
    analysis_model: str = "gemini-3-pro-preview"
    generation_model: str = "imagen-4.0-generate-001"
    editing_model: str = "gemini-2.5-flash-image"
    prompt_model: str = "gemini-2.5-flash"


class StoryProject(BaseModel):
    """Serialized story: frames plus the dossiers that belong to them."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = "Untitled"
    frames: List[Frame] = Field(default_factory=list)
    dossiers: List[Dossier] = Field(default_factory=list)
    last_modified: float = Field(default_factory=_now_ms)
