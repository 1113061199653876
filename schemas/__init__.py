"""
FRAMEFORGE Data Models (Pydantic Schemas)
"""

from .models import (
    MIN_FRAME_DURATION,
    DISPLAY_PROMPT_SOURCES,
    AspectRatio,
    GenerationStatus,
    SubjectType,
    ImageKind,
    PipelineState,
    ImagePayload,
    ImageSource,
    Frame,
    Sketch,
    Dossier,
    AnalysisBrief,
    StyleContext,
    AdaptationResult,
    SubjectAnalysis,
    IntegrationResult,
    StorySettings,
    StoryIdea,
    StoryUpdate,
    ProgressEvent,
    ModelSettings,
    StoryProject,
)

__all__ = [
    "MIN_FRAME_DURATION",
    "DISPLAY_PROMPT_SOURCES",
    "AspectRatio",
    "GenerationStatus",
    "SubjectType",
    "ImageKind",
    "PipelineState",
    "ImagePayload",
    "ImageSource",
    "Frame",
    "Sketch",
    "Dossier",
    "AnalysisBrief",
    "StyleContext",
    "AdaptationResult",
    "SubjectAnalysis",
    "IntegrationResult",
    "StorySettings",
    "StoryIdea",
    "StoryUpdate",
    "ProgressEvent",
    "ModelSettings",
    "StoryProject",
]
