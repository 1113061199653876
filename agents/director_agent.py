"""
Director Agent: analysis stage of the adaptation pipeline.

Looks at the target (subject) and its neighbouring frames (style context)
and returns a schema-validated AnalysisBrief. One structured-generation call
produces both prompts:
- visual_description: technical English prompt for the image model
- video_prompt: action/camera description in the story language

A payload that does not match ANALYSIS_SCHEMA is a hard AnalysisError. The
Director never retries; that is the caller's decision.
"""

from typing import Any, Dict, List, Optional, Sequence, Union

from pydantic import ValidationError

from schemas import AnalysisBrief, Dossier, Frame, ImagePayload, Sketch
from utils.errors import AnalysisError, ContextError, classify_api_error
from utils.image_source import load_image_bytes
from utils.llm_utils import parse_llm_json
from utils.logger import get_logger

logger = get_logger("director_agent")

ImageLike = Union[Frame, Sketch, ImagePayload]


ANALYSIS_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "story_style": {"type": "STRING", "description": "Visual style of the whole story (story language)."},
        "world_rules": {"type": "STRING", "description": "Who inhabits the world and how they look (story language)."},
        "subject_type": {"type": "STRING", "enum": ["character", "object", "location"]},
        "role_label": {"type": "STRING", "description": "Short subject label, 2-3 words (story language)."},
        "subject_identity": {"type": "STRING", "description": "Recognizable traits: face/shape, colors, clothing/details (story language)."},
        "transformation": {"type": "STRING", "description": "How the subject must change to fit the world (story language)."},
        "narrative_position": {"type": "STRING", "description": "What happens in the story at the insertion point (story language)."},
        "scene_action": {"type": "STRING", "description": "Concrete action for the new frame (story language)."},
        "visual_anchor_index": {"type": "NUMBER", "nullable": True},
        "visual_description": {"type": "STRING", "description": "Technical visual description for the image model. MUST BE IN ENGLISH."},
        "video_prompt": {"type": "STRING", "description": "Camera movement and scene action for video generation (story language). No style buzzwords."},
    },
    "required": [
        "story_style",
        "subject_type",
        "role_label",
        "subject_identity",
        "transformation",
        "visual_description",
        "video_prompt",
    ],
}


def as_payload(image: ImageLike) -> ImagePayload:
    """Frame / Sketch / ImagePayload -> ImagePayload."""
    if isinstance(image, ImagePayload):
        return image
    try:
        source = image.to_image_source()
    except (ValueError, ValidationError) as e:
        raise ContextError(f"{type(image).__name__} {getattr(image, 'id', '')} has no usable image: {e}", cause=e)
    return load_image_bytes(source)


def load_optional(image: ImageLike, label: str) -> Optional[ImagePayload]:
    """Like as_payload, but logs and returns None on failure."""
    try:
        return as_payload(image)
    except ContextError as e:
        logger.warning(f"  [{label}] skipped unloadable image: {e.message}")
        return None


class DirectorAgent:
    """
    감독 에이전트 (분석 단계)

    Plans how the target is integrated into the story: style, subject
    classification, transformation, narrative placement and the two prompts.
    """

    def __init__(self, capability, model: str = "gemini-3-pro-preview", language: str = "Russian"):
        """
        Args:
            capability: GenerativeCapability (structured_generate)
            model: analysis model name
            language: story language for every narrative field
        """
        self.capability = capability
        self.model = model
        self.language = language

    def analyze(
        self,
        target: ImageLike,
        style_references: Sequence[ImageLike],
        instruction: str,
        known_dossier: Optional[Dossier] = None,
    ) -> AnalysisBrief:
        """
        Run the analysis call.

        Args:
            target: subject image
            style_references: neighbouring frames (style context)
            instruction: free-text user instruction
            known_dossier: previously established identity of this subject

        Returns:
            Validated AnalysisBrief

        Raises:
            ContextError: target image cannot be loaded
            AnalysisError: call failed, timed out or returned a non-conforming payload
        """
        parts = self.build_parts(target, style_references, instruction, known_dossier)

        logger.info(f"[Director] Analyzing target with {len(style_references)} style refs (model={self.model})")
        try:
            raw = self.capability.structured_generate(parts, ANALYSIS_SCHEMA, self.model)
        except Exception as e:
            raise classify_api_error(e, AnalysisError, f"Analysis call failed: {e}")

        brief = self.parse_brief(raw)

        if known_dossier is not None:
            brief = self._pin_identity(brief, known_dossier)

        logger.info(f"[Director] Brief: {brief.subject_type.value} '{brief.role_label}'")
        return brief

    def build_parts(
        self,
        target: ImageLike,
        style_references: Sequence[ImageLike],
        instruction: str,
        known_dossier: Optional[Dossier] = None,
    ) -> List[Dict[str, Any]]:
        parts: List[Dict[str, Any]] = [{"text": self._build_system_prompt(known_dossier)}]

        parts.append(as_payload(target).to_part())
        parts.append({"text": "[TARGET IMAGE / SUBJECT] The image to adapt (main character/object)."})

        added = 0
        for ref in style_references:
            payload = load_optional(ref, "Director")
            if payload is None:
                continue
            added += 1
            parts.append(payload.to_part())
            parts.append({"text": f"[CONTEXT FRAME / STYLE REF {added}] Neighbouring frame of the story."})
        if added == 0:
            parts.append({"text": "[NO CONTEXT] This is the first frame of the story."})

        parts.append({"text": f'Additional user instruction: "{(instruction or "").strip()}"'})
        return parts

    @staticmethod
    def parse_brief(raw: str) -> AnalysisBrief:
        """JSON text -> AnalysisBrief, or AnalysisError."""
        try:
            data = parse_llm_json(raw)
        except ValueError as e:
            raise AnalysisError(f"Director returned non-JSON payload: {e}", cause=e)
        if not isinstance(data, dict):
            raise AnalysisError(f"Director returned {type(data).__name__}, expected an object")

        missing = [k for k in ANALYSIS_SCHEMA["required"] if data.get(k) is None]
        if missing:
            raise AnalysisError(f"Director payload missing required fields: {', '.join(missing)}")

        try:
            return AnalysisBrief.model_validate(data)
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            raise AnalysisError(f"Director payload failed schema validation ({fields})", cause=e)

    @staticmethod
    def _pin_identity(brief: AnalysisBrief, dossier: Dossier) -> AnalysisBrief:
        if brief.role_label != dossier.role_label or brief.subject_type != dossier.type:
            logger.info(
                f"[Director] Keeping known identity '{dossier.role_label}' "
                f"(model proposed '{brief.role_label}')"
            )
        return brief.model_copy(update={"role_label": dossier.role_label, "subject_type": dossier.type})

    def _build_system_prompt(self, known_dossier: Optional[Dossier]) -> str:
        lang = self.language
        if known_dossier is not None:
            known_block = (
                f'ATTENTION: this subject is already known as "{known_dossier.role_label}" '
                f"({known_dossier.type.value}). Known appearance: {known_dossier.description or 'n/a'}. "
                "Reuse this role_label verbatim and describe the same identity; do not re-derive it."
            )
            anchor_block = "Visual anchor found: the subject is identified."
        else:
            known_block = ""
            anchor_block = "Check whether a visual anchor is needed; set visual_anchor_index to null if not."

        return f"""
ROLE: You are the DIRECTOR. Analyze the visual material and plan a seamless integration of a new frame into the story.

STEPS:

1. STORY WORLD (from the context frames)
   - Visual style (2D/3D, cartoon, realism, technique).
   - World rules (who lives there, physics, anatomy).

2. SUBJECT CLASSIFICATION (from the target image)
   - Type: [character | object | location]
   - Key traits (face, clothing, colors, shape).
   - Role label (2-3 words).
   {known_block}

3. ONTOLOGICAL TRANSFORMATION
   - If the world rules differ from the subject, describe how to transform it (human -> animal, photo -> drawing).
   - KEEP: color palette, recognizable details, personality.

4. NARRATIVE LOGIC
   - Where is the frame inserted? What came BEFORE (see context frames)?
   - If the subject cannot physically be here, use a cinematic device (cross-cutting, flashback, reaction shot).

5. ACTION
   - Invent a logical action connecting the frames and a composition for it.

6. VISUAL ANCHORS
   {anchor_block}

7. PROMPTS (FINAL)
   Produce TWO different prompts:
   - "visual_description" (for the image model): technical description of style, lighting, textures. Write it in ENGLISH.
   - "video_prompt" (for the video model): ACTION and CAMERA MOVEMENT only, no "8k"/"best quality". Write it in {lang.upper()}.

OUTPUT: JSON with exactly the required structure.
- Every text field (role_label, subject_identity, transformation, narrative_position, scene_action, video_prompt, story_style, world_rules) MUST be in {lang}.
- Only "visual_description" is in ENGLISH.
"""
