"""
Artist Agent: synthesis stage of the adaptation pipeline.

Builds ONE multimodal request from the Director's brief:
1. instruction text (brief fields + reference scopes)
2. STYLE REFERENCE images: rendering style only, content ignored
3. IDENTITY REFERENCE (target): face/key traits only, pose ignored
4. VISUAL ANCHOR (dossier reference, optional): highest-priority identity
   constraint; pose may differ, appearance may not

The first inline image of the response is the result. No image means
SynthesisError; there is no fallback.
"""

from typing import Any, Dict, List, Optional, Sequence

from schemas import AnalysisBrief, Dossier, ImagePayload, ImageSource
from agents.director_agent import ImageLike, as_payload, load_optional
from utils.errors import ContextError, SynthesisError, classify_api_error
from utils.image_source import load_image_bytes
from utils.logger import get_logger

logger = get_logger("artist_agent")


def load_anchor_image(identity_anchor) -> Optional[ImagePayload]:
    """
    Dossier / ImagePayload / Frame -> ImagePayload.

    An anchor that cannot be loaded is a ContextError, never a silent drop.
    """
    if identity_anchor is None:
        return None
    if isinstance(identity_anchor, ImagePayload):
        return identity_anchor
    if isinstance(identity_anchor, Dossier):
        try:
            return load_image_bytes(ImageSource.raw(identity_anchor.reference_image_url))
        except ContextError as e:
            raise ContextError(
                f"Visual anchor for '{identity_anchor.role_label}' could not be loaded: {e.message}",
                cause=e,
            )
    return as_payload(identity_anchor)


class ArtistAgent:
    """
    아티스트 에이전트 (이미지 합성 단계)
    """

    def __init__(self, capability, model: str = "gemini-2.5-flash-image"):
        """
        Args:
            capability: GenerativeCapability (image_generate)
            model: editing / image model name
        """
        self.capability = capability
        self.model = model

    def synthesize(
        self,
        brief: AnalysisBrief,
        target: ImageLike,
        style_references: Sequence[ImageLike],
        identity_anchor: Optional[Any] = None,
    ) -> ImagePayload:
        """
        Render the new frame.

        Args:
            brief: validated Director brief
            target: subject image (identity reference)
            style_references: neighbouring frames (style only)
            identity_anchor: Dossier or already-loaded ImagePayload of its reference image

        Returns:
            First inline image of the response

        Raises:
            ContextError: target or anchor image cannot be loaded
            SynthesisError: call failed, timed out or returned no image
        """
        parts = self.build_parts(brief, target, style_references, identity_anchor)

        logger.info(
            f"[Artist] Synthesizing '{brief.role_label}' "
            f"(style refs={len(style_references)}, anchor={'yes' if identity_anchor is not None else 'no'})"
        )
        try:
            images = self.capability.image_generate(parts, self.model)
        except Exception as e:
            raise classify_api_error(e, SynthesisError, f"Image generation call failed: {e}")

        if not images:
            raise SynthesisError("Artist failed to generate image: response contained no inline image")

        image = images[0]
        if not image.data:
            raise SynthesisError("Artist failed to generate image: inline image payload was empty")

        logger.info(f"[Artist] Image received ({image.mime_type}, {len(image.data)} bytes)")
        return image

    def build_parts(
        self,
        brief: AnalysisBrief,
        target: ImageLike,
        style_references: Sequence[ImageLike],
        identity_anchor: Optional[Any] = None,
    ) -> List[Dict[str, Any]]:
        """Prompt text first, then style images, target image, anchor image."""
        image_parts: List[Dict[str, Any]] = []

        for ref in style_references:
            payload = load_optional(ref, "Artist")
            if payload is not None:
                image_parts.append(payload.to_part())

        image_parts.append(as_payload(target).to_part())

        anchor_payload = load_anchor_image(identity_anchor)
        if anchor_payload is not None:
            image_parts.append(anchor_payload.to_part())

        prompt = self._build_prompt(brief, anchor_payload is not None)
        return [{"text": prompt}] + image_parts

    @staticmethod
    def _build_prompt(brief: AnalysisBrief, has_anchor: bool) -> str:
        prompt = f"""
YOU ARE THE ARTIST. Create an image strictly following the Director's instructions and the references.

--- DIRECTOR'S INSTRUCTIONS ---
STORY STYLE: {brief.story_style}
SUBJECT TRANSFORMATION: {brief.transformation}
FRAME SCRIPT: {brief.visual_description}

--- REFERENCE CATEGORIES (images follow in this order) ---
"""
        prompt += """
1. STYLE REFERENCE (rendering style):
Use the first images ONLY to copy the style (stroke, colors, rendering). IGNORE their content."""

        prompt += f"""

2. IDENTITY REFERENCE (subject identity):
Use the next image ONLY for the face and key traits of the subject ({brief.subject_identity}).
IMPORTANT:
- The face and key traits MUST REMAIN RECOGNIZABLE.
- Transform the style according to the story style.
- DO NOT copy the pose; use the pose from the frame script."""

        if has_anchor:
            prompt += """

3. VISUAL ANCHOR (consistency anchor, last image):
CRITICAL: the subject must look IDENTICAL to this reference (clothing, face, details), but in a new pose.
This overrides the identity reference wherever they disagree."""

        prompt += "\n\nGENERATION: create the final high-quality image."
        return prompt
