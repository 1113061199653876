"""
Prompt Agent: single-call helpers around frames that are not adaptations.

- generate_single_prompt: display prompt for one frame, aware of its neighbours
- analyze_story: one display prompt per frame, in sequence order
- generate_from_prompt: text-only image generation
- edit_frame: image edit + regenerated prompt
- generate_in_context: new image between two frames + prompt
- adapt_aspect_ratio: letterbox, then ask the editing model to fill the bars
- integrate_asset: place an asset into a frame, reusing its dossier when known
- create_story_from_assets: script + frame-by-frame generation, as a generator
- generate_story_ideas / generate_prompt_suggestions / generate_integration_suggestions

No retries; failures surface as AnalysisError / SynthesisError.
"""

from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from schemas import (
    AspectRatio,
    Dossier,
    Frame,
    ImagePayload,
    IntegrationResult,
    StoryIdea,
    StorySettings,
    StoryUpdate,
    SubjectAnalysis,
)
from agents.artist_agent import load_anchor_image
from agents.director_agent import ImageLike, as_payload, load_optional
from utils.errors import AnalysisError, SynthesisError, classify_api_error
from utils.image_source import letterbox_to_ratio
from utils.llm_utils import parse_llm_json
from utils.logger import get_logger

logger = get_logger("prompt_agent")


PROMPT_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "prompt": {"type": "STRING", "description": "Video generation prompt in the story language."},
    },
    "required": ["prompt"],
}

STORY_PROMPTS_SCHEMA: Dict[str, Any] = {
    "type": "ARRAY",
    "items": {"type": "STRING"},
}

SUBJECT_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "type": {"type": "STRING", "enum": ["character", "object", "location"]},
        "role_label": {"type": "STRING", "description": "Short label, 2-3 words."},
        "description": {"type": "STRING", "description": "Visual description of the subject."},
    },
    "required": ["type", "role_label", "description"],
}

STORY_IDEAS_SCHEMA: Dict[str, Any] = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "title": {"type": "STRING"},
            "synopsis": {"type": "STRING"},
        },
        "required": ["title", "synopsis"],
    },
}

# story ideas only look at the first few assets
MAX_IDEA_ASSETS = 5


class PromptAgent:
    """
    프롬프트 / 편집 에이전트
    """

    def __init__(
        self,
        capability,
        prompt_model: str = "gemini-2.5-flash",
        analysis_model: str = "gemini-3-pro-preview",
        editing_model: str = "gemini-2.5-flash-image",
        generation_model: str = "imagen-4.0-generate-001",
        language: str = "Russian",
    ):
        self.capability = capability
        self.prompt_model = prompt_model
        self.analysis_model = analysis_model
        self.editing_model = editing_model
        self.generation_model = generation_model
        self.language = language

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    def generate_single_prompt(self, frame: Frame, frames: Sequence[Frame]) -> str:
        """
        Describe one frame for video generation.

        Args:
            frame: frame to describe (must have an image)
            frames: whole sequence; the neighbours' prompts are used as context

        Returns:
            Display prompt sized to the frame's duration
        """
        index = next((i for i, f in enumerate(frames) if f.id == frame.id), -1)
        prev_frame = frames[index - 1] if index > 0 else None
        next_frame = frames[index + 1] if 0 <= index < len(frames) - 1 else None

        text = (
            "You are writing a video prompt for one frame of a larger storyboard.\n"
            f"Current frame duration: {frame.duration:.2f} seconds. "
            "The prompt complexity must fit this duration."
        )
        if prev_frame is not None and prev_frame.prompt:
            text += f'\nPrevious frame prompt: "{prev_frame.prompt}"'
        if next_frame is not None and next_frame.prompt:
            text += f'\nNext frame prompt: "{next_frame.prompt}"'
        text += (
            "\n\nBased on this context, describe the attached image as a video generation prompt. "
            "Focus on action, camera movement and mood so the transition between frames is smooth. "
            f"Write the prompt in {self.language}."
        )

        parts = [{"text": text}, as_payload(frame).to_part()]
        return self._generate_prompt(parts, self.prompt_model)

    def analyze_story(self, frames: Sequence[Frame]) -> List[str]:
        """
        One prompt per frame, in order.

        Raises:
            AnalysisError: the response is not a JSON array of strings of the right length
        """
        if not frames:
            return []

        durations = ", ".join(f"{f.duration:.2f}s" for f in frames)
        text = (
            "Analyze this sequence of storyboard images. Understand the plot, the character "
            "development and the visual style. For each image write a short, descriptive prompt "
            "for a video generation model: a direct instruction focused on action, camera "
            "movement and mood.\n\n"
            f"Prompt complexity must match the frame duration. Durations in order: {durations}.\n\n"
            "Return ONLY a JSON array of strings, one per image in the given order. "
            f"All prompts must be in {self.language}."
        )
        parts: List[Dict[str, Any]] = [{"text": text}]
        parts.extend(as_payload(f).to_part() for f in frames)

        raw = self._structured(parts, STORY_PROMPTS_SCHEMA, self.analysis_model)
        try:
            prompts = parse_llm_json(raw)
        except ValueError as e:
            raise AnalysisError(f"Story analysis returned non-JSON payload: {e}", cause=e)

        if not isinstance(prompts, list) or not all(isinstance(p, str) for p in prompts):
            raise AnalysisError("Story analysis did not return a JSON array of strings")
        if len(prompts) != len(frames):
            raise AnalysisError(f"Story analysis returned {len(prompts)} prompts for {len(frames)} frames")

        logger.info(f"[Prompt] Story analyzed: {len(prompts)} prompts")
        return prompts

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def generate_from_prompt(self, prompt: str, aspect_ratio: AspectRatio = AspectRatio.WIDE) -> ImagePayload:
        """Text-only generation with the configured generation model."""
        try:
            images = self.capability.text_to_image(prompt, aspect_ratio.value, self.generation_model)
        except Exception as e:
            raise classify_api_error(e, SynthesisError, f"Image generation call failed: {e}")
        return self._first_image(images, "No image was generated by the model")

    def edit_frame(self, frame: Frame, instruction: str) -> Tuple[ImagePayload, str]:
        """
        Apply a free-text edit to the frame's active image.

        Returns:
            (edited image, new prompt); the prompt falls back to
            "<old prompt>, <instruction>" when the model returns none
        """
        parts = [{"text": instruction}, as_payload(frame).to_part()]
        image = self._render(parts, "Failed to generate an edited image")

        prompt_text = (
            f'Analyze this image. Original prompt: "{frame.prompt}". Edit: "{instruction}". '
            f"Write a new short prompt in {self.language}."
        )
        prompt = self._generate_prompt([{"text": prompt_text}, image.to_part()], self.prompt_model)
        if not prompt:
            prompt = f"{frame.prompt}, {instruction}" if frame.prompt else instruction
        return image, prompt

    def generate_in_context(
        self,
        prompt: str,
        left: Optional[Frame] = None,
        right: Optional[Frame] = None,
        current: Optional[Frame] = None,
    ) -> Tuple[ImagePayload, str]:
        """
        Generate a frame that fits between `left` and `right`.

        `current` (optional) is refined rather than replaced. Unloadable
        context frames are skipped.
        """
        text = f'You are a storyboard artist. Create a new image based on the prompt and context. User prompt: "{prompt}".'
        images: List[Dict[str, Any]] = []

        if current is not None:
            payload = load_optional(current, "InContext")
            if payload is not None:
                images.append(payload.to_part())
                text += "\n\n[IDENTITY REFERENCE] This image is the reference for the subject/composition. Refine it based on the prompt."

        text += "\n\n[STYLE REFERENCE] Match the visual style of these context frames:"
        for frame, label in ((left, "[CONTEXT LEFT] Previous frame."), (right, "[CONTEXT RIGHT] Next frame.")):
            if frame is None:
                continue
            payload = load_optional(frame, "InContext")
            if payload is not None:
                images.append(payload.to_part())
                text += f"\n{label}"

        image = self._render([{"text": text}] + images, "Failed to generate image")

        describe = (
            f"Describe this image as a video generation prompt in {self.language}. "
            'Return JSON with a "prompt" field.'
        )
        new_prompt = self._generate_prompt([{"text": describe}, image.to_part()], self.prompt_model)
        return image, new_prompt or prompt

    def regenerate_frame(self, frame: Frame, frames: Sequence[Frame]) -> Tuple[ImagePayload, str]:
        """Re-render a frame from its own prompt with its immediate neighbours as style context."""
        index = next((i for i, f in enumerate(frames) if f.id == frame.id), -1)
        left = frames[index - 1] if index > 0 else None
        right = frames[index + 1] if 0 <= index < len(frames) - 1 else None
        return self.generate_in_context(frame.prompt, left, right, frame)

    def adapt_aspect_ratio(self, frame: Frame, ratio: AspectRatio) -> Tuple[ImagePayload, str]:
        """
        Letterbox the frame to `ratio`, then have the editing model fill the bars.

        Returns:
            (new image, unchanged frame prompt)
        """
        boxed = letterbox_to_ratio(as_payload(frame), ratio)
        text = (
            f"This image has been letterboxed to aspect ratio {ratio.value}. "
            "Fill the black areas by extending the scene naturally; keep the main subject and "
            f"composition unchanged. Prompt: {frame.prompt}"
        )
        image = self._render([{"text": text}, boxed.to_part()], "Failed to resize image")
        return image, frame.prompt

    # ------------------------------------------------------------------
    # Assets
    # ------------------------------------------------------------------

    def integrate_asset(
        self,
        source: ImageLike,
        target: Frame,
        instruction: str,
        mode: str = "",
        existing_dossier: Optional[Dossier] = None,
        source_hash: Optional[str] = None,
    ) -> IntegrationResult:
        """
        Place a source asset into an existing frame.

        A known dossier replaces the analysis call and its reference image
        is sent along so the subject keeps its look.

        Args:
            source: asset to integrate
            target: frame that serves as the canvas
            instruction: what the user wants done with the asset
            mode: free-form integration mode ("replace", "add", ...)
            existing_dossier: dossier for the asset, if one is registered
            source_hash: content hash of the asset; with no dossier, a new
                one is proposed for it (the caller registers it)

        Returns:
            IntegrationResult
        """
        source_image = as_payload(source)
        target_image = as_payload(target)

        if existing_dossier is not None:
            analysis = SubjectAnalysis(
                type=existing_dossier.type,
                role_label=existing_dossier.role_label,
                description=existing_dossier.description,
            )
        else:
            analysis = self._analyze_subject(source_image)

        text = (
            "INTEGRATION TASK:\n"
            f"Source: {analysis.role_label} ({analysis.description}).\n"
            "Target: a storyboard frame (the first image is the canvas).\n"
            f"Instruction: {instruction}.\n"
            f"Mode: {mode or 'auto'}."
        )
        images = [target_image.to_part(), source_image.to_part()]
        if existing_dossier is not None:
            text += "\nIMPORTANT CONSISTENCY: The source subject MUST look exactly like the dossier reference image (last image)."
            images.append(load_anchor_image(existing_dossier).to_part())

        image = self._render([{"text": text}] + images, "Integration failed: no image was generated")
        logger.info(f"[Prompt] Integrated '{analysis.role_label}' into frame {target.id}")

        new_dossier = None
        if existing_dossier is None and source_hash:
            new_dossier = Dossier(
                source_hash=source_hash,
                type=analysis.type,
                role_label=analysis.role_label,
                description=analysis.description,
                reference_image_url=source_image.to_data_url(),
            )

        return IntegrationResult(
            image=image,
            prompt=f"{target.prompt} (Integrated: {analysis.role_label})",
            analysis=analysis,
            new_dossier=new_dossier,
        )

    def create_story_from_assets(
        self,
        assets: Sequence[ImageLike],
        settings: StorySettings,
        frame_count: int,
    ) -> Iterator[StoryUpdate]:
        """
        에셋으로부터 스토리보드 생성

        Writes a script of `frame_count` prompts, then renders each frame with
        the previous one as style context. Yields progress lines and finished
        frames as they happen.

        A frame that fails for a content reason is logged and skipped; quota,
        availability and key errors stop the generator, since every later
        frame would fail the same way.
        """
        if frame_count < 1 or not assets:
            return

        yield StoryUpdate(type="progress", message="Анализ ассетов...")
        asset_parts = [as_payload(a).to_part() for a in assets]

        yield StoryUpdate(type="progress", message="Создание сценария...")
        text = (
            "Analyze these images. Identify characters, locations and objects, then write a storyboard "
            f'script for a story with genre "{settings.genre or "General"}", ending '
            f'"{settings.ending or "Happy"}" and user idea "{settings.prompt}".\n'
            f"The script has exactly {frame_count} frames. For each frame write one visual description "
            f"prompt in {self.language}. Return ONLY a JSON array of strings."
        )
        prompts = self._string_list(
            self._structured([{"text": text}] + asset_parts, STORY_PROMPTS_SCHEMA, self.analysis_model),
            "Story script",
        )
        total = min(len(prompts), frame_count)
        logger.info(f"[Prompt] Story script: {len(prompts)} prompts, rendering {total}")

        prev_frame: Optional[Frame] = None
        for i in range(total):
            yield StoryUpdate(type="progress", message=f"Генерация кадра {i + 1}/{total}...", index=i)
            try:
                image, prompt = self.generate_in_context(prompts[i], left=prev_frame)
            except (AnalysisError, SynthesisError) as e:
                if e.recoverable:
                    raise
                logger.warning(f"[Prompt] Story frame {i + 1} skipped: {e.message}")
                continue

            frame = Frame(image_versions=[image.to_data_url()], prompt=prompt)
            prev_frame = frame
            yield StoryUpdate(type="frame", index=i, frame=frame)

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------

    def generate_story_ideas(self, assets: Sequence[ImageLike], settings: StorySettings) -> List[StoryIdea]:
        """Three title + synopsis ideas from up to five assets."""
        text = (
            "Generate 3 story ideas based on these images. "
            f"Genre: {settings.genre or 'General'}. User idea: {settings.prompt}. "
            f"Return a JSON array of objects with 'title' and 'synopsis' in {self.language}."
        )
        parts: List[Dict[str, Any]] = [{"text": text}]
        parts.extend(as_payload(a).to_part() for a in list(assets)[:MAX_IDEA_ASSETS])

        raw = self._structured(parts, STORY_IDEAS_SCHEMA, self.analysis_model)
        try:
            data = parse_llm_json(raw)
        except ValueError as e:
            raise AnalysisError(f"Story ideas were not JSON: {e}", cause=e)
        if not isinstance(data, list):
            raise AnalysisError("Story ideas were not a JSON array")
        try:
            return [StoryIdea.model_validate(item) for item in data]
        except ValidationError as e:
            raise AnalysisError(f"Story idea missing required fields: {e}", cause=e)

    def generate_prompt_suggestions(self, left: Optional[Frame] = None, right: Optional[Frame] = None) -> List[str]:
        """Four prompt ideas for a frame between `left` and `right` (either may be None)."""
        text = f"Generate 4 distinct prompt ideas for a storyboard frame in {self.language}."
        images: List[Dict[str, Any]] = []
        for frame, hint in ((left, "It should follow the previous frame."), (right, "It should lead into the next frame.")):
            if frame is None:
                continue
            payload = load_optional(frame, "Suggest")
            if payload is not None:
                images.append(payload.to_part())
                text += f" {hint}"
        text += " Return a JSON array of strings."

        raw = self._structured([{"text": text}] + images, STORY_PROMPTS_SCHEMA, self.analysis_model)
        return self._string_list(raw, "Prompt suggestions")

    def generate_integration_suggestions(self, source: ImageLike, target: Frame, mode: str = "") -> List[str]:
        """Four ways to integrate `source` into `target`."""
        text = (
            f"Suggest 4 ways to integrate the source object (first image) into the target scene "
            f"(second image) in {self.language}. Mode: {mode or 'auto'}. Return a JSON array of strings."
        )
        parts = [{"text": text}, as_payload(source).to_part(), as_payload(target).to_part()]
        raw = self._structured(parts, STORY_PROMPTS_SCHEMA, self.analysis_model)
        return self._string_list(raw, "Integration suggestions")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _structured(self, parts: List[Dict[str, Any]], schema: Dict[str, Any], model: str) -> str:
        try:
            return self.capability.structured_generate(parts, schema, model)
        except Exception as e:
            raise classify_api_error(e, AnalysisError, f"Prompt call failed: {e}")

    def _generate_prompt(self, parts: List[Dict[str, Any]], model: str) -> str:
        raw = self._structured(parts, PROMPT_SCHEMA, model)
        try:
            data = parse_llm_json(raw)
        except ValueError as e:
            raise AnalysisError(f"Prompt response was not JSON: {e}", cause=e)
        if not isinstance(data, dict):
            raise AnalysisError(f"Prompt response was {type(data).__name__}, expected an object")
        prompt = data.get("prompt") or ""
        if not isinstance(prompt, str):
            raise AnalysisError("Prompt response field 'prompt' is not a string")
        return prompt.strip()

    def _render(self, parts: List[Dict[str, Any]], failure: str) -> ImagePayload:
        try:
            images = self.capability.image_generate(parts, self.editing_model)
        except Exception as e:
            raise classify_api_error(e, SynthesisError, f"Image generation call failed: {e}")
        return self._first_image(images, failure)

    def _analyze_subject(self, image: ImagePayload) -> SubjectAnalysis:
        text = (
            "Analyze this image (source asset). Identify if it is a character, an object or a location. "
            f"Give it a short label (2-3 words) and a visual description. Language: {self.language}."
        )
        raw = self._structured([{"text": text}, image.to_part()], SUBJECT_SCHEMA, self.analysis_model)
        try:
            data = parse_llm_json(raw)
        except ValueError as e:
            raise AnalysisError(f"Asset analysis returned non-JSON payload: {e}", cause=e)
        try:
            return SubjectAnalysis.model_validate(data)
        except ValidationError as e:
            raise AnalysisError(f"Asset analysis missing required fields: {e}", cause=e)

    @staticmethod
    def _string_list(raw: str, what: str) -> List[str]:
        try:
            data = parse_llm_json(raw)
        except ValueError as e:
            raise AnalysisError(f"{what} returned non-JSON payload: {e}", cause=e)
        if not isinstance(data, list) or not all(isinstance(p, str) for p in data):
            raise AnalysisError(f"{what} did not return a JSON array of strings")
        return data

    @staticmethod
    def _first_image(images: Optional[List[ImagePayload]], failure: str) -> ImagePayload:
        if not images or not images[0].data:
            raise SynthesisError(failure)
        return images[0]
