"""
Generative capability: the two calls the pipeline needs from a model backend.

- structured_generate: images + text -> JSON text constrained by a response schema
- image_generate: images + text -> inline image payloads

GenerativeCapability is the swappable interface; GeminiCapability implements
it with the official google-genai SDK.
"""

import base64
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from schemas import ImagePayload
from utils.logger import get_logger

logger = get_logger("gemini_capability")


class GenerativeCapability(ABC):
    """Abstract generative backend. Swap implementations without changing the pipeline."""

    @abstractmethod
    def structured_generate(self, parts: List[Dict[str, Any]], schema: Dict[str, Any], model: str) -> str:
        """Return the raw JSON text produced under `schema`."""
        ...

    @abstractmethod
    def image_generate(self, parts: List[Dict[str, Any]], model: str) -> List[ImagePayload]:
        """Return every inline image in the response, in order. Text parts are dropped."""
        ...

    def text_to_image(self, prompt: str, aspect_ratio: str, model: str) -> List[ImagePayload]:
        """Prompt-only generation. Default: route through image_generate."""
        return self.image_generate(
            [{"text": f"Generate an image: {prompt}. Aspect ratio: {aspect_ratio}"}],
            model,
        )

    def name(self) -> str:
        return type(self).__name__


class GeminiCapability(GenerativeCapability):
    """google-genai backed capability."""

    def __init__(self, api_key: Optional[str] = None, timeout_sec: Optional[float] = None):
        """
        Args:
            api_key: Google API key (default: GOOGLE_API_KEY / GEMINI_API_KEY)
            timeout_sec: HTTP timeout applied to every request
        """
        if api_key is None:
            from config import get_google_api_key
            api_key = get_google_api_key()
        self.api_key = api_key
        self.timeout_sec = timeout_sec
        self._client = None

    @property
    def client(self):
        """Lazy initialization of the google-genai client."""
        if self._client is None:
            if not self.api_key:
                raise RuntimeError("Google API key not configured (set GOOGLE_API_KEY)")
            from google import genai
            from google.genai import types

            http_options = None
            if self.timeout_sec:
                http_options = types.HttpOptions(timeout=int(self.timeout_sec * 1000))
            self._client = genai.Client(api_key=self.api_key, http_options=http_options)
        return self._client

    @staticmethod
    def _to_sdk_parts(parts: List[Dict[str, Any]]):
        from google.genai import types

        sdk_parts = []
        for part in parts:
            if "text" in part:
                sdk_parts.append(types.Part.from_text(text=part["text"]))
            elif "inline_data" in part:
                inline = part["inline_data"]
                data = inline["data"]
                if isinstance(data, str):
                    data = base64.b64decode(data)
                sdk_parts.append(types.Part.from_bytes(data=data, mime_type=inline["mime_type"]))
            else:
                raise ValueError(f"Unsupported part keys: {sorted(part)}")
        return [types.Content(role="user", parts=sdk_parts)]

    def structured_generate(self, parts: List[Dict[str, Any]], schema: Dict[str, Any], model: str) -> str:
        from google.genai import types

        logger.debug(f"structured_generate model={model} parts={len(parts)}")
        response = self.client.models.generate_content(
            model=model,
            contents=self._to_sdk_parts(parts),
            config=types.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=schema,
            ),
        )
        return response.text or ""

    def image_generate(self, parts: List[Dict[str, Any]], model: str) -> List[ImagePayload]:
        from google.genai import types

        logger.debug(f"image_generate model={model} parts={len(parts)}")
        response = self.client.models.generate_content(
            model=model,
            contents=self._to_sdk_parts(parts),
            config=types.GenerateContentConfig(response_modalities=["IMAGE"]),
        )
        return self._extract_images(response)

    def text_to_image(self, prompt: str, aspect_ratio: str, model: str) -> List[ImagePayload]:
        if not model.startswith("imagen"):
            return super().text_to_image(prompt, aspect_ratio, model)

        from google.genai import types

        response = self.client.models.generate_images(
            model=model,
            prompt=prompt,
            config=types.GenerateImagesConfig(
                number_of_images=1,
                output_mime_type="image/png",
                aspect_ratio=aspect_ratio,
            ),
        )
        images = []
        for generated in response.generated_images or []:
            if generated.image and generated.image.image_bytes:
                images.append(ImagePayload(
                    data=generated.image.image_bytes,
                    mime_type=generated.image.mime_type or "image/png",
                ))
        return images

    @staticmethod
    def _extract_images(response) -> List[ImagePayload]:
        images = []
        for candidate in response.candidates or []:
            if not candidate.content or not candidate.content.parts:
                continue
            for part in candidate.content.parts:
                inline = part.inline_data
                if inline is not None and inline.data:
                    images.append(ImagePayload(data=inline.data, mime_type=inline.mime_type or "image/png"))
        return images
