"""
Shared fixtures: an in-memory generative capability and frame factories.

No test touches the network; every image is a tiny PNG data URL.
"""
import base64
import io
import json
import os
import sys

import pytest
from PIL import Image

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from schemas import Dossier, Frame, GenerationStatus, ImagePayload, Sketch, SubjectType  # noqa: E402
from agents.gemini_capability import GenerativeCapability  # noqa: E402
from config import get_default_settings  # noqa: E402


def png_bytes(color=(200, 30, 30), size=(4, 3)) -> bytes:
    out = io.BytesIO()
    Image.new("RGB", size, color).save(out, format="PNG")
    return out.getvalue()


def data_url(data: bytes, mime_type: str = "image/png") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('utf-8')}"


def make_frame(frame_id: str, color=(10, 10, 10), **kwargs) -> Frame:
    return Frame(id=frame_id, image_versions=[data_url(png_bytes(color))], **kwargs)


def make_slot(frame_id: str) -> Frame:
    """Empty placeholder slot still generating."""
    return Frame(id=frame_id, generation_status=GenerationStatus.GENERATING, generating_message="Generating...")


def make_sketch(sketch_id: str = "sketch-1", color=(0, 120, 0), source_hash=None) -> Sketch:
    return Sketch(id=sketch_id, image_url=data_url(png_bytes(color)), source_hash=source_hash)


def make_dossier(source_hash: str = "hash-cat", role_label: str = "Рыжий кот") -> Dossier:
    return Dossier(
        source_hash=source_hash,
        type=SubjectType.CHARACTER,
        role_label=role_label,
        description="orange fur, green eyes",
        reference_image_url=data_url(png_bytes((255, 128, 0))),
    )


def brief_payload(**overrides) -> dict:
    payload = {
        "story_style": "2D акварель",
        "world_rules": "говорящие животные",
        "subject_type": "character",
        "role_label": "Рыжий кот",
        "subject_identity": "рыжая шерсть, зелёные глаза",
        "transformation": "человек -> кот",
        "narrative_position": "после погони",
        "scene_action": "кот прыгает на забор",
        "visual_anchor_index": None,
        "visual_description": "watercolor orange cat leaping onto a wooden fence, soft light",
        "video_prompt": "Кот прыгает на забор, камера следует снизу вверх",
    }
    payload.update(overrides)
    return payload


class FakeCapability(GenerativeCapability):
    """
    Scripted capability.

    structured: str, list of str (consumed in order) or an Exception to raise
    images: list of ImagePayload returned by image_generate, or an Exception
    """

    def __init__(self, structured=None, images=None):
        self.structured = json.dumps(brief_payload()) if structured is None else structured
        self.images = [ImagePayload(data=png_bytes((1, 2, 3)))] if images is None else images
        self.structured_calls = []
        self.image_calls = []
        self.text_to_image_calls = []

    def structured_generate(self, parts, schema, model):
        self.structured_calls.append({"parts": parts, "schema": schema, "model": model})
        if isinstance(self.structured, Exception):
            raise self.structured
        if isinstance(self.structured, list):
            return self.structured.pop(0)
        return self.structured

    def image_generate(self, parts, model):
        self.image_calls.append({"parts": parts, "model": model})
        if isinstance(self.images, Exception):
            raise self.images
        return list(self.images)

    def text_to_image(self, prompt, aspect_ratio, model):
        self.text_to_image_calls.append({"prompt": prompt, "aspect_ratio": aspect_ratio, "model": model})
        return super().text_to_image(prompt, aspect_ratio, model)


def inline_images(parts) -> list:
    """Decoded bytes of every inline image part, in order."""
    return [base64.b64decode(p["inline_data"]["data"]) for p in parts if "inline_data" in p]


@pytest.fixture
def settings(tmp_path):
    cfg = get_default_settings()
    cfg["errors"]["log_file"] = str(tmp_path / "api_errors.log")
    return cfg


@pytest.fixture(autouse=True)
def isolated_error_log(tmp_path, monkeypatch):
    from utils.error_manager import ErrorManager

    log_file = str(tmp_path / "api_errors.log")
    monkeypatch.setenv("FRAMEFORGE_ERROR_LOG", log_file)
    monkeypatch.setattr(ErrorManager, "LOG_FILE", log_file)
