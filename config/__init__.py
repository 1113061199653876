"""
FRAMEFORGE Configuration Loader
"""

import os
import copy
import yaml
from pathlib import Path
from typing import Dict, Any, Optional

from dotenv import load_dotenv

from schemas import ModelSettings

# .env (GOOGLE_API_KEY etc.)
load_dotenv()

# 기본 설정 디렉토리
CONFIG_DIR = Path(__file__).parent

EXTENSION_POLICIES = ("left_first", "right_first")


def get_default_settings() -> Dict[str, Any]:
    """기본 설정 반환"""
    return {
        "models": ModelSettings().model_dump(),
        "timeouts": {
            "analysis_sec": 90,
            "synthesis_sec": 240,
        },
        "context": {
            "max_style_references": 2,
            "extension_policy": "left_first",
        },
        "story": {
            "language": "Russian",
        },
        "errors": {
            "log_file": "outputs/api_errors.log",
        },
    }


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_env_overrides(settings: Dict[str, Any]) -> Dict[str, Any]:
    env_map = {
        "FRAMEFORGE_ANALYSIS_MODEL": ("models", "analysis_model", str),
        "FRAMEFORGE_GENERATION_MODEL": ("models", "generation_model", str),
        "FRAMEFORGE_EDITING_MODEL": ("models", "editing_model", str),
        "FRAMEFORGE_PROMPT_MODEL": ("models", "prompt_model", str),
        "FRAMEFORGE_ANALYSIS_TIMEOUT": ("timeouts", "analysis_sec", float),
        "FRAMEFORGE_SYNTHESIS_TIMEOUT": ("timeouts", "synthesis_sec", float),
        "FRAMEFORGE_STORY_LANGUAGE": ("story", "language", str),
        "FRAMEFORGE_ERROR_LOG": ("errors", "log_file", str),
    }
    for env_name, (section, key, cast) in env_map.items():
        raw = os.getenv(env_name)
        if raw:
            settings[section][key] = cast(raw)
    return settings


def load_settings(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    설정 로드 (defaults <- settings.yaml <- 환경변수)

    Args:
        config_path: 설정 파일 경로 (기본: config/settings.yaml)

    Returns:
        설정 딕셔너리
    """
    if config_path is None:
        config_path = CONFIG_DIR / "settings.yaml"

    settings = get_default_settings()

    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        settings = _deep_merge(settings, loaded)

    settings = _apply_env_overrides(settings)

    policy = settings["context"]["extension_policy"]
    if policy not in EXTENSION_POLICIES:
        raise ValueError(f"Unknown context.extension_policy '{policy}', expected one of {EXTENSION_POLICIES}")

    return settings


def get_model_settings(settings: Optional[Dict[str, Any]] = None) -> ModelSettings:
    """모델 설정 반환"""
    settings = settings or load_settings()
    return ModelSettings(**settings.get("models", {}))


def get_google_api_key() -> Optional[str]:
    return os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY")
