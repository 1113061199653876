"""
FRAMEFORGE Agents Package

에이전트 기반 아키텍처:
- ContextAssembler: 스타일 참조 프레임 + 아이덴티티 앵커 선택
- DossierRegistry: 반복 등장 피사체 레지스트리
- DirectorAgent: 분석 단계 (AnalysisBrief)
- ArtistAgent: 합성 단계 (이미지 1장)
- PromptAgent: 프롬프트 생성 / 편집 / 비율 변경
- GeminiCapability: google-genai 백엔드
- StoryStore: 프레임 시퀀스 저장소
"""

from .gemini_capability import GenerativeCapability, GeminiCapability
from .dossier_registry import DossierRegistry
from .context_assembler import ContextAssembler
from .director_agent import DirectorAgent
from .artist_agent import ArtistAgent
from .prompt_agent import PromptAgent
from .story_store import StoryStore

__all__ = [
    "GenerativeCapability",
    "GeminiCapability",
    "DossierRegistry",
    "ContextAssembler",
    "DirectorAgent",
    "ArtistAgent",
    "PromptAgent",
    "StoryStore",
]
