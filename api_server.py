"""
FRAMEFORGE FastAPI Server

스토리 저장소 + 적응 파이프라인을 HTTP로 노출하는 API 서버.
Progress events of each run are kept per frame so a client can poll them.
"""

import os
import uuid
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

# .env 파일 로드
load_dotenv()

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from schemas import ProgressEvent, Sketch
from agents import StoryStore
from pipeline import AdaptationPipeline
from utils.error_manager import ErrorManager
from utils.errors import ContextError, ErrorKind, FrameforgeError
from utils.image_source import compute_source_hash, parse_data_url
from utils.logger import get_logger

logger = get_logger("api_server")

# FastAPI 앱 생성
app = FastAPI(title="FRAMEFORGE API", version="1.0")

# CORS 설정
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_store = StoryStore()
_pipeline: Optional[AdaptationPipeline] = None

# 프레임별 진행 이벤트 히스토리 (폴링용), 오래된 것부터 제거
MAX_PROGRESS_HISTORY = 200
progress_history: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()

# API clients can only reference images by data: or http(s) URL
ALLOWED_IMAGE_SCHEMES = ("data:", "http://", "https://")


def get_store() -> StoryStore:
    return _store


def get_pipeline() -> AdaptationPipeline:
    """Lazy pipeline bound to the store's registry."""
    global _pipeline
    if _pipeline is None:
        _pipeline = AdaptationPipeline(registry=_store.registry)
    return _pipeline


# ============================================================================
# Pydantic 모델
# ============================================================================

class AdaptRequest(BaseModel):
    """적응 요청"""
    frame_id: Optional[str] = None
    image_url: Optional[str] = None
    source_hash: Optional[str] = None
    instruction: str = ""
    insert_at: Optional[int] = None
    dossier_hash: Optional[str] = None


# ============================================================================
# Error mapping
# ============================================================================

STATUS_BY_KIND = {
    ErrorKind.QUOTA_EXCEEDED: 429,
    ErrorKind.SERVICE_UNAVAILABLE: 503,
    ErrorKind.MISSING_API_KEY: 503,
}


def status_for(error: FrameforgeError) -> int:
    if error.kind in STATUS_BY_KIND:
        return STATUS_BY_KIND[error.kind]
    if isinstance(error, ContextError):
        return 422
    return 502


@app.exception_handler(FrameforgeError)
async def frameforge_error_handler(request: Request, exc: FrameforgeError):
    return JSONResponse(status_code=status_for(exc), content={"detail": exc.to_dict()})


# ============================================================================
# Routes
# ============================================================================

def _build_target(req: AdaptRequest, store: StoryStore):
    if req.frame_id:
        frame = store.get(req.frame_id)
        if frame is not None:
            return frame
    if not req.image_url:
        raise HTTPException(status_code=404 if req.frame_id else 400, detail="frame_id or image_url is required")
    if not req.image_url.startswith(ALLOWED_IMAGE_SCHEMES):
        raise ContextError("image_url must be a data: or http(s) URL")

    source_hash = req.source_hash
    if source_hash is None and req.image_url.startswith("data:"):
        _, data = parse_data_url(req.image_url)
        source_hash = compute_source_hash(data)

    return Sketch(
        id=req.frame_id or f"sketch-{uuid.uuid4()}",
        image_url=req.image_url,
        source_hash=source_hash,
    )


def _start_history(frame_id: str) -> List[Dict[str, Any]]:
    history: List[Dict[str, Any]] = []
    progress_history[frame_id] = history
    progress_history.move_to_end(frame_id)
    while len(progress_history) > MAX_PROGRESS_HISTORY:
        progress_history.popitem(last=False)
    return history


@app.post("/api/adapt")
def adapt_image(
    req: AdaptRequest,
    store: StoryStore = Depends(get_store),
    pipeline: AdaptationPipeline = Depends(get_pipeline),
):
    """이미지를 스토리에 맞게 적응"""
    target = _build_target(req, store)

    known_dossier = None
    if req.dossier_hash:
        known_dossier = store.registry.lookup(req.dossier_hash)
        if known_dossier is None:
            raise HTTPException(status_code=404, detail=f"Unknown dossier: {req.dossier_hash}")

    history = _start_history(target.id)

    def on_progress(event: ProgressEvent):
        history.append(event.model_dump(mode="json"))

    result, applied = pipeline.adapt_in_store(
        store,
        target,
        req.instruction,
        known_dossier=known_dossier,
        insert_at=req.insert_at,
        on_progress=on_progress,
    )

    frame = store.get(target.id)
    return {
        "frame_id": target.id,
        "applied": applied,
        "display_prompt": result.display_prompt,
        "image_url": result.image.to_data_url(),
        "brief": result.brief.model_dump(mode="json"),
        "new_dossier": result.new_dossier.model_dump(mode="json") if result.new_dossier else None,
        "frame": frame.model_dump(mode="json") if frame else None,
    }


@app.get("/api/frames")
def list_frames(store: StoryStore = Depends(get_store)):
    """프레임 목록"""
    return {
        "frames": [f.model_dump(mode="json") for f in store.snapshot()],
        "total_duration": store.total_duration(),
    }


@app.get("/api/frames/{frame_id}/progress")
def get_progress(frame_id: str):
    """적응 진행 이벤트"""
    if frame_id not in progress_history:
        raise HTTPException(status_code=404, detail="No adaptation run for this frame")
    return {"frame_id": frame_id, "events": progress_history[frame_id]}


@app.get("/api/dossiers")
def list_dossiers(store: StoryStore = Depends(get_store)):
    """도시에 목록 (최근 사용 순)"""
    return {"dossiers": [d.model_dump(mode="json") for d in store.registry.all()]}


@app.get("/api/dossiers/{source_hash}/frames")
def dossier_frames(source_hash: str, store: StoryStore = Depends(get_store)):
    """같은 원본에서 나온 프레임"""
    if store.registry.lookup(source_hash) is None:
        raise HTTPException(status_code=404, detail="도시에를 찾을 수 없습니다.")
    return {"frames": [f.model_dump(mode="json") for f in store.frames_for_dossier(source_hash)]}


@app.delete("/api/dossiers/{source_hash}")
def delete_dossier(source_hash: str, store: StoryStore = Depends(get_store)):
    """도시에 삭제"""
    if not store.registry.remove(source_hash):
        raise HTTPException(status_code=404, detail="도시에를 찾을 수 없습니다.")
    logger.info(f"Dossier {source_hash[:8]} deleted")
    return {"deleted": source_hash}


@app.get("/api/project")
def export_project(name: str = "Untitled", store: StoryStore = Depends(get_store)):
    """프레임 + 도시에 직렬화"""
    return store.to_project(name).model_dump(mode="json")


@app.get("/api/errors")
def recent_errors(limit: int = 20, pipeline: AdaptationPipeline = Depends(get_pipeline)):
    """최근 에러 로그"""
    return {"errors": ErrorManager.get_recent_errors(limit, log_file=pipeline.error_log)}


@app.get("/health")
def health_check():
    """헬스 체크"""
    return {"status": "ok", "version": "1.0", "frames": len(_store)}


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "api_server:app",
        host="0.0.0.0",
        port=port,
        reload=False,
        log_level="info",
    )
