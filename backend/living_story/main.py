"""FastAPI 入口，暴露 Living Story 一致性引擎接口。"""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any, Literal

import httpx
from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from living_story.config import (
    require_generator_mode,
    require_memgraph_host,
    require_memgraph_port,
    require_storage_mode,
)
from living_story.errors import (
    AnalysisUnavailable,
    ChangeNotFound,
    ChangeNotPending,
    ConcurrentWriteConflict,
    LivingStoryError,
    NotApplied,
    PhaseNotFound,
    StaleChange,
    VersionConflict,
)
from living_story.llm.generator_gateway import GeneratorGateway
from living_story.models import (
    BatchResolutionView,
    ChangeHistoryView,
    ChangeSummaryView,
    PendingChangesView,
    PendingChangeView,
    PhaseCommitView,
    PhaseRecord,
    PropagationView,
    StoryChange,
    UndoResult,
)
from living_story.phases import Phase, parse_phase
from living_story.services.change_queue import ChangeQueue
from living_story.services.generator_client import GeneratorClient
from living_story.services.impact_analyzer import ContentGenerator, ImpactAnalyzer
from living_story.services.local_generator import LocalContentGenerator
from living_story.services.notifications import NotificationSurface
from living_story.services.project_locks import ProjectLocks
from living_story.services.propagation import PropagationPipeline
from living_story.storage.memory_storage import InMemoryStoryStorage
from living_story.storage.ports import StoryStoragePort

app = FastAPI(title="Living Story API", version="0.1.0")

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 1

_ERROR_STATUS: dict[type[LivingStoryError], int] = {
    ChangeNotFound: 404,
    PhaseNotFound: 404,
    StaleChange: 409,
    NotApplied: 409,
    ChangeNotPending: 409,
    VersionConflict: 409,
    ConcurrentWriteConflict: 503,
    AnalysisUnavailable: 503,
}


# Global exception mapping to avoid leaking 500 for validation/infrastructure issues.

def _normalize_unhandled_exception(exc: Exception) -> tuple[int, str]:
    if isinstance(
        exc,
        (ValueError, TypeError, KeyError, ValidationError, json.JSONDecodeError),
    ):
        detail = str(exc) or "invalid request payload"
        return 422, detail
    detail = str(exc) or exc.__class__.__name__
    return 503, f"service unavailable: {detail}"


@app.exception_handler(Exception)
async def _unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    if isinstance(exc, HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
    status_code, detail = _normalize_unhandled_exception(exc)
    logger.exception("Unhandled exception")
    return JSONResponse(status_code=status_code, content={"detail": detail})


@app.exception_handler(LivingStoryError)
async def _living_story_error_handler(
    request: Request,
    exc: LivingStoryError,
) -> JSONResponse:
    status_code = _ERROR_STATUS.get(type(exc), 503)
    content: dict[str, Any] = {"detail": str(exc), "error": exc.code}
    headers: dict[str, str] | None = None
    if isinstance(exc, StaleChange):
        content["change"] = jsonable_encoder(exc.change)
    if isinstance(exc, ConcurrentWriteConflict):
        headers = {"Retry-After": str(RETRY_AFTER_SECONDS)}
    return JSONResponse(status_code=status_code, content=content, headers=headers)


@app.exception_handler(httpx.HTTPError)
async def _upstream_http_error_handler(
    request: Request,
    exc: httpx.HTTPError,
) -> JSONResponse:
    if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
        status_code = exc.response.status_code
        detail = f"upstream generator request failed with status {status_code}"
    elif isinstance(exc, httpx.TimeoutException):
        status_code, detail = 504, "upstream generator request timed out"
    else:
        status_code, detail = 503, "upstream generator service unavailable"
    logger.warning("%s: %s", detail, exc)
    return JSONResponse(status_code=status_code, content={"detail": detail})


@app.on_event("startup")
async def _validate_engine_config() -> None:  # pragma: no cover
    try:
        require_storage_mode()
        require_generator_mode()
    except RuntimeError as exc:
        logger.error("living story config invalid: %s", exc)


def _phase_or_422(phase: int) -> Phase:
    try:
        return parse_phase(phase)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@lru_cache(maxsize=1)
def get_story_storage() -> StoryStoragePort:  # pragma: no cover
    """Storage 单例，避免重复建立连接。"""
    try:
        mode = require_storage_mode()
    except RuntimeError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if mode == "memory":
        return InMemoryStoryStorage()
    try:
        host = require_memgraph_host()
        port = require_memgraph_port()
        from living_story.storage.memgraph_storage import MemgraphStoryStorage

        storage = MemgraphStoryStorage(host=host, port=port)
        storage.ensure_indexes()
        return storage
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"memgraph unavailable: {exc}") from exc


@lru_cache(maxsize=1)
def get_project_locks() -> ProjectLocks:  # pragma: no cover
    return ProjectLocks()


@lru_cache(maxsize=1)
def get_generator_client() -> GeneratorClient:  # pragma: no cover
    """生成器客户端单例，读取 .env 配置。"""
    return GeneratorClient()


@lru_cache(maxsize=1)
def get_generator_gateway() -> GeneratorGateway:  # pragma: no cover
    return GeneratorGateway(get_generator_client())


def get_content_generator() -> ContentGenerator:  # pragma: no cover
    """默认依赖注入，可在测试中 override。"""
    try:
        mode = require_generator_mode()
    except RuntimeError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if mode == "remote":
        return get_generator_gateway()
    return LocalContentGenerator()


def get_change_queue(
    storage: StoryStoragePort = Depends(get_story_storage),
    locks: ProjectLocks = Depends(get_project_locks),
) -> ChangeQueue:
    return ChangeQueue(storage, locks)


def get_impact_analyzer(
    storage: StoryStoragePort = Depends(get_story_storage),
    generator: ContentGenerator = Depends(get_content_generator),
) -> ImpactAnalyzer:
    return ImpactAnalyzer(storage, generator)


def get_propagation_pipeline(
    queue: ChangeQueue = Depends(get_change_queue),
    analyzer: ImpactAnalyzer = Depends(get_impact_analyzer),
) -> PropagationPipeline:
    return PropagationPipeline(queue, analyzer)


def get_notification_surface(
    queue: ChangeQueue = Depends(get_change_queue),
) -> NotificationSurface:
    return NotificationSurface(queue)


# ---------------------------------------------------------------------------
# phases
# ---------------------------------------------------------------------------


@app.post("/api/v1/projects/{project_id}/phases/{phase}", response_model=PhaseCommitView)
async def commit_phase_endpoint(
    project_id: str,
    phase: int,
    payload: dict[str, Any] = Body(...),
    pipeline: PropagationPipeline = Depends(get_propagation_pipeline),
) -> PhaseCommitView:
    resolved = _phase_or_422(phase)
    try:
        return await pipeline.commit_phase(project_id, resolved, payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.get("/api/v1/projects/{project_id}/phases", response_model=list[PhaseRecord])
async def list_phases_endpoint(
    project_id: str,
    storage: StoryStoragePort = Depends(get_story_storage),
) -> list[PhaseRecord]:
    return storage.list_phases(project_id=project_id)


@app.get("/api/v1/projects/{project_id}/phases/{phase}", response_model=PhaseRecord)
async def get_phase_endpoint(
    project_id: str,
    phase: int,
    storage: StoryStoragePort = Depends(get_story_storage),
) -> PhaseRecord:
    resolved = _phase_or_422(phase)
    record = storage.get_phase(project_id=project_id, phase=resolved)
    if record is None:
        raise PhaseNotFound(project_id, int(resolved))
    return record


# ---------------------------------------------------------------------------
# changes
# ---------------------------------------------------------------------------


@app.get(
    "/api/v1/projects/{project_id}/changes",
    response_model=PendingChangesView | ChangeHistoryView,
)
async def list_changes_endpoint(
    project_id: str,
    state: Literal["pending", "history"] = Query("pending"),
    limit: int | None = Query(None, gt=0),
    queue: ChangeQueue = Depends(get_change_queue),
) -> PendingChangesView | ChangeHistoryView:
    if state == "history":
        return ChangeHistoryView(
            project_id=project_id,
            history=queue.list_history(project_id, limit=limit),
        )
    return PendingChangesView(
        project_id=project_id,
        pending=[
            PendingChangeView(change=record.change, preview=record.preview)
            for record in queue.list_pending(project_id)
        ],
    )


@app.get("/api/v1/projects/{project_id}/changes:summary", response_model=ChangeSummaryView)
async def change_summary_endpoint(
    project_id: str,
    surface: NotificationSurface = Depends(get_notification_surface),
) -> ChangeSummaryView:
    return surface.summary(project_id)


@app.post("/api/v1/projects/{project_id}/changes:acceptAll", response_model=BatchResolutionView)
async def accept_all_endpoint(
    project_id: str,
    surface: NotificationSurface = Depends(get_notification_surface),
) -> BatchResolutionView:
    results = await surface.accept_all(project_id)
    return BatchResolutionView(project_id=project_id, results=results)


@app.post("/api/v1/projects/{project_id}/changes:rejectAll", response_model=BatchResolutionView)
async def reject_all_endpoint(
    project_id: str,
    surface: NotificationSurface = Depends(get_notification_surface),
) -> BatchResolutionView:
    results = await surface.reject_all(project_id)
    return BatchResolutionView(project_id=project_id, results=results)


@app.post(
    "/api/v1/projects/{project_id}/changes/{change_id}:accept",
    response_model=StoryChange,
)
async def accept_change_endpoint(
    project_id: str,
    change_id: str,
    surface: NotificationSurface = Depends(get_notification_surface),
) -> StoryChange:
    return await surface.accept(project_id, change_id)


@app.post(
    "/api/v1/projects/{project_id}/changes/{change_id}:reject",
    response_model=StoryChange,
)
async def reject_change_endpoint(
    project_id: str,
    change_id: str,
    surface: NotificationSurface = Depends(get_notification_surface),
) -> StoryChange:
    return await surface.reject(project_id, change_id)


@app.post(
    "/api/v1/projects/{project_id}/changes/{change_id}:undo",
    response_model=UndoResult,
)
async def undo_change_endpoint(
    project_id: str,
    change_id: str,
    queue: ChangeQueue = Depends(get_change_queue),
) -> UndoResult:
    return await queue.undo(change_id, project_id=project_id)


@app.post(
    "/api/v1/projects/{project_id}/changes/{change_id}:propagate",
    response_model=PropagationView,
)
async def propagate_change_endpoint(
    project_id: str,
    change_id: str,
    pipeline: PropagationPipeline = Depends(get_propagation_pipeline),
) -> PropagationView:
    return await pipeline.repropagate(project_id, change_id)
