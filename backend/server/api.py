"""
BookGen V1.0 - FastAPI Backend Server
=====================================
REST + SSE API around the generation orchestrator.
Allows frontend clients to:
  - Submit a topic and follow generation progress
  - Review, edit, regenerate and undo individual subtopics
  - Approve the book for export and download PDF / DOCX

Run with:
    uvicorn server.api:app --host 0.0.0.0 --port 8000 --reload

Endpoints:
    POST   /api/v1/generate                         → Create a session (202)
    GET    /api/v1/sessions/{id}                    → Progress snapshot
    GET    /api/v1/sessions/{id}/progress           → SSE stream of progress events
    GET    /api/v1/sessions/{id}/content            → One subtopic's Markdown
    POST   /api/v1/sessions/{id}/edit-section       → Rewrite a selected passage
    POST   /api/v1/sessions/{id}/regenerate         → Regenerate a subtopic
    POST   /api/v1/sessions/{id}/undo               → Restore the previous version
    GET    /api/v1/sessions/{id}/markdown           → Assembled book Markdown
    POST   /api/v1/sessions/{id}/approve            → Start PDF export
    GET    /api/v1/sessions/{id}/download           → Download PDF or DOCX
    POST   /api/v1/sessions/{id}/resume             → Re-run a failed session
    GET    /api/v1/sessions                         → All sessions
"""

from __future__ import annotations

import asyncio
import json
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from bookgen.assembler import ensure_final_markdown, slugify
from bookgen.budget import remaining
from bookgen.config import (
    DOWNLOAD_CLEANUP_DELAY,
    MAX_CONCURRENT_SESSIONS,
    SESSION_TTL,
    SESSIONS_DIR,
    SWEEP_INTERVAL,
)
from bookgen.editing import (
    edit_subtopic_section,
    get_subtopic_content,
    regenerate_subtopic,
    undo_subtopic,
)
from bookgen.errors import (
    ContentNotFound,
    ExportError,
    InvalidEditRequest,
    InvalidStatusTransition,
    NoPreviousVersion,
    SessionStateError,
    SpanNotFound,
)
from bookgen.exporter import export_docx, export_pdf
from bookgen.llm_client import LLMClient
from bookgen.orchestrator import Orchestrator, progress_event
from bookgen.session_store import FileBlobStore, SessionRegistry
from bookgen.state import (
    COMPLETED,
    DOWNLOADED,
    EXPORTING_PDF,
    FAILED,
    IN_FLIGHT_STATUSES,
    MARKDOWN_READY,
    Session,
    advance_status,
    fail_session,
    reset_for_resume,
    touch,
)
from server.sse_manager import sse_manager

app = FastAPI(
    title="BookGen V1.0 API",
    description="LLM-orchestrated long-form book generation",
    version="1.0.0",
)

# Process-scoped collaborators (tests swap these out)
registry = SessionRegistry(FileBlobStore(SESSIONS_DIR))
llm = LLMClient()

MIN_TOPIC_CHARS = 3
RETRY_AFTER_SECONDS = 60


# ──────────────────────────────────────────────
# STARTUP ACTIONS
# ──────────────────────────────────────────────
async def _sweep_forever():
    while True:
        await asyncio.sleep(SWEEP_INTERVAL)
        registry.sweep_expired(SESSION_TTL)


@app.on_event("startup")
async def startup_event():
    """Reload persisted sessions (failing interrupted ones) and start the TTL sweeper."""
    registry.rehydrate()
    app.state.sweeper = asyncio.create_task(_sweep_forever())
    print("🚀 Server startup: sessions rehydrated, sweeper running.")


@app.on_event("shutdown")
async def shutdown_event():
    sweeper = getattr(app.state, "sweeper", None)
    if sweeper is not None:
        sweeper.cancel()


# ──────────────────────────────────────────────
# CORS
# ──────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    allow_credentials=True,
)


# ──────────────────────────────────────────────
# REQUEST MODELS
# ──────────────────────────────────────────────
class GenerateRequest(BaseModel):
    topic: str
    model: Optional[str] = None
    author: Optional[str] = None


class SubtopicRequest(BaseModel):
    unit_index: int = Field(ge=0)
    subtopic_index: int = Field(ge=0)


class EditSectionRequest(SubtopicRequest):
    selected_text: str
    action: str


# ──────────────────────────────────────────────
# HELPERS
# ──────────────────────────────────────────────
def _get_session(session_id: str) -> Session:
    session = registry.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (InvalidEditRequest, SpanNotFound)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, (ContentNotFound, NoPreviousVersion)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (SessionStateError, InvalidStatusTransition)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _publish(event: dict) -> None:
    sse_manager.publish(event["session_id"], event)


def _session_payload(session: Session) -> dict:
    structure = session.structure.model_dump() if session.structure else None
    return {
        "session_id": session.id,
        "topic": session.topic,
        "status": session.status,
        "phase": session.phase,
        "progress": session.progress,
        "current_unit": session.current_unit,
        "current_subtopic": session.current_subtopic,
        "error": session.error,
        "call_count": session.call_count,
        "token_count": session.token_count,
        "budget_remaining": remaining(session),
        "structure": structure,
        "generated_subtopics": len(session.subtopic_markdowns),
        "total_subtopics": session.config.total_subtopics,
        "edit_count": session.edit_count,
        "created_at": session.created_at,
        "last_activity_at": session.last_activity_at,
    }


# ──────────────────────────────────────────────
# BACKGROUND RUNNERS
# ──────────────────────────────────────────────
async def _run_orchestration(session_id: str) -> None:
    session = registry.get(session_id)
    if session is None:
        return
    orchestrator = Orchestrator(llm, store=registry, on_progress=_publish)
    await orchestrator.orchestrate(session)


def _run_export(session_id: str) -> None:
    """Runs in the threadpool: typst is a blocking subprocess."""
    session = registry.get(session_id)
    if session is None:
        return
    try:
        session.pdf_bytes = export_pdf(ensure_final_markdown(session))
        advance_status(session, COMPLETED)
        session.phase = "exported"
        session.progress = 100
        print(f"[Export] ✅ Session {session_id[:8]} completed")
    except Exception as e:
        print(f"[Export] ❌ Session {session_id[:8]} export failed: {e}")
        fail_session(session, f"Export failed: {e}")
    registry.save(session)
    _publish(progress_event(session))


# ──────────────────────────────────────────────
# POST /api/v1/generate - Create Session
# ──────────────────────────────────────────────
@app.post("/api/v1/generate")
async def generate(body: GenerateRequest, background_tasks: BackgroundTasks) -> JSONResponse:
    """
    Create a session for a topic and start orchestration in the background.
    Returns { session_id, status } immediately (202 Accepted).
    """
    topic = (body.topic or "").strip()
    if len(topic) < MIN_TOPIC_CHARS:
        raise HTTPException(status_code=400, detail=f"Topic must be at least {MIN_TOPIC_CHARS} characters")

    if not registry.can_accept(MAX_CONCURRENT_SESSIONS):
        return JSONResponse(
            status_code=503,
            content={"detail": "Too many sessions in progress. Try again later."},
            headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
        )

    session = registry.create_session(topic, model=body.model, author=body.author)
    background_tasks.add_task(_run_orchestration, session.id)
    print(f"[API] 📚 Session {session.id[:8]} created for topic: {topic}")

    return JSONResponse(
        status_code=202,
        content={"session_id": session.id, "status": session.status},
    )


# ──────────────────────────────────────────────
# GET /api/v1/sessions - All Sessions
# ──────────────────────────────────────────────
@app.get("/api/v1/sessions")
async def list_sessions() -> dict:
    return {
        "sessions": [
            {"session_id": s.id, "topic": s.topic, "status": s.status, "progress": s.progress}
            for s in registry.all()
        ]
    }


# ──────────────────────────────────────────────
# GET /api/v1/sessions/{id} - Progress Snapshot
# ──────────────────────────────────────────────
@app.get("/api/v1/sessions/{session_id}")
async def get_session(session_id: str) -> dict:
    session = _get_session(session_id)
    touch(session)
    return _session_payload(session)


# ──────────────────────────────────────────────
# GET /api/v1/sessions/{id}/progress - SSE Stream
# ──────────────────────────────────────────────
@app.get("/api/v1/sessions/{session_id}/progress")
async def progress_stream(session_id: str, request: Request) -> EventSourceResponse:
    """
    Server-Sent Events stream of progress events:
    { session_id, status, phase, progress, current_unit, current_subtopic, error }
    """
    session = _get_session(session_id)

    async def event_generator():
        # Send current state immediately on connect
        snapshot = progress_event(session)
        yield {"data": json.dumps(snapshot), "event": "message", "id": f"{session_id}-0"}
        if snapshot["status"] not in IN_FLIGHT_STATUSES and snapshot["status"] != EXPORTING_PDF:
            return

        seq = 0
        async for event in sse_manager.subscribe(session_id):
            if await request.is_disconnected():
                break
            seq += 1
            yield {"data": json.dumps(event), "event": "message", "id": f"{session_id}-{seq}"}

    return EventSourceResponse(event_generator())


# ──────────────────────────────────────────────
# SUBTOPIC OPERATIONS
# ──────────────────────────────────────────────
@app.get("/api/v1/sessions/{session_id}/content")
async def get_content(
    session_id: str,
    unit: int = Query(..., ge=0),
    subtopic: int = Query(..., ge=0),
) -> dict:
    session = _get_session(session_id)
    try:
        content = get_subtopic_content(session, unit, subtopic)
    except Exception as e:
        raise _http_error(e) from e
    return content.to_dict()


@app.post("/api/v1/sessions/{session_id}/edit-section")
async def edit_section(session_id: str, body: EditSectionRequest) -> dict:
    session = _get_session(session_id)
    try:
        content = await edit_subtopic_section(
            session, body.unit_index, body.subtopic_index, body.selected_text, body.action, llm
        )
    except Exception as e:
        raise _http_error(e) from e
    registry.save(session)
    return content.to_dict()


@app.post("/api/v1/sessions/{session_id}/regenerate")
async def regenerate(session_id: str, body: SubtopicRequest) -> dict:
    session = _get_session(session_id)
    try:
        content = await regenerate_subtopic(session, body.unit_index, body.subtopic_index, llm)
    except Exception as e:
        raise _http_error(e) from e
    registry.save(session)
    return content.to_dict()


@app.post("/api/v1/sessions/{session_id}/undo")
async def undo(session_id: str, body: SubtopicRequest) -> dict:
    session = _get_session(session_id)
    try:
        content = undo_subtopic(session, body.unit_index, body.subtopic_index)
    except Exception as e:
        raise _http_error(e) from e
    registry.save(session)
    return content.to_dict()


@app.get("/api/v1/sessions/{session_id}/markdown")
async def get_markdown(session_id: str) -> dict:
    session = _get_session(session_id)
    if session.status in IN_FLIGHT_STATUSES or session.status == FAILED:
        raise HTTPException(status_code=409, detail=f"Markdown not available in status: {session.status}")
    touch(session)
    return {"markdown": ensure_final_markdown(session)}


# ──────────────────────────────────────────────
# EXPORT / DOWNLOAD
# ──────────────────────────────────────────────
@app.post("/api/v1/sessions/{session_id}/approve")
async def approve(session_id: str, background_tasks: BackgroundTasks) -> JSONResponse:
    """Rebuild the Markdown with any edits and start the PDF export."""
    session = _get_session(session_id)
    if session.status != MARKDOWN_READY:
        raise HTTPException(status_code=409, detail=f"Cannot approve in status: {session.status}")

    ensure_final_markdown(session)
    advance_status(session, EXPORTING_PDF)
    session.phase = "exporting"
    registry.save(session)
    background_tasks.add_task(_run_export, session.id)

    return JSONResponse(status_code=202, content={"session_id": session.id, "status": session.status})


@app.get("/api/v1/sessions/{session_id}/download")
async def download(session_id: str, format: str = Query("pdf", pattern="^(pdf|docx)$")) -> Response:
    session = _get_session(session_id)
    if session.status not in (COMPLETED, DOWNLOADED):
        raise HTTPException(status_code=409, detail=f"Session is not completed (status: {session.status})")

    filename = slugify(session.structure.title if session.structure else session.topic) or "book"
    if format == "pdf":
        if not session.pdf_bytes:
            raise HTTPException(status_code=404, detail="PDF not available")
        data, media_type = session.pdf_bytes, "application/pdf"
    else:
        try:
            data = await asyncio.to_thread(
                export_docx,
                ensure_final_markdown(session),
                session.structure.title if session.structure else session.topic,
            )
        except ExportError as e:
            raise HTTPException(status_code=500, detail=str(e)) from e
        media_type = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

    advance_status(session, DOWNLOADED)
    registry.save(session)
    registry.schedule_cleanup(session.id, DOWNLOAD_CLEANUP_DELAY)

    return Response(
        content=data,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}.{format}"'},
    )


# ──────────────────────────────────────────────
# POST /api/v1/sessions/{id}/resume - Resume
# ──────────────────────────────────────────────
@app.post("/api/v1/sessions/{session_id}/resume")
async def resume(session_id: str, background_tasks: BackgroundTasks) -> JSONResponse:
    """Re-run a failed session; phases whose output survived are skipped."""
    session = _get_session(session_id)
    if session.status != FAILED:
        raise HTTPException(status_code=409, detail=f"Only failed sessions can resume (status: {session.status})")
    if not registry.can_accept(MAX_CONCURRENT_SESSIONS):
        return JSONResponse(
            status_code=503,
            content={"detail": "Too many sessions in progress. Try again later."},
            headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
        )

    reset_for_resume(session)
    registry.save(session)
    background_tasks.add_task(_run_orchestration, session.id)
    return JSONResponse(status_code=202, content={"session_id": session.id, "status": session.status})
