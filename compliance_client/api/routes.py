from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import AsyncGenerator, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import StreamingResponse

from compliance_client.exceptions import (
    BackendNotFoundError,
    BackendRequestError,
    ComplianceClientError,
    ConfigurationError,
    DocumentNotReadyError,
    InvalidFileError,
    NoActiveAnalysisError,
    NoActiveDocumentError,
)
from compliance_client.models.schemas import (
    ComplianceStatus,
    PageResult,
    SessionPhase,
    SessionSnapshot,
    StartAnalysisResponse,
    StatusCounts,
)
from compliance_client.pipeline.session import ComplianceSession
from compliance_client.pipeline.workflow import ComplianceWorkflow

router = APIRouter(prefix="/api/v1/compliance", tags=["compliance"])

STREAM_TERMINAL_PHASES = {SessionPhase.INGESTED, SessionPhase.READY, SessionPhase.FAILED, SessionPhase.IDLE}


def get_workflow(request: Request) -> ComplianceWorkflow:
    return request.app.state.workflow


async def get_session(session_key: str, workflow: ComplianceWorkflow = Depends(get_workflow)) -> ComplianceSession:
    return await workflow.get_session(session_key)


def to_http_error(exc: ComplianceClientError) -> HTTPException:
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=500, detail=str(exc))
    if isinstance(exc, InvalidFileError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, (DocumentNotReadyError, NoActiveDocumentError, NoActiveAnalysisError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, BackendNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, BackendRequestError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


@router.post("/sessions/{session_key}/upload")
async def upload_and_process(
    session_key: str,
    file: UploadFile = File(...),
    auto_analyze: bool = Form(False),
    moe_id: Optional[str] = Form(None),
    session: ComplianceSession = Depends(get_session),
    workflow: ComplianceWorkflow = Depends(get_workflow),
):
    file_name = Path(file.filename or "document.pdf").name
    content = await file.read()
    # Upload errors belong to this request; only ingestion and analysis run in the background.
    try:
        response = await session.upload(content, file_name=file_name, moe_id=moe_id)
    except ComplianceClientError as exc:
        raise to_http_error(exc) from exc

    await workflow.start(session_key, document_id=response.document_id, auto_analyze=auto_analyze)
    return {
        "success": True,
        "session_key": session_key,
        "document_id": response.document_id,
        "message": "Document uploaded. Processing started.",
    }


async def _progress_stream(
    workflow: ComplianceWorkflow, session_key: str, interval_seconds: float = 1.0
) -> AsyncGenerator[bytes, None]:
    last_payload: Optional[str] = None
    while True:
        snapshot = workflow.get_snapshot(session_key)
        if snapshot is None:
            yield b"event: message\n"
            yield b'data: {"phase": "FAILED", "progress": 0, "message": "Session not found"}\n\n'
            break
        payload = json.dumps(snapshot.model_dump(mode="json"))
        if payload != last_payload:
            yield b"event: message\n"
            yield f"data: {payload}\n\n".encode("utf-8")
            last_payload = payload
        # INGESTED is only final when no auto-analysis run is still going.
        if snapshot.phase in STREAM_TERMINAL_PHASES and not workflow.is_running(session_key):
            break
        await asyncio.sleep(interval_seconds)


@router.get("/sessions/{session_key}/stream")
async def stream_progress(
    session: ComplianceSession = Depends(get_session),
    workflow: ComplianceWorkflow = Depends(get_workflow),
):
    generator = _progress_stream(workflow, session.session_key, workflow.settings.polling.stream_interval_seconds)
    return StreamingResponse(generator, media_type="text/event-stream")


@router.get("/sessions/{session_key}/progress", response_model=SessionSnapshot)
async def get_progress(session: ComplianceSession = Depends(get_session)):
    return session.snapshot


@router.post("/sessions/{session_key}/analysis", response_model=StartAnalysisResponse)
async def start_analysis(session: ComplianceSession = Depends(get_session)):
    try:
        return await session.start_analysis()
    except ComplianceClientError as exc:
        raise to_http_error(exc) from exc


@router.get("/sessions/{session_key}/counts", response_model=Optional[StatusCounts])
async def get_counts(refresh: bool = False, session: ComplianceSession = Depends(get_session)):
    try:
        query = session.browse()
    except ComplianceClientError as exc:
        raise to_http_error(exc) from exc
    return await session.outcomes.load_counts(query.analysis_id, refresh=refresh)


@router.get("/sessions/{session_key}/outcomes", response_model=PageResult)
async def get_outcomes(
    page: int = Query(0, ge=0),
    status: Optional[ComplianceStatus] = None,
    finding_level: Optional[str] = None,
    session: ComplianceSession = Depends(get_session),
):
    try:
        current = session.browse()
        if status != current.status_filter or finding_level != current.finding_level_filter:
            result = await session.outcomes.apply_filters(status, finding_level)
        else:
            result = await session.outcomes.go_to_page(page)
    except ComplianceClientError as exc:
        raise to_http_error(exc) from exc
    if result is None:
        raise HTTPException(status_code=409, detail="Request superseded by a newer query")
    return result


@router.post("/sessions/{session_key}/outcomes/{requirement_id}/viewed")
async def toggle_viewed(requirement_id: str, session: ComplianceSession = Depends(get_session)):
    try:
        query = session.browse()
    except ComplianceClientError as exc:
        raise to_http_error(exc) from exc
    viewed = session.outcomes.toggle_viewed(query.analysis_id, requirement_id)
    return {"requirement_id": requirement_id, "viewed": viewed}


@router.delete("/sessions/{session_key}", response_model=SessionSnapshot)
async def reset_session(session_key: str, workflow: ComplianceWorkflow = Depends(get_workflow)):
    return await workflow.reset(session_key)
