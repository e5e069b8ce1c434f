"""
Case Court Service API
======================

FastAPI endpoints for the dispute case workflow.

Identity is an opaque `X-User-Id` header; authentication happens upstream.

Case Endpoints:
- POST   /api/v1/cases                                  - Create case
- GET    /api/v1/cases                                  - List my cases
- GET    /api/v1/cases/{case_id}                        - Get case
- DELETE /api/v1/cases/{case_id}                        - Delete case (plaintiff)
- POST   /api/v1/cases/join                             - Join by share code
- PUT    /api/v1/cases/{case_id}/filing                 - Statement + demands
- POST   /api/v1/cases/{case_id}/evidence               - Add evidence
- DELETE /api/v1/cases/{case_id}/evidence/{evidence_id} - Remove evidence
- POST   /api/v1/cases/{case_id}/evidence/{evidence_id}/contest
- POST   /api/v1/cases/{case_id}/evidence/{evidence_id}/analysis
- POST   /api/v1/cases/{case_id}/submit-evidence
- PUT    /api/v1/cases/{case_id}/defense
- PUT    /api/v1/cases/{case_id}/rebuttal
- POST   /api/v1/cases/{case_id}/cross-examination/finish
- PUT    /api/v1/cases/{case_id}/dispute-points/{point_id}/argument
- POST   /api/v1/cases/{case_id}/adjudication/request
- POST   /api/v1/cases/{case_id}/adjudicate
- POST   /api/v1/cases/{case_id}/default-judgment
- POST   /api/v1/cases/{case_id}/step-back
- POST   /api/v1/cases/{case_id}/appeal
- POST   /api/v1/cases/{case_id}/cancel

Text tools:
- POST /api/v1/ai/transcribe | /api/v1/ai/polish | /api/v1/ai/fix-grammar | /api/v1/ai/extract-facts

Live updates:
- WS /ws/cases/{case_id}

Run with:
    uvicorn court_lite.api:app --host 0.0.0.0 --port 8000
"""

import asyncio
import logging
import os
from datetime import datetime
from typing import List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_llm_mode, get_settings
from .db.session import init_db
from .errors import (
    AdjudicationInProgressError,
    CaseIntegrityError,
    CaseNotFoundError,
    CourtError,
    InvalidTransitionError,
    JoinError,
    PermissionDeniedError,
    SaveFailedError,
)
from .judge import AIJudge
from .llm.errors import GatewayError, InferenceError, ResponseValidationError
from .llm.gateway import close_gateway
from .schemas import (
    AddEvidenceRequest,
    AdjudicateRequest,
    ArgumentRequest,
    Case,
    CaseStage,
    CreateCaseRequest,
    DefenseRequest,
    ErrorDetail,
    ErrorResponse,
    FactsResponse,
    FilingRequest,
    HealthResponse,
    JoinCaseRequest,
    RebuttalRequest,
    TextRequest,
    TextResponse,
    TranscribeRequest,
)
from .store import CaseStore
from .sync import CaseSession
from .workflow import CaseWorkflow

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="Case Court Service",
    description="Two-party dispute cases adjudicated by an AI judge",
    version=get_settings().service_version,
    docs_url="/docs",
    redoc_url="/redoc",
)


def _parse_cors_origins(raw: str) -> List[str]:
    origins: List[str] = []
    for item in raw.split(","):
        origin = item.strip().strip('"').strip("'").rstrip("/")
        if origin:
            origins.append(origin)
    return origins


CORS_ALLOW_ORIGINS = _parse_cors_origins(
    os.environ.get("CORS_ALLOW_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
)
logger.info(f"CORS allow origins: {CORS_ALLOW_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


# =============================================================================
# Dependencies
# =============================================================================

_store: Optional[CaseStore] = None
_workflow: Optional[CaseWorkflow] = None


def get_store() -> CaseStore:
    global _store
    if _store is None:
        _store = CaseStore()
    return _store


def get_workflow() -> CaseWorkflow:
    """Process-wide workflow (holds the single-flight adjudication guard)"""
    global _workflow
    if _workflow is None:
        _workflow = CaseWorkflow(AIJudge())
    return _workflow


def get_judge(workflow: CaseWorkflow = Depends(get_workflow)) -> AIJudge:
    return workflow.judge


def get_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


async def _open_session(store: CaseStore, case_id: str, user_id: str) -> CaseSession:
    session = CaseSession(store, case_id, user_id)
    await session.load()
    return session


# =============================================================================
# Error Mapping
# =============================================================================

_COURT_ERROR_STATUS = [
    (CaseNotFoundError, 404, "not_found"),
    (PermissionDeniedError, 403, "forbidden"),
    (JoinError, 409, "join_rejected"),
    (AdjudicationInProgressError, 409, "adjudication_in_progress"),
    (InvalidTransitionError, 409, "invalid_transition"),
    (CaseIntegrityError, 409, "integrity_error"),
    (SaveFailedError, 503, "save_failed"),
]


def _build_error_payload(code: str, message: str) -> dict:
    return ErrorResponse(error=ErrorDetail(code=code, message=message)).model_dump()


@app.exception_handler(CourtError)
async def court_error_handler(request: Request, exc: CourtError):
    for error_type, status_code, code in _COURT_ERROR_STATUS:
        if isinstance(exc, error_type):
            break
    else:
        status_code, code = 400, "case_error"
    logger.info(f"{request.method} {request.url.path} -> {status_code} {code}: {exc}")
    return JSONResponse(status_code=status_code, content=_build_error_payload(code, str(exc)))


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    if isinstance(exc, ResponseValidationError):
        status_code, code = 502, "ai_invalid_response"
    elif isinstance(exc, InferenceError) and exc.transient:
        status_code, code = 503, "ai_unavailable"
    else:
        status_code, code = 502, "ai_error"
    logger.warning(f"{request.method} {request.url.path} -> {status_code}: {exc!r}")
    return JSONResponse(status_code=status_code, content=_build_error_payload(code, exc.user_message))


# =============================================================================
# Health
# =============================================================================

@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint"""
    settings = get_settings()
    return HealthResponse(
        status="healthy",
        version=settings.service_version,
        llm_mode=get_llm_mode(),
        timestamp=datetime.now(),
    )


# =============================================================================
# Background enrichment
# =============================================================================

async def enrich_filing_task(store: CaseStore, workflow: CaseWorkflow, case_id: str, description: str):
    """Title/summary for a filing; written only if the filing is still current"""

    def still_current(case: Optional[Case]) -> bool:
        return case is not None and case.stage != CaseStage.CANCELLED and case.description == description

    session = CaseSession(store, case_id)
    try:
        case = await session.load()
        if not still_current(case):
            return
        patch = await workflow.enrich_filing(case)
        case = await session.load()
        if still_current(case):
            await session.apply(patch)
    except CourtError as e:
        logger.warning(f"Filing enrichment for case {case_id} dropped: {e}")


async def enrich_defense_task(store: CaseStore, workflow: CaseWorkflow, case_id: str, statement: str):
    """Defense summary; written only if the defense is still current"""

    def still_current(case: Optional[Case]) -> bool:
        return (
            case is not None
            and case.stage != CaseStage.CANCELLED
            and not case.is_default_judgment
            and case.defense_statement == statement
        )

    session = CaseSession(store, case_id)
    try:
        case = await session.load()
        if not still_current(case):
            return
        patch = await workflow.enrich_defense(case)
        case = await session.load()
        if still_current(case):
            await session.apply(patch)
    except CourtError as e:
        logger.warning(f"Defense enrichment for case {case_id} dropped: {e}")


# =============================================================================
# Cases
# =============================================================================

@app.post("/api/v1/cases", response_model=Case, status_code=201, tags=["Cases"])
async def create_case(
    request: Optional[CreateCaseRequest] = None,
    user_id: str = Depends(get_user_id),
    store: CaseStore = Depends(get_store),
    workflow: CaseWorkflow = Depends(get_workflow),
):
    case = workflow.create_case(user_id, request.category if request else None)
    return await asyncio.to_thread(store.insert, case)


@app.get("/api/v1/cases", response_model=List[Case], tags=["Cases"])
async def list_my_cases(user_id: str = Depends(get_user_id), store: CaseStore = Depends(get_store)):
    return await asyncio.to_thread(store.list_for_participant, user_id)


@app.post("/api/v1/cases/join", response_model=Case, tags=["Cases"])
async def join_case(
    request: JoinCaseRequest,
    user_id: str = Depends(get_user_id),
    store: CaseStore = Depends(get_store),
    workflow: CaseWorkflow = Depends(get_workflow),
):
    case = await asyncio.to_thread(store.get_by_share_code, request.share_code)
    if case is None:
        raise CaseNotFoundError("No case matches this share code")
    session = await _open_session(store, case.id, user_id)
    return await session.submit(lambda c: workflow.join(c, user_id))


@app.get("/api/v1/cases/{case_id}", response_model=Case, tags=["Cases"])
async def get_case(case_id: str, user_id: str = Depends(get_user_id), store: CaseStore = Depends(get_store)):
    case = await asyncio.to_thread(store.get, case_id)
    if case is None:
        raise CaseNotFoundError(f"Case {case_id} not found")
    return case


@app.delete("/api/v1/cases/{case_id}", status_code=204, tags=["Cases"])
async def delete_case(
    case_id: str,
    user_id: str = Depends(get_user_id),
    store: CaseStore = Depends(get_store),
    workflow: CaseWorkflow = Depends(get_workflow),
):
    case = await asyncio.to_thread(store.get, case_id)
    if case is None:
        raise CaseNotFoundError(f"Case {case_id} not found")
    workflow.authorize_delete(case, user_id)
    await asyncio.to_thread(store.delete, case_id)


@app.put("/api/v1/cases/{case_id}/filing", response_model=Case, tags=["Filing"])
async def submit_filing(
    case_id: str,
    request: FilingRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_user_id),
    store: CaseStore = Depends(get_store),
    workflow: CaseWorkflow = Depends(get_workflow),
):
    session = await _open_session(store, case_id, user_id)
    case = await session.submit(lambda c: workflow.submit_filing(c, user_id, request.description, request.demands))
    background_tasks.add_task(enrich_filing_task, store, workflow, case_id, case.description)
    return case


@app.post("/api/v1/cases/{case_id}/evidence", response_model=Case, status_code=201, tags=["Evidence"])
async def add_evidence(
    case_id: str,
    request: AddEvidenceRequest,
    user_id: str = Depends(get_user_id),
    store: CaseStore = Depends(get_store),
    workflow: CaseWorkflow = Depends(get_workflow),
):
    session = await _open_session(store, case_id, user_id)
    return await session.submit(
        lambda c: workflow.add_evidence(c, user_id, request.kind, request.content, request.description)
    )


@app.delete("/api/v1/cases/{case_id}/evidence/{evidence_id}", response_model=Case, tags=["Evidence"])
async def remove_evidence(
    case_id: str,
    evidence_id: str,
    user_id: str = Depends(get_user_id),
    store: CaseStore = Depends(get_store),
    workflow: CaseWorkflow = Depends(get_workflow),
):
    session = await _open_session(store, case_id, user_id)
    return await session.submit(lambda c: workflow.remove_evidence(c, user_id, evidence_id))


@app.post("/api/v1/cases/{case_id}/evidence/{evidence_id}/contest", response_model=Case, tags=["Evidence"])
async def toggle_contested(
    case_id: str,
    evidence_id: str,
    user_id: str = Depends(get_user_id),
    store: CaseStore = Depends(get_store),
    workflow: CaseWorkflow = Depends(get_workflow),
):
    session = await _open_session(store, case_id, user_id)
    return await session.submit(lambda c: workflow.toggle_contested(c, user_id, evidence_id))


@app.post("/api/v1/cases/{case_id}/evidence/{evidence_id}/analysis", response_model=TextResponse, tags=["Evidence"])
async def analyze_evidence(
    case_id: str,
    evidence_id: str,
    user_id: str = Depends(get_user_id),
    store: CaseStore = Depends(get_store),
    workflow: CaseWorkflow = Depends(get_workflow),
):
    case = await asyncio.to_thread(store.get, case_id)
    if case is None:
        raise CaseNotFoundError(f"Case {case_id} not found")
    text = await workflow.analyze_evidence(case, user_id, evidence_id)
    return TextResponse(text=text)


@app.post("/api/v1/cases/{case_id}/submit-evidence", response_model=Case, tags=["Evidence"])
async def submit_evidence(
    case_id: str,
    user_id: str = Depends(get_user_id),
    store: CaseStore = Depends(get_store),
    workflow: CaseWorkflow = Depends(get_workflow),
):
    session = await _open_session(store, case_id, user_id)
    return await session.submit(lambda c: workflow.submit_evidence(c, user_id))


@app.put("/api/v1/cases/{case_id}/defense", response_model=Case, tags=["Defense"])
async def submit_defense(
    case_id: str,
    request: DefenseRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_user_id),
    store: CaseStore = Depends(get_store),
    workflow: CaseWorkflow = Depends(get_workflow),
):
    session = await _open_session(store, case_id, user_id)
    case = await session.submit(lambda c: workflow.submit_defense(c, user_id, request.statement))
    background_tasks.add_task(enrich_defense_task, store, workflow, case_id, case.defense_statement)
    return case


@app.post("/api/v1/cases/{case_id}/default-judgment", response_model=Case, tags=["Defense"])
async def default_judgment(
    case_id: str,
    user_id: str = Depends(get_user_id),
    store: CaseStore = Depends(get_store),
    workflow: CaseWorkflow = Depends(get_workflow),
):
    session = await _open_session(store, case_id, user_id)
    return await session.submit(lambda c: workflow.default_judgment(c, user_id))


@app.put("/api/v1/cases/{case_id}/rebuttal", response_model=Case, tags=["Cross Examination"])
async def update_rebuttal(
    case_id: str,
    request: RebuttalRequest,
    user_id: str = Depends(get_user_id),
    store: CaseStore = Depends(get_store),
    workflow: CaseWorkflow = Depends(get_workflow),
):
    session = await _open_session(store, case_id, user_id)
    return await session.submit(lambda c: workflow.update_rebuttal(c, user_id, request.text))


@app.post("/api/v1/cases/{case_id}/cross-examination/finish", response_model=Case, tags=["Cross Examination"])
async def finish_cross_examination(
    case_id: str,
    user_id: str = Depends(get_user_id),
    store: CaseStore = Depends(get_store),
    workflow: CaseWorkflow = Depends(get_workflow),
):
    session = await _open_session(store, case_id, user_id)
    return await session.submit(lambda c: workflow.finish_cross_examination(c, user_id))


@app.put(
    "/api/v1/cases/{case_id}/dispute-points/{point_id}/argument",
    response_model=Case,
    tags=["Debate"],
)
async def update_argument(
    case_id: str,
    point_id: str,
    request: ArgumentRequest,
    user_id: str = Depends(get_user_id),
    store: CaseStore = Depends(get_store),
    workflow: CaseWorkflow = Depends(get_workflow),
):
    session = await _open_session(store, case_id, user_id)
    return await session.submit(lambda c: workflow.update_argument(c, user_id, point_id, request.text))


@app.post("/api/v1/cases/{case_id}/adjudication/request", response_model=Case, tags=["Debate"])
async def request_adjudication(
    case_id: str,
    user_id: str = Depends(get_user_id),
    store: CaseStore = Depends(get_store),
    workflow: CaseWorkflow = Depends(get_workflow),
):
    session = await _open_session(store, case_id, user_id)
    return await session.submit(lambda c: workflow.request_adjudication(c, user_id))


@app.post("/api/v1/cases/{case_id}/adjudicate", response_model=Case, tags=["Adjudication"])
async def adjudicate(
    case_id: str,
    request: Optional[AdjudicateRequest] = None,
    user_id: str = Depends(get_user_id),
    store: CaseStore = Depends(get_store),
    workflow: CaseWorkflow = Depends(get_workflow),
):
    request = request or AdjudicateRequest()
    session = await _open_session(store, case_id, user_id)
    return await session.submit(lambda c: workflow.adjudicate(c, user_id, request.persona))


@app.post("/api/v1/cases/{case_id}/step-back", response_model=Case, tags=["Cases"])
async def step_back(
    case_id: str,
    user_id: str = Depends(get_user_id),
    store: CaseStore = Depends(get_store),
    workflow: CaseWorkflow = Depends(get_workflow),
):
    session = await _open_session(store, case_id, user_id)
    return await session.submit(lambda c: workflow.step_back(c, user_id))


@app.post("/api/v1/cases/{case_id}/appeal", response_model=Case, tags=["Adjudication"])
async def appeal(
    case_id: str,
    user_id: str = Depends(get_user_id),
    store: CaseStore = Depends(get_store),
    workflow: CaseWorkflow = Depends(get_workflow),
):
    session = await _open_session(store, case_id, user_id)
    return await session.submit(lambda c: workflow.appeal(c, user_id))


@app.post("/api/v1/cases/{case_id}/cancel", response_model=Case, tags=["Cases"])
async def cancel_case(
    case_id: str,
    user_id: str = Depends(get_user_id),
    store: CaseStore = Depends(get_store),
    workflow: CaseWorkflow = Depends(get_workflow),
):
    session = await _open_session(store, case_id, user_id)
    return await session.submit(lambda c: workflow.cancel(c, user_id))


# =============================================================================
# Text tools
# =============================================================================

@app.post("/api/v1/ai/transcribe", response_model=TextResponse, tags=["AI"])
async def transcribe(request: TranscribeRequest, judge: AIJudge = Depends(get_judge)):
    return TextResponse(text=await judge.transcribe_audio(request.audio_base64, request.mime_type))


@app.post("/api/v1/ai/polish", response_model=TextResponse, tags=["AI"])
async def polish(request: TextRequest, judge: AIJudge = Depends(get_judge)):
    return TextResponse(text=await judge.polish_text(request.text))


@app.post("/api/v1/ai/fix-grammar", response_model=TextResponse, tags=["AI"])
async def fix_grammar(request: TextRequest, judge: AIJudge = Depends(get_judge)):
    return TextResponse(text=await judge.fix_grammar(request.text))


@app.post("/api/v1/ai/extract-facts", response_model=FactsResponse, tags=["AI"])
async def extract_facts(request: TextRequest, judge: AIJudge = Depends(get_judge)):
    return FactsResponse(facts=await judge.extract_fact_points(request.text))


# =============================================================================
# Live updates
# =============================================================================

@app.websocket("/ws/cases/{case_id}")
async def ws_case(websocket: WebSocket, case_id: str, store: CaseStore = Depends(get_store)):
    """
    Push case snapshots to the client.

    The socket is backed by a polling CaseSession, so the client sees the
    counterpart's changes within one poll interval.
    """
    await websocket.accept()
    session = CaseSession(store, case_id)

    async def push(case: Optional[Case]):
        if case is None:
            await websocket.send_json({"case_id": case_id, "status": "deleted"})
        else:
            await websocket.send_json({"case_id": case_id, "status": "updated", "case": case.model_dump(mode="json")})

    try:
        await session.load()
    except CaseNotFoundError:
        await websocket.send_json({"case_id": case_id, "status": "not_found"})
        await websocket.close()
        return

    await push(session.case)
    session.on_change(push)
    session.start()
    try:
        while True:
            # Client messages are ignored; receiving detects disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await session.stop()


# =============================================================================
# Startup/Shutdown
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Initialize on startup"""
    settings = get_settings()
    logger.info(f"Starting Case Court Service v{settings.service_version}")
    logger.info(f"LLM Mode: {settings.llm_mode}")
    for warning in settings.validate_llm_config():
        logger.warning(warning)
    await asyncio.to_thread(init_db)


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    await close_gateway()
    logger.info("Case Court Service stopped")


# =============================================================================
# Main (for direct execution)
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "court_lite.api:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
