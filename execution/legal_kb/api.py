"""
FastAPI Backend for the Legal Knowledge Base

AI-assisted search, streamed Q&A and multi-turn consultation over statute
text, metered in tokens per user.

Run with: uvicorn execution.legal_kb.api:app --host 0.0.0.0 --port 8000
"""

import os
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Optional

from fastapi import FastAPI, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from . import __version__
from .api_models import (
    SearchRequest, SearchResponse, QARequest, ConsultantRequest,
    HealthResponse, ProfileResponse, CreditsInfo,
    ConversationResponse, MessageResponse,
)
from .auth import ACCESS_TOKEN_COOKIE, verify_session_jwt
from .config import PipelineConfig
from .conversations import ChatMessage, is_placeholder_id
from .credits import Principal, get_token_accountant
from .errors import AccessDenied, AuthenticationError, LegalKBError, PersistenceError
from .metrics import get_metrics_collector
from .prompts import MESSAGES
from .streaming import SSE_HEADERS, ProgressReporter, sse_stream

# Load environment variables
load_dotenv()
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    _container.close()


app = FastAPI(
    title="Legal Knowledge Base API",
    description="AI-assisted legal search, Q&A and consultation with token metering",
    version=__version__,
    lifespan=lifespan,
)

# Configure CORS: use CORS_ORIGINS env var (comma-separated) or default to localhost
_cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Service Container - builds and caches the pipeline components
# =============================================================================

class ServiceContainer:
    """Lazily builds the shared store, model client and pipelines."""

    def __init__(self, config: Optional[PipelineConfig] = None):
        self._config = config
        self._store = None
        self._llm = None
        self._accountant = None
        self._retriever = None
        self._synthesizer = None
        self._conversations = None
        self._history = None
        self._search = None
        self._qa = None
        self._consultant = None

    def get_config(self) -> PipelineConfig:
        if self._config is None:
            self._config = PipelineConfig.from_env()
        return self._config

    def get_store(self):
        if self._store is None:
            from .vector_store import VectorStore, VectorStoreConfig
            store = VectorStore(VectorStoreConfig(
                embedding_dimensions=self.get_config().models.embedding_dimensions,
            ))
            store.connect()
            try:
                store.initialize_schema()
            except PersistenceError as e:
                logger.warning(f"Schema init failed: {e}")
            self._store = store
        return self._store

    def get_llm(self):
        if self._llm is None:
            from .llm import LLMClient
            self._llm = LLMClient(self.get_config().models)
        return self._llm

    def get_accountant(self):
        if self._accountant is None:
            self._accountant = get_token_accountant(self.get_store(), self.get_config())
        return self._accountant

    def get_retriever(self):
        if self._retriever is None:
            from .retriever import VectorRetriever
            self._retriever = VectorRetriever(self.get_store(), self.get_llm(), self.get_config())
        return self._retriever

    def get_synthesizer(self):
        if self._synthesizer is None:
            from .synthesizer import AnswerSynthesizer
            self._synthesizer = AnswerSynthesizer(self.get_llm(), self.get_config())
        return self._synthesizer

    def get_conversations(self):
        if self._conversations is None:
            from .conversations import ConversationStore
            self._conversations = ConversationStore(self.get_store())
        return self._conversations

    def get_history(self):
        if self._history is None:
            from .history import HistoryRecorder
            self._history = HistoryRecorder(self.get_store())
        return self._history

    def get_search_pipeline(self):
        if self._search is None:
            from .pipelines import SearchPipeline
            self._search = SearchPipeline(
                self.get_retriever(), self.get_accountant(), self.get_history(), self.get_config(),
            )
        return self._search

    def get_qa_pipeline(self):
        if self._qa is None:
            from .pipelines import QAPipeline
            self._qa = QAPipeline(
                self.get_retriever(), self.get_synthesizer(), self.get_accountant(),
                self.get_history(), self.get_config(),
            )
        return self._qa

    def get_consultant(self):
        if self._consultant is None:
            from .consultant import ConsultantOrchestrator
            self._consultant = ConsultantOrchestrator(
                self.get_llm(), self.get_retriever(), self.get_accountant(),
                self.get_conversations(), self.get_config(),
            )
        return self._consultant

    def close(self) -> None:
        """Release the connection pool on shutdown."""
        if self._store is not None:
            self._store.close()
            self._store = None


_container = ServiceContainer()


# =============================================================================
# Error mapping
# =============================================================================

@app.exception_handler(LegalKBError)
async def legal_kb_error_handler(request: Request, exc: LegalKBError):
    if exc.status_code >= 500:
        logger.error(f"{request.url.path} failed: {type(exc).__name__}: {exc}")
    else:
        logger.info(f"{request.url.path} rejected ({exc.status_code}): {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.user_message},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    logger.info(f"{request.url.path} invalid body: {exc.errors()}")
    return JSONResponse(status_code=400, content={"success": False, "error": "請求參數無效"})


# =============================================================================
# Authentication dependency
# =============================================================================

def _session_token(request: Request) -> Optional[str]:
    token = request.cookies.get(ACCESS_TOKEN_COOKIE)
    if token:
        return token
    auth_header = request.headers.get("authorization", "")
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip() or None
    return None


async def get_current_principal(request: Request) -> Principal:
    """Resolve the session token into a principal with current balances."""
    token = _session_token(request)
    if not token:
        raise AuthenticationError("Missing session token")
    session = verify_session_jwt(token)
    if not session:
        raise AuthenticationError("Invalid or expired session token")

    try:
        principal = await _container.get_accountant().get_principal(
            session["user_id"], email=session["email"], role=session["role"],
        )
    except PersistenceError as e:
        logger.error(f"Profile lookup failed for {session['user_id']}: {e}")
        raise AuthenticationError(
            "Profile lookup failed", user_message=MESSAGES["profile_unavailable"],
        ) from e
    if principal is None:
        raise AuthenticationError(
            f"Unknown user {session['user_id']}", user_message=MESSAGES["profile_unavailable"],
        )
    return principal


def _event_stream(reporter: ProgressReporter, start_pipeline) -> StreamingResponse:
    return StreamingResponse(
        sse_stream(reporter, start_pipeline),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/api/v1/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    db_status = "unknown"
    try:
        store = _container.get_store()
        db_status = "connected" if store.health_check() else "disconnected"
    except Exception as e:
        logger.warning(f"Health check: database disconnected: {e}")
        db_status = "disconnected"

    return HealthResponse(status="ok", version=__version__, database=db_status)


@app.post("/api/search", response_model=SearchResponse)
async def search(
    request: SearchRequest,
    principal: Principal = Depends(get_current_principal),
):
    """Search statute chunks by AI-generated keywords."""
    _container.get_accountant().authorize(principal, "search", request.query)
    result = await _container.get_search_pipeline().search(principal, request.query.strip())
    return SearchResponse(**result)


@app.post("/api/qa")
async def qa(
    request: QARequest,
    principal: Principal = Depends(get_current_principal),
):
    """Stream a grounded answer as server-sent events."""
    _container.get_accountant().authorize(principal, "qa", request.question)
    reporter = ProgressReporter()
    question = request.question.strip()
    qa_pipeline = _container.get_qa_pipeline()
    return _event_stream(reporter, lambda: qa_pipeline.run(principal, question, reporter))


@app.post("/api/consultant")
async def consultant(
    request: ConsultantRequest,
    principal: Principal = Depends(get_current_principal),
):
    """Run one consultant turn, streamed as server-sent events."""
    _container.get_accountant().authorize(
        principal, "consultant", request.message, use_pro_model=request.use_pro_model,
    )
    if request.conversation_id and not is_placeholder_id(request.conversation_id):
        await _container.get_conversations().check_ownership(principal, request.conversation_id)
    history = [ChatMessage.from_dict(m.model_dump()) for m in request.conversation_history]
    reporter = ProgressReporter()
    message = request.message.strip()
    orchestrator = _container.get_consultant()
    return _event_stream(reporter, lambda: orchestrator.run(
        principal,
        message,
        history,
        reporter,
        conversation_id=request.conversation_id,
        use_pro_model=request.use_pro_model,
    ))


@app.get("/api/profile", response_model=ProfileResponse)
async def profile(principal: Principal = Depends(get_current_principal)):
    """Current user's role and token balances."""
    return ProfileResponse(
        id=principal.user_id,
        email=principal.email,
        name=principal.name,
        role=principal.role,
        credits=CreditsInfo(
            total_tokens=principal.total_tokens,
            used_tokens=principal.used_tokens,
            remaining_tokens=principal.remaining_tokens,
        ),
    )


@app.get("/api/v1/conversations", response_model=list[ConversationResponse])
async def list_conversations(principal: Principal = Depends(get_current_principal)):
    """List the caller's consultant conversations, newest first."""
    rows = await _container.get_conversations().list_conversations(principal)
    return [ConversationResponse(**row) for row in rows]


@app.get("/api/v1/conversations/{conversation_id}/messages", response_model=list[MessageResponse])
async def get_conversation_messages(
    conversation_id: str,
    principal: Principal = Depends(get_current_principal),
):
    """Replay a conversation owned by the caller."""
    messages = await _container.get_conversations().get_messages(principal, conversation_id)
    return [MessageResponse(**m.to_dict()) for m in messages]


@app.get("/api/v1/metrics")
async def get_metrics(principal: Principal = Depends(get_current_principal)):
    """Pipeline metrics (admin only)."""
    if principal.role != "admin":
        raise AccessDenied(
            f"Role {principal.role!r} cannot read metrics", feature="metrics", role=principal.role,
        )
    collector = get_metrics_collector()
    return {
        "uptime_seconds": round(collector.get_uptime().total_seconds(), 1),
        **collector.get_metrics_dict(),
        "recent_runs": [asdict(run) for run in collector.get_recent_runs()],
    }
