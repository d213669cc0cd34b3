"""
FastAPI service exposing the biometric verification core.

Endpoints:
    POST   /api/sessions           create a login or registration session
    WS     /ws/{session_id}        stream observations or frames for a session
    POST   /api/verify             one-shot login from posted observations
    POST   /api/register           one-shot registration from posted observations
    DELETE /api/sessions/{id}      cancel a session
    GET    /health                 service health

The service only answers whether a live subject is the claimed identity.
Everything that follows a positive verdict (marking a voter as having voted,
ledgers) belongs to the caller.
"""
import asyncio
import logging
import re
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from . import __version__
from .config import Config
from .exceptions import DimensionMismatchError, DuplicateIdentityError, NearDuplicateEmbeddingError
from .models.data_models import (
    FeedbackType,
    Observation,
    SessionPurpose,
    StepProgress,
    TokenValidation,
    VerificationFeedback,
)
from .services.challenge_engine import ChallengeEngine
from .services.encoding_matcher import EncodingMatcher
from .services.frame_adapter import FaceModels
from .services.identity_registry import IdentityRegistry, IdentityStore
from .services.observation_source import ScriptedObservationSource
from .services.token_issuer import TokenIssuer
from .services.verification_orchestrator import VerificationOrchestrator
from .services.websocket_handler import WebSocketHandler, WebSocketObservationSource

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Services
liveness_config = Config.liveness_config()
matcher = EncodingMatcher(Config.matcher_config())
challenge_engine = ChallengeEngine(liveness_config)
identity_store = IdentityStore(Config.DATABASE_PATH)
registry = IdentityRegistry(matcher, identity_store)
face_models = FaceModels(Config.MEDIAPIPE_MODEL_PATH, embedding_model=Config.EMBEDDING_MODEL)
# Observations reaching the orchestrator are already built (by the client or
# by the websocket source), so it runs without a models handle of its own
orchestrator = VerificationOrchestrator(matcher, challenge_engine, liveness_config)
websocket_handler = WebSocketHandler()

_private_key, _public_key = Config.load_jwt_keys()
token_issuer = TokenIssuer(
    private_key=_private_key,
    public_key=_public_key,
    expiry_minutes=Config.SESSION_TOKEN_EXPIRY_MINUTES,
)

IDENTITY_KEY_RE = re.compile(Config.IDENTITY_KEY_PATTERN)


@dataclass
class SessionRecord:
    session_id: str
    purpose: SessionPurpose
    identity_key: str
    expires_at: float
    task: Optional[asyncio.Task] = None


# Active sessions by session_id; a session is consumed by its first attempt
sessions: Dict[str, SessionRecord] = {}


def evict_expired_sessions() -> int:
    """Drop sessions whose token expired before any attempt started"""
    now = time.time()
    expired = [
        session_id for session_id, record in sessions.items()
        if record.task is None and record.expires_at <= now
    ]
    for session_id in expired:
        del sessions[session_id]
    if expired:
        logger.info(f"Evicted {len(expired)} expired session(s)")
    return len(expired)


@asynccontextmanager
async def lifespan(app: FastAPI):
    loop = asyncio.get_running_loop()
    loaded = await loop.run_in_executor(None, face_models.load)
    if not loaded:
        logger.warning("Face models unavailable; only client-side observations will be accepted")
    yield
    for record in list(sessions.values()):
        if record.task is not None and not record.task.done():
            record.task.cancel()
    face_models.close()


app = FastAPI(
    title="Voter Biometric Verification API",
    description="Liveness checking and face matching for voter authentication",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=Config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class SessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    purpose: SessionPurpose
    identity_key: str = Field(alias="identityKey")


class VerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    claimed_identity_key: str = Field(alias="claimedIdentityKey")
    session_token: str = Field(alias="sessionToken")
    observations: List[Dict[str, Any]] = Field(default_factory=list)


class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    identity_key: str = Field(alias="identityKey")
    session_token: str = Field(alias="sessionToken")
    observations: List[Dict[str, Any]] = Field(default_factory=list)


def error_response(status_code: int, code: str, message: str, details: Optional[Dict[str, Any]] = None) -> JSONResponse:
    """Uniform error body: {"error": {"code", "message", "details"}}"""
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, "details": details or {}}},
    )


def parse_observations(raw: List[Dict[str, Any]]) -> List[Observation]:
    """
    Raises:
        ValueError: If any observation is malformed
    """
    observations = []
    for index, item in enumerate(raw):
        try:
            observations.append(Observation.from_dict(item))
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"observation {index}: {e}") from e
    return observations


def claim_session(
    token: str,
    purpose: SessionPurpose,
    identity_key: str,
) -> tuple:
    """
    Validate a session token against the request and consume its session.

    Returns:
        (SessionRecord, None) on success, or (None, JSONResponse) describing
        the failure
    """
    validation: TokenValidation = token_issuer.validate_token(token)
    if not validation.valid:
        return None, error_response(401, "INVALID_TOKEN", validation.error or "Invalid token")
    if validation.purpose != purpose:
        return None, error_response(403, "WRONG_PURPOSE", f"Session token is not valid for {purpose.value}")
    if validation.identity_key != identity_key:
        return None, error_response(403, "TOKEN_IDENTITY_MISMATCH", "Session token was issued for another identity key")

    evict_expired_sessions()
    record = sessions.get(validation.session_id)
    if record is None or record.task is not None:
        return None, error_response(409, "SESSION_UNAVAILABLE", "Session is unknown or already used")
    del sessions[validation.session_id]
    return record, None


def record_attempt(session_id: str, purpose: SessionPurpose, identity_key: str, accepted: bool, reason: str, similarity=None) -> None:
    try:
        identity_store.record_attempt(session_id, purpose.value, identity_key, accepted, reason, similarity)
    except Exception as e:
        logger.error(f"Failed to record verification attempt for session {session_id}: {e}")


def register_identity(identity_key: str, embedding) -> Optional[JSONResponse]:
    """Add a captured embedding to the population; returns an error response on conflict"""
    try:
        registry.register(identity_key, embedding)
    except DuplicateIdentityError as e:
        return error_response(409, "IDENTITY_ALREADY_REGISTERED", e.message)
    except NearDuplicateEmbeddingError as e:
        return error_response(409, "FACE_ALREADY_REGISTERED", e.message)
    return None


@app.get("/")
async def root():
    return {
        "message": "Voter Biometric Verification API",
        "status": "running",
        "version": __version__
    }


@app.get("/health")
async def health_check():
    evict_expired_sessions()
    return {
        "status": "healthy",
        "services": {
            "api": "operational",
            "database": "operational",
            "face_models": "loaded" if face_models.loaded else "unavailable",
        },
        "population": len(registry),
        "active_sessions": len(sessions),
    }


@app.post("/api/sessions")
async def create_session(request: SessionRequest):
    """
    Create a verification session and the token that authorizes it.

    Returns:
        {"session_id", "session_token", "websocket_url", "expires_in"}
    """
    identity_key = request.identity_key.strip()
    if not IDENTITY_KEY_RE.match(identity_key):
        return error_response(400, "INVALID_IDENTITY_KEY", "Identity key has an invalid format")
    if request.purpose == SessionPurpose.REGISTER and identity_key in registry:
        return error_response(409, "IDENTITY_ALREADY_REGISTERED", "Identity already registered")

    evict_expired_sessions()
    session_id = str(uuid.uuid4())
    sessions[session_id] = SessionRecord(
        session_id, request.purpose, identity_key,
        expires_at=time.time() + token_issuer.expiry_minutes * 60,
    )
    token = token_issuer.issue_session_token(session_id, request.purpose, identity_key)
    logger.info(f"Created {request.purpose.value} session {session_id}")

    return {
        "session_id": session_id,
        "session_token": token,
        "websocket_url": f"/ws/{session_id}",
        "expires_in": token_issuer.expiry_minutes * 60,
    }


@app.delete("/api/sessions/{session_id}")
async def cancel_session(session_id: str):
    """Cancel a session; a running liveness check releases its source and stops"""
    record = sessions.pop(session_id, None)
    if record is None:
        return error_response(404, "SESSION_NOT_FOUND", "Session not found")

    running = record.task is not None and not record.task.done()
    if running:
        record.task.cancel()
    logger.info(f"Cancelled session {session_id} (running: {running})")
    return {"session_id": session_id, "cancelled": True}


@app.post("/api/verify")
async def verify(request: VerifyRequest):
    """Login: liveness over the posted observations, then match against the claimed identity"""
    record, error = claim_session(request.session_token, SessionPurpose.LOGIN, request.claimed_identity_key)
    if error is not None:
        return error
    try:
        observations = parse_observations(request.observations)
    except ValueError as e:
        return error_response(400, "INVALID_OBSERVATION", str(e))

    try:
        verdict = await orchestrator.verify_login(
            request.claimed_identity_key,
            ScriptedObservationSource(observations),
            registry,
            session_id=record.session_id,
        )
    except DimensionMismatchError as e:
        logger.error(f"Session {record.session_id}: {e}")
        return error_response(400, "INVALID_EMBEDDING", e.message, e.context)
    record_attempt(
        record.session_id, SessionPurpose.LOGIN, request.claimed_identity_key,
        verdict.accepted, verdict.reason.value, verdict.similarity,
    )
    return verdict.to_response()


@app.post("/api/register")
async def register(request: RegisterRequest):
    """Registration: liveness and embedding capture, then a uniqueness-checked insert"""
    record, error = claim_session(request.session_token, SessionPurpose.REGISTER, request.identity_key)
    if error is not None:
        return error
    try:
        observations = parse_observations(request.observations)
    except ValueError as e:
        return error_response(400, "INVALID_OBSERVATION", str(e))

    try:
        capture = await orchestrator.capture_for_registration(
            ScriptedObservationSource(observations),
            session_id=record.session_id,
        )
    except DimensionMismatchError as e:
        logger.error(f"Session {record.session_id}: {e}")
        return error_response(400, "INVALID_EMBEDDING", e.message, e.context)
    if not capture.succeeded:
        record_attempt(record.session_id, SessionPurpose.REGISTER, request.identity_key, False, capture.reason.value)
        return {"registered": False, "reason": capture.reason.value, "outcome": capture.user_outcome.value}

    conflict = register_identity(request.identity_key, capture.embedding)
    record_attempt(
        record.session_id, SessionPurpose.REGISTER, request.identity_key,
        conflict is None, "accepted" if conflict is None else "duplicate",
    )
    if conflict is not None:
        return conflict
    return JSONResponse(status_code=201, content={"registered": True, "identityKey": request.identity_key})


@app.websocket("/ws/{session_id}")
async def verification_stream(websocket: WebSocket, session_id: str, token: str = ""):
    """
    Streaming session.

    Flow:
    1. Validate the session token (query parameter ``token``)
    2. Send the challenge steps
    3. Read observations or frames until the liveness check ends, sending
       a step_satisfied message for each completed step
    4. Send the verdict and close
    """
    await websocket_handler.handle_connection(websocket, session_id)

    validation = token_issuer.validate_token(token)
    evict_expired_sessions()
    record = sessions.get(session_id)
    if not validation.valid or record is None or validation.session_id != session_id or record.task is not None:
        await websocket_handler.send_feedback(
            websocket,
            VerificationFeedback(type=FeedbackType.ERROR, message="Invalid session", data={"session_id": session_id})
        )
        await websocket_handler.close_connection(websocket, code=1008, reason="Invalid session")
        return

    challenge = challenge_engine.generate_challenge()
    source = WebSocketObservationSource(websocket, websocket_handler, face_models)

    async def on_progress(progress: StepProgress) -> None:
        await websocket_handler.send_progress(websocket, progress)

    try:
        await websocket_handler.send_challenge(websocket, challenge)

        if record.purpose == SessionPurpose.LOGIN:
            record.task = asyncio.create_task(orchestrator.verify_login(
                record.identity_key, source, registry,
                challenge=challenge, on_progress=on_progress, session_id=session_id,
            ))
        else:
            record.task = asyncio.create_task(orchestrator.capture_for_registration(
                source, challenge=challenge, on_progress=on_progress, session_id=session_id,
            ))

        try:
            outcome = await record.task
        except asyncio.CancelledError:
            if not record.task.cancelled():
                raise
            await websocket_handler.send_feedback(
                websocket,
                VerificationFeedback(type=FeedbackType.ERROR, message="Session cancelled", data={"session_id": session_id})
            )
            await websocket_handler.close_connection(websocket, code=1000, reason="Session cancelled")
            return

        if record.purpose == SessionPurpose.LOGIN:
            record_attempt(
                session_id, record.purpose, record.identity_key,
                outcome.accepted, outcome.reason.value, outcome.similarity,
            )
            await websocket_handler.send_verdict(websocket, outcome.to_response())
        elif not outcome.succeeded:
            record_attempt(session_id, record.purpose, record.identity_key, False, outcome.reason.value)
            await websocket_handler.send_verdict(
                websocket,
                {"registered": False, "reason": outcome.reason.value, "outcome": outcome.user_outcome.value},
            )
        else:
            conflict = register_identity(record.identity_key, outcome.embedding)
            record_attempt(
                session_id, record.purpose, record.identity_key,
                conflict is None, "accepted" if conflict is None else "duplicate",
            )
            if conflict is None:
                await websocket_handler.send_verdict(
                    websocket, {"registered": True, "identityKey": record.identity_key, "outcome": "verified"}
                )
            else:
                await websocket_handler.send_feedback(
                    websocket,
                    VerificationFeedback(type=FeedbackType.ERROR, message="Registration rejected", data={"reason": "duplicate"})
                )
        await websocket_handler.close_connection(websocket, reason="Verification complete")

    except WebSocketDisconnect:
        logger.info(f"Client disconnected from session {session_id}")
    except DimensionMismatchError as e:
        logger.error(f"Session {session_id}: {e}")
        await websocket_handler.send_feedback(
            websocket,
            VerificationFeedback(type=FeedbackType.ERROR, message="Invalid embedding", data=e.context)
        )
        await websocket_handler.close_connection(websocket, code=1003, reason="Invalid embedding")
    finally:
        if record.task is not None and not record.task.done():
            record.task.cancel()
        sessions.pop(session_id, None)
