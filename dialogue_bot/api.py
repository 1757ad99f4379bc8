"""
REST API for the dialogue bot.

Sessions live in memory, one ChatBot per session id.

Run: API_KEY=<secret> uvicorn dialogue_bot.api:app --host 127.0.0.1 --port 8000

Errors use one shape: {"error": {"code": ..., "message": ...}}
"""

import hmac
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from dialogue_bot.bot import ChatBot, TurnInProgressError
from dialogue_bot.classifier import EmptyMessageError
from dialogue_bot.feature_flags import flags
from dialogue_bot.llm import GeminiClient
from dialogue_bot.logger import logger
from dialogue_bot.persona import PersonaConfigError, available_personas
from dialogue_bot.settings import settings

# Empty = no authentication
API_KEY = os.environ.get("API_KEY", "")


# ── Error helpers ──────────────────────────────────────

class APIError(Exception):
    """Structured API exception with HTTP status code."""

    def __init__(self, status_code: int, code: str, message: str):
        self.status_code = status_code
        self.code = code
        self.message = message
        super().__init__(message)


def _error_payload(code: str, message: str) -> dict:
    return {"error": {"code": code, "message": message}}


# ── Auth ──────────────────────────────────────────────

def verify_api_key(authorization: Optional[str] = Header(None)):
    """Bearer token check, skipped when API_KEY is empty."""
    if not API_KEY:
        return
    if not authorization or not authorization.startswith("Bearer "):
        raise APIError(401, "UNAUTHORIZED", "Missing Bearer token")
    token = authorization[7:]
    if not hmac.compare_digest(token, API_KEY):
        raise APIError(401, "UNAUTHORIZED", "Invalid API key")


# ── Sessions ──────────────────────────────────────────

@dataclass
class SessionEntry:
    bot: ChatBot
    last_activity: float
    created_at: float


class SessionRegistry:
    """
    session id -> ChatBot; every bot shares one generative client.

    Sessions idle for ttl_seconds are dropped on the next access. A session
    with a turn in flight is never dropped.
    """

    def __init__(
        self,
        llm: Optional[GeminiClient] = None,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._llm = llm
        self._ttl = ttl_seconds if ttl_seconds is not None else settings.api.session_ttl_seconds
        self._clock = clock
        self._sessions: Dict[str, SessionEntry] = {}
        self._lock = threading.Lock()

    @property
    def llm(self) -> GeminiClient:
        if self._llm is None:
            self._llm = GeminiClient.from_settings()
        return self._llm

    def _is_expired(self, entry: SessionEntry, now: float) -> bool:
        return now - entry.last_activity >= self._ttl and not entry.bot.busy

    def _cleanup_locked(self, now: float) -> int:
        expired = [sid for sid, entry in self._sessions.items() if self._is_expired(entry, now)]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.info("Cleaned up expired sessions", count=len(expired))
        return len(expired)

    def cleanup_expired(self) -> int:
        """Remove expired sessions, returns how many were removed"""
        with self._lock:
            return self._cleanup_locked(self._clock())

    def get(self, session_id: str) -> Optional[ChatBot]:
        with self._lock:
            now = self._clock()
            self._cleanup_locked(now)
            entry = self._sessions.get(session_id)
            if entry is None:
                return None
            entry.last_activity = now
            return entry.bot

    def get_or_create(self, session_id: str, persona: Optional[str] = None) -> ChatBot:
        with self._lock:
            now = self._clock()
            self._cleanup_locked(now)
            entry = self._sessions.get(session_id)
            if entry is None:
                bot = ChatBot(persona or settings.bot.persona, llm=self.llm, conversation_id=session_id)
                entry = SessionEntry(bot=bot, last_activity=now, created_at=now)
                self._sessions[session_id] = entry
                logger.info("Session created", session_id=session_id, persona=bot.persona.name)
            entry.last_activity = now
            return entry.bot

    def remove(self, session_id: str) -> bool:
        """
        Drop a session now.

        Raises:
            TurnInProgressError: the session is processing a turn
        """
        with self._lock:
            entry = self._sessions.get(session_id)
            if entry is None:
                return False
            if entry.bot.busy:
                raise TurnInProgressError(session_id)
            del self._sessions[session_id]
            logger.info("Session removed", session_id=session_id)
            return True

    def __len__(self) -> int:
        return len(self._sessions)


registry = SessionRegistry()


# ── App ───────────────────────────────────────────────

app = FastAPI(title="Dialogue Bot API", version="1.0.0")


@app.exception_handler(APIError)
async def api_error_handler(_: Request, exc: APIError):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_payload(exc.code, exc.message),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(_: Request, exc: RequestValidationError):
    errors = exc.errors()
    first_error = errors[0].get("msg") if errors else "Invalid request payload"
    return JSONResponse(
        status_code=400,
        content=_error_payload("BAD_REQUEST", first_error),
    )


# ── Models ────────────────────────────────────────────

class MessageRequest(BaseModel):
    text: str
    # Used only when the session is created
    persona: Optional[str] = None


# ── Endpoints ─────────────────────────────────────────

def _require_session(session_id: str) -> ChatBot:
    bot = registry.get(session_id)
    if bot is None:
        raise APIError(404, "SESSION_NOT_FOUND", f"Session '{session_id}' not found")
    return bot


@app.get("/health")
def health():
    return {"status": "ok", "sessions": len(registry), "personas": available_personas()}


@app.post("/api/v1/sessions/{session_id}/messages", dependencies=[Depends(verify_api_key)])
def post_message(session_id: str, req: MessageRequest):
    """
    Process one turn.

    NOTE: `def`, not `async def`: bot.process() is synchronous (blocking
    HTTP to Gemini), FastAPI runs it in the threadpool.
    """
    if not req.text.strip():
        raise APIError(400, "EMPTY_MESSAGE", "text must not be empty")

    try:
        bot = registry.get_or_create(session_id, req.persona)
    except PersonaConfigError as err:
        raise APIError(400, "UNKNOWN_PERSONA", str(err)) from err

    try:
        result = bot.process(req.text)
    except EmptyMessageError as err:
        raise APIError(400, "EMPTY_MESSAGE", str(err)) from err
    except TurnInProgressError as err:
        raise APIError(409, "TURN_IN_PROGRESS", str(err)) from err
    except Exception as err:
        logger.exception("Error processing message", session_id=session_id)
        raise APIError(500, "INTERNAL", "Internal server error") from err

    payload = result.to_dict()
    if not flags.intent_display:
        payload.pop("intent")
        payload.pop("confidence")
    payload["session_id"] = session_id
    return payload


@app.post("/api/v1/sessions/{session_id}/reset", dependencies=[Depends(verify_api_key)])
def reset_session(session_id: str):
    bot = _require_session(session_id)
    try:
        bot.reset()
    except TurnInProgressError as err:
        raise APIError(409, "TURN_IN_PROGRESS", str(err)) from err
    return {"session_id": session_id, "status": "reset"}


@app.delete("/api/v1/sessions/{session_id}", dependencies=[Depends(verify_api_key)])
def delete_session(session_id: str):
    _require_session(session_id)
    try:
        registry.remove(session_id)
    except TurnInProgressError as err:
        raise APIError(409, "TURN_IN_PROGRESS", str(err)) from err
    return {"session_id": session_id, "status": "deleted"}


@app.get("/api/v1/sessions/{session_id}/history", dependencies=[Depends(verify_api_key)])
def get_history(session_id: str, format: str = "json"):
    bot = _require_session(session_id)
    if format == "json":
        return {"session_id": session_id, "turns": bot.history.to_records()}
    if format == "text":
        return {"session_id": session_id, "transcript": bot.history.render_transcript()}
    raise APIError(400, "BAD_REQUEST", f"Unknown format '{format}'")
