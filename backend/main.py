from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from askeve_core import FlowResult, FlowServices, FlowSettings, HookRunner, create_engine
from askeve_core.models import ConversationState
from askeve_services import (
    ConsentLedgerService,
    CuratedContentService,
    NurseTeamNotifier,
    SearchApiContentService,
)
from memory import ConsentStore, ConversationArchive, PolicyAuditLog, SQLiteMemoryDB
from memory.time_utils import to_iso

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_LOGGER_NAMESPACES = ("askeve_core", "askeve_services", "memory", "main")
_HANDLER_NAME = "askeve"

MAX_MESSAGE_CHARS = 2000

logger = logging.getLogger(__name__)


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def _bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    for candidate in (repo_root / ".env", repo_root / "backend/.env"):
        if candidate.exists():
            _load_local_env_file(candidate)


_bootstrap_local_env()


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": to_iso(datetime.fromtimestamp(record.created, tz=timezone.utc)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        conversation_id = getattr(record, "conversation_id", None)
        if conversation_id:
            entry["conversation_id"] = conversation_id
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def configure_logging() -> None:
    level = getattr(logging, os.getenv("ASKEVE_LOG_LEVEL", "INFO").upper(), logging.INFO)
    if os.getenv("LOG_FORMAT", "readable").lower() == "json":
        formatter: logging.Formatter = JsonLogFormatter()
    else:
        formatter = logging.Formatter("[%(asctime)s] %(levelname)s %(name)s - %(message)s", datefmt="%H:%M:%S")

    for name in _LOGGER_NAMESPACES:
        package_logger = logging.getLogger(name)
        package_logger.setLevel(level)
        existing = [handler for handler in package_logger.handlers if handler.get_name() == _HANDLER_NAME]
        if existing:
            existing[0].setFormatter(formatter)
            continue
        handler = logging.StreamHandler()
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)


configure_logging()


class ChatRequest(BaseModel):
    message: str
    conversation_id: str | None = None
    session_id: str | None = None


class AskEveApp:
    def __init__(self) -> None:
        self.settings = FlowSettings.from_env()
        db_path = os.getenv(
            "ASKEVE_DB_PATH",
            str(Path(__file__).resolve().parent / "askeve.sqlite"),
        )
        self.db = SQLiteMemoryDB(db_path)
        self.consents = ConsentStore(self.db)
        self.audit_log = PolicyAuditLog(self.db)
        self.archive = ConversationArchive(self.db)

        timeout = float(os.getenv("ASKEVE_HTTP_TIMEOUT_SECONDS", "8"))
        search_url = (os.getenv("ASKEVE_CONTENT_SEARCH_URL") or "").strip()
        if search_url:
            content: Any = SearchApiContentService(
                search_url,
                api_key=os.getenv("ASKEVE_CONTENT_SEARCH_KEY"),
                timeout=timeout,
            )
        else:
            content = CuratedContentService()
        self.services = FlowServices(
            content=content,
            escalation=NurseTeamNotifier(webhook_url=os.getenv("ASKEVE_NURSE_WEBHOOK_URL"), timeout=timeout),
            gdpr=ConsentLedgerService(self.consents, validity_days=self.settings.consent_validity_days),
            audit=self.audit_log,
        )

        self.hooks = HookRunner()
        self.hooks.add_after(self._archive_turn)
        self.engine = create_engine(
            self.settings,
            self.services,
            hooks=self.hooks,
            on_expire=self._on_expire,
        )

    def _archive_turn(self, result: FlowResult) -> None:
        if result.new_state is not None:
            self.archive.save_snapshot(result.new_state.as_dict())

    def _on_expire(self, state: ConversationState) -> None:
        self.archive.mark_expired(state.conversation_id)


container = AskEveApp()
app = FastAPI(title="Ask Eve Assist")

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in allowed_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


_TRUSTED_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:@-]{1,63}$")


def _validated_trusted_user_id(x_user_id: str) -> str:
    candidate = x_user_id.strip()
    if not candidate or not _TRUSTED_ID_RE.fullmatch(candidate):
        raise HTTPException(status_code=400, detail="Invalid X-User-Id")
    return candidate


def _validated_conversation_id(conversation_id: str | None) -> str:
    if conversation_id is None:
        return uuid.uuid4().hex
    candidate = conversation_id.strip()
    if not _TRUSTED_ID_RE.fullmatch(candidate):
        raise HTTPException(status_code=400, detail="Invalid conversation_id")
    return candidate


def resolve_user_id(x_user_id: str | None, conversation_id: str) -> str:
    if x_user_id is not None:
        return _validated_trusted_user_id(x_user_id)
    # Anonymous visitors are keyed to the conversation they started.
    return f"anon_{hashlib.sha1(conversation_id.encode('utf-8')).hexdigest()[:20]}"


def _validated_message(message: str) -> str:
    text = message.strip()
    if not text:
        raise HTTPException(status_code=400, detail="Message must not be empty.")
    if len(text) > MAX_MESSAGE_CHARS:
        raise HTTPException(status_code=413, detail=f"Message exceeds {MAX_MESSAGE_CHARS} characters.")
    return text


def _ensure_owner(conversation_id: str, user_id: str) -> ConversationState | None:
    state = container.engine.state_manager.get_current(conversation_id)
    if state is not None and state.user_id != user_id:
        raise HTTPException(status_code=403, detail="Conversation belongs to another user.")
    return state


def _prepare_turn(payload: ChatRequest, x_user_id: str | None) -> tuple[str, str, str]:
    message = _validated_message(payload.message)
    conversation_id = _validated_conversation_id(payload.conversation_id)
    user_id = resolve_user_id(x_user_id, conversation_id)
    _ensure_owner(conversation_id, user_id)
    return conversation_id, user_id, message


def _envelope(conversation_id: str, result: FlowResult) -> dict[str, Any]:
    body = result.as_envelope()
    body["conversation_id"] = conversation_id
    return body


def _emit_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def _token_chunks(text: str) -> list[str]:
    return re.findall(r"\S+\s*|\s+", text)


@app.get("/health")
def health():
    return container.engine.health()


@app.post("/chat")
def chat(payload: ChatRequest, x_user_id: str | None = Header(default=None)):
    conversation_id, user_id, message = _prepare_turn(payload, x_user_id)
    result = container.engine.process_message(conversation_id, user_id, message, payload.session_id)
    return _envelope(conversation_id, result)


@app.post("/chat/stream")
def chat_stream(payload: ChatRequest, x_user_id: str | None = Header(default=None)):
    conversation_id, user_id, message = _prepare_turn(payload, x_user_id)

    def event_stream():
        try:
            result = container.engine.process_message(conversation_id, user_id, message, payload.session_id)
            for chunk in _token_chunks(result.response.text):
                yield _emit_sse("token", {"delta": chunk})
            yield _emit_sse(
                "message",
                {
                    "text": result.response.text,
                    "suggested_actions": list(result.response.suggested_actions),
                    "topic": result.topic,
                    "escalation_triggered": result.escalation_triggered,
                    "conversation_ended": result.conversation_ended,
                },
            )
            state = result.new_state.as_dict() if result.new_state is not None else None
            yield _emit_sse("state", {"conversation_id": conversation_id, "state": state})
        except Exception:
            logger.exception("chat_stream failed", extra={"conversation_id": conversation_id})
            yield _emit_sse("error", {"message": "Chat pipeline error."})

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@app.get("/conversations/{conversation_id}")
def get_conversation(conversation_id: str, x_user_id: str | None = Header(default=None)):
    conversation_id = _validated_conversation_id(conversation_id)
    user_id = resolve_user_id(x_user_id, conversation_id)
    state = _ensure_owner(conversation_id, user_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Conversation not found.")
    return state.as_dict()


@app.post("/maintenance/sweep")
def sweep_expired():
    return {"removed": container.engine.state_manager.sweep_expired()}
