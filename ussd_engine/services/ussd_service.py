"""Transport-facing handler that turns one gateway request into one reply."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Collection, Dict, List, Mapping, Optional, Set, Tuple

import requests

from ..exceptions import SessionExpired
from ..models import App, UssdSession
from ..repositories.definition_repository import DefinitionRepository
from ..repositories.session_repository import SessionRepository, parse_timestamp
from .audit_service import KIND_BLOCKED, KIND_ERROR, KIND_INTERACTION, KIND_TIMEOUT, AuditService, mask_tokens
from .blocking_service import BlockingService
from .input_validator import MAX_INPUT_LENGTH, sanitize_input
from .menu_engine import MenuEngine, RenderedMenu
from .response_formatter import (
    GENERIC_ERROR_MESSAGE,
    INVALID_REQUEST_MESSAGE,
    SERVICE_UNAVAILABLE_MESSAGE,
    SYSTEM_ERROR_MESSAGE,
    ResponseFormatter,
)
from .session_locks import SessionLockRegistry

LOGGER = logging.getLogger(__name__)

END_STATUSES = ("END", "TIMEOUT")


@dataclass(frozen=True)
class UssdRequest:
    session_id: str
    service_code: str
    phone_number: str
    text: str = ""

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "UssdRequest":
        return cls(
            session_id=str(payload.get("sessionId") or ""),
            service_code=str(payload.get("serviceCode") or ""),
            phone_number=str(payload.get("phoneNumber") or ""),
            text=str(payload.get("text") or ""),
        )

    @property
    def is_complete(self) -> bool:
        return bool(self.session_id and self.service_code and self.phone_number)


@dataclass(frozen=True)
class ClientInfo:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class UssdReply:
    text: str
    status: int = 200


def split_input(text: Optional[str]) -> List[str]:
    """Splits the accumulated ``*``-delimited input, dropping empty tokens."""

    return [token for token in (text or "").split("*") if token]


def is_timeout(exc: BaseException) -> bool:
    if isinstance(exc, (SessionExpired, requests.Timeout, TimeoutError)):
        return True
    return "timeout" in str(exc).lower()


def mask_phone(phone_number: str) -> str:
    return phone_number[:-4] + "****" if len(phone_number) > 4 else "****"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UssdService:
    """Runs the request pipeline: block check, app lookup, session resolution and menu advance."""

    def __init__(
        self,
        definitions: DefinitionRepository,
        sessions: SessionRepository,
        engine: MenuEngine,
        audit: AuditService,
        blocking: BlockingService,
        *,
        formatter: Optional[ResponseFormatter] = None,
        locks: Optional[SessionLockRegistry] = None,
        pin_menus: Collection[str] = (),
        mask_position: int = 5,
        session_timeout_seconds: int = 300,
        cleanup_probability: float = 0.1,
        max_input_length: int = MAX_INPUT_LENGTH,
        rng: Callable[[], float] = random.random,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._definitions = definitions
        self._sessions = sessions
        self._engine = engine
        self._audit = audit
        self._blocking = blocking
        self._formatter = formatter or ResponseFormatter()
        self._locks = locks or SessionLockRegistry()
        self._pin_menus = frozenset(pin_menus)
        self._mask_position = mask_position
        self._session_timeout = timedelta(seconds=session_timeout_seconds)
        self._cleanup_probability = cleanup_probability
        self._max_input_length = max_input_length
        self._rng = rng
        self._clock = clock

    @property
    def audit(self) -> AuditService:
        return self._audit

    def handle_request(self, request: UssdRequest, client: Optional[ClientInfo] = None) -> UssdReply:
        started = time.monotonic()
        client = client or ClientInfo()
        LOGGER.info(
            "USSD request session=%s service=%s phone=%s",
            request.session_id,
            request.service_code,
            mask_phone(request.phone_number),
        )
        if not request.is_complete:
            text = self._formatter.error(INVALID_REQUEST_MESSAGE, allow_retry=False)
            self._record(KIND_ERROR, request, client, started, response_text=text)
            return UssdReply(text, status=400)
        try:
            return self._handle(request, client, started)
        except Exception:
            LOGGER.exception("Unhandled error for session %s", request.session_id)
            text = self._formatter.error(SYSTEM_ERROR_MESSAGE, allow_retry=False)
            self._record(KIND_ERROR, request, client, started, response_text=text)
            return UssdReply(text)

    def handle_callback(self, session_id: str, status: Optional[str], reason: Optional[str] = None) -> bool:
        """Ends the session when the gateway reports it closed; returns whether it did."""

        LOGGER.info("USSD callback session=%s status=%s reason=%s", session_id, status, reason)
        normalized = (status or "").upper()
        if not session_id or normalized not in END_STATUSES:
            return False
        with self._locks.hold(session_id):
            self._sessions.end_session(session_id, reason or normalized.lower())
        return True

    def describe_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        session = self._sessions.get_latest_session(session_id)
        if session is None:
            return None
        return {
            "sessionId": session.session_id,
            "phoneNumber": mask_phone(session.phone_number),
            "appId": session.app_id,
            "currentMenu": session.current_menu,
            "isActive": session.is_active,
            "history": [{"input": entry.input, "menu": entry.menu} for entry in session.input_history],
            "createdAt": session.created_at,
            "updatedAt": session.updated_at,
            "endedAt": session.ended_at,
            "endReason": session.end_reason,
        }

    def _handle(self, request: UssdRequest, client: ClientInfo, started: float) -> UssdReply:
        status = self._blocking.check(request.phone_number)
        if status.is_blocked:
            LOGGER.warning("Rejected request from blocked number %s", mask_phone(request.phone_number))
            text = self._formatter.blocked(status.reason, status.unblock_at)
            self._record(KIND_BLOCKED, request, client, started, response_text=text)
            return UssdReply(text)

        self._maybe_sweep()

        app = self._definitions.get_app_by_code(request.service_code)
        if app is None or not app.is_active:
            LOGGER.warning("No active app for service code %s", request.service_code)
            text = self._formatter.error(SERVICE_UNAVAILABLE_MESSAGE, allow_retry=False)
            self._record(KIND_ERROR, request, client, started, response_text=text)
            return UssdReply(text)

        with self._locks.hold(request.session_id):
            return self._advance(request, app, client, started)

    def _advance(self, request: UssdRequest, app: App, client: ClientInfo, started: float) -> UssdReply:
        tokens = split_input(request.text)
        consumed: List[str] = []
        sensitive: Set[int] = set()
        offset = 0
        try:
            session = self._sessions.get_active_session(request.session_id)
            if session is not None and self._is_idle(session):
                raise SessionExpired(session.session_id)
            if session is None:
                session = self._sessions.create_session(request.session_id, request.phone_number, app.id)
                rendered, api_calls, consumed, sensitive = self._replay(session, tokens, app)
            else:
                raw_input = sanitize_input(tokens[-1] if tokens else "", self._max_input_length)
                offset = max(0, len(tokens) - 1)
                if session.current_menu in self._pin_menus:
                    sensitive.add(0)
                consumed = [raw_input] if raw_input else []
                rendered = self._engine.advance(session, raw_input, app)
                api_calls = rendered.api_calls
        except Exception as exc:
            return self._flow_error(exc, request, app, client, started, self._mask(consumed, offset, sensitive))

        if rendered.is_final:
            self._sessions.end_session(request.session_id, "completed")
        text = self._formatter.menu(rendered.text, end=rendered.is_final)
        self._record(
            KIND_INTERACTION,
            request,
            client,
            started,
            app_id=app.id,
            menu_code=rendered.menu.code,
            menu_type=rendered.menu.menu_type,
            user_input=self._mask(consumed, offset, sensitive),
            response_text=text,
            api_calls=api_calls,
        )
        return UssdReply(text)

    def _replay(
        self,
        session: UssdSession,
        tokens: List[str],
        app: App,
    ) -> Tuple[RenderedMenu, List[Dict[str, Any]], List[str], Set[int]]:
        """Loads the entry menu of a fresh session and feeds it every token already dialled."""

        rendered = self._engine.advance(session, "", app)
        api_calls = list(rendered.api_calls)
        consumed: List[str] = []
        sensitive: Set[int] = set()
        for token in tokens:
            if rendered.is_final:
                break
            raw_input = sanitize_input(token, self._max_input_length)
            if rendered.menu.code in self._pin_menus:
                sensitive.add(len(consumed))
            consumed.append(raw_input)
            rendered = self._engine.advance(rendered.session, raw_input, app)
            api_calls.extend(rendered.api_calls)
        return rendered, api_calls, consumed, sensitive

    def _flow_error(
        self,
        exc: Exception,
        request: UssdRequest,
        app: App,
        client: ClientInfo,
        started: float,
        user_input: Optional[str],
    ) -> UssdReply:
        if is_timeout(exc):
            LOGGER.info("Session %s timed out: %s", request.session_id, exc)
            self._sessions.end_session(request.session_id, "timeout")
            text = self._formatter.timeout()
            self._record(KIND_TIMEOUT, request, client, started, app_id=app.id, user_input=user_input, response_text=text)
            return UssdReply(text)
        LOGGER.exception("Menu processing error for session %s", request.session_id)
        text = self._formatter.error(GENERIC_ERROR_MESSAGE, allow_retry=True)
        self._record(KIND_ERROR, request, client, started, app_id=app.id, user_input=user_input, response_text=text)
        return UssdReply(text)

    def _is_idle(self, session: UssdSession) -> bool:
        updated_at = parse_timestamp(session.updated_at)
        return updated_at is not None and self._clock() - updated_at > self._session_timeout

    def _maybe_sweep(self) -> None:
        if self._rng() >= self._cleanup_probability:
            return
        try:
            expired = self._sessions.cleanup_stale(int(self._session_timeout.total_seconds()), now=self._clock())
        except Exception:
            LOGGER.exception("Stale session cleanup failed")
            return
        if expired:
            LOGGER.info("Deactivated %d stale session(s)", len(expired))

    def _mask(self, consumed: List[str], offset: int, sensitive: Set[int]) -> Optional[str]:
        if not consumed:
            return None
        return mask_tokens(
            consumed,
            mask_position=self._mask_position,
            offset=offset,
            sensitive_indexes=sensitive,
        )

    def _record(
        self,
        kind: str,
        request: UssdRequest,
        client: ClientInfo,
        started: float,
        **fields: Any,
    ) -> None:
        self._audit.record(
            kind,
            session_id=request.session_id,
            phone_number=request.phone_number,
            processing_time_ms=int((time.monotonic() - started) * 1000),
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            **fields,
        )
