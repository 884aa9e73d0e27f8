"""Masked audit trail writes and session replay."""

from __future__ import annotations

import logging
import re
from typing import Any, Collection, Dict, Iterable, List, Optional, Sequence

from ..models import AuditEntry
from ..repositories.audit_repository import AuditRepository

LOGGER = logging.getLogger(__name__)

PIN_MASK = "****"
EXCERPT_LENGTH = 500

KIND_INTERACTION = "interaction"
KIND_ERROR = "error"
KIND_TIMEOUT = "timeout"
KIND_BLOCKED = "blocked"

_FOUR_DIGITS_RE = re.compile(r"^\d{4}$")
_STANDALONE_FOUR_DIGITS_RE = re.compile(r"\b\d{4}\b")


def mask_menu_input(menu_code: Optional[str], value: str, pin_menus: Collection[str]) -> str:
    """Masks a single input entered on a PIN-class menu."""

    if value and menu_code in pin_menus:
        return PIN_MASK
    return value


def mask_tokens(
    tokens: Sequence[str],
    *,
    mask_position: int,
    offset: int = 0,
    sensitive_indexes: Collection[int] = (),
) -> str:
    """Rebuilds a ``*``-joined input with PIN-like tokens replaced.

    ``tokens`` is a slice of the dialled input starting at position ``offset``.
    Indexes in ``sensitive_indexes`` (relative to the slice) were consumed by
    PIN-class menus. Any other four-digit token whose position in the full
    input is at or beyond ``mask_position`` is masked as well.
    """

    masked: List[str] = []
    for index, token in enumerate(tokens):
        if index in sensitive_indexes:
            masked.append(PIN_MASK)
        elif offset + index >= mask_position and _FOUR_DIGITS_RE.match(token):
            masked.append(PIN_MASK)
        else:
            masked.append(token)
    return "*".join(masked)


def mask_response(text: Optional[str]) -> str:
    return _STANDALONE_FOUR_DIGITS_RE.sub(PIN_MASK, text or "")


class AuditService:
    """Writes one masked audit entry per interaction; failures are logged, never raised."""

    def __init__(self, repository: AuditRepository, *, excerpt_length: int = EXCERPT_LENGTH) -> None:
        self._repository = repository
        self._excerpt_length = excerpt_length

    def record(
        self,
        kind: str,
        *,
        session_id: Optional[str],
        phone_number: Optional[str],
        app_id: Optional[str] = None,
        menu_code: Optional[str] = None,
        menu_type: Optional[str] = None,
        user_input: Optional[str] = None,
        response_text: Optional[str] = None,
        api_calls: Iterable[Dict[str, Any]] = (),
        processing_time_ms: int = 0,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        entry = AuditEntry(
            kind=kind,
            session_id=session_id,
            phone_number=phone_number,
            app_id=app_id,
            menu_code=menu_code,
            menu_type=menu_type,
            user_input=user_input,
            response_text=mask_response(response_text)[: self._excerpt_length],
            api_calls_made=list(api_calls),
            processing_time_ms=processing_time_ms,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            self._repository.save_audit_entry(entry)
        except Exception:
            LOGGER.exception("Failed to write %s audit entry for session %s", kind, session_id)

    def replay(self, session_id: str) -> List[AuditEntry]:
        return self._repository.fetch_session_trail(session_id)

    def flow_summary(self, session_id: str) -> str:
        """One-line path through the session, e.g. ``main_menu [1] → groups [2]``."""

        steps = []
        for entry in self.replay(session_id):
            label = entry.menu_code or entry.kind
            steps.append(f"{label} [{entry.user_input}]" if entry.user_input else label)
        return " → ".join(steps)
