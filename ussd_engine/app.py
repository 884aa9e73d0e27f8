"""Flask application entry point for the USSD gateway."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests
from flask import Flask, Response, abort, request

from ussd_engine.config import Settings
from ussd_engine.database import Database
from ussd_engine.repositories.audit_repository import AuditRepository
from ussd_engine.repositories.block_repository import BlockRepository
from ussd_engine.repositories.definition_repository import DefinitionRepository
from ussd_engine.repositories.session_repository import SessionRepository
from ussd_engine.repositories.variable_repository import VariableRepository
from ussd_engine.services.api_orchestrator import ApiOrchestrator
from ussd_engine.services.audit_service import AuditService
from ussd_engine.services.blocking_service import BlockingService
from ussd_engine.services.menu_engine import MenuEngine
from ussd_engine.services.response_formatter import ResponseFormatter
from ussd_engine.services.ussd_service import ClientInfo, UssdRequest, UssdService

LOGGER = logging.getLogger(__name__)


def build_service(
    settings: Settings,
    *,
    definitions: Optional[DefinitionRepository] = None,
    http: Optional[requests.Session] = None,
) -> UssdService:
    """Wires repositories and services for one database file."""

    database = Database(settings.database_path)
    database.initialise()
    definitions = definitions or DefinitionRepository(
        settings.apps_path,
        default_timeout_ms=settings.default_api_timeout_ms,
    )
    sessions = SessionRepository(database)
    audit_repository = AuditRepository(database)
    blocking = BlockingService(BlockRepository(database))
    orchestrator = ApiOrchestrator(
        definitions,
        audit_repository,
        http=http,
        base_delay=settings.retry_base_delay,
        max_delay=settings.retry_max_delay,
        pin_menus=settings.pin_menus,
    )
    engine = MenuEngine(
        definitions,
        sessions,
        VariableRepository(database),
        orchestrator,
        pin_menus=settings.pin_menus,
        failure_recorder=blocking.record_menu_failure,
    )
    return UssdService(
        definitions,
        sessions,
        engine,
        AuditService(audit_repository),
        blocking,
        formatter=ResponseFormatter(settings.response_continue, settings.response_end),
        pin_menus=settings.pin_menus,
        mask_position=settings.mask_position,
        session_timeout_seconds=settings.session_timeout_seconds,
        cleanup_probability=settings.cleanup_probability,
        max_input_length=settings.max_input_length,
    )


def create_app(settings: Optional[Settings] = None, *, service: Optional[UssdService] = None) -> Flask:
    settings = settings or Settings.from_env()
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
    ussd_service = service or build_service(settings)
    audit_service = ussd_service.audit

    app = Flask(__name__)

    def _payload() -> Dict[str, Any]:
        payload = request.get_json(silent=True)
        if isinstance(payload, dict):
            return payload
        return request.form.to_dict()

    @app.route("/health", methods=["GET"])
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.route("/ussd", methods=["POST"])
    def ussd() -> Response:
        client = ClientInfo(ip_address=request.remote_addr, user_agent=request.headers.get("User-Agent"))
        reply = ussd_service.handle_request(UssdRequest.from_payload(_payload()), client)
        return Response(reply.text, status=reply.status, mimetype="text/plain")

    @app.route("/ussd/callback", methods=["POST"])
    def ussd_callback() -> Dict[str, Any]:
        payload = _payload()
        ended = ussd_service.handle_callback(
            str(payload.get("sessionId") or ""),
            payload.get("status"),
            payload.get("reason"),
        )
        LOGGER.info("Callback for session %s ended=%s", payload.get("sessionId"), ended)
        return {"success": True}

    if not settings.is_production:

        @app.route("/sessions/<session_id>", methods=["GET"])
        def session_info(session_id: str) -> Dict[str, Any]:
            info = ussd_service.describe_session(session_id)
            if info is None:
                abort(404, "Session not found")
            return info

        @app.route("/sessions/<session_id>/audit", methods=["GET"])
        def session_audit(session_id: str) -> Dict[str, Any]:
            entries = audit_service.replay(session_id)
            return {
                "sessionId": session_id,
                "flow": audit_service.flow_summary(session_id),
                "steps": [
                    {
                        "kind": entry.kind,
                        "menu": entry.menu_code,
                        "menuType": entry.menu_type,
                        "input": entry.user_input,
                        "response": entry.response_text,
                        "apiCalls": entry.api_calls_made,
                        "processingTimeMs": entry.processing_time_ms,
                        "timestamp": entry.created_at,
                    }
                    for entry in entries
                ],
            }

    return app


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=5000, debug=True)
