"""Flask application entry point for the driver support portal."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from flask import Flask, abort, request

from support_portal.config import Settings
from support_portal.errors import (
    AccessDeniedError,
    CaseNotFoundError,
    EmptyInputError,
    IdentityError,
    InputNotExpectedError,
    InvalidOptionError,
    InvalidStatusTransitionError,
    SessionClosedError,
    SessionNotFoundError,
    StoreUnavailableError,
    SupportPortalError,
    UnknownStepError,
)
from support_portal.models import STATUSES, Identity
from support_portal.repositories.case_repository import CaseStore, InMemoryCaseRepository
from support_portal.repositories.session_repository import SessionRepository
from support_portal.services.case_api_client import CaseApiClient
from support_portal.services.conversation_graph import FlowCatalog
from support_portal.services.identity import HeaderIdentityProvider
from support_portal.services.intake_service import IntakeService

LOGGER = logging.getLogger(__name__)

ERROR_STATUS = {
    IdentityError: 401,
    AccessDeniedError: 403,
    SessionNotFoundError: 404,
    CaseNotFoundError: 404,
    UnknownStepError: 409,
    SessionClosedError: 409,
    InvalidStatusTransitionError: 409,
    InvalidOptionError: 400,
    InputNotExpectedError: 400,
    EmptyInputError: 400,
    StoreUnavailableError: 503,
}


def build_case_store(settings: Settings) -> CaseStore:
    if settings.case_store_api_url:
        LOGGER.info("Using case store API at %s", settings.case_store_api_url)
        return CaseApiClient(
            settings.case_store_api_url,
            timeout=settings.case_store_timeout_seconds,
            poll_interval=settings.subscribe_poll_seconds,
        )
    LOGGER.warning("CASE_STORE_API_URL not set; cases are kept in memory")
    return InMemoryCaseRepository()


def build_intake_service(settings: Settings, case_store: Optional[CaseStore] = None) -> IntakeService:
    return IntakeService(
        FlowCatalog(settings.flows_path),
        SessionRepository(settings.session_capacity),
        case_store or build_case_store(settings),
        default_flow=settings.intake_flow,
    )


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        abort(400, "Request body must be a JSON object")
    return payload


def _required_text(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        abort(400, f"'{key}' must be a string")
    return value


def create_app(settings: Optional[Settings] = None, *, intake_service: Optional[IntakeService] = None) -> Flask:
    settings = settings or Settings.from_env()
    service = intake_service or build_intake_service(settings)
    app = Flask(__name__)
    app.config["INTAKE_SERVICE"] = service

    def current_user() -> Identity:
        return HeaderIdentityProvider(request.headers, default_company=settings.default_company).current_user()

    @app.errorhandler(SupportPortalError)
    def handle_portal_error(exc: SupportPortalError) -> Tuple[Dict[str, str], int]:
        status = next((code for kind, code in ERROR_STATUS.items() if isinstance(exc, kind)), 500)
        if isinstance(exc, StoreUnavailableError):
            LOGGER.exception("Case store unavailable while handling %s %s", request.method, request.path)
        elif status >= 500:
            LOGGER.exception("Unhandled portal error for %s %s", request.method, request.path)
        return {"error": type(exc).__name__, "message": str(exc)}, status

    @app.route("/health", methods=["GET"])
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.route("/flows", methods=["GET"])
    def flows() -> Dict[str, Any]:
        return {"flows": service.catalog.names(), "default": settings.intake_flow}

    @app.route("/flows/<name>", methods=["GET"])
    def flow_detail(name: str) -> Dict[str, Any]:
        try:
            graph = service.catalog.get(name)
        except KeyError:
            abort(404, f"Flow '{name}' is not defined")
        return graph.to_dict()

    @app.route("/intake", methods=["POST"])
    def start_intake() -> Tuple[Dict[str, Any], int]:
        payload = request.get_json(silent=True) or {}
        flow_name = payload.get("flow") if isinstance(payload, dict) else None
        if flow_name and flow_name not in service.catalog.names():
            abort(404, f"Flow '{flow_name}' is not defined")
        session = service.start_intake(current_user(), flow_name)
        return session.snapshot(), 201

    @app.route("/intake", methods=["GET"])
    def list_intakes() -> Dict[str, Any]:
        sessions = service.sessions_for_driver(current_user())
        return {"sessions": [session.snapshot() for session in sessions]}

    @app.route("/intake/<session_id>", methods=["GET"])
    def intake_detail(session_id: str) -> Dict[str, Any]:
        return service.session_for(session_id, current_user()).snapshot()

    @app.route("/intake/<session_id>/option", methods=["POST"])
    def select_option(session_id: str) -> Dict[str, Any]:
        option = _required_text(_json_body(), "option")
        return service.choose_option(session_id, current_user(), option).snapshot()

    @app.route("/intake/<session_id>/input", methods=["POST"])
    def submit_input(session_id: str) -> Dict[str, Any]:
        text = _required_text(_json_body(), "text")
        return service.submit_text(session_id, current_user(), text).snapshot()

    @app.route("/intake/<session_id>/messages", methods=["POST"])
    def post_message(session_id: str) -> Tuple[Dict[str, Any], int]:
        payload = _json_body()
        text = _required_text(payload, "text")
        attachment = payload.get("attachment")
        message = service.post_message(session_id, current_user(), text, attachment)
        return message.to_dict(), 201

    @app.route("/intake/<session_id>/close", methods=["POST"])
    def close_case(session_id: str) -> Dict[str, Any]:
        payload = request.get_json(silent=True) or {}
        reason = str(payload.get("reason", "")) if isinstance(payload, dict) else ""
        return service.close_case(session_id, current_user(), reason).snapshot()

    @app.route("/intake/<session_id>/reopen", methods=["POST"])
    def reopen_case(session_id: str) -> Dict[str, Any]:
        return service.reopen_case(session_id, current_user()).snapshot()

    @app.route("/cases", methods=["GET"])
    def cases() -> Dict[str, Any]:
        status = request.args.get("status") or None
        if status and status not in STATUSES:
            abort(400, "status must be 'open' or 'closed'")
        items = service.list_cases(current_user(), status=status, query=request.args.get("q"))
        app.logger.info("Cases endpoint returning %d entries", len(items))
        return {"cases": items}

    @app.route("/cases/<case_id>", methods=["GET"])
    def case_detail(case_id: str) -> Dict[str, Any]:
        case, messages = service.case_detail(case_id, current_user(), after=request.args.get("after"))
        return {"case": case, "messages": [message.to_dict() for message in messages]}

    @app.route("/cases/<case_id>/messages", methods=["POST"])
    def post_case_message(case_id: str) -> Tuple[Dict[str, Any], int]:
        payload = _json_body()
        text = _required_text(payload, "text")
        message = service.post_case_message(case_id, current_user(), text, payload.get("attachment"))
        return message.to_dict(), 201

    @app.route("/cases/<case_id>/status", methods=["PATCH"])
    def update_case_status(case_id: str) -> Dict[str, Any]:
        payload = _json_body()
        status = _required_text(payload, "status")
        if status not in STATUSES:
            abort(400, "status must be 'open' or 'closed'")
        reason = payload.get("reason")
        case = service.update_case_status(case_id, current_user(), status, str(reason) if reason else None)
        return {"case": case}

    return app


settings = Settings.from_env()
logging.basicConfig(level=settings.log_level)
app = create_app(settings)


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5000, debug=True)
