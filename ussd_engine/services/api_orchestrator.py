"""Executes the external API calls configured on a menu."""

from __future__ import annotations

import base64
import logging
import re
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Collection, Dict, Mapping, Optional, Sequence, Set

import requests

from ..models import AUTH_APIKEY, AUTH_BASIC, AUTH_BEARER, AUTH_CUSTOM, ApiCallConfig, ApiCallLog, ApiCallRef, AuthConfig
from ..repositories.audit_repository import AuditRepository
from ..repositories.definition_repository import DefinitionRepository
from .template_engine import apply_response_mapping, interpolate, interpolate_structure, stringify

LOGGER = logging.getLogger(__name__)

BODY_METHODS = ("POST", "PUT", "PATCH")
REDACTED = "***"
SENSITIVE_HEADERS = ("authorization", "proxy-authorization", "x-api-key", "api-key")
TEMPLATE_ROOT_RE = re.compile(r"\{\{\s*(?:\w+:)?\s*([^{}.\[\]\s:]+)")


@dataclass(frozen=True)
class ApiCallResult:
    name: str
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    raw_data: Any = None
    status_code: Optional[int] = None
    error: Optional[str] = None
    attempts: int = 0
    failed_attempt_type: Optional[str] = None

    @property
    def is_client_error(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500

    def summary(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "success": self.success,
            "status_code": self.status_code,
            "attempts": self.attempts,
        }


def auth_headers(auth: Optional[AuthConfig], context: Mapping[str, Any]) -> Dict[str, str]:
    """Builds the headers contributed by an auth config, with templated credentials."""

    if auth is None:
        return {}
    if auth.type == AUTH_BEARER:
        return {"Authorization": f"Bearer {interpolate(auth.token or '', context)}"}
    if auth.type == AUTH_BASIC:
        username = interpolate(auth.username or "", context)
        password = interpolate(auth.password or "", context)
        token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {token}"}
    if auth.type == AUTH_APIKEY:
        name = interpolate(auth.key or "X-API-Key", context)
        return {name: interpolate(auth.value or "", context)}
    if auth.type == AUTH_CUSTOM:
        return {str(key): stringify(value) for key, value in interpolate_structure(auth.headers, context).items()}
    return {}


def redact_headers(headers: Mapping[str, str], extra: Sequence[str] = ()) -> Dict[str, str]:
    hidden = {name.lower() for name in SENSITIVE_HEADERS} | {name.lower() for name in extra}
    return {key: (REDACTED if key.lower() in hidden else value) for key, value in headers.items()}


def _template_roots(template: str) -> Set[str]:
    return set(TEMPLATE_ROOT_RE.findall(template))


def redact_body(template: Any, body: Any, hidden: Collection[str]) -> Any:
    """Masks every leaf of ``body`` whose template reads one of the ``hidden`` variables."""

    if not hidden:
        return body
    if isinstance(template, str):
        return REDACTED if _template_roots(template) & set(hidden) else body
    if isinstance(template, Mapping) and isinstance(body, Mapping):
        return {key: redact_body(template.get(key), value, hidden) for key, value in body.items()}
    if isinstance(template, (list, tuple)) and isinstance(body, list):
        return [redact_body(item, value, hidden) for item, value in zip(template, body)]
    return body


def _response_payload(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class ApiOrchestrator:
    """Runs API calls in order, retrying transient failures and logging every attempt."""

    def __init__(
        self,
        definitions: DefinitionRepository,
        audit_repository: AuditRepository,
        *,
        http: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        base_delay: float = 1.0,
        max_delay: float = 5.0,
        pin_menus: Collection[str] = (),
    ) -> None:
        self._definitions = definitions
        self._audit = audit_repository
        self._http = http or requests.Session()
        self._sleep = sleep
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._hidden_variables = frozenset(f"{code}_input" for code in pin_menus)

    def retry_delay(self, attempt: int) -> float:
        return min(self._base_delay * (2 ** attempt), self._max_delay)

    def run_all(
        self,
        calls: Sequence[ApiCallRef],
        app_id: str,
        context: Mapping[str, Any],
        session_id: Optional[str],
    ) -> Dict[str, ApiCallResult]:
        """Executes ``calls`` sequentially; each call sees the outputs of earlier successes."""

        results: Dict[str, ApiCallResult] = {}
        accumulated: Dict[str, Any] = dict(context)
        for ref in calls:
            try:
                config = self._definitions.get_api_config(app_id, ref.name, ref.overrides)
            except ValueError as exc:
                LOGGER.error("Invalid overrides for API %s in app %s: %s", ref.name, app_id, exc)
                results[ref.name] = ApiCallResult(name=ref.name, success=False, error=str(exc))
                continue
            if config is None:
                LOGGER.error("API configuration not found: %s (app %s)", ref.name, app_id)
                results[ref.name] = ApiCallResult(name=ref.name, success=False, error="API configuration not found")
                continue
            result = self.execute(config, accumulated, session_id)
            results[ref.name] = result
            if result.success:
                accumulated = {**accumulated, **result.data, ref.name: result.data}
        return results

    def execute(self, config: ApiCallConfig, context: Mapping[str, Any], session_id: Optional[str]) -> ApiCallResult:
        url = interpolate(config.endpoint, context)
        headers = {str(key): stringify(value) for key, value in interpolate_structure(config.headers, context).items()}
        credentials = auth_headers(config.auth, context)
        headers.update(credentials)
        body = interpolate_structure(config.body_template, context)

        request_kwargs: Dict[str, Any] = {"headers": headers}
        if config.method == "GET":
            if body:
                request_kwargs["params"] = body
        elif config.method in BODY_METHODS:
            request_kwargs["json"] = body
        request_shape = {
            "method": config.method,
            "url": redact_body(config.endpoint, url, self._hidden_variables),
            "headers": redact_headers(headers, extra=list(credentials)),
            "body": redact_body(config.body_template, body, self._hidden_variables),
        }

        max_attempts = config.retry_count + 1
        result = ApiCallResult(name=config.name, success=False)
        for attempt in range(1, max_attempts + 1):
            result = self._attempt(config, url, request_kwargs, request_shape, session_id, attempt)
            if result.success:
                return result
            if result.is_client_error:
                LOGGER.warning("API %s rejected with status %s; not retrying", config.name, result.status_code)
                break
            if attempt < max_attempts:
                delay = self.retry_delay(attempt - 1)
                LOGGER.warning(
                    "API %s attempt %d/%d failed (%s); retrying in %.1fs",
                    config.name,
                    attempt,
                    max_attempts,
                    result.error,
                    delay,
                )
                self._sleep(delay)
        LOGGER.error("API %s failed after %d attempt(s): %s", config.name, result.attempts, result.error)
        return replace(result, failed_attempt_type=config.failed_attempt_type)

    def _attempt(
        self,
        config: ApiCallConfig,
        url: str,
        request_kwargs: Dict[str, Any],
        request_shape: Dict[str, Any],
        session_id: Optional[str],
        attempt: int,
    ) -> ApiCallResult:
        started = time.monotonic()
        status_code: Optional[int] = None
        payload: Any = None
        try:
            response = self._http.request(config.method, url, timeout=config.timeout_ms / 1000, **request_kwargs)
            status_code = response.status_code
            payload = _response_payload(response)
            response.raise_for_status()
        except requests.RequestException as exc:
            result = ApiCallResult(
                name=config.name,
                success=False,
                raw_data=payload,
                status_code=status_code,
                error=str(exc) or exc.__class__.__name__,
                attempts=attempt,
            )
        else:
            result = ApiCallResult(
                name=config.name,
                success=True,
                data=apply_response_mapping(payload, config.response_mapping),
                raw_data=payload,
                status_code=status_code,
                attempts=attempt,
            )
        duration_ms = int((time.monotonic() - started) * 1000)
        self._log_attempt(session_id, config.name, attempt, request_shape, result, duration_ms)
        return result

    def _log_attempt(
        self,
        session_id: Optional[str],
        api_name: str,
        attempt: int,
        request_shape: Dict[str, Any],
        result: ApiCallResult,
        duration_ms: int,
    ) -> None:
        try:
            self._audit.save_api_call(
                ApiCallLog(
                    session_id=session_id,
                    api_name=api_name,
                    attempt=attempt,
                    request_data=request_shape,
                    response_data=result.raw_data,
                    status_code=result.status_code,
                    error_message=result.error,
                    duration_ms=duration_ms,
                )
            )
        except Exception:
            LOGGER.exception("Failed to log API call %s for session %s", api_name, session_id)
