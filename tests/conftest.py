import copy
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import requests

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
from ussd_engine.services.ussd_service import UssdService

PHONE = "+254700000001"
SERVICE_CODE = "*100#"
PIN_MENUS = ("contribution_pin",)

GROUPS_URL = f"http://api.test/users/{PHONE}/groups"
BALANCE_URL = f"http://api.test/users/{PHONE}/balance"
PAYMENTS_URL = "http://api.test/payments"

GROUPS_PAYLOAD = {
    "data": {
        "groups": [{"id": "g1", "name": "Family"}, {"id": "g2", "name": "Chama"}],
        "options": [{"id": "1", "label": "Family"}, {"id": "2", "label": "Chama"}],
    }
}

SAVINGS_APP: Dict[str, Any] = {
    "app": {"id": "savings", "code": SERVICE_CODE, "name": "Savings", "entry_menu": "main_menu"},
    "menus": [
        {
            "code": "main_menu",
            "type": "options",
            "text": "Welcome to Savings",
            "options": [
                {"id": "1", "label": "Contribute", "next": "groups"},
                {"id": "2", "label": "Balance", "next": "balance"},
                {"id": "3", "label": "Exit", "next": "goodbye"},
            ],
        },
        {
            "code": "groups",
            "type": "options",
            "text": "Select a group:",
            "api_calls": ["get_groups"],
            "next_menu": "amount",
        },
        {
            "code": "amount",
            "type": "input",
            "text": "Amount for {{groups_selected.name}}:",
            "validation_rules": {
                "required": True,
                "numeric": True,
                "minAmount": {"value": 10, "message": "Minimum contribution is 10"},
            },
            "next_menu": "contribution_pin",
        },
        {
            "code": "contribution_pin",
            "type": "input",
            "text": "Enter PIN to pay {{amount_input}}",
            "validation_rules": {"numeric": True, "minLength": 4, "maxLength": 4},
            "next_menu": "receipt",
        },
        {
            "code": "receipt",
            "type": "final",
            "text": "Paid {{amount_input}} to {{groups_selected.name}}. Ref {{reference}}",
            "api_calls": ["pay"],
        },
        {
            "code": "balance",
            "type": "final",
            "text": "Balance: {{currency:balance}}",
            "api_calls": ["get_balance"],
        },
        {"code": "goodbye", "type": "final", "text": "Goodbye"},
    ],
    "api_configs": [
        {
            "name": "get_groups",
            "endpoint": "http://api.test/users/{{phone_number}}/groups",
            "response_mapping": {"groups": "$.data.groups", "groups_options": "$.data.options"},
            "retry_count": 2,
        },
        {
            "name": "pay",
            "endpoint": PAYMENTS_URL,
            "method": "POST",
            "auth_config": {"type": "bearer", "token": "secret-token"},
            "body_template": {
                "group": "{{groups_selected_id}}",
                "amount": "{{amount_input}}",
                "pin": "{{contribution_pin_input}}",
            },
            "response_mapping": {"reference": "$.data.reference"},
            "retry_count": 1,
            "failed_attempt_type": "wrong_pin",
        },
        {
            "name": "get_balance",
            "endpoint": "http://api.test/users/{{phone_number}}/balance",
            "response_mapping": {"balance": "$.data.balance"},
        },
    ],
}


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: Optional[str] = None) -> None:
        self.status_code = status_code
        self._payload = payload
        self._text = text

    @property
    def text(self) -> str:
        if self._text is not None:
            return self._text
        return "" if self._payload is None else str(self._payload)

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)


class FakeHttpSession:
    """Replays queued responses per (method, url); the last queued item repeats."""

    def __init__(self) -> None:
        self.routes: Dict[tuple, List[Any]] = {}
        self.calls: List[Dict[str, Any]] = []

    def add(self, method: str, url: str, *responses: Any) -> None:
        self.routes[(method, url)] = list(responses)

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        queue = self.routes.get((method, url))
        if not queue:
            raise requests.ConnectionError(f"No route for {method} {url}")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    def calls_to(self, url: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["url"] == url]


class Clock:
    def __init__(self) -> None:
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_path=tmp_path / "ussd.sqlite3",
        apps_path=tmp_path / "apps",
        pin_menus=PIN_MENUS,
        cleanup_probability=0.0,
        environment="test",
    )


@pytest.fixture
def database(settings: Settings) -> Database:
    db = Database(settings.database_path)
    db.initialise()
    return db


@pytest.fixture
def definitions() -> DefinitionRepository:
    repository = DefinitionRepository()
    repository.register(copy.deepcopy(SAVINGS_APP), source="tests")
    return repository


@pytest.fixture
def app_def(definitions: DefinitionRepository):
    return definitions.get_app_by_code(SERVICE_CODE)


@pytest.fixture
def http() -> FakeHttpSession:
    session = FakeHttpSession()
    session.add("GET", GROUPS_URL, FakeResponse(200, GROUPS_PAYLOAD))
    session.add("GET", BALANCE_URL, FakeResponse(200, {"data": {"balance": 1234.5}}))
    session.add("POST", PAYMENTS_URL, FakeResponse(201, {"data": {"reference": "REF-77"}}))
    return session


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def sessions(database: Database) -> SessionRepository:
    return SessionRepository(database)


@pytest.fixture
def variables(database: Database) -> VariableRepository:
    return VariableRepository(database)


@pytest.fixture
def audit_repository(database: Database) -> AuditRepository:
    return AuditRepository(database)


@pytest.fixture
def block_repository(database: Database) -> BlockRepository:
    return BlockRepository(database)


@pytest.fixture
def blocking(block_repository: BlockRepository, clock: Clock) -> BlockingService:
    return BlockingService(block_repository, clock=clock)


@pytest.fixture
def orchestrator(definitions, audit_repository, http, sleeps) -> ApiOrchestrator:
    return ApiOrchestrator(definitions, audit_repository, http=http, sleep=sleeps.append, pin_menus=PIN_MENUS)


@pytest.fixture
def failures() -> List[tuple]:
    return []


@pytest.fixture
def engine(definitions, sessions, variables, orchestrator, failures) -> MenuEngine:
    def _record(session, menu, attempt_type):
        failures.append((session.session_id, menu.code, attempt_type))

    return MenuEngine(
        definitions,
        sessions,
        variables,
        orchestrator,
        pin_menus=PIN_MENUS,
        failure_recorder=_record,
    )


@pytest.fixture
def service(definitions, sessions, variables, orchestrator, audit_repository, blocking, clock) -> UssdService:
    engine = MenuEngine(
        definitions,
        sessions,
        variables,
        orchestrator,
        pin_menus=PIN_MENUS,
        failure_recorder=blocking.record_menu_failure,
    )
    return UssdService(
        definitions,
        sessions,
        engine,
        AuditService(audit_repository),
        blocking,
        pin_menus=PIN_MENUS,
        rng=lambda: 1.0,
        clock=clock,
    )
