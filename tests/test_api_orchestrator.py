import base64
import json

import pytest
import requests

from conftest import FakeHttpSession, FakeResponse
from ussd_engine.models import ApiCallRef, AuthConfig
from ussd_engine.repositories.definition_repository import DefinitionRepository
from ussd_engine.services.api_orchestrator import ApiOrchestrator, auth_headers, redact_body

PROFILE_URL = "http://api.test/profile/+254700"
ORDERS_URL = "http://api.test/customers/c-9/orders"

PARTNER_APP = {
    "app": {"id": "partner", "code": "*200#", "entry_menu": "home"},
    "menus": [{"code": "home", "type": "final", "text": "Home"}],
    "api_configs": [
        {
            "name": "profile",
            "endpoint": "http://api.test/profile/{{phone_number}}",
            "method": "GET",
            "headers": {"X-Trace": "{{session_id}}"},
            "body_template": {"lang": "{{lang}}"},
            "auth_config": {"type": "bearer", "token": "{{api_token}}"},
            "response_mapping": {"customer_id": "$.customer.id", "tier": "$.customer.tier"},
            "retry_count": 2,
        },
        {
            "name": "orders",
            "endpoint": "http://api.test/customers/{{customer_id}}/orders",
            "method": "POST",
            "body_template": {"tier": "{{profile.tier}}", "limit": 3},
            "response_mapping": {"order_count": "$.count"},
            "retry_count": 0,
            "failed_attempt_type": "order_lookup",
        },
    ],
}


@pytest.fixture
def partner_definitions():
    repository = DefinitionRepository()
    repository.register(PARTNER_APP, source="tests")
    return repository


@pytest.fixture
def partner_http():
    return FakeHttpSession()


@pytest.fixture
def partner(partner_definitions, audit_repository, partner_http, sleeps):
    return ApiOrchestrator(partner_definitions, audit_repository, http=partner_http, sleep=sleeps.append)


CONTEXT = {"phone_number": "+254700", "session_id": "s-1", "api_token": "tok", "lang": "en"}


def test_server_errors_are_retried_with_increasing_delays(partner, partner_http, sleeps, audit_repository):
    partner_http.add("GET", PROFILE_URL, FakeResponse(500, {"error": "boom"}))

    results = partner.run_all([ApiCallRef(name="profile")], "partner", CONTEXT, "s-1")

    result = results["profile"]
    assert not result.success
    assert result.attempts == 3
    assert result.status_code == 500
    assert sleeps == [1.0, 2.0]
    logs = audit_repository.fetch_api_calls("s-1")
    assert sorted(log.attempt for log in logs) == [1, 2, 3]
    assert all(log.status_code == 500 for log in logs)


def test_retry_delay_is_capped(partner_definitions, audit_repository, partner_http, sleeps):
    partner_http.add("GET", PROFILE_URL, requests.ConnectionError("refused"))
    orchestrator = ApiOrchestrator(partner_definitions, audit_repository, http=partner_http, sleep=sleeps.append)

    ref = ApiCallRef(name="profile", overrides={"retry_count": 5})
    result = orchestrator.run_all([ref], "partner", CONTEXT, "s-1")["profile"]

    assert result.attempts == 6
    assert result.status_code is None
    assert "refused" in result.error
    assert sleeps == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_client_errors_are_not_retried(partner, partner_http, sleeps):
    partner_http.add("GET", PROFILE_URL, FakeResponse(200, {"customer": {"id": "c-9", "tier": "gold"}}))
    partner_http.add("POST", ORDERS_URL, FakeResponse(404, {"error": "unknown"}))

    results = partner.run_all(
        [ApiCallRef(name="profile"), ApiCallRef(name="orders", overrides={"retry_count": 3})],
        "partner",
        CONTEXT,
        "s-1",
    )

    orders = results["orders"]
    assert not orders.success
    assert orders.attempts == 1
    assert orders.is_client_error
    assert orders.failed_attempt_type == "order_lookup"
    assert sleeps == []


def test_transient_failure_then_success(partner, partner_http, sleeps):
    partner_http.add(
        "GET",
        PROFILE_URL,
        requests.Timeout("read timeout"),
        FakeResponse(200, {"customer": {"id": "c-9", "tier": "gold"}}),
    )

    result = partner.run_all([ApiCallRef(name="profile")], "partner", CONTEXT, "s-1")["profile"]

    assert result.success
    assert result.attempts == 2
    assert result.data == {"customer_id": "c-9", "tier": "gold"}
    assert sleeps == [1.0]


def test_calls_chain_outputs_in_order(partner, partner_http):
    partner_http.add("GET", PROFILE_URL, FakeResponse(200, {"customer": {"id": "c-9", "tier": "gold"}}))
    partner_http.add("POST", ORDERS_URL, FakeResponse(200, {"count": 4}))

    results = partner.run_all(
        [ApiCallRef(name="profile"), ApiCallRef(name="orders")],
        "partner",
        CONTEXT,
        "s-1",
    )

    assert results["orders"].data == {"order_count": 4}
    profile_call, orders_call = partner_http.calls
    assert profile_call["params"] == {"lang": "en"}
    assert profile_call["headers"]["Authorization"] == "Bearer tok"
    assert profile_call["headers"]["X-Trace"] == "s-1"
    assert profile_call["timeout"] == 5.0
    assert orders_call["json"] == {"tier": "gold", "limit": 3}


def test_missing_configuration_is_recorded_and_batch_continues(partner, partner_http):
    partner_http.add("GET", PROFILE_URL, FakeResponse(200, {"customer": {"id": "c-9"}}))

    results = partner.run_all([ApiCallRef(name="ghost"), ApiCallRef(name="profile")], "partner", CONTEXT, "s-1")

    assert not results["ghost"].success
    assert results["ghost"].error == "API configuration not found"
    assert results["profile"].success
    assert results["profile"].data == {"customer_id": "c-9"}


def test_attempt_logs_redact_credentials(partner, partner_http, audit_repository):
    partner_http.add("GET", PROFILE_URL, FakeResponse(200, {"customer": {"id": "c-9"}}))

    partner.run_all([ApiCallRef(name="profile")], "partner", CONTEXT, "s-1")

    (log,) = audit_repository.fetch_api_calls("s-1")
    assert log.request_data["headers"]["Authorization"] == "***"
    assert log.request_data["url"] == PROFILE_URL
    assert log.response_data == {"customer": {"id": "c-9"}}


def test_auth_header_variants():
    context = {"user": "amina", "secret": "pw", "key": "k-1"}

    assert auth_headers(None, context) == {}
    assert auth_headers(AuthConfig(type="bearer", token="{{key}}"), context) == {"Authorization": "Bearer k-1"}
    expected = base64.b64encode(b"amina:pw").decode("ascii")
    basic = AuthConfig(type="basic", username="{{user}}", password="{{secret}}")
    assert auth_headers(basic, context) == {"Authorization": f"Basic {expected}"}
    apikey = AuthConfig(type="apikey", key="X-Key", value="{{key}}")
    assert auth_headers(apikey, context) == {"X-Key": "k-1"}
    custom = AuthConfig(type="custom", headers={"X-User": "{{user}}", "X-Version": 2})
    assert auth_headers(custom, context) == {"X-User": "amina", "X-Version": "2"}


def test_attempt_logs_mask_pin_derived_body_fields(orchestrator, http, audit_repository):
    context = {
        "phone_number": "+254700",
        "groups_selected_id": "g2",
        "amount_input": "500",
        "contribution_pin_input": "4321",
    }

    orchestrator.run_all([ApiCallRef(name="pay")], "savings", context, "s-1")

    (sent,) = http.calls
    assert sent["json"]["pin"] == "4321"
    (log,) = audit_repository.fetch_api_calls("s-1")
    assert log.request_data["body"] == {"group": "g2", "amount": "500", "pin": "***"}
    assert "4321" not in json.dumps(log.request_data)


def test_redact_body_follows_template_structure():
    template = {"a": "{{contribution_pin_input}}", "b": ["x", "{{lowercase:contribution_pin_input}}"], "c": 1}
    body = {"a": "4321", "b": ["x", "4321"], "c": 1}

    assert redact_body(template, body, {"contribution_pin_input"}) == {"a": "***", "b": ["x", "***"], "c": 1}
    assert redact_body(template, body, ()) == body
