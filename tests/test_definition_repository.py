import copy
import logging
from pathlib import Path

import pytest

from conftest import SAVINGS_APP
from ussd_engine.models import MENU_INPUT, ApiCallRef
from ussd_engine.repositories.definition_repository import (
    DefinitionRepository,
    parse_api_call_refs,
    parse_auth_config,
    parse_menu,
    parse_options,
)

BUNDLED_APPS = Path(__file__).resolve().parents[1] / "ussd_engine" / "apps"


def test_bundled_apps_load_without_link_warnings(caplog):
    with caplog.at_level(logging.WARNING):
        repository = DefinitionRepository(BUNDLED_APPS)

    app = repository.get_app_by_code("*384#")
    assert app.entry_menu == "main_menu"
    assert repository.get_menu(app.id, "contribution_pin").menu_type == MENU_INPUT
    assert repository.get_api_config(app.id, "process_contribution").timeout_ms == 8000
    assert caplog.text == ""


def test_duplicate_menu_codes_are_rejected():
    payload = copy.deepcopy(SAVINGS_APP)
    payload["menus"].append({"code": "goodbye", "type": "final", "text": "Again"})

    with pytest.raises(ValueError, match="Duplicate menu code 'goodbye'"):
        DefinitionRepository().register(payload)


def test_unknown_menu_type_and_missing_fields_are_rejected():
    with pytest.raises(ValueError, match="unsupported type"):
        parse_menu("a", {"code": "x", "type": "carousel"})
    with pytest.raises(ValueError):
        parse_menu("a", {"type": "final"})
    with pytest.raises(ValueError):
        DefinitionRepository().register({"app": {"code": "*1#"}, "menus": []})


def test_api_overrides_are_merged_per_reference(definitions):
    overridden = definitions.get_api_config("savings", "pay", {"retry_count": 0, "timeout": 1500})
    base = definitions.get_api_config("savings", "pay")

    assert overridden.retry_count == 0
    assert overridden.timeout_ms == 1500
    assert overridden.failed_attempt_type == "wrong_pin"
    assert base.retry_count == 1
    assert base.timeout_ms == 5000
    assert definitions.get_api_config("savings", "missing") is None


def test_broken_links_are_reported(caplog):
    with caplog.at_level(logging.WARNING):
        DefinitionRepository().register(
            {
                "app": {"id": "loose", "code": "*5#", "entry_menu": "home"},
                "menus": [
                    {"code": "start", "type": "input", "text": "Name?", "api_calls": ["lookup"]},
                    {"code": "pick", "type": "options", "options": [{"id": "1", "label": "Go", "next": "gone"}]},
                ],
            }
        )

    assert "entry menu 'home' is not defined" in caplog.text
    assert "points to undefined menu 'gone'" in caplog.text
    assert "Menu start in app *5# has no way forward" in caplog.text
    assert "references unknown API 'lookup'" in caplog.text


def test_fields_stored_as_json_text_are_decoded():
    options = parse_options('[{"id": 1, "label": "One", "next": "one"}, {"label": "no id"}]')
    refs = parse_api_call_refs('["a", {"name": "b", "config": {"retry_count": 0}}, {"config": {}}]')

    assert [(option.id, option.next) for option in options] == [("1", "one")]
    assert refs == (ApiCallRef(name="a"), ApiCallRef(name="b", overrides={"retry_count": 0}))
    assert parse_options("not json") == ()


def test_auth_config_parsing():
    assert parse_auth_config(None) is None
    assert parse_auth_config({"type": "oauth2"}) is None
    auth = parse_auth_config('{"type": "Bearer", "token": "{{token}}"}')
    assert auth.type == "bearer"
    assert auth.token == "{{token}}"
