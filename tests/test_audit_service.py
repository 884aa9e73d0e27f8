import logging
import sqlite3

from conftest import PHONE, PIN_MENUS
from ussd_engine.services.audit_service import (
    KIND_ERROR,
    KIND_INTERACTION,
    PIN_MASK,
    AuditService,
    mask_menu_input,
    mask_response,
    mask_tokens,
)


class BrokenRepository:
    def save_audit_entry(self, entry):
        raise sqlite3.OperationalError("database is locked")


def test_mask_menu_input_only_touches_pin_menus():
    assert mask_menu_input("contribution_pin", "4321", PIN_MENUS) == PIN_MASK
    assert mask_menu_input("amount", "4321", PIN_MENUS) == "4321"
    assert mask_menu_input("contribution_pin", "", PIN_MENUS) == ""


def test_mask_tokens_hides_late_four_digit_tokens():
    tokens = ["1", "2", "1234", "500", "9", "4321", "77777"]

    masked = mask_tokens(tokens, mask_position=5)

    assert masked == "*".join(["1", "2", "1234", "500", "9", PIN_MASK, "77777"])


def test_mask_tokens_respects_offset_and_sensitive_indexes():
    assert mask_tokens(["4321"], mask_position=5, offset=5) == PIN_MASK
    assert mask_tokens(["4321"], mask_position=5, offset=0) == "4321"
    assert mask_tokens(["12", "3"], mask_position=5, sensitive_indexes={0}) == f"{PIN_MASK}*3"


def test_mask_response_replaces_standalone_four_digit_groups():
    assert mask_response("PIN 1234 accepted, ref 12345") == f"PIN {PIN_MASK} accepted, ref 12345"
    assert mask_response(None) == ""


def test_record_masks_and_truncates_response(audit_repository):
    service = AuditService(audit_repository, excerpt_length=12)

    service.record(
        KIND_INTERACTION,
        session_id="s-1",
        phone_number=PHONE,
        menu_code="main_menu",
        response_text="CON 1234 " + "x" * 40,
        api_calls=[{"name": "get_groups", "success": True}],
        processing_time_ms=7,
    )

    (entry,) = service.replay("s-1")
    assert entry.response_text == f"CON {PIN_MASK} xxx"
    assert entry.api_calls_made == [{"name": "get_groups", "success": True}]
    assert entry.processing_time_ms == 7
    assert entry.created_at


def test_record_never_raises_when_storage_fails(caplog):
    service = AuditService(BrokenRepository())

    with caplog.at_level(logging.ERROR):
        service.record(KIND_ERROR, session_id="s-1", phone_number=PHONE, response_text="END oops")

    assert "Failed to write error audit entry for session s-1" in caplog.text


def test_flow_summary_lists_menus_with_inputs(audit_repository):
    service = AuditService(audit_repository)
    service.record(KIND_INTERACTION, session_id="s-1", phone_number=PHONE, menu_code="main_menu")
    service.record(KIND_INTERACTION, session_id="s-1", phone_number=PHONE, menu_code="groups", user_input="1")
    service.record(KIND_ERROR, session_id="s-1", phone_number=PHONE, user_input="2")
    service.record(KIND_INTERACTION, session_id="other", phone_number=PHONE, menu_code="goodbye")

    assert service.flow_summary("s-1") == "main_menu → groups [1] → error [2]"
    assert service.flow_summary("missing") == ""
