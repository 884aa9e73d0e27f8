"""Errors raised by the menu flow and request handling layers."""

from __future__ import annotations


class ConfigurationError(Exception):
    """A definition is missing or points somewhere it should not."""


class MenuNotFound(ConfigurationError):
    def __init__(self, app_id: str, menu_code: str) -> None:
        super().__init__(f"Menu not found: {menu_code} (app {app_id})")
        self.app_id = app_id
        self.menu_code = menu_code


class SessionExpired(Exception):
    """Raised when a request arrives for a session idle past its timeout."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} timeout")
        self.session_id = session_id
