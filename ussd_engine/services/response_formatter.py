"""Builds the single-line ``CON``/``END`` replies sent back to the USSD gateway."""

from __future__ import annotations

import re
from datetime import datetime
from typing import List, Optional, Sequence, Set, Tuple

from ..models import MenuOption

NUMBERED_OPTION_RE = re.compile(r"\n\d+\.")
OPTION_LINE_RE = re.compile(r"^(\d+)\.\s+(.+)$")

NO_OPTIONS_NOTICE = "No options available for this menu.\n0. Back to main menu"
GENERIC_ERROR_MESSAGE = "An error occurred. Please try again."
SYSTEM_ERROR_MESSAGE = "System error. Please try again later."
SERVICE_UNAVAILABLE_MESSAGE = "Service not available"
INVALID_REQUEST_MESSAGE = "Invalid request parameters"
TIMEOUT_MESSAGE = "Session timed out. Please dial again to continue."


def has_numbered_options(text: str) -> bool:
    return bool(NUMBERED_OPTION_RE.search(text or ""))


def build_menu_text(text: str, options: Sequence[MenuOption]) -> str:
    """Appends ``id. label`` lines unless the rendered text already lists options."""

    if not options or has_numbered_options(text):
        return (text or "").strip()
    lines = [(text or "").rstrip("\n")]
    lines.extend(f"{option.id}. {option.label}" for option in options)
    return "\n".join(lines).strip()


def dedupe_option_lines(text: str) -> str:
    seen: Set[Tuple[str, str]] = set()
    kept: List[str] = []
    for line in text.split("\n"):
        match = OPTION_LINE_RE.match(line)
        if match:
            key = (match.group(1), match.group(2).strip())
            if key in seen:
                continue
            seen.add(key)
        kept.append(line)
    return "\n".join(kept).strip()


def format_input_prompt(prompt: str, hint: str = "") -> str:
    return f"{prompt}\n({hint})" if hint else prompt


class ResponseFormatter:
    """Prefixes reply bodies with the gateway's continue/end markers."""

    def __init__(self, continue_prefix: str = "CON", end_prefix: str = "END") -> None:
        self.continue_prefix = continue_prefix
        self.end_prefix = end_prefix

    def _prefix(self, end: bool) -> str:
        return self.end_prefix if end else self.continue_prefix

    def menu(self, text: str, *, end: bool) -> str:
        return f"{self._prefix(end)} {dedupe_option_lines(text)}"

    def error(self, message: str = GENERIC_ERROR_MESSAGE, *, allow_retry: bool = True) -> str:
        body = f"{message}\n\n0. Back to main menu" if allow_retry else message
        return f"{self._prefix(not allow_retry)} {body}"

    def end(self, message: str) -> str:
        return f"{self.end_prefix} {message}"

    def timeout(self) -> str:
        return self.end(TIMEOUT_MESSAGE)

    def blocked(self, reason: Optional[str], unblock_at: Optional[datetime]) -> str:
        reason = reason or "Security restriction"
        if unblock_at is None:
            return self.end(f"Your account has been blocked: {reason}. Please contact support.")
        until = unblock_at.strftime("%Y-%m-%d %H:%M")
        return self.end(f"Your account is temporarily blocked: {reason}. Try again after {until} UTC.")
