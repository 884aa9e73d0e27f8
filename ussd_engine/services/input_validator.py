"""Validation rules applied to free-text input menus."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from ..models import MenuOption, ValidationRule

LOGGER = logging.getLogger(__name__)

MAX_INPUT_LENGTH = 1000
INVALID_OPTION_MESSAGE = "Invalid option. Please try again."

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")
_NUMERIC_RE = re.compile(r"^\d+$")
_DECIMAL_RE = re.compile(r"^\d+(\.\d+)?$")
_PHONE_RE = re.compile(r"^[\d\s\-+()]+$")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)


def _as_number(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_int(value: Any) -> int:
    number = _as_number(value)
    return int(number) if number is not None else 0


def _as_date(value: str) -> Optional[datetime]:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _required(value: str, _param: Any) -> bool:
    return bool(value and value.strip())


def _min_amount(value: str, param: Any) -> bool:
    number, limit = _as_number(value), _as_number(param)
    return number is not None and limit is not None and number >= limit


def _max_amount(value: str, param: Any) -> bool:
    number, limit = _as_number(value), _as_number(param)
    return number is not None and limit is not None and number <= limit


def _regex(value: str, param: Any) -> bool:
    try:
        return re.search(str(param), value) is not None
    except re.error:
        LOGGER.warning("Invalid regex validation pattern: %s", param)
        return False


def _future_date(value: str, _param: Any) -> bool:
    parsed = _as_date(value)
    return parsed is not None and parsed > datetime.now(timezone.utc)


def _past_date(value: str, _param: Any) -> bool:
    parsed = _as_date(value)
    return parsed is not None and parsed < datetime.now(timezone.utc)


VALIDATORS: Dict[str, Callable[[str, Any], bool]] = {
    "required": _required,
    "minLength": lambda value, param: len(value) >= _as_int(param),
    "maxLength": lambda value, param: len(value) <= _as_int(param),
    "numeric": lambda value, _param: bool(_NUMERIC_RE.match(value)),
    "decimal": lambda value, _param: bool(_DECIMAL_RE.match(value)),
    "phone": lambda value, _param: bool(_PHONE_RE.match(value)) and len(re.sub(r"\D", "", value)) >= 10,
    "email": lambda value, _param: bool(_EMAIL_RE.match(value)),
    "amount": lambda value, _param: (_as_number(value) or 0) > 0,
    "minAmount": _min_amount,
    "maxAmount": _max_amount,
    "regex": _regex,
    "inList": lambda value, param: isinstance(param, (list, tuple)) and value in [str(item) for item in param],
    "date": lambda value, _param: _as_date(value) is not None,
    "futureDate": _future_date,
    "pastDate": _past_date,
}


def default_message(rule: str, param: Any = None) -> str:
    messages = {
        "required": "This field is required",
        "minLength": f"Minimum length is {param} characters",
        "maxLength": f"Maximum length is {param} characters",
        "numeric": "Please enter numbers only",
        "decimal": "Please enter a valid decimal number",
        "phone": "Please enter a valid phone number",
        "email": "Please enter a valid email address",
        "amount": "Please enter a valid amount",
        "minAmount": f"Minimum amount is {param}",
        "maxAmount": f"Maximum amount is {param}",
        "regex": "Invalid format",
        "inList": "Invalid selection",
        "date": "Please enter a valid date",
        "futureDate": "Please enter a future date",
        "pastDate": "Please enter a past date",
    }
    return messages.get(rule, "Invalid input")


def validate_input(value: Optional[str], rules: Iterable[ValidationRule]) -> ValidationResult:
    """Runs every rule and collects the messages of those that fail, in rule order."""

    text = value or ""
    errors: List[str] = []
    for rule in rules:
        validator = VALIDATORS.get(rule.name)
        if validator is None:
            LOGGER.warning("Unknown validation rule: %s", rule.name)
            continue
        if not validator(text, rule.param):
            errors.append(rule.message or default_message(rule.name, rule.param))
    return ValidationResult(is_valid=not errors, errors=errors)


def sanitize_input(value: Any, max_length: int = MAX_INPUT_LENGTH) -> str:
    if value is None:
        return ""
    text = _CONTROL_CHARS_RE.sub("", str(value).strip())
    return text[:max_length]


def match_option(value: str, options: Sequence[MenuOption]) -> Optional[MenuOption]:
    selected = sanitize_input(value)
    for option in options:
        if option.id == selected:
            return option
    return None


def format_validation_errors(errors: Sequence[str]) -> str:
    if not errors:
        return ""
    if len(errors) == 1:
        return errors[0]
    numbered = "\n".join(f"{index}. {error}" for index, error in enumerate(errors, start=1))
    return f"Please fix the following:\n{numbered}"


def validation_hint(rules: Iterable[ValidationRule]) -> str:
    """Short human hint shown under an input prompt after a failed attempt."""

    by_name = {rule.name: rule for rule in rules}
    hints: List[str] = []
    if "numeric" in by_name:
        hints.append("numbers only")
    if "minLength" in by_name:
        hints.append(f"min {by_name['minLength'].param} characters")
    if "maxLength" in by_name:
        hints.append(f"max {by_name['maxLength'].param} characters")
    if "phone" in by_name:
        hints.append("valid phone number")
    if "email" in by_name:
        hints.append("valid email")
    if "amount" in by_name:
        hints.append("valid amount")
    return ", ".join(hints)
