"""Placeholder interpolation and response-path extraction for menu definitions.

Templates use ``{{path}}`` placeholders resolved against a context mapping. A
path that cannot be resolved renders as an empty string. Adjacent
placeholders such as ``{{self_amount}}{{other_amount}}`` collapse to the first
member that has a value. ``{{helper:path}}`` applies one of ``HELPERS`` to the
resolved value.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

LOGGER = logging.getLogger(__name__)

_PATH = r"[^{}:]+?"
PLACEHOLDER_RE = re.compile(r"\{\{\s*(" + _PATH + r")\s*\}\}")
PLACEHOLDER_GROUP_RE = re.compile(r"(?:\{\{\s*" + _PATH + r"\s*\}\}){2,}")
LEFTOVER_RE = re.compile(r"\{\{[^{}]*\}\}")
PATH_SPLIT_RE = re.compile(r"[.\[\]]+")
HELPER_RE = re.compile(r"\{\{\s*(\w+):([^}]+)\}\}")
SEGMENT_RE = re.compile(r"^([^\[\]]*)((?:\[\d+\])*)$")
INDEX_RE = re.compile(r"\[(\d+)\]")

CURRENCY_SYMBOLS = {"USD": "$", "EUR": "€", "GBP": "£"}
DATE_FORMATS = {"short": "%m/%d/%Y", "long": "%B %d, %Y", "time": "%H:%M"}


def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, separators=(",", ":"), default=str)
    return str(value)


def _decode(value: Any) -> Any:
    if isinstance(value, str) and value[:1] in ("{", "["):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def lookup(context: Mapping[str, Any], path: str) -> Any:
    """Resolves ``a.b.0`` or ``a.b[0]`` paths, descending into JSON-encoded strings and lists."""

    keys = [part for part in PATH_SPLIT_RE.split(path.strip()) if part]
    if not keys:
        return None
    value: Any = context
    for key in keys:
        value = _decode(value)
        if isinstance(value, Mapping) and key in value:
            value = value[key]
        elif isinstance(value, list) and key.isdigit() and int(key) < len(value):
            value = value[int(key)]
        else:
            return None
    return value


def _resolved(context: Mapping[str, Any], path: str) -> str:
    text = stringify(lookup(context, path))
    if not text:
        LOGGER.debug("Template variable not found: %s", path)
    return text


def interpolate(template: Any, context: Mapping[str, Any]) -> Any:
    """Replaces ``{{path}}`` placeholders; non-string templates pass through untouched."""

    if not isinstance(template, str) or "{{" not in template:
        return template

    def _first_non_empty(match: re.Match) -> str:
        for path in PLACEHOLDER_RE.findall(match.group(0)):
            text = _resolved(context, path)
            if text:
                return text
        return ""

    result = PLACEHOLDER_GROUP_RE.sub(_first_non_empty, template)
    result = PLACEHOLDER_RE.sub(lambda match: _resolved(context, match.group(1)), result)
    return LEFTOVER_RE.sub("", result)


def interpolate_structure(template: Any, context: Mapping[str, Any]) -> Any:
    """Interpolates every string leaf of a nested dict/list template."""

    if isinstance(template, str):
        return interpolate(template, context)
    if isinstance(template, Mapping):
        return {key: interpolate_structure(value, context) for key, value in template.items()}
    if isinstance(template, (list, tuple)):
        return [interpolate_structure(item, context) for item in template]
    return template


def format_currency(amount: Any, currency: str = "USD") -> str:
    try:
        number = float(amount)
    except (TypeError, ValueError):
        return stringify(amount)
    symbol = CURRENCY_SYMBOLS.get(currency.upper(), f"{currency.upper()} ")
    sign = "-" if number < 0 else ""
    return f"{sign}{symbol}{abs(number):,.2f}"


def format_date(value: Any, style: str = "short") -> str:
    text = stringify(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return stringify(value)
    return parsed.strftime(DATE_FORMATS.get(style, DATE_FORMATS["short"]))


def _capitalize(value: str) -> str:
    return value[:1].upper() + value[1:]


HELPERS: Dict[str, Callable[[str], str]] = {
    "currency": format_currency,
    "date": format_date,
    "uppercase": lambda value: value.upper(),
    "lowercase": lambda value: value.lower(),
    "capitalize": _capitalize,
}


def render(template: Optional[str], context: Mapping[str, Any]) -> str:
    """Applies helper placeholders first, then plain placeholders."""

    if not template:
        return ""

    def _apply_helper(match: re.Match) -> str:
        helper = HELPERS.get(match.group(1))
        if helper is None:
            LOGGER.warning("Unknown template helper: %s", match.group(1))
            return ""
        value = _resolved(context, match.group(2).strip())
        return helper(value) if value else ""

    return interpolate(HELPER_RE.sub(_apply_helper, template), context)


def extract_path(data: Any, path: Any) -> Any:
    """Reads ``$.a.b[0].c`` style paths (or a bare top-level key); missing steps yield None."""

    if not isinstance(path, str) or not path or path == "$":
        return data
    if not path.startswith("$."):
        return data.get(path) if isinstance(data, Mapping) else None
    result = data
    for segment in path[2:].split("."):
        match = SEGMENT_RE.match(segment)
        if not match:
            return None
        key, indexes = match.groups()
        if key:
            if not isinstance(result, Mapping) or key not in result:
                return None
            result = result[key]
        for index in INDEX_RE.findall(indexes):
            position = int(index)
            if not isinstance(result, list) or position >= len(result):
                return None
            result = result[position]
    return result


def apply_response_mapping(response: Any, mapping: Optional[Mapping[str, str]]) -> Dict[str, Any]:
    """Builds the named outputs of an API call; absent paths are left out."""

    if not mapping:
        return dict(response) if isinstance(response, Mapping) else {}
    outputs: Dict[str, Any] = {}
    for name, path in mapping.items():
        value = extract_path(response, path)
        if value is not None:
            outputs[name] = value
    return outputs
