"""Context assembly, dynamic option discovery and selection bookkeeping."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..models import Menu, MenuOption
from ..repositories.definition_repository import parse_options

LOGGER = logging.getLogger(__name__)

OPTIONS_SUFFIX = "_options"
DERIVED_KEY_MARKERS = ("_options", "_list", "_input", "_selected")


def build_context(
    data: Mapping[str, Any],
    variables: Mapping[str, Any],
    phone_number: str,
    session_id: str,
) -> Dict[str, Any]:
    """Merges the session snapshot, stored variables and identity fields; later sources win."""

    context: Dict[str, Any] = dict(data)
    context.update(variables)
    context["phone_number"] = phone_number
    context["session_id"] = session_id
    return context


def _as_list(value: Any) -> Optional[List[Any]]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return None
    if isinstance(value, tuple):
        value = list(value)
    return value if isinstance(value, list) else None


def resolve_options(menu: Menu, context: Mapping[str, Any]) -> Tuple[MenuOption, ...]:
    """Static options win; otherwise the first ``*_options`` key (lexical order) holding records."""

    if menu.options:
        return menu.options
    for key in sorted(name for name in context if name.endswith(OPTIONS_SUFFIX)):
        items = _as_list(context[key])
        if not items:
            continue
        options = parse_options(items)
        if options:
            LOGGER.debug("Menu %s uses options from %s", menu.code, key)
            return options
    return ()


def selection_updates(context: Mapping[str, Any], raw_input: str) -> Dict[str, str]:
    """Derives ``<key>_selected`` variables for every list the numeric choice indexes into."""

    if not raw_input.isdigit():
        return {}
    index = int(raw_input) - 1
    if index < 0:
        return {}
    updates: Dict[str, str] = {}
    for key in sorted(context):
        if any(marker in key for marker in DERIVED_KEY_MARKERS):
            continue
        items = _as_list(context[key])
        if not items or index >= len(items):
            continue
        item = items[index]
        updates[f"{key}_selected"] = json.dumps(item, default=str)
        if isinstance(item, dict):
            if item.get("id"):
                updates[f"{key}_selected_id"] = str(item["id"])
            if item.get("name"):
                updates[f"{key}_selected_name"] = str(item["name"])
    return updates
