"""Read-only store of app, menu and API call definitions loaded from JSON."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..models import (
    MENU_FINAL,
    MENU_OPTIONS,
    MENU_TYPES,
    ApiCallConfig,
    ApiCallRef,
    App,
    AuthConfig,
    Menu,
    MenuOption,
    ValidationRule,
)

LOGGER = logging.getLogger(__name__)

AUTH_TYPES = ("bearer", "basic", "apikey", "custom")


def _json_field(value: Any, default: Any) -> Any:
    """Decodes a field that may be stored either as JSON text or as a structure."""

    if value is None or value == "":
        return default
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            LOGGER.warning("Ignoring malformed JSON definition field: %.80s", value)
            return default
    return value


def parse_options(raw: Any) -> Tuple[MenuOption, ...]:
    options: List[MenuOption] = []
    for item in _json_field(raw, []) or []:
        if not isinstance(item, dict) or item.get("id") is None:
            LOGGER.warning("Skipping option without id: %s", item)
            continue
        next_menu = item.get("next")
        options.append(
            MenuOption(
                id=str(item["id"]),
                label=str(item.get("label", "")),
                next=str(next_menu) if next_menu else None,
            )
        )
    return tuple(options)


def parse_validation_rules(raw: Any) -> Tuple[ValidationRule, ...]:
    """Normalises the three accepted rule spellings into ValidationRule values.

    ``{"numeric": true}`` is a bare flag, ``{"minLength": 4}`` a bare parameter
    and ``{"minLength": {"value": 4, "message": "Too short"}}`` the full form.
    A flag set to ``false`` disables the rule.
    """

    rules: List[ValidationRule] = []
    payload = _json_field(raw, {}) or {}
    if not isinstance(payload, dict):
        LOGGER.warning("Validation rules must be an object, got %s", type(payload).__name__)
        return ()
    for name, config in payload.items():
        if config is False or config is None:
            continue
        if config is True:
            rules.append(ValidationRule(name=name))
        elif isinstance(config, dict):
            rules.append(ValidationRule(name=name, param=config.get("value"), message=config.get("message")))
        else:
            rules.append(ValidationRule(name=name, param=config))
    return tuple(rules)


def parse_api_call_refs(raw: Any) -> Tuple[ApiCallRef, ...]:
    refs: List[ApiCallRef] = []
    for item in _json_field(raw, []) or []:
        if isinstance(item, str):
            refs.append(ApiCallRef(name=item))
        elif isinstance(item, dict) and item.get("name"):
            refs.append(ApiCallRef(name=str(item["name"]), overrides=dict(item.get("config") or {})))
        else:
            LOGGER.warning("Skipping API call reference without name: %s", item)
    return tuple(refs)


def parse_auth_config(raw: Any) -> Optional[AuthConfig]:
    payload = _json_field(raw, {}) or {}
    if not payload:
        return None
    auth_type = str(payload.get("type", "")).lower()
    if auth_type not in AUTH_TYPES:
        LOGGER.warning("Unsupported auth type '%s'; sending request without auth", auth_type)
        return None
    return AuthConfig(
        type=auth_type,
        token=payload.get("token"),
        username=payload.get("username"),
        password=payload.get("password"),
        key=payload.get("key"),
        value=payload.get("value"),
        headers=dict(payload.get("headers") or {}),
    )


def parse_api_config(app_id: str, payload: Dict[str, Any], *, default_timeout_ms: int = 5000) -> ApiCallConfig:
    name = payload.get("name") or payload.get("api_name")
    endpoint = payload.get("endpoint")
    if not name or not endpoint:
        raise ValueError(f"API config for app {app_id} requires name and endpoint: {payload}")
    return ApiCallConfig(
        app_id=app_id,
        name=str(name),
        endpoint=str(endpoint),
        method=str(payload.get("method") or "GET").upper(),
        headers=dict(_json_field(payload.get("headers"), {}) or {}),
        body_template=dict(_json_field(payload.get("body_template"), {}) or {}),
        auth=parse_auth_config(payload.get("auth_config")),
        response_mapping={str(k): str(v) for k, v in (_json_field(payload.get("response_mapping"), {}) or {}).items()},
        timeout_ms=int(payload.get("timeout") or default_timeout_ms),
        retry_count=max(0, int(payload.get("retry_count", 2))),
        failed_attempt_type=payload.get("failed_attempt_type"),
    )


def parse_menu(app_id: str, payload: Dict[str, Any]) -> Menu:
    code = payload.get("code") or payload.get("menu_code")
    if not code:
        raise ValueError(f"Menu in app {app_id} is missing a code")
    menu_type = payload.get("type") or payload.get("menu_type") or MENU_OPTIONS
    if menu_type not in MENU_TYPES:
        raise ValueError(f"Menu {code} in app {app_id} has unsupported type '{menu_type}'")
    next_menu = payload.get("next_menu")
    return Menu(
        app_id=app_id,
        code=str(code),
        menu_type=menu_type,
        text_template=str(payload.get("text") or payload.get("text_template") or ""),
        options=parse_options(payload.get("options")),
        validation_rules=parse_validation_rules(payload.get("validation_rules")),
        api_calls=parse_api_call_refs(payload.get("api_calls")),
        next_menu=str(next_menu) if next_menu else None,
    )


class DefinitionRepository:
    """Holds parsed app definitions keyed by app id, menu code and API name."""

    def __init__(self, apps_path: Optional[Path] = None, *, default_timeout_ms: int = 5000) -> None:
        self._default_timeout_ms = default_timeout_ms
        self._apps: Dict[str, App] = {}
        self._apps_by_code: Dict[str, str] = {}
        self._menus: Dict[Tuple[str, str], Menu] = {}
        self._api_payloads: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._api_configs: Dict[Tuple[str, str], ApiCallConfig] = {}
        if apps_path is not None:
            self._load_directory(Path(apps_path))

    def _load_directory(self, apps_path: Path) -> None:
        for json_path in sorted(apps_path.glob("*_app.json")):
            with json_path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
            self.register(payload, source=str(json_path))
        LOGGER.info("Loaded %d USSD app(s) from %s", len(self._apps), apps_path)

    def register(self, payload: Dict[str, Any], *, source: str = "<memory>") -> App:
        """Parses one app document (``app``, ``menus``, ``api_configs``) into the store."""

        app_payload = payload.get("app") or {}
        code = app_payload.get("code") or app_payload.get("ussd_code")
        entry_menu = app_payload.get("entry_menu")
        if not code or not entry_menu:
            raise ValueError(f"App at {source} is missing a code or entry_menu")
        app = App(
            id=str(app_payload.get("id") or code),
            code=str(code),
            name=str(app_payload.get("name") or code),
            entry_menu=str(entry_menu),
            is_active=bool(app_payload.get("is_active", True)),
        )
        for menu_payload in payload.get("menus", []):
            menu = parse_menu(app.id, menu_payload)
            key = (app.id, menu.code)
            if key in self._menus:
                raise ValueError(f"Duplicate menu code '{menu.code}' in app at {source}")
            self._menus[key] = menu
        for api_payload in payload.get("api_configs", []):
            config = parse_api_config(app.id, api_payload, default_timeout_ms=self._default_timeout_ms)
            self._api_payloads[(app.id, config.name)] = dict(api_payload)
            self._api_configs[(app.id, config.name)] = config
        self._apps[app.id] = app
        self._apps_by_code[app.code] = app.id
        self._check_links(app)
        return app

    def _check_links(self, app: App) -> None:
        if (app.id, app.entry_menu) not in self._menus:
            LOGGER.warning("App %s entry menu '%s' is not defined", app.code, app.entry_menu)
        for menu in self.menus(app.id):
            targets = [menu.next_menu] + [option.next for option in menu.options]
            for target in targets:
                if target and (app.id, target) not in self._menus:
                    LOGGER.warning("Menu %s in app %s points to undefined menu '%s'", menu.code, app.code, target)
            if menu.menu_type != MENU_FINAL and not menu.next_menu and not any(o.next for o in menu.options):
                LOGGER.warning("Menu %s in app %s has no way forward", menu.code, app.code)
            for ref in menu.api_calls:
                if (app.id, ref.name) not in self._api_configs:
                    LOGGER.warning("Menu %s in app %s references unknown API '%s'", menu.code, app.code, ref.name)

    def get_app_by_code(self, code: str) -> Optional[App]:
        app_id = self._apps_by_code.get(code)
        return self._apps.get(app_id) if app_id else None

    def get_app(self, app_id: str) -> Optional[App]:
        return self._apps.get(app_id)

    def get_menu(self, app_id: str, menu_code: str) -> Optional[Menu]:
        return self._menus.get((app_id, menu_code))

    def menus(self, app_id: str) -> List[Menu]:
        return sorted((menu for (owner, _), menu in self._menus.items() if owner == app_id), key=lambda m: m.code)

    def get_api_config(
        self,
        app_id: str,
        name: str,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> Optional[ApiCallConfig]:
        """Returns the named config, re-parsed with per-menu overrides when given."""

        key = (app_id, name)
        if key not in self._api_configs:
            return None
        if not overrides:
            return self._api_configs[key]
        merged = dict(self._api_payloads[key])
        merged.update(overrides)
        merged["name"] = name
        return parse_api_config(app_id, merged, default_timeout_ms=self._default_timeout_ms)
