"""Data transfer objects for USSD definitions, sessions and audit records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

MENU_OPTIONS = "options"
MENU_INPUT = "input"
MENU_FINAL = "final"
MENU_TYPES = (MENU_OPTIONS, MENU_INPUT, MENU_FINAL)

AUTH_BEARER = "bearer"
AUTH_BASIC = "basic"
AUTH_APIKEY = "apikey"
AUTH_CUSTOM = "custom"


@dataclass(frozen=True)
class App:
    id: str
    code: str
    name: str
    entry_menu: str
    is_active: bool = True


@dataclass(frozen=True)
class MenuOption:
    id: str
    label: str
    next: Optional[str] = None


@dataclass(frozen=True)
class ValidationRule:
    name: str
    param: Any = None
    message: Optional[str] = None


@dataclass(frozen=True)
class ApiCallRef:
    name: str
    overrides: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Menu:
    app_id: str
    code: str
    menu_type: str
    text_template: str
    options: Tuple[MenuOption, ...] = ()
    validation_rules: Tuple[ValidationRule, ...] = ()
    api_calls: Tuple[ApiCallRef, ...] = ()
    next_menu: Optional[str] = None


@dataclass(frozen=True)
class AuthConfig:
    type: str
    token: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    key: Optional[str] = None
    value: Optional[str] = None
    headers: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ApiCallConfig:
    app_id: str
    name: str
    endpoint: str
    method: str = "GET"
    headers: Dict[str, Any] = field(default_factory=dict)
    body_template: Dict[str, Any] = field(default_factory=dict)
    auth: Optional[AuthConfig] = None
    response_mapping: Dict[str, str] = field(default_factory=dict)
    timeout_ms: int = 5000
    retry_count: int = 2
    failed_attempt_type: Optional[str] = None


@dataclass(frozen=True)
class HistoryEntry:
    input: str
    menu: str
    timestamp: str


@dataclass(frozen=True)
class UssdSession:
    id: int
    session_id: str
    phone_number: str
    app_id: str
    current_menu: Optional[str]
    data: Dict[str, Any]
    input_history: Tuple[HistoryEntry, ...]
    is_active: bool
    created_at: str
    updated_at: str
    ended_at: Optional[str] = None
    end_reason: Optional[str] = None


@dataclass(frozen=True)
class AuditEntry:
    kind: str
    session_id: Optional[str]
    phone_number: Optional[str]
    app_id: Optional[str]
    menu_code: Optional[str]
    menu_type: Optional[str]
    user_input: Optional[str]
    response_text: Optional[str]
    api_calls_made: List[Dict[str, Any]]
    processing_time_ms: int
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[str] = None


@dataclass(frozen=True)
class ApiCallLog:
    session_id: Optional[str]
    api_name: str
    attempt: int
    request_data: Dict[str, Any]
    response_data: Any
    status_code: Optional[int]
    error_message: Optional[str]
    duration_ms: int


@dataclass(frozen=True)
class BlockRecord:
    phone_number: str
    reason: str
    blocked_by: str
    blocked_at: datetime
    unblock_at: Optional[datetime]
    is_active: bool


@dataclass(frozen=True)
class BlockStatus:
    is_blocked: bool
    reason: Optional[str] = None
    unblock_at: Optional[datetime] = None
