"""Menu flow state machine that advances a USSD session by one input."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Collection, Dict, List, Tuple

from ..exceptions import ConfigurationError, MenuNotFound
from ..models import MENU_FINAL, MENU_INPUT, MENU_OPTIONS, App, Menu, MenuOption, UssdSession
from ..repositories.definition_repository import DefinitionRepository
from ..repositories.session_repository import SessionRepository
from ..repositories.variable_repository import VariableRepository
from .api_orchestrator import ApiOrchestrator
from .audit_service import PIN_MASK, mask_menu_input
from .blocking_service import INVALID_PIN
from .input_validator import (
    INVALID_OPTION_MESSAGE,
    format_validation_errors,
    match_option,
    validate_input,
    validation_hint,
)
from .option_resolver import build_context, resolve_options, selection_updates
from .response_formatter import NO_OPTIONS_NOTICE, build_menu_text, format_input_prompt
from .template_engine import render

LOGGER = logging.getLogger(__name__)

BACK_INPUT = "0"

FailureRecorder = Callable[[UssdSession, Menu, str], None]


@dataclass(frozen=True)
class RenderedMenu:
    """The menu shown to the user after one step, with the session as persisted."""

    menu: Menu
    text: str
    options: Tuple[MenuOption, ...]
    session: UssdSession
    api_calls: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_final(self) -> bool:
        return self.menu.menu_type == MENU_FINAL


class MenuEngine:
    """Dispatches input by menu type and loads the next menu.

    Loading a menu reads the session variables, runs the menu's API calls,
    renders its template and persists the current-menu pointer together with
    the rendering context. API failures never abort a load.
    """

    def __init__(
        self,
        definitions: DefinitionRepository,
        sessions: SessionRepository,
        variables: VariableRepository,
        orchestrator: ApiOrchestrator,
        *,
        pin_menus: Collection[str] = (),
        failure_recorder: FailureRecorder | None = None,
    ) -> None:
        self._definitions = definitions
        self._sessions = sessions
        self._variables = variables
        self._orchestrator = orchestrator
        self._pin_menus = frozenset(pin_menus)
        self._failure_recorder = failure_recorder

    def advance(self, session: UssdSession, raw_input: str, app: App) -> RenderedMenu:
        if not session.current_menu:
            return self.load_menu(session, app, app.entry_menu)
        menu = self._require_menu(app.id, session.current_menu)
        if menu.menu_type == MENU_OPTIONS:
            return self._handle_options(session, menu, raw_input, app)
        if menu.menu_type == MENU_INPUT:
            return self._handle_input(session, menu, raw_input, app)
        return self._render_only(session, menu)

    def load_menu(self, session: UssdSession, app: App, menu_code: str) -> RenderedMenu:
        menu = self._require_menu(app.id, menu_code)
        context = self._context(session)
        api_calls: List[Dict[str, Any]] = []
        if menu.api_calls:
            results = self._orchestrator.run_all(menu.api_calls, app.id, context, session.session_id)
            outputs: Dict[str, Any] = {}
            for name, result in results.items():
                api_calls.append(result.summary())
                if result.success:
                    outputs.update(result.data)
                    continue
                LOGGER.warning("API call %s failed while loading %s: %s", name, menu.code, result.error)
                if result.failed_attempt_type and result.is_client_error:
                    self._report_failure(session, menu, result.failed_attempt_type)
            if outputs:
                self._variables.set_variables(session.session_id, outputs)
                context = {**context, **outputs}

        text = render(menu.text_template, context)
        options: Tuple[MenuOption, ...] = ()
        if menu.menu_type == MENU_OPTIONS:
            options = resolve_options(menu, context)
            text = build_menu_text(text, options)
        session = self._sessions.save_progress(session, current_menu=menu.code, data=self._snapshot(context))
        LOGGER.debug("Loaded menu %s for session %s with %d option(s)", menu.code, session.session_id, len(options))
        return RenderedMenu(menu=menu, text=text, options=options, session=session, api_calls=api_calls)

    def navigate_back(self, session: UssdSession, app: App) -> RenderedMenu:
        history = session.input_history
        if len(history) < 2:
            session = self._sessions.save_progress(session, input_history=())
            return self.load_menu(session, app, app.entry_menu)
        trimmed = history[:-1]
        session = self._sessions.save_progress(session, input_history=trimmed)
        return self.load_menu(session, app, trimmed[-1].menu)

    def _handle_options(self, session: UssdSession, menu: Menu, raw_input: str, app: App) -> RenderedMenu:
        if raw_input == BACK_INPUT and session.input_history:
            return self.navigate_back(session, app)
        context = self._context(session)
        options = resolve_options(menu, context)
        if not options:
            if raw_input == BACK_INPUT:
                return self.load_menu(session, app, app.entry_menu)
            LOGGER.warning("Menu %s resolved no options for session %s", menu.code, session.session_id)
            rendered = self._render_only(session, menu)
            return replace(rendered, text=f"{rendered.text}\n\n{NO_OPTIONS_NOTICE}".strip())

        option = match_option(raw_input, options)
        if option is None:
            fresh = self.load_menu(session, app, menu.code)
            return replace(fresh, text=f"{INVALID_OPTION_MESSAGE}\n\n{fresh.text}")

        target = option.next or menu.next_menu
        if not target:
            raise ConfigurationError(f"Menu {menu.code} defines no next menu for option {option.id}")
        self._require_menu(app.id, target)
        updates: Dict[str, Any] = {f"{menu.code}_input": raw_input}
        updates.update(selection_updates(context, raw_input))
        self._variables.set_variables(session.session_id, updates)
        session = self._record_history(session, menu, raw_input)
        return self.load_menu(session, app, target)

    def _handle_input(self, session: UssdSession, menu: Menu, raw_input: str, app: App) -> RenderedMenu:
        result = validate_input(raw_input, menu.validation_rules)
        if not result.is_valid:
            if menu.code in self._pin_menus:
                self._report_failure(session, menu, INVALID_PIN)
            rendered = self._render_only(session, menu)
            prompt = format_input_prompt(rendered.text, validation_hint(menu.validation_rules))
            return replace(rendered, text=f"{format_validation_errors(result.errors)}\n\n{prompt}")

        if not menu.next_menu:
            raise ConfigurationError(f"Input menu {menu.code} defines no next menu")
        self._require_menu(app.id, menu.next_menu)
        self._variables.set_variable(session.session_id, f"{menu.code}_input", raw_input)
        session = self._record_history(session, menu, raw_input)
        return self.load_menu(session, app, menu.next_menu)

    def _render_only(self, session: UssdSession, menu: Menu) -> RenderedMenu:
        text = render(menu.text_template, self._context(session))
        return RenderedMenu(menu=menu, text=text, options=(), session=session)

    def _record_history(self, session: UssdSession, menu: Menu, raw_input: str) -> UssdSession:
        return self._sessions.append_history(session, mask_menu_input(menu.code, raw_input, self._pin_menus), menu.code)

    def _require_menu(self, app_id: str, menu_code: str) -> Menu:
        menu = self._definitions.get_menu(app_id, menu_code)
        if menu is None:
            raise MenuNotFound(app_id, menu_code)
        return menu

    def _context(self, session: UssdSession) -> Dict[str, Any]:
        variables = self._variables.get_variables(session.session_id)
        return build_context(session.data, variables, session.phone_number, session.session_id)

    def _snapshot(self, context: Dict[str, Any]) -> Dict[str, Any]:
        hidden = {f"{code}_input" for code in self._pin_menus}
        return {key: (PIN_MASK if key in hidden else value) for key, value in context.items()}

    def _report_failure(self, session: UssdSession, menu: Menu, attempt_type: str) -> None:
        if not self._failure_recorder:
            return
        try:
            self._failure_recorder(session, menu, attempt_type)
        except Exception:
            LOGGER.exception("Failure recorder failed for session %s menu %s", session.session_id, menu.code)
