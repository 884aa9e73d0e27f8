"""Failed-attempt tracking and automatic blocking of abusive phone numbers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence, Tuple

from ..models import BlockStatus, Menu, UssdSession
from ..repositories.block_repository import BlockRepository

LOGGER = logging.getLogger(__name__)

AUTOMATIC_RULE = "AUTOMATIC_RULE"
WRONG_PIN = "wrong_pin"
INVALID_PIN = "invalid_pin"


@dataclass(frozen=True)
class BlockRule:
    threshold: int
    window: timedelta
    duration: Optional[timedelta]
    reason: str
    attempt_types: Optional[Tuple[str, ...]] = None


DEFAULT_RULES: Tuple[BlockRule, ...] = (
    BlockRule(
        threshold=3,
        window=timedelta(minutes=5),
        duration=timedelta(minutes=30),
        reason="Too many failed PIN attempts",
        attempt_types=(WRONG_PIN, INVALID_PIN),
    ),
    BlockRule(
        threshold=10,
        window=timedelta(hours=1),
        duration=timedelta(minutes=60),
        reason="Suspicious activity detected",
    ),
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _severity(rule: BlockRule) -> timedelta:
    return rule.duration if rule.duration is not None else timedelta.max


class BlockingService:
    """Evaluates block rules whenever a failed attempt is recorded."""

    def __init__(
        self,
        repository: BlockRepository,
        *,
        rules: Sequence[BlockRule] = DEFAULT_RULES,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repository = repository
        self._rules = tuple(rules)
        self._clock = clock

    def check(self, phone_number: str) -> BlockStatus:
        block = self._repository.get_active_block(phone_number, self._clock())
        if block is None:
            return BlockStatus(is_blocked=False)
        return BlockStatus(is_blocked=True, reason=block.reason, unblock_at=block.unblock_at)

    def record_failed_attempt(
        self,
        phone_number: str,
        attempt_type: str,
        *,
        menu_code: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> BlockStatus:
        now = self._clock()
        self._repository.save_failed_attempt(
            phone_number,
            attempt_type,
            now,
            menu_code=menu_code,
            session_id=session_id,
        )
        LOGGER.info("Recorded %s attempt for %s on menu %s", attempt_type, phone_number, menu_code)
        triggered = [
            rule
            for rule in self._rules
            if self._repository.count_attempts(phone_number, now - rule.window, rule.attempt_types) >= rule.threshold
        ]
        if triggered:
            rule = max(triggered, key=_severity)
            self.block(phone_number, rule.reason, duration=rule.duration, blocked_by=AUTOMATIC_RULE)
        return self.check(phone_number)

    def record_menu_failure(self, session: UssdSession, menu: Menu, attempt_type: str) -> None:
        """Failure recorder hook for the menu engine."""

        self.record_failed_attempt(
            session.phone_number,
            attempt_type,
            menu_code=menu.code,
            session_id=session.session_id,
        )

    def block(
        self,
        phone_number: str,
        reason: str,
        *,
        duration: Optional[timedelta] = None,
        blocked_by: str = "SYSTEM",
    ) -> None:
        """Creates or refreshes a block; no duration means a permanent block."""

        now = self._clock()
        unblock_at = now + duration if duration is not None else None
        self._repository.upsert_block(phone_number, reason, blocked_by, now, unblock_at)
        LOGGER.warning("Blocked %s until %s: %s", phone_number, unblock_at or "further notice", reason)

    def unblock(self, phone_number: str) -> None:
        self._repository.deactivate_block(phone_number)
        LOGGER.info("Unblocked %s", phone_number)
