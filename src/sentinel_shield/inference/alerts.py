from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

import structlog

from sentinel_shield.events import now_ms


logger = structlog.get_logger()


class NoticeKind(Enum):
    DISCONNECTED = "disconnected"
    RECONNECTED = "reconnected"
    THREAT = "threat"
    PAUSE_TRIGGERED = "pause_triggered"
    PAUSE_FAILED = "pause_failed"
    ALREADY_PAUSED = "already_paused"


@dataclass(frozen=True)
class Notice:
    """Operator-facing announcement."""

    kind: NoticeKind
    message: str
    context: dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp,
        }


NoticeCallback = Callable[[Notice], None]

_WARNING_KINDS = {NoticeKind.DISCONNECTED, NoticeKind.THREAT}
_ERROR_KINDS = {NoticeKind.PAUSE_FAILED}


def log_notice(notice: Notice) -> None:
    if notice.kind in _ERROR_KINDS:
        log = logger.error
    elif notice.kind in _WARNING_KINDS:
        log = logger.warning
    else:
        log = logger.info
    log("operator_notice", kind=notice.kind.value, message=notice.message, **notice.context)


class Notifier:
    def __init__(self, log_notices: bool = True, history_size: int = 50):
        self._callbacks: list[NoticeCallback] = []
        self._history: list[Notice] = []
        self.history_size = history_size
        if log_notices:
            self._callbacks.append(log_notice)

    def add_callback(self, callback: NoticeCallback) -> None:
        self._callbacks.append(callback)

    def notify(self, notice: Notice) -> None:
        self._history.append(notice)
        del self._history[: -self.history_size]

        for callback in self._callbacks:
            try:
                callback(notice)
            except Exception as e:
                logger.error("notice_callback_error", error=str(e), kind=notice.kind.value)

    @property
    def history(self) -> list[Notice]:
        return list(self._history)
