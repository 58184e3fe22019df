"""クライアントイベント"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)

EventHandler = Callable[..., None]


class ToggleEvents(StrEnum):
    """Repository / クライアントが発行するイベント名。"""

    READY = "ready"
    SYNCHRONIZED = "synchronized"
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    ERROR = "error"
    WARNING = "warning"
    REGISTERED = "registered"
    SENT = "sent"
    COUNT = "count"


class EventEmitter:
    """同期呼び出しのイベントエミッター。

    ハンドラーの例外はログに記録し、他のハンドラーと発行元の処理は継続する。
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}

    def on(self, event: str, handler: EventHandler) -> None:
        """イベントにハンドラーを登録する。"""
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: EventHandler | None = None) -> None:
        """ハンドラーを解除する。handler 省略時はイベントの全ハンドラーを解除する。"""
        if handler is None:
            self._handlers.pop(event, None)
            return
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event: str, *args: Any) -> bool:
        """イベントを発行する。ハンドラーが一つでも登録されていれば True。"""
        handlers = list(self._handlers.get(event, []))
        for handler in handlers:
            try:
                handler(*args)
            except Exception:
                logger.exception("Event handler failed", extra={"event": str(event)})
        return bool(handlers)

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))
