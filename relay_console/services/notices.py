from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, List

logger = logging.getLogger(__name__)

NOTICE_SUCCESS = "success"
NOTICE_ERROR = "error"

MAX_NOTICES = 50


@dataclass
class Notice:
    kind: str
    message: str
    ts: float = field(default_factory=time.time)


class Notifier:
    """Transient notices for the operator (one per mutation outcome)."""

    def __init__(self, maxlen: int = MAX_NOTICES) -> None:
        self._items: Deque[Notice] = deque(maxlen=maxlen)
        self._subscribers: List[Callable[[Notice], None]] = []

    def subscribe(self, callback: Callable[[Notice], None]) -> None:
        self._subscribers.append(callback)

    def push(self, kind: str, message: str) -> Notice:
        notice = Notice(kind=kind, message=message)
        self._items.append(notice)
        for cb in list(self._subscribers):
            try:
                cb(notice)
            except Exception:
                logger.exception("notice subscriber crashed")
        return notice

    def success(self, message: str) -> Notice:
        return self.push(NOTICE_SUCCESS, message)

    def error(self, message: str) -> Notice:
        return self.push(NOTICE_ERROR, message)

    def pop_all(self) -> List[Notice]:
        items = list(self._items)
        self._items.clear()
        return items

    def dismiss(self, notice: Notice) -> None:
        try:
            self._items.remove(notice)
        except ValueError:
            pass
