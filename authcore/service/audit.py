from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from authcore.logging import get_correlation_id, get_logger


@dataclass(frozen=True)
class AuditEvent:
    event: str
    account_id: Optional[str]
    timestamp: float
    request_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


class AuditLogger:
    """Append-only record of authentication and session events.

    Events go to the ``audit`` structlog logger and into a bounded in-process
    buffer that tests and admin tooling can read back.
    """

    def __init__(
        self, *, capacity: int = 1000, clock: Callable[[], float] = time.time
    ) -> None:
        self.logger = get_logger("audit")
        self._events: Deque[AuditEvent] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._clock = clock

    def record(self, event: str, *, account_id: Optional[str] = None, **data: Any) -> AuditEvent:
        entry = AuditEvent(
            event=event,
            account_id=account_id,
            timestamp=self._clock(),
            request_id=get_correlation_id(),
            data=data,
        )
        with self._lock:
            self._events.append(entry)
        self.logger.info(event, account_id=account_id, **data)
        return entry

    def recent(self, *, account_id: Optional[str] = None, event: Optional[str] = None) -> List[AuditEvent]:
        with self._lock:
            items = list(self._events)
        return [
            item
            for item in reversed(items)
            if (account_id is None or item.account_id == account_id)
            and (event is None or item.event == event)
        ]
