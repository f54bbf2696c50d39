import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Deque, Dict, Optional, Tuple


class ErrorKind(Enum):
    CONNECTION = "connection"
    FETCH = "fetch"
    EXTRACTION = "extraction"
    DECODE = "decode"
    ACKNOWLEDGE = "acknowledge"
    HANDLER = "handler"
    POLL = "poll"


@dataclass(frozen=True)
class RecordedError:
    kind: ErrorKind
    source: Optional[str]
    detail: str
    occurred_at: datetime


class IngestionErrorLog:
    """Keeps the most recent pipeline errors for operators.

    Only the last ``max_entries`` errors are retained, the per-kind totals
    and the count of consecutive failures of each message are kept for the
    process lifetime.
    """

    def __init__(
        self, max_entries: int = 500, time_fn: Callable[[], float] = time.time
    ):
        self._time = time_fn
        self._lock = threading.Lock()
        self._recent: Deque[RecordedError] = deque(maxlen=max_entries)
        self._totals: Dict[ErrorKind, int] = {kind: 0 for kind in ErrorKind}
        self._consecutive_failures: Dict[str, int] = {}

    def record(
        self, kind: ErrorKind, detail: object, source: Optional[str] = None
    ) -> RecordedError:
        error = RecordedError(
            kind=kind,
            source=source,
            detail=str(detail),
            occurred_at=datetime.fromtimestamp(self._time(), tz=timezone.utc),
        )
        with self._lock:
            self._recent.append(error)
            self._totals[kind] += 1
        return error

    def message_failed(self, source: str) -> int:
        with self._lock:
            failures = self._consecutive_failures.get(source, 0) + 1
            self._consecutive_failures[source] = failures
        return failures

    def message_succeeded(self, source: str):
        with self._lock:
            self._consecutive_failures.pop(source, None)

    def consecutive_failures(self, source: str) -> int:
        with self._lock:
            return self._consecutive_failures.get(source, 0)

    def recent(self, kind: Optional[ErrorKind] = None) -> Tuple[RecordedError, ...]:
        with self._lock:
            return tuple(e for e in self._recent if kind is None or e.kind is kind)

    def totals(self) -> Dict[ErrorKind, int]:
        with self._lock:
            return dict(self._totals)
