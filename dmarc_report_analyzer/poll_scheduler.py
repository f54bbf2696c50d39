import asyncio
import contextlib
import time
from asyncio.tasks import Task
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Tuple

import structlog

from dmarc_report_analyzer.imap_client import ImapError
from dmarc_report_analyzer.ingestion_errors import ErrorKind, IngestionErrorLog
from dmarc_report_analyzer.mailbox import (
    FetchError,
    Mailbox,
    MailboxConnectionError,
    MailboxSession,
    MessageFilter,
    MessageHandle,
)

logger = structlog.get_logger()

REPEATED_FAILURE_THRESHOLD = 3


class SchedulerState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    LISTING = "listing"
    PROCESSING_BATCH = "processing_batch"
    STOPPED = "stopped"


@dataclass
class MessageOutcome:
    inserted: int = 0
    duplicates: int = 0
    errors: List[Tuple[ErrorKind, Exception]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


MessageHandler = Callable[[bytes, str], Awaitable[MessageOutcome]]


@dataclass
class CycleStats:
    # pylint: disable=too-many-instance-attributes
    message_filter: str
    listed: int = 0
    acknowledged: int = 0
    failed: int = 0
    inserted: int = 0
    duplicates: int = 0
    interrupted: bool = False


class Backoff:
    """Exponentially growing delay, capped at ``maximum_seconds``."""

    def __init__(
        self,
        initial_seconds: float = 5,
        maximum_seconds: float = 300,
        factor: float = 2,
    ):
        if initial_seconds <= 0 or factor <= 1:
            raise ValueError("Backoff requires a positive delay and a factor > 1.")
        self.initial_seconds = initial_seconds
        self.maximum_seconds = maximum_seconds
        self.factor = factor
        self.current: Optional[float] = None

    def next_delay(self) -> float:
        if self.current is None:
            self.current = min(self.initial_seconds, self.maximum_seconds)
        else:
            self.current = min(self.current * self.factor, self.maximum_seconds)
        return self.current

    def reset(self):
        self.current = None


# pylint: disable=too-many-instance-attributes
class PollScheduler:
    def __init__(
        self,
        *,
        mailbox: Mailbox,
        error_log: IngestionErrorLog,
        poll_interval_seconds: float = 60,
        message_filter: MessageFilter = MessageFilter.UNSEEN,
        backoff: Optional[Backoff] = None,
        initial_sync: bool = True,
        time_fn: Callable[[], float] = time.time,
    ):
        self.mailbox = mailbox
        self.error_log = error_log
        self.poll_interval_seconds = poll_interval_seconds
        self.message_filter = message_filter
        self.backoff = backoff or Backoff()
        self.state = SchedulerState.IDLE
        self.last_cycle: Optional[CycleStats] = None
        self.last_success: Optional[datetime] = None
        self._time = time_fn
        self._needs_initial_sync = initial_sync
        self._stop: Optional[asyncio.Event] = None
        self._poll_task: Optional[Task[Any]] = None

    @property
    def stopping(self) -> bool:
        return self._stop is not None and self._stop.is_set()

    def start(self, handler: MessageHandler):
        self._stop = asyncio.Event()
        self._poll_task = asyncio.create_task(self._poll(handler))

    async def stop(self):
        if self._stop is not None:
            self._stop.set()
            await self._poll_task
            self._stop = None
        self.state = SchedulerState.STOPPED

    async def _poll(self, handler: MessageHandler):
        log = logger.bind(logger=self.__class__.__name__)
        while not self.stopping:
            try:
                stats = await self.run_cycle(handler)
            except MailboxConnectionError as err:
                self.error_log.record(ErrorKind.CONNECTION, err, str(self.mailbox))
                delay = self.backoff.next_delay()
                await log.awarning(
                    "Mailbox unavailable, retrying later.",
                    error=str(err),
                    retry_in_seconds=delay,
                )
            except Exception as err:  # pylint: disable=broad-except
                self.error_log.record(ErrorKind.POLL, err, str(self.mailbox))
                delay = self.backoff.next_delay()
                await log.aexception(
                    "Unexpected error during poll cycle.", retry_in_seconds=delay
                )
            else:
                self.backoff.reset()
                delay = self.poll_interval_seconds
                await log.ainfo("Finished poll cycle.", **asdict(stats))

            if self.stopping:
                break
            self.state = SchedulerState.IDLE
            await log.adebug("Going to sleep until next poll.", seconds=delay)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop.wait(), delay)
        self.state = SchedulerState.STOPPED

    async def run_cycle(self, handler: MessageHandler) -> CycleStats:
        """Connect, process every listed message, and acknowledge the ones
        that were processed without error.

        Raises :class:`MailboxConnectionError` if the mailbox cannot be
        reached or the connection drops; reports merged before that are kept.
        """
        message_filter = (
            MessageFilter.ALL if self._needs_initial_sync else self.message_filter
        )
        stats = CycleStats(message_filter=message_filter.value)
        self.last_cycle = stats
        try:
            self.state = SchedulerState.CONNECTING
            async with self.mailbox.connect() as session:
                self.state = SchedulerState.LISTING
                handles = session.list_messages(message_filter)
                try:
                    async for handle in handles:
                        if self.stopping:
                            stats.interrupted = True
                            break
                        self.state = SchedulerState.PROCESSING_BATCH
                        stats.listed += 1
                        await self._process_message(session, handle, handler, stats)
                finally:
                    await handles.aclose()
        finally:
            self.state = SchedulerState.IDLE

        if not stats.interrupted:
            self._needs_initial_sync = False
            self.last_success = datetime.fromtimestamp(self._time(), tz=timezone.utc)
        return stats

    async def _process_message(
        self,
        session: MailboxSession,
        handle: MessageHandle,
        handler: MessageHandler,
        stats: CycleStats,
    ):
        log = logger.bind(logger=self.__class__.__name__, source=str(handle))
        source = str(handle)
        try:
            raw = await session.fetch_raw(handle)
        except FetchError as err:
            outcome = MessageOutcome(errors=[(ErrorKind.FETCH, err)])
        else:
            await log.adebug("Processing message.", size=len(raw))
            try:
                outcome = await handler(raw, source)
            except Exception as err:  # pylint: disable=broad-except
                await log.aexception("Handler for message failed.")
                outcome = MessageOutcome(errors=[(ErrorKind.HANDLER, err)])

        stats.inserted += outcome.inserted
        stats.duplicates += outcome.duplicates
        if not outcome.ok:
            stats.failed += 1
            for kind, error in outcome.errors:
                self.error_log.record(kind, error, source)
            failures = self.error_log.message_failed(source)
            errors = [f"{kind.value}: {error}" for kind, error in outcome.errors]
            if failures >= REPEATED_FAILURE_THRESHOLD:
                await log.aerror(
                    "Message keeps failing, it is retried every cycle.",
                    consecutive_failures=failures,
                    errors=errors,
                )
            else:
                await log.awarning(
                    "Message not acknowledged, will retry next cycle.",
                    consecutive_failures=failures,
                    errors=errors,
                )
            return

        try:
            await session.acknowledge(handle)
        except ImapError as err:
            self.error_log.record(ErrorKind.ACKNOWLEDGE, err, source)
            await log.awarning("Failed to acknowledge message.", error=str(err))
            return
        self.error_log.message_succeeded(source)
        stats.acknowledged += 1
