import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Iterable, Optional, Tuple, cast

import structlog

from dmarc_report_analyzer.imap_client import (
    ConnectionConfig,
    ImapClient,
    ImapError,
    ImapServerError,
)

logger = structlog.get_logger()


class MailboxConnectionError(Exception):
    """The mailbox server could not be reached, refused the login, or the
    connection was lost during a session."""


class FetchError(Exception):
    def __init__(self, handle: "MessageHandle", reason: str):
        self.handle = handle
        self.reason = reason
        super().__init__(handle, reason)

    def __str__(self):
        return f"Failed to fetch message {self.handle}: {self.reason}"


class MessageFilter(Enum):
    UNSEEN = "unseen"
    ALL = "all"

    @property
    def search_criteria(self) -> bytes:
        return self.value.upper().encode("ascii")


@dataclass(frozen=True)
class MessageHandle:
    folder: str
    uid: int

    def __str__(self):
        return f"{self.folder}:{self.uid}"


@dataclass
class MailboxConfig:
    connection: ConnectionConfig
    inbox: str = "INBOX"
    processed_folder: Optional[str] = None
    timeout_seconds: float = 60

    @property
    def folders(self) -> Tuple[str, ...]:
        if self.processed_folder:
            return (self.inbox, self.processed_folder)
        return (self.inbox,)


_TRANSPORT_ERRORS = (asyncio.TimeoutError, OSError, EOFError)


@dataclass
class MailboxSession:
    client: ImapClient
    config: MailboxConfig
    _selected: Optional[str] = field(default=None, init=False)

    async def list_messages(
        self, message_filter: MessageFilter = MessageFilter.UNSEEN
    ) -> AsyncIterator[MessageHandle]:
        """Lazily yield handles of the messages matching ``message_filter``.

        The processed folder is only listed for :attr:`MessageFilter.ALL`;
        messages in there have been acknowledged already. All folders are
        searched before the first handle is yielded, so messages moved to the
        processed folder while iterating are not listed twice.
        """
        folders = (
            self.config.folders
            if message_filter is MessageFilter.ALL
            else (self.config.inbox,)
        )
        listing = []
        for folder in folders:
            uids = await self._guarded(
                self._search(folder, message_filter.search_criteria)
            )
            await logger.adebug(
                "Listed messages.",
                folder=folder,
                message_filter=message_filter.value,
                count=len(uids),
                logger=self.__class__.__name__,
            )
            listing.append((folder, uids))

        for folder, uids in listing:
            for uid in uids:
                await self._guarded(self._select(folder))
                yield MessageHandle(folder, uid)

    async def fetch_raw(self, handle: MessageHandle) -> bytes:
        await self._guarded(self._select(handle.folder))
        try:
            await self._guarded(
                self.client.uid_fetch(handle.uid, b"(UID BODY.PEEK[])")
            )
        except ImapServerError as err:
            raise FetchError(handle, str(err)) from err

        body = None
        while not self.client.fetched_queue.empty():
            fetched = self.client.fetched_queue.get_nowait()
            uid, content = self.extract_uid_and_body(fetched)
            if uid == handle.uid and content is not None:
                body = content
        if body is None:
            raise FetchError(handle, "server returned no message body")
        return body

    async def acknowledge(self, handle: MessageHandle):
        await self._guarded(self._select(handle.folder))
        await self._guarded(
            self.client.uid_store(handle.uid, rb"+FLAGS.SILENT (\Seen)")
        )
        processed = self.config.processed_folder
        if processed and handle.folder != processed:
            await self._guarded(self.client.uid_move_graceful(handle.uid, processed))
        while not self.client.fetched_queue.empty():
            self.client.fetched_queue.get_nowait()

    async def _select(self, folder: str):
        if self._selected != folder:
            await self.client.select(folder)
            self._selected = folder

    async def _search(self, folder: str, criteria: bytes) -> Tuple[int, ...]:
        await self._select(folder)
        return await self.client.uid_search(criteria)

    async def _guarded(self, awaitable):
        try:
            return await awaitable
        except _TRANSPORT_ERRORS as err:
            raise MailboxConnectionError(f"Connection to mailbox lost: {err}") from err
        except ImapError as err:
            if not self.client.is_connected:
                raise MailboxConnectionError(
                    f"Connection to mailbox lost: {err}"
                ) from err
            raise

    @staticmethod
    def extract_uid_and_body(fetched: Any) -> Tuple[Optional[int], Optional[bytes]]:
        uid, body = None, None
        if len(fetched) >= 3 and fetched[1] == b"FETCH":
            for item in cast(Iterable[Tuple[Any, ...]], fetched[2]):
                if item[0] == b"UID":
                    uid = cast(int, item[1])
                elif item[0] == b"BODY" and len(item) >= 3 and not item[1]:
                    body = item[-1]
                elif item[0] == b"RFC822":
                    body = item[1]
        if isinstance(body, (bytes, bytearray)):
            return uid, bytes(body)
        return uid, None


class Mailbox:
    """Transport client for the DMARC report mailbox."""

    def __init__(self, config: MailboxConfig):
        self.config = config

    def __str__(self):
        connection = self.config.connection
        return f"imap://{connection.username}@{connection.host}:{connection.port}"

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[MailboxSession]:
        client = ImapClient(self.config.connection, self.config.timeout_seconds)
        try:
            await client.__aenter__()
        except (ImapError, *_TRANSPORT_ERRORS) as err:
            raise MailboxConnectionError(f"Failed to connect to {self}: {err}") from err

        try:
            session = MailboxSession(client, self.config)
            if self.config.processed_folder:
                await session._guarded(  # pylint: disable=protected-access
                    client.create_if_not_exists(self.config.processed_folder)
                )
            yield session
        finally:
            await client.__aexit__(None, None, None)
