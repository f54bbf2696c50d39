import asyncio
import contextlib
import itertools
import ssl
import time
from asyncio import (
    Event,
    Lock,
    Queue,
    StreamReader,
    StreamWriter,
    create_task,
    open_connection,
    wait_for,
)
from dataclasses import dataclass
from typing import (
    Callable,
    Coroutine,
    Dict,
    FrozenSet,
    List,
    Literal,
    Optional,
    Tuple,
    Union,
)

import structlog
from bite import parse_incremental
from bite.parsers import ParsedNode

from .imap_parser import response as response_grammar

logger = structlog.get_logger()


@dataclass
class ConnectionConfig:
    username: str
    password: str
    host: str = "localhost"
    port: int = 993
    use_ssl: bool = True
    verify_certificate: bool = True
    tls_maximum_version: ssl.TLSVersion = ssl.TLSVersion.MAXIMUM_SUPPORTED

    def create_ssl_context(self) -> Union[Literal[False], ssl.SSLContext]:
        if not self.use_ssl:
            return False
        ssl_context = ssl.create_default_context()
        if not self.verify_certificate:
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE
        ssl_context.maximum_version = self.tls_maximum_version
        return ssl_context


class ImapError(Exception):
    pass


class IncompleteResponse(ImapError):
    pass


class ImapServerError(ImapError):
    """Error class for errors reported from the server."""

    def __init__(self, command, result, server_response):
        self.command = command
        self.result = result
        self.server_response = server_response
        super().__init__(command, result, server_response)

    def __str__(self):
        return (
            f"IMAP error: Command {self.command} returned {self.result} "
            f"with response data: {self.server_response}"
        )


class _ImapTag:
    state: Optional[bytes]
    text: Optional[bytes]

    def __init__(self, name: bytes):
        self.name = name
        self.state = None
        self.text = None
        self._response_received = Event()

    async def wait_response(self):
        await self._response_received.wait()

    def has_response(self) -> bool:
        return self._response_received.is_set()

    def set_response(self, state: bytes, text: bytes):
        logger.debug(
            "IMAP command completed.",
            tag=self.name,
            state=state,
            text=text,
            logger=ImapClient.__name__,
        )
        self.state = state
        self.text = text
        self._response_received.set()


class _ImapCommandWriter:
    def __init__(
        self, writer: StreamWriter, server_ready: Event, timeout_seconds: float
    ):
        self.writer = writer
        self._server_ready = server_ready
        self.timeout_seconds = timeout_seconds

    async def _drain(self):
        await wait_for(self.writer.drain(), timeout=self.timeout_seconds)

    async def write_raw(self, buf: bytes):
        self.writer.write(buf)
        await self._drain()

    async def write_int(self, num: int):
        await self.write_raw(str(num).encode("ascii"))

    async def write_string_literal(self, string: str):
        encoded = string.encode("utf-8")
        self._server_ready.clear()
        await self.write_raw(b"{" + str(len(encoded)).encode("ascii") + b"}\r\n")
        await wait_for(self._server_ready.wait(), timeout=self.timeout_seconds)
        await self.write_raw(encoded)


class _CommandsInUse:
    def __init__(self):
        self._in_use = set()
        self._change_condition = asyncio.Condition()

    async def acquire(self, name: str):
        async with self._change_condition:
            await self._change_condition.wait_for(lambda: name not in self._in_use)
            self._in_use.add(name)

    async def release(self, name: str):
        async with self._change_condition:
            self._in_use.remove(name)
            self._change_condition.notify_all()


# pylint: disable=too-many-instance-attributes
class ImapClient:
    """Minimal asyncio IMAP4rev1 client.

    Untagged FETCH responses are put into :attr:`fetched_queue`, results of
    ``UID SEARCH`` are returned from :meth:`uid_search`. Every command fails
    with :class:`asyncio.TimeoutError` if the server stays silent for longer
    than ``timeout_seconds``.
    """

    num_exists: Optional[int]
    fetched_queue: Queue
    _capabilities: FrozenSet[str]
    _pending: Dict[bytes, _ImapTag]
    _search_results: List[int]

    def __init__(self, connection: ConnectionConfig, timeout_seconds: float = 10):
        self.connection = connection
        self.timeout_seconds = timeout_seconds
        self.num_exists = None
        self.fetched_queue = Queue()
        self._last_response = time.time()
        self._capabilities = frozenset()
        self._search_results = []
        self._ongoing_commands = _CommandsInUse()
        self._command_lock = Lock()
        self._server_ready = Event()
        self._process_responses_task = None
        self._writer: Optional[StreamWriter] = None
        self._tags = (f"a{i}".encode("ascii") for i in itertools.count())
        self._pending = {}
        self._log = logger.bind(logger=self.__class__.__name__)

    async def __aenter__(self):
        reader, self._writer = await wait_for(
            open_connection(
                self.connection.host,
                self.connection.port,
                ssl=self.connection.create_ssl_context(),
            ),
            self.timeout_seconds,
        )
        self._process_responses_task = create_task(self._process_responses(reader))

        try:
            await wait_for(self._server_ready.wait(), self.timeout_seconds)
            await self._log.adebug("IMAP server ready.")
            await self._capability()
            await self._login(self.connection.username, self.connection.password)
        except BaseException:
            self._process_responses_task.cancel()
            self._writer.close()
            raise
        return self

    async def __aexit__(self, exc_type, exc, traceback):
        if not self._writer.is_closing():
            await self._log.adebug("Logging out.", timeout=self.timeout_seconds)
            with contextlib.suppress(asyncio.TimeoutError, ImapError, OSError):
                await wait_for(self._logout(), self.timeout_seconds)
            self._writer.close()
            with contextlib.suppress(OSError, ssl.SSLError):
                await wait_for(self._writer.wait_closed(), self.timeout_seconds)
        with contextlib.suppress(asyncio.TimeoutError):
            await wait_for(
                asyncio.shield(self._process_responses_task), self.timeout_seconds
            )
        if not self._process_responses_task.done():
            self._process_responses_task.cancel()
        self._server_ready.clear()
        await self._log.adebug("Connection closed.")

    @property
    def is_connected(self) -> bool:
        return (
            self._writer is not None
            and not self._writer.is_closing()
            and self._process_responses_task is not None
            and not self._process_responses_task.done()
        )

    async def _process_responses(self, reader: StreamReader):
        try:
            async for parse_tree in parse_incremental(response_grammar, reader):
                response = parse_tree.values
                await self._log.adebug("IMAP response.", response=response[:3])

                self._last_response = time.time()

                if response[0] == b"+":
                    self._server_ready.set()
                elif response[0] == b"*":
                    await self._process_untagged_response(response)
                else:
                    tag_name, state, text = response[0:3]
                    if tag_name in self._pending:
                        self._pending[tag_name].set_response(state, text)
            await self._log.adebug("End of response stream.")
        except Exception:  # pylint: disable=broad-except
            await self._log.aexception("Error while processing server responses.")
        finally:
            for pending in self._pending.values():
                if not pending.has_response():
                    pending.set_response(b"NO", b"connection lost")

    async def _process_untagged_response(self, response: ParsedNode):
        kind = response[1]
        if kind == b"OK":
            self._server_ready.set()
        elif kind == b"CAPABILITY":
            self._capabilities = frozenset(
                c.strip().upper() for c in response[2].decode("utf-8").split(" ")
            )
            await self._log.adebug(
                "IMAP server reported capabilities.", capabilities=self._capabilities
            )
        elif kind == b"SEARCH":
            self._search_results.extend(response[2:])
        elif len(response) >= 3 and response[2] == b"EXISTS":
            self.num_exists = response[1]
        elif len(response) >= 3 and response[2] == b"EXPUNGE":
            if self.num_exists is not None:
                self.num_exists -= 1
        elif len(response) >= 3 and response[2] == b"FETCH":
            await self.fetched_queue.put(response[1:])
        else:
            await self._log.adebug("Ignored untagged IMAP response.", response=kind)

    async def _command(
        self, name: str, write_command: Callable[[_ImapCommandWriter], Coroutine]
    ):
        if not self.is_connected:
            raise ImapError("Not connected.")
        tag = _ImapTag(next(self._tags))
        self._pending[tag.name] = tag
        wait_response = asyncio.ensure_future(tag.wait_response())
        write_task = None
        try:
            await self._ongoing_commands.acquire(name)

            async with self._command_lock:
                self._writer.write(tag.name)
                self._writer.write(b" ")
                cmd_writer = _ImapCommandWriter(
                    self._writer, self._server_ready, self.timeout_seconds
                )
                write_task = asyncio.ensure_future(write_command(cmd_writer))
                await asyncio.wait(
                    [write_task, wait_response],
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if write_task.done() and write_task.exception() is not None:
                    raise write_task.exception()

            while not wait_response.done():
                await asyncio.wait([wait_response], timeout=self.timeout_seconds)
                if (
                    not wait_response.done()
                    and self.timeout_seconds < time.time() - self._last_response
                ):
                    raise asyncio.TimeoutError(
                        f"Waiting for response to {name} timed out."
                    )

            if tag.state and tag.state.upper() != b"OK":
                raise ImapServerError(name, tag.state, tag.text)
        finally:
            del self._pending[tag.name]
            if not wait_response.done():
                wait_response.cancel()
            if write_task is not None and not write_task.done():
                write_task.cancel()
            await self._ongoing_commands.release(name)

    async def _capability(self):
        async def capability_writer(cmd_writer: _ImapCommandWriter):
            await cmd_writer.write_raw(b"CAPABILITY\r\n")

        await self._command("CAPABILITY", capability_writer)

    async def _login(self, username: str, password: str):
        async def login_writer(cmd_writer: _ImapCommandWriter):
            await cmd_writer.write_raw(b"LOGIN ")
            await cmd_writer.write_string_literal(username)
            await cmd_writer.write_raw(b" ")
            await cmd_writer.write_string_literal(password)
            await cmd_writer.write_raw(b"\r\n")

        await self._command("LOGIN", login_writer)

    async def _logout(self):
        async def logout_writer(cmd_writer: _ImapCommandWriter):
            await cmd_writer.write_raw(b"LOGOUT\r\n")

        await self._command("LOGOUT", logout_writer)

    def has_capability(self, capability: str) -> bool:
        return capability.upper() in self._capabilities

    async def select(self, mailbox: str = "INBOX") -> Optional[int]:
        async def select_writer(cmd_writer: _ImapCommandWriter):
            await cmd_writer.write_raw(b"SELECT ")
            await cmd_writer.write_string_literal(mailbox)
            await cmd_writer.write_raw(b"\r\n")

        await self._command("SELECT", select_writer)
        return self.num_exists

    async def create(self, name: str):
        async def create_writer(cmd_writer: _ImapCommandWriter):
            await cmd_writer.write_raw(b"CREATE ")
            await cmd_writer.write_string_literal(name)
            await cmd_writer.write_raw(b"\r\n")

        await self._command("CREATE", create_writer)

    async def create_if_not_exists(self, name: str):
        try:
            await self.select(name)
        except ImapServerError:
            await self.create(name)

    async def uid_search(self, criteria: bytes) -> Tuple[int, ...]:
        async def uid_search_writer(cmd_writer: _ImapCommandWriter):
            await cmd_writer.write_raw(b"UID SEARCH ")
            await cmd_writer.write_raw(criteria)
            await cmd_writer.write_raw(b"\r\n")

        self._search_results = []
        await self._command("UID SEARCH", uid_search_writer)
        return tuple(sorted(set(self._search_results)))

    async def uid_fetch(self, uid: int, attrs: bytes):
        async def uid_fetch_writer(cmd_writer: _ImapCommandWriter):
            await cmd_writer.write_raw(b"UID FETCH ")
            await cmd_writer.write_int(uid)
            await cmd_writer.write_raw(b" ")
            await cmd_writer.write_raw(attrs)
            await cmd_writer.write_raw(b"\r\n")

        await self._command("UID FETCH", uid_fetch_writer)

    async def uid_store(self, uid: int, flags: bytes):
        async def uid_store_writer(cmd_writer: _ImapCommandWriter):
            await cmd_writer.write_raw(b"UID STORE ")
            await cmd_writer.write_int(uid)
            await cmd_writer.write_raw(b" ")
            await cmd_writer.write_raw(flags)
            await cmd_writer.write_raw(b"\r\n")

        await self._command("UID STORE", uid_store_writer)

    async def uid_copy(self, uid: int, destination: str):
        async def uid_copy_writer(cmd_writer: _ImapCommandWriter):
            await cmd_writer.write_raw(b"UID COPY ")
            await cmd_writer.write_int(uid)
            await cmd_writer.write_raw(b" ")
            await cmd_writer.write_string_literal(destination)
            await cmd_writer.write_raw(b"\r\n")

        await self._command("UID COPY", uid_copy_writer)

    async def uid_move(self, uid: int, destination: str):
        async def uid_move_writer(cmd_writer: _ImapCommandWriter):
            await cmd_writer.write_raw(b"UID MOVE ")
            await cmd_writer.write_int(uid)
            await cmd_writer.write_raw(b" ")
            await cmd_writer.write_string_literal(destination)
            await cmd_writer.write_raw(b"\r\n")

        await self._command("UID MOVE", uid_move_writer)

    async def uid_move_graceful(self, uid: int, destination: str):
        if self.has_capability("MOVE"):
            await self.uid_move(uid, destination)
        else:
            await self.uid_copy(uid, destination)
            await self.uid_store(uid, rb"+FLAGS.SILENT (\Deleted)")
            await self.expunge()

    async def expunge(self):
        async def expunge_writer(cmd_writer: _ImapCommandWriter):
            await cmd_writer.write_raw(b"EXPUNGE\r\n")

        await self._command("EXPUNGE", expunge_writer)
