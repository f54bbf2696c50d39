import asyncio
import itertools
import re
import time
from asyncio import StreamReader, StreamWriter, start_server
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Set,
    Union,
)

import structlog

from dmarc_report_analyzer.imap_client import ConnectionConfig
from dmarc_report_analyzer.logging import configure_logging

logger = structlog.get_logger()

CommandHandler = Callable[[StreamWriter, Sequence[bytes]], Awaitable[Optional[bool]]]


def pytest_configure():
    configure_logging({}, debug=True)


async def try_until_success(
    function: Union[Callable[[], Awaitable], Callable[[], Any]],
    timeout_seconds: int = 10,
    max_fn_duration_seconds: int = 1,
    poll_interval_seconds: float = 0.1,
):
    timeout = time.time() + timeout_seconds
    last_err = None
    while time.time() < timeout:
        try:
            result = function()
            if hasattr(result, "__await__"):
                return await asyncio.wait_for(result, max_fn_duration_seconds)
            else:
                return result
        except asyncio.TimeoutError as err:
            raise TimeoutError(
                f"Function execution duration exceeded {max_fn_duration_seconds} "
                "seconds."
            ) from err
        except Exception as err:  # pylint: disable=broad-except
            last_err = err
            await asyncio.sleep(poll_interval_seconds)
    raise TimeoutError(
        f"Call to {function} not successful within {timeout_seconds} seconds."
    ) from last_err


@dataclass
class MockMessage:
    content: bytes
    flags: Set[bytes] = field(default_factory=set)


@dataclass
class _Session:
    selected: Optional[str] = None


# pylint: disable=too-many-instance-attributes
class MockImapServer:
    """In-process IMAP server keeping its folders in memory.

    Only the commands used by the client are understood. A handler registered
    for a command (``b"SELECT"``, ``b"UID FETCH"``, ...) runs before the
    built-in behaviour; if it returns a truthy value, the built-in behaviour
    including the tagged response is skipped.
    """

    # pylint: disable=too-many-arguments
    def __init__(
        self,
        host: str = "localhost",
        port: int = 4143,
        command_handlers: Optional[Dict[bytes, CommandHandler]] = None,
        capabilities: Iterable[bytes] = (b"IMAP4rev1", b"MOVE"),
        username: str = "username",
        password: str = "password",
    ):
        self.host = host
        self.port = port
        self.command_handlers = command_handlers or {}
        self.capabilities = tuple(capabilities)
        self.username = username
        self.password = password
        self.folders: Dict[str, Dict[int, MockMessage]] = {"INBOX": {}}
        self.failing_fetches: Set[int] = set()
        self.received: List[bytes] = []
        self._uids = itertools.count(1)
        self._server = None
        self._writers: List[StreamWriter] = []
        self._write_lock = asyncio.Lock()
        self._tasks: List[asyncio.Task] = []
        self._log = logger.bind(logger=self.__class__.__name__)

    @property
    def connection_config(self) -> ConnectionConfig:
        return ConnectionConfig(
            self.username, self.password, self.host, self.port, use_ssl=False
        )

    def add_message(
        self, content: bytes, folder: str = "INBOX", flags: Iterable[bytes] = ()
    ) -> int:
        uid = next(self._uids)
        self.folders.setdefault(folder, {})[uid] = MockMessage(content, set(flags))
        return uid

    def flags(self, uid: int, folder: str = "INBOX") -> Set[bytes]:
        return self.folders[folder][uid].flags

    def drop_connections(self):
        for writer in self._writers:
            writer.close()

    async def __aenter__(self):
        self._server = await start_server(
            self._client_connected_cb, host=self.host, port=self.port
        )
        await self._server.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, traceback):
        self.drop_connections()
        return await self._server.__aexit__(exc_type, exc, traceback)

    async def _client_connected_cb(self, reader: StreamReader, writer: StreamWriter):
        self._writers.append(writer)
        session = _Session()
        writer.write(b"* OK hello\r\n")
        await writer.drain()

        try:
            while not reader.at_eof():
                tokens = await self._read_command(reader, writer)
                if tokens is None:
                    break
                if len(tokens) < 2:
                    continue
                self._tasks.append(
                    asyncio.create_task(self._handle(tokens, writer, session))
                )
            await asyncio.gather(*self._tasks, return_exceptions=True)
        except (ConnectionError, asyncio.IncompleteReadError):
            pass
        finally:
            writer.close()

    async def _read_command(
        self, reader: StreamReader, writer: StreamWriter
    ) -> Optional[List[bytes]]:
        line = await reader.readline()
        if not line:
            return None
        await self._log.adebug("MockImapServer received line.", line=line)
        tokens: List[bytes] = []
        while True:
            literal = re.search(rb"\{(\d+)\}\r\n$", line)
            if not literal:
                tokens.extend(line.split())
                return tokens
            tokens.extend(line[: literal.start()].split())
            async with self._write_lock:
                writer.write(b"+ OK continue\r\n")
                await writer.drain()
            tokens.append(await reader.readexactly(int(literal.group(1))))
            line = await reader.readline()

    async def _handle(self, tokens: List[bytes], writer: StreamWriter, session):
        tag, args = tokens[0], tokens[1:]
        command = args[0].upper()
        if command == b"UID" and len(args) > 1:
            command = b"UID " + args[1].upper()
            args = args[1:]
        self.received.append(command)

        if command in self.command_handlers:
            if await self.command_handlers[command](writer, args):
                return

        handler = getattr(self, "_cmd_" + command.decode().lower().replace(" ", "_"))
        untagged, result = handler(args[1:], session)
        async with self._write_lock:
            for line in untagged:
                writer.write(line + b"\r\n")
            writer.write(b" ".join((tag, result, command, b"completed\r\n")))
            if command == b"LOGOUT":
                writer.write_eof()
            await writer.drain()

    def _selected_folder(self, session: _Session) -> Dict[int, MockMessage]:
        return self.folders[session.selected or "INBOX"]

    def _seq(self, session: _Session, uid: int) -> int:
        return sorted(self._selected_folder(session)).index(uid) + 1

    def _cmd_capability(self, _args, _session):
        return [b"* CAPABILITY " + b" ".join(self.capabilities)], b"OK"

    def _cmd_login(self, args, _session):
        if args == [self.username.encode(), self.password.encode()]:
            return [], b"OK"
        return [], b"NO"

    def _cmd_logout(self, _args, _session):
        return [b"* BYE see you soon"], b"OK"

    def _cmd_select(self, args, session):
        name = args[0].decode()
        if name not in self.folders:
            return [], b"NO"
        session.selected = name
        return [f"* {len(self.folders[name])} EXISTS".encode()], b"OK"

    def _cmd_create(self, args, _session):
        name = args[0].decode()
        if name in self.folders:
            return [], b"NO"
        self.folders[name] = {}
        return [], b"OK"

    def _cmd_uid_search(self, args, session):
        folder = self._selected_folder(session)
        if args[0].upper() == b"UNSEEN":
            uids = [u for u, msg in folder.items() if b"\\Seen" not in msg.flags]
        else:
            uids = list(folder)
        return [b" ".join([b"* SEARCH"] + [str(u).encode() for u in uids])], b"OK"

    def _cmd_uid_fetch(self, args, session):
        uid = int(args[0])
        if uid in self.failing_fetches:
            return [], b"NO"
        folder = self._selected_folder(session)
        if uid not in folder:
            return [], b"OK"
        content = folder[uid].content
        return [
            f"* {self._seq(session, uid)} FETCH (UID {uid} BODY[] "
            f"{{{len(content)}}}\r\n".encode()
            + content
            + b")"
        ], b"OK"

    def _cmd_uid_store(self, args, session):
        uid = int(args[0])
        flags = {flag.strip(b"()") for flag in args[2:]}
        folder = self._selected_folder(session)
        if uid in folder:
            if args[1].upper().startswith(b"-"):
                folder[uid].flags -= flags
            else:
                folder[uid].flags |= flags
        return [], b"OK"

    def _cmd_uid_copy(self, args, session):
        uid, destination = int(args[0]), args[1].decode()
        folder = self._selected_folder(session)
        if destination not in self.folders or uid not in folder:
            return [], b"NO"
        message = folder[uid]
        self.add_message(message.content, destination, message.flags)
        return [], b"OK"

    def _cmd_uid_move(self, args, session):
        untagged, result = self._cmd_uid_copy(args, session)
        if result == b"OK":
            uid = int(args[0])
            untagged.append(f"* {self._seq(session, uid)} EXPUNGE".encode())
            del self._selected_folder(session)[uid]
        return untagged, result

    def _cmd_expunge(self, _args, session):
        folder = self._selected_folder(session)
        untagged = []
        for uid in sorted(folder, reverse=True):
            if b"\\Deleted" in folder[uid].flags:
                untagged.append(f"* {self._seq(session, uid)} EXPUNGE".encode())
                del folder[uid]
        return untagged, b"OK"
