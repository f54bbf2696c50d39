import asyncio
from asyncio import (
    Condition,
    Event,
    StreamReader,
    StreamWriter,
    create_task,
    start_server,
    wait_for,
)

import pytest
import structlog

from dmarc_report_analyzer.imap_client import (
    ConnectionConfig,
    ImapClient,
    ImapError,
    ImapServerError,
)
from dmarc_report_analyzer.mailbox import MailboxSession
from dmarc_report_analyzer.tests.conftest import MockImapServer, try_until_success
from dmarc_report_analyzer.tests.sample_emails import create_minimal_email

logger = structlog.get_logger()


@pytest.mark.asyncio
async def test_basic_connection():
    async with MockImapServer() as server:
        async with ImapClient(server.connection_config) as client:
            assert client.has_capability("IMAP4rev1")
            assert client.has_capability("move")
            assert not client.has_capability("IDLE")
            assert client.is_connected
        assert not client.is_connected


@pytest.mark.asyncio
async def test_login_rejected():
    async with MockImapServer(password="secret") as server:
        with pytest.raises(ImapServerError):
            async with ImapClient(
                ConnectionConfig("username", "wrong", server.host, server.port, False)
            ):
                pass


@pytest.mark.asyncio
async def test_uid_search():
    async with MockImapServer() as server:
        seen = server.add_message(b"seen", flags=[b"\\Seen"])
        unseen = server.add_message(b"unseen")
        async with ImapClient(server.connection_config) as client:
            assert await client.select("INBOX") == 2
            assert await client.uid_search(b"ALL") == (seen, unseen)
            assert await client.uid_search(b"UNSEEN") == (unseen,)


@pytest.mark.asyncio
async def test_uid_search_without_results():
    async with MockImapServer() as server:
        async with ImapClient(server.connection_config) as client:
            await client.select("INBOX")
            assert await client.uid_search(b"UNSEEN") == ()


@pytest.mark.asyncio
async def test_uid_fetch():
    content = create_minimal_email(content="üüüü").as_bytes()
    async with MockImapServer() as server:
        uid = server.add_message(content)
        async with ImapClient(server.connection_config) as client:
            await client.select("INBOX")
            await client.uid_fetch(uid, b"(UID BODY.PEEK[])")
            fetched_email = await wait_for(client.fetched_queue.get(), 5)
            assert fetched_email[:2] == (1, b"FETCH")
            assert MailboxSession.extract_uid_and_body(fetched_email) == (
                uid,
                content,
            )


@pytest.mark.asyncio
async def test_create_if_not_exists():
    async with MockImapServer() as server:
        async with ImapClient(server.connection_config) as client:
            await client.create_if_not_exists("new mailbox")
            await client.create_if_not_exists("new mailbox")
            assert await client.select("new mailbox") == 0
            with pytest.raises(ImapServerError):
                await client.create("new mailbox")
    assert "new mailbox" in server.folders


@pytest.mark.asyncio
async def test_uid_copy():
    async with MockImapServer() as server:
        uid = server.add_message(b"message")
        server.folders["destination"] = {}
        async with ImapClient(server.connection_config) as client:
            assert await client.select("INBOX") == 1
            await client.uid_copy(uid, "destination")
            assert await client.select("destination") == 1
            assert await client.select("INBOX") == 1


@pytest.mark.parametrize(
    "capabilities", [(b"IMAP4rev1", b"MOVE"), (b"IMAP4rev1",)], ids=["move", "copy"]
)
@pytest.mark.asyncio
async def test_uid_move_graceful(capabilities):
    async with MockImapServer(capabilities=capabilities) as server:
        uid = server.add_message(b"message")
        server.folders["destination"] = {}
        async with ImapClient(server.connection_config) as client:
            assert await client.select("INBOX") == 1
            await client.uid_move_graceful(uid, "destination")
            assert client.num_exists == 0
            assert await client.select("destination") == 1
    expected = b"UID MOVE" if b"MOVE" in capabilities else b"EXPUNGE"
    assert expected in server.received


@pytest.mark.asyncio
async def test_uid_store():
    async with MockImapServer() as server:
        uid = server.add_message(b"message")
        async with ImapClient(server.connection_config) as client:
            await client.select("INBOX")
            await client.uid_store(uid, rb"+FLAGS.SILENT (\Seen)")
            assert server.flags(uid) == {b"\\Seen"}
            await client.uid_store(uid, rb"-FLAGS.SILENT (\Seen)")
            assert server.flags(uid) == set()


@pytest.mark.asyncio
async def test_executes_same_command_type_sequentially():
    continue_triggers_change = Condition()
    continue_triggers = []

    async def select_handler(_writer: StreamWriter, _args):
        continue_event = Event()
        async with continue_triggers_change:
            continue_triggers.append(continue_event)
            continue_triggers_change.notify_all()
        await continue_event.wait()

    async with MockImapServer(command_handlers={b"SELECT": select_handler}) as server:
        server.folders["foo"] = {}
        async with ImapClient(server.connection_config) as client:
            select_tasks = [
                create_task(client.select("INBOX")),
                create_task(client.select("foo")),
            ]
            async with continue_triggers_change:
                await asyncio.wait_for(
                    continue_triggers_change.wait_for(
                        lambda: len(continue_triggers) >= 1
                    ),
                    timeout=5,
                )
            assert len(continue_triggers) == 1
            continue_triggers[0].set()
            # Lambda required because list access must be revaluated each time
            # pylint: disable=unnecessary-lambda
            await try_until_success(lambda: continue_triggers[1].set())
            await asyncio.gather(*select_tasks)


@pytest.mark.asyncio
async def test_executes_different_commands_in_parallel():
    continue_fetch = Event()
    continue_store = Event()
    num_commands_received_condition = Condition()
    num_commands_received = 0
    log = logger.bind(logger="test_executes_different_commands_in_parallel")

    async def fetch_handler(_writer: StreamWriter, _args):
        nonlocal num_commands_received
        await log.adebug("fetch handle")
        async with num_commands_received_condition:
            num_commands_received += 1
            num_commands_received_condition.notify_all()
        await continue_fetch.wait()

    async def store_handler(_writer: StreamWriter, _args):
        nonlocal num_commands_received
        await log.adebug("store handle")
        async with num_commands_received_condition:
            num_commands_received += 1
            num_commands_received_condition.notify_all()
        await continue_store.wait()

    async with MockImapServer(
        command_handlers={b"UID FETCH": fetch_handler, b"UID STORE": store_handler},
    ) as server:
        uid = server.add_message(b"message")
        async with ImapClient(server.connection_config) as client:
            await client.select("INBOX")
            tasks = [
                create_task(client.uid_fetch(uid, b"(UID)")),
                create_task(client.uid_store(uid, rb"+FLAGS (\Seen)")),
            ]
            async with num_commands_received_condition:
                await asyncio.wait_for(
                    num_commands_received_condition.wait_for(
                        lambda: num_commands_received >= 2
                    ),
                    timeout=5,
                )
            continue_store.set()
            continue_fetch.set()
            await asyncio.gather(*tasks)


@pytest.mark.asyncio
async def test_timeout_behavior_waiting_for_server_ready():
    event = Event()

    async def client_connected_cb(_reader: StreamReader, writer: StreamWriter):
        await event.wait()
        writer.close()

    server = await start_server(client_connected_cb, host="localhost", port=4143)

    async def connect():
        with pytest.raises(asyncio.TimeoutError):
            async with ImapClient(
                ConnectionConfig(
                    "username",
                    "password",
                    host="localhost",
                    port=4143,
                    use_ssl=False,
                ),
                timeout_seconds=0.2,
            ):
                pass

    async with server:
        await asyncio.wait_for(connect(), timeout=1)
        event.set()


@pytest.mark.asyncio
async def test_command_timeout_no_response_at_all():
    async def select_handler(_writer, _args):
        return True

    async with MockImapServer(command_handlers={b"SELECT": select_handler}) as server:
        async with ImapClient(server.connection_config, timeout_seconds=0.2) as client:

            async def run_command():
                with pytest.raises(asyncio.TimeoutError):
                    await client.select()

            await asyncio.wait_for(run_command(), timeout=1)


@pytest.mark.asyncio
async def test_command_timeout_single_untagged_response_only():
    async def select_handler(writer: StreamWriter, _args):
        writer.write(b"* 42 EXISTS\r\n")
        await writer.drain()
        return True

    async with MockImapServer(command_handlers={b"SELECT": select_handler}) as server:
        async with ImapClient(server.connection_config, timeout_seconds=0.2) as client:

            async def run_command():
                with pytest.raises(asyncio.TimeoutError):
                    await client.select()

            await asyncio.wait_for(run_command(), timeout=1)


@pytest.mark.asyncio
async def test_command_not_timing_out_if_interresponse_time_stays_below_threshold():
    async def select_handler(writer: StreamWriter, _args):
        await asyncio.sleep(0.1)
        writer.write(b"* 42 RECENT\r\n")
        await writer.drain()
        await asyncio.sleep(0.1)
        writer.write(b"* OK [UNSEEN 23] first unseen\r\n")
        await writer.drain()
        await asyncio.sleep(0.1)

    async with MockImapServer(command_handlers={b"SELECT": select_handler}) as server:
        for _ in range(3):
            server.add_message(b"message")
        async with ImapClient(server.connection_config, timeout_seconds=0.2) as client:
            assert await client.select() == 3


@pytest.mark.asyncio
async def test_pending_commands_fail_when_connection_drops():
    async def fetch_handler(_writer, _args):
        server.drop_connections()
        return True

    async with MockImapServer(command_handlers={b"UID FETCH": fetch_handler}) as server:
        uid = server.add_message(b"message")
        async with ImapClient(server.connection_config, timeout_seconds=1) as client:
            await client.select()
            with pytest.raises(ImapServerError):
                await asyncio.wait_for(client.uid_fetch(uid, b"(UID)"), 2)
            await try_until_success(lambda: assert_not_connected(client))
            with pytest.raises(ImapError):
                await client.select()


def assert_not_connected(client: ImapClient):
    assert not client.is_connected
