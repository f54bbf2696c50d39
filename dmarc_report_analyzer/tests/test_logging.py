import json
import logging

import pytest

from dmarc_report_analyzer.app import App
from dmarc_report_analyzer.ingestion_errors import IngestionErrorLog
from dmarc_report_analyzer.logging import configure_logging, parse_log_level
from dmarc_report_analyzer.model.tests.sample_data import create_sample_xml
from dmarc_report_analyzer.poll_scheduler import Backoff, PollScheduler
from dmarc_report_analyzer.tests.sample_emails import (
    Attachment,
    create_email_with_attachment,
)

from .conftest import try_until_success
from .fake_mailbox import FakeMailbox


@pytest.fixture(autouse=True)
def reset_logging_config_after_test():
    yield None
    logging.Logger.manager.loggerDict.clear()
    configure_logging({}, debug=True)


def json_lines(text):
    return [json.loads(line) for line in text.splitlines() if line.startswith("{")]


@pytest.mark.asyncio
async def test_poller_warning_as_json(capsys):
    configure_logging({}, log_format="json")
    mailbox = FakeMailbox()
    mailbox.unavailable = True
    scheduler = PollScheduler(
        mailbox=mailbox, error_log=IngestionErrorLog(), backoff=Backoff(0.01, 0.04)
    )

    scheduler.start(lambda raw, source: None)
    try:
        await try_until_success(lambda: assert_at_least(mailbox.connects, 2))
    finally:
        await scheduler.stop()

    warnings = [
        doc
        for doc in json_lines(capsys.readouterr().err)
        if doc["event"] == "Mailbox unavailable, retrying later."
    ]
    assert warnings
    doc = warnings[0]
    assert doc["level"] == "warning"
    assert doc["logger"] == "PollScheduler"
    assert doc["error"] == "Failed to connect: connection refused"
    assert doc["retry_in_seconds"] == 0.01
    assert "timestamp" in doc


@pytest.mark.asyncio
async def test_count_mismatch_warning_as_plain_text(capsys):
    configure_logging({}, log_format="plain")
    app = App(
        http_addr=("127.0.0.1", 9797),
        http_credentials=("admin", "secret"),
        scheduler=PollScheduler(mailbox=FakeMailbox(), error_log=IngestionErrorLog()),
    )
    xml = create_sample_xml(report_id="mismatch", count=2).replace(
        "</report_id>", "</report_id><total_count>5</total_count>"
    )
    raw = create_email_with_attachment(
        Attachment("report.xml", xml.encode("utf-8"), "text/xml")
    ).as_bytes()

    await app.process_message(raw, "INBOX:7")

    err = capsys.readouterr().err
    assert "\x1b[" not in err
    (line,) = [
        line
        for line in err.splitlines()
        if "Report total does not match the sum of its records." in line
    ]
    assert "[warning  ]" in line
    assert "[App]" in line
    for field in ("source=INBOX:7", "total_count=5", "record_sum=2"):
        assert field in line


def test_stdlib_records_share_the_json_format(capsys):
    configure_logging({}, log_format="json")

    logging.getLogger("uvicorn.error").warning("Port %d busy.", 9797)

    (doc,) = json_lines(capsys.readouterr().err)
    assert doc["event"] == "Port 9797 busy."
    assert doc["level"] == "warning"
    assert doc["logger"] == "uvicorn.error"


@pytest.mark.parametrize(
    "log_level,access_level",
    [("debug", logging.WARNING), ("info", logging.WARNING), ("error", logging.ERROR)],
)
def test_access_log_is_quiet_below_warning(log_level, access_level):
    configure_logging({}, log_level=log_level)

    assert logging.getLogger("uvicorn.access").level == access_level


def test_debug_overrides_log_level():
    configure_logging({"root": {"level": "ERROR"}}, debug=True, log_level="error")

    assert logging.getLogger().level == logging.DEBUG


def test_log_level_overrides_config(caplog):
    configure_logging({"root": {"level": "DEBUG"}}, log_level="error")
    mailbox_logger = logging.getLogger("dmarc_report_analyzer.mailbox")
    logging.getLogger().addHandler(caplog.handler)

    mailbox_logger.warning("dropped")
    mailbox_logger.error("kept")

    assert caplog.record_tuples == [
        ("dmarc_report_analyzer.mailbox", logging.ERROR, "kept")
    ]


def test_rejects_unknown_format():
    with pytest.raises(ValueError, match="xml"):
        configure_logging({}, log_format="xml")


def test_rejects_unknown_level():
    with pytest.raises(ValueError, match="verbose"):
        configure_logging({}, log_level="verbose")


@pytest.mark.parametrize(
    "level,expected",
    [
        (logging.ERROR, logging.ERROR),
        ("debug", logging.DEBUG),
        (" WARNING ", logging.WARNING),
        ("CriTical", logging.CRITICAL),
    ],
)
def test_parse_log_level(level, expected):
    assert parse_log_level(level) == expected


def assert_at_least(actual, minimum):
    assert actual >= minimum
