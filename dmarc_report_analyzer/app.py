import argparse
import asyncio
import os
import sys
from asyncio import CancelledError
from typing import Any, Callable, Mapping, Optional, Sequence, Tuple

import structlog

from dmarc_report_analyzer.attachments import extract
from dmarc_report_analyzer.http_api import Server, create_app
from dmarc_report_analyzer.imap_client import ConnectionConfig
from dmarc_report_analyzer.ingestion_errors import ErrorKind, IngestionErrorLog
from dmarc_report_analyzer.logging import LOG_FORMATS, configure_logging
from dmarc_report_analyzer.mailbox import Mailbox, MailboxConfig, MessageFilter
from dmarc_report_analyzer.poll_scheduler import MessageOutcome, PollScheduler
from dmarc_report_analyzer.prometheus_exporter import PrometheusExporter
from dmarc_report_analyzer.report_decoder import DecodeError, decode
from dmarc_report_analyzer.report_store import MergeResult, ReportStore

logger = structlog.get_logger()


def env_name(option: str) -> str:
    return option.lstrip("-").replace("-", "_").upper()


class _EnvOptions:
    def __init__(self, parser: argparse.ArgumentParser, environ: Mapping[str, str]):
        self.parser = parser
        self.environ = environ
        self._target: Any = parser

    def group(self, title: str):
        self._target = self.parser.add_argument_group(title)

    def add(self, option: str, *, help: str, required: bool = False, **kwargs):
        # pylint: disable=redefined-builtin
        name = env_name(option)
        default = self.environ.get(name, kwargs.pop("default", None))
        self._target.add_argument(
            option,
            default=default,
            required=required and default is None,
            help=f"{help} [env: {name}]",
            **kwargs,
        )

    def add_flag(self, option: str, *, help: str):
        # pylint: disable=redefined-builtin
        name = env_name(option)
        self._target.add_argument(
            option,
            action="store_true",
            default=self.environ.get(name, "").lower() in ("1", "true", "yes"),
            help=f"{help} [env: {name}]",
        )


def create_argument_parser(
    environ: Mapping[str, str] = os.environ,
) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Collect DMARC aggregate reports from an IMAP mailbox and "
        "provide them, and metrics derived from them, over HTTP. Every option "
        "can also be given by the environment variable named in brackets."
    )
    options = _EnvOptions(parser, environ)

    options.group("mailbox")
    options.add("--imap-host", required=True, help="IMAP server host name")
    options.add("--imap-port", type=int, default=993, help="IMAP server port")
    options.add("--imap-user", required=True, help="IMAP login")
    options.add("--imap-password", required=True, help="IMAP password")
    options.add("--imap-inbox", default="INBOX", help="Folder receiving reports")
    options.add(
        "--imap-processed-folder",
        help="Folder that processed messages are moved to (default: leave them "
        "in the inbox, marked as seen)",
    )
    options.add_flag(
        "--imap-no-verify-certificate", help="Do not verify the TLS certificate"
    )
    options.add_flag("--imap-no-ssl", help="Connect without TLS")
    options.add(
        "--imap-timeout",
        type=float,
        default=60,
        help="Seconds to wait for the IMAP server",
    )

    options.group("http")
    options.add("--http-host", default="127.0.0.1", help="Address to listen on")
    options.add("--http-port", type=int, default=8080, help="Port to listen on")
    options.add("--http-user", required=True, help="User for HTTP basic auth")
    options.add("--http-password", required=True, help="Password for HTTP basic auth")

    options.group("polling")
    options.add(
        "--poll-interval",
        type=float,
        default=60,
        help="Seconds between polls of the mailbox",
    )
    options.add(
        "--message-filter",
        choices=[f.value for f in MessageFilter],
        default=MessageFilter.UNSEEN.value,
        help="Which messages to process after the initial synchronisation",
    )

    options.group("logging")
    options.add(
        "--log-format", choices=LOG_FORMATS, default="colored", help="Log format"
    )
    options.add(
        "--log-level",
        choices=("debug", "info", "warning", "error", "critical"),
        default="info",
        help="Minimum level of log messages",
    )
    parser.add_argument(
        "--debug",
        default=False,
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def main(argv: Sequence[str], environ: Mapping[str, str] = os.environ):
    args = create_argument_parser(environ).parse_args(argv)

    configure_logging(
        {}, debug=args.debug, log_format=args.log_format, log_level=args.log_level
    )

    mailbox = Mailbox(
        MailboxConfig(
            connection=ConnectionConfig(
                username=args.imap_user,
                password=args.imap_password,
                host=args.imap_host,
                port=args.imap_port,
                use_ssl=not args.imap_no_ssl,
                verify_certificate=not args.imap_no_verify_certificate,
            ),
            inbox=args.imap_inbox,
            processed_folder=args.imap_processed_folder,
            timeout_seconds=args.imap_timeout,
        )
    )
    app = App(
        http_addr=(args.http_host, args.http_port),
        http_credentials=(args.http_user, args.http_password),
        scheduler=PollScheduler(
            mailbox=mailbox,
            error_log=IngestionErrorLog(),
            poll_interval_seconds=args.poll_interval,
            message_filter=MessageFilter(args.message_filter),
        ),
    )

    asyncio.run(app.run())


def cli():
    main(sys.argv[1:])


class App:
    # pylint: disable=too-many-arguments
    def __init__(
        self,
        *,
        http_addr: Tuple[str, int],
        http_credentials: Tuple[str, str],
        scheduler: PollScheduler,
        store: Optional[ReportStore] = None,
        server_cls: Callable[..., Any] = Server,
    ):
        self.http_addr = http_addr
        self.http_credentials = http_credentials
        self.scheduler = scheduler
        self.error_log = scheduler.error_log
        self.store = store if store is not None else ReportStore()
        self.server_cls = server_cls

    async def run(self):
        api = create_app(
            store=self.store,
            error_log=self.error_log,
            credentials=self.http_credentials,
            scheduler=self.scheduler,
        )
        exporter = PrometheusExporter(self.store, self.error_log, self.scheduler)
        try:
            self.scheduler.start(self.process_message)
            async with self.server_cls(api, *self.http_addr, collector=exporter):
                await asyncio.Event().wait()
        except CancelledError:
            pass
        finally:
            await self.scheduler.stop()

    async def process_message(self, raw: bytes, source: str) -> MessageOutcome:
        """Extract, decode and merge all reports in one email.

        Reports that decode are merged even if other attachments of the same
        email fail; the returned errors prevent its acknowledgement.
        """
        log = logger.bind(logger=self.__class__.__name__, source=source)
        outcome = MessageOutcome()
        extraction = extract(raw)
        outcome.errors.extend((ErrorKind.EXTRACTION, err) for err in extraction.errors)

        for payload in extraction.payloads:
            try:
                report = decode(payload.content)
            except DecodeError as err:
                outcome.errors.append((ErrorKind.DECODE, err))
                continue

            if report.has_count_mismatch:
                await log.awarning(
                    "Report total does not match the sum of its records.",
                    org_name=report.metadata.org_name,
                    report_id=report.metadata.report_id,
                    total_count=report.metadata.total_count,
                    record_sum=report.message_count,
                )

            if self.store.merge_insert(report, source) is MergeResult.INSERTED:
                outcome.inserted += 1
                await log.ainfo(
                    "Stored report.",
                    org_name=report.metadata.org_name,
                    report_id=report.metadata.report_id,
                    messages=report.message_count,
                )
            else:
                outcome.duplicates += 1
                await log.adebug(
                    "Skipped duplicate report.",
                    org_name=report.metadata.org_name,
                    report_id=report.metadata.report_id,
                )
        return outcome
