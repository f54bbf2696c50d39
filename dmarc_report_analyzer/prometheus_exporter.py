from collections import Counter, defaultdict
from typing import Any, Callable, DefaultDict, Optional, Tuple

from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily

import dmarc_report_analyzer
from dmarc_report_analyzer.dmarc_report import Disposition, Record
from dmarc_report_analyzer.ingestion_errors import IngestionErrorLog
from dmarc_report_analyzer.poll_scheduler import PollScheduler
from dmarc_report_analyzer.report_store import ReportStore

MESSAGE_COUNTERS: Tuple[Tuple[str, str, Callable[[Record], bool]], ...] = (
    ("dmarc_total", "Total number of reported messages.", lambda r: True),
    (
        "dmarc_compliant_total",
        "Total number of DMARC compliant messages.",
        lambda r: r.dmarc_compliant,
    ),
    (
        "dmarc_quarantine_total",
        "Total number of quarantined messages.",
        lambda r: r.disposition is Disposition.QUARANTINE,
    ),
    (
        "dmarc_reject_total",
        "Total number of rejected messages.",
        lambda r: r.disposition is Disposition.REJECT,
    ),
    (
        "dmarc_spf_aligned_total",
        "Total number of SPF aligned messages.",
        lambda r: r.spf_aligned,
    ),
    (
        "dmarc_spf_pass_total",
        "Total number of messages with raw SPF pass.",
        lambda r: r.spf_pass,
    ),
    (
        "dmarc_dkim_aligned_total",
        "Total number of DKIM aligned messages.",
        lambda r: r.dkim_aligned,
    ),
    (
        "dmarc_dkim_pass_total",
        "Total number of messages with raw DKIM pass.",
        lambda r: r.dkim_pass,
    ),
)


class PrometheusExporter:
    """Collector deriving the DMARC metrics from the current store contents.

    Nothing is cached, every scrape reads one consistent store snapshot.
    """

    LABELS = ("reporter", "from_domain")

    def __init__(
        self,
        store: ReportStore,
        error_log: IngestionErrorLog,
        scheduler: Optional[PollScheduler] = None,
    ):
        self.store = store
        self.error_log = error_log
        self.scheduler = scheduler

    def collect(self) -> Tuple[Any, ...]:
        build_info = GaugeMetricFamily(
            "dmarc_report_analyzer_build_info",
            "A metric with a constant '1' value labeled by version of the "
            "dmarc-report-analyzer.",
            labels=("version",),
        )
        build_info.add_metric((dmarc_report_analyzer.__version__,), 1.0)

        entries = self.store.query_all()
        reports_stored = GaugeMetricFamily(
            "dmarc_reports_stored", "Number of distinct reports in the store."
        )
        reports_stored.add_metric((), len(entries))

        counts: DefaultDict[Tuple[str, str], Counter] = defaultdict(Counter)
        for entry in entries:
            reporter = entry.report.metadata.org_name
            for record in entry.report.records:
                labels = (reporter, record.header_from.lower())
                for name, _, predicate in MESSAGE_COUNTERS:
                    if predicate(record):
                        counts[labels][name] += record.count

        message_families = []
        for name, documentation, _ in MESSAGE_COUNTERS:
            family = CounterMetricFamily(name, documentation, labels=self.LABELS)
            for labels, label_counts in sorted(counts.items()):
                family.add_metric(labels, label_counts[name])
            message_families.append(family)

        ingestion_errors = CounterMetricFamily(
            "dmarc_ingestion_errors_total",
            "Total number of errors while ingesting reports.",
            labels=("kind",),
        )
        for kind, count in self.error_log.totals().items():
            ingestion_errors.add_metric((kind.value,), count)

        families = [build_info, reports_stored, *message_families, ingestion_errors]
        if self.scheduler is not None and self.scheduler.last_success is not None:
            last_poll = GaugeMetricFamily(
                "dmarc_last_successful_poll_timestamp_seconds",
                "Unix time of the last completed poll of the mailbox.",
            )
            last_poll.add_metric((), self.scheduler.last_success.timestamp())
            families.append(last_poll)
        return tuple(families)
