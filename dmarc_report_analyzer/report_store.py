import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from dmarc_report_analyzer.dmarc_report import Disposition, Report


class MergeResult(Enum):
    INSERTED = "inserted"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class StoreEntry:
    report: Report
    first_seen: datetime
    source: Optional[str] = None


@dataclass(frozen=True)
class _Snapshot:
    entries: Tuple[StoreEntry, ...] = ()
    by_key: Mapping[Tuple[str, str], StoreEntry] = field(default_factory=dict)
    by_domain: Mapping[str, Tuple[StoreEntry, ...]] = field(default_factory=dict)


@dataclass
class ReportSummary:
    # pylint: disable=too-many-instance-attributes
    report_count: int = 0
    message_count: int = 0
    dmarc_compliant_count: int = 0
    dkim_aligned_count: int = 0
    spf_aligned_count: int = 0
    dkim_pass_count: int = 0
    spf_pass_count: int = 0
    disposition_counts: Dict[Disposition, int] = field(default_factory=dict)
    messages_by_domain: Dict[str, int] = field(default_factory=dict)
    messages_by_org: Dict[str, int] = field(default_factory=dict)
    latest_report_end: Optional[datetime] = None

    def update(self, report: Report):
        self.report_count += 1
        for record in report.records:
            self.message_count += record.count
            _increment(self.disposition_counts, record.disposition, record.count)
            _increment(
                self.messages_by_domain, record.header_from.lower(), record.count
            )
            if record.dmarc_compliant:
                self.dmarc_compliant_count += record.count
            if record.dkim_aligned:
                self.dkim_aligned_count += record.count
            if record.spf_aligned:
                self.spf_aligned_count += record.count
            if record.dkim_pass:
                self.dkim_pass_count += record.count
            if record.spf_pass:
                self.spf_pass_count += record.count
        _increment(
            self.messages_by_org, report.metadata.org_name, report.message_count
        )
        end = report.metadata.date_range.end
        if self.latest_report_end is None or end > self.latest_report_end:
            self.latest_report_end = end


def _increment(counts: Dict[Any, int], key: Any, count: int):
    counts[key] = counts.get(key, 0) + count


class ReportStore:
    """In-memory collection of decoded reports, deduplicated by
    ``(org name, report id)``.

    Readers never take a lock: they dereference the current immutable
    snapshot. The writer builds the next snapshot under a lock and publishes
    it with a single assignment, so a reader either sees a report completely
    or not at all.
    """

    def __init__(self, time_fn: Callable[[], float] = time.time):
        self._time = time_fn
        self._write_lock = threading.Lock()
        self._snapshot = _Snapshot()

    def __len__(self) -> int:
        return len(self._snapshot.entries)

    def __contains__(self, key: object) -> bool:
        return key in self._snapshot.by_key

    def merge_insert(
        self, report: Report, source: Optional[str] = None
    ) -> MergeResult:
        with self._write_lock:
            current = self._snapshot
            if report.identity_key in current.by_key:
                return MergeResult.DUPLICATE

            entry = StoreEntry(
                report=report,
                first_seen=datetime.fromtimestamp(self._time(), tz=timezone.utc),
                source=source,
            )
            by_key = dict(current.by_key)
            by_key[report.identity_key] = entry
            by_domain = dict(current.by_domain)
            for domain in report.header_from_domains:
                by_domain[domain] = by_domain.get(domain, ()) + (entry,)
            self._snapshot = _Snapshot(
                entries=current.entries + (entry,),
                by_key=by_key,
                by_domain=by_domain,
            )
            return MergeResult.INSERTED

    def query_all(self) -> Tuple[StoreEntry, ...]:
        return self._snapshot.entries

    def query_by_domain(self, domain: str) -> Tuple[StoreEntry, ...]:
        return self._snapshot.by_domain.get(domain.strip().lower(), ())

    def get(self, org_name: str, report_id: str) -> Optional[StoreEntry]:
        return self._snapshot.by_key.get((org_name, report_id))

    def domains(self) -> Tuple[str, ...]:
        return tuple(sorted(self._snapshot.by_domain))

    def summarize(self, domain: Optional[str] = None) -> ReportSummary:
        entries = self.query_all() if domain is None else self.query_by_domain(domain)
        summary = ReportSummary()
        for entry in entries:
            summary.update(entry.report)
        return summary
