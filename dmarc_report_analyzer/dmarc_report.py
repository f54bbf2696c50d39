from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from ipaddress import IPv4Address, IPv6Address
from typing import FrozenSet, Optional, Tuple, Union

IPAddress = Union[IPv4Address, IPv6Address]


class Alignment(Enum):
    RELAXED = "r"
    STRICT = "s"


class Disposition(Enum):
    NONE_VALUE = "none"
    QUARANTINE = "quarantine"
    REJECT = "reject"


class DmarcResult(Enum):
    PASS_VALUE = "pass"
    FAIL = "fail"


class DkimResult(Enum):
    NONE_VALUE = "none"
    PASS_VALUE = "pass"
    FAIL = "fail"
    POLICY = "policy"
    NEUTRAL = "neutral"
    TEMPERROR = "temperror"
    PERMERROR = "permerror"


class SpfResult(Enum):
    NONE_VALUE = "none"
    NEUTRAL = "neutral"
    PASS_VALUE = "pass"
    FAIL = "fail"
    SOFTFAIL = "softfail"
    TEMPERROR = "temperror"
    PERMERROR = "permerror"


class SpfScope(Enum):
    HELO = "helo"
    MFROM = "mfrom"


class PolicyOverride(Enum):
    FORWARDED = "forwarded"
    SAMPLED_OUT = "sampled_out"
    TRUSTED_FORWARDER = "trusted_forwarder"
    MAILING_LIST = "mailing_list"
    LOCAL_POLICY = "local_policy"
    OTHER = "other"


@dataclass(frozen=True)
class DateRange:
    begin: datetime
    end: datetime


@dataclass(frozen=True)
class ReportMetadata:
    org_name: str
    report_id: str
    date_range: DateRange
    email: Optional[str] = None
    extra_contact_info: Optional[str] = None
    errors: Tuple[str, ...] = ()
    total_count: Optional[int] = None


@dataclass(frozen=True)
class PolicyPublished:
    domain: str
    p: Disposition
    sp: Optional[Disposition] = None
    adkim: Optional[Alignment] = None
    aspf: Optional[Alignment] = None
    pct: int = 100
    fo: Optional[str] = None


@dataclass(frozen=True)
class DkimAuthResult:
    domain: str
    result: DkimResult
    selector: Optional[str] = None
    human_result: Optional[str] = None


@dataclass(frozen=True)
class SpfAuthResult:
    domain: str
    result: SpfResult
    scope: Optional[SpfScope] = None


@dataclass(frozen=True)
class PolicyOverrideReason:
    type: PolicyOverride
    comment: Optional[str] = None


@dataclass(frozen=True)
class Record:
    # pylint: disable=too-many-instance-attributes
    source_ip: IPAddress
    count: int
    header_from: str
    disposition: Disposition = Disposition.NONE_VALUE
    dkim: Optional[DmarcResult] = None
    spf: Optional[DmarcResult] = None
    envelope_from: Optional[str] = None
    envelope_to: Optional[str] = None
    dkim_results: Tuple[DkimAuthResult, ...] = ()
    spf_results: Tuple[SpfAuthResult, ...] = ()
    reasons: Tuple[PolicyOverrideReason, ...] = ()

    @property
    def dkim_aligned(self) -> bool:
        return self.dkim is DmarcResult.PASS_VALUE

    @property
    def spf_aligned(self) -> bool:
        return self.spf is DmarcResult.PASS_VALUE

    @property
    def dmarc_compliant(self) -> bool:
        return self.dkim_aligned or self.spf_aligned

    @property
    def dkim_pass(self) -> bool:
        return any(r.result is DkimResult.PASS_VALUE for r in self.dkim_results)

    @property
    def spf_pass(self) -> bool:
        return any(r.result is SpfResult.PASS_VALUE for r in self.spf_results)


@dataclass(frozen=True)
class Report:
    metadata: ReportMetadata
    policy: PolicyPublished
    records: Tuple[Record, ...] = field(default_factory=tuple)
    version: Optional[str] = None

    @property
    def identity_key(self) -> Tuple[str, str]:
        return (self.metadata.org_name, self.metadata.report_id)

    @property
    def message_count(self) -> int:
        return sum(record.count for record in self.records)

    @property
    def has_count_mismatch(self) -> bool:
        """Whether the sender's claimed total differs from the record sum.

        Some senders claim a total that does not add up; the report is kept
        as sent.
        """
        return (
            self.metadata.total_count is not None
            and self.metadata.total_count != self.message_count
        )

    @property
    def header_from_domains(self) -> FrozenSet[str]:
        return frozenset(record.header_from.lower() for record in self.records)
