import re
from datetime import datetime, timezone
from enum import Enum
from ipaddress import ip_address
from typing import Mapping, Optional, Type, TypeVar, Union
from xml.etree.ElementTree import Element, tostring

import defusedxml.ElementTree as DefusedElementTree
from defusedxml import DefusedXmlException
from xsdata.exceptions import ParserError
from xsdata.formats.dataclass.context import XmlContext
from xsdata.formats.dataclass.parsers import XmlParser
from xsdata.formats.dataclass.parsers.config import ParserConfig
from xsdata.formats.dataclass.serializers import XmlSerializer
from xsdata.formats.dataclass.serializers.config import SerializerConfig

import dmarc_report_analyzer.model as m
from dmarc_report_analyzer.dmarc_report import (
    Alignment,
    DateRange,
    Disposition,
    DkimAuthResult,
    DkimResult,
    DmarcResult,
    PolicyOverride,
    PolicyOverrideReason,
    PolicyPublished,
    Record,
    Report,
    ReportMetadata,
    SpfAuthResult,
    SpfResult,
    SpfScope,
)

_context = XmlContext()

EnumT = TypeVar("EnumT", bound=Enum)

SPF_RESULT_ALIASES = {"hardfail": "fail"}

# Counts and timestamps have at most 20 digits.
_INTEGER = re.compile(r"[+-]?\d{1,20}")


class DecodeError(Exception):
    """A payload is not a valid DMARC aggregate report.

    ``field`` is the path of the offending element and ``found`` what was
    found there. ``org_name`` and ``report_id`` are filled in if the report
    metadata could be decoded before the failure.
    """

    def __init__(
        self, reason: str, *, field: Optional[str] = None, found: Optional[str] = None
    ):
        self.reason = reason
        self.field = field
        self.found = found
        self.org_name: Optional[str] = None
        self.report_id: Optional[str] = None
        super().__init__(reason, field, found)

    def __str__(self):
        msg = f"{self.field}: {self.reason}" if self.field else self.reason
        if self.found is not None:
            msg += f" (found {self.found!r})"
        if self.org_name or self.report_id:
            msg += f" in report {self.report_id!r} by {self.org_name!r}"
        return msg


def decode(xml: Union[bytes, str]) -> Report:
    """Decode a DMARC aggregate report.

    Raises :class:`DecodeError` if required data is missing or malformed.
    Optional elements may be missing and element order, enum casing, and
    whitespace around values are not significant.
    """
    feedback = _bind(xml)
    if feedback.report_metadata is None:
        raise DecodeError("missing required element", field="report_metadata")
    metadata = _decode_metadata(feedback.report_metadata)
    try:
        policy = _decode_policy(feedback.policy_published)
        records = tuple(
            _decode_record(record, f"record[{i}]")
            for i, record in enumerate(feedback.record)
        )
    except DecodeError as err:
        err.org_name = metadata.org_name
        err.report_id = metadata.report_id
        raise
    return Report(
        metadata=metadata,
        policy=policy,
        records=records,
        version=_text(feedback.version),
    )


def encode(report: Report) -> bytes:
    """Serialize a report to aggregate report XML that :func:`decode` reads back
    into an equal report."""
    feedback = m.Feedback(
        version=report.version,
        report_metadata=m.ReportMetadataType(
            org_name=report.metadata.org_name,
            email=report.metadata.email,
            extra_contact_info=report.metadata.extra_contact_info,
            report_id=report.metadata.report_id,
            date_range=m.DateRangeType(
                begin=_format_timestamp(report.metadata.date_range.begin),
                end=_format_timestamp(report.metadata.date_range.end),
            ),
            error=list(report.metadata.errors),
            total_count=_format_optional(report.metadata.total_count),
        ),
        policy_published=m.PolicyPublishedType(
            domain=report.policy.domain,
            adkim=_format_optional(report.policy.adkim),
            aspf=_format_optional(report.policy.aspf),
            p=report.policy.p.value,
            sp=_format_optional(report.policy.sp),
            pct=str(report.policy.pct),
            fo=report.policy.fo,
        ),
        record=[_encode_record(record) for record in report.records],
    )
    serializer = XmlSerializer(context=_context, config=SerializerConfig(indent="  "))
    return serializer.render(feedback).encode("utf-8")


def _bind(xml: Union[bytes, str]) -> m.Feedback:
    if isinstance(xml, str):
        xml = xml.encode("utf-8")
    root = _parse_without_namespaces(xml.strip())
    if root.tag != "feedback":
        raise DecodeError(
            "not a DMARC aggregate report", field="feedback", found=root.tag
        )
    parser = XmlParser(
        context=_context, config=ParserConfig(fail_on_unknown_properties=False)
    )
    try:
        return parser.from_string(tostring(root, encoding="unicode"), m.Feedback)
    except ParserError as err:
        raise DecodeError("unexpected report structure", found=str(err)) from err


def _parse_without_namespaces(xml: bytes) -> Element:
    try:
        root = DefusedElementTree.fromstring(xml)
    except DefusedElementTree.ParseError as err:
        raise DecodeError("not well-formed XML", found=str(err)) from err
    except DefusedXmlException as err:
        raise DecodeError("forbidden XML construct", found=str(err)) from err
    for element in root.iter():
        if "}" in element.tag:
            element.tag = element.tag.split("}", 1)[1]
        element.attrib.clear()
    return root


def _decode_metadata(raw: m.ReportMetadataType) -> ReportMetadata:
    org_name = _required(raw.org_name, "report_metadata.org_name")
    report_id = _required(raw.report_id, "report_metadata.report_id")
    try:
        if raw.date_range is None:
            raise DecodeError(
                "missing required element", field="report_metadata.date_range"
            )
        date_range = DateRange(
            begin=_timestamp(raw.date_range.begin, "report_metadata.date_range.begin"),
            end=_timestamp(raw.date_range.end, "report_metadata.date_range.end"),
        )
        if date_range.begin > date_range.end:
            raise DecodeError(
                "date range begins after it ends",
                field="report_metadata.date_range",
                found=f"{raw.date_range.begin}-{raw.date_range.end}",
            )
        total_count = _integer(
            raw.total_count, "report_metadata.total_count", required=False
        )
    except DecodeError as err:
        err.org_name = org_name
        err.report_id = report_id
        raise
    return ReportMetadata(
        org_name=org_name,
        report_id=report_id,
        date_range=date_range,
        email=_text(raw.email),
        extra_contact_info=_text(raw.extra_contact_info),
        errors=tuple(filter(None, (_text(error) for error in raw.error))),
        total_count=total_count,
    )


def _decode_policy(raw: Optional[m.PolicyPublishedType]) -> PolicyPublished:
    if raw is None:
        raise DecodeError("missing required element", field="policy_published")
    pct = _integer(raw.pct, "policy_published.pct", required=False)
    if pct is None:
        pct = 100
    elif not 0 <= pct <= 100:
        raise DecodeError(
            "percentage out of range", field="policy_published.pct", found=raw.pct
        )
    p = _enum(Disposition, raw.p, "policy_published.p")
    if p is None:
        raise DecodeError("missing required element", field="policy_published.p")
    return PolicyPublished(
        domain=_required(raw.domain, "policy_published.domain"),
        p=p,
        sp=_enum(Disposition, raw.sp, "policy_published.sp"),
        adkim=_enum(Alignment, raw.adkim, "policy_published.adkim"),
        aspf=_enum(Alignment, raw.aspf, "policy_published.aspf"),
        pct=pct,
        fo=_text(raw.fo),
    )


def _decode_record(raw: m.RecordType, path: str) -> Record:
    row = raw.row
    if row is None:
        raise DecodeError("missing required element", field=f"{path}.row")
    source_ip_text = _required(row.source_ip, f"{path}.row.source_ip")
    try:
        source_ip = ip_address(source_ip_text)
    except ValueError:
        raise DecodeError(
            "not an IP address", field=f"{path}.row.source_ip", found=row.source_ip
        ) from None
    count = _integer(row.count, f"{path}.row.count")
    if count < 0:
        raise DecodeError(
            "negative message count", field=f"{path}.row.count", found=row.count
        )

    evaluated = row.policy_evaluated or m.PolicyEvaluatedType()
    identifiers = raw.identifiers or m.IdentifierType()
    auth_results = raw.auth_results or m.AuthResultType()
    evaluated_path = f"{path}.row.policy_evaluated"
    return Record(
        source_ip=source_ip,
        count=count,
        header_from=_required(
            identifiers.header_from, f"{path}.identifiers.header_from"
        ),
        disposition=_enum(
            Disposition, evaluated.disposition, f"{evaluated_path}.disposition"
        )
        or Disposition.NONE_VALUE,
        dkim=_enum(DmarcResult, evaluated.dkim, f"{evaluated_path}.dkim"),
        spf=_enum(DmarcResult, evaluated.spf, f"{evaluated_path}.spf"),
        envelope_from=_text(identifiers.envelope_from),
        envelope_to=_text(identifiers.envelope_to),
        dkim_results=tuple(
            DkimAuthResult(
                domain=_text(dkim.domain) or "",
                result=_enum(DkimResult, dkim.result, f"{path}.auth_results.dkim")
                or DkimResult.NONE_VALUE,
                selector=_text(dkim.selector),
                human_result=_text(dkim.human_result),
            )
            for dkim in auth_results.dkim
        ),
        spf_results=tuple(
            SpfAuthResult(
                domain=_text(spf.domain) or "",
                result=_enum(
                    SpfResult,
                    spf.result,
                    f"{path}.auth_results.spf",
                    aliases=SPF_RESULT_ALIASES,
                )
                or SpfResult.NONE_VALUE,
                scope=_enum(SpfScope, spf.scope, f"{path}.auth_results.spf.scope"),
            )
            for spf in auth_results.spf
        ),
        reasons=tuple(
            PolicyOverrideReason(
                type=_enum(PolicyOverride, reason.type, f"{evaluated_path}.reason")
                or PolicyOverride.OTHER,
                comment=_text(reason.comment),
            )
            for reason in evaluated.reason
        ),
    )


def _encode_record(record: Record) -> m.RecordType:
    return m.RecordType(
        row=m.RowType(
            source_ip=str(record.source_ip),
            count=str(record.count),
            policy_evaluated=m.PolicyEvaluatedType(
                disposition=record.disposition.value,
                dkim=_format_optional(record.dkim),
                spf=_format_optional(record.spf),
                reason=[
                    m.PolicyOverrideReason(type=r.type.value, comment=r.comment)
                    for r in record.reasons
                ],
            ),
        ),
        identifiers=m.IdentifierType(
            envelope_to=record.envelope_to,
            envelope_from=record.envelope_from,
            header_from=record.header_from,
        ),
        auth_results=m.AuthResultType(
            dkim=[
                m.DkimauthResultType(
                    domain=r.domain,
                    selector=r.selector,
                    result=r.result.value,
                    human_result=r.human_result,
                )
                for r in record.dkim_results
            ],
            spf=[
                m.SpfauthResultType(
                    domain=r.domain,
                    scope=_format_optional(r.scope),
                    result=r.result.value,
                )
                for r in record.spf_results
            ],
        ),
    )


def _text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip() or None


def _required(value: Optional[str], field: str) -> str:
    text = _text(value)
    if text is None:
        raise DecodeError("missing required element", field=field)
    return text


def _integer(value: Optional[str], field: str, *, required: bool = True):
    text = _text(value)
    if text is None:
        if required:
            raise DecodeError("missing required element", field=field)
        return None
    if not _INTEGER.fullmatch(text):
        raise DecodeError("not an integer", field=field, found=value)
    return int(text)


def _timestamp(value: Optional[str], field: str) -> datetime:
    seconds = _integer(value, field)
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        raise DecodeError("timestamp out of range", field=field, found=value) from None


def _enum(
    enum_cls: Type[EnumT],
    value: Optional[str],
    field: str,
    *,
    aliases: Optional[Mapping[str, str]] = None,
) -> Optional[EnumT]:
    text = _text(value)
    if text is None:
        return None
    normalized = text.lower()
    if aliases:
        normalized = aliases.get(normalized, normalized)
    try:
        return enum_cls(normalized)
    except ValueError:
        raise DecodeError(
            f"unknown {enum_cls.__name__} value", field=field, found=value
        ) from None


def _format_timestamp(value: datetime) -> str:
    return str(int(value.timestamp()))


def _format_optional(value: Union[Enum, int, None]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    return str(value)
