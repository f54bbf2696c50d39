import email.policy
import gzip
import io
import os.path
import zipfile
import zlib
from dataclasses import dataclass, field
from email.contentmanager import raw_data_manager
from email.message import EmailMessage
from email.parser import BytesParser
from enum import Enum
from typing import Callable, Iterator, List, Mapping, Optional, Union, cast

MAX_PAYLOAD_BYTES = 64 * 1024 * 1024


class ContainerKind(Enum):
    XML = "xml"
    GZIP = "gzip"
    ZIP = "zip"


@dataclass(frozen=True)
class RawPayload:
    filename: Optional[str]
    content: bytes
    content_type: str


class ExtractionError(Exception):
    def __init__(self, filename: Optional[str], reason: str):
        self.filename = filename
        self.reason = reason
        super().__init__(filename, reason)

    def __str__(self):
        return f"Failed to extract '{self.filename or '<unnamed>'}': {self.reason}"


@dataclass
class Extraction:
    payloads: List[RawPayload] = field(default_factory=list)
    errors: List[ExtractionError] = field(default_factory=list)


content_type_kinds: Mapping[str, ContainerKind] = {
    "text/xml": ContainerKind.XML,
    "application/xml": ContainerKind.XML,
    "application/gzip": ContainerKind.GZIP,
    "application/x-gzip": ContainerKind.GZIP,
    "application/zip": ContainerKind.ZIP,
    "application/x-zip": ContainerKind.ZIP,
    "application/x-zip-compressed": ContainerKind.ZIP,
}

file_extension_kinds: Mapping[str, ContainerKind] = {
    ".xml": ContainerKind.XML,
    ".gz": ContainerKind.GZIP,
    ".gzip": ContainerKind.GZIP,
    ".zip": ContainerKind.ZIP,
}


def detect_kind(
    content_type: str, filename: Optional[str], content: bytes
) -> Optional[ContainerKind]:
    if content_type in content_type_kinds:
        return content_type_kinds[content_type]
    if content_type.startswith("multipart/") or filename is None:
        return None
    _, file_extension = os.path.splitext(filename.lower())
    if file_extension in file_extension_kinds:
        return file_extension_kinds[file_extension]
    if content.startswith(b"PK\x03\x04"):
        return ContainerKind.ZIP
    if content.startswith(b"\x1f\x8b"):
        return ContainerKind.GZIP
    if content.lstrip().startswith(b"<"):
        return ContainerKind.XML
    return None


def handle_xml(
    filename: Optional[str], content: bytes, content_type: str
) -> Iterator[Union[RawPayload, ExtractionError]]:
    if len(content) > MAX_PAYLOAD_BYTES:
        yield ExtractionError(filename, "payload too large")
    else:
        yield RawPayload(filename, content, content_type)


def handle_gzip(
    filename: Optional[str], content: bytes, content_type: str
) -> Iterator[Union[RawPayload, ExtractionError]]:
    try:
        with gzip.GzipFile(fileobj=io.BytesIO(content), mode="rb") as gzip_file:
            decompressed = gzip_file.read(MAX_PAYLOAD_BYTES + 1)
    except (OSError, EOFError, zlib.error) as err:
        yield ExtractionError(filename, f"corrupt gzip stream: {err}")
        return
    if len(decompressed) > MAX_PAYLOAD_BYTES:
        yield ExtractionError(filename, "decompressed payload too large")
        return
    yield RawPayload(_strip_extension(filename, ".gz"), decompressed, content_type)


def handle_zip(
    filename: Optional[str], content: bytes, content_type: str
) -> Iterator[Union[RawPayload, ExtractionError]]:
    try:
        zip_file = zipfile.ZipFile(io.BytesIO(content), "r")
    except (zipfile.BadZipFile, OSError, EOFError) as err:
        yield ExtractionError(filename, f"corrupt zip archive: {err}")
        return
    with zip_file:
        for info in zip_file.infolist():
            if info.is_dir():
                continue
            entry_name = f"{filename or '<unnamed>'}/{info.filename}"
            if info.file_size > MAX_PAYLOAD_BYTES:
                yield ExtractionError(entry_name, "decompressed payload too large")
                continue
            try:
                with zip_file.open(info, "r") as entry:
                    decompressed = entry.read(MAX_PAYLOAD_BYTES + 1)
            except (
                zipfile.BadZipFile,
                NotImplementedError,
                RuntimeError,
                OSError,
                EOFError,
                zlib.error,
            ) as err:
                yield ExtractionError(entry_name, f"corrupt zip entry: {err}")
                continue
            if len(decompressed) > MAX_PAYLOAD_BYTES:
                yield ExtractionError(entry_name, "decompressed payload too large")
                continue
            yield RawPayload(info.filename, decompressed, content_type)


kind_handlers: Mapping[
    ContainerKind,
    Callable[[Optional[str], bytes, str], Iterator[Union[RawPayload, ExtractionError]]],
] = {
    ContainerKind.XML: handle_xml,
    ContainerKind.GZIP: handle_gzip,
    ContainerKind.ZIP: handle_zip,
}


def parse_message(raw_message: bytes) -> EmailMessage:
    return cast(
        EmailMessage,
        BytesParser(policy=email.policy.default).parsebytes(raw_message),
    )


def extract(raw_message: Union[bytes, EmailMessage]) -> Extraction:
    """Extract the candidate report payloads from an email.

    Errors are collected per attachment (or per zip entry) and never abort
    the extraction of the remaining attachments.
    """
    msg = (
        raw_message
        if isinstance(raw_message, EmailMessage)
        else parse_message(raw_message)
    )
    extraction = Extraction()
    found_attachment = False
    for part in msg.walk():
        if part.is_multipart():
            continue
        content_type = part.get_content_type()
        filename = part.get_filename()
        try:
            content = raw_data_manager.get_content(part)
        except (LookupError, ValueError) as err:
            if filename or content_type in content_type_kinds:
                found_attachment = True
                extraction.errors.append(
                    ExtractionError(filename, f"undecodable MIME part: {err}")
                )
            continue
        if isinstance(content, str):
            content = content.encode(part.get_content_charset() or "utf-8")

        kind = detect_kind(content_type, filename, content)
        if kind is None:
            continue
        found_attachment = True
        for result in kind_handlers[kind](filename, content, content_type):
            if isinstance(result, ExtractionError):
                extraction.errors.append(result)
            else:
                extraction.payloads.append(result)

    if not found_attachment:
        from_email = msg.get("from", "<from missing>")
        subject = msg.get("subject", "<no subject>")
        extraction.errors.append(
            ExtractionError(
                None,
                f"no report attachment in email by {from_email} "
                f"with subject '{subject}'",
            )
        )
    return extraction


def _strip_extension(filename: Optional[str], extension: str) -> Optional[str]:
    if filename and filename.lower().endswith(extension):
        return filename[: -len(extension)]
    return filename
