"""Streaming multipart/form-data decoding into a lazy event sequence.

Wraps the python-multipart push parser so request bytes are decoded as
they arrive, without buffering the body.  Each call to :meth:`events`
yields a finite, non-restartable async sequence of:

- :class:`FieldPart` for a complete scalar field,
- :class:`FileStart`, then zero or more :class:`FileChunk`, then
  :class:`FileEnd` for every file part, in arrival order.

The parser performs no I/O besides reading the request stream; storing
file bytes is left to the consumer.
"""

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Union

from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header

from grant_intake.errors import MalformedRequest, PolicyRejection, SizeViolation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldPart:
    name: str
    value: str


@dataclass(frozen=True)
class FileStart:
    field_name: str
    filename: str
    mime_type: str


@dataclass(frozen=True)
class FileChunk:
    data: bytes


@dataclass(frozen=True)
class FileEnd:
    pass


MultipartEvent = Union[FieldPart, FileStart, FileChunk, FileEnd]


def is_multipart(content_type: Optional[str]) -> bool:
    return "multipart/form-data" in (content_type or "").lower()


class MultipartEventStream:
    """Decode one multipart request body into :data:`MultipartEvent` values.

    Count limits are enforced as parts begin; the scalar-field byte limit
    is enforced while field data accumulates.  File size is deliberately
    not checked here; the consumer owns the per-file ceiling so it can
    abort the matching blob write.
    """

    def __init__(
        self,
        content_type: str,
        *,
        max_fields: int,
        max_files: int,
        max_field_bytes: int,
    ) -> None:
        if not is_multipart(content_type):
            raise MalformedRequest("Invalid request: expected multipart form data.")
        _, params = parse_options_header(content_type)
        boundary = params.get(b"boundary")
        if not boundary:
            raise MalformedRequest("Invalid request: missing multipart boundary.")
        charset = params.get(b"charset", b"utf-8")
        self._charset = charset.decode("latin-1") if isinstance(charset, bytes) else charset

        self.max_fields = max_fields
        self.max_files = max_files
        self.max_field_bytes = max_field_bytes

        self._pending: list[MultipartEvent] = []
        self._header_field = bytearray()
        self._header_value = bytearray()
        self._headers: dict[bytes, bytes] = {}
        self._field_name: Optional[str] = None
        self._field_value = bytearray()
        self._in_file = False
        self._field_count = 0
        self._file_count = 0
        self._ended = False
        self._consumed = False

        self._parser = MultipartParser(
            boundary,
            callbacks={
                "on_part_begin": self._on_part_begin,
                "on_part_data": self._on_part_data,
                "on_part_end": self._on_part_end,
                "on_header_field": self._on_header_field,
                "on_header_value": self._on_header_value,
                "on_header_end": self._on_header_end,
                "on_headers_finished": self._on_headers_finished,
                "on_end": self._on_end,
            },
        )

    # ------------------------------------------------------------------
    # Parser callbacks (synchronous, invoked from ``parser.write``)
    # ------------------------------------------------------------------

    def _on_part_begin(self) -> None:
        self._headers = {}
        self._field_name = None
        self._field_value = bytearray()
        self._in_file = False

    def _on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._header_field.extend(data[start:end])

    def _on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._header_value.extend(data[start:end])

    def _on_header_end(self) -> None:
        self._headers[bytes(self._header_field).lower()] = bytes(self._header_value)
        self._header_field = bytearray()
        self._header_value = bytearray()

    def _on_headers_finished(self) -> None:
        disposition = self._headers.get(b"content-disposition")
        if not disposition:
            raise MalformedRequest("Invalid upload: part without Content-Disposition.")
        _, options = parse_options_header(disposition)
        name = options.get(b"name")
        if name is None:
            raise MalformedRequest("Invalid upload: part without a field name.")
        name_str = self._decode(name)

        if b"filename" in options:
            self._file_count += 1
            if self._file_count > self.max_files:
                raise PolicyRejection(
                    f"Too many files. Please upload at most {self.max_files}."
                )
            self._in_file = True
            # Parameters such as "; name=x.pdf" are dropped; only the media type is kept.
            media_type, _ = parse_options_header(self._headers.get(b"content-type", b""))
            mime_type = media_type.decode("latin-1").strip().lower()
            self._pending.append(
                FileStart(
                    field_name=name_str,
                    filename=self._decode(options[b"filename"]),
                    mime_type=mime_type or "application/octet-stream",
                )
            )
        else:
            self._field_count += 1
            if self._field_count > self.max_fields:
                raise PolicyRejection("Too many form fields.")
            self._field_name = name_str

    def _on_part_data(self, data: bytes, start: int, end: int) -> None:
        if self._in_file:
            if end > start:
                self._pending.append(FileChunk(bytes(data[start:end])))
            return
        self._field_value.extend(data[start:end])
        if len(self._field_value) > self.max_field_bytes:
            raise SizeViolation(f"Form field '{self._field_name}' is too large.")

    def _on_part_end(self) -> None:
        if self._in_file:
            self._pending.append(FileEnd())
        elif self._field_name is not None:
            self._pending.append(
                FieldPart(self._field_name, self._decode(bytes(self._field_value)))
            )
        self._in_file = False
        self._field_name = None

    def _on_end(self) -> None:
        self._ended = True

    def _decode(self, raw: bytes) -> str:
        try:
            return raw.decode(self._charset)
        except (LookupError, UnicodeDecodeError):
            return raw.decode("latin-1")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def _drain(self) -> list[MultipartEvent]:
        events, self._pending = self._pending, []
        return events

    async def events(self, chunks: AsyncIterator[bytes]) -> AsyncIterator[MultipartEvent]:
        """Feed ``chunks`` through the parser, yielding events as they complete."""
        if self._consumed:
            raise RuntimeError("multipart stream already consumed")
        self._consumed = True

        received = False
        async for chunk in chunks:
            if not chunk:
                continue
            received = True
            try:
                self._parser.write(chunk)
            except MultipartParseError as exc:
                logger.info("Rejected malformed multipart body: %s", exc)
                raise MalformedRequest("Invalid upload. Please try again.") from exc
            for event in self._drain():
                yield event

        if not received:
            raise MalformedRequest("Empty request body.")
        try:
            self._parser.finalize()
        except MultipartParseError as exc:
            raise MalformedRequest("Invalid upload. Please try again.") from exc
        for event in self._drain():
            yield event
        if not self._ended:
            raise MalformedRequest("Invalid upload: request body ended early.")
