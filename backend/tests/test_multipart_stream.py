"""
Tests for grant_intake.services.multipart_stream.

Usage:
    cd backend && pytest tests/test_multipart_stream.py -v
"""

import pytest

from grant_intake.errors import MalformedRequest, PolicyRejection, SizeViolation
from grant_intake.services.multipart_stream import (
    FieldPart,
    FileChunk,
    FileEnd,
    FileStart,
    MultipartEventStream,
    is_multipart,
)
from tests.conftest import PDF_BYTES, build_multipart, stream_bytes


def make_stream(content_type, **limits):
    options = {"max_fields": 50, "max_files": 5, "max_field_bytes": 4096}
    options.update(limits)
    return MultipartEventStream(content_type, **options)


async def collect(stream, body, chunk_size=64):
    return [event async for event in stream.events(stream_bytes(body, chunk_size))]


# ============================================================================
# DECODING
# ============================================================================

class TestDecoding:
    async def test_fields_and_file_in_order(self):
        """Fields and files are reported in arrival order."""
        content_type, body = build_multipart(
            fields=[("legalName", "Ada"), ("discipline[]", "music")],
            files=[("portfolioResume", "cv.pdf", PDF_BYTES, "application/pdf")],
        )
        events = await collect(make_stream(content_type), body)

        fields = [e for e in events if isinstance(e, FieldPart)]
        assert fields == [FieldPart("legalName", "Ada"), FieldPart("discipline[]", "music")]

        starts = [e for e in events if isinstance(e, FileStart)]
        assert starts == [FileStart("portfolioResume", "cv.pdf", "application/pdf")]
        assert isinstance(events[-1], FileEnd), "File part must close with FileEnd"

        data = b"".join(e.data for e in events if isinstance(e, FileChunk))
        assert data == PDF_BYTES, "File bytes must survive chunked parsing intact"

    async def test_file_bytes_arrive_incrementally(self):
        """A file larger than one read produces several chunk events."""
        content_type, body = build_multipart(
            files=[("portfolioResume", "cv.pdf", PDF_BYTES, "application/pdf")]
        )
        events = await collect(make_stream(content_type), body, chunk_size=128)
        chunks = [e for e in events if isinstance(e, FileChunk)]
        assert len(chunks) > 1

    async def test_utf8_field_values(self):
        content_type, body = build_multipart(fields=[("legalName", "Zoë Ñúñez")])
        events = await collect(make_stream(content_type), body)
        assert events == [FieldPart("legalName", "Zoë Ñúñez")]

    async def test_missing_part_content_type_defaults(self):
        content_type, body = build_multipart(
            files=[("portfolioResume", "cv.pdf", b"abc", "")]
        )
        body = body.replace(b"Content-Type: \r\n", b"")
        events = await collect(make_stream(content_type), body)
        start = next(e for e in events if isinstance(e, FileStart))
        assert start.mime_type == "application/octet-stream"

    async def test_part_content_type_parameters_dropped(self):
        content_type, body = build_multipart(
            files=[("portfolioResume", "cv.pdf", b"abc", "Application/PDF; name=cv.pdf")]
        )
        events = await collect(make_stream(content_type), body)
        start = next(e for e in events if isinstance(e, FileStart))
        assert start.mime_type == "application/pdf"

    async def test_stream_cannot_be_consumed_twice(self):
        content_type, body = build_multipart(fields=[("a", "b")])
        stream = make_stream(content_type)
        await collect(stream, body)
        with pytest.raises(RuntimeError):
            await collect(stream, body)


# ============================================================================
# MALFORMED INPUT
# ============================================================================

class TestMalformed:
    def test_is_multipart(self):
        assert is_multipart("multipart/form-data; boundary=x")
        assert not is_multipart("application/json")
        assert not is_multipart(None)

    def test_non_multipart_content_type(self):
        with pytest.raises(MalformedRequest):
            make_stream("application/x-www-form-urlencoded")

    def test_missing_boundary(self):
        with pytest.raises(MalformedRequest):
            make_stream("multipart/form-data")

    async def test_empty_body(self):
        content_type, _ = build_multipart(fields=[("a", "b")])
        with pytest.raises(MalformedRequest):
            await collect(make_stream(content_type), b"")

    async def test_truncated_body(self):
        """A body cut off before the closing boundary is rejected."""
        content_type, body = build_multipart(
            files=[("portfolioResume", "cv.pdf", PDF_BYTES, "application/pdf")]
        )
        with pytest.raises(MalformedRequest):
            await collect(make_stream(content_type), body[: len(body) // 2])


# ============================================================================
# LIMITS
# ============================================================================

class TestLimits:
    async def test_too_many_files(self):
        files = [("portfolioResume", f"f{i}.pdf", b"x", "application/pdf") for i in range(3)]
        content_type, body = build_multipart(files=files)
        with pytest.raises(PolicyRejection):
            await collect(make_stream(content_type, max_files=2), body)

    async def test_too_many_fields(self):
        content_type, body = build_multipart(fields=[(f"f{i}", "v") for i in range(4)])
        with pytest.raises(PolicyRejection):
            await collect(make_stream(content_type, max_fields=3), body)

    async def test_oversized_field(self):
        content_type, body = build_multipart(fields=[("bio", "x" * 5000)])
        with pytest.raises(SizeViolation):
            await collect(make_stream(content_type, max_field_bytes=1000), body)

    async def test_file_size_not_limited_here(self):
        """Per-file ceilings belong to the consumer, not the decoder."""
        content_type, body = build_multipart(
            files=[("portfolioResume", "big.pdf", b"x" * 10_000, "application/pdf")]
        )
        events = await collect(make_stream(content_type, max_field_bytes=100), body)
        assert sum(len(e.data) for e in events if isinstance(e, FileChunk)) == 10_000
