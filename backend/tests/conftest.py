"""
Shared fixtures and in-memory collaborators for the grant intake tests.

The fakes implement the same protocols as the production adapters:
- MemoryBlobStore  -> grant_intake.storage.BlobStore
- MemorySubmissionStore -> grant_intake.services.submission_store.SubmissionStore

Usage:
    pytest backend/tests -v
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple

import pytest

from grant_intake.config import IntakePolicy, ReviewLinkSettings
from grant_intake.models.submission_models import (
    ApplicationRecord,
    DeliveryOutcome,
    ReviewShare,
)
from grant_intake.storage import StoredBlob

VALID_BTC_ADDRESS = "1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2"
REVIEW_SECRET = "test-review-link-secret"
PDF_BYTES = b"%PDF-1.4\n" + b"0" * 2048 + b"\n%%EOF\n"


# ============================================================================
# CLOCK
# ============================================================================

class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


# ============================================================================
# BLOB STORE
# ============================================================================

class MemoryBlobStore:
    """Blob store that only makes a blob visible once its write completes."""

    def __init__(self, fail_write: bool = False, fail_delete: bool = False):
        self.blobs: Dict[str, Tuple[bytes, str, dict]] = {}
        self.started: List[str] = []
        self.deleted: List[str] = []
        self.fail_write = fail_write
        self.fail_delete = fail_delete

    async def write(self, file_id, chunks, *, content_type, metadata=None) -> int:
        self.started.append(file_id)
        buffer = bytearray()
        async for chunk in chunks:
            if self.fail_write:
                raise IOError("blob backend unavailable")
            buffer.extend(chunk)
            await asyncio.sleep(0)
        self.blobs[file_id] = (bytes(buffer), content_type, dict(metadata or {}))
        return len(buffer)

    async def open(self, file_id) -> Optional[StoredBlob]:
        if file_id not in self.blobs:
            return None
        data, content_type, metadata = self.blobs[file_id]

        async def _chunks() -> AsyncIterator[bytes]:
            for i in range(0, len(data), 1024):
                yield data[i : i + 1024]

        return StoredBlob(
            file_id=file_id,
            content_type=content_type,
            size=len(data),
            chunks=_chunks(),
            metadata=metadata,
        )

    async def delete(self, file_id) -> None:
        self.deleted.append(file_id)
        if self.fail_delete:
            raise IOError("delete failed")
        self.blobs.pop(file_id, None)


# ============================================================================
# DOCUMENT STORE
# ============================================================================

class MemorySubmissionStore:
    """Dict-backed submission store mirroring SqlSubmissionStore semantics."""

    def __init__(self, fail_insert: bool = False):
        self.records: Dict[str, ApplicationRecord] = {}
        self.fail_insert = fail_insert
        self.deliveries: List[Tuple[str, str, DeliveryOutcome]] = []

    async def insert(self, record: ApplicationRecord) -> ApplicationRecord:
        if self.fail_insert:
            raise ConnectionError("database unreachable")
        saved = record.model_copy(update={"id": str(uuid.uuid4())})
        self.records[saved.id] = saved
        return saved

    async def get(self, submission_id: str) -> Optional[ApplicationRecord]:
        return self.records.get(submission_id)

    async def apply_admin_changes(self, submission_id, changes, now):
        record = self.records.get(submission_id)
        if record is None:
            return None
        oversight = record.oversight.model_copy()
        update = {"updated_at": now}
        for key, value in changes.items():
            if key.startswith("oversight."):
                setattr(oversight, key.split(".", 1)[1], value)
            else:
                update[key] = value
        update["oversight"] = oversight
        saved = ApplicationRecord.model_validate({**record.model_dump(), **update})
        self.records[submission_id] = saved
        return saved

    async def append_share(self, submission_id: str, share: ReviewShare, now) -> bool:
        record = self.records.get(submission_id)
        if record is None:
            return False
        self.records[submission_id] = record.model_copy(
            update={"review_shares": [*record.review_shares, share], "updated_at": now}
        )
        return True

    async def find_by_share(self, token_hash: str, now) -> List[ApplicationRecord]:
        return [
            r
            for r in self.records.values()
            if any(s.token_hash == token_hash and s.expires_at > now for s in r.review_shares)
        ][:2]

    async def record_delivery(self, submission_id, kind, outcome) -> None:
        self.deliveries.append((submission_id, kind, outcome))
        record = self.records.get(submission_id)
        if record is not None:
            self.records[submission_id] = record.model_copy(update={kind: outcome})


# ============================================================================
# BOT CHECK
# ============================================================================

class StaticBotCheck:
    def __init__(self, result: bool = True):
        self.result = result
        self.calls: List[Tuple[Optional[str], Optional[str]]] = []

    async def verify(self, token, client_ip) -> bool:
        self.calls.append((token, client_ip))
        return self.result


# ============================================================================
# MULTIPART BUILDERS
# ============================================================================

BOUNDARY = "----grantintakeboundary7MA4YWxkTrZu0gW"


def build_multipart(
    fields: Sequence[Tuple[str, str]] = (),
    files: Sequence[Tuple[str, str, bytes, str]] = (),
    boundary: str = BOUNDARY,
) -> Tuple[str, bytes]:
    """Encode ``(name, value)`` fields and ``(field, filename, data, mime)`` files."""
    parts = []
    for name, value in fields:
        parts.append(
            (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{name}"\r\n\r\n'
            ).encode()
            + value.encode("utf-8")
            + b"\r\n"
        )
    for field_name, filename, data, mime in files:
        parts.append(
            (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{field_name}"; filename="{filename}"\r\n'
                f"Content-Type: {mime}\r\n\r\n"
            ).encode()
            + data
            + b"\r\n"
        )
    body = b"".join(parts) + f"--{boundary}--\r\n".encode()
    return f"multipart/form-data; boundary={boundary}", body


async def stream_bytes(body: bytes, chunk_size: int = 512) -> AsyncIterator[bytes]:
    for i in range(0, len(body), chunk_size):
        yield body[i : i + chunk_size]


def make_fields(**overrides) -> Dict[str, str]:
    """Factory for a complete, valid individual application."""
    fields = {
        "applicantType": "individual",
        "legalName": "Ada Lovelace",
        "email": "ada@example.org",
        "phone": "555-0100",
        "mailingAddress": "1 Analytical Way, London",
        "links": "https://ada.example.org",
        "btcAddress": VALID_BTC_ADDRESS,
        "projectTitle": "Engines of Sound",
        "projectSummary": "A generative music installation.",
        "projectDescription": "Mechanical instruments driven by punched cards.",
        "timeline": "Six months",
        "venuePlatform": "Community gallery",
        "impact": "Free public performances.",
        "requestedAmount": "2,500",
        "budgetBreakdown": "Materials 2000, venue 500",
        "fundUse": "Build the instrument.",
        "bio": "Composer and mathematician.",
        "accomplishments": "First published algorithm.",
        "equityInclusion": "Open workshops for all ages.",
        "evaluationPlan": "Visitor surveys.",
        "reportingPlan": "Written report and photos.",
        "missionAligned": "on",
        "eligibleJurisdiction": "on",
        "agreeOversight": "on",
        "agreeTerms": "on",
        "agreeLegalAssurances": "on",
        "signatureName": "Ada Lovelace",
    }
    fields.update(overrides)
    return {k: v for k, v in fields.items() if v is not None}


def make_form(fields: Optional[Dict[str, str]] = None, disciplines=("music",)):
    """Fields dict plus repeated discipline[] entries as multipart tuples."""
    items = list((fields if fields is not None else make_fields()).items())
    items += [("discipline[]", d) for d in disciplines]
    return items


def make_record(now: Optional[datetime] = None, **overrides) -> ApplicationRecord:
    """Factory for a stored-shape application record (no id)."""
    now = now or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    data = {
        "created_at": now,
        "updated_at": now,
        "applicant": {
            "legal_name": "Ada Lovelace",
            "email": "ada@example.org",
            "phone": "555-0100",
            "mailing_address": "1 Analytical Way, London",
            "links": "https://ada.example.org",
            "applicant_type": "individual",
            "disciplines": ["music"],
            "btc_address": VALID_BTC_ADDRESS,
        },
        "project": {
            "title": "Engines of Sound",
            "summary": "A generative music installation.",
            "description": "Mechanical instruments driven by punched cards.",
            "timeline": "Six months",
            "venue_platform": "Community gallery",
            "impact": "Free public performances.",
        },
        "funding": {
            "requested_amount": 2500.0,
            "budget_breakdown": "Materials 2000, venue 500",
            "fund_use": "Build the instrument.",
        },
        "background": {
            "bio": "Composer and mathematician.",
            "accomplishments": "First published algorithm.",
            "equity_inclusion": "Open workshops for all ages.",
            "evaluation_plan": "Visitor surveys.",
        },
        "oversight": {"reporting_plan": "Written report and photos."},
        "certification": {
            "signature": {"name": "Ada Lovelace", "signed_at": now, "policy_version": 1}
        },
        "uploads": [
            {
                "file_id": "a" * 32,
                "field_name": "portfolioResume",
                "filename": "portfolio.pdf",
                "mime_type": "application/pdf",
                "size": len(PDF_BYTES),
            }
        ],
        "admin_notes": "Strong candidate",
        "meta": {"ip": "203.0.113.7", "user_agent": "pytest-agent"},
    }
    data.update(overrides)
    return ApplicationRecord.model_validate(data)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def blob_store():
    return MemoryBlobStore()


@pytest.fixture
def submission_store():
    return MemorySubmissionStore()


@pytest.fixture
def bot_check():
    return StaticBotCheck(True)


@pytest.fixture
def policy():
    return IntakePolicy(max_file_bytes=64 * 1024, max_files=4, max_fields=100)


@pytest.fixture
def link_settings():
    return ReviewLinkSettings(base_url="https://grants.example.org")
