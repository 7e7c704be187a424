"""
Tests for SqlSubmissionStore against an in-memory SQLite database.

The same ORM models run on PostgreSQL in production; aiosqlite keeps these
tests self-contained.

Usage:
    cd backend && pytest tests/test_submission_store.py -v
"""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from grant_intake.database import build_session_factory, init_db
from grant_intake.models.submission_models import DeliveryOutcome, ReviewShare
from grant_intake.services.submission_store import SqlSubmissionStore
from tests.conftest import make_record


@pytest.fixture
async def store():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_db(engine)
    yield SqlSubmissionStore(build_session_factory(engine))
    await engine.dispose()


def make_share(clock, token_hash="f" * 64, days=14):
    return ReviewShare(
        token_hash=token_hash,
        created_at=clock.now,
        expires_at=clock.now + timedelta(days=days),
        sent_to=["r@example.org"],
        message="Please review",
    )


# ============================================================================
# INSERT / GET
# ============================================================================

class TestInsertAndGet:
    async def test_round_trip(self, store, clock):
        """Inserted records come back with an id and identical groups."""
        original = make_record(now=clock.now)
        saved = await store.insert(original)

        assert saved.id and uuid.UUID(saved.id)
        loaded = await store.get(saved.id)
        assert loaded is not None
        assert loaded.created_at == clock.now
        assert loaded.applicant == original.applicant
        assert loaded.project == original.project
        assert loaded.uploads == original.uploads
        assert loaded.certification.signature.signed_at == clock.now
        assert loaded.review_shares == []

    async def test_get_unknown(self, store):
        assert await store.get(str(uuid.uuid4())) is None
        assert await store.get("not-a-uuid") is None


# ============================================================================
# OPERATOR CHANGES
# ============================================================================

class TestAdminChanges:
    async def test_status_and_oversight(self, store, clock):
        saved = await store.insert(make_record(now=clock.now))
        clock.advance(days=3)
        due = clock.now + timedelta(days=180)

        updated = await store.apply_admin_changes(
            saved.id,
            {
                "status": "awarded",
                "awarded_at": clock.now,
                "oversight.report_due_at": due,
                "oversight.report_received_at": None,
                "admin_notes": "Approved by panel",
            },
            clock.now,
        )

        assert updated.status.value == "awarded"
        assert updated.awarded_at == clock.now
        assert updated.oversight.report_due_at == due
        assert updated.oversight.report_received_at is None
        assert updated.oversight.reporting_plan == "Written report and photos."
        assert updated.admin_notes == "Approved by panel"
        assert updated.updated_at == clock.now
        assert updated.created_at == saved.created_at

        reloaded = await store.get(saved.id)
        assert reloaded.oversight.report_due_at == due

    async def test_write_once_fields_refused(self, store, clock):
        saved = await store.insert(make_record(now=clock.now))
        with pytest.raises(ValueError):
            await store.apply_admin_changes(saved.id, {"applicant": {}}, clock.now)

    async def test_unknown_record(self, store, clock):
        result = await store.apply_admin_changes(str(uuid.uuid4()), {"status": "declined"}, clock.now)
        assert result is None


# ============================================================================
# REVIEW SHARES
# ============================================================================

class TestShares:
    async def test_append_and_find(self, store, clock):
        saved = await store.insert(make_record(now=clock.now))
        assert await store.append_share(saved.id, make_share(clock), clock.now)

        matches = await store.find_by_share("f" * 64, clock.now)
        assert [m.id for m in matches] == [saved.id]
        assert matches[0].review_shares[0].sent_to == ["r@example.org"]

    async def test_expired_share_not_found(self, store, clock):
        saved = await store.insert(make_record(now=clock.now))
        await store.append_share(saved.id, make_share(clock, days=1), clock.now)

        clock.advance(days=1, seconds=1)
        assert await store.find_by_share("f" * 64, clock.now) == []

    async def test_unknown_hash(self, store, clock):
        saved = await store.insert(make_record(now=clock.now))
        await store.append_share(saved.id, make_share(clock), clock.now)
        assert await store.find_by_share("0" * 64, clock.now) == []

    async def test_append_to_missing_record(self, store, clock):
        assert not await store.append_share(str(uuid.uuid4()), make_share(clock), clock.now)
        assert not await store.append_share("garbage", make_share(clock), clock.now)

    async def test_shares_accumulate(self, store, clock):
        saved = await store.insert(make_record(now=clock.now))
        await store.append_share(saved.id, make_share(clock, "1" * 64), clock.now)
        clock.advance(minutes=5)
        await store.append_share(saved.id, make_share(clock, "2" * 64), clock.now)
        loaded = await store.get(saved.id)
        assert [s.token_hash for s in loaded.review_shares] == ["1" * 64, "2" * 64]


# ============================================================================
# DELIVERY OUTCOMES
# ============================================================================

class TestDelivery:
    async def test_record_delivery(self, store, clock):
        saved = await store.insert(make_record(now=clock.now))
        outcome = DeliveryOutcome(ok=False, failed_at=clock.now, error="SMTPException")
        await store.record_delivery(saved.id, "email_notification", outcome)

        loaded = await store.get(saved.id)
        assert loaded.email_notification == outcome
        assert loaded.applicant_confirmation is None

    async def test_unknown_delivery_kind(self, store, clock):
        saved = await store.insert(make_record(now=clock.now))
        with pytest.raises(ValueError):
            await store.record_delivery(saved.id, "status", DeliveryOutcome(ok=True))
