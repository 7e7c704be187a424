"""Document store for grant application records.

:class:`SubmissionStore` is the contract the intake pipeline, review-link
service and operator endpoints depend on.  :class:`SqlSubmissionStore`
implements it on SQLAlchemy async sessions: one ``grant_submissions`` row
per record with its write-once groups as JSON, and one ``review_shares``
row per minted link.

Each call opens and commits its own short transaction so the store can be
used from background tasks after the request session is gone.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from grant_intake.helpers.time_utils import as_utc
from grant_intake.models.db.submission import GrantSubmission, ReviewShareGrant
from grant_intake.models.submission_models import (
    ApplicationRecord,
    DeliveryOutcome,
    ReviewShare,
)

logger = logging.getLogger(__name__)

DELIVERY_FIELDS = ("email_notification", "applicant_confirmation")

# Top-level columns an operator patch may set. Nested oversight timestamps
# are passed as ``oversight.<key>``.
ADMIN_MUTABLE = frozenset(
    {
        "status",
        "admin_notes",
        "awarded_at",
        "oversight.report_due_at",
        "oversight.report_received_at",
    }
)


class SubmissionStore(Protocol):
    async def insert(self, record: ApplicationRecord) -> ApplicationRecord:
        """Persist a new record and return it with its store-assigned id."""
        ...

    async def get(self, submission_id: str) -> Optional[ApplicationRecord]:
        ...

    async def apply_admin_changes(
        self, submission_id: str, changes: dict[str, Any], now: datetime
    ) -> Optional[ApplicationRecord]:
        """Set operator-mutable fields and bump ``updated_at``."""
        ...

    async def append_share(
        self, submission_id: str, share: ReviewShare, now: datetime
    ) -> bool:
        """Append a review grant; ``False`` if the record does not exist."""
        ...

    async def find_by_share(
        self, token_hash: str, now: datetime
    ) -> list[ApplicationRecord]:
        """Records holding an unexpired grant with this hash."""
        ...

    async def record_delivery(
        self, submission_id: str, kind: str, outcome: DeliveryOutcome
    ) -> None:
        ...


def parse_submission_id(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def _dump(model) -> Any:
    return model.model_dump(mode="json")


def _to_record(row: GrantSubmission) -> ApplicationRecord:
    shares = [
        ReviewShare(
            token_hash=s.token_hash,
            created_at=as_utc(s.created_at),
            expires_at=as_utc(s.expires_at),
            sent_to=list(s.sent_to or []),
            message=s.message,
        )
        for s in row.review_shares
    ]
    return ApplicationRecord(
        id=str(row.id),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        status=row.status,
        applicant=row.applicant,
        project=row.project,
        funding=row.funding,
        background=row.background,
        oversight=row.oversight,
        certification=row.certification,
        uploads=row.uploads or [],
        links=row.links or {},
        admin_notes=row.admin_notes,
        awarded_at=as_utc(row.awarded_at),
        review_shares=shares,
        email_notification=row.email_notification,
        applicant_confirmation=row.applicant_confirmation,
        meta=row.meta or {},
    )


class SqlSubmissionStore:
    """SQLAlchemy-backed :class:`SubmissionStore`."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def insert(self, record: ApplicationRecord) -> ApplicationRecord:
        row = GrantSubmission(
            id=uuid.uuid4(),
            created_at=record.created_at,
            updated_at=record.updated_at,
            status=record.status.value,
            applicant=_dump(record.applicant),
            project=_dump(record.project),
            funding=_dump(record.funding),
            background=_dump(record.background),
            oversight=_dump(record.oversight),
            certification=_dump(record.certification),
            uploads=[_dump(u) for u in record.uploads],
            links=_dump(record.links),
            meta=_dump(record.meta),
            admin_notes=record.admin_notes,
        )
        async with self._session_factory() as session:
            async with session.begin():
                session.add(row)
        logger.info("Inserted grant submission %s", row.id)
        return record.model_copy(update={"id": str(row.id)})

    async def _load(self, session: AsyncSession, sid: uuid.UUID) -> Optional[GrantSubmission]:
        result = await session.execute(
            select(GrantSubmission).where(GrantSubmission.id == sid)
        )
        return result.scalar_one_or_none()

    async def get(self, submission_id: str) -> Optional[ApplicationRecord]:
        sid = parse_submission_id(submission_id)
        if sid is None:
            return None
        async with self._session_factory() as session:
            row = await self._load(session, sid)
            return _to_record(row) if row is not None else None

    async def apply_admin_changes(
        self, submission_id: str, changes: dict[str, Any], now: datetime
    ) -> Optional[ApplicationRecord]:
        unknown = set(changes) - ADMIN_MUTABLE
        if unknown:
            raise ValueError(f"Fields not editable by operators: {sorted(unknown)}")
        sid = parse_submission_id(submission_id)
        if sid is None:
            return None

        async with self._session_factory() as session:
            async with session.begin():
                row = await self._load(session, sid)
                if row is None:
                    return None
                oversight = dict(row.oversight or {})
                for key, value in changes.items():
                    if key.startswith("oversight."):
                        oversight[key.split(".", 1)[1]] = (
                            value.isoformat() if isinstance(value, datetime) else value
                        )
                    else:
                        setattr(row, key, value)
                # Reassign so the JSON column is flagged dirty.
                row.oversight = oversight
                row.updated_at = now
            return _to_record(row)

    async def append_share(
        self, submission_id: str, share: ReviewShare, now: datetime
    ) -> bool:
        sid = parse_submission_id(submission_id)
        if sid is None:
            return False
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(GrantSubmission)
                    .where(GrantSubmission.id == sid)
                    .values(updated_at=now)
                )
                if result.rowcount == 0:
                    return False
                session.add(
                    ReviewShareGrant(
                        submission_id=sid,
                        token_hash=share.token_hash,
                        created_at=share.created_at,
                        expires_at=share.expires_at,
                        sent_to=list(share.sent_to),
                        message=share.message,
                    )
                )
        return True

    async def find_by_share(
        self, token_hash: str, now: datetime
    ) -> list[ApplicationRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(GrantSubmission)
                .join(ReviewShareGrant, ReviewShareGrant.submission_id == GrantSubmission.id)
                .where(
                    ReviewShareGrant.token_hash == token_hash,
                    ReviewShareGrant.expires_at > now,
                )
                .limit(2)
            )
            rows = result.scalars().unique().all()
            return [_to_record(row) for row in rows]

    async def record_delivery(
        self, submission_id: str, kind: str, outcome: DeliveryOutcome
    ) -> None:
        if kind not in DELIVERY_FIELDS:
            raise ValueError(f"Unknown delivery outcome field: {kind}")
        sid = parse_submission_id(submission_id)
        if sid is None:
            return
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(GrantSubmission)
                    .where(GrantSubmission.id == sid)
                    .values({kind: _dump(outcome)})
                )
