"""Operator edits to an application record."""

import logging
from typing import Any, Optional

from grant_intake.errors import RecordNotFound
from grant_intake.helpers.time_utils import Clock, add_months, as_utc, utc_now
from grant_intake.models.submission_models import (
    AdminPatch,
    ApplicationRecord,
    ApplicationStatus,
)
from grant_intake.services.submission_store import SubmissionStore

logger = logging.getLogger(__name__)

MAX_ADMIN_NOTES = 5000
REPORT_DUE_MONTHS = 6


def build_admin_changes(patch: AdminPatch, now) -> dict[str, Any]:
    """Translate a patch into store-level field assignments.

    Moving to ``awarded`` stamps ``awarded_at`` (now unless given), sets
    the report due date six months later (unless given) and clears any
    previously logged report.  An explicit ``report_received`` in the
    same patch wins over that reset.
    """
    changes: dict[str, Any] = {}

    if patch.status is not None:
        changes["status"] = patch.status.value
        if patch.status == ApplicationStatus.AWARDED:
            awarded_at = as_utc(patch.awarded_at) or now
            changes["awarded_at"] = awarded_at
            changes["oversight.report_due_at"] = as_utc(patch.report_due_at) or add_months(
                awarded_at, REPORT_DUE_MONTHS
            )
            changes["oversight.report_received_at"] = None
    elif patch.awarded_at is not None:
        changes["awarded_at"] = as_utc(patch.awarded_at)

    if patch.report_due_at is not None and "oversight.report_due_at" not in changes:
        changes["oversight.report_due_at"] = as_utc(patch.report_due_at)

    if patch.admin_notes is not None:
        changes["admin_notes"] = patch.admin_notes[:MAX_ADMIN_NOTES]

    if patch.report_received is not None:
        changes["oversight.report_received_at"] = now if patch.report_received else None

    return changes


class SubmissionAdminService:
    def __init__(self, store: SubmissionStore, clock: Clock = utc_now) -> None:
        self.store = store
        self.clock = clock

    async def get(self, submission_id: str) -> ApplicationRecord:
        record = await self.store.get(submission_id)
        if record is None:
            raise RecordNotFound()
        return record

    async def update(
        self, submission_id: str, patch: AdminPatch, operator: Optional[str] = None
    ) -> ApplicationRecord:
        now = self.clock()
        changes = build_admin_changes(patch, now)
        record = await self.store.apply_admin_changes(submission_id, changes, now)
        if record is None:
            raise RecordNotFound()
        logger.info(
            "Operator %s updated %s: %s",
            operator or "unknown",
            submission_id,
            ", ".join(sorted(changes)) or "no fields",
        )
        return record
