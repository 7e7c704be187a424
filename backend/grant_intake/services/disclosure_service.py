"""Read-only disclosure of an application through a review link.

Every call re-verifies the presented secret, including each file fetch,
so an expired link stops working for all resources at once.
"""

import logging
from datetime import datetime
from typing import Callable

from grant_intake.errors import DisclosureDenied
from grant_intake.models.review_models import ReviewApplicant, ReviewFile, ReviewView
from grant_intake.models.submission_models import ApplicationRecord
from grant_intake.services.review_links import ReviewShareService
from grant_intake.storage import BlobStore, StoredBlob

logger = logging.getLogger(__name__)


def review_file_path(token: str, file_id: str) -> str:
    return f"/api/review/files/{token}/{file_id}"


def project_review_view(
    record: ApplicationRecord, token: str, expires_at: datetime
) -> ReviewView:
    applicant = record.applicant
    return ReviewView(
        id=record.id or "",
        submitted_at=record.created_at,
        status=record.status.value,
        applicant=ReviewApplicant(
            legal_name=applicant.legal_name,
            email=applicant.email,
            links=applicant.links,
            applicant_type=applicant.applicant_type,
            ein=applicant.ein,
            disciplines=list(applicant.disciplines),
            btc_address=applicant.btc_address,
        ),
        project=record.project,
        funding=record.funding,
        background=record.background,
        reporting_plan=record.oversight.reporting_plan,
        fiscal_sponsor_agreement_link=record.links.fiscal_sponsor_agreement,
        art_samples_links=record.links.art_samples,
        files=[
            ReviewFile(
                file_id=u.file_id,
                field_name=u.field_name,
                filename=u.filename,
                size=u.size,
                download_path=review_file_path(token, u.file_id),
            )
            for u in record.uploads
        ],
        expires_at=expires_at,
    )


class DisclosureService:
    """Review-page projection and per-file streaming behind one capability.

    The blob store is resolved lazily so the page view works even when
    file storage is unavailable.
    """

    def __init__(
        self, shares: ReviewShareService, blob_store: Callable[[], BlobStore]
    ) -> None:
        self.shares = shares
        self._blob_store = blob_store

    async def view(self, token: str) -> ReviewView:
        verified = await self.shares.verify(token)
        return project_review_view(verified.record, token, verified.expires_at)

    async def open_file(self, token: str, file_id: str) -> tuple[str, StoredBlob]:
        """Return ``(filename, blob)`` for a file belonging to the token's record."""
        verified = await self.shares.verify(token)
        upload = verified.record.find_upload(file_id)
        if upload is None:
            raise DisclosureDenied()

        blob = await self._blob_store().open(upload.file_id)
        if blob is None:
            logger.warning(
                "Upload %s on record %s is missing from blob storage",
                upload.file_id,
                verified.record.id,
            )
            raise DisclosureDenied()
        if not blob.content_type or blob.content_type == "application/octet-stream":
            blob.content_type = upload.mime_type
        return upload.filename, blob
