"""Operator router: login, application review, status edits and review links.

Every route except login requires an operator bearer token.  With no
operator account configured all of them answer 404.
"""

import logging
import mimetypes

from fastapi import APIRouter, Depends, HTTPException, Request, status

from grant_intake.auth import OperatorAuth
from grant_intake.deps import (
    get_admin_service,
    get_auth,
    get_blob_store,
    get_notifications,
    get_review_share_service,
    require_operator,
)
from grant_intake.helpers.file_response import blob_download_response
from grant_intake.models.auth_models import LoginRequest, TokenResponse
from grant_intake.models.review_models import ShareRequest, ShareResponse
from grant_intake.models.submission_models import AdminPatch, ApplicationRecord
from grant_intake.security import limiter, log_security_event
from grant_intake.services.notifier import ApplicationNotifications
from grant_intake.services.review_links import ReviewShareService, parse_recipients
from grant_intake.services.submission_admin import SubmissionAdminService
from grant_intake.storage import BlobStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])

AUTH_RATE_LIMIT = "5/minute"


@router.post("/login", response_model=TokenResponse)
@limiter.limit(AUTH_RATE_LIMIT)
async def login(
    request: Request,
    body: LoginRequest,
    auth: OperatorAuth = Depends(get_auth),
) -> TokenResponse:
    if not auth.configured:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found.")
    if not auth.authenticate(body.username, body.password):
        log_security_event("operator_login_failed", request)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    logger.info("Operator %s logged in", auth.username)
    return TokenResponse(
        access_token=auth.create_access_token(),
        expires_in=auth.expiry_hours * 3600,
    )


@router.get("/applications/{application_id}", response_model=ApplicationRecord)
async def get_application(
    application_id: str,
    operator: str = Depends(require_operator),
    admin: SubmissionAdminService = Depends(get_admin_service),
) -> ApplicationRecord:
    return await admin.get(application_id)


@router.patch("/applications/{application_id}", response_model=ApplicationRecord)
async def update_application(
    application_id: str,
    patch: AdminPatch,
    operator: str = Depends(require_operator),
    admin: SubmissionAdminService = Depends(get_admin_service),
) -> ApplicationRecord:
    return await admin.update(application_id, patch, operator=operator)


@router.post("/applications/{application_id}/share", response_model=ShareResponse)
async def share_application(
    application_id: str,
    body: ShareRequest,
    operator: str = Depends(require_operator),
    admin: SubmissionAdminService = Depends(get_admin_service),
    shares: ReviewShareService = Depends(get_review_share_service),
    notifications: ApplicationNotifications = Depends(get_notifications),
) -> ShareResponse:
    """Mint a review link and email it to the given reviewers.

    The raw link is returned here once; only its hash is stored.
    """
    recipients = parse_recipients(body.emails)
    record = await admin.get(application_id)
    minted = await shares.mint(
        application_id,
        recipients,
        message=body.message,
        lifetime_days=body.expires_days,
    )
    outcome = await notifications.send_review_link(record, minted)
    logger.info(
        "Operator %s shared %s with %d reviewer(s), email_sent=%s",
        operator,
        application_id,
        len(recipients),
        outcome.ok,
    )
    return ShareResponse(
        review_url=minted.review_url,
        expires_at=minted.expires_at,
        email_sent=outcome.ok,
    )


@router.get("/files/{file_id}")
async def download_file(
    file_id: str,
    operator: str = Depends(require_operator),
    blob_store: BlobStore = Depends(get_blob_store),
):
    blob = await blob_store.open(file_id)
    if blob is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found.")
    extension = mimetypes.guess_extension(blob.content_type or "") or ""
    logger.info("Operator %s downloaded file %s", operator, file_id)
    return blob_download_response(blob, f"{file_id}{extension}")
