"""Reviewer router: read-only access through a review link secret.

No login is involved; possession of the secret in the URL is the whole
credential, and it is re-verified on every request.
"""

import logging

from fastapi import APIRouter, Depends, Request

from grant_intake.deps import get_disclosure_service
from grant_intake.errors import DisclosureDenied
from grant_intake.helpers.file_response import blob_download_response
from grant_intake.models.review_models import ReviewView
from grant_intake.security import log_security_event
from grant_intake.services.disclosure_service import DisclosureService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/review", tags=["review"])


@router.get("/{token}", response_model=ReviewView)
async def review_application(
    token: str,
    request: Request,
    disclosure: DisclosureService = Depends(get_disclosure_service),
) -> ReviewView:
    try:
        return await disclosure.view(token)
    except DisclosureDenied:
        log_security_event("review_link_denied", request)
        raise


@router.get("/files/{token}/{file_id}")
async def review_file(
    token: str,
    file_id: str,
    request: Request,
    disclosure: DisclosureService = Depends(get_disclosure_service),
):
    try:
        filename, blob = await disclosure.open_file(token, file_id)
    except DisclosureDenied:
        log_security_event("review_file_denied", request)
        raise
    return blob_download_response(blob, filename)
