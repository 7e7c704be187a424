"""Shared dependencies for the grant intake routers.

Every collaborator a route needs (stores, pipeline, review-link service,
notifier, rate limiter, operator auth) is provided here so routers can
``from grant_intake.deps import …`` and tests can swap any of them via
``app.dependency_overrides``.
"""

import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from grant_intake import database
from grant_intake.auth import OperatorAuth, get_operator_auth
from grant_intake.config import (
    IntakePolicy,
    ReviewLinkSettings,
    load_intake_policy,
    load_review_link_settings,
)
from grant_intake.errors import ConfigurationError
from grant_intake.security import MovingWindowRateLimiter, RateLimiter
from grant_intake.services.bot_check import TurnstileBotCheck
from grant_intake.services.disclosure_service import DisclosureService
from grant_intake.services.intake_service import BotCheck, IntakePipeline
from grant_intake.services.notifier import ApplicationNotifications, EmailNotifier
from grant_intake.services.review_links import ReviewShareService
from grant_intake.services.submission_admin import SubmissionAdminService
from grant_intake.services.submission_store import SqlSubmissionStore, SubmissionStore
from grant_intake.storage import BlobStore, get_blob_store as _azure_blob_store

logger = logging.getLogger(__name__)

UNAVAILABLE = (
    "Grant applications are temporarily unavailable (storage not configured). "
    "Please try again later."
)

# ---------------------------------------------------------------------------
# Process-wide singletons
# ---------------------------------------------------------------------------
_intake_policy = load_intake_policy()
_review_link_settings = load_review_link_settings()
_submission_limiter = MovingWindowRateLimiter()
_bot_check = TurnstileBotCheck()
_email_notifier = EmailNotifier()

bearer_scheme = HTTPBearer(auto_error=False)


# ---------------------------------------------------------------------------
# Storage collaborators
# ---------------------------------------------------------------------------


def get_submission_store() -> SubmissionStore:
    if database.async_session_factory is None:
        raise ConfigurationError(UNAVAILABLE)
    return SqlSubmissionStore(database.async_session_factory)


def get_blob_store() -> BlobStore:
    store = _azure_blob_store()
    if not store.configured:
        raise ConfigurationError(UNAVAILABLE)
    return store


def get_intake_policy() -> IntakePolicy:
    return _intake_policy


def get_review_link_settings() -> ReviewLinkSettings:
    return _review_link_settings


def get_submission_rate_limiter() -> RateLimiter:
    return _submission_limiter


def get_bot_check() -> BotCheck:
    return _bot_check


def get_email_notifier() -> EmailNotifier:
    return _email_notifier


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


def get_intake_pipeline(
    blob_store: BlobStore = Depends(get_blob_store),
    store: SubmissionStore = Depends(get_submission_store),
    policy: IntakePolicy = Depends(get_intake_policy),
    bot_check: BotCheck = Depends(get_bot_check),
) -> IntakePipeline:
    return IntakePipeline(blob_store, store, policy, bot_check)


def get_review_share_service(
    store: SubmissionStore = Depends(get_submission_store),
    settings: ReviewLinkSettings = Depends(get_review_link_settings),
) -> ReviewShareService:
    return ReviewShareService(store, settings)


def get_disclosure_service(
    shares: ReviewShareService = Depends(get_review_share_service),
) -> DisclosureService:
    return DisclosureService(shares, get_blob_store)


def get_admin_service(
    store: SubmissionStore = Depends(get_submission_store),
) -> SubmissionAdminService:
    return SubmissionAdminService(store)


def get_notifications(
    store: SubmissionStore = Depends(get_submission_store),
    notifier: EmailNotifier = Depends(get_email_notifier),
    settings: ReviewLinkSettings = Depends(get_review_link_settings),
) -> ApplicationNotifications:
    return ApplicationNotifications(notifier, store, base_url=settings.base_url)


# ---------------------------------------------------------------------------
# Operator authentication dependency
# ---------------------------------------------------------------------------


def get_auth() -> OperatorAuth:
    return get_operator_auth()


async def require_operator(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    auth: OperatorAuth = Depends(get_auth),
) -> str:
    """Return the operator name for a valid bearer token.

    Answers 404 when no operator account is configured so the admin
    surface is not discoverable.
    """
    if not auth.configured:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found.")
    return auth.verify_token(credentials.credentials if credentials else None)
