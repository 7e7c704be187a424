"""Public grant application intake router.

Endpoints
---------
- POST /api/grants/apply  -- streamed multipart submission
- GET  /api/grants/apply  -- configuration status (never exposes secrets)
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request

from grant_intake import database
from grant_intake.config import ALLOWED_ORIGINS, ENVIRONMENT, review_link_secret
from grant_intake.deps import (
    get_bot_check,
    get_email_notifier,
    get_intake_pipeline,
    get_notifications,
    get_submission_rate_limiter,
)
from grant_intake.errors import PolicyRejection, RateLimited
from grant_intake.models.submission_models import IntakeConfigStatus, SubmissionAccepted
from grant_intake.security import (
    RateLimiter,
    get_client_ip,
    is_allowed_origin,
    log_security_event,
)
from grant_intake.services.intake_service import BotCheck, ClientContext, IntakePipeline
from grant_intake.services.notifier import ApplicationNotifications, EmailNotifier
from grant_intake.storage import get_blob_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/grants", tags=["grants"])


@router.post("/apply", response_model=SubmissionAccepted)
async def submit_application(
    request: Request,
    background_tasks: BackgroundTasks,
    rate_limiter: RateLimiter = Depends(get_submission_rate_limiter),
    pipeline: IntakePipeline = Depends(get_intake_pipeline),
    notifications: ApplicationNotifications = Depends(get_notifications),
) -> SubmissionAccepted:
    """Accept a grant application.

    The body is parsed and uploaded as it streams in; any failure after a
    file was stored deletes every file from this request before the error
    response is sent.  Notification emails go out after the response.
    """
    if not is_allowed_origin(request, ALLOWED_ORIGINS):
        log_security_event(
            "origin_rejected",
            request,
            {"origin": (request.headers.get("origin") or request.headers.get("referer") or "")[:200]},
        )
        raise PolicyRejection("Forbidden.", status_code=403)

    client_ip = get_client_ip(request)
    if not rate_limiter.allow(client_ip):
        log_security_event("submission_rate_limited", request)
        raise RateLimited("Too many submissions. Please try again later.")

    result = await pipeline.submit(
        request.headers.get("content-type", ""),
        request.stream(),
        ClientContext(ip=client_ip, user_agent=request.headers.get("user-agent")),
    )
    if result.record is not None:
        background_tasks.add_task(notifications.on_submission, result.record)

    return SubmissionAccepted(application_id=result.application_id)


@router.get("/apply", response_model=IntakeConfigStatus)
async def intake_config_status(
    notifier: EmailNotifier = Depends(get_email_notifier),
    bot_check: BotCheck = Depends(get_bot_check),
) -> IntakeConfigStatus:
    """Report which collaborators are configured."""
    return IntakeConfigStatus(
        configured={
            "database": database.async_session_factory is not None,
            "blob_storage": get_blob_store().configured,
            "email": notifier.configured,
            "bot_check": bool(getattr(bot_check, "enabled", False)),
            "review_links": bool(review_link_secret()),
        },
        environment=ENVIRONMENT,
    )
