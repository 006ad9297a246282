"""Email ingestion API routes."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field

from ..middleware import get_context, require_auth
from ...context import AppContext
from ...models import User
from ...sync.provider import ProviderError, ProviderNotFoundError


logger = logging.getLogger(__name__)


class ScanRequest(BaseModel):
    """Manual scan request; the configured grant is used when none is given."""
    grant_id: Optional[str] = None


class ProcessEmailRequest(BaseModel):
    """Single-message processing request."""
    message_id: str = Field(..., min_length=1)
    grant_id: Optional[str] = None


router = APIRouter(prefix="/api/emails", tags=["emails"])


def require_email(context: AppContext = Depends(get_context)) -> AppContext:
    """Fail with 503 unless a mail provider is configured."""
    if not context.email_configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Email provider not configured"
        )
    return context


def resolve_grant(requested: Optional[str], context: AppContext) -> str:
    grant_id = requested or context.grant_id
    if not grant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Grant ID is required"
        )
    return grant_id


def provider_failure(action: str, error: ProviderError) -> HTTPException:
    logger.error(f"{action} failed: {error}")
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=f"Email provider error: {error}"
    )


@router.post("/scan")
async def scan_emails(body: Optional[ScanRequest] = None,
                      user: User = Depends(require_auth),
                      context: AppContext = Depends(require_email)):
    """Scan the caller's inbox now instead of waiting for the scheduler."""
    grant_id = resolve_grant(body.grant_id if body else None, context)
    try:
        outcome = await context.email_engine.manual_scan(user.id, grant_id)
    except ProviderError as e:
        raise provider_failure("Manual email scan", e)

    return {
        "message": "Email scan completed",
        "result": outcome.to_dict(),
    }


@router.get("/stats")
async def email_stats(user: User = Depends(require_auth),
                      context: AppContext = Depends(get_context)):
    """Counts of processed emails and the latest processing times."""
    return await context.email_store.get_stats(user.id)


@router.post("/process")
async def process_email(body: ProcessEmailRequest,
                        response: Response,
                        user: User = Depends(require_auth),
                        context: AppContext = Depends(require_email)):
    """Extract a task from one message.

    Responds 201 when a task was created and 200 otherwise.
    """
    grant_id = resolve_grant(body.grant_id, context)
    try:
        result = await context.email_engine.process_message(user.id, grant_id, body.message_id)
    except ProviderNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Email {body.message_id} not found"
        )
    except ProviderError as e:
        raise provider_failure("Processing email", e)

    if result.already_processed:
        message = "Email already processed"
    elif result.task_created:
        response.status_code = status.HTTP_201_CREATED
        message = "Task created successfully from email"
    else:
        message = "No actionable task found in this email"

    return {"message": message, **result.to_dict()}


@router.get("/scheduler")
async def scheduler_status(user: User = Depends(require_auth),
                           context: AppContext = Depends(get_context)):
    """State of the background email scan scheduler."""
    if context.email_scheduler is None:
        return {
            "job": "email",
            "state": "disabled",
            "grant_configured": bool(context.grant_id),
            "pass_count": 0,
            "last_summary": None,
        }
    return context.email_scheduler.status()
