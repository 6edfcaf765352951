import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from recovery.core.config import settings
from recovery.core.database import get_db
from recovery.core.errors import InvalidSignature, MalformedPayload
from recovery.core.rate_limiter import SlidingWindowLimiter
from recovery.services.event_ingestor import EventIngestor
from recovery.tasks import enqueue_drain_job_queue

logger = logging.getLogger(__name__)

router = APIRouter()

# Module-level rate limiter instance for webhook deliveries
webhook_rate_limiter = SlidingWindowLimiter(
    max_requests=settings.RATE_LIMIT_WEBHOOKS_PER_MINUTE,
    window_seconds=60,
)


def _client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _check_rate_limit(request: Request) -> None:
    """Dependency that throttles webhook deliveries per client."""
    key = _client_key(request)
    if not webhook_rate_limiter.allow(key):
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded. Maximum "
            f"{settings.RATE_LIMIT_WEBHOOKS_PER_MINUTE} webhooks per minute.",
            headers={"Retry-After": str(webhook_rate_limiter.retry_after(key))},
        )


async def _wake_worker() -> None:
    """Best-effort nudge to the worker; the cron drain picks the job up anyway."""
    try:
        await enqueue_drain_job_queue()
    except Exception:
        logger.exception("Failed to enqueue job queue drain")


@router.post("/billing", dependencies=[Depends(_check_rate_limit)])
async def receive_billing_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    signature: str | None = Header(None, alias="X-Webhook-Signature"),
    timestamp: str | None = Header(None, alias="X-Webhook-Timestamp"),
    db: Session = Depends(get_db),
) -> dict[str, str | None]:
    """Receive a billing-provider event.

    Duplicates are acknowledged with 200 so that the provider stops retrying.
    """
    raw_body = await request.body()
    try:
        result = EventIngestor(db).ingest(raw_body, signature, timestamp)
    except InvalidSignature as exc:
        logger.warning("Rejected webhook from %s: %s", _client_key(request), exc)
        raise HTTPException(status_code=401, detail="Invalid signature") from None
    except MalformedPayload as exc:
        logger.warning("Rejected malformed webhook from %s: %s", _client_key(request), exc)
        raise HTTPException(status_code=400, detail=str(exc)) from None

    if not result.duplicate:
        background_tasks.add_task(_wake_worker)

    return {
        "status": "duplicate" if result.duplicate else "accepted",
        "event_id": result.provider_event_id,
    }
