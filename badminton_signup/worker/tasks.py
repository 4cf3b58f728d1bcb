"""ARQ job definitions."""

import uuid
from typing import Any

from arq import create_pool
from arq.connections import RedisSettings

from badminton_signup.core.config import get_settings
from badminton_signup.core.logging import get_logger
from badminton_signup.models.common import to_document
from badminton_signup.models.failed_job import FailedJob
from badminton_signup.services.container import get_services
from badminton_signup.services.line import push_text
from badminton_signup.services.notifications import event_from_payload

log = get_logger(__name__)


async def _run_with_dlq(
    job_name: str,
    job_id: str | None,
    args: list[Any],
    kwargs: dict[str, Any],
    coro,
) -> None:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    try:
        await coro
    except Exception as e:
        fid = job_id or str(uuid.uuid4())
        failed = FailedJob(id=fid, job_name=job_name, args=args, kwargs=kwargs, reason=str(e)[:2000], retries=0)
        await get_services().store.insert(FailedJob.collection, to_document(failed))
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e))
        raise


async def deliver_notification(ctx: dict[str, Any], payload: dict[str, Any]) -> None:
    """Push one queued notification to the LINE group."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None

    async def _run() -> None:
        event = event_from_payload(payload)
        log.info("job_start", job="deliver_notification", kind=event.kind)
        await push_text(get_settings(), event.summary())
        log.info("job_done", job="deliver_notification", kind=event.kind)

    await _run_with_dlq("deliver_notification", job_id, [payload], {}, _run())


async def startup(ctx: dict) -> None:
    from badminton_signup.core.logging import configure_logging

    configure_logging(debug=get_settings().debug)


async def shutdown(ctx: dict) -> None:
    await get_services().store.close()


def get_redis_settings() -> RedisSettings:
    return RedisSettings.from_dsn(get_settings().redis_url)


async def enqueue_notification(payload: dict[str, Any]) -> None:
    """Enqueue deliver_notification job (call from API)."""
    redis = await create_pool(get_redis_settings())
    try:
        await redis.enqueue_job("deliver_notification", payload)
    finally:
        await redis.close()
