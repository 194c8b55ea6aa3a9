"""Bulk campaign delivery."""

import asyncio
from typing import Any

from tenant_jobs.errors import RemoteHttpError, ValidationError
from tenant_jobs.messaging_client import PERMANENT_FAILURES, WuzapiClient, categorize_error
from tenant_jobs.registry import job_registry

# Kept on the job so reports can show why numbers were skipped
MAX_RECORDED_FAILURES = 100

STOP_CAMPAIGN_FAILURES = frozenset({"DISCONNECTED", "UNAUTHORIZED"})


def _validate(payload: dict[str, Any]) -> list[dict[str, Any]]:
    if not payload.get("instance_token"):
        raise ValidationError("Campaign payload is missing instance_token")
    messages = payload.get("messages")
    if not isinstance(messages, list) or not messages:
        raise ValidationError("Campaign payload needs a non-empty messages list")
    for index, message in enumerate(messages):
        if not isinstance(message, dict) or not message.get("phone"):
            raise ValidationError(f"Message {index} has no phone")
        if not message.get("body") and not message.get("media_url"):
            raise ValidationError(f"Message {index} has neither body nor media_url")
    return messages


async def _wait_for_token(ctx, rate_limiter, plan_id: str) -> None:
    while True:
        decision = await rate_limiter.try_acquire(ctx.tenant_id, plan_id)
        if decision.allowed:
            return
        ctx.logger.debug(
            f"Campaign job {ctx.job.id} throttled, waiting {decision.retry_after_seconds:.2f}s"
        )
        await asyncio.sleep(decision.retry_after_seconds)
        await ctx.raise_if_canceled()


async def _send(client: WuzapiClient, message: dict[str, Any]) -> None:
    if message.get("media_url"):
        await client.send_media(
            message["phone"],
            message.get("media_type", "image"),
            message["media_url"],
            caption=message.get("body", ""),
            file_name=message.get("file_name"),
        )
    else:
        await client.send_text(message["phone"], message["body"])


@job_registry.handler("send_campaign")
async def send_campaign(ctx, payload):
    """
    Send every message of a campaign, resuming after the last one recorded.

    Payload:
        campaign_id: Campaign identifier, for logs and reports
        instance_token: Token of the tenant's WhatsApp instance
        messages: ``[{"phone", "body", "media_url"?, "media_type"?, "file_name"?}]``
        interval_seconds: Optional pause between messages

    Progress (``ctx.progress``): ``sent_index`` is the next message to send;
    ``sent``, ``failed`` and ``quota_consumed`` count what happened so far.
    Cancellation and the tenant's rate limit are checked before every message.
    """
    messages = _validate(payload)
    rate_limiter = ctx.resources["rate_limiter"]
    plan_resolver = ctx.resources["plan_resolver"]
    client_factory = ctx.resources.get("messaging_client_factory") or (
        lambda token: WuzapiClient(ctx.service.config.wuzapi_base_url, token)
    )
    interval = float(payload.get("interval_seconds", 0))
    campaign_id = payload.get("campaign_id", str(ctx.job.id))

    progress = dict(ctx.progress)
    progress.setdefault("sent_index", 0)
    progress.setdefault("sent", 0)
    progress.setdefault("failed", 0)
    progress.setdefault("quota_consumed", 0)
    progress.setdefault("failures", [])
    progress["total"] = len(messages)

    if progress["sent_index"] > 0:
        ctx.logger.info(
            f"Resuming campaign {campaign_id} at message {progress['sent_index']}/{len(messages)}"
        )

    async with client_factory(payload["instance_token"]) as client:
        for index in range(progress["sent_index"], len(messages)):
            message = messages[index]
            await ctx.raise_if_canceled()

            tenant_plan = await plan_resolver.resolve(ctx.tenant_id)
            await _wait_for_token(ctx, rate_limiter, tenant_plan.plan_id)

            try:
                await _send(client, message)
            except RemoteHttpError as e:
                category = categorize_error(e)
                if category not in PERMANENT_FAILURES or category in STOP_CAMPAIGN_FAILURES:
                    # Retried or stopped from this message onwards
                    await ctx.save_progress(progress)
                    raise
                progress["failed"] += 1
                if len(progress["failures"]) < MAX_RECORDED_FAILURES:
                    progress["failures"].append(
                        {"index": index, "phone": message["phone"], "category": category}
                    )
                ctx.logger.warning(f"Campaign {campaign_id} skipped {message['phone']}: {category}")
            else:
                progress["sent"] += 1
                progress["quota_consumed"] += 1

            progress["sent_index"] = index + 1
            await ctx.save_progress(progress)

            if interval and index + 1 < len(messages):
                await asyncio.sleep(interval)

    ctx.logger.info(
        f"Campaign {campaign_id} finished: {progress['sent']} sent, {progress['failed']} failed"
    )
    return {"sent": progress["sent"], "failed": progress["failed"]}
