"""
Webhook ledger - at-most-once application of provider events.

Flow for one delivery:
1. pre-check: (provider, event_id) already recorded -> duplicate, skip handler
2. run the handler; its writes are flushed, not committed
3. insert the WebhookEvent row; the unique constraint on (provider, event_id)
   decides the race between concurrent deliveries of the same event
4. commit, then run the side effects the handler deferred

A losing concurrent delivery rolls back everything it wrote and sends nothing.
A handler that raises leaves no audit row, so the provider's retry is applied.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from orderhooks.models.webhook_event import WebhookEvent
from orderhooks.services.providers import Providers
from orderhooks.utils.logging import get_correlation_id

logger = logging.getLogger(__name__)


@dataclass
class HandlerContext:
    """What an event handler gets: a session, the provider clients and a side-effect queue."""
    db: AsyncSession
    providers: Providers
    event_id: Optional[str] = None
    _deferred: list = field(default_factory=list)

    def defer(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> None:
        """Queue a notification to run only after the event is committed."""
        self._deferred.append((func, args, kwargs))

    @property
    def deferred_count(self) -> int:
        return len(self._deferred)

    def discard_deferred(self) -> None:
        self._deferred.clear()

    async def run_deferred(self) -> list:
        """
        Run queued side effects in order. Failures are logged and swallowed:
        the committed state is the primary record, a missed notification is not.
        """
        results = []
        pending, self._deferred = self._deferred, []
        for func, args, kwargs in pending:
            name = getattr(func, "__name__", repr(func))
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    "Deferred side effect %s failed for event %s: %s",
                    name, self.event_id, str(e),
                    extra={"event_id": self.event_id},
                )
                results.append({"status": "error", "error": str(e)})
                continue
            if isinstance(result, dict) and result.get("error"):
                logger.warning(
                    "Deferred side effect %s reported error for event %s: %s",
                    name, self.event_id, result["error"],
                    extra={"event_id": self.event_id},
                )
            results.append(result)
        return results


async def is_recorded(db: AsyncSession, provider: str, event_id: str) -> bool:
    """Check whether (provider, event_id) is already in the audit trail."""
    result = await db.execute(
        select(WebhookEvent.id).where(
            WebhookEvent.provider == provider,
            WebhookEvent.event_id == event_id,
        ).limit(1)
    )
    return result.scalar_one_or_none() is not None


async def record_event(
    db: AsyncSession,
    provider: str,
    event_id: str,
    event_type: str,
    raw_payload: dict,
    payload_hash: str,
    livemode: Optional[bool] = None,
    environment: Optional[str] = None,
) -> WebhookEvent:
    """
    Insert the audit row and flush it.
    Raises IntegrityError when another delivery already recorded the event.
    """
    now = datetime.now(timezone.utc)
    event = WebhookEvent(
        provider=provider,
        event_id=event_id,
        event_type=event_type,
        livemode=livemode,
        environment=environment,
        payload_hash=payload_hash,
        raw_payload=raw_payload,
        received_at=now,
        processed_at=now,
        correlation_id=get_correlation_id(),
    )
    db.add(event)
    await db.flush()
    return event


async def commit_if_absent(db: AsyncSession, **event_fields) -> bool:
    """
    Record the event and commit everything pending in the session.
    Returns False (after rolling back the whole transaction) when the
    unique constraint reports a concurrent duplicate.
    """
    try:
        await record_event(db, **event_fields)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info(
            "Duplicate webhook lost the insert race: provider=%s event_id=%s",
            event_fields.get("provider"), event_fields.get("event_id"),
            extra={"event_id": event_fields.get("event_id"), "provider": event_fields.get("provider")},
        )
        return False
    return True


@dataclass
class LedgerOutcome:
    duplicate: bool
    result: Any = None


async def apply_once(
    ctx: HandlerContext,
    handler: Callable[[HandlerContext], Awaitable[Any]],
    *,
    provider: str,
    event_id: str,
    event_type: str,
    raw_payload: dict,
    payload_hash: str,
    livemode: Optional[bool] = None,
    environment: Optional[str] = None,
) -> LedgerOutcome:
    """
    Apply handler(ctx) at most once for (provider, event_id).
    Handler exceptions propagate; the caller decides the transport response.
    """
    db = ctx.db
    if await is_recorded(db, provider, event_id):
        logger.info(
            "Duplicate webhook skipped: provider=%s event_id=%s type=%s",
            provider, event_id, event_type,
            extra={"event_id": event_id, "provider": provider},
        )
        return LedgerOutcome(duplicate=True)

    result = await handler(ctx)

    recorded = await commit_if_absent(
        db,
        provider=provider,
        event_id=event_id,
        event_type=event_type,
        raw_payload=raw_payload,
        payload_hash=payload_hash,
        livemode=livemode,
        environment=environment,
    )
    if not recorded:
        ctx.discard_deferred()
        return LedgerOutcome(duplicate=True)

    await ctx.run_deferred()
    return LedgerOutcome(duplicate=False, result=result)
