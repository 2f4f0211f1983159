# backend/outbox.py
# Cross-entity recalculations (referrer profit, cell bonuses) are recorded as
# events inside the primary transaction and applied afterwards, each in its own
# transaction. An applied event is deleted; a failed one stays pending until it
# runs out of attempts and is then kept as "failed".
import logging

from sqlalchemy import select

from errors import PropagationFailure
from models import PropagationEvent
from settings import PROPAGATION_MAX_ATTEMPTS
from store import transaction

logger = logging.getLogger(__name__)

REFERRAL = "referral"
CELL_BONUS = "cell_bonus"


def emit(session, kind, target_id):
    if target_id is None:
        return None
    event = PropagationEvent(kind=kind, target_id=target_id)
    session.add(event)
    return event


async def _pending_ids(sessions, limit):
    async with sessions() as session:
        rows = await session.execute(
            select(PropagationEvent.id)
            .where(PropagationEvent.status == "pending")
            .order_by(PropagationEvent.id)
            .limit(limit)
        )
        return [event_id for (event_id,) in rows]


async def _record_failure(sessions, event_id, error, max_attempts):
    async with transaction(sessions) as session:
        event = await session.get(PropagationEvent, event_id, with_for_update=True)
        if event is None:
            return
        event.attempts = (event.attempts or 0) + 1
        event.last_error = str(error)
        if event.attempts >= max_attempts:
            event.status = "failed"
        logger.warning(
            "Propagation %s for %s failed (attempt %s/%s): %s",
            event.kind, event.target_id, event.attempts, max_attempts, error,
        )


async def drain(sessions, handlers, config, limit=100, max_attempts=PROPAGATION_MAX_ATTEMPTS):
    """Apply pending events. Returns the number processed successfully.

    handlers maps an event kind to ``async handler(session, target_id, config)``.
    Failures are logged and retried on a later drain, never raised.
    """
    done = 0
    for event_id in await _pending_ids(sessions, limit):
        try:
            async with transaction(sessions) as session:
                stmt = (
                    select(PropagationEvent)
                    .where(PropagationEvent.id == event_id, PropagationEvent.status == "pending")
                    .with_for_update(skip_locked=True)
                )
                event = (await session.execute(stmt)).scalar_one_or_none()
                if event is None:
                    continue  # taken by another worker
                handler = handlers.get(event.kind)
                if handler is None:
                    raise PropagationFailure(f"No handler for {event.kind}")
                await handler(session, event.target_id, config)
                await session.delete(event)
            done += 1
        except Exception as e:
            await _record_failure(sessions, event_id, e, max_attempts)
    return done
