"""Post-commit effect outbox for allocation transitions.

A transition records its side effects as ``AllocationEffect`` rows in the
same commit as the status change. After the commit the runner executes them
one by one; each effect commits on its own, and a failure leaves the row
``failed`` for a later retry without touching the transition.
"""
import uuid
from collections.abc import Callable
from datetime import date, datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.scheduling import SchedulingConfig
from src.core.observability import capture_exception
from src.core.redis import EventChannel
from src.domains.allocations.models import (
    AllocationEffect,
    EffectKind,
    EffectStatus,
    TrainerAllocation,
)
from src.domains.notifications.dispatcher import NotificationDispatcher
from src.domains.payroll.ledger import PayrollLedger
from src.domains.sessions.generator import SessionScheduleGenerator

logger = structlog.get_logger(__name__)

SESSIONS_GENERATED = "sessions.generated"
TRAINER_ALLOCATED = "trainer.allocated"
STATUS_CHANGED = "allocation.status_changed"


def to_jsonable(payload: dict[str, Any]) -> dict[str, Any]:
    out = {}
    for key, value in payload.items():
        if isinstance(value, uuid.UUID):
            out[key] = str(value)
        elif isinstance(value, (date, datetime)):
            out[key] = value.isoformat()
        elif isinstance(value, list):
            out[key] = [str(v) if isinstance(v, uuid.UUID) else v for v in value]
        else:
            out[key] = value
    return out


class EffectOutbox:
    """Records effects on the current transaction. Nothing runs here."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def record(self, allocation_id: uuid.UUID, kind: EffectKind, payload: dict[str, Any] | None = None) -> AllocationEffect:
        effect = AllocationEffect(
            allocation_id=allocation_id,
            kind=kind,
            payload=to_jsonable(payload or {}),
            status=EffectStatus.PENDING,
            attempts=0,
        )
        self.db.add(effect)
        return effect

    def generate_sessions(
        self,
        allocation_id: uuid.UUID,
        session_count: int | None = None,
        start_date: date | None = None,
        start_number: int = 1,
        total_sessions: int | None = None,
    ) -> AllocationEffect:
        return self.record(
            allocation_id,
            EffectKind.GENERATE_SESSIONS,
            {
                "session_count": session_count,
                "start_date": start_date,
                "start_number": start_number,
                "total_sessions": total_sessions,
            },
        )

    def notify(self, allocation_id: uuid.UUID, event: str, recipients: list[uuid.UUID | None]) -> AllocationEffect:
        return self.record(
            allocation_id,
            EffectKind.NOTIFY,
            {"event": event, "recipients": [r for r in recipients if r is not None]},
        )

    def payroll_start(self, allocation_id: uuid.UUID, start_date: date) -> AllocationEffect:
        return self.record(allocation_id, EffectKind.PAYROLL_START, {"start_date": start_date})

    def publish(self, allocation_id: uuid.UUID, event_type: str, data: dict[str, Any]) -> AllocationEffect:
        return self.record(
            allocation_id,
            EffectKind.PUBLISH_EVENT,
            {"type": event_type, "data": to_jsonable(data)},
        )


class EffectRunner:
    """Executes recorded effects after the owning transition committed."""

    def __init__(
        self,
        db: AsyncSession,
        config: SchedulingConfig,
        generator: SessionScheduleGenerator | None = None,
        notifier: NotificationDispatcher | None = None,
        payroll: PayrollLedger | None = None,
        events: type[EventChannel] = EventChannel,
        today_provider: Callable[[], date] = date.today,
    ):
        self.db = db
        self.config = config
        self.generator = generator or SessionScheduleGenerator(db, config, today_provider)
        self.notifier = notifier or NotificationDispatcher()
        self.payroll = payroll or PayrollLedger(db)
        self.events = events
        self.today_provider = today_provider

    async def run_pending(self, allocation_id: uuid.UUID) -> int:
        """Run every pending effect of one allocation, oldest first. Returns successes."""
        result = await self.db.execute(
            select(AllocationEffect)
            .where(
                AllocationEffect.allocation_id == allocation_id,
                AllocationEffect.status == EffectStatus.PENDING,
            )
            .order_by(AllocationEffect.created_at)
        )
        effect_ids = [effect.id for effect in result.scalars().all()]
        outcomes = await self._run_ids(effect_ids)
        return sum(outcomes)

    async def retry_failed(self, limit: int = 100) -> dict[str, int]:
        """Re-run failed effects that still have attempts left."""
        result = await self.db.execute(
            select(AllocationEffect)
            .where(
                AllocationEffect.status == EffectStatus.FAILED,
                AllocationEffect.attempts < self.config.effect_max_attempts,
            )
            .order_by(AllocationEffect.created_at)
            .limit(limit)
        )
        effect_ids = [effect.id for effect in result.scalars().all()]
        succeeded = sum(await self._run_ids(effect_ids))
        logger.info("effects_retried", retried=len(effect_ids), succeeded=succeeded)
        return {"retried": len(effect_ids), "succeeded": succeeded, "failed": len(effect_ids) - succeeded}

    async def _run_ids(self, effect_ids: list[uuid.UUID]) -> list[bool]:
        # A failed effect rolls the session back and expires loaded rows,
        # so each effect is re-fetched right before it runs.
        outcomes = []
        for effect_id in effect_ids:
            effect = await self.db.get(AllocationEffect, effect_id)
            outcomes.append(effect is not None and await self.run(effect))
        return outcomes

    async def run(self, effect: AllocationEffect) -> bool:
        """Execute one effect and commit its outcome. Returns True on success."""
        effect_id = effect.id
        kind = effect.kind
        allocation_id = effect.allocation_id
        payload = dict(effect.payload or {})
        log = logger.bind(effect_id=str(effect_id), kind=kind.value, allocation_id=str(allocation_id))

        try:
            allocation = await self.db.get(TrainerAllocation, allocation_id)
            if allocation is None:
                raise LookupError(f"Allocation {allocation_id} no longer exists")
            follow_up = await self._dispatch(kind, allocation, payload)
            effect.status = EffectStatus.DONE
            effect.attempts += 1
            effect.last_error = None
            effect.completed_at = datetime.now(timezone.utc)
            await self.db.commit()
            log.info("effect_completed")
            if follow_up is not None:
                await self.events.publish(*follow_up)
            return True
        except Exception as e:
            await self.db.rollback()
            log.warning("effect_failed", error=str(e), type=type(e).__name__)
            capture_exception(e, extra={"effect_id": str(effect_id)}, tags={"effect_kind": kind.value})
            failed = await self.db.get(AllocationEffect, effect_id)
            if failed is not None:
                failed.status = EffectStatus.FAILED
                failed.attempts += 1
                failed.last_error = str(e)[:2000]
                await self.db.commit()
            return False

    async def _dispatch(
        self, kind: EffectKind, allocation: TrainerAllocation, payload: dict[str, Any]
    ) -> tuple[str, dict[str, Any]] | None:
        """Run the effect. May return an event to publish once it is committed."""
        if kind == EffectKind.GENERATE_SESSIONS:
            start_date = payload.get("start_date")
            result = await self.generator.generate(
                allocation,
                session_count=payload.get("session_count"),
                start_date=date.fromisoformat(start_date) if start_date else None,
                start_number=payload.get("start_number") or 1,
                total_sessions=payload.get("total_sessions"),
            )
            return SESSIONS_GENERATED, to_jsonable(result.event_payload(allocation))
        elif kind == EffectKind.NOTIFY:
            recipients = [uuid.UUID(r) for r in payload.get("recipients", [])]
            await self.notifier.notify(
                payload["event"],
                recipients,
                {"allocation_id": allocation.id, "course_id": allocation.course_id},
            )
        elif kind == EffectKind.PAYROLL_START:
            start_date = payload.get("start_date")
            await self.payroll.start(
                allocation,
                date.fromisoformat(start_date) if start_date else self.today_provider(),
            )
        elif kind == EffectKind.PUBLISH_EVENT:
            await self.events.publish(payload["type"], payload.get("data", {}))
        else:
            raise ValueError(f"Unknown effect kind: {kind}")
        return None
