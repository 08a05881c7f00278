"""Tests for the post-commit effect outbox and its runner."""

import httpx
import pytest
from sqlalchemy import func, select

from src.domains.allocations.effects import (
    SESSIONS_GENERATED,
    STATUS_CHANGED,
    EffectOutbox,
    EffectRunner,
    to_jsonable,
)
from src.domains.allocations.models import AllocationEffect, EffectKind, EffectStatus
from src.domains.notifications.dispatcher import NotificationDispatcher
from src.domains.payroll.models import PayrollAllocation
from src.domains.sessions.models import TutoringSession

from tests.conftest import NEXT_MONDAY, TODAY


def dispatcher_returning(status_code: int) -> NotificationDispatcher:
    transport = httpx.MockTransport(lambda request: httpx.Response(status_code, json={}))
    return NotificationDispatcher(base_url="http://notify.test", client=httpx.AsyncClient(transport=transport))


@pytest.fixture
def outbox(db_session) -> EffectOutbox:
    return EffectOutbox(db_session)


@pytest.fixture
def make_runner(db_session, scheduling_config, events):
    def _make(notifier: NotificationDispatcher | None = None) -> EffectRunner:
        return EffectRunner(
            db_session,
            scheduling_config,
            notifier=notifier or NotificationDispatcher(base_url=""),
            events=events,
            today_provider=lambda: TODAY,
        )

    return _make


@pytest.fixture
async def allocation(create_student, create_trainer, create_allocation):
    return await create_allocation(await create_student(), await create_trainer(), session_count=5)


class TestToJsonable:
    def test_converts_ids_and_dates(self, actor_id):
        payload = to_jsonable({"id": actor_id, "day": NEXT_MONDAY, "ids": [actor_id], "count": 3})

        assert payload == {
            "id": str(actor_id),
            "day": "2026-10-19",
            "ids": [str(actor_id)],
            "count": 3,
        }


class TestEffectOutbox:
    async def test_records_pending_effects(self, db_session, outbox, allocation):
        outbox.generate_sessions(allocation.id, session_count=5, start_date=NEXT_MONDAY)
        outbox.notify(allocation.id, "allocation.approved", [allocation.trainer_id, None])
        await db_session.commit()

        effects = (
            await db_session.execute(select(AllocationEffect).where(AllocationEffect.allocation_id == allocation.id))
        ).scalars().all()
        by_kind = {e.kind: e for e in effects}

        assert {e.status for e in effects} == {EffectStatus.PENDING}
        assert by_kind[EffectKind.GENERATE_SESSIONS].payload["start_date"] == "2026-10-19"
        assert by_kind[EffectKind.NOTIFY].payload["recipients"] == [str(allocation.trainer_id)]

    async def test_nothing_runs_before_commit(self, db_session, outbox, allocation, events):
        outbox.publish(allocation.id, STATUS_CHANGED, {"allocation_id": allocation.id})
        outbox.generate_sessions(allocation.id)
        await db_session.rollback()

        count = (await db_session.execute(select(func.count(AllocationEffect.id)))).scalar()
        assert count == 0
        assert events.published == []


class TestEffectRunner:
    async def test_runs_effects_and_publishes_follow_up(self, db_session, outbox, make_runner, allocation, events):
        allocation_id = allocation.id
        outbox.payroll_start(allocation_id, NEXT_MONDAY)
        outbox.generate_sessions(allocation_id)
        await db_session.commit()

        succeeded = await make_runner().run_pending(allocation_id)

        assert succeeded == 2
        sessions = (
            await db_session.execute(
                select(func.count(TutoringSession.id)).where(TutoringSession.allocation_id == allocation_id)
            )
        ).scalar()
        assert sessions == 5
        period = (
            await db_session.execute(select(PayrollAllocation).where(PayrollAllocation.allocation_id == allocation_id))
        ).scalar_one()
        assert period.start_date == NEXT_MONDAY
        assert events.types() == [SESSIONS_GENERATED]
        assert events.published[0][1]["count"] == 5

    async def test_failure_is_recorded_and_others_still_run(
        self, db_session, outbox, make_runner, allocation, events
    ):
        allocation_id = allocation.id
        notify = outbox.notify(allocation_id, "allocation.approved", [allocation.student_id])
        publish = outbox.publish(allocation_id, STATUS_CHANGED, {"allocation_id": allocation_id})
        await db_session.commit()
        notify_id, publish_id = notify.id, publish.id

        succeeded = await make_runner(dispatcher_returning(503)).run_pending(allocation_id)

        assert succeeded == 1
        failed = await db_session.get(AllocationEffect, notify_id)
        done = await db_session.get(AllocationEffect, publish_id)
        assert failed.status == EffectStatus.FAILED
        assert failed.attempts == 1
        assert "503" in failed.last_error
        assert done.status == EffectStatus.DONE
        assert done.completed_at is not None
        assert events.types() == [STATUS_CHANGED]

    async def test_retry_failed(self, db_session, outbox, make_runner, allocation):
        allocation_id = allocation.id
        effect = outbox.notify(allocation_id, "allocation.approved", [allocation.student_id])
        await db_session.commit()
        effect_id = effect.id
        await make_runner(dispatcher_returning(503)).run_pending(allocation_id)

        result = await make_runner(dispatcher_returning(202)).retry_failed()

        assert result == {"retried": 1, "succeeded": 1, "failed": 0}
        retried = await db_session.get(AllocationEffect, effect_id)
        assert retried.status == EffectStatus.DONE
        assert retried.attempts == 2

    async def test_exhausted_effects_are_left_alone(
        self, db_session, outbox, make_runner, allocation, scheduling_config
    ):
        effect = outbox.notify(allocation.id, "allocation.approved", [allocation.student_id])
        effect.status = EffectStatus.FAILED
        effect.attempts = scheduling_config.effect_max_attempts
        await db_session.commit()

        result = await make_runner(dispatcher_returning(202)).retry_failed()

        assert result["retried"] == 0

    async def test_disabled_notifier_counts_as_success(self, db_session, outbox, make_runner, allocation):
        allocation_id = allocation.id
        outbox.notify(allocation_id, "allocation.cancelled", [allocation.student_id, allocation.trainer_id])
        await db_session.commit()

        assert await make_runner().run_pending(allocation_id) == 1

    async def test_payroll_start_without_date_uses_injected_clock(
        self, db_session, outbox, make_runner, allocation
    ):
        allocation_id = allocation.id
        outbox.record(allocation_id, EffectKind.PAYROLL_START, {})
        await db_session.commit()

        assert await make_runner().run_pending(allocation_id) == 1

        period = (
            await db_session.execute(select(PayrollAllocation).where(PayrollAllocation.allocation_id == allocation_id))
        ).scalar_one()
        assert period.start_date == TODAY
