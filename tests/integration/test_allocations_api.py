"""Integration tests for allocation API endpoints."""
import uuid
from datetime import time

import pytest
from httpx import AsyncClient

from src.domains.allocations.models import AllocationStatus

from tests.conftest import NEXT_MONDAY

BASE = "/api/v1/allocations"


@pytest.fixture
def headers(actor_id: uuid.UUID) -> dict[str, str]:
    return {"X-Actor-Id": str(actor_id)}


def create_body(student_id: uuid.UUID, **extra) -> dict:
    return {
        "student_id": str(student_id),
        "schedule": {"time_slot": "4:00 PM", "start_date": NEXT_MONDAY.isoformat(), "session_count": 10},
        **extra,
    }


class TestCreateAllocation:
    """Tests for POST /allocations."""

    async def test_create_returns_201(self, client: AsyncClient, headers, create_student):
        response = await client.post(BASE, json=create_body(await create_student()), headers=headers)

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert data["time_slot"] == "16:00:00"
        assert data["time_slot_label"] == "4:00 PM"
        assert data["schedule_start"] == "2026-10-19"
        assert data["schedule_end"] == "2026-10-28"
        assert data["session_count"] == 10

    async def test_duplicate_returns_200_with_same_id(self, client: AsyncClient, headers, create_student, create_course):
        body = create_body(await create_student(), course_id=str(await create_course()))

        first = await client.post(BASE, json=body, headers=headers)
        second = await client.post(BASE, json=body, headers=headers)

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.json()["id"] == first.json()["id"]

    async def test_actor_header_required(self, client: AsyncClient, create_student):
        response = await client.post(BASE, json=create_body(await create_student()))

        assert response.status_code == 422

    async def test_unknown_schedule_key_rejected(self, client: AsyncClient, headers, create_student):
        body = create_body(await create_student())
        body["schedule"]["weekdays"] = ["mon"]

        response = await client.post(BASE, json=body, headers=headers)

        assert response.status_code == 422

    async def test_invalid_time_slot(self, client: AsyncClient, headers, create_student):
        body = create_body(await create_student())
        body["schedule"]["time_slot"] = "25:00"

        response = await client.post(BASE, json=body, headers=headers)

        assert response.status_code == 422

    async def test_unknown_student_404(self, client: AsyncClient, headers):
        response = await client.post(BASE, json=create_body(uuid.uuid4()), headers=headers)

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "not_found"


class TestTransitions:
    """Tests for approve/reject/activate/cancel/complete."""

    async def test_full_lifecycle(self, client: AsyncClient, headers, create_student, create_trainer):
        trainer_id = await create_trainer()
        created = await client.post(BASE, json=create_body(await create_student()), headers=headers)
        allocation_id = created.json()["id"]

        approved = await client.post(
            f"{BASE}/{allocation_id}/approve", json={"trainer_id": str(trainer_id)}, headers=headers
        )
        assert approved.status_code == 200
        assert approved.json()["status"] == "approved"
        assert approved.json()["trainer_id"] == str(trainer_id)

        sessions = await client.get(f"{BASE}/{allocation_id}/sessions")
        assert sessions.status_code == 200
        assert len(sessions.json()) == 10
        assert sessions.json()[0]["scheduled_date"] == "2026-10-19"

        activated = await client.post(f"{BASE}/{allocation_id}/activate", headers=headers)
        assert activated.json()["status"] == "active"

        cancelled = await client.post(
            f"{BASE}/{allocation_id}/cancel", json={"reason": "Moved city"}, headers=headers
        )
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"
        assert cancelled.json()["details"]["status_reason"] == "Moved city"

        sessions = await client.get(f"{BASE}/{allocation_id}/sessions")
        assert {s["status"] for s in sessions.json()} == {"cancelled"}

    async def test_approve_twice_conflicts(self, client: AsyncClient, headers, create_student, create_trainer):
        await create_trainer()
        created = await client.post(BASE, json=create_body(await create_student()), headers=headers)
        allocation_id = created.json()["id"]

        await client.post(f"{BASE}/{allocation_id}/approve", headers=headers)
        response = await client.post(f"{BASE}/{allocation_id}/approve", headers=headers)

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "conflict"
        assert response.json()["detail"]["retryable"] is False

    async def test_approve_at_capacity_is_503(
        self, client: AsyncClient, headers, create_student, create_trainer, create_allocation
    ):
        trainer_id = await create_trainer(rating=None, preferred_time_slots=["4:00 PM"])
        for hour in (8, 9, 10, 11):
            await create_allocation(await create_student(), trainer_id, time_slot=time(hour, 0))
        created = await client.post(BASE, json=create_body(await create_student()), headers=headers)

        response = await client.post(f"{BASE}/{created.json()['id']}/approve", headers=headers)

        assert response.status_code == 503
        assert response.json()["detail"]["error"] == "capacity_exhausted"
        assert response.json()["detail"]["retryable"] is True

    async def test_reject_requires_reason(self, client: AsyncClient, headers, create_student):
        created = await client.post(BASE, json=create_body(await create_student()), headers=headers)
        allocation_id = created.json()["id"]

        missing = await client.post(f"{BASE}/{allocation_id}/reject", json={}, headers=headers)
        rejected = await client.post(f"{BASE}/{allocation_id}/reject", json={"reason": "Duplicate"}, headers=headers)

        assert missing.status_code == 422
        assert rejected.status_code == 200
        assert rejected.json()["rejection_reason"] == "Duplicate"

    async def test_generate_sessions_without_gps_is_422(
        self, client: AsyncClient, headers, create_student, create_trainer, create_allocation
    ):
        allocation = await create_allocation(await create_student(latitude=None, longitude=None), await create_trainer())

        response = await client.post(f"{BASE}/{allocation.id}/sessions", headers=headers)

        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "gps_missing"

    async def test_generate_sessions(self, client: AsyncClient, headers, create_student, create_trainer, create_allocation):
        allocation = await create_allocation(await create_student(), await create_trainer(), session_count=5)

        response = await client.post(f"{BASE}/{allocation.id}/sessions", headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["created"] == 5
        assert data["first_date"] == "2026-10-19"
        assert data["last_date"] == "2026-10-23"
        assert data["short"] is False


class TestAutoAssign:
    """Tests for POST /allocations/auto-assign."""

    async def test_assigned(self, client: AsyncClient, headers, create_student, create_trainer, create_course):
        trainer_id = await create_trainer()
        body = {
            "student_id": str(await create_student()),
            "course_id": str(await create_course()),
            "time_slot": "4:00 PM",
            "start_date": NEXT_MONDAY.isoformat(),
            "purchase_metadata": {"recurrenceMode": "daily"},
        }

        response = await client.post(f"{BASE}/auto-assign", json=body, headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["outcome"] == "assigned"
        assert data["allocation"]["trainer_id"] == str(trainer_id)
        assert data["allocation"]["status"] == AllocationStatus.APPROVED.value

    async def test_pending_manual_review(self, client: AsyncClient, headers, create_student, create_course):
        body = {"student_id": str(await create_student()), "course_id": str(await create_course())}

        response = await client.post(f"{BASE}/auto-assign", json=body, headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["outcome"] == "pending_manual_review"
        assert data["reason_code"] == "no_available_trainers"
        assert data["allocation"]["trainer_id"] is None


class TestQueries:
    async def test_list_and_get(self, client: AsyncClient, headers, create_student, create_trainer, create_allocation):
        trainer_id = await create_trainer()
        allocation = await create_allocation(await create_student(), trainer_id)
        await create_allocation(await create_student(), trainer_id, status=AllocationStatus.COMPLETED, time_slot=time(9, 0))

        listed = await client.get(BASE, params={"trainer_id": str(trainer_id), "status": "approved"})
        fetched = await client.get(f"{BASE}/{allocation.id}")

        assert listed.status_code == 200
        assert listed.json()["total"] == 1
        assert listed.json()["items"][0]["id"] == str(allocation.id)
        assert fetched.json()["id"] == str(allocation.id)

    async def test_get_unknown_404(self, client: AsyncClient):
        response = await client.get(f"{BASE}/{uuid.uuid4()}")

        assert response.status_code == 404

    async def test_patch_notes(self, client: AsyncClient, headers, create_student):
        created = await client.post(BASE, json=create_body(await create_student()), headers=headers)

        response = await client.patch(f"{BASE}/{created.json()['id']}", json={"notes": "Ring twice"}, headers=headers)

        assert response.status_code == 200
        assert response.json()["notes"] == "Ring twice"

    async def test_backfill_and_retry(self, client: AsyncClient, headers, create_student, create_trainer, create_allocation):
        await create_allocation(await create_student(), await create_trainer(), session_count=3)

        backfill = await client.post(f"{BASE}/sessions/backfill", headers=headers)
        retry = await client.post(f"{BASE}/effects/retry", headers=headers)

        assert backfill.json() == {"processed": 1, "successful": 1, "failed": 0, "errors": {}}
        assert retry.json() == {"retried": 0, "succeeded": 0, "failed": 0}
