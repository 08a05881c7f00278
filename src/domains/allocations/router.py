"""Allocation router - trainer assignment lifecycle and session generation."""
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Query, Response, status

from src.domains.allocations.dependencies import ActorId, Service
from src.domains.allocations.models import AllocationStatus
from src.domains.allocations.schemas import (
    AllocationApprove,
    AllocationCreate,
    AllocationListResponse,
    AllocationReject,
    AllocationResponse,
    AllocationStatusChange,
    AllocationUpdate,
    AutoAssignRequest,
    AutoAssignResponse,
    BackfillResponse,
    EffectRetryResponse,
)
from src.domains.sessions.schemas import GenerationResponse, SessionResponse

router = APIRouter()


# ==================== Allocations ====================

@router.post("", response_model=AllocationResponse, status_code=status.HTTP_201_CREATED)
async def create_allocation(
    request: AllocationCreate,
    actor_id: ActorId,
    service: Service,
    response: Response,
) -> AllocationResponse:
    """Create a pending allocation, or return the open one for the same course."""
    allocation, created = await service.create_allocation(request, actor_id)
    if not created:
        response.status_code = status.HTTP_200_OK
    return AllocationResponse.from_model(allocation)


@router.post("/auto-assign", response_model=AutoAssignResponse)
async def auto_assign(
    request: AutoAssignRequest,
    actor_id: ActorId,
    service: Service,
) -> AutoAssignResponse:
    """Assign a trainer after a completed purchase, or upgrade a live allocation."""
    result = await service.auto_assign_after_purchase(request, actor_id)
    return AutoAssignResponse(
        outcome=result.outcome,
        allocation=AllocationResponse.from_model(result.allocation),
        original_allocation_id=result.original_allocation_id,
        reason_code=result.reason_code,
        warnings=result.warnings,
    )


@router.get("", response_model=AllocationListResponse)
async def list_allocations(
    service: Service,
    student_id: Annotated[UUID | None, Query()] = None,
    trainer_id: Annotated[UUID | None, Query()] = None,
    status_filter: Annotated[AllocationStatus | None, Query(alias="status")] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> AllocationListResponse:
    allocations, total = await service.list_allocations(
        student_id=student_id,
        trainer_id=trainer_id,
        status=status_filter,
        limit=limit,
        offset=offset,
    )
    return AllocationListResponse(
        items=[AllocationResponse.from_model(a) for a in allocations],
        total=total,
    )


# ==================== Maintenance ====================
# Declared before /{allocation_id} so the literal paths win.

@router.post("/sessions/backfill", response_model=BackfillResponse)
async def backfill_sessions(
    actor_id: ActorId,
    service: Service,
) -> BackfillResponse:
    """Generate sessions for live allocations that have none yet."""
    return BackfillResponse(**await service.create_sessions_for_pending_allocations())


@router.post("/effects/retry", response_model=EffectRetryResponse)
async def retry_effects(
    actor_id: ActorId,
    service: Service,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> EffectRetryResponse:
    """Re-run failed post-commit effects."""
    return EffectRetryResponse(**await service.retry_failed_effects(limit))


@router.get("/{allocation_id}", response_model=AllocationResponse)
async def get_allocation(
    allocation_id: UUID,
    service: Service,
) -> AllocationResponse:
    return AllocationResponse.from_model(await service.get_allocation(allocation_id))


@router.patch("/{allocation_id}", response_model=AllocationResponse)
async def update_allocation(
    allocation_id: UUID,
    request: AllocationUpdate,
    actor_id: ActorId,
    service: Service,
) -> AllocationResponse:
    allocation = await service.update_allocation(allocation_id, request, actor_id)
    return AllocationResponse.from_model(allocation)


# ==================== Transitions ====================

@router.post("/{allocation_id}/approve", response_model=AllocationResponse)
async def approve_allocation(
    allocation_id: UUID,
    actor_id: ActorId,
    service: Service,
    request: AllocationApprove | None = None,
) -> AllocationResponse:
    """Approve a pending allocation. Without a trainer id one is selected."""
    trainer_id = request.trainer_id if request else None
    allocation = await service.approve_allocation(allocation_id, actor_id, trainer_id)
    return AllocationResponse.from_model(allocation)


@router.post("/{allocation_id}/reject", response_model=AllocationResponse)
async def reject_allocation(
    allocation_id: UUID,
    request: AllocationReject,
    actor_id: ActorId,
    service: Service,
) -> AllocationResponse:
    allocation = await service.reject_allocation(allocation_id, actor_id, request.reason)
    return AllocationResponse.from_model(allocation)


@router.post("/{allocation_id}/activate", response_model=AllocationResponse)
async def activate_allocation(
    allocation_id: UUID,
    actor_id: ActorId,
    service: Service,
) -> AllocationResponse:
    allocation = await service.activate_allocation(allocation_id, actor_id)
    return AllocationResponse.from_model(allocation)


@router.post("/{allocation_id}/cancel", response_model=AllocationResponse)
async def cancel_allocation(
    allocation_id: UUID,
    actor_id: ActorId,
    service: Service,
    request: AllocationStatusChange | None = None,
) -> AllocationResponse:
    """Cancel a live allocation. Payroll closes and future sessions are cancelled."""
    allocation = await service.cancel_allocation(allocation_id, actor_id, request.reason if request else None)
    return AllocationResponse.from_model(allocation)


@router.post("/{allocation_id}/complete", response_model=AllocationResponse)
async def complete_allocation(
    allocation_id: UUID,
    actor_id: ActorId,
    service: Service,
    request: AllocationStatusChange | None = None,
) -> AllocationResponse:
    allocation = await service.complete_allocation(allocation_id, actor_id, request.reason if request else None)
    return AllocationResponse.from_model(allocation)


# ==================== Sessions ====================

@router.get("/{allocation_id}/sessions", response_model=list[SessionResponse])
async def list_sessions(
    allocation_id: UUID,
    service: Service,
) -> list[SessionResponse]:
    sessions = await service.list_sessions(allocation_id)
    return [SessionResponse.model_validate(s) for s in sessions]


@router.post("/{allocation_id}/sessions", response_model=GenerationResponse)
async def generate_sessions(
    allocation_id: UUID,
    actor_id: ActorId,
    service: Service,
) -> GenerationResponse:
    """Generate the sessions this allocation is still missing.

    Fails with 422 while the student has no valid home location.
    """
    result = await service.create_sessions_for_allocation(allocation_id)
    return GenerationResponse(
        allocation_id=result.allocation_id,
        requested=result.requested,
        created=len(result.created_ids),
        duplicates=result.duplicates,
        session_ids=result.created_ids,
        first_date=result.dates[0] if result.dates else None,
        last_date=result.dates[-1] if result.dates else None,
        short=result.is_short,
    )
