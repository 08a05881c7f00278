"""FastAPI dependencies for the allocation routes.

Authentication is handled upstream; the gateway forwards the acting user's id
in the ``X-Actor-Id`` header.

Example usage:
    @router.post("/{allocation_id}/approve")
    async def approve(actor_id: ActorId, service: Service, ...):
        ...
"""
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.database import get_db
from src.domains.allocations.service import AllocationService


async def get_actor_id(
    x_actor_id: Annotated[UUID, Header(description="Id of the acting admin or user")],
) -> UUID:
    return x_actor_id


async def get_allocation_service(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> AllocationService:
    return AllocationService(db)


ActorId = Annotated[UUID, Depends(get_actor_id)]
Service = Annotated[AllocationService, Depends(get_allocation_service)]
