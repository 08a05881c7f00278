"""Read-only access to course purchase records."""
import logging
import uuid
from dataclasses import dataclass

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.domains.allocations.errors import DependencyDegradedError
from src.domains.allocations.schemas import PurchaseMetadata
from src.domains.courses.models import PURCHASE_TIERS, Course, CoursePurchase

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurchaseRecord:
    purchase_id: uuid.UUID
    purchase_tier: int
    metadata: PurchaseMetadata


class PurchaseProvider:
    """Wraps the purchase tables. Storage failures surface as DependencyDegradedError."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def latest_purchase(self, student_id: uuid.UUID, course_id: uuid.UUID) -> PurchaseRecord | None:
        try:
            result = await self.db.execute(
                select(CoursePurchase)
                .where(
                    CoursePurchase.student_id == student_id,
                    CoursePurchase.course_id == course_id,
                    CoursePurchase.is_active.is_(True),
                )
                .order_by(CoursePurchase.created_at.desc())
                .limit(1)
            )
            purchase = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise DependencyDegradedError(f"Purchase lookup failed: {e}") from e

        if purchase is None:
            return None
        if purchase.purchase_tier not in PURCHASE_TIERS:
            raise DependencyDegradedError(
                f"Purchase {purchase.id} has unsupported tier {purchase.purchase_tier}",
                purchase_id=purchase.id,
            )

        try:
            metadata = PurchaseMetadata.model_validate(purchase.details or {})
        except PydanticValidationError as e:
            logger.warning("Ignoring malformed metadata on purchase %s: %s", purchase.id, e)
            metadata = PurchaseMetadata()

        return PurchaseRecord(
            purchase_id=purchase.id,
            purchase_tier=purchase.purchase_tier,
            metadata=metadata,
        )

    async def get_course(self, course_id: uuid.UUID) -> Course | None:
        try:
            result = await self.db.execute(select(Course).where(Course.id == course_id))
        except SQLAlchemyError as e:
            raise DependencyDegradedError(f"Course lookup failed: {e}") from e
        return result.scalar_one_or_none()
