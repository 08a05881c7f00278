"""Payroll ledger collaborator: opens and closes teaching periods."""
import logging
from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.domains.allocations.models import TrainerAllocation
from src.domains.payroll.models import PayrollAllocation

logger = logging.getLogger(__name__)


class PayrollLedger:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def open_period(self, allocation_id) -> PayrollAllocation | None:
        result = await self.db.execute(
            select(PayrollAllocation).where(
                PayrollAllocation.allocation_id == allocation_id,
                PayrollAllocation.end_date.is_(None),
            )
        )
        return result.scalars().first()

    async def start(self, allocation: TrainerAllocation, start_date: date) -> PayrollAllocation:
        """Open a period for the allocation's trainer. No-op when one is already open."""
        existing = await self.open_period(allocation.id)
        if existing is not None:
            logger.info("Payroll period already open for allocation %s", allocation.id)
            return existing

        period = PayrollAllocation(
            trainer_id=allocation.trainer_id,
            student_id=allocation.student_id,
            allocation_id=allocation.id,
            start_date=start_date,
        )
        self.db.add(period)
        await self.db.flush()
        logger.info(
            "Payroll period opened for trainer %s / student %s from %s",
            allocation.trainer_id, allocation.student_id, start_date,
        )
        return period

    async def end(self, allocation: TrainerAllocation, end_date: date) -> int:
        """Close every open period of the allocation. Returns how many were closed."""
        result = await self.db.execute(
            select(PayrollAllocation).where(
                PayrollAllocation.allocation_id == allocation.id,
                PayrollAllocation.end_date.is_(None),
            )
        )
        periods = list(result.scalars().all())
        for period in periods:
            period.end_date = max(end_date, period.start_date)
        if periods:
            await self.db.flush()
            logger.info("Payroll period closed for allocation %s on %s", allocation.id, end_date)
        return len(periods)
