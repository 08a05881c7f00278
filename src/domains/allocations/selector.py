"""Trainer selection: candidate query, eligibility and the fallback ladder."""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from src.config.scheduling import SchedulingConfig
from src.domains.allocations.candidates import CandidateQuery, SlotRequest
from src.domains.allocations.eligibility import AT_CAPACITY, EligibilityFilter
from src.domains.allocations.fallback import FALLBACK_LADDER, LadderContext, Strategy

logger = logging.getLogger(__name__)

NO_AVAILABLE_TRAINERS = "no_available_trainers"
NO_ELIGIBLE_TRAINERS = "no_eligible_trainers_after_checks"


@dataclass
class SelectionOutcome:
    """Either a trainer, or a manual review outcome with a reason code."""

    trainer_id: uuid.UUID | None
    tier: str | None = None
    used_fallback: bool = False
    reason_code: str | None = None
    candidates_considered: int = 0
    rejections: dict[uuid.UUID, list[str]] = field(default_factory=dict)

    @property
    def requires_manual_review(self) -> bool:
        return self.trainer_id is None

    @property
    def all_at_capacity(self) -> bool:
        """Every rejected trainer failed at least on capacity."""
        return bool(self.rejections) and all(
            any(r.startswith(AT_CAPACITY) for r in reasons)
            for reasons in self.rejections.values()
        )

    def details(self) -> dict[str, Any]:
        """Audit fields for ``AllocationDetails``."""
        data: dict[str, Any] = {
            "used_fallback": self.used_fallback,
            "fallback_tier": self.tier,
            "reason_code": self.reason_code,
            "matching": {"candidates_considered": self.candidates_considered},
        }
        if self.rejections:
            data["rejections"] = {str(k): v for k, v in self.rejections.items()}
        return data


class TrainerSelector:
    def __init__(
        self,
        db: AsyncSession,
        config: SchedulingConfig,
        strategies: tuple[Strategy, ...] = FALLBACK_LADDER,
    ):
        self.db = db
        self.config = config
        self.query = CandidateQuery(db, config)
        self.eligibility = EligibilityFilter(db, config)
        self.strategies = strategies

    async def select(
        self,
        request: SlotRequest,
        exclude_allocation_id: uuid.UUID | None = None,
    ) -> SelectionOutcome:
        ctx = LadderContext(
            request=request,
            query=self.query,
            eligibility=self.eligibility,
            exclude_allocation_id=exclude_allocation_id,
        )
        for strategy in self.strategies:
            selection = await strategy(ctx)
            if selection is None:
                continue
            logger.info(
                "Selected trainer %s for student %s at %s (tier=%s)",
                selection.candidate.trainer_id, request.student_id, request.time_slot, selection.tier,
            )
            return SelectionOutcome(
                trainer_id=selection.candidate.trainer_id,
                tier=selection.tier,
                used_fallback=selection.used_fallback,
                candidates_considered=len(ctx.seen),
            )

        reason = NO_ELIGIBLE_TRAINERS if ctx.seen else NO_AVAILABLE_TRAINERS
        logger.warning(
            "No trainer for student %s at %s (%s, %d considered)",
            request.student_id, request.time_slot, reason, len(ctx.seen),
        )
        return SelectionOutcome(
            trainer_id=None,
            reason_code=reason,
            candidates_considered=len(ctx.seen),
            rejections=dict(ctx.rejections),
        )
