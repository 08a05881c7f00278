"""Fallback ladder: progressively relaxed trainer matching strategies.

Each strategy takes the shared ``LadderContext`` and returns a ``Selection``
or None. The selector tries ``FALLBACK_LADDER`` in order and stops at the
first hit.
"""
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from src.domains.allocations.candidates import Candidate, CandidateQuery, SlotRequest
from src.domains.allocations.eligibility import EligibilityFilter

TIER_STRICT = "strict"
TIER_ANY_SPECIALTY = "any_specialty"
TIER_HIGHEST_RATED = "highest_rated_with_room"


@dataclass
class Selection:
    candidate: Candidate
    tier: str

    @property
    def used_fallback(self) -> bool:
        return self.tier != TIER_STRICT


@dataclass
class LadderContext:
    request: SlotRequest
    query: CandidateQuery
    eligibility: EligibilityFilter
    exclude_allocation_id: uuid.UUID | None = None
    # trainer id -> reasons from the most recent failed check
    rejections: dict[uuid.UUID, list[str]] = field(default_factory=dict)
    seen: set[uuid.UUID] = field(default_factory=set)


Strategy = Callable[[LadderContext], Awaitable[Selection | None]]


async def _first_eligible(
    ctx: LadderContext,
    candidates: list[Candidate],
    tier: str,
    check_travel: bool = True,
    skip_rejected: bool = False,
) -> Selection | None:
    for candidate in candidates:
        ctx.seen.add(candidate.trainer_id)
        if skip_rejected and candidate.trainer_id in ctx.rejections:
            continue
        result = await ctx.eligibility.check(
            candidate.profile,
            ctx.request,
            exclude_allocation_id=ctx.exclude_allocation_id,
            check_travel=check_travel,
        )
        if result.eligible:
            ctx.rejections.pop(candidate.trainer_id, None)
            candidate.current_load = result.current_load
            return Selection(candidate=candidate, tier=tier)
        ctx.rejections[candidate.trainer_id] = result.reasons
    return None


async def strict_match(ctx: LadderContext) -> Selection | None:
    """Specialty + gender + slot, every eligibility check."""
    candidates = await ctx.query.find(ctx.request, match_specialty=True)
    return await _first_eligible(ctx, candidates, TIER_STRICT)


async def any_specialty(ctx: LadderContext) -> Selection | None:
    """Drop the specialty filter, keep every check."""
    candidates = await ctx.query.find(ctx.request, match_specialty=False)
    return await _first_eligible(ctx, candidates, TIER_ANY_SPECIALTY, skip_rejected=True)


async def highest_rated_with_room(ctx: LadderContext) -> Selection | None:
    """Highest-rated trainer still under cap, ignoring ranking and travel.

    Direct conflicts are still enforced so the slot is never double booked.
    """
    candidates = await ctx.query.find(ctx.request, match_specialty=False, limit=0)
    with_room = sorted(
        (c for c in candidates if c.has_room),
        key=lambda c: -c.rating,
    )
    return await _first_eligible(ctx, with_room, TIER_HIGHEST_RATED, check_travel=False)


FALLBACK_LADDER: tuple[Strategy, ...] = (
    strict_match,
    any_specialty,
    highest_rated_with_room,
)
