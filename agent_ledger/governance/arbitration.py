"""
Conflict Arbitrator — deterministic resolution of contradictory positions.

When roles post different recommendations on the same entry, the owning
role's priority order is applied as an ordered comparator:

1. For each criterion, most preferred first, find the strongest citation
   of that criterion among the positions.
2. If the positions at that strength all recommend the same option, it wins.
3. Otherwise (nobody cites it, or the leaders disagree) cascade to the next
   criterion.
4. If the owner's order is exhausted, retry with the apex role's order.
5. If the apex order is exhausted too, apply the configured deadlock policy.

Every position that did not prevail is copied verbatim into the resolution's
dissent. Arbitration never drops a minority view.
"""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

from agent_ledger.protocol.schema import (
    Contribution,
    DeadlockPolicy,
    Entry,
    Resolution,
    Role,
)

logger = logging.getLogger(__name__)

MANUAL_REVIEW_DECISION = "unresolved: manual review required"
DEFER_DECISION = "defer: keep current state"


def lowest_risk_position(positions: Iterable[Contribution]) -> Contribution | None:
    """Lowest-risk position; unrated positions count as high risk, ties go to the earliest."""
    ranked = [
        (p.risk.rank if p.risk is not None else 3, index, p)
        for index, p in enumerate(positions)
    ]
    if not ranked:
        return None
    return min(ranked, key=lambda item: (item[0], item[1]))[2]


def lowest_risk_resolution(
    positions: Sequence[Contribution],
    decided_by: str,
    reason: str,
) -> Resolution:
    """
    The "favor lowest-risk option" default policy.

    With no positions on record, the lowest-risk option is to keep the
    current state. The result is always flagged for manual review.
    """
    chosen = lowest_risk_position(positions)
    if chosen is None:
        return Resolution(
            decision=DEFER_DECISION,
            reasoning=f"{reason}; no positions on record, deferring",
            decided_by=decided_by,
            manual_review=True,
        )
    return Resolution(
        decision=chosen.recommendation,
        reasoning=(
            f"{reason}; lowest-risk option selected "
            f"({chosen.risk.value if chosen.risk else 'unrated'} risk, "
            f"proposed by {chosen.role})"
        ),
        decided_by=decided_by,
        dissent=[
            p.model_copy() for p in positions
            if p.recommendation != chosen.recommendation
        ],
        manual_review=True,
    )


class ConflictArbitrator:
    """
    Resolves contradictory positions on an entry.

    Args:
        registry: Role registry, used for the apex fallback.
        router: Role router, used to find the owner when no role is given.
        deadlock_policy: What to do when the apex priority order is exhausted.
    """

    def __init__(
        self,
        registry,
        router=None,
        deadlock_policy: DeadlockPolicy = DeadlockPolicy.MANUAL_REVIEW,
    ) -> None:
        self.registry = registry
        self.router = router
        self.deadlock_policy = DeadlockPolicy(deadlock_policy)

    def resolve(
        self,
        entry: Entry,
        positions: Sequence[Contribution] | None = None,
        role: Role | None = None,
    ) -> Resolution:
        """
        Produce a single resolution from competing positions.

        Args:
            entry: The entry under arbitration.
            positions: Positions to weigh; defaults to the entry's positions.
            role: Owning role; resolved through the router when omitted.

        Raises:
            ValueError: If there are no positions to arbitrate.
        """
        positions = list(entry.positions if positions is None else positions)
        if not positions:
            raise ValueError(f"Entry {entry.id} has no positions to arbitrate")

        owner = role or self._owner(entry)

        winner, criterion = self.compare(positions, owner.priority_order)
        decided_by = owner
        if winner is None and not owner.is_apex:
            decided_by = self.registry.apex
            winner, criterion = self.compare(positions, decided_by.priority_order)

        if winner is None:
            logger.warning(
                "Arbitration deadlock on %s: priority order exhausted, policy=%s",
                entry.id, self.deadlock_policy.value,
            )
            return self._deadlock(entry, positions)

        supporters = [p for p in positions if p.recommendation == winner]
        if criterion is None:
            reasoning = "All positions recommend the same option"
        else:
            reasoning = (
                f"'{criterion}' is the highest criterion in {decided_by.name}'s "
                f"priority order on which the positions differ; strongest support "
                f"from {', '.join(sorted({p.role for p in supporters}))}"
            )

        logger.info(
            "Arbitrated %s: winner=%r criterion=%s decided_by=%s dissent=%d",
            entry.id, winner, criterion, decided_by.name,
            len(positions) - len(supporters),
        )
        return Resolution(
            decision=winner,
            reasoning=reasoning,
            decided_by=decided_by.name,
            dissent=[p.model_copy() for p in positions if p.recommendation != winner],
            deciding_criterion=criterion,
        )

    @staticmethod
    def compare(
        positions: Sequence[Contribution],
        priority_order: Sequence[str],
    ) -> tuple[str | None, str | None]:
        """
        Apply one priority order to the positions.

        Returns:
            (winning recommendation, deciding criterion). The criterion is None
            when the positions are unanimous; both are None when the order is
            exhausted without a winner.
        """
        recommendations = {p.recommendation for p in positions}
        if len(recommendations) == 1:
            return recommendations.pop(), None

        for criterion in priority_order:
            best = max(p.strength(criterion) for p in positions)
            if best <= 0:
                continue
            leaders = {p.recommendation for p in positions if p.strength(criterion) == best}
            if len(leaders) == 1:
                return leaders.pop(), criterion
        return None, None

    def _owner(self, entry: Entry) -> Role:
        if self.router is not None:
            return self.router.owner_for(entry)
        if entry.owner_role in self.registry:
            return self.registry.get(entry.owner_role)
        return self.registry.apex

    def _deadlock(self, entry: Entry, positions: list[Contribution]) -> Resolution:
        apex = self.registry.apex
        reason = "priority order exhausted at the apex role"

        if self.deadlock_policy == DeadlockPolicy.LOWEST_RISK:
            return lowest_risk_resolution(positions, apex.name, reason)

        if self.deadlock_policy == DeadlockPolicy.APEX_POSITION:
            own = [p for p in positions if p.role == apex.name]
            if own:
                chosen = own[-1]
                return Resolution(
                    decision=chosen.recommendation,
                    reasoning=f"{reason}; {apex.name}'s own position adopted",
                    decided_by=apex.name,
                    dissent=[
                        p.model_copy() for p in positions
                        if p.recommendation != chosen.recommendation
                    ],
                    manual_review=True,
                )

        return Resolution(
            decision=MANUAL_REVIEW_DECISION,
            reasoning=f"{reason}; flagged for manual review",
            decided_by=apex.name,
            dissent=[p.model_copy() for p in positions],
            manual_review=True,
        )
