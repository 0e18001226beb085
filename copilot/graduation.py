"""Graduated autonomy: how long a proposed action is held before it runs.

Each (project, action type) pair carries a streak of consecutive approvals.
The streak earns tiers, and each tier shortens the default hold:

    tier 0: 30 min   (start)
    tier 1: 15 min   after 5 consecutive approvals
    tier 2:  5 min   after 10
    tier 3: immediate after 20 (still queued for at least a minute)

Trust is earned slowly and lost quickly: one cancellation resets the streak
and drops a tier, and promotion stays blocked for a while after it.
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta

from config.config_loader import GraduationConfig
from copilot.models import GraduationState, Readiness, SpotCheckStats

logger = logging.getLogger(__name__)

_TIER_NAMES = {0: "Standard", 1: "Trusted", 2: "Highly trusted", 3: "Immediate"}


class GraduationPolicy:
    """Pure tier arithmetic over GraduationState. Stores are handled elsewhere."""

    def __init__(self, config: GraduationConfig | None = None) -> None:
        self.config = config or GraduationConfig()
        tiers = sorted(self.config.tier_hold_minutes)
        if tiers != sorted(self.config.tier_thresholds):
            raise ValueError("tier_hold_minutes and tier_thresholds must define the same tiers")
        holds = [self.config.tier_hold_minutes[t] for t in tiers]
        if any(later > earlier for earlier, later in zip(holds, holds[1:])):
            raise ValueError("Hold time must not increase with tier")
        self.tiers: tuple[int, ...] = tuple(tiers)
        self.max_tier = tiers[-1]

    def hold_minutes(self, action_type: str, tier: int) -> int:
        """Default hold for action_type at tier.

        The per-type default caps every tier below the top one, so a type that
        already starts short (jira_status_change, 5 min) only graduates at the top.
        """
        if tier >= self.max_tier:
            return self.config.tier_hold_minutes[self.max_tier]
        type_default = self.config.default_hold_minutes.get(action_type, self.config.tier_hold_minutes[0])
        return min(type_default, self.config.tier_hold_minutes[tier])

    def tier_for(self, consecutive_approvals: int) -> int:
        earned = self.tiers[0]
        for tier in self.tiers:
            if consecutive_approvals >= self.config.tier_thresholds[tier]:
                earned = tier
        return earned

    def promotion_blockers(
        self,
        state: GraduationState,
        now: datetime,
        spot_checks: SpotCheckStats | None = None,
    ) -> list[str]:
        blockers: list[str] = []
        if state.last_cancellation_at is not None:
            guard_ends = state.last_cancellation_at + timedelta(days=self.config.promotion_guard_days)
            if now < guard_ends:
                blockers.append(f"Cancelled recently; promotion paused until {guard_ends:%Y-%m-%d %H:%M}")
        if spot_checks is not None:
            decided = spot_checks.correct_count + spot_checks.incorrect_count
            if decided >= self.config.min_spot_checks and spot_checks.accuracy_rate < self.config.min_spot_check_accuracy:
                blockers.append(
                    f"Spot-check accuracy below {self.config.min_spot_check_accuracy * 100:.0f}% "
                    f"(currently {spot_checks.accuracy_rate * 100:.1f}%)"
                )
        return blockers

    def record_approval(
        self,
        state: GraduationState,
        now: datetime,
        spot_checks: SpotCheckStats | None = None,
    ) -> GraduationState:
        """Return state after one approval (explicit or auto-executed hold)."""
        updated = replace(
            state,
            consecutive_approvals=state.consecutive_approvals + 1,
            last_approval_at=now,
            updated_at=now,
        )
        earned = self.tier_for(updated.consecutive_approvals)
        if earned > state.tier:
            blockers = self.promotion_blockers(updated, now, spot_checks)
            if blockers:
                logger.info(
                    "Promotion of %s/%s to tier %d held back: %s",
                    state.project_id, state.action_type, earned, "; ".join(blockers),
                )
            else:
                updated.tier = earned
                logger.info(
                    "%s/%s graduated to tier %d (%s)",
                    state.project_id, state.action_type, updated.tier, self.tier_description(updated.tier),
                )
        return updated

    def record_cancellation(self, state: GraduationState, now: datetime) -> GraduationState:
        """Return state after a cancellation: streak reset, tier regressed."""
        new_tier = max(self.tiers[0], state.tier - self.config.cancellation_tier_drop)
        if new_tier != state.tier:
            logger.info(
                "%s/%s regressed from tier %d to %d after cancellation",
                state.project_id, state.action_type, state.tier, new_tier,
            )
        return replace(
            state,
            consecutive_approvals=0,
            tier=new_tier,
            last_cancellation_at=now,
            updated_at=now,
        )

    def approvals_to_next_tier(self, state: GraduationState) -> int | None:
        """Approvals still needed for the next tier, None at the top tier."""
        if state.tier >= self.max_tier:
            return None
        next_tier = self.tiers[self.tiers.index(state.tier) + 1]
        return max(0, self.config.tier_thresholds[next_tier] - state.consecutive_approvals)

    def tier_description(self, tier: int, action_type: str = "email_stakeholder") -> str:
        name = _TIER_NAMES.get(tier, f"Tier {tier}")
        hold = self.hold_minutes(action_type, tier)
        if hold == 0:
            return f"{name} (no hold)"
        return f"{name} ({hold} min hold)"

    def assess_readiness(
        self,
        state: GraduationState,
        now: datetime,
        spot_checks: SpotCheckStats | None = None,
    ) -> Readiness:
        """How close the pair is to its next tier, with anything in the way."""
        if state.tier >= self.max_tier:
            return Readiness(100, "ready", "Already at maximum autonomy tier")

        blockers = self.promotion_blockers(state, now, spot_checks)
        remaining = self.approvals_to_next_tier(state) or 0
        next_tier = self.tiers[self.tiers.index(state.tier) + 1]
        needed = self.config.tier_thresholds[next_tier]
        if remaining:
            blockers.append(f"Need {remaining} more consecutive approvals ({state.consecutive_approvals}/{needed})")

        if state.last_approval_at is None and state.last_cancellation_at is None:
            return Readiness(0, "needs_data", "No decisions recorded yet", blockers)

        progress = state.consecutive_approvals / needed if needed else 1.0
        score = int(min(progress, 1.0) * 100)
        if not blockers:
            return Readiness(score, "ready", f"Ready for tier {next_tier}", blockers)
        return Readiness(min(score, 99), "not_ready", f"{len(blockers)} blocker(s) before tier {next_tier}", blockers)
