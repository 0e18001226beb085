"""Unit tests for copilot/graduation.py."""

from datetime import timedelta

import pytest

from config.config_loader import GraduationConfig
from copilot.graduation import GraduationPolicy
from copilot.models import GraduationState, SpotCheckStats
from tests.conftest import T0


@pytest.fixture
def policy() -> GraduationPolicy:
    return GraduationPolicy()


def _approve(policy: GraduationPolicy, state: GraduationState, times: int, spot_checks=None) -> GraduationState:
    for i in range(times):
        state = policy.record_approval(state, T0 + timedelta(minutes=i), spot_checks)
    return state


@pytest.mark.parametrize("tier,email,jira", [(0, 30, 5), (1, 15, 5), (2, 5, 5), (3, 0, 0)])
def test_hold_minutes_per_tier(policy, tier, email, jira):
    assert policy.hold_minutes("email_stakeholder", tier) == email
    assert policy.hold_minutes("jira_status_change", tier) == jira


def test_hold_never_increases_with_tier(policy):
    holds = [policy.hold_minutes("email_stakeholder", t) for t in policy.tiers]
    assert holds == sorted(holds, reverse=True)


def test_tier_thresholds(policy):
    assert [policy.tier_for(n) for n in (0, 4, 5, 9, 10, 19, 20, 50)] == [0, 0, 1, 1, 2, 2, 3, 3]


def test_streak_earns_tiers(policy):
    state = GraduationState("apollo", "email_stakeholder")
    state = _approve(policy, state, 5)
    assert state.tier == 1
    assert state.consecutive_approvals == 5
    assert state.last_approval_at is not None
    state = _approve(policy, state, 15)
    assert state.tier == 3


def test_cancellation_resets_streak_and_drops_a_tier(policy):
    state = GraduationState("apollo", "email_stakeholder", consecutive_approvals=12, tier=2)
    after = policy.record_cancellation(state, T0)
    assert after.consecutive_approvals == 0
    assert after.tier == 1
    assert after.last_cancellation_at == T0


def test_cancellation_never_goes_below_tier_zero(policy):
    after = policy.record_cancellation(GraduationState("apollo", "email_stakeholder", consecutive_approvals=3), T0)
    assert after.tier == 0
    assert after.consecutive_approvals == 0


def test_record_functions_do_not_mutate_input(policy):
    state = GraduationState("apollo", "email_stakeholder", consecutive_approvals=4)
    policy.record_approval(state, T0)
    policy.record_cancellation(state, T0)
    assert state.consecutive_approvals == 4
    assert state.tier == 0


def test_recent_cancellation_blocks_promotion(policy):
    state = GraduationState("apollo", "email_stakeholder", consecutive_approvals=4, last_cancellation_at=T0)
    within_guard = policy.record_approval(state, T0 + timedelta(days=2))
    assert within_guard.consecutive_approvals == 5
    assert within_guard.tier == 0

    after_guard = policy.record_approval(within_guard, T0 + timedelta(days=8))
    assert after_guard.tier == 1


def test_poor_spot_check_accuracy_blocks_promotion(policy):
    poor = SpotCheckStats(total_checks=6, correct_count=3, incorrect_count=3)
    state = _approve(policy, GraduationState("apollo", "email_stakeholder"), 5, spot_checks=poor)
    assert state.tier == 0


def test_spot_checks_need_a_sample_before_blocking(policy):
    few = SpotCheckStats(total_checks=2, correct_count=0, incorrect_count=2)
    state = _approve(policy, GraduationState("apollo", "email_stakeholder"), 5, spot_checks=few)
    assert state.tier == 1


def test_approvals_to_next_tier(policy):
    assert policy.approvals_to_next_tier(GraduationState("p", "email_stakeholder", consecutive_approvals=3)) == 2
    assert policy.approvals_to_next_tier(GraduationState("p", "email_stakeholder", tier=3)) is None


def test_tier_description(policy):
    assert policy.tier_description(0) == "Standard (30 min hold)"
    assert policy.tier_description(3) == "Immediate (no hold)"
    assert policy.tier_description(1, "jira_status_change") == "Trusted (5 min hold)"


def test_readiness_states(policy):
    fresh = policy.assess_readiness(GraduationState("p", "email_stakeholder"), T0)
    assert fresh.state == "needs_data"
    assert fresh.score == 0

    top = policy.assess_readiness(GraduationState("p", "email_stakeholder", tier=3), T0)
    assert (top.state, top.score) == ("ready", 100)

    halfway = GraduationState("p", "email_stakeholder", consecutive_approvals=7, tier=1, last_approval_at=T0)
    partial = policy.assess_readiness(halfway, T0)
    assert partial.state == "not_ready"
    assert partial.score == 70
    assert partial.blockers == ["Need 3 more consecutive approvals (7/10)"]

    # streak earned but promotion was held back by the guard, which has since expired
    held_back = GraduationState(
        "p", "email_stakeholder", consecutive_approvals=6, tier=0,
        last_approval_at=T0, last_cancellation_at=T0 - timedelta(days=10),
    )
    assert policy.assess_readiness(held_back, T0).state == "ready"


def test_readiness_reports_guard_blocker(policy):
    state = GraduationState(
        "p", "email_stakeholder", consecutive_approvals=6, last_approval_at=T0, last_cancellation_at=T0,
    )
    readiness = policy.assess_readiness(state, T0 + timedelta(days=1))
    assert readiness.state == "not_ready"
    assert any("Cancelled recently" in b for b in readiness.blockers)


def test_invalid_config_rejected():
    with pytest.raises(ValueError, match="same tiers"):
        GraduationPolicy(GraduationConfig(tier_thresholds={0: 0, 1: 5}))
    with pytest.raises(ValueError, match="must not increase"):
        GraduationPolicy(GraduationConfig(tier_hold_minutes={0: 5, 1: 15, 2: 5, 3: 0}))
