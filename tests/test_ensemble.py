"""Unit tests for copilot/ensemble.py using a mocked language model."""

import asyncio

import pytest

from config.config_loader import EnsembleConfig
from copilot.ensemble import identify_conflicts, merge_contributions
from copilot.models import Contribution, PendingDraft, ProjectSignals
from copilot.personas import PersonaRegistry
from copilot.providers.base import LanguageModel, ProviderError
from tests.conftest import MockLanguageModel

DECISION = "Should we push the launch by two weeks?"
ANALYSIS = "Can you summarise the state of the RAID log for me please"

SCEPTIC_DISSENT = (
    "However, the vendor has missed every date so far. "
    "An alternative is to descope the reporting module."
)


# --- identify_conflicts tests ---


def test_confidence_divergence_without_dissent():
    conflicts = identify_conflicts([
        Contribution("analyst", "a", 0.9),
        Contribution("historian", "h", 0.4),
    ])
    assert len(conflicts) == 1
    assert conflicts[0].between == ("analyst", "historian")
    assert conflicts[0].topic.startswith("Confidence divergence")


def test_gap_at_threshold_is_not_a_conflict():
    assert identify_conflicts([Contribution("analyst", "a", 0.9), Contribution("historian", "h", 0.5)]) == []


def test_dissenter_conflicts_with_every_non_dissenter_listed_first():
    conflicts = identify_conflicts([
        Contribution("analyst", "a", 0.7),
        Contribution("sceptic", "s", 0.7, dissents=True, dissent_reason="Dates keep slipping"),
        Contribution("advocate", "v", 0.7),
    ])
    assert [c.between for c in conflicts] == [("sceptic", "analyst"), ("sceptic", "advocate")]
    assert all(c.topic == "Dates keep slipping" for c in conflicts)


def test_two_dissenters_do_not_conflict_with_each_other():
    conflicts = identify_conflicts([
        Contribution("sceptic", "s", 0.7, dissents=True),
        Contribution("analyst", "a", 0.7, dissents=True),
    ])
    assert conflicts == []


def test_merge_keeps_activation_order():
    merged = merge_contributions([Contribution("analyst", "first", 0.7), Contribution("historian", "second", 0.7)])
    assert merged == "first\n\nsecond"


# --- process_message tests ---


async def test_quick_query_is_a_single_operator_call(make_orchestrator):
    llm = MockLanguageModel({"operator": "Sprint 14 ends Friday."})
    orchestrator = make_orchestrator(llm)

    response = await orchestrator.process_message("Sprint ends when?")

    assert response.mode == "quick_query"
    assert response.message == "Sprint 14 ends Friday."
    assert response.deliberation is None
    assert response.show_attribution is False
    assert llm.complete.await_count == 1
    assert llm.complete.call_args.kwargs == {"max_tokens": 1024, "model_tier": "fast"}


async def test_decision_with_dissenting_sceptic_shows_attribution_and_challenge(make_orchestrator, session):
    llm = MockLanguageModel({"sceptic": SCEPTIC_DISSENT, "synthesiser": "Recommendation: hold the date."})
    orchestrator = make_orchestrator(llm)

    response = await orchestrator.process_message(DECISION)

    assert response.mode == "decision"
    assert response.show_attribution is True
    assert response.message == "Recommendation: hold the date."
    assert response.deliberation.synthesised_recommendation == "Recommendation: hold the date."
    assert [c.persona_id for c in response.deliberation.contributions] == ["analyst", "sceptic", "advocate", "historian"]
    assert len(response.deliberation.conflicts) == 3

    challenge = response.challenge
    assert challenge is not None
    assert challenge.trigger == "decision_commit"
    assert challenge.claim == DECISION
    assert challenge.question == "However, the vendor has missed every date so far"
    assert challenge.alternative_framing == "An alternative is to descope the reporting module."
    assert challenge.counter_evidence[0].strength == "moderate"
    assert session.last_challenge_at == 1_000_000.0


async def test_persona_tiers_and_budgets(make_orchestrator):
    llm = MockLanguageModel({"sceptic": SCEPTIC_DISSENT})
    await make_orchestrator(llm).process_message(DECISION)

    assert llm.calls_for("sceptic")[0].kwargs == {"max_tokens": 1500, "model_tier": "capable"}
    assert llm.calls_for("analyst")[0].kwargs == {"max_tokens": 1500, "model_tier": "fast"}
    synth_call = llm.calls_for("synthesiser")[0]
    assert synth_call.kwargs == {"max_tokens": 2000, "model_tier": "capable"}
    assert "[DISSENTS:" in synth_call.args[1]
    assert "CONFLICTS:" in synth_call.args[1]


async def test_analysis_merges_without_synthesis(make_orchestrator):
    llm = MockLanguageModel({"analyst": "Four open risks.", "historian": "Same as Q2."})

    response = await make_orchestrator(llm).process_message(ANALYSIS)

    assert response.mode == "analysis"
    assert response.message == "Four open risks.\n\nSame as Q2."
    assert response.deliberation.synthesised_recommendation is None
    assert response.show_attribution is False
    assert response.challenge is None
    assert llm.complete.await_count == 2


async def test_conflict_alone_turns_on_attribution(make_orchestrator):
    llm = MockLanguageModel({"analyst": "The data shows four open risks.", "historian": "It is unclear."})

    # 0.85 vs 0.5
    orchestrator = make_orchestrator(llm, config=EnsembleConfig(conflict_confidence_gap=0.3))

    response = await orchestrator.process_message(ANALYSIS)

    assert response.mode == "analysis"
    assert len(response.deliberation.conflicts) == 1
    assert response.show_attribution is True


async def test_signals_force_sceptic_and_synthesis(make_orchestrator):
    llm = MockLanguageModel({"sceptic": SCEPTIC_DISSENT, "synthesiser": "Unblock PM-7 first."})
    orchestrator = make_orchestrator(llm)

    response = await orchestrator.process_message(ANALYSIS, signals=ProjectSignals(stalest_blocker_days=5))

    ids = [c.persona_id for c in response.deliberation.contributions]
    assert ids == ["analyst", "historian", "sceptic"]
    assert response.message == "Unblock PM-7 first."
    assert response.challenge.trigger == "stale_blocker"


async def test_challenge_cooldown_keeps_sceptic_out(make_orchestrator):
    llm = MockLanguageModel({"sceptic": SCEPTIC_DISSENT})
    orchestrator = make_orchestrator(llm)
    signals = ProjectSignals(stalest_blocker_days=5)

    await orchestrator.process_message(ANALYSIS, signals=signals)
    second = await orchestrator.process_message(ANALYSIS, signals=signals)

    assert [c.persona_id for c in second.deliberation.contributions] == ["analyst", "historian"]
    assert second.challenge is None


async def test_resolve_personas_returns_trigger(make_orchestrator, mock_llm):
    orchestrator = make_orchestrator(mock_llm)
    personas, trigger = orchestrator.resolve_personas(
        "quick_query", "We are on track", ProjectSignals(velocity_gap_percent=30)
    )
    assert personas == ["operator", "sceptic", "synthesiser"]
    assert trigger == "timeline_confidence"


async def test_overridden_mode_with_sceptic_gets_no_extra_trigger(make_orchestrator, mock_llm):
    registry = PersonaRegistry.with_overrides({"analysis": ["analyst", "sceptic", "synthesiser"]})
    orchestrator = make_orchestrator(mock_llm, registry=registry)

    personas, trigger = orchestrator.resolve_personas(
        "analysis", ANALYSIS, ProjectSignals(sceptic_requested=True)
    )

    assert personas == ["analyst", "sceptic", "synthesiser"]
    assert trigger is None


async def test_overridden_decision_without_sceptic_can_still_call_it_in(make_orchestrator, mock_llm):
    registry = PersonaRegistry.with_overrides({"decision": ["analyst", "advocate", "synthesiser"]})
    orchestrator = make_orchestrator(mock_llm, registry=registry)

    personas, trigger = orchestrator.resolve_personas(
        "decision", DECISION, ProjectSignals(sceptic_requested=True)
    )

    assert personas == ["analyst", "advocate", "synthesiser", "sceptic"]
    assert trigger == "user_invoked"


async def test_approval_with_pending_draft_routes_to_action(make_orchestrator, mock_llm, session):
    session.pending_draft = PendingDraft(type="email", content="Hi all", created_at=0.0, hold_until=1800.0)

    response = await make_orchestrator(mock_llm).process_message("yes")

    assert response.mode == "action"
    assert [c.persona_id for c in response.deliberation.contributions] == ["operator", "advocate"]


async def test_turns_recorded_in_pairs_with_memory_event(make_orchestrator, session, memory):
    llm = MockLanguageModel({"operator": "Friday."})
    orchestrator = make_orchestrator(llm)

    await orchestrator.process_message("Sprint ends when?")
    await orchestrator.process_message("And the next one?")

    assert [t.role for t in session.turns] == ["user", "copilot", "user", "copilot"]
    assert session.turns[1].mode == "quick_query"
    assert session.active_mode == "quick_query"
    assert len(memory.events) == 2
    event, metadata = memory.events[0]
    assert "Mode: quick_query" in event
    assert metadata == {"session_id": "session-1", "mode": "quick_query", "personas": ["operator"]}


async def test_memory_and_history_reach_the_prompt(make_orchestrator, memory):
    memory.remember("The vendor missed the March milestone", "episodic")
    llm = MockLanguageModel({"operator": "Noted."})
    orchestrator = make_orchestrator(llm)

    await orchestrator.process_message("Vendor milestone?")
    await orchestrator.process_message("Vendor contact?")

    system_prompt = llm.complete.call_args.args[0]
    assert "[episodic] The vendor missed the March milestone" in system_prompt
    assert "User: Vendor milestone?" in system_prompt
    assert "Copilot: Noted." in system_prompt


async def test_history_window_is_bounded(make_orchestrator, session):
    llm = MockLanguageModel({"operator": "ok"})
    orchestrator = make_orchestrator(llm, config=EnsembleConfig(history_turns=2))

    for i in range(3):
        await orchestrator.process_message(f"Question {i}?")

    system_prompt = llm.complete.call_args.args[0]
    assert "Question 0?" not in system_prompt
    assert "User: Question 1?" in system_prompt


async def test_persona_failure_propagates(make_orchestrator, session):
    llm = MockLanguageModel()
    llm.complete.side_effect = ProviderError("mock", "Request timed out after 30s")

    with pytest.raises(ProviderError):
        await make_orchestrator(llm).process_message(ANALYSIS)
    assert session.turns == []


class _BarrierModel(LanguageModel):
    """Each call waits until `expected` calls are in flight at once."""

    def __init__(self, expected: int) -> None:
        self.expected = expected
        self.in_flight = 0
        self.all_started = asyncio.Event()

    def name(self) -> str:
        return "barrier"

    async def complete(self, system_prompt, user_message, *, max_tokens=None, model_tier="fast") -> str:
        self.in_flight += 1
        if self.in_flight >= self.expected:
            self.all_started.set()
        await asyncio.wait_for(self.all_started.wait(), timeout=1.0)
        return "Mock response"


async def test_persona_calls_run_concurrently(make_orchestrator):
    # analyst + historian must both be in flight before either returns
    response = await make_orchestrator(_BarrierModel(expected=2)).process_message(ANALYSIS)
    assert len(response.deliberation.contributions) == 2


class _OneFailsModel(LanguageModel):
    """The Analyst fails at once; every other persona answers after a short delay."""

    def __init__(self) -> None:
        self.finished: list[str] = []

    def name(self) -> str:
        return "one-fails"

    async def complete(self, system_prompt, user_message, *, max_tokens=None, model_tier="fast") -> str:
        if "You are the Analyst perspective" in system_prompt:
            raise ProviderError("one-fails", "API call failed: 500")
        await asyncio.sleep(0.05)
        self.finished.append(model_tier)
        return "Late reply"


async def test_persona_failure_cancels_sibling_calls(make_orchestrator, session):
    llm = _OneFailsModel()

    with pytest.raises(ProviderError, match="500"):
        await make_orchestrator(llm).process_message(ANALYSIS)
    await asyncio.sleep(0.1)

    assert llm.finished == []
    assert session.turns == []


async def test_session_update(make_orchestrator, mock_llm):
    orchestrator = make_orchestrator(mock_llm)
    orchestrator.update_session(project_id="hermes")
    assert orchestrator.get_session().project_id == "hermes"
    with pytest.raises(AttributeError):
        orchestrator.update_session(no_such_field=1)
