"""Ensemble orchestration: classify, gather personas, deliberate, synthesise, present.

The user sees a single copilot voice. Internally each turn runs

    CLASSIFY -> GATHER -> SURFACE -> IDENTIFY -> SYNTHESISE -> PRESENT

with the persona calls of SURFACE fanned out in parallel and the synthesiser
call waiting on all of them.
"""

import asyncio
import logging
import re
import time
from collections.abc import Callable, Sequence

from config.config_loader import EnsembleConfig
from copilot.collaborators import MemoryStore, ToolExecutor
from copilot.mode_classifier import classify, should_activate_sceptic
from copilot.models import (
    Challenge,
    Conflict,
    Contribution,
    ConversationTurn,
    CopilotResponse,
    CounterEvidence,
    Deliberation,
    MemoryRecord,
    ProjectSignals,
    SessionState,
)
from copilot.personas import PersonaRegistry
from copilot.providers.base import LanguageModel
from copilot.scoring import ContributionScorer, HeuristicScorer

logger = logging.getLogger(__name__)

# Modes where persona attribution is always shown.
_ATTRIBUTED_MODES = frozenset({"decision", "pre_mortem"})

# Tier per persona; anything not listed runs on the fast tier.
_PERSONA_TIERS = {"sceptic": "capable", "synthesiser": "capable"}

_ALTERNATIVE_CUES = re.compile(r"alternativ|instead|another way|reframe|what if", re.IGNORECASE)
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")

_BEHAVIOUR_RULES = """IMPORTANT BEHAVIOURAL RULES:
- Use British English spelling (organisation, colour, analyse, etc.)
- Be concise. Every word must earn its place.
- Use active voice: "Velocity declined 15%" not "There has been a decline in velocity"
- Never use first person for stakeholder-facing content
- When citing data, always include the specific number and its source
- Format responses with clear structure: headlines, bullet points, clear sections
- Do not add pleasantries or filler. Start with substance."""


def identify_conflicts(contributions: Sequence[Contribution], confidence_gap: float = 0.4) -> list[Conflict]:
    """Pairwise disagreement between contributions.

    A dissenting contribution conflicts with every non-dissenting one (dissenter
    listed first). Independently, any pair whose confidence differs by more than
    confidence_gap is a confidence divergence.
    """
    conflicts: list[Conflict] = []
    for i, a in enumerate(contributions):
        for b in contributions[i + 1:]:
            if a.dissents and not b.dissents:
                conflicts.append(Conflict((a.persona_id, b.persona_id), a.dissent_reason or "Perspective disagreement"))
            elif b.dissents and not a.dissents:
                conflicts.append(Conflict((b.persona_id, a.persona_id), b.dissent_reason or "Perspective disagreement"))

            if abs(a.confidence - b.confidence) > confidence_gap:
                conflicts.append(
                    Conflict(
                        (a.persona_id, b.persona_id),
                        f"Confidence divergence ({a.confidence:.2f} vs {b.confidence:.2f})",
                    )
                )
    return conflicts


def merge_contributions(contributions: Sequence[Contribution]) -> str:
    """Cheap merge for modes that skip synthesis: perspectives in activation order."""
    return "\n\n".join(c.perspective for c in contributions)


def format_memory_context(memories: Sequence[MemoryRecord], session_summary: str | None) -> str:
    parts: list[str] = []
    if session_summary:
        parts.append(f"Last session: {session_summary}")
    if memories:
        ranked = sorted(memories, key=lambda m: m.relevance_score, reverse=True)
        lines = "\n".join(f"- [{m.type}] {m.content}" for m in ranked)
        parts.append(f"Relevant memories:\n{lines}")
    return "\n\n".join(parts)


def _extract_alternative_framing(text: str) -> str | None:
    for sentence in _SENTENCE_SPLIT.split(text):
        if _ALTERNATIVE_CUES.search(sentence):
            return sentence.strip()[:300]
    return None


def _evidence_strength(confidence: float) -> str:
    if confidence > 0.7:
        return "strong"
    if confidence >= 0.5:
        return "moderate"
    return "suggestive"


class EnsembleOrchestrator:
    """Runs one user turn through the persona ensemble."""

    def __init__(
        self,
        llm: LanguageModel,
        tools: ToolExecutor,
        memory: MemoryStore,
        session: SessionState,
        registry: PersonaRegistry | None = None,
        config: EnsembleConfig | None = None,
        scorer: ContributionScorer | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.llm = llm
        self.tools = tools
        self.memory = memory
        self.config = config or EnsembleConfig()
        self.registry = registry or PersonaRegistry.with_overrides(self.config.mode_personas)
        self.scorer = scorer or HeuristicScorer()
        self._session = session
        self._clock = clock

    async def process_message(
        self,
        user_message: str,
        is_background: bool = False,
        signals: ProjectSignals | None = None,
    ) -> CopilotResponse:
        """Process a user message through the ensemble and produce one response.

        Args:
            user_message: The user's message (or the background cycle prompt).
            is_background: True for scheduled monitoring cycles.
            signals: Project health figures that may wake the sceptic.

        Returns:
            CopilotResponse. deliberation is None on the operator-only fast path.

        Raises:
            ProviderError: If any persona or synthesiser call fails.
        """
        start = time.monotonic()
        started_at = self._clock()

        classification = classify(
            user_message,
            is_background=is_background,
            has_pending_draft=self._session.pending_draft is not None,
        )
        mode = classification.mode
        self._session.active_mode = mode
        logger.debug(
            "Classified as %s (%.2f): %s [turns so far: %d]",
            mode, classification.confidence, classification.reason, len(self._session.turns),
        )

        active, sceptic_trigger = self.resolve_personas(mode, user_message, signals)
        logger.info("Mode %s, personas: %s", mode, ", ".join(active))

        memories = await self.memory.retrieve_relevant(user_message, self.config.memory_limit)
        session_summary = await self.memory.get_last_session_summary()
        memory_context = format_memory_context(memories, session_summary)
        conversation_context = self._format_conversation_history()

        if active == ["operator"]:
            reply = await self.llm.complete(
                self._build_persona_prompt("operator", memory_context, conversation_context),
                user_message,
                max_tokens=self.config.operator_max_tokens,
                model_tier="fast",
            )
            await self._record_turn(user_message, reply, mode, active, started_at)
            return CopilotResponse(message=reply, mode=mode)

        contributions = await self._gather_contributions(active, user_message, memory_context, conversation_context)

        conflicts = identify_conflicts(contributions, self.config.conflict_confidence_gap)
        if conflicts:
            logger.info("%d conflict(s) between personas", len(conflicts))

        synthesised: str | None = None
        if mode in self.config.synthesis_modes or sceptic_trigger is not None:
            synthesised = await self._synthesise(
                contributions, conflicts, user_message, memory_context, conversation_context
            )
            message = synthesised
        else:
            message = merge_contributions(contributions)

        challenge: Challenge | None = None
        dissenting_sceptic = next((c for c in contributions if c.persona_id == "sceptic" and c.dissents), None)
        if dissenting_sceptic is not None:
            challenge = self._formulate_challenge(dissenting_sceptic, user_message, mode, sceptic_trigger)
            self._session.last_challenge_at = self._clock()

        deliberation = Deliberation(
            mode=mode,
            trigger=user_message,
            contributions=tuple(contributions),
            conflicts=tuple(conflicts),
            duration_sec=time.monotonic() - start,
            synthesised_recommendation=synthesised,
        )

        await self._record_turn(user_message, message, mode, active, started_at)

        return CopilotResponse(
            message=message,
            mode=mode,
            deliberation=deliberation,
            challenge=challenge,
            show_attribution=mode in _ATTRIBUTED_MODES or bool(conflicts),
        )

    def resolve_personas(
        self,
        mode: str,
        user_message: str,
        signals: ProjectSignals | None = None,
    ) -> tuple[list[str], str | None]:
        """Active persona ids for mode, plus the sceptic trigger if it was added."""
        personas = list(self.registry.personas_for(mode))
        if "sceptic" in personas:
            return personas, None

        trigger = should_activate_sceptic(
            user_message,
            mode,
            self.config.sceptic_thresholds,
            signals=signals,
            last_challenge_at=self._session.last_challenge_at,
            now=self._clock(),
        )
        if trigger is None:
            return personas, None

        logger.info("Sceptic activated outside its modes: %s", trigger)
        personas.append("sceptic")
        # A sceptic added on top of the mode is always reconciled, never shown raw.
        if "synthesiser" not in personas:
            personas.append("synthesiser")
        return personas, trigger

    async def _gather_contributions(
        self,
        persona_ids: Sequence[str],
        user_message: str,
        memory_context: str,
        conversation_context: str,
    ) -> list[Contribution]:
        async def run(persona_id: str) -> Contribution:
            reply = await self.llm.complete(
                self._build_persona_prompt(persona_id, memory_context, conversation_context),
                user_message,
                max_tokens=self.config.persona_max_tokens,
                model_tier=_PERSONA_TIERS.get(persona_id, "fast"),
            )
            return self.scorer.score(persona_id, reply)

        # The first failure cancels the sibling calls before the turn fails.
        try:
            async with asyncio.TaskGroup() as group:
                tasks = [group.create_task(run(pid)) for pid in persona_ids if pid != "synthesiser"]
        except ExceptionGroup as failed:
            raise failed.exceptions[0]
        return [task.result() for task in tasks]

    async def _synthesise(
        self,
        contributions: Sequence[Contribution],
        conflicts: Sequence[Conflict],
        user_message: str,
        memory_context: str,
        conversation_context: str,
    ) -> str:
        summary_parts = []
        for c in contributions:
            dissent_note = f" [DISSENTS: {c.dissent_reason}]" if c.dissents else ""
            summary_parts.append(
                f"**{self.registry.get(c.persona_id).name}** (confidence: {c.confidence}):{dissent_note}\n{c.perspective}"
            )
        contribution_summary = "\n\n".join(summary_parts)

        conflict_summary = ""
        if conflicts:
            conflict_summary = "\n\nCONFLICTS:\n" + "\n".join(
                f"- {self.registry.get(c.between[0]).name} vs {self.registry.get(c.between[1]).name}: {c.topic}"
                for c in conflicts
            )

        synthesis_input = (
            f'User asked: "{user_message}"\n\n'
            f"PERSPECTIVES GATHERED:\n\n{contribution_summary}{conflict_summary}\n\n"
            "Synthesise these perspectives into a single, balanced recommendation.\n"
            "Show attribution: reference which perspective contributed what.\n"
            "Be decisive. The user needs a recommendation, not a summary of disagreements."
        )

        return await self.llm.complete(
            self._build_persona_prompt("synthesiser", memory_context, conversation_context),
            synthesis_input,
            max_tokens=self.config.synthesis_max_tokens,
            model_tier=_PERSONA_TIERS["synthesiser"],
        )

    def _formulate_challenge(
        self,
        contribution: Contribution,
        user_message: str,
        mode: str,
        sceptic_trigger: str | None,
    ) -> Challenge:
        if sceptic_trigger is not None:
            trigger = sceptic_trigger
        elif mode == "decision":
            trigger = "decision_commit"
        else:
            trigger = "user_invoked"

        return Challenge(
            trigger=trigger,
            claim=user_message[:200],
            counter_evidence=(
                CounterEvidence(
                    point=contribution.perspective[:300],
                    source="sceptic_analysis",
                    strength=_evidence_strength(contribution.confidence),
                ),
            ),
            question=contribution.dissent_reason or "Have you considered the risks?",
            alternative_framing=_extract_alternative_framing(contribution.perspective),
        )

    def _build_persona_prompt(self, persona_id: str, memory_context: str, conversation_context: str) -> str:
        parts = [
            "You are PM Copilot, a personal project management assistant.",
            self.registry.get(persona_id).system_prompt_fragment,
            _BEHAVIOUR_RULES,
        ]
        if memory_context:
            parts.append(f"MEMORY CONTEXT (relevant knowledge from past sessions):\n{memory_context}")
        if conversation_context:
            parts.append(f"CONVERSATION SO FAR:\n{conversation_context}")
        return "\n\n".join(parts)

    def _format_conversation_history(self) -> str:
        recent = self._session.turns[-self.config.history_turns:]
        return "\n".join(
            f"{'User' if t.role == 'user' else 'Copilot'}: {t.content[:500]}" for t in recent
        )

    async def _record_turn(
        self,
        user_message: str,
        reply: str,
        mode: str,
        personas: Sequence[str],
        started_at: float,
    ) -> None:
        self._session.turns.append(ConversationTurn("user", user_message, started_at))
        self._session.turns.append(ConversationTurn("copilot", reply, self._clock(), mode=mode))
        await self.memory.record_event(
            f"User: {user_message[:200]} | Mode: {mode} | Personas: {', '.join(personas)}",
            {"session_id": self._session.session_id, "mode": mode, "personas": list(personas)},
        )

    def get_session(self) -> SessionState:
        return self._session

    def update_session(self, **changes) -> None:
        for key, value in changes.items():
            if not hasattr(self._session, key):
                raise AttributeError(f"SessionState has no field '{key}'")
            setattr(self._session, key, value)
