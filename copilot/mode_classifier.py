"""Conversation mode classification and sceptic activation.

Pure functions. Quick queries go to the Operator alone, decisions wake the
full ensemble; this module only decides which.
"""

import re
import time

from config.config_loader import ScepticThresholds
from copilot.models import Classification, ProjectSignals

# Checked in priority order, first match wins. Adversarial and reflective
# phrasing comes first: "what went wrong" must not be swallowed by analysis.
_MODE_PATTERNS: tuple[tuple[str, tuple[re.Pattern[str], ...], str], ...] = (
    (
        "pre_mortem",
        tuple(re.compile(p, re.IGNORECASE) for p in (
            r"pre[- ]?mortem",
            r"stress[- ]?test",
            r"what could go wrong",
            r"devil'?s?\s+advocate",
            r"what am i (not seeing|missing)",
            r"challenge (this|the|my)",
            r"poke holes",
            r"worst[- ]?case",
        )),
        "User explicitly requests adversarial analysis",
    ),
    (
        "retrospective",
        tuple(re.compile(p, re.IGNORECASE) for p in (
            r"retro(spective)?(\s+on)?",
            r"what (did we|have we) learn",
            r"lessons?\s+learn",
            r"what went (well|wrong)",
            r"post[- ]?mortem",
            r"look(ing)? back (on|at)",
        )),
        "User requests structured reflection",
    ),
    (
        "decision",
        tuple(re.compile(p, re.IGNORECASE) for p in (
            r"should (we|i|the team)",
            r"decide (between|on|whether)",
            r"what('s| is) the best (approach|option|path|way)",
            r"trade[- ]?offs?\s+(between|for|of)",
            r"recommend(ation)?",
            r"option(s)?\s*(a|b|c|1|2|3)\b",
            r"push (the|to) (launch|deadline|date|milestone)",
            r"rescope|replan|descope",
            r"escalat(e|ion)",
            r"how should (i|we) handle",
        )),
        "User faces a decision or seeks structured options",
    ),
    (
        "action",
        tuple(re.compile(p, re.IGNORECASE) for p in (
            r"draft (a |an |the )?(email|message|response|reply|update|comm)",
            r"send (a |an |the )?(email|message|notification)",
            r"create (a |an |the )?(ticket|issue|story|task|risk|item)",
            r"update (the )?(raid|delivery|backlog|decision|artefact|status)",
            r"add (a |an )?(comment|note|risk|issue|item|dependency)",
            r"transition|move (the )?ticket",
            r"chase (up|email)",
            r"follow[- ]?up (with|on|email)",
            r"approve|cancel|reject",
        )),
        "User requests an external action",
    ),
    (
        "analysis",
        tuple(re.compile(p, re.IGNORECASE) for p in (
            r"what('s| is) the (state|status|health|progress)",
            r"how('s| is) (the project|it going|things|progress)",
            r"show (me )?(the )?(velocity|trend|metric|burn|sprint|risk|raid)",
            r"summar(y|ise|ize)",
            r"catch (me )?up",
            r"what (happened|changed|did i miss)",
            r"risk (landscape|assessment|analysis|review)",
            r"backlog (health|audit|quality|review)",
            r"dependency (map|analysis|check)",
            r"prep(are)? (me )?(for )?(the |a )?(meeting|standup|steering|review)",
            r"weekly (status|report)",
            r"briefing",
            r"how many (open |active )?(blocker|risk|issue|ticket)",
            r"cross[- ]?project",
        )),
        "User requests data synthesis or project assessment",
    ),
)

_APPROVAL_PATTERNS = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"^(yes|yep|yeah|approve|approved|lgtm|go ahead|send it|looks good)",
    r"^ok(ay)?$",
    r"^do it$",
    r"^confirm",
))

_CONFIDENCE_PATTERNS = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"we('ll| will| can) (make|hit|meet|deliver)",
    r"on track",
    r"no problem",
    r"confident",
    r"should be (fine|okay|ok)",
    r"we('re| are) (good|fine)",
    r"i think we('ll| will) make it",
))

_PATTERN_CONFIDENCE = 0.85
_APPROVAL_CONFIDENCE = 0.95
_SHORT_MESSAGE_WORDS = 8


def is_approval_response(message: str) -> bool:
    stripped = message.strip()
    return any(p.search(stripped) for p in _APPROVAL_PATTERNS)


def expresses_confidence(message: str) -> bool:
    return any(p.search(message) for p in _CONFIDENCE_PATTERNS)


def classify(
    user_message: str,
    is_background: bool = False,
    has_pending_draft: bool = False,
) -> Classification:
    """Classify a user message into one of the six conversation modes."""
    if is_background:
        return Classification("analysis", 1.0, "Background monitoring cycle")

    if has_pending_draft and is_approval_response(user_message):
        return Classification("action", _APPROVAL_CONFIDENCE, "Responding to pending draft action")

    for mode, patterns, description in _MODE_PATTERNS:
        if any(p.search(user_message) for p in patterns):
            return Classification(mode, _PATTERN_CONFIDENCE, description)

    word_count = len(user_message.split())
    if word_count <= _SHORT_MESSAGE_WORDS:
        return Classification("quick_query", 0.7, "Short message, defaulting to quick query")

    return Classification("analysis", 0.6, "Longer message, defaulting to analysis mode")


def should_activate_sceptic(
    user_message: str,
    mode: str,
    thresholds: ScepticThresholds,
    signals: ProjectSignals | None = None,
    last_challenge_at: float | None = None,
    now: float | None = None,
) -> str | None:
    """Return a challenge trigger if the evidence calls for the sceptic.

    Callers skip this for modes whose routing already includes the sceptic.

    Args:
        user_message: The message being processed.
        mode: Mode chosen by classify().
        thresholds: Activation thresholds and challenge cooldown.
        signals: Project health figures supplied by the caller.
        last_challenge_at: Epoch seconds of the last challenge in this session.
        now: Epoch seconds, defaults to time.time().

    Returns:
        One of "timeline_confidence", "risk_underestimate", "stale_blocker",
        "scope_creep", "user_invoked", or None.
    """
    now = time.time() if now is None else now
    if last_challenge_at is not None and now - last_challenge_at < thresholds.challenge_cooldown_sec:
        return None

    signals = signals or ProjectSignals()

    if signals.sceptic_requested:
        return "user_invoked"

    if (
        signals.velocity_gap_percent is not None
        and signals.velocity_gap_percent > thresholds.velocity_gap_percent
        and expresses_confidence(user_message)
    ):
        return "timeline_confidence"

    if (
        signals.risk_severity_gap is not None
        and signals.risk_severity_gap > thresholds.risk_underestimate_threshold
    ):
        return "risk_underestimate"

    if signals.stalest_blocker_days is not None and signals.stalest_blocker_days > thresholds.stale_blocker_days:
        return "stale_blocker"

    if (
        signals.scope_added_without_tradeoff is not None
        and signals.scope_added_without_tradeoff >= thresholds.scope_creep_ticket_count
    ):
        return "scope_creep"

    return None
