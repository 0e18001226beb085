"""Dataclasses for the copilot core: ensemble records, session state, held actions."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, ClassVar

PERSONA_IDS = ("operator", "analyst", "sceptic", "advocate", "historian", "synthesiser")

MODES = ("quick_query", "analysis", "decision", "action", "pre_mortem", "retrospective")

CHALLENGE_TRIGGERS = (
    "timeline_confidence",
    "risk_underestimate",
    "scope_creep",
    "decision_commit",
    "stale_blocker",
    "user_invoked",
)

MEMORY_TYPES = ("semantic", "episodic", "summary", "preference")

# "executing" only exists between an automatic claim and mark_executed
HELD_STATUSES = ("pending", "approved", "cancelled", "executing", "executed")


@dataclass(frozen=True)
class Persona:
    id: str
    name: str
    role: str
    mandate: str
    voice: str
    activation_modes: tuple[str, ...]
    system_prompt_fragment: str


@dataclass(frozen=True)
class Classification:
    mode: str
    confidence: float
    reason: str


@dataclass(frozen=True)
class ProjectSignals:
    """Caller-supplied project health figures used to wake the sceptic."""

    velocity_gap_percent: float | None = None
    stalest_blocker_days: float | None = None
    scope_added_without_tradeoff: int | None = None
    risk_severity_gap: float | None = None   # historical severity minus the rating given now
    sceptic_requested: bool = False


@dataclass(frozen=True)
class Contribution:
    persona_id: str
    perspective: str
    confidence: float          # 0.0 - 1.0
    dissents: bool = False
    dissent_reason: str | None = None
    evidence: tuple[str, ...] = ()


@dataclass(frozen=True)
class Conflict:
    between: tuple[str, str]   # dissenter first
    topic: str
    resolution: str | None = None


@dataclass(frozen=True)
class Deliberation:
    mode: str
    trigger: str
    contributions: tuple[Contribution, ...]
    conflicts: tuple[Conflict, ...]
    duration_sec: float
    synthesised_recommendation: str | None = None

    @property
    def consensus_reached(self) -> bool:
        return not self.conflicts


@dataclass(frozen=True)
class CounterEvidence:
    point: str
    source: str
    strength: str              # "strong", "moderate", "suggestive"


@dataclass(frozen=True)
class Challenge:
    trigger: str
    claim: str
    counter_evidence: tuple[CounterEvidence, ...]
    question: str
    alternative_framing: str | None = None


@dataclass
class ResponseAction:
    id: str
    label: str
    type: str                  # "approve", "edit", "cancel", "choose_option", "discuss_further"
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Source:
    type: str                  # "jira_ticket", "email", "artefact", "memory", "trend_data"
    reference: str
    label: str


@dataclass
class CopilotResponse:
    message: str
    mode: str
    deliberation: Deliberation | None = None
    challenge: Challenge | None = None
    show_attribution: bool = False
    actions: list[ResponseAction] = field(default_factory=list)
    sources: list[Source] = field(default_factory=list)


@dataclass
class ConversationTurn:
    role: str                  # "user" or "copilot"
    content: str
    timestamp: float
    mode: str | None = None


@dataclass
class PendingDraft:
    type: str                  # "email", "jira_comment", "jira_transition", "artefact_update"
    content: str
    created_at: float
    hold_until: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionState:
    session_id: str
    project_id: str | None = None
    turns: list[ConversationTurn] = field(default_factory=list)
    last_challenge_at: float | None = None
    pending_draft: PendingDraft | None = None
    active_mode: str | None = None


@dataclass(frozen=True)
class MemoryRecord:
    content: str
    type: str
    relevance_score: float
    created_at: str


@dataclass
class ToolResult:
    tool_name: str
    result: Any
    error: str | None = None


@dataclass(frozen=True)
class EmailStakeholderPayload:
    action_type: ClassVar[str] = "email_stakeholder"

    to: tuple[str, ...]
    subject: str
    body_text: str
    body_html: str | None = None
    context: str | None = None


@dataclass(frozen=True)
class JiraStatusChangePayload:
    action_type: ClassVar[str] = "jira_status_change"

    issue_key: str
    transition_id: str
    transition_name: str
    from_status: str
    to_status: str
    reason: str | None = None


HeldActionPayload = EmailStakeholderPayload | JiraStatusChangePayload

PAYLOAD_TYPES: dict[str, type] = {
    EmailStakeholderPayload.action_type: EmailStakeholderPayload,
    JiraStatusChangePayload.action_type: JiraStatusChangePayload,
}

ACTION_TYPES = tuple(PAYLOAD_TYPES)


def payload_from_dict(action_type: str, data: dict[str, Any]) -> HeldActionPayload:
    """Build the typed payload for action_type. Raises KeyError for unknown types."""
    payload_cls = PAYLOAD_TYPES[action_type]
    if payload_cls is EmailStakeholderPayload:
        data = {**data, "to": tuple(data.get("to", ()))}
    return payload_cls(**data)


def payload_to_dict(payload: HeldActionPayload) -> dict[str, Any]:
    data = asdict(payload)
    if "to" in data:
        data["to"] = list(data["to"])
    return data


@dataclass
class HeldAction:
    id: str
    project_id: str
    payload: HeldActionPayload
    held_until: datetime
    status: str
    created_at: datetime
    approved_at: datetime | None = None
    cancelled_at: datetime | None = None
    claimed_at: datetime | None = None
    executed_at: datetime | None = None
    cancel_reason: str | None = None
    decided_by: str | None = None

    @property
    def action_type(self) -> str:
        return self.payload.action_type


@dataclass
class GraduationState:
    project_id: str
    action_type: str
    consecutive_approvals: int = 0
    tier: int = 0
    last_approval_at: datetime | None = None
    last_cancellation_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = 0            # bumped by every conditional save; 0 means never saved that way


@dataclass
class QueueActionResult:
    action: HeldAction
    hold_minutes: int
    graduation_tier: int


@dataclass
class ExecutionError:
    action_id: str
    error: str


@dataclass
class HoldQueueResult:
    processed: int = 0
    executed: int = 0
    errors: list[ExecutionError] = field(default_factory=list)


@dataclass
class AuditEvent:
    project_id: str
    event_type: str            # "action_held", "action_taken", "action_approved", "action_rejected", ...
    severity: str              # "info", "warning", "error"
    summary: str
    created_at: datetime
    action_id: str | None = None
    context: dict[str, Any] = field(default_factory=dict)


@dataclass
class SpotCheckStats:
    total_checks: int = 0
    correct_count: int = 0
    incorrect_count: int = 0
    skipped_count: int = 0
    pending_count: int = 0

    @property
    def accuracy_rate(self) -> float:
        decided = self.correct_count + self.incorrect_count
        return self.correct_count / decided if decided else 0.0


@dataclass
class Readiness:
    score: int                 # 0 - 100
    state: str                 # "ready", "not_ready", "needs_data"
    message: str
    blockers: list[str] = field(default_factory=list)
