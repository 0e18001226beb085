"""Hold queue: proposed external actions wait out a hold before they run.

A held action can be approved (runs now), cancelled, or left alone until its
hold expires and the batch processor runs it. Each outcome feeds the
graduation state for its (project, action type) pair.
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from config.config_loader import HoldQueueConfig
from copilot.collaborators import ActionExecutor
from copilot.errors import StoreError, UnknownActionTypeError
from copilot.graduation import GraduationPolicy
from copilot.models import (
    AuditEvent,
    EmailStakeholderPayload,
    ExecutionError,
    GraduationState,
    HeldAction,
    HeldActionPayload,
    HoldQueueResult,
    JiraStatusChangePayload,
    QueueActionResult,
    Readiness,
)
from copilot.store import EventStore, GraduationStore, HeldActionStore, SpotCheckStore, Stores

logger = logging.getLogger(__name__)

MIN_HOLD_MINUTES = 1
GRADUATION_WRITE_ATTEMPTS = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TimeRemaining:
    minutes: int
    seconds: int
    expired: bool


class HoldQueueService:
    def __init__(
        self,
        actions: HeldActionStore,
        graduation: GraduationStore,
        events: EventStore,
        policy: GraduationPolicy | None = None,
        spot_checks: SpotCheckStore | None = None,
        config: HoldQueueConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.actions = actions
        self.graduation = graduation
        self.events = events
        self.policy = policy or GraduationPolicy()
        self.spot_checks = spot_checks
        self.config = config or HoldQueueConfig()
        self.clock = clock

    @classmethod
    def from_stores(cls, stores: Stores, **kwargs) -> "HoldQueueService":
        return cls(stores.actions, stores.graduation, stores.events, spot_checks=stores.spot_checks, **kwargs)

    async def queue_action(
        self,
        project_id: str,
        payload: HeldActionPayload,
        hold_minutes: int | None = None,
    ) -> QueueActionResult:
        """Persist a pending action held for as long as its graduation tier says.

        hold_minutes is accepted for callers that suggest one but graduation
        always decides. The hold never drops below one minute, so even an
        "immediate" action is visible in the queue before it runs.
        """
        state = await self.get_graduation_state(project_id, payload.action_type)
        tier_hold = self.policy.hold_minutes(payload.action_type, state.tier)
        effective = max(MIN_HOLD_MINUTES, tier_hold)
        if hold_minutes is not None and hold_minutes != effective:
            logger.debug("Ignoring suggested hold of %d min for %s; tier %d gives %d",
                         hold_minutes, payload.action_type, state.tier, effective)

        now = self.clock()
        action = HeldAction(
            id=uuid.uuid4().hex,
            project_id=project_id,
            payload=payload,
            held_until=now + timedelta(minutes=effective),
            status="pending",
            created_at=now,
        )
        await self.actions.create(action)
        logger.info("Queued %s %s for %s (hold %d min, tier %d)",
                    action.action_type, action.id, project_id, effective, state.tier)
        await self._audit(
            project_id,
            "action_held",
            f'Action "{action.action_type}" queued with {effective} minute hold',
            action_id=action.id,
            context={"hold_minutes": effective, "graduation_tier": state.tier, "held_until": action.held_until.isoformat()},
        )
        return QueueActionResult(action=action, hold_minutes=effective, graduation_tier=state.tier)

    async def process_queue(self, executor: ActionExecutor) -> HoldQueueResult:
        """Run every action whose hold has expired. One failure never stops the batch."""
        now = self.clock()
        ready = await self.actions.list_ready(now, limit=self.config.ready_limit)
        result = HoldQueueResult()
        logger.info("Processing %d ready action(s)", len(ready))

        for action in ready:
            result.processed += 1
            try:
                if not await self.actions.claim_for_execution(action.project_id, action.id, self.clock()):
                    logger.info("Action %s was decided elsewhere; skipping", action.id)
                    continue
                outcome = await self._execute_action(action, executor)
                await self.actions.mark_executed(action.project_id, action.id, self.clock())
                await self._record_approval(action.project_id, action.action_type)
                result.executed += 1
                await self._audit(
                    action.project_id,
                    "action_taken",
                    f'Executed held action "{action.action_type}"',
                    action_id=action.id,
                    context={"automatic": True, **outcome},
                )
            except Exception as exc:
                logger.warning("Held action %s (%s) failed: %s", action.id, action.action_type, exc)
                result.errors.append(ExecutionError(action_id=action.id, error=str(exc)))
                await self._audit(
                    action.project_id,
                    "error",
                    f'Failed to execute held action "{action.action_type}"',
                    severity="error",
                    action_id=action.id,
                    context={"error": str(exc)},
                )

        logger.info("Queue run: %d processed, %d executed, %d failed",
                    result.processed, result.executed, len(result.errors))
        return result

    async def approve_action(
        self,
        project_id: str,
        action_id: str,
        executor: ActionExecutor,
        decided_by: str | None = None,
    ) -> HeldAction | None:
        """Approve and execute now. None when there was nothing to approve.

        If execution fails the action stays approved and the error propagates.
        """
        action = await self.actions.get(project_id, action_id)
        if action is None or action.status != "pending":
            return None

        approved = await self.actions.approve(project_id, action_id, self.clock(), decided_by)
        if approved is None:
            logger.info("Approve of %s lost to a concurrent decision", action_id)
            return None

        try:
            outcome = await self._execute_action(approved, executor)
        except Exception as exc:
            logger.error("Approved action %s failed to execute: %s", action_id, exc)
            await self._audit(
                project_id,
                "error",
                f'Failed to execute approved action "{approved.action_type}"',
                severity="error",
                action_id=action_id,
                context={"error": str(exc), "decided_by": decided_by},
            )
            raise

        executed = await self.actions.mark_executed(project_id, action_id, self.clock())
        await self._record_approval(project_id, approved.action_type)
        logger.info("Approved and executed %s %s", approved.action_type, action_id)
        await self._audit(
            project_id,
            "action_approved",
            f'Approved and executed held action "{approved.action_type}"',
            action_id=action_id,
            context={"decided_by": decided_by, **outcome},
        )
        return executed or approved

    async def cancel_action(
        self,
        project_id: str,
        action_id: str,
        reason: str | None = None,
        decided_by: str | None = None,
    ) -> HeldAction | None:
        action = await self.actions.get(project_id, action_id)
        if action is None or action.status != "pending":
            return None

        cancelled = await self.actions.cancel(project_id, action_id, self.clock(), reason, decided_by)
        if cancelled is None:
            logger.info("Cancel of %s lost to a concurrent decision", action_id)
            return None

        await self._update_graduation(
            project_id, cancelled.action_type, lambda state: self.policy.record_cancellation(state, self.clock())
        )

        logger.info("Cancelled %s %s (%s)", cancelled.action_type, action_id, reason or "no reason")
        await self._audit(
            project_id,
            "action_rejected",
            f'Cancelled held action "{cancelled.action_type}"',
            action_id=action_id,
            context={"reason": reason, "decided_by": decided_by},
        )
        return cancelled

    async def get_pending_actions(self, project_id: str) -> list[HeldAction]:
        return await self.actions.list_by_project(project_id, status="pending", limit=self.config.project_limit)

    async def get_all_pending_actions(self) -> list[HeldAction]:
        return await self.actions.list_pending(limit=self.config.pending_limit)

    async def get_graduation_state(self, project_id: str, action_type: str) -> GraduationState:
        """Stored state for the pair, or a fresh tier-0 state if none was saved yet."""
        state = await self.graduation.get(project_id, action_type)
        if state is None:
            state = GraduationState(project_id=project_id, action_type=action_type)
        return state

    async def get_project_graduation_states(self, project_id: str) -> list[GraduationState]:
        return await self.graduation.list_by_project(project_id)

    async def get_project_readiness(self, project_id: str) -> dict[str, Readiness]:
        """Readiness for the next tier, keyed by action type."""
        states = await self.graduation.list_by_project(project_id)
        stats = await self.spot_checks.stats(project_id) if self.spot_checks else None
        now = self.clock()
        return {state.action_type: self.policy.assess_readiness(state, now, stats) for state in states}

    async def count_pending_actions(self, project_id: str | None = None) -> int:
        return await self.actions.count_pending(project_id)

    async def get_stuck_actions(self, older_than_minutes: int = 15) -> list[HeldAction]:
        cutoff = self.clock() - timedelta(minutes=older_than_minutes)
        return await self.actions.list_stuck_executing(cutoff, limit=self.config.ready_limit)

    async def record_spot_check(
        self,
        project_id: str,
        action_id: str,
        verdict: str | None,
        notes: str | None = None,
    ) -> None:
        if self.spot_checks is None:
            raise RuntimeError("No spot-check store configured")
        await self.spot_checks.record(project_id, action_id, verdict, self.clock(), notes)
        logger.info("Spot check on %s/%s: %s", project_id, action_id, verdict or "pending")

    async def _record_approval(self, project_id: str, action_type: str) -> None:
        stats = await self.spot_checks.stats(project_id) if self.spot_checks else None
        await self._update_graduation(
            project_id, action_type, lambda state: self.policy.record_approval(state, self.clock(), stats)
        )

    async def _update_graduation(
        self,
        project_id: str,
        action_type: str,
        change: Callable[[GraduationState], GraduationState],
    ) -> GraduationState:
        """Read, change and conditionally write the pair's state, re-reading on conflict."""
        for _ in range(GRADUATION_WRITE_ATTEMPTS):
            before = await self.get_graduation_state(project_id, action_type)
            saved = await self.graduation.compare_and_save(change(before))
            if saved is not None:
                await self._audit_tier_change(before, saved)
                return saved
            logger.debug("Graduation state for %s/%s changed concurrently; retrying", project_id, action_type)
        raise StoreError(
            f"Graduation state for {project_id}/{action_type} kept changing; "
            f"gave up after {GRADUATION_WRITE_ATTEMPTS} attempts"
        )

    async def _audit_tier_change(self, before: GraduationState, after: GraduationState) -> None:
        if before.tier == after.tier:
            return
        direction = "promoted" if after.tier > before.tier else "demoted"
        await self._audit(
            after.project_id,
            "graduation_changed",
            f'"{after.action_type}" {direction} to {self.policy.tier_description(after.tier, after.action_type)}',
            severity="info" if direction == "promoted" else "warning",
            context={"from_tier": before.tier, "to_tier": after.tier,
                     "consecutive_approvals": after.consecutive_approvals},
        )

    async def _execute_action(self, action: HeldAction, executor: ActionExecutor) -> dict[str, Any]:
        payload = action.payload
        if isinstance(payload, EmailStakeholderPayload):
            sent = await executor.execute_email(payload)
            return {"message_id": sent.get("message_id")}
        if isinstance(payload, JiraStatusChangePayload):
            await executor.execute_jira_status_change(payload)
            return {"issue_key": payload.issue_key, "to_status": payload.to_status}
        raise UnknownActionTypeError(getattr(payload, "action_type", type(payload).__name__))

    async def _audit(
        self,
        project_id: str,
        event_type: str,
        summary: str,
        severity: str = "info",
        action_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        await self.events.record(AuditEvent(
            project_id=project_id,
            event_type=event_type,
            severity=severity,
            summary=summary,
            created_at=self.clock(),
            action_id=action_id,
            context=context or {},
        ))


def get_default_hold_time(action_type: str, policy: GraduationPolicy | None = None) -> int:
    """Tier-0 hold for action_type."""
    return (policy or GraduationPolicy()).hold_minutes(action_type, 0)


def format_hold_time(minutes: int) -> str:
    if minutes == 0:
        return "Immediate"
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    hours, remaining = divmod(minutes, 60)
    if remaining == 0:
        return f"{hours} hour{'s' if hours != 1 else ''}"
    return f"{hours}h {remaining}m"


def get_time_remaining(held_until: datetime, now: datetime | None = None) -> TimeRemaining:
    now = now or _utcnow()
    diff = (held_until - now).total_seconds()
    if diff <= 0:
        return TimeRemaining(minutes=0, seconds=0, expired=True)
    whole = int(diff)
    return TimeRemaining(minutes=whole // 60, seconds=whole % 60, expired=False)
