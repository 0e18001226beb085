"""Persistence for held actions, graduation state, audit events and spot checks.

Conditional transitions (approve, cancel, claim) only succeed while the action
is still pending. Losing that race is not an error: the store returns None
(or False for claims) and the caller treats it as "nothing to do".

Graduation state is versioned. compare_and_save only writes over the version
the caller read, so a cancellation and an approval of the same action type
racing each other cannot overwrite one another; the loser re-reads and retries.
"""

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path

from copilot.errors import StoreError
from copilot.models import (
    AuditEvent,
    GraduationState,
    HeldAction,
    SpotCheckStats,
    payload_from_dict,
    payload_to_dict,
)

logger = logging.getLogger(__name__)

SPOT_CHECK_VERDICTS = ("correct", "incorrect", "skipped")

# Fixed width so stored timestamps compare correctly as strings
_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class HeldActionStore(ABC):
    @abstractmethod
    async def create(self, action: HeldAction) -> None: ...

    @abstractmethod
    async def get(self, project_id: str, action_id: str) -> HeldAction | None: ...

    @abstractmethod
    async def list_by_project(self, project_id: str, status: str | None = None, limit: int = 50) -> list[HeldAction]:
        """Newest first."""
        ...

    @abstractmethod
    async def list_pending(self, limit: int = 100) -> list[HeldAction]:
        """Pending actions across all projects, earliest hold expiry first."""
        ...

    @abstractmethod
    async def list_ready(self, now: datetime, limit: int = 50) -> list[HeldAction]:
        """Pending actions whose hold expired at or before now, oldest expiry first."""
        ...

    @abstractmethod
    async def approve(
        self, project_id: str, action_id: str, now: datetime, decided_by: str | None = None
    ) -> HeldAction | None:
        """pending -> approved. None if the action is missing or no longer pending."""
        ...

    @abstractmethod
    async def cancel(
        self,
        project_id: str,
        action_id: str,
        now: datetime,
        reason: str | None = None,
        decided_by: str | None = None,
    ) -> HeldAction | None:
        """pending -> cancelled. None if the action is missing or no longer pending."""
        ...

    @abstractmethod
    async def claim_for_execution(self, project_id: str, action_id: str, now: datetime) -> bool:
        """pending -> executing for the automatic path. False if someone got there first."""
        ...

    @abstractmethod
    async def mark_executed(self, project_id: str, action_id: str, now: datetime) -> HeldAction | None:
        """approved/executing -> executed. None if the action is in any other state."""
        ...

    @abstractmethod
    async def list_stuck_executing(self, older_than: datetime, limit: int = 50) -> list[HeldAction]:
        """Claimed at or before older_than and never marked executed."""
        ...

    @abstractmethod
    async def count_pending(self, project_id: str | None = None) -> int: ...


class GraduationStore(ABC):
    @abstractmethod
    async def get(self, project_id: str, action_type: str) -> GraduationState | None: ...

    @abstractmethod
    async def save(self, state: GraduationState) -> None:
        """Unconditional write, for seeding and admin fixes."""
        ...

    @abstractmethod
    async def compare_and_save(self, state: GraduationState) -> GraduationState | None:
        """Write state only if the stored version still equals state.version.

        A missing row counts as version 0. Returns the saved state with its
        version bumped, or None if another writer got there first.
        """
        ...

    @abstractmethod
    async def list_by_project(self, project_id: str) -> list[GraduationState]: ...


class EventStore(ABC):
    @abstractmethod
    async def record(self, event: AuditEvent) -> None: ...

    @abstractmethod
    async def list_by_project(self, project_id: str, limit: int = 50) -> list[AuditEvent]:
        """Newest first."""
        ...


class SpotCheckStore(ABC):
    @abstractmethod
    async def record(
        self,
        project_id: str,
        action_id: str,
        verdict: str | None,
        now: datetime,
        notes: str | None = None,
    ) -> None:
        """verdict None means presented but not yet reviewed."""
        ...

    @abstractmethod
    async def stats(self, project_id: str) -> SpotCheckStats: ...


@dataclass
class Stores:
    actions: HeldActionStore
    graduation: GraduationStore
    events: EventStore
    spot_checks: SpotCheckStore


def _check_verdict(verdict: str | None) -> None:
    if verdict is not None and verdict not in SPOT_CHECK_VERDICTS:
        raise ValueError(f"Unknown spot-check verdict: {verdict}")


def _tally(verdicts: list[str | None]) -> SpotCheckStats:
    return SpotCheckStats(
        total_checks=len(verdicts),
        correct_count=verdicts.count("correct"),
        incorrect_count=verdicts.count("incorrect"),
        skipped_count=verdicts.count("skipped"),
        pending_count=verdicts.count(None),
    )


# Every check-and-set runs without an await in between, so under a single
# event loop each transition is atomic.


class InMemoryHeldActionStore(HeldActionStore):
    def __init__(self) -> None:
        self._actions: dict[tuple[str, str], HeldAction] = {}

    async def create(self, action: HeldAction) -> None:
        self._actions[(action.project_id, action.id)] = replace(action)

    async def get(self, project_id: str, action_id: str) -> HeldAction | None:
        action = self._actions.get((project_id, action_id))
        return replace(action) if action else None

    async def list_by_project(self, project_id: str, status: str | None = None, limit: int = 50) -> list[HeldAction]:
        found = [
            replace(a) for a in self._actions.values()
            if a.project_id == project_id and (status is None or a.status == status)
        ]
        found.sort(key=lambda a: a.created_at, reverse=True)
        return found[:limit]

    async def list_pending(self, limit: int = 100) -> list[HeldAction]:
        found = [replace(a) for a in self._actions.values() if a.status == "pending"]
        found.sort(key=lambda a: a.held_until)
        return found[:limit]

    async def list_ready(self, now: datetime, limit: int = 50) -> list[HeldAction]:
        found = [replace(a) for a in self._actions.values() if a.status == "pending" and a.held_until <= now]
        found.sort(key=lambda a: a.held_until)
        return found[:limit]

    def _transition(self, project_id: str, action_id: str, from_statuses: tuple[str, ...], **changes) -> HeldAction | None:
        action = self._actions.get((project_id, action_id))
        if action is None or action.status not in from_statuses:
            return None
        updated = replace(action, **changes)
        self._actions[(project_id, action_id)] = updated
        return replace(updated)

    async def approve(
        self, project_id: str, action_id: str, now: datetime, decided_by: str | None = None
    ) -> HeldAction | None:
        return self._transition(
            project_id, action_id, ("pending",), status="approved", approved_at=now, decided_by=decided_by
        )

    async def cancel(
        self,
        project_id: str,
        action_id: str,
        now: datetime,
        reason: str | None = None,
        decided_by: str | None = None,
    ) -> HeldAction | None:
        return self._transition(
            project_id,
            action_id,
            ("pending",),
            status="cancelled",
            cancelled_at=now,
            cancel_reason=reason,
            decided_by=decided_by,
        )

    async def claim_for_execution(self, project_id: str, action_id: str, now: datetime) -> bool:
        return self._transition(project_id, action_id, ("pending",), status="executing", claimed_at=now) is not None

    async def mark_executed(self, project_id: str, action_id: str, now: datetime) -> HeldAction | None:
        return self._transition(project_id, action_id, ("approved", "executing"), status="executed", executed_at=now)

    async def list_stuck_executing(self, older_than: datetime, limit: int = 50) -> list[HeldAction]:
        found = [
            replace(a) for a in self._actions.values()
            if a.status == "executing" and a.claimed_at is not None and a.claimed_at <= older_than
        ]
        found.sort(key=lambda a: a.claimed_at)
        return found[:limit]

    async def count_pending(self, project_id: str | None = None) -> int:
        return sum(
            1 for a in self._actions.values()
            if a.status == "pending" and (project_id is None or a.project_id == project_id)
        )


class InMemoryGraduationStore(GraduationStore):
    def __init__(self) -> None:
        self._states: dict[tuple[str, str], GraduationState] = {}

    async def get(self, project_id: str, action_type: str) -> GraduationState | None:
        state = self._states.get((project_id, action_type))
        return replace(state) if state else None

    async def save(self, state: GraduationState) -> None:
        self._states[(state.project_id, state.action_type)] = replace(state)

    async def compare_and_save(self, state: GraduationState) -> GraduationState | None:
        key = (state.project_id, state.action_type)
        current = self._states.get(key)
        if (current.version if current else 0) != state.version:
            return None
        saved = replace(state, version=state.version + 1)
        self._states[key] = saved
        return replace(saved)

    async def list_by_project(self, project_id: str) -> list[GraduationState]:
        found = [replace(s) for s in self._states.values() if s.project_id == project_id]
        found.sort(key=lambda s: s.action_type)
        return found


class InMemoryEventStore(EventStore):
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    async def list_by_project(self, project_id: str, limit: int = 50) -> list[AuditEvent]:
        found = [e for e in reversed(self.events) if e.project_id == project_id]
        return found[:limit]


class InMemorySpotCheckStore(SpotCheckStore):
    def __init__(self) -> None:
        self._checks: list[tuple[str, str, str | None]] = []

    async def record(
        self,
        project_id: str,
        action_id: str,
        verdict: str | None,
        now: datetime,
        notes: str | None = None,
    ) -> None:
        _check_verdict(verdict)
        self._checks.append((project_id, action_id, verdict))

    async def stats(self, project_id: str) -> SpotCheckStats:
        return _tally([verdict for pid, _, verdict in self._checks if pid == project_id])


def in_memory_stores() -> Stores:
    return Stores(
        actions=InMemoryHeldActionStore(),
        graduation=InMemoryGraduationStore(),
        events=InMemoryEventStore(),
        spot_checks=InMemorySpotCheckStore(),
    )


_SCHEMA = """
CREATE TABLE IF NOT EXISTS held_actions (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    action_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    held_until TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    approved_at TEXT,
    cancelled_at TEXT,
    claimed_at TEXT,
    executed_at TEXT,
    cancel_reason TEXT,
    decided_by TEXT
);
CREATE INDEX IF NOT EXISTS idx_held_actions_status_until ON held_actions (status, held_until);
CREATE INDEX IF NOT EXISTS idx_held_actions_project ON held_actions (project_id, created_at);

CREATE TABLE IF NOT EXISTS graduation_states (
    project_id TEXT NOT NULL,
    action_type TEXT NOT NULL,
    consecutive_approvals INTEGER NOT NULL DEFAULT 0,
    tier INTEGER NOT NULL DEFAULT 0,
    last_approval_at TEXT,
    last_cancellation_at TEXT,
    updated_at TEXT,
    version INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (project_id, action_type)
);

CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    severity TEXT NOT NULL,
    summary TEXT NOT NULL,
    action_id TEXT,
    context TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_events_project ON events (project_id, id);

CREATE TABLE IF NOT EXISTS spot_checks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL,
    action_id TEXT NOT NULL,
    verdict TEXT,
    notes TEXT,
    created_at TEXT NOT NULL
);
"""


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _dt(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


class SqliteDatabase:
    """One connection shared by the SQLite stores. ':memory:' works for tests."""

    def __init__(self, path: str | Path = ":memory:") -> None:
        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self.conn = sqlite3.connect(str(path))
            self.conn.row_factory = sqlite3.Row
            self.conn.executescript(_SCHEMA)
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot open store at {path}: {exc}") from exc
        logger.debug("Opened store at %s", path)

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            with self.conn:
                return self.conn.execute(sql, params)
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

    def close(self) -> None:
        self.conn.close()


def _row_to_action(row: sqlite3.Row) -> HeldAction:
    return HeldAction(
        id=row["id"],
        project_id=row["project_id"],
        payload=payload_from_dict(row["action_type"], json.loads(row["payload"])),
        held_until=_dt(row["held_until"]),
        status=row["status"],
        created_at=_dt(row["created_at"]),
        approved_at=_dt(row["approved_at"]),
        cancelled_at=_dt(row["cancelled_at"]),
        claimed_at=_dt(row["claimed_at"]),
        executed_at=_dt(row["executed_at"]),
        cancel_reason=row["cancel_reason"],
        decided_by=row["decided_by"],
    )


class SqliteHeldActionStore(HeldActionStore):
    def __init__(self, db: SqliteDatabase) -> None:
        self.db = db

    async def create(self, action: HeldAction) -> None:
        self.db.execute(
            "INSERT INTO held_actions (id, project_id, action_type, payload, held_until, status, created_at,"
            " approved_at, cancelled_at, claimed_at, executed_at, cancel_reason, decided_by)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                action.id,
                action.project_id,
                action.action_type,
                json.dumps(payload_to_dict(action.payload)),
                _ts(action.held_until),
                action.status,
                _ts(action.created_at),
                _ts(action.approved_at),
                _ts(action.cancelled_at),
                _ts(action.claimed_at),
                _ts(action.executed_at),
                action.cancel_reason,
                action.decided_by,
            ),
        )

    async def get(self, project_id: str, action_id: str) -> HeldAction | None:
        row = self.db.execute(
            "SELECT * FROM held_actions WHERE project_id = ? AND id = ?", (project_id, action_id)
        ).fetchone()
        return _row_to_action(row) if row else None

    async def list_by_project(self, project_id: str, status: str | None = None, limit: int = 50) -> list[HeldAction]:
        if status is None:
            rows = self.db.execute(
                "SELECT * FROM held_actions WHERE project_id = ? ORDER BY created_at DESC LIMIT ?",
                (project_id, limit),
            ).fetchall()
        else:
            rows = self.db.execute(
                "SELECT * FROM held_actions WHERE project_id = ? AND status = ? ORDER BY created_at DESC LIMIT ?",
                (project_id, status, limit),
            ).fetchall()
        return [_row_to_action(r) for r in rows]

    async def list_pending(self, limit: int = 100) -> list[HeldAction]:
        rows = self.db.execute(
            "SELECT * FROM held_actions WHERE status = 'pending' ORDER BY held_until LIMIT ?", (limit,)
        ).fetchall()
        return [_row_to_action(r) for r in rows]

    async def list_ready(self, now: datetime, limit: int = 50) -> list[HeldAction]:
        rows = self.db.execute(
            "SELECT * FROM held_actions WHERE status = 'pending' AND held_until <= ? ORDER BY held_until LIMIT ?",
            (_ts(now), limit),
        ).fetchall()
        return [_row_to_action(r) for r in rows]

    def _transition(self, project_id: str, action_id: str, from_statuses: tuple[str, ...], **changes) -> HeldAction | None:
        assignments = ", ".join(f"{column} = ?" for column in changes)
        placeholders = ", ".join("?" for _ in from_statuses)
        values = tuple(_ts(v) if isinstance(v, datetime) else v for v in changes.values())
        cursor = self.db.execute(
            f"UPDATE held_actions SET {assignments}"
            f" WHERE project_id = ? AND id = ? AND status IN ({placeholders})",
            values + (project_id, action_id) + from_statuses,
        )
        if cursor.rowcount == 0:
            return None
        row = self.db.execute(
            "SELECT * FROM held_actions WHERE project_id = ? AND id = ?", (project_id, action_id)
        ).fetchone()
        return _row_to_action(row)

    async def approve(
        self, project_id: str, action_id: str, now: datetime, decided_by: str | None = None
    ) -> HeldAction | None:
        return self._transition(
            project_id, action_id, ("pending",), status="approved", approved_at=now, decided_by=decided_by
        )

    async def cancel(
        self,
        project_id: str,
        action_id: str,
        now: datetime,
        reason: str | None = None,
        decided_by: str | None = None,
    ) -> HeldAction | None:
        return self._transition(
            project_id,
            action_id,
            ("pending",),
            status="cancelled",
            cancelled_at=now,
            cancel_reason=reason,
            decided_by=decided_by,
        )

    async def claim_for_execution(self, project_id: str, action_id: str, now: datetime) -> bool:
        return self._transition(project_id, action_id, ("pending",), status="executing", claimed_at=now) is not None

    async def mark_executed(self, project_id: str, action_id: str, now: datetime) -> HeldAction | None:
        return self._transition(project_id, action_id, ("approved", "executing"), status="executed", executed_at=now)

    async def list_stuck_executing(self, older_than: datetime, limit: int = 50) -> list[HeldAction]:
        rows = self.db.execute(
            "SELECT * FROM held_actions WHERE status = 'executing' AND claimed_at <= ? ORDER BY claimed_at LIMIT ?",
            (_ts(older_than), limit),
        ).fetchall()
        return [_row_to_action(r) for r in rows]

    async def count_pending(self, project_id: str | None = None) -> int:
        if project_id is None:
            row = self.db.execute("SELECT COUNT(*) FROM held_actions WHERE status = 'pending'").fetchone()
        else:
            row = self.db.execute(
                "SELECT COUNT(*) FROM held_actions WHERE status = 'pending' AND project_id = ?", (project_id,)
            ).fetchone()
        return row[0]


def _row_to_graduation(row: sqlite3.Row) -> GraduationState:
    return GraduationState(
        project_id=row["project_id"],
        action_type=row["action_type"],
        consecutive_approvals=row["consecutive_approvals"],
        tier=row["tier"],
        last_approval_at=_dt(row["last_approval_at"]),
        last_cancellation_at=_dt(row["last_cancellation_at"]),
        updated_at=_dt(row["updated_at"]),
        version=row["version"],
    )


def _graduation_values(state: GraduationState) -> tuple:
    return (
        state.consecutive_approvals,
        state.tier,
        _ts(state.last_approval_at),
        _ts(state.last_cancellation_at),
        _ts(state.updated_at),
        state.version,
    )


class SqliteGraduationStore(GraduationStore):
    def __init__(self, db: SqliteDatabase) -> None:
        self.db = db

    async def get(self, project_id: str, action_type: str) -> GraduationState | None:
        row = self.db.execute(
            "SELECT * FROM graduation_states WHERE project_id = ? AND action_type = ?", (project_id, action_type)
        ).fetchone()
        return _row_to_graduation(row) if row else None

    async def save(self, state: GraduationState) -> None:
        self.db.execute(
            "INSERT OR REPLACE INTO graduation_states (project_id, action_type, consecutive_approvals, tier,"
            " last_approval_at, last_cancellation_at, updated_at, version) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (state.project_id, state.action_type, *_graduation_values(state)),
        )

    async def compare_and_save(self, state: GraduationState) -> GraduationState | None:
        saved = replace(state, version=state.version + 1)
        cursor = self.db.execute(
            "UPDATE graduation_states SET consecutive_approvals = ?, tier = ?, last_approval_at = ?,"
            " last_cancellation_at = ?, updated_at = ?, version = ?"
            " WHERE project_id = ? AND action_type = ? AND version = ?",
            (*_graduation_values(saved), state.project_id, state.action_type, state.version),
        )
        if cursor.rowcount == 1:
            return saved
        if state.version == 0:
            # No row yet; a concurrent first write makes the insert a no-op
            cursor = self.db.execute(
                "INSERT OR IGNORE INTO graduation_states (project_id, action_type, consecutive_approvals, tier,"
                " last_approval_at, last_cancellation_at, updated_at, version) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (state.project_id, state.action_type, *_graduation_values(saved)),
            )
            if cursor.rowcount == 1:
                return saved
        return None

    async def list_by_project(self, project_id: str) -> list[GraduationState]:
        rows = self.db.execute(
            "SELECT * FROM graduation_states WHERE project_id = ? ORDER BY action_type", (project_id,)
        ).fetchall()
        return [_row_to_graduation(r) for r in rows]


class SqliteEventStore(EventStore):
    def __init__(self, db: SqliteDatabase) -> None:
        self.db = db

    async def record(self, event: AuditEvent) -> None:
        self.db.execute(
            "INSERT INTO events (project_id, event_type, severity, summary, action_id, context, created_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                event.project_id,
                event.event_type,
                event.severity,
                event.summary,
                event.action_id,
                json.dumps(event.context, default=str),
                _ts(event.created_at),
            ),
        )

    async def list_by_project(self, project_id: str, limit: int = 50) -> list[AuditEvent]:
        rows = self.db.execute(
            "SELECT * FROM events WHERE project_id = ? ORDER BY id DESC LIMIT ?", (project_id, limit)
        ).fetchall()
        return [
            AuditEvent(
                project_id=r["project_id"],
                event_type=r["event_type"],
                severity=r["severity"],
                summary=r["summary"],
                created_at=_dt(r["created_at"]),
                action_id=r["action_id"],
                context=json.loads(r["context"]),
            )
            for r in rows
        ]


class SqliteSpotCheckStore(SpotCheckStore):
    def __init__(self, db: SqliteDatabase) -> None:
        self.db = db

    async def record(
        self,
        project_id: str,
        action_id: str,
        verdict: str | None,
        now: datetime,
        notes: str | None = None,
    ) -> None:
        _check_verdict(verdict)
        self.db.execute(
            "INSERT INTO spot_checks (project_id, action_id, verdict, notes, created_at) VALUES (?, ?, ?, ?, ?)",
            (project_id, action_id, verdict, notes, _ts(now)),
        )

    async def stats(self, project_id: str) -> SpotCheckStats:
        rows = self.db.execute("SELECT verdict FROM spot_checks WHERE project_id = ?", (project_id,)).fetchall()
        return _tally([r["verdict"] for r in rows])


def sqlite_stores(path: str | Path = ":memory:") -> Stores:
    db = SqliteDatabase(path)
    return Stores(
        actions=SqliteHeldActionStore(db),
        graduation=SqliteGraduationStore(db),
        events=SqliteEventStore(db),
        spot_checks=SqliteSpotCheckStore(db),
    )
