"""In-process collaborators for local runs and tests: memory, tools, dry-run executor."""

import logging
import re
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from copilot.collaborators import ActionExecutor, MemoryStore, ToolExecutor
from copilot.models import EmailStakeholderPayload, JiraStatusChangePayload, MemoryRecord, ToolResult

logger = logging.getLogger(__name__)

_WORD = re.compile(r"[a-z0-9']+")


def _words(text: str) -> set[str]:
    return {w for w in _WORD.findall(text.lower()) if len(w) > 2}


class InMemoryMemory(MemoryStore):
    """Keyword-overlap recall over records held in a list."""

    def __init__(
        self,
        records: list[tuple[str, str]] | None = None,
        last_session_summary: str | None = None,
    ) -> None:
        # (content, type) pairs
        self._records: list[tuple[str, str, str]] = [
            (content, mem_type, datetime.now(timezone.utc).isoformat())
            for content, mem_type in (records or [])
        ]
        self._summary = last_session_summary
        self.events: list[tuple[str, dict[str, Any]]] = []

    def remember(self, content: str, mem_type: str = "semantic") -> None:
        self._records.append((content, mem_type, datetime.now(timezone.utc).isoformat()))

    async def retrieve_relevant(self, query: str, limit: int = 5) -> list[MemoryRecord]:
        query_words = _words(query)
        if not query_words:
            return []
        scored: list[MemoryRecord] = []
        for content, mem_type, created_at in self._records:
            overlap = len(query_words & _words(content))
            if overlap:
                scored.append(MemoryRecord(content, mem_type, overlap / len(query_words), created_at))
        scored.sort(key=lambda r: r.relevance_score, reverse=True)
        return scored[:limit]

    async def get_last_session_summary(self) -> str | None:
        return self._summary

    async def record_event(self, event: str, metadata: dict[str, Any] | None = None) -> None:
        self.events.append((event, dict(metadata or {})))
        logger.debug("Memory event: %s", event)


ToolFn = Callable[[dict[str, Any]], Awaitable[Any]]


class LocalToolExecutor(ToolExecutor):
    """Registry of async callables keyed by tool name."""

    def __init__(self, tools: dict[str, ToolFn] | None = None) -> None:
        self._tools: dict[str, ToolFn] = dict(tools or {})

    def register(self, tool_name: str, fn: ToolFn) -> None:
        self._tools[tool_name] = fn

    def list_available(self) -> list[str]:
        return sorted(self._tools)

    async def execute(self, tool_name: str, params: dict[str, Any]) -> ToolResult:
        fn = self._tools.get(tool_name)
        if fn is None:
            return ToolResult(tool_name=tool_name, result=None, error=f"Unknown tool: {tool_name}")
        try:
            return ToolResult(tool_name=tool_name, result=await fn(params))
        except Exception as exc:
            logger.warning("Tool %s failed: %s", tool_name, exc)
            return ToolResult(tool_name=tool_name, result=None, error=str(exc))


class LoggingActionExecutor(ActionExecutor):
    """Dry-run executor: logs what would have been sent and records it."""

    def __init__(self) -> None:
        self.sent: list[EmailStakeholderPayload | JiraStatusChangePayload] = []

    async def execute_email(self, payload: EmailStakeholderPayload) -> dict[str, str]:
        message_id = f"dry-run-{uuid.uuid4().hex[:12]}"
        logger.info("Email (dry run) to %s: %s [%s]", ", ".join(payload.to), payload.subject, message_id)
        self.sent.append(payload)
        return {"message_id": message_id}

    async def execute_jira_status_change(self, payload: JiraStatusChangePayload) -> None:
        logger.info(
            "Jira transition (dry run) %s: %s -> %s",
            payload.issue_key,
            payload.from_status,
            payload.to_status,
        )
        self.sent.append(payload)
