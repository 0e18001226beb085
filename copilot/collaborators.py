"""Interfaces the core consumes. Implementations live outside the core."""

from abc import ABC, abstractmethod
from typing import Any

from copilot.models import EmailStakeholderPayload, JiraStatusChangePayload, MemoryRecord, ToolResult


class ToolExecutor(ABC):
    """Runs named tools on behalf of a persona."""

    @abstractmethod
    async def execute(self, tool_name: str, params: dict[str, Any]) -> ToolResult:
        ...

    @abstractmethod
    def list_available(self) -> list[str]:
        ...


class MemoryStore(ABC):
    """Long-term recall and short-term event log."""

    @abstractmethod
    async def retrieve_relevant(self, query: str, limit: int = 5) -> list[MemoryRecord]:
        ...

    @abstractmethod
    async def get_last_session_summary(self) -> str | None:
        ...

    @abstractmethod
    async def record_event(self, event: str, metadata: dict[str, Any] | None = None) -> None:
        ...


class ActionExecutor(ABC):
    """One method per held action type. Any method may raise."""

    @abstractmethod
    async def execute_email(self, payload: EmailStakeholderPayload) -> dict[str, str]:
        """Send the email. Returns {"message_id": ...}."""
        ...

    @abstractmethod
    async def execute_jira_status_change(self, payload: JiraStatusChangePayload) -> None:
        ...
