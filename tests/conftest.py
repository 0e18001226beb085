"""Shared pytest fixtures."""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from config.config_loader import (
    AppConfig,
    DefaultsConfig,
    EnsembleConfig,
    GraduationConfig,
    HoldQueueConfig,
    InboxConfig,
    ModelConfig,
)
from copilot.ensemble import EnsembleOrchestrator
from copilot.graduation import GraduationPolicy
from copilot.hold_queue import HoldQueueService
from copilot.local import InMemoryMemory, LocalToolExecutor, LoggingActionExecutor
from copilot.models import EmailStakeholderPayload, JiraStatusChangePayload, SessionState
from copilot.providers.base import LanguageModel
from copilot.store import in_memory_stores

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable UTC clock for hold-queue tests."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class MockLanguageModel(LanguageModel):
    """Test double LanguageModel: replies by persona, records every call."""

    def __init__(
        self,
        replies: dict[str, str] | None = None,
        default: str = "Mock response",
        provider_name: str = "mock",
    ) -> None:
        self._name = provider_name
        self.replies = dict(replies or {})
        self.default = default
        # Shadow the class method with an AsyncMock at the instance level.
        # ABC check passes because complete is defined in the class body below.
        self.complete = AsyncMock(side_effect=self._reply)  # type: ignore[assignment]

    def name(self) -> str:
        return self._name

    async def complete(  # type: ignore[override]
        self,
        system_prompt: str,
        user_message: str,
        *,
        max_tokens: int | None = None,
        model_tier: str = "fast",
    ) -> str:
        """Default implementation; replaced by AsyncMock in __init__."""
        return self._reply(system_prompt, user_message, max_tokens=max_tokens, model_tier=model_tier)

    def _reply(self, system_prompt: str, user_message: str, *, max_tokens=None, model_tier="fast") -> str:
        for persona_id, reply in self.replies.items():
            if f"You are the {persona_id.title()} perspective" in system_prompt:
                return reply
        return self.default

    def calls_for(self, persona_id: str) -> list:
        marker = f"You are the {persona_id.title()} perspective"
        return [c for c in self.complete.call_args_list if marker in c.args[0]]


class FailingExecutor(LoggingActionExecutor):
    """Dry-run executor that raises for chosen subjects or issue keys."""

    def __init__(self, fail_on: set[str]) -> None:
        super().__init__()
        self.fail_on = fail_on

    async def execute_email(self, payload: EmailStakeholderPayload) -> dict[str, str]:
        if payload.subject in self.fail_on:
            raise RuntimeError(f"SMTP rejected {payload.subject}")
        return await super().execute_email(payload)

    async def execute_jira_status_change(self, payload: JiraStatusChangePayload) -> None:
        if payload.issue_key in self.fail_on:
            raise RuntimeError(f"Jira refused {payload.issue_key}")
        await super().execute_jira_status_change(payload)


def make_email(subject: str = "Weekly status", to: tuple[str, ...] = ("sponsor@example.com",)) -> EmailStakeholderPayload:
    return EmailStakeholderPayload(to=to, subject=subject, body_text=f"{subject} body")


def make_jira(issue_key: str = "PM-12") -> JiraStatusChangePayload:
    return JiraStatusChangePayload(
        issue_key=issue_key,
        transition_id="31",
        transition_name="Done",
        from_status="In Progress",
        to_status="Done",
    )


@pytest.fixture
def sample_model_config() -> ModelConfig:
    return ModelConfig(
        name="test_model",
        sdk="test",
        api_key_env="TEST_API_KEY",
        timeout_sec=30,
        max_tokens=1024,
        tiers={"fast": "test-fast-1", "capable": "test-capable-1"},
    )


@pytest.fixture
def sample_app_config(tmp_path: Path) -> AppConfig:
    model_cfg = ModelConfig(
        name="claude",
        sdk="anthropic",
        api_key_env="ANTHROPIC_API_KEY",
        timeout_sec=60,
        max_tokens=4096,
        tiers={"fast": "claude-haiku-4-5", "capable": "claude-sonnet-4-5"},
    )
    return AppConfig(
        defaults=DefaultsConfig(
            provider="claude",
            store_path=tmp_path / "copilot.db",
            transcripts_dir=tmp_path / "transcripts",
        ),
        models={"claude": model_cfg},
        ensemble=EnsembleConfig(),
        graduation=GraduationConfig(),
        hold_queue=HoldQueueConfig(),
        inbox=InboxConfig(dir=tmp_path / "inbox", archive_dir=tmp_path / "inbox" / "archive"),
        available_providers={"claude"},
    )


@pytest.fixture
def mock_llm() -> MockLanguageModel:
    return MockLanguageModel()


@pytest.fixture
def session() -> SessionState:
    return SessionState(session_id="session-1", project_id="apollo")


@pytest.fixture
def memory() -> InMemoryMemory:
    return InMemoryMemory()


@pytest.fixture
def make_orchestrator(session: SessionState, memory: InMemoryMemory):
    """Factory so each test picks its own model replies."""

    def _make(llm: LanguageModel, **kwargs) -> EnsembleOrchestrator:
        kwargs.setdefault("clock", lambda: 1_000_000.0)
        return EnsembleOrchestrator(llm=llm, tools=LocalToolExecutor(), memory=memory, session=session, **kwargs)

    return _make


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def stores():
    return in_memory_stores()


@pytest.fixture
def hold_queue(stores, clock: FakeClock) -> HoldQueueService:
    return HoldQueueService.from_stores(stores, policy=GraduationPolicy(), clock=clock)


@pytest.fixture
def executor() -> LoggingActionExecutor:
    return LoggingActionExecutor()
