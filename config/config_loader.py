"""Load settings.yaml into typed dataclasses. Validates API keys at startup."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"


@dataclass
class ModelConfig:
    name: str
    sdk: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int
    tiers: dict[str, str] = field(default_factory=dict)   # "fast" / "capable" -> model string
    base_url: str | None = None


@dataclass
class DefaultsConfig:
    provider: str
    store_path: Path
    transcripts_dir: Path


@dataclass
class ScepticThresholds:
    velocity_gap_percent: float = 20.0
    risk_underestimate_threshold: float = 0.3
    scope_creep_ticket_count: int = 3
    stale_blocker_days: float = 3.0
    challenge_cooldown_sec: float = 600.0


@dataclass
class EnsembleConfig:
    sceptic_thresholds: ScepticThresholds = field(default_factory=ScepticThresholds)
    synthesis_modes: tuple[str, ...] = ("decision", "pre_mortem", "retrospective")
    conflict_confidence_gap: float = 0.4
    memory_limit: int = 5
    history_turns: int = 10
    operator_max_tokens: int = 1024
    persona_max_tokens: int = 1500
    synthesis_max_tokens: int = 2000
    mode_personas: dict[str, list[str]] = field(default_factory=dict)   # overrides the built-in routing


@dataclass
class GraduationConfig:
    tier_hold_minutes: dict[int, int] = field(
        default_factory=lambda: {0: 30, 1: 15, 2: 5, 3: 0}
    )
    tier_thresholds: dict[int, int] = field(
        default_factory=lambda: {0: 0, 1: 5, 2: 10, 3: 20}
    )
    default_hold_minutes: dict[str, int] = field(
        default_factory=lambda: {"email_stakeholder": 30, "jira_status_change": 5}
    )
    cancellation_tier_drop: int = 1
    promotion_guard_days: float = 7.0
    min_spot_check_accuracy: float = 0.8
    min_spot_checks: int = 5


@dataclass
class HoldQueueConfig:
    ready_limit: int = 50
    project_limit: int = 50
    pending_limit: int = 100


@dataclass
class InboxConfig:
    dir: Path
    archive_dir: Path


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    models: dict[str, ModelConfig]
    ensemble: EnsembleConfig
    graduation: GraduationConfig
    hold_queue: HoldQueueConfig
    inbox: InboxConfig
    available_providers: set[str] = field(default_factory=set)


def _load_ensemble(raw: dict) -> EnsembleConfig:
    sceptic_raw = raw.get("sceptic_thresholds", {})
    base = ScepticThresholds()
    thresholds = ScepticThresholds(
        velocity_gap_percent=float(sceptic_raw.get("velocity_gap_percent", base.velocity_gap_percent)),
        risk_underestimate_threshold=float(
            sceptic_raw.get("risk_underestimate_threshold", base.risk_underestimate_threshold)
        ),
        scope_creep_ticket_count=int(sceptic_raw.get("scope_creep_ticket_count", base.scope_creep_ticket_count)),
        stale_blocker_days=float(sceptic_raw.get("stale_blocker_days", base.stale_blocker_days)),
        challenge_cooldown_sec=float(sceptic_raw.get("challenge_cooldown_sec", base.challenge_cooldown_sec)),
    )
    defaults = EnsembleConfig()
    return EnsembleConfig(
        sceptic_thresholds=thresholds,
        synthesis_modes=tuple(raw.get("synthesis_modes", defaults.synthesis_modes)),
        conflict_confidence_gap=float(raw.get("conflict_confidence_gap", defaults.conflict_confidence_gap)),
        memory_limit=int(raw.get("memory_limit", defaults.memory_limit)),
        history_turns=int(raw.get("history_turns", defaults.history_turns)),
        operator_max_tokens=int(raw.get("operator_max_tokens", defaults.operator_max_tokens)),
        persona_max_tokens=int(raw.get("persona_max_tokens", defaults.persona_max_tokens)),
        synthesis_max_tokens=int(raw.get("synthesis_max_tokens", defaults.synthesis_max_tokens)),
        mode_personas={str(k): [str(p) for p in v] for k, v in raw.get("mode_personas", {}).items()},
    )


def _load_graduation(raw: dict) -> GraduationConfig:
    defaults = GraduationConfig()
    return GraduationConfig(
        tier_hold_minutes={int(k): int(v) for k, v in raw.get("tier_hold_minutes", defaults.tier_hold_minutes).items()},
        tier_thresholds={int(k): int(v) for k, v in raw.get("tier_thresholds", defaults.tier_thresholds).items()},
        default_hold_minutes={
            str(k): int(v) for k, v in raw.get("default_hold_minutes", defaults.default_hold_minutes).items()
        },
        cancellation_tier_drop=int(raw.get("cancellation_tier_drop", defaults.cancellation_tier_drop)),
        promotion_guard_days=float(raw.get("promotion_guard_days", defaults.promotion_guard_days)),
        min_spot_check_accuracy=float(raw.get("min_spot_check_accuracy", defaults.min_spot_check_accuracy)),
        min_spot_checks=int(raw.get("min_spot_checks", defaults.min_spot_checks)),
    )


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing.
    Logs warnings for missing API keys but does not raise; callers check
    available_providers count.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    defaults = DefaultsConfig(
        provider=str(defaults_raw["provider"]),
        store_path=Path(defaults_raw["store_path"]),
        transcripts_dir=Path(defaults_raw["transcripts_dir"]),
    )

    hold_raw = raw.get("hold_queue", {})
    hold_defaults = HoldQueueConfig()
    hold_queue = HoldQueueConfig(
        ready_limit=int(hold_raw.get("ready_limit", hold_defaults.ready_limit)),
        project_limit=int(hold_raw.get("project_limit", hold_defaults.project_limit)),
        pending_limit=int(hold_raw.get("pending_limit", hold_defaults.pending_limit)),
    )

    inbox_raw = raw.get("inbox", {})
    inbox = InboxConfig(
        dir=Path(inbox_raw.get("dir", "./inbox")),
        archive_dir=Path(inbox_raw.get("archive_dir", "./inbox/archive")),
    )

    models: dict[str, ModelConfig] = {}
    available_providers: set[str] = set()

    for provider_name, model_raw in raw["models"].items():
        model_cfg = ModelConfig(
            name=provider_name,
            sdk=model_raw["sdk"],
            api_key_env=model_raw["api_key_env"],
            timeout_sec=int(model_raw["timeout_sec"]),
            max_tokens=int(model_raw["max_tokens"]),
            tiers={str(k): str(v) for k, v in model_raw["tiers"].items()},
            base_url=model_raw.get("base_url"),
        )
        models[provider_name] = model_cfg

        api_key = os.environ.get(model_raw["api_key_env"], "").strip()
        if api_key:
            available_providers.add(provider_name)
            logger.info("Provider available: %s", provider_name)
        else:
            logger.info(
                "Provider skipped (no API key): %s, set %s in .env",
                provider_name,
                model_raw["api_key_env"],
            )

    return AppConfig(
        defaults=defaults,
        models=models,
        ensemble=_load_ensemble(raw.get("ensemble", {})),
        graduation=_load_graduation(raw.get("graduation", {})),
        hold_queue=hold_queue,
        inbox=inbox,
        available_providers=available_providers,
    )
