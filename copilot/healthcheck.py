"""Provider health checks: ping each language model before a session."""

import asyncio
import logging
import time
from dataclasses import dataclass

from copilot.providers.base import LanguageModel

logger = logging.getLogger(__name__)

_PING_SYSTEM = "You are a connectivity check for a project copilot."
_PING_PROMPT = "Reply with the word OK only."
_TIMEOUT_SEC = 15.0


@dataclass(frozen=True)
class ProviderHealth:
    ok: bool
    error: str = ""
    latency_sec: float = 0.0


async def _ping(model: LanguageModel) -> ProviderHealth:
    start = time.monotonic()
    try:
        reply = await asyncio.wait_for(
            model.complete(_PING_SYSTEM, _PING_PROMPT, max_tokens=16, model_tier="fast"),
            timeout=_TIMEOUT_SEC,
        )
    except Exception as exc:
        logger.debug("Health check for %s failed: %s", model.name(), exc)
        return ProviderHealth(False, str(exc) or type(exc).__name__, time.monotonic() - start)

    latency = time.monotonic() - start
    if not reply or not reply.strip():
        return ProviderHealth(False, "Empty reply", latency)
    return ProviderHealth(True, "", latency)


async def run_health_checks(models: dict[str, LanguageModel]) -> dict[str, ProviderHealth]:
    """Ping all providers in parallel.

    An empty reply counts as a failure; a timeout after 15s is reported as
    the exception type when it carries no message.
    """
    names = list(models)
    results = await asyncio.gather(*(_ping(models[n]) for n in names))
    return dict(zip(names, results))
