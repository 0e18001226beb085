"""Abstract base for all language-model providers."""

import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)

MODEL_TIERS = ("fast", "capable")


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(self, provider_name: str, message: str) -> None:
        self.provider_name = provider_name
        super().__init__(f"[{provider_name}] {message}")


class LanguageModel(ABC):
    """Abstract base for all language-model providers."""

    @abstractmethod
    def name(self) -> str:
        """Return the short provider name (e.g. 'gemini', 'claude')."""
        ...

    @abstractmethod
    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        *,
        max_tokens: int | None = None,
        model_tier: str = "fast",
    ) -> str:
        """Generate a reply to user_message under system_prompt.

        Args:
            system_prompt: Persona prompt plus memory and conversation context.
            user_message: The turn being answered.
            max_tokens: Output budget; the provider default when None.
            model_tier: "fast" or "capable".

        Returns:
            The reply text.

        Raises:
            ProviderError: On API failure, timeout, or empty response.
        """
        ...


def model_for_tier(tiers: dict[str, str], model_tier: str, provider_name: str) -> str:
    """Resolve a tier to a model string, falling back to the fast tier."""
    model = tiers.get(model_tier) or tiers.get("fast")
    if not model:
        raise ProviderError(provider_name, f"No model configured for tier '{model_tier}'")
    return model


class RetryingLanguageModel(LanguageModel):
    """Retries a call once when the wrapped provider times out."""

    def __init__(self, inner: LanguageModel) -> None:
        self._inner = inner

    def name(self) -> str:
        return self._inner.name()

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        *,
        max_tokens: int | None = None,
        model_tier: str = "fast",
    ) -> str:
        try:
            return await self._inner.complete(
                system_prompt, user_message, max_tokens=max_tokens, model_tier=model_tier
            )
        except ProviderError as exc:
            if "timed out" not in str(exc).lower():
                raise
            logger.warning("Provider %s timed out (%s tier), retrying once", self._inner.name(), model_tier)
            return await self._inner.complete(
                system_prompt, user_message, max_tokens=max_tokens, model_tier=model_tier
            )
