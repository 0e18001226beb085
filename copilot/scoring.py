"""Turn a persona's raw model output into a scored Contribution.

HeuristicScorer reads language cues. It is an approximation; a scorer that
asks the model for an explicit confidence field can replace it without the
orchestrator noticing.
"""

import re
from abc import ABC, abstractmethod

from copilot.models import Contribution

_DISSENT_CUES = re.compile(
    r"however|but i (must|need to) (flag|raise|point out)|counter to|against this|risks? (of|with|here)",
    re.IGNORECASE,
)
_HIGH_CONFIDENCE = re.compile(r"clearly|strongly|data shows|evidence (supports|confirms)", re.IGNORECASE)
_LOW_CONFIDENCE = re.compile(r"uncertain|insufficient data|unclear|might|possibly|speculative", re.IGNORECASE)
_CHALLENGE_SENTENCE = re.compile(r"however|but|risk|concern|challenge|unlikely|gap|miss", re.IGNORECASE)
_SENTENCE_SPLIT = re.compile(r"[.!?]+")

_DEFAULT_DISSENT_REASON = "Perspective disagreement"
_MAX_REASON_CHARS = 200


class ContributionScorer(ABC):
    """Scores one persona's response."""

    @abstractmethod
    def score(self, persona_id: str, response: str) -> Contribution:
        ...


class HeuristicScorer(ContributionScorer):
    """Regex cues for confidence; dissent is only read from the sceptic."""

    def __init__(
        self,
        high_confidence: float = 0.85,
        low_confidence: float = 0.5,
        neutral_confidence: float = 0.7,
    ) -> None:
        self._high = high_confidence
        self._low = low_confidence
        self._neutral = neutral_confidence

    def score(self, persona_id: str, response: str) -> Contribution:
        dissents = persona_id == "sceptic" and bool(_DISSENT_CUES.search(response))
        return Contribution(
            persona_id=persona_id,
            perspective=response,
            confidence=self.estimate_confidence(response),
            dissents=dissents,
            dissent_reason=extract_dissent_reason(response) if dissents else None,
        )

    def estimate_confidence(self, response: str) -> float:
        if _HIGH_CONFIDENCE.search(response):
            return self._high
        if _LOW_CONFIDENCE.search(response):
            return self._low
        return self._neutral


def extract_dissent_reason(response: str) -> str:
    """First sentence carrying a challenge cue, truncated."""
    for sentence in _SENTENCE_SPLIT.split(response):
        if sentence.strip() and _CHALLENGE_SENTENCE.search(sentence):
            return sentence.strip()[:_MAX_REASON_CHARS]
    return _DEFAULT_DISSENT_REASON
