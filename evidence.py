"""
Evidence resolution framework.

A ResolverChain runs an ordered list of strategies against the same
source data and stops at the first piece of Evidence whose confidence
clears the chain's floor.  Strategies are plain callables wrapped in
Strategy objects; they either return Evidence, return None ("nothing
here"), or raise.

The chain is the only place strategy failures are caught:

  - EvidenceNotFound means "no match" and is logged at debug level.
  - Any other exception is a non-fatal fallback: it is logged with the
    strategy name and an input excerpt, recorded on the active trace,
    and the chain moves on to the next strategy.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Tuple

from ha_trace import get_trace
from scoring_config import SCORING_MODEL

logger = logging.getLogger(__name__)

NOT_FOUND = "not_found"

# Outcome labels recorded in ChainResult.attempts.
OUTCOME_FOUND = "found"
OUTCOME_NO_MATCH = "no_match"
OUTCOME_BELOW_FLOOR = "below_floor"
OUTCOME_ERROR = "error"


class EvidenceNotFound(Exception):
    """Raised by a strategy that looked and found nothing usable."""


@dataclass(frozen=True)
class Evidence:
    """A resolved fact plus how sure we are and where it came from."""
    value: Any
    confidence: int
    rationale: str
    strategy: str

    def __post_init__(self):
        try:
            confidence = int(round(float(self.confidence)))
        except (TypeError, ValueError):
            raise ValueError(f"confidence must be numeric, got {self.confidence!r}")
        # Frozen dataclass: bypass __setattr__ to store the clamped value.
        object.__setattr__(self, "confidence", max(0, min(100, confidence)))

    @property
    def found(self) -> bool:
        return self.strategy != NOT_FOUND

    @classmethod
    def not_found(cls, rationale: str = "No evidence found") -> "Evidence":
        return cls(value=None, confidence=0, rationale=rationale, strategy=NOT_FOUND)


class Strategy:
    """One way of extracting evidence from a source."""

    name = "strategy"

    def attempt(self, source: Any) -> Optional[Evidence]:
        raise NotImplementedError

    def excerpt(self, source: Any) -> str:
        """Short description of the input, used in fallback logs."""
        if isinstance(source, str):
            return source
        return repr(source)

    def __repr__(self):
        return f"<{type(self).__name__} {self.name}>"


class FunctionStrategy(Strategy):
    """Adapts a plain function ``fn(source) -> Optional[Evidence]``."""

    def __init__(self, name: str, fn: Callable[[Any], Optional[Evidence]], **attrs):
        self.name = name
        self.fn = fn
        # Extra attributes (e.g. provenance) travel with the strategy so
        # callers can inspect ChainResult.winner.
        for key, value in attrs.items():
            setattr(self, key, value)

    def attempt(self, source: Any) -> Optional[Evidence]:
        return self.fn(source)


@dataclass
class ChainResult:
    evidence: Evidence
    attempts: List[Tuple[str, str]] = field(default_factory=list)
    winner: Optional[Strategy] = None

    @property
    def errors(self) -> int:
        return sum(1 for _, outcome in self.attempts if outcome == OUTCOME_ERROR)

    @property
    def all_errored(self) -> bool:
        return bool(self.attempts) and self.errors == len(self.attempts)


class ResolverChain:
    """Ordered strategy executor with a confidence floor."""

    def __init__(
        self,
        name: str,
        strategies: Sequence[Strategy],
        confidence_floor: Optional[int] = None,
    ):
        self.name = name
        self.strategies = list(strategies)
        if confidence_floor is None:
            confidence_floor = SCORING_MODEL.chain_confidence_floor
        self.confidence_floor = confidence_floor

    def resolve(self, source: Any) -> ChainResult:
        attempts: List[Tuple[str, str]] = []
        best_rejected: Optional[Evidence] = None

        for strategy in self.strategies:
            try:
                evidence = strategy.attempt(source)
            except EvidenceNotFound as exc:
                logger.debug("%s/%s: no match (%s)", self.name, strategy.name, exc)
                attempts.append((strategy.name, OUTCOME_NO_MATCH))
                continue
            except Exception as exc:
                excerpt = strategy.excerpt(source)
                logger.warning(
                    "%s/%s failed, trying next strategy: %s: %s (input=%r)",
                    self.name, strategy.name, type(exc).__name__, exc, excerpt[:80],
                )
                trace = get_trace()
                if trace:
                    trace.record_fallback(self.name, strategy.name, exc, excerpt)
                attempts.append((strategy.name, OUTCOME_ERROR))
                continue

            if evidence is None or not evidence.found:
                attempts.append((strategy.name, OUTCOME_NO_MATCH))
                continue

            if evidence.confidence >= self.confidence_floor:
                attempts.append((strategy.name, OUTCOME_FOUND))
                return ChainResult(evidence=evidence, attempts=attempts, winner=strategy)

            attempts.append((strategy.name, OUTCOME_BELOW_FLOOR))
            if best_rejected is None or evidence.confidence > best_rejected.confidence:
                best_rejected = evidence

        if best_rejected is not None:
            rationale = (
                f"No evidence above {self.confidence_floor}% confidence "
                f"(best: {best_rejected.rationale}, {best_rejected.confidence}%)"
            )
        elif attempts and all(outcome == OUTCOME_ERROR for _, outcome in attempts):
            rationale = "All strategies failed"
        else:
            rationale = "No evidence found"
        return ChainResult(evidence=Evidence.not_found(rationale), attempts=attempts)

