"""Matcher: pick the pending payment a parsed SMS pays for, or hand it to a human.

Decisions:

- `AutoSettle(payment_id)`: exactly one candidate, confidence at or above the
  auto threshold and the candidate's expected reference absent or matching.
- `ManualReview(candidate_ids)`: several candidates, low confidence, a
  reference mismatch, or no candidate while confidence is still plausible.
  Payments in another currency are never candidates.
- `NoCandidate()`: nothing to offer and confidence below the plausible floor;
  filed for triage.

The matcher only reads. Applying a decision is the pipeline's job.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from difflib import SequenceMatcher

from sqlalchemy import select

from momorecon.common.clock import as_utc
from momorecon.common.config import settings
from momorecon.common.state_machine import PAYMENT_PENDING
from momorecon.services.settlement.models import Payment


ORDER_BY_CREATED_AT = "created_at"
ORDER_BY_PROXIMITY = "proximity"

REFERENCE_EXACT = "exact"
REFERENCE_FUZZY = "fuzzy"
REFERENCE_IGNORE = "ignore"


@dataclass(frozen=True)
class MatchPolicy:
    auto_threshold: float = 0.70
    plausible_floor: float = 0.35
    lookback_seconds: int = 300
    clock_skew_seconds: int = 60
    candidate_ordering: str = ORDER_BY_CREATED_AT
    reference_policy: str = REFERENCE_EXACT
    reference_similarity: float = 0.80

    def __post_init__(self) -> None:
        if self.candidate_ordering not in (ORDER_BY_CREATED_AT, ORDER_BY_PROXIMITY):
            raise ValueError(f"unknown candidate ordering {self.candidate_ordering}")
        if self.reference_policy not in (REFERENCE_EXACT, REFERENCE_FUZZY, REFERENCE_IGNORE):
            raise ValueError(f"unknown reference policy {self.reference_policy}")
        if not 0.0 <= self.plausible_floor <= self.auto_threshold <= 1.0:
            raise ValueError("expected 0 <= plausible_floor <= auto_threshold <= 1")

    @classmethod
    def from_settings(cls, settings) -> "MatchPolicy":
        return cls(
            auto_threshold=settings.auto_settle_threshold,
            plausible_floor=settings.plausible_confidence_floor,
            lookback_seconds=settings.match_lookback_seconds,
            clock_skew_seconds=settings.match_clock_skew_seconds,
            candidate_ordering=settings.match_candidate_ordering,
            reference_policy=settings.reference_match_policy,
            reference_similarity=settings.reference_similarity_threshold,
        )


@dataclass(frozen=True)
class AutoSettle:
    payment_id: str
    name = "auto_settle"


@dataclass(frozen=True)
class ManualReview:
    candidate_ids: tuple[str, ...] = field(default_factory=tuple)
    reason: str = ""
    name = "manual_review"


@dataclass(frozen=True)
class NoCandidate:
    name = "no_candidate"


MatchDecision = AutoSettle | ManualReview | NoCandidate


def normalize_reference(value: str | None) -> str:
    return re.sub(r"[^A-Z0-9]", "", (value or "").upper())


def references_match(expected: str | None, actual: str | None, policy: MatchPolicy) -> bool:
    """True when the payment's expected reference is absent or agrees with the SMS."""

    if policy.reference_policy == REFERENCE_IGNORE:
        return True
    expected_norm = normalize_reference(expected)
    if not expected_norm:
        return True
    actual_norm = normalize_reference(actual)
    if not actual_norm:
        return False
    if expected_norm == actual_norm:
        return True
    if policy.reference_policy == REFERENCE_FUZZY:
        return SequenceMatcher(None, expected_norm, actual_norm).ratio() >= policy.reference_similarity
    return False


def rank_candidates(candidates: list[Payment], received_at: datetime, ordering: str) -> list[Payment]:
    """Deterministic order; ties always fall back to payment id."""

    received_at = as_utc(received_at)
    if ordering == ORDER_BY_PROXIMITY:
        return sorted(candidates, key=lambda p: (abs((as_utc(p.created_at) - received_at).total_seconds()), p.id))
    return sorted(candidates, key=lambda p: (as_utc(p.created_at), p.id))


class Matcher:
    """Reconciles one parsed SMS against pending payments."""

    def __init__(self, policy: MatchPolicy | None = None) -> None:
        self.policy = policy or MatchPolicy()

    def find_candidates(self, db, amount: int, received_at: datetime, currency: str | None = None) -> list[Payment]:
        """Open payments of `amount` (and `currency`, when given) inside the receipt window."""

        received_at = as_utc(received_at)
        window_start = received_at - timedelta(seconds=self.policy.lookback_seconds)
        window_end = received_at + timedelta(seconds=self.policy.clock_skew_seconds)
        rows = db.execute(
            select(Payment).where(
                Payment.status == PAYMENT_PENDING,
                Payment.parsed_sms_id.is_(None),
                Payment.amount == amount,
                Payment.created_at >= window_start,
                Payment.created_at <= window_end,
                *([Payment.currency == currency.upper()] if currency else []),
            )
        ).scalars()
        return rank_candidates(list(rows), received_at, self.policy.candidate_ordering)

    def decide(self, confidence: float, reference: str | None, candidates: list[Payment]) -> MatchDecision:
        """Pure decision over an already-ranked candidate list."""

        ids = tuple(p.id for p in candidates)
        if len(candidates) == 1:
            candidate = candidates[0]
            expected = (candidate.meta or {}).get("expected_reference")
            if not references_match(expected, reference, self.policy):
                return ManualReview(ids, reason="reference_mismatch")
            if confidence >= self.policy.auto_threshold:
                return AutoSettle(candidate.id)
            return ManualReview(ids, reason="low_confidence")
        if len(candidates) > 1:
            return ManualReview(ids, reason="multiple_candidates")
        if confidence >= self.policy.plausible_floor:
            return ManualReview((), reason="no_candidate_plausible")
        return NoCandidate()

    def reconcile(self, db, parsed, received_at: datetime) -> MatchDecision:
        if parsed.amount is None:
            return NoCandidate()
        currency = parsed.currency or settings.default_currency
        candidates = self.find_candidates(db, parsed.amount, received_at, currency)
        return self.decide(parsed.confidence, parsed.reference, candidates)
