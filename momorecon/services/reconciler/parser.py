"""SMS parser: carrier templates first, external classifier as an aid.

Rule extraction is always run. When a classifier is configured it is asked
through the `sms-classifier` breaker and its verdict is merged with the rule
result; when the breaker is open or the call fails the parser returns the rule
result with a confidence penalty and `degraded=True`. Parsing never raises for
bad text: an SMS without an amount comes back with `amount=None` and
confidence 0.
"""

import re
from dataclasses import dataclass, replace

import httpx

from momorecon.common.circuit_breaker import (
    CLASSIFIER_BREAKER,
    CircuitBreaker,
    CircuitBreakerOpenError,
    CircuitBreakerTimeoutError,
)
from momorecon.common.logging import logger
from momorecon.services.reconciler.classifier import ClassifierClient, ClassifierVerdict


RULES_VERSION = "rules-3"

TEMPLATE_CONFIDENCE = 0.92
FALLBACK_CONFIDENCE = 0.45
FALLBACK_WITH_REFERENCE_CONFIDENCE = 0.55
DISAGREEMENT_FACTOR = 0.5

_AMOUNT = r"(?P<amount>\d[\d,. ]*\d|\d)"
_CURRENCY = r"(?P<currency>RWF|FRW|UGX|KES|TZS)"
_PAYER = r"(?P<payer>\+?[0-9xX*]{6,15})"
_REFERENCE = r"(?P<reference>[A-Za-z0-9][A-Za-z0-9-]{2,})"

CURRENCY_ALIASES = {"FRW": "RWF"}

PHONE_NUMBER = re.compile(r"(?<![\dA-Za-z])(?:\+?250|0)?7\d{8}(?!\d)")
_FALLBACK_AMOUNTS = (
    re.compile(_AMOUNT + r"\s*" + _CURRENCY, re.IGNORECASE),
    re.compile(_CURRENCY + r"\s*" + _AMOUNT, re.IGNORECASE),
)
_FALLBACK_REFERENCE = re.compile(
    r"\b(?:Ref(?:erence)?|TxId|TID|Transaction Id|Financial Transaction Id)\s*[:#.]?\s*" + _REFERENCE,
    re.IGNORECASE,
)


@dataclass(frozen=True)
class CarrierTemplate:
    name: str
    pattern: re.Pattern
    confidence: float = TEMPLATE_CONFIDENCE


CARRIER_TEMPLATES: tuple[CarrierTemplate, ...] = (
    # You have received 15000 RWF from 0788xxxxxx Ref: TXA123
    CarrierTemplate(
        "mtn_received",
        re.compile(
            r"You have received\s+" + _AMOUNT + r"\s*" + _CURRENCY + r"\s+from\s+" + _PAYER
            + r"(?:\s*\([^)]*\))?[.,]?\s+Ref(?:erence)?\s*[:#]\s*" + _REFERENCE,
            re.IGNORECASE,
        ),
    ),
    # *165*R*You have received 5000 RWF from JOHN DOE (*********123) on your mobile money
    # account at 2024-05-01 10:00:00 ... Financial Transaction Id: 9876543210.
    CarrierTemplate(
        "mtn_momo_credit",
        re.compile(
            r"received\s+" + _AMOUNT + r"\s*" + _CURRENCY + r"\s+from\s+[^()]*\(" + _PAYER + r"\)"
            + r".*?Financial Transaction Id\s*:\s*" + _REFERENCE,
            re.IGNORECASE | re.DOTALL,
        ),
    ),
    # You have received RWF 15,000 from 0733xxxxxx. TID: AB12CD. Bal: RWF 20,000
    CarrierTemplate(
        "airtel_received",
        re.compile(
            r"received\s+" + _CURRENCY + r"\s*" + _AMOUNT + r"\s+from\s+" + _PAYER
            + r"[^.]*\.\s*(?:TID|Trans(?:action)?\s?ID)\s*[:#]?\s*" + _REFERENCE,
            re.IGNORECASE,
        ),
    ),
)


@dataclass(frozen=True)
class ParseResult:
    amount: int | None
    currency: str | None
    reference: str | None
    payer_mask: str | None
    confidence: float
    parser: str
    parser_version: str = RULES_VERSION
    degraded: bool = False

    @property
    def parsed(self) -> bool:
        return self.amount is not None


UNPARSED = ParseResult(None, None, None, None, 0.0, "none")


def parse_amount(raw: str) -> int | None:
    """`15000`, `15,000`, `15.000`, `15 000` and `15,000.00` all mean 15000."""

    value = raw.replace(" ", "").strip(".,")
    match = re.fullmatch(r"(\d+(?:[.,]\d{3})*)(?:[.,]\d{1,2})?", value)
    if match is None:
        return None
    amount = int(re.sub(r"\D", "", match.group(1)))
    return amount if amount > 0 else None


def mask_msisdn(value: str | None) -> str | None:
    """Keep carrier masks; otherwise hide all but the last three digits."""

    if not value:
        return None
    value = value.strip()
    if "*" in value or "x" in value.lower():
        return value
    digits = re.sub(r"\D", "", value)
    if len(digits) < 6:
        return None
    return "*" * (len(digits) - 3) + digits[-3:]


def redact(text: str) -> str:
    """Mask phone numbers before text leaves the process."""

    return PHONE_NUMBER.sub(lambda m: mask_msisdn(m.group(0)) or "***", text)


def _currency(raw: str | None, default: str) -> str:
    if not raw:
        return default
    raw = raw.upper()
    return CURRENCY_ALIASES.get(raw, raw)


class SmsParser:
    """Extracts amount, currency, reference and payer from carrier SMS."""

    def __init__(
        self,
        classifier: ClassifierClient | None = None,
        breaker: CircuitBreaker | None = None,
        templates: tuple[CarrierTemplate, ...] = CARRIER_TEMPLATES,
        default_currency: str = "RWF",
        classifier_only_cap: float = 0.85,
        degraded_penalty: float = 0.15,
    ) -> None:
        if classifier is not None and breaker is None:
            raise ValueError(f"classifier calls require the {CLASSIFIER_BREAKER} breaker")
        self.classifier = classifier
        self.breaker = breaker
        self.templates = templates
        self.default_currency = default_currency
        self.classifier_only_cap = classifier_only_cap
        self.degraded_penalty = degraded_penalty

    @classmethod
    def from_settings(cls, settings, registry) -> "SmsParser":
        classifier = ClassifierClient.from_settings(settings)
        return cls(
            classifier=classifier,
            breaker=registry.get(CLASSIFIER_BREAKER) if classifier is not None else None,
            default_currency=settings.default_currency,
            classifier_only_cap=settings.classifier_only_confidence_cap,
            degraded_penalty=settings.degraded_confidence_penalty,
        )

    def extract(self, text: str, sender: str | None = None) -> ParseResult:
        """Rule-only extraction."""

        text = " ".join(text.split())
        for template in self.templates:
            match = template.pattern.search(text)
            if match is None:
                continue
            amount = parse_amount(match.group("amount"))
            if amount is None:
                continue
            return ParseResult(
                amount=amount,
                currency=_currency(match.group("currency"), self.default_currency),
                reference=match.group("reference"),
                payer_mask=mask_msisdn(match.group("payer")) or mask_msisdn(sender),
                confidence=template.confidence,
                parser=f"template:{template.name}",
            )

        for pattern in _FALLBACK_AMOUNTS:
            match = pattern.search(text)
            if match is None:
                continue
            amount = parse_amount(match.group("amount"))
            if amount is None:
                continue
            ref_match = _FALLBACK_REFERENCE.search(text)
            reference = ref_match.group("reference") if ref_match else None
            return ParseResult(
                amount=amount,
                currency=_currency(match.group("currency"), self.default_currency),
                reference=reference,
                payer_mask=mask_msisdn(sender),
                confidence=FALLBACK_WITH_REFERENCE_CONFIDENCE if reference else FALLBACK_CONFIDENCE,
                parser="fallback",
            )
        return UNPARSED

    def _merge(self, rule: ParseResult, verdict: ClassifierVerdict, version: str) -> ParseResult:
        if verdict.amount is None:
            return replace(rule, parser_version=version)
        if rule.amount is None:
            return ParseResult(
                amount=verdict.amount,
                currency=_currency(verdict.currency, self.default_currency),
                reference=verdict.reference,
                payer_mask=mask_msisdn(verdict.payer_mask),
                confidence=min(verdict.confidence, self.classifier_only_cap),
                parser="classifier",
                parser_version=version,
            )
        if verdict.amount == rule.amount:
            return replace(
                rule,
                reference=rule.reference or verdict.reference,
                payer_mask=rule.payer_mask or mask_msisdn(verdict.payer_mask),
                confidence=max(rule.confidence, verdict.confidence),
                parser=f"{rule.parser}+classifier",
                parser_version=version,
            )
        logger.warning("classifier_disagrees rule_amount=%s classifier_amount=%s", rule.amount, verdict.amount)
        return replace(rule, confidence=round(rule.confidence * DISAGREEMENT_FACTOR, 4), parser_version=version)

    async def classify(self, text: str, sender: str | None, prompt_body: str | None, prompt_version) -> ParseResult:
        rule = self.extract(text, sender)
        if self.classifier is None:
            return rule
        version = f"{RULES_VERSION}+classifier-p{prompt_version}" if prompt_version else f"{RULES_VERSION}+classifier"
        redacted = redact(text)
        try:
            verdict = await self.breaker.execute(lambda: self.classifier.classify(redacted, prompt_body))
        except (CircuitBreakerOpenError, CircuitBreakerTimeoutError, httpx.HTTPError, ValueError) as exc:
            logger.warning("classifier_unavailable degraded=true error=%s", exc)
            if not rule.parsed:
                return replace(rule, degraded=True)
            return replace(
                rule,
                confidence=round(max(0.0, rule.confidence - self.degraded_penalty), 4),
                degraded=True,
            )
        return self._merge(rule, verdict, version)

    async def parse(self, record, prompt=None) -> ParseResult:
        """Parse a stored raw SMS, optionally guided by the active prompt."""

        return await self.classify(
            record.text,
            record.from_address,
            prompt.body if prompt is not None else None,
            prompt.version if prompt is not None else None,
        )

    async def parse_sample(self, text: str, prompt_body: str | None = None) -> ParseResult:
        """Admin dry run against arbitrary text; nothing is stored."""

        return await self.classify(text, None, prompt_body, None)
