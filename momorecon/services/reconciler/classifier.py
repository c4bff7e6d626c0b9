"""HTTP client for the external SMS classification service.

Contract: `POST {CLASSIFIER_URL}` with `{"text", "prompt"}` returns
`{"amount", "currency", "reference", "payer_mask", "confidence"}`. The client
never sees raw phone numbers; callers redact text first. Calls are always made
through the `sms-classifier` circuit breaker by the parser.
"""

from dataclasses import dataclass

import httpx

from momorecon.common.config import settings


class ClassifierError(ValueError):
    """Classifier answered with something that is not a usable verdict."""


@dataclass(frozen=True)
class ClassifierVerdict:
    amount: int | None
    currency: str | None
    reference: str | None
    payer_mask: str | None
    confidence: float


def _as_amount(value) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ClassifierError("amount must be numeric")
    try:
        amount = int(float(str(value).replace(",", "")))
    except (ValueError, OverflowError, TypeError) as exc:
        raise ClassifierError(f"amount not numeric: {value!r}") from exc
    if amount <= 0:
        return None
    return amount


def parse_verdict(body) -> ClassifierVerdict:
    if not isinstance(body, dict):
        raise ClassifierError("classifier response must be a JSON object")
    try:
        confidence = float(body.get("confidence") or 0.0)
    except (TypeError, ValueError) as exc:
        raise ClassifierError("confidence not numeric") from exc
    currency = body.get("currency")
    return ClassifierVerdict(
        amount=_as_amount(body.get("amount")),
        currency=str(currency).upper() if currency else None,
        reference=body.get("reference") or None,
        payer_mask=body.get("payer_mask") or None,
        confidence=min(1.0, max(0.0, confidence)),
    )


class ClassifierClient:
    """Thin httpx wrapper; timeouts here back up the breaker's own timer."""

    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds or settings.classifier_timeout_ms / 1000.0 + 1.0
        self.transport = transport

    @classmethod
    def from_settings(cls, settings) -> "ClassifierClient | None":
        if not settings.classifier_url:
            return None
        return cls(settings.classifier_url, api_key=settings.classifier_api_key)

    async def classify(self, text: str, prompt: str | None = None) -> ClassifierVerdict:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            resp = await client.post(self.url, json={"text": text, "prompt": prompt}, headers=headers)
        resp.raise_for_status()
        return parse_verdict(resp.json())
