"""Admin API request/response schemas."""

from datetime import datetime
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class PaymentResponse(BaseModel):
    """Payment as shown to operators."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: str
    amount: int
    currency: str
    status: str
    created_at: datetime
    confirmed_at: datetime | None = None
    failure_reason: str | None = None


class ParsedSmsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    amount: int | None
    currency: str | None
    reference: str | None
    payer_mask: str | None
    confidence: float
    parser_version: str
    degraded: bool
    match_decision: str | None = None


class RawSmsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    text: str
    from_address: str
    to_address: str | None
    received_at: datetime
    ingest_status: str
    review_lane: str | None


class ReviewItemResponse(BaseModel):
    sms: RawSmsResponse
    parsed: ParsedSmsResponse | None
    candidates: list[PaymentResponse]


class AttachRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_id: str = Field(min_length=1, validation_alias=AliasChoices("payment_id", "paymentId"))


class DismissRequest(BaseModel):
    resolution: Literal["ignore", "linked_elsewhere", "duplicate"]
    note: str | None = Field(default=None, max_length=2000)


class ResolutionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sms_id: str
    resolution: str
    note: str | None
    resolved_by: str
    resolved_at: datetime


class RematchResponse(BaseModel):
    decision: str
    candidate_payment_ids: list[str]
    payment_id: str | None = None


class PaymentActionRequest(BaseModel):
    """Reason recorded with an operator fail / reverse."""

    reason: str = Field(min_length=1, max_length=500)


class PromptCreateRequest(BaseModel):
    label: str = Field(min_length=1, max_length=200)
    body: str = Field(min_length=1)
    activate: bool = False


class PromptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    label: str
    body: str
    version: int
    is_active: bool
    created_by: str | None
    created_at: datetime


class ParserTestRequest(BaseModel):
    text: str = Field(min_length=1)
    prompt_body: str | None = None


class ParserTestResponse(BaseModel):
    amount: int | None
    currency: str | None
    reference: str | None
    payer_mask: str | None
    confidence: float
    parser: str
    parser_version: str
    degraded: bool


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    action: str
    entity_type: str
    entity_id: str
    before: dict | None
    after: dict | None
    actor_id: str
    at: datetime
