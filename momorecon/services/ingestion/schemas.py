"""Request/response schemas for the SMS webhook."""

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class SmsInboundRequest(BaseModel):
    """Carrier/modem delivery; accepts snake_case and camelCase keys."""

    model_config = ConfigDict(populate_by_name=True)

    text: str
    from_address: str = Field(validation_alias=AliasChoices("from_address", "fromAddress"))
    to_address: str | None = Field(default=None, validation_alias=AliasChoices("to_address", "toAddress"))
    received_at: datetime | None = Field(default=None, validation_alias=AliasChoices("received_at", "receivedAt"))
    metadata: dict[str, Any] = Field(default_factory=dict)


class SmsInboundResponse(BaseModel):
    sms_id: str
    status: str
    duplicate: bool
