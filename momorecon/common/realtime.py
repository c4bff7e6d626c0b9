"""Best-effort realtime events for the operator dashboard (Redis pub/sub).

Publishing never blocks the pipeline: failures are logged and dropped.
"""

import json
from datetime import datetime, timezone

import redis

from momorecon.common.logging import logger


REALTIME_CHANNEL = "momorecon:realtime"


class RealtimeNotifier:
    """Publishes small JSON notices that admin dashboards subscribe to."""

    def __init__(self, client: redis.Redis | None = None, channel: str = REALTIME_CHANNEL) -> None:
        self.client = client
        self.channel = channel

    @classmethod
    def from_url(cls, url: str) -> "RealtimeNotifier":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def publish(self, event_type: str, payload: dict) -> None:
        if self.client is None:
            return
        message = {"type": event_type, "at": datetime.now(timezone.utc).isoformat(), **payload}
        try:
            self.client.publish(self.channel, json.dumps(message, default=str))
        except Exception as exc:
            logger.warning("realtime_publish_failed type=%s error=%s", event_type, exc)

    def sms_received(self, sms_id: str, from_address: str, received_at: datetime) -> None:
        self.publish("sms.received", {"sms_id": sms_id, "from": from_address, "received_at": received_at})

    def manual_review_required(self, sms_id: str, amount: int | None, lane: str) -> None:
        self.publish("sms.manual_review", {"sms_id": sms_id, "amount": amount, "lane": lane})

    def payment_confirmed(self, payment_id: str, kind: str, sms_id: str) -> None:
        self.publish("payment.confirmed", {"payment_id": payment_id, "kind": kind, "sms_id": sms_id})
