"""Publish an `sms.received` envelope for an already stored SMS.

Useful for manual duplicate-event testing: the reconciler must skip any
redelivery of an event it already consumed, and must not re-process an SMS
that has left the `received` state.
"""

import argparse
import asyncio
import json
from datetime import datetime, timezone
from uuid import uuid4

from aiokafka import AIOKafkaProducer


async def publish(bootstrap_servers: str, topic: str, payload: dict) -> None:
    """Open producer, publish one message, close producer."""

    producer = AIOKafkaProducer(bootstrap_servers=bootstrap_servers)
    await producer.start()
    try:
        await producer.send_and_wait(topic, json.dumps(payload).encode("utf-8"))
    finally:
        await producer.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Publish an sms.received event for one stored SMS.")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--sms-id", required=True)
    parser.add_argument("--event-id", default=None, help="Reuse an event id to simulate a redelivery")
    args = parser.parse_args()

    envelope = {
        "event_id": args.event_id or str(uuid4()),
        "event_type": "sms.received",
        "aggregate_id": args.sms_id,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "trace_id": str(uuid4()),
        "payload": {"sms_id": args.sms_id},
    }
    asyncio.run(publish(args.bootstrap_servers, "sms.received", envelope))
    print(f"Published event_id={envelope['event_id']} sms_id={args.sms_id}")


if __name__ == "__main__":
    main()
