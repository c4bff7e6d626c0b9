"""Async load generator for the SMS webhook.

Every `--duplicate-every`th delivery repeats an earlier SMS so the run also
exercises redelivery deduplication.
"""

import argparse
import asyncio
import random
import statistics
import time
from datetime import datetime, timezone

import httpx


def carrier_text(idx: int) -> str:
    amount = random.choice([2000, 5000, 10000, 15000, 25000])
    return f"You have received {amount} RWF from 0788xxxxxx Ref: LT{idx:06d}"


async def send_one(client: httpx.AsyncClient, base_url: str, token: str, body: dict):
    """Send one delivery and return (status_code, duplicate, latency_ms)."""

    started = time.perf_counter()
    try:
        resp = await client.post(f"{base_url}/sms/inbound", json=body, headers={"x-sms-webhook-token": token})
        latency = (time.perf_counter() - started) * 1000
        duplicate = resp.status_code == 200 and resp.json().get("duplicate", False)
        return resp.status_code, duplicate, latency
    except httpx.HTTPError:
        latency = (time.perf_counter() - started) * 1000
        return 599, False, latency


async def run(total: int, concurrency: int, base_url: str, token: str, duplicate_every: int):
    """Execute a bounded-concurrency load run and print summary stats."""

    received_at = datetime.now(timezone.utc).isoformat()
    bodies = []
    for i in range(total):
        if duplicate_every and i and i % duplicate_every == 0:
            bodies.append(dict(random.choice(bodies)))
            continue
        bodies.append({"text": carrier_text(i), "from_address": "M-Money", "received_at": received_at})

    sem = asyncio.Semaphore(concurrency)
    results = []

    async with httpx.AsyncClient(timeout=10.0) as client:
        async def worker(body: dict):
            async with sem:
                return await send_one(client, base_url, token, body)

        tasks = [asyncio.create_task(worker(body)) for body in bodies]
        for task in asyncio.as_completed(tasks):
            results.append(await task)

    codes = [c for c, _, _ in results]
    lats = sorted(latency for _, _, latency in results)
    success = sum(1 for c in codes if c == 200)
    duplicates = sum(1 for _, dup, _ in results if dup)

    def pct(values, p):
        if not values:
            return 0.0
        idx = min(len(values) - 1, max(0, int((p / 100.0) * len(values)) - 1))
        return values[idx]

    print(f"total={total}")
    print(f"success={success}")
    print(f"duplicates={duplicates}")
    print(f"errors={total - success}")
    print(f"p50_ms={pct(lats, 50):.2f}")
    print(f"p95_ms={pct(lats, 95):.2f}")
    print(f"p99_ms={pct(lats, 99):.2f}")
    print(f"avg_ms={statistics.mean(lats):.2f}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--total", type=int, default=500)
    parser.add_argument("--concurrency", type=int, default=50)
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--token", default="")
    parser.add_argument("--duplicate-every", type=int, default=5)
    args = parser.parse_args()
    asyncio.run(run(args.total, args.concurrency, args.base_url, args.token, args.duplicate_every))
