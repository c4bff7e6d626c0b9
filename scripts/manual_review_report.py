"""Print the manual review worklist (or triage lane) as JSON."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for a quick look at the review queue."""

    parser = argparse.ArgumentParser(description="Fetch the manual review queue from the admin API.")
    parser.add_argument("--admin-url", default="http://localhost:8003")
    parser.add_argument("--session", required=True, help="X-Admin-Session token")
    parser.add_argument("--lane", choices=["worklist", "triage"], default="worklist")
    parser.add_argument("--limit", type=int, default=50)
    args = parser.parse_args()

    resp = httpx.get(
        f"{args.admin_url}/admin/sms/manual",
        params={"limit": args.limit, "lane": args.lane},
        headers={"X-Admin-Session": args.session},
        timeout=10.0,
    )
    resp.raise_for_status()
    items = resp.json()
    summary = [
        {
            "sms_id": item["sms"]["id"],
            "received_at": item["sms"]["received_at"],
            "amount": (item["parsed"] or {}).get("amount"),
            "confidence": (item["parsed"] or {}).get("confidence"),
            "candidates": [c["id"] for c in item["candidates"]],
        }
        for item in items
    ]
    print(json.dumps(summary, indent=2))


if __name__ == "__main__":
    main()
