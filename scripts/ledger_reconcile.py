"""Fetch and print the ledger balance-chain reconciliation report."""

import argparse
import json
import os

import httpx


def main() -> None:
    """CLI entrypoint for reconciliation checks."""

    parser = argparse.ArgumentParser(description="Verify balance_after chains through the ledger service.")
    parser.add_argument("--ledger-url", default="http://localhost:8004")
    parser.add_argument("--api-key", default=os.getenv("API_KEY", ""))
    parser.add_argument("--user-id", default=None, help="Check a single user instead of the global report")
    parser.add_argument("--limit", type=int, default=1000)
    args = parser.parse_args()

    headers = {"x-api-key": args.api_key}
    if args.user_id:
        resp = httpx.get(f"{args.ledger_url}/reconciliation/{args.user_id}", headers=headers, timeout=10.0)
    else:
        resp = httpx.get(
            f"{args.ledger_url}/reconciliation", params={"limit": args.limit}, headers=headers, timeout=10.0
        )
    resp.raise_for_status()
    report = resp.json()
    print(json.dumps(report, indent=2, ensure_ascii=False))
    if report.get("inconsistent_count") or report.get("consistent") is False:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
