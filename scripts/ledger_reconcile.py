"""Fetch and print the ledger verification and open discrepancy reports as JSON."""

import argparse
import json
import sys

import httpx


def main() -> int:
    """CLI entrypoint for reconciliation checks against the ops API."""

    parser = argparse.ArgumentParser(description="Fetch ledger verification and open discrepancies.")
    parser.add_argument("--api-url", default="http://localhost:8000")
    parser.add_argument("--limit", type=int, default=1000)
    args = parser.parse_args()

    with httpx.Client(base_url=args.api_url, timeout=10.0) as client:
        verify = client.get("/ledger/verify", params={"limit": args.limit})
        verify.raise_for_status()
        open_items = client.get("/reconciliation/discrepancies", params={"status": "open", "limit": args.limit})
        open_items.raise_for_status()

    report = {"ledger": verify.json(), "open_discrepancies": open_items.json()}
    print(json.dumps(report, indent=2))
    return 0 if report["ledger"]["balanced"] and not report["open_discrepancies"]["count"] else 1


if __name__ == "__main__":
    sys.exit(main())
