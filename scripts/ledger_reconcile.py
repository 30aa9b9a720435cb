"""Fetch and print the wallet reconciliation report JSON."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for reconciliation checks."""

    parser = argparse.ArgumentParser(description="Fetch wallet reconciliation report endpoint.")
    parser.add_argument("--base-url", default="http://localhost:3030/vlatest")
    parser.add_argument("--api-key", default="dev-secret")
    parser.add_argument("--username", default=None, help="Reconcile one user instead of all")
    parser.add_argument("--limit", type=int, default=1000)
    args = parser.parse_args()

    url = f"{args.base_url}/internal/reconciliation"
    if args.username:
        url = f"{url}/{args.username}"
    resp = httpx.get(url, params={"limit": args.limit}, headers={"x-api-key": args.api_key}, timeout=10.0)
    resp.raise_for_status()
    report = resp.json()
    print(json.dumps(report, indent=2))
    if report.get("imbalancedCount") or report.get("balanced") is False:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
