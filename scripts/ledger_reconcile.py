"""Fetch and print the payment/ledger reconciliation report JSON."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for reconciliation checks."""

    parser = argparse.ArgumentParser(description="Fetch the ledger reconciliation report endpoint.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="dev-secret")
    parser.add_argument("--limit", type=int, default=1000)
    parser.add_argument(
        "--fail-on-missing",
        action="store_true",
        help="Exit non-zero when completed payments lack a ledger entry",
    )
    args = parser.parse_args()

    resp = httpx.get(
        f"{args.base_url}/ops/ledger/reconciliation",
        params={"limit": args.limit},
        headers={"x-api-key": args.api_key},
        timeout=10.0,
    )
    resp.raise_for_status()
    report = resp.json()
    print(json.dumps(report, indent=2))
    if args.fail_on_missing and report.get("missing_count"):
        raise SystemExit(1)


if __name__ == "__main__":
    main()
