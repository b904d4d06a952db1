"""Sign and post a gateway webhook to the payments service.

Useful for manual duplicate-delivery and bad-signature testing.
"""

import argparse
import json
from pathlib import Path

import httpx

from storepay.services.payments.webhook import sign_body


def main() -> None:
    """Parse CLI args, sign the JSON body, and post it `--repeat` times."""

    parser = argparse.ArgumentParser(description="Post a signed gateway webhook.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--secret", required=True, help="Shared webhook secret")
    parser.add_argument("--header", default="x-provider-signature")
    parser.add_argument("--json", dest="json_inline", default=None, help="Inline JSON payload")
    parser.add_argument("--file", dest="json_file", default=None, help="Path to JSON file")
    parser.add_argument("--repeat", type=int, default=1, help="Deliver the same body N times")
    parser.add_argument("--bad-signature", action="store_true", help="Send a signature that will not match")
    args = parser.parse_args()

    if bool(args.json_inline) == bool(args.json_file):
        raise SystemExit("Provide exactly one of --json or --file")

    if args.json_inline:
        payload = json.loads(args.json_inline)
    else:
        payload = json.loads(Path(args.json_file).read_text())

    raw_body = json.dumps(payload).encode("utf-8")
    signature = "0" * 64 if args.bad_signature else sign_body(raw_body, args.secret)
    with httpx.Client(timeout=10.0) as client:
        for attempt in range(1, args.repeat + 1):
            resp = client.post(
                f"{args.base_url}/api/webhooks/gateway",
                content=raw_body,
                headers={"content-type": "application/json", args.header: signature},
            )
            print(f"attempt={attempt} status_code={resp.status_code} body={resp.text}")


if __name__ == "__main__":
    main()
