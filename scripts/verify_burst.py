"""Fire concurrent verify polls for one txRef and summarize the outcomes.

Every response should report the same status, and at most one should report
`settled`; the rest are `already_processed`.
"""

import argparse
import asyncio
import statistics
import time
from collections import Counter

import httpx


async def poll_once(client: httpx.AsyncClient, base_url: str, tx_ref: str):
    """Send one verify poll and return (status_code, outcome, latency_ms)."""

    started = time.perf_counter()
    try:
        resp = await client.get(f"{base_url}/api/payments/verify", params={"txRef": tx_ref})
        latency = (time.perf_counter() - started) * 1000
        body = resp.json()
        outcome = (body.get("data") or {}).get("outcome") or body.get("error") or "unknown"
        return resp.status_code, outcome, latency
    except Exception:
        latency = (time.perf_counter() - started) * 1000
        return 599, "transport_error", latency


async def run(total: int, concurrency: int, base_url: str, tx_ref: str):
    """Execute a bounded-concurrency poll burst and print summary stats."""

    sem = asyncio.Semaphore(concurrency)
    results = []

    async with httpx.AsyncClient(timeout=15.0) as client:
        async def worker():
            async with sem:
                return await poll_once(client, base_url, tx_ref)

        tasks = [asyncio.create_task(worker()) for _ in range(total)]
        for task in asyncio.as_completed(tasks):
            results.append(await task)

    codes = Counter(code for code, _, _ in results)
    outcomes = Counter(outcome for _, outcome, _ in results)
    lats = [latency for _, _, latency in results]
    print(f"total={total}")
    print(f"status_codes={dict(codes)}")
    print(f"outcomes={dict(outcomes)}")
    print(f"avg_ms={statistics.mean(lats):.2f}")
    print(f"max_ms={max(lats):.2f}")
    if outcomes.get("settled", 0) > 1:
        raise SystemExit("more than one poll settled the payment")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--tx-ref", required=True)
    parser.add_argument("--total", type=int, default=50)
    parser.add_argument("--concurrency", type=int, default=25)
    parser.add_argument("--base-url", default="http://localhost:8000")
    args = parser.parse_args()
    asyncio.run(run(args.total, args.concurrency, args.base_url, args.tx_ref))
