"""Async load generator for the wallet bet endpoint.

Obtains one access token through the authorization-code flow, then fires
concurrent bets against that single user to exercise per-user serialization.
"""

import argparse
import asyncio
import random
import statistics
import time
from urllib.parse import parse_qs, urlsplit
from uuid import uuid4

import httpx


async def obtain_token(client: httpx.AsyncClient, args) -> str:
    """Log in a seeded player and exchange the code for an access token."""

    params = {"response_type": "code", "client_id": args.client_id, "redirect_uri": args.redirect_uri}
    resp = await client.post(
        f"{args.base_url}/oauth2.0/authorize",
        params=params,
        data={"username": args.username, "password": args.password},
    )
    if resp.status_code != 302:
        raise SystemExit(f"authorize failed status={resp.status_code} body={resp.text}")
    code = parse_qs(urlsplit(resp.headers["location"]).query)["code"][0]
    resp = await client.post(
        f"{args.base_url}/oauth2.0/token",
        data={
            "grant_type": "authorization_code",
            "code": code,
            "client_id": args.client_id,
            "client_secret": args.client_secret,
        },
    )
    resp.raise_for_status()
    return resp.json()["access_token"]


async def send_one(client: httpx.AsyncClient, base_url: str, token: str):
    """Send one bet and return (status_code, latency_ms)."""

    started = time.perf_counter()
    payload = {
        "txId": str(uuid4()),
        "tableId": "load.t1",
        "gameType": "BACCARAT",
        "bets": [{"betType": "PLAYER", "betAmount": random.randint(1, 5)}],
    }
    try:
        resp = await client.post(f"{base_url}/bet", json=payload, headers={"authorization": f"Bearer {token}"})
        latency = (time.perf_counter() - started) * 1000
        return resp.status_code, latency
    except httpx.HTTPError:
        latency = (time.perf_counter() - started) * 1000
        return 599, latency


async def run(args) -> None:
    """Execute a bounded-concurrency load run and print summary stats."""

    sem = asyncio.Semaphore(args.concurrency)
    results = []

    async with httpx.AsyncClient(timeout=10.0) as client:
        token = await obtain_token(client, args)

        async def worker():
            async with sem:
                return await send_one(client, args.base_url, token)

        tasks = [asyncio.create_task(worker()) for _ in range(args.total)]
        for task in asyncio.as_completed(tasks):
            results.append(await task)

    codes = [c for c, _ in results]
    lats = sorted(latency for _, latency in results)
    success = sum(1 for c in codes if 200 <= c < 300)
    errors = args.total - success

    def pct(values, p):
        if not values:
            return 0.0
        idx = min(len(values) - 1, max(0, int((p / 100.0) * len(values)) - 1))
        return values[idx]

    print(f"total={args.total}")
    print(f"success={success}")
    print(f"errors={errors}")
    print(f"error_rate={(errors / args.total) * 100:.2f}%")
    print(f"p50_ms={pct(lats, 50):.2f}")
    print(f"p95_ms={pct(lats, 95):.2f}")
    print(f"p99_ms={pct(lats, 99):.2f}")
    print(f"avg_ms={statistics.mean(lats):.2f}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--total", type=int, default=1000)
    parser.add_argument("--concurrency", type=int, default=50)
    parser.add_argument("--base-url", default="http://localhost:3030/vlatest")
    parser.add_argument("--client-id", default="1")
    parser.add_argument("--client-secret", default="1")
    parser.add_argument("--redirect-uri", default="http://localhost/lobby")
    parser.add_argument("--username", default="player1@example.com")
    parser.add_argument("--password", default="casino")
    asyncio.run(run(parser.parse_args()))
