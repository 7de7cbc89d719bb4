#!/usr/bin/env python3
"""
Concurrent buyers against one ticket type, using the MockPay flow.

Each simulated buyer holds one unit, starts a mockpay checkout, emits an
outcome on the hosted mock page and then polls the payment until it leaves
PENDING. When all buyers are done the availability counters are compared
with the PAID count to make sure nothing was oversold.

    python -m boxoffice.load_client --event evt_demo --ticket-type tt_ga \
        --total 200 --concurrency 50 --fail-rate 0.1

The server has to be able to reach its own MOCK_WEBHOOK_URL.
"""

import asyncio
import random
import time
import argparse
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

FINAL = ("PAID", "FAILED", "CANCELLED")
OUTCOMES = FINAL + ("SOLD_OUT", "TIMEOUT", "ERROR")


class _StepFailed(Exception):
    pass


@dataclass
class Result:
    ok: bool
    outcome: str
    t_hold: float = 0.0
    t_checkout: float = 0.0
    # from emit until a final payment status was seen
    t_observed: float = 0.0
    err: Optional[str] = None


def _percentile(values: List[float], p: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    idx = round(p / 100 * (len(ordered) - 1))
    return ordered[min(len(ordered) - 1, max(0, idx))]


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def count(self, outcome: str) -> int:
        return len([r for r in self.results if r.outcome == outcome])

    def summary(self) -> Dict[str, float]:
        resolved = [r.t_observed for r in self.results
                    if r.outcome in FINAL and r.t_observed > 0]
        holds = [r.t_hold for r in self.results if r.t_hold > 0]

        out: Dict[str, float] = {
            "total": len(self.results),
            "ok": len([r for r in self.results if r.ok]),
        }
        for outcome in OUTCOMES:
            out[outcome.lower()] = self.count(outcome)
        out["hold_p50_s"] = _percentile(holds, 50)
        out["hold_p99_s"] = _percentile(holds, 99)
        for p in (50, 90, 99):
            out[f"p{p}_s"] = _percentile(resolved, p)
        out["avg_s"] = sum(resolved) / len(resolved) if resolved else 0.0
        return out

    def report(self, elapsed_s: float) -> str:
        s = self.summary()
        counts = "   ".join(f"{o}: {int(s[o.lower()])}" for o in OUTCOMES)
        lines = [
            "",
            "--- load run ---",
            f"buyers {int(s['total'])}   ok {int(s['ok'])}",
            counts,
            f"hold     p50 {s['hold_p50_s']:.3f}s  p99 {s['hold_p99_s']:.3f}s",
            f"resolve  avg {s['avg_s']:.3f}s  p50 {s['p50_s']:.3f}s  "
            f"p90 {s['p90_s']:.3f}s  p99 {s['p99_s']:.3f}s",
            f"elapsed {elapsed_s:.2f}s  "
            f"({s['total'] / max(elapsed_s, 1e-9):.1f} buyers/s)",
        ]
        return "\n".join(lines)


async def _place_hold(client, base, event_id, ticket_type_id) -> Optional[str]:
    """Returns the hold id, or None when the ticket type is sold out."""
    try:
        resp = await client.post(
            f"{base}/api/holds",
            json={"event_id": event_id,
                  "items": [{"ticket_type_id": ticket_type_id, "qty": 1}]},
            timeout=30.0,
        )
    except httpx.HTTPError as e:
        raise _StepFailed(f"hold: {e}")
    if resp.status_code == 409:
        return None
    if resp.is_error:
        raise _StepFailed(f"hold HTTP {resp.status_code}")
    return resp.json()["hold"]["id"]


async def _start_checkout(client, base, hold_id) -> str:
    try:
        resp = await client.post(
            f"{base}/api/checkout",
            json={"hold_id": hold_id, "provider": "mockpay",
                  "buyer_name": "Load Tester",
                  "buyer_email": f"{uuid.uuid4().hex[:12]}@example.com"},
            timeout=30.0,
        )
        resp.raise_for_status()
        return resp.json()["payment_id"]
    except (httpx.HTTPError, KeyError, ValueError) as e:
        raise _StepFailed(f"checkout: {e}")


async def _emit(client, base, payment_id, kind):
    try:
        resp = await client.post(f"{base}/mockpay/{payment_id}/emit",
                                 json={"kind": kind}, timeout=30.0)
    except httpx.HTTPError as e:
        raise _StepFailed(f"emit: {e}")
    if resp.is_error:
        raise _StepFailed(f"emit HTTP {resp.status_code}")


async def _await_final(client, base, payment_id, interval_s, timeout_s) -> str:
    deadline = time.perf_counter() + timeout_s
    status = "PENDING"
    try:
        while status not in FINAL and time.perf_counter() < deadline:
            resp = await client.get(f"{base}/api/payments/{payment_id}",
                                    timeout=10.0)
            if resp.status_code == 200:
                status = resp.json()["payment"]["status"]
            if status not in FINAL:
                await asyncio.sleep(interval_s)
    except httpx.HTTPError as e:
        raise _StepFailed(f"poll: {e}")
    return status


async def one_purchase(
    client: httpx.AsyncClient,
    base: str,
    event_id: str,
    ticket_type_id: str,
    emit_kind: str,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Result:
    r = Result(ok=False, outcome="ERROR")
    try:
        started = time.perf_counter()
        hold_id = await _place_hold(client, base, event_id, ticket_type_id)
        r.t_hold = time.perf_counter() - started
        if hold_id is None:
            r.ok, r.outcome = True, "SOLD_OUT"
            return r

        started = time.perf_counter()
        payment_id = await _start_checkout(client, base, hold_id)
        r.t_checkout = time.perf_counter() - started

        await _emit(client, base, payment_id, emit_kind)

        started = time.perf_counter()
        status = await _await_final(client, base, payment_id,
                                    poll_interval_s, poll_timeout_s)
        r.t_observed = time.perf_counter() - started
    except _StepFailed as e:
        r.err = str(e)
        return r

    r.ok = True
    r.outcome = status if status in FINAL else "TIMEOUT"
    return r


async def ticket_type_counters(
    client: httpx.AsyncClient, base: str, event_id: str, ticket_type_id: str
) -> Dict[str, Any]:
    resp = await client.get(f"{base}/api/events/{event_id}/availability")
    resp.raise_for_status()
    for row in resp.json()["by_type"]:
        if row["ticket_type_id"] == ticket_type_id:
            return row
    raise SystemExit(f"ticket type {ticket_type_id} not found")


def pick_outcome(fail_rate: float, cancel_rate: float) -> str:
    roll = random.random()
    if roll < fail_rate:
        return "failed"
    if roll < fail_rate + cancel_rate:
        return "canceled"
    return "succeeded"


async def run_load(
    base: str,
    event_id: str,
    ticket_type_id: str,
    total: int,
    concurrency: int,
    fail_rate: float,
    cancel_rate: float,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Stats:
    stats = Stats()
    slots = asyncio.Semaphore(concurrency)
    limits = httpx.Limits(max_connections=concurrency,
                          max_keepalive_connections=concurrency)

    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "BoxOfficeLoad/1.0"}
    ) as client:
        before = await ticket_type_counters(client, base, event_id,
                                            ticket_type_id)

        async def buyer():
            async with slots:
                stats.add(await one_purchase(
                    client, base, event_id, ticket_type_id,
                    pick_outcome(fail_rate, cancel_rate),
                    poll_interval_s, poll_timeout_s,
                ))

        await asyncio.gather(*(buyer() for _ in range(total)))

        after = await ticket_type_counters(client, base, event_id,
                                           ticket_type_id)

    check_oversell(before, after, stats.count("PAID"))
    return stats


def check_oversell(before: Dict[str, Any], after: Dict[str, Any],
                   paid: int) -> bool:
    ok = True
    cap = after["capacity"]
    if cap is not None and after["sold"] + after["held"] > cap:
        print(f"OVERSOLD: sold {after['sold']} + held {after['held']} "
              f"> capacity {cap}")
        ok = False
    sold_delta = after["sold"] - before["sold"]
    if sold_delta != paid:
        print(f"MISMATCH: sold grew by {sold_delta}, {paid} PAID outcomes")
        ok = False
    if ok:
        print(f"Counters OK: sold {after['sold']}  held {after['held']}  "
              f"capacity {cap}")
    return ok


def _parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="boxoffice-load",
        description="Race many mockpay buyers for one ticket type.",
    )
    target = ap.add_argument_group("target")
    target.add_argument("--base", default="http://localhost:8000")
    target.add_argument("--event", required=True)
    target.add_argument("--ticket-type", required=True)

    load = ap.add_argument_group("load")
    load.add_argument("--total", type=int, default=100,
                      help="number of buyers")
    load.add_argument("--concurrency", type=int, default=20)
    load.add_argument("--fail-rate", type=float, default=0.0,
                      help="share of buyers whose payment fails")
    load.add_argument("--cancel-rate", type=float, default=0.0,
                      help="share of buyers who cancel on the mock page")

    poll = ap.add_argument_group("polling")
    poll.add_argument("--poll-interval", type=float, default=0.05)
    poll.add_argument("--poll-timeout", type=float, default=10.0,
                      help="give up on a payment after this many seconds")
    return ap


def main():
    args = _parser().parse_args()
    if not 0.0 <= args.fail_rate + args.cancel_rate <= 1.0:
        raise SystemExit("--fail-rate + --cancel-rate must be within 0..1")

    t_start = time.perf_counter()
    stats = asyncio.run(run_load(
        base=args.base,
        event_id=args.event,
        ticket_type_id=args.ticket_type,
        total=args.total,
        concurrency=args.concurrency,
        fail_rate=args.fail_rate,
        cancel_rate=args.cancel_rate,
        poll_interval_s=args.poll_interval,
        poll_timeout_s=args.poll_timeout,
    ))
    print(stats.report(time.perf_counter() - t_start))


if __name__ == "__main__":
    main()
