#!/usr/bin/env python3
"""
Protected queries example.

This example demonstrates the resilience runtime against a simulated
clinic database:
- Deduplication of identical concurrent queries
- Circuit breaking with stale-cache fallback during an outage
- Alert rules that roll back a feature
- Admin controls and the health snapshot

Usage:
    python examples/protect_queries.py
    python examples/protect_queries.py resilience.yaml
"""

import asyncio
import json
import sys

from clinic_resilience import (
    InMemoryFeatureFlags,
    QueryKey,
    ResilienceConfig,
    ResilienceRuntime,
)


class FakeDatabase:
    """Simulated clinic database that can be taken offline."""

    def __init__(self) -> None:
        self.online = True
        self.calls = 0

    async def appointments(self, clinic_id: int) -> list[dict]:
        self.calls += 1
        await asyncio.sleep(0.05)
        if not self.online:
            raise ConnectionError("fetch failed: connection refused")
        return [
            {"id": 1, "clinic": clinic_id, "patient": "Amy", "time": "09:00"},
            {"id": 2, "clinic": clinic_id, "patient": "Ben", "time": "09:30"},
        ]


async def deduplication(runtime: ResilienceRuntime, db: FakeDatabase) -> None:
    """Five dashboard widgets ask for the same data at once."""
    print("Demonstrating deduplication...")
    query = QueryKey("appointments.today", {"clinic": 3}, user_id="dr-lee")

    results = await asyncio.gather(
        *(
            runtime.execute(lambda: db.appointments(3), "appointments", query=query)
            for _ in range(5)
        )
    )

    print(f"  Widgets served: {sum(r.success for r in results)}")
    print(f"  Database calls: {db.calls}")
    stats = runtime.deduplicator.get_stats()
    print(f"  Savings: {stats.savings_percentage:.0f}%")
    print()


async def outage(runtime: ResilienceRuntime, db: FakeDatabase) -> None:
    """The database goes down; cached data keeps the schedule visible."""
    print("Demonstrating an outage...")
    db.online = False
    query = QueryKey("appointments.today", {"clinic": 3}, user_id="dr-lee")

    for i in range(3):
        result = await runtime.execute(
            lambda: db.appointments(3), "appointments", query=query, strategy="fast"
        )
        level = result.fallback_level.name if result.fallback_level else "LIVE"
        print(
            f"  Query {i + 1}: success={result.success} level={level} "
            f"circuit={result.circuit_state.value}"
        )
        if result.user_message:
            print(f"    {result.user_message}")

    db.online = True
    print(f"  Manual reset: {runtime.reset_circuit('appointments')}")
    print()


async def alerting(runtime: ResilienceRuntime) -> None:
    """Evaluate alert rules against the traffic so far."""
    print("Evaluating alert rules...")
    await runtime.tick()

    for alert in runtime.alerting.get_active_alerts():
        print(f"  [{alert.severity.value}] {alert.message}")
    print(f"  Feature flags: {runtime.flags.get_all_flags()}")
    print()


async def main() -> None:
    """Run protected query examples."""
    if len(sys.argv) > 1:
        config = ResilienceConfig.from_yaml(sys.argv[1])
    else:
        config = ResilienceConfig.from_env()
    ResilienceRuntime.configure_logging(config)

    db = FakeDatabase()
    flags = InMemoryFeatureFlags({"appointment_prefetch": True})

    async with ResilienceRuntime(config, flags=flags) as runtime:
        await deduplication(runtime, db)
        await outage(runtime, db)
        await alerting(runtime)

        health = runtime.get_health()
        print("Health snapshot:")
        print(json.dumps({k: health[k] for k in ("worst_circuit_state", "metrics")}, indent=2))


if __name__ == "__main__":
    asyncio.run(main())
