#!/usr/bin/env python3
"""Example usage of WorkerClient for external monitoring.

This demonstrates how to use WorkerClient in other projects for
programmatic access to the health and metrics endpoints of a worker.
"""

import time

import httpx
from higgsctl import HealthInfo, WorkerClient


def example_one_shot(url: str):
    """Example: One-shot health check."""
    print("=" * 60)
    print("Example 1: One-shot Health Check")
    print("=" * 60)

    client = WorkerClient(url)
    info: HealthInfo = client.health()

    print(f"\nWorker {info.worker} (pid {info.pid}) is {info.status}")
    for name, state in info.services.items():
        print(f"  - {name}: {state}")


def example_polling(url: str, rounds: int = 5, interval: float = 2.0):
    """Example: Poll until the worker reports healthy."""
    print("\n" + "=" * 60)
    print("Example 2: Wait for Healthy")
    print("=" * 60)

    client = WorkerClient(url, timeout=1.0)
    for attempt in range(1, rounds + 1):
        try:
            info = client.health()
        except httpx.HTTPError as e:
            print(f"[{attempt}] unreachable: {e}")
        else:
            print(f"[{attempt}] {info.status} ({info.http_status})")
            if info.is_healthy:
                return
        time.sleep(interval)


def example_metrics(url: str):
    """Example: Pick request counters out of the Prometheus text."""
    print("\n" + "=" * 60)
    print("Example 3: Request Counters")
    print("=" * 60)

    text = WorkerClient(url).metrics()
    for line in text.splitlines():
        if line.startswith("higgs_http_requests_total"):
            print(f"  {line}")


if __name__ == "__main__":
    base_url = "http://localhost:3000"
    example_polling(base_url)
    example_one_shot(base_url)
    example_metrics(base_url)
