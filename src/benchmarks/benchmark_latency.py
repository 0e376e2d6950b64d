#!/usr/bin/env python3
"""
Benchmark script for AbuseGuard latency measurements.

Measures p50, p95, p99 latency and throughput of scope evaluation for:
- HTTP, sequential (POST /evaluate against a running server)
- HTTP, concurrent (asyncio workers sharing one connection pool)
- In-process (ScopedLimiter.check called directly, no network)

Usage:
    python benchmark_latency.py --url http://localhost:8080 --requests 1000
    python benchmark_latency.py --url http://localhost:8080 --concurrent 50 --requests 5000
    python benchmark_latency.py --in-process --requests 100000 --clients 1000
"""

import argparse
import asyncio
import json
import statistics
import time
from dataclasses import dataclass

import httpx

from abuseguard.clock import SystemClock
from abuseguard.config import Settings
from abuseguard.limiter import LimiterRegistry
from abuseguard.models import RequestContext


@dataclass
class BenchmarkResult:
    """Benchmark result metrics."""

    total_requests: int
    successful_requests: int
    failed_requests: int
    allowed_requests: int
    blocked_requests: int
    total_duration_seconds: float
    latencies_ms: list[float]

    @property
    def throughput(self) -> float:
        """Requests per second."""
        return self.total_requests / self.total_duration_seconds

    @property
    def p50(self) -> float:
        return self._percentile(50)

    @property
    def p95(self) -> float:
        return self._percentile(95)

    @property
    def p99(self) -> float:
        return self._percentile(99)

    @property
    def mean(self) -> float:
        return statistics.mean(self.latencies_ms) if self.latencies_ms else 0

    @property
    def stdev(self) -> float:
        return statistics.stdev(self.latencies_ms) if len(self.latencies_ms) > 1 else 0

    def _percentile(self, p: int) -> float:
        if not self.latencies_ms:
            return 0
        sorted_latencies = sorted(self.latencies_ms)
        idx = int(len(sorted_latencies) * p / 100)
        return sorted_latencies[min(idx, len(sorted_latencies) - 1)]

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON export."""
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "allowed_requests": self.allowed_requests,
            "blocked_requests": self.blocked_requests,
            "total_duration_seconds": round(self.total_duration_seconds, 3),
            "throughput_rps": round(self.throughput, 2),
            "latency_ms": {
                "mean": round(self.mean, 4),
                "stdev": round(self.stdev, 4),
                "p50": round(self.p50, 4),
                "p95": round(self.p95, 4),
                "p99": round(self.p99, 4),
                "min": round(min(self.latencies_ms), 4) if self.latencies_ms else 0,
                "max": round(max(self.latencies_ms), 4) if self.latencies_ms else 0,
            },
        }


def client_ip(index: int, clients: int) -> str:
    """Spread requests over a pool of synthetic client addresses."""
    n = index % clients
    return f"10.{(n >> 16) & 255}.{(n >> 8) & 255}.{n & 255}"


async def evaluate_request(
    client: httpx.AsyncClient, base_url: str, scope: str, ip: str
) -> tuple[float, bool, bool]:
    """
    Make a single evaluate request.

    Returns: (latency_ms, success, allowed)
    """
    payload = {"scope": scope, "ip": ip}

    start = time.perf_counter()
    try:
        response = await client.post(f"{base_url}/evaluate", json=payload)
        latency_ms = (time.perf_counter() - start) * 1000

        if response.status_code in (200, 429):
            return latency_ms, True, response.json().get("allow", False)
        return latency_ms, False, False
    except httpx.HTTPError:
        latency_ms = (time.perf_counter() - start) * 1000
        return latency_ms, False, False


async def reset_limits(client: httpx.AsyncClient, base_url: str) -> None:
    """Start every run from empty counters."""
    await client.post(f"{base_url}/security/limits/reset")


async def benchmark_sequential(
    base_url: str, scope: str, num_requests: int, clients: int
) -> BenchmarkResult:
    """Run sequential (mono-client) benchmark."""
    print(f"\n🔄 Sequential benchmark: {num_requests} requests...")

    latencies: list[float] = []
    successful = 0
    allowed = 0

    async with httpx.AsyncClient(timeout=30.0) as client:
        await reset_limits(client, base_url)

        start_time = time.perf_counter()

        for i in range(num_requests):
            latency_ms, success, is_allowed = await evaluate_request(
                client, base_url, scope, client_ip(i, clients)
            )
            latencies.append(latency_ms)
            if success:
                successful += 1
            if is_allowed:
                allowed += 1

            if (i + 1) % 100 == 0:
                print(f"  Progress: {i + 1}/{num_requests}")

        total_duration = time.perf_counter() - start_time

    return BenchmarkResult(
        total_requests=num_requests,
        successful_requests=successful,
        failed_requests=num_requests - successful,
        allowed_requests=allowed,
        blocked_requests=successful - allowed,
        total_duration_seconds=total_duration,
        latencies_ms=latencies,
    )


async def benchmark_concurrent(
    base_url: str,
    scope: str,
    num_requests: int,
    clients: int,
    concurrency: int,
) -> BenchmarkResult:
    """Run concurrent (multi-client) benchmark."""
    print(f"\n⚡ Concurrent benchmark: {num_requests} requests, {concurrency} workers...")

    latencies: list[float] = []
    successful = 0
    allowed = 0

    async def worker(client: httpx.AsyncClient, request_queue: asyncio.Queue[int]) -> None:
        nonlocal successful, allowed
        while True:
            try:
                i = request_queue.get_nowait()
            except asyncio.QueueEmpty:
                break

            latency_ms, success, is_allowed = await evaluate_request(
                client, base_url, scope, client_ip(i, clients)
            )
            latencies.append(latency_ms)
            if success:
                successful += 1
            if is_allowed:
                allowed += 1

    limits = httpx.Limits(max_connections=concurrency)
    async with httpx.AsyncClient(timeout=30.0, limits=limits) as client:
        await reset_limits(client, base_url)

        request_queue: asyncio.Queue[int] = asyncio.Queue()
        for i in range(num_requests):
            request_queue.put_nowait(i)

        start_time = time.perf_counter()

        workers = [
            asyncio.create_task(worker(client, request_queue)) for _ in range(concurrency)
        ]
        await asyncio.gather(*workers)

        total_duration = time.perf_counter() - start_time

    return BenchmarkResult(
        total_requests=num_requests,
        successful_requests=successful,
        failed_requests=num_requests - successful,
        allowed_requests=allowed,
        blocked_requests=successful - allowed,
        total_duration_seconds=total_duration,
        latencies_ms=latencies,
    )


def benchmark_in_process(scope: str, num_requests: int, clients: int) -> BenchmarkResult:
    """Call the limiter directly to measure the cost of one check without HTTP."""
    print(f"\n🧮 In-process benchmark: {num_requests} checks over {clients} clients...")

    registry = LimiterRegistry.from_settings(Settings(), SystemClock())
    limiter = registry.get(scope)
    contexts = [RequestContext(ip=client_ip(i, clients)) for i in range(clients)]

    latencies: list[float] = []
    allowed = 0

    start_time = time.perf_counter()
    for i in range(num_requests):
        start = time.perf_counter()
        decision = limiter.check(contexts[i % clients])
        latencies.append((time.perf_counter() - start) * 1000)
        if decision.admitted:
            allowed += 1
    total_duration = time.perf_counter() - start_time

    return BenchmarkResult(
        total_requests=num_requests,
        successful_requests=num_requests,
        failed_requests=0,
        allowed_requests=allowed,
        blocked_requests=num_requests - allowed,
        total_duration_seconds=total_duration,
        latencies_ms=latencies,
    )


def print_results(result: BenchmarkResult, title: str) -> None:
    """Print benchmark results in a formatted table."""
    print(f"\n{'=' * 60}")
    print(f"  {title}")
    print(f"{'=' * 60}")
    print(f"  Total requests:      {result.total_requests:,}")
    print(f"  Successful:          {result.successful_requests:,}")
    print(f"  Failed:              {result.failed_requests:,}")
    print(f"  Allowed:             {result.allowed_requests:,}")
    print(f"  Blocked:             {result.blocked_requests:,}")
    print(f"  Duration:            {result.total_duration_seconds:.2f}s")
    print(f"  Throughput:          {result.throughput:,.2f} req/s")
    print()
    print("  Latency (ms):")
    print(f"    Mean:              {result.mean:.4f}")
    print(f"    Std Dev:           {result.stdev:.4f}")
    print(f"    P50:               {result.p50:.4f}")
    print(f"    P95:               {result.p95:.4f}")
    print(f"    P99:               {result.p99:.4f}")
    print(f"    Min:               {min(result.latencies_ms):.4f}")
    print(f"    Max:               {max(result.latencies_ms):.4f}")
    print(f"{'=' * 60}")


async def main() -> None:
    parser = argparse.ArgumentParser(description="AbuseGuard Benchmark")
    parser.add_argument("--url", default="http://localhost:8080", help="AbuseGuard URL")
    parser.add_argument("--scope", default="general", help="Scope to evaluate")
    parser.add_argument("--requests", type=int, default=1000, help="Number of requests")
    parser.add_argument("--clients", type=int, default=100, help="Distinct client IPs")
    parser.add_argument("--concurrent", type=int, default=0, help="Concurrency (0 = sequential)")
    parser.add_argument("--in-process", action="store_true", help="Skip HTTP, call the limiter")
    parser.add_argument("--output", help="Output JSON file")

    args = parser.parse_args()

    print("🚀 AbuseGuard Benchmark")
    print(f"   Scope: {args.scope}")
    print(f"   Requests: {args.requests}")
    print(f"   Clients: {args.clients}")

    results = {}

    if args.in_process:
        result = benchmark_in_process(args.scope, args.requests, args.clients)
        print_results(result, "In-process (ScopedLimiter.check)")
        results["in_process"] = result.to_dict()
    elif args.concurrent > 0:
        print(f"   URL: {args.url}")
        result = await benchmark_concurrent(
            args.url, args.scope, args.requests, args.clients, args.concurrent
        )
        print_results(result, f"Concurrent ({args.concurrent} workers)")
        results["concurrent"] = result.to_dict()
    else:
        print(f"   URL: {args.url}")
        result = await benchmark_sequential(args.url, args.scope, args.requests, args.clients)
        print_results(result, "Sequential (mono-client)")
        results["sequential"] = result.to_dict()

    if args.output:
        with open(args.output, "w") as f:
            json.dump(results, f, indent=2)
        print(f"\n📄 Results saved to {args.output}")


if __name__ == "__main__":
    asyncio.run(main())
