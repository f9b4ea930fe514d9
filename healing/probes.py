"""
Ready-made probes for common liveness checks.

Each factory returns a no-arg probe suitable for
HealthCheckScheduler.register_module().
"""

import time
from typing import Optional

import aiohttp
import psutil

from healing.types import Probe, ProbeResult


def http_probe(
    url: str,
    expected_status: int = 200,
    method: str = "GET",
    timeout: Optional[float] = None,
    session: Optional[aiohttp.ClientSession] = None,
) -> Probe:
    """
    Probe that is healthy when ``url`` answers with ``expected_status``.

    Args:
        url: Endpoint to request (e.g. a keep-alive /api/ping route)
        expected_status: HTTP status treated as healthy
        method: HTTP method
        timeout: Optional aiohttp total timeout in seconds; the scheduler's
            module timeout applies regardless
        session: Shared ClientSession; a short-lived one is created per check otherwise
    """

    async def _request(client: aiohttp.ClientSession) -> ProbeResult:
        start_time = time.perf_counter()
        kwargs = {}
        if timeout is not None:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=timeout)
        try:
            async with client.request(method, url, **kwargs) as response:
                latency = (time.perf_counter() - start_time) * 1000
                if response.status == expected_status:
                    return ProbeResult(
                        healthy=True,
                        latency_ms=round(latency, 2),
                        message=f"{url} responsive",
                        metadata={"status_code": response.status},
                    )
                return ProbeResult(
                    healthy=False,
                    latency_ms=round(latency, 2),
                    message=f"{url} returned status {response.status}",
                    metadata={"status_code": response.status},
                )
        except aiohttp.ClientError as e:
            latency = (time.perf_counter() - start_time) * 1000
            return ProbeResult(
                healthy=False,
                latency_ms=round(latency, 2),
                message=f"Request to {url} failed: {e}",
                metadata={"error": type(e).__name__},
            )

    async def _probe() -> ProbeResult:
        if session is not None:
            return await _request(session)
        async with aiohttp.ClientSession() as client:
            return await _request(client)

    return _probe


def memory_probe(max_rss_mb: float, process: Optional[psutil.Process] = None) -> Probe:
    """Probe that is healthy while the process resident memory stays under ``max_rss_mb``."""
    proc = process or psutil.Process()

    def _probe() -> ProbeResult:
        rss_mb = proc.memory_info().rss / (1024 * 1024)
        if rss_mb <= max_rss_mb:
            return ProbeResult(
                healthy=True,
                message=f"RSS {rss_mb:.1f}MB",
                metadata={"rss_mb": round(rss_mb, 2)},
            )
        return ProbeResult(
            healthy=False,
            message=f"RSS {rss_mb:.1f}MB exceeds limit of {max_rss_mb:g}MB",
            metadata={"rss_mb": round(rss_mb, 2)},
        )

    return _probe
