"""RPCManager — ranked chain endpoints with transient-error failover.

Only a transport hiccup moves a call to the next node.  A contract revert,
a wallet rejection or an error we cannot classify would look the same on
every node, so the first endpoint that produced it raises it.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar
from urllib.parse import urlparse

import structlog
from web3 import AsyncWeb3
from web3.providers import AsyncHTTPProvider

from config.settings import Settings
from core.errors import NetworkError, classify_error

logger = structlog.get_logger("web3_infra.rpc_manager")

T = TypeVar("T")

LATENCY_ALPHA = 0.3
DEGRADED_AFTER = 2


class EndpointStatus(str, Enum):
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    DOWN = "DOWN"


_STATUS_RANK = {EndpointStatus.HEALTHY: 0, EndpointStatus.DEGRADED: 1, EndpointStatus.DOWN: 2}


@dataclass
class EndpointMetrics:
    """Rolling view of how one node has been answering."""

    url: str
    status: EndpointStatus = EndpointStatus.HEALTHY
    consecutive_failures: int = 0
    total_requests: int = 0
    total_failures: int = 0
    avg_latency_ms: float = 0.0
    last_error: str | None = None

    @property
    def failure_rate(self) -> float:
        return self.total_failures / self.total_requests if self.total_requests else 0.0

    def record_success(self, latency_ms: float) -> None:
        self.total_requests += 1
        self.consecutive_failures = 0
        self.last_error = None
        self.status = EndpointStatus.HEALTHY
        if self.avg_latency_ms:
            latency_ms = LATENCY_ALPHA * latency_ms + (1 - LATENCY_ALPHA) * self.avg_latency_ms
        self.avg_latency_ms = latency_ms

    def record_failure(self, error: str, down_after: int) -> None:
        self.total_requests += 1
        self.total_failures += 1
        self.consecutive_failures += 1
        self.last_error = error

        streak = self.consecutive_failures
        if streak >= down_after:
            self.status = EndpointStatus.DOWN
        elif streak >= DEGRADED_AFTER:
            self.status = EndpointStatus.DEGRADED

    def as_dict(self) -> dict[str, Any]:
        return {
            "url": _redact_url(self.url),
            "status": self.status.value,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
        }


@dataclass
class RPCManagerConfig:
    health_check_interval_s: float = 30.0
    request_timeout_s: float = 10.0
    max_consecutive_failures: int = 5

    @classmethod
    def from_settings(cls, settings: Settings) -> RPCManagerConfig:
        return cls(
            health_check_interval_s=settings.RPC_HEALTH_CHECK_INTERVAL_SECONDS,
            request_timeout_s=settings.RPC_REQUEST_TIMEOUT_SECONDS,
        )


class RPCError(NetworkError):
    """No endpoint could serve the call."""

    def __init__(self, message: str, last_error: Exception | None = None) -> None:
        super().__init__(message)
        self.last_error = last_error


@dataclass
class _Node:
    position: int
    metrics: EndpointMetrics
    client: AsyncWeb3 | None = field(default=None, repr=False)

    @property
    def url(self) -> str:
        return self.metrics.url

    def rank(self) -> tuple[int, float, int]:
        return (_STATUS_RANK[self.metrics.status], self.metrics.avg_latency_ms, self.position)


class RPCManager:
    """Routes Web3 calls to the best-ranked node and fails over on
    transport errors.

    Nodes are ranked by status band (healthy, degraded, down), then by
    latency EMA, then by configuration order.

    Usage::

        async with RPCManager(["https://rpc.api.moonbase.moonbeam.network"]) as rpc:
            head = await rpc.execute(lambda w3: w3.eth.block_number)
    """

    def __init__(
        self,
        endpoints: list[str],
        config: RPCManagerConfig | None = None,
        web3_factory: Callable[[str, float], AsyncWeb3] | None = None,
    ) -> None:
        if not endpoints:
            raise ValueError("At least one RPC endpoint is required")

        self._config = config or RPCManagerConfig()
        self._nodes = [
            _Node(position=i, metrics=EndpointMetrics(url=url)) for i, url in enumerate(endpoints)
        ]
        self._by_url = {node.url: node for node in self._nodes}
        self._make_client = web3_factory or _http_web3
        self._health_task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def metrics(self) -> dict[str, EndpointMetrics]:
        return {node.url: node.metrics for node in self._nodes}

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self, health_checks: bool = True) -> None:
        """Build one client per node; optionally begin periodic probing."""
        if self._running:
            return

        timeout = self._config.request_timeout_s
        for node in self._nodes:
            node.client = self._make_client(node.url, timeout)
        self._running = True

        if health_checks:
            self._health_task = asyncio.create_task(self._health_check_forever(), name="rpc_health_check")
        logger.info(
            "rpc_manager.started",
            endpoints=[_redact_url(node.url) for node in self._nodes],
            health_checks=health_checks,
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        task, self._health_task = self._health_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        for node in self._nodes:
            node.client = None
        logger.info("rpc_manager.stopped")

    async def __aenter__(self) -> RPCManager:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    # ── Calls ────────────────────────────────────────────────────

    def get_web3(self) -> AsyncWeb3:
        """Client of the top-ranked node, for calls that must land on a
        single node (raw transaction broadcast)."""
        return self._ranked()[0].client

    async def execute(self, fn: Callable[[AsyncWeb3], Awaitable[T]]) -> T:
        """Await ``fn(w3)`` on each node in rank order until one answers.

        Raises
        ------
        RPCError
            Every node failed with a retryable error.
        Exception
            Anything non-retryable, as raised by the first node.
        """
        last_error: Exception | None = None

        for node in self._ranked():
            began = time.monotonic()
            try:
                result = await fn(node.client)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                elapsed_ms = (time.monotonic() - began) * 1000
                kind = classify_error(exc)
                if kind is None or not kind.retryable:
                    # node responded, the request is what failed
                    node.metrics.record_success(elapsed_ms)
                    raise
                last_error = exc
                self._mark_failed(node, exc, "rpc_manager.call_failed")
            else:
                node.metrics.record_success((time.monotonic() - began) * 1000)
                return result

        raise RPCError(
            f"All {len(self._nodes)} RPC endpoints failed: {last_error}",
            last_error=last_error,
        )

    def get_endpoint_status(self) -> list[dict[str, Any]]:
        return [node.metrics.as_dict() for node in self._nodes]

    # ── Probing ──────────────────────────────────────────────────

    async def _health_check_forever(self) -> None:
        interval = self._config.health_check_interval_s
        while self._running:
            await asyncio.sleep(interval)
            results = await asyncio.gather(
                *(self._check_endpoint(node.url) for node in self._nodes),
                return_exceptions=True,
            )
            for outcome in results:
                if isinstance(outcome, Exception):
                    logger.error("rpc_manager.health_check_crashed", error=str(outcome))

    async def _check_endpoint(self, url: str) -> None:
        """One ``eth_blockNumber`` round trip, recorded in the node's metrics."""
        node = self._by_url[url]
        if node.client is None:
            return

        began = time.monotonic()
        try:
            await node.client.eth.block_number
        except Exception as exc:
            self._mark_failed(node, exc, "rpc_manager.health_check_failed")
        else:
            node.metrics.record_success((time.monotonic() - began) * 1000)

    # ── Internals ────────────────────────────────────────────────

    def _ranked(self) -> list[_Node]:
        if not self._running:
            raise RuntimeError("RPCManager not started — call start() first")
        return sorted(self._nodes, key=_Node.rank)

    def _mark_failed(self, node: _Node, exc: Exception, event: str) -> None:
        node.metrics.record_failure(str(exc), self._config.max_consecutive_failures)
        logger.warning(
            event,
            url=_redact_url(node.url),
            error=str(exc)[:200],
            consecutive_failures=node.metrics.consecutive_failures,
            status=node.metrics.status.value,
        )


def _http_web3(url: str, timeout_s: float) -> AsyncWeb3:
    return AsyncWeb3(AsyncHTTPProvider(url, request_kwargs={"timeout": timeout_s}))


def _redact_url(url: str) -> str:
    """Scheme and host only; providers put API keys in the path or query."""
    parsed = urlparse(url)
    if not parsed.hostname:
        return url[:30] + "..."
    return f"{parsed.scheme}://{parsed.hostname}/***"
