from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from web3.exceptions import ContractLogicError

from roundwatch.domain import PermanentRemoteError, RawRound, RemoteUnavailableError

T = TypeVar("T")

log = logging.getLogger("roundwatch.rpc")

_PERMANENT = (PermanentRemoteError, ContractLogicError)


def is_permanent(exc: BaseException) -> bool:
    return isinstance(exc, _PERMANENT)


@dataclass(frozen=True)
class RetryPolicy:
    """How many times, and how soon, one logical call is re-attempted."""

    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 30.0

    def delay(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** max(0, int(attempt))))


class EndpointPool:
    """Where calls go: a ring of equivalent endpoints with a rolling failure counter.

    Rotation is compare-and-swap on `generation`, so parallel failures that were
    all issued against the same endpoint rotate it at most once.
    """

    def __init__(
        self,
        urls: tuple[str, ...] | list[str],
        factory: Callable[[str], Any],
        *,
        failure_threshold: int = 5,
        events=None,
    ):
        self.urls = tuple(urls)
        if not self.urls:
            raise ValueError("at least one endpoint url is required")
        self._factory = factory
        self.failure_threshold = max(1, int(failure_threshold))
        self.events = events

        self.index = 0
        self.failures = 0
        self.generation = 0
        self.rotations = 0
        self._clients: dict[int, Any] = {}
        self._lock = asyncio.Lock()

    @property
    def url(self) -> str:
        return self.urls[self.index]

    def client(self) -> tuple[int, Any]:
        idx = self.index
        cli = self._clients.get(idx)
        if cli is None:
            cli = self._factory(self.urls[idx])
            self._clients[idx] = cli
        return self.generation, cli

    async def record_failure(self, generation: int, err: BaseException | None = None) -> bool:
        """Count a failure seen on `generation`; returns True if it caused a rotation."""
        async with self._lock:
            if generation != self.generation:
                return False
            self.failures += 1
            if self.failures < self.failure_threshold:
                return False
            self._rotate(err)
            return True

    async def record_success(self) -> None:
        async with self._lock:
            self.failures = max(0, self.failures - 1)

    def _rotate(self, err: BaseException | None) -> None:
        old_url = self.url
        self._clients.pop(self.index, None)
        self.index = (self.index + 1) % len(self.urls)
        self.failures = 0
        self.generation += 1
        self.rotations += 1
        log.warning("rpc rotate %s -> %s after %d failures (last=%s)", old_url, self.url, self.failure_threshold, type(err).__name__ if err else "n/a")
        if self.events is not None:
            self.events.emit("rpc_rotated", old=old_url, new=self.url, rotations=self.rotations)

    def status(self) -> dict[str, Any]:
        return {
            "endpoint_index": self.index,
            "endpoint": self.url,
            "failures": self.failures,
            "rotations": self.rotations,
            "endpoints": len(self.urls),
        }


class RpcClient:
    """Bounded retry with exponential backoff on top of an EndpointPool.

    Each attempt goes to whatever endpoint is current at that moment, so a
    rotation triggered mid-loop redirects the remaining attempts.
    """

    def __init__(
        self,
        pool: EndpointPool,
        policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.pool = pool
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def call(self, op: str, fn: Callable[[Any], T]) -> T:
        loop = asyncio.get_running_loop()
        attempts = max(1, int(self.policy.max_attempts))
        last_err: BaseException | None = None
        for attempt in range(attempts):
            generation, client = self.pool.client()
            try:
                result = await loop.run_in_executor(None, fn, client)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if is_permanent(exc):
                    if isinstance(exc, PermanentRemoteError):
                        raise
                    raise PermanentRemoteError(f"{op}: {exc}") from exc
                last_err = exc
                await self.pool.record_failure(generation, exc)
                log.debug("%s attempt %d/%d failed on %s: %s", op, attempt + 1, attempts, self.pool.url, exc)
                if attempt < attempts - 1:
                    await self._sleep(self.policy.delay(attempt))
                continue
            await self.pool.record_success()
            return result
        raise RemoteUnavailableError(op, attempts, last_err)


class RoundReader:
    """Typed async facade over the prediction contract reads."""

    def __init__(self, rpc: RpcClient):
        self.rpc = rpc

    async def current_epoch(self) -> int:
        return int(await self.rpc.call("currentEpoch", lambda c: c.current_epoch()))

    async def fetch_round(self, epoch: int) -> RawRound:
        epoch = int(epoch)
        return await self.rpc.call(f"rounds({epoch})", lambda c: c.get_round(epoch))

    def status(self) -> dict[str, Any]:
        return self.rpc.pool.status()
