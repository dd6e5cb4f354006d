"""Timeout/retry policy for remote data calls.

Reads (dashboard stats, lists) are retried with exponential backoff and
degrade to a caller-supplied fallback once retries are exhausted.
Mutations (create/schedule) are only retried when the request never reached
the server, and failures propagate as RemoteCallError.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .circuit_breaker import CircuitBreaker
from .errors import BackendError, RemoteCallError

logger = logging.getLogger(__name__)

T = TypeVar("T")

REMOTE_ERRORS = (asyncio.TimeoutError, httpx.HTTPError, BackendError)


def is_transient(exc: BaseException) -> bool:
    """Timeouts, transport failures and 5xx responses are worth retrying"""
    if isinstance(exc, (asyncio.TimeoutError, httpx.TransportError)):
        return True
    if isinstance(exc, BackendError):
        return exc.is_server_error
    return False


def never_reached_server(exc: BaseException) -> bool:
    """Connection failures are safe to retry even for mutations"""
    return isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout))


class RemoteCallPolicy:
    """
    Wraps remote calls with a timeout, retries and a circuit breaker.

    Example:
        policy = RemoteCallPolicy(timeout=5, max_attempts=3)

        stats = await policy.read(
            "rpc:get_dashboard_stats",
            lambda: client.rpc("get_dashboard_stats", {"clinic_uuid": clinic_id}),
            fallback=EMPTY_STATS,
        )
    """

    def __init__(
        self,
        timeout: float = 5.0,
        max_attempts: int = 3,
        backoff_min: float = 0.5,
        backoff_max: float = 4.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        """
        Args:
            timeout: Seconds allowed per attempt
            max_attempts: Attempts per call, including the first
            backoff_min: First backoff delay in seconds (doubles per retry)
            backoff_max: Backoff ceiling in seconds
            circuit_breaker: Optional per-resource breaker
        """
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max
        self.circuit_breaker = circuit_breaker

    async def read(self, name: str, call: Callable[[], Awaitable[T]], fallback: T) -> T:
        """
        Run a read call, returning `fallback` if it cannot complete.

        Args:
            name: Resource name used for logging and the circuit breaker
            call: Zero-argument coroutine factory (called once per attempt)
            fallback: Value returned on exhaustion or open circuit
        """
        if self.circuit_breaker and not self.circuit_breaker.is_call_allowed(name):
            logger.warning(f"{name}: circuit open, returning fallback")
            return fallback

        try:
            return await self._run(name, call, is_transient)
        except REMOTE_ERRORS as e:
            logger.error(f"Error fetching {name}, returning fallback: {e!r}")
            return fallback

    async def mutate(self, name: str, call: Callable[[], Awaitable[T]]) -> T:
        """
        Run a mutating call.

        Raises:
            RemoteCallError: If the call failed, timed out or the circuit is open
        """
        if self.circuit_breaker and not self.circuit_breaker.is_call_allowed(name):
            raise RemoteCallError(name, "temporarily unavailable (circuit breaker open)")

        try:
            return await self._run(name, call, never_reached_server)
        except asyncio.TimeoutError as e:
            raise RemoteCallError(name, "backend did not respond in time") from e
        except BackendError as e:
            raise RemoteCallError(name, e.message) from e
        except httpx.HTTPError as e:
            raise RemoteCallError(name, f"failed to reach backend: {e}") from e

    async def _run(
        self,
        name: str,
        call: Callable[[], Awaitable[T]],
        should_retry: Callable[[BaseException], bool],
    ) -> T:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.backoff_min,
                min=self.backoff_min,
                max=self.backoff_max,
            ),
            retry=retry_if_exception(should_retry),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    result = await asyncio.wait_for(call(), timeout=self.timeout)
        except REMOTE_ERRORS as e:
            if self.circuit_breaker:
                if is_transient(e):
                    self.circuit_breaker.record_failure(name)
                else:
                    # Client errors mean the backend itself is healthy
                    self.circuit_breaker.record_success(name)
            raise

        if self.circuit_breaker:
            self.circuit_breaker.record_success(name)
        logger.debug(f"{name}: call succeeded")
        return result
