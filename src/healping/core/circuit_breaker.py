"""Circuit breaker for hosted backend resources.

Stops hammering a failing table or RPC:
- Tracks consecutive failures per resource (e.g. "rpc:get_dashboard_stats")
- Opens the circuit after the failure threshold
- Rejects calls while open so reads fall back immediately
- Lets one probe call through after the reset timeout
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Calls flow normally
    OPEN = "open"            # Resource failing, calls rejected
    HALF_OPEN = "half_open"  # Probing for recovery


@dataclass
class ResourceCircuit:
    """Circuit statistics for one backend resource."""
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_time: Optional[float] = None
    opened_at: Optional[float] = None
    probe_successes: int = 0


class CircuitBreaker:
    """
    Per-resource circuit breaker.

    - CLOSED: count failures; open after fail_threshold in a row.
    - OPEN: reject calls for reset_timeout seconds.
    - HALF_OPEN: allow probes; close after half_open_max_calls successes,
      reopen on the first failure.

    Example:
        breaker = CircuitBreaker(fail_threshold=3, reset_timeout=30)

        if not breaker.is_call_allowed("table:patients"):
            return fallback

        try:
            rows = await client.select("patients", ...)
            breaker.record_success("table:patients")
        except BackendError:
            breaker.record_failure("table:patients")
    """

    def __init__(
        self,
        fail_threshold: int = 5,
        reset_timeout: float = 30,
        half_open_max_calls: int = 1,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            fail_threshold: Consecutive failures before opening a circuit
            reset_timeout: Seconds to stay open before probing
            half_open_max_calls: Successful probes needed to close
            enabled: Whether circuit breaking is enabled
            clock: Time source (monotonic seconds)
        """
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self.half_open_max_calls = half_open_max_calls
        self.enabled = enabled
        self._clock = clock

        self._circuits: Dict[str, ResourceCircuit] = {}
        self._lock = Lock()

        logger.info(
            f"Circuit breaker initialized: "
            f"fail_threshold={fail_threshold}, "
            f"reset_timeout={reset_timeout}s, "
            f"enabled={enabled}"
        )

    def is_call_allowed(self, resource: str) -> bool:
        """Check whether a call to the resource may proceed."""
        if not self.enabled:
            return True

        with self._lock:
            circuit = self._circuit(resource)

            if circuit.state is not CircuitState.OPEN:
                return True

            if self._clock() - circuit.opened_at >= self.reset_timeout:
                logger.info(f"Circuit {resource}: OPEN -> HALF_OPEN (probing)")
                circuit.state = CircuitState.HALF_OPEN
                circuit.probe_successes = 0
                return True

            logger.warning(f"Circuit {resource}: OPEN, rejecting call")
            return False

    def record_success(self, resource: str) -> None:
        if not self.enabled:
            return

        with self._lock:
            circuit = self._circuit(resource)

            if circuit.state is CircuitState.HALF_OPEN:
                circuit.probe_successes += 1
                if circuit.probe_successes >= self.half_open_max_calls:
                    logger.info(f"Circuit {resource}: HALF_OPEN -> CLOSED (recovered)")
                    circuit.state = CircuitState.CLOSED
                    circuit.failure_count = 0
                    circuit.probe_successes = 0
            elif circuit.failure_count:
                logger.debug(
                    f"Circuit {resource}: reset failure count (was {circuit.failure_count})"
                )
                circuit.failure_count = 0

    def record_failure(self, resource: str) -> None:
        if not self.enabled:
            return

        with self._lock:
            circuit = self._circuit(resource)
            circuit.failure_count += 1
            circuit.last_failure_time = self._clock()

            if circuit.state is CircuitState.HALF_OPEN:
                logger.warning(f"Circuit {resource}: HALF_OPEN -> OPEN (probe failed)")
                self._open(circuit)
            elif circuit.state is CircuitState.CLOSED:
                if circuit.failure_count >= self.fail_threshold:
                    logger.error(
                        f"Circuit {resource}: CLOSED -> OPEN "
                        f"({circuit.failure_count} consecutive failures)"
                    )
                    self._open(circuit)
                else:
                    logger.warning(
                        f"Circuit {resource}: failure recorded "
                        f"({circuit.failure_count}/{self.fail_threshold})"
                    )

    def get_state(self, resource: str) -> CircuitState:
        with self._lock:
            return self._circuit(resource).state

    def snapshot(self) -> Dict[str, CircuitState]:
        """States of every resource seen so far"""
        with self._lock:
            return {name: circuit.state for name, circuit in self._circuits.items()}

    def _circuit(self, resource: str) -> ResourceCircuit:
        if resource not in self._circuits:
            self._circuits[resource] = ResourceCircuit()
        return self._circuits[resource]

    def _open(self, circuit: ResourceCircuit) -> None:
        circuit.state = CircuitState.OPEN
        circuit.opened_at = self._clock()
        circuit.probe_successes = 0
