"""Health verification with bounded exponential backoff.

Each :class:`HealthProbe` is polled until one of its expected HTTP statuses
is observed or its retry budget is exhausted. Probes run concurrently in a
thread pool so that one probe's backoff sleep never delays another probe.
Probe failure is reported, never raised; deciding whether a failed probe is
fatal belongs to the orchestrator.
"""
from __future__ import annotations

import concurrent.futures
import http.client
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

import requests

LOGGER = logging.getLogger(__name__)

Fetcher = Callable[[str, float], int]
Sleeper = Callable[[float], None]

# Anything a server can provoke at the transport or protocol level counts as
# a failed attempt.
_TRANSPORT_ERRORS = (
    requests.RequestException,
    http.client.HTTPException,
    OSError,
    ValueError,
)


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Attempt budget and backoff schedule for a probe."""

    max_attempts: int = 5
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0

    def delay_after(self, attempt: int) -> float:
        """Return the wait after failed *attempt* (1-based) before the next one."""
        delay = self.initial_delay * (self.multiplier ** max(0, attempt - 1))
        return min(delay, self.max_delay)

    def schedule(self) -> tuple[float, ...]:
        """Return every wait between attempts for the full budget."""
        return tuple(self.delay_after(attempt) for attempt in range(1, self.max_attempts))

    def budget_seconds(self, timeout: float) -> float:
        """Return the worst-case wall time for one probe under this policy."""
        return sum(self.schedule()) + timeout * self.max_attempts


@dataclass(slots=True, frozen=True)
class HealthProbe:
    """An HTTP check confirming a service is serving traffic."""

    name: str
    url: str
    expected_statuses: frozenset[int] = frozenset({200})
    timeout: float = 5.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass(slots=True, frozen=True)
class ProbeOutcome:
    """Result of polling a single probe."""

    name: str
    url: str
    passed: bool
    attempts: int
    last_status: int | None
    error: str | None = None
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "name": self.name,
            "url": self.url,
            "passed": self.passed,
            "attempts": self.attempts,
            "last_status": self.last_status,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


@dataclass(slots=True, frozen=True)
class VerificationResult:
    """Aggregate outcome for a set of probes."""

    outcomes: tuple[ProbeOutcome, ...]

    @property
    def passed(self) -> bool:
        """Return ``True`` when every probe passed (vacuously true when empty)."""
        return all(outcome.passed for outcome in self.outcomes)

    @property
    def failed(self) -> tuple[ProbeOutcome, ...]:
        """Return the probes that exhausted their retries."""
        return tuple(outcome for outcome in self.outcomes if not outcome.passed)

    def get(self, name: str) -> ProbeOutcome | None:
        """Return the outcome for the probe called *name*."""
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome
        return None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "passed": self.passed,
            "probes": [outcome.to_dict() for outcome in self.outcomes],
        }


def http_status(url: str, timeout: float) -> int:
    """Issue a GET against *url* and return the HTTP status code.

    Error statuses (4xx/5xx) are returned rather than raised. Redirects are
    not followed, so a 3xx is reported as the status the service answered
    with. Transport failures propagate as :class:`requests.RequestException`.
    """
    response = requests.get(
        url,
        timeout=timeout,
        allow_redirects=False,
        headers={"User-Agent": "convergectl-health"},
    )
    return int(response.status_code)


class HealthVerifier:
    """Poll health probes concurrently according to their retry policies."""

    def __init__(
        self,
        *,
        fetch: Fetcher | None = None,
        sleep: Sleeper = time.sleep,
        max_concurrency: int = 8,
    ) -> None:
        """Store the HTTP fetcher, sleep function and pool size.

        Without an explicit *fetch* the module-level :func:`http_status` is
        looked up on every attempt.
        """
        self._fetch = fetch
        self._sleep = sleep
        self._max_concurrency = max(1, max_concurrency)

    def verify(self, probes: Sequence[HealthProbe]) -> VerificationResult:
        """Poll every probe and return the aggregated result."""
        if not probes:
            return VerificationResult(outcomes=())
        if self._max_concurrency == 1 or len(probes) == 1:
            return VerificationResult(outcomes=tuple(self.check(probe) for probe in probes))

        outcomes: list[ProbeOutcome | None] = [None] * len(probes)
        workers = min(self._max_concurrency, len(probes))
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_index = {
                executor.submit(self.check, probe): index for index, probe in enumerate(probes)
            }
            for future in concurrent.futures.as_completed(future_to_index):
                outcomes[future_to_index[future]] = future.result()
        return VerificationResult(
            outcomes=tuple(outcome for outcome in outcomes if outcome is not None)
        )

    def check(self, probe: HealthProbe) -> ProbeOutcome:
        """Poll a single probe until it passes or its attempts run out."""
        start = time.perf_counter()
        policy = probe.retry
        last_status: int | None = None
        last_error: str | None = None
        attempts = 0
        for attempt in range(1, max(1, policy.max_attempts) + 1):
            attempts = attempt
            try:
                fetch = self._fetch or http_status
                last_status = fetch(probe.url, probe.timeout)
                last_error = None
            except _TRANSPORT_ERRORS as exc:
                last_status = None
                last_error = str(exc) or exc.__class__.__name__
            if last_status is not None and last_status in probe.expected_statuses:
                LOGGER.debug("probe %s passed on attempt %d", probe.name, attempt)
                return ProbeOutcome(
                    name=probe.name,
                    url=probe.url,
                    passed=True,
                    attempts=attempt,
                    last_status=last_status,
                    duration_ms=int((time.perf_counter() - start) * 1000),
                )
            if attempt < policy.max_attempts:
                delay = policy.delay_after(attempt)
                LOGGER.debug(
                    "probe %s attempt %d got %s; retrying in %.2fs",
                    probe.name,
                    attempt,
                    last_status if last_status is not None else last_error,
                    delay,
                )
                self._sleep(delay)

        if last_error is None:
            expected = ", ".join(str(code) for code in sorted(probe.expected_statuses))
            last_error = f"status {last_status} not in expected set {{{expected}}}"
        return ProbeOutcome(
            name=probe.name,
            url=probe.url,
            passed=False,
            attempts=attempts,
            last_status=last_status,
            error=last_error,
            duration_ms=int((time.perf_counter() - start) * 1000),
        )


__all__ = [
    "HealthProbe",
    "HealthVerifier",
    "ProbeOutcome",
    "RetryPolicy",
    "VerificationResult",
    "http_status",
]
