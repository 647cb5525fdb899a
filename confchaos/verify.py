"""
Eventual-consistency checks on connectivity indicators.

Every check polls one session's UI until it shows the expected state or
the deadline passes:

    PENDING -> MATCHED     first sample equal to the expected state
    PENDING -> TIMED_OUT   deadline passed, or too many failed reads in a row

A read that fails in the automation layer (element not rendered yet,
stale element) only counts as "not matched yet". A run of failed reads
longer than ``max_transient_failures`` ends the check early so a broken
session cannot stall the scenario until the deadline.

Checks never change pool or session state.
"""

from __future__ import annotations

import enum
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from confchaos.clock import Clock, SystemClock
from confchaos.errors import TransientObservationError, VerificationTimeout
from confchaos.sessions import Session

log = structlog.get_logger()

DEFAULT_POLL_INTERVAL = 0.5
DEFAULT_MAX_TRANSIENT_FAILURES = 10


class AssertionState(enum.Enum):
    PENDING = "pending"
    MATCHED = "matched"
    TIMED_OUT = "timed_out"


@dataclass
class ConnectivityAssertion:
    """One connectivity check and its outcome."""

    observer: Session
    observed: Session | None
    expected_connected: bool
    timeout: float
    state: AssertionState = AssertionState.PENDING
    last_observed: bool | None = None
    samples: int = 0
    elapsed: float = 0.0

    def describe(self) -> str:
        observer = f"{self.observer.kind.value} #{self.observer.ordinal}"
        if self.observed is None:
            return f"Self-view of {observer}"
        return f"Participant #{self.observed.ordinal} as seen by {observer}"


class ConnectivityVerifier:
    """Polls connectivity indicators until they match or time out."""

    def __init__(
        self,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_transient_failures: int = DEFAULT_MAX_TRANSIENT_FAILURES,
        clock: Clock | None = None,
    ) -> None:
        """Initialize the verifier.

        Args:
            poll_interval: Seconds between samples.
            max_transient_failures: Consecutive failed reads tolerated per check.
            clock: Time source; tests pass a fake one.
        """
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if max_transient_failures < 1:
            raise ValueError("max_transient_failures must be at least 1")
        self.poll_interval = poll_interval
        self.max_transient_failures = max_transient_failures
        self.clock = clock or SystemClock()

    def verify_remote_indication(
        self,
        observer: Session,
        observed: Session,
        expected_connected: bool,
        timeout: float,
    ) -> ConnectivityAssertion:
        """Wait until ``observer`` shows ``observed`` in the expected state.

        Raises:
            VerificationTimeout: If the state is not observed in time.
        """
        assertion = ConnectivityAssertion(observer, observed, expected_connected, timeout)
        return self._poll(assertion, lambda: observer.read_remote_indicator(observed))

    def verify_local_indication(
        self,
        session: Session,
        expected_connected: bool,
        timeout: float,
    ) -> ConnectivityAssertion:
        """Wait until ``session``'s own self-view shows the expected state.

        Raises:
            VerificationTimeout: If the state is not observed in time.
        """
        assertion = ConnectivityAssertion(session, None, expected_connected, timeout)
        return self._poll(assertion, session.read_local_indicator)

    def _poll(self, assertion: ConnectivityAssertion, sample: Callable[[], bool]) -> ConnectivityAssertion:
        started = self.clock.monotonic()
        deadline = started + assertion.timeout
        consecutive_failures = 0

        log.debug(
            "verifying_connectivity",
            check=assertion.describe(),
            expected_connected=assertion.expected_connected,
            timeout=assertion.timeout,
        )

        while True:
            assertion.samples += 1
            try:
                observed = sample()
            except TransientObservationError as e:
                consecutive_failures += 1
                log.debug("connectivity_read_failed", check=assertion.describe(), attempt=consecutive_failures, error=str(e))
                if consecutive_failures >= self.max_transient_failures:
                    self._time_out(assertion, started)
                    raise VerificationTimeout(
                        assertion, reason=f"{consecutive_failures} consecutive read failures"
                    ) from e
            else:
                consecutive_failures = 0
                assertion.last_observed = bool(observed)
                if assertion.last_observed == assertion.expected_connected:
                    assertion.state = AssertionState.MATCHED
                    assertion.elapsed = self.clock.monotonic() - started
                    log.info(
                        "connectivity_matched",
                        check=assertion.describe(),
                        connected=assertion.expected_connected,
                        elapsed=round(assertion.elapsed, 3),
                    )
                    return assertion

            remaining = deadline - self.clock.monotonic()
            if remaining <= 0:
                self._time_out(assertion, started)
                raise VerificationTimeout(assertion)
            self.clock.sleep(min(self.poll_interval, remaining))

    def _time_out(self, assertion: ConnectivityAssertion, started: float) -> None:
        assertion.state = AssertionState.TIMED_OUT
        assertion.elapsed = self.clock.monotonic() - started
        log.error(
            "connectivity_timeout",
            check=assertion.describe(),
            expected_connected=assertion.expected_connected,
            last_observed=assertion.last_observed,
            samples=assertion.samples,
            elapsed=round(assertion.elapsed, 3),
        )
