"""
Error taxonomy for conference fault-injection scenarios.

Every error raised by the harness derives from HarnessError so a scenario
driver can clean up on any harness failure before re-raising it.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from confchaos.verify import ConnectivityAssertion


class HarnessError(Exception):
    """Base class for all harness errors."""


class ConfigurationError(HarnessError):
    """Raised for missing or invalid settings before anything external runs."""


class ExternalProcessError(HarnessError):
    """Raised when the firewall script cannot be run or exits non-zero.

    Carries the command line, exit code and captured stderr so the
    failing rule change can be diagnosed from the test report alone.
    """

    def __init__(
        self,
        command: Sequence[str],
        returncode: int | None,
        stderr: str = "",
        reason: str | None = None,
    ) -> None:
        """Initialize process error.

        Args:
            command: The full command line that was run.
            returncode: Exit code, or None if the process never completed.
            stderr: Captured standard error output.
            reason: Short description used when there is no exit code.
        """
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        detail = reason or f"exited with code {returncode}"
        message = f"Command {' '.join(self.command)!r} {detail}"
        if stderr.strip():
            message += f"\nstderr:\n{stderr.strip()}"
        super().__init__(message)


class SessionLifecycleError(HarnessError):
    """Raised when a session cannot be started, stopped or used."""

    def __init__(self, message: str, ordinal: int | None = None, kind: str | None = None) -> None:
        self.ordinal = ordinal
        self.kind = kind
        prefix = ""
        if ordinal is not None:
            prefix = f"[{kind or 'session'} #{ordinal}] "
        super().__init__(prefix + message)


class TransientObservationError(HarnessError):
    """Raised when a single UI read fails in a way that may succeed later."""


class VerificationTimeout(HarnessError, AssertionError):
    """Raised when the expected connectivity state is not observed in time.

    Also an AssertionError so pytest reports it as a failed check rather
    than an error in the test harness.
    """

    def __init__(self, assertion: ConnectivityAssertion, reason: str | None = None) -> None:
        self.assertion = assertion
        self.last_observed = assertion.last_observed
        expected = "connected" if assertion.expected_connected else "disconnected"
        observed = {True: "connected", False: "disconnected", None: "nothing"}[assertion.last_observed]
        message = (
            f"{assertion.describe()} not reported as {expected} within "
            f"{assertion.timeout:.1f}s (last observed: {observed}, samples: {assertion.samples})"
        )
        if reason:
            message += f": {reason}"
        super().__init__(message)
