"""
Harness configuration.

All settings are read from CONFCHAOS_* environment variables. Two browser
modes are supported:

1. External mode (CONFCHAOS_WEBDRIVER_URL set):
   - Every web session connects to the given WebDriver endpoint
     (a Selenium grid or a standalone browser node).

2. Managed mode (CONFCHAOS_WEBDRIVER_URL unset):
   - Each web session gets its own browser container started through
     the local Docker daemon and removed when the session stops.

Fault injection is enabled only when CONFCHAOS_FIREWALL_SCRIPT is set;
scenarios that need it are skipped otherwise.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Callable, TypeVar

import structlog

from confchaos.errors import ConfigurationError
from confchaos.sessions import SessionKind

ENV_PREFIX = "CONFCHAOS_"

DEFAULT_BROWSER_IMAGE = "selenium/standalone-chrome:latest"

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

T = TypeVar("T")


def env(name: str, default: str | None = None) -> str | None:
    """Read a CONFCHAOS_-prefixed environment variable."""
    value = os.environ.get(ENV_PREFIX + name)
    if value is None or not value.strip():
        return default
    return value.strip()


def require_env(name: str) -> str:
    """Get required environment variable or fail with clear error.

    Args:
        name: Variable name without the CONFCHAOS_ prefix.

    Returns:
        The environment variable value.

    Raises:
        ConfigurationError: If the variable is not set.
    """
    value = env(name)
    if value is None:
        raise ConfigurationError(
            f"Required environment variable {ENV_PREFIX}{name} is not set.\n"
            f"Export it before running conference scenarios."
        )
    return value


def _parse(name: str, default: T, convert: Callable[[str], T]) -> T:
    raw = env(name)
    if raw is None:
        return default
    try:
        return convert(raw)
    except ValueError as e:
        raise ConfigurationError(f"Invalid value for {ENV_PREFIX}{name}: {raw!r}") from e


def _positive_float(raw: str) -> float:
    value = float(raw)
    if value <= 0:
        raise ValueError("must be positive")
    return value


def _positive_int(raw: str) -> int:
    value = int(raw)
    if value <= 0:
        raise ValueError("must be positive")
    return value


@dataclass(frozen=True)
class ScenarioTimings:
    """Timing thresholds for conference scenarios, in seconds.

    The expiry and failed-ICE thresholds depend on how the media server is
    configured, so every one of them can be overridden per environment.
    """

    # Deadline for a peer's status change to show up in another session
    verify_timeout: float = 15.0

    # Deadline for a (re)started session to join the conference
    join_timeout: float = 10.0

    # Time a blocked peer needs before the server expires its channels
    channel_expiry_wait: float = 65.0

    # Time before the server reports a peer that never connected media
    fail_ice_grace: float = 17.0

    # Deadline for a late joiner to see an already expired peer
    late_joiner_timeout: float = 5.0

    # How long the soak scenario keeps the conference up
    soak_duration: float = 60.0

    @classmethod
    def from_env(cls) -> ScenarioTimings:
        defaults = cls()
        return cls(
            verify_timeout=_parse("VERIFY_TIMEOUT", defaults.verify_timeout, _positive_float),
            join_timeout=_parse("JOIN_TIMEOUT", defaults.join_timeout, _positive_float),
            channel_expiry_wait=_parse(
                "CHANNEL_EXPIRY_WAIT", defaults.channel_expiry_wait, _positive_float
            ),
            fail_ice_grace=_parse("FAIL_ICE_GRACE", defaults.fail_ice_grace, _positive_float),
            late_joiner_timeout=_parse(
                "LATE_JOINER_TIMEOUT", defaults.late_joiner_timeout, _positive_float
            ),
            soak_duration=_parse("SOAK_DURATION", defaults.soak_duration, _positive_float),
        )


@dataclass(frozen=True)
class HarnessSettings:
    """Settings threaded through pools, fault injector and scenarios."""

    # Conference under test
    conference_url: str = "https://localhost:8443"
    room: str = "confchaos"

    # Fault injection (None disables fault-injection scenarios)
    firewall_script: str | None = None
    script_timeout: float = 30.0

    # Web sessions: remote endpoint, or None for docker-managed browsers
    webdriver_url: str | None = None
    browser_image: str = DEFAULT_BROWSER_IMAGE

    # Mobile sessions
    appium_url: str | None = None
    mobile_platform: str = "Android"
    mobile_app: str | None = None

    # Kind used by hybrid pools when a config does not name one
    default_kind: SessionKind = SessionKind.WEB

    # Verifier
    poll_interval: float = 0.5
    max_transient_failures: int = 10

    timings: ScenarioTimings = field(default_factory=ScenarioTimings)

    log_level: str = "info"

    @property
    def fault_injection_enabled(self) -> bool:
        return self.firewall_script is not None

    @property
    def managed_browsers(self) -> bool:
        return self.webdriver_url is None

    @property
    def room_url(self) -> str:
        return f"{self.conference_url.rstrip('/')}/{self.room}"

    @classmethod
    def from_env(cls) -> HarnessSettings:
        """Build settings from CONFCHAOS_* environment variables.

        Raises:
            ConfigurationError: If a value cannot be parsed.
        """
        defaults = cls()
        kind_name = env("DEFAULT_KIND", defaults.default_kind.value)
        try:
            default_kind = SessionKind(kind_name.lower())
        except ValueError as e:
            raise ConfigurationError(f"Unknown session kind in {ENV_PREFIX}DEFAULT_KIND: {kind_name!r}") from e

        log_level = env("LOG_LEVEL", defaults.log_level).lower()
        try:
            log_level_number(log_level)
        except ConfigurationError as e:
            raise ConfigurationError(f"Invalid value for {ENV_PREFIX}LOG_LEVEL: {e}") from e

        return cls(
            conference_url=env("CONFERENCE_URL", defaults.conference_url),
            room=env("ROOM", defaults.room),
            firewall_script=env("FIREWALL_SCRIPT"),
            script_timeout=_parse("SCRIPT_TIMEOUT", defaults.script_timeout, _positive_float),
            webdriver_url=env("WEBDRIVER_URL"),
            browser_image=env("BROWSER_IMAGE", defaults.browser_image),
            appium_url=env("APPIUM_URL"),
            mobile_platform=env("MOBILE_PLATFORM", defaults.mobile_platform),
            mobile_app=env("MOBILE_APP"),
            default_kind=default_kind,
            poll_interval=_parse("POLL_INTERVAL", defaults.poll_interval, _positive_float),
            max_transient_failures=_parse(
                "MAX_TRANSIENT_FAILURES", defaults.max_transient_failures, _positive_int
            ),
            timings=ScenarioTimings.from_env(),
            log_level=log_level,
        )


def log_level_number(level: str) -> int:
    """Map a level name such as "debug" to its logging constant.

    Raises:
        ConfigurationError: If the name is not a known level.
    """
    number = LOG_LEVELS.get(level.strip().lower())
    if number is None:
        raise ConfigurationError(
            f"Unknown log level {level!r}; expected one of {', '.join(LOG_LEVELS)}"
        )
    return number


def configure_logging(level: str = "info") -> None:
    """Configure structlog for harness output.

    Events below ``level`` are dropped before any processor runs.
    """
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level_number(level)),
    )
