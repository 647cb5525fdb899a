"""
Pytest configuration and fixtures for conference fault-injection tests.

This module provides:
- Deterministic clock and simulated conference fixtures for unit and
  scenario tests
- A spy firewall script that records its invocations on disk
- Live fixtures (settings, session pool, fault injector) for end-to-end
  runs against a real conference

Live runs are configured entirely through CONFCHAOS_* environment
variables:

1. External browsers:
   - Set CONFCHAOS_WEBDRIVER_URL to a Selenium grid or node
2. Managed browsers:
   - Leave CONFCHAOS_WEBDRIVER_URL unset; one browser container per
     participant is started through Docker

Tests marked ``browser`` are skipped unless CONFCHAOS_CONFERENCE_URL is
set; tests marked ``fault_injection`` are skipped unless
CONFCHAOS_FIREWALL_SCRIPT is set as well.
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog

from confchaos.config import HarnessSettings, configure_logging, env, require_env
from confchaos.firewall import FaultInjector
from confchaos.pool import SessionPool
from confchaos.scenarios import ScenarioContext
from confchaos.verify import ConnectivityVerifier

from lib.conference import SimulatedConference, SimulatedSessionFactory
from lib.fakes import FakeClock, write_spy_script

# Configure structlog for tests; the settings fixture re-applies it for live runs
configure_logging(env("LOG_LEVEL", "info"))
log = structlog.get_logger()


def is_live_mode() -> bool:
    """Check if a real conference is configured."""
    return env("CONFERENCE_URL") is not None


# =============================================================================
# Deterministic fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    """Fake clock; sleeps advance time instantly."""
    return FakeClock()


@pytest.fixture
def conference(clock: FakeClock) -> SimulatedConference:
    """Simulated conference and firewall sharing the fake clock."""
    return SimulatedConference(clock)


@pytest.fixture
def session_factory(conference: SimulatedConference) -> SimulatedSessionFactory:
    return SimulatedSessionFactory(conference)


@pytest.fixture
def pool(session_factory: SimulatedSessionFactory) -> Iterator[SessionPool]:
    """Session pool over simulated web sessions, closed after the test."""
    pool = SessionPool(session_factory)
    yield pool
    pool.close_all()


@pytest.fixture
def spy_script(tmp_path: Path) -> Path:
    """Executable firewall script that appends its arguments to a log file.

    Set SPY_FIREWALL_EXIT / SPY_FIREWALL_STDERR (e.g. with monkeypatch) to
    make it fail.

    Returns:
        Path to the script; the log is ``spy_log(script)``.
    """
    return write_spy_script(tmp_path)


@pytest.fixture
def simulated_injector(spy_script: Path, conference: SimulatedConference) -> FaultInjector:
    """Fault injector whose commands act on the simulated conference."""
    return FaultInjector(spy_script, runner=conference.run_firewall)


@pytest.fixture
def scenario_context(
    pool: SessionPool,
    simulated_injector: FaultInjector,
    clock: FakeClock,
) -> ScenarioContext:
    """Scenario context wired entirely to simulated collaborators."""
    return ScenarioContext(
        pool=pool,
        verifier=ConnectivityVerifier(poll_interval=0.5, max_transient_failures=5, clock=clock),
        injector=simulated_injector,
        clock=clock,
    )


# =============================================================================
# Live fixtures
# =============================================================================


@pytest.fixture(scope="session")
def settings() -> HarnessSettings:
    """Harness settings from CONFCHAOS_* environment variables.

    Also applies CONFCHAOS_LOG_LEVEL to the harness logging.
    """
    settings = HarnessSettings.from_env()
    configure_logging(settings.log_level)
    return settings


@pytest.fixture(scope="session")
def docker_client(settings: HarnessSettings):
    """Docker client for managed browser containers.

    None in external browser mode.
    """
    if not settings.managed_browsers:
        return None

    import docker
    from docker.errors import DockerException

    try:
        client = docker.from_env()
        client.ping()
    except DockerException as e:
        log.warning("docker_unavailable", error=str(e))
        pytest.skip("Docker not available for managed browsers")
    return client


@pytest.fixture
def fault_injector(settings: HarnessSettings) -> FaultInjector:
    """Fault injector for the configured firewall script.

    Skips the test when no script is configured.
    """
    if not settings.fault_injection_enabled:
        pytest.skip("CONFCHAOS_FIREWALL_SCRIPT not set")
    return FaultInjector(settings.firewall_script, timeout=settings.script_timeout)


@pytest.fixture
def live_pool(settings: HarnessSettings, docker_client) -> Iterator[SessionPool]:
    """Web session pool against the configured conference.

    Fails with a clear message if CONFCHAOS_CONFERENCE_URL is not set.
    """
    require_env("CONFERENCE_URL")
    pool = SessionPool.web(settings, docker_client=docker_client)
    yield pool
    pool.close_all()


@pytest.fixture
def live_context(settings: HarnessSettings, live_pool: SessionPool) -> ScenarioContext:
    """Scenario context for the live pool; fault injection only if configured."""
    return ScenarioContext.from_settings(settings, live_pool)


# =============================================================================
# Pytest hooks and configuration
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line("markers", "browser: tests driving real conference participants")
    config.addinivalue_line("markers", "fault_injection: tests requiring the firewall script")


def pytest_collection_modifyitems(config, items):
    """Skip live tests when no conference or firewall script is configured."""
    skip_browser = pytest.mark.skip(reason="CONFCHAOS_CONFERENCE_URL not set")
    skip_firewall = pytest.mark.skip(reason="CONFCHAOS_FIREWALL_SCRIPT not set")
    has_firewall = env("FIREWALL_SCRIPT") is not None

    for item in items:
        if "browser" in item.keywords and not is_live_mode():
            item.add_marker(skip_browser)
        elif "fault_injection" in item.keywords and not has_firewall:
            item.add_marker(skip_firewall)


def pytest_report_header(config):
    """Add information to the pytest header."""
    lines = ["Conference fault-injection suite"]
    if is_live_mode():
        lines.append(f"  Conference: {env('CONFERENCE_URL')}")
        webdriver_url = env("WEBDRIVER_URL")
        lines.append(f"  Browsers: {webdriver_url or 'managed (docker)'}")
        lines.append(f"  Firewall script: {env('FIREWALL_SCRIPT', 'not set')}")
    else:
        lines.append("  Mode: simulated (no conference configured)")
    return lines
