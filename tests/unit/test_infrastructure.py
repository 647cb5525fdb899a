"""
Infrastructure smoke tests.

These tests verify that the package and the test doubles themselves are
wired correctly. They don't test conference behaviour.
"""

from __future__ import annotations

import os
from pathlib import Path

from confchaos.firewall import BLOCK_PORT_FLAG, CLEAR_RULES_FLAG, FaultInjector
from confchaos.sessions import Session

from lib.conference import SimulatedConference, SimulatedSession
from lib.fakes import FakeClock, FakeProvider, FakeWebDriver

REPO_ROOT = Path(__file__).parent.parent.parent


class TestInfrastructure:
    """Test that the testing infrastructure is set up correctly."""

    def test_package_exports(self):
        import confchaos

        for name in confchaos.__all__:
            assert hasattr(confchaos, name), f"confchaos.{name} missing"

    def test_example_firewall_script(self):
        """The bundled script exists, is executable and speaks both commands."""
        script = REPO_ROOT / "scripts" / "firewall.sh"
        assert script.exists(), f"Firewall script not found: {script}"
        assert os.access(script, os.X_OK)

        content = script.read_text()
        assert BLOCK_PORT_FLAG in content
        assert CLEAR_RULES_FLAG in content

        # Blocking also drops the bridge's TCP fallback port
        assert "CONFCHAOS_BRIDGE_TCP_PORT:-4443" in content
        assert '--dport "$BRIDGE_TCP_PORT" -j DROP' in content

        # Accepted as a fault injector script without running it
        FaultInjector(script)

    def test_simulated_session_is_a_session(self, conference: SimulatedConference):
        from confchaos.sessions import SessionConfig

        session = SimulatedSession(conference, 1, SessionConfig())

        assert isinstance(session, Session)

    def test_fake_clock_only_moves_on_sleep(self):
        clock = FakeClock(start=10.0)

        assert clock.monotonic() == 10.0
        clock.sleep(2.5)
        clock.sleep(0)

        assert clock.monotonic() == 12.5
        assert clock.sleeps == [2.5, 0]

    def test_fake_provider_records_leases(self):
        from confchaos.sessions import SessionConfig

        driver = FakeWebDriver()
        provider = FakeProvider(driver)

        lease = provider.acquire(SessionConfig(), 4)
        lease.release()

        assert lease.driver is driver
        assert provider.released == [4]
