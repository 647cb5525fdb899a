"""
Conference connectivity scenarios.

Scenarios run their steps strictly in order on one thread; the first
failing step ends the scenario. Whatever happens, ``scenario_scope``
clears the firewall rules and closes every session on the way out, so a
failed scenario cannot leave a blocked port or a live browser behind for
the next one.

PeerConnectionStatusScenario checks the media connectivity indicators:

1. Join with 2 participants.
2. Block the media port of the 2nd and check that both the 1st and the
   2nd itself show it as disconnected.
3. Unblock and check that both views recover.
4. Block the 2nd again and wait until the server expires its channels.
5. Join with a 3rd and check it sees the 2nd as disconnected at once and
   the 1st as connected.
6. Rejoin the 2nd with ICE forced to fail and check that the others are
   told it is disconnected even though it never connected.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

import structlog

from confchaos.clock import Clock, SystemClock
from confchaos.config import HarnessSettings, ScenarioTimings
from confchaos.errors import ConfigurationError, TransientObservationError
from confchaos.firewall import FaultInjector
from confchaos.pool import SessionPool
from confchaos.sessions import Session
from confchaos.verify import ConnectivityVerifier

log = structlog.get_logger()

FAIL_ICE_OVERRIDE = {"config.failICE": "true"}


@contextmanager
def scenario_scope(pool: SessionPool, injector: FaultInjector | None = None) -> Iterator[None]:
    """Guarantee cleanup of firewall rules and sessions on scenario exit.

    Rules are cleared before sessions close, and sessions are closed even
    if clearing failed. If the scenario itself failed, cleanup errors of
    any type are logged and the scenario's error propagates; if it passed,
    the first cleanup error is raised.
    """
    failed = False
    try:
        yield
    except BaseException:
        failed = True
        raise
    finally:
        cleanup_errors: list[Exception] = []
        if injector is not None:
            try:
                injector.clear_all_rules()
            except Exception as e:
                log.error("scenario_cleanup_rules_failed", error=str(e), error_type=type(e).__name__)
                cleanup_errors.append(e)
        try:
            pool.close_all()
        except Exception as e:
            log.error("scenario_cleanup_sessions_failed", error=str(e), error_type=type(e).__name__)
            cleanup_errors.append(e)
        log.info("scenario_cleaned_up", failed=failed, cleanup_errors=len(cleanup_errors))
        if cleanup_errors and not failed:
            raise cleanup_errors[0]


@dataclass
class ScenarioContext:
    """Everything a scenario step needs, threaded explicitly."""

    pool: SessionPool
    verifier: ConnectivityVerifier
    injector: FaultInjector | None = None
    timings: ScenarioTimings = field(default_factory=ScenarioTimings)
    clock: Clock = field(default_factory=SystemClock)

    # Last port blocked per ordinal, so the same port can be blocked again
    blocked_ports: dict[int, int] = field(default_factory=dict)

    @classmethod
    def from_settings(
        cls,
        settings: HarnessSettings,
        pool: SessionPool,
        clock: Clock | None = None,
    ) -> ScenarioContext:
        """Context with a fault injector when the settings enable one."""
        clock = clock or SystemClock()
        injector = None
        if settings.fault_injection_enabled:
            injector = FaultInjector(settings.firewall_script, timeout=settings.script_timeout)
        return cls(
            pool=pool,
            verifier=ConnectivityVerifier(
                settings.poll_interval, settings.max_transient_failures, clock
            ),
            injector=injector,
            timings=settings.timings,
            clock=clock,
        )

    def participant(self, ordinal: int) -> Session:
        return self.pool.require(ordinal)

    def require_injector(self) -> FaultInjector:
        if self.injector is None:
            raise ConfigurationError("Scenario needs fault injection but no firewall script is configured")
        return self.injector

    def wait(self, seconds: float, reason: str) -> None:
        log.info("waiting", seconds=seconds, reason=reason)
        self.clock.sleep(seconds)

    def read_media_port(self, session: Session) -> int:
        """Read a session's media port, waiting up to the join timeout for one."""
        deadline = self.clock.monotonic() + self.timings.join_timeout
        while True:
            try:
                return session.read_media_port()
            except TransientObservationError:
                if self.clock.monotonic() >= deadline:
                    raise
                self.clock.sleep(self.verifier.poll_interval)

    def block_media_port(self, ordinal: int) -> int:
        """Block the media port a participant currently uses and remember it."""
        session = self.participant(ordinal)
        port = self.read_media_port(session)
        log.info("participant_media_port", ordinal=ordinal, port=port)
        self.require_injector().block_port(port)
        self.blocked_ports[ordinal] = port
        return port

    def reblock_media_port(self, ordinal: int) -> int:
        """Block the port last blocked for a participant again."""
        port = self.blocked_ports.get(ordinal)
        if port is None:
            return self.block_media_port(ordinal)
        self.require_injector().block_port(port)
        return port

    def clear_rules(self) -> None:
        self.require_injector().clear_all_rules()

    def expect_seen(self, observer: int, observed: int, connected: bool, timeout: float | None = None) -> None:
        self.verifier.verify_remote_indication(
            self.participant(observer),
            self.participant(observed),
            connected,
            self.timings.verify_timeout if timeout is None else timeout,
        )

    def expect_self(self, ordinal: int, connected: bool, timeout: float | None = None) -> None:
        self.verifier.verify_local_indication(
            self.participant(ordinal),
            connected,
            self.timings.verify_timeout if timeout is None else timeout,
        )


class PeerConnectionStatusScenario:
    """Media connectivity indication for an interrupted, expired and failed peer."""

    name = "peer_connection_status"

    def __init__(self, context: ScenarioContext) -> None:
        self.ctx = context

    @property
    def steps(self):
        return [
            self.initialize,
            self.second_peer_interrupted,
            self.second_peer_restored,
            self.second_peer_expired,
            self.third_joins_while_second_expired,
            self.second_fails_ice_on_join,
        ]

    def run(self) -> None:
        self.ctx.require_injector()
        log.info("scenario_starting", scenario=self.name)
        with scenario_scope(self.ctx.pool, self.ctx.injector):
            for step in self.steps:
                log.info("scenario_step", scenario=self.name, step=step.__name__)
                step()
        log.info("scenario_passed", scenario=self.name)

    def initialize(self) -> None:
        self.ctx.pool.ensure(2)

    def second_peer_interrupted(self) -> None:
        self.ctx.block_media_port(2)
        self.ctx.expect_seen(1, 2, connected=False)
        self.ctx.expect_self(2, connected=False)

    def second_peer_restored(self) -> None:
        self.ctx.clear_rules()
        self.ctx.expect_seen(1, 2, connected=True)
        self.ctx.expect_self(2, connected=True)

    def second_peer_expired(self) -> None:
        self.ctx.reblock_media_port(2)
        self.ctx.expect_seen(1, 2, connected=False)
        self.ctx.expect_self(2, connected=False)
        self.ctx.wait(self.ctx.timings.channel_expiry_wait, "channel expiry")

    def third_joins_while_second_expired(self) -> None:
        self.ctx.pool.ensure(3)
        # 3rd never saw 2nd connected, so the server must report it right away
        self.ctx.expect_seen(3, 2, connected=False, timeout=self.ctx.timings.late_joiner_timeout)
        self.ctx.expect_seen(3, 1, connected=True)
        self.ctx.clear_rules()

    def second_fails_ice_on_join(self) -> None:
        self.ctx.pool.close(2)
        second = self.ctx.pool.create(2, FAIL_ICE_OVERRIDE)
        second.wait_to_join(self.ctx.timings.join_timeout)
        # Server marks a never-connected peer only after its grace period
        self.ctx.wait(self.ctx.timings.fail_ice_grace, "failed ICE grace period")
        self.ctx.expect_seen(1, 2, connected=False)
        self.ctx.expect_seen(3, 2, connected=False)


class ConferenceSoakScenario:
    """Keeps three participants in the conference for a while, then hangs up."""

    name = "conference_soak"

    def __init__(self, context: ScenarioContext, participants: int = 3) -> None:
        self.ctx = context
        self.participants = participants

    def run(self) -> None:
        log.info("scenario_starting", scenario=self.name, participants=self.participants)
        with scenario_scope(self.ctx.pool, self.ctx.injector):
            self.ctx.pool.ensure(self.participants)
            self.ctx.wait(self.ctx.timings.soak_duration, "soak")
            for session in self.ctx.pool:
                session.hang_up()
        log.info("scenario_passed", scenario=self.name)
