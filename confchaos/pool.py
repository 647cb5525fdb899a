"""
Ordinal-keyed pool of conference participants.

Sessions live in slots numbered from 1 ("first", "second", "third"
participant). Slots are created lazily, never renumbered, and a closed
slot stays empty until something creates a session there again.

Usage:
    with SessionPool.web(settings) as pool:
        pool.ensure(2)
        owner, peer = pool.first, pool.second
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from types import TracebackType

import structlog

from confchaos.clock import Clock
from confchaos.config import HarnessSettings
from confchaos.errors import ConfigurationError, SessionLifecycleError
from confchaos.grid import DockerBrowserProvider, RemoteDriverProvider, appium_options
from confchaos.sessions import (
    HybridSessionFactory,
    MobileSessionFactory,
    Session,
    SessionConfig,
    SessionFactory,
    SessionKind,
    WebSessionFactory,
)

log = structlog.get_logger()


class SessionPool:
    """Owns the live sessions of one scenario run."""

    def __init__(
        self,
        factory: SessionFactory,
        *,
        kind: SessionKind | None = None,
        base_config: SessionConfig | None = None,
    ) -> None:
        """Initialize the pool.

        Args:
            factory: Factory used for every session of this pool.
            kind: Kind every session must have, or None for a hybrid pool.
            base_config: Config all sessions start from before overrides.
        """
        self.factory = factory
        self.kind = kind
        self.base_config = base_config or SessionConfig(kind=kind)
        if kind is not None:
            self.base_config = self.base_config.with_kind(kind)
        self._slots: dict[int, Session] = {}

    # =========================================================================
    # Construction from settings
    # =========================================================================

    @classmethod
    def web(cls, settings: HarnessSettings, clock: Clock | None = None, docker_client=None) -> SessionPool:
        return cls(web_factory(settings, clock, docker_client), kind=SessionKind.WEB)

    @classmethod
    def mobile(cls, settings: HarnessSettings, clock: Clock | None = None) -> SessionPool:
        return cls(mobile_factory(settings, clock), kind=SessionKind.MOBILE)

    @classmethod
    def hybrid(cls, settings: HarnessSettings, clock: Clock | None = None, docker_client=None) -> SessionPool:
        factories: dict[SessionKind, SessionFactory] = {
            SessionKind.WEB: web_factory(settings, clock, docker_client),
        }
        if settings.appium_url:
            factories[SessionKind.MOBILE] = mobile_factory(settings, clock)
        return cls(HybridSessionFactory(factories, settings.default_kind))

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def ensure(self, count: int) -> list[int]:
        """Make sure ordinals 1..count each hold a live session.

        Missing sessions are created in ascending order. If a creation
        fails the error propagates and sessions created before it stay
        live.

        Returns:
            The ordinals created by this call.
        """
        if count < 0:
            raise ValueError(f"count must be non-negative, got {count}")

        created = []
        for ordinal in range(1, count + 1):
            if ordinal in self._slots:
                continue
            self.create(ordinal)
            created.append(ordinal)

        log.debug("pool_ensured", count=count, created=created)
        return created

    def create(
        self,
        ordinal: int,
        overrides: Mapping[str, str] | None = None,
        *,
        kind: SessionKind | None = None,
    ) -> Session:
        """Start a session at an empty ordinal.

        Args:
            ordinal: 1-based slot to fill.
            overrides: Application overrides on top of the pool's base config.
            kind: Kind for this session; only hybrid pools accept one that differs.

        Raises:
            SessionLifecycleError: If the slot is occupied or the session fails to start.
            ConfigurationError: If the overrides ask for a kind this pool cannot hold.
        """
        self._check_ordinal(ordinal)
        if ordinal in self._slots:
            raise SessionLifecycleError("Slot already holds a live session", ordinal)

        if kind is not None and self.kind is not None and kind is not self.kind:
            raise ConfigurationError(f"Pool only holds {self.kind.value} sessions")

        config = self.base_config.with_overrides(overrides)
        if kind is not None:
            config = config.with_kind(kind)
        log.info("creating_session", ordinal=ordinal, kind=(config.kind or "default"), overrides=dict(config.overrides))
        session = self.factory.create(config, ordinal)

        if self.kind is not None and session.kind is not self.kind:
            session.stop()
            raise ConfigurationError(
                f"Pool of {self.kind.value} sessions received a {session.kind.value} session"
            )

        self._slots[ordinal] = session
        log.info("session_created", ordinal=ordinal, kind=session.kind.value)
        return session

    def get(self, ordinal: int) -> Session | None:
        """Return the live session at an ordinal, or None."""
        return self._slots.get(ordinal)

    def require(self, ordinal: int) -> Session:
        """Return the live session at an ordinal or fail."""
        session = self._slots.get(ordinal)
        if session is None:
            raise SessionLifecycleError("No live session in this slot", ordinal)
        return session

    def close(self, ordinal: int) -> None:
        """Stop the session at an ordinal and clear the slot.

        Closing an empty slot does nothing. The slot is cleared even if the
        driver fails to stop; that failure is re-raised.
        """
        session = self._slots.pop(ordinal, None)
        if session is None:
            return
        log.info("closing_session", ordinal=ordinal, kind=session.kind.value)
        session.stop()

    def close_all(self) -> None:
        """Close every live slot, then raise the first failure if any.

        A failing stop, whether a lifecycle error or a dead connection to
        the grid, never keeps the remaining slots open.
        """
        errors: list[Exception] = []
        for ordinal in sorted(self._slots):
            try:
                self.close(ordinal)
            except Exception as e:
                log.error("session_close_error", ordinal=ordinal, error=str(e), error_type=type(e).__name__)
                errors.append(e)
        if errors:
            raise errors[0]

    # =========================================================================
    # Accessors
    # =========================================================================

    @property
    def first(self) -> Session | None:
        return self.get(1)

    @property
    def second(self) -> Session | None:
        return self.get(2)

    @property
    def third(self) -> Session | None:
        return self.get(3)

    def live_ordinals(self) -> list[int]:
        return sorted(self._slots)

    def __len__(self) -> int:
        return len(self._slots)

    def __iter__(self) -> Iterator[Session]:
        return iter([self._slots[o] for o in sorted(self._slots)])

    def __enter__(self) -> SessionPool:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close_all()

    @staticmethod
    def _check_ordinal(ordinal: int) -> None:
        if isinstance(ordinal, bool) or not isinstance(ordinal, int) or ordinal < 1:
            raise ValueError(f"Ordinals start at 1, got {ordinal!r}")


def web_factory(settings: HarnessSettings, clock: Clock | None = None, docker_client=None) -> WebSessionFactory:
    """Web factory in external or managed browser mode, depending on settings."""
    if settings.webdriver_url:
        provider = RemoteDriverProvider(settings.webdriver_url)
    else:
        if docker_client is None:
            import docker

            docker_client = docker.from_env()
        provider = DockerBrowserProvider(docker_client, settings.browser_image)
    return WebSessionFactory(
        settings.room_url,
        provider,
        join_timeout=settings.timings.join_timeout,
        clock=clock,
    )


def mobile_factory(settings: HarnessSettings, clock: Clock | None = None) -> MobileSessionFactory:
    if not settings.appium_url:
        raise ConfigurationError("CONFCHAOS_APPIUM_URL is required for mobile sessions")
    provider = RemoteDriverProvider(
        settings.appium_url,
        options_factory=lambda config: appium_options(settings.mobile_platform, settings.mobile_app),
    )
    return MobileSessionFactory(
        settings.room_url,
        provider,
        join_timeout=settings.timings.join_timeout,
        clock=clock,
    )
