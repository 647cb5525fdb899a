"""
Automated conference participants.

A session is one client joined to the conference under test, driven over
the WebDriver protocol. Two kinds exist:

- WebSession: the web application in a browser (Selenium)
- MobileSession: the native application on a device or emulator
  (Appium, which speaks the same protocol)

Both implement the Session protocol independently; nothing outside the
factories cares which kind it holds. Per-session overrides are passed to
the application as URL fragment parameters, e.g. ``#config.failICE=true``.
"""

from __future__ import annotations

import enum
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Protocol, TypeVar, runtime_checkable
from urllib.parse import quote

import structlog
from selenium.common.exceptions import WebDriverException
from selenium.webdriver.common.by import By

from confchaos.clock import Clock, SystemClock
from confchaos.errors import ConfigurationError, SessionLifecycleError, TransientObservationError

if TYPE_CHECKING:
    from selenium.webdriver.remote.webdriver import WebDriver

    from confchaos.grid import DriverLease, DriverProvider

log = structlog.get_logger()

T = TypeVar("T")


class SessionKind(str, enum.Enum):
    """Kind of client a session drives."""

    WEB = "web"
    MOBILE = "mobile"


@dataclass(frozen=True)
class SessionConfig:
    """Immutable configuration a session is started with."""

    # None lets a hybrid factory pick its default kind
    kind: SessionKind | None = None

    # Opaque application overrides, e.g. {"config.failICE": "true"}
    overrides: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "overrides", MappingProxyType(dict(self.overrides)))

    def with_overrides(self, overrides: Mapping[str, str] | None = None, **pairs: str) -> SessionConfig:
        """Return a copy with extra overrides applied on top of these."""
        merged = dict(self.overrides)
        merged.update(overrides or {})
        merged.update(pairs)
        return SessionConfig(kind=self.kind, overrides=merged)

    def with_kind(self, kind: SessionKind) -> SessionConfig:
        return SessionConfig(kind=kind, overrides=self.overrides)


def room_url(base_url: str, overrides: Mapping[str, str]) -> str:
    """Build the room URL carrying overrides in the fragment."""
    if not overrides:
        return base_url
    fragment = "&".join(f"{key}={quote(str(value), safe='')}" for key, value in sorted(overrides.items()))
    return f"{base_url}#{fragment}"


@runtime_checkable
class Session(Protocol):
    """Capabilities every participant session provides."""

    ordinal: int
    kind: SessionKind
    config: SessionConfig

    @property
    def running(self) -> bool: ...

    @property
    def endpoint_id(self) -> str: ...

    def start(self, join_timeout: float) -> None: ...

    def stop(self) -> None: ...

    def wait_to_join(self, timeout: float) -> None: ...

    def hang_up(self) -> None: ...

    def read_media_port(self) -> int: ...

    def read_remote_indicator(self, observed: Session) -> bool: ...

    def read_local_indicator(self) -> bool: ...


def _observe(session: Session, what: str, read: Callable[[], T]) -> T:
    """Run a UI read, mapping automation failures to transient errors."""
    if not session.running:
        raise SessionLifecycleError(f"Cannot read {what} from a stopped session", session.ordinal, session.kind.value)
    try:
        return read()
    except WebDriverException as e:
        raise TransientObservationError(
            f"{session.kind.value} #{session.ordinal}: reading {what} failed: {e.msg or type(e).__name__}"
        ) from e


def _wait_until_joined(session: Session, is_joined: Callable[[], bool], clock: Clock, timeout: float) -> None:
    deadline = clock.monotonic() + timeout
    while True:
        try:
            if is_joined():
                log.info("session_joined", kind=session.kind.value, ordinal=session.ordinal)
                return
        except WebDriverException as e:
            log.debug("join_check_failed", ordinal=session.ordinal, error=e.msg)
        remaining = deadline - clock.monotonic()
        if remaining <= 0:
            raise SessionLifecycleError(
                f"Did not join the conference within {timeout}s", session.ordinal, session.kind.value
            )
        clock.sleep(min(0.5, remaining))


def _parse_port(raw: object, session: Session) -> int:
    if raw is None or str(raw).strip() == "":
        raise TransientObservationError(f"{session.kind.value} #{session.ordinal}: no media port in use yet")
    try:
        return int(str(raw).strip())
    except ValueError as e:
        raise TransientObservationError(
            f"{session.kind.value} #{session.ordinal}: unexpected media port {raw!r}"
        ) from e


def _quit(session: Session, lease: DriverLease) -> None:
    try:
        lease.driver.quit()
    except WebDriverException as e:
        raise SessionLifecycleError(
            f"Driver did not quit cleanly: {e.msg}", session.ordinal, session.kind.value
        ) from e
    finally:
        lease.release()


# =============================================================================
# Web
# =============================================================================

JOINED_JS = "return APP.conference.isJoined();"
ENDPOINT_ID_JS = "return APP.conference.getMyUserId();"
HANGUP_JS = "APP.conference.hangup(false);"

# First host UDP candidate of the bridge peer connection's local description
MEDIA_PORT_JS = """
var session = APP.conference._room.jvbJingleSession;
if (!session || !session.peerconnection) { return null; }
var description = session.peerconnection.peerconnection.localDescription;
if (!description) { return null; }
var lines = description.sdp.split('\\r\\n');
for (var i = 0; i < lines.length; i++) {
    var parts = lines[i].split(' ');
    if (lines[i].indexOf('a=candidate:') === 0 && parts[2].toLowerCase() === 'udp') {
        return parts[5];
    }
}
return null;
"""

REMOTE_INDICATOR_CSS = "#participant_{endpoint_id} .connection-indicator"
LOCAL_INDICATOR_CSS = "#localVideoContainer .connection-indicator"

# Indicator classes shown while a peer's media connection is down
DISCONNECTED_CLASSES = frozenset({"status-lost", "status-disconnected", "status-interrupted"})


def _indicator_connected(class_attribute: str | None) -> bool:
    classes = set((class_attribute or "").split())
    return not classes & DISCONNECTED_CLASSES


class WebSession:
    """A participant running the web application in a browser."""

    kind = SessionKind.WEB

    def __init__(
        self,
        ordinal: int,
        config: SessionConfig,
        lease: DriverLease,
        base_url: str,
        clock: Clock | None = None,
    ) -> None:
        self.ordinal = ordinal
        self.config = config
        self.base_url = base_url
        self._lease = lease
        self._clock = clock or SystemClock()
        self._running = False
        self._endpoint_id: str | None = None
        self._closed = False

    def __repr__(self) -> str:
        return f"WebSession(ordinal={self.ordinal}, running={self._running})"

    @property
    def driver(self) -> WebDriver:
        return self._lease.driver

    @property
    def running(self) -> bool:
        return self._running

    @property
    def endpoint_id(self) -> str:
        if self._endpoint_id is None:
            value = _observe(self, "endpoint id", lambda: self.driver.execute_script(ENDPOINT_ID_JS))
            if not value:
                raise TransientObservationError(f"web #{self.ordinal}: endpoint id not assigned yet")
            self._endpoint_id = str(value)
        return self._endpoint_id

    def start(self, join_timeout: float) -> None:
        url = room_url(self.base_url, self.config.overrides)
        log.info("starting_session", kind=self.kind.value, ordinal=self.ordinal, url=url)
        try:
            self.driver.get(url)
        except WebDriverException as e:
            raise SessionLifecycleError(f"Could not open {url}: {e.msg}", self.ordinal, self.kind.value) from e
        self._running = True
        self.wait_to_join(join_timeout)

    def wait_to_join(self, timeout: float) -> None:
        _wait_until_joined(self, lambda: bool(self.driver.execute_script(JOINED_JS)), self._clock, timeout)

    def hang_up(self) -> None:
        log.info("hanging_up", kind=self.kind.value, ordinal=self.ordinal)
        _observe(self, "hangup", lambda: self.driver.execute_script(HANGUP_JS))

    def stop(self) -> None:
        if self._closed:
            return
        log.info("stopping_session", kind=self.kind.value, ordinal=self.ordinal)
        self._running = False
        self._endpoint_id = None
        self._closed = True
        _quit(self, self._lease)

    def read_media_port(self) -> int:
        raw = _observe(self, "media port", lambda: self.driver.execute_script(MEDIA_PORT_JS))
        return _parse_port(raw, self)

    def read_remote_indicator(self, observed: Session) -> bool:
        selector = REMOTE_INDICATOR_CSS.format(endpoint_id=observed.endpoint_id)
        return _observe(
            self,
            f"indicator of #{observed.ordinal}",
            lambda: _indicator_connected(
                self.driver.find_element(By.CSS_SELECTOR, selector).get_attribute("class")
            ),
        )

    def read_local_indicator(self) -> bool:
        return _observe(
            self,
            "local indicator",
            lambda: _indicator_connected(
                self.driver.find_element(By.CSS_SELECTOR, LOCAL_INDICATOR_CSS).get_attribute("class")
            ),
        )


# =============================================================================
# Mobile
# =============================================================================

ACCESSIBILITY_ID = "accessibility id"

CONFERENCE_VIEW_ID = "conference-view"
ENDPOINT_ID_LABEL = "local-endpoint-id"
MEDIA_PORT_LABEL = "local-media-port"
HANGUP_BUTTON_ID = "hangup-button"
REMOTE_INDICATOR_ID = "connection-indicator-{endpoint_id}"
LOCAL_INDICATOR_ID = "connection-indicator-local"

DISCONNECTED_STATES = frozenset({"lost", "disconnected", "interrupted"})


class MobileSession:
    """A participant running the native application through Appium."""

    kind = SessionKind.MOBILE

    def __init__(
        self,
        ordinal: int,
        config: SessionConfig,
        lease: DriverLease,
        base_url: str,
        clock: Clock | None = None,
    ) -> None:
        self.ordinal = ordinal
        self.config = config
        self.base_url = base_url
        self._lease = lease
        self._clock = clock or SystemClock()
        self._running = False
        self._endpoint_id: str | None = None
        self._closed = False

    def __repr__(self) -> str:
        return f"MobileSession(ordinal={self.ordinal}, running={self._running})"

    @property
    def driver(self) -> WebDriver:
        return self._lease.driver

    @property
    def running(self) -> bool:
        return self._running

    @property
    def endpoint_id(self) -> str:
        if self._endpoint_id is None:
            value = _observe(self, "endpoint id", lambda: self._text(ENDPOINT_ID_LABEL))
            if not value:
                raise TransientObservationError(f"mobile #{self.ordinal}: endpoint id not shown yet")
            self._endpoint_id = value
        return self._endpoint_id

    def _text(self, accessibility_id: str) -> str:
        return self.driver.find_element(ACCESSIBILITY_ID, accessibility_id).text.strip()

    def start(self, join_timeout: float) -> None:
        # The app registers for the conference URL scheme, so get() opens it as a deep link
        url = room_url(self.base_url, self.config.overrides)
        log.info("starting_session", kind=self.kind.value, ordinal=self.ordinal, url=url)
        try:
            self.driver.get(url)
        except WebDriverException as e:
            raise SessionLifecycleError(f"Could not open {url}: {e.msg}", self.ordinal, self.kind.value) from e
        self._running = True
        self.wait_to_join(join_timeout)

    def wait_to_join(self, timeout: float) -> None:
        _wait_until_joined(
            self,
            lambda: self.driver.find_element(ACCESSIBILITY_ID, CONFERENCE_VIEW_ID).is_displayed(),
            self._clock,
            timeout,
        )

    def hang_up(self) -> None:
        log.info("hanging_up", kind=self.kind.value, ordinal=self.ordinal)
        _observe(self, "hangup", lambda: self.driver.find_element(ACCESSIBILITY_ID, HANGUP_BUTTON_ID).click())

    def stop(self) -> None:
        if self._closed:
            return
        log.info("stopping_session", kind=self.kind.value, ordinal=self.ordinal)
        self._running = False
        self._endpoint_id = None
        self._closed = True
        _quit(self, self._lease)

    def read_media_port(self) -> int:
        return _parse_port(_observe(self, "media port", lambda: self._text(MEDIA_PORT_LABEL)), self)

    def read_remote_indicator(self, observed: Session) -> bool:
        label = REMOTE_INDICATOR_ID.format(endpoint_id=observed.endpoint_id)
        state = _observe(self, f"indicator of #{observed.ordinal}", lambda: self._text(label))
        return state.lower() not in DISCONNECTED_STATES

    def read_local_indicator(self) -> bool:
        state = _observe(self, "local indicator", lambda: self._text(LOCAL_INDICATOR_ID))
        return state.lower() not in DISCONNECTED_STATES


# =============================================================================
# Factories
# =============================================================================


class SessionFactory(Protocol):
    """Builds and starts exactly one session."""

    def create(self, config: SessionConfig, ordinal: int) -> Session: ...


def _start_or_release(session: Session, join_timeout: float) -> Session:
    try:
        session.start(join_timeout)
    except Exception:
        log.error("session_start_failed", kind=session.kind.value, ordinal=session.ordinal)
        try:
            session.stop()
        except Exception as e:
            log.warning(
                "session_release_error",
                ordinal=session.ordinal,
                error=str(e),
                error_type=type(e).__name__,
            )
        raise
    return session


class WebSessionFactory:
    """Creates browser sessions from a driver provider."""

    kind = SessionKind.WEB

    def __init__(
        self,
        base_url: str,
        provider: DriverProvider,
        *,
        join_timeout: float = 10.0,
        clock: Clock | None = None,
    ) -> None:
        self.base_url = base_url
        self.provider = provider
        self.join_timeout = join_timeout
        self.clock = clock or SystemClock()

    def create(self, config: SessionConfig, ordinal: int) -> WebSession:
        if config.kind not in (None, SessionKind.WEB):
            raise ConfigurationError(f"Web factory cannot create a {config.kind.value} session")
        config = config.with_kind(SessionKind.WEB)
        lease = self.provider.acquire(config, ordinal)
        session = WebSession(ordinal, config, lease, self.base_url, self.clock)
        _start_or_release(session, self.join_timeout)
        return session


class MobileSessionFactory:
    """Creates native app sessions through an Appium endpoint."""

    kind = SessionKind.MOBILE

    def __init__(
        self,
        base_url: str,
        provider: DriverProvider,
        *,
        join_timeout: float = 10.0,
        clock: Clock | None = None,
    ) -> None:
        self.base_url = base_url
        self.provider = provider
        self.join_timeout = join_timeout
        self.clock = clock or SystemClock()

    def create(self, config: SessionConfig, ordinal: int) -> MobileSession:
        if config.kind not in (None, SessionKind.MOBILE):
            raise ConfigurationError(f"Mobile factory cannot create a {config.kind.value} session")
        config = config.with_kind(SessionKind.MOBILE)
        lease = self.provider.acquire(config, ordinal)
        session = MobileSession(ordinal, config, lease, self.base_url, self.clock)
        _start_or_release(session, self.join_timeout)
        return session


class HybridSessionFactory:
    """Dispatches to a per-kind factory based on the config's kind."""

    kind = None

    def __init__(self, factories: Mapping[SessionKind, SessionFactory], default_kind: SessionKind) -> None:
        if default_kind not in factories:
            raise ConfigurationError(f"No factory registered for default kind {default_kind.value}")
        self.factories = dict(factories)
        self.default_kind = default_kind

    def create(self, config: SessionConfig, ordinal: int) -> Session:
        kind = config.kind or self.default_kind
        factory = self.factories.get(kind)
        if factory is None:
            raise ConfigurationError(f"No factory registered for {kind.value} sessions")
        log.debug("dispatching_session", kind=kind.value, ordinal=ordinal)
        return factory.create(config.with_kind(kind), ordinal)
