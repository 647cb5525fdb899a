"""
Test doubles for the automation layer.

- FakeClock: deterministic time; sleeping just advances it
- FakeWebDriver / FakeElement: the small part of the Selenium WebDriver
  API that sessions use, driven by plain attributes
- FakeProvider: hands out FakeWebDrivers as driver leases
"""

from __future__ import annotations

import stat
from dataclasses import dataclass, field
from pathlib import Path

from selenium.common.exceptions import JavascriptException, NoSuchElementException, WebDriverException

from confchaos import sessions
from confchaos.grid import DriverLease


class FakeClock:
    """Monotonic clock that only moves when someone sleeps."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds > 0:
            self.now += seconds

    @property
    def slept(self) -> float:
        return sum(self.sleeps)


@dataclass
class FakeElement:
    """A located element with fixed attributes."""

    text: str = ""
    attributes: dict[str, str] = field(default_factory=dict)
    displayed: bool = True
    clicks: int = 0

    def get_attribute(self, name: str) -> str | None:
        return self.attributes.get(name)

    def is_displayed(self) -> bool:
        return self.displayed

    def click(self) -> None:
        self.clicks += 1


class FakeWebDriver:
    """Scriptable WebDriver stand-in.

    ``elements`` maps (by, value) locators to elements; anything missing
    raises NoSuchElementException like a not-yet-rendered element would.
    """

    def __init__(
        self,
        *,
        endpoint_id: str = "abcd1234",
        media_port: int | str | None = 10000,
        joined: bool = True,
    ) -> None:
        self.endpoint_id = endpoint_id
        self.media_port = media_port
        self.joined = joined
        self.elements: dict[tuple[str, str], FakeElement] = {}
        self.visited: list[str] = []
        self.scripts: list[str] = []
        self.quit_called = False
        self.fail_get: WebDriverException | None = None
        self.fail_quit: WebDriverException | None = None
        self.fail_scripts = 0

    def get(self, url: str) -> None:
        if self.fail_get is not None:
            raise self.fail_get
        self.visited.append(url)

    def execute_script(self, script: str, *args):
        self.scripts.append(script)
        if self.fail_scripts > 0:
            self.fail_scripts -= 1
            raise JavascriptException("APP is not defined")
        if script == sessions.JOINED_JS:
            return self.joined
        if script == sessions.ENDPOINT_ID_JS:
            return self.endpoint_id
        if script == sessions.MEDIA_PORT_JS:
            return self.media_port
        return None

    def find_element(self, by: str, value: str) -> FakeElement:
        try:
            return self.elements[(by, value)]
        except KeyError:
            raise NoSuchElementException(f"no element {by}={value}") from None

    def quit(self) -> None:
        self.quit_called = True
        if self.fail_quit is not None:
            raise self.fail_quit


class FakeProvider:
    """Driver provider returning prepared FakeWebDrivers in order."""

    def __init__(self, *drivers: FakeWebDriver) -> None:
        self.drivers = list(drivers)
        self.acquired: list[tuple[sessions.SessionConfig, int]] = []
        self.released: list[int] = []

    def acquire(self, config: sessions.SessionConfig, ordinal: int) -> DriverLease:
        self.acquired.append((config, ordinal))
        driver = self.drivers.pop(0) if self.drivers else FakeWebDriver()
        return DriverLease(
            driver=driver,  # type: ignore[arg-type]
            description=f"fake-{ordinal}",
            release=lambda: self.released.append(ordinal),
        )


SPY_SCRIPT = """#!/bin/sh
echo "$@" >> "{log_file}"
if [ -n "$SPY_FIREWALL_STDERR" ]; then
    echo "$SPY_FIREWALL_STDERR" >&2
fi
exit "${{SPY_FIREWALL_EXIT:-0}}"
"""

SPY_LOG_NAME = "firewall-spy.log"


def write_spy_script(directory: Path) -> Path:
    """Write an executable firewall script that logs its arguments."""
    script = directory / "firewall-spy.sh"
    script.write_text(SPY_SCRIPT.format(log_file=directory / SPY_LOG_NAME))
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


def spy_log(script: Path) -> list[str]:
    """Invocations recorded by the spy script, one argument string per call."""
    log_file = script.parent / SPY_LOG_NAME
    if not log_file.exists():
        return []
    return log_file.read_text().splitlines()
