"""
WebDriver provisioning for participant sessions.

This module provides:
- RemoteDriverProvider: connects to an existing WebDriver endpoint
  (Selenium grid, standalone node, or an Appium server)
- DockerBrowserProvider: starts one browser container per session and
  removes it again when the session releases its driver

A provider hands out DriverLease objects. The session owning a lease
quits the driver and then calls ``lease.release()``.
"""

from __future__ import annotations

import json
import socket
import time
import urllib.error
import urllib.request
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

import structlog
from docker.errors import APIError, DockerException, NotFound
from selenium import webdriver
from selenium.common.exceptions import WebDriverException
from selenium.webdriver.common.options import ArgOptions

from confchaos.errors import SessionLifecycleError

if TYPE_CHECKING:
    from docker import DockerClient
    from docker.models.containers import Container
    from selenium.webdriver.remote.webdriver import WebDriver

    from confchaos.sessions import SessionConfig

log = structlog.get_logger()

WEBDRIVER_PORT = "4444/tcp"

# Chrome flags for unattended conference participants
CHROME_ARGUMENTS = (
    "--use-fake-ui-for-media-stream",
    "--use-fake-device-for-media-stream",
    "--autoplay-policy=no-user-gesture-required",
    "--ignore-certificate-errors",
    "--disable-dev-shm-usage",
)


def chrome_options(config: SessionConfig | None = None) -> webdriver.ChromeOptions:
    """Chrome options with fake media devices and no permission prompts."""
    options = webdriver.ChromeOptions()
    for argument in CHROME_ARGUMENTS:
        options.add_argument(argument)
    options.set_capability("acceptInsecureCerts", True)
    return options


def appium_options(platform: str, app: str | None) -> ArgOptions:
    """Capabilities for a conference app driven through Appium."""
    options = ArgOptions()
    options.set_capability("platformName", platform)
    automation = "UiAutomator2" if platform.lower() == "android" else "XCUITest"
    options.set_capability("appium:automationName", automation)
    options.set_capability("appium:autoGrantPermissions", True)
    options.set_capability("appium:newCommandTimeout", 300)
    if app:
        options.set_capability("appium:app", app)
    return options


def wait_for_port(host: str, port: int, timeout: float = 30.0) -> bool:
    """Wait for a TCP port to become available.

    Args:
        host: Host to connect to.
        port: Port number.
        timeout: Maximum time to wait.

    Returns:
        True if port is available, False if timeout.
    """
    start = time.monotonic()
    while time.monotonic() - start < timeout:
        try:
            with socket.create_connection((host, port), timeout=1.0):
                return True
        except OSError:
            time.sleep(0.5)
    return False


def wait_for_grid_ready(url: str, timeout: float = 30.0, interval: float = 0.5) -> bool:
    """Poll a Selenium node's /status endpoint until it reports ready."""
    status_url = f"{url.rstrip('/')}/status"
    start = time.monotonic()
    while time.monotonic() - start < timeout:
        try:
            with urllib.request.urlopen(status_url, timeout=2.0) as response:
                payload = json.loads(response.read().decode("utf-8"))
            if payload.get("value", {}).get("ready"):
                return True
        except (urllib.error.URLError, OSError, ValueError):
            pass
        time.sleep(interval)
    return False


@dataclass
class DriverLease:
    """A connected WebDriver plus whatever must be torn down after it quits."""

    driver: WebDriver
    description: str
    release: Callable[[], None] = field(default=lambda: None)


class DriverProvider(Protocol):
    """Hands out connected WebDrivers for new sessions."""

    def acquire(self, config: SessionConfig, ordinal: int) -> DriverLease: ...


class RemoteDriverProvider:
    """Connects every session to one WebDriver endpoint."""

    def __init__(
        self,
        url: str,
        options_factory: Callable[[SessionConfig], ArgOptions] = chrome_options,
    ) -> None:
        self.url = url
        self.options_factory = options_factory

    def acquire(self, config: SessionConfig, ordinal: int) -> DriverLease:
        log.info("connecting_driver", url=self.url, ordinal=ordinal)
        try:
            driver = webdriver.Remote(command_executor=self.url, options=self.options_factory(config))
        except WebDriverException as e:
            raise SessionLifecycleError(
                f"WebDriver endpoint {self.url} refused a new session: {e.msg}",
                ordinal=ordinal,
            ) from e
        return DriverLease(driver=driver, description=self.url)


class DockerBrowserProvider:
    """Starts a dedicated browser container for each session.

    The container publishes its WebDriver port on a random host port, so
    several sessions can run side by side on one Docker daemon.
    """

    def __init__(
        self,
        client: DockerClient,
        image: str,
        *,
        startup_timeout: float = 60.0,
        shm_size: str = "2g",
    ) -> None:
        """Initialize browser provider.

        Args:
            client: Docker client instance.
            image: Selenium standalone browser image.
            startup_timeout: Seconds to wait for the node to become ready.
            shm_size: Shared memory size for the browser container.
        """
        self.client = client
        self.image = image
        self.startup_timeout = startup_timeout
        self.shm_size = shm_size

    def acquire(self, config: SessionConfig, ordinal: int) -> DriverLease:
        name = f"confchaos-browser-{ordinal}-{uuid.uuid4().hex[:8]}"
        log.info("starting_browser_container", name=name, image=self.image)

        try:
            container = self.client.containers.run(
                self.image,
                name=name,
                detach=True,
                ports={WEBDRIVER_PORT: None},
                shm_size=self.shm_size,
            )
        except DockerException as e:
            raise SessionLifecycleError(
                f"Could not start browser container from {self.image}: {e}", ordinal=ordinal
            ) from e

        def release() -> None:
            self._remove(container)

        try:
            url = self._webdriver_url(container)
            if not wait_for_grid_ready(url, timeout=self.startup_timeout):
                logs = container.logs(tail=50).decode("utf-8", errors="replace")
                log.error("browser_container_not_ready", name=name, logs=logs)
                raise SessionLifecycleError(
                    f"Browser container {name} not ready after {self.startup_timeout}s",
                    ordinal=ordinal,
                )
            driver = webdriver.Remote(command_executor=url, options=chrome_options(config))
        except WebDriverException as e:
            release()
            raise SessionLifecycleError(
                f"Browser container {name} refused a new session: {e.msg}", ordinal=ordinal
            ) from e
        except Exception:
            release()
            raise

        log.info("browser_container_started", name=name, id=container.short_id, url=url)
        return DriverLease(driver=driver, description=name, release=release)

    def _webdriver_url(self, container: Container) -> str:
        container.reload()
        bindings = container.attrs.get("NetworkSettings", {}).get("Ports", {}).get(WEBDRIVER_PORT)
        if not bindings:
            raise SessionLifecycleError(f"Container {container.name} did not publish {WEBDRIVER_PORT}")
        host_port = int(bindings[0]["HostPort"])
        if not wait_for_port("127.0.0.1", host_port, timeout=self.startup_timeout):
            raise SessionLifecycleError(
                f"Container {container.name} port {host_port} did not open"
            )
        return f"http://127.0.0.1:{host_port}"

    def _remove(self, container: Container) -> None:
        log.info("removing_browser_container", name=container.name)
        try:
            container.stop(timeout=5)
            container.remove(force=True)
        except NotFound:
            log.debug("browser_container_already_gone", name=container.name)
        except APIError as e:
            log.error("browser_container_remove_error", name=container.name, error=str(e))
