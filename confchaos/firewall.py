"""
Port-level fault injection through an external firewall script.

The script is expected to support two commands:

1. ``--block-port <port>`` adjusts firewall rules to drop TCP and UDP
   traffic, inbound and outbound, on the given port. Whether a port blocked
   by an earlier call stays blocked is up to the script. It MUST also drop
   all traffic to the media bridge's TCP port (4443 by default) so media
   cannot fall back to TCP, and MUST never cut the signaling server's own
   port for every peer.

2. ``--clear-rules`` removes the rules for all previously blocked ports.

Only the exit status is interpreted. The script keeps its own record of
what is blocked, so FaultInjector holds nothing but the script path and a
single instance can be shared across a whole run.

Usage:
    injector = FaultInjector(settings.firewall_script)
    with injector.blocked(peer.read_media_port()):
        verifier.verify_remote_indication(owner, peer, False, timeout=15)
"""

from __future__ import annotations

import os
import subprocess
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

import structlog

from confchaos.errors import ConfigurationError, ExternalProcessError

log = structlog.get_logger()

MIN_PORT = 0
MAX_PORT = 65535

BLOCK_PORT_FLAG = "--block-port"
CLEAR_RULES_FLAG = "--clear-rules"

DEFAULT_SCRIPT_TIMEOUT = 30.0

CommandRunner = Callable[..., "subprocess.CompletedProcess[str]"]


def parse_port(port: int | str) -> int:
    """Validate a port number given as an int or a decimal string.

    Raises:
        ConfigurationError: If the value is not an integer in [0, 65535].
    """
    if isinstance(port, bool):
        raise ConfigurationError(f"Invalid port number: {port!r}")
    if isinstance(port, int):
        number = port
    else:
        try:
            number = int(str(port).strip())
        except ValueError as e:
            raise ConfigurationError(f"Invalid port number: {port!r}") from e

    if not MIN_PORT <= number <= MAX_PORT:
        raise ConfigurationError(f"Invalid port number: {port!r}")
    return number


class FaultInjector:
    """Blocks and unblocks ports by invoking the firewall script."""

    def __init__(
        self,
        script: str | Path | None,
        *,
        runner: CommandRunner = subprocess.run,
        timeout: float = DEFAULT_SCRIPT_TIMEOUT,
    ) -> None:
        """Initialize the injector.

        Args:
            script: Path to the firewall script.
            runner: Callable with the subprocess.run signature.
            timeout: Seconds to wait for a single script invocation.

        Raises:
            ConfigurationError: If the script path is missing or not a file.
        """
        if script is None or not str(script).strip():
            raise ConfigurationError("No firewall script configured; fault injection is disabled")

        path = Path(script)
        if not path.is_file():
            raise ConfigurationError(f"Firewall script not found: {path}")
        if not os.access(path, os.X_OK):
            raise ConfigurationError(f"Firewall script is not executable: {path}")

        self.script = path
        self.timeout = timeout
        self._runner = runner

    def block_port(self, port: int | str) -> int:
        """Block TCP and UDP traffic in both directions on a port.

        Args:
            port: Port number, as an int or a decimal string.

        Returns:
            The validated port number.

        Raises:
            ConfigurationError: If the port is invalid. Nothing is run.
            ExternalProcessError: If the script fails.
        """
        number = parse_port(port)
        log.info("blocking_port", port=number, script=str(self.script))
        self._run(BLOCK_PORT_FLAG, str(number))
        return number

    def clear_all_rules(self) -> None:
        """Remove every block applied so far.

        Raises:
            ExternalProcessError: If the script fails.
        """
        log.info("clearing_firewall_rules", script=str(self.script))
        self._run(CLEAR_RULES_FLAG)

    @contextmanager
    def blocked(self, port: int | str) -> Iterator[int]:
        """Block a port for the duration of the context.

        All rules are cleared on exit, whether or not the body raised.

        Example:
            with injector.blocked(5000):
                # Peer using port 5000 has no media connectivity
                pass
        """
        number = self.block_port(port)
        try:
            yield number
        finally:
            self.clear_all_rules()

    def _run(self, *args: str) -> None:
        command = [str(self.script), *args]
        try:
            result = self._runner(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            log.error("firewall_script_timeout", command=command, timeout=self.timeout)
            raise ExternalProcessError(
                command, None, reason=f"timed out after {self.timeout}s"
            ) from e
        except OSError as e:
            log.error("firewall_script_launch_failed", command=command, error=str(e))
            raise ExternalProcessError(command, None, reason=f"could not be started: {e}") from e

        if result.stdout:
            log.debug("firewall_script_output", command=command, stdout=result.stdout.strip())

        if result.returncode != 0:
            log.error(
                "firewall_script_failed",
                command=command,
                returncode=result.returncode,
                stderr=(result.stderr or "").strip(),
            )
            raise ExternalProcessError(command, result.returncode, result.stderr or "")

        log.debug("firewall_script_succeeded", command=command)

