"""
Fault-injection harness for multi-party conference connectivity tests.

Automated participants join a conference, the firewall script blocks a
participant's media port, and the verifier polls the other participants'
UI until they show the expected connectivity state.
"""

from confchaos.config import HarnessSettings, ScenarioTimings, configure_logging
from confchaos.errors import (
    ConfigurationError,
    ExternalProcessError,
    HarnessError,
    SessionLifecycleError,
    TransientObservationError,
    VerificationTimeout,
)
from confchaos.firewall import FaultInjector
from confchaos.pool import SessionPool
from confchaos.scenarios import (
    ConferenceSoakScenario,
    PeerConnectionStatusScenario,
    ScenarioContext,
    scenario_scope,
)
from confchaos.sessions import Session, SessionConfig, SessionKind
from confchaos.verify import AssertionState, ConnectivityAssertion, ConnectivityVerifier

__version__ = "0.1.0"

__all__ = [
    "AssertionState",
    "ConferenceSoakScenario",
    "ConfigurationError",
    "ConnectivityAssertion",
    "ConnectivityVerifier",
    "ExternalProcessError",
    "FaultInjector",
    "HarnessError",
    "HarnessSettings",
    "PeerConnectionStatusScenario",
    "ScenarioContext",
    "ScenarioTimings",
    "Session",
    "SessionConfig",
    "SessionKind",
    "SessionLifecycleError",
    "SessionPool",
    "TransientObservationError",
    "VerificationTimeout",
    "configure_logging",
    "__version__",
]
