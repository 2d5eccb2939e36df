"""
nsmcheck: Nitro Secure Module Conformance Checker

Version: 1.0.0

Drives an NSM through a scripted sequence of operations and asserts at every
step that what the device reports matches its security contract:

- PCRs 0-15 are locked at boot and stay locked
- Extension is hash chaining, and never succeeds on a locked PCR
- Locks are one-way and the bulk lock range is exact
- Attestation documents are issued for every combination of inputs
- The random source never repeats itself

The first deviation stops the run and is reported as a structured
ConformanceViolation.

Usage:
    from nsmcheck import NsmDriver, ScenarioRunner, SimulatedNsm

    # Against the real device (inside an enclave)
    report = ScenarioRunner(NsmDriver("/dev/nsm")).run()

    # Against the simulator, with a misbehaving firmware
    report = ScenarioRunner(SimulatedNsm(faults=["silent-relock"])).run()

    if report.passed():
        print("conformant")
    else:
        print(report.violation.to_dict())
"""

__version__ = "1.0.0"

# Device API
from .api import (
    NsmCheckError,
    ErrorCode,
    Digest,
    DeviceError,
    DeviceUnavailableError,
    SessionClosedError,
    DeviceDescription,
)

# Register model
from .model import (
    InvalidDescription,
    Register,
    RegisterModel,
    digest_width,
    extend_value,
)

# Sessions and transports
from .device import Transport, DeviceSession, open_session
from .driver import NsmDriver
from .simulator import SimulatedNsm, Fault

# Checks and runner
from .models import SuiteParameters
from .checks import ConformanceViolation, CHECK_DESCRIPTIONS
from .runner import RunState, RunReport, ScenarioRunner, run_conformance


__all__ = [
    # Version
    "__version__",

    # API
    "NsmCheckError",
    "ErrorCode",
    "Digest",
    "DeviceError",
    "DeviceUnavailableError",
    "SessionClosedError",
    "DeviceDescription",

    # Model
    "InvalidDescription",
    "Register",
    "RegisterModel",
    "digest_width",
    "extend_value",

    # Devices
    "Transport",
    "DeviceSession",
    "open_session",
    "NsmDriver",
    "SimulatedNsm",
    "Fault",

    # Conformance
    "SuiteParameters",
    "ConformanceViolation",
    "CHECK_DESCRIPTIONS",
    "RunState",
    "RunReport",
    "ScenarioRunner",
    "run_conformance",
]
