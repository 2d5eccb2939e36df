"""
NSM Scenario Runner

Drives one conformance run against a device:

1. Acquire a session on the transport
2. Describe the device and build the register model from it
3. Run the scenarios in order, passing every observation through the checks
4. Stop at the first violation
5. Release the session, whatever happened

State machine:
    INIT -> DESCRIBED_VALIDATED -> INITIAL_PCRS_AUDITED
         -> LOCKS_AND_EXTEND_AUDITED -> ATTESTATION_AUDITED
         -> RANDOMNESS_AUDITED -> DONE
    any state -> FAILED (first violation, terminal)

Setup errors (the device cannot be opened, or its description cannot back a
register model) are not violations: they propagate to the caller once the
session has been released.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import checks
from .api import DeviceDescription, DeviceUnavailableError
from .checks import ConformanceViolation
from .device import DeviceSession, Transport, open_session
from .logging_config import conformance_log, set_run_id
from .model import InvalidDescription, Register, RegisterModel
from .models import SuiteParameters

ATTESTATION_FILL = 128


class RunState(str, Enum):
    """Runner states; DONE and FAILED are terminal."""
    INIT = "INIT"
    DESCRIBED_VALIDATED = "DESCRIBED_VALIDATED"
    INITIAL_PCRS_AUDITED = "INITIAL_PCRS_AUDITED"
    LOCKS_AND_EXTEND_AUDITED = "LOCKS_AND_EXTEND_AUDITED"
    ATTESTATION_AUDITED = "ATTESTATION_AUDITED"
    RANDOMNESS_AUDITED = "RANDOMNESS_AUDITED"
    DONE = "DONE"
    FAILED = "FAILED"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class RunReport:
    """Outcome of one conformance run."""
    run_id: str
    transport: str
    state: RunState
    history: List[RunState]
    started_at: str
    finished_at: str
    checks_passed: int = 0
    scenarios_passed: List[str] = field(default_factory=list)
    description: Optional[DeviceDescription] = None
    violation: Optional[ConformanceViolation] = None
    failed_scenario: Optional[str] = None

    def passed(self) -> bool:
        return self.state == RunState.DONE

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "run_id": self.run_id,
            "transport": self.transport,
            "state": self.state.value,
            "passed": self.passed(),
            "history": [s.value for s in self.history],
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "checks_passed": self.checks_passed,
            "scenarios_passed": list(self.scenarios_passed),
        }
        if self.description is not None:
            d["description"] = self.description.to_dict()
        if self.violation is not None:
            d["failed_scenario"] = self.failed_scenario
            d["violation"] = self.violation.to_dict()
        return d


class ScenarioRunner:
    """
    Fail-fast conformance runner.

    The runner owns the device session for the whole run and keeps the last
    observed state of every register, so later reads can be compared against
    what the device already reported.
    """

    SCENARIOS: Tuple[Tuple[str, RunState], ...] = (
        ("description", RunState.DESCRIBED_VALIDATED),
        ("initial_pcrs", RunState.INITIAL_PCRS_AUDITED),
        ("locks_and_extend", RunState.LOCKS_AND_EXTEND_AUDITED),
        ("attestation", RunState.ATTESTATION_AUDITED),
        ("randomness", RunState.RANDOMNESS_AUDITED),
    )

    def __init__(self, transport: Transport, parameters: Optional[SuiteParameters] = None):
        self.transport = transport
        self.parameters = parameters or SuiteParameters()
        self._reset()

    def _reset(self) -> None:
        self.state = RunState.INIT
        self.history: List[RunState] = [RunState.INIT]
        self.description: Optional[DeviceDescription] = None
        self.model: Optional[RegisterModel] = None
        self._bank: Dict[int, Register] = {}
        self._checks = 0

    def _transition(self, state: RunState) -> None:
        conformance_log.state_transition(self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def _check(self, check: Callable, *args, **kwargs) -> Any:
        result = check(*args, **kwargs)
        self._checks += 1
        return result

    def run(self) -> RunReport:
        """
        Execute all scenarios once.

        Returns:
            RunReport in state DONE, or FAILED with the first violation

        Raises:
            DeviceUnavailableError: the device could not be opened
            InvalidDescription: the description cannot back a register model
        """
        self._reset()
        run_id = set_run_id()
        started_at = _utc_now()
        conformance_log.run_started(self.transport.name)

        violation = None
        failed_scenario = None
        passed: List[str] = []
        try:
            with open_session(self.transport) as session:
                for scenario, target in self.SCENARIOS:
                    conformance_log.scenario_started(scenario)
                    before = self._checks
                    try:
                        getattr(self, f"_audit_{scenario}")(session)
                    except ConformanceViolation as e:
                        conformance_log.violation(scenario, e.to_dict())
                        violation, failed_scenario = e, scenario
                        self._transition(RunState.FAILED)
                        break
                    conformance_log.scenario_passed(scenario, self._checks - before)
                    passed.append(scenario)
                    self._transition(target)
                else:
                    self._transition(RunState.DONE)
        except (DeviceUnavailableError, InvalidDescription) as e:
            conformance_log.setup_error(str(e))
            raise

        conformance_log.run_finished(self.state.value, self._checks)
        return RunReport(
            run_id=run_id,
            transport=self.transport.name,
            state=self.state,
            history=list(self.history),
            started_at=started_at,
            finished_at=_utc_now(),
            checks_passed=self._checks,
            scenarios_passed=passed,
            description=self.description,
            violation=violation,
            failed_scenario=failed_scenario,
        )

    # ------------------------------------------------------------------
    # Scenarios
    # ------------------------------------------------------------------

    def _audit_description(self, session: DeviceSession) -> None:
        description = self._check(checks.check_describe, session)
        self.description = description
        self.model = RegisterModel.from_description(description)
        self._check(checks.check_description, description, self.model)

        if self.parameters.attest_at_boot:
            self._check(checks.check_attestation, session, self.parameters.max_document_size)

    def _audit_initial_pcrs(self, session: DeviceSession) -> None:
        model = self.model
        registers = [
            self._check(checks.check_describe_register, session, index, model)
            for index in model.all_registers
        ]
        self._bank = {r.index: r for r in registers}

        self._check(checks.check_initial_values, registers, model)
        self._check(checks.check_initial_locked_set, self.description, model)
        self._check(checks.check_initial_lock_flags, registers, model)

    def _audit_locks_and_extend(self, session: DeviceSession) -> None:
        model = self.model
        params = self.parameters
        data = params.extend_input

        for _ in range(params.relock_attempts):
            for index in model.initial_locked:
                self._check(checks.check_lock_rejected, session, index)

        for _ in range(params.extend_rounds):
            for index in model.free_registers:
                value = self._check(checks.check_extend, session, index, data, model)
                self._check(checks.check_extend_chaining, index, self._bank[index].value, value)
                self._bank[index] = self._bank[index].extended(value)

        for index in model.free_registers:
            self._check(checks.check_lock_register, session, index)

        self._check(checks.check_lock_range_exact, session, model)
        self._check(checks.check_lock_range_overflow, session, model)

        for index in model.all_registers:
            self._check(checks.check_extend_rejected, session, index, data)

        for _ in range(params.read_rounds):
            for index in model.all_registers:
                register = self._check(checks.check_describe_register, session, index, model)
                previous = self._bank.get(index)
                self._check(checks.check_lock_monotonic, previous, register)
                self._check(checks.check_post_lock_register, register, model)
                self._check(checks.check_value_stable, previous, register)
                self._bank[index] = register

    def _audit_attestation(self, session: DeviceSession) -> None:
        max_size = self.parameters.max_document_size
        self._check(checks.check_attestation, session, max_size)

        full = bytes([ATTESTATION_FILL]) * self.parameters.attestation_data_len
        for payload in (full, b""):
            self._check(checks.check_attestation, session, max_size, user_data=payload)
            self._check(checks.check_attestation, session, max_size, user_data=payload, nonce=payload)
            self._check(
                checks.check_attestation,
                session,
                max_size,
                user_data=payload,
                nonce=payload,
                public_key=payload
            )

    def _audit_randomness(self, session: DeviceSession) -> None:
        length = self.parameters.random_length
        previous = None
        for _ in range(self.parameters.random_samples):
            previous = self._check(checks.check_get_random, session, length, previous)


def run_conformance(transport: Transport, parameters: Optional[SuiteParameters] = None) -> RunReport:
    """Convenience wrapper: one run of the full suite on `transport`."""
    return ScenarioRunner(transport, parameters).run()
