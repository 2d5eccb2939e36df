"""
Scenario Runner Tests

End-to-end runs against the simulator: a conforming device reaches DONE for
every digest, each injected fault stops the run at the check that catches
it, setup errors propagate, and the session is released exactly once on
every path.
"""

import unittest

from nsmcheck import (
    DeviceUnavailableError,
    Digest,
    Fault,
    InvalidDescription,
    NsmDriver,
    RunState,
    ScenarioRunner,
    SimulatedNsm,
    SuiteParameters,
    run_conformance,
)

# Fewer repetitions keep the suite fast; the defaults are covered by
# TestConformingDevice.test_default_parameters.
QUICK = SuiteParameters(extend_rounds=2, read_rounds=2, random_samples=4)

FULL_HISTORY = [
    RunState.INIT,
    RunState.DESCRIBED_VALIDATED,
    RunState.INITIAL_PCRS_AUDITED,
    RunState.LOCKS_AND_EXTEND_AUDITED,
    RunState.ATTESTATION_AUDITED,
    RunState.RANDOMNESS_AUDITED,
    RunState.DONE,
]


class TestConformingDevice(unittest.TestCase):

    def test_every_digest_reaches_done(self):
        for digest in Digest:
            with self.subTest(digest=digest):
                device = SimulatedNsm(digest=digest)
                report = ScenarioRunner(device, QUICK).run()

                self.assertTrue(report.passed(), report.to_dict())
                self.assertEqual(report.state, RunState.DONE)
                self.assertIsNone(report.violation)
                self.assertEqual(report.history, FULL_HISTORY)
                self.assertEqual(report.description.digest, digest.value)

    def test_default_parameters(self):
        device = SimulatedNsm(digest=Digest.SHA256)
        report = run_conformance(device)

        self.assertEqual(report.state, RunState.DONE)
        self.assertEqual(
            report.scenarios_passed,
            ["description", "initial_pcrs", "locks_and_extend", "attestation", "randomness"]
        )
        self.assertGreater(report.checks_passed, 0)

    def test_device_state_after_run(self):
        device = SimulatedNsm()
        ScenarioRunner(device, QUICK).run()
        self.assertTrue(all(r.lock for r in device.registers))
        zero = [r.index for r in device.registers if r.is_zero()]
        self.assertEqual(zero, [3] + list(range(5, 16)))

    def test_session_released_once(self):
        device = SimulatedNsm()
        ScenarioRunner(device, QUICK).run()
        self.assertEqual((device.open_count, device.close_count), (1, 1))

    def test_report_to_dict(self):
        report = ScenarioRunner(SimulatedNsm(), QUICK).run()
        d = report.to_dict()
        self.assertTrue(d["passed"])
        self.assertEqual(d["state"], "DONE")
        self.assertEqual(d["transport"], "simulator")
        self.assertEqual(d["description"]["max_pcrs"], 32)
        self.assertNotIn("violation", d)
        self.assertTrue(d["run_id"])

    def test_random_length_of_one_chunk(self):
        params = SuiteParameters(extend_rounds=1, read_rounds=1, random_samples=2, random_length=256)
        self.assertTrue(ScenarioRunner(SimulatedNsm(), params).run().passed())

    def test_attestation_without_boot_attestation(self):
        device = SimulatedNsm()
        params = SuiteParameters(extend_rounds=1, read_rounds=1, random_samples=2, attest_at_boot=False)
        self.assertTrue(ScenarioRunner(device, params).run().passed())


class TestFaultyDevice(unittest.TestCase):

    CASES = [
        (Fault.SILENT_RELOCK, "locks_and_extend", "lock_rejected", RunState.INITIAL_PCRS_AUDITED),
        (Fault.RELOCK_ONCE, "locks_and_extend", "lock_rejected", RunState.INITIAL_PCRS_AUDITED),
        (Fault.IDEMPOTENT_EXTEND, "locks_and_extend", "extend_chaining", RunState.INITIAL_PCRS_AUDITED),
        (Fault.LOOSE_LOCK_RANGE, "locks_and_extend", "lock_range_overflow", RunState.INITIAL_PCRS_AUDITED),
        (Fault.EXTEND_LOCKED, "locks_and_extend", "extend_locked_rejected", RunState.INITIAL_PCRS_AUDITED),
        (Fault.LOCK_FLAP, "locks_and_extend", "lock_monotonic", RunState.INITIAL_PCRS_AUDITED),
        (Fault.ZERO_PARENT_PCR, "initial_pcrs", "initial_value", RunState.DESCRIBED_VALIDATED),
        (Fault.EMPTY_DOCUMENT, "description", "attestation_non_empty", RunState.INIT),
        (Fault.STUCK_RANDOM, "randomness", "random_repeat", RunState.ATTESTATION_AUDITED),
    ]

    def test_each_fault_is_caught(self):
        for fault, scenario, check, last_state in self.CASES:
            with self.subTest(fault=fault):
                device = SimulatedNsm(faults=[fault])
                report = ScenarioRunner(device, QUICK).run()

                self.assertFalse(report.passed())
                self.assertEqual(report.state, RunState.FAILED)
                self.assertEqual(report.failed_scenario, scenario)
                self.assertEqual(report.violation.check, check)
                self.assertEqual(report.history[-2:], [last_state, RunState.FAILED])
                self.assertEqual((device.open_count, device.close_count), (1, 1))

    def test_violation_names_the_register(self):
        report = ScenarioRunner(SimulatedNsm(faults=[Fault.ZERO_PARENT_PCR]), QUICK).run()
        self.assertEqual(report.violation.register_index, 4)
        self.assertEqual(report.violation.expected, "non-zero value")

    def test_run_stops_at_first_violation(self):
        device = SimulatedNsm(faults=[Fault.SILENT_RELOCK])
        ScenarioRunner(device, QUICK).run()
        # Nothing past the first relock attempt was issued, so PCR 16 is still free
        self.assertFalse(device.registers[16].lock)

    def test_relock_accepted_on_second_pass(self):
        device = SimulatedNsm(faults=[Fault.RELOCK_ONCE])
        report = ScenarioRunner(device, QUICK).run()
        self.assertEqual(report.violation.check, "lock_rejected")
        self.assertEqual(report.violation.register_index, 0)
        self.assertEqual(report.violation.observed, "Success")

        # A single pass only sees the first, refused, attempt
        params = SuiteParameters(extend_rounds=1, read_rounds=1, random_samples=2, relock_attempts=1)
        self.assertTrue(ScenarioRunner(SimulatedNsm(faults=[Fault.RELOCK_ONCE]), params).run().passed())

    def test_empty_document_caught_later_without_boot_attestation(self):
        params = SuiteParameters(extend_rounds=1, read_rounds=1, random_samples=2, attest_at_boot=False)
        report = ScenarioRunner(SimulatedNsm(faults=[Fault.EMPTY_DOCUMENT]), params).run()
        self.assertEqual(report.failed_scenario, "attestation")
        self.assertEqual(report.history[-2], RunState.LOCKS_AND_EXTEND_AUDITED)

    def test_failed_report_to_dict(self):
        report = ScenarioRunner(SimulatedNsm(faults=[Fault.STUCK_RANDOM]), QUICK).run()
        d = report.to_dict()
        self.assertFalse(d["passed"])
        self.assertEqual(d["failed_scenario"], "randomness")
        self.assertEqual(d["violation"]["check"], "random_repeat")


class TestSetupErrors(unittest.TestCase):

    def test_wrong_register_count(self):
        device = SimulatedNsm(max_pcrs=31)
        with self.assertRaises(InvalidDescription):
            ScenarioRunner(device, QUICK).run()
        self.assertEqual((device.open_count, device.close_count), (1, 1))

    def test_unknown_digest(self):
        device = SimulatedNsm(reported_digest="SHA1")
        with self.assertRaises(InvalidDescription):
            ScenarioRunner(device, QUICK).run()
        self.assertEqual(device.close_count, 1)

    def test_empty_module_id(self):
        with self.assertRaises(InvalidDescription):
            ScenarioRunner(SimulatedNsm(module_id=""), QUICK).run()

    def test_device_unavailable(self):
        with self.assertRaises(DeviceUnavailableError):
            ScenarioRunner(NsmDriver("/nonexistent/nsm"), QUICK).run()

    def test_runner_state_after_setup_error(self):
        runner = ScenarioRunner(SimulatedNsm(max_pcrs=64), QUICK)
        with self.assertRaises(InvalidDescription):
            runner.run()
        self.assertEqual(runner.history, [RunState.INIT])


if __name__ == "__main__":
    unittest.main()
