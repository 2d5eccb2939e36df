#!/usr/bin/env python3
"""
nsmcheck Command Line Interface

Usage:
    nsmcheck run [--device <path> | --simulate [--digest <digest>] [--fault <fault> ...]] [--json]
    nsmcheck describe [--device <path> | --simulate [--digest <digest>]]
    nsmcheck checks

Exit codes:
    0  the device is conformant
    1  conformance violation (or the device refused to describe itself)
    2  setup error: device unavailable, invalid description, bad parameters
"""

import argparse
import json
import sys
from typing import List, Optional

from pydantic import ValidationError

EXIT_OK = 0
EXIT_VIOLATION = 1
EXIT_SETUP_ERROR = 2


def _setup_logging(args) -> None:
    from nsmcheck import config
    from nsmcheck.logging_config import configure_logging

    level = args.log_level or config.LOG_LEVEL
    if config.is_debug():
        level = "DEBUG"
    if args.log_format:
        json_format = args.log_format == "json"
    else:
        json_format = config.is_json_logging()
    configure_logging(level=level, json_format=json_format, log_file=config.log_file())


def _transport(args):
    from nsmcheck import config
    from nsmcheck.driver import NsmDriver
    from nsmcheck.simulator import SimulatedNsm

    if args.simulate:
        return SimulatedNsm(digest=args.digest, faults=getattr(args, "fault", None) or ())
    return NsmDriver(args.device or config.DEVICE_PATH)


def cmd_run(args) -> int:
    """Run the conformance suite."""
    from nsmcheck.api import DeviceUnavailableError
    from nsmcheck.config import load_parameters
    from nsmcheck.model import InvalidDescription
    from nsmcheck.runner import ScenarioRunner

    try:
        parameters = load_parameters()
    except ValidationError as e:
        print(f"✗ Invalid suite parameters:\n{e}", file=sys.stderr)
        return EXIT_SETUP_ERROR

    runner = ScenarioRunner(_transport(args), parameters)
    try:
        report = runner.run()
    except (DeviceUnavailableError, InvalidDescription) as e:
        print(f"✗ Setup error: {e}", file=sys.stderr)
        return EXIT_SETUP_ERROR

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))

    if report.passed():
        print(f"✓ Conformant ({report.checks_passed} checks passed)", file=sys.stderr)
        return EXIT_OK

    violation = report.violation
    print(f"✗ {report.state.value} in scenario {report.failed_scenario}", file=sys.stderr)
    print(f"  - {violation.check}: {violation.description}", file=sys.stderr)
    if violation.register_index is not None:
        print(f"    PCR:      {violation.register_index}", file=sys.stderr)
    details = violation.to_dict()
    print(f"    expected: {details['expected']}", file=sys.stderr)
    print(f"    observed: {details['observed']}", file=sys.stderr)
    return EXIT_VIOLATION


def cmd_describe(args) -> int:
    """Print the description the device reports about itself."""
    from nsmcheck.api import DeviceError, DeviceUnavailableError
    from nsmcheck.device import open_session

    try:
        with open_session(_transport(args)) as session:
            description = session.describe()
    except DeviceUnavailableError as e:
        print(f"✗ Setup error: {e}", file=sys.stderr)
        return EXIT_SETUP_ERROR
    except DeviceError as e:
        print(f"✗ {e}", file=sys.stderr)
        return EXIT_VIOLATION

    print(json.dumps(description.to_dict(), indent=2))
    return EXIT_OK


def cmd_checks(args) -> int:
    """List the checks the suite runs."""
    from nsmcheck.checks import CHECK_DESCRIPTIONS

    width = max(len(name) for name in CHECK_DESCRIPTIONS)
    for name, description in CHECK_DESCRIPTIONS.items():
        print(f"{name.ljust(width)}  {description}")
    return EXIT_OK


def _add_device_arguments(parser: argparse.ArgumentParser, faults: bool) -> None:
    from nsmcheck.api import Digest
    from nsmcheck.simulator import Fault

    source = parser.add_mutually_exclusive_group()
    source.add_argument("--device", help="NSM device file (default: $NSMCHECK_DEVICE_PATH or /dev/nsm)")
    source.add_argument("--simulate", action="store_true", help="Run against the in-memory simulator")
    parser.add_argument(
        "--digest",
        choices=[d.value for d in Digest],
        default=Digest.SHA384.value,
        help="Digest of the simulated register bank"
    )
    if faults:
        parser.add_argument(
            "--fault",
            action="append",
            choices=[f.value for f in Fault],
            help="Inject a fault into the simulator (repeatable)"
        )


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="nsmcheck",
        description="Nitro Secure Module conformance checker"
    )
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR")
    parser.add_argument("--log-format", choices=["json", "text"])
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # run command
    run_parser = subparsers.add_parser("run", help="Run the conformance suite")
    _add_device_arguments(run_parser, faults=True)
    run_parser.add_argument("--json", action="store_true", help="Print the run report as JSON")

    # describe command
    describe_parser = subparsers.add_parser("describe", help="Describe the device")
    _add_device_arguments(describe_parser, faults=False)

    # checks command
    subparsers.add_parser("checks", help="List the conformance checks")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_OK

    _setup_logging(args)

    commands = {
        "run": cmd_run,
        "describe": cmd_describe,
        "checks": cmd_checks,
    }
    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
