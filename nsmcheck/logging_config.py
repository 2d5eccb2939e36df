"""
Logging configuration for nsmcheck.

Provides structured JSON logging so that a conformance run leaves an
auditable trail of what was checked and where the device deviated.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

# Context variable for run ID tracking
run_id_var: ContextVar[str] = ContextVar('run_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs one JSON object per record, suitable for log aggregation
    systems collecting results from a fleet of enclaves.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        run_id = run_id_var.get()
        if run_id:
            log_data["run_id"] = run_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class ConformanceLogger:
    """
    Specialized logger for conformance events.

    Each method records one step of a run: scenario boundaries, state
    transitions, violations and the device session lifecycle.
    """

    def __init__(self, name: str = "nsmcheck.conformance"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        if not self._logger.isEnabledFor(level):
            return
        extra = {
            "event_type": event_type,
            "run_id": run_id_var.get(),
            **kwargs
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def run_started(self, transport: str) -> None:
        self._log(
            logging.INFO,
            "RUN_STARTED",
            transport=transport,
            message=f"Conformance run started on {transport}"
        )

    def session_opened(self, transport: str) -> None:
        self._log(
            logging.DEBUG,
            "SESSION_OPENED",
            transport=transport,
            message=f"Device session opened on {transport}"
        )

    def session_closed(self, transport: str) -> None:
        self._log(
            logging.DEBUG,
            "SESSION_CLOSED",
            transport=transport,
            message=f"Device session closed on {transport}"
        )

    def state_transition(self, previous: str, current: str) -> None:
        self._log(
            logging.DEBUG,
            "STATE_TRANSITION",
            previous=previous,
            current=current,
            message=f"{previous} -> {current}"
        )

    def scenario_started(self, scenario: str) -> None:
        self._log(
            logging.INFO,
            "SCENARIO_STARTED",
            scenario=scenario,
            message=f"Scenario {scenario} started"
        )

    def scenario_passed(self, scenario: str, checks: int) -> None:
        self._log(
            logging.INFO,
            "SCENARIO_PASSED",
            scenario=scenario,
            checks=checks,
            message=f"Scenario {scenario} passed ({checks} checks)"
        )

    def violation(self, scenario: str, violation: Dict[str, Any]) -> None:
        self._log(
            logging.ERROR,
            "CONFORMANCE_VIOLATION",
            scenario=scenario,
            violation=violation,
            message=f"Check {violation.get('check')} failed in {scenario}"
        )

    def setup_error(self, error: str) -> None:
        self._log(
            logging.ERROR,
            "SETUP_ERROR",
            error=error,
            message=f"Setup failed: {error}"
        )

    def run_finished(self, state: str, checks: int) -> None:
        level = logging.INFO if state == "DONE" else logging.ERROR
        self._log(
            level,
            "RUN_FINISHED",
            state=state,
            checks=checks,
            message=f"Conformance run finished in state {state}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    # Results go to stdout, so logs stay on stderr.
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_run_id(run_id: Optional[str] = None) -> str:
    """
    Set the run ID for the current context.

    Args:
        run_id: Run ID to set, or None to generate one

    Returns:
        The run ID that was set
    """
    if run_id is None:
        run_id = str(uuid.uuid4())
    run_id_var.set(run_id)
    return run_id


def get_run_id() -> str:
    """Get the current run ID."""
    return run_id_var.get()


# Global conformance logger instance
conformance_log = ConformanceLogger()
