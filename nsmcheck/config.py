"""
Configuration module for nsmcheck.

Centralizes configuration with environment variable support. Suite knobs
are validated through `SuiteParameters`.
"""

import os
from typing import Any, Dict, Optional

from .models import SuiteParameters

# ============================================================
# Environment Configuration
# ============================================================

DEVICE_PATH = os.getenv("NSMCHECK_DEVICE_PATH", "/dev/nsm")

# Logging
LOG_LEVEL = os.getenv("NSMCHECK_LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("NSMCHECK_LOG_FORMAT", "json")  # json|text
LOG_FILE = os.getenv("NSMCHECK_LOG_FILE", "")

# Suite knobs, unset means the contract default
PARAMETER_ENV: Dict[str, str] = {
    "extend_rounds": "NSMCHECK_EXTEND_ROUNDS",
    "read_rounds": "NSMCHECK_READ_ROUNDS",
    "relock_attempts": "NSMCHECK_RELOCK_ATTEMPTS",
    "random_samples": "NSMCHECK_RANDOM_SAMPLES",
    "random_length": "NSMCHECK_RANDOM_LENGTH",
    "attestation_data_len": "NSMCHECK_ATTESTATION_DATA_LEN",
}


# ============================================================
# Loaders
# ============================================================

def load_parameters(environ: Optional[Dict[str, str]] = None, **overrides: Any) -> SuiteParameters:
    """
    Build suite parameters from the environment.

    Explicit keyword overrides win over the environment. Raises pydantic's
    ValidationError for values outside the allowed ranges.
    """
    environ = os.environ if environ is None else environ
    values: Dict[str, Any] = {}
    for name, variable in PARAMETER_ENV.items():
        raw = environ.get(variable, "")
        if raw:
            values[name] = raw
    values.update({k: v for k, v in overrides.items() if v is not None})
    return SuiteParameters(**values)


def log_file() -> Optional[str]:
    return LOG_FILE or None


# ============================================================
# Feature Flags
# ============================================================

def is_json_logging() -> bool:
    return LOG_FORMAT.lower() != "text"


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("NSMCHECK_DEBUG", "").lower() in ("1", "true", "yes")
