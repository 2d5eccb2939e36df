"""
NSM Invariant Checks

Predicates over what the device reports, each comparing an observation (or
the result of the one device call it exercises) against the register model
and the module's security contract.

Design principles:
- Stateless: everything a check needs is passed in
- Fail-fast: a check either returns normally or raises ConformanceViolation
- Precise: a violation names the check, the register, and expected vs observed
- Strict about refusals: where the contract says an operation must fail,
  success is the violation, whatever the device returns instead
"""

from typing import Any, Callable, Dict, Optional, Sequence

from .api import DeviceDescription, DeviceError, Digest, ErrorCode, NsmCheckError
from .device import DeviceSession
from .model import Register, RegisterModel


CHECK_DESCRIPTIONS: Dict[str, str] = {
    "describe": "Request::DescribeNSM succeeds",
    "register_count": "The NSM exposes exactly the modelled number of PCRs",
    "module_id": "The NSM module ID is not empty",
    "digest": "The PCR bank digest is SHA256, SHA384 or SHA512",
    "describe_register": "Request::DescribePCR succeeds with a value of the digest width",
    "initial_value": "PCRs 0-2 and 4 hold measurements, 3 and 5-15 are empty at boot",
    "initial_locked_set": "The description reports exactly PCRs [0..16) as locked",
    "initial_lock_flag": "PCRs [0..16) report locked and [16..32) unlocked at boot",
    "lock_rejected": "Locking an already locked PCR is refused",
    "lock_register": "Locking an unlocked PCR succeeds",
    "extend_register": "Extending an unlocked PCR succeeds",
    "extend_width": "An extended PCR value has the digest width",
    "extend_non_zero": "An extended PCR value is not empty",
    "extend_chaining": "Extending twice with the same input yields a new value each time",
    "lock_range_exact": "Request::LockPCRs succeeds for the full PCR count",
    "lock_range_overflow": "Request::LockPCRs is refused for the PCR count plus one",
    "extend_locked_rejected": "Extending a locked PCR is refused",
    "post_lock_locked": "Every PCR reports locked once the bank is locked",
    "post_lock_value": "Only PCRs 3 and 5-15 are empty once the bank is locked",
    "lock_monotonic": "A PCR that reported locked never reports unlocked again",
    "register_value_stable": "A PCR value only changes through extension",
    "attestation": "Request::Attestation succeeds",
    "attestation_non_empty": "An attestation document is not empty",
    "attestation_size": "An attestation document fits the document size ceiling",
    "get_random": "Request::GetRandom succeeds",
    "random_not_empty": "A random sample is not empty",
    "random_length": "A random sample has the requested length",
    "random_repeat": "Consecutive random samples differ",
}


def _render(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if isinstance(value, (list, tuple)):
        return [_render(v) for v in value]
    return value


class ConformanceViolation(NsmCheckError):
    """A structured mismatch between device behaviour and the contract."""

    def __init__(
        self,
        check: str,
        expected: Any,
        observed: Any,
        register_index: Optional[int] = None
    ):
        self.check = check
        self.expected = expected
        self.observed = observed
        self.register_index = register_index
        where = f" (PCR {register_index})" if register_index is not None else ""
        super().__init__(
            f"Check {check} failed{where}: expected {_render(expected)!r}, "
            f"observed {_render(observed)!r}"
        )

    @property
    def description(self) -> str:
        return CHECK_DESCRIPTIONS.get(self.check, self.check)

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "check": self.check,
            "description": self.description,
            "expected": _render(self.expected),
            "observed": _render(self.observed),
        }
        if self.register_index is not None:
            d["register_index"] = self.register_index
        return d


def _call(check: str, operation: Callable, *args, register_index: Optional[int] = None, **kwargs) -> Any:
    """Run a device operation that must succeed."""
    try:
        return operation(*args, **kwargs)
    except DeviceError as e:
        raise ConformanceViolation(check, ErrorCode.SUCCESS.value, e.code.value, register_index) from e


def _expect_refusal(
    check: str,
    operation: Callable,
    *args,
    register_index: Optional[int] = None
) -> ErrorCode:
    """
    Run a device operation that must fail; return the status it failed with.

    An invalid response is not a refusal.
    """
    try:
        operation(*args)
    except DeviceError as e:
        if e.code == ErrorCode.INVALID_RESPONSE:
            raise ConformanceViolation(check, "error response", e.code.value, register_index) from e
        return e.code
    raise ConformanceViolation(check, "error response", ErrorCode.SUCCESS.value, register_index)


# ============================================================
# Description
# ============================================================

def check_describe(session: DeviceSession) -> DeviceDescription:
    return _call("describe", session.describe)


def check_register_count(description: DeviceDescription, model: RegisterModel) -> None:
    if description.max_pcrs != model.register_count:
        raise ConformanceViolation("register_count", model.register_count, description.max_pcrs)


def check_module_id(description: DeviceDescription) -> None:
    if not description.module_id:
        raise ConformanceViolation("module_id", "non-empty module ID", description.module_id)


def check_digest(description: DeviceDescription, model: RegisterModel) -> None:
    known = [d.value for d in Digest]
    if description.digest not in known:
        raise ConformanceViolation("digest", known, description.digest)
    if description.digest != model.digest.value:
        raise ConformanceViolation("digest", model.digest.value, description.digest)


def check_description(description: DeviceDescription, model: RegisterModel) -> None:
    check_register_count(description, model)
    check_module_id(description)
    check_digest(description, model)


# ============================================================
# Register reads
# ============================================================

def check_register_width(check: str, value: bytes, model: RegisterModel, index: int) -> None:
    if len(value) != model.digest_width:
        raise ConformanceViolation(check, f"{model.digest_width} bytes", f"{len(value)} bytes", index)


def check_describe_register(session: DeviceSession, index: int, model: RegisterModel) -> Register:
    """Read one PCR; the read must succeed and carry a value of the digest width."""
    register = _call("describe_register", session.describe_register, index, register_index=index)
    check_register_width("describe_register", register.value, model, index)
    return register


# ============================================================
# Initial state
# ============================================================

def check_initial_values(registers: Sequence[Register], model: RegisterModel) -> None:
    """
    Boot measurements: PCRs 0-2 and 4 are measured, 3 and 5-15 are empty.
    PCRs 16 and up are not constrained.
    """
    zero = model.zero_value()
    for register in registers:
        expect_zero = model.expected_boot_value(register.index)
        if expect_zero is True and register.value != zero:
            raise ConformanceViolation("initial_value", zero, register.value, register.index)
        if expect_zero is False and register.value == zero:
            raise ConformanceViolation("initial_value", "non-zero value", zero, register.index)


def check_initial_locked_set(description: DeviceDescription, model: RegisterModel) -> None:
    expected = list(model.initial_locked)
    observed = sorted(description.locked_pcrs)
    if len(observed) != len(expected):
        raise ConformanceViolation(
            "initial_locked_set", f"{len(expected)} locked PCRs", f"{len(observed)} locked PCRs"
        )
    if observed != expected:
        raise ConformanceViolation("initial_locked_set", expected, observed)


def check_initial_lock_flags(registers: Sequence[Register], model: RegisterModel) -> None:
    for register in registers:
        expected = model.locked_at_boot(register.index)
        if register.lock != expected:
            raise ConformanceViolation(
                "initial_lock_flag",
                "locked" if expected else "unlocked",
                "locked" if register.lock else "unlocked",
                register.index
            )


# ============================================================
# Locking
# ============================================================

def check_lock_rejected(session: DeviceSession, index: int) -> ErrorCode:
    """Re-locking a locked PCR must be an error, not a silent no-op."""
    return _expect_refusal("lock_rejected", session.lock_register, index, register_index=index)


def check_lock_register(session: DeviceSession, index: int) -> None:
    _call("lock_register", session.lock_register, index, register_index=index)


def check_lock_range_exact(session: DeviceSession, model: RegisterModel) -> None:
    _call("lock_range_exact", session.lock_registers, model.register_count)


def check_lock_range_overflow(session: DeviceSession, model: RegisterModel) -> ErrorCode:
    """The bulk lock range is exact: one past the PCR count is refused."""
    return _expect_refusal("lock_range_overflow", session.lock_registers, model.register_count + 1)


# ============================================================
# Extension
# ============================================================

def check_extend(session: DeviceSession, index: int, data: bytes, model: RegisterModel) -> bytes:
    value = _call("extend_register", session.extend_register, index, data, register_index=index)
    check_register_width("extend_width", value, model, index)
    if value == model.zero_value():
        raise ConformanceViolation("extend_non_zero", "non-zero value", value, index)
    return value


def check_extend_chaining(index: int, previous: bytes, current: bytes) -> None:
    if previous == current:
        raise ConformanceViolation(
            "extend_chaining", "value different from the previous one", current, index
        )


def check_extend_rejected(session: DeviceSession, index: int, data: bytes) -> ErrorCode:
    return _expect_refusal("extend_locked_rejected", session.extend_register, index, data, register_index=index)


# ============================================================
# Post-lock state
# ============================================================

def check_post_lock_register(register: Register, model: RegisterModel) -> None:
    if not register.lock:
        raise ConformanceViolation("post_lock_locked", "locked", "unlocked", register.index)

    zero = model.zero_value()
    if model.expected_zero_after_lock(register.index):
        if register.value != zero:
            raise ConformanceViolation("post_lock_value", zero, register.value, register.index)
    elif register.value == zero:
        raise ConformanceViolation("post_lock_value", "non-zero value", zero, register.index)


def check_lock_monotonic(previous: Optional[Register], current: Register) -> None:
    if previous is not None and previous.lock and not current.lock:
        raise ConformanceViolation("lock_monotonic", "locked", "unlocked", current.index)


def check_value_stable(previous: Optional[Register], current: Register) -> None:
    if previous is not None and previous.value != current.value:
        raise ConformanceViolation("register_value_stable", previous.value, current.value, current.index)


# ============================================================
# Attestation
# ============================================================

def check_attestation(
    session: DeviceSession,
    max_document_size: int,
    user_data: Optional[bytes] = None,
    nonce: Optional[bytes] = None,
    public_key: Optional[bytes] = None
) -> bytes:
    document = _call(
        "attestation",
        session.get_attestation,
        user_data=user_data,
        nonce=nonce,
        public_key=public_key
    )
    if not document:
        raise ConformanceViolation("attestation_non_empty", "non-empty document", "0 bytes")
    if len(document) > max_document_size:
        raise ConformanceViolation(
            "attestation_size", f"at most {max_document_size} bytes", f"{len(document)} bytes"
        )
    return document


# ============================================================
# Randomness
# ============================================================

def check_random_sample(sample: bytes, previous: Optional[bytes], length: int) -> None:
    if not sample:
        raise ConformanceViolation("random_not_empty", f"{length} bytes", "0 bytes")
    if len(sample) != length:
        raise ConformanceViolation("random_length", f"{length} bytes", f"{len(sample)} bytes")
    if previous is not None and sample == previous:
        raise ConformanceViolation("random_repeat", "sample different from the previous one", sample)


def check_get_random(session: DeviceSession, length: int, previous: Optional[bytes]) -> bytes:
    sample = _call("get_random", session.get_random, length)
    check_random_sample(sample, previous, length)
    return sample
