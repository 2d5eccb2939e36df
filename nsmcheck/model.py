"""
Register Model

Expected shape of the NSM register bank, derived once per run from the
description the device reports about itself.

Layout of the bank:
- PCRs [0..3) hold platform identity measurements taken at boot (non-zero)
- PCR 3 is empty before locking
- PCR 4 holds the parent instance measurement (non-zero)
- PCRs [5..16) are empty before locking
- PCRs [0..16) are locked at boot, [16..32) are free for the enclave
"""

import hashlib
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional, Tuple

from .api import DeviceDescription, Digest, NsmCheckError

REGISTER_COUNT = 32
BOOT_LOCKED_COUNT = 16
MODULE_ID_MAX_LEN = 100

# Bytes one Request::GetRandom yields
RANDOM_CHUNK_SIZE = 256

PLATFORM_REGISTERS: Tuple[int, ...] = (0, 1, 2)
PARENT_INSTANCE_REGISTER = 4
EMPTY_BOOT_REGISTERS: Tuple[int, ...] = (3,) + tuple(range(5, BOOT_LOCKED_COUNT))

DIGEST_WIDTHS: Dict[Digest, int] = {
    Digest.SHA256: 32,
    Digest.SHA384: 48,
    Digest.SHA512: 64,
}


class InvalidDescription(NsmCheckError):
    """Setup error: the device description cannot back a register model."""

    def __init__(self, reason: str, observed: Any = None):
        self.reason = reason
        self.observed = observed
        super().__init__(f"Invalid NSM description: {reason} (observed: {observed!r})")

    def to_dict(self) -> Dict[str, Any]:
        return {"reason": self.reason, "observed": repr(self.observed)}


def parse_digest(tag: Any) -> Digest:
    try:
        return Digest(tag)
    except ValueError:
        raise InvalidDescription("unknown digest", tag) from None


def digest_width(tag: Any) -> int:
    """Width in bytes of a register value for the given digest tag."""
    return DIGEST_WIDTHS[parse_digest(tag)]


def extend_value(digest: Digest, value: bytes, data: bytes) -> bytes:
    """One extension step: H(value || data)."""
    h = hashlib.new(digest.hash_name)
    h.update(value)
    h.update(data)
    return h.digest()


@dataclass(frozen=True)
class Register:
    """A single PCR as observed at one point in time."""
    index: int
    lock: bool
    value: bytes

    def is_zero(self) -> bool:
        return not any(self.value)

    def extended(self, value: bytes) -> "Register":
        return replace(self, value=value)

    def locked(self) -> "Register":
        return replace(self, lock=True)


@dataclass(frozen=True)
class RegisterModel:
    """Expected register bank for one run."""
    register_count: int
    digest: Digest
    digest_width: int

    @classmethod
    def from_description(cls, description: DeviceDescription) -> "RegisterModel":
        if description.max_pcrs != REGISTER_COUNT:
            raise InvalidDescription(f"PCR count must be {REGISTER_COUNT}", description.max_pcrs)

        if not description.module_id:
            raise InvalidDescription("module ID is missing", description.module_id)

        if len(description.module_id.encode("utf-8")) > MODULE_ID_MAX_LEN:
            raise InvalidDescription(
                f"module ID longer than {MODULE_ID_MAX_LEN} bytes", description.module_id
            )

        digest = parse_digest(description.digest)
        return cls(
            register_count=description.max_pcrs,
            digest=digest,
            digest_width=DIGEST_WIDTHS[digest],
        )

    @property
    def initial_locked(self) -> Tuple[int, ...]:
        return tuple(range(BOOT_LOCKED_COUNT))

    @property
    def free_registers(self) -> range:
        """Registers that are unlocked at boot."""
        return range(BOOT_LOCKED_COUNT, self.register_count)

    @property
    def all_registers(self) -> range:
        return range(self.register_count)

    def zero_value(self) -> bytes:
        return bytes(self.digest_width)

    def locked_at_boot(self, index: int) -> bool:
        return index < BOOT_LOCKED_COUNT

    def expected_boot_value(self, index: int) -> Optional[bool]:
        """
        Whether a register must be zero before the enclave locks anything.

        Returns True for registers that must be zero, False for registers that
        must hold a measurement, None where the value is unspecified.
        """
        if index in EMPTY_BOOT_REGISTERS:
            return True
        if index in PLATFORM_REGISTERS or index == PARENT_INSTANCE_REGISTER:
            return False
        return None

    def expected_zero_after_lock(self, index: int) -> bool:
        """After the full bank is locked, only the empty boot registers stay zero."""
        return index in EMPTY_BOOT_REGISTERS
