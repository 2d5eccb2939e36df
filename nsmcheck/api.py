"""
NSM API Types

Data types shared between the conformance engine and the device it drives:
the status taxonomy reported by the Nitro Secure Module, the digest used by
its register bank, and the description the module reports about itself.

Status names match the strings used on the wire by the NSM CBOR protocol,
so a decoded `{"Error": "ReadOnlyIndex"}` maps directly onto
`ErrorCode.READ_ONLY_INDEX`.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Tuple


class NsmCheckError(Exception):
    """Base class for every error raised by nsmcheck."""


class ErrorCode(str, Enum):
    """Status codes an NSM can return as part of a response."""
    SUCCESS = "Success"
    INVALID_ARGUMENT = "InvalidArgument"
    INVALID_INDEX = "InvalidIndex"
    INVALID_RESPONSE = "InvalidResponse"
    READ_ONLY_INDEX = "ReadOnlyIndex"
    INVALID_OPERATION = "InvalidOperation"
    BUFFER_TOO_SMALL = "BufferTooSmall"
    INPUT_TOO_LARGE = "InputTooLarge"
    INTERNAL_ERROR = "InternalError"

    @classmethod
    def from_wire(cls, value: Any) -> "ErrorCode":
        """Map a wire status to a code; unknown statuses are internal errors."""
        try:
            return cls(value)
        except ValueError:
            return cls.INTERNAL_ERROR

    def describe(self) -> str:
        return ERROR_DESCRIPTIONS[self]


ERROR_DESCRIPTIONS: Dict[ErrorCode, str] = {
    ErrorCode.SUCCESS: "Success",
    ErrorCode.INVALID_ARGUMENT: "Invalid argument",
    ErrorCode.INVALID_INDEX: "Invalid index",
    ErrorCode.INVALID_RESPONSE: "Invalid response",
    ErrorCode.READ_ONLY_INDEX: "Read-only index",
    ErrorCode.INVALID_OPERATION: "Invalid operation",
    ErrorCode.BUFFER_TOO_SMALL: "Buffer too small",
    ErrorCode.INPUT_TOO_LARGE: "Input too large",
    ErrorCode.INTERNAL_ERROR: "Internal error",
}


class Digest(str, Enum):
    """Digest implementation used by the register bank."""
    SHA256 = "SHA256"
    SHA384 = "SHA384"
    SHA512 = "SHA512"

    @property
    def hash_name(self) -> str:
        """Name understood by `hashlib.new`."""
        return self.value.lower()


class DeviceError(NsmCheckError):
    """Raised when the device answers an operation with a non-success status."""

    def __init__(self, code: ErrorCode, operation: str):
        self.code = code
        self.operation = operation
        super().__init__(f"Request::{operation} got error response: {code.describe()}")

    def to_dict(self) -> Dict[str, Any]:
        return {"operation": self.operation, "code": self.code.value}


class DeviceUnavailableError(NsmCheckError):
    """Raised when the device cannot be opened."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Device file '{path}' failed to open: {reason}")


class SessionClosedError(NsmCheckError):
    """Raised when a device operation is issued on a released session."""


@dataclass(frozen=True)
class DeviceDescription:
    """
    Runtime configuration reported by the NSM (Request::DescribeNSM).

    `digest` is kept as the raw tag reported by the device; it is only
    interpreted once the register model is built, so an unknown tag surfaces
    as a setup error rather than a decoding failure.
    """
    version_major: int
    version_minor: int
    version_patch: int
    module_id: str
    max_pcrs: int
    digest: str
    locked_pcrs: Tuple[int, ...] = field(default_factory=tuple)

    @property
    def version(self) -> Tuple[int, int, int]:
        return (self.version_major, self.version_minor, self.version_patch)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": ".".join(str(part) for part in self.version),
            "module_id": self.module_id,
            "max_pcrs": self.max_pcrs,
            "locked_pcrs": list(self.locked_pcrs),
            "digest": self.digest,
        }
