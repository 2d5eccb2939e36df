"""
Simulated NSM

In-memory device speaking the same request/response values as the NSM
driver. It follows the module's contract (boot measurements, locked boot
registers, hash-chained extension, one-way locks, signed attestation
documents) and can be told to misbehave in specific ways, which is how the
conformance engine is exercised without enclave hardware.

Attestation documents are COSE_Sign1 structures signed with Ed25519. The
signature is real but the "certificate" is the bare verification key: the
documents are only meant to look like the device's, not to chain to a root.
"""

import secrets
import time
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import cbor2
from nacl.signing import SigningKey, VerifyKey

from . import protocol
from .api import Digest, ErrorCode, SessionClosedError
from .device import Transport
from .model import (
    BOOT_LOCKED_COUNT,
    DIGEST_WIDTHS,
    PARENT_INSTANCE_REGISTER,
    PLATFORM_REGISTERS,
    RANDOM_CHUNK_SIZE,
    REGISTER_COUNT,
    Register,
    extend_value,
)

DEFAULT_MODULE_ID = "i-0123456789abcdef0-enc0123456789abcdef"
MAX_ATTESTATION_INPUT = 1024
COSE_HEADER_ALG = 1
COSE_ALG_EDDSA = -8


class Fault(str, Enum):
    """Ways the simulated firmware can deviate from the contract."""
    SILENT_RELOCK = "silent-relock"
    RELOCK_ONCE = "relock-once"
    LOOSE_LOCK_RANGE = "loose-lock-range"
    EXTEND_LOCKED = "extend-locked"
    IDEMPOTENT_EXTEND = "idempotent-extend"
    STUCK_RANDOM = "stuck-random"
    EMPTY_DOCUMENT = "empty-document"
    LOCK_FLAP = "lock-flap"
    ZERO_PARENT_PCR = "zero-parent-pcr"


class _Refusal(Exception):
    def __init__(self, code: ErrorCode):
        self.code = code


class SimulatedNsm(Transport):
    """A conforming NSM, unless faults are injected."""

    name = "simulator"

    def __init__(
        self,
        digest: Digest = Digest.SHA384,
        max_pcrs: int = REGISTER_COUNT,
        module_id: str = DEFAULT_MODULE_ID,
        version: Tuple[int, int, int] = (1, 0, 0),
        faults: Iterable[Union[Fault, str]] = (),
        reported_digest: Optional[str] = None,
        signing_key: Optional[SigningKey] = None
    ):
        self.digest = Digest(digest)
        self.max_pcrs = max_pcrs
        self.module_id = module_id
        self.version = version
        self.faults = frozenset(Fault(f) for f in faults)
        self.reported_digest = reported_digest or self.digest.value
        self._signing_key = signing_key or SigningKey.generate()
        self._bank = self._boot_bank()
        self._locked_reads: Dict[int, int] = {}
        self._relocks: Dict[int, int] = {}
        self._stuck_random: Optional[bytes] = None
        self._open = False
        self.open_count = 0
        self.close_count = 0
        self.request_count = 0

        self._handlers: Dict[str, Callable[[Any], Any]] = {
            protocol.DESCRIBE_NSM: self._describe_nsm,
            protocol.DESCRIBE_PCR: self._describe_pcr,
            protocol.EXTEND_PCR: self._extend_pcr,
            protocol.LOCK_PCR: self._lock_pcr,
            protocol.LOCK_PCRS: self._lock_pcrs,
            protocol.ATTESTATION: self._attestation,
            protocol.GET_RANDOM: self._get_random,
        }

    @property
    def verify_key(self) -> VerifyKey:
        return self._signing_key.verify_key

    @property
    def registers(self) -> List[Register]:
        return list(self._bank)

    def _boot_bank(self) -> List[Register]:
        zero = bytes(DIGEST_WIDTHS[self.digest])
        measured = set(PLATFORM_REGISTERS)
        if Fault.ZERO_PARENT_PCR not in self.faults:
            measured.add(PARENT_INSTANCE_REGISTER)

        bank = []
        for index in range(self.max_pcrs):
            value = zero
            if index in measured:
                value = extend_value(self.digest, zero, f"boot-measurement-{index}".encode())
            bank.append(Register(index=index, lock=index < BOOT_LOCKED_COUNT, value=value))
        return bank

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def open(self) -> None:
        self._open = True
        self.open_count += 1

    def close(self) -> None:
        self._open = False
        self.close_count += 1

    def process_request(self, request: Any) -> Any:
        if not self._open:
            raise SessionClosedError("simulated device is not open")
        self.request_count += 1

        if isinstance(request, str):
            name, body = request, None
        elif isinstance(request, dict) and len(request) == 1:
            (name, body), = request.items()
        else:
            return {protocol.ERROR: ErrorCode.INVALID_OPERATION.value}

        handler = self._handlers.get(name)
        if handler is None:
            return {protocol.ERROR: ErrorCode.INVALID_OPERATION.value}

        try:
            return handler(body)
        except _Refusal as refusal:
            return {protocol.ERROR: refusal.code.value}

    # ------------------------------------------------------------------
    # Argument parsing
    # ------------------------------------------------------------------

    def _field(self, body: Any, name: str) -> Any:
        if not isinstance(body, dict) or name not in body:
            raise _Refusal(ErrorCode.INVALID_OPERATION)
        return body[name]

    def _integer(self, body: Any, name: str) -> int:
        value = self._field(body, name)
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise _Refusal(ErrorCode.INVALID_OPERATION)
        return value

    def _index(self, body: Any) -> int:
        index = self._integer(body, "index")
        if index >= self.max_pcrs:
            raise _Refusal(ErrorCode.INVALID_INDEX)
        return index

    def _optional_bytes(self, body: Dict[str, Any], name: str) -> Optional[bytes]:
        value = body.get(name)
        if value is None:
            return None
        if not isinstance(value, bytes):
            raise _Refusal(ErrorCode.INVALID_OPERATION)
        if len(value) > MAX_ATTESTATION_INPUT:
            raise _Refusal(ErrorCode.INPUT_TOO_LARGE)
        return value

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _describe_nsm(self, body: Any) -> Any:
        major, minor, patch = self.version
        return {
            protocol.DESCRIBE_NSM: {
                "version_major": major,
                "version_minor": minor,
                "version_patch": patch,
                "module_id": self.module_id,
                "max_pcrs": self.max_pcrs,
                "locked_pcrs": [r.index for r in self._bank if r.lock],
                "digest": self.reported_digest,
            }
        }

    def _describe_pcr(self, body: Any) -> Any:
        register = self._bank[self._index(body)]
        lock = register.lock
        if Fault.LOCK_FLAP in self.faults and lock and register.index >= BOOT_LOCKED_COUNT:
            reads = self._locked_reads.get(register.index, 0) + 1
            self._locked_reads[register.index] = reads
            lock = reads % 2 == 1
        return {protocol.DESCRIBE_PCR: {"lock": lock, "data": register.value}}

    def _extend_pcr(self, body: Any) -> Any:
        index = self._index(body)
        data = self._field(body, "data")
        if not isinstance(data, bytes):
            raise _Refusal(ErrorCode.INVALID_OPERATION)

        register = self._bank[index]
        if register.lock and Fault.EXTEND_LOCKED not in self.faults:
            raise _Refusal(ErrorCode.READ_ONLY_INDEX)

        previous = register.value
        if Fault.IDEMPOTENT_EXTEND in self.faults:
            previous = bytes(len(previous))
        value = extend_value(self.digest, previous, data)
        self._bank[index] = register.extended(value)
        return {protocol.EXTEND_PCR: {"data": value}}

    def _lock_pcr(self, body: Any) -> Any:
        index = self._index(body)
        register = self._bank[index]
        if register.lock:
            relocks = self._relocks.get(index, 0) + 1
            self._relocks[index] = relocks
            # RELOCK_ONCE only refuses the first attempt
            silent = Fault.SILENT_RELOCK in self.faults or (Fault.RELOCK_ONCE in self.faults and relocks > 1)
            if not silent:
                raise _Refusal(ErrorCode.READ_ONLY_INDEX)
        else:
            self._bank[index] = register.locked()
        return protocol.LOCK_PCR

    def _lock_pcrs(self, body: Any) -> Any:
        range_ = self._integer(body, "range")
        limit = self.max_pcrs + 1 if Fault.LOOSE_LOCK_RANGE in self.faults else self.max_pcrs
        if range_ > limit:
            raise _Refusal(ErrorCode.INVALID_INDEX)
        for index in range(min(range_, self.max_pcrs)):
            self._bank[index] = self._bank[index].locked()
        return protocol.LOCK_PCRS

    def _attestation(self, body: Any) -> Any:
        if body is None:
            body = {}
        if not isinstance(body, dict):
            raise _Refusal(ErrorCode.INVALID_OPERATION)

        user_data = self._optional_bytes(body, "user_data")
        nonce = self._optional_bytes(body, "nonce")
        public_key = self._optional_bytes(body, "public_key")

        if Fault.EMPTY_DOCUMENT in self.faults:
            document = b""
        else:
            document = self._sign_document(user_data, nonce, public_key)
        return {protocol.ATTESTATION: {"document": document}}

    def _sign_document(
        self,
        user_data: Optional[bytes],
        nonce: Optional[bytes],
        public_key: Optional[bytes]
    ) -> bytes:
        payload = cbor2.dumps({
            "module_id": self.module_id,
            "digest": self.digest.value,
            "timestamp": int(time.time() * 1000),
            "pcrs": {r.index: r.value for r in self._bank if r.lock},
            "certificate": bytes(self._signing_key.verify_key),
            "cabundle": [],
            "public_key": public_key,
            "user_data": user_data,
            "nonce": nonce,
        })
        protected = cbor2.dumps({COSE_HEADER_ALG: COSE_ALG_EDDSA})
        to_be_signed = cbor2.dumps(["Signature1", protected, b"", payload])
        signature = self._signing_key.sign(to_be_signed).signature
        return cbor2.dumps([protected, {}, payload, signature])

    def _get_random(self, body: Any) -> Any:
        if Fault.STUCK_RANDOM in self.faults:
            if self._stuck_random is None:
                self._stuck_random = secrets.token_bytes(RANDOM_CHUNK_SIZE)
            random = self._stuck_random
        else:
            random = secrets.token_bytes(RANDOM_CHUNK_SIZE)
        return {protocol.GET_RANDOM: {"random": random}}
